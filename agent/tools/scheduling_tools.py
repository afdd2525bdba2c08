"""
Scheduling tools exposed to the language model.

Each tool is a pydantic argument schema plus an OpenAI-format function
definition passed to `bind_tools`. Execution lives in
agent.services.tool_executor; this module is the validated-parse boundary:
raw tool-call arguments are decoded with parse_tool_args() before anything
acts on them.

Tools:
1. send_email - Email the client or the therapist (side-effecting)
2. update_therapist_availability - Store the therapist's weekly availability
3. mark_scheduling_complete - Confirm the booking (side-effecting)
4. cancel_appointment - Cancel the booking (side-effecting)
5. flag_for_human_review - Hand the conversation to a human (side-effecting, halts turn)
"""

from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator

SEND_EMAIL = "send_email"
UPDATE_THERAPIST_AVAILABILITY = "update_therapist_availability"
MARK_SCHEDULING_COMPLETE = "mark_scheduling_complete"
CANCEL_APPOINTMENT = "cancel_appointment"
FLAG_FOR_HUMAN_REVIEW = "flag_for_human_review"

# Tools with externally observable, non-idempotent effects
SIDE_EFFECT_TOOLS = frozenset({
    SEND_EMAIL,
    MARK_SCHEDULING_COMPLETE,
    CANCEL_APPOINTMENT,
    FLAG_FOR_HUMAN_REVIEW,
})

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


class ToolArgumentError(Exception):
    """Tool call arguments did not match the tool's schema."""

    def __init__(self, tool_name: str, message: str):
        self.tool_name = tool_name
        super().__init__(f"Invalid arguments for {tool_name}: {message}")


class SendEmailArgs(BaseModel):
    """Send an email to the client or the therapist."""

    to: str = Field(description="Recipient email address (client or therapist only)")
    subject: str = Field(min_length=1, max_length=300, description="Email subject line")
    body: str = Field(min_length=1, description="Plain-text email body")

    @field_validator("to")
    @classmethod
    def _looks_like_address(cls, value: str) -> str:
        value = value.strip()
        if "@" not in value or value.startswith("@") or value.endswith("@"):
            raise ValueError("must be an email address")
        return value


class UpdateTherapistAvailabilityArgs(BaseModel):
    """Record the therapist's recurring weekly availability."""

    availability: dict[str, str] = Field(
        description="Map of weekday (e.g. 'monday') to time range (e.g. '09:00-13:00, 15:00-18:00')"
    )

    @field_validator("availability")
    @classmethod
    def _weekday_keys(cls, value: dict[str, str]) -> dict[str, str]:
        if not value:
            raise ValueError("must contain at least one day")
        normalized: dict[str, str] = {}
        for day, time_range in value.items():
            key = day.strip().lower()
            if key not in WEEKDAYS:
                raise ValueError(f"unknown weekday '{day}'")
            if not time_range or not time_range.strip():
                raise ValueError(f"empty time range for '{day}'")
            normalized[key] = time_range.strip()
        return normalized


class MarkSchedulingCompleteArgs(BaseModel):
    """Confirm the booking once both parties agreed on a time."""

    confirmed_datetime: str = Field(
        min_length=1,
        description="Agreed session date and time, including timezone",
    )
    notes: str | None = Field(default=None, description="Optional notes for the booking")


class CancelAppointmentArgs(BaseModel):
    """Cancel the booking."""

    reason: str = Field(min_length=1, description="Why the booking is cancelled")
    cancelled_by: Literal["client", "therapist"] = Field(
        description="Which party cancelled"
    )


class FlagForHumanReviewArgs(BaseModel):
    """Stop automated handling and ask a human to take over."""

    reason: str = Field(min_length=1, description="Why a human is needed")
    suggested_action: str | None = Field(
        default=None, description="Optional suggestion for the human reviewer"
    )


TOOL_ARG_MODELS: dict[str, type[BaseModel]] = {
    SEND_EMAIL: SendEmailArgs,
    UPDATE_THERAPIST_AVAILABILITY: UpdateTherapistAvailabilityArgs,
    MARK_SCHEDULING_COMPLETE: MarkSchedulingCompleteArgs,
    CANCEL_APPOINTMENT: CancelAppointmentArgs,
    FLAG_FOR_HUMAN_REVIEW: FlagForHumanReviewArgs,
}


def _openai_tool(name: str, model: type[BaseModel]) -> dict[str, Any]:
    schema = model.model_json_schema()
    schema.pop("title", None)
    for prop in schema.get("properties", {}).values():
        prop.pop("title", None)
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": (model.__doc__ or "").strip(),
            "parameters": schema,
        },
    }


SCHEDULING_TOOLS: list[dict[str, Any]] = [
    _openai_tool(name, model) for name, model in TOOL_ARG_MODELS.items()
]


def is_side_effect_tool(name: str) -> bool:
    return name in SIDE_EFFECT_TOOLS


def parse_tool_args(tool_name: str, args: Any) -> BaseModel:
    """
    Validate raw tool-call arguments.

    Raises:
        ToolArgumentError: Unknown tool or arguments not matching its schema
    """
    model = TOOL_ARG_MODELS.get(tool_name)
    if model is None:
        raise ToolArgumentError(tool_name, "unknown tool")
    if not isinstance(args, dict):
        raise ToolArgumentError(tool_name, "arguments must be a JSON object")
    try:
        return model.model_validate(args)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'args'}: {err['msg']}" for err in e.errors()
        )
        raise ToolArgumentError(tool_name, details) from e
