"""
Scheduling tool executor - the execute_tool_call callback of the tool loop.

Per call, in order:
1. Validate arguments (ToolArgumentError -> error result)
2. Skip if a human has taken control of the appointment
3. Skip if the identical call already ran (tool execution ledger)
4. Run the tool, mapping it to a checkpoint action
5. Release the ledger claim if the tool failed

Ordinary failures come back as ToolExecutionResult(success=False) so the model
can adapt. Booking-consistency errors, an open circuit and an unreachable
Redis abort the turn instead (see tool_loop.is_fatal_tool_error).
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Literal, Protocol
from uuid import UUID

from langchain_core.messages.tool import ToolCall
from pydantic import BaseModel

from agent.services.appointment_service import AppointmentStore
from agent.services.booking_capacity import BookingCapacityController
from agent.services.tool_ledger import ToolExecutionLedger
from agent.services.tool_loop import ToolExecutionResult, is_fatal_tool_error
from agent.state.checkpoint import ConversationAction, ConversationStage
from agent.state.schemas import ConversationState, SchedulingContext
from agent.tools.scheduling_tools import (
    CANCEL_APPOINTMENT,
    FLAG_FOR_HUMAN_REVIEW,
    MARK_SCHEDULING_COMPLETE,
    SEND_EMAIL,
    UPDATE_THERAPIST_AVAILABILITY,
    CancelAppointmentArgs,
    FlagForHumanReviewArgs,
    MarkSchedulingCompleteArgs,
    SendEmailArgs,
    ToolArgumentError,
    UpdateTherapistAvailabilityArgs,
    parse_tool_args,
)
from database.models import AppointmentRequestStatus

logger = logging.getLogger(__name__)

_DAY_RE = re.compile(
    r"\b(monday|tuesday|wednesday|thursday|friday|saturday|sunday|"
    r"mon|tue|wed|thu|fri|sat|sun|tomorrow|today)\b",
    re.IGNORECASE,
)
_DATE_RE = re.compile(r"\b\d{1,2}(?:st|nd|rd|th)?\b", re.IGNORECASE)
_MONTH_RE = re.compile(
    r"\b(jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|jun(?:e)?|jul(?:y)?|"
    r"aug(?:ust)?|sep(?:tember)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)\b",
    re.IGNORECASE,
)
_TIME_RE = re.compile(r"\b\d{1,2}(?::\d{2})?\s*(?:am|pm)?\b", re.IGNORECASE)

# Stages at which a therapist email is a confirmation request, not first contact
_THERAPIST_FOLLOW_UP_STAGES = frozenset({
    ConversationStage.AWAITING_USER_SLOT_SELECTION,
    ConversationStage.AWAITING_THERAPIST_CONFIRMATION,
    ConversationStage.AWAITING_MEETING_LINK,
    ConversationStage.RESCHEDULING,
})


class MailSender(Protocol):
    async def send(self, to: str, subject: str, body: str, *, appointment_id: UUID) -> None: ...


class AvailabilityStore(Protocol):
    async def update(self, resource_id: str, availability: dict[str, str]) -> None: ...


class HumanReviewNotifier(Protocol):
    async def notify(
        self, appointment_id: UUID, reason: str, suggested_action: str | None
    ) -> None: ...


def validate_confirmed_datetime(value: str) -> str | None:
    """
    Reject datetimes the model clearly did not fill in.

    Returns:
        Error message, or None if the value names a day, date or time
    """
    text = value.strip()
    if len(text) < 5:
        return "confirmed_datetime is too short to contain valid date/time information"
    has_date = bool(_DAY_RE.search(text) or _DATE_RE.search(text) or _MONTH_RE.search(text))
    has_time = bool(_TIME_RE.search(text))
    if not has_date and not has_time:
        return (
            f'confirmed_datetime "{value}" does not contain recognizable date or time '
            f'information. Expected format like "Monday 3rd February at 10:00am"'
        )
    if has_time and not has_date:
        logger.warning(f"confirmed_datetime has time but no date | value={value}")
    return None


@dataclass
class _ToolOutcome:
    checkpoint_action: ConversationAction | None = None
    email_sent_to: Literal["client", "therapist"] | None = None
    output: str | None = None


class _ToolRejected(Exception):
    """Tool refused to act; message goes back to the model."""


class SchedulingToolExecutor:
    """
    Execute scheduling tool calls for one conversation turn.

    Args:
        appointments: Appointment request store
        capacity: Booking capacity controller
        ledger: Idempotency ledger
        mail: Outbound email sender
        availability: Therapist availability store
        notifier: Human review notifier
        conversation_state: State of the running turn (read for the current stage)
        trace_id: Trace identifier for logs
    """

    def __init__(
        self,
        appointments: AppointmentStore,
        capacity: BookingCapacityController,
        ledger: ToolExecutionLedger,
        mail: MailSender,
        availability: AvailabilityStore,
        notifier: HumanReviewNotifier,
        conversation_state: ConversationState,
        trace_id: str = "",
    ):
        self.appointments = appointments
        self.capacity = capacity
        self.ledger = ledger
        self.mail = mail
        self.availability = availability
        self.notifier = notifier
        self.conversation_state = conversation_state
        self.trace_id = trace_id

    async def __call__(self, tool_call: ToolCall, context: SchedulingContext) -> ToolExecutionResult:
        name = tool_call["name"]
        raw_args: dict[str, Any] = tool_call.get("args") or {}
        appointment_id = context["appointment_id"]
        log_extra = {
            "trace_id": self.trace_id,
            "appointment_id": str(appointment_id),
            "tool_name": name,
        }

        try:
            args = parse_tool_args(name, raw_args)
        except ToolArgumentError as e:
            logger.warning(f"[{self.trace_id}] {e}", extra=log_extra)
            return ToolExecutionResult(success=False, tool_name=name, error=str(e))

        if not await self.appointments.claim_for_agent(appointment_id):
            logger.info(
                f"[{self.trace_id}] Skipping tool - human control enabled | tool={name}",
                extra=log_extra,
            )
            return ToolExecutionResult(
                success=True, tool_name=name, skipped=True, skip_reason="human_control"
            )

        canonical_args = args.model_dump(mode="json")
        if not await self.ledger.claim(appointment_id, name, canonical_args):
            return ToolExecutionResult(
                success=True, tool_name=name, skipped=True, skip_reason="idempotent"
            )

        logger.info(f"[{self.trace_id}] Executing tool | tool={name}", extra=log_extra)
        try:
            outcome = await self._dispatch(name, args, context)
        except _ToolRejected as e:
            await self.ledger.release(appointment_id, name, canonical_args)
            logger.warning(f"[{self.trace_id}] Tool rejected | tool={name} | reason={e}", extra=log_extra)
            return ToolExecutionResult(success=False, tool_name=name, error=str(e))
        except Exception as e:
            await self.ledger.release(appointment_id, name, canonical_args)
            if is_fatal_tool_error(e):
                raise
            logger.error(
                f"[{self.trace_id}] Tool execution failed | tool={name} | error={e}",
                extra=log_extra,
                exc_info=True,
            )
            return ToolExecutionResult(success=False, tool_name=name, error=str(e))

        return ToolExecutionResult(
            success=True,
            tool_name=name,
            checkpoint_action=outcome.checkpoint_action,
            email_sent_to=outcome.email_sent_to,
            output=outcome.output,
        )

    async def _dispatch(self, name: str, args: BaseModel, context: SchedulingContext) -> _ToolOutcome:
        if name == SEND_EMAIL:
            return await self._send_email(args, context)
        if name == UPDATE_THERAPIST_AVAILABILITY:
            return await self._update_availability(args, context)
        if name == MARK_SCHEDULING_COMPLETE:
            return await self._mark_complete(args, context)
        if name == CANCEL_APPOINTMENT:
            return await self._cancel(args, context)
        if name == FLAG_FOR_HUMAN_REVIEW:
            return await self._flag(args, context)
        raise _ToolRejected(f"Unknown tool: {name}")

    def _current_stage(self) -> ConversationStage | None:
        checkpoint = self.conversation_state.get("checkpoint")
        return checkpoint.stage if checkpoint else None

    async def _send_email(self, args: SendEmailArgs, context: SchedulingContext) -> _ToolOutcome:
        recipient = args.to.strip().lower()
        client_email = (context.get("requester_email") or "").strip().lower()
        therapist_email = (context.get("resource_email") or "").strip().lower()
        allowed = [e for e in (client_email, therapist_email) if e]
        if recipient not in allowed:
            logger.error(
                f"[{self.trace_id}] Unauthorized email recipient | attempted={args.to} | "
                f"appointment_id={context['appointment_id']}"
            )
            raise _ToolRejected(
                f'Invalid recipient: "{args.to}" is not a recognized email for this appointment. '
                f"Allowed recipients are: {context.get('requester_email')} (client) or "
                f"{context.get('resource_email')} (therapist)."
            )

        if recipient == therapist_email:
            action = (
                ConversationAction.SENT_CONFIRMATION_REQUEST_TO_THERAPIST
                if self._current_stage() in _THERAPIST_FOLLOW_UP_STAGES
                else ConversationAction.SENT_INITIAL_EMAIL_TO_THERAPIST
            )
            outcome = _ToolOutcome(action, "therapist", f"Email sent to therapist ({args.to}).")
            next_status = AppointmentRequestStatus.CONTACTED
        else:
            outcome = _ToolOutcome(
                ConversationAction.SENT_AVAILABILITY_TO_USER,
                "client",
                f"Email sent to client ({args.to}).",
            )
            next_status = AppointmentRequestStatus.NEGOTIATING

        await self.mail.send(
            args.to, args.subject, args.body, appointment_id=context["appointment_id"]
        )

        # Email already sent: the call reports success and keeps its ledger claim
        try:
            await self.appointments.advance_status(context["appointment_id"], next_status)
        except Exception as e:
            logger.error(
                f"[{self.trace_id}] Email sent but status update failed | "
                f"appointment_id={context['appointment_id']} | status={next_status.value} | "
                f"error={type(e).__name__}: {e}",
                extra={"trace_id": self.trace_id, "appointment_id": str(context["appointment_id"])},
                exc_info=True,
            )
        return outcome

    async def _update_availability(
        self, args: UpdateTherapistAvailabilityArgs, context: SchedulingContext
    ) -> _ToolOutcome:
        await self.availability.update(context["resource_id"], args.availability)
        return _ToolOutcome(
            ConversationAction.RECEIVED_THERAPIST_AVAILABILITY,
            output=f"Availability recorded for {len(args.availability)} day(s).",
        )

    async def _mark_complete(
        self, args: MarkSchedulingCompleteArgs, context: SchedulingContext
    ) -> _ToolOutcome:
        error = validate_confirmed_datetime(args.confirmed_datetime)
        if error:
            raise _ToolRejected(error)

        transition = await self.appointments.mark_confirmed(
            context["appointment_id"], args.confirmed_datetime, args.notes
        )
        if transition is None:
            current = await self.appointments.get(context["appointment_id"])
            if current is None or current.status != AppointmentRequestStatus.CONFIRMED:
                raise _ToolRejected(
                    "Appointment cannot be confirmed: it is cancelled, missing or under human control."
                )
            # An earlier attempt may have committed the row but not the freeze
            await self.capacity.mark_confirmed(current.resource_id, current.resource_name)
            return _ToolOutcome(
                ConversationAction.SENT_FINAL_CONFIRMATIONS,
                output="Appointment already confirmed for this time; nothing changed.",
            )

        await self.capacity.mark_confirmed(
            transition.appointment.resource_id, transition.appointment.resource_name
        )
        return _ToolOutcome(
            ConversationAction.SENT_FINAL_CONFIRMATIONS,
            output=f"Appointment confirmed for {args.confirmed_datetime}.",
        )

    async def _cancel(self, args: CancelAppointmentArgs, context: SchedulingContext) -> _ToolOutcome:
        transition = await self.appointments.mark_cancelled(
            context["appointment_id"], args.reason, args.cancelled_by
        )
        if transition is None:
            current = await self.appointments.get(context["appointment_id"])
            if current is None or current.status != AppointmentRequestStatus.CANCELLED:
                raise _ToolRejected(
                    "Appointment cannot be cancelled: it is missing or under human control."
                )
            # An earlier attempt may have stopped after the row was cancelled
            await self.capacity.recalculate_unique_count(current.resource_id)
            await self.capacity.unmark_confirmed(current.resource_id, current.id)
            return _ToolOutcome(
                ConversationAction.PROCESSED_CANCELLATION,
                output="Appointment already cancelled; nothing changed.",
            )

        resource_id = transition.appointment.resource_id
        await self.capacity.recalculate_unique_count(resource_id)
        if transition.previous_status == AppointmentRequestStatus.CONFIRMED:
            await self.capacity.unmark_confirmed(resource_id, transition.appointment.id)
        return _ToolOutcome(
            ConversationAction.PROCESSED_CANCELLATION,
            output=f"Appointment cancelled by {args.cancelled_by}.",
        )

    async def _flag(self, args: FlagForHumanReviewArgs, context: SchedulingContext) -> _ToolOutcome:
        reason = f"Agent uncertain: {args.reason}"
        if args.suggested_action:
            reason = f"{reason}\n\nSuggested action: {args.suggested_action}"
        await self.appointments.enable_human_control(context["appointment_id"], reason)

        self.conversation_state["escalation_triggered"] = True
        self.conversation_state["escalation_reason"] = args.reason
        try:
            await self.notifier.notify(context["appointment_id"], args.reason, args.suggested_action)
        except Exception as e:
            # Human control is already on; notification failure is logged only
            logger.error(
                f"[{self.trace_id}] Human review notification failed | "
                f"appointment_id={context['appointment_id']} | error={e}",
                exc_info=True,
            )
        return _ToolOutcome(
            ConversationAction.FLAGGED_FOR_HUMAN_REVIEW, output="Flagged for human review."
        )
