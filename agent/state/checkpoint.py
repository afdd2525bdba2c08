"""
Conversation checkpoint - persisted scheduling stage per conversation.

The checkpoint records where a scheduling conversation stands so that a
restarted worker resumes at the right stage and never repeats a side
effect. Each successful tool call that maps to a ConversationAction moves
the checkpoint; the tool loop persists it before any side-effecting batch.

Stage graph:
    initial_contact -> awaiting_therapist_availability -> awaiting_user_slot_selection
    -> awaiting_therapist_confirmation -> awaiting_meeting_link -> confirmed

    rescheduling and stalled are recovery detours.
    escalated is reachable from every non-terminal stage.
    cancelled and escalated are terminal for automated processing.
"""

import logging
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class ConversationStage(str, Enum):
    INITIAL_CONTACT = "initial_contact"
    AWAITING_THERAPIST_AVAILABILITY = "awaiting_therapist_availability"
    AWAITING_USER_SLOT_SELECTION = "awaiting_user_slot_selection"
    AWAITING_THERAPIST_CONFIRMATION = "awaiting_therapist_confirmation"
    AWAITING_MEETING_LINK = "awaiting_meeting_link"
    CONFIRMED = "confirmed"
    RESCHEDULING = "rescheduling"
    CANCELLED = "cancelled"
    STALLED = "stalled"
    ESCALATED = "escalated"


class ConversationAction(str, Enum):
    SENT_INITIAL_EMAIL_TO_THERAPIST = "sent_initial_email_to_therapist"
    SENT_INITIAL_EMAIL_TO_USER = "sent_initial_email_to_user"
    RECEIVED_THERAPIST_AVAILABILITY = "received_therapist_availability"
    SENT_AVAILABILITY_TO_USER = "sent_availability_to_user"
    RECEIVED_USER_SLOT_SELECTION = "received_user_slot_selection"
    SENT_CONFIRMATION_REQUEST_TO_THERAPIST = "sent_confirmation_request_to_therapist"
    RECEIVED_THERAPIST_CONFIRMATION = "received_therapist_confirmation"
    SENT_FINAL_CONFIRMATIONS = "sent_final_confirmations"
    SENT_MEETING_LINK_CHECK = "sent_meeting_link_check"
    RECEIVED_CANCELLATION_REQUEST = "received_cancellation_request"
    PROCESSED_CANCELLATION = "processed_cancellation"
    RECEIVED_RESCHEDULE_REQUEST = "received_reschedule_request"
    PROCESSED_RESCHEDULE = "processed_reschedule"
    FLAGGED_FOR_HUMAN_REVIEW = "flagged_for_human_review"


TERMINAL_STAGES = frozenset({ConversationStage.CANCELLED, ConversationStage.ESCALATED})

ACTION_TO_STAGE: dict[ConversationAction, ConversationStage] = {
    ConversationAction.SENT_INITIAL_EMAIL_TO_THERAPIST: ConversationStage.AWAITING_THERAPIST_AVAILABILITY,
    ConversationAction.SENT_INITIAL_EMAIL_TO_USER: ConversationStage.AWAITING_USER_SLOT_SELECTION,
    ConversationAction.RECEIVED_THERAPIST_AVAILABILITY: ConversationStage.AWAITING_USER_SLOT_SELECTION,
    ConversationAction.SENT_AVAILABILITY_TO_USER: ConversationStage.AWAITING_USER_SLOT_SELECTION,
    ConversationAction.RECEIVED_USER_SLOT_SELECTION: ConversationStage.AWAITING_THERAPIST_CONFIRMATION,
    ConversationAction.SENT_CONFIRMATION_REQUEST_TO_THERAPIST: ConversationStage.AWAITING_THERAPIST_CONFIRMATION,
    ConversationAction.RECEIVED_THERAPIST_CONFIRMATION: ConversationStage.AWAITING_MEETING_LINK,
    ConversationAction.SENT_FINAL_CONFIRMATIONS: ConversationStage.CONFIRMED,
    ConversationAction.SENT_MEETING_LINK_CHECK: ConversationStage.CONFIRMED,
    ConversationAction.RECEIVED_CANCELLATION_REQUEST: ConversationStage.CANCELLED,
    ConversationAction.PROCESSED_CANCELLATION: ConversationStage.CANCELLED,
    ConversationAction.RECEIVED_RESCHEDULE_REQUEST: ConversationStage.RESCHEDULING,
    ConversationAction.PROCESSED_RESCHEDULE: ConversationStage.AWAITING_USER_SLOT_SELECTION,
    ConversationAction.FLAGGED_FOR_HUMAN_REVIEW: ConversationStage.ESCALATED,
}

_S = ConversationStage

VALID_TRANSITIONS: dict[ConversationStage, frozenset[ConversationStage]] = {
    _S.INITIAL_CONTACT: frozenset({
        _S.AWAITING_THERAPIST_AVAILABILITY, _S.AWAITING_USER_SLOT_SELECTION,
        _S.CANCELLED, _S.STALLED, _S.ESCALATED,
    }),
    _S.AWAITING_THERAPIST_AVAILABILITY: frozenset({
        _S.AWAITING_USER_SLOT_SELECTION, _S.CANCELLED, _S.STALLED, _S.ESCALATED,
    }),
    _S.AWAITING_USER_SLOT_SELECTION: frozenset({
        _S.AWAITING_THERAPIST_CONFIRMATION, _S.RESCHEDULING,
        _S.CANCELLED, _S.STALLED, _S.ESCALATED,
    }),
    _S.AWAITING_THERAPIST_CONFIRMATION: frozenset({
        _S.AWAITING_USER_SLOT_SELECTION, _S.AWAITING_MEETING_LINK, _S.CONFIRMED,
        _S.CANCELLED, _S.STALLED, _S.ESCALATED,
    }),
    _S.AWAITING_MEETING_LINK: frozenset({
        _S.CONFIRMED, _S.RESCHEDULING, _S.CANCELLED, _S.STALLED, _S.ESCALATED,
    }),
    _S.CONFIRMED: frozenset({_S.RESCHEDULING, _S.CANCELLED, _S.ESCALATED}),
    _S.RESCHEDULING: frozenset({
        _S.AWAITING_USER_SLOT_SELECTION, _S.AWAITING_THERAPIST_CONFIRMATION, _S.CONFIRMED,
        _S.CANCELLED, _S.STALLED, _S.ESCALATED,
    }),
    _S.STALLED: frozenset({
        _S.AWAITING_THERAPIST_AVAILABILITY, _S.AWAITING_USER_SLOT_SELECTION,
        _S.AWAITING_THERAPIST_CONFIRMATION, _S.CANCELLED, _S.ESCALATED,
    }),
    _S.CANCELLED: frozenset(),
    _S.ESCALATED: frozenset(),
}

STAGE_DESCRIPTIONS: dict[ConversationStage, str] = {
    _S.INITIAL_CONTACT: "Initial contact made",
    _S.AWAITING_THERAPIST_AVAILABILITY: "Waiting for therapist to provide availability",
    _S.AWAITING_USER_SLOT_SELECTION: "Waiting for client to select a time slot",
    _S.AWAITING_THERAPIST_CONFIRMATION: "Waiting for therapist to confirm the selected slot",
    _S.AWAITING_MEETING_LINK: "Booking confirmed, waiting for therapist to send meeting link",
    _S.CONFIRMED: "Booking complete",
    _S.RESCHEDULING: "Rescheduling in progress",
    _S.CANCELLED: "Booking cancelled",
    _S.STALLED: "Conversation has stalled - needs attention",
    _S.ESCALATED: "Escalated to a human - automation paused",
}

VALID_ACTIONS_PER_STAGE: dict[ConversationStage, list[str]] = {
    _S.INITIAL_CONTACT: [
        "Send initial email to therapist (if no availability on file)",
        "Send initial email to client with availability options (if availability on file)",
    ],
    _S.AWAITING_THERAPIST_AVAILABILITY: [
        "Wait for therapist response",
        "After receiving availability, send options to client",
        "Use update_therapist_availability if therapist provides a recurring schedule",
    ],
    _S.AWAITING_USER_SLOT_SELECTION: [
        "Wait for client to select a time",
        "Clarify options if client has questions",
        "After client selects, send confirmation request to therapist",
    ],
    _S.AWAITING_THERAPIST_CONFIRMATION: [
        "Wait for therapist to confirm the selected slot",
        "If confirmed, use mark_scheduling_complete with the confirmed datetime",
        "If slot unavailable, go back to client with alternatives",
    ],
    _S.AWAITING_MEETING_LINK: [
        "Wait for therapist to send meeting link",
        "Respond to any questions from either party",
    ],
    _S.CONFIRMED: [
        "Handle any post-booking questions",
        "If reschedule requested, facilitate finding new time",
        "If cancellation requested, use cancel_appointment",
    ],
    _S.RESCHEDULING: [
        "Coordinate new time between both parties",
        "Once agreed, use mark_scheduling_complete with new datetime",
    ],
    _S.CANCELLED: ["No further action needed - booking is cancelled"],
    _S.STALLED: [
        "Send follow-up message to re-engage",
        "Consider flagging for human review if no response",
    ],
    _S.ESCALATED: ["No automated action - a human is handling this conversation"],
}

STAGE_COMPLETION_PERCENTAGE: dict[ConversationStage, int] = {
    _S.INITIAL_CONTACT: 10,
    _S.AWAITING_THERAPIST_AVAILABILITY: 20,
    _S.AWAITING_USER_SLOT_SELECTION: 40,
    _S.AWAITING_THERAPIST_CONFIRMATION: 60,
    _S.AWAITING_MEETING_LINK: 80,
    _S.CONFIRMED: 100,
    _S.RESCHEDULING: 50,
    _S.CANCELLED: 0,
    _S.STALLED: 0,
    _S.ESCALATED: 0,
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CheckpointContext(BaseModel):
    """Auxiliary metadata carried across checkpoints (extra keys allowed)."""

    model_config = ConfigDict(extra="allow")

    user_selected_slot: str | None = None
    last_email_sent_to: Literal["client", "therapist"] | None = None
    last_email_subject: str | None = None
    stage_before_escalation: ConversationStage | None = None


class ConversationCheckpoint(BaseModel):
    stage: ConversationStage = ConversationStage.INITIAL_CONTACT
    last_action: ConversationAction | None = None
    pending_action: str | None = None
    checkpoint_at: datetime = Field(default_factory=_utcnow)
    stalled_since: datetime | None = None
    recovery_attempts: int = 0
    context: CheckpointContext = Field(default_factory=CheckpointContext)

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES


def create_checkpoint(
    stage: ConversationStage = ConversationStage.INITIAL_CONTACT,
    action: ConversationAction | None = None,
    pending_action: str | None = None,
    context: dict[str, Any] | None = None,
) -> ConversationCheckpoint:
    return ConversationCheckpoint(
        stage=stage,
        last_action=action,
        pending_action=pending_action,
        context=CheckpointContext(**(context or {})),
    )


def stage_from_action(action: ConversationAction) -> ConversationStage:
    return ACTION_TO_STAGE.get(action, ConversationStage.INITIAL_CONTACT)


def is_valid_transition(current: ConversationStage, new: ConversationStage) -> bool:
    return new == current or new in VALID_TRANSITIONS[current]


def update_checkpoint(
    current: ConversationCheckpoint | None,
    action: ConversationAction,
    pending_action: str | None = None,
    context: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> ConversationCheckpoint:
    """
    Apply a successful action and return the superseding checkpoint.

    Terminal checkpoints are returned unchanged. Unexpected non-terminal
    transitions are applied (they happen during recovery) but logged.
    Context is merged over the current context.
    """
    new_stage = stage_from_action(action)

    if current is not None and current.is_terminal and new_stage != current.stage:
        logger.warning(
            f"Ignoring transition out of terminal stage | current={current.stage.value} | "
            f"action={action.value} | attempted={new_stage.value}"
        )
        return current

    if current is not None and not is_valid_transition(current.stage, new_stage):
        logger.warning(
            f"Unexpected stage transition | current={current.stage.value} | "
            f"new={new_stage.value} | action={action.value}"
        )

    merged = current.context.model_dump(exclude_none=True) if current else {}
    merged.update(context or {})
    if new_stage == ConversationStage.ESCALATED and current is not None:
        merged.setdefault("stage_before_escalation", current.stage)

    return ConversationCheckpoint(
        stage=new_stage,
        last_action=action,
        pending_action=pending_action,
        checkpoint_at=now or _utcnow(),
        recovery_attempts=0,
        context=CheckpointContext(**merged),
    )


def mark_as_stalled(current: ConversationCheckpoint, now: datetime | None = None) -> ConversationCheckpoint:
    if current.is_terminal:
        return current
    return current.model_copy(
        update={
            "stage": ConversationStage.STALLED,
            "stalled_since": now or _utcnow(),
            "recovery_attempts": 0,
        }
    )


def increment_recovery_attempts(current: ConversationCheckpoint) -> ConversationCheckpoint:
    return current.model_copy(update={"recovery_attempts": current.recovery_attempts + 1})


def release_escalation(current: ConversationCheckpoint, now: datetime | None = None) -> ConversationCheckpoint:
    """Hand an escalated conversation back to automation at its previous stage."""
    if current.stage != ConversationStage.ESCALATED:
        return current
    previous = current.context.stage_before_escalation or ConversationStage.INITIAL_CONTACT
    context = current.context.model_copy(update={"stage_before_escalation": None})
    return current.model_copy(
        update={"stage": previous, "checkpoint_at": now or _utcnow(), "context": context}
    )


def get_stage_description(stage: ConversationStage | None) -> str:
    return STAGE_DESCRIPTIONS[stage or ConversationStage.INITIAL_CONTACT]


def get_valid_actions_for_stage(stage: ConversationStage | None) -> str:
    actions = VALID_ACTIONS_PER_STAGE[stage or ConversationStage.INITIAL_CONTACT]
    return "\n".join(f"- {a}" for a in actions)


def needs_recovery(
    checkpoint: ConversationCheckpoint,
    stale_threshold_hours: int = 48,
    now: datetime | None = None,
) -> bool:
    """True when a live conversation has made no progress for the threshold."""
    if checkpoint.stage in (ConversationStage.CONFIRMED, *TERMINAL_STAGES):
        return False
    elapsed = (now or _utcnow()) - checkpoint.checkpoint_at
    return elapsed >= timedelta(hours=stale_threshold_hours)


def get_admin_summary(
    checkpoint: ConversationCheckpoint,
    stale_threshold_hours: int = 48,
    now: datetime | None = None,
) -> str:
    now = now or _utcnow()
    hours = (now - checkpoint.checkpoint_at).total_seconds() / 3600
    parts = [
        f"**Current Stage:** {checkpoint.stage.value} ({STAGE_DESCRIPTIONS[checkpoint.stage]})",
        f"**Last Update:** {hours:.1f} hours ago",
    ]

    if checkpoint.last_action:
        parts.append(f"**Last Action:** {checkpoint.last_action.value.replace('_', ' ')}")
    if checkpoint.pending_action:
        parts.append(f"**Waiting For:** {checkpoint.pending_action}")
    if checkpoint.stalled_since:
        parts.append(f"**Stalled Since:** {checkpoint.stalled_since.date().isoformat()}")
    if checkpoint.recovery_attempts > 0:
        parts.append(f"**Recovery Attempts:** {checkpoint.recovery_attempts}")
    if checkpoint.context.user_selected_slot:
        parts.append(f"**Client Selected:** {checkpoint.context.user_selected_slot}")
    if needs_recovery(checkpoint, stale_threshold_hours, now):
        parts.append("**Needs Recovery:** yes")
    parts.append(f"**Progress:** {STAGE_COMPLETION_PERCENTAGE[checkpoint.stage]}%")

    return "\n".join(parts)
