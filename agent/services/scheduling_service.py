"""
Scheduling Service - one agent turn per inbound event.

Entry points:
- start_scheduling: Register a new request (capacity-checked) and run the first turn
- process_reply: Feed an inbound email into the conversation and run a turn
- resume_automation: Hand a conversation back to the agent after human review

Every turn ends in exactly one TurnOutcome, so operators can tell a queued
turn (circuit open) from a failed one from a completed one.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Literal
from uuid import UUID

import redis.asyncio as redis
from langchain_core.messages import HumanMessage

from agent.prompts import build_system_prompt
from agent.services.appointment_service import AppointmentSnapshot, AppointmentStore
from agent.services.booking_capacity import (
    AppointmentRequestDraft,
    AvailabilityStatus,
    BookingCapacityController,
    is_serialization_error,
)
from agent.services.tool_executor import (
    AvailabilityStore,
    HumanReviewNotifier,
    MailSender,
    SchedulingToolExecutor,
)
from agent.services.tool_ledger import ToolExecutionLedger
from agent.services.tool_loop import ToolLoop, ToolLoopCallbacks, ToolLoopResult
from agent.state.checkpoint import (
    ConversationCheckpoint,
    get_admin_summary,
    increment_recovery_attempts,
    needs_recovery,
    release_escalation,
)
from agent.state.checkpoint_store import RedisConversationStore
from agent.state.schemas import ConversationState, SchedulingContext
from shared.circuit_breaker import CircuitOpenError
from shared.redis_client import DEFERRED_TURNS_STREAM, add_to_stream
from shared.resilient_api import ResilientAPIError

logger = logging.getLogger(__name__)


class TurnOutcome(str, Enum):
    COMPLETED = "completed"
    ESCALATED = "escalated"
    INCOMPLETE = "incomplete"  # Iteration budget spent
    DEFERRED = "deferred"      # LLM circuit open, event queued
    REJECTED = "rejected"      # Resource at capacity
    SKIPPED = "skipped"        # Human control or terminal stage
    FAILED = "failed"


@dataclass
class TurnResult:
    outcome: TurnOutcome
    conversation_id: str | None = None
    trace_id: str = ""
    loop_result: ToolLoopResult | None = None
    checkpoint: ConversationCheckpoint | None = None
    availability: AvailabilityStatus | None = None
    deferred_message_id: str | None = None
    error: str | None = None


def _new_trace_id() -> str:
    return uuid.uuid4().hex[:12]


def _context_from_appointment(appointment: AppointmentSnapshot, timezone: str) -> SchedulingContext:
    return SchedulingContext(
        appointment_id=appointment.id,
        resource_id=appointment.resource_id,
        resource_name=appointment.resource_name,
        resource_email=appointment.resource_email or "",
        requester_id=appointment.requester_id,
        requester_name=appointment.requester_name or "",
        requester_email=appointment.requester_email or "",
        timezone=timezone,
    )


class SchedulingService:
    """
    Orchestrates scheduling turns.

    Collaborators are passed in explicitly (see agent.runtime for the
    per-process wiring).
    """

    def __init__(
        self,
        appointments: AppointmentStore,
        capacity: BookingCapacityController,
        conversations: RedisConversationStore,
        ledger: ToolExecutionLedger,
        tool_loop: ToolLoop,
        mail: MailSender,
        availability: AvailabilityStore,
        notifier: HumanReviewNotifier,
        redis_client: "redis.Redis",
        timezone: str = "Europe/London",
        recovery_hours: int = 48,
    ):
        self.appointments = appointments
        self.capacity = capacity
        self.conversations = conversations
        self.ledger = ledger
        self.tool_loop = tool_loop
        self.mail = mail
        self.availability = availability
        self.notifier = notifier
        self.redis_client = redis_client
        self.timezone = timezone
        self.recovery_hours = recovery_hours

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def start_scheduling(self, draft: AppointmentRequestDraft) -> TurnResult:
        """
        Open a scheduling conversation if the therapist can take the client.

        Returns:
            REJECTED when the resource is confirmed or frozen, otherwise the
            outcome of the first turn
        """
        trace_id = _new_trace_id()
        registration = await self.capacity.register_request(draft)
        if not registration.accepted:
            logger.info(
                f"[{trace_id}] Scheduling request rejected | resource_id={draft.resource_id} | "
                f"reason={registration.availability.reason.value}",
                extra={"trace_id": trace_id, "resource_id": draft.resource_id},
            )
            return TurnResult(
                outcome=TurnOutcome.REJECTED,
                trace_id=trace_id,
                availability=registration.availability,
            )

        appointment = await self.appointments.get(registration.request_id)
        if appointment is None:
            return TurnResult(
                outcome=TurnOutcome.FAILED,
                conversation_id=str(registration.request_id),
                trace_id=trace_id,
                error="Appointment request not found after registration",
            )

        opening = HumanMessage(
            content=(
                f"New scheduling request. Client: {appointment.requester_name or 'unknown'}. "
                f"Therapist: {appointment.resource_name}. Start the scheduling process."
            )
        )
        result = await self._run_turn(appointment, None, opening, trace_id)
        result.availability = registration.availability
        return result

    async def process_reply(
        self,
        appointment_id: UUID,
        inbound_text: str,
        sender: Literal["client", "therapist"],
    ) -> TurnResult:
        """Run a turn for an inbound email from one of the parties."""
        trace_id = _new_trace_id()
        conversation_id = str(appointment_id)

        appointment = await self.appointments.get(appointment_id)
        if appointment is None:
            logger.warning(
                f"[{trace_id}] Reply for unknown appointment | appointment_id={appointment_id}"
            )
            return TurnResult(
                outcome=TurnOutcome.FAILED,
                conversation_id=conversation_id,
                trace_id=trace_id,
                error="Appointment request not found",
            )

        checkpoint = await self.conversations.load(conversation_id)
        if appointment.human_control_enabled or (checkpoint and checkpoint.is_terminal):
            logger.info(
                f"[{trace_id}] Skipping turn | appointment_id={appointment_id} | "
                f"human_control={appointment.human_control_enabled} | "
                f"stage={checkpoint.stage.value if checkpoint else None}",
                extra={"trace_id": trace_id, "appointment_id": conversation_id},
            )
            return TurnResult(
                outcome=TurnOutcome.SKIPPED,
                conversation_id=conversation_id,
                trace_id=trace_id,
                checkpoint=checkpoint,
            )

        if checkpoint is not None and needs_recovery(checkpoint, self.recovery_hours):
            checkpoint = increment_recovery_attempts(checkpoint)
            logger.info(
                f"[{trace_id}] Resuming stale conversation | appointment_id={appointment_id} | "
                f"stage={checkpoint.stage.value} | recovery_attempts={checkpoint.recovery_attempts}",
                extra={"trace_id": trace_id, "appointment_id": conversation_id},
            )

        await self.appointments.record_activity(appointment_id)
        inbound = HumanMessage(content=f"Email from the {sender}:\n\n{inbound_text}")
        return await self._run_turn(appointment, checkpoint, inbound, trace_id, sender=sender)

    async def resume_automation(self, appointment_id: UUID) -> bool:
        """
        Return a conversation to the agent after a human handled it.

        Returns:
            True if human control was released
        """
        conversation_id = str(appointment_id)
        released = await self.appointments.release_human_control(appointment_id)
        checkpoint = await self.conversations.load(conversation_id)
        if checkpoint is not None:
            await self.conversations.save(conversation_id, release_escalation(checkpoint))
        logger.info(
            f"Automation resumed | appointment_id={appointment_id} | released={released}",
            extra={"appointment_id": conversation_id},
        )
        return released

    async def conversation_summary(self, appointment_id: UUID) -> str | None:
        """Operator-facing summary of where a conversation stands."""
        checkpoint = await self.conversations.load(str(appointment_id))
        if checkpoint is None:
            return None
        return get_admin_summary(checkpoint, self.recovery_hours)

    # ------------------------------------------------------------------
    # Turn execution
    # ------------------------------------------------------------------

    async def _run_turn(
        self,
        appointment: AppointmentSnapshot,
        checkpoint: ConversationCheckpoint | None,
        inbound: HumanMessage,
        trace_id: str,
        sender: str | None = None,
    ) -> TurnResult:
        conversation_id = str(appointment.id)
        context = _context_from_appointment(appointment, self.timezone)
        history = await self.conversations.load_messages(conversation_id)
        state = ConversationState(
            conversation_id=conversation_id,
            messages=[*history, inbound],
            checkpoint=checkpoint,
            context=context,
            escalation_triggered=False,
            escalation_reason=None,
        )

        async def persist() -> None:
            if state.get("checkpoint") is not None:
                await self.conversations.save(conversation_id, state["checkpoint"])
            await self.conversations.save_messages(conversation_id, state["messages"])

        executor = SchedulingToolExecutor(
            appointments=self.appointments,
            capacity=self.capacity,
            ledger=self.ledger,
            mail=self.mail,
            availability=self.availability,
            notifier=self.notifier,
            conversation_state=state,
            trace_id=trace_id,
        )
        callbacks = ToolLoopCallbacks(
            execute_tool_call=executor,
            checkpoint_before_side_effects=persist,
        )
        log_extra = {"trace_id": trace_id, "conversation_id": conversation_id}

        try:
            _, loop_result = await self.tool_loop.run(
                build_system_prompt(context, checkpoint),
                list(state["messages"]),
                state,
                context,
                callbacks,
                trace_id=trace_id,
                log_context="scheduling_turn",
            )
        except CircuitOpenError as e:
            # Persist earlier iterations before queueing the replay
            await persist()
            message_id = await add_to_stream(
                DEFERRED_TURNS_STREAM,
                {
                    "conversation_id": conversation_id,
                    "appointment_id": conversation_id,
                    "sender": sender,
                    "content": inbound.content,
                    "trace_id": trace_id,
                    "queued_at": datetime.now(UTC).isoformat(),
                },
                client=self.redis_client,
            )
            logger.warning(
                f"[{trace_id}] Turn deferred, circuit open | breaker={e.name} | "
                f"retry_after={e.retry_after:.0f}s | message_id={message_id}",
                extra={**log_extra, "circuit_breaker": e.name},
            )
            return TurnResult(
                outcome=TurnOutcome.DEFERRED,
                conversation_id=conversation_id,
                trace_id=trace_id,
                checkpoint=state.get("checkpoint"),
                deferred_message_id=message_id,
                error=str(e),
            )
        except ResilientAPIError as e:
            await persist()
            logger.error(
                f"[{trace_id}] Turn failed, model unavailable | attempts={e.attempts} | error={e}",
                extra=log_extra,
            )
            return TurnResult(
                outcome=TurnOutcome.FAILED,
                conversation_id=conversation_id,
                trace_id=trace_id,
                checkpoint=state.get("checkpoint"),
                error=str(e),
            )
        except Exception as e:
            if is_serialization_error(e):
                logger.error(
                    f"[{trace_id}] Booking state update failed after retries | error={e}",
                    extra=log_extra,
                    exc_info=True,
                )
            try:
                await persist()
            except Exception:
                logger.error(
                    f"[{trace_id}] Could not persist turn state after failure",
                    extra=log_extra,
                    exc_info=True,
                )
            raise

        await persist()

        if loop_result.flagged_for_human_review:
            outcome = TurnOutcome.ESCALATED
        elif loop_result.hit_max_iterations:
            outcome = TurnOutcome.INCOMPLETE
        else:
            outcome = TurnOutcome.COMPLETED

        logger.info(
            f"[{trace_id}] Turn finished | outcome={outcome.value} | "
            f"iterations={loop_result.iterations} | tool_errors={loop_result.total_tool_errors}",
            extra=log_extra,
        )
        return TurnResult(
            outcome=outcome,
            conversation_id=conversation_id,
            trace_id=trace_id,
            loop_result=loop_result,
            checkpoint=state.get("checkpoint"),
        )
