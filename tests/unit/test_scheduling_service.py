"""
Unit tests for agent/services/scheduling_service.py.

Runs real ToolLoop, executor, ledger and conversation store over the fake
Redis, with a scripted chat model and mocked appointment/capacity stores.

Tests coverage:
- start_scheduling: capacity rejection, first turn and persisted checkpoint
- process_reply: human-control and terminal skips, stale conversation recovery
- Turn outcomes: escalated, deferred (circuit open), failed (model error)
- Deferred and propagated turns keep the checkpoint and history written so far
- Serialization conflicts from the booking layer propagate
- resume_automation and conversation_summary
"""

import json
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from langchain_core.messages import AIMessage, HumanMessage
from sqlalchemy.exc import OperationalError

from agent.services.appointment_service import AppointmentSnapshot, StatusTransition
from agent.services.booking_capacity import (
    AppointmentRequestDraft,
    AvailabilityReason,
    AvailabilityStatus,
    RegistrationResult,
)
from agent.services.scheduling_service import SchedulingService, TurnOutcome
from agent.services.tool_ledger import ToolExecutionLedger
from agent.services.tool_loop import ToolLoop
from agent.state.checkpoint import (
    ConversationAction,
    ConversationStage,
    create_checkpoint,
    update_checkpoint,
)
from agent.state.checkpoint_store import RedisConversationStore
from database.models import AppointmentRequestStatus
from shared.circuit_breaker import CircuitBreaker, CircuitOpenError, CircuitState
from shared.redis_client import DEFERRED_TURNS_STREAM
from shared.resilient_api import RetryPolicy

APPOINTMENT_ID = uuid4()
CONVERSATION_ID = str(APPOINTMENT_ID)
THERAPIST = "rivera@example.com"
CLIENT = "sam@example.com"


def _snapshot(**overrides) -> AppointmentSnapshot:
    snapshot = AppointmentSnapshot(
        id=APPOINTMENT_ID,
        resource_id="therapist-1",
        resource_name="Dr Rivera",
        resource_email=THERAPIST,
        requester_id="client-1",
        requester_name="Sam",
        requester_email=CLIENT,
        status=AppointmentRequestStatus.PENDING,
        human_control_enabled=False,
    )
    return replace(snapshot, **overrides)


def _ai(*calls: dict, content: str = "") -> AIMessage:
    return AIMessage(content=content, tool_calls=list(calls))


async def _no_sleep(_seconds: float) -> None:
    return None


class Harness:
    """Service wired over fakes; model responses are scripted per test."""

    def __init__(self, fake_redis, breaker: CircuitBreaker | None = None):
        self.redis = fake_redis
        self.model = MagicMock()
        self.model.ainvoke = AsyncMock()
        self.appointments = AsyncMock()
        self.appointments.get.return_value = _snapshot()
        self.appointments.claim_for_agent.return_value = True
        self.capacity = AsyncMock()
        self.mail = AsyncMock()
        self.notifier = AsyncMock()
        self.conversations = RedisConversationStore(fake_redis)
        self.service = SchedulingService(
            appointments=self.appointments,
            capacity=self.capacity,
            conversations=self.conversations,
            ledger=ToolExecutionLedger(fake_redis),
            tool_loop=ToolLoop(
                model=self.model,
                circuit_breaker=breaker,
                retry_policy=RetryPolicy(jitter_factor=0.0),
                sleep=_no_sleep,
            ),
            mail=self.mail,
            availability=AsyncMock(),
            notifier=self.notifier,
            redis_client=fake_redis,
            recovery_hours=48,
        )

    def script(self, *responses) -> None:
        self.model.ainvoke.side_effect = list(responses)


@pytest.fixture
def harness(fake_redis) -> Harness:
    return Harness(fake_redis)


# ============================================================================
# start_scheduling
# ============================================================================


class TestStartScheduling:
    """Opening a conversation."""

    @pytest.mark.asyncio
    async def test_rejected_at_capacity(self, harness):
        harness.capacity.register_request.return_value = RegistrationResult(
            accepted=False,
            availability=AvailabilityStatus(False, AvailabilityReason.FROZEN),
        )

        result = await harness.service.start_scheduling(
            AppointmentRequestDraft(resource_id="therapist-1", requester_id="client-2")
        )

        assert result.outcome == TurnOutcome.REJECTED
        assert result.availability.reason == AvailabilityReason.FROZEN
        harness.model.ainvoke.assert_not_called()

    @pytest.mark.asyncio
    async def test_first_turn_contacts_therapist(self, harness):
        harness.capacity.register_request.return_value = RegistrationResult(
            accepted=True,
            availability=AvailabilityStatus(True, AvailabilityReason.AVAILABLE),
            request_id=APPOINTMENT_ID,
            created=True,
        )
        harness.script(
            _ai({
                "name": "send_email",
                "args": {"to": THERAPIST, "subject": "New client", "body": "Your availability?"},
                "id": "c1",
            }),
            AIMessage(content="Asked the therapist for availability."),
        )

        result = await harness.service.start_scheduling(
            AppointmentRequestDraft(resource_id="therapist-1", requester_id="client-1")
        )

        assert result.outcome == TurnOutcome.COMPLETED
        assert result.conversation_id == CONVERSATION_ID
        harness.mail.send.assert_awaited_once()

        saved = await harness.conversations.load(CONVERSATION_ID)
        assert saved.stage == ConversationStage.AWAITING_THERAPIST_AVAILABILITY
        assert saved.context.last_email_sent_to == "therapist"

        history = await harness.conversations.load_messages(CONVERSATION_ID)
        assert isinstance(history[0], HumanMessage)
        assert history[-1].content == "Asked the therapist for availability."

    @pytest.mark.asyncio
    async def test_missing_appointment_after_registration_fails(self, harness):
        harness.capacity.register_request.return_value = RegistrationResult(
            accepted=True,
            availability=AvailabilityStatus(True, AvailabilityReason.AVAILABLE),
            request_id=APPOINTMENT_ID,
        )
        harness.appointments.get.return_value = None

        result = await harness.service.start_scheduling(
            AppointmentRequestDraft(resource_id="therapist-1", requester_id="client-1")
        )

        assert result.outcome == TurnOutcome.FAILED


# ============================================================================
# process_reply
# ============================================================================


class TestProcessReply:
    """Inbound email turns."""

    @pytest.mark.asyncio
    async def test_skipped_under_human_control(self, harness):
        harness.appointments.get.return_value = _snapshot(human_control_enabled=True)

        result = await harness.service.process_reply(APPOINTMENT_ID, "Hello?", "client")

        assert result.outcome == TurnOutcome.SKIPPED
        harness.model.ainvoke.assert_not_called()
        harness.appointments.record_activity.assert_not_called()

    @pytest.mark.asyncio
    async def test_skipped_when_cancelled(self, harness):
        await harness.conversations.save(
            CONVERSATION_ID, create_checkpoint(stage=ConversationStage.CANCELLED)
        )

        result = await harness.service.process_reply(APPOINTMENT_ID, "Thanks", "client")

        assert result.outcome == TurnOutcome.SKIPPED
        assert result.checkpoint.stage == ConversationStage.CANCELLED

    @pytest.mark.asyncio
    async def test_unknown_appointment_fails(self, harness):
        harness.appointments.get.return_value = None

        result = await harness.service.process_reply(uuid4(), "Hello", "client")

        assert result.outcome == TurnOutcome.FAILED

    @pytest.mark.asyncio
    async def test_inbound_email_reaches_model(self, harness):
        harness.script(AIMessage(content="Noted."))

        result = await harness.service.process_reply(APPOINTMENT_ID, "Tuesday works", "client")

        assert result.outcome == TurnOutcome.COMPLETED
        harness.appointments.record_activity.assert_awaited_once_with(APPOINTMENT_ID)
        sent = harness.model.ainvoke.await_args.args[0]
        assert sent[-1].content == "Email from the client:\n\nTuesday works"
        assert "Dr Rivera" in sent[0].content

    @pytest.mark.asyncio
    async def test_stale_conversation_counts_recovery_attempt(self, harness):
        stale = create_checkpoint(stage=ConversationStage.AWAITING_USER_SLOT_SELECTION)
        stale = stale.model_copy(
            update={"checkpoint_at": datetime.now(UTC) - timedelta(hours=60)}
        )
        await harness.conversations.save(CONVERSATION_ID, stale)
        harness.script(AIMessage(content="Following up."))

        await harness.service.process_reply(APPOINTMENT_ID, "Sorry for the delay", "client")

        saved = await harness.conversations.load(CONVERSATION_ID)
        assert saved.recovery_attempts == 1
        assert saved.stage == ConversationStage.AWAITING_USER_SLOT_SELECTION


# ============================================================================
# Turn outcomes
# ============================================================================


class TestTurnOutcomes:
    """Escalated, deferred, failed and propagated errors."""

    @pytest.mark.asyncio
    async def test_flag_escalates(self, harness):
        harness.script(
            _ai({"name": "flag_for_human_review", "args": {"reason": "Fee question"}, "id": "c1"})
        )

        result = await harness.service.process_reply(APPOINTMENT_ID, "How much?", "client")

        assert result.outcome == TurnOutcome.ESCALATED
        assert result.checkpoint.stage == ConversationStage.ESCALATED
        harness.appointments.enable_human_control.assert_awaited_once()
        harness.notifier.notify.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_open_circuit_defers_turn(self, fake_redis):
        breaker = CircuitBreaker("llm", failure_threshold=1, listeners=[])
        breaker.force_open()
        harness = Harness(fake_redis, breaker=breaker)

        result = await harness.service.process_reply(APPOINTMENT_ID, "Wednesday?", "therapist")

        assert result.outcome == TurnOutcome.DEFERRED
        entries = fake_redis.streams[DEFERRED_TURNS_STREAM]
        assert result.deferred_message_id == entries[0][0]
        payload = json.loads(entries[0][1]["data"])
        assert payload["conversation_id"] == CONVERSATION_ID
        assert payload["sender"] == "therapist"
        assert payload["content"] == "Email from the therapist:\n\nWednesday?"

    @pytest.mark.asyncio
    async def test_model_failure_fails_turn_and_keeps_history(self, harness):
        harness.model.ainvoke.side_effect = ValueError("context length exceeded")

        result = await harness.service.process_reply(APPOINTMENT_ID, "Hello", "client")

        assert result.outcome == TurnOutcome.FAILED
        assert result.error is not None
        history = await harness.conversations.load_messages(CONVERSATION_ID)
        assert history[-1].content == "Email from the client:\n\nHello"

    @pytest.mark.asyncio
    async def test_iteration_budget_reported_incomplete(self, harness):
        call = {
            "name": "update_therapist_availability",
            "args": {"availability": {"monday": "09:00-12:00"}},
        }
        harness.script(*[_ai({**call, "id": f"c{n}"}) for n in range(5)])

        result = await harness.service.process_reply(APPOINTMENT_ID, "Mondays only", "therapist")

        assert result.outcome == TurnOutcome.INCOMPLETE
        assert result.loop_result.iterations == 5

    @pytest.mark.asyncio
    async def test_booking_conflict_propagates(self, harness):
        harness.appointments.mark_cancelled.return_value = StatusTransition(
            _snapshot(status=AppointmentRequestStatus.CANCELLED),
            AppointmentRequestStatus.NEGOTIATING,
        )
        harness.capacity.recalculate_unique_count.side_effect = OperationalError(
            "UPDATE", None, Exception("could not serialize access due to concurrent update")
        )
        harness.script(
            _ai({
                "name": "cancel_appointment",
                "args": {"reason": "moved", "cancelled_by": "client"},
                "id": "c1",
            })
        )

        with pytest.raises(OperationalError):
            await harness.service.process_reply(APPOINTMENT_ID, "Please cancel", "client")

    @pytest.mark.asyncio
    async def test_deferred_turn_keeps_progress_from_earlier_iterations(self, harness):
        """The replayed turn must see the email already sent, not repeat it."""
        harness.script(
            _ai(
                {
                    "name": "send_email",
                    "args": {"to": THERAPIST, "subject": "New client", "body": "Your availability?"},
                    "id": "c1",
                },
                content="Writing to the therapist.",
            ),
            CircuitOpenError("llm", CircuitState.OPEN, retry_after=30.0),
        )

        result = await harness.service.process_reply(APPOINTMENT_ID, "Hello", "client")

        assert result.outcome == TurnOutcome.DEFERRED
        harness.mail.send.assert_awaited_once()
        saved = await harness.conversations.load(CONVERSATION_ID)
        assert saved is not None
        assert saved.stage == ConversationStage.AWAITING_THERAPIST_AVAILABILITY
        history = await harness.conversations.load_messages(CONVERSATION_ID)
        assert history[-1].content == "Writing to the therapist."

    @pytest.mark.asyncio
    async def test_booking_conflict_keeps_progress_from_same_batch(self, harness):
        harness.appointments.mark_cancelled.return_value = StatusTransition(
            _snapshot(status=AppointmentRequestStatus.CANCELLED),
            AppointmentRequestStatus.NEGOTIATING,
        )
        harness.capacity.recalculate_unique_count.side_effect = OperationalError(
            "UPDATE", None, Exception("could not serialize access due to concurrent update")
        )
        harness.script(
            _ai(
                {
                    "name": "send_email",
                    "args": {"to": THERAPIST, "subject": "Update", "body": "Client cancelled"},
                    "id": "c1",
                },
                {
                    "name": "cancel_appointment",
                    "args": {"reason": "moved", "cancelled_by": "client"},
                    "id": "c2",
                },
                content="Letting the therapist know.",
            )
        )

        with pytest.raises(OperationalError):
            await harness.service.process_reply(APPOINTMENT_ID, "Please cancel", "client")

        harness.mail.send.assert_awaited_once()
        saved = await harness.conversations.load(CONVERSATION_ID)
        assert saved is not None
        assert saved.stage == ConversationStage.AWAITING_THERAPIST_AVAILABILITY
        history = await harness.conversations.load_messages(CONVERSATION_ID)
        assert history[-1].content == "Letting the therapist know."


# ============================================================================
# Human hand-back and summaries
# ============================================================================


class TestResumeAndSummary:
    @pytest.mark.asyncio
    async def test_resume_restores_previous_stage(self, harness):
        escalated = update_checkpoint(
            create_checkpoint(stage=ConversationStage.AWAITING_THERAPIST_CONFIRMATION),
            ConversationAction.FLAGGED_FOR_HUMAN_REVIEW,
        )
        await harness.conversations.save(CONVERSATION_ID, escalated)
        harness.appointments.release_human_control.return_value = True

        assert await harness.service.resume_automation(APPOINTMENT_ID) is True

        saved = await harness.conversations.load(CONVERSATION_ID)
        assert saved.stage == ConversationStage.AWAITING_THERAPIST_CONFIRMATION

    @pytest.mark.asyncio
    async def test_conversation_summary(self, harness):
        assert await harness.service.conversation_summary(APPOINTMENT_ID) is None

        await harness.conversations.save(
            CONVERSATION_ID, create_checkpoint(stage=ConversationStage.CONFIRMED)
        )
        summary = await harness.service.conversation_summary(APPOINTMENT_ID)

        assert "**Progress:** 100%" in summary
