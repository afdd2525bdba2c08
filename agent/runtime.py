"""
Per-process runtime wiring.

AgentRuntime is built once at process start and handed to whatever needs it
(scheduling service, workers). It owns the circuit breaker registry, so
breaker state is shared by every caller in the process and by nobody else.
"""

import logging
from dataclasses import dataclass

import redis.asyncio as redis
from langchain_core.runnables import Runnable

from agent.services.appointment_service import AppointmentStore, SqlAppointmentStore
from agent.services.booking_capacity import BookingCapacityController
from agent.services.chat_model import get_chat_model
from agent.services.scheduling_service import SchedulingService
from agent.services.tool_executor import AvailabilityStore, HumanReviewNotifier, MailSender
from agent.services.tool_ledger import ToolExecutionLedger
from agent.services.tool_loop import ToolLoop
from agent.state.checkpoint_store import RedisConversationStore
from shared.circuit_breaker import CircuitBreakerRegistry
from shared.config import Settings, get_settings
from shared.redis_client import get_redis_client
from shared.resilient_api import RetryPolicy

logger = logging.getLogger(__name__)

LLM_BREAKER = "llm"


@dataclass
class AgentRuntime:
    settings: Settings
    breakers: CircuitBreakerRegistry
    redis_client: "redis.Redis"
    capacity: BookingCapacityController
    conversations: RedisConversationStore
    ledger: ToolExecutionLedger
    appointments: AppointmentStore
    tool_loop: ToolLoop

    def scheduling_service(
        self,
        mail: MailSender,
        availability: AvailabilityStore,
        notifier: HumanReviewNotifier,
    ) -> SchedulingService:
        return SchedulingService(
            appointments=self.appointments,
            capacity=self.capacity,
            conversations=self.conversations,
            ledger=self.ledger,
            tool_loop=self.tool_loop,
            mail=mail,
            availability=availability,
            notifier=notifier,
            redis_client=self.redis_client,
            timezone=self.settings.TIMEZONE,
            recovery_hours=self.settings.CHECKPOINT_RECOVERY_HOURS,
        )


def build_runtime(
    settings: Settings | None = None,
    *,
    redis_client: "redis.Redis | None" = None,
    model: Runnable | None = None,
    appointments: AppointmentStore | None = None,
) -> AgentRuntime:
    """Wire every process-wide collaborator from settings."""
    settings = settings or get_settings()
    redis_client = redis_client or get_redis_client()

    breakers = CircuitBreakerRegistry()
    llm_breaker = breakers.get_or_create(
        LLM_BREAKER,
        failure_threshold=settings.LLM_BREAKER_FAILURE_THRESHOLD,
        reset_timeout=settings.LLM_BREAKER_RESET_TIMEOUT_SECONDS,
        success_threshold=settings.LLM_BREAKER_SUCCESS_THRESHOLD,
        failure_window=settings.LLM_BREAKER_FAILURE_WINDOW_SECONDS,
    )

    tool_loop = ToolLoop(
        model=model or get_chat_model(settings),
        circuit_breaker=llm_breaker,
        retry_policy=RetryPolicy.from_settings(settings),
        max_iterations=settings.MAX_TOOL_ITERATIONS,
    )

    runtime = AgentRuntime(
        settings=settings,
        breakers=breakers,
        redis_client=redis_client,
        capacity=BookingCapacityController.from_settings(settings),
        conversations=RedisConversationStore(
            redis_client, max_messages=settings.MAX_CONVERSATION_MESSAGES
        ),
        ledger=ToolExecutionLedger(redis_client, ttl_seconds=settings.TOOL_EXECUTION_TTL_SECONDS),
        appointments=appointments or SqlAppointmentStore(),
        tool_loop=tool_loop,
    )
    logger.info(
        f"Agent runtime ready | model={settings.LLM_MODEL} | "
        f"max_tool_iterations={settings.MAX_TOOL_ITERATIONS}"
    )
    return runtime
