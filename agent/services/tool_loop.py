"""
Agent tool loop - bounded model/tool iteration for one scheduling turn.

Each iteration:
1. Call the model (tools bound) through resilient_call inside the LLM breaker
2. Append any free text to the conversation history
3. Stop when the model requests no tools
4. Persist the checkpoint before a batch containing side-effecting tools
5. Execute tool calls sequentially; flag_for_human_review halts the turn
6. Feed results back to the model, failures as error-tagged tool messages, and repeat

The loop never runs more than max_iterations model calls. Reaching the
budget is logged, not raised; callers decide what "incomplete" means.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable, Literal

from langchain_core.messages import AIMessage, BaseMessage, SystemMessage, ToolMessage
from langchain_core.messages.tool import ToolCall
from langchain_core.runnables import Runnable

from agent.services.booking_capacity import is_serialization_error
from agent.state.checkpoint import ConversationAction, update_checkpoint
from agent.state.schemas import ConversationState, SchedulingContext
from agent.tools.scheduling_tools import FLAG_FOR_HUMAN_REVIEW, SIDE_EFFECT_TOOLS
from shared.circuit_breaker import CircuitBreaker, CircuitOpenError
from shared.redis_client import RedisUnavailableError
from shared.resilient_api import RetryPolicy, SleepFunc, resilient_call

logger = logging.getLogger(__name__)

MAX_TOOL_ITERATIONS = 5
MAX_MESSAGE_LENGTH = 50000
TRUNCATION_SUFFIX = "\n\n[Content truncated due to length]"
HUMAN_REVIEW_NOTICE = "[System: Conversation flagged for human review. Agent processing paused.]"


# ============================================================================
# Result types
# ============================================================================


@dataclass
class ToolExecutionResult:
    """
    Outcome of one tool call, produced by the execute_tool_call callback.

    Failures are reported with success=False; the callback raises only for
    errors that must abort the turn (booking consistency, circuit open).
    """

    success: bool
    tool_name: str
    error: str | None = None
    skipped: bool = False
    skip_reason: Literal["human_control", "idempotent"] | None = None
    checkpoint_action: ConversationAction | None = None
    email_sent_to: Literal["client", "therapist"] | None = None
    output: str | None = None


@dataclass
class ExecutedTool:
    tool_name: str
    email_sent_to: Literal["client", "therapist"] | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class ToolLoopResult:
    iterations: int = 0
    total_tool_errors: int = 0
    executed_tools: list[ExecutedTool] = field(default_factory=list)
    flagged_for_human_review: bool = False
    hit_max_iterations: bool = False
    final_text: str | None = None


ExecuteToolCall = Callable[[ToolCall, SchedulingContext], Awaitable[ToolExecutionResult]]
CheckpointCallback = Callable[[], Awaitable[None]]


@dataclass
class ToolLoopCallbacks:
    execute_tool_call: ExecuteToolCall
    checkpoint_before_side_effects: CheckpointCallback | None = None


# ============================================================================
# Helpers
# ============================================================================


def is_fatal_tool_error(error: BaseException) -> bool:
    """Errors that abort the turn instead of being reported to the model."""
    return isinstance(error, (CircuitOpenError, RedisUnavailableError)) or is_serialization_error(
        error
    )


def truncate_message_content(content: str) -> str:
    """Cap message size so a runaway reply cannot bloat persisted state."""
    if len(content) <= MAX_MESSAGE_LENGTH:
        return content
    logger.warning(
        f"Message content truncated | original_length={len(content)} | "
        f"max_length={MAX_MESSAGE_LENGTH}"
    )
    return content[: MAX_MESSAGE_LENGTH - len(TRUNCATION_SUFFIX)] + TRUNCATION_SUFFIX


def message_text(message: BaseMessage) -> str:
    """Plain text of a message whose content may be a string or content blocks."""
    content = message.content
    if isinstance(content, str):
        return content
    parts: list[str] = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(str(block.get("text", "")))
    return "\n".join(p for p in parts if p)


def _tool_message_content(result: ToolExecutionResult) -> str:
    if not result.success:
        return f"Error: {result.error or 'unknown error'}"
    if result.skipped:
        return f"Tool {result.tool_name} skipped: {result.skip_reason}"
    return result.output or f"Tool {result.tool_name} executed successfully."


# ============================================================================
# Tool loop
# ============================================================================


class ToolLoop:
    """
    Drives one agent turn.

    Args:
        model: Chat model runnable with scheduling tools bound
        circuit_breaker: Breaker guarding the model dependency
        retry_policy: Rate-limit/transient retry budgets for model calls
        max_iterations: Model call budget per turn
        sleep: Awaitable sleep for retry delays (injectable for tests)
    """

    def __init__(
        self,
        model: Runnable,
        circuit_breaker: CircuitBreaker | None = None,
        retry_policy: RetryPolicy | None = None,
        max_iterations: int = MAX_TOOL_ITERATIONS,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.model = model
        self.circuit_breaker = circuit_breaker
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_iterations = max_iterations
        self._sleep = sleep

    async def _invoke_model(
        self, messages: list[BaseMessage], trace_id: str, log_context: str, iteration: int
    ) -> AIMessage:
        response = await resilient_call(
            lambda: self.model.ainvoke(messages),
            context=f"{log_context}.iteration_{iteration}",
            trace_id=trace_id,
            circuit_breaker=self.circuit_breaker,
            policy=self.retry_policy,
            sleep=self._sleep,
            wrap_errors=True,
        )
        if not isinstance(response, AIMessage):
            response = AIMessage(content=message_text(response))
        return response

    async def run(
        self,
        system_prompt: str,
        initial_messages: list[BaseMessage],
        conversation_state: ConversationState,
        context: SchedulingContext,
        callbacks: ToolLoopCallbacks,
        trace_id: str = "",
        log_context: str = "tool_loop",
    ) -> tuple[list[BaseMessage], ToolLoopResult]:
        """
        Run the loop until the model stops calling tools, a human review
        flag halts it, or the iteration budget is spent.

        conversation_state is mutated in place: assistant text is appended
        to "messages" and "checkpoint" is replaced after each successful
        tool call that carries a checkpoint action.

        Returns:
            (messages sent to the model including tool exchanges, ToolLoopResult)

        Raises:
            CircuitOpenError: Model breaker is open
            ResilientAPIError: Model call failed after retries
            Exception: Turn-aborting errors raised by the tool callback
        """
        conversation_state.setdefault("messages", [])
        appointment_id = context.get("appointment_id")
        log_extra: dict[str, Any] = {"trace_id": trace_id, "appointment_id": str(appointment_id)}

        messages: list[BaseMessage] = [SystemMessage(content=system_prompt), *initial_messages]
        result = ToolLoopResult()
        stop_loop = False

        while result.iterations < self.max_iterations:
            result.iterations += 1
            iteration = result.iterations
            logger.debug(
                f"[{trace_id}] {log_context} - model call | iteration={iteration} | "
                f"appointment_id={appointment_id}",
                extra=log_extra,
            )

            response = await self._invoke_model(messages, trace_id, log_context, iteration)

            text = message_text(response).strip()
            if text:
                text = truncate_message_content(text)
                conversation_state["messages"].append(AIMessage(content=text))
                result.final_text = text

            tool_calls = list(response.tool_calls)
            invalid_calls = list(getattr(response, "invalid_tool_calls", []) or [])

            if not tool_calls and not invalid_calls:
                logger.info(
                    f"[{trace_id}] {log_context} - model finished (no more tool calls) | "
                    f"iterations={iteration}",
                    extra=log_extra,
                )
                break

            if callbacks.checkpoint_before_side_effects and any(
                tc["name"] in SIDE_EFFECT_TOOLS for tc in tool_calls
            ):
                await callbacks.checkpoint_before_side_effects()

            tool_messages: list[ToolMessage] = []

            for invalid in invalid_calls:
                result.total_tool_errors += 1
                logger.error(
                    f"[{trace_id}] {log_context} - unparseable tool call | "
                    f"tool={invalid.get('name')} | error={invalid.get('error')}",
                    extra=log_extra,
                )
                tool_messages.append(
                    ToolMessage(
                        content=f"Error: could not parse arguments for {invalid.get('name')}: "
                        f"{invalid.get('error') or 'invalid JSON'}",
                        tool_call_id=invalid.get("id") or "",
                        status="error",
                    )
                )

            for tool_call in tool_calls:
                tool_result = await self._execute(callbacks, tool_call, context, trace_id, log_extra)
                content = _tool_message_content(tool_result)

                if tool_result.success:
                    if not tool_result.skipped:
                        result.executed_tools.append(
                            ExecutedTool(
                                tool_name=tool_result.tool_name,
                                email_sent_to=tool_result.email_sent_to,
                            )
                        )
                        if tool_result.checkpoint_action is not None:
                            self._advance_checkpoint(
                                conversation_state, tool_result, trace_id, log_context, log_extra
                            )

                    if tool_call["name"] == FLAG_FOR_HUMAN_REVIEW and not tool_result.skipped:
                        logger.info(
                            f"[{trace_id}] {log_context} - flagged for human review, stopping loop",
                            extra=log_extra,
                        )
                        conversation_state["messages"].append(
                            AIMessage(content=HUMAN_REVIEW_NOTICE)
                        )
                        result.flagged_for_human_review = True
                        stop_loop = True
                        break
                else:
                    result.total_tool_errors += 1
                    logger.error(
                        f"[{trace_id}] {log_context} - tool execution failed | "
                        f"tool={tool_result.tool_name} | error={tool_result.error}",
                        extra={**log_extra, "tool_name": tool_result.tool_name},
                    )

                tool_messages.append(
                    ToolMessage(
                        content=content,
                        tool_call_id=tool_call.get("id") or "",
                        status="success" if tool_result.success else "error",
                    )
                )

            if stop_loop:
                break

            messages = [*messages, response, *tool_messages]
            logger.info(
                f"[{trace_id}] {log_context} - tools executed, continuing | "
                f"tool_count={len(tool_calls) + len(invalid_calls)} | iteration={iteration}",
                extra=log_extra,
            )
        else:
            result.hit_max_iterations = True
            logger.warning(
                f"[{trace_id}] {log_context} - hit max tool iterations, turn may be incomplete | "
                f"iterations={result.iterations}",
                extra=log_extra,
            )

        return messages, result

    @staticmethod
    async def _execute(
        callbacks: ToolLoopCallbacks,
        tool_call: ToolCall,
        context: SchedulingContext,
        trace_id: str,
        log_extra: dict[str, Any],
    ) -> ToolExecutionResult:
        try:
            return await callbacks.execute_tool_call(tool_call, context)
        except Exception as e:
            if is_fatal_tool_error(e):
                raise
            logger.error(
                f"[{trace_id}] Tool callback raised | tool={tool_call['name']} | error={e}",
                extra={**log_extra, "tool_name": tool_call["name"]},
                exc_info=True,
            )
            return ToolExecutionResult(success=False, tool_name=tool_call["name"], error=str(e))

    @staticmethod
    def _advance_checkpoint(
        conversation_state: ConversationState,
        tool_result: ToolExecutionResult,
        trace_id: str,
        log_context: str,
        log_extra: dict[str, Any],
    ) -> None:
        updated = update_checkpoint(
            conversation_state.get("checkpoint"),
            tool_result.checkpoint_action,
            context={"last_email_sent_to": tool_result.email_sent_to}
            if tool_result.email_sent_to
            else None,
        )
        conversation_state["checkpoint"] = updated
        logger.info(
            f"[{trace_id}] {log_context} - checkpoint updated | "
            f"action={tool_result.checkpoint_action.value} | stage={updated.stage.value}",
            extra=log_extra,
        )
