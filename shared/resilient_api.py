"""
Resilient API calls with layered retry logic and error classification.

One async operation is wrapped with two independent retry budgets:

1. Rate-limit failures (HTTP 429): long backoff, honouring the server's
   Retry-After when it is below a cap, otherwise a fixed schedule.
2. Transient failures (connection errors, timeouts, 5xx): short fixed backoff.
3. Anything else is permanent and propagates immediately.

The whole retry sequence can run inside a CircuitBreaker, so repeated
exhaustion across many calls trips the breaker independently of any
single call's budget.

Used for:
- LLM chat completions (agent tool loop)
- Any other unreliable upstream the agent talks to
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, TypeVar

import httpx
import openai

from shared.circuit_breaker import CircuitBreaker, CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[None]]


class ErrorKind(str, Enum):
    """Retry decision categories."""

    RATE_LIMIT = "rate_limit"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    CIRCUIT_OPEN = "circuit_open"


class UpstreamRateLimitError(Exception):
    """Rate limit reported by an upstream that is not an OpenAI-compatible client."""

    def __init__(self, message: str = "Rate limited", retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class UpstreamTransientError(Exception):
    """Temporary upstream failure worth retrying."""


class ResilientAPIError(Exception):
    """
    Summary of a call that failed after retries.

    Raised by resilient_call(wrap_errors=True) in place of the final error,
    so callers can report failures with attempt counts.

    Attributes:
        message: Error message
        original_error: Original exception that caused the failure
        attempts: Number of attempts made
    """

    def __init__(self, message: str, original_error: Exception, attempts: int):
        self.message = message
        self.original_error = original_error
        self.attempts = attempts
        super().__init__(self.message)

    def __str__(self):
        return (
            f"{self.message} (failed after {self.attempts} attempts, "
            f"original error: {type(self.original_error).__name__}: {self.original_error})"
        )


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budgets and schedules. Delays are in seconds."""

    rate_limit_retries: int = 5
    rate_limit_delays: tuple[float, ...] = (60.0, 300.0, 900.0, 1800.0, 3600.0)
    max_server_retry_after: float = 300.0
    transient_retries: int = 2
    transient_delays: tuple[float, ...] = (2.0, 5.0, 10.0)
    jitter_factor: float = 0.1

    @property
    def max_attempts(self) -> int:
        return 1 + self.rate_limit_retries + self.transient_retries

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            rate_limit_retries=settings.LLM_RATE_LIMIT_RETRIES,
            rate_limit_delays=tuple(settings.LLM_RATE_LIMIT_DELAYS_SECONDS),
            max_server_retry_after=settings.LLM_MAX_SERVER_RETRY_AFTER_SECONDS,
            transient_retries=settings.LLM_TRANSIENT_RETRIES,
            transient_delays=tuple(settings.LLM_TRANSIENT_DELAYS_SECONDS),
            jitter_factor=settings.RETRY_JITTER_FACTOR,
        )


@dataclass
class _RetryBudget:
    rate_limit_attempts: int = 0
    transient_attempts: int = 0
    delays: list[float] = field(default_factory=list)


def classify_error(error: BaseException) -> ErrorKind:
    """
    Map an exception to its retry category.

    Args:
        error: Exception to check

    Returns:
        ErrorKind for the decision table in resilient_call()

    Transient:
    - openai connection/timeout errors, 5xx, 408 and 409
    - httpx transport errors
    - ConnectionError, TimeoutError, UpstreamTransientError
    """
    if isinstance(error, CircuitOpenError):
        return ErrorKind.CIRCUIT_OPEN

    if isinstance(error, (openai.RateLimitError, UpstreamRateLimitError)):
        return ErrorKind.RATE_LIMIT

    if isinstance(error, openai.APIConnectionError):
        return ErrorKind.TRANSIENT

    if isinstance(error, openai.APIStatusError):
        status = error.status_code
        if status == 429:
            return ErrorKind.RATE_LIMIT
        if status >= 500 or status in (408, 409):
            return ErrorKind.TRANSIENT
        return ErrorKind.PERMANENT

    if isinstance(error, (httpx.TransportError, UpstreamTransientError)):
        return ErrorKind.TRANSIENT

    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return ErrorKind.TRANSIENT

    return ErrorKind.PERMANENT


def add_jitter(delay: float, jitter_factor: float) -> float:
    """Perturb delay by a random amount within +/- jitter_factor of itself."""
    if delay <= 0 or jitter_factor <= 0:
        return max(0.0, delay)
    return max(0.0, delay + delay * jitter_factor * random.uniform(-1.0, 1.0))


def get_server_retry_after(error: BaseException) -> float | None:
    """Extract a Retry-After value (seconds) from the error, if any."""
    if isinstance(error, UpstreamRateLimitError):
        return error.retry_after

    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None

    retry_after_ms = headers.get("retry-after-ms")
    if retry_after_ms:
        try:
            return float(retry_after_ms) / 1000.0
        except ValueError:
            pass

    retry_after = headers.get("retry-after")
    if retry_after:
        try:
            return float(retry_after)
        except ValueError:
            # HTTP-date form is not honoured; fall back to the schedule
            return None
    return None


def compute_rate_limit_delay(error: BaseException, attempt: int, policy: RetryPolicy) -> float:
    """Delay before rate-limit retry number `attempt` (1-based), jittered."""
    server_delay = get_server_retry_after(error)
    if server_delay is not None and 0 < server_delay <= policy.max_server_retry_after:
        return add_jitter(server_delay, policy.jitter_factor)

    if server_delay is not None and server_delay > policy.max_server_retry_after:
        logger.warning(
            f"Server retry-after {server_delay:.0f}s exceeds cap "
            f"{policy.max_server_retry_after:.0f}s - using fixed schedule"
        )

    schedule = policy.rate_limit_delays
    base_delay = schedule[min(attempt - 1, len(schedule) - 1)] if schedule else 0.0
    return add_jitter(base_delay, policy.jitter_factor)


def compute_transient_delay(attempt: int, policy: RetryPolicy) -> float:
    schedule = policy.transient_delays
    base_delay = schedule[min(attempt - 1, len(schedule) - 1)] if schedule else 0.0
    return add_jitter(base_delay, policy.jitter_factor)


async def resilient_call(
    operation: Callable[[], Awaitable[T]],
    *,
    context: str,
    trace_id: str = "",
    circuit_breaker: CircuitBreaker | None = None,
    policy: RetryPolicy | None = None,
    sleep: SleepFunc = asyncio.sleep,
    wrap_errors: bool = False,
) -> T:
    """
    Run operation with rate-limit and transient retries.

    Args:
        operation: Zero-argument callable returning an awaitable
        context: Label for log messages (e.g. "tool_loop.iteration_2")
        trace_id: Correlation id for logs
        circuit_breaker: Optional breaker wrapping the whole retry sequence
        policy: Retry budgets and schedules (defaults to RetryPolicy())
        sleep: Awaitable sleep, injectable for tests
        wrap_errors: Raise ResilientAPIError (cause and attempt count attached)
            instead of the bare final error

    Returns:
        The operation's result

    Raises:
        CircuitOpenError: Breaker rejected the call
        Exception: The last error once its budget is exhausted, or any
            permanent error immediately
        ResilientAPIError: Same, when wrap_errors is set
    """
    policy = policy or RetryPolicy()

    def give_up(error: Exception, attempts: int) -> Exception:
        if not wrap_errors:
            return error
        wrapped = ResilientAPIError(f"{context} failed", error, attempts)
        wrapped.__cause__ = error
        return wrapped

    async def retryable_operation() -> T:
        budget = _RetryBudget()

        for attempt in range(1, policy.max_attempts + 1):
            try:
                result = await operation()
            except Exception as e:
                kind = classify_error(e)

                if kind == ErrorKind.RATE_LIMIT:
                    budget.rate_limit_attempts += 1
                    if budget.rate_limit_attempts > policy.rate_limit_retries:
                        logger.error(
                            f"[{trace_id}] Rate limit retries exhausted | context={context} | "
                            f"attempts={attempt}",
                            extra={"trace_id": trace_id},
                        )
                        raise give_up(e, attempt)
                    delay = compute_rate_limit_delay(e, budget.rate_limit_attempts, policy)

                elif kind == ErrorKind.TRANSIENT:
                    budget.transient_attempts += 1
                    if budget.transient_attempts > policy.transient_retries:
                        logger.error(
                            f"[{trace_id}] Transient error retries exhausted | context={context} | "
                            f"attempts={attempt} | error={type(e).__name__}: {e}",
                            extra={"trace_id": trace_id},
                        )
                        raise give_up(e, attempt)
                    delay = compute_transient_delay(budget.transient_attempts, policy)

                elif kind == ErrorKind.CIRCUIT_OPEN:
                    raise

                else:
                    logger.warning(
                        f"[{trace_id}] Non-retryable error | context={context} | "
                        f"error={type(e).__name__}: {e}",
                        extra={"trace_id": trace_id},
                    )
                    raise give_up(e, attempt)

                if attempt == policy.max_attempts:
                    raise give_up(e, attempt)

                budget.delays.append(delay)
                logger.warning(
                    f"[{trace_id}] {kind.value} error (attempt {attempt}/{policy.max_attempts}) | "
                    f"context={context} | retrying in {delay:.2f}s",
                    extra={"trace_id": trace_id},
                )
                await sleep(delay)
                continue

            if attempt > 1:
                logger.info(
                    f"[{trace_id}] {context} succeeded on attempt {attempt}",
                    extra={"trace_id": trace_id},
                )
            return result

        # Every branch above returns or raises on the final attempt
        raise RuntimeError(f"resilient_call: unexpected loop exit ({context})")

    if circuit_breaker is not None:
        return await circuit_breaker.execute(retryable_operation)
    return await retryable_operation()
