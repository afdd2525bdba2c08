"""
Circuit Breaker Pattern Implementation.

This module provides circuit breaker protection for external service calls
to prevent cascade failures when services are down or degraded.

Circuit breaker states:
- CLOSED: Normal operation, requests pass through
- OPEN: Service is down, requests fail fast without calling the service
- HALF_OPEN: Testing if service recovered, a single trial request allowed

Usage:
    registry = CircuitBreakerRegistry()
    llm_breaker = registry.get_or_create("llm", **BREAKER_CONFIGS["llm"])

    try:
        result = await llm_breaker.execute(lambda: model.ainvoke(messages))
    except CircuitOpenError as e:
        # Dependency judged unhealthy - queue for later instead of failing the user
        ...

Configuration:
    - failure_threshold: Failures inside failure_window before opening circuit
    - reset_timeout: Seconds to wait before allowing a trial (half-open state)
    - success_threshold: Consecutive trial successes needed to close again
    - failure_window: Rolling window (seconds) in which failures are counted

State names reuse pybreaker's constants so dashboards read the same values
regardless of which breaker produced them.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, TypeVar

import pybreaker

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_HALF_OPEN_TRIALS = 1


class CircuitState(str, Enum):
    """Breaker states (values shared with pybreaker)."""

    CLOSED = pybreaker.STATE_CLOSED
    OPEN = pybreaker.STATE_OPEN
    HALF_OPEN = pybreaker.STATE_HALF_OPEN


class CircuitOpenError(pybreaker.CircuitBreakerError):
    """
    Raised when a call is rejected without being attempted.

    Distinct from the guarded operation's own errors so callers can defer
    work instead of reporting a failure.

    Attributes:
        name: Breaker name
        state: State at rejection time (OPEN, or HALF_OPEN with a trial in flight)
        retry_after: Seconds until the breaker will admit a trial
    """

    def __init__(self, name: str, state: CircuitState, retry_after: float = 0.0):
        self.name = name
        self.state = state
        self.retry_after = retry_after
        super().__init__(
            f"Circuit breaker '{name}' is {state.value} - failing fast "
            f"(retry in {retry_after:.1f}s)"
        )


@dataclass
class CircuitBreakerStats:
    """Snapshot of a breaker for health checks and admin dashboards."""

    name: str
    state: CircuitState
    recent_failures: int
    half_open_successes: int
    total_requests: int
    rejected_requests: int
    total_failures: int
    last_failure_at: datetime | None
    last_success_at: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "recent_failures": self.recent_failures,
            "half_open_successes": self.half_open_successes,
            "total_requests": self.total_requests,
            "rejected_requests": self.rejected_requests,
            "total_failures": self.total_failures,
            "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
        }


class CircuitBreakerLogger(pybreaker.CircuitBreakerListener):
    """
    Log circuit breaker state changes and failures.

    This listener provides visibility into circuit breaker behavior
    for debugging and monitoring purposes. Receives CircuitState values.
    """

    def state_change(self, cb: "CircuitBreaker", old_state, new_state) -> None:
        if new_state == CircuitState.OPEN:
            logger.warning(
                f"Circuit breaker '{cb.name}' OPENED - "
                f"service appears down, failing fast for {cb.reset_timeout}s",
                extra={"circuit_breaker": cb.name},
            )
        elif new_state == CircuitState.HALF_OPEN:
            logger.info(
                f"Circuit breaker '{cb.name}' HALF-OPEN - "
                f"testing if service recovered",
                extra={"circuit_breaker": cb.name},
            )
        else:
            logger.info(
                f"Circuit breaker '{cb.name}' CLOSED - "
                f"service recovered, resuming normal operation "
                f"(was {old_state.value})",
                extra={"circuit_breaker": cb.name},
            )

    def failure(self, cb: "CircuitBreaker", exc: BaseException) -> None:
        logger.warning(
            f"Circuit breaker '{cb.name}' recorded failure: {type(exc).__name__}: {exc} | "
            f"state={cb.state.value} | recent_failures={cb.recent_failures}",
            extra={"circuit_breaker": cb.name},
        )

    def success(self, cb: "CircuitBreaker") -> None:
        if cb.state == CircuitState.HALF_OPEN:
            logger.info(f"Circuit breaker '{cb.name}' success in half-open state")


class CircuitBreaker:
    """
    Failure-tracking gate around one dependency.

    Process-local and asyncio-safe: all bookkeeping happens between awaits,
    so no lock is needed inside a single event loop.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        success_threshold: int = 2,
        failure_window: float = 60.0,
        exclude: Iterable[type[BaseException] | Callable[[BaseException], bool]] | None = None,
        listeners: Iterable[pybreaker.CircuitBreakerListener] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1 or success_threshold < 1:
            raise ValueError("failure_threshold and success_threshold must be >= 1")

        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.success_threshold = success_threshold
        self.failure_window = failure_window
        self._exclude = list(exclude or [])
        self._listeners = list(listeners or [])
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_times: deque[float] = deque()
        self._half_open_successes = 0
        self._active_trials = 0
        self._next_attempt_at = 0.0

        self._total_requests = 0
        self._rejected_requests = 0
        self._total_failures = 0
        self._last_failure_at: datetime | None = None
        self._last_success_at: datetime | None = None

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def recent_failures(self) -> int:
        return len(self._failure_times)

    @property
    def is_open(self) -> bool:
        return self._state == CircuitState.OPEN

    def add_listener(self, listener: pybreaker.CircuitBreakerListener) -> None:
        self._listeners.append(listener)

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run operation under breaker protection.

        Args:
            operation: Zero-argument callable returning an awaitable

        Returns:
            The operation's result

        Raises:
            CircuitOpenError: Call rejected without invoking operation
            Exception: The operation's own error, after counters are updated
        """
        self._total_requests += 1
        is_trial = self._admit()

        try:
            result = await operation()
        except Exception as exc:
            if self._is_excluded(exc):
                self._on_success()
            else:
                self._on_failure(exc)
            raise
        else:
            self._on_success()
            return result
        finally:
            if is_trial:
                self._active_trials = max(0, self._active_trials - 1)

    async def call(self, func: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """Convenience wrapper mirroring pybreaker's call(func, *args, **kwargs)."""
        return await self.execute(lambda: func(*args, **kwargs))

    def _admit(self) -> bool:
        now = self._clock()

        if self._state == CircuitState.OPEN:
            if now < self._next_attempt_at:
                self._reject(now)
            self._transition(CircuitState.HALF_OPEN)

        if self._state == CircuitState.HALF_OPEN:
            if self._active_trials >= MAX_HALF_OPEN_TRIALS:
                self._reject(now)
            self._active_trials += 1
            return True

        return False

    def _reject(self, now: float) -> None:
        self._rejected_requests += 1
        retry_after = max(0.0, self._next_attempt_at - now)
        logger.warning(
            f"Circuit breaker '{self.name}' rejected request | "
            f"state={self._state.value} | retry_after={retry_after:.1f}s",
            extra={"circuit_breaker": self.name},
        )
        raise CircuitOpenError(self.name, self._state, retry_after)

    def _is_excluded(self, exc: BaseException) -> bool:
        for rule in self._exclude:
            if isinstance(rule, type):
                if isinstance(exc, rule):
                    return True
            elif rule(exc):
                return True
        return False

    def _on_success(self) -> None:
        self._last_success_at = datetime.now(UTC)

        if self._state == CircuitState.HALF_OPEN:
            self._half_open_successes += 1
            if self._half_open_successes >= self.success_threshold:
                self._transition(CircuitState.CLOSED)
        elif self._state == CircuitState.CLOSED:
            self._failure_times.clear()

        for listener in self._listeners:
            listener.success(self)

    def _on_failure(self, exc: BaseException) -> None:
        now = self._clock()
        self._total_failures += 1
        self._last_failure_at = datetime.now(UTC)

        self._failure_times.append(now)
        window_start = now - self.failure_window
        while self._failure_times and self._failure_times[0] <= window_start:
            self._failure_times.popleft()

        for listener in self._listeners:
            listener.failure(self, exc)

        if self._state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
        elif (
            self._state == CircuitState.CLOSED
            and len(self._failure_times) >= self.failure_threshold
        ):
            self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state

        if new_state == CircuitState.OPEN:
            self._next_attempt_at = self._clock() + self.reset_timeout
            self._half_open_successes = 0
        elif new_state == CircuitState.HALF_OPEN:
            self._half_open_successes = 0
            self._active_trials = 0
        else:
            self._failure_times.clear()
            self._half_open_successes = 0

        for listener in self._listeners:
            listener.state_change(self, old_state, new_state)

    def force_open(self) -> None:
        """Open the circuit manually (e.g. from an admin action)."""
        self._transition(CircuitState.OPEN)

    def reset(self) -> None:
        """Manually return to CLOSED and zero request counters."""
        logger.info(f"Circuit breaker '{self.name}' manually reset")
        if self._state != CircuitState.CLOSED:
            self._transition(CircuitState.CLOSED)
        self._failure_times.clear()
        self._active_trials = 0
        self._total_requests = 0
        self._rejected_requests = 0

    def get_stats(self) -> CircuitBreakerStats:
        return CircuitBreakerStats(
            name=self.name,
            state=self._state,
            recent_failures=len(self._failure_times),
            half_open_successes=self._half_open_successes,
            total_requests=self._total_requests,
            rejected_requests=self._rejected_requests,
            total_failures=self._total_failures,
            last_failure_at=self._last_failure_at,
            last_success_at=self._last_success_at,
        )


# =============================================================================
# PRE-CONFIGURED CIRCUIT BREAKERS FOR EXTERNAL SERVICES
# =============================================================================

# LLM API - affects every conversation. Opens quickly, recovers slowly.
# Database - short reset, transient connection blips are common.
BREAKER_CONFIGS: dict[str, dict[str, Any]] = {
    "llm": {
        "failure_threshold": 3,
        "reset_timeout": 60.0,
        "success_threshold": 1,
        "failure_window": 120.0,
    },
    "database": {
        "failure_threshold": 5,
        "reset_timeout": 15.0,
        "success_threshold": 2,
        "failure_window": 60.0,
    },
}


class CircuitBreakerRegistry:
    """
    Process-wide set of named breakers.

    Constructed once at process start (see agent.runtime) and passed to
    every caller; one breaker instance per dependency name.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        listeners: Iterable[pybreaker.CircuitBreakerListener] | None = None,
    ):
        self._clock = clock
        self._listeners = list(listeners) if listeners is not None else [CircuitBreakerLogger()]
        self._breakers: dict[str, CircuitBreaker] = {}

    def get_or_create(self, name: str, **config: Any) -> CircuitBreaker:
        """
        Get or create a circuit breaker for a dependency.

        Config is only applied on creation; later calls return the
        existing instance unchanged.
        """
        breaker = self._breakers.get(name)
        if breaker is None:
            options = {**BREAKER_CONFIGS.get(name, {}), **config}
            breaker = CircuitBreaker(
                name=name,
                listeners=self._listeners,
                clock=self._clock,
                **options,
            )
            self._breakers[name] = breaker
            logger.info(
                f"Created circuit breaker '{name}' | "
                f"failure_threshold={breaker.failure_threshold} | "
                f"reset_timeout={breaker.reset_timeout}s | "
                f"success_threshold={breaker.success_threshold}"
            )
        return breaker

    def get(self, name: str) -> CircuitBreaker | None:
        return self._breakers.get(name)

    def get_all_stats(self) -> dict[str, dict[str, Any]]:
        """Status of all circuit breakers for monitoring/health checks."""
        return {name: b.get_stats().to_dict() for name, b in self._breakers.items()}

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()
