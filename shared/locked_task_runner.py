"""
Locked Task Runner - "acquire lock, run task, release" for singleton jobs.

Background jobs (booking status sweep, periodic digests) must run on exactly
one process at a time. The runner acquires a Redis lock, renews it
periodically while the task runs, and exposes lock validity to the task so a
long job can abort as soon as the lock is lost instead of continuing
unprotected.

Usage:
    runner = LockedTaskRunner(redis_client, "lock:booking_status_sweep", ttl_seconds=120)

    async def sweep(ctx: LockedTaskContext) -> int:
        for batch in batches:
            ctx.ensure_lock_valid()
            await process(batch)

    result = await runner.run(sweep)
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, TypeVar

import redis.asyncio as redis

from shared.redis_locks import (
    DEFAULT_OPERATION_TIMEOUT,
    acquire_lock,
    generate_owner_token,
    release_lock,
    renew_lock,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LockLostError(Exception):
    """Raised by LockedTaskContext.ensure_lock_valid() once renewal has failed."""


class LockedTaskContext:
    """Handle given to the task; reflects whether the lock is still ours."""

    def __init__(self, lock_key: str, owner_token: str):
        self.lock_key = lock_key
        self.owner_token = owner_token
        self._lock_valid = True

    def is_lock_valid(self) -> bool:
        return self._lock_valid

    def ensure_lock_valid(self) -> None:
        if not self._lock_valid:
            raise LockLostError(f"Lock '{self.lock_key}' was lost during execution")

    def mark_lost(self) -> None:
        self._lock_valid = False


@dataclass
class LockedTaskResult(Generic[T]):
    acquired: bool
    result: T | None = None
    error: Exception | None = None


class LockedTaskRunner:
    """Runs a task while holding (and renewing) a distributed lock."""

    def __init__(
        self,
        client: "redis.Redis",
        lock_key: str,
        ttl_seconds: int = 120,
        renewal_interval_seconds: float = 30.0,
        owner_token: str | None = None,
        operation_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if renewal_interval_seconds >= ttl_seconds:
            raise ValueError("renewal_interval_seconds must be shorter than ttl_seconds")

        self.client = client
        self.lock_key = lock_key
        self.ttl_seconds = ttl_seconds
        self.renewal_interval_seconds = renewal_interval_seconds
        self.owner_token = owner_token or generate_owner_token()
        self.operation_timeout = operation_timeout
        self._sleep = sleep

    async def run(self, task: Callable[[LockedTaskContext], Awaitable[T]]) -> LockedTaskResult[T]:
        """
        Acquire the lock and run task.

        Returns:
            LockedTaskResult(acquired=False) if another owner holds the lock;
            otherwise the task's result, or the error it raised.
        """
        acquired = await acquire_lock(
            self.client, self.lock_key, self.owner_token, self.ttl_seconds,
            timeout=self.operation_timeout,
        )
        if not acquired:
            logger.debug(f"Lock held by another instance - skipping | lock_key={self.lock_key}")
            return LockedTaskResult(acquired=False)

        ctx = LockedTaskContext(self.lock_key, self.owner_token)
        stop = asyncio.Event()
        renewal = asyncio.create_task(self._renew_until_lost(ctx, stop))

        try:
            result = await task(ctx)
            return LockedTaskResult(acquired=True, result=result)
        except Exception as e:
            logger.error(
                f"Locked task failed | lock_key={self.lock_key} | error={type(e).__name__}: {e}",
                exc_info=True,
            )
            return LockedTaskResult(acquired=True, error=e)
        finally:
            # The loop also checks stop, so a cancel lost inside a Redis call still ends it
            stop.set()
            renewal.cancel()
            try:
                await renewal
            except asyncio.CancelledError:
                pass
            await release_lock(
                self.client, self.lock_key, self.owner_token,
                timeout=self.operation_timeout,
            )

    async def _renew_until_lost(self, ctx: LockedTaskContext, stop: asyncio.Event) -> None:
        while not stop.is_set():
            await self._sleep(self.renewal_interval_seconds)
            if stop.is_set():
                return
            renewed = await renew_lock(
                self.client, self.lock_key, self.owner_token, self.ttl_seconds,
                timeout=self.operation_timeout,
            )
            if not renewed:
                ctx.mark_lost()
                logger.warning(
                    f"Lock renewal failed - lock lost | lock_key={self.lock_key} | "
                    f"owner={self.owner_token}"
                )
                return
