"""
Booking Status Sweep Worker - inactivity handling and freeze sync.

Each run:
1. Flag resources stuck at capacity with no recent activity, and auto-unfreeze
   resources whose active requests all went quiet
   (BookingCapacityController.check_and_handle_inactive_resources)
2. Push the computed freeze state of every tracked resource to the booking
   directory, only where it differs

The sweep runs on exactly one process at a time under a renewed Redis lock
(LockedTaskRunner). Between items it checks lock validity and stops as soon
as the lock is lost.

Run:
    python -m agent.workers.booking_status_sweep
"""

import asyncio
import importlib
import logging
import signal
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

from agent.services.booking_capacity import BookingCapacityController
from shared.config import Settings, get_settings
from shared.locked_task_runner import LockedTaskContext, LockedTaskResult, LockedTaskRunner
from shared.logging_config import configure_logging
from shared.redis_client import close_redis_client, get_redis_client

logger = logging.getLogger(__name__)

SWEEP_LOCK_KEY = "lock:booking_status_sweep"

# Global flag for graceful shutdown
shutdown_requested = False


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    global shutdown_requested
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    shutdown_requested = True


@dataclass(frozen=True)
class DirectoryEntry:
    active: bool
    frozen: bool
    contact_address: str | None = None


class BookingDirectory(Protocol):
    """External registry of bookable resources."""

    async def get(self, resource_id: str) -> DirectoryEntry | None: ...

    async def set_frozen(self, resource_id: str, frozen: bool) -> None: ...


DirectoryFactory = Callable[[Settings], BookingDirectory]


def load_directory_factory(path: str) -> DirectoryFactory:
    """Resolve a "package.module:callable" reference."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(
            f"Directory factory must look like 'package.module:callable', got {path!r}"
        )
    return getattr(importlib.import_module(module_name), attr)


@dataclass
class SweepReport:
    flagged: list[str] = field(default_factory=list)
    unfrozen: list[str] = field(default_factory=list)
    synced: int = 0
    unchanged: int = 0
    errors: int = 0


async def sync_freeze_status(
    capacity: BookingCapacityController,
    directory: BookingDirectory,
    ctx: LockedTaskContext,
    extra_resource_ids: list[str] | None = None,
) -> SweepReport:
    """
    Align directory freeze flags with the capacity records.

    Per-resource directory errors are counted and logged; the sweep moves on.
    """
    report = SweepReport()
    resource_ids = [r.resource_id for r in await capacity.list_statuses()]
    for resource_id in extra_resource_ids or []:
        if resource_id not in resource_ids:
            resource_ids.append(resource_id)

    freeze_map = await capacity.batch_compute_freeze_status(resource_ids)

    for resource_id in resource_ids:
        ctx.ensure_lock_valid()
        should_be_frozen = freeze_map.get(resource_id, False)
        try:
            entry = await directory.get(resource_id)
            if entry is None or not entry.active:
                report.unchanged += 1
                continue
            if entry.frozen == should_be_frozen:
                report.unchanged += 1
                continue
            await directory.set_frozen(resource_id, should_be_frozen)
            report.synced += 1
            logger.info(
                f"Directory freeze updated | resource_id={resource_id} | frozen={should_be_frozen}",
                extra={"resource_id": resource_id},
            )
        except Exception as e:
            report.errors += 1
            logger.error(
                f"Failed to sync freeze status | resource_id={resource_id} | error={e}",
                extra={"resource_id": resource_id},
                exc_info=True,
            )
    return report


async def run_booking_status_sweep(
    capacity: BookingCapacityController,
    directory: BookingDirectory | None,
    runner: LockedTaskRunner,
) -> LockedTaskResult[SweepReport]:
    """One sweep under the singleton lock."""

    async def sweep(ctx: LockedTaskContext) -> SweepReport:
        inactivity = await capacity.check_and_handle_inactive_resources()
        ctx.ensure_lock_valid()

        if directory is None:
            report = SweepReport()
        else:
            report = await sync_freeze_status(
                capacity, directory, ctx, extra_resource_ids=inactivity.unfrozen_resource_ids
            )
        report.flagged = inactivity.flagged_resource_ids
        report.unfrozen = inactivity.unfrozen_resource_ids
        return report

    result = await runner.run(sweep)
    if result.acquired and result.result is not None:
        report = result.result
        logger.info(
            f"Booking status sweep completed | flagged={len(report.flagged)} | "
            f"unfrozen={len(report.unfrozen)} | synced={report.synced} | errors={report.errors}"
        )
    return result


async def async_main(
    directory: BookingDirectory | None = None,
    directory_factory: DirectoryFactory | None = None,
) -> None:
    """
    Run the sweep on a fixed interval in a single event loop.

    The directory comes from the argument, then directory_factory, then
    settings.BOOKING_DIRECTORY_FACTORY. Handles graceful shutdown on SIGTERM/SIGINT.
    """
    settings = get_settings()
    if directory is None:
        if directory_factory is None and settings.BOOKING_DIRECTORY_FACTORY:
            directory_factory = load_directory_factory(settings.BOOKING_DIRECTORY_FACTORY)
        if directory_factory is not None:
            directory = directory_factory(settings)
    redis_client = get_redis_client()
    capacity = BookingCapacityController.from_settings(settings)
    runner = LockedTaskRunner(
        redis_client,
        SWEEP_LOCK_KEY,
        ttl_seconds=settings.BOOKING_SWEEP_LOCK_TTL_SECONDS,
        renewal_interval_seconds=settings.BOOKING_SWEEP_RENEWAL_INTERVAL_SECONDS,
        operation_timeout=settings.LOCK_OPERATION_TIMEOUT_SECONDS,
    )
    interval = settings.BOOKING_SWEEP_INTERVAL_SECONDS

    if directory is None:
        logger.warning("No booking directory configured - freeze sync disabled")
    logger.info(f"Booking status sweep worker starting | interval={interval}s")

    try:
        while not shutdown_requested:
            await run_booking_status_sweep(capacity, directory, runner)

            # Sleep in short steps so shutdown is noticed quickly
            for _ in range(max(interval // 5, 1)):
                if shutdown_requested:
                    break
                await asyncio.sleep(5)
    finally:
        await close_redis_client()

    logger.info("Booking status sweep worker shutting down gracefully...")


def run_booking_status_sweep_worker(directory_factory: DirectoryFactory | None = None) -> None:
    """Synchronous entry point: logging, signal handlers, event loop."""
    configure_logging()
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)
    asyncio.run(async_main(directory_factory=directory_factory))


if __name__ == "__main__":
    run_booking_status_sweep_worker()
