"""
Unit tests for agent/workers/booking_status_sweep.py.

Tests coverage:
- Sweep flags/unfreezes stale resources and syncs directory freeze flags
- Only differing, active directory entries are written
- Per-resource directory errors are counted, not raised
- Sweep skipped while another instance holds the lock
- Lost lock stops the sync
- Worker resolves the directory from an argument, a factory or settings
"""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from agent.services.booking_capacity import BookingCapacityController, CapacityRecord
from agent.workers import booking_status_sweep
from agent.workers.booking_status_sweep import (
    SWEEP_LOCK_KEY,
    DirectoryEntry,
    async_main,
    load_directory_factory,
    run_booking_status_sweep,
    sync_freeze_status,
)
from shared.config import Settings
from shared.locked_task_runner import LockedTaskContext, LockedTaskRunner, LockLostError

NOW = datetime(2026, 6, 1, 8, 0, tzinfo=UTC)


async def _no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


class FakeDirectory:
    def __init__(self, entries: dict[str, DirectoryEntry]):
        self.entries = entries
        self.writes: list[tuple[str, bool]] = []
        self.fail_for: set[str] = set()

    async def get(self, resource_id: str) -> DirectoryEntry | None:
        if resource_id in self.fail_for:
            raise ConnectionError("directory timeout")
        return self.entries.get(resource_id)

    async def set_frozen(self, resource_id: str, frozen: bool) -> None:
        self.writes.append((resource_id, frozen))
        entry = self.entries[resource_id]
        self.entries[resource_id] = DirectoryEntry(entry.active, frozen, entry.contact_address)


@pytest.fixture
def controller(capacity_db) -> BookingCapacityController:
    return BookingCapacityController(
        transaction_factory=capacity_db.transaction,
        clock=lambda: NOW,
        sleep=_no_sleep,
    )


@pytest.fixture
def runner(fake_redis) -> LockedTaskRunner:
    return LockedTaskRunner(fake_redis, SWEEP_LOCK_KEY, ttl_seconds=120, renewal_interval_seconds=30)


class TestSweep:
    """Full sweep under the singleton lock."""

    @pytest.mark.asyncio
    async def test_stale_resource_unfrozen_in_directory(self, capacity_db, controller, runner, fake_redis):
        stale = NOW - timedelta(hours=80)
        capacity_db.add_request("stale", "client-a", last_activity_at=stale)
        capacity_db.set_status(
            CapacityRecord(resource_id="stale", unique_requester_count=1, frozen_at=stale)
        )
        capacity_db.add_request("busy", "client-b", last_activity_at=NOW)
        capacity_db.set_status(
            CapacityRecord(resource_id="busy", unique_requester_count=1, frozen_at=NOW)
        )
        directory = FakeDirectory({
            "stale": DirectoryEntry(active=True, frozen=True),
            "busy": DirectoryEntry(active=True, frozen=False),
        })

        # The sweep uses the controller's clock for "now"
        result = await run_booking_status_sweep(controller, directory, runner)

        assert result.acquired is True
        report = result.result
        assert report.unfrozen == ["stale"]
        assert report.flagged == []
        assert sorted(directory.writes) == [("busy", True), ("stale", False)]
        assert report.synced == 2
        assert SWEEP_LOCK_KEY not in fake_redis.data

    @pytest.mark.asyncio
    async def test_without_directory_only_inactivity_runs(self, capacity_db, controller, runner):
        stale = NOW - timedelta(hours=80)
        capacity_db.add_request("full", "client-a", last_activity_at=stale)
        capacity_db.add_request("full", "client-b", last_activity_at=stale)
        capacity_db.set_status(
            CapacityRecord(resource_id="full", unique_requester_count=2, frozen_at=stale)
        )

        result = await run_booking_status_sweep(controller, None, runner)

        assert result.result.flagged == ["full"]
        assert result.result.synced == 0

    @pytest.mark.asyncio
    async def test_skipped_when_lock_held(self, controller, runner, fake_redis):
        fake_redis.data[SWEEP_LOCK_KEY] = "other-worker"
        directory = FakeDirectory({})

        result = await run_booking_status_sweep(controller, directory, runner)

        assert result.acquired is False
        assert directory.writes == []


class TestSyncFreezeStatus:
    """Directory alignment."""

    @pytest.mark.asyncio
    async def test_inactive_missing_and_equal_entries_untouched(self, capacity_db, controller):
        for resource_id in ("inactive", "missing", "equal"):
            capacity_db.set_status(CapacityRecord(resource_id=resource_id, has_confirmed_engagement=True))
        directory = FakeDirectory({
            "inactive": DirectoryEntry(active=False, frozen=False),
            "equal": DirectoryEntry(active=True, frozen=True),
        })
        ctx = LockedTaskContext(SWEEP_LOCK_KEY, "owner")

        report = await sync_freeze_status(controller, directory, ctx)

        assert directory.writes == []
        assert report.unchanged == 3

    @pytest.mark.asyncio
    async def test_directory_errors_counted(self, capacity_db, controller):
        capacity_db.set_status(CapacityRecord(resource_id="a", has_confirmed_engagement=True))
        capacity_db.set_status(CapacityRecord(resource_id="b", has_confirmed_engagement=True))
        directory = FakeDirectory({
            "a": DirectoryEntry(active=True, frozen=False),
            "b": DirectoryEntry(active=True, frozen=False),
        })
        directory.fail_for = {"a"}
        ctx = LockedTaskContext(SWEEP_LOCK_KEY, "owner")

        report = await sync_freeze_status(controller, directory, ctx)

        assert report.errors == 1
        assert directory.writes == [("b", True)]

    @pytest.mark.asyncio
    async def test_lost_lock_stops_sync(self, capacity_db, controller):
        capacity_db.set_status(CapacityRecord(resource_id="a", has_confirmed_engagement=True))
        directory = FakeDirectory({"a": DirectoryEntry(active=True, frozen=False)})
        ctx = LockedTaskContext(SWEEP_LOCK_KEY, "owner")
        ctx.mark_lost()

        with pytest.raises(LockLostError):
            await sync_freeze_status(controller, directory, ctx)

        assert directory.writes == []


# ============================================================================
# Worker wiring
# ============================================================================


@pytest.fixture
def worker(monkeypatch, fake_redis):
    """Patch the worker's collaborators so async_main runs a single sweep."""
    sweep = AsyncMock()

    async def run_once(capacity, directory, runner):
        monkeypatch.setattr(booking_status_sweep, "shutdown_requested", True)
        await sweep(capacity, directory, runner)

    monkeypatch.setattr(booking_status_sweep, "shutdown_requested", False)
    monkeypatch.setattr(booking_status_sweep, "get_redis_client", lambda: fake_redis)
    monkeypatch.setattr(booking_status_sweep, "close_redis_client", AsyncMock())
    monkeypatch.setattr(booking_status_sweep, "BookingCapacityController", MagicMock())
    monkeypatch.setattr(booking_status_sweep, "run_booking_status_sweep", run_once)
    return sweep


def _use_settings(monkeypatch, **overrides) -> Settings:
    settings = Settings(**overrides)
    monkeypatch.setattr(booking_status_sweep, "get_settings", lambda: settings)
    return settings


class TestWorkerWiring:
    """Where async_main gets its booking directory from."""

    @pytest.mark.asyncio
    async def test_factory_argument_builds_directory(self, monkeypatch, worker):
        settings = _use_settings(monkeypatch)
        directory = FakeDirectory({})
        factory = MagicMock(return_value=directory)

        await async_main(directory_factory=factory)

        factory.assert_called_once_with(settings)
        assert worker.await_args.args[1] is directory

    @pytest.mark.asyncio
    async def test_factory_loaded_from_settings(self, monkeypatch, worker):
        directory = FakeDirectory({})
        monkeypatch.setattr(
            booking_status_sweep, "build_test_directory", lambda settings: directory, raising=False
        )
        _use_settings(
            monkeypatch,
            BOOKING_DIRECTORY_FACTORY="agent.workers.booking_status_sweep:build_test_directory",
        )

        await async_main()

        assert worker.await_args.args[1] is directory

    @pytest.mark.asyncio
    async def test_explicit_directory_wins_over_factory(self, monkeypatch, worker):
        _use_settings(monkeypatch)
        directory = FakeDirectory({})
        factory = MagicMock()

        await async_main(directory=directory, directory_factory=factory)

        factory.assert_not_called()
        assert worker.await_args.args[1] is directory

    @pytest.mark.asyncio
    async def test_no_directory_configured(self, monkeypatch, worker):
        _use_settings(monkeypatch)

        await async_main()

        assert worker.await_args.args[1] is None
        booking_status_sweep.close_redis_client.assert_awaited_once()

    def test_malformed_factory_path_rejected(self):
        with pytest.raises(ValueError):
            load_directory_factory("agent.workers.booking_status_sweep")
