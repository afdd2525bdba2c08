"""
Unit tests for appointment_service.py - guarded appointment writes.

Sessions are mocked; these tests cover the decision logic in front of each
write, not SQL generation.
"""

from contextlib import asynccontextmanager
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest

from agent.services.appointment_service import SqlAppointmentStore, _same_datetime
from database.models import AppointmentRequestStatus


def _row(**overrides):
    values = dict(
        id=uuid4(),
        resource_id="therapist-1",
        resource_name="Dr. Rivera",
        resource_email="rivera@example.com",
        requester_id="client-1",
        requester_name="Sam",
        requester_email="sam@example.com",
        status=AppointmentRequestStatus.NEGOTIATING,
        human_control_enabled=False,
        confirmed_datetime=None,
        notes=None,
        cancellation_reason=None,
        cancelled_by=None,
        last_activity_at=None,
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def _session(row=None, rowcount=1):
    session = MagicMock()
    session.scalar = AsyncMock(return_value=row)
    session.get = AsyncMock(return_value=row)
    session.execute = AsyncMock(return_value=MagicMock(rowcount=rowcount))
    session.commit = AsyncMock()
    return session


def _patch_session(session):
    @asynccontextmanager
    async def factory():
        yield session

    return patch("agent.services.appointment_service.get_async_session", factory)


# ============================================================================
# mark_confirmed
# ============================================================================


class TestMarkConfirmed:
    """Confirmation guards."""

    @pytest.mark.asyncio
    async def test_confirms_negotiating_request(self):
        row = _row()
        session = _session(row)

        with _patch_session(session):
            transition = await SqlAppointmentStore().mark_confirmed(
                row.id, "Tuesday 14 July 2026, 10:00", notes="first session"
            )

        assert transition is not None
        assert transition.previous_status == AppointmentRequestStatus.NEGOTIATING
        assert transition.appointment.status == AppointmentRequestStatus.CONFIRMED
        assert transition.appointment.confirmed_datetime == "Tuesday 14 July 2026, 10:00"
        assert row.notes == "first session"
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_human_control_skips(self):
        row = _row(human_control_enabled=True)
        session = _session(row)

        with _patch_session(session):
            assert await SqlAppointmentStore().mark_confirmed(row.id, "Monday 10:00") is None

        session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_same_datetime_is_noop(self):
        row = _row(
            status=AppointmentRequestStatus.CONFIRMED,
            confirmed_datetime="Monday 13 July 2026, 10:00",
        )
        session = _session(row)

        with _patch_session(session):
            result = await SqlAppointmentStore().mark_confirmed(
                row.id, "monday  13 July 2026, 10:00"
            )

        assert result is None
        session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reschedule_of_confirmed_request(self):
        row = _row(
            status=AppointmentRequestStatus.CONFIRMED,
            confirmed_datetime="Monday 13 July 2026, 10:00",
        )
        session = _session(row)

        with _patch_session(session):
            transition = await SqlAppointmentStore().mark_confirmed(
                row.id, "Thursday 16 July 2026, 15:00"
            )

        assert transition.previous_status == AppointmentRequestStatus.CONFIRMED
        assert row.confirmed_datetime == "Thursday 16 July 2026, 15:00"

    @pytest.mark.asyncio
    async def test_cancelled_request_cannot_be_confirmed(self):
        row = _row(status=AppointmentRequestStatus.CANCELLED)
        session = _session(row)

        with _patch_session(session):
            assert await SqlAppointmentStore().mark_confirmed(row.id, "Monday 10:00") is None

    @pytest.mark.asyncio
    async def test_missing_request(self):
        with _patch_session(_session(None)):
            assert await SqlAppointmentStore().mark_confirmed(uuid4(), "Monday 10:00") is None


# ============================================================================
# mark_cancelled
# ============================================================================


class TestMarkCancelled:
    @pytest.mark.asyncio
    async def test_cancels_and_records_reason(self):
        row = _row(status=AppointmentRequestStatus.CONFIRMED)
        session = _session(row)

        with _patch_session(session):
            transition = await SqlAppointmentStore().mark_cancelled(
                row.id, "client moved away", "client"
            )

        assert transition.previous_status == AppointmentRequestStatus.CONFIRMED
        assert row.status == AppointmentRequestStatus.CANCELLED
        assert row.cancellation_reason == "client moved away"
        assert row.cancelled_by == "client"

    @pytest.mark.asyncio
    async def test_already_cancelled_is_noop(self):
        row = _row(status=AppointmentRequestStatus.CANCELLED)
        session = _session(row)

        with _patch_session(session):
            assert await SqlAppointmentStore().mark_cancelled(row.id, "dup", "therapist") is None

        session.commit.assert_not_awaited()


# ============================================================================
# Guarded updates
# ============================================================================


class TestGuardedUpdates:
    @pytest.mark.asyncio
    async def test_claim_reports_rowcount(self):
        with _patch_session(_session(rowcount=1)):
            assert await SqlAppointmentStore().claim_for_agent(uuid4()) is True
        with _patch_session(_session(rowcount=0)):
            assert await SqlAppointmentStore().claim_for_agent(uuid4()) is False

    @pytest.mark.asyncio
    async def test_release_human_control(self):
        with _patch_session(_session(rowcount=0)):
            assert await SqlAppointmentStore().release_human_control(uuid4()) is False

    @pytest.mark.asyncio
    async def test_get_returns_snapshot(self):
        row = _row()
        with _patch_session(_session(row)):
            snapshot = await SqlAppointmentStore().get(row.id)

        assert snapshot.id == row.id
        assert snapshot.resource_name == "Dr. Rivera"
        assert snapshot.human_control_enabled is False


def test_same_datetime_normalises_case_and_spacing():
    assert _same_datetime("Monday  10:00", "monday 10:00")
    assert not _same_datetime(None, "monday 10:00")
    assert not _same_datetime("Monday 10:00", "Monday 11:00")
