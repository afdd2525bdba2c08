"""
Appointment Service - status and human-control changes on appointment_requests.

The agent mutates an appointment only through this store. Every write is a
guarded update: it is skipped (and reported as such) when a human has taken
control, so an admin reply can never race with an automated one.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol
from uuid import UUID

from sqlalchemy import select, update

from database.connection import get_async_session
from database.models import (
    ACTIVE_REQUEST_STATUSES,
    AppointmentRequest,
    AppointmentRequestStatus,
)

logger = logging.getLogger(__name__)

# Forward-only progression the agent may apply on its own
STATUS_ORDER: dict[AppointmentRequestStatus, int] = {
    AppointmentRequestStatus.PENDING: 0,
    AppointmentRequestStatus.CONTACTED: 1,
    AppointmentRequestStatus.NEGOTIATING: 2,
}


@dataclass(frozen=True)
class AppointmentSnapshot:
    id: UUID
    resource_id: str
    resource_name: str
    resource_email: str | None
    requester_id: str
    requester_name: str | None
    requester_email: str | None
    status: AppointmentRequestStatus
    human_control_enabled: bool
    confirmed_datetime: str | None = None

    @classmethod
    def from_model(cls, row: AppointmentRequest) -> "AppointmentSnapshot":
        return cls(
            id=row.id,
            resource_id=row.resource_id,
            resource_name=row.resource_name,
            resource_email=row.resource_email,
            requester_id=row.requester_id,
            requester_name=row.requester_name,
            requester_email=row.requester_email,
            status=row.status,
            human_control_enabled=row.human_control_enabled,
            confirmed_datetime=row.confirmed_datetime,
        )


@dataclass(frozen=True)
class StatusTransition:
    """A status change that was applied."""

    appointment: AppointmentSnapshot
    previous_status: AppointmentRequestStatus


class AppointmentStore(Protocol):
    async def get(self, appointment_id: UUID) -> AppointmentSnapshot | None: ...

    async def claim_for_agent(self, appointment_id: UUID) -> bool: ...

    async def record_activity(self, appointment_id: UUID) -> None: ...

    async def advance_status(
        self, appointment_id: UUID, status: AppointmentRequestStatus
    ) -> bool: ...

    async def mark_confirmed(
        self, appointment_id: UUID, confirmed_datetime: str, notes: str | None = None
    ) -> StatusTransition | None: ...

    async def mark_cancelled(
        self, appointment_id: UUID, reason: str, cancelled_by: str
    ) -> StatusTransition | None: ...

    async def enable_human_control(self, appointment_id: UUID, reason: str) -> None: ...

    async def release_human_control(self, appointment_id: UUID) -> bool: ...


class SqlAppointmentStore:
    """AppointmentStore over appointment_requests."""

    async def get(self, appointment_id: UUID) -> AppointmentSnapshot | None:
        async with get_async_session() as session:
            row = await session.get(AppointmentRequest, appointment_id)
            return AppointmentSnapshot.from_model(row) if row else None

    async def claim_for_agent(self, appointment_id: UUID) -> bool:
        """
        Stamp last_tool_executed_at if the agent is still in control.

        Returns:
            False when human control is enabled or the appointment is gone
        """
        async with get_async_session() as session:
            result = await session.execute(
                update(AppointmentRequest)
                .where(
                    AppointmentRequest.id == appointment_id,
                    AppointmentRequest.human_control_enabled.is_(False),
                )
                .values(last_tool_executed_at=datetime.now(UTC))
            )
            await session.commit()
            return result.rowcount > 0

    async def record_activity(self, appointment_id: UUID) -> None:
        async with get_async_session() as session:
            await session.execute(
                update(AppointmentRequest)
                .where(AppointmentRequest.id == appointment_id)
                .values(last_activity_at=datetime.now(UTC))
            )
            await session.commit()

    async def advance_status(
        self, appointment_id: UUID, status: AppointmentRequestStatus
    ) -> bool:
        """Move pending -> contacted -> negotiating; never backwards."""
        earlier = [s for s, rank in STATUS_ORDER.items() if rank < STATUS_ORDER[status]]
        async with get_async_session() as session:
            result = await session.execute(
                update(AppointmentRequest)
                .where(
                    AppointmentRequest.id == appointment_id,
                    AppointmentRequest.status.in_(earlier),
                )
                .values(status=status, last_activity_at=datetime.now(UTC))
            )
            await session.commit()
            return result.rowcount > 0

    async def mark_confirmed(
        self, appointment_id: UUID, confirmed_datetime: str, notes: str | None = None
    ) -> StatusTransition | None:
        """
        Confirm (or reschedule) an appointment.

        Returns:
            None when skipped: human control, cancelled, missing, or already
            confirmed for the same datetime
        """
        async with get_async_session() as session:
            row = await session.scalar(
                select(AppointmentRequest)
                .where(AppointmentRequest.id == appointment_id)
                .with_for_update()
            )
            if row is None or row.human_control_enabled:
                return None

            previous = row.status
            if previous == AppointmentRequestStatus.CONFIRMED:
                if _same_datetime(row.confirmed_datetime, confirmed_datetime):
                    logger.info(
                        f"Appointment already confirmed for this datetime | "
                        f"appointment_id={appointment_id}",
                        extra={"appointment_id": str(appointment_id)},
                    )
                    return None
            elif previous not in ACTIVE_REQUEST_STATUSES:
                logger.warning(
                    f"Cannot confirm appointment | appointment_id={appointment_id} | "
                    f"status={previous.value}"
                )
                return None

            row.status = AppointmentRequestStatus.CONFIRMED
            row.confirmed_datetime = confirmed_datetime
            if notes:
                row.notes = notes
            row.last_activity_at = datetime.now(UTC)
            await session.commit()

            logger.info(
                f"Appointment confirmed | appointment_id={appointment_id} | "
                f"previous_status={previous.value} | confirmed_datetime={confirmed_datetime}",
                extra={"appointment_id": str(appointment_id), "resource_id": row.resource_id},
            )
            return StatusTransition(AppointmentSnapshot.from_model(row), previous)

    async def mark_cancelled(
        self, appointment_id: UUID, reason: str, cancelled_by: str
    ) -> StatusTransition | None:
        """
        Cancel an appointment.

        Returns:
            None when skipped: human control, missing, or already cancelled
        """
        async with get_async_session() as session:
            row = await session.scalar(
                select(AppointmentRequest)
                .where(AppointmentRequest.id == appointment_id)
                .with_for_update()
            )
            if row is None or row.human_control_enabled:
                return None
            previous = row.status
            if previous == AppointmentRequestStatus.CANCELLED:
                return None

            row.status = AppointmentRequestStatus.CANCELLED
            row.cancellation_reason = reason
            row.cancelled_by = cancelled_by
            row.last_activity_at = datetime.now(UTC)
            await session.commit()

            logger.info(
                f"Appointment cancelled | appointment_id={appointment_id} | "
                f"previous_status={previous.value} | cancelled_by={cancelled_by}",
                extra={"appointment_id": str(appointment_id), "resource_id": row.resource_id},
            )
            return StatusTransition(AppointmentSnapshot.from_model(row), previous)

    async def enable_human_control(self, appointment_id: UUID, reason: str) -> None:
        async with get_async_session() as session:
            await session.execute(
                update(AppointmentRequest)
                .where(AppointmentRequest.id == appointment_id)
                .values(human_control_enabled=True, human_control_reason=reason)
            )
            await session.commit()
        logger.info(
            f"Human control enabled | appointment_id={appointment_id}",
            extra={"appointment_id": str(appointment_id)},
        )

    async def release_human_control(self, appointment_id: UUID) -> bool:
        async with get_async_session() as session:
            result = await session.execute(
                update(AppointmentRequest)
                .where(
                    AppointmentRequest.id == appointment_id,
                    AppointmentRequest.human_control_enabled.is_(True),
                )
                .values(human_control_enabled=False, human_control_reason=None)
            )
            await session.commit()
            return result.rowcount > 0


def _same_datetime(existing: str | None, new: str) -> bool:
    if existing is None:
        return False
    return " ".join(existing.lower().split()) == " ".join(new.lower().split())
