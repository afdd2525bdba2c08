"""
SQLAlchemy ORM models for the scheduling core.

This module defines the tables the agent reads and mutates:
- appointment_requests: One scheduling conversation between a client and a therapist
- resource_booking_status: Authoritative per-therapist capacity record

All models use:
- TIMESTAMP WITH TIME ZONE for datetime fields
- Proper indexes for the capacity queries (resource_id + status)
"""

from datetime import datetime
from enum import Enum as PyEnum
from uuid import UUID, uuid4

from sqlalchemy import (
    TIMESTAMP,
    Boolean,
    CheckConstraint,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy import (
    Enum as SQLEnum,
)
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# ============================================================================
# Base Class
# ============================================================================


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


# ============================================================================
# Enums
# ============================================================================


class AppointmentRequestStatus(str, PyEnum):
    """Appointment request lifecycle status."""

    PENDING = "pending"            # Created, nobody contacted yet
    CONTACTED = "contacted"        # Therapist emailed
    NEGOTIATING = "negotiating"    # Slots exchanged between parties
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"

    def __str__(self):
        return self.value


# Requests that are still being worked on by the agent
ACTIVE_REQUEST_STATUSES = (
    AppointmentRequestStatus.PENDING,
    AppointmentRequestStatus.CONTACTED,
    AppointmentRequestStatus.NEGOTIATING,
)


# ============================================================================
# Models
# ============================================================================


class AppointmentRequest(Base):
    """
    Appointment request - one scheduling conversation.

    The booking capacity controller counts distinct requesters over
    non-cancelled rows; the tool executor moves status forward.
    """

    __tablename__ = "appointment_requests"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True), primary_key=True, default=uuid4
    )

    # Bookable resource (therapist)
    resource_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    resource_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    resource_email: Mapped[str | None] = mapped_column(String(320), nullable=True)

    # Requester (client)
    requester_id: Mapped[str] = mapped_column(String(320), nullable=False)
    requester_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    requester_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    status: Mapped[AppointmentRequestStatus] = mapped_column(
        SQLEnum(
            AppointmentRequestStatus,
            name="appointment_request_status",
            values_callable=lambda x: [e.value for e in x],
        ),
        default=AppointmentRequestStatus.PENDING,
        nullable=False,
    )

    # Human takeover: agent must not act while enabled
    human_control_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    human_control_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    confirmed_datetime: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String(32), nullable=True)

    last_activity_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, server_default=func.now()
    )
    last_tool_executed_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        Index("idx_appointment_requests_resource_status", "resource_id", "status"),
        Index("idx_appointment_requests_requester", "requester_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<AppointmentRequest(id={self.id}, resource_id={self.resource_id}, "
            f"requester_id={self.requester_id}, status={self.status})>"
        )


class ResourceBookingStatus(Base):
    """
    Capacity record for one bookable resource.

    unique_requester_count is maintained under SERIALIZABLE isolation only
    (see agent.services.booking_capacity). The row is deleted when the
    count drops to zero.
    """

    __tablename__ = "resource_booking_status"

    resource_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    resource_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")

    unique_requester_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    has_confirmed_engagement: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    confirmed_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    frozen_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    # Attention flag, independent of freeze state
    admin_alert_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    admin_alert_acknowledged: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )

    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint(
            "unique_requester_count >= 0", name="check_unique_requester_count_non_negative"
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<ResourceBookingStatus(resource_id={self.resource_id}, "
            f"count={self.unique_requester_count}, "
            f"confirmed={self.has_confirmed_engagement}, frozen_at={self.frozen_at})>"
        )
