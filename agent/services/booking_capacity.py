"""
Booking capacity controller - race-free per-therapist request accounting.

Every therapist (bookable resource) has one ResourceBookingStatus row holding
the number of distinct requesters with a non-cancelled request, a confirmed
flag and a freeze timestamp. Concurrent writers (possibly on different
processes) are ordered by PostgreSQL SERIALIZABLE isolation; conflicts are
retried with bounded exponential backoff and, once retries are exhausted,
the original error propagates. No in-process lock is involved.

Freeze policy:
- A therapist freezes on its first request (frozen_at set on every new request)
- While frozen with an active request, new distinct requesters are rejected
- Reaching MAX_UNIQUE_REQUESTERS rejects new requesters regardless of freeze
- The inactivity sweep may unfreeze once ALL active requests are stale
- A confirmed engagement rejects new requesters permanently
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import (
    AsyncContextManager,
    AsyncIterator,
    Awaitable,
    Callable,
    Iterable,
    Protocol,
    TypeVar,
)
from uuid import UUID, uuid4

from sqlalchemy import delete, func, select, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from database.connection import get_async_session
from database.models import (
    ACTIVE_REQUEST_STATUSES,
    AppointmentRequest,
    AppointmentRequestStatus,
    ResourceBookingStatus,
)
from shared.resilient_api import add_jitter

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_UNIQUE_REQUESTERS = 2
INACTIVITY_ALERT_HOURS = 72

# Serialization conflict retry (3 retries => 4 attempts)
SERIALIZABLE_MAX_RETRIES = 3
SERIALIZABLE_BASE_DELAY_MS = 50
SERIALIZABLE_MAX_DELAY_MS = 500
SERIALIZABLE_JITTER_FACTOR = 0.2

SERIALIZATION_FAILURE_SQLSTATE = "40001"


# ============================================================================
# Result types
# ============================================================================


class AvailabilityReason(str, Enum):
    AVAILABLE = "available"
    CONFIRMED = "confirmed"
    FROZEN = "frozen"
    ERROR_FALLBACK = "error_fallback"


@dataclass(frozen=True)
class AvailabilityStatus:
    can_accept_new_requests: bool
    reason: AvailabilityReason


@dataclass
class CapacityRecord:
    """Plain copy of a ResourceBookingStatus row."""

    resource_id: str
    resource_name: str = ""
    unique_requester_count: int = 0
    has_confirmed_engagement: bool = False
    confirmed_at: datetime | None = None
    frozen_at: datetime | None = None
    admin_alert_at: datetime | None = None
    admin_alert_acknowledged: bool = False
    updated_at: datetime | None = None

    @property
    def is_flagged(self) -> bool:
        return self.admin_alert_at is not None and not self.admin_alert_acknowledged


@dataclass
class AppointmentRequestDraft:
    """Fields needed to open a new appointment request."""

    resource_id: str
    requester_id: str
    resource_name: str = ""
    resource_email: str | None = None
    requester_email: str | None = None
    requester_name: str | None = None
    request_id: UUID | None = None


@dataclass
class RegistrationResult:
    accepted: bool
    availability: AvailabilityStatus
    request_id: UUID | None = None
    created: bool = False


@dataclass
class InactivitySweepResult:
    flagged_resource_ids: list[str] = field(default_factory=list)
    unfrozen_resource_ids: list[str] = field(default_factory=list)

    @property
    def flagged_count(self) -> int:
        return len(self.flagged_resource_ids)

    @property
    def unfrozen_count(self) -> int:
        return len(self.unfrozen_resource_ids)


# ============================================================================
# Persistence boundary
# ============================================================================


class CapacityRepository(Protocol):
    """Queries the controller runs inside one transaction."""

    async def get_status(self, resource_id: str) -> CapacityRecord | None: ...

    async def get_statuses(self, resource_ids: Iterable[str]) -> dict[str, CapacityRecord]: ...

    async def list_statuses(self, flagged_only: bool = False) -> list[CapacityRecord]: ...

    async def save_status(self, record: CapacityRecord) -> None: ...

    async def delete_status(self, resource_id: str) -> None: ...

    async def distinct_requesters(self, resource_id: str) -> set[str]: ...

    async def find_active_request(self, resource_id: str, requester_id: str) -> UUID | None: ...

    async def has_active_requests(self, resource_id: str) -> bool: ...

    async def count_confirmed_requests(
        self, resource_id: str, exclude_request_id: UUID | None = None
    ) -> int: ...

    async def create_request(self, draft: AppointmentRequestDraft) -> UUID: ...

    async def active_request_activity(
        self, resource_ids: Iterable[str]
    ) -> dict[str, list[datetime | None]]: ...


TransactionFactory = Callable[..., AsyncContextManager[CapacityRepository]]


def is_serialization_error(error: BaseException) -> bool:
    """
    True for PostgreSQL serialization failures (SQLSTATE 40001).

    Checks the DBAPI error's sqlstate/pgcode (asyncpg and psycopg expose
    one of them), then the chained driver error, then the message text.
    """
    candidates: list[BaseException] = [error]
    if isinstance(error, DBAPIError) and error.orig is not None:
        candidates.append(error.orig)
        if error.orig.__cause__ is not None:
            candidates.append(error.orig.__cause__)

    for candidate in candidates:
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code == SERIALIZATION_FAILURE_SQLSTATE:
            return True

    message = str(error).lower()
    return "could not serialize access" in message


class SqlCapacityRepository:
    """CapacityRepository on an AsyncSession."""

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def _to_record(row: ResourceBookingStatus) -> CapacityRecord:
        return CapacityRecord(
            resource_id=row.resource_id,
            resource_name=row.resource_name,
            unique_requester_count=row.unique_requester_count,
            has_confirmed_engagement=row.has_confirmed_engagement,
            confirmed_at=row.confirmed_at,
            frozen_at=row.frozen_at,
            admin_alert_at=row.admin_alert_at,
            admin_alert_acknowledged=row.admin_alert_acknowledged,
            updated_at=row.updated_at,
        )

    async def get_status(self, resource_id: str) -> CapacityRecord | None:
        result = await self.session.execute(
            select(ResourceBookingStatus).where(ResourceBookingStatus.resource_id == resource_id)
        )
        row = result.scalar_one_or_none()
        return self._to_record(row) if row else None

    async def get_statuses(self, resource_ids: Iterable[str]) -> dict[str, CapacityRecord]:
        ids = list(resource_ids)
        if not ids:
            return {}
        result = await self.session.execute(
            select(ResourceBookingStatus).where(ResourceBookingStatus.resource_id.in_(ids))
        )
        return {row.resource_id: self._to_record(row) for row in result.scalars()}

    async def list_statuses(self, flagged_only: bool = False) -> list[CapacityRecord]:
        stmt = select(ResourceBookingStatus).order_by(ResourceBookingStatus.updated_at.desc())
        if flagged_only:
            stmt = stmt.where(
                ResourceBookingStatus.admin_alert_at.is_not(None),
                ResourceBookingStatus.admin_alert_acknowledged.is_(False),
            )
        result = await self.session.execute(stmt)
        return [self._to_record(row) for row in result.scalars()]

    async def save_status(self, record: CapacityRecord) -> None:
        values = {
            "resource_id": record.resource_id,
            "resource_name": record.resource_name,
            "unique_requester_count": record.unique_requester_count,
            "has_confirmed_engagement": record.has_confirmed_engagement,
            "confirmed_at": record.confirmed_at,
            "frozen_at": record.frozen_at,
            "admin_alert_at": record.admin_alert_at,
            "admin_alert_acknowledged": record.admin_alert_acknowledged,
        }
        stmt = pg_insert(ResourceBookingStatus).values(**values)
        update_values = {k: stmt.excluded[k] for k in values if k != "resource_id"}
        update_values["updated_at"] = func.now()
        stmt = stmt.on_conflict_do_update(
            index_elements=[ResourceBookingStatus.resource_id],
            set_=update_values,
        )
        await self.session.execute(stmt)

    async def delete_status(self, resource_id: str) -> None:
        await self.session.execute(
            delete(ResourceBookingStatus).where(ResourceBookingStatus.resource_id == resource_id)
        )

    async def distinct_requesters(self, resource_id: str) -> set[str]:
        result = await self.session.execute(
            select(AppointmentRequest.requester_id)
            .where(
                AppointmentRequest.resource_id == resource_id,
                AppointmentRequest.status != AppointmentRequestStatus.CANCELLED,
            )
            .distinct()
        )
        return set(result.scalars())

    async def find_active_request(self, resource_id: str, requester_id: str) -> UUID | None:
        result = await self.session.execute(
            select(AppointmentRequest.id)
            .where(
                AppointmentRequest.resource_id == resource_id,
                AppointmentRequest.requester_id == requester_id,
                AppointmentRequest.status.in_(ACTIVE_REQUEST_STATUSES),
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def has_active_requests(self, resource_id: str) -> bool:
        result = await self.session.execute(
            select(AppointmentRequest.id)
            .where(
                AppointmentRequest.resource_id == resource_id,
                AppointmentRequest.status.in_(ACTIVE_REQUEST_STATUSES),
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def count_confirmed_requests(
        self, resource_id: str, exclude_request_id: UUID | None = None
    ) -> int:
        stmt = select(func.count(AppointmentRequest.id)).where(
            AppointmentRequest.resource_id == resource_id,
            AppointmentRequest.status == AppointmentRequestStatus.CONFIRMED,
        )
        if exclude_request_id is not None:
            stmt = stmt.where(AppointmentRequest.id != exclude_request_id)
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def create_request(self, draft: AppointmentRequestDraft) -> UUID:
        request = AppointmentRequest(
            id=draft.request_id or uuid4(),
            resource_id=draft.resource_id,
            resource_name=draft.resource_name,
            resource_email=draft.resource_email,
            requester_id=draft.requester_id,
            requester_email=draft.requester_email,
            requester_name=draft.requester_name,
            status=AppointmentRequestStatus.PENDING,
        )
        self.session.add(request)
        await self.session.flush()
        return request.id

    async def active_request_activity(
        self, resource_ids: Iterable[str]
    ) -> dict[str, list[datetime | None]]:
        ids = list(resource_ids)
        if not ids:
            return {}
        result = await self.session.execute(
            select(AppointmentRequest.resource_id, AppointmentRequest.last_activity_at).where(
                AppointmentRequest.resource_id.in_(ids),
                AppointmentRequest.status.in_(ACTIVE_REQUEST_STATUSES),
            )
        )
        activity: dict[str, list[datetime | None]] = {}
        for resource_id, last_activity_at in result.all():
            activity.setdefault(resource_id, []).append(last_activity_at)
        return activity


@asynccontextmanager
async def sql_capacity_transaction(serializable: bool = True) -> AsyncIterator[SqlCapacityRepository]:
    """
    One database transaction exposed as a CapacityRepository.

    Commits on clean exit; serialization failures may surface either from
    a statement or from the commit itself.
    """
    async with get_async_session() as session:
        if serializable:
            await session.execute(text("SET TRANSACTION ISOLATION LEVEL SERIALIZABLE"))
        try:
            yield SqlCapacityRepository(session)
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ============================================================================
# Controller
# ============================================================================


class BookingCapacityController:
    """Authoritative admission and freeze decisions for bookable resources."""

    def __init__(
        self,
        transaction_factory: TransactionFactory = sql_capacity_transaction,
        max_unique_requesters: int = MAX_UNIQUE_REQUESTERS,
        inactivity_threshold: timedelta = timedelta(hours=INACTIVITY_ALERT_HOURS),
        max_retries: int = SERIALIZABLE_MAX_RETRIES,
        base_delay_ms: int = SERIALIZABLE_BASE_DELAY_MS,
        max_delay_ms: int = SERIALIZABLE_MAX_DELAY_MS,
        jitter_factor: float = SERIALIZABLE_JITTER_FACTOR,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] | None = None,
    ):
        self._transaction = transaction_factory
        self.max_unique_requesters = max_unique_requesters
        self.inactivity_threshold = inactivity_threshold
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.jitter_factor = jitter_factor
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(UTC))

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "BookingCapacityController":
        return cls(
            max_unique_requesters=settings.MAX_UNIQUE_REQUESTERS,
            inactivity_threshold=timedelta(hours=settings.INACTIVITY_ALERT_HOURS),
            max_retries=settings.SERIALIZABLE_MAX_RETRIES,
            base_delay_ms=settings.SERIALIZABLE_BASE_DELAY_MS,
            max_delay_ms=settings.SERIALIZABLE_MAX_DELAY_MS,
            jitter_factor=settings.SERIALIZABLE_JITTER_FACTOR,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Serializable retry
    # ------------------------------------------------------------------

    def _backoff_seconds(self, retry_state: RetryCallState) -> float:
        attempt = retry_state.attempt_number
        delay_ms = min(self.base_delay_ms * (2 ** (attempt - 1)), self.max_delay_ms)
        return add_jitter(delay_ms, self.jitter_factor) / 1000.0

    async def run_serializable(
        self,
        operation_name: str,
        work: Callable[[CapacityRepository], Awaitable[T]],
    ) -> T:
        """
        Run work in a SERIALIZABLE transaction, retrying serialization conflicts.

        Raises:
            The original conflict error once max_retries retries are exhausted,
            or any other error immediately.
        """

        def log_retry(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(
                f"Serialization conflict | operation={operation_name} | "
                f"attempt={retry_state.attempt_number}/{self.max_retries + 1} | "
                f"retrying in {delay * 1000:.0f}ms | error={error}"
            )

        async def attempt() -> T:
            async with self._transaction(serializable=True) as repo:
                return await work(repo)

        retrying = AsyncRetrying(
            retry=retry_if_exception(is_serialization_error),
            stop=stop_after_attempt(self.max_retries + 1),
            wait=self._backoff_seconds,
            sleep=self._sleep,
            before_sleep=log_retry,
            reraise=True,
        )
        try:
            return await retrying(attempt)
        except Exception as e:
            if is_serialization_error(e):
                logger.error(
                    f"Serialization retries exhausted | operation={operation_name} | "
                    f"attempts={self.max_retries + 1}"
                )
            raise

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    async def _evaluate(
        self, repo: CapacityRepository, resource_id: str, requester_id: str | None
    ) -> AvailabilityStatus:
        record = await repo.get_status(resource_id)
        if record is None:
            return AvailabilityStatus(True, AvailabilityReason.AVAILABLE)

        if record.has_confirmed_engagement:
            return AvailabilityStatus(False, AvailabilityReason.CONFIRMED)

        if requester_id and await repo.find_active_request(resource_id, requester_id):
            # Continuation of an existing conversation
            return AvailabilityStatus(True, AvailabilityReason.AVAILABLE)

        if record.unique_requester_count >= self.max_unique_requesters:
            return AvailabilityStatus(False, AvailabilityReason.FROZEN)

        if record.frozen_at is not None and await repo.has_active_requests(resource_id):
            return AvailabilityStatus(False, AvailabilityReason.FROZEN)

        return AvailabilityStatus(True, AvailabilityReason.AVAILABLE)

    async def can_accept_new_request(
        self, resource_id: str, requester_id: str | None = None
    ) -> AvailabilityStatus:
        """
        Advisory admission check (read-only, not serializable).

        Fails open with ERROR_FALLBACK on read errors; register_request()
        repeats the check authoritatively inside its transaction.
        """
        try:
            async with self._transaction(serializable=False) as repo:
                return await self._evaluate(repo, resource_id, requester_id)
        except Exception as e:
            logger.error(
                f"Availability check failed, allowing request | resource_id={resource_id} | "
                f"error={type(e).__name__}: {e}",
                extra={"resource_id": resource_id},
                exc_info=True,
            )
            return AvailabilityStatus(True, AvailabilityReason.ERROR_FALLBACK)

    async def _record_in(
        self,
        repo: CapacityRepository,
        resource_id: str,
        requester_id: str,
        resource_name: str,
    ) -> CapacityRecord:
        requesters = await repo.distinct_requesters(resource_id)
        unique_count = len(requesters | {requester_id})

        now = self._clock()
        existing = await repo.get_status(resource_id)
        if existing is None:
            record = CapacityRecord(resource_id=resource_id, resource_name=resource_name)
        else:
            record = replace(existing, resource_name=resource_name or existing.resource_name)

        record.unique_requester_count = unique_count
        record.frozen_at = now
        # New activity clears any inactivity flag
        record.admin_alert_at = None
        record.admin_alert_acknowledged = False
        await repo.save_status(record)

        logger.info(
            f"Recorded request | resource_id={resource_id} | unique_requesters={unique_count} | "
            f"frozen_at={now.isoformat()}",
            extra={"resource_id": resource_id},
        )
        return record

    async def record_new_request(
        self, resource_id: str, requester_id: str, resource_name: str = ""
    ) -> CapacityRecord:
        """
        Count distinct requesters (including requester_id) and freeze the resource.

        Read and write share one SERIALIZABLE transaction so concurrent
        writers can never persist an under-count.
        """
        return await self.run_serializable(
            "record_new_request",
            lambda repo: self._record_in(repo, resource_id, requester_id, resource_name),
        )

    async def register_request(self, draft: AppointmentRequestDraft) -> RegistrationResult:
        """
        Admit and create a new appointment request atomically.

        Duplicate check, admission check, row insert and count update run in
        one SERIALIZABLE transaction. An existing active request from the
        same requester is returned instead of creating a second one.
        """

        async def work(repo: CapacityRepository) -> RegistrationResult:
            existing_id = await repo.find_active_request(draft.resource_id, draft.requester_id)
            if existing_id is not None:
                return RegistrationResult(
                    accepted=True,
                    availability=AvailabilityStatus(True, AvailabilityReason.AVAILABLE),
                    request_id=existing_id,
                    created=False,
                )

            availability = await self._evaluate(repo, draft.resource_id, draft.requester_id)
            if not availability.can_accept_new_requests:
                return RegistrationResult(accepted=False, availability=availability)

            request_id = await repo.create_request(draft)
            await self._record_in(repo, draft.resource_id, draft.requester_id, draft.resource_name)
            return RegistrationResult(
                accepted=True,
                availability=availability,
                request_id=request_id,
                created=True,
            )

        result = await self.run_serializable("register_request", work)
        if not result.accepted:
            logger.info(
                f"Request rejected | resource_id={draft.resource_id} | "
                f"reason={result.availability.reason.value}",
                extra={"resource_id": draft.resource_id},
            )
        return result

    # ------------------------------------------------------------------
    # Confirmation and cancellation
    # ------------------------------------------------------------------

    async def mark_confirmed(self, resource_id: str, resource_name: str = "") -> CapacityRecord:
        """Permanently freeze the resource after a confirmed engagement."""

        async def work(repo: CapacityRepository) -> CapacityRecord:
            now = self._clock()
            existing = await repo.get_status(resource_id)
            record = existing or CapacityRecord(resource_id=resource_id, resource_name=resource_name)
            record.has_confirmed_engagement = True
            record.confirmed_at = now
            record.frozen_at = record.frozen_at or now
            if resource_name:
                record.resource_name = resource_name
            await repo.save_status(record)
            return record

        record = await self.run_serializable("mark_confirmed", work)
        logger.info(
            f"Resource marked confirmed | resource_id={resource_id}",
            extra={"resource_id": resource_id},
        )
        return record

    async def unmark_confirmed(
        self, resource_id: str, cancelled_request_id: UUID | None = None
    ) -> bool:
        """
        Clear the confirmed flag after a confirmed booking is cancelled.

        Kept when another confirmed request still exists for the resource.

        Returns:
            True if the flag was cleared
        """

        async def work(repo: CapacityRepository) -> bool:
            record = await repo.get_status(resource_id)
            if record is None or not record.has_confirmed_engagement:
                return False
            others = await repo.count_confirmed_requests(resource_id, cancelled_request_id)
            if others > 0:
                logger.info(
                    f"Keeping confirmed flag, other confirmed requests exist | "
                    f"resource_id={resource_id} | confirmed={others}"
                )
                return False
            record.has_confirmed_engagement = False
            record.confirmed_at = None
            await repo.save_status(record)
            return True

        cleared = await self.run_serializable("unmark_confirmed", work)
        if cleared:
            logger.info(
                f"Confirmed flag cleared | resource_id={resource_id}",
                extra={"resource_id": resource_id},
            )
        return cleared

    async def recalculate_unique_count(self, resource_id: str) -> int:
        """
        Recount distinct non-cancelled requesters (after a cancellation).

        Deletes the record when the count reaches zero and resets the admin
        alert when the count drops below the maximum.

        Returns:
            The new count
        """

        async def work(repo: CapacityRepository) -> int:
            count = len(await repo.distinct_requesters(resource_id))
            record = await repo.get_status(resource_id)

            if count == 0:
                if record is not None:
                    await repo.delete_status(resource_id)
                return 0

            if record is None:
                record = CapacityRecord(resource_id=resource_id)
            record.unique_requester_count = count
            if count < self.max_unique_requesters:
                record.admin_alert_at = None
                record.admin_alert_acknowledged = False
            await repo.save_status(record)
            return count

        count = await self.run_serializable("recalculate_unique_count", work)
        logger.info(
            f"Recalculated unique requester count | resource_id={resource_id} | count={count}"
            + (" | record deleted" if count == 0 else ""),
            extra={"resource_id": resource_id},
        )
        return count

    # ------------------------------------------------------------------
    # Freeze status
    # ------------------------------------------------------------------

    @staticmethod
    def _frozen(record: CapacityRecord | None, has_active: bool) -> bool:
        if record is None:
            return False
        if record.has_confirmed_engagement:
            return True
        return record.frozen_at is not None and has_active

    async def should_be_frozen(self, resource_id: str) -> bool:
        async with self._transaction(serializable=False) as repo:
            record = await repo.get_status(resource_id)
            has_active = record is not None and await repo.has_active_requests(resource_id)
            return self._frozen(record, has_active)

    async def batch_compute_freeze_status(self, resource_ids: Iterable[str]) -> dict[str, bool]:
        """Freeze decision for many resources using two queries."""
        ids = list(dict.fromkeys(resource_ids))
        async with self._transaction(serializable=False) as repo:
            records = await repo.get_statuses(ids)
            activity = await repo.active_request_activity(records.keys())
        return {
            resource_id: self._frozen(records.get(resource_id), bool(activity.get(resource_id)))
            for resource_id in ids
        }

    # ------------------------------------------------------------------
    # Inactivity sweep and admin flags
    # ------------------------------------------------------------------

    @staticmethod
    def _all_stale(activity: list[datetime | None], cutoff: datetime) -> bool:
        return bool(activity) and all(ts is None or ts < cutoff for ts in activity)

    async def check_and_handle_inactive_resources(
        self, now: datetime | None = None
    ) -> InactivitySweepResult:
        """
        Flag and auto-unfreeze resources whose active requests are all stale.

        Flag: count >= max, not confirmed, not already flagged.
        Unfreeze: not confirmed, frozen, count >= 1.
        Both may apply to the same resource in one pass (flag first).
        """
        now = now or self._clock()
        cutoff = now - self.inactivity_threshold

        async def work(repo: CapacityRepository) -> InactivitySweepResult:
            result = InactivitySweepResult()
            candidates = [
                r for r in await repo.list_statuses()
                if not r.has_confirmed_engagement and r.unique_requester_count >= 1
            ]
            activity = await repo.active_request_activity(r.resource_id for r in candidates)

            for record in candidates:
                if not self._all_stale(activity.get(record.resource_id, []), cutoff):
                    continue

                changed = False
                if (
                    record.unique_requester_count >= self.max_unique_requesters
                    and record.admin_alert_at is None
                ):
                    record.admin_alert_at = now
                    record.admin_alert_acknowledged = False
                    result.flagged_resource_ids.append(record.resource_id)
                    changed = True

                if record.frozen_at is not None:
                    record.frozen_at = None
                    result.unfrozen_resource_ids.append(record.resource_id)
                    changed = True

                if changed:
                    await repo.save_status(record)
            return result

        result = await self.run_serializable("check_and_handle_inactive_resources", work)

        if result.flagged_count or result.unfrozen_count:
            logger.warning(
                f"Inactivity sweep | flagged={result.flagged_count} | "
                f"unfrozen={result.unfrozen_count} | "
                f"threshold_hours={self.inactivity_threshold.total_seconds() / 3600:.0f}"
            )
        else:
            logger.debug("Inactivity sweep completed - nothing to flag or unfreeze")
        return result

    async def list_flagged_resources(self) -> list[CapacityRecord]:
        async with self._transaction(serializable=False) as repo:
            return await repo.list_statuses(flagged_only=True)

    async def acknowledge_flag(self, resource_id: str) -> bool:
        """Admin acknowledged the attention flag. Returns False if not flagged."""

        async def work(repo: CapacityRepository) -> bool:
            record = await repo.get_status(resource_id)
            if record is None or record.admin_alert_at is None:
                return False
            record.admin_alert_acknowledged = True
            await repo.save_status(record)
            return True

        return await self.run_serializable("acknowledge_flag", work)

    async def list_statuses(self) -> list[CapacityRecord]:
        async with self._transaction(serializable=False) as repo:
            return await repo.list_statuses()

