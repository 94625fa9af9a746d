"""SQLAlchemy repositories for policies, devices and attendance records.

Each repository implements the corresponding protocol from core/interfaces.py.
Repositories are long-lived and hold an async_sessionmaker; every operation
runs in its own short transaction via session_scope(), which commits on
success, rolls back on failure, and translates SQLAlchemy errors into the
package's store errors:

- connection-level failures (OperationalError, pool timeouts, invalidated
  connections) become TransientStoreError, which the policy cache retries once
- every other SQLAlchemyError becomes StoreUnavailableError

NOTE: AuditLogRepository lives in audit_log.py. It is append-only and must not
grow update or delete methods.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import case, select, update
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from presence_admission.adapters.orm import AttendanceRow, DeviceRow, PolicyRow
from presence_admission.core.schemas import (
    AttendanceRecord,
    AttendanceStatus,
    DeviceRecord,
    GeoPoint,
    LocationFix,
    Policy,
)
from presence_admission.errors import (
    ConflictError,
    NotFoundError,
    StoreUnavailableError,
    TransientStoreError,
)
from presence_admission.observability import get_logger

logger = get_logger(__name__)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def _is_transient(exc: SQLAlchemyError) -> bool:
    if isinstance(exc, (OperationalError, PoolTimeoutError)):
        return True
    return isinstance(exc, DBAPIError) and exc.connection_invalidated


@asynccontextmanager
async def session_scope(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    """Yield a session inside one transaction with store-error translation.

    Raises:
        TransientStoreError: On connection-level database failures.
        StoreUnavailableError: On any other database failure.
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            if _is_transient(exc):
                raise TransientStoreError(message=f"Transient database error: {exc.__class__.__name__}") from exc
            raise StoreUnavailableError(message=f"Database error: {exc.__class__.__name__}") from exc
        except Exception:
            await session.rollback()
            raise


class PolicyRepository:
    """Policy documents on the primary database.

    Args:
        session_factory: Session factory bound to the primary engine.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @staticmethod
    def _to_policy(row: PolicyRow) -> Policy:
        try:
            return Policy.model_validate(row.document)
        except PydanticValidationError as exc:
            logger.error("Stored policy document is invalid", policy_id=row.id, errors=exc.error_count())
            raise StoreUnavailableError(message=f"Stored policy {row.id} is not a valid document") from exc

    async def get_active_by_id(self, policy_id: str) -> Policy | None:
        async with session_scope(self._session_factory) as session:
            stmt = select(PolicyRow).where(PolicyRow.id == policy_id, PolicyRow.is_active.is_(True))
            row = (await session.execute(stmt)).scalar_one_or_none()
            return self._to_policy(row) if row is not None else None

    async def get_applicable_for_office(self, office_id: str) -> Policy | None:
        """Office-specific before global, then priority DESC, then newest first."""
        async with session_scope(self._session_factory) as session:
            stmt = (
                select(PolicyRow)
                .where(
                    PolicyRow.is_active.is_(True),
                    (PolicyRow.office_id == office_id) | PolicyRow.office_id.is_(None),
                )
                .order_by(
                    case((PolicyRow.office_id == office_id, 0), else_=1),
                    PolicyRow.priority.desc(),
                    PolicyRow.created_at.desc(),
                )
                .limit(1)
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            return self._to_policy(row) if row is not None else None

    async def get_by_id(self, policy_id: str) -> Policy | None:
        async with session_scope(self._session_factory) as session:
            row = await session.get(PolicyRow, policy_id)
            return self._to_policy(row) if row is not None else None

    async def list_policies(self, office_id: str | None = None, active_only: bool = False) -> list[Policy]:
        """Policies scoped to office_id (every policy when None), highest priority first."""
        async with session_scope(self._session_factory) as session:
            stmt = select(PolicyRow)
            if office_id is not None:
                stmt = stmt.where(PolicyRow.office_id == office_id)
            if active_only:
                stmt = stmt.where(PolicyRow.is_active.is_(True))
            stmt = stmt.order_by(PolicyRow.priority.desc(), PolicyRow.created_at.desc(), PolicyRow.id)
            rows = (await session.execute(stmt)).scalars().all()
            return [self._to_policy(row) for row in rows]

    async def save(self, policy: Policy, expected_version: int | None = None) -> Policy:
        """Insert or replace a policy document.

        With expected_version the row is only rewritten while it still holds
        that version, checked and written in a single UPDATE.

        Raises:
            ConflictError: If the stored version is no longer expected_version.
        """
        document = policy.model_dump(mode="json")
        async with session_scope(self._session_factory) as session:
            if expected_version is not None:
                stmt = (
                    update(PolicyRow)
                    .where(PolicyRow.id == policy.id, PolicyRow.version == expected_version)
                    .values(
                        name=policy.name,
                        office_id=policy.office_id,
                        version=policy.version,
                        is_active=policy.is_active,
                        priority=policy.priority,
                        document=document,
                        updated_at=policy.updated_at,
                    )
                )
                result = await session.execute(stmt)
                if result.rowcount == 0:
                    raise ConflictError(
                        message=f"Policy {policy.id} is no longer at version {expected_version}",
                    )
            else:
                row = await session.get(PolicyRow, policy.id)
                if row is None:
                    row = PolicyRow(id=policy.id, document=document)
                    if policy.created_at is not None:
                        row.created_at = policy.created_at
                    session.add(row)
                row.name = policy.name
                row.office_id = policy.office_id
                row.version = policy.version
                row.is_active = policy.is_active
                row.priority = policy.priority
                row.document = document
                row.updated_at = policy.updated_at
                await session.flush()

        logger.info("Policy saved", policy_id=policy.id, version=policy.version, is_active=policy.is_active)
        return policy


class DeviceRepository:
    """Registered devices on the primary database.

    Args:
        session_factory: Session factory bound to the primary engine.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @staticmethod
    def _to_record(row: DeviceRow) -> DeviceRecord:
        return DeviceRecord(
            id=row.id,
            user_id=row.user_id,
            device_fingerprint=row.device_fingerprint,
            is_trusted=row.is_trusted,
            is_active=row.is_active,
            last_used_at=_as_utc(row.last_used_at),
            created_at=_as_utc(row.created_at),
        )

    async def register(
        self,
        user_id: str,
        device_fingerprint: str | None = None,
        is_trusted: bool = False,
        device_id: str | None = None,
    ) -> DeviceRecord:
        """Bind a new device to a user."""
        async with session_scope(self._session_factory) as session:
            row = DeviceRow(
                user_id=user_id,
                device_fingerprint=device_fingerprint,
                is_trusted=is_trusted,
                is_active=True,
            )
            if device_id is not None:
                row.id = device_id
            session.add(row)
            await session.flush()
            record = self._to_record(row)
        logger.info("Device registered", device_id=record.id, user_id=user_id, is_trusted=is_trusted)
        return record

    async def get_for_user(self, user_id: str, device_id: str) -> DeviceRecord | None:
        async with session_scope(self._session_factory) as session:
            stmt = select(DeviceRow).where(
                DeviceRow.id == device_id,
                DeviceRow.user_id == user_id,
                DeviceRow.is_active.is_(True),
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            return self._to_record(row) if row is not None else None

    async def touch_last_used(self, device_id: str, when: datetime) -> None:
        async with session_scope(self._session_factory) as session:
            await session.execute(update(DeviceRow).where(DeviceRow.id == device_id).values(last_used_at=when))

    async def set_trusted(self, user_id: str, device_id: str, trusted: bool) -> bool:
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                update(DeviceRow)
                .where(DeviceRow.id == device_id, DeviceRow.user_id == user_id)
                .values(is_trusted=trusted)
            )
            return (result.rowcount or 0) > 0


class AttendanceRepository:
    """Attendance records on the primary database.

    Args:
        session_factory: Session factory bound to the primary engine.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @staticmethod
    def _to_record(row: AttendanceRow) -> AttendanceRecord:
        check_out_location = None
        if row.check_out_latitude is not None and row.check_out_longitude is not None:
            check_out_location = GeoPoint(latitude=row.check_out_latitude, longitude=row.check_out_longitude)
        return AttendanceRecord(
            id=row.id,
            user_id=row.user_id,
            device_id=row.device_id,
            office_id=row.office_id,
            policy_id=row.policy_id,
            check_in_time=_as_utc(row.check_in_time),
            check_in_location=GeoPoint(latitude=row.check_in_latitude, longitude=row.check_in_longitude),
            check_in_method=row.check_in_method,
            network_ssid=row.network_ssid,
            status=AttendanceStatus(row.status),
            integrity_verdict=row.integrity_verdict,
            signature_check_in=row.signature_check_in,
            check_out_time=_as_utc(row.check_out_time),
            check_out_location=check_out_location,
            check_out_method=row.check_out_method,
            signature_check_out=row.signature_check_out,
            work_duration_minutes=row.work_duration_minutes,
        )

    async def get_last_location(self, user_id: str) -> LocationFix | None:
        async with session_scope(self._session_factory) as session:
            stmt = (
                select(AttendanceRow)
                .where(AttendanceRow.user_id == user_id)
                .order_by(AttendanceRow.check_in_time.desc())
                .limit(1)
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            if row is None:
                return None
            return LocationFix(
                latitude=row.check_in_latitude,
                longitude=row.check_in_longitude,
                timestamp=_as_utc(row.check_in_time),
            )

    async def create(
        self,
        user_id: str,
        device_id: str,
        office_id: str,
        policy_id: str | None,
        check_in_time: datetime,
        check_in_location: GeoPoint,
        check_in_method: str,
        network_ssid: str | None,
        status: AttendanceStatus,
        integrity_verdict: dict[str, Any],
        signature_check_in: str,
    ) -> AttendanceRecord:
        async with session_scope(self._session_factory) as session:
            row = AttendanceRow(
                user_id=user_id,
                device_id=device_id,
                office_id=office_id,
                policy_id=policy_id,
                check_in_time=check_in_time,
                check_in_latitude=check_in_location.latitude,
                check_in_longitude=check_in_location.longitude,
                check_in_method=check_in_method,
                network_ssid=network_ssid,
                status=str(status),
                integrity_verdict=integrity_verdict,
                signature_check_in=signature_check_in,
            )
            session.add(row)
            await session.flush()
            record = self._to_record(row)
        logger.info("Attendance record persisted", attendance_id=record.id, user_id=user_id, status=str(status))
        return record

    async def get_by_id(self, attendance_id: str) -> AttendanceRecord | None:
        async with session_scope(self._session_factory) as session:
            row = await session.get(AttendanceRow, attendance_id)
            return self._to_record(row) if row is not None else None

    async def record_checkout(
        self,
        attendance_id: str,
        check_out_time: datetime,
        check_out_location: GeoPoint,
        check_out_method: str,
        signature_check_out: str,
        work_duration_minutes: int,
        status: AttendanceStatus,
    ) -> None:
        """Write the check-out columns of an existing record.

        Raises:
            NotFoundError: If no record has this id.
        """
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                update(AttendanceRow)
                .where(AttendanceRow.id == attendance_id)
                .values(
                    check_out_time=check_out_time,
                    check_out_latitude=check_out_location.latitude,
                    check_out_longitude=check_out_location.longitude,
                    check_out_method=check_out_method,
                    signature_check_out=signature_check_out,
                    work_duration_minutes=work_duration_minutes,
                    status=str(status),
                )
            )
            if not result.rowcount:
                raise NotFoundError(message=f"Attendance record not found: {attendance_id}")
