"""SQLAlchemy ORM models for the presence admission stores.

All tables use the `presence_` prefix. Types are portable (JSON rather than
JSONB, String ids) so the same models run on PostgreSQL in production and on
SQLite in local setups.

Models:
- PolicyRow: versioned policy documents
- DeviceRow: registered devices bound to users
- AttendanceRow: check-in / check-out records with signed verdicts
- AuditLogRow: append-only audit trail

IMPORTANT: AuditLogRow is written ONLY via AuditLogRepository
(adapters/audit_log.py), which never updates or deletes rows.
"""

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    pass


class _RowMixin:
    """String UUID primary key and creation timestamp shared by every table."""

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class PolicyRow(_RowMixin, Base):
    """A policy document.

    Filterable attributes are real columns; the full validated document is
    kept in `document` and is the source of truth when mapping back to the
    Policy schema.

    Attributes:
        office_id: Scoped office, NULL for a global policy.
        version: Strictly increasing on every mutation.
        priority: Higher wins among policies of the same scope.
        document: Policy.model_dump(mode="json").
    """

    __tablename__ = "presence_policies"
    __table_args__ = (Index("ix_presence_policies_office_active", "office_id", "is_active"),)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    office_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    document: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class DeviceRow(_RowMixin, Base):
    """A device registered to a user."""

    __tablename__ = "presence_devices"

    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    device_fingerprint: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_trusted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class AttendanceRow(_RowMixin, Base):
    """One attendance record: a signed check-in and an optional signed check-out."""

    __tablename__ = "presence_attendance"
    __table_args__ = (Index("ix_presence_attendance_user_check_in", "user_id", "check_in_time"),)

    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    device_id: Mapped[str] = mapped_column(String(64), nullable=False)
    office_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    policy_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    check_in_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    check_in_latitude: Mapped[float] = mapped_column(Float, nullable=False)
    check_in_longitude: Mapped[float] = mapped_column(Float, nullable=False)
    check_in_method: Mapped[str] = mapped_column(String(50), nullable=False)
    network_ssid: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    integrity_verdict: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    signature_check_in: Mapped[str | None] = mapped_column(String(128), nullable=True)

    check_out_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    check_out_latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    check_out_longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    check_out_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    signature_check_out: Mapped[str | None] = mapped_column(String(128), nullable=True)
    work_duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)


class AuditLogRow(_RowMixin, Base):
    """Immutable audit entry. Rows are never updated or deleted."""

    __tablename__ = "presence_audit_logs"
    __table_args__ = (Index("ix_presence_audit_logs_entity", "entity_type", "entity_id"),)

    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
