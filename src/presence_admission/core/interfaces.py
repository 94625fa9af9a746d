"""Abstract interfaces (Protocol classes) for the presence admission pipeline.

Defines the contracts between the core services and the adapter layer using
Python's typing.Protocol. Services depend on these protocols and never on
concrete adapter implementations, so tests can inject in-memory stores and
AsyncMock collaborators.

Protocols defined:
- ICounterStore: atomic sliding-window counter (rate limiting)
- ICacheStore: get/set/delete with TTL (policy cache)
- IPolicyStore: persistent policy documents
- IDeviceStore: registered devices
- IAttendanceStore: attendance records and last known locations
- IFactorEvaluator: one presence factor verifier
- IAuditRepository: append-only audit log
- IMetricsRecorder: admission counters
- IAlertDispatcher: review/rejection side calls
"""

from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, Protocol

from presence_admission.core.schemas import (
    AttendanceRecord,
    AttendanceStatus,
    DeviceRecord,
    FactorEvaluationResult,
    GeoPoint,
    LocationFix,
    Policy,
    PolicyDecision,
    PresenceMode,
    SubmissionContext,
)

InvalidationHook = Callable[[str, str | None], Awaitable[None]]


class ICounterStore(Protocol):
    """Shared counter store used by the rate limiter.

    Implementations must make sliding_window_admit() atomic per key: two
    concurrent callers must never both observe the last remaining slot.
    """

    async def sliding_window_admit(
        self,
        key: str,
        now_ms: int,
        window_ms: int,
        limit: int,
    ) -> tuple[bool, int, int | None]:
        """Prune, count, and (if under limit) record one attempt atomically.

        Args:
            key: Identity key, already prefixed.
            now_ms: Current time in epoch milliseconds.
            window_ms: Window length in milliseconds.
            limit: Maximum attempts allowed inside the window.

        Returns:
            (admitted, count_before_this_attempt, oldest_surviving_ms). The
            oldest timestamp is only guaranteed when admitted is False.

        Raises:
            StoreUnavailableError: If the store cannot be reached.
        """
        ...

    async def count_window(self, key: str, now_ms: int, window_ms: int) -> int:
        """Prune entries older than the window and return the surviving count."""
        ...

    async def delete(self, key: str) -> None:
        """Delete all attempts recorded under key."""
        ...


class ICacheStore(Protocol):
    """Key/value cache with per-entry TTL."""

    async def get(self, key: str) -> str | None:
        """Return the cached string or None on miss/expiry."""
        ...

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        """Store value under key, expiring after ttl_seconds when given."""
        ...

    async def delete(self, key: str) -> None:
        """Remove key if present."""
        ...


class IPolicyStore(Protocol):
    """Persistent policy documents."""

    async def get_active_by_id(self, policy_id: str) -> Policy | None:
        """Return the active policy with this id, or None."""
        ...

    async def get_applicable_for_office(self, office_id: str) -> Policy | None:
        """Return the single applicable policy for an office.

        Among active policies with office_id = target or office_id IS NULL,
        the first by (office-specific before global, priority DESC,
        created_at DESC).
        """
        ...

    async def get_by_id(self, policy_id: str) -> Policy | None:
        """Return the policy regardless of its active flag."""
        ...

    async def list_policies(self, office_id: str | None = None, active_only: bool = False) -> list[Policy]:
        """Return policies scoped to office_id, or every policy when it is None.

        Ordered by priority DESC, then created_at DESC.
        """
        ...

    async def save(self, policy: Policy, expected_version: int | None = None) -> Policy:
        """Insert or replace a policy document (admin path).

        When expected_version is given the write is conditional on the stored
        version and raises ConflictError if another writer got there first.
        """
        ...


class IDeviceStore(Protocol):
    """Registered devices."""

    async def get_for_user(self, user_id: str, device_id: str) -> DeviceRecord | None:
        """Return the active device only if it belongs to user_id."""
        ...

    async def touch_last_used(self, device_id: str, when: datetime) -> None:
        """Set the device's last-used timestamp."""
        ...

    async def set_trusted(self, user_id: str, device_id: str, trusted: bool) -> bool:
        """Flip the trusted flag. Returns False when no matching device exists."""
        ...


class IAttendanceStore(Protocol):
    """Attendance records."""

    async def get_last_location(self, user_id: str) -> LocationFix | None:
        """Return the most recent check-in fix for a user."""
        ...

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
        """Insert a new attendance record."""
        ...

    async def get_by_id(self, attendance_id: str) -> AttendanceRecord | None:
        """Return one attendance record."""
        ...

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
        """Update a record with its check-out data."""
        ...


class IFactorEvaluator(Protocol):
    """Uniform pass/fail + confidence contract of one presence factor verifier."""

    mode: PresenceMode

    async def evaluate(self, context: SubmissionContext, policy: Policy) -> FactorEvaluationResult:
        """Verify the submission's evidence for this mode."""
        ...


class IAuditRepository(Protocol):
    """Append-only audit log. Intentionally has no update or delete."""

    async def append(
        self,
        user_id: str,
        action: str,
        entity_type: str,
        entity_id: str,
        details: dict[str, Any],
        timestamp: datetime,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> Any:
        """Append one immutable audit entry."""
        ...

    async def list_for_entity(self, entity_type: str, entity_id: str) -> list[dict[str, Any]]:
        """Return the entries about one entity, oldest first."""
        ...


class IMetricsRecorder(Protocol):
    """Admission counters."""

    def record_submission(self, decision: PolicyDecision) -> None: ...

    def record_rate_limit_block(self, user_id: str) -> None: ...

    def record_motion_violation(self, user_id: str, violation_type: str) -> None: ...

    def record_device_trust_failure(self, user_id: str, device_id: str) -> None: ...


class IAlertDispatcher(Protocol):
    """Best-effort side calls for outcomes that need human attention."""

    async def on_review(self, data: dict[str, Any]) -> None: ...

    async def on_rejection(self, data: dict[str, Any]) -> None: ...
