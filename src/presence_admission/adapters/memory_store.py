"""In-memory stores for local runs and hermetic tests.

Each class implements the same protocol as its Redis or SQLAlchemy
counterpart with identical semantics:

- InMemoryCounterStore: ICounterStore (sliding window, per-key asyncio.Lock)
- InMemoryCacheStore: ICacheStore (TTL checked on read)
- InMemoryPolicyStore: IPolicyStore
- InMemoryDeviceStore: IDeviceStore
- InMemoryAttendanceStore: IAttendanceStore
- InMemoryAuditRepository: IAuditRepository (append-only)

State lives in the process, so these are not shared between workers.
"""

from __future__ import annotations

import asyncio
import bisect
import time
import uuid
from collections import defaultdict
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from presence_admission.core.schemas import (
    AttendanceRecord,
    AttendanceStatus,
    DeviceRecord,
    GeoPoint,
    LocationFix,
    Policy,
)
from presence_admission.errors import ConflictError, NotFoundError

_EPOCH = datetime.min.replace(tzinfo=UTC)
_SWEEP_INTERVAL_MS = 60_000


class InMemoryCounterStore:
    """Sliding-window counters keyed by identity.

    Every key holds a sorted list of attempt timestamps in epoch milliseconds.
    sliding_window_admit() holds the key's lock for the whole
    prune/count/record sequence. An admitted attempt sets the key to expire
    two windows later, like the PEXPIRE in the Redis script, and expired keys
    are swept together with their idle locks.
    """

    def __init__(self) -> None:
        self._attempts: dict[str, list[int]] = {}
        self._expires_at: dict[str, int] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._next_sweep_ms = 0

    def _forget(self, key: str) -> None:
        self._attempts.pop(key, None)
        self._expires_at.pop(key, None)

    def _sweep(self, now_ms: int) -> None:
        if now_ms < self._next_sweep_ms:
            return
        self._next_sweep_ms = now_ms + _SWEEP_INTERVAL_MS
        for key, expires_at in list(self._expires_at.items()):
            lock = self._locks.get(key)
            if expires_at <= now_ms and (lock is None or not lock.locked()):
                self._forget(key)
        for key, lock in list(self._locks.items()):
            if key not in self._attempts and not lock.locked():
                del self._locks[key]

    def _prune(self, key: str, now_ms: int, window_ms: int) -> list[int]:
        expires_at = self._expires_at.get(key)
        if expires_at is not None and expires_at <= now_ms:
            self._forget(key)
        attempts = self._attempts.get(key, [])
        cutoff = bisect.bisect_right(attempts, now_ms - window_ms)
        del attempts[:cutoff]
        return attempts

    async def sliding_window_admit(
        self,
        key: str,
        now_ms: int,
        window_ms: int,
        limit: int,
    ) -> tuple[bool, int, int | None]:
        self._sweep(now_ms)
        async with self._locks[key]:
            attempts = self._prune(key, now_ms, window_ms)
            count = len(attempts)
            oldest = attempts[0] if attempts else None
            if count >= limit:
                return False, count, oldest
            bisect.insort(attempts, now_ms)
            self._attempts[key] = attempts
            self._expires_at[key] = now_ms + 2 * window_ms
            return True, count, oldest if oldest is not None else now_ms

    async def count_window(self, key: str, now_ms: int, window_ms: int) -> int:
        self._sweep(now_ms)
        async with self._locks[key]:
            return len(self._prune(key, now_ms, window_ms))

    async def delete(self, key: str) -> None:
        async with self._locks[key]:
            self._forget(key)

    @property
    def key_count(self) -> int:
        """Identities currently tracked."""
        return len(self._attempts)


class InMemoryCacheStore:
    """String cache with per-entry TTL.

    Args:
        clock: Monotonic seconds clock (injectable for tests).
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: dict[str, tuple[str, float | None]] = {}
        self._clock = clock

    async def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._entries[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)


class InMemoryPolicyStore:
    """Policy documents kept in a dict, with the same resolution order as SQL."""

    def __init__(self, policies: list[Policy] | None = None) -> None:
        self._policies: dict[str, Policy] = {}
        for policy in policies or []:
            self._policies[policy.id] = policy

    async def get_active_by_id(self, policy_id: str) -> Policy | None:
        policy = self._policies.get(policy_id)
        return policy if policy is not None and policy.is_active else None

    async def get_applicable_for_office(self, office_id: str) -> Policy | None:
        candidates = [
            policy
            for policy in self._policies.values()
            if policy.is_active and policy.office_id in (office_id, None)
        ]
        if not candidates:
            return None
        candidates.sort(
            key=lambda p: (
                0 if p.office_id == office_id else 1,
                -p.priority,
                -(p.created_at or _EPOCH).timestamp(),
            )
        )
        return candidates[0]

    async def get_by_id(self, policy_id: str) -> Policy | None:
        return self._policies.get(policy_id)

    async def list_policies(self, office_id: str | None = None, active_only: bool = False) -> list[Policy]:
        policies = [
            policy
            for policy in self._policies.values()
            if (office_id is None or policy.office_id == office_id) and (policy.is_active or not active_only)
        ]
        policies.sort(key=lambda p: (-p.priority, -(p.created_at or _EPOCH).timestamp(), p.id))
        return policies

    async def save(self, policy: Policy, expected_version: int | None = None) -> Policy:
        if expected_version is not None:
            current = self._policies.get(policy.id)
            if current is None or current.version != expected_version:
                raise ConflictError(message=f"Policy {policy.id} is no longer at version {expected_version}")
        self._policies[policy.id] = policy
        return policy


class InMemoryDeviceStore:
    """Registered devices kept in a dict."""

    def __init__(self, devices: list[DeviceRecord] | None = None) -> None:
        self._devices: dict[str, DeviceRecord] = {}
        for device in devices or []:
            self._devices[device.id] = device

    async def register(
        self,
        user_id: str,
        device_fingerprint: str | None = None,
        is_trusted: bool = False,
        device_id: str | None = None,
    ) -> DeviceRecord:
        record = DeviceRecord(
            id=device_id or str(uuid.uuid4()),
            user_id=user_id,
            device_fingerprint=device_fingerprint,
            is_trusted=is_trusted,
            created_at=datetime.now(UTC),
        )
        self._devices[record.id] = record
        return record

    async def get_for_user(self, user_id: str, device_id: str) -> DeviceRecord | None:
        device = self._devices.get(device_id)
        if device is None or device.user_id != user_id or not device.is_active:
            return None
        return device

    async def touch_last_used(self, device_id: str, when: datetime) -> None:
        device = self._devices.get(device_id)
        if device is not None:
            self._devices[device_id] = device.model_copy(update={"last_used_at": when})

    async def set_trusted(self, user_id: str, device_id: str, trusted: bool) -> bool:
        device = self._devices.get(device_id)
        if device is None or device.user_id != user_id:
            return False
        self._devices[device_id] = device.model_copy(update={"is_trusted": trusted})
        return True


class InMemoryAttendanceStore:
    """Attendance records kept in insertion order."""

    def __init__(self) -> None:
        self._records: dict[str, AttendanceRecord] = {}

    @property
    def records(self) -> list[AttendanceRecord]:
        return list(self._records.values())

    async def get_last_location(self, user_id: str) -> LocationFix | None:
        own = [record for record in self._records.values() if record.user_id == user_id]
        if not own:
            return None
        latest = max(own, key=lambda record: record.check_in_time)
        return LocationFix(
            latitude=latest.check_in_location.latitude,
            longitude=latest.check_in_location.longitude,
            timestamp=latest.check_in_time,
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
        record = AttendanceRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            device_id=device_id,
            office_id=office_id,
            policy_id=policy_id,
            check_in_time=check_in_time,
            check_in_location=check_in_location,
            check_in_method=check_in_method,
            network_ssid=network_ssid,
            status=status,
            integrity_verdict=integrity_verdict,
            signature_check_in=signature_check_in,
        )
        self._records[record.id] = record
        return record

    async def get_by_id(self, attendance_id: str) -> AttendanceRecord | None:
        return self._records.get(attendance_id)

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
        record = self._records.get(attendance_id)
        if record is None:
            raise NotFoundError(message=f"Attendance record not found: {attendance_id}")
        self._records[attendance_id] = record.model_copy(
            update={
                "check_out_time": check_out_time,
                "check_out_location": check_out_location,
                "check_out_method": check_out_method,
                "signature_check_out": signature_check_out,
                "work_duration_minutes": work_duration_minutes,
                "status": status,
            }
        )


class InMemoryAuditRepository:
    """Append-only audit entries. No update or delete operations exist."""

    def __init__(self) -> None:
        self._entries: list[dict[str, Any]] = []

    @property
    def entries(self) -> list[dict[str, Any]]:
        return list(self._entries)

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
    ) -> str:
        entry_id = str(uuid.uuid4())
        self._entries.append(
            {
                "id": entry_id,
                "user_id": user_id,
                "action": action,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "details": details,
                "timestamp": timestamp,
                "ip_address": ip_address,
                "user_agent": user_agent,
            }
        )
        return entry_id

    async def list_for_entity(self, entity_type: str, entity_id: str) -> list[dict[str, Any]]:
        matching = [
            entry
            for entry in self._entries
            if entry["entity_type"] == entity_type and entry["entity_id"] == entity_id
        ]
        return sorted(matching, key=lambda entry: entry["timestamp"])
