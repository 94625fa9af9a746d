"""Test fixtures for presence-admission.

Provides:
- In-memory stores (counters, cache, policies, devices, attendance, audit)
- mock_alerts: An AsyncMock IAlertDispatcher that captures calls
- metrics: A PrometheusMetricsRecorder on a private registry
- signer: A Signer with a fixed test secret
- make_fake_policy / make_fake_device / make_fake_context: model builders
- StubFactorEvaluator: A configurable IFactorEvaluator
"""

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock

import pytest

from presence_admission.adapters.memory_store import (
    InMemoryAttendanceStore,
    InMemoryAuditRepository,
    InMemoryCacheStore,
    InMemoryCounterStore,
    InMemoryDeviceStore,
    InMemoryPolicyStore,
)
from presence_admission.adapters.metrics import PrometheusMetricsRecorder
from presence_admission.core.schemas import (
    DeviceRecord,
    FactorEvaluationResult,
    GeoPoint,
    NetworkEvidence,
    Policy,
    PresenceMode,
    QrEvidence,
    SubmissionContext,
)
from presence_admission.core.signer import Signer

TEST_SECRET = "test-signing-secret"

# Monday 2024-03-04, five minutes after a 09:00 start.
MONDAY_0905 = datetime(2024, 3, 4, 9, 5, tzinfo=UTC)
OFFICE_LOCATION = GeoPoint(latitude=40.7128, longitude=-74.0060)


# ---------------------------------------------------------------------------
# Stores and collaborators
# ---------------------------------------------------------------------------


@pytest.fixture()
def counter_store() -> InMemoryCounterStore:
    return InMemoryCounterStore()


@pytest.fixture()
def cache_store() -> InMemoryCacheStore:
    return InMemoryCacheStore()


@pytest.fixture()
def policy_store() -> InMemoryPolicyStore:
    """Policy store seeded with the default office policy.

    Returns:
        InMemoryPolicyStore holding make_fake_policy().
    """
    return InMemoryPolicyStore([make_fake_policy()])


@pytest.fixture()
def device_store() -> InMemoryDeviceStore:
    """Device store holding one established, trusted device for user-1.

    Returns:
        InMemoryDeviceStore holding make_fake_device().
    """
    return InMemoryDeviceStore([make_fake_device()])


@pytest.fixture()
def attendance_store() -> InMemoryAttendanceStore:
    return InMemoryAttendanceStore()


@pytest.fixture()
def audit_repo() -> InMemoryAuditRepository:
    return InMemoryAuditRepository()


@pytest.fixture()
def mock_alerts() -> AsyncMock:
    """Create a mock IAlertDispatcher that captures all calls.

    Returns:
        AsyncMock with on_review and on_rejection returning None.
    """
    alerts = AsyncMock()
    alerts.on_review.return_value = None
    alerts.on_rejection.return_value = None
    return alerts


@pytest.fixture()
def metrics() -> PrometheusMetricsRecorder:
    return PrometheusMetricsRecorder()


@pytest.fixture()
def signer() -> Signer:
    return Signer(TEST_SECRET)


# ---------------------------------------------------------------------------
# Model builders
# ---------------------------------------------------------------------------


def make_fake_policy(
    policy_id: str = "policy-1",
    office_id: str | None = "office-1",
    modes: list[dict[str, Any]] | None = None,
    min_factors: int = 1,
    allow_fallback: bool = True,
    working_hours_start: str = "09:00",
    working_hours_end: str = "17:00",
    working_days: list[int] | None = None,
    late_threshold_minutes: int = 15,
    early_departure_threshold_minutes: int = 15,
    priority: int = 0,
    is_active: bool = True,
    created_at: datetime | None = None,
    version: int = 1,
) -> Policy:
    """Create a Policy for tests.

    Args:
        policy_id: Policy id.
        office_id: Office scope, None for a global policy.
        modes: presence_modes entries; a single required geofence by default.
        min_factors: Minimum passing factors.
        allow_fallback: Whether partial factors lead to REVIEW.
        working_hours_start: HH:MM start.
        working_hours_end: HH:MM end.
        working_days: Weekdays with 0 = Sunday; Monday to Friday by default.
        late_threshold_minutes: Grace period after the start.
        early_departure_threshold_minutes: Grace period before the end.
        priority: Resolution priority.
        is_active: Active flag.
        created_at: Creation time.
        version: Policy version.

    Returns:
        A validated Policy.
    """
    return Policy.model_validate(
        {
            "id": policy_id,
            "name": f"Policy {policy_id}",
            "office_id": office_id,
            "version": version,
            "is_active": is_active,
            "priority": priority,
            "required_factors": {
                "min_factors": min_factors,
                "presence_modes": modes or [{"mode": "geofence", "required": True, "weight": 1.0}],
                "allow_fallback": allow_fallback,
            },
            "working_hours_start": working_hours_start,
            "working_hours_end": working_hours_end,
            "working_days": working_days if working_days is not None else [1, 2, 3, 4, 5],
            "late_threshold_minutes": late_threshold_minutes,
            "early_departure_threshold_minutes": early_departure_threshold_minutes,
            "created_at": created_at or datetime(2024, 1, 1, tzinfo=UTC),
        }
    )


def make_fake_device(
    device_id: str = "device-1",
    user_id: str = "user-1",
    is_trusted: bool = True,
    is_active: bool = True,
    age_days: int = 60,
    last_used_days_ago: int | None = 1,
) -> DeviceRecord:
    """Create a DeviceRecord relative to the current time.

    Args:
        device_id: Device id.
        user_id: Owning user.
        is_trusted: Trusted flag.
        is_active: Active flag.
        age_days: Days since registration.
        last_used_days_ago: Days since last use, None for never used.

    Returns:
        DeviceRecord.
    """
    now = datetime.now(UTC)
    return DeviceRecord(
        id=device_id,
        user_id=user_id,
        device_fingerprint=f"fp-{device_id}",
        is_trusted=is_trusted,
        is_active=is_active,
        created_at=now - timedelta(days=age_days),
        last_used_at=now - timedelta(days=last_used_days_ago) if last_used_days_ago is not None else None,
    )


def make_fake_context(
    user_id: str = "user-1",
    device_id: str = "device-1",
    office_id: str | None = "office-1",
    timestamp: datetime = MONDAY_0905,
    location: GeoPoint = OFFICE_LOCATION,
    ssid: str | None = None,
    qr_token: str | None = None,
) -> SubmissionContext:
    """Create a SubmissionContext for tests.

    Returns:
        SubmissionContext with geofence evidence and optional network / QR evidence.
    """
    return SubmissionContext(
        user_id=user_id,
        device_id=device_id,
        office_id=office_id,
        timestamp=timestamp,
        location=location,
        network=NetworkEvidence(ssid=ssid) if ssid else None,
        qr=QrEvidence(token=qr_token) if qr_token else None,
    )


class StubFactorEvaluator:
    """Configurable IFactorEvaluator.

    Args:
        mode: Presence mode handled.
        passed: Result returned by evaluate().
        confidence: Confidence returned by evaluate().
        delay: Seconds to sleep before answering.
        raises: Exception raised instead of answering.
    """

    def __init__(
        self,
        mode: PresenceMode = PresenceMode.GEOFENCE,
        passed: bool = True,
        confidence: float = 1.0,
        delay: float = 0.0,
        raises: Exception | None = None,
    ) -> None:
        self.mode = mode
        self._passed = passed
        self._confidence = confidence
        self._delay = delay
        self._raises = raises
        self.calls = 0

    async def evaluate(self, context: SubmissionContext, policy: Policy) -> FactorEvaluationResult:
        self.calls += 1
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._raises is not None:
            raise self._raises
        return FactorEvaluationResult(
            mode=self.mode,
            passed=self._passed,
            confidence=self._confidence if self._passed else 0.0,
            error=None if self._passed else f"{self.mode} check failed",
        )
