"""Domain schemas for the presence admission pipeline.

All pipeline data is carried in frozen Pydantic models, never raw dicts.
Schemas are grouped by the component that produces them:

- Policy documents (Policy and its nested configs)
- Submission input (SubmissionContext and factor evidence payloads)
- Per-check results (FactorEvaluationResult, MotionGuardResult, RateLimitResult,
  DeviceTrustResult, PolicyEvaluationResult)
- Pipeline output (IntegrityVerdict, AdmissionResult, CheckoutResult)
- Store records (DeviceRecord, AttendanceRecord)

IntegrityVerdict is the payload that gets signed and stored with the attendance
record. Like every other schema here it cannot be mutated after construction.
"""

from __future__ import annotations

import re
from datetime import datetime, time
from enum import StrEnum
from typing import Any

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, field_validator

from presence_admission.errors import ErrorCode

_HHMM_PATTERN = re.compile(r"^\d{2}:\d{2}$")


class PresenceMode(StrEnum):
    """Closed set of presence factors a policy can require."""

    GEOFENCE = "geofence"
    NETWORK = "network"
    BEACON = "beacon"
    NFC = "nfc"
    QR = "qr"
    FACE = "face"


class PolicyDecision(StrEnum):
    """Terminal decision of one admission attempt."""

    ACCEPTED = "accepted"
    REVIEW = "review"
    REJECTED = "rejected"


class AttendanceStatus(StrEnum):
    """Status stored on an attendance record."""

    PRESENT = "present"
    LATE = "late"
    EARLY_DEPARTURE = "early_departure"
    ABSENT = "absent"
    REVIEW = "review"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Policy documents
# ---------------------------------------------------------------------------


class GeoDistanceConfig(_Frozen):
    """Geofence distance tolerance for a policy."""

    max_distance_meters: float = Field(ge=0, le=10_000, description="Tolerance outside the office boundary")
    strict_boundary_check: bool = Field(
        default=False,
        description="Require the fix to be inside the boundary, ignoring the tolerance",
    )


class LivenessConfig(_Frozen):
    """Face liveness requirements for a policy."""

    enabled: bool = True
    min_confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    require_blink: bool = False
    require_head_movement: bool = False


class PresenceModeConfig(_Frozen):
    """One (mode, required, weight) factor entry of a policy."""

    mode: PresenceMode
    required: bool
    weight: float = Field(default=1.0, ge=0.0, le=1.0)


class RequiredFactors(_Frozen):
    """Factor requirements of a policy."""

    min_factors: int = Field(default=1, ge=1, le=6)
    presence_modes: list[PresenceModeConfig] = Field(min_length=1)
    allow_fallback: bool = True


class Policy(_Frozen):
    """Versioned office (or global) presence policy.

    Attributes:
        office_id: Office this policy is scoped to; None for a global policy.
        version: Strictly increasing on every mutation.
        priority: Higher wins among policies of the same scope.
        working_days: Applicable weekdays, 0 = Sunday through 6 = Saturday.
    """

    id: str
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    office_id: str | None = None
    version: int = Field(default=1, ge=1)
    is_active: bool = True
    priority: int = Field(default=0, ge=0)

    required_factors: RequiredFactors
    geo_distance: GeoDistanceConfig | None = None
    liveness_config: LivenessConfig | None = None

    working_hours_start: str
    working_hours_end: str
    working_days: list[int]

    late_threshold_minutes: int = Field(default=15, ge=0)
    early_departure_threshold_minutes: int = Field(default=15, ge=0)

    created_at: datetime | None = None
    updated_at: datetime | None = None
    created_by: str | None = None
    updated_by: str | None = None

    @field_validator("working_hours_start", "working_hours_end")
    @classmethod
    def _validate_hhmm(cls, value: str) -> str:
        if not _HHMM_PATTERN.match(value):
            raise ValueError("must be formatted HH:MM")
        hours, minutes = (int(part) for part in value.split(":"))
        if hours > 23 or minutes > 59:
            raise ValueError("must be a valid time of day")
        return value

    @field_validator("working_days")
    @classmethod
    def _validate_working_days(cls, value: list[int]) -> list[int]:
        if any(day < 0 or day > 6 for day in value):
            raise ValueError("working days must be in 0..6 (0 = Sunday)")
        return sorted(set(value))

    @property
    def start_time(self) -> time:
        """Working-hours start as a time of day."""
        return _parse_hhmm(self.working_hours_start)

    @property
    def end_time(self) -> time:
        """Working-hours end as a time of day."""
        return _parse_hhmm(self.working_hours_end)


def _parse_hhmm(value: str) -> time:
    hours, minutes = (int(part) for part in value.split(":"))
    return time(hour=hours, minute=minutes)


class PolicyLoadResult(_Frozen):
    """Outcome of a conditional policy load (HTTP 304 semantics when modified is False)."""

    policy: Policy | None
    etag: str | None
    cached: bool
    modified: bool


class PolicyValidationIssue(_Frozen):
    """A single validation problem in a policy document."""

    field: str
    message: str
    code: str


class PolicyValidationResult(_Frozen):
    """Result of validating a raw policy document."""

    valid: bool
    errors: list[PolicyValidationIssue] = Field(default_factory=list)
    policy: Policy | None = None


class PolicyChange(_Frozen):
    """One audited lifecycle action on a policy."""

    action: str
    performed_by: str
    version: int
    previous_version: int | None = None
    changes: dict[str, Any] = Field(default_factory=dict)
    reason: str | None = None
    timestamp: datetime


# ---------------------------------------------------------------------------
# Submission input
# ---------------------------------------------------------------------------


class GeoPoint(_Frozen):
    """A WGS84 coordinate."""

    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)


class LocationFix(GeoPoint):
    """A coordinate observed at a specific instant."""

    timestamp: AwareDatetime


class NetworkEvidence(_Frozen):
    ssid: str | None = None
    bssid: str | None = None


class BeaconEvidence(_Frozen):
    uuid: str
    major: int
    minor: int
    rssi: int | None = None


class NfcEvidence(_Frozen):
    tag_uid: str


class QrEvidence(_Frozen):
    token: str


class FaceEvidence(_Frozen):
    image_data: bytes | str


class SubmissionContext(_Frozen):
    """Everything a user submits for one admission attempt.

    Owned by exactly one pipeline run and never persisted as-is; only the
    derived verdict is stored.
    """

    user_id: str
    device_id: str
    office_id: str | None = None
    timestamp: AwareDatetime
    location: GeoPoint
    network: NetworkEvidence | None = None
    beacon: BeaconEvidence | None = None
    nfc: NfcEvidence | None = None
    qr: QrEvidence | None = None
    face: FaceEvidence | None = None
    check_in_method: str = "multi_factor"


# ---------------------------------------------------------------------------
# Per-check results
# ---------------------------------------------------------------------------


class FactorEvaluationResult(_Frozen):
    """Pass/fail and confidence from one presence factor evaluator."""

    mode: PresenceMode
    passed: bool
    confidence: float = Field(ge=0.0, le=1.0)
    details: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None


class WorkingHoursCheck(_Frozen):
    is_working_day: bool
    is_working_hours: bool
    is_late: bool
    is_early_departure: bool


class PolicyEvaluationMetadata(_Frozen):
    evaluation_time_ms: float
    timestamp: datetime
    office_id: str | None = None
    working_hours_check: WorkingHoursCheck


class PolicyEvaluationResult(_Frozen):
    """Decision rendered by PolicyEvaluator for one policy and submission."""

    decision: PolicyDecision
    policy_id: str
    policy_version: int
    factors_evaluated: list[FactorEvaluationResult]
    factors_passed: int
    factors_required: int
    rationale: str
    metadata: PolicyEvaluationMetadata


class MotionGuardResult(_Frozen):
    """Teleport and over-speed analysis against the previous known fix."""

    passed: bool
    teleport_detected: bool
    speed_violation: bool
    speed_mps: float | None = None
    distance_meters: float | None = None
    time_delta_seconds: float | None = None
    last_location: LocationFix | None = None
    details: str = ""

    @property
    def violation_type(self) -> str | None:
        """'teleport', 'speed', or None when the check passed."""
        if self.passed:
            return None
        return "teleport" if self.teleport_detected else "speed"


class RateLimitResult(_Frozen):
    passed: bool
    limit: int
    remaining: int
    reset_at: datetime
    blocked: bool


class DeviceTrustResult(_Frozen):
    passed: bool
    is_trusted: bool
    device_id: str
    trust_score: float | None = None
    device_fingerprint: str | None = None
    last_seen: datetime | None = None
    details: str = ""


# ---------------------------------------------------------------------------
# Pipeline output
# ---------------------------------------------------------------------------


class IntegrityVerdict(_Frozen):
    """Aggregated, signable record of every check run for one submission."""

    policy_evaluation: PolicyEvaluationResult | None = None
    motion_guard: MotionGuardResult | None = None
    device_trust: DeviceTrustResult | None = None
    rate_limit: RateLimitResult | None = None
    overall_score: float = Field(ge=0.0, le=1.0)
    timestamp: datetime
    version: str = "1.0"


class SignaturePayload(_Frozen):
    """The canonical subset of a verdict covered by the signature."""

    user_id: str
    device_id: str
    office_id: str
    timestamp: datetime
    location: GeoPoint
    integrity_score: float


class ResultMetadata(_Frozen):
    submission_time_ms: float
    timestamp: datetime


class AdmissionResult(_Frozen):
    """Public result of AdmissionPipeline.submit()."""

    success: bool
    attendance_id: str | None = None
    decision: PolicyDecision
    rationale: str
    integrity_verdict: IntegrityVerdict
    signature: str | None = None
    error: ErrorCode | None = None
    metadata: ResultMetadata


class CheckoutResult(_Frozen):
    """Public result of AdmissionPipeline.checkout()."""

    success: bool
    attendance_id: str
    decision: PolicyDecision
    status: AttendanceStatus | None = None
    rationale: str
    motion_guard: MotionGuardResult | None = None
    signature: str | None = None
    work_duration_minutes: int | None = None
    error: ErrorCode | None = None
    metadata: ResultMetadata


# ---------------------------------------------------------------------------
# Store records
# ---------------------------------------------------------------------------


class DeviceRecord(_Frozen):
    """A registered device as returned by the device store."""

    id: str
    user_id: str
    device_fingerprint: str | None = None
    is_trusted: bool = False
    is_active: bool = True
    last_used_at: datetime | None = None
    created_at: datetime | None = None


class AttendanceRecord(_Frozen):
    """A persisted attendance record."""

    id: str
    user_id: str
    device_id: str
    office_id: str
    policy_id: str | None = None
    check_in_time: datetime
    check_in_location: GeoPoint
    check_in_method: str
    network_ssid: str | None = None
    status: AttendanceStatus
    integrity_verdict: dict[str, Any]
    signature_check_in: str | None = None
    check_out_time: datetime | None = None
    check_out_location: GeoPoint | None = None
    check_out_method: str | None = None
    signature_check_out: str | None = None
    work_duration_minutes: int | None = None
