"""Anti-spoofing motion analysis between consecutive location fixes.

Compares the claimed location with the user's last known fix using the
haversine great-circle distance and flags:
- teleport: the jump exceeds teleport_distance_meters
- speed violation: the implied speed exceeds max_speed_mps

A failed check never short-circuits the pipeline; it demotes the final
decision from ACCEPTED to REVIEW.
"""

import math
from datetime import UTC, datetime

from presence_admission.core.schemas import GeoPoint, LocationFix, MotionGuardResult

EARTH_RADIUS_METERS = 6_371_000.0

_DEFAULT_MAX_SPEED_MPS = 8.0
_DEFAULT_TELEPORT_DISTANCE_METERS = 1000.0
_DEFAULT_MIN_TIME_DELTA_SECONDS = 1.0


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters between two WGS84 coordinates."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(delta_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    a = min(1.0, a)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_METERS * c


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


class MotionGuard:
    """Teleport and over-speed detector.

    Args:
        max_speed_mps: Highest plausible speed between fixes (default 8 m/s, ~29 km/h).
        teleport_distance_meters: Jump size flagged as a teleport.
        min_time_delta_seconds: Below this elapsed time the check passes trivially.
    """

    def __init__(
        self,
        max_speed_mps: float = _DEFAULT_MAX_SPEED_MPS,
        teleport_distance_meters: float = _DEFAULT_TELEPORT_DISTANCE_METERS,
        min_time_delta_seconds: float = _DEFAULT_MIN_TIME_DELTA_SECONDS,
    ) -> None:
        self._max_speed_mps = max_speed_mps
        self._teleport_distance_meters = teleport_distance_meters
        self._min_time_delta_seconds = min_time_delta_seconds

    def check(
        self,
        current_location: GeoPoint,
        current_timestamp: datetime,
        last_location: LocationFix | None = None,
    ) -> MotionGuardResult:
        """Analyse the move from last_location to current_location.

        Args:
            current_location: The claimed location.
            current_timestamp: When the claim was made.
            last_location: The user's previous fix, None on cold start.

        Returns:
            MotionGuardResult.
        """
        if last_location is None:
            return MotionGuardResult(
                passed=True,
                teleport_detected=False,
                speed_violation=False,
                details="No previous location to compare",
            )

        distance = haversine_distance(
            last_location.latitude,
            last_location.longitude,
            current_location.latitude,
            current_location.longitude,
        )
        elapsed = (_as_utc(current_timestamp) - _as_utc(last_location.timestamp)).total_seconds()

        if elapsed < self._min_time_delta_seconds:
            return MotionGuardResult(
                passed=True,
                teleport_detected=False,
                speed_violation=False,
                distance_meters=distance,
                time_delta_seconds=elapsed,
                last_location=last_location,
                details="Time delta too small for meaningful speed calculation",
            )

        speed = distance / elapsed
        teleport_detected = distance > self._teleport_distance_meters
        speed_violation = speed > self._max_speed_mps

        if teleport_detected:
            details = (
                f"Teleport detected: {distance:.2f}m exceeds threshold of "
                f"{self._teleport_distance_meters}m"
            )
        elif speed_violation:
            details = f"Speed violation: {speed:.2f} m/s exceeds limit of {self._max_speed_mps} m/s"
        else:
            details = f"Motion check passed: {speed:.2f} m/s over {distance:.2f}m"

        return MotionGuardResult(
            passed=not teleport_detected and not speed_violation,
            teleport_detected=teleport_detected,
            speed_violation=speed_violation,
            speed_mps=speed,
            distance_meters=distance,
            time_delta_seconds=elapsed,
            last_location=last_location,
            details=details,
        )
