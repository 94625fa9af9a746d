"""Device trust scoring for (user, device) pairs.

Score model:
- base 1.0 for a device flagged trusted, 0.5 otherwise
- +0.1 (capped at 1.0) when the device was registered more than 30 days ago
- -0.2 (floored at 0.0) when it was last used more than 90 days ago; a device
  that was never used counts as stale

Device identity is security-critical, so any store error fails CLOSED.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from presence_admission.core.interfaces import IDeviceStore
from presence_admission.core.schemas import DeviceRecord, DeviceTrustResult
from presence_admission.observability import get_logger

logger = get_logger(__name__)

_DEFAULT_MIN_TRUST_SCORE = 0.7
_ESTABLISHED_AFTER = timedelta(days=30)
_STALE_AFTER = timedelta(days=90)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def compute_trust_score(device: DeviceRecord, now: datetime) -> float:
    """Trust score in [0, 1] for a stored device at instant now."""
    score = 1.0 if device.is_trusted else 0.5

    if device.created_at is not None and now - _as_utc(device.created_at) > _ESTABLISHED_AFTER:
        score = min(1.0, score + 0.1)

    if device.last_used_at is None or now - _as_utc(device.last_used_at) > _STALE_AFTER:
        score = max(0.0, score - 0.2)

    return round(max(0.0, min(1.0, score)), 4)


class DeviceTrustEvaluator:
    """Evaluates whether a device may submit presence claims for a user.

    Args:
        device_store: Store of registered devices.
        require_trusted_device: Reject devices not flagged trusted.
        min_trust_score: Minimum score when a trusted device is required.
        clock: Returns the current aware datetime.
    """

    def __init__(
        self,
        device_store: IDeviceStore,
        require_trusted_device: bool = True,
        min_trust_score: float = _DEFAULT_MIN_TRUST_SCORE,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._device_store = device_store
        self._require_trusted_device = require_trusted_device
        self._min_trust_score = min_trust_score
        self._clock = clock

    async def evaluate(self, user_id: str, device_id: str) -> DeviceTrustResult:
        """Compute the trust result for a (user, device) pair.

        Args:
            user_id: The submitting user.
            device_id: The device the submission came from.

        Returns:
            DeviceTrustResult; passed is False on any store error.
        """
        try:
            device = await self._device_store.get_for_user(user_id, device_id)
        except Exception as exc:
            logger.error(
                "Device trust lookup failed, failing closed",
                user_id=user_id,
                device_id=device_id,
                error=str(exc),
            )
            return DeviceTrustResult(
                passed=False,
                is_trusted=False,
                device_id=device_id,
                details="Error checking device trust: device store unavailable",
            )

        if device is None:
            return DeviceTrustResult(
                passed=False,
                is_trusted=False,
                device_id=device_id,
                details="Device not found or not associated with user",
            )

        now = self._clock()
        await self._touch_last_used(device_id, now)

        if self._require_trusted_device and not device.is_trusted:
            return DeviceTrustResult(
                passed=False,
                is_trusted=False,
                device_id=device_id,
                trust_score=0.0,
                device_fingerprint=device.device_fingerprint,
                last_seen=device.last_used_at,
                details="Device is not trusted for attendance submission",
            )

        trust_score = compute_trust_score(device, now)
        passed = not self._require_trusted_device or (
            device.is_trusted and trust_score >= self._min_trust_score
        )

        if passed:
            details = f"Device verified with trust score {trust_score:.2f}"
        else:
            details = f"Device trust score {trust_score:.2f} below minimum {self._min_trust_score}"

        return DeviceTrustResult(
            passed=passed,
            is_trusted=device.is_trusted,
            device_id=device_id,
            trust_score=trust_score,
            device_fingerprint=device.device_fingerprint,
            last_seen=device.last_used_at,
            details=details,
        )

    async def _touch_last_used(self, device_id: str, when: datetime) -> None:
        try:
            await self._device_store.touch_last_used(device_id, when)
        except Exception as exc:
            logger.warning("Failed to update device last-used timestamp", device_id=device_id, error=str(exc))

    async def trust_device(self, user_id: str, device_id: str) -> bool:
        """Flag a device as trusted. Returns False if nothing was updated."""
        return await self._set_trusted(user_id, device_id, True)

    async def untrust_device(self, user_id: str, device_id: str) -> bool:
        """Clear a device's trusted flag. Returns False if nothing was updated."""
        return await self._set_trusted(user_id, device_id, False)

    async def _set_trusted(self, user_id: str, device_id: str, trusted: bool) -> bool:
        try:
            updated = await self._device_store.set_trusted(user_id, device_id, trusted)
        except Exception as exc:
            logger.error("Failed to change device trust", device_id=device_id, trusted=trusted, error=str(exc))
            return False
        logger.info("Device trust changed", user_id=user_id, device_id=device_id, trusted=trusted, updated=updated)
        return updated
