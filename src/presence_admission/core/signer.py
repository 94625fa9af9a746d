"""Tamper-evident signing of integrity verdicts.

A signature is HMAC-SHA-256 over a canonical JSON rendering of the
SignaturePayload: sorted keys, compact separators, and the timestamp normalized
to UTC with millisecond precision and a Z suffix, so the same instant always
serializes to the same bytes whatever timezone the caller used.
"""

import hashlib
import hmac
import json
from datetime import UTC, datetime
from typing import Any

from presence_admission.core.schemas import (
    GeoPoint,
    IntegrityVerdict,
    SignaturePayload,
    SubmissionContext,
)
from presence_admission.observability import get_logger

logger = get_logger(__name__)

_UNKNOWN_OFFICE = "unknown"


def normalize_timestamp(value: datetime) -> str:
    """Render an instant as UTC ISO-8601 with millisecond precision.

    Naive datetimes are treated as UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def canonicalize(payload: SignaturePayload) -> bytes:
    """Deterministic byte serialization of a signature payload."""
    document = {
        "user_id": payload.user_id,
        "device_id": payload.device_id,
        "office_id": payload.office_id,
        "timestamp": normalize_timestamp(payload.timestamp),
        "location": {
            "latitude": payload.location.latitude,
            "longitude": payload.location.longitude,
        },
        "integrity_score": payload.integrity_score,
    }
    return json.dumps(document, sort_keys=True, separators=(",", ":")).encode("utf-8")


class Signer:
    """HMAC-SHA-256 signer for check-in and check-out payloads.

    Args:
        secret_key: Server-held secret.
    """

    def __init__(self, secret_key: str | bytes) -> None:
        if not secret_key:
            raise ValueError("secret_key must not be empty")
        self._key = secret_key.encode("utf-8") if isinstance(secret_key, str) else secret_key

    @staticmethod
    def payload_for(
        context: SubmissionContext,
        verdict: IntegrityVerdict,
        location: GeoPoint | None = None,
        timestamp: datetime | None = None,
    ) -> SignaturePayload:
        """Build the signed subset for a submission and its verdict.

        Args:
            context: The submission being signed.
            verdict: Verdict whose overall_score is covered.
            location: Override location (check-out uses the check-out fix).
            timestamp: Override instant.

        Returns:
            The SignaturePayload.
        """
        return SignaturePayload(
            user_id=context.user_id,
            device_id=context.device_id,
            office_id=context.office_id or _UNKNOWN_OFFICE,
            timestamp=timestamp or context.timestamp,
            location=location or context.location,
            integrity_score=verdict.overall_score,
        )

    def sign(self, payload: SignaturePayload) -> str:
        """Return the hex HMAC-SHA-256 of the canonical payload."""
        return hmac.new(self._key, canonicalize(payload), hashlib.sha256).hexdigest()

    def verify(self, signature: str, payload: SignaturePayload) -> bool:
        """Recompute and compare in constant time. Malformed input never verifies."""
        if not isinstance(signature, str):
            return False
        expected = self.sign(payload)
        try:
            return hmac.compare_digest(bytes.fromhex(signature), bytes.fromhex(expected))
        except ValueError:
            logger.warning("Malformed signature rejected", signature_length=len(signature))
            return False

    def sign_data(self, data: Any) -> str:
        """Sign an arbitrary string or JSON-serializable value."""
        if isinstance(data, str):
            message = data
        else:
            message = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
        return hmac.new(self._key, message.encode("utf-8"), hashlib.sha256).hexdigest()

    def verify_data(self, signature: str, data: Any) -> bool:
        """Constant-time verification counterpart of sign_data()."""
        if not isinstance(signature, str):
            return False
        expected = self.sign_data(data)
        try:
            return hmac.compare_digest(bytes.fromhex(signature), bytes.fromhex(expected))
        except ValueError:
            return False
