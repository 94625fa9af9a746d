"""Face recognition factor evaluator over an external HTTP service.

The face service exposes two endpoints:
- POST /v1/recognize  {"image": <base64>}  -> {"recognized", "user_id", "confidence"}
- POST /v1/liveness   {"image": <base64>, "require_blink", "require_head_movement"}
                                           -> {"is_live", "confidence"}

Every call runs under a hard timeout. The evaluator fails closed: a timeout,
a transport error, or a non-200 response yields passed=False rather than
raising, so one slow face service never stalls the whole policy evaluation.
"""

import base64
from typing import Any

import httpx

from presence_admission.core.schemas import (
    FaceEvidence,
    FactorEvaluationResult,
    Policy,
    PresenceMode,
    SubmissionContext,
)
from presence_admission.observability import get_logger

logger = get_logger(__name__)

_DEFAULT_TIMEOUT_MS = 3000
_DEFAULT_MIN_CONFIDENCE = 0.8


class FaceServiceError(Exception):
    """Raised internally when the face service cannot produce an answer.

    Attributes:
        status_code: HTTP status code from the service (if any).
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _encode_image(evidence: FaceEvidence) -> str:
    if isinstance(evidence.image_data, bytes):
        return base64.b64encode(evidence.image_data).decode("ascii")
    return evidence.image_data


class HttpFaceRecognitionEvaluator:
    """IFactorEvaluator for PresenceMode.FACE.

    Args:
        base_url: Face service base URL.
        timeout_ms: Hard timeout per HTTP call in milliseconds.
        client: Optional shared httpx.AsyncClient (tests pass one with a MockTransport).
    """

    mode = PresenceMode.FACE

    def __init__(
        self,
        base_url: str,
        timeout_ms: int = _DEFAULT_TIMEOUT_MS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_ms = timeout_ms
        self._timeout_s = timeout_ms / 1000.0
        self._client = client

    async def evaluate(self, context: SubmissionContext, policy: Policy) -> FactorEvaluationResult:
        """Recognize the submitted face and, when the policy asks for it, check liveness."""
        if context.face is None:
            return self._failed("No face image provided")

        liveness = policy.liveness_config
        min_confidence = liveness.min_confidence if liveness is not None else _DEFAULT_MIN_CONFIDENCE
        image = _encode_image(context.face)

        try:
            recognition = await self._post("/v1/recognize", {"image": image})
        except FaceServiceError as exc:
            return self._failed(str(exc))

        confidence = float(recognition.get("confidence") or 0.0)
        matched_user = recognition.get("user_id")
        details: dict[str, Any] = {"recognized": bool(recognition.get("recognized")), "confidence": confidence}

        if not recognition.get("recognized"):
            return self._failed("Face not recognized", details)
        if matched_user != context.user_id:
            logger.warning("Face matched a different user", user_id=context.user_id)
            return self._failed("Face does not match the submitting user", details)
        if confidence < min_confidence:
            return self._failed("Confidence below threshold", details, confidence)

        if liveness is not None and liveness.enabled:
            try:
                live = await self._post(
                    "/v1/liveness",
                    {
                        "image": image,
                        "require_blink": liveness.require_blink,
                        "require_head_movement": liveness.require_head_movement,
                    },
                )
            except FaceServiceError as exc:
                return self._failed(str(exc), details)
            live_confidence = float(live.get("confidence") or 0.0)
            details["liveness_confidence"] = live_confidence
            if not live.get("is_live") or live_confidence < min_confidence:
                return self._failed("Liveness check failed", details)

        return FactorEvaluationResult(mode=self.mode, passed=True, confidence=min(1.0, confidence), details=details)

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        try:
            if self._client is not None:
                response = await self._client.post(url, json=payload, timeout=self._timeout_s)
            else:
                async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                    response = await client.post(url, json=payload)
        except httpx.TimeoutException as exc:
            logger.warning("Face service timed out", url=url, timeout_ms=self._timeout_ms)
            raise FaceServiceError(f"Face service timed out after {self._timeout_ms}ms") from exc
        except httpx.RequestError as exc:
            logger.error("Face service request failed", url=url, error=str(exc))
            raise FaceServiceError("Face service unavailable") from exc

        if response.status_code != 200:
            logger.error("Face service returned unexpected status", url=url, status_code=response.status_code)
            raise FaceServiceError(
                f"Face service returned status {response.status_code}",
                status_code=response.status_code,
            )
        return response.json()

    def _failed(
        self,
        error: str,
        details: dict[str, Any] | None = None,
        confidence: float = 0.0,
    ) -> FactorEvaluationResult:
        return FactorEvaluationResult(
            mode=self.mode,
            passed=False,
            confidence=max(0.0, min(1.0, confidence)),
            details=details or {},
            error=error,
        )
