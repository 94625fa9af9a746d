"""Prometheus counters for admission outcomes.

Counters live on a per-recorder CollectorRegistry so several pipelines (and
tests) never collide on the process-global default registry. User and device
ids are logged, not used as labels, to keep label cardinality bounded.
"""

from prometheus_client import CollectorRegistry, Counter, generate_latest

from presence_admission.core.schemas import PolicyDecision
from presence_admission.observability import get_logger

logger = get_logger(__name__)


class PrometheusMetricsRecorder:
    """IMetricsRecorder backed by prometheus_client.

    Args:
        registry: Registry to register the counters on; a fresh one by default.
        enabled: When False every record_* call is a no-op.
    """

    def __init__(self, registry: CollectorRegistry | None = None, enabled: bool = True) -> None:
        self.registry = registry or CollectorRegistry()
        self._enabled = enabled
        self._submissions = Counter(
            "attendance_submissions_total",
            "Attendance submissions by final decision",
            ["decision"],
            registry=self.registry,
        )
        self._rate_limit_blocks = Counter(
            "rate_limit_blocks_total",
            "Submissions blocked by the rate limiter",
            registry=self.registry,
        )
        self._motion_violations = Counter(
            "motion_guard_violations_total",
            "Motion guard violations by type",
            ["violation_type"],
            registry=self.registry,
        )
        self._device_trust_failures = Counter(
            "device_trust_failures_total",
            "Submissions rejected by device trust",
            registry=self.registry,
        )

    def record_submission(self, decision: PolicyDecision) -> None:
        if self._enabled:
            self._submissions.labels(decision=str(decision)).inc()

    def record_rate_limit_block(self, user_id: str) -> None:
        if self._enabled:
            self._rate_limit_blocks.inc()
            logger.debug("Rate limit block recorded", user_id=user_id)

    def record_motion_violation(self, user_id: str, violation_type: str) -> None:
        if self._enabled:
            self._motion_violations.labels(violation_type=violation_type).inc()
            logger.debug("Motion violation recorded", user_id=user_id, violation_type=violation_type)

    def record_device_trust_failure(self, user_id: str, device_id: str) -> None:
        if self._enabled:
            self._device_trust_failures.inc()
            logger.debug("Device trust failure recorded", user_id=user_id, device_id=device_id)

    def export_text(self) -> str:
        """Render every counter in the Prometheus text exposition format."""
        return generate_latest(self.registry).decode("utf-8")
