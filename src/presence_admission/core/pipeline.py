"""Admission pipeline: the orchestrator for check-in and check-out.

submit() runs one submission through fixed stages:

1. rate limit          short-circuits with RATE_LIMIT_EXCEEDED
2. device trust        short-circuits with DEVICE_TRUST_FAILED
3. motion guard        never short-circuits, demotes ACCEPTED to REVIEW
4. policy resolution   short-circuits with NO_POLICY_FOUND
5. policy evaluation
6. overall score
7. integrity verdict and motion demotion
8. signature
9. persistence (everything except REJECTED)
10. metrics, audit and alerts

Nothing is persisted before stage 9, so an exception or a cancellation in any
earlier stage leaves no partial record. Unexpected exceptions become REJECTED
with INTERNAL_ERROR; asyncio.CancelledError is not an Exception and propagates.

checkout() is the second, simpler invocation against an existing record.
"""

import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from presence_admission.core.audit import AuditService
from presence_admission.core.device_trust import DeviceTrustEvaluator
from presence_admission.core.interfaces import IAlertDispatcher, IAttendanceStore, IMetricsRecorder
from presence_admission.core.motion_guard import MotionGuard
from presence_admission.core.policy_cache import PolicyCache
from presence_admission.core.policy_evaluator import PolicyEvaluator, check_working_hours
from presence_admission.core.rate_limiter import RateLimiter
from presence_admission.core.schemas import (
    AdmissionResult,
    AttendanceRecord,
    AttendanceStatus,
    CheckoutResult,
    DeviceTrustResult,
    IntegrityVerdict,
    LocationFix,
    MotionGuardResult,
    Policy,
    PolicyDecision,
    PolicyEvaluationResult,
    RateLimitResult,
    ResultMetadata,
    SignaturePayload,
    SubmissionContext,
)
from presence_admission.core.signer import Signer
from presence_admission.errors import ErrorCode
from presence_admission.observability import get_logger

logger = get_logger(__name__)

_POLICY_WEIGHT = 0.5
_MOTION_WEIGHT = 0.2
_DEVICE_WEIGHT = 0.2
_RATE_LIMIT_WEIGHT = 0.1

_POLICY_SCORES: dict[PolicyDecision, float] = {
    PolicyDecision.ACCEPTED: 1.0,
    PolicyDecision.REVIEW: 0.5,
    PolicyDecision.REJECTED: 0.0,
}

_INTERNAL_ERROR_RATIONALE = "Internal error during attendance submission. Please try again later."
_INTERNAL_CHECKOUT_RATIONALE = "Internal error during attendance check-out. Please try again later."


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def compute_overall_score(
    policy_evaluation: PolicyEvaluationResult,
    motion_guard: MotionGuardResult,
    device_trust: DeviceTrustResult,
    rate_limit: RateLimitResult,
) -> float:
    """Weighted 0..1 integrity score of a fully evaluated submission."""
    policy_score = _POLICY_SCORES[policy_evaluation.decision]
    motion_score = 1.0 if motion_guard.passed else 0.0
    device_score = device_trust.trust_score or (1.0 if device_trust.passed else 0.0)
    rate_limit_score = 1.0 if rate_limit.passed else 0.0
    score = (
        policy_score * _POLICY_WEIGHT
        + motion_score * _MOTION_WEIGHT
        + device_score * _DEVICE_WEIGHT
        + rate_limit_score * _RATE_LIMIT_WEIGHT
    )
    return round(min(1.0, max(0.0, score)), 4)


def status_for_decision(decision: PolicyDecision, policy_evaluation: PolicyEvaluationResult) -> AttendanceStatus:
    """Attendance status stored for a final decision."""
    if decision == PolicyDecision.REJECTED:
        return AttendanceStatus.ABSENT
    if decision == PolicyDecision.REVIEW:
        return AttendanceStatus.REVIEW
    if policy_evaluation.metadata.working_hours_check.is_late:
        return AttendanceStatus.LATE
    return AttendanceStatus.PRESENT


class AdmissionPipeline:
    """Runs submissions through every integrity check and persists the outcome.

    Args:
        rate_limiter: Per-user sliding-window limiter.
        device_trust: Device trust evaluator.
        motion_guard: Teleport and speed detector.
        policy_cache: ETag-cached policy loader.
        policy_evaluator: Multi-factor policy evaluator.
        signer: HMAC signer for check-in and check-out payloads.
        attendance_store: Attendance record store.
        audit: Audit trail writer.
        metrics: Admission counters.
        alerts: Review/rejection alert dispatcher.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        device_trust: DeviceTrustEvaluator,
        motion_guard: MotionGuard,
        policy_cache: PolicyCache,
        policy_evaluator: PolicyEvaluator,
        signer: Signer,
        attendance_store: IAttendanceStore,
        audit: AuditService,
        metrics: IMetricsRecorder,
        alerts: IAlertDispatcher,
    ) -> None:
        self._rate_limiter = rate_limiter
        self._device_trust = device_trust
        self._motion_guard = motion_guard
        self._policy_cache = policy_cache
        self._policy_evaluator = policy_evaluator
        self._signer = signer
        self._attendance_store = attendance_store
        self._audit = audit
        self._metrics = metrics
        self._alerts = alerts

    # ------------------------------------------------------------------
    # Check-in
    # ------------------------------------------------------------------

    async def submit(
        self,
        context: SubmissionContext,
        request_meta: dict[str, Any] | None = None,
    ) -> AdmissionResult:
        """Admit or reject one check-in submission.

        Args:
            context: The submission.
            request_meta: Optional ip_address / user_agent, recorded in audit entries.

        Returns:
            AdmissionResult. Never raises for business or infrastructure failures.
        """
        started = time.perf_counter()
        logger.info(
            "Attendance submission started",
            user_id=context.user_id,
            device_id=context.device_id,
            office_id=context.office_id,
        )
        try:
            return await self._submit(context, request_meta, started)
        except Exception:
            logger.exception(
                "Attendance submission failed with internal error",
                user_id=context.user_id,
                device_id=context.device_id,
                office_id=context.office_id,
            )
            self._record_metric(self._metrics.record_submission, PolicyDecision.REJECTED)
            return AdmissionResult(
                success=False,
                decision=PolicyDecision.REJECTED,
                rationale=_INTERNAL_ERROR_RATIONALE,
                integrity_verdict=IntegrityVerdict(overall_score=0.0, timestamp=datetime.now(UTC)),
                error=ErrorCode.INTERNAL_ERROR,
                metadata=self._metadata(started),
            )

    async def _submit(
        self,
        context: SubmissionContext,
        request_meta: dict[str, Any] | None,
        started: float,
    ) -> AdmissionResult:
        # 1. Rate limit
        rate_limit = await self._rate_limiter.check_and_consume(context.user_id)
        if rate_limit.blocked:
            logger.warning("Rate limit exceeded", user_id=context.user_id, limit=rate_limit.limit)
            self._record_metric(self._metrics.record_rate_limit_block, context.user_id)
            self._record_metric(self._metrics.record_submission, PolicyDecision.REJECTED)
            await self._audit.log_rate_limit_block(context.user_id, request_meta)
            return self._short_circuit(
                rationale=(
                    f"Rate limit exceeded. Maximum {rate_limit.limit} attempts per window. "
                    f"Please try again at {rate_limit.reset_at.isoformat()}."
                ),
                error=ErrorCode.RATE_LIMIT_EXCEEDED,
                verdict=IntegrityVerdict(
                    rate_limit=rate_limit,
                    overall_score=0.0,
                    timestamp=datetime.now(UTC),
                ),
                started=started,
            )

        # 2. Device trust
        device_trust = await self._device_trust.evaluate(context.user_id, context.device_id)
        if not device_trust.passed:
            logger.warning(
                "Device trust check failed",
                user_id=context.user_id,
                device_id=context.device_id,
                details=device_trust.details,
            )
            self._record_metric(self._metrics.record_device_trust_failure, context.user_id, context.device_id)
            self._record_metric(self._metrics.record_submission, PolicyDecision.REJECTED)
            await self._audit.log_device_trust_failure(
                context.user_id,
                context.device_id,
                device_trust.details or "Device not trusted",
                request_meta,
            )
            return self._short_circuit(
                rationale=f"Device trust verification failed: {device_trust.details}",
                error=ErrorCode.DEVICE_TRUST_FAILED,
                verdict=IntegrityVerdict(
                    rate_limit=rate_limit,
                    device_trust=device_trust,
                    overall_score=0.0,
                    timestamp=datetime.now(UTC),
                ),
                started=started,
            )

        # 3. Motion guard
        last_location = await self._attendance_store.get_last_location(context.user_id)
        motion = self._motion_guard.check(context.location, context.timestamp, last_location)
        if not motion.passed:
            await self._report_motion_violation(context.user_id, motion, request_meta)

        # 4. Policy resolution
        policy = await self._resolve_policy(context.office_id)
        if policy is None:
            logger.error("No policy found for office", user_id=context.user_id, office_id=context.office_id)
            self._record_metric(self._metrics.record_submission, PolicyDecision.REJECTED)
            return self._short_circuit(
                rationale="No active policy found for the specified office",
                error=ErrorCode.NO_POLICY_FOUND,
                verdict=IntegrityVerdict(
                    rate_limit=rate_limit,
                    device_trust=device_trust,
                    motion_guard=motion,
                    overall_score=0.0,
                    timestamp=datetime.now(UTC),
                ),
                started=started,
            )

        # 5. Policy evaluation
        evaluation = await self._policy_evaluator.evaluate(policy, context)

        # 6-7. Score, verdict and demotion
        verdict = IntegrityVerdict(
            policy_evaluation=evaluation,
            motion_guard=motion,
            device_trust=device_trust,
            rate_limit=rate_limit,
            overall_score=compute_overall_score(evaluation, motion, device_trust, rate_limit),
            timestamp=datetime.now(UTC),
        )

        decision = evaluation.decision
        status = status_for_decision(decision, evaluation)
        rationale = evaluation.rationale
        if not motion.passed and decision == PolicyDecision.ACCEPTED:
            decision = PolicyDecision.REVIEW
            status = AttendanceStatus.REVIEW
            rationale = f"{rationale} Flagged for review: {motion.details}."

        # 8. Signature
        signature = self._signer.sign(Signer.payload_for(context, verdict))

        # 9. Persistence
        record: AttendanceRecord | None = None
        if decision != PolicyDecision.REJECTED:
            record = await self._attendance_store.create(
                user_id=context.user_id,
                device_id=context.device_id,
                office_id=context.office_id or policy.office_id or "unknown",
                policy_id=policy.id,
                check_in_time=context.timestamp,
                check_in_location=context.location,
                check_in_method=context.check_in_method,
                network_ssid=context.network.ssid if context.network else None,
                status=status,
                integrity_verdict=verdict.model_dump(mode="json"),
                signature_check_in=signature,
            )
            logger.info("Attendance record created", attendance_id=record.id, status=str(status))

        # 10. Metrics, audit, alerts
        self._record_metric(self._metrics.record_submission, decision)
        attendance_id = record.id if record is not None else None
        await self._audit.log_submission(context.user_id, attendance_id, decision, verdict, request_meta)

        if decision == PolicyDecision.REVIEW:
            await self._dispatch_alert(
                self._alerts.on_review,
                {
                    "user_id": context.user_id,
                    "attendance_id": attendance_id,
                    "rationale": rationale,
                    "motion_guard_passed": motion.passed,
                    "timestamp": datetime.now(UTC).isoformat(),
                },
            )
        elif decision == PolicyDecision.REJECTED:
            await self._dispatch_alert(
                self._alerts.on_rejection,
                {
                    "user_id": context.user_id,
                    "rationale": rationale,
                    "timestamp": datetime.now(UTC).isoformat(),
                },
            )

        metadata = self._metadata(started)
        logger.info(
            "Attendance submission completed",
            user_id=context.user_id,
            decision=str(decision),
            attendance_id=attendance_id,
            overall_score=verdict.overall_score,
            submission_time_ms=round(metadata.submission_time_ms, 2),
        )

        return AdmissionResult(
            success=decision != PolicyDecision.REJECTED,
            attendance_id=attendance_id,
            decision=decision,
            rationale=rationale,
            integrity_verdict=verdict,
            signature=signature,
            metadata=metadata,
        )

    async def _resolve_policy(self, office_id: str | None) -> Policy | None:
        if not office_id:
            return None
        result = await self._policy_cache.load_applicable_for_office(office_id)
        return result.policy

    async def _report_motion_violation(
        self,
        user_id: str,
        motion: MotionGuardResult,
        request_meta: dict[str, Any] | None,
    ) -> None:
        violation_type = motion.violation_type or "speed"
        logger.warning(
            "Motion guard violation",
            user_id=user_id,
            violation_type=violation_type,
            distance_meters=motion.distance_meters,
            speed_mps=motion.speed_mps,
            error_code=str(ErrorCode.MOTION_VIOLATION),
        )
        self._record_metric(self._metrics.record_motion_violation, user_id, violation_type)
        await self._audit.log_motion_violation(
            user_id,
            violation_type,
            {
                "details": motion.details,
                "distance_meters": motion.distance_meters,
                "speed_mps": motion.speed_mps,
                "time_delta_seconds": motion.time_delta_seconds,
            },
            request_meta,
        )

    def _short_circuit(
        self,
        rationale: str,
        error: ErrorCode,
        verdict: IntegrityVerdict,
        started: float,
    ) -> AdmissionResult:
        return AdmissionResult(
            success=False,
            decision=PolicyDecision.REJECTED,
            rationale=rationale,
            integrity_verdict=verdict,
            error=error,
            metadata=self._metadata(started),
        )

    @staticmethod
    async def _dispatch_alert(hook: Any, data: dict[str, Any]) -> None:
        try:
            await hook(data)
        except Exception as exc:
            logger.error("Alert dispatch failed", hook=getattr(hook, "__name__", repr(hook)), error=str(exc))

    @staticmethod
    def _record_metric(recorder: Callable[..., None], *args: Any) -> None:
        try:
            recorder(*args)
        except Exception as exc:
            logger.error(
                "Metrics recording failed",
                recorder=getattr(recorder, "__name__", repr(recorder)),
                error=str(exc),
            )

    @staticmethod
    def _metadata(started: float) -> ResultMetadata:
        return ResultMetadata(
            submission_time_ms=(time.perf_counter() - started) * 1000,
            timestamp=datetime.now(UTC),
        )

    # ------------------------------------------------------------------
    # Check-out
    # ------------------------------------------------------------------

    async def checkout(self, attendance_id: str, context: SubmissionContext) -> CheckoutResult:
        """Close an open attendance record.

        The check-out fix is compared with the check-in fix by the motion
        guard, early departure is derived from the record's policy, and the
        check-out payload is signed independently of the check-in signature.

        Args:
            attendance_id: The record being closed.
            context: The check-out submission (same user, location and timestamp).

        Returns:
            CheckoutResult. Never raises for business or infrastructure failures.
        """
        started = time.perf_counter()
        try:
            return await self._checkout(attendance_id, context, started)
        except Exception:
            logger.exception(
                "Attendance check-out failed with internal error",
                attendance_id=attendance_id,
                user_id=context.user_id,
            )
            return CheckoutResult(
                success=False,
                attendance_id=attendance_id,
                decision=PolicyDecision.REJECTED,
                rationale=_INTERNAL_CHECKOUT_RATIONALE,
                error=ErrorCode.INTERNAL_ERROR,
                metadata=self._metadata(started),
            )

    async def _checkout(
        self,
        attendance_id: str,
        context: SubmissionContext,
        started: float,
    ) -> CheckoutResult:
        record = await self._attendance_store.get_by_id(attendance_id)
        if record is None or record.user_id != context.user_id:
            return self._checkout_rejected(
                attendance_id, "Attendance record not found", ErrorCode.ATTENDANCE_NOT_FOUND, started
            )
        if record.check_out_time is not None:
            return self._checkout_rejected(
                attendance_id, "Attendance record is already checked out", ErrorCode.ALREADY_CHECKED_OUT, started
            )

        check_in_time = _as_utc(record.check_in_time)
        check_in_fix = LocationFix(
            latitude=record.check_in_location.latitude,
            longitude=record.check_in_location.longitude,
            timestamp=check_in_time,
        )
        motion = self._motion_guard.check(context.location, context.timestamp, check_in_fix)
        if not motion.passed:
            await self._report_motion_violation(context.user_id, motion, None)

        policy = await self._checkout_policy(record)
        is_early = False
        if policy is not None:
            hours = check_working_hours(policy, context.timestamp)
            is_early = hours.is_working_day and hours.is_early_departure

        work_duration_minutes = max(0, int((_as_utc(context.timestamp) - check_in_time).total_seconds() // 60))

        if not motion.passed:
            decision = PolicyDecision.REVIEW
            status = AttendanceStatus.REVIEW
            rationale = f"Check-out recorded. Flagged for review: {motion.details}."
        elif is_early and record.status in (AttendanceStatus.PRESENT, AttendanceStatus.LATE):
            decision = PolicyDecision.ACCEPTED
            status = AttendanceStatus.EARLY_DEPARTURE
            rationale = (
                f"Check-out recorded before end of working hours "
                f"(more than {policy.early_departure_threshold_minutes} minutes early)."
            )
        else:
            decision = PolicyDecision.ACCEPTED
            status = record.status
            rationale = "Check-out recorded."

        signature = self._signer.sign(
            SignaturePayload(
                user_id=context.user_id,
                device_id=context.device_id,
                office_id=record.office_id,
                timestamp=context.timestamp,
                location=context.location,
                integrity_score=1.0 if motion.passed else 0.0,
            )
        )

        await self._attendance_store.record_checkout(
            attendance_id=attendance_id,
            check_out_time=context.timestamp,
            check_out_location=context.location,
            check_out_method=context.check_in_method,
            signature_check_out=signature,
            work_duration_minutes=work_duration_minutes,
            status=status,
        )
        await self._audit.log_checkout(
            context.user_id,
            attendance_id,
            str(status),
            work_duration_minutes,
            motion.passed,
        )
        if decision == PolicyDecision.REVIEW:
            await self._dispatch_alert(
                self._alerts.on_review,
                {
                    "user_id": context.user_id,
                    "attendance_id": attendance_id,
                    "rationale": rationale,
                    "motion_guard_passed": motion.passed,
                    "timestamp": datetime.now(UTC).isoformat(),
                },
            )

        logger.info(
            "Attendance check-out completed",
            attendance_id=attendance_id,
            user_id=context.user_id,
            status=str(status),
            work_duration_minutes=work_duration_minutes,
        )
        return CheckoutResult(
            success=True,
            attendance_id=attendance_id,
            decision=decision,
            status=status,
            rationale=rationale,
            motion_guard=motion,
            signature=signature,
            work_duration_minutes=work_duration_minutes,
            metadata=self._metadata(started),
        )

    async def _checkout_policy(self, record: AttendanceRecord) -> Policy | None:
        if record.policy_id:
            result = await self._policy_cache.load_by_id(record.policy_id)
            if result.policy is not None:
                return result.policy
        return await self._resolve_policy(record.office_id)

    def _checkout_rejected(
        self,
        attendance_id: str,
        rationale: str,
        error: ErrorCode,
        started: float,
    ) -> CheckoutResult:
        logger.warning("Check-out rejected", attendance_id=attendance_id, error_code=str(error))
        return CheckoutResult(
            success=False,
            attendance_id=attendance_id,
            decision=PolicyDecision.REJECTED,
            rationale=rationale,
            error=error,
            metadata=self._metadata(started),
        )
