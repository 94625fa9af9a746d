"""Multi-factor policy evaluation with working-hours semantics.

For every (mode, required, weight) entry of a policy:
- optional modes without evidence in the submission are skipped
- everything else is dispatched to the registered factor evaluator

Factor calls run concurrently under one overall timeout. A factor that raises
or does not finish in time counts as failed for that factor only
(FACTOR_EVALUATION_ERROR); it never fails the evaluation as a whole.

Decision rules, first match wins:
1. enough factors, inside working hours, on time        → ACCEPTED
2. enough factors, but late or outside working hours    → REVIEW
3. some but not enough factors and fallback is allowed  → REVIEW
4. otherwise                                            → REJECTED

The decision and rationale depend only on (policy, context); `now` only
feeds metadata timestamps.
"""

import asyncio
import time
from datetime import UTC, datetime

from presence_admission.core.factors import FactorEvaluatorRegistry, has_evidence
from presence_admission.core.interfaces import IFactorEvaluator
from presence_admission.core.schemas import (
    FactorEvaluationResult,
    Policy,
    PolicyDecision,
    PolicyEvaluationMetadata,
    PolicyEvaluationResult,
    PresenceMode,
    SubmissionContext,
    WorkingHoursCheck,
)
from presence_admission.errors import ErrorCode
from presence_admission.observability import get_logger

logger = get_logger(__name__)

_DEFAULT_EVALUATION_TIMEOUT_SECONDS = 10.0


def check_working_hours(policy: Policy, timestamp: datetime) -> WorkingHoursCheck:
    """Working-day, working-hours, lateness and early-departure flags.

    Time of day is read in the timestamp's own timezone at minute granularity.
    Weekdays follow the policy convention 0 = Sunday.
    """
    weekday = timestamp.isoweekday() % 7
    if weekday not in policy.working_days:
        return WorkingHoursCheck(
            is_working_day=False,
            is_working_hours=False,
            is_late=False,
            is_early_departure=False,
        )

    minute_of_day = timestamp.hour * 60 + timestamp.minute
    start = policy.start_time.hour * 60 + policy.start_time.minute
    end = policy.end_time.hour * 60 + policy.end_time.minute

    is_working_hours = start <= minute_of_day <= end
    is_late = minute_of_day > start + policy.late_threshold_minutes
    is_early_departure = minute_of_day < end - policy.early_departure_threshold_minutes

    return WorkingHoursCheck(
        is_working_day=True,
        is_working_hours=is_working_hours,
        is_late=is_late and is_working_hours,
        is_early_departure=is_early_departure,
    )


class PolicyEvaluator:
    """Renders ACCEPTED / REVIEW / REJECTED for a policy and a submission.

    Args:
        registry: Factor evaluators keyed by presence mode.
        timeout_seconds: Overall timeout for the concurrent factor fan-out.
    """

    def __init__(
        self,
        registry: FactorEvaluatorRegistry,
        timeout_seconds: float = _DEFAULT_EVALUATION_TIMEOUT_SECONDS,
    ) -> None:
        self._registry = registry
        self._timeout_seconds = timeout_seconds

    async def evaluate(
        self,
        policy: Policy,
        context: SubmissionContext,
        now: datetime | None = None,
    ) -> PolicyEvaluationResult:
        """Evaluate every applicable factor and apply the decision rules.

        Args:
            policy: The resolved policy.
            context: The submission.
            now: Metadata timestamp; defaults to the current UTC time.

        Returns:
            PolicyEvaluationResult with factor-level details for audit.
        """
        started = time.perf_counter()
        working_hours = check_working_hours(policy, context.timestamp)

        factor_results = await self._evaluate_factors(policy, context)

        factors_passed = sum(1 for result in factor_results if result.passed)
        factors_required = policy.required_factors.min_factors
        failed_modes = ", ".join(str(r.mode) for r in factor_results if not r.passed) or "none"

        if factors_passed >= factors_required:
            if working_hours.is_working_hours and not working_hours.is_late:
                decision = PolicyDecision.ACCEPTED
                rationale = (
                    f"All required factors met ({factors_passed}/{factors_required}) during working hours."
                )
            elif working_hours.is_late:
                decision = PolicyDecision.REVIEW
                rationale = (
                    f"Check-in successful but late by more than {policy.late_threshold_minutes} minutes. "
                    "Review required."
                )
            else:
                decision = PolicyDecision.REVIEW
                rationale = "Check-in outside working hours. Manual review required."
        elif factors_passed > 0 and policy.required_factors.allow_fallback:
            decision = PolicyDecision.REVIEW
            rationale = (
                f"Insufficient factors met ({factors_passed}/{factors_required}). "
                f"Failed: {failed_modes}. Manual review required."
            )
        else:
            decision = PolicyDecision.REJECTED
            rationale = (
                f"Check-in rejected. Required {factors_required} factors, only {factors_passed} passed. "
                f"Failed: {failed_modes}."
            )

        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "Policy evaluated",
            policy_id=policy.id,
            policy_version=policy.version,
            decision=str(decision),
            factors_passed=factors_passed,
            factors_required=factors_required,
            evaluation_time_ms=round(elapsed_ms, 2),
        )

        return PolicyEvaluationResult(
            decision=decision,
            policy_id=policy.id,
            policy_version=policy.version,
            factors_evaluated=factor_results,
            factors_passed=factors_passed,
            factors_required=factors_required,
            rationale=rationale,
            metadata=PolicyEvaluationMetadata(
                evaluation_time_ms=elapsed_ms,
                timestamp=now or datetime.now(UTC),
                office_id=context.office_id,
                working_hours_check=working_hours,
            ),
        )

    async def _evaluate_factors(
        self,
        policy: Policy,
        context: SubmissionContext,
    ) -> list[FactorEvaluationResult]:
        scheduled: list[tuple[PresenceMode, asyncio.Task[FactorEvaluationResult]]] = []
        for entry in policy.required_factors.presence_modes:
            if not entry.required and not has_evidence(entry.mode, context):
                continue
            evaluator = self._registry.get(entry.mode)
            if evaluator is None:
                logger.debug("No evaluator registered for mode", mode=str(entry.mode))
                continue
            task = asyncio.create_task(self._run_factor(entry.mode, evaluator, context, policy))
            scheduled.append((entry.mode, task))

        if not scheduled:
            return []

        tasks = [task for _, task in scheduled]
        try:
            _, pending = await asyncio.wait(tasks, timeout=self._timeout_seconds)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        results: list[FactorEvaluationResult] = []
        for mode, task in scheduled:
            if task in pending or task.cancelled():
                logger.warning(
                    "Factor evaluation timed out",
                    mode=str(mode),
                    timeout_seconds=self._timeout_seconds,
                    error_code=str(ErrorCode.FACTOR_EVALUATION_ERROR),
                )
                results.append(
                    FactorEvaluationResult(
                        mode=mode,
                        passed=False,
                        confidence=0.0,
                        error=f"Evaluation timed out after {self._timeout_seconds}s",
                    )
                )
            else:
                results.append(task.result())
        return results

    @staticmethod
    async def _run_factor(
        mode: PresenceMode,
        evaluator: IFactorEvaluator,
        context: SubmissionContext,
        policy: Policy,
    ) -> FactorEvaluationResult:
        try:
            return await evaluator.evaluate(context, policy)
        except Exception as exc:
            logger.warning(
                "Factor evaluation failed",
                mode=str(mode),
                error=str(exc),
                error_code=str(ErrorCode.FACTOR_EVALUATION_ERROR),
            )
            return FactorEvaluationResult(
                mode=mode,
                passed=False,
                confidence=0.0,
                error=str(exc) or type(exc).__name__,
            )
