"""Audit trail writes for admission outcomes and policy changes.

AuditService is the single entry point for audit writes. It delegates to an
append-only IAuditRepository and never raises: a failed write is logged and the
admission outcome stands. Entries are never updated or deleted; a correction is
a compensating entry.
"""

from datetime import UTC, datetime
from typing import Any

from presence_admission.core.interfaces import IAuditRepository
from presence_admission.core.schemas import IntegrityVerdict, PolicyDecision
from presence_admission.observability import get_logger

logger = get_logger(__name__)

_NO_ENTITY = "n/a"


class AuditService:
    """Best-effort audit trail writer.

    Args:
        audit_repo: Append-only audit repository.
    """

    def __init__(self, audit_repo: IAuditRepository) -> None:
        self._audit_repo = audit_repo

    async def record(
        self,
        user_id: str,
        action: str,
        entity_type: str,
        entity_id: str,
        details: dict[str, Any],
        request_meta: dict[str, Any] | None = None,
    ) -> None:
        """Append one audit entry; failures are logged, never raised.

        Args:
            user_id: The acting or affected user.
            action: Short action name (e.g. "rate_limit_block").
            entity_type: Type of the affected entity.
            entity_id: Id of the affected entity, "n/a" when there is none.
            details: Structured event payload.
            request_meta: Optional ip_address / user_agent of the request.
        """
        meta = request_meta or {}
        try:
            await self._audit_repo.append(
                user_id=user_id,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                details=details,
                timestamp=datetime.now(UTC),
                ip_address=meta.get("ip_address"),
                user_agent=meta.get("user_agent"),
            )
        except Exception as exc:
            logger.warning(
                "Audit write failed",
                action=action,
                user_id=user_id,
                entity_id=entity_id,
                error=str(exc),
            )

    async def entity_history(self, entity_type: str, entity_id: str) -> list[dict[str, Any]]:
        """Read back the entries about one entity, oldest first.

        Unlike writes, read failures propagate to the caller.
        """
        return await self._audit_repo.list_for_entity(entity_type, entity_id)

    async def log_submission(
        self,
        user_id: str,
        attendance_id: str | None,
        decision: PolicyDecision,
        verdict: IntegrityVerdict,
        request_meta: dict[str, Any] | None = None,
    ) -> None:
        await self.record(
            user_id=user_id,
            action="attendance_submission",
            entity_type="attendance",
            entity_id=attendance_id or _NO_ENTITY,
            details={
                "decision": str(decision),
                "integrity_score": verdict.overall_score,
                "motion_guard_passed": verdict.motion_guard.passed if verdict.motion_guard else None,
                "device_trust_passed": verdict.device_trust.passed if verdict.device_trust else None,
                "rate_limit_passed": verdict.rate_limit.passed if verdict.rate_limit else None,
            },
            request_meta=request_meta,
        )

    async def log_rate_limit_block(self, user_id: str, request_meta: dict[str, Any] | None = None) -> None:
        await self.record(
            user_id=user_id,
            action="rate_limit_block",
            entity_type="attendance",
            entity_id=_NO_ENTITY,
            details={"blocked": True},
            request_meta=request_meta,
        )

    async def log_device_trust_failure(
        self,
        user_id: str,
        device_id: str,
        reason: str,
        request_meta: dict[str, Any] | None = None,
    ) -> None:
        await self.record(
            user_id=user_id,
            action="device_trust_failure",
            entity_type="device",
            entity_id=device_id,
            details={"reason": reason},
            request_meta=request_meta,
        )

    async def log_motion_violation(
        self,
        user_id: str,
        violation_type: str,
        details: dict[str, Any],
        request_meta: dict[str, Any] | None = None,
    ) -> None:
        await self.record(
            user_id=user_id,
            action="motion_guard_violation",
            entity_type="attendance",
            entity_id=_NO_ENTITY,
            details={"violation_type": violation_type, **details},
            request_meta=request_meta,
        )

    async def log_checkout(
        self,
        user_id: str,
        attendance_id: str,
        status: str,
        work_duration_minutes: int,
        motion_passed: bool,
    ) -> None:
        await self.record(
            user_id=user_id,
            action="attendance_checkout",
            entity_type="attendance",
            entity_id=attendance_id,
            details={
                "status": status,
                "work_duration_minutes": work_duration_minutes,
                "motion_guard_passed": motion_passed,
            },
        )

    async def log_policy_change(
        self,
        performed_by: str,
        policy_id: str,
        action: str,
        version: int,
        previous_version: int | None = None,
        changes: dict[str, Any] | None = None,
        reason: str | None = None,
    ) -> None:
        """Audit a policy lifecycle action (created, updated, activated, deactivated)."""
        details: dict[str, Any] = {"version": version}
        if previous_version is not None:
            details["previous_version"] = previous_version
        if changes:
            details["changes"] = changes
        if reason:
            details["reason"] = reason
        await self.record(
            user_id=performed_by,
            action=f"policy_{action}",
            entity_type="policy",
            entity_id=policy_id,
            details=details,
        )
