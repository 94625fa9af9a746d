"""Policy lifecycle management and the read side of the policy audit trail.

Every mutation bumps the policy version under an optimistic version check,
writes an audit entry, and then invalidates the policy cache, which in turn
notifies the registered invalidation hooks. Policy history is read back from
the same audit entries.
"""

import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from presence_admission.core.audit import AuditService
from presence_admission.core.interfaces import IPolicyStore
from presence_admission.core.policy_cache import PolicyCache, validate_policy_document
from presence_admission.core.schemas import Policy, PolicyChange
from presence_admission.errors import NotFoundError, ValidationError
from presence_admission.observability import get_logger

logger = get_logger(__name__)

# Fields an update may never overwrite.
_IMMUTABLE_FIELDS = frozenset({"id", "version", "created_at", "created_by"})
_POLICY_ACTION_PREFIX = "policy_"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _validated(document: dict[str, Any]) -> Policy:
    result = validate_policy_document(document)
    if not result.valid or result.policy is None:
        first = result.errors[0] if result.errors else None
        summary = "; ".join(f"{issue.field}: {issue.message}" for issue in result.errors)
        raise ValidationError(
            message=f"Policy validation failed: {summary}",
            field=first.field if first else None,
        )
    return result.policy


def _diff(before: dict[str, Any], after: dict[str, Any]) -> dict[str, Any]:
    return {
        key: {"from": before.get(key), "to": value}
        for key, value in after.items()
        if key not in {"version", "updated_at", "updated_by"} and before.get(key) != value
    }


class PolicyAdminService:
    """Policy mutations with strict versioning, audit, and cache invalidation.

    Args:
        policy_store: Persistent policy store.
        policy_cache: Cache to invalidate after each mutation.
        audit: Audit trail writer.
        clock: Returns the current aware datetime.
    """

    def __init__(
        self,
        policy_store: IPolicyStore,
        policy_cache: PolicyCache,
        audit: AuditService,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._policy_store = policy_store
        self._policy_cache = policy_cache
        self._audit = audit
        self._clock = clock

    async def get_policy(self, policy_id: str) -> Policy:
        """Return a policy regardless of its active flag.

        Raises:
            NotFoundError: If no policy has this id.
        """
        policy = await self._policy_store.get_by_id(policy_id)
        if policy is None:
            raise NotFoundError(message=f"Policy not found: {policy_id}")
        return policy

    async def list_policies(self, office_id: str | None = None, active_only: bool = False) -> list[Policy]:
        """List policies, optionally narrowed to one office scope and to active ones.

        Args:
            office_id: Office scope to match exactly. None lists every policy,
                global ones included.
            active_only: Skip deactivated policies.

        Returns:
            Policies ordered by priority DESC, then newest first.
        """
        return await self._policy_store.list_policies(office_id=office_id, active_only=active_only)

    async def get_policy_history(self, policy_id: str) -> list[PolicyChange]:
        """Audited lifecycle actions of a policy, oldest first.

        Raises:
            NotFoundError: If no policy has this id.
        """
        await self.get_policy(policy_id)
        entries = await self._audit.entity_history("policy", policy_id)
        return [
            PolicyChange(
                action=entry["action"].removeprefix(_POLICY_ACTION_PREFIX),
                performed_by=entry["user_id"],
                version=entry["details"]["version"],
                previous_version=entry["details"].get("previous_version"),
                changes=entry["details"].get("changes") or {},
                reason=entry["details"].get("reason"),
                timestamp=entry["timestamp"],
            )
            for entry in entries
            if entry["action"].startswith(_POLICY_ACTION_PREFIX)
        ]

    async def create_policy(self, document: dict[str, Any], created_by: str) -> Policy:
        """Validate and store a new policy at version 1.

        Args:
            document: Raw policy fields (name, required_factors, working hours, ...).
            created_by: Id of the administrator.

        Returns:
            The stored Policy.

        Raises:
            ValidationError: If the document is not a valid policy.
        """
        now = self._clock()
        candidate = {key: value for key, value in document.items() if key not in _IMMUTABLE_FIELDS}
        candidate.update(
            id=str(uuid.uuid4()),
            version=1,
            is_active=document.get("is_active", True),
            created_at=now,
            updated_at=now,
            created_by=created_by,
            updated_by=created_by,
        )
        policy = await self._policy_store.save(_validated(candidate))

        logger.info("Policy created", policy_id=policy.id, office_id=policy.office_id, created_by=created_by)
        await self._audit.log_policy_change(created_by, policy.id, "created", policy.version)
        await self._policy_cache.invalidate(policy.id, policy.office_id)
        return policy

    async def update_policy(
        self,
        policy_id: str,
        changes: dict[str, Any],
        updated_by: str,
        reason: str | None = None,
    ) -> Policy:
        """Apply field changes and bump the version.

        Raises:
            NotFoundError: If the policy does not exist.
            ValidationError: If the merged document is not a valid policy.
            ConflictError: If another update landed since the policy was read.
        """
        existing = await self.get_policy(policy_id)
        before = existing.model_dump(mode="json")

        merged = existing.model_dump()
        merged.update({key: value for key, value in changes.items() if key not in _IMMUTABLE_FIELDS})
        merged.update(version=existing.version + 1, updated_at=self._clock(), updated_by=updated_by)
        updated = _validated(merged)

        policy = await self._policy_store.save(updated, expected_version=existing.version)
        diff = _diff(before, policy.model_dump(mode="json"))

        logger.info(
            "Policy updated",
            policy_id=policy_id,
            version=policy.version,
            previous_version=existing.version,
            changed_fields=sorted(diff),
        )
        await self._audit.log_policy_change(
            updated_by,
            policy_id,
            "updated",
            policy.version,
            previous_version=existing.version,
            changes=diff,
            reason=reason,
        )
        await self._invalidate(policy_id, existing.office_id, policy.office_id)
        return policy

    async def activate_policy(self, policy_id: str, performed_by: str) -> Policy:
        return await self._set_active(policy_id, True, performed_by)

    async def deactivate_policy(self, policy_id: str, performed_by: str) -> Policy:
        return await self._set_active(policy_id, False, performed_by)

    async def _set_active(self, policy_id: str, is_active: bool, performed_by: str) -> Policy:
        existing = await self.get_policy(policy_id)
        toggled = existing.model_copy(
            update={
                "is_active": is_active,
                "version": existing.version + 1,
                "updated_at": self._clock(),
                "updated_by": performed_by,
            }
        )
        policy = await self._policy_store.save(toggled, expected_version=existing.version)

        action = "activated" if is_active else "deactivated"
        logger.info("Policy active flag changed", policy_id=policy_id, action=action, version=policy.version)
        await self._audit.log_policy_change(
            performed_by,
            policy_id,
            action,
            policy.version,
            previous_version=existing.version,
        )
        await self._invalidate(policy_id, existing.office_id, policy.office_id)
        return policy

    async def _invalidate(self, policy_id: str, old_office_id: str | None, new_office_id: str | None) -> None:
        await self._policy_cache.invalidate(policy_id, new_office_id)
        if old_office_id == new_office_id:
            return
        if old_office_id:
            await self._policy_cache.invalidate_office(old_office_id)
        else:
            await self._policy_cache.invalidate_all_offices()
