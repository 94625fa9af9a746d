"""Append-only audit log repository.

This repository has no update() or delete() methods because the audit trail
is immutable. In production the database role used for audit writes should
hold only INSERT and SELECT grants on presence_audit_logs.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from presence_admission.adapters.orm import AuditLogRow
from presence_admission.adapters.repositories import session_scope
from presence_admission.observability import get_logger

logger = get_logger(__name__)


class AuditLogRepository:
    """Append-only repository for AuditLogRow.

    Args:
        session_factory: Session factory for the database holding the audit log.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def append(
        self,
        user_id: str,
        action: str,
        entity_type: str,
        entity_id: str,
        details: dict[str, Any],
        timestamp: datetime,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> str:
        """Append an immutable audit entry.

        This is the ONLY write operation on the audit log.

        Returns:
            The id of the persisted entry.
        """
        async with session_scope(self._session_factory) as session:
            entry = AuditLogRow(
                user_id=user_id,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                details=details,
                timestamp=timestamp,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            session.add(entry)
            await session.flush()
            entry_id = entry.id

        logger.info(
            "Audit entry written",
            entry_id=entry_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        return entry_id

    async def recent_for_user(self, user_id: str, limit: int = 50) -> list[dict[str, Any]]:
        """Most recent audit entries of a user, newest first."""
        async with session_scope(self._session_factory) as session:
            stmt = (
                select(AuditLogRow)
                .where(AuditLogRow.user_id == user_id)
                .order_by(AuditLogRow.timestamp.desc())
                .limit(limit)
            )
            rows = (await session.execute(stmt)).scalars().all()
            return [
                {
                    "id": row.id,
                    "action": row.action,
                    "entity_type": row.entity_type,
                    "entity_id": row.entity_id,
                    "details": row.details,
                    "timestamp": row.timestamp,
                }
                for row in rows
            ]

    async def list_for_entity(self, entity_type: str, entity_id: str) -> list[dict[str, Any]]:
        """Every audit entry about one entity, oldest first."""
        async with session_scope(self._session_factory) as session:
            stmt = (
                select(AuditLogRow)
                .where(AuditLogRow.entity_type == entity_type, AuditLogRow.entity_id == entity_id)
                .order_by(AuditLogRow.timestamp.asc(), AuditLogRow.id)
            )
            rows = (await session.execute(stmt)).scalars().all()
            return [
                {
                    "id": row.id,
                    "user_id": row.user_id,
                    "action": row.action,
                    "entity_type": row.entity_type,
                    "entity_id": row.entity_id,
                    "details": row.details,
                    "timestamp": row.timestamp,
                }
                for row in rows
            ]
