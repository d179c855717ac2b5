# =============================================================================
# Audit Trail — Ingestion, Analysis-Trigger & Deletion Events
# =============================================================================
#
# Every ingestion, analysis trigger and deletion is recorded with actor,
# resource id and outcome in the `audit_events` table.
#
# DESIGN DECISION: Own session, never raises.
# Audit writes use a fresh session from the injected factory so they are
# committed even when the operation being audited rolled back. A failed
# audit write is logged and swallowed; availability beats auditability.
# =============================================================================

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.models import AuditEvent
from app.services.auth import Actor

logger = logging.getLogger(__name__)


class AuditTrail:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        enabled: bool = True,
    ) -> None:
        self._session_factory = session_factory
        self.enabled = enabled

    async def record(
        self,
        actor: Actor,
        action: str,
        *,
        outcome: str,
        resource_type: str = "document",
        resource_id: str | None = None,
        project_id: str | None = None,
        detail: dict | None = None,
    ) -> None:
        logger.info(
            "audit: actor=%s action=%s resource=%s/%s outcome=%s",
            actor.user_id, action, resource_type, resource_id, outcome,
        )
        if not self.enabled:
            return
        try:
            async with self._session_factory() as session:
                session.add(AuditEvent(
                    actor_id=actor.user_id,
                    action=action,
                    resource_type=resource_type,
                    resource_id=resource_id,
                    project_id=project_id,
                    outcome=outcome,
                    detail=detail,
                ))
                await session.commit()
        except Exception:
            logger.exception("Failed to write audit event %s for %s", action, resource_id)
