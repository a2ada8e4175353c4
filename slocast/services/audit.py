"""
Decision audit trail.

Audit rows are written in their own session AFTER the primary unit of work
has committed. A failed audit write is logged and dropped; it never fails
or rolls back the operation it describes.
"""

from dataclasses import dataclass, field
from typing import Iterable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from slocast.db.models import AuditLog, RecommendationAction

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AuditEvent:
    action: str
    tenant_id: Optional[str] = None
    details: dict = field(default_factory=dict)
    actor: str = "system"
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None

    def to_row(self) -> AuditLog:
        return AuditLog(
            tenant_id=self.tenant_id,
            action=self.action,
            actor=self.actor,
            resource_type=self.resource_type,
            resource_id=self.resource_id,
            details=self.details,
        )


async def write_audit(
    session_factory: async_sessionmaker[AsyncSession],
    events: Iterable[AuditEvent],
) -> int:
    """Persist audit events. Returns how many were written (0 on failure)."""
    events = list(events)
    if not events:
        return 0
    try:
        async with session_factory() as session:
            session.add_all([e.to_row() for e in events])
            await session.commit()
        return len(events)
    except Exception as e:
        logger.error(
            "audit_write_failed",
            actions=[e_.action for e_ in events],
            error=str(e),
        )
        return 0


async def write_recommendation_action(
    session_factory: async_sessionmaker[AsyncSession],
    recommendation_id,
    tenant_id: str,
    action: str,
    actor: Optional[str],
    details: dict,
) -> bool:
    """Append to the recommendation action log (best-effort)."""
    try:
        async with session_factory() as session:
            session.add(
                RecommendationAction(
                    recommendation_id=recommendation_id,
                    tenant_id=tenant_id,
                    action=action,
                    actor=actor,
                    details=details,
                )
            )
            await session.commit()
        return True
    except Exception as e:
        logger.error(
            "recommendation_action_audit_failed",
            recommendation_id=str(recommendation_id),
            action=action,
            error=str(e),
        )
        return False
