"""Audit trail writer for privileged actions."""

from typing import Any, Dict, Optional

import structlog

logger = structlog.get_logger()

CATEGORY_SYSTEM = "SYSTEM"


async def audit_log(
    action: str,
    category: str = CATEGORY_SYSTEM,
    actor_id: Optional[str] = None,
    resource: Optional[str] = None,
    detail: Optional[Dict[str, Any]] = None,
    outcome: str = "success"
) -> None:
    """Persist one audit event. Failures are logged, never raised."""
    from database import AsyncSessionLocal
    from models.audit import AuditEvent

    try:
        async with AsyncSessionLocal() as session:
            session.add(AuditEvent(
                action=action,
                category=category,
                actor_id=actor_id or None,
                resource=resource or None,
                detail=detail,
                outcome=outcome,
            ))
            await session.commit()
    except Exception as e:
        logger.error("Failed to write audit log", action=action, resource=resource, error=str(e))
