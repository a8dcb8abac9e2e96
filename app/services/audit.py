"""Audit logger — fire-and-forget structured event records."""

import json
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from app.models.audit import DEFAULT_SEVERITY, AuditEventType, AuditLog, AuditSeverity

logger = logging.getLogger(__name__)


class AuditLogger:
    """Persists audit events. A failure here never reaches the caller."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def record(
        self,
        event_type: AuditEventType,
        action: str,
        actor_id: Optional[str] = None,
        resource: Optional[str] = None,
        resource_id: Optional[str] = None,
        success: bool = True,
        error: Optional[str] = None,
        metadata: Optional[dict] = None,
        severity: Optional[AuditSeverity] = None,
    ) -> None:
        severity = severity or DEFAULT_SEVERITY.get(event_type, AuditSeverity.LOW)
        logger.info(
            f"audit {event_type.value} actor={actor_id} {resource}={resource_id} "
            f"success={success} {action}"
        )
        try:
            async with self.session_factory() as db:
                db.add(AuditLog(
                    event_type=event_type.value,
                    severity=severity.value,
                    actor_id=actor_id,
                    resource=resource,
                    resource_id=resource_id,
                    action=action[:300],
                    success=success,
                    error=error,
                    metadata_=json.dumps(metadata or {}, default=str),
                ))
                await db.commit()
        except Exception:
            logger.exception(f"Failed to persist audit event {event_type.value}")
