"""Audit trail for webhook and notification activity."""

from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, String, Text

from app.database import Base
from app.models import new_uuid, utcnow


class AuditEventType(str, Enum):
    NOTIFICATION_SENT = "NOTIFICATION_SENT"
    NOTIFICATION_PREFERENCES_UPDATED = "NOTIFICATION_PREFERENCES_UPDATED"
    WEBHOOK_CONFIGURED = "WEBHOOK_CONFIGURED"
    WEBHOOK_TRIGGERED = "WEBHOOK_TRIGGERED"
    WEBHOOK_FAILED = "WEBHOOK_FAILED"


class AuditSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


DEFAULT_SEVERITY = {
    AuditEventType.NOTIFICATION_SENT: AuditSeverity.LOW,
    AuditEventType.NOTIFICATION_PREFERENCES_UPDATED: AuditSeverity.LOW,
    AuditEventType.WEBHOOK_CONFIGURED: AuditSeverity.MEDIUM,
    AuditEventType.WEBHOOK_TRIGGERED: AuditSeverity.LOW,
    AuditEventType.WEBHOOK_FAILED: AuditSeverity.MEDIUM,
}


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=new_uuid)
    event_type = Column(String(60), nullable=False, index=True)
    severity = Column(String(10), default=AuditSeverity.LOW.value)
    actor_id = Column(String(36), nullable=True, index=True)
    resource = Column(String(50), nullable=True)
    resource_id = Column(String(36), nullable=True, index=True)
    action = Column(String(300), default="")
    success = Column(Boolean, default=True)
    error = Column(Text, nullable=True)
    metadata_ = Column("metadata", Text, default="{}")
    created_at = Column(DateTime, default=utcnow)
