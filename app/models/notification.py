"""Notification, per-channel delivery and preference models."""

from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from app.database import Base
from app.models import load_json, new_uuid, utcnow


# ── Enumerations ────────────────────────────────────────
class NotificationType(str, Enum):
    # Candidates
    CANDIDATE_APPLIED = "CANDIDATE_APPLIED"
    CANDIDATE_STATUS_CHANGED = "CANDIDATE_STATUS_CHANGED"
    CANDIDATE_DOCUMENT_UPLOADED = "CANDIDATE_DOCUMENT_UPLOADED"
    CANDIDATE_AI_ANALYSIS_COMPLETE = "CANDIDATE_AI_ANALYSIS_COMPLETE"
    CANDIDATE_ASSIGNED = "CANDIDATE_ASSIGNED"
    # Jobs
    JOB_POSTED = "JOB_POSTED"
    JOB_UPDATED = "JOB_UPDATED"
    JOB_CLOSED = "JOB_CLOSED"
    JOB_APPLICATION_RECEIVED = "JOB_APPLICATION_RECEIVED"
    # Interviews
    INTERVIEW_SCHEDULED = "INTERVIEW_SCHEDULED"
    INTERVIEW_REMINDER = "INTERVIEW_REMINDER"
    INTERVIEW_COMPLETED = "INTERVIEW_COMPLETED"
    INTERVIEW_CANCELLED = "INTERVIEW_CANCELLED"
    # User management
    USER_CREATED = "USER_CREATED"
    USER_UPDATED = "USER_UPDATED"
    USER_ROLE_CHANGED = "USER_ROLE_CHANGED"
    PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    # Security
    SECURITY_ALERT = "SECURITY_ALERT"
    UNAUTHORIZED_ACCESS_ATTEMPT = "UNAUTHORIZED_ACCESS_ATTEMPT"
    SUSPICIOUS_ACTIVITY = "SUSPICIOUS_ACTIVITY"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    MULTIPLE_FAILED_LOGINS = "MULTIPLE_FAILED_LOGINS"
    # Comments
    COMMENT_MENTION = "COMMENT_MENTION"
    COMMENT_REPLY = "COMMENT_REPLY"
    COMMENT_ON_CANDIDATE = "COMMENT_ON_CANDIDATE"
    COMMENT_ON_JOB = "COMMENT_ON_JOB"
    COMMENT_EDITED = "COMMENT_EDITED"
    COMMENT_DELETED = "COMMENT_DELETED"
    # System
    SYSTEM_MAINTENANCE = "SYSTEM_MAINTENANCE"
    SYSTEM_UPDATE = "SYSTEM_UPDATE"
    SYSTEM_ERROR = "SYSTEM_ERROR"
    BACKUP_COMPLETED = "BACKUP_COMPLETED"
    # Admin broadcast
    ADMIN_ANNOUNCEMENT = "ADMIN_ANNOUNCEMENT"
    EMERGENCY_ALERT = "EMERGENCY_ALERT"


class NotificationCategory(str, Enum):
    HR_ACTIVITIES = "HR_ACTIVITIES"
    SECURITY_ALERTS = "SECURITY_ALERTS"
    SYSTEM_UPDATES = "SYSTEM_UPDATES"
    COMMENTS = "COMMENTS"
    INTERVIEWS = "INTERVIEWS"
    ADMIN = "ADMIN"


class NotificationPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


# Higher = more urgent; used for sorting by priority
PRIORITY_RANK = {
    NotificationPriority.LOW: 0,
    NotificationPriority.MEDIUM: 1,
    NotificationPriority.HIGH: 2,
    NotificationPriority.CRITICAL: 3,
}


class NotificationChannel(str, Enum):
    IN_APP = "in_app"
    EMAIL = "email"
    PUSH = "push"
    SMS = "sms"
    WEBHOOK = "webhook"


class DigestFrequency(str, Enum):
    IMMEDIATE = "IMMEDIATE"
    HOURLY = "HOURLY"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    NEVER = "NEVER"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


# Allowed per-channel status transitions (failed and read are terminal)
DELIVERY_TRANSITIONS: dict[DeliveryStatus, set[DeliveryStatus]] = {
    DeliveryStatus.PENDING: {DeliveryStatus.SENT, DeliveryStatus.DELIVERED, DeliveryStatus.FAILED},
    DeliveryStatus.SENT: {DeliveryStatus.DELIVERED, DeliveryStatus.FAILED},
    DeliveryStatus.DELIVERED: {DeliveryStatus.READ},
    DeliveryStatus.READ: set(),
    DeliveryStatus.FAILED: set(),
}


_T = NotificationType
_C = NotificationCategory
_P = NotificationPriority

TYPE_TO_CATEGORY: dict[NotificationType, NotificationCategory] = {
    _T.CANDIDATE_APPLIED: _C.HR_ACTIVITIES,
    _T.CANDIDATE_STATUS_CHANGED: _C.HR_ACTIVITIES,
    _T.CANDIDATE_DOCUMENT_UPLOADED: _C.HR_ACTIVITIES,
    _T.CANDIDATE_AI_ANALYSIS_COMPLETE: _C.HR_ACTIVITIES,
    _T.CANDIDATE_ASSIGNED: _C.HR_ACTIVITIES,
    _T.JOB_POSTED: _C.HR_ACTIVITIES,
    _T.JOB_UPDATED: _C.HR_ACTIVITIES,
    _T.JOB_CLOSED: _C.HR_ACTIVITIES,
    _T.JOB_APPLICATION_RECEIVED: _C.HR_ACTIVITIES,
    _T.INTERVIEW_SCHEDULED: _C.INTERVIEWS,
    _T.INTERVIEW_REMINDER: _C.INTERVIEWS,
    _T.INTERVIEW_COMPLETED: _C.INTERVIEWS,
    _T.INTERVIEW_CANCELLED: _C.INTERVIEWS,
    _T.USER_CREATED: _C.ADMIN,
    _T.USER_UPDATED: _C.ADMIN,
    _T.USER_ROLE_CHANGED: _C.ADMIN,
    _T.PASSWORD_RESET_REQUESTED: _C.SECURITY_ALERTS,
    _T.PASSWORD_CHANGED: _C.SECURITY_ALERTS,
    _T.SECURITY_ALERT: _C.SECURITY_ALERTS,
    _T.UNAUTHORIZED_ACCESS_ATTEMPT: _C.SECURITY_ALERTS,
    _T.SUSPICIOUS_ACTIVITY: _C.SECURITY_ALERTS,
    _T.ACCOUNT_LOCKED: _C.SECURITY_ALERTS,
    _T.MULTIPLE_FAILED_LOGINS: _C.SECURITY_ALERTS,
    _T.COMMENT_MENTION: _C.COMMENTS,
    _T.COMMENT_REPLY: _C.COMMENTS,
    _T.COMMENT_ON_CANDIDATE: _C.COMMENTS,
    _T.COMMENT_ON_JOB: _C.COMMENTS,
    _T.COMMENT_EDITED: _C.COMMENTS,
    _T.COMMENT_DELETED: _C.COMMENTS,
    _T.SYSTEM_MAINTENANCE: _C.SYSTEM_UPDATES,
    _T.SYSTEM_UPDATE: _C.SYSTEM_UPDATES,
    _T.SYSTEM_ERROR: _C.SYSTEM_UPDATES,
    _T.BACKUP_COMPLETED: _C.SYSTEM_UPDATES,
    _T.ADMIN_ANNOUNCEMENT: _C.ADMIN,
    _T.EMERGENCY_ALERT: _C.ADMIN,
}

TYPE_TO_PRIORITY: dict[NotificationType, NotificationPriority] = {
    _T.CANDIDATE_APPLIED: _P.MEDIUM,
    _T.CANDIDATE_STATUS_CHANGED: _P.MEDIUM,
    _T.CANDIDATE_DOCUMENT_UPLOADED: _P.LOW,
    _T.CANDIDATE_AI_ANALYSIS_COMPLETE: _P.LOW,
    _T.CANDIDATE_ASSIGNED: _P.HIGH,
    _T.JOB_POSTED: _P.MEDIUM,
    _T.JOB_UPDATED: _P.LOW,
    _T.JOB_CLOSED: _P.MEDIUM,
    _T.JOB_APPLICATION_RECEIVED: _P.MEDIUM,
    _T.INTERVIEW_SCHEDULED: _P.HIGH,
    _T.INTERVIEW_REMINDER: _P.HIGH,
    _T.INTERVIEW_COMPLETED: _P.MEDIUM,
    _T.INTERVIEW_CANCELLED: _P.HIGH,
    _T.USER_CREATED: _P.MEDIUM,
    _T.USER_UPDATED: _P.LOW,
    _T.USER_ROLE_CHANGED: _P.HIGH,
    _T.PASSWORD_RESET_REQUESTED: _P.MEDIUM,
    _T.PASSWORD_CHANGED: _P.MEDIUM,
    _T.SECURITY_ALERT: _P.CRITICAL,
    _T.UNAUTHORIZED_ACCESS_ATTEMPT: _P.HIGH,
    _T.SUSPICIOUS_ACTIVITY: _P.HIGH,
    _T.ACCOUNT_LOCKED: _P.CRITICAL,
    _T.MULTIPLE_FAILED_LOGINS: _P.HIGH,
    _T.COMMENT_MENTION: _P.MEDIUM,
    _T.COMMENT_REPLY: _P.LOW,
    _T.COMMENT_ON_CANDIDATE: _P.LOW,
    _T.COMMENT_ON_JOB: _P.LOW,
    _T.COMMENT_EDITED: _P.LOW,
    _T.COMMENT_DELETED: _P.LOW,
    _T.SYSTEM_MAINTENANCE: _P.HIGH,
    _T.SYSTEM_UPDATE: _P.LOW,
    _T.SYSTEM_ERROR: _P.HIGH,
    _T.BACKUP_COMPLETED: _P.LOW,
    _T.ADMIN_ANNOUNCEMENT: _P.MEDIUM,
    _T.EMERGENCY_ALERT: _P.CRITICAL,
}

def derive_classification(
    type_: NotificationType,
    category: NotificationCategory | None = None,
    priority: NotificationPriority | None = None,
) -> tuple[NotificationCategory, NotificationPriority]:
    """Fill in category/priority from the static type tables when not given."""
    type_ = NotificationType(type_)
    return (
        NotificationCategory(category) if category else TYPE_TO_CATEGORY[type_],
        NotificationPriority(priority) if priority else TYPE_TO_PRIORITY[type_],
    )


def ordered_channels(channels) -> list["NotificationChannel"]:
    """De-duplicated channels in declaration order."""
    wanted = {NotificationChannel(c) for c in channels}
    return [c for c in NotificationChannel if c in wanted]


SYSTEM_DEFAULT_CHANNELS = frozenset({NotificationChannel.IN_APP, NotificationChannel.EMAIL})

DEFAULT_CHANNEL_FLAGS = {
    NotificationChannel.IN_APP.value: True,
    NotificationChannel.EMAIL.value: True,
    NotificationChannel.PUSH.value: False,
    NotificationChannel.SMS.value: False,
    NotificationChannel.WEBHOOK.value: False,
}

DEFAULT_QUIET_HOURS = {
    "enabled": False,
    "start": "22:00",
    "end": "08:00",
    "timezone": "UTC",
    "allow_critical": True,
    "days_of_week": [],  # 0=Sunday .. 6=Saturday; empty means every day
}

DEFAULT_EMAIL_DIGEST = {"enabled": False, "frequency": "IMMEDIATE"}


# ── Notification ────────────────────────────────────────
class Notification(Base):
    """One event delivered to one user."""

    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=new_uuid)
    user_id = Column(String(36), nullable=False, index=True)
    user_email = Column(String(320), nullable=True)
    type = Column(String(50), nullable=False, index=True)
    category = Column(String(30), nullable=False, index=True)
    priority = Column(String(10), nullable=False)
    priority_rank = Column(Integer, default=1)
    title = Column(String(300), nullable=False)
    message = Column(Text, default="")
    data = Column(Text, default="{}")  # JSON
    channels = Column(Text, default="[]")  # JSON list of channels routed to
    is_read = Column(Boolean, default=False)
    read_at = Column(DateTime, nullable=True)
    is_archived = Column(Boolean, default=False)
    archived_at = Column(DateTime, nullable=True)
    action_label = Column(String(100), nullable=True)
    action_url = Column(String(2048), nullable=True)
    expires_at = Column(DateTime, nullable=True)
    group_key = Column(String(200), nullable=True)
    source_id = Column(String(100), nullable=True, index=True)
    source_type = Column(String(50), nullable=True)
    triggered_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    deliveries = relationship(
        "NotificationDelivery",
        back_populates="notification",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    @property
    def data_dict(self) -> dict:
        return load_json(self.data, {})

    @property
    def channel_list(self) -> list[str]:
        return load_json(self.channels, [])

    @property
    def delivery_status(self) -> dict:
        return {d.channel: d.as_dict() for d in (self.deliveries or [])}


class NotificationDelivery(Base):
    """Delivery state of one notification on one channel."""

    __tablename__ = "notification_deliveries"

    id = Column(String(36), primary_key=True, default=new_uuid)
    notification_id = Column(
        String(36), ForeignKey("notifications.id", ondelete="CASCADE"), nullable=False, index=True
    )
    channel = Column(String(20), nullable=False)
    status = Column(String(20), default=DeliveryStatus.PENDING.value)
    sent_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    read_at = Column(DateTime, nullable=True)
    error = Column(Text, nullable=True)
    retry_count = Column(Integer, default=0)
    last_retry_at = Column(DateTime, nullable=True)

    notification = relationship("Notification", back_populates="deliveries")

    def as_dict(self) -> dict:
        return {
            "status": self.status,
            "sent_at": self.sent_at,
            "delivered_at": self.delivered_at,
            "read_at": self.read_at,
            "error": self.error,
            "retry_count": self.retry_count or 0,
        }


# ── Preferences ─────────────────────────────────────────
class NotificationPreferences(Base):
    """Per-user channel routing settings, created lazily with defaults."""

    __tablename__ = "notification_preferences"

    id = Column(String(36), primary_key=True, default=new_uuid)
    user_id = Column(String(36), unique=True, nullable=False)
    enabled = Column(Boolean, default=True)
    default_channels = Column(Text, nullable=True)  # JSON: {"in_app": true, "email": true, ...}
    category_channels = Column(Text, default="{}")  # JSON: {"SECURITY_ALERTS": ["in_app", "sms"]}
    category_settings = Column(Text, default="{}")  # JSON: {"COMMENTS": {"enabled": false, "min_priority": "HIGH"}}
    quiet_hours = Column(Text, nullable=True)  # JSON, see DEFAULT_QUIET_HOURS
    email_digest = Column(Text, nullable=True)  # JSON, see DEFAULT_EMAIL_DIGEST
    last_modified_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def default_channel_flags(self) -> dict:
        return load_json(self.default_channels, dict(DEFAULT_CHANNEL_FLAGS))

    @property
    def category_overrides(self) -> dict:
        return load_json(self.category_channels, {})

    @property
    def category_rules(self) -> dict:
        return load_json(self.category_settings, {})

    @property
    def quiet_hours_settings(self) -> dict:
        return {**DEFAULT_QUIET_HOURS, **load_json(self.quiet_hours, {})}

    @property
    def email_digest_settings(self) -> dict:
        return {**DEFAULT_EMAIL_DIGEST, **load_json(self.email_digest, {})}
