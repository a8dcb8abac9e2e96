"""Pydantic schemas for API request/response and service inputs."""

from datetime import datetime
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, EmailStr, Field

from app.models import load_json
from app.models.notification import (
    NotificationCategory,
    NotificationChannel,
    NotificationPriority,
    NotificationType,
)
from app.models.webhook import BackoffStrategy


# ── Notification ─────────────────────────────────────────
class NotificationAction(BaseModel):
    label: str
    url: str


class NotificationCreate(BaseModel):
    """Input for dispatching one notification to one user."""

    user_id: str
    user_email: Optional[EmailStr] = None
    type: NotificationType
    category: Optional[NotificationCategory] = None  # derived from type when missing
    priority: Optional[NotificationPriority] = None  # derived from type when missing
    title: str = Field(..., min_length=1, max_length=300)
    message: str = ""
    data: dict[str, Any] = Field(default_factory=dict)
    channels: Optional[list[NotificationChannel]] = None  # forces routing, skips preferences
    action: Optional[NotificationAction] = None
    expires_at: Optional[datetime] = None
    group_key: Optional[str] = None
    source_id: Optional[str] = None
    source_type: Optional[str] = None
    triggered_by: Optional[str] = None


class NotificationFilter(BaseModel):
    user_id: Optional[str] = None
    type: Optional[Union[NotificationType, list[NotificationType]]] = None
    category: Optional[Union[NotificationCategory, list[NotificationCategory]]] = None
    priority: Optional[Union[NotificationPriority, list[NotificationPriority]]] = None
    is_read: Optional[bool] = None
    is_archived: Optional[bool] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    source_id: Optional[str] = None
    source_type: Optional[str] = None
    group_key: Optional[str] = None
    include_expired: bool = False
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1, le=200)
    sort_by: Literal["created_at", "priority", "read_at"] = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"


class ChannelDeliveryOut(BaseModel):
    status: str
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    error: Optional[str] = None
    retry_count: int = 0


class NotificationOut(BaseModel):
    id: str
    user_id: str
    type: str
    category: str
    priority: str
    title: str
    message: str
    data: dict
    channels: list[str]
    delivery_status: dict[str, ChannelDeliveryOut]
    is_read: bool
    read_at: Optional[datetime] = None
    is_archived: bool
    archived_at: Optional[datetime] = None
    action: Optional[NotificationAction] = None
    expires_at: Optional[datetime] = None
    group_key: Optional[str] = None
    source_id: Optional[str] = None
    source_type: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_model(cls, n):
        action = None
        if n.action_url:
            action = NotificationAction(label=n.action_label or "", url=n.action_url)
        return cls(
            id=n.id,
            user_id=n.user_id,
            type=n.type,
            category=n.category,
            priority=n.priority,
            title=n.title,
            message=n.message or "",
            data=n.data_dict,
            channels=n.channel_list,
            delivery_status={k: ChannelDeliveryOut(**v) for k, v in n.delivery_status.items()},
            is_read=bool(n.is_read),
            read_at=n.read_at,
            is_archived=bool(n.is_archived),
            archived_at=n.archived_at,
            action=action,
            expires_at=n.expires_at,
            group_key=n.group_key,
            source_id=n.source_id,
            source_type=n.source_type,
            created_at=n.created_at,
        )


class NotificationListOut(BaseModel):
    items: list[NotificationOut]
    total_count: int
    has_more: bool


class NotificationSummaryOut(BaseModel):
    user_id: str
    unread_count: int
    total_count: int
    count_by_category: dict[str, int]
    count_by_priority: dict[str, int]


class NotificationIdsRequest(BaseModel):
    notification_ids: list[str] = Field(..., min_length=1)


class DispatchRequest(BaseModel):
    """API body for sending a notification; recipient defaults to the caller."""

    user_id: Optional[str] = None
    type: NotificationType
    title: str = Field(..., min_length=1, max_length=300)
    message: str = ""
    priority: Optional[NotificationPriority] = None
    data: dict[str, Any] = Field(default_factory=dict)
    channels: Optional[list[NotificationChannel]] = None
    action: Optional[NotificationAction] = None
    expires_at: Optional[datetime] = None
    source_id: Optional[str] = None
    source_type: Optional[str] = None


# ── Preferences ──────────────────────────────────────────
class PreferencesUpdate(BaseModel):
    enabled: Optional[bool] = None
    default_channels: Optional[dict[str, bool]] = None
    category_channels: Optional[dict[str, list[str]]] = None
    category_settings: Optional[dict[str, dict]] = None
    quiet_hours: Optional[dict] = None
    email_digest: Optional[dict] = None


class CategoryPreferencesUpdate(BaseModel):
    category: NotificationCategory
    channels: Optional[list[str]] = None  # None clears the override


class CategoryRuleUpdate(BaseModel):
    category: NotificationCategory
    enabled: Optional[bool] = None
    min_priority: Optional[NotificationPriority] = None


class PreferencesOut(BaseModel):
    user_id: str
    enabled: bool
    default_channels: dict[str, bool]
    category_channels: dict[str, list[str]]
    category_settings: dict[str, dict]
    quiet_hours: dict
    email_digest: dict
    updated_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, prefs):
        return cls(
            user_id=prefs.user_id,
            enabled=bool(prefs.enabled),
            default_channels=prefs.default_channel_flags,
            category_channels=prefs.category_overrides,
            category_settings=prefs.category_rules,
            quiet_hours=prefs.quiet_hours_settings,
            email_digest=prefs.email_digest_settings,
            updated_at=prefs.updated_at,
        )


# ── Webhook ──────────────────────────────────────────────
class WebhookCreate(BaseModel):
    url: str
    method: Literal["POST", "PUT"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    secret: Optional[str] = None
    events: list[str] = Field(default_factory=lambda: ["ALL"])
    description: str = ""
    max_retries: Optional[int] = Field(None, ge=0, le=10)
    retry_backoff: Optional[BackoffStrategy] = None
    timeout_ms: Optional[int] = Field(None, ge=100, le=60000)


class WebhookUpdate(BaseModel):
    url: Optional[str] = None
    method: Optional[Literal["POST", "PUT"]] = None
    headers: Optional[dict[str, str]] = None
    secret: Optional[str] = None
    events: Optional[list[str]] = None
    description: Optional[str] = None
    active: Optional[bool] = None
    max_retries: Optional[int] = Field(None, ge=0, le=10)
    retry_backoff: Optional[BackoffStrategy] = None
    timeout_ms: Optional[int] = Field(None, ge=100, le=60000)


class WebhookToggle(BaseModel):
    active: bool


class DeliveryAttemptOut(BaseModel):
    attempted_at: datetime
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    response_time_ms: Optional[int] = None
    attempts: int = 1


class WebhookOut(BaseModel):
    id: str
    url: str
    method: str
    events: list[str]
    has_secret: bool
    status: str
    active: bool
    description: str
    max_retries: int
    retry_backoff: str
    timeout_ms: int
    total_deliveries: int
    successful_deliveries: int
    failed_deliveries: int
    consecutive_failures: int
    last_delivery_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    recent_attempts: list[DeliveryAttemptOut] = Field(default_factory=list)
    created_at: datetime

    @classmethod
    def from_model(cls, wh):
        return cls(
            id=wh.id,
            url=wh.url,
            method=wh.method or "POST",
            events=wh.event_list,
            has_secret=bool(wh.secret),
            status=wh.status,
            active=bool(wh.active),
            description=wh.description or "",
            max_retries=wh.max_retries or 0,
            retry_backoff=wh.retry_backoff,
            timeout_ms=wh.timeout_ms,
            total_deliveries=wh.total_deliveries or 0,
            successful_deliveries=wh.successful_deliveries or 0,
            failed_deliveries=wh.failed_deliveries or 0,
            consecutive_failures=wh.consecutive_failures or 0,
            last_delivery_at=wh.last_delivery_at,
            last_success_at=wh.last_success_at,
            last_failure_at=wh.last_failure_at,
            recent_attempts=[DeliveryAttemptOut(**a) for a in load_json(wh.recent_attempts, [])],
            created_at=wh.created_at,
        )


class WebhookStatisticsOut(BaseModel):
    total: int
    active: int
    paused: int
    failed: int
    total_deliveries: int
    successful_deliveries: int
    failed_deliveries: int
    success_rate: float


# ── Auth ─────────────────────────────────────────────────
class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
