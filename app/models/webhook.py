"""Webhook models for outgoing notification delivery."""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from app.database import Base
from app.models import load_json, new_uuid, utcnow
from app.models.notification import NotificationType

WILDCARD_EVENT = "ALL"

# Every notification type can be subscribed to, plus the wildcard
VALID_EVENTS = [WILDCARD_EVENT] + [t.value for t in NotificationType]

ALLOWED_METHODS = ("POST", "PUT")


class WebhookStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    DISABLED = "DISABLED"
    FAILED = "FAILED"  # set automatically after consecutive failures


class BackoffStrategy(str, Enum):
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


@dataclass
class DeliveryAttempt:
    """Outcome of one logical delivery (including any internal retries)."""

    attempted_at: datetime = field(default_factory=utcnow)
    success: bool = False
    status_code: Optional[int] = None
    error: Optional[str] = None
    response_time_ms: Optional[int] = None
    attempts: int = 1

    def to_dict(self) -> dict:
        data = asdict(self)
        data["attempted_at"] = self.attempted_at.isoformat()
        return data


class WebhookEndpoint(Base):
    """Outgoing webhook subscription owned by a user."""

    __tablename__ = "webhook_endpoints"

    id = Column(String(36), primary_key=True, default=new_uuid)
    user_id = Column(String(36), nullable=False, index=True)
    url = Column(String(2048), nullable=False)
    method = Column(String(10), default="POST")
    headers = Column(Text, default="{}")  # JSON dict of custom headers
    secret = Column(String(200), nullable=True)  # HMAC signing secret
    events = Column(Text, default='["ALL"]')  # JSON list of subscribed events
    description = Column(String(500), default="")
    # Status and health
    status = Column(String(20), default=WebhookStatus.ACTIVE.value)
    active = Column(Boolean, default=True)
    # Retry configuration
    max_retries = Column(Integer, default=3)
    retry_backoff = Column(String(20), default=BackoffStrategy.EXPONENTIAL.value)
    timeout_ms = Column(Integer, default=5000)
    # Delivery tracking
    total_deliveries = Column(Integer, default=0)
    successful_deliveries = Column(Integer, default=0)
    failed_deliveries = Column(Integer, default=0)
    consecutive_failures = Column(Integer, default=0)
    last_delivery_at = Column(DateTime, nullable=True)
    last_success_at = Column(DateTime, nullable=True)
    last_failure_at = Column(DateTime, nullable=True)
    recent_attempts = Column(Text, default="[]")  # JSON ring buffer, newest last
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def event_list(self) -> list[str]:
        return load_json(self.events, [])

    @property
    def header_dict(self) -> dict:
        return load_json(self.headers, {})

    @property
    def attempt_history(self) -> list[dict]:
        return load_json(self.recent_attempts, [])

    def subscribes_to(self, event: str) -> bool:
        events = self.event_list
        return WILDCARD_EVENT in events or event in events
