"""Test Pydantic schemas validation."""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from app.models.notification import Notification, NotificationDelivery, NotificationType
from app.models.webhook import WebhookEndpoint
from app.schemas import (
    CategoryPreferencesUpdate,
    NotificationCreate,
    NotificationFilter,
    NotificationOut,
    WebhookCreate,
    WebhookOut,
)


def test_notification_create_minimal():
    n = NotificationCreate(user_id="u1", type="CANDIDATE_APPLIED", title="New application")
    assert n.type == NotificationType.CANDIDATE_APPLIED
    assert n.category is None
    assert n.priority is None
    assert n.channels is None
    assert n.data == {}


def test_notification_create_rejects_unknown_type():
    with pytest.raises(ValidationError):
        NotificationCreate(user_id="u1", type="candidate.applied", title="x")


def test_notification_create_rejects_unknown_channel():
    with pytest.raises(ValidationError):
        NotificationCreate(user_id="u1", type="JOB_POSTED", title="x", channels=["pager"])


def test_notification_create_invalid_email():
    with pytest.raises(ValidationError):
        NotificationCreate(user_id="u1", type="JOB_POSTED", title="x", user_email="not-an-email")


def test_notification_filter_defaults():
    f = NotificationFilter()
    assert f.page == 1
    assert f.limit == 20
    assert f.sort_by == "created_at"
    assert f.sort_order == "desc"
    assert f.include_expired is False


def test_notification_filter_limits():
    with pytest.raises(ValidationError):
        NotificationFilter(page=0)
    with pytest.raises(ValidationError):
        NotificationFilter(limit=500)
    with pytest.raises(ValidationError):
        NotificationFilter(sort_by="title")


def test_category_preferences_clear():
    u = CategoryPreferencesUpdate(category="SECURITY_ALERTS")
    assert u.channels is None


def test_webhook_create_defaults():
    wh = WebhookCreate(url="https://example.com/hook")
    assert wh.events == ["ALL"]
    assert wh.method == "POST"
    assert wh.secret is None
    assert wh.max_retries is None


def test_webhook_create_rejects_get():
    with pytest.raises(ValidationError):
        WebhookCreate(url="https://example.com/hook", method="GET")


def test_webhook_out_from_model_hides_secret():
    wh = WebhookEndpoint(user_id="u1", url="https://x.com/hook", secret="s3cret", events='["JOB_POSTED"]')
    wh.created_at = datetime.now(timezone.utc)
    out = WebhookOut.from_model(wh)
    assert out.has_secret is True
    assert "secret" not in out.model_dump()
    assert out.events == ["JOB_POSTED"]
    assert out.status == "ACTIVE"
    assert out.max_retries == 3
    assert out.recent_attempts == []


def test_webhook_out_invalid_json_events():
    wh = WebhookEndpoint(user_id="u1", url="https://x.com", events="bad json")
    wh.created_at = datetime.now(timezone.utc)
    out = WebhookOut.from_model(wh)
    assert out.events == []


def test_notification_out_from_model():
    n = Notification(
        user_id="u1",
        type="JOB_POSTED",
        category="HR_ACTIVITIES",
        priority="LOW",
        title="Job posted",
        channels='["in_app"]',
        data='{"jobId": "j1"}',
        action_url="/jobs/j1",
        action_label="View Job",
    )
    n.deliveries = [NotificationDelivery(channel="in_app", status="delivered")]
    out = NotificationOut.from_model(n)
    assert out.channels == ["in_app"]
    assert out.data == {"jobId": "j1"}
    assert out.delivery_status["in_app"].status == "delivered"
    assert out.action.url == "/jobs/j1"
    assert out.is_read is False
