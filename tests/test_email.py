"""Notification email rendering."""

import pytest

from app.models.notification import Notification
from app.services.email import render_notification_email, send_notification_email


def _notification(**kw):
    kw.setdefault("user_id", "u1")
    kw.setdefault("type", "INTERVIEW_SCHEDULED")
    kw.setdefault("category", "INTERVIEWS")
    kw.setdefault("priority", "MEDIUM")
    kw.setdefault("title", "Interview booked")
    kw.setdefault("message", "Tomorrow at 10:00")
    return Notification(**kw)


def test_render_plain():
    subject, html, text = render_notification_email(_notification())
    assert subject == "Interview booked"
    assert "<h2>Interview booked</h2>" in html
    assert "Tomorrow at 10:00" in text


def test_render_urgent_subject_and_action_link():
    n = _notification(priority="CRITICAL", action_label="View Candidate", action_url="/candidates/c1")
    subject, html, text = render_notification_email(n)
    assert subject == "[CRITICAL] Interview booked"
    assert "http://localhost:8000/candidates/c1" in html
    assert "View Candidate: http://localhost:8000/candidates/c1" in text


def test_render_escapes_html():
    _, html, _ = render_notification_email(_notification(title="<script>alert(1)</script>"))
    assert "<script>" not in html
    assert "&lt;script&gt;" in html


@pytest.mark.asyncio
async def test_send_without_recipient_fails_channel():
    assert await send_notification_email(_notification()) is False
