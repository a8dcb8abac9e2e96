"""Email channel — renders notifications and sends them over SMTP or SES."""

import asyncio
import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import aiosmtplib
from jinja2 import BaseLoader, Environment

from app.config import get_settings
from app.models.notification import Notification, NotificationPriority

logger = logging.getLogger(__name__)

_jinja_env = Environment(loader=BaseLoader(), autoescape=True)

SUBJECT_TEMPLATE = _jinja_env.from_string(
    "{% if urgent %}[{{ priority }}] {% endif %}{{ title }}"
)

HTML_TEMPLATE = _jinja_env.from_string("""\
<html>
  <body style="font-family: sans-serif; color: #222;">
    <h2>{{ title }}</h2>
    <p>{{ message }}</p>
    {% if action_url %}
    <p><a href="{{ action_url }}">{{ action_label or "Open" }}</a></p>
    {% endif %}
    <hr>
    <p style="font-size: 12px; color: #888;">
      {{ category }} &middot; {{ priority }} &middot;
      <a href="{{ base_url }}/api/v1/notifications/preferences">Manage notification preferences</a>
    </p>
  </body>
</html>
""")

TEXT_TEMPLATE = _jinja_env.from_string("""\
{{ title }}

{{ message }}
{% if action_url %}
{{ action_label or "Open" }}: {{ action_url }}
{% endif %}""")


def render_notification_email(notification: Notification) -> tuple[str, str, str]:
    """Return ``(subject, html_body, text_body)`` for a notification."""
    settings = get_settings()
    action_url = notification.action_url
    if action_url and action_url.startswith("/"):
        action_url = settings.base_url.rstrip("/") + action_url
    context = {
        "title": notification.title,
        "message": notification.message or "",
        "category": notification.category,
        "priority": notification.priority,
        "urgent": notification.priority in (
            NotificationPriority.HIGH.value, NotificationPriority.CRITICAL.value,
        ),
        "action_label": notification.action_label,
        "action_url": action_url,
        "base_url": settings.base_url.rstrip("/"),
    }
    return (
        SUBJECT_TEMPLATE.render(**context),
        HTML_TEMPLATE.render(**context),
        TEXT_TEMPLATE.render(**context).strip() + "\n",
    )


async def send_email_smtp(
    to_email: str,
    subject: str,
    html_body: str,
    text_body: str = "",
) -> bool:
    """Send a single email via SMTP."""
    settings = get_settings()
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = f"{settings.smtp_from_name} <{settings.smtp_from_email}>"
    msg["To"] = to_email

    if text_body:
        msg.attach(MIMEText(text_body, "plain", "utf-8"))
    msg.attach(MIMEText(html_body, "html", "utf-8"))

    try:
        await aiosmtplib.send(
            msg,
            hostname=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_user or None,
            password=settings.smtp_password or None,
            start_tls=settings.smtp_use_tls,
        )
        logger.info(f"Email sent to {to_email}")
        return True
    except Exception as e:
        logger.error(f"Failed to send email to {to_email}: {e}")
        return False


async def send_email_ses(
    to_email: str,
    subject: str,
    html_body: str,
    text_body: str = "",
) -> bool:
    """Send a single email via Amazon SES."""
    import boto3

    settings = get_settings()
    client = boto3.client(
        "ses",
        region_name=settings.aws_region,
        aws_access_key_id=settings.aws_access_key_id or None,
        aws_secret_access_key=settings.aws_secret_access_key or None,
    )

    body = {"Html": {"Charset": "UTF-8", "Data": html_body}}
    if text_body:
        body["Text"] = {"Charset": "UTF-8", "Data": text_body}

    try:
        # boto3 is blocking; keep the event loop free
        await asyncio.to_thread(
            client.send_email,
            Source=f"{settings.smtp_from_name} <{settings.smtp_from_email}>",
            Destination={"ToAddresses": [to_email]},
            Message={
                "Subject": {"Charset": "UTF-8", "Data": subject},
                "Body": body,
            },
        )
        logger.info(f"SES email sent to {to_email}")
        return True
    except Exception as e:
        logger.error(f"SES failed for {to_email}: {e}")
        return False


async def send_email(to_email: str, subject: str, html_body: str, text_body: str = "") -> bool:
    """Route to configured backend."""
    if get_settings().mail_backend == "ses":
        return await send_email_ses(to_email, subject, html_body, text_body)
    return await send_email_smtp(to_email, subject, html_body, text_body)


async def send_notification_email(notification: Notification) -> bool:
    """Email channel sender used by the dispatcher. False means the channel failed."""
    if not notification.user_email:
        logger.warning(f"Notification {notification.id} has no recipient email; skipping email channel")
        return False
    subject, html_body, text_body = render_notification_email(notification)
    return await send_email(notification.user_email, subject, html_body, text_body)
