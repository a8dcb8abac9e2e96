"""Webhook delivery engine — delivers signed payloads with bounded retry and backoff."""

import asyncio
import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

import httpx

from app.config import Settings, get_settings
from app.models.audit import AuditEventType
from app.models.notification import Notification
from app.models.webhook import BackoffStrategy, DeliveryAttempt, WebhookEndpoint
from app.services.audit import AuditLogger
from app.services.webhook_registry import WebhookRegistry

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
RESERVED_HEADERS = frozenset(
    h.lower()
    for h in (
        "Content-Type",
        "User-Agent",
        "X-Webhook-ID",
        "X-Webhook-Event",
        "X-Webhook-Timestamp",
        SIGNATURE_HEADER,
    )
)
DELETED_DURING_DELIVERY = "Webhook deleted during delivery"


def sign_payload(payload: str, secret: str) -> str:
    """Generate HMAC-SHA256 signature for webhook payload."""
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


def serialize_payload(payload: dict) -> str:
    """Canonical JSON body; the exact string that gets signed and sent."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=_json_default)


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def compute_backoff_ms(attempt: int, strategy: str, cap_ms: int = 30000) -> int:
    """Delay before retry number ``attempt + 1`` (attempt is zero-based)."""
    if strategy == BackoffStrategy.LINEAR.value:
        return min((attempt + 1) * 2000, cap_ms)
    return min((2 ** attempt) * 1000, cap_ms)


def is_retryable_status(status_code: int) -> bool:
    return status_code >= 500 or status_code == 429


def build_webhook_payload(endpoint_id: str, notification: Notification) -> dict:
    return {
        "webhookId": endpoint_id,
        "event": notification.type,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "notification": {
            "notificationId": notification.id,
            "type": notification.type,
            "category": notification.category,
            "priority": notification.priority,
            "title": notification.title,
            "message": notification.message,
            "data": notification.data_dict,
        },
    }


class WebhookDeliveryEngine:
    """Delivers one payload to one endpoint and records the terminal outcome.

    ``deliver`` never raises. Retryable failures (5xx, 429, network errors,
    timeouts) are retried up to ``endpoint.max_retries`` times with the
    endpoint's backoff strategy; other 4xx responses are final.
    """

    def __init__(
        self,
        registry: WebhookRegistry,
        http_client: httpx.AsyncClient,
        audit: Optional[AuditLogger] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        settings: Optional[Settings] = None,
    ):
        self.registry = registry
        self.http_client = http_client
        self.audit = audit
        self.sleep = sleep
        self.settings = settings or get_settings()

    def build_headers(self, endpoint: WebhookEndpoint, body: str, event: str) -> dict:
        # Custom headers never replace the protocol headers
        headers = {k: v for k, v in endpoint.header_dict.items() if k.lower() not in RESERVED_HEADERS}
        headers.update({
            "Content-Type": "application/json",
            "User-Agent": self.settings.webhook_user_agent,
            "X-Webhook-ID": endpoint.id,
            "X-Webhook-Event": event,
            "X-Webhook-Timestamp": datetime.now(timezone.utc).isoformat(),
        })
        if endpoint.secret:
            headers[SIGNATURE_HEADER] = sign_payload(body, endpoint.secret)
        return headers

    async def deliver(self, endpoint: WebhookEndpoint, payload: dict) -> DeliveryAttempt:
        body = serialize_payload(payload)
        event = str(payload.get("event", ""))
        max_retries = max(endpoint.max_retries or 0, 0)
        cap_ms = self.settings.webhook_backoff_cap_ms

        attempt = 0
        while True:
            result, retryable = await self._send_once(endpoint, body, event, attempt)
            if result.success or not retryable or attempt >= max_retries:
                break

            delay_ms = compute_backoff_ms(attempt, endpoint.retry_backoff, cap_ms)
            logger.info(
                f"Webhook {endpoint.id} failed ({result.error}), retrying in {delay_ms}ms "
                f"(attempt {attempt + 1}/{max_retries})"
            )
            await self.sleep(delay_ms / 1000)

            if not await self._still_registered(endpoint.id):
                logger.info(f"Webhook {endpoint.id} was deleted mid-delivery; stopping retries")
                result.error = DELETED_DURING_DELIVERY
                result.attempts = attempt + 1
                return result
            attempt += 1

        result.attempts = attempt + 1
        try:
            await self.registry.record_attempt(endpoint.id, result)
        except Exception:
            logger.exception(f"Failed to record delivery outcome for webhook {endpoint.id}")
        return result

    async def _still_registered(self, endpoint_id: str) -> bool:
        try:
            return await self.registry.exists(endpoint_id)
        except Exception:
            logger.exception(f"Could not check webhook {endpoint_id}; continuing retries")
            return True

    async def _send_once(
        self, endpoint: WebhookEndpoint, body: str, event: str, attempt: int
    ) -> tuple[DeliveryAttempt, bool]:
        """One HTTP request. Returns the outcome and whether it may be retried."""
        result = DeliveryAttempt()
        headers = self.build_headers(endpoint, body, event)
        timeout_ms = endpoint.timeout_ms or self.settings.webhook_default_timeout_ms

        start = time.monotonic()
        retryable = False
        try:
            # httpx timeouts are per phase; wait_for bounds the whole attempt
            resp = await asyncio.wait_for(
                self.http_client.request(
                    endpoint.method or "POST",
                    endpoint.url,
                    content=body,
                    headers=headers,
                    timeout=timeout_ms / 1000,
                ),
                timeout_ms / 1000,
            )
            result.status_code = resp.status_code
            result.success = 200 <= resp.status_code < 300
            if not result.success:
                result.error = f"HTTP {resp.status_code}: {resp.reason_phrase}"
                retryable = is_retryable_status(resp.status_code)
        except (httpx.TimeoutException, asyncio.TimeoutError):
            result.error = f"Timeout after {timeout_ms}ms"
            retryable = True
        except Exception as exc:
            result.error = str(exc)[:500] or type(exc).__name__
            retryable = True
        result.response_time_ms = int((time.monotonic() - start) * 1000)

        await self._audit_attempt(endpoint, event, result, attempt)
        return result, retryable

    async def _audit_attempt(
        self, endpoint: WebhookEndpoint, event: str, result: DeliveryAttempt, attempt: int
    ) -> None:
        if result.success:
            logger.info(
                f"Webhook {endpoint.id} delivered {event} to {endpoint.url} "
                f"({result.status_code}, {result.response_time_ms}ms)"
            )
        else:
            logger.warning(
                f"Webhook {endpoint.id} delivery of {event} to {endpoint.url} failed: "
                f"{result.error} (attempt {attempt + 1})"
            )
        if self.audit is None:
            return
        await self.audit.record(
            AuditEventType.WEBHOOK_TRIGGERED if result.success else AuditEventType.WEBHOOK_FAILED,
            action="trigger",
            actor_id=endpoint.user_id,
            resource="webhook",
            resource_id=endpoint.id,
            success=result.success,
            error=result.error,
            metadata={
                "url": endpoint.url,
                "event": event,
                "status_code": result.status_code,
                "error": result.error,
                "attempt": attempt + 1,
                "max_retries": endpoint.max_retries,
                "response_time_ms": result.response_time_ms,
            },
        )
