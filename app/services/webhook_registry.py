"""Webhook registry — owns outgoing endpoints, their subscriptions and health state."""

import asyncio
import json
import logging
import weakref
from collections import deque
from dataclasses import dataclass
from typing import Optional

from pydantic import HttpUrl, TypeAdapter, ValidationError
from sqlalchemy import case, delete, func, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.config import Settings, get_settings
from app.models import load_json, utcnow
from app.models.webhook import (
    ALLOWED_METHODS,
    VALID_EVENTS,
    BackoffStrategy,
    DeliveryAttempt,
    WebhookEndpoint,
    WebhookStatus,
)

logger = logging.getLogger(__name__)

_url_adapter = TypeAdapter(HttpUrl)

UPDATABLE_FIELDS = {
    "url", "method", "headers", "secret", "events", "description",
    "max_retries", "retry_backoff", "timeout_ms", "active",
}


class WebhookValidationError(ValueError):
    """Bad endpoint configuration, rejected before anything is persisted."""


@dataclass
class RetryConfig:
    max_retries: Optional[int] = None
    retry_backoff: Optional[str] = None
    timeout_ms: Optional[int] = None


# ── Validation helpers ──────────────────────────────────

def validate_url(url: str) -> str:
    if not url or not isinstance(url, str):
        raise WebhookValidationError("Webhook URL is required")
    try:
        _url_adapter.validate_python(url)
    except ValidationError:
        raise WebhookValidationError(f"Invalid URL format: {url}")
    return url


def validate_events(events) -> list[str]:
    if not events or not isinstance(events, (list, tuple, set)):
        raise WebhookValidationError("At least one event is required")
    invalid = [e for e in events if e not in VALID_EVENTS]
    if invalid:
        raise WebhookValidationError(f"Invalid events: {', '.join(map(str, invalid))}")
    # De-duplicate, keep order
    return list(dict.fromkeys(events))


def validate_method(method: str) -> str:
    method = (method or "").upper()
    if method not in ALLOWED_METHODS:
        raise WebhookValidationError(f"Unsupported HTTP method: {method or '<empty>'}")
    return method


def validate_headers(headers) -> dict:
    if headers is None:
        return {}
    if not isinstance(headers, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in headers.items()
    ):
        raise WebhookValidationError("Custom headers must be a mapping of strings")
    return headers


def validate_retry_fields(max_retries=None, retry_backoff=None, timeout_ms=None) -> dict:
    values = {}
    if max_retries is not None:
        if not isinstance(max_retries, int) or max_retries < 0:
            raise WebhookValidationError("max_retries must be a non-negative integer")
        values["max_retries"] = max_retries
    if retry_backoff is not None:
        try:
            values["retry_backoff"] = BackoffStrategy(retry_backoff).value
        except ValueError:
            raise WebhookValidationError(f"Unknown backoff strategy: {retry_backoff}")
    if timeout_ms is not None:
        if not isinstance(timeout_ms, int) or timeout_ms <= 0:
            raise WebhookValidationError("timeout_ms must be a positive integer")
        values["timeout_ms"] = timeout_ms
    return values


# ── Registry ────────────────────────────────────────────

class WebhookRegistry:
    """CRUD over webhook endpoints; the single writer of their health counters."""

    def __init__(self, session_factory: async_sessionmaker, settings: Optional[Settings] = None):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, endpoint_id: str) -> asyncio.Lock:
        lock = self._locks.get(endpoint_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[endpoint_id] = lock
        return lock

    async def create(
        self,
        owner_id: str,
        url: str,
        events: list[str],
        method: str = "POST",
        secret: Optional[str] = None,
        headers: Optional[dict] = None,
        retry_config: Optional[RetryConfig] = None,
        description: str = "",
    ) -> WebhookEndpoint:
        url = validate_url(url)
        events = validate_events(events)
        method = validate_method(method)
        headers = validate_headers(headers)
        retry_config = retry_config or RetryConfig()
        retry = validate_retry_fields(
            retry_config.max_retries, retry_config.retry_backoff, retry_config.timeout_ms,
        )

        endpoint = WebhookEndpoint(
            user_id=owner_id,
            url=url,
            method=method,
            headers=json.dumps(headers),
            secret=secret or None,
            events=json.dumps(events),
            description=description or "",
            status=WebhookStatus.ACTIVE.value,
            active=True,
            max_retries=retry.get("max_retries", self.settings.webhook_default_max_retries),
            retry_backoff=retry.get("retry_backoff", BackoffStrategy.EXPONENTIAL.value),
            timeout_ms=retry.get("timeout_ms", self.settings.webhook_default_timeout_ms),
            total_deliveries=0,
            successful_deliveries=0,
            failed_deliveries=0,
            consecutive_failures=0,
            recent_attempts="[]",
        )
        async with self.session_factory() as db:
            db.add(endpoint)
            await db.commit()
            await db.refresh(endpoint)
        logger.info(f"Webhook {endpoint.id} created for user {owner_id} -> {url}")
        return endpoint

    async def get(self, endpoint_id: str, owner_id: Optional[str] = None) -> Optional[WebhookEndpoint]:
        stmt = select(WebhookEndpoint).where(WebhookEndpoint.id == endpoint_id)
        if owner_id is not None:
            stmt = stmt.where(WebhookEndpoint.user_id == owner_id)
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return result.scalar_one_or_none()

    async def exists(self, endpoint_id: str) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.count(WebhookEndpoint.id)).where(WebhookEndpoint.id == endpoint_id)
            )
            return (result.scalar() or 0) > 0

    async def list_for_owner(self, owner_id: str) -> list[WebhookEndpoint]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(WebhookEndpoint)
                .where(WebhookEndpoint.user_id == owner_id)
                .order_by(WebhookEndpoint.created_at.desc())
            )
            return list(result.scalars().all())

    async def get_active_for_event(self, owner_id: str, event: str) -> list[WebhookEndpoint]:
        """Active, healthy endpoints of ``owner_id`` subscribed to ``event`` or ALL."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(WebhookEndpoint)
                .where(
                    WebhookEndpoint.user_id == owner_id,
                    WebhookEndpoint.active.is_(True),
                    WebhookEndpoint.status == WebhookStatus.ACTIVE.value,
                )
                .order_by(WebhookEndpoint.created_at, WebhookEndpoint.id)
            )
            endpoints = result.scalars().all()
        # Event sets are JSON text, so subscription matching happens here
        return [ep for ep in endpoints if ep.subscribes_to(event)]

    async def record_attempt(
        self, endpoint_id: str, attempt: DeliveryAttempt
    ) -> Optional[WebhookEndpoint]:
        """Apply one delivery outcome to counters, ring buffer and status.

        Concurrent callers for the same endpoint are serialised by a per-endpoint
        lock (same process) and a row lock (other processes, where supported).
        Counter updates are SQL-side increments inside a single UPDATE.
        """
        threshold = self.settings.webhook_failure_threshold
        ep = WebhookEndpoint

        async with self._lock_for(endpoint_id):
            async with self.session_factory() as db:
                async with db.begin():
                    result = await db.execute(
                        select(ep.recent_attempts).where(ep.id == endpoint_id).with_for_update()
                    )
                    row = result.first()
                    if row is None:
                        logger.warning(f"Delivery outcome for unknown webhook {endpoint_id} dropped")
                        return None

                    history = deque(
                        load_json(row.recent_attempts, []),
                        maxlen=self.settings.webhook_attempt_history,
                    )
                    history.append(attempt.to_dict())

                    values = {
                        "total_deliveries": ep.total_deliveries + 1,
                        "last_delivery_at": attempt.attempted_at,
                        "recent_attempts": json.dumps(list(history)),
                        "updated_at": utcnow(),
                    }
                    if attempt.success:
                        recovering = ep.status == WebhookStatus.FAILED.value
                        values.update(
                            successful_deliveries=ep.successful_deliveries + 1,
                            consecutive_failures=0,
                            last_success_at=attempt.attempted_at,
                            status=case((recovering, WebhookStatus.ACTIVE.value), else_=ep.status),
                            active=case((recovering, True), else_=ep.active),
                        )
                    else:
                        tripped = ep.consecutive_failures + 1 >= threshold
                        values.update(
                            failed_deliveries=ep.failed_deliveries + 1,
                            consecutive_failures=ep.consecutive_failures + 1,
                            last_failure_at=attempt.attempted_at,
                            status=case((tripped, WebhookStatus.FAILED.value), else_=ep.status),
                            active=case((tripped, False), else_=ep.active),
                        )
                    await db.execute(
                        update(ep)
                        .where(ep.id == endpoint_id)
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )

        endpoint = await self.get(endpoint_id)
        if endpoint is not None and endpoint.status == WebhookStatus.FAILED.value and not attempt.success:
            logger.warning(
                f"Webhook {endpoint_id} disabled after {endpoint.consecutive_failures} consecutive failures"
            )
        return endpoint

    async def toggle_active(
        self, endpoint_id: str, is_active: bool, owner_id: Optional[str] = None
    ) -> bool:
        """Explicit pause/resume. Pausing is distinct from the automatic FAILED state."""
        stmt = update(WebhookEndpoint).where(WebhookEndpoint.id == endpoint_id)
        if owner_id is not None:
            stmt = stmt.where(WebhookEndpoint.user_id == owner_id)
        values = {
            "active": is_active,
            "status": (WebhookStatus.ACTIVE if is_active else WebhookStatus.PAUSED).value,
            "updated_at": utcnow(),
        }
        if is_active:
            values["consecutive_failures"] = 0
        async with self.session_factory() as db:
            result = await db.execute(
                stmt.values(**values).execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount > 0

    async def update(
        self, endpoint_id: str, owner_id: str, changes: dict
    ) -> Optional[WebhookEndpoint]:
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise WebhookValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        values = {}
        if "url" in changes:
            values["url"] = validate_url(changes["url"])
        if "events" in changes:
            values["events"] = json.dumps(validate_events(changes["events"]))
        if "method" in changes:
            values["method"] = validate_method(changes["method"])
        if "headers" in changes:
            values["headers"] = json.dumps(validate_headers(changes["headers"]))
        if "secret" in changes:
            values["secret"] = changes["secret"] or None
        if "description" in changes:
            values["description"] = changes["description"] or ""
        values.update(validate_retry_fields(
            changes.get("max_retries"), changes.get("retry_backoff"), changes.get("timeout_ms"),
        ))

        endpoint = await self.get(endpoint_id, owner_id)
        if endpoint is None:
            return None

        if values:
            values["updated_at"] = utcnow()
            async with self.session_factory() as db:
                await db.execute(
                    update(WebhookEndpoint)
                    .where(WebhookEndpoint.id == endpoint_id, WebhookEndpoint.user_id == owner_id)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
        if changes.get("active") is not None:
            await self.toggle_active(endpoint_id, bool(changes["active"]), owner_id)
        return await self.get(endpoint_id, owner_id)

    async def delete(self, endpoint_id: str, owner_id: str) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                delete(WebhookEndpoint).where(
                    WebhookEndpoint.id == endpoint_id,
                    WebhookEndpoint.user_id == owner_id,
                )
            )
            await db.commit()
        deleted = result.rowcount > 0
        if deleted:
            logger.info(f"Webhook {endpoint_id} deleted by user {owner_id}")
        return deleted

    async def get_statistics(self, owner_id: str) -> dict:
        ep = WebhookEndpoint

        def _count(status: WebhookStatus):
            return func.coalesce(func.sum(case((ep.status == status.value, 1), else_=0)), 0)

        async with self.session_factory() as db:
            row = (await db.execute(
                select(
                    func.count(ep.id),
                    _count(WebhookStatus.ACTIVE),
                    _count(WebhookStatus.PAUSED),
                    _count(WebhookStatus.FAILED),
                    func.coalesce(func.sum(ep.total_deliveries), 0),
                    func.coalesce(func.sum(ep.successful_deliveries), 0),
                    func.coalesce(func.sum(ep.failed_deliveries), 0),
                ).where(ep.user_id == owner_id)
            )).one()

        total, active, paused, failed, deliveries, successful, failures = (int(v or 0) for v in row)
        return {
            "total": total,
            "active": active,
            "paused": paused,
            "failed": failed,
            "total_deliveries": deliveries,
            "successful_deliveries": successful,
            "failed_deliveries": failures,
            "success_rate": round(successful / deliveries * 100, 2) if deliveries > 0 else 0.0,
        }
