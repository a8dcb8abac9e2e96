"""Webhook endpoint management API, scoped to the authenticated user."""

from fastapi import APIRouter, Depends, HTTPException

from app.api.auth import get_current_user
from app.api.deps import get_dispatcher, get_registry
from app.models import User
from app.models.audit import AuditEventType
from app.models.webhook import VALID_EVENTS
from app.schemas import (
    DeliveryAttemptOut,
    WebhookCreate,
    WebhookOut,
    WebhookStatisticsOut,
    WebhookToggle,
    WebhookUpdate,
)
from app.services.notification_dispatcher import NotificationDispatcher
from app.services.webhook_registry import RetryConfig, WebhookRegistry, WebhookValidationError

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.get("/events", response_model=list[str])
async def list_event_types():
    """List all subscribable webhook events."""
    return VALID_EVENTS


@router.get("/statistics", response_model=WebhookStatisticsOut)
async def webhook_statistics(
    user: User = Depends(get_current_user),
    registry: WebhookRegistry = Depends(get_registry),
):
    return WebhookStatisticsOut(**await registry.get_statistics(user.id))


@router.get("/", response_model=list[WebhookOut])
async def list_webhooks(
    user: User = Depends(get_current_user),
    registry: WebhookRegistry = Depends(get_registry),
):
    return [WebhookOut.from_model(wh) for wh in await registry.list_for_owner(user.id)]


@router.post("/", response_model=WebhookOut, status_code=201)
async def create_webhook(
    data: WebhookCreate,
    user: User = Depends(get_current_user),
    registry: WebhookRegistry = Depends(get_registry),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    retry = RetryConfig(
        max_retries=data.max_retries,
        retry_backoff=data.retry_backoff.value if data.retry_backoff else None,
        timeout_ms=data.timeout_ms,
    )
    try:
        wh = await registry.create(
            user.id,
            data.url,
            data.events,
            method=data.method,
            secret=data.secret,
            headers=data.headers,
            retry_config=retry,
            description=data.description,
        )
    except WebhookValidationError as e:
        raise HTTPException(400, str(e))
    if dispatcher.audit is not None:
        await dispatcher.audit.record(
            AuditEventType.WEBHOOK_CONFIGURED,
            action="create",
            actor_id=user.id,
            resource="webhook",
            resource_id=wh.id,
            metadata={"url": wh.url, "events": wh.event_list},
        )
    return WebhookOut.from_model(wh)


@router.get("/{webhook_id}", response_model=WebhookOut)
async def get_webhook(
    webhook_id: str,
    user: User = Depends(get_current_user),
    registry: WebhookRegistry = Depends(get_registry),
):
    wh = await registry.get(webhook_id, user.id)
    if not wh:
        raise HTTPException(404, "Webhook not found")
    return WebhookOut.from_model(wh)


@router.patch("/{webhook_id}", response_model=WebhookOut)
async def update_webhook(
    webhook_id: str,
    data: WebhookUpdate,
    user: User = Depends(get_current_user),
    registry: WebhookRegistry = Depends(get_registry),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    changes = data.model_dump(exclude_unset=True)
    if changes.get("retry_backoff") is not None:
        changes["retry_backoff"] = changes["retry_backoff"].value
    try:
        wh = await registry.update(webhook_id, user.id, changes)
    except WebhookValidationError as e:
        raise HTTPException(400, str(e))
    if not wh:
        raise HTTPException(404, "Webhook not found")
    if dispatcher.audit is not None:
        await dispatcher.audit.record(
            AuditEventType.WEBHOOK_CONFIGURED,
            action="update",
            actor_id=user.id,
            resource="webhook",
            resource_id=wh.id,
            metadata={"changed": sorted(changes)},
        )
    return WebhookOut.from_model(wh)


@router.post("/{webhook_id}/toggle", response_model=WebhookOut)
async def toggle_webhook(
    webhook_id: str,
    data: WebhookToggle,
    user: User = Depends(get_current_user),
    registry: WebhookRegistry = Depends(get_registry),
):
    if not await registry.toggle_active(webhook_id, data.active, user.id):
        raise HTTPException(404, "Webhook not found")
    return WebhookOut.from_model(await registry.get(webhook_id, user.id))


@router.post("/{webhook_id}/test", response_model=DeliveryAttemptOut)
async def test_webhook(
    webhook_id: str,
    user: User = Depends(get_current_user),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Send a test payload to the endpoint and return the delivery outcome."""
    attempt = await dispatcher.test_webhook(webhook_id, user.id)
    if attempt is None:
        raise HTTPException(404, "Webhook not found")
    return DeliveryAttemptOut(**attempt.to_dict())


@router.delete("/{webhook_id}", status_code=204)
async def delete_webhook(
    webhook_id: str,
    user: User = Depends(get_current_user),
    registry: WebhookRegistry = Depends(get_registry),
):
    if not await registry.delete(webhook_id, user.id):
        raise HTTPException(404, "Webhook not found")
