"""Notification inbox and preferences API, scoped to the authenticated user."""

from dataclasses import asdict
from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from app.api.auth import get_current_user
from app.api.deps import get_dispatcher, get_resolver, get_store
from app.models import User
from app.models.notification import NotificationCategory, NotificationPriority, NotificationType
from app.schemas import (
    CategoryPreferencesUpdate,
    CategoryRuleUpdate,
    DispatchRequest,
    NotificationCreate,
    NotificationFilter,
    NotificationIdsRequest,
    NotificationListOut,
    NotificationOut,
    NotificationSummaryOut,
    PreferencesOut,
    PreferencesUpdate,
)
from app.services.notification_dispatcher import NotificationDispatcher
from app.services.notification_store import NotificationOwnershipError, NotificationStore
from app.services.preferences import PreferenceResolver, PreferenceValidationError

router = APIRouter(prefix="/notifications", tags=["notifications"])


# ── Inbox ────────────────────────────────────────────────
@router.get("/", response_model=NotificationListOut)
async def list_notifications(
    type: Optional[list[NotificationType]] = Query(None),
    category: Optional[list[NotificationCategory]] = Query(None),
    priority: Optional[list[NotificationPriority]] = Query(None),
    is_read: Optional[bool] = None,
    is_archived: Optional[bool] = None,
    created_after: Optional[datetime] = None,
    created_before: Optional[datetime] = None,
    source_id: Optional[str] = None,
    source_type: Optional[str] = None,
    group_key: Optional[str] = None,
    include_expired: bool = False,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    sort_by: Literal["created_at", "priority", "read_at"] = "created_at",
    sort_order: Literal["asc", "desc"] = "desc",
    user: User = Depends(get_current_user),
    store: NotificationStore = Depends(get_store),
):
    result = await store.list_notifications(NotificationFilter(
        user_id=user.id,
        type=type,
        category=category,
        priority=priority,
        is_read=is_read,
        is_archived=is_archived,
        created_after=created_after,
        created_before=created_before,
        source_id=source_id,
        source_type=source_type,
        group_key=group_key,
        include_expired=include_expired,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
    ))
    return NotificationListOut(
        items=[NotificationOut.from_model(n) for n in result.items],
        total_count=result.total_count,
        has_more=result.has_more,
    )


@router.get("/unread-count")
async def unread_count(
    user: User = Depends(get_current_user),
    store: NotificationStore = Depends(get_store),
):
    return {"unread_count": await store.unread_count(user.id)}


@router.get("/summary", response_model=NotificationSummaryOut)
async def notification_summary(
    user: User = Depends(get_current_user),
    store: NotificationStore = Depends(get_store),
):
    summary = await store.summary(user.id)
    return NotificationSummaryOut(**asdict(summary))


@router.post("/", response_model=Optional[NotificationOut], status_code=201)
async def send_notification(
    data: DispatchRequest,
    user: User = Depends(get_current_user),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Dispatch a notification. Only superusers may target another user."""
    recipient = data.user_id or user.id
    if recipient != user.id and not user.is_superuser:
        raise HTTPException(403, "Not allowed to notify other users")
    notification = await dispatcher.dispatch(NotificationCreate(
        user_id=recipient,
        user_email=user.email if recipient == user.id else None,
        triggered_by=user.id,
        **data.model_dump(exclude={"user_id"}),
    ))
    return NotificationOut.from_model(notification) if notification else None


@router.post("/read-all")
async def mark_all_read(
    user: User = Depends(get_current_user),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    return {"updated": await dispatcher.mark_all_read(user.id)}


@router.post("/bulk-delete")
async def bulk_delete(
    data: NotificationIdsRequest,
    user: User = Depends(get_current_user),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    try:
        deleted = await dispatcher.delete_many(user.id, data.notification_ids)
    except NotificationOwnershipError as e:
        raise HTTPException(403, str(e))
    return {"deleted": deleted}


# ── Preferences ──────────────────────────────────────────
@router.get("/preferences", response_model=PreferencesOut)
async def get_preferences(
    user: User = Depends(get_current_user),
    resolver: PreferenceResolver = Depends(get_resolver),
):
    return PreferencesOut.from_model(await resolver.get_or_create(user.id))


@router.put("/preferences", response_model=PreferencesOut)
async def update_preferences(
    data: PreferencesUpdate,
    user: User = Depends(get_current_user),
    resolver: PreferenceResolver = Depends(get_resolver),
):
    try:
        prefs = await resolver.update_preferences(
            user.id, data.model_dump(exclude_unset=True), modified_by=user.id
        )
    except PreferenceValidationError as e:
        raise HTTPException(400, str(e))
    return PreferencesOut.from_model(prefs)


@router.put("/preferences/category", response_model=PreferencesOut)
async def update_category_preferences(
    data: CategoryPreferencesUpdate,
    user: User = Depends(get_current_user),
    resolver: PreferenceResolver = Depends(get_resolver),
):
    try:
        prefs = await resolver.update_category_preferences(
            user.id, data.category, data.channels, modified_by=user.id
        )
    except PreferenceValidationError as e:
        raise HTTPException(400, str(e))
    return PreferencesOut.from_model(prefs)


@router.put("/preferences/category-rule", response_model=PreferencesOut)
async def update_category_rule(
    data: CategoryRuleUpdate,
    user: User = Depends(get_current_user),
    resolver: PreferenceResolver = Depends(get_resolver),
):
    """Enable or disable a category, or set its minimum priority."""
    try:
        prefs = await resolver.update_category_rule(
            user.id, data.category, data.enabled, data.min_priority, modified_by=user.id
        )
    except PreferenceValidationError as e:
        raise HTTPException(400, str(e))
    return PreferencesOut.from_model(prefs)


@router.post("/preferences/reset", response_model=PreferencesOut)
async def reset_preferences(
    user: User = Depends(get_current_user),
    resolver: PreferenceResolver = Depends(get_resolver),
):
    return PreferencesOut.from_model(await resolver.reset_preferences(user.id, modified_by=user.id))


# ── Single notification ──────────────────────────────────
@router.get("/{notification_id}", response_model=NotificationOut)
async def get_notification(
    notification_id: str,
    user: User = Depends(get_current_user),
    store: NotificationStore = Depends(get_store),
):
    n = await store.get(notification_id, user.id)
    if not n:
        raise HTTPException(404, "Notification not found")
    return NotificationOut.from_model(n)


@router.post("/{notification_id}/read", response_model=NotificationOut)
async def mark_read(
    notification_id: str,
    user: User = Depends(get_current_user),
    store: NotificationStore = Depends(get_store),
):
    await store.mark_read(notification_id, user.id)
    n = await store.get(notification_id, user.id)
    if not n:
        raise HTTPException(404, "Notification not found")
    return NotificationOut.from_model(n)


@router.post("/{notification_id}/archive", response_model=NotificationOut)
async def archive(
    notification_id: str,
    user: User = Depends(get_current_user),
    store: NotificationStore = Depends(get_store),
):
    await store.archive(notification_id, user.id)
    n = await store.get(notification_id, user.id)
    if not n:
        raise HTTPException(404, "Notification not found")
    return NotificationOut.from_model(n)


@router.delete("/{notification_id}", status_code=204)
async def delete_notification(
    notification_id: str,
    user: User = Depends(get_current_user),
    store: NotificationStore = Depends(get_store),
):
    if not await store.delete(notification_id, user.id):
        raise HTTPException(404, "Notification not found")
