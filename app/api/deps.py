"""Request-scoped access to the services wired up in the app lifespan."""

from fastapi import Request

from app.services.notification_dispatcher import NotificationDispatcher
from app.services.notification_store import NotificationStore
from app.services.preferences import PreferenceResolver
from app.services.webhook_registry import WebhookRegistry


def get_store(request: Request) -> NotificationStore:
    return request.app.state.store


def get_resolver(request: Request) -> PreferenceResolver:
    return request.app.state.resolver


def get_registry(request: Request) -> WebhookRegistry:
    return request.app.state.registry


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher
