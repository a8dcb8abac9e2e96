"""Notification dispatcher — creates notifications and fans them out per channel.

Only the create step can fail a dispatch. Channel delivery (webhook, email)
runs in tracked background tasks whose failures are logged and reflected in
the channel's delivery status, never raised to the caller.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from app.models.audit import AuditEventType
from app.models.notification import (
    DeliveryStatus,
    Notification,
    NotificationCategory,
    NotificationChannel,
    NotificationPriority,
    NotificationType,
    derive_classification,
)
from app.models.webhook import DeliveryAttempt, WebhookEndpoint
from app.schemas import NotificationAction, NotificationCreate
from app.services.audit import AuditLogger
from app.services.email import send_notification_email
from app.services.notification_store import NotificationStore
from app.services.preferences import PreferenceResolver
from app.services.webhook_dispatcher import WebhookDeliveryEngine, build_webhook_payload
from app.services.webhook_registry import WebhookRegistry

logger = logging.getLogger(__name__)

TEST_EVENT = "test"

CANDIDATE_MESSAGES = {
    NotificationType.CANDIDATE_APPLIED: ("New Candidate Application", "{name} has applied for a position"),
    NotificationType.CANDIDATE_STATUS_CHANGED: ("Candidate Status Updated", "Status changed for candidate {name}"),
    NotificationType.CANDIDATE_DOCUMENT_UPLOADED: ("Document Uploaded", "New document uploaded for {name}"),
    NotificationType.CANDIDATE_AI_ANALYSIS_COMPLETE: ("AI Analysis Complete", "Analysis completed for {name}"),
    NotificationType.CANDIDATE_ASSIGNED: ("Candidate Assigned", "{name} has been assigned to you"),
}

JOB_MESSAGES = {
    NotificationType.JOB_POSTED: ("New Job Posted", 'Job "{name}" has been posted'),
    NotificationType.JOB_APPLICATION_RECEIVED: ("New Application", 'New application received for "{name}"'),
    NotificationType.JOB_UPDATED: ("Job Updated", 'Job "{name}" has been updated'),
    NotificationType.JOB_CLOSED: ("Job Closed", 'Job "{name}" has been closed'),
}


class NotificationDispatcher:
    def __init__(
        self,
        store: NotificationStore,
        resolver: PreferenceResolver,
        registry: WebhookRegistry,
        engine: WebhookDeliveryEngine,
        audit: Optional[AuditLogger] = None,
        email_sender: Callable[[Notification], Awaitable[bool]] = send_notification_email,
    ):
        self.store = store
        self.resolver = resolver
        self.registry = registry
        self.engine = engine
        self.audit = audit
        self.email_sender = email_sender
        self._tasks: set[asyncio.Task] = set()

    # ── Background tasks ─────────────────────────────────

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(self._isolated(coro, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    async def _isolated(coro, name: str):
        try:
            return await coro
        except Exception:
            logger.exception(f"Background task {name} failed")
            return None

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every outstanding delivery task, including ones spawned meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── Dispatch ─────────────────────────────────────────

    async def dispatch(self, data: NotificationCreate) -> Optional[Notification]:
        """Create one notification and start its channel deliveries.

        Returns None when the recipient's preferences route it nowhere.
        Errors from persisting the notification propagate.
        """
        category, priority = derive_classification(data.type, data.category, data.priority)
        if data.channels:
            channels = set(data.channels)
        else:
            evaluation = await self.resolver.evaluate(data.user_id, category, priority)
            if not evaluation.should_notify:
                logger.info(
                    f"{data.type.value} for user {data.user_id} suppressed: {evaluation.reason}"
                )
                return None
            channels = evaluation.channels
        if not channels:
            logger.info(f"{data.type.value} for user {data.user_id} suppressed by preferences")
            return None

        data = data.model_copy(update={"category": category, "priority": priority})
        notification = await self.store.create(data, channels)

        if NotificationChannel.IN_APP in channels:
            # The stored row is the in-app delivery
            await self.store.update_delivery_status(
                notification.id, NotificationChannel.IN_APP, DeliveryStatus.DELIVERED
            )
        if NotificationChannel.WEBHOOK in channels:
            self._spawn(self._deliver_webhooks(notification), f"webhooks:{notification.id}")
        if NotificationChannel.EMAIL in channels:
            self._spawn(self._deliver_email(notification), f"email:{notification.id}")

        if self.audit is not None:
            await self.audit.record(
                AuditEventType.NOTIFICATION_SENT,
                action="dispatch",
                actor_id=data.triggered_by,
                resource="notification",
                resource_id=notification.id,
                metadata={
                    "user_id": data.user_id,
                    "type": data.type.value,
                    "category": category.value,
                    "priority": priority.value,
                    "channels": sorted(c.value for c in channels),
                },
            )
        return await self.store.get(notification.id) or notification

    async def dispatch_many(self, user_ids: list[str], data: NotificationCreate) -> list[Notification]:
        created = []
        for user_id in dict.fromkeys(user_ids):
            notification = await self.dispatch(data.model_copy(update={"user_id": user_id}))
            if notification is not None:
                created.append(notification)
        return created

    # ── Channels ─────────────────────────────────────────

    async def _deliver_to_endpoint(
        self, endpoint: WebhookEndpoint, notification: Notification
    ) -> DeliveryAttempt:
        return await self.engine.deliver(endpoint, build_webhook_payload(endpoint.id, notification))

    async def _deliver_webhooks(self, notification: Notification) -> None:
        try:
            endpoints = await self.registry.get_active_for_event(notification.user_id, notification.type)
        except Exception as exc:
            logger.exception(f"Webhook lookup failed for notification {notification.id}")
            await self.store.update_delivery_status(
                notification.id,
                NotificationChannel.WEBHOOK,
                DeliveryStatus.FAILED,
                error=str(exc)[:500] or type(exc).__name__,
            )
            return
        if not endpoints:
            await self.store.update_delivery_status(
                notification.id, NotificationChannel.WEBHOOK, DeliveryStatus.DELIVERED
            )
            return

        # One task per endpoint so a failing endpoint cannot affect the others
        tasks = [
            self._spawn(self._deliver_to_endpoint(ep, notification), f"webhook:{ep.id}:{notification.id}")
            for ep in endpoints
        ]
        results = [r for r in await asyncio.gather(*tasks) if r is not None]
        retries = sum(max(r.attempts - 1, 0) for r in results)

        if any(r.success for r in results):
            await self.store.update_delivery_status(
                notification.id, NotificationChannel.WEBHOOK, DeliveryStatus.DELIVERED, retry_count=retries
            )
            return

        errors = [r.error for r in results if r.error]
        await self.store.update_delivery_status(
            notification.id,
            NotificationChannel.WEBHOOK,
            DeliveryStatus.FAILED,
            error=errors[-1] if errors else "Webhook delivery failed",
            retry_count=retries,
        )

    async def _deliver_email(self, notification: Notification) -> None:
        try:
            sent = await self.email_sender(notification)
            error = None if sent else "Email delivery failed"
        except Exception as exc:
            logger.exception(f"Email channel failed for notification {notification.id}")
            sent, error = False, str(exc)[:500] or type(exc).__name__
        await self.store.update_delivery_status(
            notification.id,
            NotificationChannel.EMAIL,
            DeliveryStatus.SENT if sent else DeliveryStatus.FAILED,
            error=error,
        )

    # ── Templated helpers ────────────────────────────────

    async def notify_candidate_event(
        self,
        type_: NotificationType,
        user_id: str,
        candidate_id: str,
        candidate_name: str,
        additional_data: Optional[dict[str, Any]] = None,
        user_email: Optional[str] = None,
    ) -> Optional[Notification]:
        title, message = CANDIDATE_MESSAGES.get(
            NotificationType(type_), ("Candidate Update", "Update for candidate {name}")
        )
        return await self.dispatch(NotificationCreate(
            user_id=user_id,
            user_email=user_email,
            type=type_,
            title=title,
            message=message.format(name=candidate_name),
            data={"candidateId": candidate_id, "candidateName": candidate_name, **(additional_data or {})},
            action=NotificationAction(label="View Candidate", url=f"/candidates/{candidate_id}"),
            source_id=candidate_id,
            source_type="candidate",
        ))

    async def notify_job_event(
        self,
        type_: NotificationType,
        user_id: str,
        job_id: str,
        job_name: str,
        additional_data: Optional[dict[str, Any]] = None,
        user_email: Optional[str] = None,
    ) -> Optional[Notification]:
        title, message = JOB_MESSAGES.get(
            NotificationType(type_), ("Job Update", "Update for job {name}")
        )
        return await self.dispatch(NotificationCreate(
            user_id=user_id,
            user_email=user_email,
            type=type_,
            title=title,
            message=message.format(name=job_name),
            data={"jobId": job_id, "jobName": job_name, **(additional_data or {})},
            action=NotificationAction(label="View Job", url=f"/jobs/{job_id}"),
            source_id=job_id,
            source_type="job",
        ))

    async def notify_security_event(
        self,
        type_: NotificationType,
        user_id: str,
        message: str,
        additional_data: Optional[dict[str, Any]] = None,
        user_email: Optional[str] = None,
    ) -> Optional[Notification]:
        """Security alerts bypass preferences: always in-app and email, CRITICAL."""
        return await self.dispatch(NotificationCreate(
            user_id=user_id,
            user_email=user_email,
            type=type_,
            priority=NotificationPriority.CRITICAL,
            title="Security Alert",
            message=message,
            data=additional_data or {},
            channels=[NotificationChannel.IN_APP, NotificationChannel.EMAIL],
        ))

    # ── Webhook test / caller-scoped bulk ops ────────────

    async def test_webhook(self, endpoint_id: str, owner_id: str) -> Optional[DeliveryAttempt]:
        """Send a synthetic payload to one endpoint. None if the endpoint is not the caller's."""
        endpoint = await self.registry.get(endpoint_id, owner_id)
        if endpoint is None:
            return None
        payload = {
            "webhookId": endpoint.id,
            "event": TEST_EVENT,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "notification": {
                "notificationId": "test-notification",
                "type": "TEST",
                "category": NotificationCategory.SYSTEM_UPDATES.value,
                "priority": NotificationPriority.LOW.value,
                "title": "Webhook Test",
                "message": "This is a test notification to verify your webhook configuration.",
                "data": {"test": True, "webhookId": endpoint.id},
            },
        }
        return await self.engine.deliver(endpoint, payload)

    async def mark_all_read(self, user_id: str) -> int:
        return await self.store.mark_all_read(user_id)

    async def delete_many(self, user_id: str, notification_ids: list[str]) -> int:
        return await self.store.delete_many(notification_ids, user_id)
