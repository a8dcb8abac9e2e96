"""FastAPI application entry point."""

import asyncio
import logging
from contextlib import asynccontextmanager, suppress

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import select

from app.api import auth, notifications, webhooks
from app.config import get_settings
from app.database import async_session, create_tables
from app.models import User
from app.services.audit import AuditLogger
from app.services.auth import hash_password
from app.services.notification_dispatcher import NotificationDispatcher
from app.services.notification_store import NotificationStore
from app.services.preferences import PreferenceResolver
from app.services.webhook_dispatcher import WebhookDeliveryEngine
from app.services.webhook_registry import WebhookRegistry

settings = get_settings()
logger = logging.getLogger(__name__)


def configure_services(app: FastAPI, session_factory, http_client: httpx.AsyncClient, **overrides) -> None:
    """Construct the service graph and hang it on ``app.state``.

    ``overrides`` replaces individual collaborators (e.g. ``sleep`` for the
    delivery engine or ``email_sender`` for the dispatcher).
    """
    audit = AuditLogger(session_factory)
    store = NotificationStore(session_factory)
    registry = WebhookRegistry(session_factory, settings)
    resolver = PreferenceResolver(session_factory, audit=audit)
    engine = WebhookDeliveryEngine(
        registry, http_client, audit=audit,
        sleep=overrides.get("sleep", asyncio.sleep), settings=settings,
    )
    dispatcher_kwargs = {}
    if "email_sender" in overrides:
        dispatcher_kwargs["email_sender"] = overrides["email_sender"]
    dispatcher = NotificationDispatcher(store, resolver, registry, engine, audit=audit, **dispatcher_kwargs)

    app.state.audit = audit
    app.state.store = store
    app.state.registry = registry
    app.state.resolver = resolver
    app.state.engine = engine
    app.state.dispatcher = dispatcher


async def bootstrap_admin(session_factory) -> None:
    async with session_factory() as db:
        result = await db.execute(select(User).where(User.email == settings.admin_email))
        if not result.scalar_one_or_none():
            db.add(User(
                email=settings.admin_email,
                hashed_password=hash_password(settings.admin_password),
                is_superuser=True,
            ))
            await db.commit()
            logger.info(f"Created admin user {settings.admin_email}")


async def retention_sweep(store: NotificationStore, interval_seconds: int) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await store.delete_expired()
        except Exception:
            logger.exception("Retention sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    await create_tables()
    await bootstrap_admin(async_session)

    http_client = httpx.AsyncClient(follow_redirects=False)
    configure_services(app, async_session, http_client)

    sweeper = None
    if settings.retention_sweep_interval_seconds > 0:
        sweeper = asyncio.create_task(
            retention_sweep(app.state.store, settings.retention_sweep_interval_seconds)
        )

    yield

    if sweeper is not None:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper
    # Let in-flight deliveries record their outcome before the client closes
    await app.state.dispatcher.drain()
    await http_client.aclose()


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description="Notification routing and webhook delivery for the recruitment platform",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router, prefix="/api/v1")
app.include_router(notifications.router, prefix="/api/v1")
app.include_router(webhooks.router, prefix="/api/v1")


@app.get("/health")
async def health():
    return {"status": "ok", "app": settings.app_name}
