"""Test fixtures — fresh SQLite tables per test, services wired to a mock HTTP transport."""

import os
from collections.abc import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Force SQLite test database *before* any app import
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_recruit_notify.db"

from app.database import Base, async_session, engine  # noqa: E402
from app.main import app, configure_services  # noqa: E402
from app.services.audit import AuditLogger  # noqa: E402
from app.services.notification_dispatcher import NotificationDispatcher  # noqa: E402
from app.services.notification_store import NotificationStore  # noqa: E402
from app.services.preferences import PreferenceResolver  # noqa: E402
from app.services.webhook_dispatcher import WebhookDeliveryEngine  # noqa: E402
from app.services.webhook_registry import WebhookRegistry  # noqa: E402


class HookServer:
    """Scripted webhook receiver behind ``httpx.MockTransport``.

    ``responses`` maps URL -> list of status codes (or exceptions) consumed
    in order; the last entry repeats. Every request is kept in ``requests``.
    """

    def __init__(self):
        self.responses: dict[str, list] = {}
        self.requests: list[httpx.Request] = []

    def script(self, url: str, *outcomes) -> None:
        self.responses[url] = list(outcomes)

    def calls_to(self, url: str) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url) == url]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcomes = self.responses.get(str(request.url), [200])
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return httpx.Response(outcome, json={"ok": 200 <= outcome < 300})


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class FakeMailer:
    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.sent = []

    async def __call__(self, notification) -> bool:
        self.sent.append(notification)
        return self.succeed


@pytest_asyncio.fixture(autouse=True)
async def _setup_db():
    """Create all tables before each test, drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def hook_server() -> HookServer:
    return HookServer()


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest_asyncio.fixture
async def http_client(hook_server) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(hook_server.handler)) as c:
        yield c


@pytest.fixture
def audit() -> AuditLogger:
    return AuditLogger(async_session)


@pytest.fixture
def store() -> NotificationStore:
    return NotificationStore(async_session)


@pytest.fixture
def registry() -> WebhookRegistry:
    return WebhookRegistry(async_session)


@pytest.fixture
def resolver(audit) -> PreferenceResolver:
    return PreferenceResolver(async_session, audit=audit)


@pytest.fixture
def delivery_engine(registry, http_client, audit, sleeper) -> WebhookDeliveryEngine:
    return WebhookDeliveryEngine(registry, http_client, audit=audit, sleep=sleeper)


@pytest_asyncio.fixture
async def dispatcher(store, resolver, registry, delivery_engine, audit, mailer):
    d = NotificationDispatcher(
        store, resolver, registry, delivery_engine, audit=audit, email_sender=mailer,
    )
    yield d
    await d.drain()


@pytest_asyncio.fixture
async def client(http_client, sleeper, mailer) -> AsyncGenerator[AsyncClient, None]:
    # ASGITransport does not run the lifespan, so wire services here
    configure_services(app, async_session, http_client, sleep=sleeper, email_sender=mailer)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    await app.state.dispatcher.drain()
