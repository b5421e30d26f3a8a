"""Test fixtures — per-test SQLite database, seeded tenants and a fake receiving endpoint."""

import json
import os
from collections.abc import AsyncGenerator

# Force test settings *before* any package import
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_collab_webhooks.db"
os.environ["SECRETS_MASTER_KEY"] = "test-master-key-0123456789abcdef-0123456789abcdef"
os.environ["WEBHOOK_ALLOW_INSECURE_URLS"] = "true"
os.environ["APP_ENV"] = "test"

import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from collab_webhooks.database import Base, get_db  # noqa: E402
from collab_webhooks.models import App, AppInstallation  # noqa: E402
from collab_webhooks.models.webhook import AppWebhook  # noqa: E402
from collab_webhooks.services.event_bus import build_event_bus  # noqa: E402
from collab_webhooks.services.events import EventContext  # noqa: E402
from collab_webhooks.services.secret_store import SecretStore  # noqa: E402


class Receiver:
    """Stands in for third-party endpoints behind an httpx MockTransport."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self._behaviours: dict[str, list] = {}

    def respond(self, url: str, *statuses: int, body: str = "ok"):
        """Queue statuses for ``url``; the last one repeats."""
        self._behaviours[url] = [(s, body) for s in statuses]

    def raise_for(self, url: str, exc: Exception):
        self._behaviours[url] = [exc]

    def requests_to(self, url: str) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url) == url]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self._behaviours.get(str(request.url), [(200, "ok")])
        behaviour = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(behaviour, Exception):
            raise behaviour
        status, body = behaviour
        return httpx.Response(status, text=body)


class Seeder:
    def __init__(self, session_factory, secret_store: SecretStore):
        self._session_factory = session_factory
        self._secrets = secret_store
        self._n = 0

    async def installation(self, workspace_id: str = "W1", status: str = "ACTIVE", slug: str = None) -> AppInstallation:
        self._n += 1
        async with self._session_factory() as db:
            app = App(slug=slug or f"app-{self._n}", name=f"App {self._n}")
            db.add(app)
            await db.flush()
            inst = AppInstallation(
                app_id=app.id,
                workspace_id=workspace_id,
                workspace_slug=workspace_id.lower(),
                workspace_name=f"Workspace {workspace_id}",
                status=status,
            )
            db.add(inst)
            await db.commit()
            return inst

    async def webhook(
        self,
        installation: AppInstallation,
        url: str,
        event_types=("issue.created",),
        secret: str = "whsec_test",
        is_active: bool = True,
        secret_enc: str = None,
    ) -> AppWebhook:
        async with self._session_factory() as db:
            wh = AppWebhook(
                app_id=installation.app_id,
                installation_id=installation.id,
                url=url,
                secret_enc=secret_enc or self._secrets.encrypt(secret),
                event_types=json.dumps(list(event_types)),
                is_active=is_active,
            )
            db.add(wh)
            await db.commit()
            return wh

    async def set_active(self, webhook: AppWebhook, active: bool):
        async with self._session_factory() as db:
            wh = await db.get(AppWebhook, webhook.id)
            wh.is_active = active
            await db.commit()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def secret_store() -> SecretStore:
    return SecretStore(os.environ["SECRETS_MASTER_KEY"])


@pytest.fixture
def receiver() -> Receiver:
    return Receiver()


@pytest_asyncio.fixture
async def http_client(receiver) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(receiver.handler)) as client:
        yield client


@pytest_asyncio.fixture
async def bus(session_factory, http_client, secret_store):
    bus = build_event_bus(session_factory, http_client=http_client, secret_store=secret_store)
    yield bus
    await bus.aclose()


@pytest.fixture
def seed(session_factory, secret_store) -> Seeder:
    return Seeder(session_factory, secret_store)


@pytest.fixture
def context() -> EventContext:
    return EventContext(workspace_id="W1", workspace_name="Workspace W1", workspace_slug="w1", user_id="u1", source="api")


@pytest_asyncio.fixture
async def client(session_factory, bus) -> AsyncGenerator[AsyncClient, None]:
    from collab_webhooks.main import app

    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.state.event_bus = bus
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
