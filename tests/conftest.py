"""Pytest configuration and fixtures for Inspectra tests.

Provides a file-backed SQLite database, an ``EngineContext`` wired with
in-process fakes for storage, push, email and the webhook receiver, and a
small seeded tenant (one location, an owner, an admin and an inspector).
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

import httpx
import pytest
import pytest_asyncio

from inspectra.config import (
    AppConfig,
    DBConfig,
    EmailConfig,
    SchedulerConfig,
    SessionConfig,
    WebhookConfig,
)
from inspectra.context import EngineContext
from inspectra.db.connection import Database
from inspectra.db.models import (
    InstanceModel,
    LocationModel,
    ProfileLocationModel,
    ProfileModel,
    PushSubscriptionModel,
    TemplateModel,
)
from inspectra.models import Actor
from inspectra.notifications.push import PushDeliveryError, SubscriptionInfo
from inspectra.notifications.webhooks import WebhookSender

WEBHOOK_SECRET = "test-webhook-secret"
CRON_SECRET = "test-cron-secret"
OWNER_EMAIL = "owner@example.com"


class FakeStorage:
    """In-memory object storage that refuses to overwrite a key."""

    def __init__(self):
        self.objects: dict[str, bytes] = {}

    async def upload(self, key: str, content: bytes, content_type: str = "image/png") -> str:
        if key in self.objects:
            raise AssertionError(f"overwrite of {key}")
        self.objects[key] = content
        return key

    async def signed_url(self, key: str, expires_in: int) -> str:
        return f"https://storage.test/signed/{key}?expires={expires_in}"


class FakePushTransport:
    """Records deliveries; endpoints listed in ``gone`` answer 410."""

    def __init__(self):
        self.delivered: list[tuple[str, dict]] = []
        self.gone: set[str] = set()
        self.broken: set[str] = set()

    async def send(self, subscription: SubscriptionInfo, payload: str) -> None:
        if subscription.endpoint in self.gone:
            raise PushDeliveryError("Gone", status_code=410)
        if subscription.endpoint in self.broken:
            raise PushDeliveryError("Server error", status_code=500)
        self.delivered.append((subscription.endpoint, json.loads(payload)))


class FakeEmailSender:
    def __init__(self):
        self.sent: list[tuple[str, str, str]] = []

    async def send(self, to_email: str, subject: str, html: str) -> None:
        self.sent.append((to_email, subject, html))


@dataclass
class WebhookRecorder:
    """Captures requests made through an ``httpx.MockTransport``."""

    requests: list[httpx.Request] = field(default_factory=list)
    status_code: int = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"ok": True})

    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]


@dataclass
class Seed:
    location_id: UUID
    other_location_id: UUID
    owner_id: UUID
    admin_id: UUID
    inspector_id: UUID
    template_id: UUID

    def actor(self, profile_id: UUID, role: str, location_id: UUID | None = None) -> Actor:
        return Actor(
            profile_id=profile_id,
            role=role,
            location_ids=frozenset({location_id or self.location_id}),
            user_id=f"user-{profile_id}",
        )

    @property
    def owner(self) -> Actor:
        return self.actor(self.owner_id, "owner")

    @property
    def admin(self) -> Actor:
        return self.actor(self.admin_id, "admin")

    @property
    def inspector(self) -> Actor:
        return self.actor(self.inspector_id, "inspector")


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Set up test environment variables."""
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.delenv("CRON_SECRET", raising=False)
    monkeypatch.delenv("ENVIRONMENT", raising=False)
    monkeypatch.delenv("AUTH_DISABLED", raising=False)


@pytest.fixture
def test_config(tmp_path) -> AppConfig:
    """Configuration pointing at a throwaway SQLite file."""
    return AppConfig(
        db=DBConfig(url=f"sqlite+aiosqlite:///{tmp_path / 'inspectra.db'}"),
        log_level="DEBUG",
        side_effect_timeout_seconds=5.0,
        scheduler=SchedulerConfig(cron_secret=CRON_SECRET, generator_concurrency=1),
        webhooks=WebhookConfig(base_url="http://orchestrator.test", secret=WEBHOOK_SECRET),
        email=EmailConfig(owner_escalation_email=OWNER_EMAIL, app_url="http://app.test"),
        session=SessionConfig(redis_url="redis://localhost:6399/0"),
    )


@pytest_asyncio.fixture
async def db(test_config: AppConfig) -> Database:
    database = Database.from_config(test_config.db)
    await database.create_all()
    try:
        yield database
    finally:
        await database.dispose()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def push_transport() -> FakePushTransport:
    return FakePushTransport()


@pytest.fixture
def email_sender() -> FakeEmailSender:
    return FakeEmailSender()


@pytest.fixture
def webhook_recorder() -> WebhookRecorder:
    return WebhookRecorder()


@pytest_asyncio.fixture
async def engine_context(
    test_config: AppConfig,
    db: Database,
    storage: FakeStorage,
    push_transport: FakePushTransport,
    email_sender: FakeEmailSender,
    webhook_recorder: WebhookRecorder,
) -> EngineContext:
    webhooks = WebhookSender(
        test_config.webhooks,
        client=httpx.AsyncClient(transport=httpx.MockTransport(webhook_recorder.handler)),
    )
    ctx = EngineContext.build(
        test_config,
        db=db,
        storage=storage,
        push_transport=push_transport,
        webhooks=webhooks,
        email_sender=email_sender,
    )
    try:
        yield ctx
    finally:
        await ctx.aclose()


@pytest_asyncio.fixture
async def seed(db: Database) -> Seed:
    """One location with an owner, an admin and an inspector, plus a weekly template."""
    location_id, other_location_id = uuid4(), uuid4()
    owner_id, admin_id, inspector_id = uuid4(), uuid4(), uuid4()
    template_id = uuid4()

    async with db.session() as session:
        session.add_all(
            [
                LocationModel(id=location_id, name="Main Clinic"),
                LocationModel(id=other_location_id, name="Annex"),
                ProfileModel(
                    id=owner_id, user_id="owner", full_name="Olive Owner", email=OWNER_EMAIL, role="owner"
                ),
                ProfileModel(
                    id=admin_id, user_id="admin", full_name="Ada Admin", email="admin@example.com", role="admin"
                ),
                ProfileModel(
                    id=inspector_id,
                    user_id="inspector",
                    full_name="Ivan Inspector",
                    email="inspector@example.com",
                    role="inspector",
                ),
            ]
        )
        await session.flush()
        session.add_all(
            [
                ProfileLocationModel(profile_id=owner_id, location_id=location_id),
                ProfileLocationModel(profile_id=admin_id, location_id=location_id),
                ProfileLocationModel(profile_id=inspector_id, location_id=location_id),
                TemplateModel(
                    id=template_id,
                    location_id=location_id,
                    task="Fire extinguisher check",
                    frequency="weekly",
                    active=True,
                ),
            ]
        )

    return Seed(
        location_id=location_id,
        other_location_id=other_location_id,
        owner_id=owner_id,
        admin_id=admin_id,
        inspector_id=inspector_id,
        template_id=template_id,
    )


async def add_instance(
    db: Database,
    seed: Seed,
    *,
    status: str = "pending",
    due_at: datetime | None = None,
    assigned_to_profile_id: UUID | None = None,
    assigned_to_email: str | None = None,
    template_id: UUID | None = None,
) -> UUID:
    """Insert an instance directly and return its id."""
    instance_id = uuid4()
    async with db.session() as session:
        session.add(
            InstanceModel(
                id=instance_id,
                template_id=template_id or seed.template_id,
                location_id=seed.location_id,
                due_at=due_at or datetime.now(timezone.utc) + timedelta(days=7),
                assigned_to_profile_id=assigned_to_profile_id,
                assigned_to_email=assigned_to_email,
                status=status,
                created_by="test",
            )
        )
    return instance_id


async def add_subscription(db: Database, profile_id: UUID, endpoint: str) -> None:
    async with db.session() as session:
        session.add(
            PushSubscriptionModel(profile_id=profile_id, endpoint=endpoint, p256dh="p256dh-key", auth="auth-key")
        )


@pytest.fixture
def make_instance(db: Database, seed: Seed):
    async def _make(**kwargs) -> UUID:
        return await add_instance(db, seed, **kwargs)

    return _make


@pytest.fixture
def make_subscription(db: Database):
    async def _make(profile_id: UUID, endpoint: str) -> None:
        await add_subscription(db, profile_id, endpoint)

    return _make
