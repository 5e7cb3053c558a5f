"""Shared fixtures for the membership API tests.

Provides an in-memory SQLite engine with all tables, fake chat and
provider gateways, a recording operator alert sink, and a fully wired
:class:`Services` graph built on top of them.
"""

from __future__ import annotations

from typing import Any

import pytest
import pytest_asyncio
from membership_core.config import Settings
from membership_core.models.member import MemberStatus
from membership_core.models.results import OperationResult
from membership_core.state.database import create_session_factory, create_tables, session_scope
from membership_core.state.repository import MemberRepository
from sqlalchemy.ext.asyncio import create_async_engine

from membership_api.config import APISettings
from membership_api.dependencies import build_services

COMMUNITY_CHAT_ID = -100200300
WEBHOOK_SECRET = "whsec-test-secret"
OPERATOR_TOKEN = "operator-test-token"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class RecordingSink:
    """Operator alert sink that keeps every message."""

    def __init__(self) -> None:
        self.messages: list[str] = []

    async def notify_operator(self, message: str) -> None:
        self.messages.append(message)


class FakeChatGateway:
    """Chat gateway with scripted results per user chat id."""

    def __init__(self) -> None:
        self.kicked: list[tuple[int, int]] = []
        self.messages: list[tuple[int, str]] = []
        self.kick_results: dict[int, OperationResult] = {}
        self.message_results: dict[int, OperationResult] = {}

    async def kick_member(self, user_chat_id: int, community_chat_id: int) -> OperationResult:
        self.kicked.append((user_chat_id, community_chat_id))
        return self.kick_results.get(user_chat_id, OperationResult.ok({"until_date": 0}))

    async def send_private_message(self, user_chat_id: int, text: str) -> OperationResult:
        self.messages.append((user_chat_id, text))
        return self.message_results.get(user_chat_id, OperationResult.ok({"delivered": True}))


class FakeProvider:
    """Subscription lookup returning ``active`` unless scripted otherwise."""

    def __init__(self) -> None:
        self.calls: list[str | None] = []
        self.responses: dict[str, OperationResult] = {}

    async def get_subscription(self, subscription_id: str | None) -> OperationResult:
        self.calls.append(subscription_id)
        return self.responses.get(subscription_id or "", OperationResult.ok({"status": "active"}))


# ---------------------------------------------------------------------------
# Settings and infrastructure
# ---------------------------------------------------------------------------


def _make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "database_url": "sqlite+aiosqlite://",
        "tenant_id": None,
        "reconciliation_rate_limit_ms": 0,
        "scheduler_timezone": "UTC",
        "checkout_url": "https://pay.example.com/checkout",
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def make_settings():
    """Factory for core settings tuned for tests, with per-test overrides."""
    return _make_settings


@pytest.fixture
def settings() -> Settings:
    return _make_settings()


@pytest.fixture
def api_settings() -> APISettings:
    return APISettings(
        webhook_secret=WEBHOOK_SECRET,
        operator_token=OPERATOR_TOKEN,
        community_chat_id=COMMUNITY_CHAT_ID,
        scheduler_enabled=False,
    )


@pytest_asyncio.fixture
async def engine():
    """In-memory SQLite engine with every table created."""
    engine = create_async_engine("sqlite+aiosqlite://", echo=False)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def chat() -> FakeChatGateway:
    return FakeChatGateway()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def services(settings, api_settings, engine, sink, chat, provider):
    return build_services(
        settings,
        api_settings,
        engine=engine,
        sink=sink,
        chat=chat,
        provider=provider,
    )


@pytest.fixture
def seed_member(session_factory):
    """Insert a member directly through the repository and return its id."""

    async def _seed(status: MemberStatus = MemberStatus.ACTIVE, **fields: Any) -> str:
        async with session_scope(session_factory) as session:
            row = await MemberRepository(session).create(status=status, **fields)
            return row.id

    return _seed


@pytest.fixture
def load_member(session_factory):
    """Read a member row back in a fresh session."""

    async def _load(member_id: str):
        async with session_factory() as session:
            return await MemberRepository(session).get_by_id(member_id)

    return _load
