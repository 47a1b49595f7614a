"""
Shared fixtures: a throwaway SQLite database per test, seeded users, and an
app wired to it.
"""

import asyncio
import os
import tempfile

# Must be set before anything imports portal.core.database / portal.core.config
_DB_DIR = tempfile.mkdtemp(prefix="portal-tests-")
os.environ.setdefault("PORTAL_DATABASE_URL", f"sqlite+aiosqlite:///{_DB_DIR}/default.db")
os.environ.setdefault("PORTAL_SECRET_KEY", "test-secret-key-0123456789abcdef0123456789")
os.environ.setdefault("PORTAL_BOOTSTRAP_CHANNELS", "false")
os.environ.setdefault("PORTAL_LOG_FORMAT", "text")

from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel

import portal.models  # noqa: F401  populate metadata
from portal.core.auth import create_jwt
from portal.core.config import Settings
from portal.core.database import make_engine as _engine_for_url
from portal.core.database import make_session_factory
from portal.main import create_app
from portal.models.user import User
from portal.services import chat as chat_service

ALICE = "u-alice"
BOB = "u-bob"
ADMIN = "u-admin"
BANNED = "u-banned"


def make_engine(path) -> AsyncEngine:
    return _engine_for_url(f"sqlite+aiosqlite:///{path}", poolclass=NullPool)


async def prepare_database(engine: AsyncEngine, session_factory) -> dict:
    """Create tables, four users and the ``general`` channel."""
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    async with session_factory() as session:
        session.add_all([
            User(id=ALICE, email="alice@uni.example", first_name="Alice", last_name="Nakamura"),
            User(id=BOB, email="bob@uni.example", first_name="Bob", last_name="Osei"),
            User(id=ADMIN, email="dean@uni.example", first_name="Dean", is_admin=True, admin_level=1),
            User(id=BANNED, email="troll@uni.example", is_banned=True),
        ])
        await session.commit()
        general = await chat_service.create_channel(
            session, "general", "General discussion for all members", creator_id=ADMIN
        )
    return {"general": general.id}


def _auth_headers(user_id: str) -> dict:
    token, _ = create_jwt(user_id)
    return {"Authorization": f"Bearer {token}"}


def _build_app(session_factory, **overrides):
    settings = Settings(bootstrap_channels=False, log_format="text", **overrides)
    return create_app(settings, session_factory=session_factory)


@pytest.fixture
async def engine(tmp_path):
    engine = make_engine(tmp_path / "chat.db")
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
async def seeded(engine, session_factory) -> dict:
    return await prepare_database(engine, session_factory)


@pytest.fixture
async def session(session_factory, seeded):
    async with session_factory() as session:
        yield session


@pytest.fixture
def app(session_factory, seeded):
    return _build_app(session_factory)


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    await app.state.registry.close_all()


@pytest.fixture
def auth_headers():
    """``auth_headers(user_id)`` → Authorization header with a fresh session token."""
    return _auth_headers


@pytest.fixture
def make_app(session_factory, seeded):
    """Build an app against the seeded database with settings overrides."""
    def factory(**overrides):
        return _build_app(session_factory, **overrides)
    return factory


@pytest.fixture
def ws_env(tmp_path):
    """
    Seeded database for synchronous TestClient tests.

    TestClient runs the app on its own event loop, so setup runs outside
    pytest-asyncio here.
    """
    engine = make_engine(tmp_path / "ws.db")
    factory = make_session_factory(engine)
    ids = asyncio.run(prepare_database(engine, factory))

    def app_factory(**overrides):
        return _build_app(factory, **overrides)

    yield app_factory, factory, ids
    asyncio.run(engine.dispose())


@pytest.fixture
def fake_ws():
    """``fake_ws(**send_kwargs)`` → a stand-in server WebSocket with awaitable methods."""
    def make(**send_kwargs):
        ws = AsyncMock(spec_set=["accept", "send_text", "close", "receive"])
        ws.accept = AsyncMock()
        ws.send_text = AsyncMock(**send_kwargs)
        ws.close = AsyncMock()
        ws.receive = AsyncMock()
        return ws
    return make
