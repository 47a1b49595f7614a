"""
Shared fixtures for chat client tests.

``portal_server`` runs the real portal chat server under uvicorn against a
throwaway SQLite database, for end-to-end tests over real sockets.
"""

import asyncio
import os
import random
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="portal-client-tests-")
os.environ.setdefault("PORTAL_DATABASE_URL", f"sqlite+aiosqlite:///{_DB_DIR}/default.db")
os.environ.setdefault("PORTAL_SECRET_KEY", "test-secret-key-0123456789abcdef0123456789")
os.environ.setdefault("PORTAL_BOOTSTRAP_CHANNELS", "false")
os.environ.setdefault("PORTAL_LOG_FORMAT", "text")

import pytest
import uvicorn


class _UvicornServer:
    def __init__(self, app, host: str, port: int):
        self.config = uvicorn.Config(app, host=host, port=port, log_level="error", lifespan="on")
        self.server = uvicorn.Server(self.config)
        self._task: asyncio.Task | None = None

    async def start(self):
        self._task = asyncio.create_task(self.server.serve())
        for _ in range(100):
            if self.server.started:
                return
            await asyncio.sleep(0.05)
        raise RuntimeError("Server did not start")

    async def stop(self):
        self.server.should_exit = True
        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=5)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                self._task.cancel()


def _pick_port():
    return random.randint(19000, 19999)


@pytest.fixture
async def portal_server(tmp_path):
    """Yields (base_url, ids) for a running server with users and ``general``."""
    from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
    from sqlalchemy.orm import sessionmaker
    from sqlalchemy.pool import NullPool
    from sqlmodel import SQLModel

    import portal.models  # noqa: F401
    from portal.core.config import Settings
    from portal.main import create_app
    from portal.models.user import User
    from portal.services.chat import create_channel

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'server.db'}", poolclass=NullPool)
    factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    async with factory() as session:
        session.add(User(id="u-alice", email="alice@uni.example", first_name="Alice", last_name="Nakamura"))
        session.add(User(id="u-bob", email="bob@uni.example", first_name="Bob", last_name="Osei"))
        await session.commit()
        general = await create_channel(session, "general")
        general_id = general.id

    app = create_app(Settings(bootstrap_channels=False, log_format="text"), session_factory=factory)
    port = _pick_port()
    srv = _UvicornServer(app, "127.0.0.1", port)
    await srv.start()
    yield f"http://127.0.0.1:{port}", {"general": general_id}
    await srv.stop()
    await engine.dispose()


@pytest.fixture
def session_token():
    """``session_token(user_id)`` → a token the test server accepts."""
    from portal.core.auth import create_jwt

    def make(user_id: str) -> str:
        token, _ = create_jwt(user_id)
        return token
    return make
