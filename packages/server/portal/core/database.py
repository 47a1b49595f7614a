"""
Database engine and session wiring.

The application owns one session factory (``app.state.session_factory``).
REST dependencies, the realtime socket and the broadcast router all open
sessions from it, so every path reads and writes the same store.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Optional

from fastapi.requests import HTTPConnection
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

from portal.core.config import get_settings


def make_engine(database_url: str, *, echo: bool = False, **kwargs) -> AsyncEngine:
    return create_async_engine(database_url, echo=echo, future=True, **kwargs)


def make_session_factory(bind: AsyncEngine) -> sessionmaker:
    return sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


settings = get_settings()
engine = make_engine(settings.database_url, echo=settings.debug)
async_session_factory = make_session_factory(engine)


async def init_db(bind: AsyncEngine = engine) -> None:
    """Create all tables (development only, use migrations in production)."""
    import portal.models  # noqa: F401  populate metadata

    async with bind.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


@asynccontextmanager
async def get_session_context(factory: Optional[sessionmaker] = None):
    """Commit-on-success session scope for scripts and background work."""
    async with (factory or async_session_factory)() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_session(conn: HTTPConnection) -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: a session from the app's own factory."""
    async with get_session_context(conn.app.state.session_factory) as session:
        yield session
