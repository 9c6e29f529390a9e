"""Async database engine, session factory and declarative base."""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from paysync.config import settings


class Base(DeclarativeBase):
    """Declarative base for all models."""


def build_engine(database_url: str) -> AsyncEngine:
    """Create an async engine for the given URL.

    An in-memory SQLite database gets a single shared connection so it
    survives across sessions.
    """
    if database_url.startswith("sqlite"):
        if ":memory:" in database_url:
            return create_async_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_async_engine(database_url, connect_args={"check_same_thread": False})
    return create_async_engine(
        database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory used by every unit of work."""
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(settings.database_url)
async_session_maker = build_session_factory(engine)


async def init_db(bind: AsyncEngine | None = None) -> None:
    """Create all tables (development and tests only)."""
    import paysync.models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine connection pool."""
    await engine.dispose()
