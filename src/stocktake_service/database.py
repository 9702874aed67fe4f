"""Database initialization helpers."""
from __future__ import annotations

from collections.abc import AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from .config import get_settings


class Base(DeclarativeBase):
    """Base class for server-side SQLAlchemy models."""


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_engine(database_url: str | None = None, *, echo: bool | None = None) -> AsyncEngine:
    """Create an async engine; SQLite connections enforce foreign keys."""

    settings = get_settings()
    url = database_url or settings.database_url
    db_engine = create_async_engine(url, echo=settings.echo_sql if echo is None else echo)
    if url.startswith("sqlite"):
        event.listen(db_engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    return db_engine


engine = create_engine()
SessionFactory = async_sessionmaker(bind=engine, expire_on_commit=False)


async def get_session() -> AsyncIterator[AsyncSession]:
    """Yield an :class:`AsyncSession` for FastAPI dependencies."""

    async with SessionFactory() as session:
        yield session


__all__ = [
    "Base",
    "engine",
    "create_engine",
    "SessionFactory",
    "get_session",
]
