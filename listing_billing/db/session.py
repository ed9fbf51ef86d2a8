"""Async engine, session factory and the ``get_db`` request dependency.

PostgreSQL (asyncpg) in production, SQLite (aiosqlite) for local runs.
Sessions keep attributes loaded after commit: the services commit several
times per request (history first, then the conditional row update).
"""

from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from listing_billing.config import get_settings


def async_database_url(url: str) -> str:
    """Swap a plain sqlite URL onto the aiosqlite driver."""
    if url.startswith("sqlite:"):
        return url.replace("sqlite:", "sqlite+aiosqlite:", 1)
    return url


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    url = async_database_url(url)
    kwargs: dict[str, Any] = {"echo": echo}
    if url.startswith("sqlite"):
        db_path = url.split("///")[-1]
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs["pool_pre_ping"] = True
    return create_async_engine(url, **kwargs)


settings = get_settings()
engine = build_engine(settings.database_url, echo=settings.debug)
async_session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency; anything left uncommitted by a failed request is rolled back."""
    async with async_session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
