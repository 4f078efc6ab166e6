"""Async database engine and session management.

Provides:
    - create_engine_from_settings: Pool options per backend.
    - make_session_factory: A sessionmaker bound to an engine.
    - create_schema: Creates the documents table.

Usage:
    engine = create_engine_from_settings(settings)
    await create_schema(engine)
    store = SqlDocumentStore(make_session_factory(engine))
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from paypledge.infrastructure.database.orm_models import Base
from paypledge.logging_config import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from paypledge.config import Settings

logger = get_logger(__name__)


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """Build an async engine for ``settings.database_url``.

    SQLite gets a StaticPool for ``:memory:`` URLs so every session shares
    the one in-memory database; pool sizing only applies to server databases.
    """
    kwargs: dict[str, Any] = {"echo": settings.db_echo_sql}
    if settings.is_sqlite:
        if ":memory:" in settings.database_url:
            kwargs["poolclass"] = StaticPool
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
            pool_pre_ping=True,
        )
    return create_async_engine(settings.database_url, **kwargs)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def create_schema(engine: AsyncEngine) -> None:
    """Create the documents table if it does not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database.schema_ready", url=engine.url.render_as_string(hide_password=True))
