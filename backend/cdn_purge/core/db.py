"""Async database session management helpers."""

from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from cdn_purge.core.config import settings


def _engine_options(url: str) -> dict[str, Any]:
    options: dict[str, Any] = {"pool_pre_ping": True, "echo": settings.DEBUG}
    # SQLite (local runs, tests) has no server-side pool or isolation levels to tune.
    if url.startswith("mysql"):
        options.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_timeout=settings.DB_POOL_TIMEOUT,
            pool_recycle=settings.DB_POOL_RECYCLE,
            isolation_level=settings.DB_ISOLATION_LEVEL,
        )
    return options


engine = create_async_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))

SessionLocal = async_sessionmaker(bind=engine, expire_on_commit=False)


async def get_session() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency that yields an async database session."""

    async with SessionLocal() as session:
        yield session


async def create_tables() -> None:
    """Create any missing tables for the invalidation ledger and audit trail."""

    from cdn_purge.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
