from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from tokenledger.core.config import settings


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _build_engine_kwargs(url: str) -> dict:
    """Pool settings for Postgres, busy timeout for SQLite (local dev and tests)."""
    if _is_sqlite(url):
        return {"connect_args": {"timeout": 30}}
    return {
        "pool_size": 20,
        "max_overflow": 10,
        "pool_pre_ping": True,
    }


def build_engine(url: str, echo: bool = False):
    return create_async_engine(url, echo=echo, **_build_engine_kwargs(url))


engine = build_engine(settings.DATABASE_URL, echo=settings.APP_DEBUG)

async_session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def worker_async_session() -> AsyncGenerator[AsyncSession, None]:
    """Session on a throwaway engine for Celery tasks.

    Each task runs its own event loop, so pooled connections from the
    module-level engine cannot be reused there.
    """
    worker_engine = create_async_engine(settings.DATABASE_URL, poolclass=NullPool)
    factory = async_sessionmaker(worker_engine, class_=AsyncSession, expire_on_commit=False)
    try:
        async with factory() as session:
            yield session
    finally:
        await worker_engine.dispose()
