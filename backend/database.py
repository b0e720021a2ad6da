"""Async SQLAlchemy engine/session setup.

No module-level engine: the composition root (server.py) builds one Database and
hands its session factory to the stores and services that need it.
"""
import logging

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

Base = declarative_base()


def _is_memory_sqlite(url: str) -> bool:
    return url.startswith("sqlite") and (":memory:" in url or url.rstrip("/").endswith("sqlite+aiosqlite:"))


class Database:
    """Owns the async engine and the session factory built on it."""

    def __init__(self, url: str, echo: bool = False):
        engine_kwargs = {"echo": echo}
        if _is_memory_sqlite(url):
            # One shared connection, otherwise every session sees its own empty database
            engine_kwargs.update(poolclass=StaticPool, connect_args={"check_same_thread": False})

        self.url = url
        self.engine: AsyncEngine = create_async_engine(url, **engine_kwargs)
        self.session_factory = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_all(self):
        # Import registers the models on Base.metadata
        import models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created")

    async def drop_all(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def dispose(self):
        await self.engine.dispose()
