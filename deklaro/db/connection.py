"""Async database access built on SQLAlchemy 2.0.

Based on SQLAlchemy asyncio documentation:
https://docs.sqlalchemy.org/en/20/orm/extensions/asyncio.html
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from deklaro.db.models import Base

logger = logging.getLogger(__name__)


class Database:
    """Owns the engine and hands out sessions and transactions.

    Writers contend only through database constraints; no in-process locks are
    used, so the same guarantees hold with several worker processes.
    """

    def __init__(self, url: str, *, echo: bool = False) -> None:
        connect_args: dict[str, object] = {}
        if url.startswith("sqlite"):
            # Writers wait for the lock instead of failing immediately
            connect_args["timeout"] = 30
        self.url = url
        self.engine: AsyncEngine = create_async_engine(
            url, echo=echo, connect_args=connect_args
        )
        self._sessionmaker = async_sessionmaker(self.engine, expire_on_commit=False)

    def session(self) -> AsyncSession:
        """Create a new session (caller manages commit/close)."""
        return self._sessionmaker()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Session wrapped in a single transaction.

        Commits when the block exits normally, rolls back on any exception.
        """
        async with self._sessionmaker() as session:
            async with session.begin():
                yield session

    async def create_all(self) -> None:
        """Create all tables and indexes if they do not exist."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema ready")

    async def dispose(self) -> None:
        """Close pooled connections."""
        await self.engine.dispose()
