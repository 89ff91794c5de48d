"""Async database engine and session management."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from ..config import get_settings

logger = logging.getLogger(__name__)


class DatabaseManager:
    """Owns the async engine and session factory for the process."""

    def __init__(self):
        self.engine: Optional[AsyncEngine] = None
        self.session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    def initialize(self, database_url: Optional[str] = None) -> None:
        """Create the engine. Idempotent."""
        if self.engine is not None:
            return

        url = database_url or get_settings().get_async_database_url()
        kwargs = {"pool_pre_ping": True}
        if url.startswith("sqlite"):
            # Single shared connection so in-memory databases survive across sessions
            kwargs = {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}

        self.engine = create_async_engine(url, **kwargs)
        self.session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        logger.info("Database engine initialized (%s)", self.engine.url.render_as_string(hide_password=True))

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()
        self.engine = None
        self.session_factory = None


db_manager = DatabaseManager()


@asynccontextmanager
async def get_db_context() -> AsyncIterator[AsyncSession]:
    """Session context manager; rolls back on error."""
    if db_manager.session_factory is None:
        db_manager.initialize()
    async with db_manager.session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise

