"""
Database engine and session management.
Provides the async SQLAlchemy engine and a transactional session scope.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncSession,
    AsyncEngine,
    async_sessionmaker,
)

logger = logging.getLogger(__name__)


class Database:
    """
    Owns the engine and session factory for one database URL.
    """

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.echo = echo
        self.engine: Optional[AsyncEngine] = None
        self.session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    def init_engine(self) -> AsyncEngine:
        if self.engine is not None:
            return self.engine

        logger.info("Initializing database connection...")
        self.engine = create_async_engine(
            self.url,
            echo=self.echo,
            pool_pre_ping=True,
            pool_recycle=3600,
        )
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        return self.engine

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Transactional scope: commits on success, rolls back and re-raises on error.

        Example:
            async with db.session() as session:
                session.add(obj)
        """
        if self.session_factory is None:
            self.init_engine()

        session = self.session_factory()
        try:
            yield session
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error(f"Database session error: {e}", exc_info=True)
            raise
        finally:
            await session.close()

    async def close(self):
        if self.engine is not None:
            logger.info("Closing database connections...")
            await self.engine.dispose()
            self.engine = None
            self.session_factory = None
