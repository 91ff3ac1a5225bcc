"""Database session management with connection pooling.

Manages SQLAlchemy async engine and session creation with support
for both SQLite and PostgreSQL databases.

Key features:
- Async session management with context managers
- Connection pooling (PostgreSQL) and appropriate defaults (SQLite)
- Automatic session commit/rollback
- Global session manager singleton pattern
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from mikrops.config import Settings
from mikrops.infra.db.models import Base


class DatabaseSessionManager:
    """Database session manager with connection pooling.

    Example:
        manager = DatabaseSessionManager(settings)
        await manager.init()

        async with manager.session() as session:
            result = await session.execute(select(Device))
            devices = result.scalars().all()

        await manager.close()
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    async def init(self) -> None:
        """Initialize database engine and session factory.

        Must be called before using session() method.
        """
        pool_config: dict = {}
        if self.settings.is_sqlite:
            connect_args = {
                "check_same_thread": False,
                "timeout": 30.0,
            }
            if ":memory:" in self.settings.database_url:
                # one shared connection so every session sees the same database
                pool_config = {"poolclass": StaticPool}
        else:
            connect_args = {}
            pool_config = {
                "pool_size": self.settings.database_pool_size,
                "max_overflow": self.settings.database_max_overflow,
                "pool_pre_ping": True,
                "pool_recycle": 3600,
            }

        self._engine = create_async_engine(
            self.settings.database_url,
            echo=self.settings.database_echo,
            connect_args=connect_args,
            **pool_config,
        )

        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def create_all(self) -> None:
        """Create missing tables (development and tests)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        """Close database engine and cleanup connections."""
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get database session context manager.

        Automatically commits on success or rolls back on error.

        Raises:
            RuntimeError: If session manager not initialized
        """
        if self._session_factory is None:
            raise RuntimeError("SessionManager not initialized. Call init() first.")

        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except BaseException:
                await session.rollback()
                raise

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("SessionManager not initialized. Call init() first.")
        return self._engine

