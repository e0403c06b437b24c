"""
Database Configuration for MagnetHub Billing

Async SQLAlchemy engine and session management. The subscription row is the
single shared mutable resource between request workers, so every unit of
work goes through a short-lived session opened here.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
    AsyncEngine,
)
from sqlalchemy import text
from sqlmodel import SQLModel

from app.config.settings import settings
from app.infrastructure.exceptions import ConfigurationError


class DatabaseManager:
    """
    Manages async database connections and sessions.

    One manager per process; tests and scripts may install their own with
    ``set_db_manager``.
    """

    def __init__(self, database_url: Optional[str] = None):
        self._database_url = database_url
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def engine(self) -> AsyncEngine:
        """Get or create async engine with connection pooling."""
        if self._engine is None:
            self._initialize_engine()
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        """Get or create session factory."""
        if self._session_factory is None:
            self._initialize_engine()
        return self._session_factory

    def _initialize_engine(self) -> None:
        """Initialize async engine; SQLite gets no pool tuning."""
        database_url = self._resolve_database_url()

        if database_url.startswith("sqlite"):
            self._engine = create_async_engine(
                database_url,
                echo=settings.database_echo,
                connect_args={"timeout": 30},
            )
        else:
            self._engine = create_async_engine(
                database_url,
                echo=settings.database_echo,
                pool_size=settings.database_pool_size,
                max_overflow=settings.database_max_overflow,
                pool_timeout=settings.database_pool_timeout,
                pool_pre_ping=True,  # Verify connections before use
            )

        self._session_factory = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    def _resolve_database_url(self) -> str:
        """Normalize the configured URL to an async driver."""
        database_url = self._database_url or settings.database_url
        if not database_url:
            raise ConfigurationError(
                "DATABASE_URL is required",
                missing_keys=["DATABASE_URL"],
            )

        if database_url.startswith("postgresql://"):
            database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        elif database_url.startswith("postgres://"):
            database_url = database_url.replace("postgres://", "postgresql+asyncpg://", 1)
        elif database_url.startswith("sqlite:///"):
            database_url = database_url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)

        return database_url

    async def create_tables(self) -> None:
        """Create all tables from SQLModel metadata."""
        # Registers the tables on SQLModel.metadata.
        from app.infrastructure.db import models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    async def drop_tables(self) -> None:
        """Drop all tables (use with caution, mainly for testing)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.drop_all)

    async def close(self) -> None:
        """Close engine and dispose of connection pool."""
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None


# Global instance (lazy initialization)
_db_manager: Optional[DatabaseManager] = None


def get_db_manager() -> DatabaseManager:
    """Get or create the database manager instance."""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
    return _db_manager


def set_db_manager(manager: Optional[DatabaseManager]) -> None:
    """Install a specific manager (tests, maintenance scripts)."""
    global _db_manager
    _db_manager = manager


@asynccontextmanager
async def get_session_context() -> AsyncGenerator[AsyncSession, None]:
    """
    Context manager for a single unit of work outside FastAPI requests.

    Commits on clean exit, rolls back and re-raises otherwise.

    Usage:
        async with get_session_context() as session:
            result = await session.execute(query)
    """
    db = get_db_manager()
    async with db.session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Initialize database connection pool (called on app startup)."""
    db = get_db_manager()
    # Verify connection works
    async with db.session_factory() as session:
        await session.execute(text("SELECT 1"))


async def close_db() -> None:
    """Close database connection pool (called on app shutdown)."""
    db = get_db_manager()
    await db.close()
