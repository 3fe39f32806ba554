"""Database connection and session management."""
from collections.abc import AsyncGenerator
from typing import Any, Dict

from fastapi import Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from entitlements.config import Settings
from entitlements.database.models import Base


class Database:
    """
    Owns the async engine and the session factory for one process.

    Built once at startup and handed to whatever needs sessions, instead of
    living in module globals.
    """

    def __init__(
        self,
        url: str,
        echo: bool = False,
        pool_size: int = 20,
        max_overflow: int = 50,
    ) -> None:
        """
        Create the engine and session factory.

        Args:
            url: SQLAlchemy async database URL
            echo: Echo SQL statements
            pool_size: Connection pool size (ignored for SQLite)
            max_overflow: Pool overflow (ignored for SQLite)
        """
        engine_kwargs: Dict[str, Any] = {"echo": echo}
        if url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"timeout": 30}
        else:
            engine_kwargs.update(
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_pre_ping=True,  # Verify connections before using
                pool_recycle=3600,  # Recycle connections after 1 hour
            )

        self.url = url
        self.engine: AsyncEngine = create_async_engine(url, **engine_kwargs)
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        """Build a Database from application settings."""
        return cls(
            settings.database_url,
            echo=settings.database_echo,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
        )

    def session(self) -> AsyncSession:
        """Open a new session. Use as an async context manager."""
        return self.session_factory()

    async def create_all(self) -> None:
        """
        Initialize database tables.

        Creates all tables defined in models if they don't exist.
        """
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def ping(self) -> None:
        """Run a trivial query; raises if the database is unreachable."""
        async with self.session() as db:
            result = await db.execute(text("SELECT 1"))
            result.scalar()

    async def dispose(self) -> None:
        """Close database connections and dispose of the engine."""
        await self.engine.dispose()


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, Any]:
    """
    Dependency for getting database sessions.

    Yields:
        AsyncSession: Database session bound to the application's Database

    Example:
        @router.get("/admin/unresolved-items")
        async def unresolved(db: AsyncSession = Depends(get_db)):
            ...
    """
    database: Database = request.app.state.container.database
    async with database.session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(database: Database) -> None:
    """Create tables for the given database."""
    await database.create_all()
