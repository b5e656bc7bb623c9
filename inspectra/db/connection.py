"""Database connection and session management for Inspectra.

Provides an explicitly constructed ``Database`` holding the async engine and
session factory. One instance is built at startup and handed to every
component that needs storage access.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from inspectra.config import DBConfig
from inspectra.db.models import Base


class Database:
    """Async engine plus session factory.

    Usage:
        db = Database.from_config(config.db)
        async with db.session() as session:
            result = await session.execute(query)
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self.session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,  # Don't expire objects after commit
        )

    @classmethod
    def from_config(cls, db_config: DBConfig) -> Database:
        engine_kwargs: dict = {"echo": db_config.echo}

        # SQLite doesn't support connection pooling parameters
        if "sqlite" not in db_config.url.lower():
            engine_kwargs.update({
                "pool_size": db_config.pool_size,
                "max_overflow": db_config.pool_max_overflow,
                "pool_timeout": db_config.pool_timeout,
                "pool_pre_ping": True,  # Verify connections before using
                "pool_recycle": 3600,  # Recycle connections after 1 hour
            })
        else:
            engine_kwargs["connect_args"] = {"timeout": 30}

        return cls(create_async_engine(db_config.url, **engine_kwargs))

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Yield a session that commits on success and rolls back on error."""
        session = self.session_factory()

        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def create_all(self, drop: bool = False) -> None:
        """Create all tables.

        Note: For production, use migrations instead.
        """
        async with self.engine.begin() as conn:
            if drop:
                await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        """Close database engine and dispose connections."""
        await self.engine.dispose()
