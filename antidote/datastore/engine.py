"""
Database engine setup.

Uses the SQLAlchemy async engine over SQLite (aiosqlite). Unlike a process-wide
engine, each call to ``init_db`` returns its own engine and session factory so
that several clients (or tests) can run side by side.
"""

from dataclasses import dataclass

from loguru import logger
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from antidote.datastore.models import Base


@dataclass
class Database:
    """An engine together with its session factory."""

    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]

    async def close(self) -> None:
        """Dispose of the engine's connection pool."""
        await self.engine.dispose()
        logger.debug("Database engine disposed")


async def init_db(database_url: str, echo: bool = False) -> Database:
    """Create the engine and session factory, and create missing tables."""
    engine = create_async_engine(database_url, echo=echo, future=True)

    session_factory = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.debug(f"Database initialized: {engine.url.render_as_string()}")
    return Database(engine=engine, session_factory=session_factory)
