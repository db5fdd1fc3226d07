"""Database engine configuration.

Uses SQLModel with async SQLite by default.
The database URL can be configured via QALLOC_DATABASE_URL environment variable.
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from qalloc.config import get_settings

# Engine instance (lazy initialization)
_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async database engine."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.database_url,
            echo=settings.debug,
        )
    return _engine


def get_session_factory(engine: AsyncEngine | None = None) -> async_sessionmaker[AsyncSession]:
    """Build a session factory bound to ``engine`` (the global engine by default)."""
    return async_sessionmaker(
        engine or get_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create all tables. Call on startup."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def close_db() -> None:
    """Dispose of the global engine. Call on shutdown."""
    global _engine
    if _engine is not None:
        await _engine.dispose()
        _engine = None

