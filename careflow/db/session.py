"""
Database session management.
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from careflow.core.config import DatabaseConfig
from careflow.db.database import Base


def create_engine(config: DatabaseConfig, echo: bool = False) -> AsyncEngine:
    """Create the async engine for the configured database."""
    url = config.async_url
    if url.startswith("postgresql"):
        return create_async_engine(
            url,
            echo=echo,
            pool_size=config.pool_size,
            max_overflow=config.max_overflow,
        )
    return create_async_engine(url, echo=echo)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Async session factory bound to an engine."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Initialize database tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(engine: AsyncEngine) -> None:
    """Close database connections."""
    await engine.dispose()
