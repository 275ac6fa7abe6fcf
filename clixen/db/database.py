"""Database connection and session management"""

from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool, NullPool
from clixen.config import settings
from clixen.db.models import Base


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine for the given URL."""
    if database_url.startswith("sqlite"):
        if ":memory:" in database_url:
            # In-memory database lives on a single shared connection (tests)
            return create_async_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
                echo=echo,
            )
        # File database: one connection per session so each transaction commits
        # or rolls back on its own. SQLite serialises the writers via the busy timeout.
        return create_async_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": settings.store_timeout_seconds},
            poolclass=NullPool,
            echo=echo,
        )
    # PostgreSQL (asyncpg)
    return create_async_engine(
        database_url,
        echo=echo,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
        connect_args={"command_timeout": settings.store_timeout_seconds},
    )


def build_session_maker(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# Create async engine
engine = build_engine(settings.database_url, echo=settings.debug)

# Session factory
async_session_maker = build_session_maker(engine)


async def get_db() -> AsyncIterator[AsyncSession]:
    """Dependency for getting database sessions"""
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(bind: Optional[AsyncEngine] = None):
    """Create all tables. Production deployments run Alembic instead."""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
