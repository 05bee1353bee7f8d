"""
Database Configuration using SQLAlchemy's asyncio extension.

PostgreSQL (asyncpg) in production, SQLite (aiosqlite) for local runs and tests.
"""
from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from utils.config import DATA_DIR, DATABASE_URL


def build_engine(url: str = DATABASE_URL, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine with pool settings suited to the backend.

    In-memory SQLite needs a single shared connection, otherwise every
    session would see an empty database.
    """
    if url.startswith("sqlite"):
        if ":memory:" in url:
            return create_async_engine(
                url,
                echo=echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        DATA_DIR.mkdir(parents=True, exist_ok=True)
        return create_async_engine(url, echo=echo)

    return create_async_engine(
        url,
        echo=echo,
        # Pool settings can be adjusted based on load
        pool_size=20,
        max_overflow=10,
        pool_pre_ping=True,
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine()

# Create Session Factory
AsyncSessionLocal = build_session_factory(engine)


# Base class for SQLAlchemy models to inherit from
class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency for obtaining an async database session.

    Usage in FastAPI:
        @router.get("/items/")
        async def read_items(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(bind: AsyncEngine = None):
    """
    Initialize database tables.
    Useful for creating tables in development if Alembic is not used.
    """
    # register tables on Base.metadata
    import models.sql_models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
