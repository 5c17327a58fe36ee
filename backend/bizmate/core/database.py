"""Database configuration and session management with async SQLAlchemy."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from bizmate.core.config import settings


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


def create_engine(database_url: str | None = None) -> AsyncEngine:
    """Create the async database engine.

    SQLite is used for development and tests, PostgreSQL in production.
    """
    database_url = database_url or settings.database_url

    if database_url.startswith("sqlite"):
        return create_async_engine(
            database_url,
            echo=settings.debug,
            connect_args={"check_same_thread": False},
        )

    return create_async_engine(
        database_url,
        echo=settings.debug,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
    )


engine = create_engine()

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a session that commits on success."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@asynccontextmanager
async def get_db_context() -> AsyncGenerator[AsyncSession, None]:
    """Session context manager for work outside of a request.

    Background event processing opens its own session through this, since
    request-scoped sessions are closed once the webhook is acknowledged.

    Usage:
        async with get_db_context() as db:
            await CredentialStore(db).get(user_id)
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db() -> None:
    """Create all tables. Called on application startup."""
    # Register every model on the metadata before create_all
    import bizmate.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of pooled connections. Called on application shutdown."""
    await engine.dispose()
