"""
Database configuration and session management

The engine is built on first use, so importing the package never opens a
connection pool. Pool limits depend on ENVIRONMENT.
"""
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

from shiprocket_fulfillment.core.config import settings

Base = declarative_base()

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


def engine_options(config=settings) -> dict:
    """Pool configuration for the async engine."""
    if config.ENVIRONMENT == "production":
        return {
            "pool_size": config.DB_POOL_SIZE,
            "max_overflow": config.DB_MAX_OVERFLOW,
            "pool_recycle": config.DB_POOL_RECYCLE,
            "pool_pre_ping": True,  # Verify connections before use
        }
    # Tracking writes are light; keep local pools small
    return {
        "pool_size": 2,
        "max_overflow": 5,
        "pool_pre_ping": True,
    }


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = create_async_engine(
            settings.DATABASE_URL,
            echo=settings.DEBUG,
            **engine_options(),
        )
    return _engine


def get_session_factory() -> async_sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_factory


async def dispose_engine() -> None:
    """Close pooled connections on shutdown. No-op when no engine was built."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def get_db() -> AsyncSession:
    """Request-scoped session; commits on success, rolls back on error."""
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
