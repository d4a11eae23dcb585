"""
SQLAlchemy 2.0 Database Configuration

Declarative base, timestamp mixin and async engine/session management.
"""

from datetime import UTC, datetime

from sqlalchemy import DateTime
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from mirza.platform.settings import get_settings

# ==========================================
# SQLAlchemy 2.0 Declarative Base
# ==========================================


class Base(DeclarativeBase):
    """Base class for all database models using SQLAlchemy 2.0 declarative mapping."""

    pass


class TimestampMixin:
    """Adds created_at and updated_at timestamps to models."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
        nullable=False,
    )


# ==========================================
# Engine and Session Management
# ==========================================

_async_engine: AsyncEngine | None = None
_async_session_maker: async_sessionmaker[AsyncSession] | None = None


def get_async_engine() -> AsyncEngine:
    """Get or create the asynchronous engine."""
    global _async_engine
    if _async_engine is None:
        settings = get_settings()
        _async_engine = create_async_engine(
            settings.database.sqlalchemy_url,
            echo=settings.database.echo,
        )
    return _async_engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Get or create the async session factory."""
    global _async_session_maker
    if _async_session_maker is None:
        _async_session_maker = async_sessionmaker(
            bind=get_async_engine(),
            class_=AsyncSession,
            autoflush=False,
            expire_on_commit=False,
        )
    return _async_session_maker


def set_session_maker(session_maker: async_sessionmaker[AsyncSession] | None) -> None:
    """Override the session factory (mainly for testing)."""
    global _async_session_maker
    _async_session_maker = session_maker


# ==========================================
# Database Initialization
# ==========================================


async def create_all_tables_async(engine: AsyncEngine | None = None) -> None:
    """Create all tables in the database asynchronously."""
    engine = engine or get_async_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_all_tables_async(engine: AsyncEngine | None = None) -> None:
    """Drop all tables from the database asynchronously. Use with caution!"""
    engine = engine or get_async_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


__all__ = [
    "Base",
    "TimestampMixin",
    "get_async_engine",
    "get_session_maker",
    "set_session_maker",
    "create_all_tables_async",
    "drop_all_tables_async",
]
