# src/shared/database.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.shared.config import get_settings


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests/local).
JSONType = sa.JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(sa.TypeDecorator):
    """Timezone-aware datetimes on every backend; SQLite hands back naive values."""

    impl = sa.DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Optional[datetime], dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


def str_enum(enum_cls: Any, name: str) -> sa.Enum:
    """Store enum values (not names) as VARCHAR so the schema is portable."""
    return sa.Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=32,
        validate_strings=True,
        values_callable=lambda e: [m.value for m in e],
    )


class Base(DeclarativeBase):
    """Project-wide SQLAlchemy declarative base."""
    type_annotation_map = {
        Dict[str, Any]: JSONType,
        datetime: UTCDateTime(),
    }


_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def create_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """Create an AsyncEngine; pool sizing only applies to server databases."""
    settings = get_settings()
    url = database_url or settings.database_url
    kwargs: Dict[str, Any] = {"echo": settings.database_echo, "future": True}
    if not url.startswith("sqlite"):
        kwargs.update(
            pool_pre_ping=True,
            pool_recycle=1800,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
        )
    return create_async_engine(url, **kwargs)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine() -> AsyncEngine:
    """Lazy singleton engine."""
    global _engine
    if _engine is None:
        _engine = create_engine()
    return _engine


def get_session() -> async_sessionmaker[AsyncSession]:
    """Lazy singleton session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = make_session_factory(get_engine())
    return _session_factory


async def db_session() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency yielding a session from the shared factory."""
    Session = get_session()
    async with Session() as session:
        yield session


async def init_models(engine: AsyncEngine) -> None:
    """Create all tables registered on Base.metadata."""
    # Import for side effects: registers ORM tables on Base.metadata.
    from src.messaging.infrastructure import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
