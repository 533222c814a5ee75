"""
Engine and session factory for the order store.

One engine per process, built on first use from settings. SQLite (local
development and tests) and PostgreSQL (production) need different pool
options, so those are derived from the URL.
"""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from order_reconciliation.config import Settings, get_settings
from order_reconciliation.database.models import Base

logger = structlog.get_logger(__name__)

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def engine_options(settings: Settings) -> Dict[str, Any]:
    """Keyword arguments for create_async_engine for the configured backend."""
    options: Dict[str, Any] = {"echo": settings.database_echo}
    if make_url(settings.database_url).get_backend_name() == "sqlite":
        # Concurrent writers wait on the file lock instead of failing at once
        options["connect_args"] = {"timeout": 30}
        return options
    options.update(
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_pre_ping=True,
        pool_recycle=1800,
    )
    return options


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(settings.database_url, **engine_options(settings))
        logger.info("database_engine_created", backend=_engine.url.get_backend_name())
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Sessions keep loaded orders usable after commit; the store returns them to callers."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_factory


async def init_db() -> None:
    """Create the orders, bank transfer and notification log tables if missing."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
    logger.info("database_engine_disposed")
