"""Async SQLAlchemy engine, session factory, and transaction scope.

Supports both PostgreSQL (production) and SQLite (local dev mode and tests).
Engine type is determined by the database URL scheme:
  - ``postgresql+asyncpg://`` → connection-pooled PostgreSQL engine
  - ``sqlite+aiosqlite://``   → SQLite engine (see ``sqlite_adapter``)

Services never hold a module-level client.  They receive an
``async_sessionmaker`` and open one :func:`session_scope` per logical
operation.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.exc import DBAPIError, DisconnectionError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from account_engine.config import Settings
from account_engine.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]

# Cache of async_sessionmaker instances keyed by engine identity to avoid
# re-creating the factory for every service.
_session_factories: dict[int, SessionFactory] = {}


def get_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
) -> AsyncEngine:
    """Create an async SQLAlchemy engine.

    Parameters
    ----------
    database_url:
        Connection string (PostgreSQL or SQLite scheme).
    pool_size:
        Number of persistent connections for PostgreSQL (ignored for SQLite).
    max_overflow:
        Maximum overflow connections for PostgreSQL (ignored for SQLite).

    Returns
    -------
    AsyncEngine
        A configured async engine ready for session creation.
    """
    if database_url.startswith("sqlite"):
        from account_engine.state.sqlite_adapter import get_local_engine

        # Extract path from URL: sqlite+aiosqlite:///path/to/db
        db_path = database_url.split("///", 1)[-1] if "///" in database_url else ":memory:"
        return get_local_engine(db_path if db_path else ":memory:")

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=10,
        echo=False,
        connect_args={
            "server_settings": {
                "statement_timeout": "30000",  # 30 s
                "lock_timeout": "10000",  # 10 s
            }
        },
    )
    logger.info(
        "Created async engine pool_size=%d max_overflow=%d",
        pool_size,
        max_overflow,
    )
    return engine


def engine_from_settings(settings: Settings) -> AsyncEngine:
    return get_engine(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )


def get_session_factory(engine: AsyncEngine) -> SessionFactory:
    """Return the (cached) session factory bound to *engine*."""
    engine_key = id(engine)
    factory = _session_factories.get(engine_key)
    if factory is None:
        factory = async_sessionmaker(engine, expire_on_commit=False)
        _session_factories[engine_key] = factory
    return factory


def _is_unavailable(exc: DBAPIError) -> bool:
    return isinstance(exc, OperationalError) or bool(exc.connection_invalidated)


async def _rollback_quietly(session: AsyncSession) -> None:
    """Roll back after a connectivity failure without masking it."""
    try:
        await session.rollback()
    except Exception:
        logger.debug("Rollback after store failure also failed", exc_info=True)


def _unavailable(exc: BaseException) -> StoreUnavailableError:
    logger.warning("State store unavailable: %s", exc.__class__.__name__)
    return StoreUnavailableError("State store unavailable; retry the operation")


@asynccontextmanager
async def session_scope(factory: SessionFactory) -> AsyncGenerator[AsyncSession, None]:
    """Yield a session with automatic commit/rollback semantics.

    On successful exit the session is committed.  If an exception propagates
    the session is rolled back before the error is re-raised.  Connectivity
    failures (driver errors, refused sockets, pool timeouts, disconnects)
    are re-raised as :class:`StoreUnavailableError`.
    """
    session = factory()
    try:
        yield session
        await session.commit()
    except DBAPIError as exc:
        if _is_unavailable(exc):
            await _rollback_quietly(session)
            raise _unavailable(exc) from exc
        await session.rollback()
        raise
    except (OSError, PoolTimeoutError, DisconnectionError) as exc:
        await _rollback_quietly(session)
        raise _unavailable(exc) from exc
    except Exception:
        await session.rollback()
        raise
    finally:
        try:
            await session.close()
        except Exception:
            logger.warning("Closing session failed", exc_info=True)


@asynccontextmanager
async def use_session(
    factory: SessionFactory,
    session: AsyncSession | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Join the caller's *session* if given, else open a new :func:`session_scope`.

    A joined session is neither committed nor rolled back here; the owner of
    the outer transaction decides.
    """
    if session is not None:
        yield session
        return
    async with session_scope(factory) as owned:
        yield owned


async def create_tables(engine: AsyncEngine) -> None:
    """Create all ORM tables (idempotent).  Production uses Alembic instead."""
    from account_engine.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("State tables created/verified")


async def dispose_engine(engine: AsyncEngine) -> None:
    _session_factories.pop(id(engine), None)
    await engine.dispose()
