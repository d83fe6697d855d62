"""SQLite adapter for local-only operation and tests.

Provides an async SQLAlchemy engine backed by ``aiosqlite`` that uses the
same ORM table definitions as the production PostgreSQL backend.

Key differences from the PostgreSQL backend:

* Writers are serialised by SQLite's database lock; ``busy_timeout`` makes
  concurrent writers wait instead of failing immediately.
* ``ON CONFLICT`` upserts and the partial unique index on active
  credentials behave the same as on PostgreSQL.

INVARIANT: The same ORM code paths are exercised in local and production
modes.  Only the engine URL differs.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

logger = logging.getLogger(__name__)

_BUSY_TIMEOUT_SECONDS = 30.0


def get_local_engine(
    db_path: Path | str = ".account_engine/state.db",
    *,
    wal: bool = True,
) -> AsyncEngine:
    """Create an async SQLAlchemy engine backed by SQLite via aiosqlite.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Parent directories are
        created automatically.  Use ``:memory:`` for ephemeral
        in-memory databases (single connection, useful for unit tests).
    wal:
        Enable write-ahead logging on file databases.

    Returns
    -------
    AsyncEngine
        A configured async engine ready for session creation.
    """
    if db_path == ":memory:":
        engine = create_async_engine(
            "sqlite+aiosqlite://",
            echo=False,
            connect_args={"check_same_thread": False},
        )
        url = "sqlite+aiosqlite:///:memory:"
    else:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite+aiosqlite:///{path}"
        # One connection per session so concurrent sessions get their own
        # SQLite transaction.
        engine = create_async_engine(
            url,
            echo=False,
            poolclass=NullPool,
            connect_args={"check_same_thread": False, "timeout": _BUSY_TIMEOUT_SECONDS},
        )

    use_wal = wal and db_path != ":memory:"

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_conn: object, _: object) -> None:
        cursor = dbapi_conn.cursor()  # type: ignore[attr-defined]
        if use_wal:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute(f"PRAGMA busy_timeout={int(_BUSY_TIMEOUT_SECONDS * 1000)}")
        cursor.close()

    logger.info("Created SQLite engine: %s", url)
    return engine
