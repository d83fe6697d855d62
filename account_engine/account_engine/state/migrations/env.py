"""Alembic environment configuration for account engine state store migrations.

Supports both **online** (connected) and **offline** (SQL-generation) modes.
The database URL is resolved from ``ALEMBIC_DATABASE_URL``, then
``ACCOUNT_DATABASE_URL``, then ``alembic.ini``, falling back to the local
SQLite file used in development.

``target_metadata`` is bound to ``Base.metadata`` from
``account_engine.state.tables`` so that ``--autogenerate`` can detect schema
drift against the ORM model definitions.
"""

from __future__ import annotations

import logging
import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from account_engine.state.tables import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")

target_metadata = Base.metadata

# ---------------------------------------------------------------------------
# Database URL resolution
# ---------------------------------------------------------------------------

_DEFAULT_DATABASE_URL = "sqlite:///.account_engine/state.db"


def _get_database_url() -> str:
    """Resolve the database URL and convert it to a synchronous driver.

    Alembic's ``MigrationContext`` requires a synchronous engine, so
    ``asyncpg`` URLs are rewritten to psycopg3 and ``aiosqlite`` URLs to
    the stdlib ``sqlite3`` driver.
    """
    url = (
        os.environ.get("ALEMBIC_DATABASE_URL")
        or os.environ.get("ACCOUNT_DATABASE_URL")
        or config.get_main_option("sqlalchemy.url")
    )
    if not url:
        url = _DEFAULT_DATABASE_URL
        logger.info("Using default database URL: %s", url)

    if url.startswith("postgresql+asyncpg://"):
        url = "postgresql+psycopg://" + url[len("postgresql+asyncpg://") :]
    elif url.startswith("postgresql://"):
        url = "postgresql+psycopg://" + url[len("postgresql://") :]
    elif url.startswith("sqlite+aiosqlite://"):
        url = "sqlite://" + url[len("sqlite+aiosqlite://") :]
    url = url.replace("?ssl=require", "?sslmode=require")
    url = url.replace("&ssl=require", "&sslmode=require")
    return url


# ---------------------------------------------------------------------------
# Offline migrations (generate SQL without a live database)
# ---------------------------------------------------------------------------


def run_migrations_offline() -> None:
    url = _get_database_url()
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


# ---------------------------------------------------------------------------
# Online migrations (connected to a live database)
# ---------------------------------------------------------------------------


def run_migrations_online() -> None:
    configuration = config.get_section(config.config_ini_section, {})
    configuration["sqlalchemy.url"] = _get_database_url()

    connectable = engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
            # SQLite cannot ALTER constraints in place.
            render_as_batch=connection.dialect.name == "sqlite",
        )

        with context.begin_transaction():
            context.run_migrations()

    connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
