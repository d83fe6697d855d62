"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from account_engine.state.database import (
    SessionFactory,
    create_tables,
    dispose_engine,
    engine_from_settings,
    get_engine,
    get_session_factory,
    session_scope,
    use_session,
)
from account_engine.state.repository import (
    CredentialRepository,
    LedgerRepository,
    PrincipalRepository,
    UsageEventRepository,
)

__all__ = [
    "CredentialRepository",
    "LedgerRepository",
    "PrincipalRepository",
    "SessionFactory",
    "UsageEventRepository",
    "create_tables",
    "dispose_engine",
    "engine_from_settings",
    "get_engine",
    "get_session_factory",
    "session_scope",
    "use_session",
]
