"""Shared fixtures for account engine tests.

Every test gets its own file-backed SQLite database under ``tmp_path``.  A
file (rather than ``:memory:``) is used so that concurrent sessions open
separate connections and exercise SQLite's real locking, the same way
independent processes would contend on the production store.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine

from account_engine.accounts.identity import ExternalIdentity
from account_engine.accounts.provisioner import AccountProvisioner, BootstrapResult
from account_engine.keys.codec import KeyCodec
from account_engine.keys.store import KeyStore
from account_engine.ledger.credit_ledger import CreditLedger
from account_engine.state.database import (
    SessionFactory,
    create_tables,
    dispose_engine,
    get_session_factory,
)
from account_engine.state.sqlite_adapter import get_local_engine
from account_engine.usage.recorder import UsageRecorder

TEST_MASTER_KEY = "test-master-key-do-not-use-in-production"


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    eng = get_local_engine(tmp_path / "state.db")
    await create_tables(eng)
    yield eng
    await dispose_engine(eng)


@pytest.fixture
def session_factory(engine: AsyncEngine) -> SessionFactory:
    return get_session_factory(engine)


@pytest.fixture
def codec() -> KeyCodec:
    """Hash-only codec (no master key configured)."""
    return KeyCodec()


@pytest.fixture
def encrypting_codec() -> KeyCodec:
    return KeyCodec(master_key=TEST_MASTER_KEY)


@pytest.fixture
def key_store(session_factory: SessionFactory, codec: KeyCodec) -> KeyStore:
    return KeyStore(session_factory, codec)


@pytest.fixture
def ledger(session_factory: SessionFactory) -> CreditLedger:
    return CreditLedger(session_factory)


@pytest.fixture
def recorder(session_factory: SessionFactory, ledger: CreditLedger, key_store: KeyStore) -> UsageRecorder:
    return UsageRecorder(session_factory, ledger, key_store)


@pytest.fixture
def provisioner(
    session_factory: SessionFactory,
    key_store: KeyStore,
    ledger: CreditLedger,
) -> AccountProvisioner:
    return AccountProvisioner(session_factory, key_store, ledger)


@pytest.fixture
def identity() -> ExternalIdentity:
    return ExternalIdentity(
        external_id="did:privy:alice",
        google_email="alice@example.com",
        display_name="Alice",
    )


@pytest_asyncio.fixture
async def bootstrapped(provisioner: AccountProvisioner, identity: ExternalIdentity) -> BootstrapResult:
    """A freshly provisioned principal with one active credential."""
    return await provisioner.bootstrap(identity)
