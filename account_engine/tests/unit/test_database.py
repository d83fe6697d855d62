"""Unit tests for account_engine.state.database transaction helpers."""

from __future__ import annotations

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import DisconnectionError, IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession

from account_engine.errors import StoreUnavailableError
from account_engine.state.database import (
    SessionFactory,
    dispose_engine,
    get_engine,
    get_session_factory,
    session_scope,
    use_session,
)
from account_engine.state.repository import PrincipalRepository
from account_engine.state.tables import PrincipalTable


async def _count(factory: SessionFactory) -> int:
    async with session_scope(factory) as session:
        return int((await session.execute(select(func.count()).select_from(PrincipalTable))).scalar_one())


async def _insert(session, principal_id: str, external_id: str) -> bool:
    return await PrincipalRepository(session).insert_if_absent(
        principal_id=principal_id,
        external_identity_id=external_id,
        contact_address=f"{principal_id}@example.com",
        display_name=principal_id,
        plan="free",
    )


class TestSessionScope:
    @pytest.mark.asyncio
    async def test_commits_on_success(self, session_factory: SessionFactory) -> None:
        async with session_scope(session_factory) as session:
            assert await _insert(session, "usr-1", "ext-1") is True
        assert await _count(session_factory) == 1

    @pytest.mark.asyncio
    async def test_rolls_back_on_error(self, session_factory: SessionFactory) -> None:
        with pytest.raises(RuntimeError):
            async with session_scope(session_factory) as session:
                await _insert(session, "usr-1", "ext-1")
                raise RuntimeError("abort")
        assert await _count(session_factory) == 0

    @pytest.mark.asyncio
    async def test_integrity_errors_propagate_unchanged(self, session_factory: SessionFactory) -> None:
        with pytest.raises(IntegrityError):
            async with session_scope(session_factory) as session:
                await PrincipalRepository(session).insert_if_absent(
                    principal_id="usr-1",
                    external_identity_id="ext-1",
                    contact_address="a@example.com",
                    display_name="A",
                    plan="platinum",
                )

    @pytest.mark.asyncio
    async def test_operational_error_is_retryable(self, session_factory: SessionFactory) -> None:
        with pytest.raises(StoreUnavailableError) as excinfo:
            async with session_scope(session_factory):
                raise OperationalError("SELECT 1", {}, Exception("connection refused"))
        assert excinfo.value.retryable is True

    @pytest.mark.asyncio
    async def test_refused_connection_is_retryable(self, session_factory: SessionFactory) -> None:
        with pytest.raises(StoreUnavailableError) as excinfo:
            async with session_scope(session_factory):
                raise ConnectionRefusedError(111, "Connect call failed")
        assert isinstance(excinfo.value.__cause__, ConnectionRefusedError)

    @pytest.mark.asyncio
    async def test_pool_timeout_is_retryable(self, session_factory: SessionFactory) -> None:
        with pytest.raises(StoreUnavailableError) as excinfo:
            async with session_scope(session_factory):
                raise PoolTimeoutError("QueuePool limit of size 10 overflow 20 reached")
        assert isinstance(excinfo.value.__cause__, PoolTimeoutError)

    @pytest.mark.asyncio
    async def test_disconnect_is_retryable(self, session_factory: SessionFactory) -> None:
        with pytest.raises(StoreUnavailableError) as excinfo:
            async with session_scope(session_factory):
                raise DisconnectionError("connection lost")
        assert isinstance(excinfo.value.__cause__, DisconnectionError)

    @pytest.mark.asyncio
    async def test_failed_rollback_does_not_mask_outage(
        self, session_factory: SessionFactory, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        async def _dead_rollback(self) -> None:
            raise OSError("socket closed")

        monkeypatch.setattr(AsyncSession, "rollback", _dead_rollback)
        with pytest.raises(StoreUnavailableError) as excinfo:
            async with session_scope(session_factory):
                raise ConnectionResetError(104, "Connection reset by peer")
        assert isinstance(excinfo.value.__cause__, ConnectionResetError)

    @pytest.mark.asyncio
    async def test_unreachable_postgres_is_retryable(self) -> None:
        engine = get_engine("postgresql+asyncpg://user:pw@127.0.0.1:1/accounts")
        try:
            with pytest.raises(StoreUnavailableError):
                async with session_scope(get_session_factory(engine)) as session:
                    await session.execute(select(1))
        finally:
            await dispose_engine(engine)

    @pytest.mark.asyncio
    async def test_insert_if_absent_ignores_duplicates(self, session_factory: SessionFactory) -> None:
        async with session_scope(session_factory) as session:
            assert await _insert(session, "usr-1", "ext-1") is True
        async with session_scope(session_factory) as session:
            assert await _insert(session, "usr-2", "ext-1") is False
        assert await _count(session_factory) == 1


class TestUseSession:
    @pytest.mark.asyncio
    async def test_joins_outer_transaction(self, session_factory: SessionFactory) -> None:
        with pytest.raises(RuntimeError):
            async with session_scope(session_factory) as outer:
                async with use_session(session_factory, outer) as inner:
                    assert inner is outer
                    await _insert(inner, "usr-1", "ext-1")
                raise RuntimeError("abort outer")
        assert await _count(session_factory) == 0

    @pytest.mark.asyncio
    async def test_opens_own_scope(self, session_factory: SessionFactory) -> None:
        async with use_session(session_factory) as session:
            await _insert(session, "usr-1", "ext-1")
        assert await _count(session_factory) == 1

    @pytest.mark.asyncio
    async def test_factory_is_cached(self, engine) -> None:
        assert get_session_factory(engine) is get_session_factory(engine)
