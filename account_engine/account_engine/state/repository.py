"""Repository classes providing CRUD access to the account engine state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for
committing (normally through :func:`account_engine.state.database.session_scope`).

Counters are only ever changed with single SQL statements
(``INSERT … ON CONFLICT DO NOTHING`` and ``UPDATE … SET x = x + :n``); no
repository method reads a value into Python, modifies it, and writes it back.
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime
from typing import Any

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from account_engine.state.tables import (
    CredentialTable,
    LedgerEntryTable,
    PrincipalTable,
    UsageEventTable,
)

logger = logging.getLogger(__name__)


def _escape_like(value: str) -> str:
    """Escape SQL LIKE metacharacters so they are treated as literal characters."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


async def _dialect_upsert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> bool:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to insert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.

    Returns
    -------
    bool
        ``True`` if this statement inserted the row, ``False`` if a
        conflicting row already existed.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    result = await session.execute(stmt)
    return result.rowcount > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# PrincipalRepository
# ---------------------------------------------------------------------------


class PrincipalRepository:
    """CRUD operations for the ``principals`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def insert_if_absent(
        self,
        *,
        principal_id: str,
        external_identity_id: str,
        contact_address: str,
        display_name: str,
        plan: str,
        wallet_address: str | None = None,
        avatar_url: str | None = None,
    ) -> bool:
        """Insert a principal unless one exists for the external identity.

        Returns ``True`` when this call created the row.
        """
        now = datetime.now(UTC)
        inserted = await _dialect_upsert_nothing(
            self._session,
            PrincipalTable,
            values={
                "id": principal_id,
                "external_identity_id": external_identity_id,
                "contact_address": contact_address,
                "display_name": display_name,
                "plan": plan,
                "wallet_address": wallet_address,
                "avatar_url": avatar_url,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["external_identity_id"],
        )
        await self._session.flush()
        return inserted

    async def get_by_id(self, principal_id: str) -> PrincipalTable | None:
        stmt = (
            select(PrincipalTable)
            .where(PrincipalTable.id == principal_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_external_id(self, external_identity_id: str) -> PrincipalTable | None:
        stmt = (
            select(PrincipalTable)
            .where(PrincipalTable.external_identity_id == external_identity_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_plan(self, principal_id: str) -> str | None:
        stmt = select(PrincipalTable.plan).where(PrincipalTable.id == principal_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def upgrade_placeholder_address(
        self,
        principal_id: str,
        new_address: str,
        placeholder_domain: str,
    ) -> bool:
        """Replace a placeholder (or blank) contact address with *new_address*.

        The condition is evaluated in SQL so a concurrent upgrade cannot be
        overwritten and a real address is never replaced.  Returns ``True``
        if a row was updated.
        """
        pattern = "%@" + _escape_like(placeholder_domain)
        stmt = (
            update(PrincipalTable)
            .where(
                PrincipalTable.id == principal_id,
                (PrincipalTable.contact_address == "")
                | PrincipalTable.contact_address.like(pattern, escape="\\"),
            )
            .values(contact_address=new_address, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def update_profile(self, principal_id: str, values: dict[str, Any]) -> bool:
        if not values:
            return False
        stmt = (
            update(PrincipalTable)
            .where(PrincipalTable.id == principal_id)
            .values(**values, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# CredentialRepository
# ---------------------------------------------------------------------------


class CredentialRepository:
    """CRUD operations for the ``credentials`` table.

    Rows are never deleted.  The only mutations are flipping ``active`` off
    and refreshing ``last_used_at``.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def insert(
        self,
        *,
        credential_id: str,
        principal_id: str,
        key_hash: str,
        key_prefix: str,
        key_suffix: str,
        encrypted_key: str | None,
        label: str,
    ) -> CredentialTable:
        row = CredentialTable(
            id=credential_id,
            principal_id=principal_id,
            key_hash=key_hash,
            key_prefix=key_prefix,
            key_suffix=key_suffix,
            encrypted_key=encrypted_key,
            label=label,
            active=True,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get_active(self, principal_id: str) -> CredentialTable | None:
        stmt = select(CredentialTable).where(
            CredentialTable.principal_id == principal_id,
            CredentialTable.active.is_(True),
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_active_by_hash(self, key_hash: str) -> CredentialTable | None:
        stmt = select(CredentialTable).where(
            CredentialTable.key_hash == key_hash,
            CredentialTable.active.is_(True),
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def deactivate_active(self, principal_id: str) -> int:
        """Flip whichever credential of *principal_id* is active to inactive.

        Returns the number of rows deactivated (0 or 1).
        """
        stmt = (
            update(CredentialTable)
            .where(
                CredentialTable.principal_id == principal_id,
                CredentialTable.active.is_(True),
            )
            .values(active=False, deactivated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return int(result.rowcount)  # type: ignore[attr-defined]

    async def touch_last_used(self, credential_id: str, when: datetime) -> bool:
        """Advance ``last_used_at`` to *when*; never moves it backwards."""
        stmt = (
            update(CredentialTable)
            .where(
                CredentialTable.id == credential_id,
                CredentialTable.last_used_at.is_(None) | (CredentialTable.last_used_at < when),
            )
            .values(last_used_at=when)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def list_by_principal(self, principal_id: str) -> list[CredentialTable]:
        stmt = (
            select(CredentialTable)
            .where(CredentialTable.principal_id == principal_id)
            .order_by(CredentialTable.created_at.desc(), CredentialTable.id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_active(self, principal_id: str) -> int:
        stmt = (
            select(func.count())
            .select_from(CredentialTable)
            .where(
                CredentialTable.principal_id == principal_id,
                CredentialTable.active.is_(True),
            )
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())


# ---------------------------------------------------------------------------
# LedgerRepository
# ---------------------------------------------------------------------------


class LedgerRepository:
    """Queries and atomic writes for the ``ledger_entries`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def insert_if_absent(
        self,
        principal_id: str,
        period_start: date,
        *,
        plan: str,
        quota: int,
    ) -> bool:
        """Create the ``(principal, period)`` row unless it already exists."""
        now = datetime.now(UTC)
        inserted = await _dialect_upsert_nothing(
            self._session,
            LedgerEntryTable,
            values={
                "principal_id": principal_id,
                "period_start": period_start,
                "plan": plan,
                "quota": quota,
                "consumed": 0,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["principal_id", "period_start"],
        )
        await self._session.flush()
        return inserted

    async def get(self, principal_id: str, period_start: date) -> LedgerEntryTable | None:
        stmt = (
            select(LedgerEntryTable)
            .where(
                LedgerEntryTable.principal_id == principal_id,
                LedgerEntryTable.period_start == period_start,
            )
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def add_consumed(self, principal_id: str, period_start: date, amount: int) -> bool:
        """Atomically add *amount* to ``consumed``.  Returns ``True`` if the row exists."""
        stmt = (
            update(LedgerEntryTable)
            .where(
                LedgerEntryTable.principal_id == principal_id,
                LedgerEntryTable.period_start == period_start,
            )
            .values(
                consumed=LedgerEntryTable.consumed + amount,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def set_consumed(self, principal_id: str, period_start: date, consumed: int) -> bool:
        """Overwrite ``consumed``; reserved for reconciliation from the event log."""
        stmt = (
            update(LedgerEntryTable)
            .where(
                LedgerEntryTable.principal_id == principal_id,
                LedgerEntryTable.period_start == period_start,
            )
            .values(consumed=consumed, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def list_by_principal(self, principal_id: str, limit: int = 12) -> list[LedgerEntryTable]:
        stmt = (
            select(LedgerEntryTable)
            .where(LedgerEntryTable.principal_id == principal_id)
            .order_by(LedgerEntryTable.period_start.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_for_period(self, principal_id: str, period_start: date) -> int:
        stmt = (
            select(func.count())
            .select_from(LedgerEntryTable)
            .where(
                LedgerEntryTable.principal_id == principal_id,
                LedgerEntryTable.period_start == period_start,
            )
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())


# ---------------------------------------------------------------------------
# UsageEventRepository
# ---------------------------------------------------------------------------


class UsageEventRepository:
    """Append and aggregate operations for the ``usage_events`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(self, values: dict[str, Any]) -> bool:
        """Append an event.  Returns ``False`` if ``(principal_id, request_id)`` was seen."""
        inserted = await _dialect_upsert_nothing(
            self._session,
            UsageEventTable,
            values=values,
            index_elements=["principal_id", "request_id"],
        )
        await self._session.flush()
        return inserted

    async def get_by_request_id(self, principal_id: str, request_id: str) -> UsageEventTable | None:
        stmt = select(UsageEventTable).where(
            UsageEventTable.principal_id == principal_id,
            UsageEventTable.request_id == request_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_between(
        self,
        principal_id: str,
        start: datetime,
        end: datetime,
        limit: int = 500,
    ) -> list[UsageEventTable]:
        stmt = (
            select(UsageEventTable)
            .where(
                UsageEventTable.principal_id == principal_id,
                UsageEventTable.timestamp >= start,
                UsageEventTable.timestamp < end,
            )
            .order_by(UsageEventTable.timestamp.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def sum_credits(self, principal_id: str, start: datetime, end: datetime) -> int:
        stmt = select(func.coalesce(func.sum(UsageEventTable.credits_charged), 0)).where(
            UsageEventTable.principal_id == principal_id,
            UsageEventTable.timestamp >= start,
            UsageEventTable.timestamp < end,
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one() or 0)

    async def aggregate(self, principal_id: str, start: datetime, end: datetime) -> dict[str, Any]:
        """Return call count, credits, mean latency, and success/error counts for a window."""
        success = case(
            (
                (UsageEventTable.status_code >= 200) & (UsageEventTable.status_code < 300),
                1,
            ),
            else_=0,
        )
        failure = case((UsageEventTable.status_code >= 400, 1), else_=0)
        stmt = select(
            func.count(UsageEventTable.id).label("total_calls"),
            func.coalesce(func.sum(UsageEventTable.credits_charged), 0).label("total_credits"),
            func.avg(UsageEventTable.latency_ms).label("avg_latency_ms"),
            func.coalesce(func.sum(success), 0).label("success_count"),
            func.coalesce(func.sum(failure), 0).label("error_count"),
        ).where(
            UsageEventTable.principal_id == principal_id,
            UsageEventTable.timestamp >= start,
            UsageEventTable.timestamp < end,
        )
        result = await self._session.execute(stmt)
        row = result.one()
        return {
            "total_calls": int(row.total_calls or 0),
            "total_credits": int(row.total_credits or 0),
            "avg_latency_ms": float(row.avg_latency_ms) if row.avg_latency_ms is not None else 0.0,
            "success_count": int(row.success_count or 0),
            "error_count": int(row.error_count or 0),
        }

    async def top_endpoints(
        self,
        principal_id: str,
        start: datetime,
        end: datetime,
        limit: int = 5,
    ) -> list[tuple[str, int]]:
        calls = func.count(UsageEventTable.id).label("calls")
        stmt = (
            select(UsageEventTable.endpoint, calls)
            .where(
                UsageEventTable.principal_id == principal_id,
                UsageEventTable.timestamp >= start,
                UsageEventTable.timestamp < end,
            )
            .group_by(UsageEventTable.endpoint)
            .order_by(calls.desc(), UsageEventTable.endpoint)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [(row.endpoint, int(row.calls)) for row in result.all()]
