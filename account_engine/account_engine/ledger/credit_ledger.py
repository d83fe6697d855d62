"""Monthly credit ledger backed by the ``ledger_entries`` table.

One row exists per ``(principal_id, period_start)``.  Rows are created
lazily on first access with the quota of the principal's plan at that
moment, and are never deleted; closed periods remain readable as history.

Concurrency
-----------
Callers on different processes may hit the same row at the same time.
Creation is a single ``INSERT … ON CONFLICT DO NOTHING`` followed by a
read, so racing creators all observe the one surviving row.  Consumption
is a single ``UPDATE … SET consumed = consumed + :amount``; the ledger
never reads ``consumed`` into Python to write it back.
"""

from __future__ import annotations

import logging
from datetime import date, datetime

from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from account_engine.errors import PrincipalNotFoundError
from account_engine.ledger.periods import current_period_start
from account_engine.ledger.plans import normalize_plan, quota_for
from account_engine.state.database import SessionFactory, use_session
from account_engine.state.repository import LedgerRepository, PrincipalRepository
from account_engine.state.tables import LedgerEntryTable

logger = logging.getLogger(__name__)


class LedgerSnapshot(BaseModel):
    """Point-in-time view of one ledger entry."""

    model_config = ConfigDict(frozen=True)

    principal_id: str
    period_start: date
    plan: str
    quota: int
    consumed: int
    updated_at: datetime | None = None

    @property
    def remaining(self) -> int:
        """Credits left in the period, floored at zero."""
        return max(self.quota - self.consumed, 0)

    @property
    def over_quota(self) -> bool:
        """``True`` once no credits remain (``consumed`` may exceed ``quota``)."""
        return self.consumed >= self.quota

    def is_closed(self, now: datetime | None = None) -> bool:
        """``True`` if the period has ended as of *now*."""
        return current_period_start(now) > self.period_start

    @classmethod
    def from_row(cls, row: LedgerEntryTable) -> LedgerSnapshot:
        return cls(
            principal_id=row.principal_id,
            period_start=row.period_start,
            plan=row.plan,
            quota=row.quota,
            consumed=row.consumed,
            updated_at=row.updated_at,
        )


class CreditLedger:
    """Reads and atomically updates per-period credit counters.

    Parameters
    ----------
    session_factory:
        Factory used to open one transaction per operation.  Every write
        method also accepts ``session=`` to join a transaction the caller
        already owns.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def _ensure_entry(
        self,
        session: AsyncSession,
        principal_id: str,
        period_start: date,
    ) -> bool:
        plan = await PrincipalRepository(session).get_plan(principal_id)
        if plan is None:
            raise PrincipalNotFoundError(principal_id)
        tier = normalize_plan(plan)
        created = await LedgerRepository(session).insert_if_absent(
            principal_id,
            period_start,
            plan=tier.value,
            quota=quota_for(tier),
        )
        if created:
            logger.info(
                "Opened ledger period %s for principal %s (plan=%s)",
                period_start.isoformat(),
                principal_id,
                tier.value,
                extra={"principal_id": principal_id, "period_start": period_start.isoformat()},
            )
        return created

    async def _snapshot(self, session: AsyncSession, principal_id: str, period_start: date) -> LedgerSnapshot:
        row = await LedgerRepository(session).get(principal_id, period_start)
        if row is None:
            # Only reachable if the principal row vanished mid-transaction.
            raise PrincipalNotFoundError(principal_id)
        return LedgerSnapshot.from_row(row)

    async def get_or_create(
        self,
        principal_id: str,
        period_start: date | None = None,
        *,
        session: AsyncSession | None = None,
    ) -> LedgerSnapshot:
        """Return the entry for the period, creating it with the plan quota if absent.

        Raises
        ------
        PrincipalNotFoundError
            If *principal_id* does not exist.
        """
        period = period_start or current_period_start()
        async with use_session(self._session_factory, session) as s:
            await self._ensure_entry(s, principal_id, period)
            return await self._snapshot(s, principal_id, period)

    async def increment(
        self,
        principal_id: str,
        period_start: date,
        amount: int,
        *,
        session: AsyncSession | None = None,
    ) -> LedgerSnapshot:
        """Add *amount* credits to the period's consumption and return the new state.

        Raises
        ------
        ValueError
            If *amount* is negative.
        PrincipalNotFoundError
            If *principal_id* does not exist.
        """
        if amount < 0:
            raise ValueError(f"Credit amount must be non-negative, got {amount}")

        async with use_session(self._session_factory, session) as s:
            repo = LedgerRepository(s)
            if not await repo.add_consumed(principal_id, period_start, amount):
                await self._ensure_entry(s, principal_id, period_start)
                await repo.add_consumed(principal_id, period_start, amount)
            snapshot = await self._snapshot(s, principal_id, period_start)

        logger.debug(
            "Charged %d credits to principal %s for %s (consumed=%d/%d)",
            amount,
            principal_id,
            period_start.isoformat(),
            snapshot.consumed,
            snapshot.quota,
        )
        return snapshot

    async def current(self, principal_id: str, now: datetime | None = None) -> LedgerSnapshot:
        """Entry for the period containing *now* (default: the present)."""
        return await self.get_or_create(principal_id, current_period_start(now))

    async def history(self, principal_id: str, limit: int = 12) -> list[LedgerSnapshot]:
        """Recorded periods for *principal_id*, newest first.  Creates nothing."""
        async with use_session(self._session_factory) as s:
            if await PrincipalRepository(s).get_plan(principal_id) is None:
                raise PrincipalNotFoundError(principal_id)
            rows = await LedgerRepository(s).list_by_principal(principal_id, limit=limit)
            return [LedgerSnapshot.from_row(row) for row in rows]

    async def rebuild(
        self,
        principal_id: str,
        period_start: date,
        consumed: int,
        *,
        session: AsyncSession | None = None,
    ) -> LedgerSnapshot:
        """Overwrite the period's consumption with a value recomputed from the event log."""
        if consumed < 0:
            raise ValueError(f"Consumed credits must be non-negative, got {consumed}")

        async with use_session(self._session_factory, session) as s:
            await self._ensure_entry(s, principal_id, period_start)
            repo = LedgerRepository(s)
            before = await repo.get(principal_id, period_start)
            previous = before.consumed if before is not None else 0
            await repo.set_consumed(principal_id, period_start, consumed)
            snapshot = await self._snapshot(s, principal_id, period_start)

        if consumed < previous:
            logger.warning(
                "Reconciliation lowered consumption for principal %s in %s from %d to %d",
                principal_id,
                period_start.isoformat(),
                previous,
                consumed,
                extra={"principal_id": principal_id, "period_start": period_start.isoformat()},
            )
        elif consumed != previous:
            logger.info(
                "Reconciliation raised consumption for principal %s in %s from %d to %d",
                principal_id,
                period_start.isoformat(),
                previous,
                consumed,
            )
        return snapshot
