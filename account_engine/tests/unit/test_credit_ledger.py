"""Unit tests for the credit ledger: plans, periods, and atomic counters."""

from __future__ import annotations

import asyncio
from datetime import UTC, date, datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from account_engine.accounts.provisioner import AccountProvisioner, BootstrapResult
from account_engine.errors import PrincipalNotFoundError
from account_engine.ledger.credit_ledger import CreditLedger, LedgerSnapshot
from account_engine.ledger.periods import (
    current_period_start,
    next_period_start,
    parse_period,
    period_bounds,
)
from account_engine.ledger.plans import PlanTier, normalize_plan, quota_for
from account_engine.state.database import SessionFactory, session_scope
from account_engine.state.repository import PrincipalRepository
from account_engine.state.tables import LedgerEntryTable

# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


class TestPlans:
    def test_quota_table(self) -> None:
        assert quota_for("free") == 1_000
        assert quota_for("paid") == 25_000
        assert quota_for("enterprise") == 100_000
        assert quota_for(PlanTier.PAID) == 25_000

    def test_legacy_alias(self) -> None:
        assert normalize_plan("x402") == PlanTier.PAID
        assert quota_for("x402") == 25_000

    def test_case_insensitive(self) -> None:
        assert normalize_plan(" Enterprise ") == PlanTier.ENTERPRISE

    def test_unknown_plan(self) -> None:
        with pytest.raises(ValueError, match="Unknown plan"):
            quota_for("platinum")


# ---------------------------------------------------------------------------
# Periods
# ---------------------------------------------------------------------------


class TestPeriods:
    def test_current_period_start(self) -> None:
        assert current_period_start(datetime(2026, 3, 31, 23, 59, 59, tzinfo=UTC)) == date(2026, 3, 1)
        assert current_period_start(datetime(2026, 4, 1, 0, 0, 0, tzinfo=UTC)) == date(2026, 4, 1)

    def test_naive_is_utc(self) -> None:
        assert current_period_start(datetime(2026, 4, 1, 0, 0, 1)) == date(2026, 4, 1)

    def test_non_utc_offset_is_converted(self) -> None:
        # 2026-04-01 01:00 at UTC+02:00 is still March 31 in UTC.
        moment = datetime(2026, 4, 1, 1, 0, tzinfo=timezone(timedelta(hours=2)))
        assert current_period_start(moment) == date(2026, 3, 1)

    def test_default_is_now(self) -> None:
        now = datetime.now(UTC)
        assert current_period_start() == date(now.year, now.month, 1)

    def test_next_period_start(self) -> None:
        assert next_period_start(date(2026, 3, 1)) == date(2026, 4, 1)
        assert next_period_start(date(2026, 12, 1)) == date(2027, 1, 1)

    def test_period_bounds(self) -> None:
        start, end = period_bounds(date(2026, 2, 1))
        assert start == datetime(2026, 2, 1, tzinfo=UTC)
        assert end == datetime(2026, 3, 1, tzinfo=UTC)

    def test_parse_period(self) -> None:
        assert parse_period("2026-03") == date(2026, 3, 1)
        with pytest.raises(ValueError):
            parse_period("March 2026")


# ---------------------------------------------------------------------------
# LedgerSnapshot
# ---------------------------------------------------------------------------


class TestLedgerSnapshot:
    def _snap(self, consumed: int, quota: int = 1_000) -> LedgerSnapshot:
        return LedgerSnapshot(
            principal_id="usr-1",
            period_start=date(2026, 3, 1),
            plan="free",
            quota=quota,
            consumed=consumed,
        )

    def test_remaining(self) -> None:
        assert self._snap(250).remaining == 750
        assert self._snap(1_200).remaining == 0

    def test_over_quota(self) -> None:
        assert self._snap(999).over_quota is False
        assert self._snap(1_000).over_quota is True
        assert self._snap(1_500).over_quota is True

    def test_is_closed(self) -> None:
        snap = self._snap(0)
        assert snap.is_closed(datetime(2026, 3, 31, 23, 59, tzinfo=UTC)) is False
        assert snap.is_closed(datetime(2026, 4, 1, tzinfo=UTC)) is True


# ---------------------------------------------------------------------------
# CreditLedger
# ---------------------------------------------------------------------------


async def _row_count(factory: SessionFactory, principal_id: str) -> int:
    async with session_scope(factory) as session:
        stmt = select(func.count()).select_from(LedgerEntryTable).where(LedgerEntryTable.principal_id == principal_id)
        return int((await session.execute(stmt)).scalar_one())


class TestGetOrCreate:
    @pytest.mark.asyncio
    async def test_bootstrap_seeds_current_period(
        self, ledger: CreditLedger, bootstrapped: BootstrapResult
    ) -> None:
        snap = await ledger.current(bootstrapped.principal.id)
        assert snap.period_start == current_period_start()
        assert snap.plan == "free"
        assert snap.quota == 1_000
        assert snap.consumed == 0

    @pytest.mark.asyncio
    async def test_idempotent(
        self, ledger: CreditLedger, session_factory: SessionFactory, bootstrapped: BootstrapResult
    ) -> None:
        period = date(2025, 11, 1)
        first = await ledger.get_or_create(bootstrapped.principal.id, period)
        second = await ledger.get_or_create(bootstrapped.principal.id, period)
        assert first.period_start == second.period_start == period
        # Current period from bootstrap plus November.
        assert await _row_count(session_factory, bootstrapped.principal.id) == 2

    @pytest.mark.asyncio
    async def test_concurrent_callers_create_one_row(
        self, ledger: CreditLedger, session_factory: SessionFactory, bootstrapped: BootstrapResult
    ) -> None:
        period = date(2026, 1, 1)
        snaps = await asyncio.gather(
            *(ledger.get_or_create(bootstrapped.principal.id, period) for _ in range(20))
        )
        assert {s.quota for s in snaps} == {1_000}
        assert {s.consumed for s in snaps} == {0}
        async with session_scope(session_factory) as session:
            stmt = (
                select(func.count())
                .select_from(LedgerEntryTable)
                .where(
                    LedgerEntryTable.principal_id == bootstrapped.principal.id,
                    LedgerEntryTable.period_start == period,
                )
            )
            assert (await session.execute(stmt)).scalar_one() == 1

    @pytest.mark.asyncio
    async def test_unknown_principal(self, ledger: CreditLedger) -> None:
        with pytest.raises(PrincipalNotFoundError):
            await ledger.get_or_create("usr-missing", date(2026, 3, 1))

    @pytest.mark.asyncio
    async def test_stored_legacy_plan_bills_as_paid(
        self, ledger: CreditLedger, session_factory: SessionFactory
    ) -> None:
        async with session_scope(session_factory) as session:
            await PrincipalRepository(session).insert_if_absent(
                principal_id="usr-legacy",
                external_identity_id="did:privy:legacy",
                contact_address="legacy@example.com",
                display_name="Legacy",
                plan="x402",
            )
        snap = await ledger.get_or_create("usr-legacy", date(2026, 3, 1))
        assert snap.plan == "paid"
        assert snap.quota == 25_000

    @pytest.mark.asyncio
    async def test_plan_change_affects_future_periods_only(
        self,
        ledger: CreditLedger,
        provisioner: AccountProvisioner,
        bootstrapped: BootstrapResult,
    ) -> None:
        principal_id = bootstrapped.principal.id
        current = await ledger.current(principal_id)

        await provisioner.change_plan(principal_id, "paid")

        assert (await ledger.current(principal_id)).quota == current.quota == 1_000
        future = await ledger.get_or_create(principal_id, next_period_start(current.period_start))
        assert future.plan == "paid"
        assert future.quota == 25_000


class TestIncrement:
    @pytest.mark.asyncio
    async def test_increment_returns_new_state(
        self, ledger: CreditLedger, bootstrapped: BootstrapResult
    ) -> None:
        period = current_period_start()
        snap = await ledger.increment(bootstrapped.principal.id, period, 5)
        assert snap.consumed == 5
        assert snap.remaining == 995
        snap = await ledger.increment(bootstrapped.principal.id, period, 0)
        assert snap.consumed == 5

    @pytest.mark.asyncio
    async def test_increment_creates_missing_row(
        self, ledger: CreditLedger, bootstrapped: BootstrapResult
    ) -> None:
        snap = await ledger.increment(bootstrapped.principal.id, date(2025, 6, 1), 3)
        assert snap.consumed == 3
        assert snap.quota == 1_000

    @pytest.mark.asyncio
    async def test_negative_amount_rejected(self, ledger: CreditLedger, bootstrapped: BootstrapResult) -> None:
        with pytest.raises(ValueError):
            await ledger.increment(bootstrapped.principal.id, current_period_start(), -1)

    @pytest.mark.asyncio
    async def test_may_exceed_quota(self, ledger: CreditLedger, bootstrapped: BootstrapResult) -> None:
        snap = await ledger.increment(bootstrapped.principal.id, current_period_start(), 1_250)
        assert snap.consumed == 1_250
        assert snap.over_quota is True
        assert snap.remaining == 0

    @pytest.mark.asyncio
    async def test_one_hundred_concurrent_increments(
        self, ledger: CreditLedger, bootstrapped: BootstrapResult
    ) -> None:
        period = current_period_start()
        before = (await ledger.current(bootstrapped.principal.id)).consumed

        await asyncio.gather(*(ledger.increment(bootstrapped.principal.id, period, 1) for _ in range(100)))

        after = await ledger.current(bootstrapped.principal.id)
        assert after.consumed == before + 100

    @pytest.mark.asyncio
    async def test_concurrent_increments_on_fresh_period(
        self, ledger: CreditLedger, bootstrapped: BootstrapResult
    ) -> None:
        period = date(2024, 2, 1)
        await asyncio.gather(*(ledger.increment(bootstrapped.principal.id, period, 2) for _ in range(25)))
        snap = await ledger.get_or_create(bootstrapped.principal.id, period)
        assert snap.consumed == 50


class TestHistoryAndRebuild:
    @pytest.mark.asyncio
    async def test_history_newest_first(self, ledger: CreditLedger, bootstrapped: BootstrapResult) -> None:
        principal_id = bootstrapped.principal.id
        for month in (1, 2, 3):
            await ledger.get_or_create(principal_id, date(2025, month, 1))

        history = await ledger.history(principal_id, limit=12)
        starts = [s.period_start for s in history]
        assert starts == sorted(starts, reverse=True)
        assert date(2025, 1, 1) in starts
        assert all(s.is_closed() for s in history if s.period_start < current_period_start())

        limited = await ledger.history(principal_id, limit=2)
        assert len(limited) == 2

    @pytest.mark.asyncio
    async def test_history_unknown_principal(self, ledger: CreditLedger) -> None:
        with pytest.raises(PrincipalNotFoundError):
            await ledger.history("usr-missing")

    @pytest.mark.asyncio
    async def test_rebuild_overwrites(
        self, ledger: CreditLedger, bootstrapped: BootstrapResult, caplog: pytest.LogCaptureFixture
    ) -> None:
        period = current_period_start()
        await ledger.increment(bootstrapped.principal.id, period, 10)
        snap = await ledger.rebuild(bootstrapped.principal.id, period, 4)
        assert snap.consumed == 4
        assert "lowered consumption" in caplog.text

    @pytest.mark.asyncio
    async def test_rebuild_rejects_negative(self, ledger: CreditLedger, bootstrapped: BootstrapResult) -> None:
        with pytest.raises(ValueError):
            await ledger.rebuild(bootstrapped.principal.id, current_period_start(), -5)
