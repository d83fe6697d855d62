"""Records API calls and charges them against the credit ledger.

Recording is two independent steps:

1. append the event to ``usage_events`` (the source of truth), then
2. atomically increment the ledger entry for the event's billing period.

A failure in step 2 does not undo step 1.  It is logged and reported as
``RecordOutcome.ledger is None`` so the period can be rebuilt later with
:meth:`UsageRecorder.reconcile`.  A failure in step 1 propagates.

Stamping ``last_used_at`` on the credential is a fire-and-forget background
task and never delays or fails a recording.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from datetime import date, datetime
from typing import Any

from account_engine.keys.store import KeyStore
from account_engine.ledger.credit_ledger import CreditLedger, LedgerSnapshot
from account_engine.ledger.periods import current_period_start, period_bounds
from account_engine.state.database import SessionFactory, use_session
from account_engine.state.repository import UsageEventRepository
from account_engine.state.tables import UsageEventTable
from account_engine.usage.events import (
    EndpointCount,
    RecordOutcome,
    UsageEvent,
    UsageSummary,
    UsageWindow,
)

logger = logging.getLogger(__name__)


def _event_from_row(row: UsageEventTable) -> UsageEvent:
    return UsageEvent(
        event_id=row.id,
        principal_id=row.principal_id,
        credential_id=row.credential_id,
        request_id=row.request_id,
        endpoint=row.endpoint,
        method=row.method,
        status_code=row.status_code,
        latency_ms=row.latency_ms,
        credits_charged=row.credits_charged,
        error_text=row.error_text,
        timestamp=row.timestamp,
    )


class UsageRecorder:
    """Appends usage events, charges credits, and summarises usage.

    Parameters
    ----------
    session_factory:
        Factory used to open one transaction per operation.
    ledger:
        Credit ledger charged for every recorded event.
    key_store:
        Used to stamp ``last_used_at`` on the calling credential.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        ledger: CreditLedger,
        key_store: KeyStore,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger
        self._key_store = key_store
        self._tasks: set[asyncio.Task[Any]] = set()

    # -- background tasks --------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending_count(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for all background work scheduled so far (and any it schedules)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -- recording ---------------------------------------------------------

    async def record(self, event: UsageEvent) -> RecordOutcome:
        """Persist *event* and charge its credits to the matching period.

        Returns
        -------
        RecordOutcome
            ``duplicate`` is ``True`` when an event with the same
            ``request_id`` was already recorded; nothing is charged and
            ``ledger`` is ``None``.  Otherwise ``ledger`` holds the updated
            entry, or ``None`` if the increment failed.
        """
        values = {
            "id": event.event_id,
            "principal_id": event.principal_id,
            "credential_id": event.credential_id,
            "request_id": event.request_id,
            "endpoint": event.endpoint,
            "method": event.method,
            "status_code": event.status_code,
            "latency_ms": event.latency_ms,
            "credits_charged": event.credits_charged,
            "error_text": event.error_text,
            "timestamp": event.timestamp,
        }
        async with use_session(self._session_factory) as s:
            repo = UsageEventRepository(s)
            inserted = await repo.append(values)
            existing_id = event.event_id
            if not inserted and event.request_id is not None:
                existing = await repo.get_by_request_id(event.principal_id, event.request_id)
                if existing is not None:
                    existing_id = existing.id

        if not inserted:
            logger.info(
                "Duplicate usage event for principal %s (request_id=%s); not charged",
                event.principal_id,
                event.request_id,
                extra={"principal_id": event.principal_id, "event_id": existing_id},
            )
            return RecordOutcome(event_id=existing_id, duplicate=True)

        period = current_period_start(event.timestamp)
        snapshot: LedgerSnapshot | None
        try:
            snapshot = await self._ledger.increment(event.principal_id, period, event.credits_charged)
        except Exception:
            logger.error(
                "Ledger increment failed for event %s (principal %s, period %s); reconciliation required",
                event.event_id,
                event.principal_id,
                period.isoformat(),
                exc_info=True,
                extra={
                    "principal_id": event.principal_id,
                    "event_id": event.event_id,
                    "period_start": period.isoformat(),
                },
            )
            snapshot = None

        if event.credential_id is not None:
            self._spawn(self._key_store.touch_last_used(event.credential_id, event.timestamp))

        return RecordOutcome(event_id=event.event_id, ledger=snapshot)

    async def _record_logged(self, event: UsageEvent) -> None:
        try:
            await self.record(event)
        except Exception:
            logger.error(
                "Failed to record usage event %s for principal %s",
                event.event_id,
                event.principal_id,
                exc_info=True,
                extra={"principal_id": event.principal_id, "event_id": event.event_id},
            )

    def dispatch(self, event: UsageEvent) -> None:
        """Schedule :meth:`record` without waiting for it.

        Must be called from a running event loop.  Failures are logged;
        use :meth:`drain` to wait for completion.
        """
        self._spawn(self._record_logged(event))

    # -- dashboard reads ---------------------------------------------------

    async def list_events(
        self,
        principal_id: str,
        window: UsageWindow = UsageWindow.LAST_24H,
        *,
        now: datetime | None = None,
        limit: int = 500,
    ) -> list[UsageEvent]:
        """Events inside *window*, newest first."""
        start, end = window.bounds(now)
        async with use_session(self._session_factory) as s:
            rows = await UsageEventRepository(s).list_between(principal_id, start, end, limit=limit)
            return [_event_from_row(row) for row in rows]

    async def summarize(
        self,
        principal_id: str,
        window: UsageWindow = UsageWindow.LAST_24H,
        *,
        now: datetime | None = None,
        top: int = 5,
    ) -> UsageSummary:
        start, end = window.bounds(now)
        async with use_session(self._session_factory) as s:
            repo = UsageEventRepository(s)
            stats = await repo.aggregate(principal_id, start, end)
            endpoints = await repo.top_endpoints(principal_id, start, end, limit=top)

        total = stats["total_calls"]
        success_rate = round(stats["success_count"] * 100.0 / total, 1) if total else 100.0
        error_rate = round(stats["error_count"] * 100.0 / total, 1) if total else 0.0
        return UsageSummary(
            principal_id=principal_id,
            window=window,
            start=start,
            end=end,
            total_calls=total,
            total_credits=stats["total_credits"],
            avg_latency_ms=round(stats["avg_latency_ms"], 1),
            success_rate=success_rate,
            error_rate=error_rate,
            top_endpoints=[EndpointCount(endpoint=name, calls=calls) for name, calls in endpoints],
        )

    # -- reconciliation ----------------------------------------------------

    async def reconcile(self, principal_id: str, period_start: date | None = None) -> LedgerSnapshot:
        """Reset the period's ledger counter to the sum of its recorded events.

        Intended for periods flagged by a failed increment, or for closed
        periods.  Increments committed concurrently with a reconciliation of
        the open period may be overwritten.
        """
        period = period_start or current_period_start()
        start, end = period_bounds(period)
        async with use_session(self._session_factory) as s:
            # Open (or lock) the ledger row before summing so that on SQLite the
            # sum and the overwrite run under the same write lock.
            await self._ledger.get_or_create(principal_id, period, session=s)
            total = await UsageEventRepository(s).sum_credits(principal_id, start, end)
            snapshot = await self._ledger.rebuild(principal_id, period, total, session=s)

        logger.info(
            "Reconciled principal %s for %s: consumed=%d",
            principal_id,
            period.isoformat(),
            snapshot.consumed,
            extra={"principal_id": principal_id, "period_start": period.isoformat()},
        )
        return snapshot
