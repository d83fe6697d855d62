"""Usage event and dashboard summary models.

A :class:`UsageEvent` describes one completed API call.  Events are
append-only; the credit ledger is derived from them and can always be
rebuilt by summing ``credits_charged`` over a billing period.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from account_engine.ledger.credit_ledger import LedgerSnapshot

_ALLOWED_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE"})


class UsageWindow(str, Enum):
    """Look-back windows offered by the usage dashboard."""

    LAST_24H = "24h"
    LAST_7D = "7d"
    LAST_30D = "30d"

    @property
    def duration(self) -> timedelta:
        return {
            UsageWindow.LAST_24H: timedelta(hours=24),
            UsageWindow.LAST_7D: timedelta(days=7),
            UsageWindow.LAST_30D: timedelta(days=30),
        }[self]

    def bounds(self, now: datetime | None = None) -> tuple[datetime, datetime]:
        """Half-open ``[now - duration, now)`` interval in UTC."""
        end = now or datetime.now(UTC)
        if end.tzinfo is None:
            end = end.replace(tzinfo=UTC)
        end = end.astimezone(UTC)
        return end - self.duration, end


class UsageEvent(BaseModel):
    """A single API call to be recorded and charged.

    Attributes
    ----------
    event_id:
        Unique identifier for this event.
    principal_id:
        The principal the call is billed to.
    credential_id:
        The credential that authenticated the call, if any.  Used to stamp
        ``last_used_at``.
    request_id:
        Optional caller-supplied idempotency key.  A retried submission with
        the same key is acknowledged without being stored or charged twice.
    endpoint:
        Request path.
    method:
        HTTP method (GET, POST, PUT, PATCH, DELETE).
    status_code:
        HTTP status returned to the caller.
    latency_ms:
        Server-side response time in milliseconds.
    credits_charged:
        Credits debited for this call.
    error_text:
        Error message returned to the caller, if the call failed.
    timestamp:
        When the call completed (UTC).  Determines the billing period.
    """

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=lambda: f"evt-{uuid.uuid4().hex}")
    principal_id: str = Field(min_length=1)
    credential_id: str | None = None
    request_id: str | None = Field(default=None, max_length=128)
    endpoint: str = Field(min_length=1, max_length=512)
    method: str = "POST"
    status_code: int = Field(ge=100, le=599)
    latency_ms: int = Field(default=0, ge=0)
    credits_charged: int = Field(default=1, ge=0)
    error_text: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("method")
    @classmethod
    def method_is_known(cls, v: str) -> str:
        method = v.strip().upper()
        if method not in _ALLOWED_METHODS:
            raise ValueError(f"Unsupported HTTP method: {v!r}")
        return method

    @field_validator("timestamp")
    @classmethod
    def timestamp_is_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v.astimezone(UTC)

    @property
    def succeeded(self) -> bool:
        return 200 <= self.status_code < 300


class RecordOutcome(BaseModel):
    """Result of :meth:`UsageRecorder.record`.

    ``ledger`` is ``None`` when the event was stored but the ledger
    increment failed; the period must then be reconciled from the event log.
    """

    event_id: str
    duplicate: bool = False
    ledger: LedgerSnapshot | None = None


class EndpointCount(BaseModel):
    endpoint: str
    calls: int


class UsageSummary(BaseModel):
    """Aggregates shown on the usage dashboard for one window.

    Rates are percentages.  An empty window reports a 100% success rate
    and a 0% error rate.
    """

    principal_id: str
    window: UsageWindow
    start: datetime
    end: datetime
    total_calls: int = 0
    total_credits: int = 0
    avg_latency_ms: float = 0.0
    success_rate: float = 100.0
    error_rate: float = 0.0
    top_endpoints: list[EndpointCount] = Field(default_factory=list)

    @property
    def most_used_endpoint(self) -> str | None:
        return self.top_endpoints[0].endpoint if self.top_endpoints else None
