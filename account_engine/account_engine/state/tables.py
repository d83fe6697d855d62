"""SQLAlchemy 2.0 ORM table definitions for the account engine state store.

All tables use the modern ``Mapped`` / ``mapped_column`` declaration style
introduced in SQLAlchemy 2.0.  The ``Base`` declarative base is exported for
use by Alembic migrations and the repository layer.
"""

from __future__ import annotations

from datetime import UTC, date, datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware ``DateTime`` that always round-trips as UTC.

    PostgreSQL stores ``timestamptz`` natively.  SQLite has no timezone
    support, so values are normalised to UTC before binding and naive
    results are re-tagged as UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):  # type: ignore[override]
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value, dialect):  # type: ignore[override]
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all account engine tables."""


# ---------------------------------------------------------------------------
# Principals
# ---------------------------------------------------------------------------


class PrincipalTable(Base):
    """User accounts created on first successful external authentication.

    Every principal has a contact address: either a real email or a
    placeholder under the reserved wallet domain for wallet-only accounts.
    Principals are never hard-deleted.
    ``plan`` may hold the legacy "x402" value for imported accounts; it is
    read as the paid tier.
    """

    __tablename__ = "principals"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    external_identity_id: Mapped[str] = mapped_column(String(256), nullable=False)
    contact_address: Mapped[str] = mapped_column(String(320), nullable=False)
    display_name: Mapped[str] = mapped_column(String(256), nullable=False)
    plan: Mapped[str] = mapped_column(String(32), nullable=False, default="free")
    wallet_address: Mapped[str | None] = mapped_column(String(128), nullable=True)
    avatar_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("external_identity_id", name="uq_principals_external_identity"),
        CheckConstraint("plan IN ('free', 'paid', 'enterprise', 'x402')", name="ck_principals_plan"),
        Index("ix_principals_contact_address", "contact_address"),
    )


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class CredentialTable(Base):
    """API keys issued to principals.

    Keys are shown to the user exactly once at creation time.  Only the
    SHA-256 hash of the key is required; the public prefix and the last four
    characters are kept for display.  ``encrypted_key`` holds an optional
    AES-GCM envelope when the operator configured a master key.

    At most one row per principal may be active; the partial unique index
    enforces this even when two writers race.  Deactivated rows are
    retained for audit.
    """

    __tablename__ = "credentials"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    principal_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("principals.id", ondelete="RESTRICT"), nullable=False
    )
    key_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    key_prefix: Mapped[str] = mapped_column(String(32), nullable=False)
    key_suffix: Mapped[str] = mapped_column(String(8), nullable=False)
    encrypted_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    label: Mapped[str] = mapped_column(String(256), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    deactivated_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index("ix_credentials_principal", "principal_id"),
        Index("ix_credentials_key_hash", "key_hash", unique=True),
        Index(
            "uq_credentials_one_active",
            "principal_id",
            unique=True,
            postgresql_where=text("active"),
            sqlite_where=text("active = 1"),
        ),
    )


# ---------------------------------------------------------------------------
# Credit ledger
# ---------------------------------------------------------------------------


class LedgerEntryTable(Base):
    """Per-principal, per-billing-period credit counter.

    ``period_start`` is the first calendar day of the month (UTC).  The
    ``consumed`` column only ever grows through an atomic
    ``consumed = consumed + :amount`` update and may exceed ``quota``.
    """

    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    principal_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("principals.id", ondelete="RESTRICT"), nullable=False
    )
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    plan: Mapped[str] = mapped_column(String(32), nullable=False)
    quota: Mapped[int] = mapped_column(Integer, nullable=False)
    consumed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("principal_id", "period_start", name="uq_ledger_entries_principal_period"),
        CheckConstraint("consumed >= 0", name="ck_ledger_entries_consumed_non_negative"),
        CheckConstraint("quota >= 0", name="ck_ledger_entries_quota_non_negative"),
        Index("ix_ledger_entries_principal", "principal_id"),
    )


# ---------------------------------------------------------------------------
# Usage events
# ---------------------------------------------------------------------------


class UsageEventTable(Base):
    """Append-only record of a single API call.

    ``request_id`` is an optional caller-supplied idempotency key; a retried
    submission with the same key is stored (and charged) only once.
    """

    __tablename__ = "usage_events"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    principal_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("principals.id", ondelete="RESTRICT"), nullable=False
    )
    credential_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    endpoint: Mapped[str] = mapped_column(String(512), nullable=False)
    method: Mapped[str] = mapped_column(String(8), nullable=False)
    status_code: Mapped[int] = mapped_column(Integer, nullable=False)
    latency_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    credits_charged: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    error_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("principal_id", "request_id", name="uq_usage_events_principal_request"),
        CheckConstraint("credits_charged >= 0", name="ck_usage_events_credits_non_negative"),
        Index("ix_usage_events_principal_timestamp", "principal_id", "timestamp"),
    )
