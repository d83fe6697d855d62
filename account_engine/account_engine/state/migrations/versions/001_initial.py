"""Initial account engine schema.

Creates ``principals``, ``credentials``, ``ledger_entries`` and
``usage_events`` together with the uniqueness rules the services rely on:

* one principal per external identity,
* at most one active credential per principal (partial unique index),
* one ledger row per ``(principal_id, period_start)``,
* one usage event per ``(principal_id, request_id)``.

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "principals",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("external_identity_id", sa.String(256), nullable=False),
        sa.Column("contact_address", sa.String(320), nullable=False),
        sa.Column("display_name", sa.String(256), nullable=False),
        sa.Column("plan", sa.String(32), nullable=False, server_default="free"),
        sa.Column("wallet_address", sa.String(128), nullable=True),
        sa.Column("avatar_url", sa.String(1024), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("external_identity_id", name="uq_principals_external_identity"),
        sa.CheckConstraint("plan IN ('free', 'paid', 'enterprise', 'x402')", name="ck_principals_plan"),
    )
    op.create_index("ix_principals_contact_address", "principals", ["contact_address"])

    op.create_table(
        "credentials",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column(
            "principal_id",
            sa.String(64),
            sa.ForeignKey("principals.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("key_hash", sa.String(64), nullable=False),
        sa.Column("key_prefix", sa.String(32), nullable=False),
        sa.Column("key_suffix", sa.String(8), nullable=False),
        sa.Column("encrypted_key", sa.Text(), nullable=True),
        sa.Column("label", sa.String(256), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("deactivated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_credentials_principal", "credentials", ["principal_id"])
    op.create_index("ix_credentials_key_hash", "credentials", ["key_hash"], unique=True)
    op.create_index(
        "uq_credentials_one_active",
        "credentials",
        ["principal_id"],
        unique=True,
        postgresql_where=sa.text("active"),
        sqlite_where=sa.text("active = 1"),
    )

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "principal_id",
            sa.String(64),
            sa.ForeignKey("principals.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("plan", sa.String(32), nullable=False),
        sa.Column("quota", sa.Integer(), nullable=False),
        sa.Column("consumed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("principal_id", "period_start", name="uq_ledger_entries_principal_period"),
        sa.CheckConstraint("consumed >= 0", name="ck_ledger_entries_consumed_non_negative"),
        sa.CheckConstraint("quota >= 0", name="ck_ledger_entries_quota_non_negative"),
    )
    op.create_index("ix_ledger_entries_principal", "ledger_entries", ["principal_id"])

    op.create_table(
        "usage_events",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column(
            "principal_id",
            sa.String(64),
            sa.ForeignKey("principals.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("credential_id", sa.String(64), nullable=True),
        sa.Column("request_id", sa.String(128), nullable=True),
        sa.Column("endpoint", sa.String(512), nullable=False),
        sa.Column("method", sa.String(8), nullable=False),
        sa.Column("status_code", sa.Integer(), nullable=False),
        sa.Column("latency_ms", sa.Integer(), nullable=False),
        sa.Column("credits_charged", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("error_text", sa.Text(), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("principal_id", "request_id", name="uq_usage_events_principal_request"),
        sa.CheckConstraint("credits_charged >= 0", name="ck_usage_events_credits_non_negative"),
    )
    op.create_index(
        "ix_usage_events_principal_timestamp",
        "usage_events",
        ["principal_id", "timestamp"],
    )


def downgrade() -> None:
    op.drop_index("ix_usage_events_principal_timestamp", table_name="usage_events")
    op.drop_table("usage_events")
    op.drop_index("ix_ledger_entries_principal", table_name="ledger_entries")
    op.drop_table("ledger_entries")
    op.drop_index("uq_credentials_one_active", table_name="credentials")
    op.drop_index("ix_credentials_key_hash", table_name="credentials")
    op.drop_index("ix_credentials_principal", table_name="credentials")
    op.drop_table("credentials")
    op.drop_index("ix_principals_contact_address", table_name="principals")
    op.drop_table("principals")
