"""Create score ledger, transfer, presence and settings tables

Revision ID: 5c2e9a7d41f3
Revises:
Create Date: 2026-10-18 09:12:40.118204

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '5c2e9a7d41f3'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create the score ledger schema."""

    # --- score_accounts ---
    op.create_table(
        "score_accounts",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("currency", sa.String(32), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("initial", sa.Float, nullable=False, server_default="0"),
        sa.Column("initial_granted", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("earned", sa.Float, nullable=False, server_default="0"),
        sa.Column("manual_bonus", sa.Float, nullable=False, server_default="0"),
        sa.Column("decayed", sa.Float, nullable=False, server_default="0"),
        sa.Column("transferred_in", sa.Float, nullable=False, server_default="0"),
        sa.Column("transferred_out", sa.Float, nullable=False, server_default="0"),
        sa.Column("refunded", sa.Float, nullable=False, server_default="0"),
        sa.Column("purchased", sa.Float, nullable=False, server_default="0"),
        sa.Column("last_anchor", sa.DateTime(timezone=True), nullable=False),
        sa.Column("version", sa.Integer, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "currency", name="uq_score_accounts_user_currency"),
    )
    op.create_index("ix_score_accounts_currency", "score_accounts", ["currency", "status"])

    # --- score_events ---
    op.create_table(
        "score_events",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("currency", sa.String(32), nullable=False),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("delta", sa.Float, nullable=False),
        sa.Column("total_after", sa.Float, nullable=False),
        sa.Column("version_after", sa.Integer, nullable=False),
        sa.Column("source_kind", sa.String(50), nullable=True),
        sa.Column("source_event_id", sa.String(128), nullable=True),
        sa.Column("metadata", postgresql.JSONB, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    # Idempotency: a source event lands at most once
    op.create_index(
        "ix_score_events_idempotent", "score_events",
        ["source_event_id"],
        unique=True,
        postgresql_where=sa.text("source_event_id IS NOT NULL"),
    )
    op.create_index(
        "ix_score_events_user_time", "score_events",
        ["user_id", "currency", "created_at"],
    )
    op.create_index("ix_score_events_kind", "score_events", ["kind"])

    # --- score_transfers ---
    op.create_table(
        "score_transfers",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("payer_id", sa.String(64), nullable=False),
        sa.Column("recipient_id", sa.String(64), nullable=False),
        sa.Column("currency", sa.String(32), nullable=False),
        sa.Column("amount_paid", sa.Float, nullable=False, server_default="0"),
        sa.Column("score_transferred", sa.Float, nullable=False),
        sa.Column("payment_ref", sa.String(128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_score_transfers_payment_ref", "score_transfers",
        ["payment_ref"],
        unique=True,
        postgresql_where=sa.text("payment_ref IS NOT NULL"),
    )
    op.create_index(
        "ix_score_transfers_payer", "score_transfers",
        ["payer_id", "currency", "id"],
    )
    op.create_index(
        "ix_score_transfers_recipient", "score_transfers",
        ["recipient_id", "currency", "id"],
    )

    # --- presence_events ---
    op.create_table(
        "presence_events",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("state", sa.String(16), nullable=False),
        sa.Column("reason", sa.String(32), nullable=True),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_presence_events_user_at", "presence_events", ["user_id", "at"])

    # --- settings ---
    op.create_table(
        "settings",
        sa.Column("key", sa.String(100), primary_key=True),
        sa.Column("value_json", sa.Text, nullable=False),
        sa.Column("category", sa.String(50), nullable=False, server_default="general"),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_settings_category", "settings", ["category"])


def downgrade() -> None:
    """Drop the score ledger schema."""
    op.drop_index("ix_settings_category", table_name="settings")
    op.drop_table("settings")
    op.drop_index("ix_presence_events_user_at", table_name="presence_events")
    op.drop_table("presence_events")
    op.drop_index("ix_score_transfers_recipient", table_name="score_transfers")
    op.drop_index("ix_score_transfers_payer", table_name="score_transfers")
    op.drop_index("ix_score_transfers_payment_ref", table_name="score_transfers")
    op.drop_table("score_transfers")
    op.drop_index("ix_score_events_kind", table_name="score_events")
    op.drop_index("ix_score_events_user_time", table_name="score_events")
    op.drop_index("ix_score_events_idempotent", table_name="score_events")
    op.drop_table("score_events")
    op.drop_index("ix_score_accounts_currency", table_name="score_accounts")
    op.drop_table("score_accounts")
