"""
scorebank.database.models — SQLAlchemy 2.0 Data Models
=======================================================

Tables:
- score_accounts   — One balance row per (user, currency), version-guarded
- score_events     — Append-only ledger journal with idempotent insert
- score_transfers  — Append-only settlement records ("steals")
- presence_events  — Online/offline transition history (presence rebuild)
- settings         — Admin-configurable economy tuning (JSON values)
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Scorebank ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class EventKind(enum.StrEnum):
    """Closed set of ledger event kinds.  Anything else is rejected."""
    INITIAL_GRANT = "initial_grant"
    EARNED = "earned"
    MANUAL_BONUS = "manual_bonus"
    DECAY_SETTLEMENT = "decay_settlement"
    TRANSFER_DEBIT = "transfer_debit"
    TRANSFER_CREDIT = "transfer_credit"
    REFUND = "refund"
    PURCHASE = "purchase"
    CORRECTION = "correction"


class AccountStatus(enum.StrEnum):
    ACTIVE = "active"
    CLOSED = "closed"
    MISSING = "missing"  # read-side only; never persisted


class PresenceState(enum.StrEnum):
    ONLINE = "online"
    OFFLINE = "offline"


# ---------------------------------------------------------------------------
# ScoreAccount — one row per (user, currency)
# ---------------------------------------------------------------------------
class ScoreAccount(Base):
    """Authoritative balance components for one user in one currency.

    ``total`` is derived, never written.  ``version`` is the optimistic
    concurrency counter: every UPDATE is issued as
    ``... WHERE id = :id AND version = :old`` and a mismatch raises
    :class:`sqlalchemy.orm.exc.StaleDataError`.
    """
    __tablename__ = "score_accounts"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    currency: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=AccountStatus.ACTIVE.value
    )

    # Components
    initial: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    initial_granted: Mapped[bool] = mapped_column(default=False)
    earned: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    manual_bonus: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    decayed: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    transferred_in: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    transferred_out: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    refunded: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    purchased: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    # Decay clock reset point
    last_anchor: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("user_id", "currency", name="uq_score_accounts_user_currency"),
        Index("ix_score_accounts_currency", "currency", "status"),
    )

    @property
    def total(self) -> float:
        return (
            self.initial
            + self.earned
            + self.manual_bonus
            + self.transferred_in
            + self.refunded
            + self.purchased
            - self.decayed
            - self.transferred_out
        )

    @property
    def is_closed(self) -> bool:
        return self.status == AccountStatus.CLOSED.value

    def __repr__(self) -> str:
        return (
            f"<ScoreAccount user={self.user_id!r} currency={self.currency!r} "
            f"total={self.total} v={self.version}>"
        )


# ---------------------------------------------------------------------------
# ScoreEvent — append-only ledger journal
# ---------------------------------------------------------------------------
class ScoreEvent(Base):
    __tablename__ = "score_events"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    currency: Mapped[str] = mapped_column(String(32), nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    delta: Mapped[float] = mapped_column(Float, nullable=False)
    total_after: Mapped[float] = mapped_column(Float, nullable=False)
    version_after: Mapped[int] = mapped_column(Integer, nullable=False)
    source_kind: Mapped[str | None] = mapped_column(String(50), nullable=True)
    source_event_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        # Partial unique index for idempotent insert
        Index(
            "ix_score_events_idempotent",
            "source_event_id",
            unique=True,
            postgresql_where=source_event_id.isnot(None),
            sqlite_where=source_event_id.isnot(None),
        ),
        Index("ix_score_events_user_time", "user_id", "currency", "created_at"),
        Index("ix_score_events_kind", "kind"),
    )

    def __repr__(self) -> str:
        return (
            f"<ScoreEvent id={self.id} user={self.user_id!r} "
            f"kind={self.kind} delta={self.delta}>"
        )


# ---------------------------------------------------------------------------
# TransferRecord — append-only settlement record
# ---------------------------------------------------------------------------
class TransferRecord(Base):
    """One settled score transfer.  Never updated, never deleted."""
    __tablename__ = "score_transfers"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    payer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    recipient_id: Mapped[str] = mapped_column(String(64), nullable=False)
    currency: Mapped[str] = mapped_column(String(32), nullable=False)
    amount_paid: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    score_transferred: Mapped[float] = mapped_column(Float, nullable=False)
    payment_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index(
            "ix_score_transfers_payment_ref",
            "payment_ref",
            unique=True,
            postgresql_where=payment_ref.isnot(None),
            sqlite_where=payment_ref.isnot(None),
        ),
        Index("ix_score_transfers_payer", "payer_id", "currency", "id"),
        Index("ix_score_transfers_recipient", "recipient_id", "currency", "id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "payer_id": self.payer_id,
            "recipient_id": self.recipient_id,
            "currency": self.currency,
            "amount_paid": self.amount_paid,
            "score_transferred": self.score_transferred,
            "payment_ref": self.payment_ref,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"<TransferRecord id={self.id} {self.payer_id!r}→{self.recipient_id!r} "
            f"score={self.score_transferred}>"
        )


# ---------------------------------------------------------------------------
# PresenceEvent — transition history used to rebuild the tracker
# ---------------------------------------------------------------------------
class PresenceEvent(Base):
    __tablename__ = "presence_events"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    state: Mapped[str] = mapped_column(String(16), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(32), nullable=True)
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_presence_events_user_at", "user_id", "at"),
    )

    def __repr__(self) -> str:
        return f"<PresenceEvent user={self.user_id!r} state={self.state} at={self.at}>"


# ---------------------------------------------------------------------------
# Setting — admin-configurable key-value store
# ---------------------------------------------------------------------------
class Setting(Base):
    """Key-value configuration store.

    Every economy tuning knob (decay rates, grace periods, initial grants,
    score points, balance floors) lives here so operators can adjust values
    without redeploying.  Values are stored as JSON strings; typed accessors
    live in :class:`~scorebank.engine.cache.ConfigCache`.
    """
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value_json: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="general")
    description: Mapped[str | None] = mapped_column(Text, default=None)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_settings_category", "category"),
    )

    def __repr__(self) -> str:
        return f"<Setting key={self.key!r} category={self.category!r}>"
