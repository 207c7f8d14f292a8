"""
scorebank.services.ledger_service — Score Ledger
=================================================

The only writer of :class:`ScoreAccount` rows.  Every mutation is one
atomic read-modify-write:

1. Load (or create) the account row.
2. Settle pending decay in the same unit, writing a fresh ``last_anchor``.
3. Apply the event's delta to its component column.
4. Flush; SQLAlchemy issues ``UPDATE ... WHERE version = :old`` and bumps
   ``version``.
5. Journal a :class:`ScoreEvent` per applied change and commit.

A lost version race surfaces as ``StaleDataError`` (or ``IntegrityError``
for two racing account creations) and the whole unit is retried with
jittered exponential backoff.  When the budget runs out the caller gets
:class:`LedgerContention`.

Events carrying a ``source_event_id`` are idempotent: a repeat returns the
originally applied result with ``duplicate=True``.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime
from typing import TYPE_CHECKING, TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from scorebank.constants import as_utc
from scorebank.database.models import (
    AccountStatus,
    EventKind,
    ScoreAccount,
    ScoreEvent,
    TransferRecord,
)
from scorebank.engine.decay import CurrencyPolicy, project
from scorebank.engine.errors import (
    AccountClosed,
    InsufficientBalance,
    InvalidAmount,
    InvalidTransferTarget,
    LedgerContention,
)
from scorebank.engine.events import LedgerEvent
from scorebank.engine.feed import ScoreUpdate

if TYPE_CHECKING:
    from scorebank.services.context import ScoreContext

logger = logging.getLogger(__name__)

T = TypeVar("T")

_BASE_BACKOFF_SECONDS = 0.02
_MAX_BACKOFF_SECONDS = 0.5

TRANSFER_KINDS = frozenset({EventKind.TRANSFER_DEBIT, EventKind.TRANSFER_CREDIT})


@dataclass(frozen=True, slots=True)
class LedgerResult:
    user_id: str
    currency: str
    kind: str
    delta: float
    new_total: float
    version: int
    settled_decay: float = 0.0
    duplicate: bool = False
    last_anchor: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "currency": self.currency,
            "kind": self.kind,
            "delta": self.delta,
            "new_total": self.new_total,
            "version": self.version,
            "settled_decay": self.settled_decay,
            "duplicate": self.duplicate,
        }

    def to_update(self, at: datetime) -> ScoreUpdate:
        return ScoreUpdate(
            user_id=self.user_id,
            currency=self.currency,
            new_total=self.new_total,
            version=self.version,
            reason=self.kind,
            at=at,
            last_anchor=self.last_anchor,
        )


# ---------------------------------------------------------------------------
# Transaction plumbing
# ---------------------------------------------------------------------------
def commit_unit(session: Session) -> None:
    session.commit()


def run_with_retry(ctx: ScoreContext, label: str, fn: Callable[[], T]) -> T:
    """Run *fn* (one whole unit of work) until it commits or the budget ends."""
    attempts = max(1, ctx.cache.get_int("ledger.retry_attempts", 3))
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except (StaleDataError, IntegrityError) as exc:
            if attempt >= attempts:
                logger.warning(
                    "%s gave up after %d attempts: %s", label, attempts, exc,
                )
                raise LedgerContention(
                    f"{label} conflicted with concurrent writes; retry shortly"
                ) from exc
            backoff = min(_BASE_BACKOFF_SECONDS * (2 ** (attempt - 1)), _MAX_BACKOFF_SECONDS)
            wait = backoff + random.uniform(0, backoff)
            logger.warning(
                "%s lost a version race (attempt %d/%d), retrying in %.3fs",
                label, attempt, attempts, wait,
            )
            time.sleep(wait)
    raise AssertionError("unreachable")


def publish_results(ctx: ScoreContext, results: list[LedgerResult]) -> None:
    """Best-effort ``score.updated`` fan-out after commit."""
    now = ctx.now()
    for result in results:
        try:
            ctx.feed.publish(result.to_update(now))
        except Exception:
            logger.exception(
                "Failed to publish score update for %s/%s", result.user_id, result.currency,
            )


# ---------------------------------------------------------------------------
# Row helpers (operate inside a caller's session)
# ---------------------------------------------------------------------------
def get_account(session: Session, user_id: str, currency: str) -> ScoreAccount | None:
    return session.scalar(
        select(ScoreAccount).where(
            ScoreAccount.user_id == user_id, ScoreAccount.currency == currency,
        )
    )


def _new_account(user_id: str, currency: str, now: datetime) -> ScoreAccount:
    return ScoreAccount(
        user_id=user_id,
        currency=currency,
        status=AccountStatus.ACTIVE.value,
        initial=0.0,
        initial_granted=False,
        earned=0.0,
        manual_bonus=0.0,
        decayed=0.0,
        transferred_in=0.0,
        transferred_out=0.0,
        refunded=0.0,
        purchased=0.0,
        last_anchor=now,
    )


def _journal(
    session: Session,
    account: ScoreAccount,
    kind: EventKind | str,
    delta: float,
    *,
    source_kind: str | None = None,
    source_event_id: str | None = None,
    metadata: dict | None = None,
    now: datetime,
) -> None:
    session.add(ScoreEvent(
        user_id=account.user_id,
        currency=account.currency,
        kind=str(kind),
        delta=delta,
        total_after=account.total,
        version_after=account.version,
        source_kind=source_kind,
        source_event_id=source_event_id,
        metadata_=metadata or None,
        created_at=now,
    ))


def _settle(ctx: ScoreContext, account: ScoreAccount, policy: CurrencyPolicy, now: datetime) -> float:
    """Fold pending decay into ``decayed`` and move the anchor.  No flush."""
    presence = ctx.presence.get(account.user_id, now)
    projection = project(account, presence, now, policy)
    if projection.pending_decay > 0:
        account.decayed += projection.pending_decay
    account.last_anchor = projection.settled_through
    return projection.pending_decay


def _result(account: ScoreAccount, kind: str, delta: float, **kw) -> LedgerResult:
    return LedgerResult(
        user_id=account.user_id,
        currency=account.currency,
        kind=kind,
        delta=delta,
        new_total=account.total,
        version=account.version,
        last_anchor=account.last_anchor,
        **kw,
    )


def _find_duplicate(session: Session, source_event_id: str) -> LedgerResult | None:
    prior = session.scalar(
        select(ScoreEvent).where(ScoreEvent.source_event_id == source_event_id)
    )
    if prior is None:
        return None
    account = get_account(session, prior.user_id, prior.currency)
    return LedgerResult(
        user_id=prior.user_id,
        currency=prior.currency,
        kind=prior.kind,
        delta=prior.delta,
        new_total=account.total if account is not None else prior.total_after,
        version=account.version if account is not None else prior.version_after,
        duplicate=True,
        last_anchor=account.last_anchor if account is not None else None,
    )


def load_for_write(
    session: Session,
    ctx: ScoreContext,
    user_id: str,
    currency: str,
    now: datetime,
    *,
    create: bool = True,
    auto_grant: bool = True,
) -> tuple[ScoreAccount | None, bool]:
    """Return ``(account, created)``.  New accounts receive the currency's
    configured initial grant unless *auto_grant* is False.
    """
    account = get_account(session, user_id, currency)
    if account is not None or not create:
        return account, False

    policy = ctx.cache.policy(currency)
    account = _new_account(user_id, currency, now)
    if auto_grant and policy.initial_grant > 0:
        account.initial = policy.initial_grant
        account.initial_granted = True
    session.add(account)
    logger.info("Opened %s account for %s", currency, user_id)
    return account, True


def _debit_floor(event: LedgerEvent, policy: CurrencyPolicy) -> float | None:
    """Lowest total *event* may leave behind, or None when unbounded."""
    if not event.is_debit:
        return None
    if event.kind == EventKind.TRANSFER_DEBIT:
        # score that is not there cannot be handed over, floor or not
        return max(policy.balance_floor or 0.0, 0.0)
    return policy.balance_floor


def apply_in_session(
    session: Session,
    ctx: ScoreContext,
    event: LedgerEvent,
    now: datetime,
    *,
    create: bool = True,
) -> LedgerResult | None:
    """Apply *event* inside the caller's transaction and flush.

    Pending decay is settled first and journaled as its own entry.  Raises
    business errors before anything is written.  Returns None only when
    *create* is False and the account does not exist.
    """
    policy = ctx.cache.policy(event.currency)

    if event.source_event_id is not None:
        duplicate = _find_duplicate(session, event.source_event_id)
        if duplicate is not None:
            return duplicate

    with session.no_autoflush:
        account, created = load_for_write(
            session, ctx, event.user_id, event.currency, now,
            create=create, auto_grant=event.kind != EventKind.INITIAL_GRANT,
        )
        if account is None:
            return None
        if account.is_closed:
            raise AccountClosed(
                f"{event.currency} account for {event.user_id} is closed"
            )
        if event.kind == EventKind.INITIAL_GRANT and account.initial_granted:
            raise InvalidAmount(
                f"Initial {event.currency} grant already applied for {event.user_id}"
            )

        # an explicit decay_settlement adds to what the projection already owes
        settled = _settle(ctx, account, policy, now)

        floor = _debit_floor(event, policy)
        if floor is not None and account.total + event.signed_effect < floor:
            raise InsufficientBalance(
                event.user_id,
                available=max(0.0, account.total - floor),
                requested=-event.signed_effect,
            )

        column = event.component
        setattr(account, column, getattr(account, column) + event.delta)
        if event.kind == EventKind.INITIAL_GRANT:
            account.initial_granted = True

    session.flush()

    if created and account.initial > 0 and event.kind != EventKind.INITIAL_GRANT:
        _journal(
            session, account, EventKind.INITIAL_GRANT, account.initial,
            source_kind="account_open", now=now,
        )
    if settled > 0:
        _journal(session, account, EventKind.DECAY_SETTLEMENT, settled, now=now)
    _journal(
        session, account, event.kind, event.delta,
        source_kind=event.source_kind,
        source_event_id=event.source_event_id,
        metadata=event.metadata,
        now=now,
    )
    return _result(account, event.kind.value, event.delta, settled_decay=settled)


# ---------------------------------------------------------------------------
# Public operations
# ---------------------------------------------------------------------------
def apply_event(
    ctx: ScoreContext,
    user_id: str,
    currency: str,
    delta: float,
    kind: EventKind | str,
    *,
    source_kind: str | None = None,
    source_event_id: str | None = None,
    metadata: dict | None = None,
) -> LedgerResult:
    """Apply one ledger event atomically and publish the new baseline.

    Transfer legs are rejected here: they only move together with a
    :class:`TransferRecord`, through ``transfer_service.settle_transfer``.
    """
    event = LedgerEvent(
        user_id=user_id,
        currency=currency,
        kind=kind,
        delta=delta,
        source_kind=source_kind,
        source_event_id=source_event_id,
        metadata=metadata or {},
    )
    if event.kind in TRANSFER_KINDS:
        raise InvalidTransferTarget(
            f"{event.kind.value} is only applied by transfer settlement"
        )
    ctx.cache.policy(currency)

    def _unit() -> LedgerResult:
        with Session(ctx.engine) as session:
            result = apply_in_session(session, ctx, event, ctx.now())
            commit_unit(session)
            return result

    result = run_with_retry(ctx, f"apply_event[{event.kind.value}]", _unit)
    if not result.duplicate:
        publish_results(ctx, [result])
        logger.info(
            "Ledger %s %s/%s delta=%.4f total=%.4f v%d",
            event.kind.value, user_id, currency, delta, result.new_total, result.version,
        )
    return result


def grant_initial(
    ctx: ScoreContext, user_id: str, currency: str, amount: float | None = None,
) -> LedgerResult:
    """One-time grant.  Rejected if the account has already been granted."""
    if amount is None:
        amount = ctx.cache.policy(currency).initial_grant
    return apply_event(
        ctx, user_id, currency, amount, EventKind.INITIAL_GRANT, source_kind="grant",
    )


def record_earned(
    ctx: ScoreContext,
    user_id: str,
    currency: str,
    amount: float | None = None,
    source_kind: str = "action",
    *,
    source_event_id: str | None = None,
) -> LedgerResult:
    """Credit a qualifying action.  Without *amount* the ``score_points``
    table decides what *source_kind* is worth.
    """
    if amount is None:
        amount = ctx.cache.get_float(f"score_points.{source_kind}", 0.0)
        if amount <= 0:
            raise InvalidAmount(f"No score points configured for {source_kind!r}")
    return apply_event(
        ctx, user_id, currency, amount, EventKind.EARNED,
        source_kind=source_kind, source_event_id=source_event_id,
    )


def apply_manual_bonus(
    ctx: ScoreContext,
    user_id: str,
    currency: str,
    amount: float,
    *,
    admin_id: str,
    reason: str | None = None,
) -> LedgerResult:
    return apply_event(
        ctx, user_id, currency, amount, EventKind.MANUAL_BONUS,
        source_kind="admin",
        metadata={"admin_id": admin_id, "reason": reason},
    )


def purchase_score(
    ctx: ScoreContext,
    user_id: str,
    currency: str,
    paid_amount: float,
    tx_hash: str,
) -> LedgerResult:
    """Credit score bought with a verified token payment, once per *tx_hash*."""
    if not tx_hash:
        raise InvalidAmount("A purchase needs a transaction hash")
    if not isinstance(paid_amount, int | float) or not paid_amount > 0:
        raise InvalidAmount("Paid amount must be positive")
    points = paid_amount * ctx.cache.get_float("purchase.points_per_unit", 1.0)
    return apply_event(
        ctx, user_id, currency, points, EventKind.PURCHASE,
        source_kind="purchase",
        source_event_id=f"purchase:{tx_hash}",
        metadata={"paid_amount": paid_amount, "tx_hash": tx_hash},
    )


def claim_daily_bonus(
    ctx: ScoreContext, user_id: str, currency: str, today: date | None = None,
) -> LedgerResult:
    """Once-per-UTC-day bonus.  A second claim returns ``duplicate=True``."""
    today = today or ctx.now().date()
    amount = ctx.cache.get_float("daily_bonus.amount", 5.0)
    return apply_event(
        ctx, user_id, currency, amount, EventKind.EARNED,
        source_kind="daily_bonus",
        source_event_id=f"daily:{user_id}:{currency}:{today.isoformat()}",
    )


def settle_decay(ctx: ScoreContext, user_id: str, currency: str) -> LedgerResult | None:
    """Fold projected decay into storage and reset the anchor.

    Returns ``None`` when there is no account, it is closed, or nothing
    changed.
    """
    policy = ctx.cache.policy(currency)

    def _unit() -> LedgerResult | None:
        with Session(ctx.engine) as session:
            now = ctx.now()
            account = get_account(session, user_id, currency)
            if account is None or account.is_closed:
                return None
            with session.no_autoflush:
                old_anchor = as_utc(account.last_anchor)
                settled = _settle(ctx, account, policy, now)
            if settled <= 0 and as_utc(account.last_anchor) == old_anchor:
                session.rollback()
                return None
            session.flush()
            if settled > 0:
                _journal(session, account, EventKind.DECAY_SETTLEMENT, settled, now=now)
            result = _result(
                account, EventKind.DECAY_SETTLEMENT.value, settled, settled_decay=settled,
            )
            commit_unit(session)
            return result

    result = run_with_retry(ctx, "settle_decay", _unit)
    if result is not None:
        publish_results(ctx, [result])
        if result.settled_decay > 0:
            logger.info(
                "Settled %.4f %s decay for %s (total %.4f)",
                result.settled_decay, currency, user_id, result.new_total,
            )
    return result


def close_account(
    ctx: ScoreContext,
    user_id: str,
    currency: str,
    *,
    admin_id: str | None = None,
    reason: str | None = None,
) -> LedgerResult:
    """Zero every component and mark the account closed.  The row is kept."""
    ctx.cache.policy(currency)

    def _unit() -> LedgerResult:
        with Session(ctx.engine) as session:
            now = ctx.now()
            with session.no_autoflush:
                account, _ = load_for_write(
                    session, ctx, user_id, currency, now, auto_grant=False,
                )
                if account.is_closed:
                    raise AccountClosed(f"{currency} account for {user_id} is already closed")
                old_total = account.total
                for column in (
                    "initial", "earned", "manual_bonus", "decayed",
                    "transferred_in", "transferred_out", "refunded", "purchased",
                ):
                    setattr(account, column, 0.0)
                account.status = AccountStatus.CLOSED.value
                account.last_anchor = now
            session.flush()
            _journal(
                session, account, EventKind.CORRECTION, -old_total,
                source_kind="close",
                metadata={"admin_id": admin_id, "reason": reason, "closed": True},
                now=now,
            )
            result = _result(account, "close", -old_total)
            commit_unit(session)
            return result

    result = run_with_retry(ctx, "close_account", _unit)
    publish_results(ctx, [result])
    logger.info("Closed %s account for %s (was %.4f)", currency, user_id, -result.delta)
    return result


def _transfer_totals(session: Session, user_id: str, currency: str) -> dict[str, float]:
    """What ``score_transfers`` says the account's transfer aggregates are."""
    def _sum(column) -> float:
        return float(session.scalar(
            select(func.coalesce(func.sum(TransferRecord.score_transferred), 0.0))
            .where(column == user_id, TransferRecord.currency == currency)
        ))

    return {
        "transferred_out": _sum(TransferRecord.payer_id),
        "transferred_in": _sum(TransferRecord.recipient_id),
    }


def correct_transfer_aggregates(
    ctx: ScoreContext,
    user_id: str,
    currency: str,
    *,
    tolerance: float = 1e-6,
) -> tuple[LedgerResult, dict] | None:
    """Rewrite drifted transfer aggregates from the settlement records.

    The truth is re-read inside the unit, so a transfer committed since the
    caller's scan is accounted for.  Returns ``(result, fixes)`` where
    *fixes* maps each rewritten column to ``{"stored", "actual"}``, or None
    when the account is missing, closed or already consistent.
    """
    policy = ctx.cache.policy(currency)

    def _unit() -> tuple[LedgerResult, dict] | None:
        with Session(ctx.engine) as session:
            now = ctx.now()
            with session.no_autoflush:
                account = get_account(session, user_id, currency)
                if account is None or account.is_closed:
                    return None
                fixes = {
                    column: {"stored": getattr(account, column), "actual": actual}
                    for column, actual in _transfer_totals(session, user_id, currency).items()
                    if abs(getattr(account, column) - actual) > tolerance
                }
                if not fixes:
                    return None
                settled = _settle(ctx, account, policy, now)
                before = account.total
                for column, fix in fixes.items():
                    setattr(account, column, fix["actual"])
            session.flush()
            if settled > 0:
                _journal(session, account, EventKind.DECAY_SETTLEMENT, settled, now=now)
            delta = account.total - before
            _journal(
                session, account, EventKind.CORRECTION, delta,
                source_kind="reconciliation", metadata=fixes, now=now,
            )
            result = _result(
                account, EventKind.CORRECTION.value, delta, settled_decay=settled,
            )
            commit_unit(session)
            return result, fixes

    outcome = run_with_retry(ctx, "correct_transfer_aggregates", _unit)
    if outcome is not None:
        publish_results(ctx, [outcome[0]])
    return outcome
