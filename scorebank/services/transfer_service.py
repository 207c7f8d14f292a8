"""
scorebank.services.transfer_service — Transfer Settlement
==========================================================

The only place two score accounts change together.

A transfer ("steal") is paid for off-band; once the payment collaborator
has verified it, :func:`settle_transfer` moves score from payer to
recipient in **one** transaction:

1. Reject self-transfers, unknown payers and missing/closed recipients.
2. Check the payer's *effective* (decay-projected) balance, so score that
   has already decayed but is not yet settled cannot be spent.
3. Settle the payer's decay and debit; settle the recipient's decay and
   credit; insert the :class:`TransferRecord`.
4. After commit, publish ``score.updated`` for both parties.

A payer's transfers are serialized by an in-process lock; the optimistic
``version`` check on both rows covers writers in other processes.
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from scorebank.constants import REPUTATION
from scorebank.database.models import EventKind, TransferRecord
from scorebank.engine.decay import project
from scorebank.engine.errors import (
    AccountClosed,
    InsufficientBalance,
    InvalidAmount,
    InvalidTransferTarget,
)
from scorebank.engine.events import LedgerEvent
from scorebank.services import ledger_service
from scorebank.services.cursors import decode_cursor, encode_cursor

if TYPE_CHECKING:
    from scorebank.services.context import ScoreContext
    from scorebank.services.ledger_service import LedgerResult

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


def _check_amount(amount: float, what: str) -> None:
    if not isinstance(amount, int | float) or not math.isfinite(amount) or amount <= 0:
        raise InvalidAmount(f"{what} must be a positive finite number (got {amount!r})")


def settle_transfer(
    ctx: ScoreContext,
    payer_id: str,
    recipient_id: str,
    score_amount: float,
    paid_amount: float = 0.0,
    *,
    currency: str = REPUTATION,
    payment_ref: str | None = None,
) -> TransferRecord:
    """Settle a paid score transfer atomically.

    Raises
    ------
    InvalidTransferTarget
        Self-transfer, the payer has no account, or the recipient account
        is missing or closed.
    AccountClosed
        The payer's account is closed.
    InsufficientBalance
        The payer's effective balance does not cover *score_amount*.
    LedgerContention
        Concurrent writers kept winning the version race.
    """
    if payer_id == recipient_id:
        raise InvalidTransferTarget("Cannot transfer score to yourself")
    _check_amount(score_amount, "Score amount")
    if not isinstance(paid_amount, int | float) or paid_amount < 0:
        raise InvalidAmount("Paid amount cannot be negative")
    policy = ctx.cache.policy(currency)
    allow_negative = ctx.cache.get_bool("transfers.allow_negative_recipient", True)

    def _unit() -> tuple[TransferRecord, list[LedgerResult], bool]:
        with Session(ctx.engine, expire_on_commit=False) as session:
            now = ctx.now()

            if payment_ref is not None:
                prior = session.scalar(
                    select(TransferRecord).where(TransferRecord.payment_ref == payment_ref)
                )
                if prior is not None:
                    session.expunge(prior)
                    return prior, [], True

            with session.no_autoflush:
                payer = ledger_service.get_account(session, payer_id, currency)
                recipient = ledger_service.get_account(session, recipient_id, currency)

                if recipient is None or recipient.is_closed:
                    raise InvalidTransferTarget(
                        f"Recipient {recipient_id} has no active {currency} account"
                    )
                if payer is None:
                    raise InvalidTransferTarget(
                        f"Payer {payer_id} has no {currency} account"
                    )
                if payer.is_closed:
                    raise AccountClosed(f"{currency} account for {payer_id} is closed")

                payer_view = project(payer, ctx.presence.get(payer_id, now), now, policy)
                if payer_view.effective_total < score_amount:
                    raise InsufficientBalance(
                        payer_id,
                        available=max(0.0, payer_view.effective_total),
                        requested=score_amount,
                    )
                if not allow_negative:
                    recipient_view = project(
                        recipient, ctx.presence.get(recipient_id, now), now, policy,
                    )
                    if recipient_view.effective_total < 0:
                        raise InvalidTransferTarget(
                            f"Recipient {recipient_id} has a negative balance"
                        )

            meta = {"counterparty": recipient_id, "paid_amount": paid_amount}
            debit = ledger_service.apply_in_session(
                session, ctx,
                LedgerEvent(payer_id, currency, EventKind.TRANSFER_DEBIT, score_amount,
                            source_kind="transfer", metadata=meta),
                now, create=False,
            )
            credit = ledger_service.apply_in_session(
                session, ctx,
                LedgerEvent(recipient_id, currency, EventKind.TRANSFER_CREDIT, score_amount,
                            source_kind="transfer",
                            metadata={"counterparty": payer_id, "paid_amount": paid_amount}),
                now, create=False,
            )

            record = TransferRecord(
                payer_id=payer_id,
                recipient_id=recipient_id,
                currency=currency,
                amount_paid=float(paid_amount),
                score_transferred=float(score_amount),
                payment_ref=payment_ref,
                created_at=now,
            )
            session.add(record)
            ledger_service.commit_unit(session)
            session.expunge(record)
            return record, [debit, credit], False

    with ctx.user_lock(payer_id):
        record, results, duplicate = ledger_service.run_with_retry(
            ctx, "settle_transfer", _unit,
        )

    if duplicate:
        logger.info("Transfer for payment %s already settled as #%d", payment_ref, record.id)
        return record

    ledger_service.publish_results(ctx, results)
    logger.info(
        "Transfer #%d: %s → %s %.4f %s (paid %.4f)",
        record.id, payer_id, recipient_id, score_amount, currency, paid_amount,
    )
    return record


def refund_pair(
    ctx: ScoreContext,
    user_a: str,
    user_b: str,
    amount_each: float,
    *,
    currency: str = REPUTATION,
    reference: str | None = None,
) -> tuple[LedgerResult, LedgerResult]:
    """Credit both parties of a cancelled arrangement, all or nothing.

    With a *reference*, repeating the refund returns the original results
    marked ``duplicate``.
    """
    if user_a == user_b:
        raise InvalidTransferTarget("A refund needs two distinct users")
    _check_amount(amount_each, "Refund amount")
    ctx.cache.policy(currency)

    def _event(user_id: str, other: str) -> LedgerEvent:
        return LedgerEvent(
            user_id, currency, EventKind.REFUND, amount_each,
            source_kind="refund",
            source_event_id=f"refund:{reference}:{user_id}" if reference else None,
            metadata={"counterparty": other, "reference": reference},
        )

    def _unit() -> tuple[LedgerResult, LedgerResult]:
        with Session(ctx.engine) as session:
            now = ctx.now()
            for user_id in (user_a, user_b):
                account = ledger_service.get_account(session, user_id, currency)
                if account is None or account.is_closed:
                    raise InvalidTransferTarget(
                        f"User {user_id} has no active {currency} account"
                    )
            first = ledger_service.apply_in_session(
                session, ctx, _event(user_a, user_b), now, create=False,
            )
            second = ledger_service.apply_in_session(
                session, ctx, _event(user_b, user_a), now, create=False,
            )
            ledger_service.commit_unit(session)
            return first, second

    first, second = ledger_service.run_with_retry(ctx, "refund_pair", _unit)
    fresh = [r for r in (first, second) if not r.duplicate]
    if fresh:
        ledger_service.publish_results(ctx, fresh)
        logger.info(
            "Refunded %.4f %s each to %s and %s", amount_each, currency, user_a, user_b,
        )
    return first, second


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------
def transfer_summary(ctx: ScoreContext, user_id: str, currency: str = REPUTATION) -> dict:
    """Given / received totals for *user_id* from the settlement records."""
    with Session(ctx.engine) as session:
        given, given_count = session.execute(
            select(
                func.coalesce(func.sum(TransferRecord.score_transferred), 0.0),
                func.count(TransferRecord.id),
            ).where(TransferRecord.payer_id == user_id, TransferRecord.currency == currency)
        ).one()
        received, received_count = session.execute(
            select(
                func.coalesce(func.sum(TransferRecord.score_transferred), 0.0),
                func.count(TransferRecord.id),
            ).where(TransferRecord.recipient_id == user_id, TransferRecord.currency == currency)
        ).one()
    return {
        "user_id": user_id,
        "currency": currency,
        "given": float(given),
        "received": float(received),
        "net": float(received) - float(given),
        "count": int(given_count) + int(received_count),
    }


def list_transfers(
    ctx: ScoreContext,
    user_id: str,
    currency: str = REPUTATION,
    *,
    cursor: str | None = None,
    limit: int = 20,
    direction: str = "all",
) -> dict:
    """Newest-first page of *user_id*'s transfers.

    *direction* is ``"all"``, ``"given"`` or ``"received"``.  Pass the
    returned ``next_cursor`` to fetch the following page.
    """
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    if direction == "given":
        who = TransferRecord.payer_id == user_id
    elif direction == "received":
        who = TransferRecord.recipient_id == user_id
    elif direction == "all":
        who = or_(TransferRecord.payer_id == user_id, TransferRecord.recipient_id == user_id)
    else:
        raise InvalidTransferTarget(f"Unknown direction {direction!r}")

    stmt = select(TransferRecord).where(who, TransferRecord.currency == currency)
    if cursor is not None:
        (last_id,) = decode_cursor(cursor, int)
        stmt = stmt.where(TransferRecord.id < last_id)
    stmt = stmt.order_by(TransferRecord.id.desc()).limit(limit + 1)

    with Session(ctx.engine) as session:
        rows = session.scalars(stmt).all()
        items = [r.to_dict() for r in rows[:limit]]

    for item in items:
        item["direction"] = "given" if item["payer_id"] == user_id else "received"
    next_cursor = encode_cursor(items[-1]["id"]) if len(rows) > limit else None
    return {"items": items, "next_cursor": next_cursor}
