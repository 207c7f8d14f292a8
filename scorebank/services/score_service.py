"""
scorebank.services.score_service — Read-side projections
=========================================================

Read-only views over the ledger.  Nothing here writes: every number is the
persisted baseline projected to "now" by the decay projector, which is what
lets any number of viewers render identical balances without coordination.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from scorebank.constants import as_utc, format_time_bank, time_bank_minutes
from scorebank.database.models import AccountStatus, ScoreAccount
from scorebank.engine.decay import CurrencyPolicy, Projection, project
from scorebank.services import transfer_service
from scorebank.services.cursors import decode_cursor, encode_cursor
from scorebank.services.ledger_service import get_account

if TYPE_CHECKING:
    from datetime import datetime

    from scorebank.services.context import ScoreContext

MAX_LEADERBOARD_PAGE = 100

# Persisted-total expression, mirrored from ScoreAccount.total for SQL ordering.
_TOTAL = (
    ScoreAccount.initial
    + ScoreAccount.earned
    + ScoreAccount.manual_bonus
    + ScoreAccount.transferred_in
    + ScoreAccount.refunded
    + ScoreAccount.purchased
    - ScoreAccount.decayed
    - ScoreAccount.transferred_out
)


def _view(
    ctx: ScoreContext, account: ScoreAccount, policy: CurrencyPolicy, now: datetime,
) -> Projection:
    return project(account, ctx.presence.get(account.user_id, now), now, policy)


def _missing(user_id: str, currency: str) -> dict:
    return {
        "user_id": user_id,
        "currency": currency,
        "status": AccountStatus.MISSING.value,
        "total": 0.0,
        "effective_total": 0.0,
        "pending_decay": 0.0,
        "is_decaying": False,
        "minutes_remaining": 0.0,
        "time_bank": format_time_bank(0.0),
        "version": 0,
        "last_anchor": None,
    }


def _score_dict(
    account: ScoreAccount, view: Projection, policy: CurrencyPolicy,
) -> dict:
    # Closed accounts are zeroed and never decay.
    if account.is_closed:
        effective, pending, decaying = 0.0, 0.0, False
    else:
        effective, pending, decaying = view.effective_total, view.pending_decay, view.is_decaying
    return {
        "user_id": account.user_id,
        "currency": account.currency,
        "status": account.status,
        "total": account.total,
        "effective_total": policy.display(effective),
        "pending_decay": policy.display(pending),
        "is_decaying": decaying,
        "minutes_remaining": time_bank_minutes(effective, policy.minutes_per_point),
        "time_bank": format_time_bank(effective, policy.minutes_per_point),
        "version": account.version,
        "last_anchor": as_utc(account.last_anchor).isoformat(),
    }


def get_effective_score(ctx: ScoreContext, user_id: str, currency: str) -> dict:
    """Effective (decay-projected) score for display.

    Missing accounts are reported with ``status="missing"`` instead of an
    error, so clients never need to remember a separate "no account" flag.
    """
    policy = ctx.cache.policy(currency)
    now = ctx.now()
    with Session(ctx.engine) as session:
        account = get_account(session, user_id, currency)
        if account is None:
            return _missing(user_id, currency)
        return _score_dict(account, _view(ctx, account, policy, now), policy)


def get_account_snapshot(ctx: ScoreContext, user_id: str, currency: str) -> dict:
    """Authoritative baseline used by polling clients to reconcile.

    Includes the presence inputs and decay parameters a client needs to
    re-project locally between polls.
    """
    policy = ctx.cache.policy(currency)
    now = ctx.now()
    presence = ctx.presence.get(user_id, now)
    with Session(ctx.engine) as session:
        account = get_account(session, user_id, currency)
        data = (
            _missing(user_id, currency) if account is None
            else _score_dict(account, _view(ctx, account, policy, now), policy)
        )
    data["as_of"] = now.isoformat()
    data["presence"] = presence.to_dict() if presence is not None else None
    data["policy"] = {
        "decay_mode": policy.decay_mode,
        "decay_rate": policy.decay_rate,
        "grace_seconds": policy.grace_seconds,
        "decay_floor": policy.decay_floor,
        "minutes_per_point": policy.minutes_per_point,
        "display_decimals": policy.display_decimals,
    }
    return data


def get_breakdown(ctx: ScoreContext, user_id: str, currency: str) -> dict:
    """Every stored component, transfer aggregates and the live projection."""
    policy = ctx.cache.policy(currency)
    now = ctx.now()
    with Session(ctx.engine) as session:
        account = get_account(session, user_id, currency)
        if account is None:
            return {**_missing(user_id, currency), "components": None}
        data = _score_dict(account, _view(ctx, account, policy, now), policy)
        data["components"] = {
            "initial": account.initial,
            "earned": account.earned,
            "manual_bonus": account.manual_bonus,
            "decayed": account.decayed,
            "transferred_in": account.transferred_in,
            "transferred_out": account.transferred_out,
            "refunded": account.refunded,
            "purchased": account.purchased,
        }
        data["time_lost_minutes"] = account.decayed * policy.minutes_per_point
    data["transfers"] = transfer_service.transfer_summary(ctx, user_id, currency)
    return data


def leaderboard(
    ctx: ScoreContext,
    currency: str,
    *,
    cursor: str | None = None,
    limit: int = 25,
) -> dict:
    """Active accounts ordered by persisted total, highest first.

    Keyset-paginated on ``(total, user_id)``.  Rows also carry the live
    effective total, which may order slightly differently until the next
    settlement.
    """
    policy = ctx.cache.policy(currency)
    limit = max(1, min(limit, MAX_LEADERBOARD_PAGE))
    now = ctx.now()

    total = _TOTAL.label("total")
    stmt = select(ScoreAccount, total).where(
        ScoreAccount.currency == currency,
        ScoreAccount.status == AccountStatus.ACTIVE.value,
    )
    if cursor is not None:
        last_total, last_user = decode_cursor(cursor, float, str)
        stmt = stmt.where(or_(
            _TOTAL < last_total,
            and_(_TOTAL == last_total, ScoreAccount.user_id > last_user),
        ))
    stmt = stmt.order_by(_TOTAL.desc(), ScoreAccount.user_id.asc()).limit(limit + 1)

    with Session(ctx.engine) as session:
        rows = session.execute(stmt).all()
        entries = []
        for account, row_total in rows[:limit]:
            view = _view(ctx, account, policy, now)
            entries.append({
                "user_id": account.user_id,
                "total": row_total,
                "effective_total": policy.display(view.effective_total),
                "is_decaying": view.is_decaying,
                "time_lost_minutes": account.decayed * policy.minutes_per_point,
                "version": account.version,
            })

    next_cursor = None
    if len(rows) > limit:
        last = entries[-1]
        next_cursor = encode_cursor(last["total"], last["user_id"])
    return {"currency": currency, "items": entries, "next_cursor": next_cursor}
