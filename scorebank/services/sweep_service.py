"""
scorebank.services.sweep_service — Periodic decay and presence sweeps
======================================================================

Three jobs keep lazily-computed state bounded:

- **Presence expiry** commits offline transitions for sessions whose
  heartbeat lapsed, so the journal matches what readers already see.
- **Decay sweep** settles pending decay for offline accounts so it cannot
  grow without bound for users who never come back.  It goes through the
  ledger, so it passes the same version gate as every other write.
- **Presence pruning** forgets users who have been offline longer than the
  retention window, once the decay sweep has settled them.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import Session

from scorebank.database.models import AccountStatus, PresenceState, ScoreAccount
from scorebank.engine.decay import project
from scorebank.engine.errors import LedgerContention
from scorebank.services import ledger_service
from scorebank.services.presence_service import record_transition

if TYPE_CHECKING:
    from scorebank.services.context import ScoreContext

logger = logging.getLogger(__name__)


def expire_stale_presence(ctx: ScoreContext) -> list[str]:
    now = ctx.now()
    expired = ctx.presence.expire_stale(now)
    for user_id in expired:
        last_seen = ctx.presence.last_seen_at(user_id, now) or now
        record_transition(ctx, user_id, PresenceState.OFFLINE, "heartbeat_timeout", last_seen)
    return expired


def _accounts_with_pending_decay(ctx: ScoreContext, currency: str) -> list[str]:
    policy = ctx.cache.policy(currency)
    now = ctx.now()
    due: list[str] = []
    with Session(ctx.engine) as session:
        accounts = session.scalars(
            select(ScoreAccount).where(
                ScoreAccount.currency == currency,
                ScoreAccount.status == AccountStatus.ACTIVE.value,
            )
        ).all()
        for account in accounts:
            view = project(account, ctx.presence.get(account.user_id, now), now, policy)
            if view.pending_decay > 0:
                due.append(account.user_id)
    return due


def sweep_decay(ctx: ScoreContext, currency: str | None = None) -> dict:
    """Settle pending decay for every offline account.

    Returns ``{"settled": {currency: n}, "skipped": [...], "total_decay": x}``.
    An account that keeps losing version races is skipped and picked up by
    the next sweep.
    """
    currencies = [currency] if currency is not None else ctx.cache.currencies()
    settled: dict[str, int] = {}
    skipped: list[dict] = []
    total_decay = 0.0

    for cur in currencies:
        settled[cur] = 0
        for user_id in _accounts_with_pending_decay(ctx, cur):
            try:
                result = ledger_service.settle_decay(ctx, user_id, cur)
            except LedgerContention:
                skipped.append({"user_id": user_id, "currency": cur})
                continue
            if result is not None and result.settled_decay > 0:
                settled[cur] += 1
                total_decay += result.settled_decay

    if skipped:
        logger.warning("Decay sweep skipped %d contended accounts: %s", len(skipped), skipped)
    logger.info("Decay sweep settled %s (%.4f points)", settled, total_decay)
    return {"settled": settled, "skipped": skipped, "total_decay": total_decay}


def prune_presence(ctx: ScoreContext, retention_hours: float) -> list[str]:
    """Forget users offline for longer than *retention_hours*.

    Run after :func:`sweep_decay`, which has settled their accounts past
    the offline transition.
    """
    cutoff = ctx.now() - timedelta(hours=retention_hours)
    pruned = ctx.presence.prune(cutoff)
    if pruned:
        logger.info("Pruned presence for %d users offline since before %s", len(pruned), cutoff)
    return pruned
