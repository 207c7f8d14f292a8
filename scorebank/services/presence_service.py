"""
scorebank.services.presence_service — Connect / disconnect orchestration
=========================================================================

Glue between the in-memory :class:`PresenceTracker` and the ledger.

The ordering on connect matters: pending decay is settled **before** the
user is marked online, so the settlement sees the offline stretch and the
fresh anchor it writes means time spent online never decays.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from scorebank.database.engine import get_session
from scorebank.database.models import PresenceEvent, PresenceState
from scorebank.engine.errors import LedgerContention
from scorebank.services import ledger_service

if TYPE_CHECKING:
    from scorebank.services.context import ScoreContext

logger = logging.getLogger(__name__)


def record_transition(
    ctx: ScoreContext, user_id: str, state: PresenceState, reason: str, at: datetime,
) -> None:
    """Append a transition to ``presence_events``.  Best effort."""
    try:
        with get_session(ctx.engine) as session:
            session.add(PresenceEvent(user_id=user_id, state=state.value, reason=reason, at=at))
    except Exception:
        logger.exception("Failed to journal presence %s for %s", state.value, user_id)


def connect(ctx: ScoreContext, user_id: str, reason: str = "connect") -> dict:
    """Mark *user_id* online, settling any offline decay first."""
    now = ctx.now()
    was_online = ctx.presence.is_online(user_id, now)
    settled: dict[str, float] = {}
    if not was_online:
        for currency in ctx.cache.currencies():
            try:
                result = ledger_service.settle_decay(ctx, user_id, currency)
            except LedgerContention:
                # The next ledger event or sweep settles it instead.
                logger.warning("Could not settle %s decay for %s on connect", currency, user_id)
                continue
            if result is not None:
                settled[currency] = result.settled_decay

    transitioned = ctx.presence.mark_online(user_id, now)
    if transitioned:
        record_transition(ctx, user_id, PresenceState.ONLINE, reason, now)
        logger.info("%s online (settled %s)", user_id, settled or "nothing")
    return {"user_id": user_id, "online": True, "transitioned": transitioned, "settled": settled}


def heartbeat(ctx: ScoreContext, user_id: str) -> dict:
    """Keep a session alive.  A lapsed session reconnects through :func:`connect`."""
    return connect(ctx, user_id, reason="heartbeat")


def disconnect(ctx: ScoreContext, user_id: str, reason: str = "disconnect") -> dict:
    now = ctx.now()
    transitioned = ctx.presence.mark_offline(user_id, now)
    if transitioned:
        last_seen = ctx.presence.last_seen_at(user_id, now) or now
        record_transition(ctx, user_id, PresenceState.OFFLINE, reason, last_seen)
        logger.info("%s offline (%s)", user_id, reason)
    return {"user_id": user_id, "online": False, "transitioned": transitioned}


def rebuild_presence(ctx: ScoreContext) -> int:
    """Reload the tracker from ``presence_events`` after a restart.

    Every known user comes back offline, stamped with their last recorded
    transition, so downtime accrues decay rather than freezing it.
    """
    latest = (
        select(PresenceEvent.user_id, func.max(PresenceEvent.at).label("at"))
        .group_by(PresenceEvent.user_id)
    )
    with Session(ctx.engine) as session:
        rows = session.execute(latest).all()
    for row in rows:
        ctx.presence.restore(row.user_id, row.at)
    logger.info("Presence rebuilt for %d users", len(rows))
    return len(rows)
