"""
scorebank.api.routes.scores — Balance reads and self-service claims
====================================================================

Reads need no auth and are safe to poll: they never write.
"""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, HTTPException, Query, status

from scorebank.api.deps import ContextDep, UserDep
from scorebank.constants import REPUTATION
from scorebank.services import ledger_service, score_service, transfer_service

router = APIRouter(tags=["scores"])


@router.get("/scores/{user_id}/{currency}")
def get_score(user_id: str, currency: str, ctx: ContextDep):
    """Effective (decay-projected) score with time-bank display."""
    return score_service.get_effective_score(ctx, user_id, currency)


@router.get("/scores/{user_id}/{currency}/snapshot")
def get_snapshot(user_id: str, currency: str, ctx: ContextDep):
    """Authoritative baseline for client reconciliation."""
    return score_service.get_account_snapshot(ctx, user_id, currency)


@router.get("/scores/{user_id}/{currency}/breakdown")
def get_breakdown(user_id: str, currency: str, ctx: ContextDep):
    return score_service.get_breakdown(ctx, user_id, currency)


@router.get("/leaderboard/{currency}")
def get_leaderboard(
    currency: str,
    ctx: ContextDep,
    cursor: str | None = None,
    limit: int = Query(25, ge=1, le=100),
):
    """Keyset-paginated leaderboard; pass ``next_cursor`` back as ``cursor``."""
    return score_service.leaderboard(ctx, currency, cursor=cursor, limit=limit)


@router.get("/transfers/{user_id}")
def get_transfers(
    user_id: str,
    ctx: ContextDep,
    currency: str = REPUTATION,
    cursor: str | None = None,
    limit: int = Query(20, ge=1, le=100),
    direction: Literal["all", "given", "received"] = "all",
):
    page = transfer_service.list_transfers(
        ctx, user_id, currency, cursor=cursor, limit=limit, direction=direction,
    )
    page["summary"] = transfer_service.transfer_summary(ctx, user_id, currency)
    return page


@router.post("/scores/{currency}/daily-bonus")
def claim_daily_bonus(currency: str, ctx: ContextDep, user: UserDep):
    """Claim today's bonus for the token's own account."""
    user_id = str(user["sub"])
    if user.get("is_service") and not user.get("is_admin"):
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Daily bonus is for session owners")
    result = ledger_service.claim_daily_bonus(ctx, user_id, currency)
    return {**result.to_dict(), "claimed": not result.duplicate}
