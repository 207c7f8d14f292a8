"""
scorebank.api.routes.presence — Session presence endpoints
===========================================================

Clients heartbeat at least every ``heartbeat_timeout_seconds`` (90 s by
default); a session that stops is presumed offline and starts decaying.
"""

from __future__ import annotations

from fastapi import APIRouter

from scorebank.api.deps import ContextDep, UserDep
from scorebank.services import presence_service

router = APIRouter(prefix="/presence", tags=["presence"])


@router.get("/{user_id}")
def get_presence(user_id: str, ctx: ContextDep):
    record = ctx.presence.get(user_id, ctx.now())
    if record is None:
        return {"user_id": user_id, "is_online": False, "last_seen_at": None, "heartbeat_at": None}
    return record.to_dict()


@router.post("/heartbeat")
def heartbeat(ctx: ContextDep, user: UserDep):
    return presence_service.heartbeat(ctx, str(user["sub"]))


@router.post("/offline")
def go_offline(ctx: ContextDep, user: UserDep):
    return presence_service.disconnect(ctx, str(user["sub"]))
