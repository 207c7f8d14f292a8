"""
scorebank.api.routes.feed — WebSocket push of score.updated events
===================================================================

``/api/ws/scores?user_id=a&user_id=b`` subscribes to updates for those
users (all users when omitted).  The first frame is a ``subscribed``
acknowledgement; every following frame is a ``score.updated`` payload.

Pushes are best-effort.  Clients keep polling the snapshot endpoint and
merge both sources by ``version``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Annotated

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from scorebank.api.deps import ContextDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["feed"])


async def _wait_closed(websocket: WebSocket) -> None:
    """Consume client frames until the client goes away."""
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@router.websocket("/ws/scores")
async def score_stream(
    websocket: WebSocket,
    ctx: ContextDep,
    user_id: Annotated[list[str] | None, Query()] = None,
):
    await websocket.accept()
    sub = ctx.feed.subscribe(asyncio.get_running_loop(), user_id)
    closed = asyncio.create_task(_wait_closed(websocket))
    try:
        await websocket.send_json({"type": "subscribed", "user_ids": user_id or []})
        while True:
            next_update = asyncio.create_task(sub.get())
            await asyncio.wait({next_update, closed}, return_when=asyncio.FIRST_COMPLETED)
            if not next_update.done():
                next_update.cancel()
                break
            await websocket.send_json(next_update.result().to_dict())
    except WebSocketDisconnect:
        pass
    finally:
        closed.cancel()
        ctx.feed.unsubscribe(sub)
        logger.debug("Score stream closed (%s)", user_id or "all users")
        if sub.dropped:
            logger.info("Score stream dropped %d updates for a slow consumer", sub.dropped)
