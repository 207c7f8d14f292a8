"""
scorebank.engine.feed — score.updated fan-out hub
==================================================

The ledger publishes a :class:`ScoreUpdate` after every committed mutation.
Subscribers are asyncio queues owned by WebSocket handlers; publishing is
thread-safe because ledger code runs on worker threads (``run_db``).

Delivery is best-effort: each subscription queue is bounded and drops its
oldest update on overflow.  A client that misses pushes heals on its next
poll, since every update carries the account ``version``.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime

from scorebank.constants import SCORE_UPDATED

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ScoreUpdate:
    user_id: str
    currency: str
    new_total: float
    version: int
    reason: str
    at: datetime
    last_anchor: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "type": SCORE_UPDATED,
            "user_id": self.user_id,
            "currency": self.currency,
            "new_total": self.new_total,
            "version": self.version,
            "reason": self.reason,
            "at": self.at.isoformat(),
            "last_anchor": self.last_anchor.isoformat() if self.last_anchor else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ScoreUpdate:
        return cls(
            user_id=str(data["user_id"]),
            currency=str(data["currency"]),
            new_total=float(data["new_total"]),
            version=int(data["version"]),
            reason=str(data.get("reason", "")),
            at=datetime.fromisoformat(data["at"]),
            last_anchor=(
                datetime.fromisoformat(data["last_anchor"])
                if data.get("last_anchor") else None
            ),
        )


class Subscription:
    """One consumer's bounded queue, optionally filtered to some users."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        user_ids: Iterable[str] | None,
        maxsize: int,
    ) -> None:
        self.loop = loop
        self.user_ids = frozenset(user_ids) if user_ids is not None else None
        self.queue: asyncio.Queue[ScoreUpdate] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def wants(self, update: ScoreUpdate) -> bool:
        return self.user_ids is None or update.user_id in self.user_ids

    def _offer(self, update: ScoreUpdate) -> None:
        # Runs on the subscriber's loop thread.
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
        self.queue.put_nowait(update)

    async def get(self) -> ScoreUpdate:
        return await self.queue.get()


class ScoreFeed:
    """Thread-safe publish/subscribe hub for ``score.updated`` events."""

    def __init__(self, queue_size: int = 256) -> None:
        self._queue_size = queue_size
        self._lock = threading.Lock()
        self._subs: list[Subscription] = []
        self._listeners: list[Callable[[ScoreUpdate], None]] = []

    def subscribe(
        self,
        loop: asyncio.AbstractEventLoop,
        user_ids: Iterable[str] | None = None,
    ) -> Subscription:
        sub = Subscription(loop, user_ids, self._queue_size)
        with self._lock:
            self._subs.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subs:
                self._subs.remove(sub)

    def add_listener(self, fn: Callable[[ScoreUpdate], None]) -> None:
        """Register a synchronous callback invoked on every publish."""
        with self._lock:
            self._listeners.append(fn)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subs)

    def publish(self, update: ScoreUpdate) -> None:
        """Deliver *update* to local listeners and subscribers.  Never raises."""
        self.deliver(update)
        with self._lock:
            listeners = list(self._listeners)
        for fn in listeners:
            try:
                fn(update)
            except Exception:
                logger.exception("Score feed listener failed for %s", update.user_id)

    def deliver(self, update: ScoreUpdate) -> None:
        """Hand *update* to subscriber queues only.

        Used by the cross-process bridge so remote updates are not
        re-broadcast to listeners.
        """
        with self._lock:
            subs = [s for s in self._subs if s.wants(update)]
        for sub in subs:
            if sub.loop.is_closed():
                self.unsubscribe(sub)
                continue
            try:
                sub.loop.call_soon_threadsafe(sub._offer, update)
            except RuntimeError:
                # loop closed between the check and the call
                self.unsubscribe(sub)
