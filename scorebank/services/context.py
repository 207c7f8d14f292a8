"""
scorebank.services.context — Shared service dependencies
=========================================================

Every service function takes a :class:`ScoreContext` instead of a loose
``(engine, cache, ...)`` argument list.  The API builds one at startup;
tests build one around an in-memory engine and a fake clock.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from scorebank.constants import as_utc, utcnow

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from scorebank.engine.cache import ConfigCache
    from scorebank.engine.feed import ScoreFeed
    from scorebank.engine.presence import PresenceTracker


@dataclass(slots=True)
class _UserLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


@dataclass
class ScoreContext:
    engine: Engine
    cache: ConfigCache
    presence: PresenceTracker
    feed: ScoreFeed
    clock: Callable[[], datetime] = utcnow

    _user_locks: dict[str, _UserLock] = field(default_factory=dict, repr=False)
    _locks_guard: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def now(self) -> datetime:
        return as_utc(self.clock())

    @contextmanager
    def user_lock(self, user_id: str) -> Iterator[None]:
        """Hold the per-user lock serializing that user's outgoing transfers.

        An entry lives only while someone holds or waits on it.
        """
        with self._locks_guard:
            entry = self._user_locks.get(user_id)
            if entry is None:
                entry = self._user_locks[user_id] = _UserLock()
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._user_locks[user_id]

    @property
    def locked_users(self) -> int:
        with self._locks_guard:
            return len(self._user_locks)
