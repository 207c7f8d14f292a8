"""
scorebank.engine.presence — Presence Tracker
=============================================

In-memory, thread-safe record of who is online.  The tracker is the only
writer of presence state; everyone else receives frozen
:class:`PresenceRecord` snapshots.

Heartbeat timeout is applied lazily: a user whose last heartbeat is older
than the timeout is *reported* offline on read, with ``last_seen_at`` set to
the last heartbeat, even before :meth:`PresenceTracker.expire_stale` commits
the transition.  A dead connection therefore accrues decay instead of
freezing it.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from scorebank.constants import as_utc, utcnow
from scorebank.engine.errors import StalePresence

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PresenceRecord:
    user_id: str
    is_online: bool
    last_seen_at: datetime | None
    heartbeat_at: datetime | None

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "is_online": self.is_online,
            "last_seen_at": self.last_seen_at.isoformat() if self.last_seen_at else None,
            "heartbeat_at": self.heartbeat_at.isoformat() if self.heartbeat_at else None,
        }


@dataclass(slots=True)
class _Entry:
    is_online: bool
    last_seen_at: datetime | None
    heartbeat_at: datetime | None


class PresenceTracker:
    """Thread-safe presence map keyed by user id.

    Usage::

        tracker = PresenceTracker(heartbeat_timeout_seconds=90)
        tracker.mark_online("u1")
        tracker.is_online("u1")          # True
        tracker.mark_offline("u1")       # stamps last_seen_at
    """

    def __init__(
        self,
        heartbeat_timeout_seconds: float = 90,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._timeout = timedelta(seconds=heartbeat_timeout_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, _Entry] = {}

    @property
    def heartbeat_timeout(self) -> timedelta:
        return self._timeout

    def _now(self, now: datetime | None) -> datetime:
        return as_utc(now) if now is not None else self._clock()

    def _is_stale(self, entry: _Entry, now: datetime) -> bool:
        return (
            entry.is_online
            and entry.heartbeat_at is not None
            and now - entry.heartbeat_at > self._timeout
        )

    # -------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------
    def mark_online(self, user_id: str, now: datetime | None = None) -> bool:
        """Mark *user_id* online.  Returns True if this was a transition.

        An already-online user only has its heartbeat refreshed.  A user whose
        heartbeat had lapsed counts as coming back online.
        """
        now = self._now(now)
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is None:
                self._entries[user_id] = _Entry(True, None, now)
                return True
            transitioned = not entry.is_online or self._is_stale(entry, now)
            if transitioned and entry.is_online:
                # lapsed session: the gap was offline time
                entry.last_seen_at = entry.heartbeat_at
            entry.is_online = True
            entry.heartbeat_at = now
            return transitioned

    def heartbeat(self, user_id: str, now: datetime | None = None) -> bool:
        return self.mark_online(user_id, now)

    def mark_offline(self, user_id: str, now: datetime | None = None) -> bool:
        """Mark *user_id* offline.  Returns True if this was a transition.

        Explicit disconnects stamp ``last_seen_at = now``; a session whose
        heartbeat already lapsed is stamped with its last heartbeat instead.
        """
        now = self._now(now)
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is None or not entry.is_online:
                return False
            entry.last_seen_at = entry.heartbeat_at if self._is_stale(entry, now) else now
            entry.is_online = False
            return True

    def restore(self, user_id: str, last_seen_at: datetime) -> None:
        """Seed an offline record (used when rebuilding after a restart)."""
        last_seen_at = as_utc(last_seen_at)
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is not None and entry.is_online:
                return
            self._entries[user_id] = _Entry(False, last_seen_at, last_seen_at)

    def expire_stale(self, now: datetime | None = None) -> list[str]:
        """Commit offline transitions for every lapsed heartbeat."""
        now = self._now(now)
        expired: list[str] = []
        with self._lock:
            for user_id, entry in self._entries.items():
                if self._is_stale(entry, now):
                    entry.is_online = False
                    entry.last_seen_at = entry.heartbeat_at
                    expired.append(user_id)
        for user_id in expired:
            logger.info(
                "%s: %s missed heartbeats, presumed offline",
                StalePresence.code, user_id,
            )
        return expired

    def prune(self, before: datetime) -> list[str]:
        """Drop offline records last seen before *before*.

        A pruned user reads as unknown, which decays from the account anchor;
        once a settlement has moved the anchor past ``last_seen_at`` that is
        the same projection the offline record gave.
        """
        before = as_utc(before)
        with self._lock:
            gone = [
                uid for uid, e in self._entries.items()
                if not e.is_online and e.last_seen_at is not None and e.last_seen_at < before
            ]
            for uid in gone:
                del self._entries[uid]
        if gone:
            logger.debug("Pruned %d long-offline presence records", len(gone))
        return gone

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------
    def get(self, user_id: str, now: datetime | None = None) -> PresenceRecord | None:
        now = self._now(now)
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is None:
                return None
            if self._is_stale(entry, now):
                return PresenceRecord(user_id, False, entry.heartbeat_at, entry.heartbeat_at)
            return PresenceRecord(
                user_id, entry.is_online, entry.last_seen_at, entry.heartbeat_at
            )

    def is_online(self, user_id: str, now: datetime | None = None) -> bool:
        record = self.get(user_id, now)
        return record is not None and record.is_online

    def last_seen_at(self, user_id: str, now: datetime | None = None) -> datetime | None:
        record = self.get(user_id, now)
        return record.last_seen_at if record is not None else None

    def online_user_ids(self, now: datetime | None = None) -> list[str]:
        now = self._now(now)
        with self._lock:
            return [
                uid for uid, e in self._entries.items()
                if e.is_online and not self._is_stale(e, now)
            ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
