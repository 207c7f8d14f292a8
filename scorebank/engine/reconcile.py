"""
scorebank.engine.reconcile — Version-keyed client merge
========================================================

A :class:`BalanceReplica` is what a viewer holds for the balances it
displays.  Pushed ``score.updated`` frames and polled snapshots both flow
through :meth:`BalanceReplica.apply`, which keeps only strictly newer
versions.  Applying the same update twice, or an old one after a newer
poll, is a no-op, so push and poll can race freely.

Snapshots also carry the owner's presence.  Presence is not versioned by
the ledger, so the replica keeps whichever presence block was observed
last (by the snapshot's ``as_of``), even when the balance itself did not
change.  Re-projection uses it, so an online user shows no decay locally
just as on the server.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import datetime

from scorebank.constants import SCORE_UPDATED, as_utc
from scorebank.database.models import AccountStatus
from scorebank.engine.decay import AccountState, CurrencyPolicy, project
from scorebank.engine.feed import ScoreUpdate
from scorebank.engine.presence import PresenceRecord


@dataclass(frozen=True, slots=True)
class ReplicaEntry:
    user_id: str
    currency: str
    total: float
    version: int
    last_anchor: datetime | None
    status: str
    presence: PresenceRecord | None = None
    presence_as_of: datetime | None = None


def _parse_time(value: datetime | str | None) -> datetime | None:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    return as_utc(value)


def _presence_from(user_id: str, block: dict) -> PresenceRecord:
    return PresenceRecord(
        user_id=str(block.get("user_id", user_id)),
        is_online=bool(block.get("is_online")),
        last_seen_at=_parse_time(block.get("last_seen_at")),
        heartbeat_at=_parse_time(block.get("heartbeat_at")),
    )


def _entry_from(data: ScoreUpdate | dict) -> tuple[ReplicaEntry, bool]:
    """Return ``(entry, carries_presence)``."""
    if isinstance(data, dict) and data.get("type") == SCORE_UPDATED:
        data = ScoreUpdate.from_dict(data)
    if isinstance(data, ScoreUpdate):
        return ReplicaEntry(
            data.user_id, data.currency, data.new_total, data.version,
            as_utc(data.last_anchor), AccountStatus.ACTIVE.value,
        ), False

    user_id = str(data["user_id"])
    # a snapshot always has the key; None means the tracker never saw the user
    carries_presence = "presence" in data
    block = data.get("presence")
    entry = ReplicaEntry(
        user_id=user_id,
        currency=str(data["currency"]),
        total=float(data.get("total", 0.0)),
        version=int(data.get("version", 0)),
        last_anchor=_parse_time(data.get("last_anchor")),
        status=str(data.get("status", AccountStatus.ACTIVE.value)),
        presence=_presence_from(user_id, block) if block else None,
        presence_as_of=_parse_time(data.get("as_of")),
    )
    return entry, carries_presence


def _presence_is_newer(entry: ReplicaEntry, current: ReplicaEntry) -> bool:
    if current.presence_as_of is None:
        return True
    return entry.presence_as_of is not None and entry.presence_as_of >= current.presence_as_of


class BalanceReplica:
    """Client-side view of balances keyed by ``(user_id, currency)``."""

    def __init__(self, policies: dict[str, CurrencyPolicy] | None = None) -> None:
        self._lock = threading.Lock()
        self._entries: dict[tuple[str, str], ReplicaEntry] = {}
        self._policies: dict[str, CurrencyPolicy] = dict(policies or {})

    def set_policy(self, policy: CurrencyPolicy) -> None:
        with self._lock:
            self._policies[policy.currency] = policy

    def apply(self, data: ScoreUpdate | dict) -> bool:
        """Merge an update or snapshot.  Returns True if the balance was newer."""
        entry, carries_presence = _entry_from(data)
        key = (entry.user_id, entry.currency)
        with self._lock:
            current = self._entries.get(key)
            fresher_presence = carries_presence and (
                current is None or _presence_is_newer(entry, current)
            )

            if current is not None and entry.version <= current.version:
                if fresher_presence:
                    self._entries[key] = replace(
                        current, presence=entry.presence, presence_as_of=entry.presence_as_of,
                    )
                return False

            if current is not None:
                if entry.last_anchor is None:
                    # pushes without an anchor keep the last known one
                    entry = replace(entry, last_anchor=current.last_anchor)
                if not fresher_presence:
                    entry = replace(
                        entry, presence=current.presence, presence_as_of=current.presence_as_of,
                    )
            self._entries[key] = entry
            return True

    def get(self, user_id: str, currency: str) -> ReplicaEntry | None:
        with self._lock:
            return self._entries.get((user_id, currency))

    def version(self, user_id: str, currency: str) -> int:
        entry = self.get(user_id, currency)
        return entry.version if entry is not None else 0

    def effective(
        self,
        user_id: str,
        currency: str,
        now: datetime,
        presence: PresenceRecord | None = None,
    ) -> float | None:
        """Re-project the held total to *now* for display.

        Uses the last observed presence unless *presence* overrides it.
        """
        entry = self.get(user_id, currency)
        if entry is None:
            return None
        with self._lock:
            policy = self._policies.get(currency)
        if policy is None or entry.last_anchor is None:
            return entry.total
        if entry.status == AccountStatus.CLOSED.value:
            return 0.0
        if presence is None:
            presence = entry.presence
        state = AccountState(entry.total, entry.last_anchor)
        return project(state, presence, now, policy).effective_total

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
