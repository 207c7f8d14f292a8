"""
scorebank.engine.decay — Decay Projector
=========================================

Pure read-time projection of offline decay.  No timer mutates storage:
every reader derives the same effective value from the persisted total, the
account's ``last_anchor`` and the owner's presence snapshot.  Storage is
only touched when the projection is *settled* by the ledger.

Two granularities are supported, chosen per currency:

``per_minute``
    Whole elapsed minutes times the rate.  The unsettled fractional minute
    carries over because ``settled_through`` stops on the last whole minute.
``per_second``
    Continuous decay at a per-second rate after a grace period, rounded to
    four decimals.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from scorebank.constants import as_utc

PER_MINUTE = "per_minute"
PER_SECOND = "per_second"
DECAY_MODES = frozenset({PER_MINUTE, PER_SECOND})


@dataclass(frozen=True, slots=True)
class CurrencyPolicy:
    """Economy rules for one currency, built from the ``settings`` table."""

    currency: str
    decay_mode: str = PER_MINUTE
    decay_rate: float = 1.0
    grace_seconds: float = 0.0
    decay_floor: float | None = None
    balance_floor: float | None = None
    minutes_per_point: float = 1.0
    initial_grant: float = 0.0
    display_decimals: int = 0

    def __post_init__(self) -> None:
        if self.decay_mode not in DECAY_MODES:
            raise ValueError(f"Unknown decay mode {self.decay_mode!r} for {self.currency}")
        if self.decay_rate < 0 or self.grace_seconds < 0:
            raise ValueError(f"Negative decay rate or grace for {self.currency}")

    def display(self, value: float) -> float:
        return round(value, self.display_decimals)


class _Balance(Protocol):
    total: float
    last_anchor: datetime


class _Presence(Protocol):
    is_online: bool
    last_seen_at: datetime | None


@dataclass(frozen=True, slots=True)
class AccountState:
    """Minimal balance view accepted by :func:`project`."""

    total: float
    last_anchor: datetime


@dataclass(frozen=True, slots=True)
class Projection:
    total: float
    effective_total: float
    pending_decay: float
    is_decaying: bool
    clock_start: datetime | None
    settled_through: datetime

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "effective_total": self.effective_total,
            "pending_decay": self.pending_decay,
            "is_decaying": self.is_decaying,
            "clock_start": self.clock_start.isoformat() if self.clock_start else None,
            "settled_through": self.settled_through.isoformat(),
        }


def project(
    account: _Balance,
    presence: _Presence | None,
    now: datetime,
    policy: CurrencyPolicy,
) -> Projection:
    """Project *account* forward to *now*.

    The decay clock starts at ``max(presence.last_seen_at, account.last_anchor)``
    so decay that was already settled is never counted twice.  Unknown
    presence falls back to the anchor and the user is treated as offline.
    The grace period only applies to the stretch that began at the offline
    transition; once an anchor has been written past it, it is consumed.
    """
    now = as_utc(now)
    total = account.total
    anchor = as_utc(account.last_anchor)

    if presence is not None and presence.is_online:
        return Projection(total, total, 0.0, False, None, now)

    last_seen = as_utc(presence.last_seen_at) if presence is not None else None
    if last_seen is not None and last_seen >= anchor:
        clock_start = last_seen
        grace = policy.grace_seconds
    else:
        clock_start = anchor
        grace = 0.0

    elapsed = (now - clock_start).total_seconds() - grace
    if elapsed <= 0:
        return Projection(total, total, 0.0, False, clock_start, clock_start)

    if policy.decay_mode == PER_MINUTE:
        whole_minutes = math.floor(elapsed / 60)
        pending = whole_minutes * policy.decay_rate
        if whole_minutes > 0:
            settled_through = clock_start + timedelta(seconds=grace + whole_minutes * 60)
        else:
            settled_through = clock_start
    else:
        pending = round(elapsed * policy.decay_rate, 4)
        settled_through = now

    if policy.decay_floor is not None:
        if total <= policy.decay_floor:
            pending = 0.0
        else:
            pending = min(pending, total - policy.decay_floor)

    effective = total - pending
    if policy.decay_mode == PER_SECOND:
        effective = round(effective, 4)
    return Projection(total, effective, pending, pending > 0, clock_start, settled_through)
