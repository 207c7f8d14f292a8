"""
scorebank.engine.events — LedgerEvent envelope and sign rules
==============================================================

Every balance mutation is normalized into a :class:`LedgerEvent` before the
ledger applies it.  Validation here is pure: kind membership, finite
amounts and the sign each kind requires.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field

from scorebank.database.models import EventKind
from scorebank.engine.errors import InvalidAmount, UnknownEventKind

__all__ = ["LedgerEvent", "COMPONENT_FOR_KIND", "DEBIT_KINDS", "parse_kind"]

# Which ScoreAccount column each kind writes.  Debits are stored as positive
# amounts in their own column.
COMPONENT_FOR_KIND: dict[EventKind, str] = {
    EventKind.INITIAL_GRANT: "initial",
    EventKind.EARNED: "earned",
    EventKind.MANUAL_BONUS: "manual_bonus",
    EventKind.DECAY_SETTLEMENT: "decayed",
    EventKind.TRANSFER_DEBIT: "transferred_out",
    EventKind.TRANSFER_CREDIT: "transferred_in",
    EventKind.REFUND: "refunded",
    EventKind.PURCHASE: "purchased",
    EventKind.CORRECTION: "earned",
}

_POSITIVE_KINDS = frozenset({
    EventKind.INITIAL_GRANT,
    EventKind.EARNED,
    EventKind.REFUND,
    EventKind.PURCHASE,
    EventKind.TRANSFER_CREDIT,
    EventKind.TRANSFER_DEBIT,
})
_SIGNED_KINDS = frozenset({EventKind.MANUAL_BONUS, EventKind.CORRECTION})

# Kinds that lower the total and are therefore subject to the balance floor.
# Decay is excluded: it is governed by the decay floor instead.
DEBIT_KINDS = frozenset({
    EventKind.TRANSFER_DEBIT,
    EventKind.MANUAL_BONUS,
    EventKind.CORRECTION,
})


def parse_kind(kind: str | EventKind) -> EventKind:
    try:
        return EventKind(kind)
    except ValueError:
        raise UnknownEventKind(f"Unknown ledger event kind: {kind!r}") from None


@dataclass(frozen=True, slots=True)
class LedgerEvent:
    """One validated ledger mutation."""

    user_id: str
    currency: str
    kind: EventKind
    delta: float
    source_kind: str | None = None
    source_event_id: str | None = None
    metadata: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", parse_kind(self.kind))
        if not isinstance(self.delta, int | float) or not math.isfinite(self.delta):
            raise InvalidAmount(f"Amount must be a finite number (got {self.delta!r})")
        if self.kind in _POSITIVE_KINDS and self.delta <= 0:
            raise InvalidAmount(f"{self.kind.value} requires a positive amount")
        if self.kind == EventKind.DECAY_SETTLEMENT and self.delta < 0:
            raise InvalidAmount("decay_settlement cannot be negative")
        if self.kind in _SIGNED_KINDS and self.delta == 0:
            raise InvalidAmount(f"{self.kind.value} requires a non-zero amount")

    @property
    def component(self) -> str:
        return COMPONENT_FOR_KIND[self.kind]

    @property
    def signed_effect(self) -> float:
        """Change to the derived total this event causes."""
        if self.kind in (EventKind.DECAY_SETTLEMENT, EventKind.TRANSFER_DEBIT):
            return -self.delta
        return self.delta

    @property
    def is_debit(self) -> bool:
        return self.kind in DEBIT_KINDS and self.signed_effect < 0
