"""
scorebank.constants — Shared Constants & Helpers
=================================================

Single source of truth for currency identifiers, time-bank formatting and
UTC normalisation.  Import from here instead of duplicating in services,
routes, and the client.
"""

from __future__ import annotations

from datetime import UTC, datetime

# ---------------------------------------------------------------------------
# Currencies
# ---------------------------------------------------------------------------
REPUTATION = "reputation"
CREDIT = "credit"

DEFAULT_CURRENCIES: tuple[str, ...] = (REPUTATION, CREDIT)

# Topic name carried by every push payload
SCORE_UPDATED = "score.updated"


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------
def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round-trip)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# ---------------------------------------------------------------------------
# Time-bank formatting — THE single canonical implementation
# ---------------------------------------------------------------------------
def time_bank_minutes(total: float, minutes_per_point: float = 1.0) -> float:
    """Minutes of gated activity a balance buys.  Negative totals buy none."""
    return max(0.0, total) * minutes_per_point


def format_time_bank(total: float, minutes_per_point: float = 1.0) -> str:
    """Render a balance as ``"1h 5m"`` / ``"45m"`` / ``"-1h 5m debt"``.

    Negative balances are shown as debt rather than clamped so users can see
    how far under water they are.
    """
    minutes = int(abs(total) * minutes_per_point)
    hours, mins = divmod(minutes, 60)
    text = f"{hours}h {mins}m" if hours > 0 else f"{mins}m"
    if total < 0:
        return f"-{text} debt"
    return text
