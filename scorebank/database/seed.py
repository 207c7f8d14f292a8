"""
scorebank.database.seed — Default Economy Settings Seeder
==========================================================

Baseline economy settings seeded on first startup so the service is usable
without manual tuning (per-currency decay policy, score points, purchase
rate, daily bonus, ledger retry budget, transfer eligibility).

Idempotent — only inserts keys that don't already exist.  Settings changed
by operators later are never overwritten.
"""

from __future__ import annotations

import json
import logging

from sqlalchemy import Engine
from sqlalchemy.orm import Session

from scorebank.database.models import Setting

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Default settings catalogue
# ---------------------------------------------------------------------------
DEFAULT_SETTINGS: dict[str, tuple[object, str, str]] = {
    # Reputation: whole-minute decay, may go negative
    "currency.reputation.decay_mode": (
        "per_minute", "currency", "Decay granularity for reputation",
    ),
    "currency.reputation.decay_rate": (1.0, "currency", "Points lost per offline minute"),
    "currency.reputation.grace_seconds": (0, "currency", "Offline seconds before decay starts"),
    "currency.reputation.decay_floor": (
        None, "currency", "Lowest effective total decay may reach (null = unbounded)",
    ),
    "currency.reputation.balance_floor": (
        None, "currency", "Lowest total a debit may leave (null = unbounded)",
    ),
    "currency.reputation.minutes_per_point": (1.0, "currency", "Time-bank minutes per point"),
    "currency.reputation.initial_grant": (10.0, "currency", "Grant applied on account creation"),
    "currency.reputation.display_decimals": (0, "currency", "Decimals shown to users"),
    # Credit: per-second decay after a grace period, floored at zero
    "currency.credit.decay_mode": (
        "per_second", "currency", "Decay granularity for credit",
    ),
    "currency.credit.decay_rate": (0.01, "currency", "Points lost per offline second"),
    "currency.credit.grace_seconds": (60, "currency", "Offline seconds before decay starts"),
    "currency.credit.decay_floor": (
        0.0, "currency", "Lowest effective total decay may reach (null = unbounded)",
    ),
    "currency.credit.balance_floor": (
        0.0, "currency", "Lowest total a debit may leave (null = unbounded)",
    ),
    "currency.credit.minutes_per_point": (1.0, "currency", "Time-bank minutes per point"),
    "currency.credit.initial_grant": (0.0, "currency", "Grant applied on account creation"),
    "currency.credit.display_decimals": (2, "currency", "Decimals shown to users"),
    # Actions
    "score_points.swipe": (10, "score_points", "Points earned per swipe"),
    "score_points.match": (10, "score_points", "Points earned per match"),
    "score_points.referral": (25, "score_points", "Points earned per referral"),
    "score_points.initial_bonus": (10, "score_points", "Points for completing sign-up"),
    "purchase.points_per_unit": (
        1.0, "purchase", "Score bought per unit of verified token payment",
    ),
    "daily_bonus.amount": (5, "daily_bonus", "Points granted once per UTC day"),
    # Ledger
    "ledger.retry_attempts": (3, "ledger", "Attempts before LedgerContention is raised"),
    "transfers.allow_negative_recipient": (
        True, "transfers", "Allow transfers to accounts with a negative effective total",
    ),
}
"""Each entry maps ``key`` → ``(default_value, category, description)``."""


# ---------------------------------------------------------------------------
# Seeder
# ---------------------------------------------------------------------------
def seed_default_settings(engine: Engine) -> None:
    """Insert default settings that don't yet exist.

    Runs on every startup but only writes rows for keys that are missing,
    so it is safe to call repeatedly.
    """
    session = Session(engine)
    inserted = 0
    try:
        for key, (value, category, desc) in DEFAULT_SETTINGS.items():
            existing = session.get(Setting, key)
            if existing is None:
                session.add(Setting(
                    key=key,
                    value_json=json.dumps(value),
                    category=category,
                    description=desc,
                ))
                inserted += 1
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    if inserted:
        logger.info("Seeded %d default settings.", inserted)
