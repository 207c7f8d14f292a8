"""
tests/test_decay.py — Decay Projector Unit Tests
=================================================

Pure projection math: no database, no clock.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from scorebank.engine.decay import (
    PER_MINUTE,
    PER_SECOND,
    AccountState,
    CurrencyPolicy,
    project,
)
from scorebank.engine.presence import PresenceRecord

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

REPUTATION = CurrencyPolicy("reputation", PER_MINUTE, 1.0)
CREDIT = CurrencyPolicy(
    "credit", PER_SECOND, 0.01, grace_seconds=60, decay_floor=0.0, display_decimals=2,
)


def offline(last_seen: datetime | None) -> PresenceRecord:
    return PresenceRecord("u1", False, last_seen, last_seen)


def online() -> PresenceRecord:
    return PresenceRecord("u1", True, None, T0)


class TestPerMinute:
    def test_five_minutes_offline(self):
        view = project(AccountState(10, T0), offline(T0), T0 + timedelta(seconds=300), REPUTATION)
        assert view.effective_total == 5
        assert view.pending_decay == 5
        assert view.is_decaying is True
        assert view.settled_through == T0 + timedelta(minutes=5)

    def test_partial_minute_carries_over(self):
        view = project(AccountState(100, T0), offline(T0), T0 + timedelta(seconds=330), REPUTATION)
        assert view.pending_decay == 5
        # the half minute is left for the next settlement
        assert view.settled_through == T0 + timedelta(minutes=5)

    def test_under_a_minute_no_decay(self):
        view = project(AccountState(10, T0), offline(T0), T0 + timedelta(seconds=59), REPUTATION)
        assert view.pending_decay == 0
        assert view.is_decaying is False
        assert view.settled_through == T0

    def test_can_go_negative_without_floor(self):
        view = project(AccountState(2, T0), offline(T0), T0 + timedelta(minutes=5), REPUTATION)
        assert view.effective_total == -3

    def test_monotonic_while_offline(self):
        account = AccountState(50, T0)
        values = [
            project(account, offline(T0), T0 + timedelta(seconds=s), REPUTATION).effective_total
            for s in range(0, 1200, 37)
        ]
        assert values == sorted(values, reverse=True)


class TestPresenceInputs:
    def test_online_freezes(self):
        view = project(AccountState(10, T0), online(), T0 + timedelta(hours=3), REPUTATION)
        assert view.effective_total == 10
        assert view.pending_decay == 0
        assert view.settled_through == T0 + timedelta(hours=3)

    def test_unknown_presence_decays_from_anchor(self):
        view = project(AccountState(10, T0), None, T0 + timedelta(minutes=3), REPUTATION)
        assert view.pending_decay == 3
        assert view.clock_start == T0

    def test_clock_starts_at_later_of_anchor_and_last_seen(self):
        anchor = T0 + timedelta(minutes=10)
        view = project(AccountState(20, anchor), offline(T0), T0 + timedelta(minutes=12), REPUTATION)
        assert view.clock_start == anchor
        assert view.pending_decay == 2

    def test_naive_datetimes_treated_as_utc(self):
        naive = T0.replace(tzinfo=None)
        view = project(AccountState(10, naive), offline(naive), T0 + timedelta(minutes=2), REPUTATION)
        assert view.pending_decay == 2


class TestPerSecond:
    def test_grace_period(self):
        view = project(AccountState(100, T0), offline(T0), T0 + timedelta(seconds=90), CREDIT)
        assert view.pending_decay == pytest.approx(0.3)
        assert view.effective_total == pytest.approx(99.7)
        assert view.settled_through == T0 + timedelta(seconds=90)

    def test_inside_grace(self):
        view = project(AccountState(100, T0), offline(T0), T0 + timedelta(seconds=45), CREDIT)
        assert view.pending_decay == 0
        assert view.is_decaying is False

    def test_grace_consumed_once_anchor_moves(self):
        anchor = T0 + timedelta(minutes=10)
        view = project(AccountState(100, anchor), offline(T0), T0 + timedelta(minutes=20), CREDIT)
        assert view.pending_decay == pytest.approx(6.0)

    def test_decay_floor_caps_pending(self):
        view = project(AccountState(1.0, T0), offline(T0), T0 + timedelta(seconds=1060), CREDIT)
        assert view.pending_decay == pytest.approx(1.0)
        assert view.effective_total == 0

    def test_below_floor_never_decays(self):
        view = project(AccountState(-2.0, T0), offline(T0), T0 + timedelta(hours=1), CREDIT)
        assert view.pending_decay == 0
        assert view.effective_total == -2.0


class TestPolicy:
    def test_unknown_mode_rejected(self):
        with pytest.raises(ValueError, match="Unknown decay mode"):
            CurrencyPolicy("gold", "hourly")

    def test_negative_rate_rejected(self):
        with pytest.raises(ValueError):
            CurrencyPolicy("gold", PER_MINUTE, -1.0)

    def test_display_rounding(self):
        assert CREDIT.display(3.14159) == 3.14
        assert REPUTATION.display(4.6) == 5

    def test_projection_to_dict(self):
        data = project(AccountState(10, T0), offline(T0), T0 + timedelta(minutes=1), REPUTATION).to_dict()
        assert data["effective_total"] == 9
        assert data["clock_start"] == T0.isoformat()
