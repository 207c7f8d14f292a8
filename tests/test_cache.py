"""
tests/test_cache.py — ConfigCache Unit Tests
==============================================

Tests policy construction from the settings table, NOTIFY payload routing
(without a real PG connection), notify allowlist validation, cross-process
score event dispatch, and listener health.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.orm import Session

from scorebank.database.models import Setting
from scorebank.engine.cache import (
    ALLOWED_NOTIFY_TABLES,
    PROCESS_ORIGIN,
    ConfigCache,
    _build_policies,
    notify_before_commit,
    send_score_notify,
)
from scorebank.engine.decay import PER_MINUTE, PER_SECOND
from scorebank.engine.errors import UnknownCurrency
from scorebank.engine.feed import ScoreFeed, ScoreUpdate


@pytest.fixture
def cache(db_engine):
    c = ConfigCache(db_engine)
    c.load_all()
    return c


class TestSeededPolicies:
    def test_default_currencies(self, cache):
        assert cache.currencies() == ["credit", "reputation"]

    def test_reputation_policy(self, cache):
        policy = cache.policy("reputation")
        assert policy.decay_mode == PER_MINUTE
        assert policy.decay_rate == 1.0
        assert policy.decay_floor is None
        assert policy.balance_floor is None
        assert policy.initial_grant == 10.0

    def test_credit_policy(self, cache):
        policy = cache.policy("credit")
        assert policy.decay_mode == PER_SECOND
        assert policy.grace_seconds == 60
        assert policy.decay_floor == 0.0
        assert policy.display_decimals == 2

    def test_unknown_currency(self, cache):
        with pytest.raises(UnknownCurrency):
            cache.policy("gold")

    def test_typed_accessors(self, cache):
        assert cache.get_int("ledger.retry_attempts") == 3
        assert cache.get_float("score_points.referral") == 25.0
        assert cache.get_bool("transfers.allow_negative_recipient") is True
        assert cache.get_int("missing.key", 7) == 7

    def test_reload_picks_up_changes(self, cache, db_engine):
        with Session(db_engine) as session:
            session.get(Setting, "currency.reputation.decay_rate").value_json = json.dumps(2.5)
            session.commit()
        cache.handle_notify("settings")
        assert cache.policy("reputation").decay_rate == 2.5


class TestBuildPolicies:
    def test_currency_needs_decay_mode(self):
        policies = _build_policies({"currency.gold.decay_rate": 1.0})
        assert policies == {}

    def test_invalid_policy_is_skipped(self):
        policies = _build_policies({
            "currency.gold.decay_mode": "hourly",
            "currency.silver.decay_mode": "per_second",
        })
        assert list(policies) == ["silver"]

    def test_unrelated_keys_ignored(self):
        assert _build_policies({"score_points.swipe": 10, "currency.bad": 1}) == {}


class TestNotifyRouting:
    """NOTIFY payloads route to the correct reload method."""

    def test_settings_notify_reloads(self):
        cache = ConfigCache(MagicMock())
        with patch.object(cache, "_load_settings") as mock_load:
            cache.handle_notify(" Settings ")
            mock_load.assert_called_once()

    def test_unknown_notify_ignored(self):
        cache = ConfigCache(MagicMock())
        with patch.object(cache, "_load_settings") as mock_load:
            cache.handle_notify("unknown_table")
            mock_load.assert_not_called()


class TestNotifyAllowlist:
    def test_rejects_unknown_table(self):
        with pytest.raises(ValueError, match="Invalid table name"):
            notify_before_commit(MagicMock(), "users")

    def test_rejects_sql_injection_attempt(self):
        with pytest.raises(ValueError, match="Invalid table name"):
            notify_before_commit(MagicMock(), "settings'; DROP TABLE score_accounts; --")

    def test_allowed_table_executes(self):
        session = MagicMock()
        notify_before_commit(session, "settings")
        session.execute.assert_called_once()

    def test_allowlist_is_frozen(self):
        assert isinstance(ALLOWED_NOTIFY_TABLES, frozenset)


class TestScoreEventBridge:
    def _payload(self, origin: str) -> str:
        update = ScoreUpdate("u1", "reputation", 12.0, 4, "earned", datetime(2026, 1, 1, tzinfo=UTC))
        return json.dumps(dict(update.to_dict(), origin=origin))

    def test_remote_update_delivered(self):
        cache = ConfigCache(MagicMock())
        feed = MagicMock(spec=ScoreFeed)
        cache.attach_feed(feed)
        cache._dispatch_score_event(self._payload("another-process"))
        feed.deliver.assert_called_once()
        delivered = feed.deliver.call_args.args[0]
        assert delivered.user_id == "u1"
        assert delivered.version == 4

    def test_own_update_ignored(self):
        cache = ConfigCache(MagicMock())
        feed = MagicMock(spec=ScoreFeed)
        cache.attach_feed(feed)
        cache._dispatch_score_event(self._payload(PROCESS_ORIGIN))
        feed.deliver.assert_not_called()

    def test_garbage_payload_ignored(self):
        cache = ConfigCache(MagicMock())
        feed = MagicMock(spec=ScoreFeed)
        cache.attach_feed(feed)
        cache._dispatch_score_event("not json")
        cache._dispatch_score_event(json.dumps({"user_id": "u1"}))
        feed.deliver.assert_not_called()

    def test_send_score_notify_tags_origin(self):
        engine = MagicMock()
        conn = engine.connect.return_value.__enter__.return_value
        update = ScoreUpdate("u1", "credit", 1.5, 2, "purchase", datetime(2026, 1, 1, tzinfo=UTC))
        send_score_notify(engine, update)
        params = conn.execute.call_args.args[1]
        assert params["channel"] == "score_events"
        assert json.loads(params["payload"])["origin"] == PROCESS_ORIGIN
        conn.commit.assert_called_once()


class TestListenerHealth:
    def test_initially_unhealthy(self):
        cache = ConfigCache(MagicMock())
        assert cache.listener_healthy is False
        assert cache.listener_failed is False

    def test_stop_without_start_is_safe(self):
        cache = ConfigCache(MagicMock())
        cache.stop_listener()
