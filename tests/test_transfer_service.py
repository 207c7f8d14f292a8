"""
tests/test_transfer_service.py — Transfer Settlement Integration Tests
=======================================================================

Atomic two-party settlement, conservation, double-spend protection,
refund atomicity and transfer history.
"""

from __future__ import annotations

import json
import threading
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from scorebank.database.models import ScoreEvent, Setting, TransferRecord
from scorebank.engine.errors import (
    AccountClosed,
    InsufficientBalance,
    InvalidAmount,
    InvalidCursor,
    InvalidTransferTarget,
    LedgerContention,
)
from scorebank.services import ledger_service, presence_service, score_service, transfer_service
from scorebank.services.cursors import encode_cursor


def _total(ctx, user_id: str, currency: str = "reputation") -> float:
    return score_service.get_effective_score(ctx, user_id, currency)["total"]


@pytest.fixture
def pair(ctx):
    """A with 20 reputation, B with 10, both online."""
    ctx.presence.mark_online("A")
    ctx.presence.mark_online("B")
    ledger_service.record_earned(ctx, "A", "reputation", source_kind="swipe")
    ledger_service.grant_initial(ctx, "B", "reputation")
    return "A", "B"


@pytest.fixture
def no_sleep():
    with patch.object(ledger_service.time, "sleep"):
        yield


class TestSettleTransfer:
    def test_moves_score_and_conserves_sum(self, ctx, pair, collected):
        record = transfer_service.settle_transfer(ctx, "A", "B", 5, 1.5, payment_ref="pay-1")

        assert record.id is not None
        assert record.score_transferred == 5
        assert record.amount_paid == 1.5
        assert _total(ctx, "A") == 15
        assert _total(ctx, "B") == 15
        assert {(u.user_id, u.new_total) for u in collected[-2:]} == {("A", 15), ("B", 15)}

    def test_journals_both_sides(self, ctx, pair, db_engine):
        transfer_service.settle_transfer(ctx, "A", "B", 5)
        with Session(db_engine) as session:
            kinds = set(session.scalars(
                select(ScoreEvent.kind).where(ScoreEvent.source_kind == "transfer")
            ))
        assert kinds == {"transfer_debit", "transfer_credit"}

    def test_self_transfer_rejected(self, ctx, pair):
        with pytest.raises(InvalidTransferTarget):
            transfer_service.settle_transfer(ctx, "A", "A", 1)

    def test_missing_recipient_rejected(self, ctx, pair):
        with pytest.raises(InvalidTransferTarget):
            transfer_service.settle_transfer(ctx, "A", "nobody", 1)

    def test_closed_recipient_rejected(self, ctx, pair):
        ledger_service.close_account(ctx, "B", "reputation")
        with pytest.raises(InvalidTransferTarget):
            transfer_service.settle_transfer(ctx, "A", "B", 1)

    def test_missing_payer_rejected(self, ctx, pair):
        with pytest.raises(InvalidTransferTarget, match="nobody"):
            transfer_service.settle_transfer(ctx, "nobody", "B", 1)
        assert _total(ctx, "B") == 10

    def test_closed_payer(self, ctx, pair):
        ledger_service.close_account(ctx, "A", "reputation")
        with pytest.raises(AccountClosed):
            transfer_service.settle_transfer(ctx, "A", "B", 1)

    @pytest.mark.parametrize("amount", [0, -3, float("nan")])
    def test_bad_amount(self, ctx, pair, amount):
        with pytest.raises(InvalidAmount):
            transfer_service.settle_transfer(ctx, "A", "B", amount)

    def test_insufficient_checks_effective_balance(self, ctx, pair, clock):
        presence_service.disconnect(ctx, "A")
        clock.advance(minutes=15)
        with pytest.raises(InsufficientBalance) as exc_info:
            transfer_service.settle_transfer(ctx, "A", "B", 10)
        assert exc_info.value.available == 5
        # nothing was written
        assert _total(ctx, "A") == 20

    def test_payment_ref_is_idempotent(self, ctx, pair, db_engine):
        first = transfer_service.settle_transfer(ctx, "A", "B", 5, payment_ref="pay-9")
        again = transfer_service.settle_transfer(ctx, "A", "B", 5, payment_ref="pay-9")
        assert again.id == first.id
        assert _total(ctx, "A") == 15
        with Session(db_engine) as session:
            assert session.scalar(select(func.count(TransferRecord.id))) == 1

    def test_negative_recipient_blocked_when_disallowed(self, ctx, pair, clock, db_engine):
        with Session(db_engine) as session:
            session.get(Setting, "transfers.allow_negative_recipient").value_json = json.dumps(False)
            session.commit()
        ctx.cache.load_all()

        presence_service.disconnect(ctx, "B")
        clock.advance(minutes=20)
        ctx.presence.heartbeat("A")
        with pytest.raises(InvalidTransferTarget, match="negative"):
            transfer_service.settle_transfer(ctx, "A", "B", 1)


class TestReconnectThenSpend:
    def test_ten_offline_five_minutes_then_spend_three(self, ctx, clock):
        ctx.presence.mark_online("U")
        ledger_service.grant_initial(ctx, "U", "reputation")
        ledger_service.grant_initial(ctx, "V", "reputation")
        ctx.presence.mark_online("V")
        presence_service.disconnect(ctx, "U")

        clock.advance(seconds=300)
        ctx.presence.heartbeat("V")
        score = score_service.get_effective_score(ctx, "U", "reputation")
        assert score["effective_total"] == 5
        assert score["pending_decay"] == 5
        assert score["is_decaying"] is True

        presence_service.connect(ctx, "U")
        transfer_service.settle_transfer(ctx, "U", "V", 3)

        after = score_service.get_effective_score(ctx, "U", "reputation")
        assert after["total"] == 2
        assert after["last_anchor"] == clock().isoformat()


class TestDoubleSpend:
    def test_concurrent_transfers_one_wins(self, ctx, pair):
        barrier = threading.Barrier(2)
        outcomes: list[str] = []

        def spend(recipient: str) -> None:
            barrier.wait()
            try:
                transfer_service.settle_transfer(ctx, "A", recipient, 15)
                outcomes.append("ok")
            except InsufficientBalance:
                outcomes.append("insufficient")

        ctx.presence.mark_online("C")
        ledger_service.grant_initial(ctx, "C", "reputation")
        threads = [threading.Thread(target=spend, args=(r,)) for r in ("B", "C")]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["insufficient", "ok"]
        assert _total(ctx, "A") == 5
        assert _total(ctx, "B") + _total(ctx, "C") == 35
        assert ctx.locked_users == 0

    def test_payer_lock_released_after_failure(self, ctx, pair):
        with pytest.raises(InsufficientBalance):
            transfer_service.settle_transfer(ctx, "A", "B", 500)
        assert ctx.locked_users == 0
        transfer_service.settle_transfer(ctx, "A", "B", 1)


class TestRefundPair:
    def test_credits_both(self, ctx, pair):
        first, second = transfer_service.refund_pair(ctx, "A", "B", 20, reference="match-7")
        assert (first.user_id, first.new_total) == ("A", 40)
        assert (second.user_id, second.new_total) == ("B", 30)

    def test_reference_makes_it_idempotent(self, ctx, pair):
        transfer_service.refund_pair(ctx, "A", "B", 20, reference="match-7")
        first, second = transfer_service.refund_pair(ctx, "A", "B", 20, reference="match-7")
        assert first.duplicate and second.duplicate
        assert _total(ctx, "A") == 40

    def test_all_or_nothing(self, ctx, pair):
        with pytest.raises(InvalidTransferTarget):
            transfer_service.refund_pair(ctx, "A", "nobody", 20)
        assert _total(ctx, "A") == 20

    def test_retried_as_a_whole_on_version_conflict(self, ctx, pair, db_engine, no_sleep):
        real_commit = ledger_service.commit_unit
        calls = []

        def conflict_once(session):
            calls.append(1)
            if len(calls) == 1:
                raise StaleDataError("B is locked by a concurrent transfer")
            real_commit(session)

        with patch.object(ledger_service, "commit_unit", side_effect=conflict_once):
            transfer_service.refund_pair(ctx, "A", "B", 20)

        assert len(calls) == 2
        assert _total(ctx, "A") == 40
        assert _total(ctx, "B") == 30
        with Session(db_engine) as session:
            refunds = session.scalar(
                select(func.count(ScoreEvent.id)).where(ScoreEvent.kind == "refund")
            )
        assert refunds == 2

    def test_contention_credits_nobody(self, ctx, pair, no_sleep):
        with patch.object(
            ledger_service, "commit_unit", side_effect=StaleDataError("conflict"),
        ):
            with pytest.raises(LedgerContention):
                transfer_service.refund_pair(ctx, "A", "B", 20)
        assert _total(ctx, "A") == 20
        assert _total(ctx, "B") == 10


class TestHistory:
    def test_summary(self, ctx, pair):
        transfer_service.settle_transfer(ctx, "A", "B", 5)
        transfer_service.settle_transfer(ctx, "B", "A", 2)
        summary = transfer_service.transfer_summary(ctx, "A", "reputation")
        assert summary["given"] == 5
        assert summary["received"] == 2
        assert summary["net"] == -3
        assert summary["count"] == 2

    def test_pagination(self, ctx, pair):
        for _ in range(3):
            transfer_service.settle_transfer(ctx, "A", "B", 1)
        page = transfer_service.list_transfers(ctx, "A", "reputation", limit=2)
        assert len(page["items"]) == 2
        assert page["items"][0]["id"] > page["items"][1]["id"]
        assert page["items"][0]["direction"] == "given"

        rest = transfer_service.list_transfers(
            ctx, "A", "reputation", limit=2, cursor=page["next_cursor"],
        )
        assert len(rest["items"]) == 1
        assert rest["next_cursor"] is None

    def test_direction_filter(self, ctx, pair):
        transfer_service.settle_transfer(ctx, "A", "B", 1)
        assert transfer_service.list_transfers(ctx, "A", direction="received")["items"] == []
        received = transfer_service.list_transfers(ctx, "B", direction="received")["items"]
        assert [i["direction"] for i in received] == ["received"]

    def test_bad_cursor(self, ctx, pair):
        with pytest.raises(InvalidCursor):
            transfer_service.list_transfers(ctx, "A", cursor="%%%")

    @pytest.mark.parametrize("key", [["x"], [1.5], [None]])
    def test_cursor_with_wrong_element_type(self, ctx, pair, key):
        with pytest.raises(InvalidCursor):
            transfer_service.list_transfers(ctx, "A", cursor=encode_cursor(*key))
