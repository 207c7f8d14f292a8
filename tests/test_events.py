"""
tests/test_events.py — LedgerEvent validation and sign rules
=============================================================
"""

from __future__ import annotations

import pytest

from scorebank.database.models import EventKind
from scorebank.engine.errors import InvalidAmount, UnknownEventKind
from scorebank.engine.events import COMPONENT_FOR_KIND, LedgerEvent, parse_kind


def test_parse_kind_accepts_strings():
    assert parse_kind("earned") is EventKind.EARNED


def test_parse_kind_rejects_unknown():
    with pytest.raises(UnknownEventKind):
        parse_kind("steal")


def test_every_kind_has_a_component():
    assert set(COMPONENT_FOR_KIND) == set(EventKind)


@pytest.mark.parametrize("kind", ["earned", "refund", "purchase", "transfer_debit"])
def test_positive_kinds_reject_non_positive(kind):
    with pytest.raises(InvalidAmount):
        LedgerEvent("u1", "reputation", kind, 0)
    with pytest.raises(InvalidAmount):
        LedgerEvent("u1", "reputation", kind, -1)


@pytest.mark.parametrize("value", [float("nan"), float("inf"), "10"])
def test_non_finite_rejected(value):
    with pytest.raises(InvalidAmount):
        LedgerEvent("u1", "reputation", "earned", value)


def test_transfer_debit_lowers_total():
    event = LedgerEvent("u1", "reputation", "transfer_debit", 3)
    assert event.component == "transferred_out"
    assert event.signed_effect == -3
    assert event.is_debit is True


def test_manual_bonus_sign():
    assert LedgerEvent("u1", "reputation", "manual_bonus", -4).is_debit is True
    assert LedgerEvent("u1", "reputation", "manual_bonus", 4).is_debit is False
    with pytest.raises(InvalidAmount):
        LedgerEvent("u1", "reputation", "manual_bonus", 0)


def test_decay_settlement_is_not_a_debit():
    event = LedgerEvent("u1", "reputation", EventKind.DECAY_SETTLEMENT, 2)
    assert event.signed_effect == -2
    assert event.is_debit is False


def test_correction_writes_earned():
    event = LedgerEvent("u1", "reputation", "correction", -1.5)
    assert event.component == "earned"
    assert event.is_debit is True
