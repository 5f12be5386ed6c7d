from decimal import Decimal

import pytest

from earning_engine import compute_splits, to_money
from models import Account


def _account(account_id, referred_by=None, level=0):
    return Account(
        id=account_id,
        username=f"u{account_id}",
        email=f"u{account_id}@example.com",
        phone=f"{5550000000 + account_id}",
        full_name=f"User {account_id}",
        referral_code=f"CODE{account_id:04d}",
        referred_by=referred_by,
        referral_level=level,
    )


@pytest.fixture
def graph():
    # A(1) <- B(2) <- C(3) <- D(4)
    accounts = {
        1: _account(1),
        2: _account(2, referred_by=1, level=1),
        3: _account(3, referred_by=2, level=2),
        4: _account(4, referred_by=3, level=2),
    }
    return accounts


def test_two_level_split_from_profit(graph, settings):
    """
    C buys for 1500 with 300 profit:
    B (direct) gets 5% of profit, A (indirect) 1%.
    """
    splits, is_valid, total = compute_splits(
        Decimal("1500"), Decimal("300"), graph[3], graph.get, settings
    )

    assert is_valid is True
    assert [(s.beneficiary_id, s.level, s.amount, s.is_direct) for s in splits] == [
        (2, 1, Decimal("15.00"), True),
        (1, 2, Decimal("3.00"), False),
    ]
    assert total == Decimal("18.00")
    assert total == sum(s.amount for s in splits)


def test_no_third_level(graph, settings):
    """
    D's chain is C, B, A; only C and B earn.
    """
    splits, _, _ = compute_splits(
        Decimal("2000"), Decimal("100"), graph[4], graph.get, settings
    )
    assert [s.beneficiary_id for s in splits] == [3, 2]


def test_partial_lineage_only_direct(graph, settings):
    splits, is_valid, total = compute_splits(
        Decimal("1000"), Decimal("100"), graph[2], graph.get, settings
    )
    assert is_valid is True
    assert len(splits) == 1
    assert splits[0].beneficiary_id == 1
    assert splits[0].amount == Decimal("5.00")
    assert total == Decimal("5.00")


def test_root_purchase_is_valid_but_has_no_splits(graph, settings):
    splits, is_valid, total = compute_splits(
        Decimal("5000"), Decimal("500"), graph[1], graph.get, settings
    )
    assert is_valid is True
    assert splits == []
    assert total == Decimal("0.00")


def test_below_threshold_never_walks_the_chain(graph, settings):
    """
    500 < 1000: invalid, no splits and the lookup is never called.
    """
    calls = []

    def lookup(account_id):
        calls.append(account_id)
        return graph.get(account_id)

    splits, is_valid, total = compute_splits(
        Decimal("500"), Decimal("100"), graph[3], lookup, settings
    )
    assert is_valid is False
    assert splits == []
    assert total == Decimal("0")
    assert calls == []


def test_threshold_is_inclusive(graph, settings):
    _, is_valid, _ = compute_splits(
        Decimal("1000.00"), Decimal("10"), graph[3], graph.get, settings
    )
    assert is_valid is True


def test_amounts_round_down_to_cents(graph, settings):
    """
    5% of 33.33 = 1.6665 -> 1.66 ; 1% = 0.3333 -> 0.33
    """
    splits, _, total = compute_splits(
        Decimal("1000"), Decimal("33.33"), graph[3], graph.get, settings
    )
    assert splits[0].amount == Decimal("1.66")
    assert splits[1].amount == Decimal("0.33")
    assert total == Decimal("1.99")


def test_to_money_accepts_floats_without_binary_noise():
    assert to_money(0.1) == Decimal("0.10")
    assert to_money("12.349") == Decimal("12.34")
    assert to_money(Decimal("7")) == Decimal("7.00")
