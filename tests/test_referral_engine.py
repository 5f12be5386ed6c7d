from models import Account
from referral_engine import (
    REFERRAL_CODE_RE,
    child_level,
    generate_referral_code,
    get_lineage,
    is_referral_code_format,
)


def _account(account_id, referred_by=None):
    return Account(
        id=account_id,
        username=f"u{account_id}",
        email=f"u{account_id}@example.com",
        phone=f"{5550000000 + account_id}",
        full_name=f"User {account_id}",
        referral_code=f"CODE{account_id:04d}",
        referred_by=referred_by,
        referral_level=0 if referred_by is None else 1,
    )


def test_generated_codes_have_the_right_shape():
    codes = {generate_referral_code() for _ in range(200)}
    assert all(REFERRAL_CODE_RE.match(c) for c in codes)
    # 36^8 space: 200 draws should not collide
    assert len(codes) == 200


def test_code_format_check():
    assert is_referral_code_format("AB12CD34")
    assert not is_referral_code_format("ab12cd34")
    assert not is_referral_code_format("AB12CD3")
    assert not is_referral_code_format("AB12CD345")
    assert not is_referral_code_format("AB12-D34")
    assert not is_referral_code_format("")
    assert not is_referral_code_format(None)


def test_child_level_is_capped_at_two():
    assert child_level(None) == 0
    assert child_level(0) == 1
    assert child_level(1) == 2
    assert child_level(2) == 2


def test_lineage_walks_two_levels():
    """
    A -> B -> C -> D
    """
    accounts = {
        1: _account(1),
        2: _account(2, referred_by=1),
        3: _account(3, referred_by=2),
        4: _account(4, referred_by=3),
    }

    assert get_lineage(accounts[4], accounts.get) == [3, 2]
    assert get_lineage(accounts[3], accounts.get) == [2, 1]
    assert get_lineage(accounts[2], accounts.get) == [1, None]
    assert get_lineage(accounts[1], accounts.get) == [None, None]


def test_lineage_lookups_are_minimal():
    """
    two levels need the purchaser's own referred_by plus one lookup.
    """
    accounts = {1: _account(1), 2: _account(2, referred_by=1), 3: _account(3, referred_by=2)}
    calls = []

    def lookup(account_id):
        calls.append(account_id)
        return accounts.get(account_id)

    get_lineage(accounts[3], lookup)
    assert calls == [2]


def test_lineage_stops_at_missing_ancestor():
    accounts = {3: _account(3, referred_by=2)}
    assert get_lineage(accounts[3], accounts.get) == [2, None]
