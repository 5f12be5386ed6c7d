from decimal import Decimal
from typing import Optional

import pytest

from config import Settings
from db.memory import InMemoryStore
from notifications import RecordingSink
from referral_service import register_with_referral


@pytest.fixture
def settings():
    """engine defaults, independent of whatever REFERRAL_* is exported."""
    return Settings(
        _env_file=None,
        max_direct_referrals=8,
        direct_earning_percentage=Decimal("5"),
        indirect_earning_percentage=Decimal("1"),
        min_purchase_amount=Decimal("1000"),
        database_url="",
    )


@pytest.fixture
def store():
    store = InMemoryStore()
    yield store
    store.close()


@pytest.fixture
def sink():
    return RecordingSink()


def new_account_payload(name: str, n: int) -> dict:
    # usernames need 3+ chars; "A" becomes "user_a"
    return {
        "username": f"user_{name.lower()}",
        "email": f"{name.lower()}@example.com",
        "phone": f"{5550000000 + n}",
        "full_name": f"User {name}",
        "password_hash": "x",
    }


@pytest.fixture
def make_account(store, settings):
    """
    make_account("A") / make_account("B", sponsor=a)
    registers through the service so every graph rule applies.
    """
    counter = {"n": 0}

    def _make(username: str, sponsor=None, events=None, store_=None):
        counter["n"] += 1
        code: Optional[str] = sponsor.referral_code if sponsor is not None else None
        return register_with_referral(
            store_ or store,
            new_account_payload(username, counter["n"]),
            code,
            events=events,
            settings=settings,
        )

    return _make


@pytest.fixture
def chain(make_account):
    """A <- B <- C (B referred by A, C referred by B)."""
    a = make_account("A")
    b = make_account("B", sponsor=a)
    c = make_account("C", sponsor=b)
    return a, b, c


@pytest.fixture
def account_payload():
    return new_account_payload
