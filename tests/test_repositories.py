import os
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from errors import DuplicateIdentity, ReferralLimitExceeded
from models import SplitStatus, TransactionStatus

TEST_DSN = os.environ.get("REFERRAL_TEST_DATABASE_URL")

pytestmark = pytest.mark.skipif(
    not TEST_DSN, reason="REFERRAL_TEST_DATABASE_URL not set"
)


@pytest.fixture
def pg_store():
    """
    PostgresStore against a scratch database.
    tables are created if missing and emptied before each test.
    """
    from db.db import apply_schema, get_conn
    from db.repositories import PostgresStore

    apply_schema(TEST_DSN)
    with get_conn(TEST_DSN) as conn:
        with conn.cursor() as cur:
            cur.execute(
                "TRUNCATE transaction_splits, transactions, accounts RESTART IDENTITY CASCADE;"
            )
        conn.commit()

    store = PostgresStore(TEST_DSN)
    yield store
    store.close()


def test_chain_and_distribution(pg_store, make_account, settings):
    from purchase_engine import process_purchase, retry_distribution

    a = make_account("A", store_=pg_store)
    b = make_account("B", sponsor=a, store_=pg_store)
    c = make_account("C", sponsor=b, store_=pg_store)
    assert (a.referral_level, b.referral_level, c.referral_level) == (0, 1, 2)
    assert pg_store.get_account(a.id).direct_referrals == [b.id]

    # 1) C buys 1500 / 300
    tx = process_purchase(pg_store, c.id, 1500, 300, settings=settings)
    assert tx.status == TransactionStatus.COMPLETED
    assert tx.total_earnings_distributed == Decimal("18.00")
    assert all(s.status == SplitStatus.APPLIED for s in tx.referral_chain)

    # 2) balances moved once
    assert pg_store.get_account(b.id).direct_earnings == Decimal("15.00")
    assert pg_store.get_account(a.id).indirect_earnings == Decimal("3.00")

    # 3) retry is a no-op
    again = retry_distribution(pg_store, tx.transaction_id)
    assert again.attempts == 1
    assert pg_store.get_account(b.id).total_earnings == Decimal("15.00")


def test_unique_constraints_map_to_engine_errors(pg_store, make_account, settings, account_payload):
    from referral_service import register_with_referral

    make_account("A", store_=pg_store)
    with pytest.raises(DuplicateIdentity):
        register_with_referral(pg_store, account_payload("A", 1), settings=settings)


def test_concurrent_fan_out_is_bounded(pg_store, make_account, settings, account_payload):
    from referral_service import register_with_referral

    a = make_account("A", store_=pg_store)
    payloads = [account_payload(f"P{i}", 100 + i) for i in range(12)]

    def attempt(payload):
        try:
            register_with_referral(pg_store, payload, a.referral_code, settings=settings)
            return "ok"
        except ReferralLimitExceeded:
            return "full"

    with ThreadPoolExecutor(max_workers=6) as pool:
        outcomes = list(pool.map(attempt, payloads))

    assert outcomes.count("ok") == 8
    assert pg_store.get_account(a.id).total_direct_referrals == 8


def test_concurrent_purchases_never_lose_credits(pg_store, make_account, settings):
    """
    parallel purchases by C serialize on the beneficiaries' row locks:
    B ends at N x 15, A at N x 3.
    """
    from purchase_engine import process_purchase

    a = make_account("A", store_=pg_store)
    b = make_account("B", sponsor=a, store_=pg_store)
    c = make_account("C", sponsor=b, store_=pg_store)
    n = 10

    def buy(_):
        return process_purchase(pg_store, c.id, 1500, 300, settings=settings)

    with ThreadPoolExecutor(max_workers=5) as pool:
        results = list(pool.map(buy, range(n)))

    assert all(tx.status == TransactionStatus.COMPLETED for tx in results)
    assert pg_store.get_account(b.id).total_earnings == Decimal("15.00") * n
    assert pg_store.get_account(a.id).total_earnings == Decimal("3.00") * n


def test_analytics_total_counts_only_credited_splits(pg_store, make_account, settings):
    from purchase_engine import process_purchase
    from referral_service import set_account_active

    a = make_account("A", store_=pg_store)
    b = make_account("B", sponsor=a, store_=pg_store)
    c = make_account("C", sponsor=b, store_=pg_store)
    set_account_active(pg_store, a.id, False)

    process_purchase(pg_store, c.id, 1500, 300, settings=settings)
    assert pg_store.total_distributed() == Decimal("15.00")
