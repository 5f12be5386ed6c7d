import pytest
from fastapi.testclient import TestClient

from app import app
from config import get_settings


@pytest.fixture
def client(monkeypatch):
    """
    fresh app state per test: the lifespan builds a new in-memory store
    and notification center on every startup.
    """
    monkeypatch.setenv("REFERRAL_DATABASE_URL", "")
    get_settings.cache_clear()
    with TestClient(app) as client:
        yield client
    get_settings.cache_clear()


def _register(client, name, n, referral_code=None):
    body = {
        "username": f"user_{name.lower()}",
        "email": f"{name.lower()}@example.com",
        "phone": f"{5550000000 + n}",
        "full_name": f"User {name}",
        "password_hash": "hashed",
    }
    if referral_code is not None:
        body["referral_code"] = referral_code
    return client.post("/api/auth/register", json=body)


def _wire_chain_via_api(client):
    """
    A <- B <- C using /api/auth/register.
    returns (a, b, c) as response bodies.
    """
    # 1) root A
    res = _register(client, "A", 1)
    assert res.status_code == 201
    a = res.json()

    # 2) B under A
    res = _register(client, "B", 2, a["referral_code"])
    assert res.status_code == 201
    b = res.json()

    # 3) C under B
    res = _register(client, "C", 3, b["referral_code"])
    assert res.status_code == 201
    c = res.json()

    return a, b, c


def test_full_api_flow(client):
    """
    end-to-end flow:
      - wire A <- B <- C
      - purchase from C
      - check splits, earnings and notifications
    """
    a, b, c = _wire_chain_via_api(client)
    assert (a["referral_level"], b["referral_level"], c["referral_level"]) == (0, 1, 2)
    assert "password_hash" not in a

    # 4) C buys
    res = client.post(
        "/api/referral/purchase",
        json={
            "user_id": c["id"],
            "purchase_amount": "1500",
            "profit_amount": "300",
            "product_name": "Laptop",
        },
    )
    assert res.status_code == 201
    tx = res.json()
    assert tx["status"] == "completed"
    assert tx["total_earnings_distributed"] == "18.00"
    assert [(s["beneficiary_id"], s["amount"]) for s in tx["referral_chain"]] == [
        (b["id"], "15.00"),
        (a["id"], "3.00"),
    ]

    # 5) earnings for B (direct) and A (indirect)
    res = client.get(f"/api/referral/earnings?user_id={b['id']}")
    assert res.status_code == 200
    assert res.json()["direct_earnings"] == "15.00"

    res = client.get(f"/api/referral/earnings?user_id={a['id']}")
    assert res.status_code == 200
    assert res.json()["indirect_earnings"] == "3.00"

    # 6) the ledger record is retrievable
    res = client.get(f"/api/referral/transactions/{tx['transaction_id']}")
    assert res.status_code == 200
    assert res.json()["transaction_id"] == tx["transaction_id"]

    # 7) notifications: B has the referral (C) and the earning
    res = client.get(f"/api/notifications/unread-count?user_id={b['id']}")
    assert res.json()["unread"] == 2

    res = client.get(f"/api/notifications?user_id={b['id']}&kind=earning")
    data = res.json()
    assert data["pagination"]["total_notifications"] == 1
    assert data["notifications"][0]["amount"] == "15.00"

    res = client.put("/api/notifications/mark-read", json={"user_id": b["id"]})
    assert res.json()["marked"] == 2
    res = client.get(f"/api/notifications/unread-count?user_id={b['id']}")
    assert res.json()["unread"] == 0


def test_retry_on_completed_is_idempotent(client):
    a, b, c = _wire_chain_via_api(client)
    tx = client.post(
        "/api/referral/purchase",
        json={"user_id": c["id"], "purchase_amount": "1500", "profit_amount": "300"},
    ).json()

    res = client.post(f"/api/referral/transactions/{tx['transaction_id']}/retry")
    assert res.status_code == 200
    assert res.json()["attempts"] == 1

    res = client.get(f"/api/referral/earnings?user_id={b['id']}")
    assert res.json()["total_earnings"] == "15.00"


def test_validate_referral(client):
    a, _, _ = _wire_chain_via_api(client)

    res = client.post("/api/auth/validate-referral", json={"referral_code": a["referral_code"]})
    assert res.status_code == 200
    data = res.json()
    assert data["valid"] is True
    assert data["referrer"]["id"] == a["id"]
    assert data["referrer"]["current_referrals"] == 1

    res = client.post("/api/auth/validate-referral", json={"referral_code": "ZZZZZZZZ"})
    assert res.json()["valid"] is False


def test_register_errors(client):
    res = _register(client, "A", 1)
    assert res.status_code == 201

    # duplicate identity
    res = _register(client, "A", 1)
    assert res.status_code == 400
    assert res.json()["error"] == "DuplicateIdentity"

    # unknown code
    res = _register(client, "X", 9, "ZZZZZZZZ")
    assert res.status_code == 400
    assert res.json()["detail"] == "Invalid referral code"

    # bad payload shape caught by the engine's model
    res = client.post(
        "/api/auth/register",
        json={"username": "ok_name", "email": "nope", "phone": "1", "full_name": "Ok Name"},
    )
    assert res.status_code == 400
    assert res.json()["error"] == "ValidationError"


def test_tree_and_stats(client):
    a, b, c = _wire_chain_via_api(client)

    res = client.get(f"/api/referral/tree?user_id={a['id']}")
    assert res.status_code == 200
    tree = res.json()
    assert [r["id"] for r in tree["direct_referrals"]] == [b["id"]]
    assert [r["id"] for r in tree["indirect_referrals"]] == [c["id"]]

    res = client.get(f"/api/referral/stats?user_id={a['id']}")
    assert res.status_code == 200
    stats = res.json()
    assert stats["referrals"]["total_direct"] == 1
    assert stats["referrals"]["total_indirect"] == 1
    assert stats["earnings"]["total"] == "0.00"

    res = client.get("/api/referral/tree?user_id=999")
    assert res.status_code == 404


def test_purchase_errors(client):
    _, _, c = _wire_chain_via_api(client)

    res = client.post(
        "/api/referral/purchase",
        json={"user_id": c["id"], "purchase_amount": "-5", "profit_amount": "1"},
    )
    assert res.status_code == 422

    res = client.post(
        "/api/referral/purchase",
        json={"user_id": 999, "purchase_amount": "1500", "profit_amount": "300"},
    )
    assert res.status_code == 404

    res = client.get("/api/referral/transactions/not-an-id")
    assert res.status_code == 400

    res = client.get("/api/referral/transactions/TXN0000000000000AAAAAA")
    assert res.status_code == 404


def test_analytics_and_leaderboard(client):
    a, b, c = _wire_chain_via_api(client)
    client.post(
        "/api/referral/purchase",
        json={"user_id": c["id"], "purchase_amount": "1500", "profit_amount": "300"},
    )

    res = client.get("/api/referral/analytics")
    assert res.status_code == 200
    data = res.json()
    assert data["total_users"] == 3
    assert data["total_earnings_distributed"] == "18.00"
    assert len(data["recent_transactions"]) == 1

    res = client.get("/api/referral/leaderboard?limit=2")
    assert res.status_code == 200
    board = res.json()["leaderboard"]
    assert [row["id"] for row in board] == [b["id"], a["id"]]

    res = client.get("/api/referral/leaderboard?limit=0")
    assert res.status_code == 422


def test_register_normalizes_the_referral_code(client):
    """lowercase / padded codes are accepted like the validate endpoint does."""
    res = _register(client, "A", 1)
    a = res.json()

    res = _register(client, "B", 2, f" {a['referral_code'].lower()} ")
    assert res.status_code == 201
    assert res.json()["referred_by"] == a["id"]

    res = _register(client, "C", 3, "short")
    assert res.status_code == 400
    assert res.json()["error"] == "InvalidReferralCode"
