from __future__ import annotations

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from plot_allocation.api.middleware import CorrelationIdMiddleware
from plot_allocation.api.router import build_services, get_services, router
from plot_allocation.config import Settings
from plot_allocation.db.memory import InMemoryDBManager


@pytest.fixture
def client(tmp_path):
    settings = Settings(mongo_uri="", ledger_log_path=tmp_path / "ledger.log")
    services = build_services(settings, db=InMemoryDBManager())

    app = FastAPI()
    app.add_middleware(CorrelationIdMiddleware, path_prefix="/plots")
    app.include_router(router)
    app.dependency_overrides[get_services] = lambda: services

    with TestClient(app) as c:
        yield c


def _purchase_body(user_id: str, x: float, z: float, width: int = 5, depth: int = 5) -> dict:
    return {
        "user_id": user_id,
        "position": {"x": x, "z": z},
        "size": {"width": width, "depth": depth},
    }


def test_pricing_at_origin(client):
    resp = client.post(
        "/plots/pricing",
        json={"size": {"width": 5, "depth": 5}, "position": {"x": 0, "y": 0, "z": 0}},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["base_price"] == 2500
    assert body["location_multiplier"] == 2.0
    assert body["total_cost"] == 5000


def test_purchase_then_position_taken(client):
    resp = client.post("/plots/purchase", json=_purchase_body("user-1", 30, 0))
    assert resp.status_code == 201
    assert resp.json()["payment_status"] == "free"
    assert "X-Correlation-ID" in resp.headers

    taken = client.post("/plots/purchase", json=_purchase_body("user-2", 30, 0))
    assert taken.status_code == 409
    assert taken.json()["detail"]["error"] == "PositionOccupied"


def test_purchase_without_payment(client):
    resp = client.post("/plots/purchase", json=_purchase_body("user-1", 30, 0, width=6, depth=6))

    assert resp.status_code == 402
    assert resp.json()["detail"]["total_cost"] == 1100


def test_idempotency_key_header(client):
    headers = {"Idempotency-Key": "req-1", "X-Correlation-ID": "corr-1"}
    first = client.post("/plots/purchase", json=_purchase_body("user-1", 30, 0), headers=headers)
    second = client.post("/plots/purchase", json=_purchase_body("user-1", 30, 0), headers=headers)

    assert first.status_code == second.status_code == 201
    assert first.json()["plot_id"] == second.json()["plot_id"]
    assert first.headers["X-Correlation-ID"] == "corr-1"


def test_invalid_size_is_bad_request(client):
    resp = client.post("/plots/purchase", json=_purchase_body("user-1", 30, 0, width=0))

    assert resp.status_code == 400
    assert resp.json()["detail"]["error"] == "InvalidDimension"


def test_available_positions(client):
    client.post("/plots/purchase", json=_purchase_body("user-1", 0, 0, width=1, depth=1))

    resp = client.get("/plots/available", params={"min_x": 0, "max_x": 1, "min_z": 0, "max_z": 1})

    assert resp.status_code == 200
    assert resp.json()["total_available"] == 3
    assert resp.json()["total_occupied"] == 1


def test_paid_purchase_through_intent(client):
    client.post("/plots/purchase", json=_purchase_body("user-1", 30, 0))

    intent = client.post(
        "/plots/payments/intents",
        json={
            "user_id": "user-1",
            "plot_size": {"width": 5, "depth": 5},
            "position": {"x": 0, "z": 40},
        },
    ).json()
    assert intent["payment_required"] is True
    assert intent["total_cost"] == 2500

    confirmed = client.post(
        "/plots/payments/confirm",
        json={"payment_intent_id": intent["payment_intent_id"], "status": "succeeded"},
    )
    assert confirmed.json()["status"] == "completed"

    body = _purchase_body("user-1", 0, 40)
    body["payment_intent_id"] = intent["payment_intent_id"]
    resp = client.post("/plots/purchase", json=body)
    assert resp.status_code == 201
    assert resp.json()["payment_status"] == "paid"

    refund = client.post(
        "/plots/payments/refund", json={"transaction_id": resp.json()["transaction_id"]}
    )
    assert refund.status_code == 200
    assert refund.json()["status"] == "refunded"


def test_process_payment_declined(client):
    resp = client.post(
        "/plots/payments/process",
        json={
            "user_id": "user-1",
            "amount": 500,
            "payment_method": "card",
            "payment_details": {"card_number": "4111111111110000"},
        },
    )

    assert resp.status_code == 200
    assert resp.json()["success"] is False
    assert resp.json()["error"] == "card declined"


def test_user_endpoints(client):
    profile = client.post("/plots/users/profile", json={"user_id": "user-1", "username": "alice"})
    assert profile.status_code == 200

    credits = client.post(
        "/plots/users/user-1/credits", json={"amount": 1000, "payment_id": "pay_1"}
    )
    assert credits.json()["credits"] == 1000

    summary = client.get("/plots/users/user-1").json()
    assert summary["username"] == "alice"
    assert summary["remaining_free_squares"] == 25

    history = client.get("/plots/users/user-1/transactions").json()
    assert [t["type"] for t in history] == ["credit_purchase"]

    missing = client.post("/plots/users/ghost/credits", json={"amount": 10, "payment_id": "pay_2"})
    assert missing.status_code == 404


def test_subscription_flow(client):
    client.post("/plots/users/profile", json={"user_id": "user-1", "username": "alice"})

    intent = client.post(
        "/plots/users/user-1/subscription/intents", json={"tier": "premium"}
    ).json()
    client.post(
        "/plots/payments/confirm",
        json={"payment_intent_id": intent["payment_intent_id"], "status": "succeeded"},
    )
    upgraded = client.post(
        "/plots/users/user-1/subscription",
        json={"tier": "premium", "payment_intent_id": intent["payment_intent_id"]},
    )
    assert upgraded.status_code == 200
    assert upgraded.json()["subscription_tier"] == "premium"

    cancelled = client.delete("/plots/users/user-1/subscription")
    assert cancelled.json()["subscription_tier"] == "free"


def test_pricing_info(client):
    info = client.get("/plots/pricing-info").json()

    assert info["currency"] == "USD"
    assert "enterprise" in info["tiers"]


def test_analytics_routes(client):
    client.post("/plots/purchase", json=_purchase_body("user-1", 30, 0))
    client.post("/plots/users/user-1/credits", json={"amount": 1000, "payment_id": "pay_1"})
    bought = client.post("/plots/purchase", json=_purchase_body("user-1", 0, 40, width=2, depth=2))
    assert bought.json()["payment_status"] == "paid_with_credits"

    trends = client.get("/plots/analytics/trends", params={"time_range": "week"})
    assert trends.status_code == 200
    assert trends.json()["total_revenue"] == 400

    boxed = client.get(
        "/plots/analytics/trends", params={"min_x": -10, "max_x": 10, "min_z": -50, "max_z": 0}
    )
    assert boxed.json()["total_transactions"] == 0

    assert client.get("/plots/analytics/trends", params={"time_range": "year"}).status_code == 400
    assert client.get("/plots/analytics/factors").json()["outskirts_multiplier"] == 0.8

    plot_id = bought.json()["plot_id"]
    recommended = client.get(f"/plots/analytics/recommended/{plot_id}")
    assert recommended.status_code == 200
    assert recommended.json()["current_market_price"] == 400
    assert client.get("/plots/analytics/recommended/missing").status_code == 404


def test_usage_and_dashboard_routes(client):
    assert client.get("/plots/users/ghost/usage").status_code == 404
    assert client.get("/plots/users/ghost/dashboard").status_code == 404

    client.post("/plots/purchase", json=_purchase_body("user-1", 30, 0, width=2, depth=2))

    usage = client.get("/plots/users/user-1/usage").json()
    assert usage["space_used"] == 4
    assert usage["plots_count"] == 1

    dashboard = client.get("/plots/users/user-1/dashboard").json()
    assert dashboard["stats"]["total_plots"] == 1
    assert dashboard["user"]["remaining_free_squares"] == 21
