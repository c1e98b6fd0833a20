from __future__ import annotations

import hashlib
import hmac
import json
import time
from datetime import timedelta

import pytest
from httpx import ASGITransport, AsyncClient

from credit_ledger.api.app import create_app
from credit_ledger.config import Settings
from credit_ledger.container import build_services
from credit_ledger.db.memory import InMemoryDBManager
from credit_ledger.gateway.memory import InMemoryPaymentGateway
from credit_ledger.models.base import utcnow


SECRET = "whsec_api"


def _build(tmp_path):
    services = build_services(
        Settings(STRIPE_WEBHOOK_SECRET=SECRET),
        db=InMemoryDBManager(),
        gateway=InMemoryPaymentGateway(),
        ledger_path=tmp_path / "ledger.log",
    )
    return services, create_app(services)


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_balance_for_unknown_user_is_empty(tmp_path):
    services, app = _build(tmp_path)
    async with _client(app) as client:
        response = await client.get("/credits/balance/user-1")

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 0
    assert body["cap"] == 900
    assert await services.db.get_account("user-1") is None


@pytest.mark.asyncio
async def test_allocate_then_deduct(tmp_path):
    services, app = _build(tmp_path)
    await services.costs.set_cost("keywords", "search", 5)

    async with _client(app) as client:
        allocated = await client.post(
            "/credits/allocate/subscription",
            json={"user_id": "user-1", "amount": 300, "app_key": "keywords"},
        )
        check = await client.post(
            "/credits/check",
            json={"user_id": "user-1", "app_key": "keywords", "operation": "search"},
        )
        deducted = await client.post(
            "/credits/deduct",
            json={"user_id": "user-1", "app_key": "keywords", "operation": "search", "reference_id": "req-1"},
        )
        history = await client.get("/credits/history/user-1", params={"limit": 1})

    assert allocated.json() == {"new_balance": 300, "allocated": 300}
    assert check.json() == {"sufficient": True, "cost": 5, "balance": 300}
    assert deducted.json()["new_balance"] == 295
    row = await services.db.get_transaction(deducted.json()["transaction_id"])
    assert row.amount == -5
    page = history.json()
    assert page["total"] == 2
    assert page["transactions"][0]["amount"] == -5
    assert page["transactions"][0]["reference_id"] == "req-1"


@pytest.mark.asyncio
async def test_ledger_errors_map_to_status_codes(tmp_path):
    services, app = _build(tmp_path)
    await services.costs.set_cost("keywords", "search", 5)

    async with _client(app) as client:
        insufficient = await client.post(
            "/credits/deduct",
            json={"user_id": "user-1", "app_key": "keywords", "operation": "search"},
        )
        unknown = await client.post(
            "/credits/deduct",
            json={"user_id": "user-1", "app_key": "keywords", "operation": "nope"},
        )

    assert insufficient.status_code == 402
    assert insufficient.json()["code"] == 1001
    assert unknown.status_code == 500
    assert unknown.json()["code"] == 2001


@pytest.mark.asyncio
async def test_request_validation(tmp_path):
    _, app = _build(tmp_path)
    async with _client(app) as client:
        negative = await client.post(
            "/credits/allocate/topup", json={"user_id": "user-1", "amount": -5}
        )
        page = await client.get("/credits/history/user-1", params={"limit": 500})

    assert negative.status_code == 422
    assert page.status_code == 422


@pytest.mark.asyncio
async def test_trial_endpoints(tmp_path):
    services, app = _build(tmp_path)
    ends = (utcnow() + timedelta(days=7)).isoformat()

    async with _client(app) as client:
        granted = await client.post(
            "/credits/allocate/trial",
            json={"user_id": "user-1", "amount": 100, "app_key": "labs", "trial_ends_at": ends},
        )
        merged = await client.post("/credits/trial/merge", json={"user_id": "user-1", "app_key": "labs"})
        expired = await client.post("/credits/trial/expire", json={"user_id": "user-1"})

    assert granted.json() == {"new_balance": 100, "allocated": 100}
    assert merged.json() == {"merged": 100, "lost": 0}
    assert expired.json() == {"user_id": "user-1", "expired": 0}
    assert (await services.db.get_account("user-1")).subscription_balance == 100


@pytest.mark.asyncio
async def test_topup_bonus_cap_and_reconcile(tmp_path):
    _, app = _build(tmp_path)
    async with _client(app) as client:
        topup = await client.post(
            "/credits/allocate/topup",
            json={"user_id": "user-1", "amount": 270, "pack_name": "Builder Pack"},
        )
        bonus = await client.post(
            "/credits/allocate/retention-bonus", json={"user_id": "user-1", "amount": 50}
        )
        cap = await client.post("/credits/cap/user-1/recalculate")
        report = await client.get("/credits/reconcile/user-1")

    assert topup.json()["new_balance"] == 270
    assert bonus.json()["new_balance"] == 320
    assert cap.json() == {"user_id": "user-1", "cap": 900}
    assert report.json()["consistent"] is True
    assert report.json()["ledger_seq"] == 2


@pytest.mark.asyncio
async def test_stripe_webhook_endpoint(tmp_path):
    services, app = _build(tmp_path)
    payload = json.dumps(
        {
            "id": "evt_1",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_1",
                    "customer": "cus_1",
                    "metadata": {"user_id": "user-1", "type": "topup", "credits": "75"},
                }
            },
        }
    )
    timestamp = int(time.time())
    digest = hmac.new(SECRET.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    headers = {"Stripe-Signature": f"t={timestamp},v1={digest}", "Content-Type": "application/json"}

    async with _client(app) as client:
        first = await client.post("/webhooks/stripe", content=payload, headers=headers)
        replay = await client.post("/webhooks/stripe", content=payload, headers=headers)
        forged = await client.post(
            "/webhooks/stripe", content=payload, headers={"Stripe-Signature": f"t={timestamp},v1=00"}
        )

    assert first.json() == {"received": True, "duplicate": False}
    assert replay.json() == {"received": True, "duplicate": True}
    assert forged.status_code == 400
    assert "error" in forged.json()
    assert (await services.db.get_account("user-1")).topup_balance == 75


@pytest.mark.asyncio
async def test_trial_end_without_offset_is_rejected(tmp_path):
    services, app = _build(tmp_path)
    async with _client(app) as client:
        response = await client.post(
            "/credits/allocate/trial",
            json={
                "user_id": "user-1",
                "amount": 50,
                "app_key": "keywords",
                "trial_ends_at": "2030-01-01T00:00:00",
            },
        )
        balance = await client.get("/credits/balance/user-1")

    assert response.status_code == 422
    assert balance.status_code == 200
    assert await services.db.get_account("user-1") is None
