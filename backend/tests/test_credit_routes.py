"""
Credit Ledger API Tests

Tests for:
- GET  /api/tokens - Current user's ledger
- POST /api/tokens/consume - Debit credits
- POST /api/tokens/estimate, /api/tokens/charge - Usage metering
- /api/tokens/admin/* - Ledger administration
- /api/pricing - Pricing catalog
- GET  /api/images - Metered image search
- /api/payments/wallee/* - Checkout, fulfill, wait and webhook
- Credit recovery after a failed grant
"""

from decimal import Decimal

import httpx
import pytest

import credit_ledger.routes as routes
from credit_ledger.balance_store import BalanceStore
from credit_ledger.engine import LedgerEngine
from credit_ledger.order_ledger import OrderLedger
from credit_ledger.pricing import PricingCatalog
from credit_ledger.wallee_service import WalleeService
from server import app
from utils.auth import create_token

from conftest import ScriptedWallee

USER_HEADERS = {"Authorization": f"Bearer {create_token('u1', 'buyer@example.com')}"}
ADMIN_HEADERS = {"Authorization": f"Bearer {create_token('admin-1', 'admin@example.com', is_admin=True)}"}
OTHER_USER_HEADERS = {"Authorization": f"Bearer {create_token('u2', 'other@example.com')}"}


class FakeImageSearch:
    def __init__(self, urls=None, error=None):
        self.urls = urls or []
        self.error = error
        self.queries = []

    async def search(self, query, num=None):
        self.queries.append(query)
        if self.error:
            raise self.error
        return self.urls


@pytest.fixture
def wallee(monkeypatch):
    provider = ScriptedWallee()
    monkeypatch.setattr(routes, "wallee_service", provider)
    return provider


@pytest.fixture
def images(monkeypatch):
    search = FakeImageSearch(urls=["https://img.example.com/a.jpg"])
    monkeypatch.setattr(routes, "image_search_client", search)
    return search


@pytest.fixture
async def client(db, monkeypatch, wallee, images):
    monkeypatch.setattr(routes, "db", db)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


# ==================== AUTH ====================

class TestAuth:

    @pytest.mark.asyncio
    async def test_requires_token(self, client):
        response = await client.get("/api/tokens")
        assert response.status_code in (401, 403)

    @pytest.mark.asyncio
    async def test_rejects_bad_token(self, client):
        response = await client.get("/api/tokens", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_admin_endpoints_require_admin(self, client):
        response = await client.get("/api/tokens/admin/ledgers", headers=USER_HEADERS)
        assert response.status_code == 403


# ==================== LEDGER ====================

class TestLedgerEndpoints:

    @pytest.mark.asyncio
    async def test_get_ledger_without_one(self, client, db):
        """GET /api/tokens - Users without a ledger see zero balances"""
        response = await client.get("/api/tokens", headers=USER_HEADERS)

        assert response.status_code == 200, f"Failed: {response.text}"
        data = response.json()
        assert data["user_id"] == "u1"
        assert data["available_credits"] == 0
        assert await db.credit_ledgers.count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_consume(self, client, db):
        """POST /api/tokens/consume - Debits and counts spent"""
        await LedgerEngine(db).grant("u1", 10)

        response = await client.post("/api/tokens/consume", json={"amount": 4}, headers=USER_HEADERS)

        assert response.status_code == 200, f"Failed: {response.text}"
        assert response.json()["available_credits"] == 6
        assert response.json()["lifetime_spent"] == 4

    @pytest.mark.asyncio
    async def test_consume_insufficient(self, client, db):
        await LedgerEngine(db).grant("u1", 3)

        response = await client.post("/api/tokens/consume", json={"amount": 4}, headers=USER_HEADERS)

        assert response.status_code == 402
        detail = response.json()["detail"]
        assert detail["error_code"] == "INSUFFICIENT_BALANCE"
        assert detail["remaining_balance"] == 3

    @pytest.mark.asyncio
    async def test_consume_rejects_non_positive(self, client):
        response = await client.post("/api/tokens/consume", json={"amount": 0}, headers=USER_HEADERS)
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_history(self, client, db):
        await LedgerEngine(db).grant("u1", 10)

        response = await client.get("/api/tokens/history", headers=USER_HEADERS)

        assert response.status_code == 200
        assert response.json()["count"] == 1

    @pytest.mark.asyncio
    async def test_estimate_and_charge(self, client, db):
        await LedgerEngine(db).grant("u1", 10)
        body = {"action": "seo_generation", "items": {"per_seo_input": 2, "per_seo_output": 2}}

        estimate = await client.post("/api/tokens/estimate", json=body, headers=USER_HEADERS)
        charge = await client.post("/api/tokens/charge", json=body, headers=USER_HEADERS)

        assert estimate.json()["cost"] == 4
        assert estimate.json()["sufficient_balance"] is True
        assert charge.status_code == 200
        assert charge.json()["remaining_balance"] == 6

    @pytest.mark.asyncio
    async def test_charge_unknown_rate(self, client):
        response = await client.post(
            "/api/tokens/charge", json={"items": {"per_video": 1}}, headers=USER_HEADERS
        )
        assert response.status_code == 400
        assert response.json()["detail"]["error_code"] == "INVALID_DELTA"


# ==================== ADMIN ====================

class TestAdminEndpoints:

    @pytest.mark.asyncio
    async def test_increment_and_get(self, client):
        response = await client.post(
            "/api/tokens/admin/ledgers/u2/increment",
            json={"available_delta": 50, "lifetime_granted_delta": 50},
            headers=ADMIN_HEADERS
        )
        assert response.status_code == 200, f"Failed: {response.text}"

        ledger = await client.get("/api/tokens/admin/ledgers/u2", headers=ADMIN_HEADERS)
        assert ledger.json()["available_credits"] == 50

    @pytest.mark.asyncio
    async def test_increment_refused_below_zero(self, client):
        response = await client.post(
            "/api/tokens/admin/ledgers/u2/increment",
            json={"available_delta": -1},
            headers=ADMIN_HEADERS
        )
        assert response.status_code == 402

    @pytest.mark.asyncio
    async def test_increment_rejects_decreasing_lifetime(self, client):
        response = await client.post(
            "/api/tokens/admin/ledgers/u2/increment",
            json={"lifetime_granted_delta": -5},
            headers=ADMIN_HEADERS
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_list_expiration_delete(self, client, db):
        await LedgerEngine(db).grant("u2", 5)

        listing = await client.get("/api/tokens/admin/ledgers?sort=available_credits:desc", headers=ADMIN_HEADERS)
        assert listing.json()["total"] == 1

        expiration = await client.patch(
            "/api/tokens/admin/ledgers/u2/expiration", json={"expiration": 1767225600}, headers=ADMIN_HEADERS
        )
        assert expiration.json()["expiration"] == 1767225600

        deleted = await client.delete("/api/tokens/admin/ledgers/u2", headers=ADMIN_HEADERS)
        assert deleted.json()["success"] is True

        missing = await client.get("/api/tokens/admin/ledgers/u2", headers=ADMIN_HEADERS)
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_usage_rates(self, client):
        defaults = await client.get("/api/tokens/admin/usage-rates", headers=ADMIN_HEADERS)
        assert defaults.json()["per_image"] == 6

        rates = {"per_image_request": 1, "per_image": 3, "per_seo_input": 1, "per_seo_output": 1}
        created = await client.post("/api/tokens/admin/usage-rates", json=rates, headers=ADMIN_HEADERS)
        assert created.status_code == 201

        again = await client.post("/api/tokens/admin/usage-rates", json=rates, headers=ADMIN_HEADERS)
        assert again.status_code == 400

        updated = await client.patch("/api/tokens/admin/usage-rates", json={"per_image": 4}, headers=ADMIN_HEADERS)
        assert updated.json()["per_image"] == 4


# ==================== PRICING ====================

class TestPricingEndpoints:

    @pytest.mark.asyncio
    async def test_crud(self, client):
        body = {"title": "Pro", "short_description": "Bigger catalogs", "tokens": 2000, "amount": "29.00"}

        forbidden = await client.post("/api/pricing", json=body, headers=USER_HEADERS)
        assert forbidden.status_code == 403

        created = await client.post("/api/pricing", json=body, headers=ADMIN_HEADERS)
        assert created.status_code == 201, f"Failed: {created.text}"
        pricing_id = created.json()["pricing_id"]

        listing = await client.get("/api/pricing")
        assert [p["pricing_id"] for p in listing.json()] == [pricing_id]

        updated = await client.patch(f"/api/pricing/{pricing_id}", json={"tokens": 2500}, headers=ADMIN_HEADERS)
        assert updated.json()["tokens"] == 2500

        deleted = await client.delete(f"/api/pricing/{pricing_id}", headers=ADMIN_HEADERS)
        assert deleted.status_code == 204

        missing = await client.get(f"/api/pricing/{pricing_id}")
        assert missing.status_code == 404


# ==================== IMAGES ====================

class TestImageEndpoint:

    @pytest.mark.asyncio
    async def test_charges_request_and_found_images(self, client, db, images):
        await LedgerEngine(db).grant("u1", 10)

        response = await client.get("/api/images?q=4006381333931", headers=USER_HEADERS)

        assert response.status_code == 200, f"Failed: {response.text}"
        data = response.json()
        assert data["data"] == ["https://img.example.com/a.jpg"]
        assert data["tokens_used"] == 8
        assert data["remaining_balance"] == 2

    @pytest.mark.asyncio
    async def test_no_results_charges_request_only(self, client, db, images):
        images.urls = []
        await LedgerEngine(db).grant("u1", 10)

        response = await client.get("/api/images?q=nothing", headers=USER_HEADERS)

        assert response.json()["tokens_used"] == 2

    @pytest.mark.asyncio
    async def test_insufficient_balance_skips_search(self, client, db, images):
        await LedgerEngine(db).grant("u1", 1)

        response = await client.get("/api/images?q=shoe", headers=USER_HEADERS)

        assert response.status_code == 402
        assert images.queries == []

    @pytest.mark.asyncio
    async def test_results_withheld_when_charge_fails(self, client, db, images):
        await LedgerEngine(db).grant("u1", 5)

        response = await client.get("/api/images?q=shoe", headers=USER_HEADERS)

        assert response.status_code == 402
        assert "data" not in response.json()
        assert await BalanceStore(db).available("u1") == 5

    @pytest.mark.asyncio
    async def test_search_rate_limited(self, client, db, images):
        request = httpx.Request("GET", "https://www.googleapis.com/customsearch/v1")
        images.error = httpx.HTTPStatusError("429", request=request, response=httpx.Response(429, request=request))
        await LedgerEngine(db).grant("u1", 10)

        response = await client.get("/api/images?q=shoe", headers=USER_HEADERS)

        assert response.status_code == 429
        assert await BalanceStore(db).available("u1") == 10


# ==================== PAYMENTS ====================

class TestWalleeEndpoints:

    @pytest.mark.asyncio
    async def test_checkout_creates_pending_order(self, client, db, wallee):
        response = await client.post(
            "/api/payments/wallee/checkout", json={"amount": "10.00"}, headers=USER_HEADERS
        )

        assert response.status_code == 200, f"Failed: {response.text}"
        data = response.json()
        assert data["payment_page_url"].startswith("https://pay.example/")

        order = await OrderLedger(db).get(data["transaction_id"])
        assert order.fulfillment_state == "pending"
        assert order.buyer_user_id == "u1"
        assert order.currency == "EUR"
        assert order.reference.startswith("order-")
        assert wallee.created[0]["amount"] == Decimal("10.00")

    @pytest.mark.asyncio
    async def test_checkout_requires_amount(self, client):
        response = await client.post("/api/payments/wallee/checkout", json={}, headers=USER_HEADERS)
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_checkout_with_pricing_plan(self, client, db, wallee):
        plan = await client.post(
            "/api/pricing",
            json={"title": "Pro", "short_description": "Pro pack", "tokens": 2000, "amount": "29.00"},
            headers=ADMIN_HEADERS
        )
        pricing_id = plan.json()["pricing_id"]

        response = await client.post(
            "/api/payments/wallee/checkout", json={"pricing_id": pricing_id}, headers=USER_HEADERS
        )
        transaction_id = response.json()["transaction_id"]
        wallee.states[transaction_id] = "COMPLETED"

        fulfilled = await client.post(f"/api/payments/wallee/fulfill/{transaction_id}", headers=USER_HEADERS)

        assert fulfilled.json()["credits_granted"] == 2000
        assert await BalanceStore(db).available("u1") == 2000

    @pytest.mark.asyncio
    async def test_status(self, client, wallee):
        response = await client.post(
            "/api/payments/wallee/checkout", json={"amount": "1.00"}, headers=USER_HEADERS
        )
        transaction_id = response.json()["transaction_id"]
        wallee.states[transaction_id] = "PROCESSING"

        response = await client.get(f"/api/payments/wallee/status/{transaction_id}", headers=USER_HEADERS)

        assert response.json() == {"id": transaction_id, "state": "PROCESSING"}

    @pytest.mark.asyncio
    async def test_other_users_orders_are_hidden(self, client, db, wallee):
        response = await client.post(
            "/api/payments/wallee/checkout", json={"amount": "1.00"}, headers=USER_HEADERS
        )
        transaction_id = response.json()["transaction_id"]
        wallee.states[transaction_id] = "AUTHORIZED"

        for path in ("status", "fulfill", "wait"):
            method = client.get if path == "status" else client.post
            response = await method(f"/api/payments/wallee/{path}/{transaction_id}", headers=OTHER_USER_HEADERS)
            assert response.status_code == 404, f"{path} exposed another user's order"

        assert wallee.reads == 0
        assert (await OrderLedger(db).get(transaction_id)).fulfillment_state == "pending"

    @pytest.mark.asyncio
    async def test_admin_can_read_any_order(self, client, wallee):
        response = await client.post(
            "/api/payments/wallee/checkout", json={"amount": "1.00"}, headers=USER_HEADERS
        )
        transaction_id = response.json()["transaction_id"]
        wallee.states[transaction_id] = "PROCESSING"

        response = await client.get(f"/api/payments/wallee/status/{transaction_id}", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        assert response.json()["state"] == "PROCESSING"

    @pytest.mark.asyncio
    async def test_status_unknown_order(self, client, wallee):
        response = await client.get("/api/payments/wallee/status/77", headers=USER_HEADERS)
        assert response.status_code == 404
        assert wallee.reads == 0

    @pytest.mark.asyncio
    async def test_fulfill_status_codes(self, client, wallee):
        ids = []
        for _ in range(3):
            response = await client.post(
                "/api/payments/wallee/checkout", json={"amount": "5.00"}, headers=USER_HEADERS
            )
            ids.append(response.json()["transaction_id"])
        wallee.states.update({ids[0]: "AUTHORIZED", ids[1]: "FAILED", ids[2]: "PROCESSING"})

        success = await client.post(f"/api/payments/wallee/fulfill/{ids[0]}", headers=USER_HEADERS)
        failure = await client.post(f"/api/payments/wallee/fulfill/{ids[1]}", headers=USER_HEADERS)
        pending = await client.post(f"/api/payments/wallee/fulfill/{ids[2]}", headers=USER_HEADERS)

        assert success.status_code == 200
        assert success.json()["ok"] is True
        assert success.json()["credits_granted"] == 500
        assert failure.status_code == 400
        assert failure.json()["ok"] is False
        assert pending.status_code == 202

    @pytest.mark.asyncio
    async def test_fulfill_twice_credits_once(self, client, db, wallee):
        response = await client.post(
            "/api/payments/wallee/checkout", json={"amount": "1.00"}, headers=USER_HEADERS
        )
        transaction_id = response.json()["transaction_id"]
        wallee.states[transaction_id] = "AUTHORIZED"

        first = await client.post(f"/api/payments/wallee/fulfill/{transaction_id}", headers=USER_HEADERS)
        second = await client.post(f"/api/payments/wallee/fulfill/{transaction_id}", headers=USER_HEADERS)

        assert first.json()["already_settled"] is False
        assert second.json()["already_settled"] is True
        assert await BalanceStore(db).available("u1") == 100

    @pytest.mark.asyncio
    async def test_fulfill_unknown_order(self, client):
        response = await client.post("/api/payments/wallee/fulfill/404404", headers=USER_HEADERS)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_fulfill_provider_unavailable(self, client, wallee):
        from credit_ledger.errors import ProviderUnavailable

        response = await client.post(
            "/api/payments/wallee/checkout", json={"amount": "1.00"}, headers=USER_HEADERS
        )
        transaction_id = response.json()["transaction_id"]
        wallee.states[transaction_id] = ProviderUnavailable("read", "timeout")

        fulfilled = await client.post(f"/api/payments/wallee/fulfill/{transaction_id}", headers=USER_HEADERS)

        assert fulfilled.status_code == 502

    @pytest.mark.asyncio
    async def test_wait_returns_settled_order(self, client, db, wallee):
        response = await client.post(
            "/api/payments/wallee/checkout", json={"amount": "2.00"}, headers=USER_HEADERS
        )
        transaction_id = response.json()["transaction_id"]
        wallee.states[transaction_id] = "COMPLETED"

        waited = await client.post(f"/api/payments/wallee/wait/{transaction_id}", headers=USER_HEADERS)

        assert waited.status_code == 200
        assert waited.json()["timeout"] is False
        assert await BalanceStore(db).available("u1") == 200

    @pytest.mark.asyncio
    async def test_webhook_reconciles_in_background(self, client, db, wallee):
        response = await client.post(
            "/api/payments/wallee/checkout", json={"amount": "3.00"}, headers=USER_HEADERS
        )
        transaction_id = response.json()["transaction_id"]
        wallee.states[transaction_id] = "FULFILL"

        hook = await client.post("/api/payments/wallee/webhook", json={"entityId": int(transaction_id)})
        duplicate = await client.post("/api/payments/wallee/webhook", json={"entityId": int(transaction_id)})

        assert hook.json() == {"status": "received"}
        assert duplicate.status_code == 200
        assert await BalanceStore(db).available("u1") == 300
        assert await db.credit_transactions.count_documents({"reference": transaction_id}) == 1

    @pytest.mark.asyncio
    async def test_webhook_unknown_order_is_acknowledged(self, client):
        response = await client.post("/api/payments/wallee/webhook", json={"entityId": 123})
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_webhook_without_entity_id(self, client):
        response = await client.post("/api/payments/wallee/webhook", json={"listenerEntityId": 1})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_list_orders(self, client, wallee):
        await client.post("/api/payments/wallee/checkout", json={"amount": "1.00"}, headers=USER_HEADERS)

        response = await client.get("/api/payments/orders", headers=USER_HEADERS)

        assert response.json()["count"] == 1
        assert response.json()["orders"][0]["fulfillment_state"] == "pending"


# ==================== CREDIT RECOVERY ====================

class TestCreditRecovery:

    @pytest.mark.asyncio
    async def test_webhook_redelivery_recovers_pricing_failure(self, client, db, wallee, monkeypatch):
        response = await client.post(
            "/api/payments/wallee/checkout", json={"amount": "10.00"}, headers=USER_HEADERS
        )
        transaction_id = response.json()["transaction_id"]
        wallee.states[transaction_id] = "AUTHORIZED"

        real_credits_for = PricingCatalog.credits_for
        calls = []

        async def credits_for_failing_once(self, order):
            calls.append(order.order_id)
            if len(calls) == 1:
                raise RuntimeError("pricing store unavailable")
            return await real_credits_for(self, order)

        monkeypatch.setattr(PricingCatalog, "credits_for", credits_for_failing_once)

        first = await client.post("/api/payments/wallee/webhook", json={"entityId": int(transaction_id)})
        assert first.status_code == 200
        assert (await OrderLedger(db).get(transaction_id)).fulfillment_state == "pending"

        await client.post("/api/payments/wallee/webhook", json={"entityId": int(transaction_id)})

        assert await BalanceStore(db).available("u1") == 1000
        assert (await OrderLedger(db).get(transaction_id)).credits_granted == 1000

    @pytest.mark.asyncio
    async def test_uncredited_order_reports_credit_pending(self, client, db, wallee):
        response = await client.post(
            "/api/payments/wallee/checkout", json={"amount": "1.00"}, headers=USER_HEADERS
        )
        transaction_id = response.json()["transaction_id"]
        # Process died between the transition and the grant
        await OrderLedger(db).try_set_fulfilled(transaction_id)

        fulfilled = await client.post(f"/api/payments/wallee/fulfill/{transaction_id}", headers=USER_HEADERS)

        assert fulfilled.status_code == 202
        assert fulfilled.json()["ok"] is False
        assert fulfilled.json()["credit_pending"] is True
        assert fulfilled.json()["fulfillment_state"] == "fulfilled"

    @pytest.mark.asyncio
    async def test_admin_retry_credits_uncredited_order(self, client, db, wallee):
        response = await client.post(
            "/api/payments/wallee/checkout", json={"amount": "1.00"}, headers=USER_HEADERS
        )
        transaction_id = response.json()["transaction_id"]
        await OrderLedger(db).try_set_fulfilled(transaction_id)

        denied = await client.post(
            f"/api/payments/wallee/orders/{transaction_id}/retry-credit", headers=USER_HEADERS
        )
        retried = await client.post(
            f"/api/payments/wallee/orders/{transaction_id}/retry-credit", headers=ADMIN_HEADERS
        )
        again = await client.post(
            f"/api/payments/wallee/orders/{transaction_id}/retry-credit", headers=ADMIN_HEADERS
        )

        assert denied.status_code == 403
        assert retried.status_code == 200, f"Failed: {retried.text}"
        assert retried.json()["credits_granted"] == 100
        assert again.json()["already_settled"] is True
        assert await BalanceStore(db).available("u1") == 100
        assert await db.credit_transactions.count_documents({"reference": transaction_id}) == 1


# ==================== MALFORMED PROVIDER RESPONSES ====================

class TestMalformedProviderResponses:

    @pytest.mark.asyncio
    async def test_checkout_with_unusable_create_response(self, client, db, monkeypatch):
        transport = httpx.MockTransport(lambda request: httpx.Response(201, text="<html>proxy error</html>"))
        monkeypatch.setattr(routes, "wallee_service", WalleeService(transport=transport))

        response = await client.post(
            "/api/payments/wallee/checkout", json={"amount": "10.00"}, headers=USER_HEADERS
        )

        assert response.status_code == 502
        assert await db.payment_orders.count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_fulfill_with_unusable_read_response(self, client, db, wallee, monkeypatch):
        response = await client.post(
            "/api/payments/wallee/checkout", json={"amount": "10.00"}, headers=USER_HEADERS
        )
        transaction_id = response.json()["transaction_id"]
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="not json"))
        monkeypatch.setattr(routes, "wallee_service", WalleeService(transport=transport))

        fulfilled = await client.post(f"/api/payments/wallee/fulfill/{transaction_id}", headers=USER_HEADERS)

        assert fulfilled.status_code == 502
        assert (await OrderLedger(db).get(transaction_id)).fulfillment_state == "pending"
