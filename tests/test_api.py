"""
Integration tests through the HTTP API.
"""
from decimal import Decimal
from typing import Any, Dict

import pytest
import pytest_asyncio
from httpx import AsyncClient

from paycode.api.main import create_app
from paycode.config import Settings


async def open_account(client: AsyncClient, kind: str, name: str, account_id: str) -> None:
    response = await client.post(
        "/api/accounts",
        json={"kind": kind, "display_name": name, "account_id": account_id},
    )
    assert response.status_code == 201, response.text


async def create_order(client: AsyncClient, amount: str = "25.00") -> Dict[str, Any]:
    response = await client.post(
        "/api/orders/create",
        json={"merchant_id": "m_shop", "amount": amount, "description": "Lunch"},
    )
    assert response.status_code == 201, response.text
    return response.json()


@pytest_asyncio.fixture
async def funded(client: AsyncClient) -> AsyncClient:
    await open_account(client, "merchant", "Noodle Shop", "m_shop")
    await open_account(client, "payer", "Alice", "p_alice")
    response = await client.post("/api/accounts/p_alice/recharge", json={"amount": "100.00"})
    assert response.status_code == 200, response.text
    return client


class TestPaymentFlow:
    """End-to-end payment scenarios."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_full_payment_flow(self, funded: AsyncClient) -> None:
        client = funded
        order = await create_order(client)
        assert len(order["payment_code"]) == 8
        assert Decimal(order["amount"]) == Decimal("25.00")

        query = await client.get(f"/api/payments/query/{order['payment_code']}")
        assert query.status_code == 200
        assert query.json()["merchant_name"] == "Noodle Shop"
        assert query.json()["description"] == "Lunch"

        paid = await client.post(
            "/api/payments/process",
            json={"payment_code": order["payment_code"], "payer_id": "p_alice"},
        )
        assert paid.status_code == 200, paid.text
        body = paid.json()
        assert Decimal(body["payer_new_balance"]) == Decimal("75.00")
        assert body["status"] == "completed"

        status = await client.get(f"/api/orders/{order['order_id']}/status")
        assert status.json()["status"] == "completed"
        assert status.json()["payment_id"] == body["payment_id"]

        merchant = await client.get("/api/accounts/m_shop")
        assert Decimal(merchant.json()["balance"]) == Decimal("25.00")

        payment = await client.get(f"/api/payments/{body['payment_id']}")
        assert payment.status_code == 200
        assert payment.json()["payer_id"] == "p_alice"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_second_payment_returns_conflict_envelope(self, funded: AsyncClient) -> None:
        client = funded
        order = await create_order(client)
        payload = {"payment_code": order["payment_code"], "payer_id": "p_alice"}
        await client.post("/api/payments/process", json=payload)

        again = await client.post(
            "/api/payments/process", json=payload, headers={"X-Request-ID": "req-42"}
        )

        assert again.status_code == 409
        body = again.json()
        assert body["success"] is False
        assert body["error"]["code"] == "ORDER_NOT_PENDING"
        assert body["error"]["context"]["status"] == "completed"
        assert body["request_id"] == "req-42"
        assert again.headers["X-Request-ID"] == "req-42"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_insufficient_funds(self, funded: AsyncClient) -> None:
        order = await create_order(funded, amount="150.00")

        response = await funded.post(
            "/api/payments/process",
            json={"payment_code": order["payment_code"], "payer_id": "p_alice"},
        )

        assert response.status_code == 402
        assert response.json()["error"]["code"] == "INSUFFICIENT_FUNDS"
        assert response.json()["error"]["context"]["shortfall_cents"] == 5000

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund(self, funded: AsyncClient) -> None:
        order = await create_order(funded)
        paid = await funded.post(
            "/api/payments/process",
            json={"payment_code": order["payment_code"], "payer_id": "p_alice"},
        )

        refund = await funded.post(f"/api/payments/{paid.json()['payment_id']}/refund")

        assert refund.status_code == 200, refund.text
        assert Decimal(refund.json()["payer_new_balance"]) == Decimal("100.00")
        assert refund.json()["status"] == "refunded"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel_order(self, funded: AsyncClient) -> None:
        order = await create_order(funded)

        cancelled = await funded.post(f"/api/orders/{order['order_id']}/cancel")
        query = await funded.get(f"/api/payments/query/{order['payment_code']}")

        assert cancelled.json()["status"] == "cancelled"
        assert query.status_code == 409

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_transaction_history(self, funded: AsyncClient) -> None:
        order = await create_order(funded)
        await funded.post(
            "/api/payments/process",
            json={"payment_code": order["payment_code"], "payer_id": "p_alice"},
        )

        first = await funded.get("/api/accounts/p_alice/transactions", params={"limit": 1})
        cursor = first.json()["next_cursor"]
        second = await funded.get(
            "/api/accounts/p_alice/transactions", params={"after": cursor, "limit": 1}
        )

        assert [t["type"] for t in first.json()["transactions"]] == ["recharge"]
        assert [t["type"] for t in second.json()["transactions"]] == ["payment_debit"]
        assert Decimal(second.json()["transactions"][0]["amount"]) == Decimal("-25.00")
        assert second.json()["next_cursor"] is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reconciliation_endpoint(self, funded: AsyncClient) -> None:
        response = await funded.get("/admin/reconciliation")

        assert response.status_code == 200
        assert response.json()["is_balanced"] is True
        assert response.json()["accounts_checked"] == 3


class TestErrorEnvelope:
    """Validation and lookup failures share one response shape."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_code(self, funded: AsyncClient) -> None:
        response = await funded.get("/api/payments/query/12345678")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_malformed_code(self, funded: AsyncClient) -> None:
        response = await funded.get("/api/payments/query/abc")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_negative_amount(self, funded: AsyncClient) -> None:
        response = await funded.post(
            "/api/orders/create", json={"merchant_id": "m_shop", "amount": "-5.00"}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_AMOUNT"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_request_validation(self, funded: AsyncClient) -> None:
        response = await funded.post("/api/orders/create", json={"amount": "1.005"})

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "VALIDATION_ERROR"
        fields = {f["field"] for f in body["error"]["context"]["fields"]}
        assert {"merchant_id", "amount"} <= fields

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_bank_shortfall(self, client: AsyncClient) -> None:
        await open_account(client, "payer", "Bob", "p_bob")

        response = await client.post(
            "/api/accounts/p_bob/recharge", json={"amount": "20000.00"}
        )

        assert response.status_code == 402
        assert response.json()["error"]["code"] == "BANK_INSUFFICIENT_FUNDS"


class TestMonitoring:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert "redis" not in response.json()["checks"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_liveness_and_readiness(self, client: AsyncClient) -> None:
        assert (await client.get("/health/live")).json()["status"] == "alive"
        assert (await client.get("/health/ready")).status_code == 200

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics(self, funded: AsyncClient) -> None:
        response = await funded.get("/metrics")

        assert response.status_code == 200
        assert "paycode_recharges_total" in response.text

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_webhook_ack(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/webhooks/payment-status",
            json={"event": "payment.completed", "order_id": "o_1", "status": "completed"},
        )

        assert response.status_code == 200
        assert response.json() == {"received": True, "event_type": "payment.completed"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_docs_served_outside_production(self, client: AsyncClient) -> None:
        assert (await client.get("/openapi.json")).status_code == 200

    @pytest.mark.unit
    def test_docs_hidden_in_production(self, test_settings: Settings) -> None:
        production = test_settings.model_copy(update={"app_env": "production"})

        app = create_app(production)

        assert app.docs_url is None
        assert app.redoc_url is None
        assert app.openapi_url is None
