"""
HTTP API tests against the FastAPI app, with the fake Paystack API behind it.
"""
import json
import uuid
from typing import Any

import httpx
import pytest
from sqlalchemy import select

from compliance_payments.api.dependencies import payment_rate_rule
from compliance_payments.core.audit import AuditEventType
from compliance_payments.database.models import AuditLog
from tests.helpers import auth_headers, charge_event, make_token, signed_headers


async def audit_events(session_factory: Any) -> list:
    async with session_factory() as db:
        result = await db.execute(select(AuditLog.event_type))
        return list(result.scalars().all())


@pytest.mark.integration
class TestAuthentication:
    @pytest.mark.asyncio
    async def test_missing_token(self, client: httpx.AsyncClient, session_factory: Any) -> None:
        response = await client.get("/payments")

        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"
        assert await audit_events(session_factory) == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "token",
        [
            "not-a-jwt",
            make_token(uuid.uuid4(), secret="another-secret-that-is-at-least-32-bytes"),
            make_token(uuid.uuid4(), audience="anon"),
            make_token(uuid.uuid4(), expires_in=-60),
        ],
    )
    async def test_invalid_token_is_audited(
        self, client: httpx.AsyncClient, session_factory: Any, token: str
    ) -> None:
        response = await client.get("/payments", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 401
        assert await audit_events(session_factory) == [AuditEventType.AUTH_FAILED.value]


@pytest.mark.integration
class TestInitializeEndpoint:
    @pytest.mark.asyncio
    async def test_initialize(
        self, client: httpx.AsyncClient, user_id: uuid.UUID, fake_paystack: Any
    ) -> None:
        response = await client.post(
            "/payments/initialize",
            json={"amount": 5000, "currency": "NGN", "email": "ada@example.com"},
            headers=auth_headers(user_id),
        )

        assert response.status_code == 200
        body = response.json()
        transaction = body["transaction"]
        assert transaction["status"] == "pending"
        assert transaction["user_id"] == str(user_id)
        assert transaction["amount"] == 5000.0
        assert body["authorizationUrl"] == (
            f"https://checkout.paystack.com/{transaction['payment_reference']}"
        )
        assert len(fake_paystack.requests_to("/transaction/initialize")) == 1

    @pytest.mark.asyncio
    async def test_invalid_amount(
        self, client: httpx.AsyncClient, user_id: uuid.UUID, fake_paystack: Any
    ) -> None:
        response = await client.post(
            "/payments/initialize",
            json={"amount": 0, "currency": "NGN", "email": "ada@example.com"},
            headers=auth_headers(user_id),
        )

        assert response.status_code == 400
        assert "Amount must be between" in response.json()["detail"]
        assert fake_paystack.requests == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["500", "1e3", True, None])
    @pytest.mark.parametrize("path", ["/payments/initialize", "/payment-operations"])
    async def test_non_numeric_amount_is_rejected(
        self,
        client: httpx.AsyncClient,
        user_id: uuid.UUID,
        fake_paystack: Any,
        path: str,
        amount: Any,
    ) -> None:
        payload = {"amount": amount, "currency": "ngn", "email": "ada@example.com"}
        if path == "/payment-operations":
            payload["action"] = "initialize"

        response = await client.post(path, json=payload, headers=auth_headers(user_id))

        assert response.status_code == 400
        assert fake_paystack.requests == []
        listing = await client.get("/payments", headers=auth_headers(user_id))
        assert listing.json()["transactions"] == []

    @pytest.mark.asyncio
    async def test_malformed_body(self, client: httpx.AsyncClient, user_id: uuid.UUID) -> None:
        response = await client.post(
            "/payments/initialize",
            json={"amount": "lots", "currency": "NGN"},
            headers=auth_headers(user_id),
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid request"

    @pytest.mark.asyncio
    async def test_paystack_rejection(
        self, client: httpx.AsyncClient, user_id: uuid.UUID, fake_paystack: Any
    ) -> None:
        fake_paystack.initialize_response = httpx.Response(
            401, json={"status": False, "message": "Invalid key"}
        )

        response = await client.post(
            "/payments/initialize",
            json={"amount": 100, "currency": "NGN", "email": "ada@example.com"},
            headers=auth_headers(user_id),
        )

        assert response.status_code == 502
        assert response.json()["detail"] == "Failed to initialize payment"

        listing = await client.get("/payments", headers=auth_headers(user_id))
        assert listing.json()["transactions"] == []


@pytest.mark.integration
class TestVerifyEndpoint:
    @pytest.mark.asyncio
    async def test_verify(
        self,
        client: httpx.AsyncClient,
        user_id: uuid.UUID,
        make_transaction: Any,
        fake_paystack: Any,
    ) -> None:
        tx = await make_transaction(user_id, status="pending")
        fake_paystack.set_status(tx.payment_reference, "success")

        response = await client.post(
            "/payments/verify",
            json={"reference": tx.payment_reference},
            headers=auth_headers(user_id),
        )

        assert response.status_code == 200
        assert response.json()["transaction"]["status"] == "success"

    @pytest.mark.asyncio
    async def test_verify_someone_elses_reference(
        self, client: httpx.AsyncClient, user_id: uuid.UUID, make_transaction: Any
    ) -> None:
        tx = await make_transaction(uuid.uuid4(), status="pending")

        response = await client.post(
            "/payments/verify",
            json={"reference": tx.payment_reference},
            headers=auth_headers(user_id),
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_verify_gateway_failure(
        self,
        client: httpx.AsyncClient,
        user_id: uuid.UUID,
        make_transaction: Any,
        fake_paystack: Any,
    ) -> None:
        tx = await make_transaction(user_id, status="pending")
        fake_paystack.verify_response = httpx.Response(
            400, json={"status": False, "message": "Invalid key"}
        )

        response = await client.post(
            "/payments/verify",
            json={"reference": tx.payment_reference},
            headers=auth_headers(user_id),
        )

        assert response.status_code == 502
        assert response.json()["detail"] == "Failed to verify payment"


@pytest.mark.integration
class TestPaymentOperationsEndpoint:
    @pytest.mark.asyncio
    async def test_initialize_action(self, client: httpx.AsyncClient, user_id: uuid.UUID) -> None:
        response = await client.post(
            "/payment-operations",
            json={
                "action": "initialize",
                "amount": 250.5,
                "currency": "ngn",
                "email": "ada@example.com",
            },
            headers=auth_headers(user_id),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["transaction"]["currency"] == "NGN"
        assert body["transaction"]["amount"] == 250.5
        assert body["authorizationUrl"].startswith("https://checkout.paystack.com/")

    @pytest.mark.asyncio
    async def test_verify_action(
        self,
        client: httpx.AsyncClient,
        user_id: uuid.UUID,
        make_transaction: Any,
        fake_paystack: Any,
    ) -> None:
        tx = await make_transaction(user_id, status="pending")
        fake_paystack.set_status(tx.payment_reference, "failed")

        response = await client.post(
            "/payment-operations",
            json={"action": "verify", "reference": tx.payment_reference},
            headers=auth_headers(user_id),
        )

        assert response.status_code == 200
        assert response.json()["transaction"]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_missing_fields_for_action(
        self, client: httpx.AsyncClient, user_id: uuid.UUID
    ) -> None:
        response = await client.post(
            "/payment-operations",
            json={"action": "verify"},
            headers=auth_headers(user_id),
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "Reference is required"

    @pytest.mark.asyncio
    async def test_invalid_action(self, client: httpx.AsyncClient, user_id: uuid.UUID) -> None:
        response = await client.post(
            "/payment-operations",
            json={"action": "refund"},
            headers=auth_headers(user_id),
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid action"


@pytest.mark.integration
class TestRateLimiting:
    @pytest.mark.asyncio
    async def test_payment_operations_are_throttled_per_user(
        self,
        client: httpx.AsyncClient,
        user_id: uuid.UUID,
        session_factory: Any,
        test_settings: Any,
    ) -> None:
        headers = auth_headers(user_id)
        payload = {"reference": "ref_does_not_exist"}
        rule = payment_rate_rule(test_settings)

        for _ in range(rule.limit):
            response = await client.post("/payments/verify", json=payload, headers=headers)
            assert response.status_code == 404

        response = await client.post("/payments/verify", json=payload, headers=headers)

        assert response.status_code == 429
        assert 1 <= int(response.headers["retry-after"]) <= rule.window_ms // 1000
        assert AuditEventType.RATE_LIMITED.value in await audit_events(session_factory)

        other_user = await client.post(
            "/payments/verify", json=payload, headers=auth_headers(uuid.uuid4())
        )
        assert other_user.status_code == 404


@pytest.mark.integration
class TestTransactionQueries:
    @pytest.mark.asyncio
    async def test_list_and_get(
        self, client: httpx.AsyncClient, user_id: uuid.UUID, make_transaction: Any
    ) -> None:
        mine = await make_transaction(user_id, metadata={"filing_id": "f-1"})
        theirs = await make_transaction(uuid.uuid4())

        listing = await client.get("/payments", headers=auth_headers(user_id))
        assert listing.status_code == 200
        assert [tx["id"] for tx in listing.json()["transactions"]] == [str(mine.id)]

        detail = await client.get(f"/payments/{mine.id}", headers=auth_headers(user_id))
        assert detail.status_code == 200
        assert detail.json()["metadata"] == {"filing_id": "f-1"}

        hidden = await client.get(f"/payments/{theirs.id}", headers=auth_headers(user_id))
        assert hidden.status_code == 404

    @pytest.mark.asyncio
    async def test_list_limit_bounds(self, client: httpx.AsyncClient, user_id: uuid.UUID) -> None:
        response = await client.get("/payments?limit=500", headers=auth_headers(user_id))
        assert response.status_code == 400


@pytest.mark.integration
class TestWebhookEndpoint:
    @pytest.mark.asyncio
    async def test_charge_success(
        self, client: httpx.AsyncClient, make_transaction: Any, user_id: uuid.UUID
    ) -> None:
        tx = await make_transaction(user_id, status="pending")
        body = charge_event(tx.payment_reference)

        response = await client.post("/webhooks/paystack", content=body, headers=signed_headers(body))

        assert response.status_code == 200
        assert response.json() == {
            "message": "Webhook processed successfully",
            "reference": tx.payment_reference,
            "old_status": "pending",
            "new_status": "success",
        }

        redelivery = await client.post(
            "/webhooks/paystack", content=body, headers=signed_headers(body)
        )
        assert redelivery.status_code == 200
        assert redelivery.json() == {"message": "Already processed", "current_status": "success"}

    @pytest.mark.asyncio
    async def test_missing_signature(self, client: httpx.AsyncClient, session_factory: Any) -> None:
        response = await client.post(
            "/webhooks/paystack",
            content=charge_event("ref_1"),
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 401
        assert await audit_events(session_factory) == []

    @pytest.mark.asyncio
    async def test_forged_signature_is_audited(
        self, client: httpx.AsyncClient, session_factory: Any
    ) -> None:
        body = charge_event("ref_1")

        response = await client.post(
            "/webhooks/paystack",
            content=body,
            headers=signed_headers(body, secret="sk_test_forged"),
        )

        assert response.status_code == 401
        assert await audit_events(session_factory) == [AuditEventType.SUSPICIOUS_ACTIVITY.value]

    @pytest.mark.asyncio
    async def test_unknown_reference(self, client: httpx.AsyncClient) -> None:
        body = charge_event("ref_never_created")

        response = await client.post("/webhooks/paystack", content=body, headers=signed_headers(body))

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_invalid_json(self, client: httpx.AsyncClient) -> None:
        body = b"{not json"

        response = await client.post("/webhooks/paystack", content=body, headers=signed_headers(body))

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid JSON payload"

    @pytest.mark.asyncio
    async def test_ignored_event(self, client: httpx.AsyncClient) -> None:
        body = json.dumps({"event": "subscription.create", "data": {}}).encode("utf-8")

        response = await client.post("/webhooks/paystack", content=body, headers=signed_headers(body))

        assert response.status_code == 200
        assert response.json() == {"message": "Event ignored"}


@pytest.mark.integration
class TestAdminEndpoints:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("headers", [{}, {"X-Admin-Token": "wrong"}])
    async def test_reconcile_requires_admin_token(
        self, client: httpx.AsyncClient, headers: dict
    ) -> None:
        response = await client.post("/admin/reconcile", headers=headers)
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_reconcile(
        self,
        client: httpx.AsyncClient,
        make_transaction: Any,
        user_id: uuid.UUID,
        fake_paystack: Any,
    ) -> None:
        tx = await make_transaction(user_id, status="pending")
        fake_paystack.set_status(tx.payment_reference, "success")

        response = await client.post(
            "/admin/reconcile?older_than_seconds=0",
            headers={"X-Admin-Token": "test-admin-token"},
        )

        assert response.status_code == 200
        assert response.json() == {"checked": 1, "updated": 1, "unchanged": 0, "errors": 0}


@pytest.mark.integration
class TestMonitoringEndpoints:
    @pytest.mark.asyncio
    async def test_health(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert set(body["checks"]) == {"database", "paystack"}

    @pytest.mark.asyncio
    async def test_health_reports_paystack_outage(
        self, client: httpx.AsyncClient, fake_paystack: Any
    ) -> None:
        fake_paystack.list_response = httpx.Response(
            503, json={"status": False, "message": "Service unavailable"}
        )

        response = await client.get("/health")

        assert response.json()["status"] == "unhealthy"
        assert response.json()["checks"]["paystack"]["status"] == "unhealthy"

        ready = await client.get("/health/ready")
        assert ready.status_code == 200
        assert ready.json()["status"] == "ready"

    @pytest.mark.asyncio
    async def test_liveness(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    @pytest.mark.asyncio
    async def test_metrics(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "payment_initializations_total" in response.text

    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health/live", headers={"X-Request-ID": "req-123"})
        assert response.headers["x-request-id"] == "req-123"
