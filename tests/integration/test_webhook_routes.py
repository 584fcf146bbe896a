"""Integration tests for the payment webhook endpoint."""

import json
import os
import time
from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

from src.core.webhook_signature import build_signature_header

WEBHOOK = "/api/v1/payments/webhook"
SIGNATURE_HEADER = "X-Webhook-Signature"
WEBHOOK_SECRET = os.environ["WEBHOOK_SECRET"]


def deliver(client: TestClient, event: dict, secret: str = WEBHOOK_SECRET):
    body = json.dumps(event).encode()
    return client.post(
        WEBHOOK,
        content=body,
        headers={"Content-Type": "application/json", SIGNATURE_HEADER: build_signature_header(body, secret)},
    )


def payment_event(event_id: str, event_type: str, payment_id: str, order_id: str, **extra) -> dict:
    return {
        "id": event_id,
        "type": event_type,
        "data": {"object": {"id": payment_id, "metadata": {"orderId": order_id}, **extra}},
    }


def pending_intent(client: TestClient, auth_headers) -> tuple[dict, dict]:
    order = client.post(
        "/api/v1/orders",
        json={"items": [{"menuItemId": "family-meal", "quantity": 1}]},
        headers=auth_headers(),
    ).json()["data"]
    intent = client.post(
        "/api/v1/payments/intent",
        json={"orderId": order["id"], "amountCents": 2599},
        headers=auth_headers(),
    ).json()["data"]
    return order, intent


class TestPaymentWebhook:
    """Tests for POST /api/v1/payments/webhook."""

    def test_success_event_captures_payment(self, client: TestClient, auth_headers) -> None:
        order, intent = pending_intent(client, auth_headers)

        response = deliver(client, payment_event("evt_1", "payment_intent.succeeded", intent["providerPaymentId"], order["id"]))

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"] == {"eventId": "evt_1", "status": "processed"}

        stored = client.get(f"/api/v1/payments/{intent['id']}", headers=auth_headers()).json()["data"]
        assert stored["status"] == "CAPTURED"

    def test_duplicate_delivery_is_acknowledged(self, client: TestClient, auth_headers) -> None:
        order, intent = pending_intent(client, auth_headers)
        event = payment_event("evt_2", "payment_intent.succeeded", intent["providerPaymentId"], order["id"])
        deliver(client, event)

        response = deliver(client, event)

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "duplicate"

    def test_failed_payment_blocks_fulfillment(self, client: TestClient, auth_headers) -> None:
        order, intent = pending_intent(client, auth_headers)
        deliver(
            client,
            payment_event(
                "evt_3",
                "payment_intent.payment_failed",
                intent["providerPaymentId"],
                order["id"],
                last_payment_error={"message": "Insufficient funds"},
            ),
        )

        stored = client.get(f"/api/v1/payments/{intent['id']}", headers=auth_headers()).json()["data"]
        assert stored["status"] == "FAILED"
        assert stored["failureReason"] == "Insufficient funds"

        response = client.post(f"/api/v1/orders/{order['id']}/accept", headers=auth_headers("vendor-1", "VENDOR"))
        assert response.status_code == 402
        assert response.json()["error"] == "payment_required"

    def test_invalid_signature_is_401(self, client: TestClient) -> None:
        response = deliver(client, {"id": "evt_4", "type": "payment.success", "data": {}}, secret="forged")

        assert response.status_code == 401
        assert response.json()["error"] == "invalid_signature"

    def test_non_ascii_signature_is_401(self, client: TestClient) -> None:
        header = f"t={int(time.time())},v1=éé".encode("utf-8")

        response = client.post(
            WEBHOOK,
            content=b'{"id": "evt_7", "type": "payment.success"}',
            headers={"Content-Type": "application/json", SIGNATURE_HEADER: header},
        )

        assert response.status_code == 401
        assert response.json()["error"] == "invalid_signature"

    def test_missing_signature_is_401(self, client: TestClient) -> None:
        response = client.post(WEBHOOK, content=b'{"id": "evt_5"}', headers={"Content-Type": "application/json"})

        assert response.status_code == 401

    def test_malformed_payload_is_400(self, client: TestClient) -> None:
        body = b"{not json"

        response = client.post(
            WEBHOOK,
            content=body,
            headers={SIGNATURE_HEADER: build_signature_header(body, WEBHOOK_SECRET)},
        )

        assert response.status_code == 400

    def test_apply_failure_is_accepted_for_retry(self, client: TestClient, container) -> None:
        event = payment_event("evt_6", "payment.success", "pi_any", "order-any")

        with patch.object(
            container.payments,
            "apply_provider_event",
            AsyncMock(side_effect=RuntimeError("database unavailable")),
        ):
            response = deliver(client, event)

        assert response.status_code == 202
        assert response.json()["data"]["status"] == "accepted"
