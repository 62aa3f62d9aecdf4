"""P1 CRITICAL: Webhook HTTP endpoint tests.

Verifies the full HTTP request flow through the webhook route:
- Signature verification at HTTP level (400 on failure)
- Idempotency (duplicate delivery is 200, not reprocessed)
- 200 for every non-signature outcome so the provider stops redelivering
- No information disclosure in responses
- Secret rotation grace window
"""

from __future__ import annotations

import time

import pytest

from billing_webhooks.webhooks.collaborators import EntityKind
from billing_webhooks.webhooks.events import ProcessingResult
from billing_webhooks.webhooks.exceptions import (
    InvalidSignatureError,
    MalformedPayloadError,
    MaxRetriesExceededError,
    StaleSignatureError,
)
from billing_webhooks.webhooks.routes import status_code_for

WEBHOOK_PATH = "/webhooks/stripe"


class TestSignatureAtHttpLevel:
    """Forged, stale or missing signatures are 400 and change nothing."""

    def test_valid_webhook_returns_200(self, client, make_body, signed_request, billing_store):
        body = make_body("evt_http_1")
        resp = client.post(WEBHOOK_PATH, content=body, headers=signed_request(body))

        assert resp.status_code == 200
        assert resp.json() == {"status": "received"}
        assert billing_store.get(EntityKind.CUSTOMER, "cus_1") is not None

    def test_invalid_signature_returns_400(self, client, make_body, signed_request, billing_store):
        body = make_body()
        resp = client.post(WEBHOOK_PATH, content=body, headers=signed_request(body, secret="forged"))

        assert resp.status_code == 400
        assert billing_store.writes == 0

    def test_no_signature_returns_400(self, client, make_body):
        """Missing signature header -> 400 (fail-closed)."""
        resp = client.post(
            WEBHOOK_PATH, content=make_body(), headers={"Content-Type": "application/json"}
        )
        assert resp.status_code == 400

    def test_stale_signature_returns_400(self, client, make_body, signed_request):
        body = make_body()
        headers = signed_request(body, timestamp=int(time.time()) - 301)
        assert client.post(WEBHOOK_PATH, content=body, headers=headers).status_code == 400

    def test_tampered_body_returns_400(self, client, make_body, signed_request):
        body = make_body()
        headers = signed_request(body)
        tampered = body.replace(b"8990", b"1")
        assert client.post(WEBHOOK_PATH, content=tampered, headers=headers).status_code == 400

    def test_non_ascii_signature_returns_400(self, client, make_body, billing_store):
        """Latin-1 bytes in the header are a rejection, never a 500."""
        header = f"t={int(time.time())},v1=\xe9abc".encode("latin-1")
        resp = client.post(
            WEBHOOK_PATH,
            content=make_body(),
            headers={"Stripe-Signature": header, "Content-Type": "application/json"},
        )
        assert resp.status_code == 400
        assert billing_store.writes == 0

    def test_rotated_out_secret_in_grace_window(self, client, make_body, signed_request):
        body = make_body("evt_rotated")
        headers = signed_request(body, secret="whsec_rotated_out")
        assert client.post(WEBHOOK_PATH, content=body, headers=headers).status_code == 200


class TestIdempotencyAtHttpLevel:
    def test_duplicate_returns_200_without_reprocessing(
        self, client, make_body, signed_request, billing_store, webhook_processor
    ):
        body = make_body("evt_dup")
        first = client.post(WEBHOOK_PATH, content=body, headers=signed_request(body))
        second = client.post(WEBHOOK_PATH, content=body, headers=signed_request(body))

        assert first.status_code == 200
        assert second.status_code == 200
        assert billing_store.writes == 1
        assert webhook_processor.ledger.recent()[-1].status.value == "ignored"

    def test_unknown_event_type_returns_200(self, client, make_body, signed_request):
        body = make_body("evt_unknown", "charge.refunded", {"id": "ch_1"})
        assert client.post(WEBHOOK_PATH, content=body, headers=signed_request(body)).status_code == 200

    def test_handler_failure_returns_200(self, client, make_body, signed_request, billing_store):
        """Terminal handler failure is logged for replay, not bounced back to the provider."""
        body = make_body("evt_bad", obj={"amount_paid": 100})
        resp = client.post(WEBHOOK_PATH, content=body, headers=signed_request(body))
        assert resp.status_code == 200
        assert billing_store.writes == 0


class TestInformationDisclosure:
    """Responses never echo error detail, secrets or payload data."""

    def test_signature_failure_body_is_generic(self, client, make_body, signed_request):
        body = make_body()
        resp = client.post(WEBHOOK_PATH, content=body, headers=signed_request(body, secret="forged"))
        assert resp.json() == {"status": "unauthorized"}
        assert "mismatch" not in resp.text
        assert "whsec" not in resp.text

    def test_decode_failure_body_is_generic(self, client, signed_request):
        body = b"{not json"
        resp = client.post(WEBHOOK_PATH, content=body, headers=signed_request(body))
        assert resp.status_code == 200
        assert resp.json() == {"status": "received"}
        assert "JSON" not in resp.text

    def test_status_route_has_no_payload_data(self, client, make_body, signed_request):
        body = make_body("evt_status")
        client.post(WEBHOOK_PATH, content=body, headers=signed_request(body))

        resp = client.get(f"{WEBHOOK_PATH}/status")
        assert resp.status_code == 200
        data = resp.json()
        assert data["total"] == 1
        assert data["last_event_id"] == "evt_status"
        assert "cus_1" not in resp.text

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}


class TestStatusCodeMapping:
    @pytest.mark.parametrize(
        "result,expected",
        [
            (ProcessingResult.success("ok"), 200),
            (ProcessingResult.ignored("Duplicate event"), 200),
            (ProcessingResult.failure(InvalidSignatureError()), 400),
            (ProcessingResult.failure(StaleSignatureError(1, 500.0, 300)), 400),
            (ProcessingResult.failure(MalformedPayloadError("bad")), 200),
            (ProcessingResult.failure(MaxRetriesExceededError(3)), 200),
        ],
    )
    def test_status_code_for(self, result, expected):
        assert status_code_for(result) == expected
