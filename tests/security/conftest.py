"""Security test fixtures.

Responsibilities:
- Creates the FastAPI `app` fixture around a real WebhookProcessor
- Wraps it in a TestClient (attacker perspective: no special headers)
- Provides signed_request for building correctly signed deliveries
- Scoped to tests/security/ only

The global tests/conftest.py provides make_body, billing_store and notifier.
"""

from __future__ import annotations

import time
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from billing_webhooks.app import create_app
from billing_webhooks.config import WebhookSettings
from billing_webhooks.webhooks import build_processor
from billing_webhooks.webhooks.verification import generate_signature_header

WEBHOOK_SECRET = "whsec_security_suite"


@pytest.fixture
def webhook_settings() -> WebhookSettings:
    return WebhookSettings(
        signing_secret=WEBHOOK_SECRET,
        previous_signing_secret="whsec_rotated_out",
        previous_secret_valid_until=time.time() + 3600,
        max_attempts=2,
        retry_delays=[0.0],
    )


@pytest.fixture
def webhook_processor(webhook_settings, billing_store, notifier):
    processor = build_processor(webhook_settings, store=billing_store, notifier=notifier)
    processor._sleep = AsyncMock()
    return processor


@pytest.fixture
def app(webhook_settings, webhook_processor):
    return create_app(webhook_settings, webhook_processor)


@pytest.fixture
def client(app):
    """Unauthenticated TestClient (attacker perspective)."""
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture
def signed_request():
    """Factory: signed_request(body, secret=WEBHOOK_SECRET, timestamp=None) -> headers."""

    def _make(body: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> dict:
        ts = int(time.time()) if timestamp is None else timestamp
        return {
            "Stripe-Signature": generate_signature_header(body, secret, ts),
            "Content-Type": "application/json",
        }

    return _make
