"""Shared fixtures for the billing webhook test suite."""

from __future__ import annotations

import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from billing_webhooks.webhooks.collaborators import InMemoryBillingStore
from billing_webhooks.webhooks.dispatcher import EventDispatcher
from billing_webhooks.webhooks.idempotency import InMemoryIdempotencyStore
from billing_webhooks.webhooks.processor import WebhookProcessor
from billing_webhooks.webhooks.retry import RetryPolicy
from billing_webhooks.webhooks.verification import (
    SignatureVerifier,
    StaticSecretProvider,
    generate_signature_header,
)

SECRET = "whsec_test_secret"
NOW = 1_700_000_000  # 2023-11-14 22:13:20 UTC


@pytest.fixture
def make_body():
    """Factory for raw event bodies.

    make_body(event_id="evt_1", event_type="invoice.payment_succeeded", obj={...}, **envelope)
    """

    def _make(
        event_id: str = "evt_1",
        event_type: str = "invoice.payment_succeeded",
        obj: dict[str, Any] | None = None,
        created: int = NOW,
        **envelope: Any,
    ) -> bytes:
        body = {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": created,
            "livemode": False,
            "data": {
                "object": obj if obj is not None else {"customer": "cus_1", "amount_paid": 8990}
            },
        }
        body.update(envelope)
        return json.dumps(body).encode()

    return _make


@pytest.fixture
def sign():
    """Factory for signature headers: sign(body, timestamp=NOW, secret=SECRET)."""

    def _sign(body: bytes, timestamp: int = NOW, secret: str = SECRET) -> str:
        return generate_signature_header(body, secret, timestamp)

    return _sign


@pytest.fixture
def billing_store() -> InMemoryBillingStore:
    return InMemoryBillingStore()


@pytest.fixture
def notifier() -> MagicMock:
    mock = MagicMock()
    mock.notify = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def idempotency_store() -> InMemoryIdempotencyStore:
    return InMemoryIdempotencyStore(capacity=1000)


@pytest.fixture
def sleep() -> AsyncMock:
    """Stand-in for asyncio.sleep that records the requested delays."""
    return AsyncMock(return_value=None)


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, delays=(1.0, 5.0, 15.0), attempt_timeout=5.0)


@pytest.fixture
def make_processor(idempotency_store, notifier, sleep, retry_policy):
    """Factory building a processor around a given billing store."""

    def _make(store=None, **kwargs: Any) -> WebhookProcessor:
        return WebhookProcessor(
            verifier=SignatureVerifier(StaticSecretProvider(SECRET)),
            store=kwargs.pop("idempotency_store", idempotency_store),
            dispatcher=EventDispatcher(
                store if store is not None else InMemoryBillingStore(), notifier
            ),
            retry_policy=kwargs.pop("retry_policy", retry_policy),
            sleep=kwargs.pop("sleep", sleep),
            **kwargs,
        )

    return _make


@pytest.fixture
def processor(make_processor, billing_store) -> WebhookProcessor:
    return make_processor(billing_store)
