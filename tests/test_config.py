"""Tests for webhook settings and processor wiring."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from billing_webhooks.config import WebhookSettings, get_settings
from billing_webhooks.webhooks import (
    IN_PROGRESS_TTL_MARGIN_SECONDS,
    build_processor,
    in_progress_ttl_for,
)
from billing_webhooks.webhooks.events import ProcessingStatus
from billing_webhooks.webhooks.idempotency import InMemoryIdempotencyStore, RedisIdempotencyStore
from billing_webhooks.webhooks.retry import RetryPolicy
from billing_webhooks.webhooks.verification import generate_signature_header

NOW = 1_700_000_000


class TestWebhookSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("BILLING_WEBHOOK_SIGNING_SECRET", raising=False)
        settings = WebhookSettings(_env_file=None)
        assert settings.tolerance_seconds == 300
        assert settings.max_attempts == 3
        assert settings.retry_delays == [1.0, 5.0, 15.0]
        assert settings.idempotency_capacity == 1000
        assert settings.signature_header == "Stripe-Signature"
        assert settings.redis_url == ""

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("BILLING_WEBHOOK_SIGNING_SECRET", "whsec_env")
        monkeypatch.setenv("BILLING_WEBHOOK_MAX_ATTEMPTS", "5")
        monkeypatch.setenv("BILLING_WEBHOOK_RETRY_DELAYS", "[2, 4]")
        settings = WebhookSettings(_env_file=None)
        assert settings.signing_secret == "whsec_env"
        assert settings.max_attempts == 5
        assert settings.retry_delays == [2.0, 4.0]

    def test_get_settings_cached(self):
        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
        finally:
            get_settings.cache_clear()


class TestBuildProcessor:
    def test_in_memory_store_by_default(self):
        settings = WebhookSettings(_env_file=None, signing_secret="s", idempotency_capacity=7)
        processor = build_processor(settings)
        assert isinstance(processor._store, InMemoryIdempotencyStore)
        assert processor._store.capacity == 7

    @patch("redis.asyncio.from_url")
    def test_redis_store_when_url_set(self, mock_from_url):
        settings = WebhookSettings(
            _env_file=None, signing_secret="s", redis_url="redis://localhost:6379/0"
        )
        processor = build_processor(settings)
        assert isinstance(processor._store, RedisIdempotencyStore)
        mock_from_url.assert_called_once_with("redis://localhost:6379/0", decode_responses=True)

    def test_retry_policy_from_settings(self):
        settings = WebhookSettings(
            _env_file=None, signing_secret="s", max_attempts=4, retry_delays=[2.0, 3.0]
        )
        policy = build_processor(settings)._retry_policy
        assert policy.max_attempts == 4
        assert policy.delays == (2.0, 3.0)

    @pytest.mark.asyncio
    async def test_no_secret_rejects_everything(self, make_body):
        settings = WebhookSettings(_env_file=None, signing_secret="")
        processor = build_processor(settings)
        body = make_body()
        result = await processor.process(
            body, generate_signature_header(body, "anything", NOW), now=NOW
        )
        assert result.status is ProcessingStatus.FAILURE

    @pytest.mark.asyncio
    async def test_previous_secret_expires(self, make_body):
        settings = WebhookSettings(
            _env_file=None,
            signing_secret="current",
            previous_signing_secret="old",
            previous_secret_valid_until=NOW - 1,
        )
        processor = build_processor(settings)
        body = make_body()
        result = await processor.process(body, generate_signature_header(body, "old", NOW), now=NOW)
        assert result.status is ProcessingStatus.FAILURE


# ── In-progress marker TTL ────────────────────────────────────────────────


class TestInProgressTtl:
    """A claim marker must outlive one event's whole retry budget."""

    def test_default_ttl_covers_default_budget(self):
        settings = WebhookSettings(_env_file=None)
        policy = RetryPolicy(
            max_attempts=settings.max_attempts,
            delays=tuple(settings.retry_delays),
            attempt_timeout=settings.attempt_timeout_seconds,
        )
        assert settings.in_progress_ttl_seconds >= policy.max_duration

    def test_short_ttl_raised_to_budget(self, caplog):
        with caplog.at_level("WARNING", logger="billing_webhooks.webhooks"):
            assert in_progress_ttl_for(RetryPolicy(), 60) == 96 + IN_PROGRESS_TTL_MARGIN_SECONDS
        assert "below the retry budget" in caplog.text

    def test_long_ttl_kept(self):
        assert in_progress_ttl_for(RetryPolicy(), 600) == 600

    def test_unbounded_policy_keeps_configured(self):
        assert in_progress_ttl_for(RetryPolicy(attempt_timeout=None), 60) == 60

    @patch("redis.asyncio.from_url")
    def test_redis_store_gets_budget_ttl(self, mock_from_url):
        settings = WebhookSettings(
            _env_file=None,
            signing_secret="s",
            redis_url="redis://localhost:6379/0",
            in_progress_ttl_seconds=60,
        )
        processor = build_processor(settings)
        assert processor._store.in_progress_ttl >= processor._retry_policy.max_duration
