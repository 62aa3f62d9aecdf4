"""Billing webhook configuration."""

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings


class WebhookSettings(BaseSettings):
    """Environment-driven settings for the webhook endpoint."""

    # Signing secrets (current + rotated-out one during its grace window)
    signing_secret: str = ""
    previous_signing_secret: str = ""
    previous_secret_valid_until: float | None = None

    signature_header: str = "Stripe-Signature"
    webhook_path: str = "/webhooks/stripe"
    tolerance_seconds: int = 300

    # Retry
    max_attempts: int = 3
    retry_delays: list[float] = [1.0, 5.0, 15.0]
    attempt_timeout_seconds: float = 30.0

    # Idempotency
    idempotency_capacity: int = 1000
    in_progress_ttl_seconds: int = 150  # raised to cover the retry budget if lower
    redis_url: str = ""  # empty = in-memory store

    ledger_size: int = 100

    model_config = {"env_prefix": "BILLING_WEBHOOK_", "env_file": ".env", "extra": "ignore"}


@lru_cache
def get_settings() -> WebhookSettings:
    return WebhookSettings()
