"""Payment-provider webhook ingestion.

Each delivery is signature-verified, decoded, deduplicated, dispatched to
its business handler with bounded retry, and recorded as processed only
after it succeeds.
"""

from __future__ import annotations

import logging
import math

from billing_webhooks.config import WebhookSettings, get_settings
from billing_webhooks.webhooks.collaborators import (
    BillingStore,
    InMemoryBillingStore,
    LoggingNotifier,
    Notifier,
)
from billing_webhooks.webhooks.dispatcher import EventDispatcher
from billing_webhooks.webhooks.idempotency import (
    IdempotencyStore,
    InMemoryIdempotencyStore,
    RedisIdempotencyStore,
)
from billing_webhooks.webhooks.processor import ProcessedEventLedger, WebhookProcessor
from billing_webhooks.webhooks.retry import RetryPolicy
from billing_webhooks.webhooks.verification import RotatingSecretProvider, SignatureVerifier

logger = logging.getLogger(__name__)

# Slack on top of the retry budget for store round-trips around dispatch
IN_PROGRESS_TTL_MARGIN_SECONDS = 30


def in_progress_ttl_for(policy: RetryPolicy, configured: int) -> int:
    """Marker TTL that outlives one event's full retry budget.

    Returns *configured* unless it is shorter than the policy's worst case
    plus margin; an unbounded policy keeps *configured* as is.
    """
    budget = policy.max_duration
    if budget is None:
        return configured
    floor = math.ceil(budget) + IN_PROGRESS_TTL_MARGIN_SECONDS
    if configured < floor:
        logger.warning(
            "in_progress_ttl_seconds=%d is below the retry budget (%.0fs); using %ds",
            configured,
            budget,
            floor,
        )
        return floor
    return configured


def build_processor(
    settings: WebhookSettings | None = None,
    *,
    store: BillingStore | None = None,
    notifier: Notifier | None = None,
    idempotency_store: IdempotencyStore | None = None,
) -> WebhookProcessor:
    """Wire a WebhookProcessor from settings and optional collaborators."""
    settings = settings or get_settings()

    retry_policy = RetryPolicy(
        max_attempts=settings.max_attempts,
        delays=tuple(settings.retry_delays),
        attempt_timeout=settings.attempt_timeout_seconds,
    )

    if idempotency_store is None:
        if settings.redis_url:
            idempotency_store = RedisIdempotencyStore.from_url(
                settings.redis_url,
                capacity=settings.idempotency_capacity,
                in_progress_ttl=in_progress_ttl_for(
                    retry_policy, settings.in_progress_ttl_seconds
                ),
            )
        else:
            idempotency_store = InMemoryIdempotencyStore(settings.idempotency_capacity)

    verifier = SignatureVerifier(
        RotatingSecretProvider(
            settings.signing_secret,
            settings.previous_signing_secret or None,
            settings.previous_secret_valid_until,
        ),
        tolerance=settings.tolerance_seconds,
    )
    dispatcher = EventDispatcher(store or InMemoryBillingStore(), notifier or LoggingNotifier())

    return WebhookProcessor(
        verifier=verifier,
        store=idempotency_store,
        dispatcher=dispatcher,
        retry_policy=retry_policy,
        ledger=ProcessedEventLedger(settings.ledger_size),
    )


__all__ = ["build_processor", "in_progress_ttl_for", "WebhookProcessor"]
