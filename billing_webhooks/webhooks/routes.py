"""Webhook HTTP routes — FastAPI adapter in front of WebhookProcessor.

Each request:
1. Reads raw body (needed for HMAC verification)
2. Hands body + signature header to the processor
3. Maps the ProcessingResult to a status code

Security contract:
- Never return error details to webhook caller (info disclosure)
- Return 400 only for signature failures (the provider shows these in its dashboard)
- Return 200 for Success and Ignored so the provider stops redelivering
- Return 200 for other failures too: internal retries are already spent and
  provider-side redelivery loops help nobody; the WEBHOOK_AUDIT error line
  is the alerting hook for manual replay
"""

from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from billing_webhooks.webhooks.events import ProcessingResult, ProcessingStatus
from billing_webhooks.webhooks.exceptions import SignatureError
from billing_webhooks.webhooks.processor import WebhookProcessor

logger = logging.getLogger(__name__)


def status_code_for(result: ProcessingResult) -> int:
    """HTTP status for a processing outcome."""
    if result.status is ProcessingStatus.FAILURE and isinstance(result.error, SignatureError):
        return 400
    return 200


def _response_body(result: ProcessingResult) -> dict[str, str]:
    if result.status is ProcessingStatus.FAILURE and isinstance(result.error, SignatureError):
        return {"status": "unauthorized"}
    return {"status": "received"}


def register_webhook_routes(
    app: FastAPI,
    processor: WebhookProcessor,
    path: str = "/webhooks/stripe",
    signature_header: str = "Stripe-Signature",
) -> None:
    """Register the webhook endpoint and its status route on *app*."""

    @app.post(path)
    async def receive_webhook(request: Request):
        """Receive a provider webhook (signature-verified by the processor)."""
        start = time.time()
        body = await request.body()
        result = await processor.process(body, request.headers.get(signature_header))

        elapsed_ms = (time.time() - start) * 1000
        logger.debug(
            "Webhook handled in %.1fms: %s (%s)",
            elapsed_ms,
            result.event_id or "unknown",
            result.status.value,
        )
        return JSONResponse(_response_body(result), status_code=status_code_for(result))

    @app.get(f"{path}/status")
    async def webhook_status():
        """Recent processing outcomes (no payload data)."""
        return processor.ledger.summary()

    logger.info("Webhook routes registered: %s", path)
