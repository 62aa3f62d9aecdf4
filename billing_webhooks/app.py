"""FastAPI application exposing the billing webhook endpoint.

Run with: uvicorn billing_webhooks.app:create_app --factory
"""

from __future__ import annotations

from fastapi import FastAPI

from billing_webhooks.config import WebhookSettings, get_settings
from billing_webhooks.webhooks import WebhookProcessor, build_processor
from billing_webhooks.webhooks.routes import register_webhook_routes


def create_app(
    settings: WebhookSettings | None = None,
    processor: WebhookProcessor | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="billing-webhooks")

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    register_webhook_routes(
        app,
        processor or build_processor(settings),
        path=settings.webhook_path,
        signature_header=settings.signature_header,
    )
    return app
