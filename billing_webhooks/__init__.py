"""Billing webhooks: payment-provider event ingestion for subscription billing."""
