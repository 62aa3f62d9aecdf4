"""Webhook event model and decoder.

The envelope (id, type, created, ...) is decoded strictly. The ``data``
object is kept as an untyped JSON tree; handlers pull what they need out of
it through the ``require_*`` / ``optional_*`` accessors, which raise
InvalidEventDataError instead of KeyError/TypeError.

Unknown event types decode to WebhookEventType.UNSUPPORTED so that a new
provider event type never breaks ingestion.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from billing_webhooks.webhooks.exceptions import (
    InvalidEventDataError,
    MalformedPayloadError,
    MissingFieldError,
)


class WebhookEventType(str, Enum):
    """Provider event types with a business handler."""

    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
    CUSTOMER_CREATED = "customer.created"
    PRICE_CREATED = "price.created"
    PAYMENT_METHOD_ATTACHED = "payment_method.attached"
    # Connect (payout accounts)
    ACCOUNT_UPDATED = "account.updated"
    ACCOUNT_DEAUTHORIZED = "account.application.deauthorized"
    DISPUTE_CREATED = "charge.dispute.created"
    TRANSFER_PAID = "transfer.paid"
    TRANSFER_FAILED = "transfer.failed"
    PAYOUT_PAID = "payout.paid"
    PAYOUT_FAILED = "payout.failed"
    # Anything else; raw string lives on WebhookEvent.raw_type
    UNSUPPORTED = "unsupported"

    @classmethod
    def from_raw(cls, raw_type: str) -> WebhookEventType:
        try:
            return cls(raw_type)
        except ValueError:
            return cls.UNSUPPORTED

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]


_DISPLAY_NAMES: dict[WebhookEventType, str] = {
    WebhookEventType.INVOICE_PAYMENT_SUCCEEDED: "Invoice Payment Succeeded",
    WebhookEventType.INVOICE_PAYMENT_FAILED: "Invoice Payment Failed",
    WebhookEventType.SUBSCRIPTION_CREATED: "Subscription Created",
    WebhookEventType.SUBSCRIPTION_UPDATED: "Subscription Updated",
    WebhookEventType.SUBSCRIPTION_DELETED: "Subscription Cancelled",
    WebhookEventType.PAYMENT_INTENT_SUCCEEDED: "Payment Succeeded",
    WebhookEventType.PAYMENT_INTENT_FAILED: "Payment Failed",
    WebhookEventType.CUSTOMER_CREATED: "Customer Created",
    WebhookEventType.PRICE_CREATED: "Price Created",
    WebhookEventType.PAYMENT_METHOD_ATTACHED: "Payment Method Attached",
    WebhookEventType.ACCOUNT_UPDATED: "Connected Account Updated",
    WebhookEventType.ACCOUNT_DEAUTHORIZED: "Connected Account Deauthorized",
    WebhookEventType.DISPUTE_CREATED: "Dispute Created",
    WebhookEventType.TRANSFER_PAID: "Transfer Paid",
    WebhookEventType.TRANSFER_FAILED: "Transfer Failed",
    WebhookEventType.PAYOUT_PAID: "Payout Paid",
    WebhookEventType.PAYOUT_FAILED: "Payout Failed",
    WebhookEventType.UNSUPPORTED: "Unsupported Event",
}


@dataclass(frozen=True)
class WebhookEvent:
    """Decoded provider event."""

    id: str
    type: WebhookEventType
    raw_type: str
    created_at: int
    payload: dict[str, Any] = field(default_factory=dict)
    livemode: bool | None = None
    request_id: str | None = None
    idempotency_key: str | None = None
    pending_webhooks: int | None = None
    account: str | None = None

    @property
    def is_supported(self) -> bool:
        return self.type is not WebhookEventType.UNSUPPORTED

    @property
    def data_object(self) -> Mapping[str, Any]:
        """The resource snapshot at ``data.object``."""
        return require_mapping(self.payload, "object")


# ── Typed accessors ───────────────────────────────────────────────────────


def _lookup(obj: Mapping[str, Any], key: str) -> Any:
    if not isinstance(obj, Mapping) or key not in obj or obj[key] is None:
        raise InvalidEventDataError(key)
    return obj[key]


def require_str(obj: Mapping[str, Any], key: str) -> str:
    value = _lookup(obj, key)
    if not isinstance(value, str) or not value:
        raise InvalidEventDataError(key, "must be a non-empty string")
    return value


def require_int(obj: Mapping[str, Any], key: str) -> int:
    value = _lookup(obj, key)
    # bool is an int subclass; reject it
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidEventDataError(key, "must be an integer")
    return value


def require_mapping(obj: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = _lookup(obj, key)
    if not isinstance(value, Mapping):
        raise InvalidEventDataError(key, "must be an object")
    return value


def optional_str(obj: Mapping[str, Any], key: str) -> str | None:
    value = obj.get(key) if isinstance(obj, Mapping) else None
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidEventDataError(key, "must be a string")
    return value


def optional_mapping(obj: Mapping[str, Any], key: str) -> Mapping[str, Any] | None:
    value = obj.get(key) if isinstance(obj, Mapping) else None
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise InvalidEventDataError(key, "must be an object")
    return value


# ── Decoder ───────────────────────────────────────────────────────────────


def _required(envelope: dict[str, Any], name: str) -> Any:
    if name not in envelope or envelope[name] is None:
        raise MissingFieldError(name)
    return envelope[name]


def decode_event(payload: bytes | str) -> WebhookEvent:
    """Parse a raw webhook body into a WebhookEvent.

    Raises:
        MissingFieldError: id, type or created is absent
        MalformedPayloadError: body is not a JSON object or a field has the wrong type
    """
    try:
        envelope = json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedPayloadError(f"Body is not valid JSON: {exc}") from exc

    if not isinstance(envelope, dict):
        raise MalformedPayloadError("Body must be a JSON object")

    event_id = _required(envelope, "id")
    if not isinstance(event_id, str) or not event_id:
        raise MalformedPayloadError("'id' must be a non-empty string")

    raw_type = _required(envelope, "type")
    if not isinstance(raw_type, str) or not raw_type:
        raise MalformedPayloadError("'type' must be a non-empty string")

    created = _required(envelope, "created")
    if isinstance(created, bool) or not isinstance(created, int):
        raise MalformedPayloadError("'created' must be an integer timestamp")

    data = envelope.get("data")
    if data is None:
        data = {}
    elif not isinstance(data, dict):
        raise MalformedPayloadError("'data' must be an object")

    livemode = envelope.get("livemode")
    if livemode is not None and not isinstance(livemode, bool):
        livemode = None

    request = envelope.get("request")
    request_id: str | None = None
    idempotency_key: str | None = None
    if isinstance(request, str):
        request_id = request
    elif isinstance(request, dict):
        request_id = request.get("id") if isinstance(request.get("id"), str) else None
        key = request.get("idempotency_key")
        idempotency_key = key if isinstance(key, str) else None

    pending = envelope.get("pending_webhooks")
    if isinstance(pending, bool) or not isinstance(pending, int):
        pending = None

    account = envelope.get("account")
    if not isinstance(account, str):
        account = None

    return WebhookEvent(
        id=event_id,
        type=WebhookEventType.from_raw(raw_type),
        raw_type=raw_type,
        created_at=created,
        payload=data,
        livemode=livemode,
        request_id=request_id,
        idempotency_key=idempotency_key,
        pending_webhooks=pending,
        account=account,
    )


# ── Processing outcome ────────────────────────────────────────────────────


class ProcessingStatus(str, Enum):
    SUCCESS = "success"
    IGNORED = "ignored"
    FAILURE = "failure"


@dataclass(frozen=True)
class ProcessingResult:
    """Outcome of one processing call. ``status`` decides which fields matter:
    SUCCESS carries a summary, IGNORED a reason, FAILURE an error."""

    status: ProcessingStatus
    message: str
    error: BaseException | None = None
    event_id: str | None = None
    event_type: str | None = None
    attempts: int = 0

    @classmethod
    def success(cls, summary: str, **kwargs: Any) -> ProcessingResult:
        return cls(status=ProcessingStatus.SUCCESS, message=summary, **kwargs)

    @classmethod
    def ignored(cls, reason: str, **kwargs: Any) -> ProcessingResult:
        return cls(status=ProcessingStatus.IGNORED, message=reason, **kwargs)

    @classmethod
    def failure(cls, error: BaseException, **kwargs: Any) -> ProcessingResult:
        return cls(status=ProcessingStatus.FAILURE, message=str(error), error=error, **kwargs)

    @property
    def ok(self) -> bool:
        return self.status is not ProcessingStatus.FAILURE
