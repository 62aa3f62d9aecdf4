"""Webhook event dispatcher — routes decoded events to business handlers.

Each supported WebhookEventType maps to exactly one handler. A handler:
1. Pulls the fields it needs out of ``data.object`` (InvalidEventDataError
   if absent/malformed — terminal, retrying will not fix the payload)
2. Writes to the BillingStore (failures classified: transient -> retryable)
3. Optionally sends a notification (best-effort: failures logged, ignored)
4. Returns a one-line summary for logs and the processing result

Handlers must be safe to re-run from scratch: a crash between dispatch and
the idempotency write means the provider redelivers and the handler runs
again. Store writes are idempotent on (kind, id) for that reason.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from billing_webhooks.webhooks.collaborators import (
    BillingEntity,
    BillingStore,
    EntityKind,
    NotificationKind,
    Notifier,
)
from billing_webhooks.webhooks.events import (
    WebhookEvent,
    WebhookEventType,
    optional_mapping,
    optional_str,
    require_int,
    require_str,
)
from billing_webhooks.webhooks.exceptions import HandlerError, UnsupportedStateError
from billing_webhooks.webhooks.retry import classify_exception

logger = logging.getLogger(__name__)

Handler = Callable[[WebhookEvent], Awaitable[str]]

# Recipient for notifications that have no customer (disputes, payouts)
_OPS_RECIPIENT = "billing-ops"

_DEFAULT_FAILURE_REASON = "Payment failed"


def _failure_reason(obj: Mapping[str, Any]) -> str:
    error = optional_mapping(obj, "last_payment_error")
    if error is None:
        return _DEFAULT_FAILURE_REASON
    return optional_str(error, "message") or _DEFAULT_FAILURE_REASON


class EventDispatcher:
    """Maps event types to handlers and runs them against the collaborators."""

    def __init__(self, store: BillingStore, notifier: Notifier):
        self._store = store
        self._notifier = notifier
        self._handlers: dict[WebhookEventType, Handler] = {
            WebhookEventType.INVOICE_PAYMENT_SUCCEEDED: self._invoice_payment_succeeded,
            WebhookEventType.INVOICE_PAYMENT_FAILED: self._invoice_payment_failed,
            WebhookEventType.SUBSCRIPTION_CREATED: self._subscription_created,
            WebhookEventType.SUBSCRIPTION_UPDATED: self._subscription_updated,
            WebhookEventType.SUBSCRIPTION_DELETED: self._subscription_deleted,
            WebhookEventType.PAYMENT_INTENT_SUCCEEDED: self._payment_intent_succeeded,
            WebhookEventType.PAYMENT_INTENT_FAILED: self._payment_intent_failed,
            WebhookEventType.CUSTOMER_CREATED: self._customer_created,
            WebhookEventType.PRICE_CREATED: self._price_created,
            WebhookEventType.PAYMENT_METHOD_ATTACHED: self._payment_method_attached,
            WebhookEventType.ACCOUNT_UPDATED: self._account_updated,
            WebhookEventType.ACCOUNT_DEAUTHORIZED: self._account_deauthorized,
            WebhookEventType.DISPUTE_CREATED: self._dispute_created,
            WebhookEventType.TRANSFER_PAID: self._transfer_paid,
            WebhookEventType.TRANSFER_FAILED: self._transfer_failed,
            WebhookEventType.PAYOUT_PAID: self._payout_paid,
            WebhookEventType.PAYOUT_FAILED: self._payout_failed,
        }

    @property
    def handled_types(self) -> frozenset[WebhookEventType]:
        return frozenset(self._handlers)

    async def dispatch(self, event: WebhookEvent) -> str:
        """Run the handler for *event* and return its summary.

        Raises:
            HandlerError: retryable or terminal, see ``HandlerError.retryable``
        """
        handler = self._handlers.get(event.type)
        if handler is None:
            raise UnsupportedStateError(f"No handler for event type: {event.raw_type}")

        logger.info("Dispatching webhook event: %s (%s)", event.raw_type, event.id)
        return await handler(event)

    # ── Collaborator calls ────────────────────────────────────────────────

    async def _save(self, entity: BillingEntity) -> None:
        try:
            await self._store.save(entity)
        except HandlerError:
            raise
        except Exception as exc:
            raise classify_exception(exc) from exc

    async def _update(self, entity: BillingEntity) -> None:
        try:
            await self._store.update(entity)
        except HandlerError:
            raise
        except Exception as exc:
            raise classify_exception(exc) from exc

    async def _notify(
        self, kind: NotificationKind, recipient: str, metadata: dict[str, Any]
    ) -> None:
        try:
            await self._notifier.notify(kind, recipient, metadata)
        except Exception:
            logger.warning(
                "Notification %s to %s failed (non-fatal)",
                kind.value,
                recipient,
                exc_info=True,
            )

    # ── Invoices ──────────────────────────────────────────────────────────

    async def _invoice_payment_succeeded(self, event: WebhookEvent) -> str:
        invoice = event.data_object
        customer_id = require_str(invoice, "customer")
        amount_paid = require_int(invoice, "amount_paid")
        subscription_id = optional_str(invoice, "subscription")

        await self._update(
            BillingEntity(
                kind=EntityKind.CUSTOMER,
                id=customer_id,
                customer_id=customer_id,
                attributes={"subscription_status": "active", "last_amount_paid": amount_paid},
            )
        )
        if subscription_id:
            await self._update(
                BillingEntity(
                    kind=EntityKind.SUBSCRIPTION,
                    id=subscription_id,
                    customer_id=customer_id,
                    status="active",
                )
            )

        await self._notify(
            NotificationKind.PAYMENT_SUCCEEDED,
            customer_id,
            {"amount_paid": amount_paid, "currency": optional_str(invoice, "currency")},
        )
        return f"Payment successful for customer: {customer_id}"

    async def _invoice_payment_failed(self, event: WebhookEvent) -> str:
        invoice = event.data_object
        customer_id = require_str(invoice, "customer")
        reason = _failure_reason(invoice)

        await self._update(
            BillingEntity(
                kind=EntityKind.CUSTOMER,
                id=customer_id,
                customer_id=customer_id,
                attributes={"subscription_status": "past_due", "last_failure_reason": reason},
            )
        )
        await self._notify(NotificationKind.PAYMENT_FAILED, customer_id, {"reason": reason})
        return f"Payment failed for customer: {customer_id}"

    # ── Subscriptions ─────────────────────────────────────────────────────

    async def _subscription_created(self, event: WebhookEvent) -> str:
        subscription = event.data_object
        subscription_id = require_str(subscription, "id")
        customer_id = require_str(subscription, "customer")

        await self._save(
            BillingEntity(
                kind=EntityKind.SUBSCRIPTION,
                id=subscription_id,
                customer_id=customer_id,
                status=optional_str(subscription, "status"),
                attributes=dict(subscription),
            )
        )
        return f"Subscription created: {subscription_id}"

    async def _subscription_updated(self, event: WebhookEvent) -> str:
        subscription = event.data_object
        subscription_id = require_str(subscription, "id")

        await self._update(
            BillingEntity(
                kind=EntityKind.SUBSCRIPTION,
                id=subscription_id,
                customer_id=optional_str(subscription, "customer"),
                status=optional_str(subscription, "status"),
                attributes=dict(subscription),
            )
        )
        return f"Subscription updated: {subscription_id}"

    async def _subscription_deleted(self, event: WebhookEvent) -> str:
        subscription = event.data_object
        subscription_id = require_str(subscription, "id")
        customer_id = require_str(subscription, "customer")

        await self._update(
            BillingEntity(
                kind=EntityKind.SUBSCRIPTION,
                id=subscription_id,
                customer_id=customer_id,
                status="canceled",
            )
        )
        await self._notify(
            NotificationKind.SUBSCRIPTION_CANCELED,
            customer_id,
            {"subscription_id": subscription_id},
        )
        return f"Subscription cancelled: {subscription_id}"

    # ── One-time payments ─────────────────────────────────────────────────

    async def _payment_intent_succeeded(self, event: WebhookEvent) -> str:
        intent = event.data_object
        intent_id = require_str(intent, "id")

        await self._save(
            BillingEntity(
                kind=EntityKind.PAYMENT,
                id=intent_id,
                customer_id=optional_str(intent, "customer"),
                status="succeeded",
                attributes=dict(intent),
            )
        )
        return f"Payment intent succeeded: {intent_id}"

    async def _payment_intent_failed(self, event: WebhookEvent) -> str:
        intent = event.data_object
        intent_id = require_str(intent, "id")

        await self._save(
            BillingEntity(
                kind=EntityKind.PAYMENT,
                id=intent_id,
                customer_id=optional_str(intent, "customer"),
                status="failed",
                attributes={**intent, "failure_reason": _failure_reason(intent)},
            )
        )
        return f"Payment intent failed: {intent_id}"

    # ── Catalog / customers ───────────────────────────────────────────────

    async def _customer_created(self, event: WebhookEvent) -> str:
        customer = event.data_object
        customer_id = require_str(customer, "id")

        await self._save(
            BillingEntity(
                kind=EntityKind.CUSTOMER,
                id=customer_id,
                customer_id=customer_id,
                attributes=dict(customer),
            )
        )
        return f"Customer created: {customer_id}"

    async def _price_created(self, event: WebhookEvent) -> str:
        price = event.data_object
        price_id = require_str(price, "id")

        await self._save(
            BillingEntity(kind=EntityKind.PRICE, id=price_id, attributes=dict(price))
        )
        return f"Price created: {price_id}"

    async def _payment_method_attached(self, event: WebhookEvent) -> str:
        method = event.data_object
        method_id = require_str(method, "id")

        await self._save(
            BillingEntity(
                kind=EntityKind.PAYMENT_METHOD,
                id=method_id,
                customer_id=optional_str(method, "customer"),
                attributes=dict(method),
            )
        )
        return f"Payment method attached: {method_id}"

    # ── Connect accounts, disputes, transfers, payouts ────────────────────

    async def _account_updated(self, event: WebhookEvent) -> str:
        account = event.data_object
        account_id = require_str(account, "id")

        await self._update(
            BillingEntity(kind=EntityKind.ACCOUNT, id=account_id, attributes=dict(account))
        )
        return f"Account updated: {account_id}"

    async def _account_deauthorized(self, event: WebhookEvent) -> str:
        # data.object is the application; the account is on the envelope
        account_id = event.account or require_str(event.data_object, "id")

        await self._update(
            BillingEntity(kind=EntityKind.ACCOUNT, id=account_id, status="deauthorized")
        )
        return f"Account deauthorized: {account_id}"

    async def _dispute_created(self, event: WebhookEvent) -> str:
        dispute = event.data_object
        dispute_id = require_str(dispute, "id")
        charge_id = require_str(dispute, "charge")

        await self._save(
            BillingEntity(
                kind=EntityKind.DISPUTE,
                id=dispute_id,
                status=optional_str(dispute, "status"),
                attributes=dict(dispute),
            )
        )
        await self._notify(
            NotificationKind.DISPUTE_CREATED,
            _OPS_RECIPIENT,
            {"dispute_id": dispute_id, "charge_id": charge_id},
        )
        return f"Dispute created: {dispute_id}"

    async def _record_movement(
        self, event: WebhookEvent, kind: EntityKind, status: str
    ) -> str:
        obj = event.data_object
        obj_id = require_str(obj, "id")
        await self._save(
            BillingEntity(kind=kind, id=obj_id, status=status, attributes=dict(obj))
        )
        return obj_id

    async def _transfer_paid(self, event: WebhookEvent) -> str:
        transfer_id = await self._record_movement(event, EntityKind.TRANSFER, "paid")
        return f"Transfer paid: {transfer_id}"

    async def _transfer_failed(self, event: WebhookEvent) -> str:
        transfer_id = await self._record_movement(event, EntityKind.TRANSFER, "failed")
        return f"Transfer failed: {transfer_id}"

    async def _payout_paid(self, event: WebhookEvent) -> str:
        payout_id = await self._record_movement(event, EntityKind.PAYOUT, "paid")
        return f"Payout paid: {payout_id}"

    async def _payout_failed(self, event: WebhookEvent) -> str:
        payout_id = await self._record_movement(event, EntityKind.PAYOUT, "failed")
        await self._notify(
            NotificationKind.PAYOUT_FAILED,
            event.account or _OPS_RECIPIENT,
            {"payout_id": payout_id},
        )
        return f"Payout failed: {payout_id}"
