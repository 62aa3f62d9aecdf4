"""Collaborator interfaces consumed by the webhook handlers.

- BillingStore: persists subscriptions, customers, prices, payments, ...
  Writes must be idempotent on (kind, id). Raises StorageError on failure.
- Notifier: best-effort outbound notifications (email/push). Failures are
  logged by the dispatcher and never fail the event.

InMemoryBillingStore and LoggingNotifier are the defaults used when no real
backend is wired in (local runs and tests).
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


class EntityKind(str, Enum):
    SUBSCRIPTION = "subscription"
    CUSTOMER = "customer"
    PRICE = "price"
    PAYMENT = "payment"
    PAYMENT_METHOD = "payment_method"
    ACCOUNT = "account"
    DISPUTE = "dispute"
    TRANSFER = "transfer"
    PAYOUT = "payout"


class NotificationKind(str, Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    DISPUTE_CREATED = "dispute_created"
    PAYOUT_FAILED = "payout_failed"


@dataclass
class BillingEntity:
    """A business record derived from a provider resource snapshot."""

    kind: EntityKind
    id: str
    customer_id: str | None = None
    status: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class BillingStore(Protocol):
    """Persistence for billing entities."""

    async def save(self, entity: BillingEntity) -> None:
        """Insert or replace the entity identified by (kind, id)."""
        ...

    async def update(self, entity: BillingEntity) -> None:
        """Merge non-empty fields into the entity identified by (kind, id)."""
        ...


@runtime_checkable
class Notifier(Protocol):
    """Outbound notification sender."""

    async def notify(
        self, kind: NotificationKind, recipient: str, metadata: dict[str, Any]
    ) -> None:
        ...


def _detached(entity: BillingEntity) -> BillingEntity:
    """Copy owned by the store; later merges never touch the caller's object."""
    return replace(entity, attributes=dict(entity.attributes))


class InMemoryBillingStore:
    """Dict-backed BillingStore."""

    def __init__(self) -> None:
        self._entities: dict[tuple[EntityKind, str], BillingEntity] = {}
        self._lock = threading.Lock()
        self.writes = 0

    async def save(self, entity: BillingEntity) -> None:
        with self._lock:
            self._entities[(entity.kind, entity.id)] = _detached(entity)
            self.writes += 1
        logger.info("Stored %s %s", entity.kind.value, entity.id)

    async def update(self, entity: BillingEntity) -> None:
        with self._lock:
            key = (entity.kind, entity.id)
            existing = self._entities.get(key)
            if existing is None:
                self._entities[key] = _detached(entity)
            else:
                if entity.customer_id:
                    existing.customer_id = entity.customer_id
                if entity.status:
                    existing.status = entity.status
                existing.attributes.update(entity.attributes)
            self.writes += 1
        logger.info("Updated %s %s", entity.kind.value, entity.id)

    def get(self, kind: EntityKind, entity_id: str) -> BillingEntity | None:
        with self._lock:
            return self._entities.get((kind, entity_id))

    def all(self, kind: EntityKind | None = None) -> list[BillingEntity]:
        with self._lock:
            return [e for (k, _), e in self._entities.items() if kind is None or k == kind]


class LoggingNotifier:
    """Notifier that only writes an audit line."""

    async def notify(
        self, kind: NotificationKind, recipient: str, metadata: dict[str, Any]
    ) -> None:
        logger.info(
            "Notification %s -> %s (%s)",
            kind.value,
            recipient,
            ", ".join(sorted(metadata)),
        )
