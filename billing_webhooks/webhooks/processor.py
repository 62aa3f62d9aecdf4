"""Webhook processor — verify, decode, deduplicate, dispatch with retry.

Per-event state machine:

    Received -> Verified -> Decoded -> DuplicateIgnored
                                    -> Dispatching -> Succeeded | Failed

Contract:
- Signature and decode failures never reach the retry loop and never write
  to the idempotency store
- Unsupported event types are Ignored and not recorded as processed
- An event is marked processed only AFTER a successful dispatch
- A failed event has its in-progress marker released so a redelivery can
  start again from attempt 1
- Concurrent duplicates see the in-progress marker and are Ignored
  immediately; they never wait for the retry sleeps
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any

from billing_webhooks.webhooks.dispatcher import EventDispatcher
from billing_webhooks.webhooks.events import (
    ProcessingResult,
    ProcessingStatus,
    WebhookEvent,
    decode_event,
)
from billing_webhooks.webhooks.exceptions import DecodeError, SignatureError
from billing_webhooks.webhooks.idempotency import ClaimStatus, IdempotencyStore
from billing_webhooks.webhooks.retry import RetryPolicy, Sleep, process_with_retry
from billing_webhooks.webhooks.verification import SignatureVerifier

logger = logging.getLogger(__name__)

DUPLICATE_EVENT = "Duplicate event"
EVENT_IN_PROGRESS = "Event already in progress"


@dataclass(frozen=True)
class LedgerEntry:
    """Diagnostic record of one processing outcome."""

    event_id: str
    event_type: str
    status: ProcessingStatus
    attempts: int
    recorded_at: float


class ProcessedEventLedger:
    """In-memory log of recent processing outcomes.

    Diagnostics only; idempotency never reads it. Capped at ``max_entries``.
    """

    MAX_ENTRIES = 100

    def __init__(self, max_entries: int = MAX_ENTRIES) -> None:
        self._entries: deque[LedgerEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def record(self, entry: LedgerEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def recent(self, limit: int | None = None) -> list[LedgerEntry]:
        """Most recent entries, newest last."""
        with self._lock:
            entries = list(self._entries)
        return entries if limit is None else entries[-limit:]

    def summary(self) -> dict[str, Any]:
        entries = self.recent()
        by_status: dict[str, int] = {}
        for e in entries:
            by_status[e.status.value] = by_status.get(e.status.value, 0) + 1
        last = entries[-1] if entries else None
        return {
            "total": len(entries),
            "by_status": by_status,
            "last_event_id": last.event_id if last else None,
            "last_recorded_at": last.recorded_at if last else None,
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class WebhookProcessor:
    """Composition root for one webhook endpoint."""

    def __init__(
        self,
        verifier: SignatureVerifier,
        store: IdempotencyStore,
        dispatcher: EventDispatcher,
        retry_policy: RetryPolicy | None = None,
        ledger: ProcessedEventLedger | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self._verifier = verifier
        self._store = store
        self._dispatcher = dispatcher
        self._retry_policy = retry_policy or RetryPolicy()
        self._ledger = ledger if ledger is not None else ProcessedEventLedger()
        self._sleep = sleep

    @property
    def ledger(self) -> ProcessedEventLedger:
        return self._ledger

    async def process(
        self, body: bytes, signature_header: str | None, now: float | None = None
    ) -> ProcessingResult:
        """Process one inbound delivery.

        Args:
            body: Raw request body, exactly as received
            signature_header: Signature header value (may be None if absent)
            now: Wall-clock override for the replay window check
        """
        try:
            self._verifier.verify(body, signature_header, now=now)
        except SignatureError as exc:
            result = ProcessingResult.failure(exc)
            self._audit(result, "unknown", "unknown")
            return result

        try:
            event = decode_event(body)
        except DecodeError as exc:
            result = ProcessingResult.failure(exc)
            self._audit(result, "unknown", "unknown")
            return result

        return await self.process_event(event, now=now)

    async def process_event(
        self, event: WebhookEvent, now: float | None = None
    ) -> ProcessingResult:
        """Deduplicate and dispatch an already-verified event.

        Also the entry point for manual replay of a stored event.
        """
        if not event.is_supported:
            logger.info("Unsupported webhook event %s (%s) — skipping", event.raw_type, event.id)
            return self._finish(
                event,
                ProcessingResult.ignored(
                    f"Unsupported event type: {event.raw_type}",
                    event_id=event.id,
                    event_type=event.raw_type,
                ),
            )

        try:
            claim = await self._store.claim(event.id)
        except Exception as exc:
            logger.exception("Idempotency check failed for %s", event.id)
            return self._finish(
                event,
                ProcessingResult.failure(exc, event_id=event.id, event_type=event.raw_type),
            )

        if claim is ClaimStatus.PROCESSED:
            logger.info("Duplicate webhook event ignored: %s", event.id)
            return self._finish(
                event,
                ProcessingResult.ignored(
                    DUPLICATE_EVENT, event_id=event.id, event_type=event.raw_type
                ),
            )
        if claim is ClaimStatus.IN_PROGRESS:
            logger.info("Webhook event already in progress, ignored: %s", event.id)
            return self._finish(
                event,
                ProcessingResult.ignored(
                    EVENT_IN_PROGRESS, event_id=event.id, event_type=event.raw_type
                ),
            )

        try:
            outcome = await process_with_retry(
                event,
                self._dispatcher.dispatch,
                policy=self._retry_policy,
                sleep=self._sleep,
            )
        except asyncio.CancelledError:
            # Let a redelivery claim the event again
            await self._release(event.id)
            raise

        result = outcome.result
        if result.status is not ProcessingStatus.SUCCESS:
            await self._release(event.id)
            return self._finish(event, result)

        try:
            await self._store.mark_processed(event.id, time.time() if now is None else now)
        except Exception as exc:
            # Side effects are applied but unrecorded; a redelivery re-runs them
            logger.exception("Failed to record %s as processed", event.id)
            await self._release(event.id)
            result = ProcessingResult.failure(
                exc, event_id=event.id, event_type=event.raw_type, attempts=result.attempts
            )

        return self._finish(event, result)

    async def _release(self, event_id: str) -> None:
        try:
            await self._store.release(event_id)
        except Exception:
            # Marker expires on its own (TTL); only delays redelivery
            logger.warning("Failed to release in-progress marker for %s", event_id, exc_info=True)

    def _finish(self, event: WebhookEvent, result: ProcessingResult) -> ProcessingResult:
        self._ledger.record(
            LedgerEntry(
                event_id=event.id,
                event_type=event.raw_type,
                status=result.status,
                attempts=result.attempts,
                recorded_at=time.time(),
            )
        )
        self._audit(result, event.raw_type, event.id)
        return result

    @staticmethod
    def _audit(result: ProcessingResult, event_type: str, event_id: str) -> None:
        level = logging.ERROR if result.status is ProcessingStatus.FAILURE else logging.INFO
        logger.log(
            level,
            "WEBHOOK_AUDIT event=%s id=%s status=%s attempts=%d detail=%s",
            event_type,
            event_id,
            result.status.value,
            result.attempts,
            result.message,
        )
