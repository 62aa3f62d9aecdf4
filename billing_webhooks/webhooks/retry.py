"""Bounded retry around a webhook dispatch attempt.

Retries only failures classified as retryable (transient collaborator
errors, per-attempt timeouts). Terminal failures stop immediately. Logs
each retry attempt.

Schedule: delay before attempt n+1 is ``delays[min(n - 1, len(delays) - 1)]``
(default 1s, 5s, 15s; the last delay is reused when attempts outrun the
schedule). Sleeping is asyncio.sleep and happens with no lock held.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field

import httpx
import redis.exceptions

from billing_webhooks.webhooks.events import ProcessingResult, WebhookEvent
from billing_webhooks.webhooks.exceptions import (
    HandlerError,
    MaxRetriesExceededError,
    StorageError,
    TransientHandlerError,
)

logger = logging.getLogger(__name__)

# HTTP status codes from a collaborator that trigger a retry
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    StorageError,
    httpx.TransportError,
    redis.exceptions.ConnectionError,
    redis.exceptions.TimeoutError,
    ConnectionError,
    asyncio.TimeoutError,
    TimeoutError,
    OSError,
)

Dispatch = Callable[[WebhookEvent], Awaitable[str]]
Sleep = Callable[[float], Awaitable[None]]


def classify_exception(exc: BaseException) -> HandlerError:
    """Map any exception raised under a handler to a HandlerError."""
    if isinstance(exc, HandlerError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in RETRYABLE_STATUS_CODES:
            return TransientHandlerError(f"Collaborator returned HTTP {status}", cause=exc)
        return HandlerError(f"Collaborator rejected request (HTTP {status})", retryable=False)
    if isinstance(exc, _TRANSIENT_ERRORS):
        return TransientHandlerError(
            f"Transient collaborator failure: {type(exc).__name__}: {exc}", cause=exc
        )
    return HandlerError(
        f"Unexpected handler failure: {type(exc).__name__}: {exc}", retryable=False
    )


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget for one event."""

    max_attempts: int = 3
    delays: tuple[float, ...] = (1.0, 5.0, 15.0)
    attempt_timeout: float | None = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if not self.delays:
            raise ValueError("delays must not be empty")
        if any(d < 0 for d in self.delays):
            raise ValueError("delays must be non-negative")
        object.__setattr__(self, "delays", tuple(float(d) for d in self.delays))

    def delay_for(self, attempt_index: int) -> float:
        """Delay after the failed attempt at 0-based *attempt_index*."""
        return self.delays[min(attempt_index, len(self.delays) - 1)]

    @property
    def max_duration(self) -> float | None:
        """Worst-case wall time of one event, in seconds (None when unbounded)."""
        if self.attempt_timeout is None:
            return None
        backoff = sum(self.delay_for(i) for i in range(self.max_attempts - 1))
        return self.max_attempts * self.attempt_timeout + backoff


@dataclass(frozen=True)
class RetryAttempt:
    """One dispatch attempt (1-based)."""

    attempt_number: int
    delay_before_attempt: float
    last_error: HandlerError | None = None


@dataclass
class RetryOutcome:
    result: ProcessingResult
    attempts: list[RetryAttempt] = field(default_factory=list)


async def _run_attempt(event: WebhookEvent, dispatch: Dispatch, timeout: float | None) -> str:
    try:
        if timeout is None:
            return await dispatch(event)
        return await asyncio.wait_for(dispatch(event), timeout=timeout)
    except asyncio.TimeoutError as exc:
        if timeout is None:
            # Raised by the handler itself, not by our deadline
            raise classify_exception(exc) from exc
        raise TransientHandlerError(
            f"Attempt timed out after {timeout:.1f}s", cause=exc
        ) from exc
    except HandlerError:
        raise
    except Exception as exc:
        raise classify_exception(exc) from exc


async def process_with_retry(
    event: WebhookEvent,
    dispatch: Dispatch,
    max_attempts: int = 3,
    delays: Sequence[float] = (1.0, 5.0, 15.0),
    attempt_timeout: float | None = 30.0,
    *,
    policy: RetryPolicy | None = None,
    sleep: Sleep = asyncio.sleep,
) -> RetryOutcome:
    """Run ``dispatch(event)`` with bounded retry.

    Args:
        event: Decoded event
        dispatch: Coroutine function returning a summary or raising HandlerError
        max_attempts: Total attempts, including the first
        delays: Backoff schedule in seconds
        attempt_timeout: Deadline per attempt (None = no deadline)
        policy: Overrides max_attempts/delays/attempt_timeout when given
        sleep: Awaitable sleep, injectable for tests

    Returns:
        RetryOutcome with a SUCCESS or FAILURE result and the attempt history
    """
    policy = policy or RetryPolicy(
        max_attempts=max_attempts, delays=tuple(delays), attempt_timeout=attempt_timeout
    )
    history: list[RetryAttempt] = []
    delay = 0.0
    last_error: HandlerError | None = None

    for index in range(policy.max_attempts):
        attempt = index + 1
        try:
            summary = await _run_attempt(event, dispatch, policy.attempt_timeout)
        except HandlerError as exc:
            last_error = exc
            history.append(RetryAttempt(attempt, delay, exc))

            if not exc.retryable:
                logger.warning(
                    "Terminal failure for %s (%s) on attempt %d: %s",
                    event.id,
                    event.raw_type,
                    attempt,
                    exc,
                )
                return RetryOutcome(
                    ProcessingResult.failure(
                        exc, event_id=event.id, event_type=event.raw_type, attempts=attempt
                    ),
                    history,
                )

            if attempt == policy.max_attempts:
                break

            delay = policy.delay_for(index)
            logger.warning(
                "Retry %d/%d for %s (%s), waiting %.1fs: %s",
                attempt,
                policy.max_attempts - 1,
                event.id,
                event.raw_type,
                delay,
                exc,
            )
            await sleep(delay)
            continue

        history.append(RetryAttempt(attempt, delay, None))
        return RetryOutcome(
            ProcessingResult.success(
                summary, event_id=event.id, event_type=event.raw_type, attempts=attempt
            ),
            history,
        )

    error = MaxRetriesExceededError(policy.max_attempts, last_error)
    logger.error("Giving up on %s (%s): %s", event.id, event.raw_type, error)
    return RetryOutcome(
        ProcessingResult.failure(
            error,
            event_id=event.id,
            event_type=event.raw_type,
            attempts=policy.max_attempts,
        ),
        history,
    )
