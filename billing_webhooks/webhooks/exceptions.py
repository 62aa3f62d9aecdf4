"""Webhook error taxonomy.

Terminal vs retryable is decided here, once, so the retry loop only has to
read ``HandlerError.retryable``:

- SignatureError    — forged/stale/garbled signature header (terminal)
- DecodeError       — body is not a usable event envelope (terminal)
- HandlerError      — raised by a business handler; ``retryable`` says whether
                      another attempt could succeed
- MaxRetriesExceededError — retry budget spent on retryable failures (terminal)

Collaborator errors (StorageError, NotificationError) are raised by the
storage/notification backends and translated by the dispatcher.
"""

from __future__ import annotations


class WebhookError(Exception):
    """Base class for every error raised by the webhook core."""


# ── Signature ─────────────────────────────────────────────────────────────


class SignatureError(WebhookError):
    """Inbound event failed authentication."""


class InvalidSignatureError(SignatureError):
    """Header is malformed, or no v1 signature matches an active secret."""

    def __init__(self, reason: str = "signature mismatch"):
        self.reason = reason
        super().__init__(f"Invalid webhook signature: {reason}")


class StaleSignatureError(SignatureError):
    """Header timestamp is outside the replay window."""

    def __init__(self, timestamp: int, skew: float, tolerance: int):
        self.timestamp = timestamp
        self.skew = skew
        self.tolerance = tolerance
        super().__init__(
            f"Webhook timestamp {timestamp} outside tolerance "
            f"({skew:.0f}s > {tolerance}s)"
        )


# ── Decoding ──────────────────────────────────────────────────────────────


class DecodeError(WebhookError):
    """Body could not be decoded into a WebhookEvent."""


class MissingFieldError(DecodeError):
    """A required top-level envelope field is absent."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Missing required field: {name}")


class MalformedPayloadError(DecodeError):
    """Body is not JSON, or an envelope field has the wrong shape."""


# ── Handlers ──────────────────────────────────────────────────────────────


class HandlerError(WebhookError):
    """Failure raised while applying an event to the business state."""

    retryable: bool = False

    def __init__(self, message: str, *, retryable: bool | None = None):
        if retryable is not None:
            self.retryable = retryable
        super().__init__(message)


class InvalidEventDataError(HandlerError):
    """Event object lacks a required field or has it in the wrong shape."""

    retryable = False

    def __init__(self, field: str, detail: str = "missing or malformed"):
        self.field = field
        super().__init__(f"Invalid event data: '{field}' {detail}")


class UnsupportedStateError(HandlerError):
    """Event cannot be applied to the current business state."""

    retryable = False


class TransientHandlerError(HandlerError):
    """Collaborator failed in a way another attempt may fix."""

    retryable = True

    def __init__(self, message: str, *, cause: BaseException | None = None):
        self.cause = cause
        super().__init__(message)


class MaxRetriesExceededError(WebhookError):
    """All attempts failed with retryable errors."""

    def __init__(self, attempts: int, last_error: BaseException | None = None):
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(f"Max retries exceeded after {attempts} attempts{detail}")


# ── Collaborators ─────────────────────────────────────────────────────────


class StorageError(WebhookError):
    """Billing store write failed. Treated as transient."""


class NotificationError(WebhookError):
    """Notification delivery failed. Logged, never fatal."""
