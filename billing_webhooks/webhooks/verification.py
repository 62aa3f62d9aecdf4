"""Webhook signature verification — constant-time HMAC with replay window.

Security contract:
- All comparisons use hmac.compare_digest() (constant-time, no timing attacks)
- Verification failure -> raise, no payload processing
- No active secret -> verification always fails (fail-closed)
- Timestamp tolerance: 300s (5 min) to prevent replay
- Secret rotation: every active secret is tried against every v1 signature
- Logs never include the secret or the payload body

Header format: t=<unix seconds>,v1=<hex sha256>[,v1=<hex sha256>...]
Signed string: "<t>.<raw body>"
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from collections.abc import Iterable
from typing import Protocol, runtime_checkable

from billing_webhooks.webhooks.exceptions import (
    InvalidSignatureError,
    StaleSignatureError,
)

logger = logging.getLogger(__name__)

# Replay window (seconds)
DEFAULT_TOLERANCE_SECONDS = 300

_SIGNATURE_SCHEME = "v1"
_HEX_DIGITS = frozenset("0123456789abcdef")


def _as_bytes(secret: bytes | str) -> bytes:
    return secret.encode("utf-8") if isinstance(secret, str) else secret


def compute_signature(payload: bytes, secret: bytes | str, timestamp: int) -> str:
    """HMAC-SHA256 hex digest of "<timestamp>.<payload>"."""
    signed_payload = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(_as_bytes(secret), signed_payload, hashlib.sha256).hexdigest()


def generate_signature_header(
    payload: bytes, secret: bytes | str, timestamp: int | None = None
) -> str:
    """Build a valid signature header for *payload* (local tooling and tests)."""
    ts = int(time.time()) if timestamp is None else timestamp
    return f"t={ts},{_SIGNATURE_SCHEME}={compute_signature(payload, secret, ts)}"


def parse_signature_header(signature_header: str | None) -> tuple[int, list[str]]:
    """Split a header into (timestamp, [v1 signatures]).

    Unknown schemes (v0, ...) are ignored. Anything else that is not a
    well-formed ``key=value`` list with exactly one integer ``t`` and at least
    one ``v1`` raises InvalidSignatureError.
    """
    if not signature_header or not signature_header.strip():
        raise InvalidSignatureError("missing signature header")

    timestamp_str: str | None = None
    signatures: list[str] = []

    for item in signature_header.split(","):
        kv = item.strip().split("=", 1)
        if len(kv) != 2 or not kv[0]:
            raise InvalidSignatureError("malformed signature header")
        key, value = kv[0].strip(), kv[1].strip()
        if key == "t":
            if timestamp_str is not None:
                raise InvalidSignatureError("duplicate timestamp")
            timestamp_str = value
        elif key == _SIGNATURE_SCHEME:
            if value:
                signature = value.lower()
                if not value.isascii() or not _HEX_DIGITS.issuperset(signature):
                    raise InvalidSignatureError("non-hex v1 signature")
                signatures.append(signature)

    if timestamp_str is None:
        raise InvalidSignatureError("missing timestamp")
    if not signatures:
        raise InvalidSignatureError("missing v1 signature")

    # ASCII digits only: no sign, underscores or non-Latin digits
    if not (timestamp_str.isascii() and timestamp_str.isdigit()):
        raise InvalidSignatureError("non-integer timestamp")

    return int(timestamp_str), signatures


def verify_signature(
    payload: bytes,
    signature_header: str | None,
    secrets: Iterable[bytes | str],
    now: float | None = None,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
) -> None:
    """Verify a webhook signature header.

    Args:
        payload: Raw request body bytes, exactly as received
        signature_header: Value of the provider signature header
        secrets: Active shared secrets (current first, then rotated-out ones)
        now: Wall-clock unix time; defaults to time.time()
        tolerance: Replay window in seconds

    Raises:
        InvalidSignatureError: header malformed, no secret, or no match
        StaleSignatureError: timestamp outside the replay window
    """
    try:
        timestamp, signatures = parse_signature_header(signature_header)
    except InvalidSignatureError as exc:
        logger.warning("Webhook signature rejected: %s", exc.reason)
        raise

    current = time.time() if now is None else now
    skew = abs(current - timestamp)
    if skew > tolerance:
        logger.warning(
            "Webhook signature rejected: timestamp %d outside %ds window (skew %.0fs)",
            timestamp,
            tolerance,
            skew,
        )
        raise StaleSignatureError(timestamp, skew, tolerance)

    active = [_as_bytes(s) for s in secrets if s]
    if not active:
        logger.warning("No webhook signing secret configured — rejecting webhook")
        raise InvalidSignatureError("no signing secret configured")

    # Check every secret against every signature; don't short-circuit on secret
    matched = False
    for secret in active:
        expected = compute_signature(payload, secret, timestamp)
        if any(hmac.compare_digest(expected, sig) for sig in signatures):
            matched = True

    if not matched:
        logger.warning(
            "Webhook signature rejected: no v1 match (t=%d, %d candidate(s))",
            timestamp,
            len(signatures),
        )
        raise InvalidSignatureError("signature mismatch")


# ── Secret providers ──────────────────────────────────────────────────────


@runtime_checkable
class SecretProvider(Protocol):
    """Source of the shared secrets that are valid at a given moment."""

    def active_secrets(self, now: float) -> list[bytes]:
        """Secrets accepted at unix time *now*, current first."""
        ...


class StaticSecretProvider:
    """Fixed list of secrets."""

    def __init__(self, *secrets: bytes | str):
        self._secrets = [_as_bytes(s) for s in secrets if s]

    def active_secrets(self, now: float) -> list[bytes]:
        return list(self._secrets)


class RotatingSecretProvider:
    """Current secret plus a rotated-out secret honoured until a deadline.

    With no ``previous_valid_until`` the previous secret stays active until
    it is removed from configuration.
    """

    def __init__(
        self,
        current: bytes | str,
        previous: bytes | str | None = None,
        previous_valid_until: float | None = None,
    ):
        self._current = _as_bytes(current) if current else None
        self._previous = _as_bytes(previous) if previous else None
        self._previous_valid_until = previous_valid_until

    def active_secrets(self, now: float) -> list[bytes]:
        secrets: list[bytes] = []
        if self._current:
            secrets.append(self._current)
        if self._previous and (
            self._previous_valid_until is None or now <= self._previous_valid_until
        ):
            secrets.append(self._previous)
        return secrets


class SignatureVerifier:
    """Binds verify_signature() to a secret provider and tolerance."""

    def __init__(
        self,
        secret_provider: SecretProvider,
        tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    ):
        self._secret_provider = secret_provider
        self._tolerance = tolerance

    @property
    def tolerance(self) -> int:
        return self._tolerance

    def verify(
        self, payload: bytes, signature_header: str | None, now: float | None = None
    ) -> None:
        current = time.time() if now is None else now
        verify_signature(
            payload,
            signature_header,
            self._secret_provider.active_secrets(current),
            now=current,
            tolerance=self._tolerance,
        )
