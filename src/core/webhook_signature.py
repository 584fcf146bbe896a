"""HMAC-SHA256 signatures for payment provider webhooks.

Header format: ``t=<unix_seconds>,v1=<hex digest>``. The digest is
HMAC-SHA256 over the raw request body keyed with the shared webhook secret.
Several ``v1`` entries may be present while a secret is being rotated.
"""

import hashlib
import hmac
import logging
import re
import time

logger = logging.getLogger(__name__)

HEX_DIGEST = re.compile(r"[0-9a-f]{64}")


class SignatureVerificationError(Exception):
    """Raised when a webhook signature header fails verification."""


def compute_signature(payload: bytes, secret: str) -> str:
    """Return the hex HMAC-SHA256 digest of ``payload``."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def build_signature_header(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    """Build a signature header for ``payload``, as the provider would send it."""
    if timestamp is None:
        timestamp = int(time.time())
    return f"t={timestamp},v1={compute_signature(payload, secret)}"


def parse_signature_header(header: str) -> tuple[int, list[str]]:
    """Split a signature header into its timestamp and v1 digests.

    Raises:
        SignatureVerificationError: If the header is malformed.
    """
    timestamp: int | None = None
    digests: list[str] = []

    for part in header.split(","):
        name, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if name == "t":
            try:
                timestamp = int(value)
            except ValueError as e:
                raise SignatureVerificationError("Signature timestamp is not an integer") from e
        elif name == "v1" and value:
            digest = value.lower()
            if not HEX_DIGEST.fullmatch(digest):
                raise SignatureVerificationError("Signature v1 digest is not a hex SHA-256 digest")
            digests.append(digest)

    if timestamp is None:
        raise SignatureVerificationError("Signature header has no timestamp")
    if not digests:
        raise SignatureVerificationError("Signature header has no v1 digest")
    return timestamp, digests


def verify_signature(
    payload: bytes,
    header: str | None,
    secret: str,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> int:
    """Verify a webhook signature header against the raw payload.

    Args:
        payload: Raw request body exactly as received.
        header: Signature header value.
        secret: Shared webhook secret.
        tolerance_seconds: Maximum allowed clock skew; 0 disables the check.
        now: Current unix time, for testing.

    Returns:
        int: The verified signature timestamp.

    Raises:
        SignatureVerificationError: If the header is missing or malformed,
            the timestamp is outside the tolerance window, or no digest matches.
    """
    if not header:
        raise SignatureVerificationError("Missing signature header")
    if not secret:
        raise SignatureVerificationError("Webhook secret is not configured")

    timestamp, digests = parse_signature_header(header)

    if tolerance_seconds > 0:
        current = time.time() if now is None else now
        if abs(current - timestamp) > tolerance_seconds:
            raise SignatureVerificationError(
                f"Signature timestamp outside tolerance window ({tolerance_seconds}s)"
            )

    expected = compute_signature(payload, secret)
    if not any(hmac.compare_digest(expected, digest) for digest in digests):
        raise SignatureVerificationError("No signature matches the payload")

    return timestamp
