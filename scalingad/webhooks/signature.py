"""Webhook signature verification.

The processor signs every delivery with a header of the form::

    t=1700000000,v1=5257a869e7ec...,v1=...

where each ``v1`` is the hex HMAC-SHA256 of ``"{t}.{raw_body}"`` under the
shared endpoint secret. More than one ``v1`` may be present while a secret
is being rolled. The timestamp bounds replays of captured deliveries.
"""

import hashlib
import hmac
import logging
import time
from typing import List, Optional, Tuple, Union

from scalingad.errors import SignatureInvalidError

logger = logging.getLogger(__name__)

SIGNATURE_SCHEME = "v1"
DEFAULT_TOLERANCE_SECONDS = 300


def compute_signature(secret: str, timestamp: int, payload: bytes) -> str:
    """Hex HMAC-SHA256 of ``"{timestamp}.{payload}"``."""
    signed = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def sign_payload(secret: str, payload: Union[bytes, str], timestamp: Optional[int] = None) -> str:
    """Build a signature header for a payload. Used by tests and local tooling."""
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    ts = int(time.time()) if timestamp is None else timestamp
    return f"t={ts},{SIGNATURE_SCHEME}={compute_signature(secret, ts, payload)}"


def _parse_header(header: str) -> Tuple[Optional[int], List[str]]:
    timestamp = None
    signatures = []
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == SIGNATURE_SCHEME:
            signatures.append(value)
    return timestamp, signatures


def verify_signature(
    payload: bytes,
    header: Optional[str],
    secret: str,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> int:
    """Verify a signed delivery.

    Args:
        payload: Raw request body, exactly as received
        header: Signature header value
        secret: Shared endpoint secret
        tolerance_seconds: Maximum age (and future skew) of the timestamp
        now: Current unix time, for tests

    Returns:
        The signed timestamp

    Raises:
        SignatureInvalidError: If the header is missing or malformed, no
            signature matches, or the timestamp is outside the tolerance
    """
    if not secret:
        raise SignatureInvalidError("Webhook secret is not configured")
    if not header:
        raise SignatureInvalidError("Missing signature header")

    timestamp, signatures = _parse_header(header)
    if timestamp is None or not signatures:
        raise SignatureInvalidError("Malformed signature header")

    expected = compute_signature(secret, timestamp, payload)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        logger.warning("Webhook signature mismatch")
        raise SignatureInvalidError("No matching signature")

    current = time.time() if now is None else now
    if abs(current - timestamp) > tolerance_seconds:
        logger.warning(f"Webhook timestamp outside tolerance: t={timestamp}")
        raise SignatureInvalidError("Timestamp outside the tolerance window")

    return timestamp
