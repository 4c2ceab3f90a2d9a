"""HMAC-SHA256 signing of outbound notification payloads.

Canonical string: "{timestamp}.{raw_body}". Receivers recompute the digest
with the shared secret and compare in constant time.

Headers produced:
- X-Vendoreval-Timestamp: <timestamp>
- X-Vendoreval-Signature: sha256=<hex>

Never log the secret or the signed headers.
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass

HEADER_TIMESTAMP = "X-Vendoreval-Timestamp"
HEADER_SIGNATURE = "X-Vendoreval-Signature"
_PREFIX = "sha256="


@dataclass(frozen=True)
class PayloadSignature:
    """Signature of one payload plus the headers that carry it."""

    timestamp: int
    signature: str
    headers: dict[str, str]


def compute_signature(secret: str, timestamp: int, payload: bytes) -> str:
    """Hex HMAC-SHA256 of "{timestamp}.{payload}"."""
    canonical = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode("utf-8"), canonical, hashlib.sha256).hexdigest()


def sign_payload(secret: str, timestamp: int, payload: bytes) -> PayloadSignature:
    """Sign payload and build the delivery headers."""
    signature = compute_signature(secret, timestamp, payload)
    return PayloadSignature(
        timestamp=timestamp,
        signature=signature,
        headers={
            HEADER_TIMESTAMP: str(timestamp),
            HEADER_SIGNATURE: f"{_PREFIX}{signature}",
        },
    )


def verify_signature(secret: str, timestamp: int, payload: bytes, received: str) -> bool:
    """Check a received signature (with or without the sha256= prefix)."""
    if received.startswith(_PREFIX):
        received = received[len(_PREFIX) :]
    return hmac.compare_digest(compute_signature(secret, timestamp, payload), received)
