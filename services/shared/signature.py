"""
Webhook signature verification.

The payment processor signs every notification with

  Stripe-Signature: t=<unix ts>,v1=<hex hmac>[,v1=<hex hmac>...]

where each v1 is HMAC-SHA256(secret, "<t>." + raw body). Several v1 values
appear while the endpoint secret is being rolled, so any match is accepted.
The timestamp bounds the replay window: a captured request cannot be replayed
once it is older than the tolerance.
"""
from __future__ import annotations

import hashlib
import hmac
import time

DEFAULT_TOLERANCE_SECONDS = 300
SIGNATURE_SCHEME = "v1"


def parse_signature_header(header: str) -> tuple[str | None, list[str]]:
    """Split a signature header into its timestamp and candidate signatures."""
    timestamp = None
    signatures = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == SIGNATURE_SCHEME and value:
            signatures.append(value)
    return timestamp, signatures


def compute_signature(raw_body: bytes | str, secret: str, timestamp: str | int) -> str:
    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")
    signed_payload = f"{timestamp}.".encode("utf-8") + raw_body
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def build_signature_header(raw_body: bytes | str, secret: str, timestamp: int | None = None) -> str:
    """Produce a header the way the processor does. Used by tests and scripts."""
    ts = int(time.time()) if timestamp is None else int(timestamp)
    return f"t={ts},{SIGNATURE_SCHEME}={compute_signature(raw_body, secret, ts)}"


def verify_signature(
    raw_body: bytes | str,
    signature_header: str | None,
    secret: str,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: float | None = None,
) -> bool:
    """
    True only if the header carries a fresh timestamp and at least one MAC
    matching the body. Malformed input of any kind is False, never an exception.
    """
    if not isinstance(signature_header, str) or not isinstance(secret, str) or not secret:
        return False
    if not isinstance(raw_body, (bytes, str)):
        return False

    timestamp, candidates = parse_signature_header(signature_header)
    if not timestamp or not candidates:
        return False

    try:
        ts = int(timestamp)
    except ValueError:
        return False

    current = int(time.time() if now is None else now)
    if abs(current - ts) > tolerance_seconds:
        return False

    try:
        expected = compute_signature(raw_body, secret, timestamp)
    except UnicodeError:
        return False

    # compare_digest on str requires ASCII; non-ASCII candidates can't match a hex digest anyway
    return any(
        candidate.isascii() and hmac.compare_digest(expected, candidate)
        for candidate in candidates
    )
