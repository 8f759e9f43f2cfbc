"""HMAC signatures for outbound deliveries and inbound webhooks.

Header format: ``t=<unix timestamp>,v1=<hex hmac-sha256 of "<t>.<body>">``.
Extra schemes and unknown parameters are tolerated when parsing.
"""

import hashlib
import hmac
import time
from typing import Dict, Optional, Tuple, Union

from relaykit.core.exceptions import WebhookVerificationError

Body = Union[bytes, str]


def _to_bytes(body: Body) -> bytes:
    return body.encode("utf-8") if isinstance(body, str) else bytes(body)


def compute_signature(body: Body, secret: str, timestamp: int) -> str:
    message = str(timestamp).encode("ascii") + b"." + _to_bytes(body)
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def create_signature_header(body: Body, secret: str, timestamp: Optional[int] = None) -> str:
    ts = int(time.time()) if timestamp is None else int(timestamp)
    return f"t={ts},v1={compute_signature(body, secret, ts)}"


def parse_signature_header(header: str) -> Tuple[int, Dict[str, str]]:
    ts = 0
    signatures: Dict[str, str] = {}
    for part in header.split(","):
        name, sep, value = part.strip().partition("=")
        if not sep or not name or not value:
            continue
        if name == "t":
            try:
                ts = int(value)
            except ValueError:
                ts = 0
        else:
            signatures[name] = value
    return ts, signatures


def verify_signature(
    body: Body,
    header: Optional[str],
    secret: str,
    tolerance_seconds: int,
    now: Optional[float] = None,
    scheme: str = "v1",
) -> None:
    """Raises WebhookVerificationError unless header carries a fresh, valid signature for body."""
    if not header:
        raise WebhookVerificationError("Missing signature header", status_code=400)

    ts, signatures = parse_signature_header(header)
    if ts == 0:
        raise WebhookVerificationError("Missing or invalid timestamp in signature header", status_code=400)

    now = time.time() if now is None else now
    if abs(now - ts) > tolerance_seconds:
        raise WebhookVerificationError(f"Timestamp outside tolerance of {tolerance_seconds}s")

    provided = signatures.get(scheme)
    if not provided:
        raise WebhookVerificationError(f"Missing signature for scheme {scheme}", status_code=400)

    expected = compute_signature(body, secret, ts)
    if not hmac.compare_digest(expected, provided):
        raise WebhookVerificationError("Invalid signature")
