"""Signature gate for inbound payment provider webhooks."""

import hashlib
import hmac
import json
import logging
import time
from typing import Optional

from pydantic import ValidationError

from membership_engine.billing.schemas import EventEnvelope
from membership_engine.common.exceptions import (
    MalformedEventError,
    SignatureVerificationError,
)

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = 300


def compute_signature(payload: bytes, timestamp: str, secret: str) -> str:
    """HMAC-SHA256 hex digest over ``"<timestamp>." + payload``."""
    signed_payload = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()


def verify_signature(
    payload: bytes,
    signature_header: str,
    webhook_secret: str,
    tolerance: int = DEFAULT_TOLERANCE,
    now: Optional[float] = None,
) -> bool:
    """Verify a provider webhook signature (v1 scheme).

    The header looks like ``t=<timestamp>,v1=<signature>[,v1=<signature>...]``;
    several v1 entries appear while the provider rotates secrets. The
    timestamp must be within ``tolerance`` seconds of ``now`` to stop replays
    of captured payloads. A tolerance of 0 disables the age check.
    """
    if not signature_header or not webhook_secret:
        return False

    timestamp = ""
    candidates: list[str] = []
    for item in signature_header.split(","):
        key, _, value = item.partition("=")
        key = key.strip()
        if key == "t":
            timestamp = value.strip()
        elif key == "v1":
            candidates.append(value.strip())

    if not timestamp or not candidates:
        return False

    try:
        ts = int(timestamp)
    except ValueError:
        return False

    if tolerance > 0:
        current = time.time() if now is None else now
        if abs(current - ts) > tolerance:
            return False

    computed = compute_signature(payload, timestamp, webhook_secret)
    return any(hmac.compare_digest(computed, candidate) for candidate in candidates)


def sign_header(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a signature header for ``payload``, as the provider would."""
    ts = str(int(time.time()) if timestamp is None else timestamp)
    return f"t={ts},v1={compute_signature(payload, ts, secret)}"


def parse_event(payload: bytes | str | dict) -> EventEnvelope:
    """Parse a (trusted) payload into an event envelope."""
    if isinstance(payload, (bytes, str)):
        try:
            payload = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise MalformedEventError("Event payload is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise MalformedEventError("Event payload must be a JSON object")
    try:
        return EventEnvelope.model_validate(payload)
    except ValidationError as exc:
        raise MalformedEventError("Event payload is missing id or type") from exc


def construct_event(
    payload: bytes,
    signature_header: str,
    webhook_secret: str,
    tolerance: int = DEFAULT_TOLERANCE,
    now: Optional[float] = None,
) -> EventEnvelope:
    """Verify ``payload`` and return the typed event.

    Must run before any database access: a rejected payload leaves no trace.
    """
    if not verify_signature(payload, signature_header, webhook_secret, tolerance, now):
        logger.warning("Rejected webhook with invalid signature")
        raise SignatureVerificationError()
    return parse_event(payload)
