"""Inbound webhook verification pipeline.

Four checks, in order, each short-circuiting with a named reason:

1. ``missing_headers``: webhook-id, webhook-timestamp and webhook-signature present
2. ``stale_timestamp``: timestamp within the tolerance window
3. ``invalid_signature``: base64 HMAC-SHA256 over ``id.timestamp.body`` matches
   any ``v1,<sig>`` entry of the signature header (constant-time)
4. ``invalid_payload``: body parses into a WebhookEvent
"""

import base64
import binascii
import hashlib
import hmac
import time
from collections.abc import Mapping
from dataclasses import dataclass

from pydantic import ValidationError

from donation_engine.core.exceptions import WebhookConfigurationError, WebhookVerificationFailed
from donation_engine.schemas.webhooks import WebhookEvent

EVENT_ID_HEADER = "webhook-id"
TIMESTAMP_HEADER = "webhook-timestamp"
SIGNATURE_HEADER = "webhook-signature"

SIGNATURE_VERSION = "v1"


@dataclass(frozen=True)
class VerifiedWebhook:
    event_id: str
    timestamp: int
    event: WebhookEvent


def decode_verifier_token(token: str) -> bytes:
    """Turn the configured verifier token into the HMAC key.

    Tokens are base64, optionally with a ``whsec_`` prefix. A token that is
    not valid base64 is used as raw bytes.
    """
    if not token:
        raise WebhookConfigurationError("Webhook verifier token is not configured")
    raw = token.removeprefix("whsec_")
    try:
        return base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError):
        return raw.encode("utf-8")


def compute_signature(key: bytes, event_id: str, timestamp: str, body: bytes) -> str:
    signed = f"{event_id}.{timestamp}.".encode("utf-8") + body
    digest = hmac.new(key, signed, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def parse_signature_header(header: str) -> list[str]:
    """Extract the v1 signatures from a space-separated ``v1,<sig>`` list."""
    signatures = []
    for entry in header.split():
        version, _, signature = entry.partition(",")
        if version == SIGNATURE_VERSION and signature:
            signatures.append(signature)
    return signatures


def verify_webhook(
    headers: Mapping[str, str],
    body: bytes,
    verifier_token: str,
    *,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> VerifiedWebhook:
    """Run the full pipeline. Raises WebhookVerificationFailed on the first failing check."""
    key = decode_verifier_token(verifier_token)

    event_id = headers.get(EVENT_ID_HEADER)
    timestamp = headers.get(TIMESTAMP_HEADER)
    signature_header = headers.get(SIGNATURE_HEADER)
    if not event_id or not timestamp or not signature_header:
        raise WebhookVerificationFailed("missing_headers", status_code=400)

    try:
        sent_at = int(timestamp)
    except ValueError:
        raise WebhookVerificationFailed("stale_timestamp", status_code=400)
    current = time.time() if now is None else now
    if abs(current - sent_at) > tolerance_seconds:
        raise WebhookVerificationFailed("stale_timestamp")

    expected = compute_signature(key, event_id, timestamp, body).encode("ascii")
    candidates = parse_signature_header(signature_header)
    if not any(hmac.compare_digest(expected, c.encode("utf-8")) for c in candidates):
        raise WebhookVerificationFailed("invalid_signature")

    try:
        event = WebhookEvent.model_validate_json(body)
    except ValidationError:
        raise WebhookVerificationFailed("invalid_payload", status_code=400)

    return VerifiedWebhook(event_id=event_id, timestamp=sent_at, event=event)
