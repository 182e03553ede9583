"""Webhook envelope serialization and HMAC-SHA256 signing.

The bytes returned by ``canonical_body`` are exactly the bytes that get
signed and transmitted. Receivers must verify against the raw request body,
not a re-serialization of the parsed JSON.
"""

import hashlib
import hmac
import json
from datetime import datetime
from typing import Any

from apigate.models.webhook import WebhookEnvelope

SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_HEADER = "X-Webhook-Event"
EVENT_ID_HEADER = "X-Webhook-Id"
ATTEMPT_HEADER = "X-Webhook-Attempt"


def build_envelope(event: str, data: dict[str, Any], timestamp: datetime) -> WebhookEnvelope:
    return WebhookEnvelope(event=event, data=data, timestamp=timestamp)


def canonical_body(envelope: WebhookEnvelope) -> bytes:
    """Serialize with sorted keys and compact separators."""
    return json.dumps(
        envelope.model_dump(mode="json"),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def sign_payload(secret: str, body: bytes) -> str:
    """Compute the hex HMAC-SHA256 of ``body`` under ``secret``."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    """Constant-time check of a received signature against the raw body."""
    return hmac.compare_digest(sign_payload(secret, body), signature)
