"""Helpers for building signed gateway webhook deliveries in tests."""

import hashlib
import hmac
import json
import time
from typing import Any, Optional

STRIPE_TEST_SECRET = "whsec_test_secret"
PAYSTACK_TEST_SECRET = "sk_test_paystack_secret"


def stripe_event(event_id: str, event_type: str, obj: dict[str, Any]) -> bytes:
    return json.dumps(
        {"id": event_id, "type": event_type, "data": {"object": obj}}
    ).encode()


def stripe_signature(
    body: bytes, secret: str = STRIPE_TEST_SECRET, timestamp: Optional[int] = None
) -> str:
    ts = timestamp if timestamp is not None else int(time.time())
    digest = hmac.new(secret.encode(), f"{ts}.".encode() + body, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def paystack_event(event: str, data: dict[str, Any]) -> bytes:
    return json.dumps({"event": event, "data": data}).encode()


def paystack_signature(body: bytes, secret: str = PAYSTACK_TEST_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()
