from __future__ import annotations

import hashlib
import hmac
import logging
import time
from typing import Optional

from backend.app import config
from backend.app.integrations.base import ProviderEvent, WebhookVerificationResult, parse_body


logger = logging.getLogger(__name__)


def _parse_signature_header(header: str) -> tuple[Optional[int], list[str]]:
    timestamp = None
    signatures: list[str] = []
    for item in header.split(","):
        key, _, value = item.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return None, []
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def sign_payload(body: bytes, secret: str, timestamp: int) -> str:
    signed = f"{timestamp}.".encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


class StripeWebhookAdapter:
    provider = "stripe"
    signature_header = "stripe-signature"

    def verify_webhook(self, body: bytes, signature: Optional[str], secret: str) -> WebhookVerificationResult:
        if not signature:
            return WebhookVerificationResult(ok=False, reason="missing_signature")
        timestamp, candidates = _parse_signature_header(signature)
        if timestamp is None or not candidates:
            return WebhookVerificationResult(ok=False, reason="malformed_signature")
        # reject stale timestamps to limit replay
        if abs(int(time.time()) - timestamp) > config.stripe_signature_tolerance_seconds():
            return WebhookVerificationResult(ok=False, reason="timestamp_outside_tolerance")
        expected = sign_payload(body, secret, timestamp)
        if not any(hmac.compare_digest(expected, candidate) for candidate in candidates):
            return WebhookVerificationResult(ok=False, reason="signature_mismatch")
        return WebhookVerificationResult(ok=True, reason="verified")

    def parse_event(self, body: bytes) -> ProviderEvent:
        payload = parse_body(body)
        event_id = str(payload.get("id") or "").strip()
        if not event_id:
            raise ValueError("stripe webhook payload missing id")
        return ProviderEvent(
            provider=self.provider,
            event_id=event_id,
            event_type=str(payload.get("type") or ""),
            payload=payload,
        )
