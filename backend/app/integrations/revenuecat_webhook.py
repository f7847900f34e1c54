from __future__ import annotations

import base64
import hashlib
import hmac
from typing import Optional

from backend.app.integrations.base import ProviderEvent, WebhookVerificationResult, parse_body


def sign_payload(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


class RevenueCatWebhookAdapter:
    provider = "revenuecat"
    signature_header = "x-revenuecat-signature"

    def verify_webhook(self, body: bytes, signature: Optional[str], secret: str) -> WebhookVerificationResult:
        if not signature:
            return WebhookVerificationResult(ok=False, reason="missing_signature")
        if not hmac.compare_digest(sign_payload(body, secret), signature.strip()):
            return WebhookVerificationResult(ok=False, reason="signature_mismatch")
        return WebhookVerificationResult(ok=True, reason="verified")

    def parse_event(self, body: bytes) -> ProviderEvent:
        payload = parse_body(body)
        event = payload.get("event") or {}
        event_id = str(event.get("id") or "").strip()
        if not event_id:
            raise ValueError("revenuecat webhook payload missing event.id")
        return ProviderEvent(
            provider=self.provider,
            event_id=event_id,
            event_type=str(event.get("type") or ""),
            payload=event,
        )
