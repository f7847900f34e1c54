from __future__ import annotations

import hashlib
import hmac
from typing import Optional

from backend.app.integrations.base import ProviderEvent, WebhookVerificationResult, parse_body


def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class FlutterwaveWebhookAdapter:
    provider = "flutterwave"
    signature_header = "x-flutterwave-signature"

    def verify_webhook(self, body: bytes, signature: Optional[str], secret: str) -> WebhookVerificationResult:
        if not signature:
            return WebhookVerificationResult(ok=False, reason="missing_signature")
        if not hmac.compare_digest(sign_payload(body, secret), signature.strip().lower()):
            return WebhookVerificationResult(ok=False, reason="signature_mismatch")
        return WebhookVerificationResult(ok=True, reason="verified")

    def parse_event(self, body: bytes) -> ProviderEvent:
        payload = parse_body(body)
        data = payload.get("data") or {}
        event_id = str(data.get("id") or payload.get("id") or "").strip()
        if not event_id:
            raise ValueError("flutterwave webhook payload missing data.id")
        return ProviderEvent(
            provider=self.provider,
            event_id=event_id,
            event_type=str(payload.get("event") or payload.get("type") or ""),
            payload=payload,
        )
