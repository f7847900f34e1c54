from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Optional, Protocol


ProviderName = str


@dataclass(frozen=True)
class WebhookVerificationResult:
    ok: bool
    reason: str


@dataclass(frozen=True)
class ProviderEvent:
    provider: ProviderName
    event_id: str
    event_type: str
    payload: dict


class WebhookAdapter(Protocol):
    provider: ProviderName
    signature_header: str

    def verify_webhook(
        self, body: bytes, signature: Optional[str], secret: str
    ) -> WebhookVerificationResult:
        ...

    def parse_event(self, body: bytes) -> ProviderEvent:
        ...


def parse_body(body: bytes) -> dict:
    if not body:
        return {}
    payload = json.loads(body.decode("utf-8"))
    if not isinstance(payload, dict):
        raise ValueError("webhook body must be a JSON object")
    return payload
