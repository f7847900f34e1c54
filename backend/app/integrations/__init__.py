from __future__ import annotations

from backend.app.integrations.base import ProviderEvent, ProviderName, WebhookAdapter, WebhookVerificationResult
from backend.app.integrations.flutterwave_webhook import FlutterwaveWebhookAdapter
from backend.app.integrations.revenuecat_webhook import RevenueCatWebhookAdapter
from backend.app.integrations.stripe_webhook import StripeWebhookAdapter


ADAPTERS = {
    "stripe": StripeWebhookAdapter(),
    "flutterwave": FlutterwaveWebhookAdapter(),
    "revenuecat": RevenueCatWebhookAdapter(),
}


def get_adapter(provider: ProviderName) -> WebhookAdapter:
    key = (provider or "").strip().lower()
    adapter = ADAPTERS.get(key)
    if not adapter:
        raise ValueError(f"unsupported provider: {provider}")
    return adapter


__all__ = [
    "ADAPTERS",
    "ProviderEvent",
    "ProviderName",
    "WebhookAdapter",
    "WebhookVerificationResult",
    "get_adapter",
]
