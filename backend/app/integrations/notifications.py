from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from backend.app import config


logger = logging.getLogger(__name__)

TWILIO_BASE_URL = "https://api.twilio.com"


def email_is_configured() -> bool:
    return bool(os.getenv("EMAIL_API_URL") and os.getenv("EMAIL_API_KEY"))


def twilio_is_configured() -> bool:
    return bool(
        os.getenv("TWILIO_ACCOUNT_SID") and os.getenv("TWILIO_AUTH_TOKEN") and os.getenv("TWILIO_PHONE_NUMBER")
    )


def _build_httpx_client(base_url: str, **kwargs):
    import httpx  # local import to avoid hard dependency at import time

    return httpx.Client(base_url=base_url, timeout=20.0, **kwargs)


class NotificationTransport(Protocol):
    channel: str

    def send(self, *, recipient: str, subject: str, body: str, idempotency_key: Optional[str]) -> None:
        """Deliver one message or raise."""
        ...


class EmailTransport:
    channel = "email"

    def __init__(self, *, base_url: Optional[str] = None, client: Optional[Any] = None):
        self.base_url = (base_url or os.getenv("EMAIL_API_URL") or "").rstrip("/")
        self.api_key = os.getenv("EMAIL_API_KEY", "")
        self.sender = os.getenv("EMAIL_FROM", "TellBill <notifications@tellbill.app>")
        self._client = client or _build_httpx_client(self.base_url)

    def send(self, *, recipient: str, subject: str, body: str, idempotency_key: Optional[str]) -> None:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        response = self._client.post(
            "/emails",
            json={"from": self.sender, "to": [recipient], "subject": subject, "text": body},
            headers=headers,
        )
        response.raise_for_status()


class TwilioTransport:
    """SMS and WhatsApp share the Messages endpoint; WhatsApp addresses carry a prefix."""

    def __init__(self, channel: str, *, client: Optional[Any] = None):
        if channel not in {"sms", "whatsapp"}:
            raise ValueError(f"unsupported twilio channel: {channel}")
        self.channel = channel
        self.account_sid = os.getenv("TWILIO_ACCOUNT_SID", "")
        self.from_number = os.getenv("TWILIO_PHONE_NUMBER", "")
        auth = (self.account_sid, os.getenv("TWILIO_AUTH_TOKEN", ""))
        self._client = client or _build_httpx_client(TWILIO_BASE_URL, auth=auth)

    def _address(self, number: str) -> str:
        return f"whatsapp:{number}" if self.channel == "whatsapp" else number

    def send(self, *, recipient: str, subject: str, body: str, idempotency_key: Optional[str]) -> None:
        _ = subject
        headers = {"I-Twilio-Idempotency-Token": idempotency_key} if idempotency_key else {}
        response = self._client.post(
            f"/2010-04-01/Accounts/{self.account_sid}/Messages.json",
            data={"From": self._address(self.from_number), "To": self._address(recipient), "Body": body},
            headers=headers,
        )
        response.raise_for_status()


@dataclass
class StubTransport:
    """In-process transport for dev and tests. Set ``fail`` to simulate a provider outage."""

    channel: str
    sent: list[dict] = field(default_factory=list)
    fail: bool = False

    def send(self, *, recipient: str, subject: str, body: str, idempotency_key: Optional[str]) -> None:
        if self.fail:
            raise ConnectionError(f"stub {self.channel} transport is failing")
        self.sent.append(
            {
                "recipient": recipient,
                "subject": subject,
                "body": body,
                "idempotency_key": idempotency_key,
            }
        )


STUB_TRANSPORTS: dict[str, StubTransport] = {
    "email": StubTransport("email"),
    "sms": StubTransport("sms"),
    "whatsapp": StubTransport("whatsapp"),
}

_LIVE_TRANSPORTS: dict[str, NotificationTransport] = {}


def reset_stub_transports() -> None:
    for transport in STUB_TRANSPORTS.values():
        transport.sent.clear()
        transport.fail = False


def get_transport(channel: str) -> NotificationTransport:
    key = (channel or "").strip().lower()
    if key not in STUB_TRANSPORTS:
        raise ValueError(f"unsupported channel: {channel}")
    if config.notifications_use_stub():
        return STUB_TRANSPORTS[key]
    configured = email_is_configured() if key == "email" else twilio_is_configured()
    if not configured:
        raise RuntimeError(f"{key} transport is not configured; set its provider credentials or NOTIFICATIONS_USE_STUB=1")
    transport = _LIVE_TRANSPORTS.get(key)
    if transport is None:
        transport = EmailTransport() if key == "email" else TwilioTransport(key)
        _LIVE_TRANSPORTS[key] = transport
        logger.info("%s transport initialised", key)
    return transport
