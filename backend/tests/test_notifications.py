import pytest

from backend.app.integrations.notifications import STUB_TRANSPORTS, EmailTransport, get_transport
from backend.app.services import notification_service


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("(415) 555-0100", "+14155550100"),
        ("1-415-555-0100", "+14155550100"),
        ("+44 20 7946 0958", "+442079460958"),
        ("555-0100", None),
        ("", None),
    ],
)
def test_normalize_phone(raw, expected):
    assert notification_service.normalize_phone(raw) == expected


def test_sms_body_is_truncated_to_one_segment():
    sent = notification_service.send_notification(
        "sms",
        "4155550100",
        "approval_request",
        {"description": "x" * 400, "client_name": "Sam", "contractor_name": "Pat", "amount": "$10.00"},
    )

    assert sent is True
    body = STUB_TRANSPORTS["sms"].sent[0]["body"]
    assert len(body) == notification_service.SMS_MAX_CHARS
    assert body.endswith("...")


def test_email_body_is_not_truncated():
    notification_service.send_notification(
        "email", "sam@example.com", "approval_decision", {"description": "y" * 400, "decision": "approved"}
    )
    message = STUB_TRANSPORTS["email"].sent[0]
    assert "y" * 400 in message["body"]
    assert message["subject"].startswith("Client approved")


def test_missing_template_variables_render_blank():
    subject, body = notification_service.render("invoice_sent", {"amount": "$5.00"})
    assert subject == "Your invoice"
    assert body.startswith("Hi , your invoice for $5.00")


def test_failures_return_false_instead_of_raising():
    STUB_TRANSPORTS["email"].fail = True

    assert notification_service.send_notification("email", "sam@example.com", "invoice_sent", {}) is False
    assert notification_service.send_notification("sms", "not-a-number", "invoice_sent", {}) is False
    assert notification_service.send_notification("email", "sam@example.com", "no_such_template", {}) is False


def test_unconfigured_channel_fails_instead_of_using_stub(monkeypatch):
    monkeypatch.setenv("NOTIFICATIONS_USE_STUB", "0")
    monkeypatch.delenv("EMAIL_API_URL", raising=False)
    monkeypatch.delenv("EMAIL_API_KEY", raising=False)
    monkeypatch.delenv("TWILIO_ACCOUNT_SID", raising=False)

    with pytest.raises(RuntimeError):
        get_transport("whatsapp")
    with pytest.raises(ValueError):
        get_transport("pager")

    assert notification_service.send_notification("email", "sam@example.com", "invoice_sent", {}) is False
    assert STUB_TRANSPORTS["email"].sent == []


def test_stub_transport_is_used_only_when_enabled(monkeypatch):
    monkeypatch.setenv("NOTIFICATIONS_USE_STUB", "1")
    assert get_transport("whatsapp") is STUB_TRANSPORTS["whatsapp"]


def test_email_transport_posts_with_idempotency_key(monkeypatch):
    httpx = pytest.importorskip("httpx")
    monkeypatch.setenv("EMAIL_API_KEY", "key-123")
    seen = []

    def _handler(request):
        seen.append(request)
        return httpx.Response(200, json={"id": "msg_1"})

    client = httpx.Client(base_url="https://mail.test", transport=httpx.MockTransport(_handler))
    transport = EmailTransport(base_url="https://mail.test", client=client)
    transport.send(recipient="sam@example.com", subject="Hi", body="Body", idempotency_key="approval:1:reminder")

    assert seen[0].url.path == "/emails"
    assert seen[0].headers["Authorization"] == "Bearer key-123"
    assert seen[0].headers["Idempotency-Key"] == "approval:1:reminder"


def test_email_transport_raises_on_provider_error():
    httpx = pytest.importorskip("httpx")
    client = httpx.Client(
        base_url="https://mail.test",
        transport=httpx.MockTransport(lambda request: httpx.Response(503)),
    )
    transport = EmailTransport(base_url="https://mail.test", client=client)

    with pytest.raises(httpx.HTTPStatusError):
        transport.send(recipient="sam@example.com", subject="Hi", body="Body", idempotency_key=None)


def test_twilio_whatsapp_prefixes_addresses(monkeypatch):
    httpx = pytest.importorskip("httpx")
    from backend.app.integrations.notifications import TwilioTransport

    monkeypatch.setenv("TWILIO_ACCOUNT_SID", "AC123")
    monkeypatch.setenv("TWILIO_PHONE_NUMBER", "+14155550000")
    seen = []

    def _handler(request):
        seen.append(request)
        return httpx.Response(201, json={"sid": "SM1"})

    client = httpx.Client(base_url="https://api.twilio.test", transport=httpx.MockTransport(_handler))
    TwilioTransport("whatsapp", client=client).send(
        recipient="+14155550100", subject="ignored", body="Hello", idempotency_key="k1"
    )

    assert seen[0].url.path == "/2010-04-01/Accounts/AC123/Messages.json"
    form = seen[0].content.decode("utf-8")
    assert "To=whatsapp%3A%2B14155550100" in form
    assert "From=whatsapp%3A%2B14155550000" in form
