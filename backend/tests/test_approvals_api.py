from datetime import datetime, timedelta, timezone

import pytest

pytest.importorskip("httpx")

from backend.app.integrations.notifications import STUB_TRANSPORTS
from backend.app.models import ApprovalRequest, InvoiceLineItem, Project, User


HEADERS = {"X-User-Email": "builder@example.com"}


def _seed_project(db):
    user = User(email="builder@example.com", name="Builder", current_plan="solo")
    db.add(user)
    db.flush()
    project = Project(user_id=user.id, name="Garage", client_name="Jo", client_email="jo@example.com")
    db.add(project)
    db.commit()
    return user, project


def _create(client, project_id, **overrides):
    body = {
        "description": "Move outlet behind the workbench",
        "estimated_cost_cents": 18_000,
        "project_id": project_id,
        "photo_urls": ["https://cdn.example.com/p/1.jpg"],
    }
    body.update(overrides)
    response = client.post("/api/approvals", json=body, headers=HEADERS)
    assert response.status_code == 200
    return response.json()


def test_create_sends_link_to_client(api_client, sqlite_session):
    _, project = _seed_project(sqlite_session)

    created = _create(api_client, project.id)

    assert created["notification"] == "sent"
    assert created["approval"]["client_email"] == "jo@example.com"
    token = created["approval_url"].rsplit("/", 1)[-1]
    message = STUB_TRANSPORTS["email"].sent[0]
    assert message["recipient"] == "jo@example.com"
    assert token in message["body"]


def test_client_view_and_approve(api_client, sqlite_session):
    _, project = _seed_project(sqlite_session)
    token = _create(api_client, project.id)["approval_url"].rsplit("/", 1)[-1]

    view = api_client.get(f"/api/approvals/token/{token}")
    assert view.status_code == 200
    assert view.json()["status"] == "pending"
    assert "user_id" not in view.json()

    first = api_client.post(f"/api/approvals/token/{token}/respond", json={"decision": "approve"})
    second = api_client.post(f"/api/approvals/token/{token}/respond", json={"decision": "decline"})

    assert first.json() == {"status": "approved", "already_handled": False}
    assert second.status_code == 200
    assert second.json() == {"status": "approved", "already_handled": True}
    assert sqlite_session.query(InvoiceLineItem).filter(InvoiceLineItem.source_type == "SCOPE").count() == 1


def test_expired_link_returns_gone(api_client, sqlite_session):
    _, project = _seed_project(sqlite_session)
    created = _create(api_client, project.id, send_now=False)
    token = created["approval_url"].rsplit("/", 1)[-1]

    approval = sqlite_session.get(ApprovalRequest, created["approval"]["id"])
    approval.token_expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
    sqlite_session.commit()

    assert api_client.get(f"/api/approvals/token/{token}").json()["status"] == "expired"
    response = api_client.post(f"/api/approvals/token/{token}/respond", json={"decision": "approve"})
    assert response.status_code == 410
    assert api_client.post(f"/api/approvals/{approval.id}/resend", headers=HEADERS).status_code == 410


def test_unknown_token_is_not_found(api_client, sqlite_session):
    assert api_client.get("/api/approvals/token/nope").status_code == 404


def test_cancel_and_list(api_client, sqlite_session):
    _, project = _seed_project(sqlite_session)
    keep = _create(api_client, project.id, send_now=False)["approval"]["id"]
    drop = _create(api_client, project.id, send_now=False)["approval"]["id"]

    assert api_client.delete(f"/api/approvals/{drop}", headers=HEADERS).status_code == 200
    listed = api_client.get("/api/approvals", headers=HEADERS).json()
    assert [row["id"] for row in listed] == [keep]


def test_scheduler_tick_endpoint_records_run(api_client, sqlite_session, monkeypatch):
    _seed_project(sqlite_session)
    monkeypatch.setenv("SCHEDULER_OPERATOR_TOKEN", "ops-secret")
    operator = {"X-Scheduler-Token": "ops-secret"}

    tick = api_client.post("/api/scheduler/tick", headers=operator)
    assert tick.status_code == 200
    assert {sweep["sweep"] for sweep in tick.json()["sweeps"]} == {"reminders", "expirations", "invoice_alerts"}

    last = api_client.get("/api/scheduler/last-tick", headers=operator).json()
    assert last["run_id"] == tick.json()["run_id"]
    assert last["sweeps"]["expirations"]["error_count"] == 0


def test_scheduler_endpoints_reject_ordinary_users(api_client, monkeypatch):
    monkeypatch.delenv("SCHEDULER_OPERATOR_TOKEN", raising=False)
    assert api_client.post("/api/scheduler/tick", headers=HEADERS).status_code == 404

    monkeypatch.setenv("SCHEDULER_OPERATOR_TOKEN", "ops-secret")
    assert api_client.post("/api/scheduler/tick", headers=HEADERS).status_code == 403
    wrong = {**HEADERS, "X-Scheduler-Token": "guess"}
    assert api_client.get("/api/scheduler/last-tick", headers=wrong).status_code == 403
