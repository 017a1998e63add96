"""Summary: API integration tests.

Importance: Validates FastAPI endpoints against the pipeline services.
Alternatives: Use manual curl testing only.
"""

from __future__ import annotations

import base64
import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

from fastapi.testclient import TestClient

from agendapilot.api import create_app
from agendapilot.app import build_context, default_tenant_id
from agendapilot.config import AppConfig
from agendapilot.models import ActionKind, User


def _build_config(tmp_path: Path) -> AppConfig:
    """Summary: Build an AppConfig for API tests.

    Importance: Ensures tests use isolated storage and a local fixture mailbox.
    Alternatives: Load AppConfig from environment variables.
    """

    today = datetime.now(timezone.utc)
    fixture = tmp_path / "messages.json"
    fixture.write_text(
        json.dumps(
            [
                {
                    "provider_message_id": "A",
                    "sender": "office@school.example",
                    "subject": "Picture Day",
                    "timestamp": (today - timedelta(hours=2)).isoformat(),
                    "body": "Picture Day is on 2026-03-02.",
                }
            ]
        ),
        encoding="utf-8",
    )
    return AppConfig(
        db_path=str(tmp_path / "api.db"),
        ai_provider="mock",
        fallback_ai_provider=None,
        openai_api_key=None,
        openai_model="gpt-4o-mini",
        ollama_url="http://localhost:11434",
        ollama_model="llama3",
        message_provider="fixture",
        message_fixture_path=str(fixture),
        gmail_base_url="https://gmail.googleapis.com/gmail/v1",
        processed_label="PROCESSED",
        calendar_service="mock",
        calendar_base_url="https://www.googleapis.com/calendar/v3",
        calendar_id="primary",
        calendar_time_zone="UTC",
        google_client_id="",
        google_client_secret="",
        google_token_url="https://oauth2.googleapis.com/token",
        request_timeout_seconds=5,
        fetch_window_days=7,
        fetch_max_results=50,
        max_fetch_attempts=3,
        analysis_batch_size=10,
        analysis_max_retries=3,
        few_shot_examples=3,
        sync_batch_size=100,
        sync_max_retries=5,
        duplicate_window_minutes=60,
        token_ttl_days=7,
        public_base_url="http://testserver",
        api_host="127.0.0.1",
        api_port=8000,
        api_key="",
        webhook_secret="",
        token_secret="secret",
        inbound_domain="inbox.agendapilot.local",
        default_user_name="Local User",
        default_user_email="local@agendapilot",
        default_inbound_alias="family",
    )


def test_api_health(tmp_path: Path) -> None:
    client = TestClient(create_app(_build_config(tmp_path)))
    assert client.get("/health").json() == {"status": "ok"}


def test_api_sweeps_and_links(tmp_path: Path) -> None:
    """Summary: Run every sweep over HTTP and redeem an issued link.

    Importance: Confirms the HTTP layer drives the same pipeline as the CLI.
    Alternatives: Test services only.
    """

    config = _build_config(tmp_path)
    context = build_context(config)
    client = TestClient(create_app(config, context))

    ingest = client.post("/sweeps/ingest", json={})
    assert ingest.status_code == 200
    assert ingest.json()["stored"] == 1
    assert client.post("/sweeps/ingest", json={}).json()["stored"] == 0

    analyze = client.post("/sweeps/analyze", json={}).json()
    assert analyze["events_created"] == 1
    sync = client.post("/sweeps/sync", json={}).json()
    assert sync["synced"] == 1
    assert len(context.shared_calendar.events) == 1

    tenant_id = default_tenant_id(context)
    event_id = context.store.list_events(tenant_id)[0].id
    links = client.post("/links", json={"event_ids": [event_id]}).json()["links"]
    path = links[f"event:{event_id}"].replace("http://testserver", "")
    first = client.get(path)
    assert first.status_code == 200
    assert "Event removed" in first.text
    assert client.post(path).status_code == 404
    assert client.get("/actions/not-a-token").status_code == 404

    assert client.post("/sweeps/cleanup", json={}).status_code == 200


def test_api_action_status_codes(tmp_path: Path) -> None:
    config = _build_config(tmp_path)
    context = build_context(config)
    client = TestClient(create_app(config, context))
    tenant_id = default_tenant_id(context)
    tokens = context.services_for_tenant(tenant_id).tokens
    now = datetime.now(timezone.utc)
    expired = tokens.issue(tenant_id, ActionKind.COMPLETE_TASK, 7, now=now - timedelta(days=8))
    missing = tokens.issue(tenant_id, ActionKind.COMPLETE_TASK, 999, now=now)
    assert client.get(f"/actions/{expired}").status_code == 410
    response = client.get(f"/actions/{missing}")
    assert response.status_code == 404
    assert "Task Not Found" in response.text
    assert client.get(f"/actions/{missing}").status_code == 409


def test_api_key_required_when_configured(tmp_path: Path) -> None:
    """Summary: Sweep routes demand the API key while action links stay open.

    Importance: Action links are bearer capabilities and need no key.
    Alternatives: Protect every route with the same key.
    """

    config = replace(_build_config(tmp_path), api_key="s3cret")
    client = TestClient(create_app(config))
    assert client.post("/sweeps/analyze", json={}).status_code == 401
    wrong = client.post("/sweeps/analyze", json={}, headers={"X-API-Key": "s3cret-but-longer"})
    assert wrong.status_code == 401
    assert client.post("/sweeps/analyze", json={}, headers={"X-API-Key": "S3CRET"}).status_code == 401
    ok = client.post("/sweeps/analyze", json={}, headers={"X-API-Key": "s3cret"})
    assert ok.status_code == 200
    assert client.get("/failures").status_code == 401
    assert client.get("/actions/whatever").status_code == 404


def test_api_inbound_webhook(tmp_path: Path) -> None:
    """Summary: Inbound deliveries resolve the tenant from the recipient alias.

    Importance: Relays retry, so repeated deliveries must be duplicates.
    Alternatives: Require the tenant id in the webhook URL.
    """

    config = replace(_build_config(tmp_path), webhook_secret="hook")
    context = build_context(config)
    tenant_id = context.store.ensure_user(
        User(display_name="Sam", email="sam@example.com", inbound_alias="sam-family")
    )
    client = TestClient(create_app(config, context))
    payload = {
        "message_id": "<relay-1@mail>",
        "recipient": "Sam-Family@inbox.agendapilot.local",
        "sender": "coach@club.example",
        "subject": "Tournament",
        "body": "Tournament on 2026-03-21",
        "attachments": [
            {
                "filename": "notes.txt",
                "mime_type": "text/plain",
                "content_base64": base64.b64encode(b"Bring water").decode("ascii"),
            }
        ],
    }
    assert client.post("/inbound", json=payload).status_code == 401
    headers = {"X-Webhook-Secret": "hook"}
    stored = client.post("/inbound", json=payload, headers=headers).json()
    assert stored["status"] == "stored"
    message = context.store.get_message(tenant_id, stored["message_id"])
    assert "Bring water" in message.attachment_text
    assert client.post("/inbound", json=payload, headers=headers).json()["status"] == "duplicate"

    spam = dict(payload, message_id="<relay-2@mail>", spam_verdict="FAIL")
    assert client.post("/inbound", json=spam, headers=headers).json()["status"] == "ignored"
    unknown = dict(payload, recipient="nobody@inbox.agendapilot.local")
    assert client.post("/inbound", json=unknown, headers=headers).status_code == 404


def test_api_inbound_webhook_reaches_default_tenant(tmp_path: Path) -> None:
    """Summary: The configured default alias routes mail to the default tenant.

    Importance: A single-household install receives forwarded mail without setup.
    Alternatives: Require an alias command before the webhook works.
    """

    config = replace(_build_config(tmp_path), default_inbound_alias="Sam.Family")
    context = build_context(config)
    tenant_id = default_tenant_id(context)
    assert context.store.get_user(tenant_id).inbound_alias == "sam.family"
    client = TestClient(create_app(config, context))
    payload = {
        "message_id": "<relay-9@mail>",
        "recipient": "sam.family@inbox.agendapilot.local",
        "sender": "coach@club.example",
        "subject": "Practice",
        "body": "Practice moved to 2026-03-14",
    }
    stored = client.post("/inbound", json=payload).json()
    assert stored["status"] == "stored"
    assert context.store.get_message(tenant_id, stored["message_id"]).subject == "Practice"


def test_api_review_feedback_and_failures(tmp_path: Path) -> None:
    config = _build_config(tmp_path)
    context = build_context(config)
    client = TestClient(create_app(config, context))
    client.post("/sweeps/ingest", json={})
    client.post("/sweeps/analyze", json={})
    tenant_id = default_tenant_id(context)
    message = context.store.get_message_by_provider_id(tenant_id, "A")
    analysis = context.store.latest_analysis(tenant_id, message.id)

    approved = client.post(
        f"/analyses/{analysis.id}/status", json={"status": "approved", "reviewer": "sam"}
    )
    assert approved.json() == {"id": analysis.id, "status": "approved", "reviewed_by": "sam"}
    assert client.post(f"/analyses/{analysis.id}/status", json={"status": "reviewed"}).status_code == 409
    assert client.post("/analyses/9999/status", json={"status": "approved"}).status_code == 404

    feedback = client.post(
        "/feedback", json={"item_type": "event", "item_text": "Picture Day", "is_relevant": True}
    )
    assert feedback.status_code == 200
    assert client.get("/failures").json() == {"analyses": [], "events": []}
