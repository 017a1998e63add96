"""Summary: End-to-end sweep tests over a fixture mailbox.

Importance: Exercises ingestion, extraction, calendar sync, and action tokens together.
Alternatives: Rely on per-service tests only.
"""

from __future__ import annotations

import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

from agendapilot.app import build_context, default_tenant_id, run_all_sweeps, run_tenant_sweeps
from agendapilot.config import AppConfig
from agendapilot.models import ActionKind, RedeemReason

NOW = datetime(2026, 2, 25, 9, 0, tzinfo=timezone.utc)


def _build_config(tmp_path: Path) -> AppConfig:
    fixture = tmp_path / "messages.json"
    fixture.write_text(
        json.dumps(
            [
                {
                    "provider_message_id": "A",
                    "sender": "office@school.example",
                    "subject": "Picture Day",
                    "timestamp": "2026-02-24T08:00:00+00:00",
                    "body": "Picture Day is on 2026-03-02. Wear your best smile.",
                },
                {
                    "provider_message_id": "B",
                    "sender": "coach@club.example",
                    "subject": "Thanks",
                    "timestamp": "2026-02-24T09:00:00+00:00",
                    "body": "Thanks to everyone who volunteered.",
                },
                {
                    "provider_message_id": "C",
                    "sender": "pta@school.example",
                    "subject": "Newsletter",
                    "timestamp": "2026-02-24T10:00:00+00:00",
                    "body": "Our monthly newsletter is attached.",
                },
            ]
        ),
        encoding="utf-8",
    )
    return AppConfig(
        db_path=str(tmp_path / "scenario.db"),
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
        public_base_url="http://localhost:8000",
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


def test_picture_day_scenario(tmp_path: Path) -> None:
    """Summary: Three messages in, one synced event out, and retries add nothing.

    Importance: Repeated sweeps must converge on the same calendar state.
    Alternatives: Deduplicate events in the calendar after the fact.
    """

    context = build_context(_build_config(tmp_path))
    tenant_id = default_tenant_id(context)
    services = context.services_for_tenant(tenant_id)

    report = run_tenant_sweeps(services, NOW)
    assert report["ingestion"].stored == 3
    assert report["extraction"].successful == 3
    assert report["extraction"].events_created == 1
    assert report["calendar"].synced == 1

    events = context.store.list_events(tenant_id)
    assert [(event.title, event.start_at[:10]) for event in events] == [("Picture Day", "2026-03-02")]
    assert events[0].sync_status == "synced"
    assert len(context.shared_calendar.events) == 1

    message_a = context.store.get_message_by_provider_id(tenant_id, "A")
    assert services.extraction.reanalyze(message_a.id)
    again = run_tenant_sweeps(services, NOW)
    assert again["ingestion"].stored == 0
    assert again["extraction"].processed == 1
    assert again["extraction"].events_created == 0
    assert again["calendar"].processed == 0
    assert len(context.store.list_events(tenant_id)) == 1
    assert len(context.shared_calendar.events) == 1

    token = services.tokens.issue(tenant_id, ActionKind.COMPLETE_TASK, 7, ttl_days=7, now=NOW)
    assert services.tokens.redeem(token, NOW + timedelta(days=8)).reason == RedeemReason.EXPIRED


def test_run_all_sweeps_reports_configuration_errors(tmp_path: Path) -> None:
    """Summary: A tenant without mailbox credentials gets an error report.

    Importance: One misconfigured tenant must not stop the scheduler.
    Alternatives: Let the exception end the whole run.
    """

    config = replace(_build_config(tmp_path), message_provider="gmail")
    context = build_context(config)
    tenant_id = default_tenant_id(context)
    reports = run_all_sweeps(context, NOW)
    assert "gmail credentials" in reports[tenant_id]["error"]
    assert context.store.count_messages(tenant_id) == 0
