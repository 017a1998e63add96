"""Summary: Tests for the extraction sweep.

Importance: Covers fallback policy, retry bounds, dedup, and resumability.
Alternatives: Test only the prompt and parser in isolation.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from agendapilot.ai import AiProvider, MockAiProvider
from agendapilot.errors import ConfigurationError, TransientProviderError
from agendapilot.models import (
    AttachmentText,
    FeedbackExample,
    FeedbackItemType,
    FetchedMessage,
    SubjectProfile,
    User,
)
from agendapilot.services import ExtractionService
from agendapilot.storage.sqlite_store import SqliteStore

NOW = datetime(2026, 2, 25, 9, 0, tzinfo=timezone.utc)


class SweepInterrupted(BaseException):
    """Simulates a process being killed mid-sweep."""


class ScriptedProvider(AiProvider):
    """Summary: AI double that replays scripted responses or errors."""

    def __init__(self, name: str, responses: list[object] | None = None) -> None:
        self.name = name
        self.model = f"{name}-model"
        self.responses = list(responses or [])
        self.prompts: list[str] = []

    def generate_text(self, prompt: str, purpose: str) -> tuple[str, int]:
        self.prompts.append(prompt)
        response = self.responses.pop(0) if self.responses else _payload()
        if isinstance(response, BaseException):
            raise response
        return str(response), 5


class InterruptingProvider(MockAiProvider):
    """Summary: Mock provider that dies after a number of calls."""

    def __init__(self, calls_before_interrupt: int) -> None:
        self.remaining = calls_before_interrupt

    def generate_text(self, prompt: str, purpose: str) -> tuple[str, int]:
        if self.remaining == 0:
            raise SweepInterrupted()
        self.remaining -= 1
        return super().generate_text(prompt, purpose)


def _payload(events: list[dict[str, object]] | None = None, todos: list[dict[str, object]] | None = None) -> str:
    return json.dumps(
        {
            "human_analysis": {"email_summary": "School notice"},
            "events": events if events is not None else [],
            "todos": todos if todos is not None else [],
        }
    )


def _store_with_messages(tmp_path: Path, count: int) -> tuple[SqliteStore, int, list[int]]:
    store = SqliteStore(str(tmp_path / "test.db"))
    store.initialize()
    tenant_id = store.ensure_user(User(display_name="Sam", email="sam@example.com"))
    ids = []
    for index in range(count):
        message = FetchedMessage(
            provider_message_id=f"msg-{index + 1}",
            thread_id=None,
            sender="office@school.example",
            subject=f"Notice {index + 1}",
            timestamp=NOW + timedelta(minutes=index),
            body=f"Event on 2026-03-{index + 1:02d}",
        )
        ids.append(store.store_message(tenant_id, message, "fixture", AttachmentText(text=""), NOW))
    return store, tenant_id, ids


def _service(
    store: SqliteStore,
    tenant_id: int,
    primary: AiProvider,
    fallback: AiProvider | None = None,
    max_retries: int = 3,
) -> ExtractionService:
    return ExtractionService(
        store=store,
        tenant_id=tenant_id,
        primary=primary,
        fallback=fallback,
        max_retries=max_retries,
    )


def test_analyze_creates_candidates_and_marks_analyzed(tmp_path: Path) -> None:
    """Summary: A valid extraction commits events, tasks, and the analyzed flag.

    Importance: Candidates and the flag land together.
    Alternatives: Mark messages analyzed before writing candidates.
    """

    store, tenant_id, ids = _store_with_messages(tmp_path, 1)
    provider = ScriptedProvider(
        "primary",
        [
            _payload(
                events=[{"title": "Picture Day", "date": "2026-03-02", "confidence": 0.9}],
                todos=[
                    {"description": "Pay for photos", "type": "PAY", "amount": 25, "confidence": 0.8},
                ],
            )
        ],
    )
    result = _service(store, tenant_id, provider).analyze_unanalyzed(10, NOW)
    assert (result.processed, result.successful, result.failed) == (1, 1, 0)
    assert (result.events_created, result.tasks_created) == (1, 1)
    assert store.get_message(tenant_id, ids[0]).analyzed is True
    task = store.list_tasks(tenant_id)[0]
    assert task.category == "pay"
    assert task.amount == "25"
    analysis = store.latest_analysis(tenant_id, ids[0])
    assert analysis.status.value == "analyzed"
    assert analysis.quality_score == pytest.approx(0.805)
    assert store.count_ai_requests(tenant_id) == 1


def test_transport_error_falls_back_to_secondary(tmp_path: Path) -> None:
    """Summary: A timeout on the primary provider retries on the fallback.

    Importance: Transport failures say nothing about the message itself.
    Alternatives: Record a failure and wait for the next sweep.
    """

    store, tenant_id, ids = _store_with_messages(tmp_path, 1)
    primary = ScriptedProvider("primary", [TransientProviderError("openai", "timed out")])
    fallback = ScriptedProvider("fallback", [_payload()])
    result = _service(store, tenant_id, primary, fallback).analyze_unanalyzed(10, NOW)
    assert result.successful == 1
    assert len(fallback.prompts) == 1
    assert store.latest_analysis(tenant_id, ids[0]).ai_provider == "fallback"
    assert store.count_ai_requests(tenant_id) == 2


def test_validation_error_does_not_fall_back(tmp_path: Path) -> None:
    """Summary: A schema violation is recorded without trying the fallback.

    Importance: Validation failures are retried on the same provider only.
    Alternatives: Fall back on every failure.
    """

    store, tenant_id, ids = _store_with_messages(tmp_path, 1)
    primary = ScriptedProvider("primary", ['{"events": [{"title": "x"}], "todos": []}'])
    fallback = ScriptedProvider("fallback")
    result = _service(store, tenant_id, primary, fallback).analyze_unanalyzed(10, NOW)
    assert (result.successful, result.failed) == (0, 1)
    assert fallback.prompts == []
    analysis = store.latest_analysis(tenant_id, ids[0])
    assert analysis.status.value == "pending"
    assert analysis.retry_count == 1
    assert analysis.raw_json == '{"events": [{"title": "x"}], "todos": []}'
    assert store.get_message(tenant_id, ids[0]).analyzed is False


def test_failures_stop_after_max_retries(tmp_path: Path) -> None:
    store, tenant_id, ids = _store_with_messages(tmp_path, 1)
    primary = ScriptedProvider("primary", ["not json"] * 5)
    service = _service(store, tenant_id, primary, max_retries=2)
    assert service.analyze_unanalyzed(10, NOW).failed == 1
    assert service.analyze_unanalyzed(10, NOW).failed == 1
    assert service.analyze_unanalyzed(10, NOW).processed == 0
    assert [item.message_id for item in store.list_failed_analyses(tenant_id, 2)] == ids


def test_reanalyze_restarts_exhausted_retry_budget(tmp_path: Path) -> None:
    """Summary: A message that exhausted its retries is picked up again after reanalyze.

    Importance: Operators retry failed messages once the provider is fixed.
    Alternatives: Require deleting the failed analyses by hand.
    """

    store, tenant_id, ids = _store_with_messages(tmp_path, 1)
    failing = _service(store, tenant_id, ScriptedProvider("primary", ["not json"] * 2), max_retries=2)
    failing.analyze_unanalyzed(10, NOW)
    failing.analyze_unanalyzed(10, NOW)
    assert failing.analyze_unanalyzed(10, NOW).processed == 0

    working = _service(store, tenant_id, MockAiProvider(), max_retries=2)
    assert working.reanalyze(ids[0], NOW)
    assert store.list_failed_analyses(tenant_id, 2) == []
    result = working.analyze_unanalyzed(10, NOW)
    assert (result.processed, result.successful, result.events_created) == (1, 1, 1)
    assert store.get_message(tenant_id, ids[0]).analyzed is True
    assert working.reanalyze(999, NOW) is False


def test_failure_after_fallback_records_fallback_provider(tmp_path: Path) -> None:
    store, tenant_id, ids = _store_with_messages(tmp_path, 1)
    primary = ScriptedProvider("primary", [TransientProviderError("openai", "timed out")])
    fallback = ScriptedProvider("fallback", [TransientProviderError("ollama", "refused")])
    result = _service(store, tenant_id, primary, fallback).analyze_unanalyzed(10, NOW)
    assert result.failed == 1
    analysis = store.latest_analysis(tenant_id, ids[0])
    assert analysis.ai_provider == "fallback"
    assert "refused" in analysis.error


def test_configuration_error_aborts_sweep(tmp_path: Path) -> None:
    store, tenant_id, ids = _store_with_messages(tmp_path, 2)
    primary = ScriptedProvider("primary", [ConfigurationError("missing key")])
    with pytest.raises(ConfigurationError):
        _service(store, tenant_id, primary).analyze_unanalyzed(10, NOW)
    assert store.latest_analysis(tenant_id, ids[0]) is None


def test_reanalysis_does_not_duplicate_events(tmp_path: Path) -> None:
    """Summary: Re-running extraction on a message yields no duplicate events.

    Importance: Retries after a crash must keep the calendar clean.
    Alternatives: Delete candidates before reanalysis.
    """

    store, tenant_id, ids = _store_with_messages(tmp_path, 1)
    service = _service(store, tenant_id, MockAiProvider())
    assert service.analyze_unanalyzed(10, NOW).events_created == 1
    assert service.reanalyze(ids[0])
    again = service.analyze_unanalyzed(10, NOW)
    assert (again.successful, again.events_created) == (1, 0)
    assert len(store.list_events(tenant_id)) == 1
    assert [item.version for item in store.list_analyses(tenant_id, ids[0])] == [1, 2]


def test_interrupted_sweep_resumes_with_remaining_messages(tmp_path: Path) -> None:
    """Summary: Killing a sweep after three of five messages leaves the last two eligible.

    Importance: Every sweep must be resumable from the eligibility filter alone.
    Alternatives: Track a progress cursor per sweep.
    """

    store, tenant_id, ids = _store_with_messages(tmp_path, 5)
    with pytest.raises(SweepInterrupted):
        _service(store, tenant_id, InterruptingProvider(3)).analyze_unanalyzed(10, NOW)
    assert [store.get_message(tenant_id, message_id).analyzed for message_id in ids] == [
        True,
        True,
        True,
        False,
        False,
    ]
    assert len(store.list_events(tenant_id)) == 3
    remaining = [message.id for message in store.list_messages_for_analysis(tenant_id, 3, 10)]
    assert remaining == ids[3:]

    provider = ScriptedProvider("primary")
    result = _service(store, tenant_id, provider).analyze_unanalyzed(10, NOW)
    assert result.processed == 2
    assert len(provider.prompts) == 2
    assert "Notice 4" in provider.prompts[0]
    assert "Notice 5" in provider.prompts[1]


def test_prompt_carries_profiles_and_feedback(tmp_path: Path) -> None:
    store, tenant_id, _ids = _store_with_messages(tmp_path, 1)
    store.upsert_subject_profile(tenant_id, SubjectProfile(name="Maya", notes="Grade 3"))
    store.add_feedback(
        tenant_id, FeedbackExample(FeedbackItemType.EVENT, "Picture Day", True), NOW
    )
    store.add_feedback(
        tenant_id, FeedbackExample(FeedbackItemType.TASK, "Buy raffle tickets", False), NOW
    )
    provider = ScriptedProvider("primary")
    _service(store, tenant_id, provider).analyze_unanalyzed(10, NOW)
    prompt = provider.prompts[0]
    assert "- Maya (Grade 3)" in prompt
    assert "[event] Picture Day" in prompt
    assert "did NOT find relevant" in prompt
    assert "Buy raffle tickets" in prompt
