"""Summary: Tests for capability tokens and action links.

Importance: A link must work exactly once, only before it expires.
Alternatives: Require a logged-in session for every action.
"""

from __future__ import annotations

import threading
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

from agendapilot.models import (
    ActionKind,
    AttachmentText,
    ExtractedEvent,
    ExtractedTask,
    ExtractionResult,
    FetchedMessage,
    HumanAnalysis,
    RedeemReason,
    TaskCategory,
    User,
)
from agendapilot.services import ActionTokenService, CleanupService
from agendapilot.storage.sqlite_store import SqliteStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _setup(tmp_path: Path) -> tuple[SqliteStore, int, ActionTokenService]:
    store = SqliteStore(str(tmp_path / "test.db"))
    store.initialize()
    tenant_id = store.ensure_user(User(display_name="Sam", email="sam@example.com"))
    service = ActionTokenService(store=store, ttl_days=7, public_base_url="https://agenda.example/")
    return store, tenant_id, service


def _seed_candidates(store: SqliteStore, tenant_id: int) -> tuple[int, int]:
    message_id = store.store_message(
        tenant_id,
        FetchedMessage("A", None, "office@school.example", "Notice", NOW, "Body"),
        "fixture",
        AttachmentText(text=""),
        NOW,
    )
    commit = store.record_successful_analysis(
        tenant_id,
        message_id,
        "mock",
        ExtractionResult(
            analysis=HumanAnalysis(),
            events=(
                ExtractedEvent("Picture Day", datetime(2026, 3, 2), None, None, None, None, 0.9),
            ),
            tasks=(
                ExtractedTask("Pay for photos", TaskCategory.PAY, date(2026, 2, 27), None, None, "25", 0.8),
            ),
            raw_json="{}",
        ),
        NOW,
    )
    return commit.task_ids[0], commit.event_ids[0]


def test_issue_and_redeem_once(tmp_path: Path) -> None:
    """Summary: Verify a token redeems once and then reports already_used.

    Importance: Replaying a link must not repeat the mutation.
    Alternatives: Allow idempotent re-execution.
    """

    store, tenant_id, service = _setup(tmp_path)
    token = service.issue(tenant_id, ActionKind.COMPLETE_TASK, 7, now=NOW)
    assert len(token) >= 43
    first = service.redeem(token, NOW + timedelta(days=1))
    assert first.valid
    assert (first.tenant_id, first.action_kind, first.target_id) == (tenant_id, ActionKind.COMPLETE_TASK, 7)
    second = service.redeem(token, NOW + timedelta(days=1))
    assert not second.valid
    assert second.reason == RedeemReason.ALREADY_USED
    assert service.redeem("unknown", NOW).reason == RedeemReason.NOT_FOUND


def test_token_expires_after_ttl(tmp_path: Path) -> None:
    """Summary: A seven-day token redeemed on day eight reports expired.

    Importance: Old summaries must not keep granting actions.
    Alternatives: Never expire links.
    """

    store, tenant_id, service = _setup(tmp_path)
    token = service.issue(tenant_id, ActionKind.COMPLETE_TASK, 7, ttl_days=7, now=NOW)
    result = service.redeem(token, NOW + timedelta(days=8))
    assert not result.valid
    assert result.reason == RedeemReason.EXPIRED
    assert store.get_action_token(token).used_at is None


def test_concurrent_redeem_succeeds_once(tmp_path: Path) -> None:
    """Summary: Many threads redeeming one token yield exactly one success.

    Importance: Check-and-mark must be atomic across connections.
    Alternatives: Serialize redemptions with an in-process lock.
    """

    store, tenant_id, service = _setup(tmp_path)
    token = service.issue(tenant_id, ActionKind.REMOVE_EVENT, 3, now=NOW)
    barrier = threading.Barrier(8)
    results = []
    lock = threading.Lock()

    def redeem() -> None:
        barrier.wait()
        outcome = service.redeem(token, NOW)
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=redeem) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert sum(1 for result in results if result.valid) == 1
    assert all(result.reason == RedeemReason.ALREADY_USED for result in results if not result.valid)


def test_execute_completes_task_and_removes_event(tmp_path: Path) -> None:
    store, tenant_id, service = _setup(tmp_path)
    task_id, event_id = _seed_candidates(store, tenant_id)
    links = service.issue_links(tenant_id, [task_id], [event_id], now=NOW)
    assert set(links) == {f"task:{task_id}", f"event:{event_id}"}
    assert links[f"task:{task_id}"].startswith("https://agenda.example/actions/")

    task_token = links[f"task:{task_id}"].rsplit("/", 1)[1]
    outcome = service.execute(task_token, NOW)
    assert outcome.success
    assert store.get_task(tenant_id, task_id).status == "done"
    assert service.execute(task_token, NOW).reason == RedeemReason.ALREADY_USED

    event_token = links[f"event:{event_id}"].rsplit("/", 1)[1]
    assert service.execute(event_token, NOW).success
    assert store.get_event(tenant_id, event_id) is None
    assert store.get_action_token(event_token) is None


def test_execute_reports_missing_target(tmp_path: Path) -> None:
    """Summary: A valid token for a deleted task reports target_missing.

    Importance: Users see why nothing happened instead of a false success.
    Alternatives: Report success regardless of the target.
    """

    store, tenant_id, service = _setup(tmp_path)
    token = service.issue(tenant_id, ActionKind.COMPLETE_TASK, 999, now=NOW)
    outcome = service.execute(token, NOW)
    assert not outcome.success
    assert outcome.reason == RedeemReason.TARGET_MISSING
    assert outcome.action_kind == ActionKind.COMPLETE_TASK


def test_invalidate_for_target(tmp_path: Path) -> None:
    store, tenant_id, service = _setup(tmp_path)
    token = service.issue(tenant_id, ActionKind.COMPLETE_TASK, 7, now=NOW)
    assert service.invalidate_for_target(tenant_id, ActionKind.COMPLETE_TASK, 7) == 1
    assert service.redeem(token, NOW).reason == RedeemReason.NOT_FOUND


def test_cleanup_past_items(tmp_path: Path) -> None:
    """Summary: Cleanup auto-completes past-due tasks and purges expired tokens.

    Importance: Summaries stay free of obligations that already passed.
    Alternatives: Delete past-due tasks outright.
    """

    store, tenant_id, service = _setup(tmp_path)
    task_id, _event_id = _seed_candidates(store, tenant_id)
    expired = service.issue(tenant_id, ActionKind.COMPLETE_TASK, task_id, ttl_days=1, now=NOW - timedelta(days=3))
    live = service.issue(tenant_id, ActionKind.COMPLETE_TASK, task_id, now=NOW)
    result = CleanupService(store=store, tenant_id=tenant_id).cleanup_past_items(NOW)
    assert (result.tasks_auto_completed, result.tokens_purged) == (1, 1)
    task = store.get_task(tenant_id, task_id)
    assert task.status == "done"
    assert task.auto_completed is True
    assert store.get_action_token(expired) is None
    assert store.get_action_token(live) is not None


def test_zero_ttl_expires_immediately(tmp_path: Path) -> None:
    store, tenant_id, service = _setup(tmp_path)
    token = service.issue(tenant_id, ActionKind.COMPLETE_TASK, 7, ttl_days=0, now=NOW)
    assert store.get_action_token(token).expires_at == store.get_action_token(token).created_at
    assert service.redeem(token, NOW + timedelta(minutes=1)).reason == RedeemReason.EXPIRED


def test_discard_task_invalidates_completion_links(tmp_path: Path) -> None:
    """Summary: Discarding a task deletes it along with its completion links.

    Importance: A link in an old summary must not act on a task the tenant removed.
    Alternatives: Leave the links and report the missing task on redemption.
    """

    store, tenant_id, service = _setup(tmp_path)
    task_id, event_id = _seed_candidates(store, tenant_id)
    links = service.issue_links(tenant_id, [task_id], [event_id], now=NOW)
    task_token = links[f"task:{task_id}"].rsplit("/", 1)[1]
    event_token = links[f"event:{event_id}"].rsplit("/", 1)[1]
    cleanup = CleanupService(store=store, tenant_id=tenant_id)
    assert cleanup.discard_task(task_id) is True
    assert store.get_task(tenant_id, task_id) is None
    assert service.redeem(task_token, NOW).reason == RedeemReason.NOT_FOUND
    assert service.redeem(event_token, NOW).valid
    assert cleanup.discard_task(task_id) is False
