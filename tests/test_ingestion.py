"""Summary: Tests for message ingestion and dedup.

Importance: Ensures each provider message is stored exactly once per tenant.
Alternatives: Rely on provider labels as the only dedup signal.
"""

from __future__ import annotations

import base64
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

from agendapilot.attachments import MAX_ATTACHMENT_BYTES, PlainTextAttachmentExtractor
from agendapilot.email import FixtureMessageProvider, MessageProvider
from agendapilot.errors import TransientProviderError
from agendapilot.models import Attachment, FetchedMessage, LabelResult, User
from agendapilot.services import InboundService, IngestionService
from agendapilot.storage.sqlite_store import SqliteStore

NOW = datetime(2026, 2, 25, 9, 0, tzinfo=timezone.utc)


class FlakyProvider(MessageProvider):
    """Summary: Provider double that fails selected fetches and labels."""

    name = "flaky"

    def __init__(self, ids: list[str], failing: set[str] | None = None) -> None:
        self.ids = ids
        self.failing = failing or set()
        self.fetch_calls: list[str] = []
        self.labeled: list[str] = []
        self.label_error: Exception | None = None

    def list_message_ids(self, after: datetime, exclude_label: str | None, max_results: int) -> list[str]:
        return [message_id for message_id in self.ids if message_id not in self.labeled][:max_results]

    def get_message(self, provider_message_id: str) -> FetchedMessage:
        self.fetch_calls.append(provider_message_id)
        if provider_message_id in self.failing:
            raise TransientProviderError("gmail", "timed out")
        return FetchedMessage(
            provider_message_id=provider_message_id,
            thread_id=None,
            sender="office@school.example",
            subject=f"Notice {provider_message_id}",
            timestamp=NOW - timedelta(hours=1),
            body="Body",
        )

    def apply_label(self, provider_message_ids: list[str], label: str) -> LabelResult:
        if self.label_error is not None:
            raise self.label_error
        self.labeled.extend(provider_message_ids)
        return LabelResult(success=list(provider_message_ids))


def _setup(tmp_path: Path, provider: MessageProvider, max_attempts: int = 3) -> IngestionService:
    store = SqliteStore(str(tmp_path / "test.db"))
    store.initialize()
    tenant_id = store.ensure_user(User(display_name="Sam", email="sam@example.com"))
    return IngestionService(
        store=store,
        tenant_id=tenant_id,
        provider=provider,
        extractor=PlainTextAttachmentExtractor(),
        processed_label="PROCESSED",
        max_fetch_attempts=max_attempts,
    )


def test_fetch_and_store_is_idempotent(tmp_path: Path) -> None:
    """Summary: Running ingestion twice over the same ids stores each once.

    Importance: Overlapping or repeated sweeps must not duplicate messages.
    Alternatives: Deduplicate later during extraction.
    """

    provider = FlakyProvider(["A", "B", "C"])
    service = _setup(tmp_path, provider)
    first = service.fetch_and_store(timedelta(days=7), 50, NOW)
    assert (first.fetched, first.stored, first.skipped, first.errors) == (3, 3, 0, 0)

    provider.labeled.clear()
    second = service.fetch_and_store(timedelta(days=7), 50, NOW)
    assert (second.fetched, second.stored, second.skipped, second.errors) == (3, 0, 3, 0)
    assert service.store.count_messages(service.tenant_id) == 3
    assert provider.fetch_calls == ["A", "B", "C"]


def test_fetch_errors_become_retryable_stubs(tmp_path: Path) -> None:
    """Summary: A failed fetch is retried next sweep until attempts run out.

    Importance: Transient provider errors never lose a message silently.
    Alternatives: Abort the whole sweep on the first failure.
    """

    provider = FlakyProvider(["A", "B"], failing={"B"})
    service = _setup(tmp_path, provider, max_attempts=2)
    first = service.fetch_and_store(timedelta(days=7), 50, NOW)
    assert (first.stored, first.errors) == (1, 1)
    stub = service.store.get_message_by_provider_id(service.tenant_id, "B")
    assert stub.fetched is False
    assert stub.fetch_attempts == 1

    provider.ids = []
    second = service.fetch_and_store(timedelta(days=7), 50, NOW)
    assert (second.fetched, second.errors) == (1, 1)
    third = service.fetch_and_store(timedelta(days=7), 50, NOW)
    assert third.fetched == 0
    assert provider.fetch_calls.count("B") == 2


def test_fetch_stub_recovers_on_retry(tmp_path: Path) -> None:
    provider = FlakyProvider(["A"], failing={"A"})
    service = _setup(tmp_path, provider)
    service.fetch_and_store(timedelta(days=7), 50, NOW)
    provider.failing.clear()
    result = service.fetch_and_store(timedelta(days=7), 50, NOW)
    assert result.stored == 1
    assert service.store.get_message_by_provider_id(service.tenant_id, "A").fetched is True


def test_label_failure_keeps_stored_messages(tmp_path: Path) -> None:
    """Summary: Labeling failures are non-fatal and retried by label sync.

    Importance: Stored messages stay stored even when the provider refuses labels.
    Alternatives: Roll back storage when labeling fails.
    """

    provider = FlakyProvider(["A", "B"])
    provider.label_error = TransientProviderError("gmail", "rate limited", 429)
    service = _setup(tmp_path, provider)
    result = service.fetch_and_store(timedelta(days=7), 50, NOW)
    assert result.stored == 2
    assert len(service.store.list_unlabeled_messages(service.tenant_id, "flaky", 10)) == 2

    provider.label_error = None
    synced = service.sync_labels()
    assert (synced.attempted, synced.labeled, synced.failed) == (2, 2, 0)
    assert service.store.list_unlabeled_messages(service.tenant_id, "flaky", 10) == []
    assert service.sync_labels().attempted == 0


def test_fixture_provider_ingestion_with_attachments(tmp_path: Path) -> None:
    fixture = tmp_path / "messages.json"
    fixture.write_text(
        json.dumps(
            [
                {
                    "provider_message_id": "fx-1",
                    "sender": "coach@club.example",
                    "subject": "Practice",
                    "timestamp": "2026-02-24T10:00:00+00:00",
                    "body": "See attached.",
                    "attachments": [
                        {
                            "filename": "dates.txt",
                            "mime_type": "text/plain",
                            "content_base64": base64.b64encode(b"Game on 2026-03-07").decode("ascii"),
                        },
                        {
                            "filename": "flyer.pdf",
                            "mime_type": "application/pdf",
                            "content_base64": base64.b64encode(b"%PDF").decode("ascii"),
                        },
                    ],
                },
                {
                    "provider_message_id": "fx-old",
                    "subject": "Old",
                    "timestamp": "2025-01-01T10:00:00+00:00",
                },
            ]
        ),
        encoding="utf-8",
    )
    provider = FixtureMessageProvider(fixture)
    service = _setup(tmp_path, provider)
    result = service.fetch_and_store(timedelta(days=7), 50, NOW)
    assert result.stored == 1
    stored = service.store.get_message_by_provider_id(service.tenant_id, "fx-1")
    assert "Game on 2026-03-07" in stored.attachment_text
    assert stored.provider_labeled is True
    assert provider.list_message_ids(NOW - timedelta(days=7), "PROCESSED", 50) == []


def test_inbound_ingestion_dedups_and_ignores_spam(tmp_path: Path) -> None:
    """Summary: Webhook deliveries share dedup with provider ingestion.

    Importance: Relays retry deliveries and occasionally forward spam.
    Alternatives: Trust the relay to deliver exactly once.
    """

    store = SqliteStore(str(tmp_path / "test.db"))
    store.initialize()
    tenant_id = store.ensure_user(User(display_name="Sam", email="sam@example.com"))
    service = InboundService(store=store, tenant_id=tenant_id, extractor=PlainTextAttachmentExtractor())
    message = FetchedMessage(
        provider_message_id="<abc@relay>",
        thread_id=None,
        sender="office@school.example",
        subject="Field trip",
        timestamp=NOW,
        body="Trip on 2026-03-12",
        attachments=(
            Attachment(filename="big.txt", mime_type="text/plain", content=b"x" * (MAX_ATTACHMENT_BYTES + 1)),
        ),
    )
    assert service.ingest_inbound(message, spam_verdict="FAIL").status == "ignored"
    stored = service.ingest_inbound(message, spam_verdict="PASS", virus_verdict="PASS")
    assert stored.status == "stored"
    assert service.ingest_inbound(message).status == "duplicate"
    row = store.get_message(tenant_id, stored.message_id)
    assert row.source == "inbound"
    assert "big.txt" in row.attachment_error
