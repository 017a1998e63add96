"""Summary: Core application services for AgendaPilot.

Importance: Orchestrates the ingestion, extraction, calendar sync, and capability
token sweeps on top of the abstract store.
Alternatives: Build a full service layer with dependency injection framework.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import secrets
from datetime import datetime, timedelta

from agendapilot.ai import (
    EXTRACTION_PURPOSE,
    AiProvider,
    build_extraction_prompt,
    estimate_tokens,
    parse_extraction_response,
)
from agendapilot.attachments import AttachmentExtractor, extract_attachment_text
from agendapilot.calendar import CalendarService
from agendapilot.config import AppConfig
from agendapilot.credentials import CredentialCodec, expires_soon, refresh_google_token
from agendapilot.email import MessageProvider
from agendapilot.errors import (
    AgendaPilotError,
    ConfigurationError,
    ExtractionValidationError,
    TransientProviderError,
)
from agendapilot.models import (
    ActionKind,
    ActionOutcome,
    AiRequest,
    AiResponse,
    AnalysisBatchResult,
    AnalysisStatus,
    CalendarEntry,
    CleanupResult,
    ExtractionRequest,
    FeedbackExample,
    FeedbackItemType,
    FetchedMessage,
    FetchResult,
    InboundResult,
    LabelSyncResult,
    RedeemReason,
    RedeemResult,
    SubjectProfile,
    SyncResult,
    TimeOfDay,
    utc_now,
)
from agendapilot.storage.base import PipelineStore, StoredAnalysis, StoredEvent, StoredMessage


logger = logging.getLogger(__name__)

INBOUND_SOURCE = "inbound"
REVIEW_QUALITY_THRESHOLD = 0.7
BACKOFF_BASE_SECONDS = 60
BACKOFF_MAX_SECONDS = 3600

REDEEM_MESSAGES = {
    RedeemReason.ALREADY_USED: "This action has already been completed.",
    RedeemReason.EXPIRED: "This link has expired. Please check your latest summary.",
    RedeemReason.NOT_FOUND: "Invalid or expired link.",
}


@dataclass(frozen=True)
class IngestionService:
    """Summary: Fetches provider messages and stores each logical message once.

    Importance: Provider delivery is at-least-once; storage must be exactly-once.
    Alternatives: Trust the provider's processed label as the only dedup signal.
    """

    store: PipelineStore
    tenant_id: int
    provider: MessageProvider
    extractor: AttachmentExtractor
    processed_label: str
    max_fetch_attempts: int

    def fetch_and_store(
        self, window: timedelta, max_results: int, now: datetime | None = None
    ) -> FetchResult:
        """Summary: Run one ingestion sweep over a time window.

        Importance: Known ids are skipped, per-message failures are recorded on
        stub rows, and labeling failures never roll back stored messages.
        Alternatives: Abort the sweep on the first provider error.
        """

        now = now or utc_now()
        candidates = self.provider.list_message_ids(now - window, self.processed_label, max_results)
        for stub in self.store.list_fetch_stubs(self.tenant_id, self.max_fetch_attempts, max_results):
            if stub.provider_message_id not in candidates:
                candidates.append(stub.provider_message_id)
        stored = skipped = errors = 0
        newly_stored: list[str] = []
        for provider_message_id in candidates:
            existing = self.store.get_message_by_provider_id(self.tenant_id, provider_message_id)
            if existing and (existing.fetched or existing.fetch_attempts >= self.max_fetch_attempts):
                skipped += 1
                continue
            try:
                message = self.provider.get_message(provider_message_id)
                attachments = extract_attachment_text(self.extractor, message.attachments)
                message_id = self.store.store_message(
                    self.tenant_id, message, self.provider.name, attachments, now
                )
            except ConfigurationError:
                raise
            except Exception as exc:
                attempts = self.store.record_fetch_error(
                    self.tenant_id, provider_message_id, str(exc), now
                )
                errors += 1
                logger.warning(
                    "Fetch of %s failed (attempt %s): %s", provider_message_id, attempts, exc
                )
                continue
            if message_id is None:
                skipped += 1
                continue
            stored += 1
            newly_stored.append(provider_message_id)
        if newly_stored:
            self._label(newly_stored)
        logger.info(
            "Ingestion for tenant %s: fetched=%s stored=%s skipped=%s errors=%s.",
            self.tenant_id,
            len(candidates),
            stored,
            skipped,
            errors,
        )
        return FetchResult(fetched=len(candidates), stored=stored, skipped=skipped, errors=errors)

    def sync_labels(self, limit: int = 500) -> LabelSyncResult:
        """Summary: Re-apply the processed label to stored messages still missing it.

        Importance: Label application is idempotent, so retrying by provider id is safe.
        Alternatives: Retry labeling inline during the next ingestion sweep.
        """

        pending = self.store.list_unlabeled_messages(self.tenant_id, self.provider.name, limit)
        if not pending:
            return LabelSyncResult(attempted=0, labeled=0, failed=0)
        ids = [message.provider_message_id for message in pending]
        labeled, failed = self._label(ids)
        logger.info("Label sync for tenant %s: labeled=%s failed=%s.", self.tenant_id, labeled, failed)
        return LabelSyncResult(attempted=len(ids), labeled=labeled, failed=failed)

    def _label(self, provider_message_ids: list[str]) -> tuple[int, int]:
        try:
            result = self.provider.apply_label(provider_message_ids, self.processed_label)
        except (AgendaPilotError, RuntimeError) as exc:
            logger.warning("Applying label %s failed: %s", self.processed_label, exc)
            return 0, len(provider_message_ids)
        self.store.mark_labeled(self.tenant_id, result.success)
        if result.failed:
            logger.warning("Label %s not applied to %s messages.", self.processed_label, len(result.failed))
        return len(result.success), len(result.failed)


@dataclass(frozen=True)
class InboundService:
    """Summary: Stores messages pushed by the inbound webhook.

    Importance: Shares the (tenant, provider id) key space with provider ingestion,
    so a redelivered webhook never creates a second message.
    Alternatives: Keep webhook messages in a separate table.
    """

    store: PipelineStore
    tenant_id: int
    extractor: AttachmentExtractor

    def ingest_inbound(
        self,
        message: FetchedMessage,
        spam_verdict: str | None = None,
        virus_verdict: str | None = None,
        now: datetime | None = None,
    ) -> InboundResult:
        if (spam_verdict or "").upper() == "FAIL" or (virus_verdict or "").upper() == "FAIL":
            logger.warning("Ignoring inbound message %s flagged by scanning.", message.provider_message_id)
            return InboundResult(status="ignored")
        attachments = extract_attachment_text(self.extractor, message.attachments)
        message_id = self.store.store_message(
            self.tenant_id, message, INBOUND_SOURCE, attachments, now or utc_now()
        )
        if message_id is None:
            logger.info("Inbound message %s already stored.", message.provider_message_id)
            return InboundResult(status="duplicate")
        logger.info("Stored inbound message %s for tenant %s.", message_id, self.tenant_id)
        return InboundResult(status="stored", message_id=message_id)


@dataclass(frozen=True)
class ExtractionService:
    """Summary: Runs AI extraction over unanalyzed messages.

    Importance: Each message is extracted a bounded number of times and its
    candidates land atomically with the analyzed flag.
    Alternatives: Extract inline during ingestion.
    """

    store: PipelineStore
    tenant_id: int
    primary: AiProvider
    fallback: AiProvider | None
    max_retries: int
    few_shot_examples: int = 3

    def analyze_unanalyzed(self, limit: int, now: datetime | None = None) -> AnalysisBatchResult:
        """Summary: Extract events and tasks from up to limit eligible messages.

        Importance: Committed messages stay committed if the sweep is interrupted;
        the next sweep picks up whatever is still eligible.
        Alternatives: Wrap the whole batch in one transaction.
        """

        messages = self.store.list_messages_for_analysis(self.tenant_id, self.max_retries, limit)
        profiles = tuple(self.store.list_subject_profiles(self.tenant_id))
        positives = tuple(
            self.store.list_feedback_examples(self.tenant_id, True, self.few_shot_examples)
        )
        negatives = tuple(
            self.store.list_feedback_examples(self.tenant_id, False, self.few_shot_examples)
        )
        processed = successful = failed = events_created = tasks_created = 0
        for message in messages:
            processed += 1
            prompt = build_extraction_prompt(
                ExtractionRequest(
                    message_text=_message_text(message),
                    subject=message.subject,
                    sender=message.sender,
                    sent_at=datetime.fromisoformat(message.timestamp.replace("Z", "+00:00")),
                    subject_profiles=profiles,
                    positive_examples=positives,
                    negative_examples=negatives,
                )
            )
            # Only transport and quota failures switch providers; validation
            # failures are retried on the same provider in a later sweep.
            provider = self.primary
            raw_response: str | None = None
            try:
                try:
                    raw_response = self._generate(provider, prompt, now)
                except TransientProviderError as exc:
                    if self.fallback is None:
                        raise
                    logger.warning(
                        "Primary AI provider %s failed (%s); retrying with %s.",
                        provider.name,
                        exc,
                        self.fallback.name,
                    )
                    provider = self.fallback
                    raw_response = self._generate(provider, prompt, now)
                result = parse_extraction_response(raw_response)
                commit = self.store.record_successful_analysis(
                    self.tenant_id, message.id, provider.name, result, now or utc_now()
                )
            except ConfigurationError:
                raise
            except ExtractionValidationError as exc:
                self._record_failure(message, provider.name, exc, exc.raw_response, now)
                failed += 1
                continue
            except Exception as exc:
                self._record_failure(message, provider.name, exc, raw_response, now)
                failed += 1
                continue
            if commit is None:
                logger.info("Message %s was analyzed by a concurrent sweep.", message.id)
                continue
            successful += 1
            events_created += len(commit.event_ids)
            tasks_created += len(commit.task_ids)
        logger.info(
            "Extraction for tenant %s: processed=%s successful=%s failed=%s events=%s tasks=%s.",
            self.tenant_id,
            processed,
            successful,
            failed,
            events_created,
            tasks_created,
        )
        return AnalysisBatchResult(
            processed=processed,
            successful=successful,
            failed=failed,
            events_created=events_created,
            tasks_created=tasks_created,
        )

    def reanalyze(self, message_id: int, now: datetime | None = None) -> bool:
        """Summary: Make a message eligible for extraction again with a fresh retry budget.

        Importance: Works for analyzed messages and for ones that exhausted their retries;
        event dedup keeps re-extraction from duplicating candidates.
        Alternatives: Delete old analyses and candidates first.
        """

        reset = self.store.reset_analysis(self.tenant_id, message_id, now or utc_now())
        if reset:
            logger.info("Queued message %s for reanalysis.", message_id)
        return reset

    def _generate(self, provider: AiProvider, prompt: str, now: datetime | None) -> str:
        request_id = self.store.log_ai_request(
            AiRequest(
                provider=provider.name,
                model=provider.model,
                prompt=prompt,
                purpose=EXTRACTION_PURPOSE,
                timestamp=now or utc_now(),
            ),
            tenant_id=self.tenant_id,
        )
        text, latency_ms = provider.generate_text(prompt, EXTRACTION_PURPOSE)
        self.store.log_ai_response(
            AiResponse(
                request_id=request_id,
                response_text=text,
                latency_ms=latency_ms,
                token_estimate=estimate_tokens(text),
            )
        )
        return text

    def _record_failure(
        self,
        message: StoredMessage,
        provider_name: str,
        exc: Exception,
        raw_response: str | None,
        now: datetime | None,
    ) -> None:
        retry_count = self.store.record_failed_analysis(
            self.tenant_id, message.id, provider_name, str(exc), raw_response, now or utc_now()
        )
        if retry_count >= self.max_retries:
            logger.warning(
                "Extraction for message %s failed %s times and needs review: %s",
                message.id,
                retry_count,
                exc,
            )
        else:
            logger.warning("Extraction for message %s failed: %s", message.id, exc)


@dataclass(frozen=True)
class ReviewService:
    """Summary: Human review workflow over analysis records.

    Importance: Status moves only along pending, analyzed, reviewed, then approved or rejected.
    Alternatives: Let reviewers set any status directly.
    """

    store: PipelineStore
    tenant_id: int
    max_retries: int

    def update_status(
        self,
        analysis_id: int,
        status: AnalysisStatus,
        reviewer: str | None = None,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> StoredAnalysis:
        current = self.store.get_analysis(self.tenant_id, analysis_id)
        if current is None:
            raise ValueError(f"Analysis {analysis_id} not found")
        if not current.status.can_transition_to(status):
            raise ValueError(f"Cannot move analysis from {current.status.value} to {status.value}")
        updated = self.store.update_analysis_status(
            self.tenant_id, analysis_id, current.status, status, reviewer, notes, now or utc_now()
        )
        if not updated:
            raise ValueError(f"Analysis {analysis_id} changed while updating")
        logger.info("Analysis %s moved to %s.", analysis_id, status.value)
        return self.store.get_analysis(self.tenant_id, analysis_id)

    def batch_approve(self, analysis_ids: list[int], reviewer: str | None = None) -> int:
        approved = 0
        for analysis_id in analysis_ids:
            try:
                self.update_status(analysis_id, AnalysisStatus.APPROVED, reviewer)
            except ValueError as exc:
                logger.info("Skipping analysis %s: %s", analysis_id, exc)
                continue
            approved += 1
        return approved

    def list_failed(self) -> list[StoredAnalysis]:
        return self.store.list_failed_analyses(self.tenant_id, self.max_retries)

    def pending_review(
        self, threshold: float = REVIEW_QUALITY_THRESHOLD, limit: int = 50
    ) -> list[StoredAnalysis]:
        return self.store.list_analyses_pending_review(self.tenant_id, threshold, limit)

    def stats(self) -> dict[str, int]:
        return self.store.analysis_stats(self.tenant_id)


@dataclass(frozen=True)
class CalendarSyncService:
    """Summary: Pushes candidate events to the remote calendar with bounded retries.

    Importance: Each sweep handles a fixed batch and leaves failures for the next one.
    Alternatives: Run a long-lived worker that retries with sleeps.
    """

    store: PipelineStore
    tenant_id: int
    calendar: CalendarService
    max_retries: int
    batch_size: int = 100
    duplicate_window: timedelta = timedelta(hours=1)

    def sync_pending(self, max_retries: int | None = None, now: datetime | None = None) -> SyncResult:
        """Summary: Sync pending and retryable failed events, oldest first.

        Importance: A remote duplicate marks the event synced without a second insert;
        events that exhaust their retries stay failed and are listed for the user.
        Alternatives: Insert blindly and clean duplicates up later.
        """

        if max_retries is None:
            max_retries = self.max_retries
        now = now or utc_now()
        events = self.store.list_events_to_sync(self.tenant_id, max_retries, self.batch_size)
        synced = failed = 0
        for event in events:
            entry = build_calendar_entry(event)
            try:
                if self.calendar.find_duplicate(entry.title, entry.start, self.duplicate_window):
                    logger.info("Event %s already on calendar; marking synced.", event.id)
                    self.store.mark_event_synced(self.tenant_id, event.id, None, now)
                    synced += 1
                    continue
                external_id = self.calendar.insert_event(entry)
            except ConfigurationError:
                raise
            except Exception as exc:
                retry_count = self.store.mark_event_sync_failed(self.tenant_id, event.id, str(exc), now)
                failed += 1
                if retry_count >= max_retries:
                    logger.warning(
                        "Event %s failed to sync %s times; giving up: %s", event.id, retry_count, exc
                    )
                else:
                    logger.warning(
                        "Event %s sync failed (retry in %ss): %s",
                        event.id,
                        calculate_backoff_delay(retry_count),
                        exc,
                    )
                continue
            self.store.mark_event_synced(self.tenant_id, event.id, external_id, now)
            synced += 1
        logger.info(
            "Calendar sync for tenant %s: processed=%s synced=%s failed=%s.",
            self.tenant_id,
            len(events),
            synced,
            failed,
        )
        return SyncResult(processed=len(events), synced=synced, failed=failed)

    def list_failed_events(self) -> list[StoredEvent]:
        return self.store.list_failed_events(self.tenant_id, self.max_retries)


@dataclass(frozen=True)
class ActionTokenService:
    """Summary: Issues and redeems single-use capability tokens.

    Importance: Lets a link in a rendered summary complete a task or remove an
    event without a session, exactly once and only before expiry.
    Alternatives: Require login before every action.
    """

    store: PipelineStore
    ttl_days: int
    public_base_url: str

    def issue(
        self,
        tenant_id: int,
        action_kind: ActionKind,
        target_id: int,
        ttl_days: int | None = None,
        now: datetime | None = None,
    ) -> str:
        now = now or utc_now()
        token = secrets.token_urlsafe(32)
        if ttl_days is None:
            ttl_days = self.ttl_days
        expires_at = now + timedelta(days=ttl_days)
        self.store.create_action_token(tenant_id, token, action_kind, target_id, now, expires_at)
        logger.info("Issued %s token %s... for target %s.", action_kind.value, token[:8], target_id)
        return token

    def redeem(self, token: str, now: datetime | None = None) -> RedeemResult:
        """Summary: Validate and consume a token atomically.

        Importance: Of two concurrent redemptions only one can succeed.
        Alternatives: Lock the token row in application code.
        """

        result = self.store.redeem_action_token(token, now or utc_now())
        if not result.valid:
            logger.warning("Token %s... rejected: %s", token[:8], result.reason.value)
        return result

    def execute(self, token: str, now: datetime | None = None) -> ActionOutcome:
        """Summary: Redeem a token and apply the mutation it grants."""

        now = now or utc_now()
        result = self.redeem(token, now)
        if not result.valid:
            return ActionOutcome(
                success=False,
                action_kind=None,
                target_id=None,
                reason=result.reason,
                message=REDEEM_MESSAGES[result.reason],
            )
        if result.action_kind == ActionKind.COMPLETE_TASK:
            done = self.store.complete_task(result.tenant_id, result.target_id, now)
            missing_message = "The task may have been deleted."
            success_message = "Task completed! You can close this window."
        else:
            done = self.store.delete_event(result.tenant_id, result.target_id)
            missing_message = "The event may have been deleted."
            success_message = "Event removed! You can close this window."
        if not done:
            return ActionOutcome(
                success=False,
                action_kind=result.action_kind,
                target_id=result.target_id,
                reason=RedeemReason.TARGET_MISSING,
                message=missing_message,
            )
        logger.info("Executed %s on %s.", result.action_kind.value, result.target_id)
        return ActionOutcome(
            success=True,
            action_kind=result.action_kind,
            target_id=result.target_id,
            reason=None,
            message=success_message,
        )

    def issue_links(
        self,
        tenant_id: int,
        task_ids: list[int],
        event_ids: list[int],
        now: datetime | None = None,
    ) -> dict[str, str]:
        """Summary: Issue one action link per actionable item in a summary.

        Importance: Keys look like task:7 or event:3 so renderers can place links.
        Alternatives: Issue a single token that covers every item.
        """

        base_url = self.public_base_url.rstrip("/")
        links: dict[str, str] = {}
        for task_id in task_ids:
            token = self.issue(tenant_id, ActionKind.COMPLETE_TASK, task_id, now=now)
            links[f"task:{task_id}"] = f"{base_url}/actions/{token}"
        for event_id in event_ids:
            token = self.issue(tenant_id, ActionKind.REMOVE_EVENT, event_id, now=now)
            links[f"event:{event_id}"] = f"{base_url}/actions/{token}"
        return links

    def invalidate_for_target(self, tenant_id: int, action_kind: ActionKind, target_id: int) -> int:
        return self.store.delete_tokens_for_target(tenant_id, action_kind, target_id)


@dataclass(frozen=True)
class CleanupService:
    """Summary: Housekeeping sweep for past-due tasks and expired tokens."""

    store: PipelineStore
    tenant_id: int

    def cleanup_past_items(self, now: datetime | None = None) -> CleanupResult:
        """Summary: Auto-complete tasks due before today and purge expired tokens.

        Importance: Keeps summaries free of obligations that can no longer be met.
        Alternatives: Delete past-due tasks outright.
        """

        now = now or utc_now()
        completed = self.store.auto_complete_past_tasks(self.tenant_id, now.date(), now)
        purged = self.store.delete_expired_tokens(self.tenant_id, now)
        logger.info(
            "Cleanup for tenant %s: auto_completed=%s tokens_purged=%s.",
            self.tenant_id,
            completed,
            purged,
        )
        return CleanupResult(tasks_auto_completed=completed, tokens_purged=purged)

    def discard_task(self, task_id: int) -> bool:
        """Summary: Delete a candidate task the tenant does not want.

        Importance: Completion links already sent for the task stop working.
        Alternatives: Mark the task completed instead of deleting it.
        """

        deleted = self.store.delete_task(self.tenant_id, task_id)
        if deleted:
            logger.info("Discarded task %s for tenant %s.", task_id, self.tenant_id)
        return deleted


@dataclass(frozen=True)
class FeedbackService:
    """Summary: Records relevance grades and household profiles.

    Importance: Both feed the context of future extraction requests.
    Alternatives: Hardcode household context in prompts.
    """

    store: PipelineStore
    tenant_id: int

    def grade_item(self, item_type: FeedbackItemType, item_text: str, is_relevant: bool) -> int:
        feedback_id = self.store.add_feedback(
            self.tenant_id,
            FeedbackExample(item_type=item_type, item_text=item_text, is_relevant=is_relevant),
            utc_now(),
        )
        logger.info("Recorded %s feedback for %s.", "positive" if is_relevant else "negative", item_type.value)
        return feedback_id

    def add_profile(self, name: str, notes: str | None = None) -> int:
        return self.store.upsert_subject_profile(self.tenant_id, SubjectProfile(name=name, notes=notes))

    def list_profiles(self) -> list[SubjectProfile]:
        return self.store.list_subject_profiles(self.tenant_id)


@dataclass(frozen=True)
class CredentialService:
    """Summary: Stores provider OAuth tokens with basic obfuscation.

    Importance: Sweeps for Gmail and Google Calendar need a fresh access token per tenant.
    Alternatives: Use a secrets manager or encrypted database.
    """

    store: PipelineStore
    tenant_id: int
    codec: CredentialCodec
    config: AppConfig

    def store_credentials(
        self,
        provider_name: str,
        access_token: str,
        refresh_token: str | None,
        expires_at: str | None,
    ) -> None:
        self.store.upsert_credential(
            self.tenant_id,
            provider_name,
            self.codec.encode(access_token),
            self.codec.encode(refresh_token) if refresh_token else None,
            expires_at,
        )
        logger.info("Stored credentials for %s.", provider_name)

    def get_access_token(self, provider_name: str, now: datetime | None = None) -> str:
        """Summary: Return an access token, refreshing it when it is about to expire.

        Importance: Missing credentials are a configuration error that aborts the sweep.
        Alternatives: Always re-run OAuth flows for each session.
        """

        record = self.store.get_credential(self.tenant_id, provider_name)
        if record is None:
            raise ConfigurationError(
                f"No {provider_name} credentials stored for tenant {self.tenant_id}"
            )
        access_token = self.codec.decode(record.access_token)
        if not expires_soon(record.expires_at, now or utc_now()):
            return access_token
        if not record.refresh_token:
            raise ConfigurationError(f"{provider_name} token expired and no refresh token is stored")
        token_result = refresh_google_token(
            self.config.google_token_url,
            self.config.google_client_id,
            self.config.google_client_secret,
            self.codec.decode(record.refresh_token),
            self.config.request_timeout_seconds,
        )
        self.store_credentials(
            provider_name,
            token_result.access_token,
            token_result.refresh_token,
            token_result.expires_at,
        )
        return token_result.access_token


def build_calendar_entry(event: StoredEvent) -> CalendarEntry:
    """Summary: Convert a stored candidate into the calendar payload.

    Importance: The description carries provenance so users can trace an entry
    back to its message.
    Alternatives: Sync the bare title and time only.
    """

    start = datetime.fromisoformat(event.start_at)
    end = datetime.fromisoformat(event.end_at) if event.end_at else None
    all_day = event.time_of_day in (None, TimeOfDay.ALL_DAY.value) and start.hour == 0 and start.minute == 0
    lines = []
    if event.description:
        lines.append(event.description)
    if event.subject_tag:
        lines.append(f"For: {event.subject_tag}")
    lines.append(f"AI confidence: {round(event.confidence * 100)}%")
    if event.source_message_id is not None:
        lines.append(f"Source message: {event.source_message_id}")
    return CalendarEntry(
        title=event.title,
        start=start,
        end=end,
        all_day=all_day,
        description="\n".join(lines),
        location=event.location,
    )


def calculate_backoff_delay(retry_count: int) -> int:
    """Summary: Seconds to wait before the next sync attempt.

    Importance: Exposed for schedulers that space out sweeps after failures.
    Alternatives: Use a fixed retry interval.
    """

    if retry_count <= 0:
        return 0
    return min(BACKOFF_BASE_SECONDS * 2 ** (retry_count - 1), BACKOFF_MAX_SECONDS)


def _message_text(message: StoredMessage) -> str:
    if message.attachment_text:
        return f"{message.body}\n\n{message.attachment_text}"
    return message.body
