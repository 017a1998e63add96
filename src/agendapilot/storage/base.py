"""Summary: Abstract storage contract and stored record types.

Importance: Services depend on this contract rather than a concrete database handle.
Alternatives: Pass a SQLite store directly into every service.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime

from agendapilot.models import (
    ActionKind,
    AiRequest,
    AiResponse,
    AnalysisStatus,
    AttachmentText,
    ExtractionResult,
    FeedbackExample,
    FetchedMessage,
    RedeemResult,
    SubjectProfile,
    User,
)


@dataclass(frozen=True)
class StoredUser:
    """Summary: Tenant record with database identifier."""

    id: int
    display_name: str
    email: str
    inbound_alias: str | None


@dataclass(frozen=True)
class StoredMessage:
    """Summary: Message record with processing flags.

    Importance: Flags drive eligibility for every later sweep.
    Alternatives: Track processing state in a separate queue table.
    """

    id: int
    tenant_id: int
    provider_message_id: str
    source: str
    thread_id: str | None
    sender: str
    subject: str
    timestamp: str
    body: str
    attachment_text: str
    attachment_error: str | None
    fetched: bool
    processed: bool
    analyzed: bool
    provider_labeled: bool
    fetch_attempts: int
    fetch_error: str | None
    created_at: str


@dataclass(frozen=True)
class StoredAnalysis:
    """Summary: One version of the analysis of a message."""

    id: int
    tenant_id: int
    message_id: int
    version: int
    ai_provider: str
    summary: str | None
    tone: str | None
    intent: str | None
    implicit_context: str | None
    raw_json: str | None
    quality_score: float | None
    confidence_avg: float | None
    events_extracted: int
    tasks_extracted: int
    recurring_items: int
    inferred_items: int
    status: AnalysisStatus
    reviewed_by: str | None
    reviewed_at: str | None
    review_notes: str | None
    error: str | None
    retry_count: int
    created_at: str


@dataclass(frozen=True)
class StoredEvent:
    """Summary: Candidate event with calendar sync state."""

    id: int
    tenant_id: int
    source_message_id: int | None
    title: str
    start_at: str
    end_at: str | None
    description: str | None
    location: str | None
    subject_tag: str | None
    confidence: float
    time_of_day: str | None
    recurring: bool
    sync_status: str
    external_id: str | None
    sync_error: str | None
    retry_count: int
    last_sync_attempt: str | None
    synced_at: str | None
    created_at: str


@dataclass(frozen=True)
class StoredTask:
    """Summary: Candidate task with completion state."""

    id: int
    tenant_id: int
    source_message_id: int | None
    description: str
    category: str
    due_date: str | None
    subject_tag: str | None
    url: str | None
    amount: str | None
    confidence: float
    status: str
    auto_completed: bool
    created_at: str
    completed_at: str | None


@dataclass(frozen=True)
class StoredActionToken:
    id: int
    token: str
    tenant_id: int
    action_kind: str
    target_id: int
    created_at: str
    expires_at: str
    used_at: str | None


@dataclass(frozen=True)
class StoredCredential:
    """Summary: Encoded provider credentials for a tenant."""

    tenant_id: int
    provider_name: str
    access_token: str
    refresh_token: str | None
    expires_at: str | None


@dataclass(frozen=True)
class AnalysisCommit:
    """Summary: Rows written by one successful analysis transaction.

    Importance: Event ids exclude candidates that already existed.
    Alternatives: Re-query the database after committing.
    """

    analysis_id: int
    version: int
    event_ids: list[int] = field(default_factory=list)
    task_ids: list[int] = field(default_factory=list)


class PipelineStore(ABC):
    """Summary: Persistence contract used by the ingestion, extraction, sync, and token services.

    Importance: Every correctness-critical transition is a single atomic operation behind it.
    Alternatives: Let services issue SQL directly.
    """

    @abstractmethod
    def initialize(self) -> None:
        """Summary: Create the schema if it does not exist."""

    # Tenants

    @abstractmethod
    def ensure_user(self, user: User) -> int:
        """Summary: Ensure a tenant exists and return its ID."""

    @abstractmethod
    def get_user(self, tenant_id: int) -> StoredUser | None: ...

    @abstractmethod
    def find_user_by_alias(self, alias: str) -> StoredUser | None: ...

    @abstractmethod
    def set_inbound_alias(self, tenant_id: int, alias: str | None) -> bool:
        """Summary: Assign a lowercase inbound alias; False when taken or unknown."""

    @abstractmethod
    def list_tenants(self) -> list[StoredUser]:
        """Summary: List every tenant, for scheduler entry points only."""

    # Messages

    @abstractmethod
    def get_message_by_provider_id(
        self, tenant_id: int, provider_message_id: str
    ) -> StoredMessage | None: ...

    @abstractmethod
    def get_message(self, tenant_id: int, message_id: int) -> StoredMessage | None: ...

    @abstractmethod
    def store_message(
        self,
        tenant_id: int,
        message: FetchedMessage,
        source: str,
        attachments: AttachmentText,
        now: datetime,
    ) -> int | None:
        """Summary: Persist a fetched message as processed.

        Importance: Returns None when a fetched row already exists for the provider id.
        Alternatives: Check for the row first and insert afterwards.
        """

    @abstractmethod
    def record_fetch_error(
        self, tenant_id: int, provider_message_id: str, error: str, now: datetime
    ) -> int:
        """Summary: Record a failed fetch on a stub row and return the attempt count."""

    @abstractmethod
    def list_fetch_stubs(
        self, tenant_id: int, max_attempts: int, limit: int
    ) -> list[StoredMessage]: ...

    @abstractmethod
    def mark_labeled(self, tenant_id: int, provider_message_ids: list[str]) -> int: ...

    @abstractmethod
    def list_unlabeled_messages(
        self, tenant_id: int, source: str, limit: int
    ) -> list[StoredMessage]: ...

    @abstractmethod
    def list_messages_for_analysis(
        self, tenant_id: int, max_retries: int, limit: int
    ) -> list[StoredMessage]:
        """Summary: Processed, unanalyzed messages with retry budget left, oldest first."""

    @abstractmethod
    def reset_analysis(self, tenant_id: int, message_id: int, now: datetime) -> bool: ...

    @abstractmethod
    def count_messages(self, tenant_id: int) -> int: ...

    # Analyses

    @abstractmethod
    def record_successful_analysis(
        self,
        tenant_id: int,
        message_id: int,
        provider: str,
        result: ExtractionResult,
        now: datetime,
    ) -> AnalysisCommit | None:
        """Summary: Commit analysis, candidates, and the analyzed flag in one transaction.

        Importance: Returns None when another sweep already analyzed the message.
        Alternatives: Let both sweeps write and rely on candidate dedup alone.
        """

    @abstractmethod
    def record_failed_analysis(
        self,
        tenant_id: int,
        message_id: int,
        provider: str,
        error: str,
        raw_json: str | None,
        now: datetime,
    ) -> int:
        """Summary: Append a pending analysis carrying the error and return its retry count."""

    @abstractmethod
    def get_analysis(self, tenant_id: int, analysis_id: int) -> StoredAnalysis | None: ...

    @abstractmethod
    def latest_analysis(self, tenant_id: int, message_id: int) -> StoredAnalysis | None: ...

    @abstractmethod
    def list_analyses(self, tenant_id: int, message_id: int) -> list[StoredAnalysis]: ...

    @abstractmethod
    def update_analysis_status(
        self,
        tenant_id: int,
        analysis_id: int,
        expected: AnalysisStatus,
        status: AnalysisStatus,
        reviewer: str | None,
        notes: str | None,
        now: datetime,
    ) -> bool:
        """Summary: Move an analysis to a new status only if it is still in the expected one."""

    @abstractmethod
    def list_failed_analyses(self, tenant_id: int, max_retries: int) -> list[StoredAnalysis]: ...

    @abstractmethod
    def list_analyses_pending_review(
        self, tenant_id: int, quality_threshold: float, limit: int
    ) -> list[StoredAnalysis]: ...

    @abstractmethod
    def analysis_stats(self, tenant_id: int) -> dict[str, int]: ...

    # Events

    @abstractmethod
    def get_event(self, tenant_id: int, event_id: int) -> StoredEvent | None: ...

    @abstractmethod
    def list_events(self, tenant_id: int) -> list[StoredEvent]: ...

    @abstractmethod
    def list_events_to_sync(
        self, tenant_id: int, max_retries: int, limit: int
    ) -> list[StoredEvent]: ...

    @abstractmethod
    def mark_event_synced(
        self, tenant_id: int, event_id: int, external_id: str | None, now: datetime
    ) -> bool: ...

    @abstractmethod
    def mark_event_sync_failed(
        self, tenant_id: int, event_id: int, error: str, now: datetime
    ) -> int:
        """Summary: Record a failed sync attempt and return the new retry count."""

    @abstractmethod
    def list_failed_events(self, tenant_id: int, max_retries: int) -> list[StoredEvent]: ...

    @abstractmethod
    def delete_event(self, tenant_id: int, event_id: int) -> bool:
        """Summary: Delete an event and every action token that targets it."""

    # Tasks

    @abstractmethod
    def get_task(self, tenant_id: int, task_id: int) -> StoredTask | None: ...

    @abstractmethod
    def list_tasks(self, tenant_id: int, status: str | None = None) -> list[StoredTask]: ...

    @abstractmethod
    def complete_task(self, tenant_id: int, task_id: int, now: datetime) -> bool: ...

    @abstractmethod
    def delete_task(self, tenant_id: int, task_id: int) -> bool:
        """Summary: Delete a task and every action token that targets it."""

    @abstractmethod
    def auto_complete_past_tasks(self, tenant_id: int, before: date, now: datetime) -> int: ...

    # Action tokens

    @abstractmethod
    def create_action_token(
        self,
        tenant_id: int,
        token: str,
        action_kind: ActionKind,
        target_id: int,
        created_at: datetime,
        expires_at: datetime,
    ) -> int: ...

    @abstractmethod
    def redeem_action_token(self, token: str, now: datetime) -> RedeemResult:
        """Summary: Atomically mark a token used, or report why it cannot be."""

    @abstractmethod
    def get_action_token(self, token: str) -> StoredActionToken | None: ...

    @abstractmethod
    def delete_tokens_for_target(
        self, tenant_id: int, action_kind: ActionKind, target_id: int
    ) -> int: ...

    @abstractmethod
    def delete_expired_tokens(self, tenant_id: int, now: datetime) -> int: ...

    # Feedback, profiles, credentials

    @abstractmethod
    def add_feedback(self, tenant_id: int, example: FeedbackExample, now: datetime) -> int: ...

    @abstractmethod
    def list_feedback_examples(
        self, tenant_id: int, is_relevant: bool, limit: int
    ) -> list[FeedbackExample]: ...

    @abstractmethod
    def upsert_subject_profile(self, tenant_id: int, profile: SubjectProfile) -> int: ...

    @abstractmethod
    def list_subject_profiles(self, tenant_id: int) -> list[SubjectProfile]: ...

    @abstractmethod
    def upsert_credential(
        self,
        tenant_id: int,
        provider_name: str,
        access_token: str,
        refresh_token: str | None,
        expires_at: str | None,
    ) -> None: ...

    @abstractmethod
    def get_credential(self, tenant_id: int, provider_name: str) -> StoredCredential | None: ...

    # AI audit

    @abstractmethod
    def log_ai_request(self, request: AiRequest, tenant_id: int | None = None) -> int: ...

    @abstractmethod
    def log_ai_response(self, response: AiResponse) -> int: ...
