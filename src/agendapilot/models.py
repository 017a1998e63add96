"""Summary: Domain model dataclasses and enums for AgendaPilot.

Importance: Defines the validated entities shared across providers, services, and storage.
Alternatives: Pass provider JSON dictionaries and encoded strings between layers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum


class SyncStatus(str, Enum):
    """Summary: Calendar sync state of a candidate event."""

    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


class AnalysisStatus(str, Enum):
    """Summary: Review workflow status of an analysis record.

    Importance: Separates machine output from human-confirmed output.
    Alternatives: Use a boolean reviewed flag.
    """

    PENDING = "pending"
    ANALYZED = "analyzed"
    REVIEWED = "reviewed"
    APPROVED = "approved"
    REJECTED = "rejected"

    def can_transition_to(self, target: "AnalysisStatus") -> bool:
        return target in ANALYSIS_TRANSITIONS.get(self, ())


ANALYSIS_TRANSITIONS: dict[AnalysisStatus, tuple[AnalysisStatus, ...]] = {
    AnalysisStatus.PENDING: (AnalysisStatus.ANALYZED,),
    AnalysisStatus.ANALYZED: (
        AnalysisStatus.REVIEWED,
        AnalysisStatus.APPROVED,
        AnalysisStatus.REJECTED,
    ),
    AnalysisStatus.REVIEWED: (AnalysisStatus.APPROVED, AnalysisStatus.REJECTED),
}


class TaskCategory(str, Enum):
    """Summary: What kind of obligation a task represents.

    Importance: Drives grouping in summaries and keeps AI output to a closed vocabulary.
    Alternatives: Store free-form category text.
    """

    PAY = "pay"
    BUY = "buy"
    PACK = "pack"
    SIGN = "sign"
    FILL = "fill"
    READ = "read"
    DECIDE = "decide"
    REMIND = "remind"

    @classmethod
    def parse(cls, value: str) -> "TaskCategory":
        """Summary: Parse a category case-insensitively.

        Importance: AI providers return upper-case labels while storage uses lower case.
        Alternatives: Require exact enum values from every provider.
        """

        try:
            return cls(value.strip().lower())
        except ValueError as exc:
            raise ValueError(f"Unknown task category: {value}") from exc


class TaskStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"


class TimeOfDay(str, Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"
    ALL_DAY = "all_day"
    SPECIFIC = "specific"


class ActionKind(str, Enum):
    """Summary: Mutation a capability token grants."""

    COMPLETE_TASK = "complete_task"
    REMOVE_EVENT = "remove_event"


class RedeemReason(str, Enum):
    """Summary: Why a capability token could not be used.

    Importance: Callers surface a specific reason instead of a generic failure.
    Alternatives: Return HTTP status codes from the token service.
    """

    NOT_FOUND = "not_found"
    ALREADY_USED = "already_used"
    EXPIRED = "expired"
    TARGET_MISSING = "target_missing"


class FeedbackItemType(str, Enum):
    TASK = "task"
    EVENT = "event"


@dataclass(frozen=True)
class User:
    """Summary: Represents a tenant account.

    Importance: Every stored row is scoped to one tenant.
    Alternatives: Keep a single implicit user without records.
    """

    display_name: str
    email: str
    inbound_alias: str | None = None


@dataclass(frozen=True)
class Attachment:
    """Summary: Raw attachment bytes delivered with a message."""

    filename: str
    mime_type: str
    content: bytes


@dataclass(frozen=True)
class FetchedMessage:
    """Summary: A message as delivered by a provider or webhook, before storage.

    Importance: Normalizes provider payloads into one shape for deduplicated storage.
    Alternatives: Store raw provider payloads and parse later.
    """

    provider_message_id: str
    thread_id: str | None
    sender: str
    subject: str
    timestamp: datetime
    body: str
    attachments: tuple[Attachment, ...] = ()


@dataclass(frozen=True)
class LabelResult:
    """Summary: Outcome of applying a label to provider messages."""

    success: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class AttachmentText:
    """Summary: Text extracted from a message's attachments plus per-file failures."""

    text: str
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class SubjectProfile:
    """Summary: A household member the extraction can attribute items to."""

    name: str
    notes: str | None = None


@dataclass(frozen=True)
class FeedbackExample:
    """Summary: A past item graded relevant or not relevant by the tenant."""

    item_type: FeedbackItemType
    item_text: str
    is_relevant: bool


@dataclass(frozen=True)
class ExtractionRequest:
    """Summary: Provider-agnostic input to the AI extraction service.

    Importance: Keeps context assembly separate from any vendor request shape.
    Alternatives: Build vendor prompts directly inside the orchestrator.
    """

    message_text: str
    subject: str
    sender: str
    sent_at: datetime
    subject_profiles: tuple[SubjectProfile, ...] = ()
    positive_examples: tuple[FeedbackExample, ...] = ()
    negative_examples: tuple[FeedbackExample, ...] = ()


@dataclass(frozen=True)
class HumanAnalysis:
    summary: str | None = None
    tone: str | None = None
    intent: str | None = None
    implicit_context: str | None = None

    def filled_fields(self) -> int:
        return sum(
            1 for value in (self.summary, self.tone, self.intent, self.implicit_context) if value
        )


@dataclass(frozen=True)
class ExtractedEvent:
    """Summary: Calendar-worthy fact returned by the extraction service."""

    title: str
    start: datetime
    end: datetime | None
    description: str | None
    location: str | None
    subject_tag: str | None
    confidence: float
    recurring: bool = False
    recurrence_pattern: str | None = None
    time_of_day: TimeOfDay | None = None
    inferred: bool = False


@dataclass(frozen=True)
class ExtractedTask:
    """Summary: Obligation returned by the extraction service."""

    description: str
    category: TaskCategory
    due_date: date | None
    subject_tag: str | None
    url: str | None
    amount: str | None
    confidence: float
    recurring: bool = False
    recurrence_pattern: str | None = None
    responsible_party: str | None = None
    inferred: bool = False


@dataclass(frozen=True)
class ExtractionResult:
    """Summary: Validated extraction output for one message.

    Importance: Only schema-checked results reach storage.
    Alternatives: Persist raw JSON and validate on read.
    """

    analysis: HumanAnalysis
    events: tuple[ExtractedEvent, ...]
    tasks: tuple[ExtractedTask, ...]
    raw_json: str

    def average_confidence(self) -> float:
        confidences = [item.confidence for item in (*self.events, *self.tasks)]
        if not confidences:
            return 0.0
        return sum(confidences) / len(confidences)

    def inferred_count(self) -> int:
        return sum(1 for item in (*self.events, *self.tasks) if item.inferred)

    def recurring_count(self) -> int:
        return sum(1 for item in (*self.events, *self.tasks) if item.recurring)

    def quality_score(self) -> float:
        """Summary: Score how trustworthy the extraction looks.

        Importance: Low scores route analyses to human review.
        Alternatives: Use the raw average confidence only.
        """

        score = 0.5 + self.average_confidence() * 0.3
        score += 0.05 * self.analysis.filled_fields()
        total = len(self.events) + len(self.tasks)
        if total and self.inferred_count() / total > 0.7:
            score -= 0.1
        return round(max(0.0, min(1.0, score)), 3)


@dataclass(frozen=True)
class CalendarEntry:
    """Summary: Event payload handed to the calendar service."""

    title: str
    start: datetime
    end: datetime | None
    all_day: bool
    description: str
    location: str | None


@dataclass(frozen=True)
class AiRequest:
    """Summary: Represents an AI request for auditing.

    Importance: Enables traceability of prompts and providers.
    Alternatives: Log only to stdout without persistence.
    """

    provider: str
    model: str
    prompt: str
    purpose: str
    timestamp: datetime


@dataclass(frozen=True)
class AiResponse:
    """Summary: Represents an AI response for auditing."""

    request_id: int
    response_text: str
    latency_ms: int
    token_estimate: int


@dataclass(frozen=True)
class FetchResult:
    fetched: int
    stored: int
    skipped: int
    errors: int


@dataclass(frozen=True)
class LabelSyncResult:
    attempted: int
    labeled: int
    failed: int


@dataclass(frozen=True)
class InboundResult:
    """Summary: Outcome of a webhook delivery: stored, duplicate, or ignored."""

    status: str
    message_id: int | None = None


@dataclass(frozen=True)
class AnalysisBatchResult:
    processed: int
    successful: int
    failed: int
    events_created: int
    tasks_created: int


@dataclass(frozen=True)
class SyncResult:
    processed: int
    synced: int
    failed: int


@dataclass(frozen=True)
class CleanupResult:
    tasks_auto_completed: int
    tokens_purged: int


@dataclass(frozen=True)
class RedeemResult:
    """Summary: Result of redeeming a capability token.

    Importance: Successful results carry the granted action; failures carry a reason.
    Alternatives: Raise exceptions for each failure reason.
    """

    valid: bool
    tenant_id: int | None = None
    action_kind: ActionKind | None = None
    target_id: int | None = None
    reason: RedeemReason | None = None


@dataclass(frozen=True)
class ActionOutcome:
    """Summary: Result of executing the mutation granted by a token."""

    success: bool
    action_kind: ActionKind | None
    target_id: int | None
    reason: RedeemReason | None
    message: str


def utc_now() -> datetime:
    """Summary: Current time as an aware UTC datetime."""

    return datetime.now(timezone.utc)
