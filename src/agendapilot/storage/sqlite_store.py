"""Summary: SQLite storage implementation for AgendaPilot.

Importance: Provides a local-first persistence layer where every dedup and
redemption step is a single constraint-backed statement.
Alternatives: Use an ORM or an external database immediately.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from agendapilot.models import (
    ActionKind,
    AiRequest,
    AiResponse,
    AnalysisStatus,
    AttachmentText,
    ExtractedEvent,
    ExtractedTask,
    ExtractionResult,
    FeedbackExample,
    FeedbackItemType,
    FetchedMessage,
    RedeemReason,
    RedeemResult,
    SubjectProfile,
    SyncStatus,
    TaskStatus,
    User,
)
from agendapilot.storage.base import (
    AnalysisCommit,
    PipelineStore,
    StoredActionToken,
    StoredAnalysis,
    StoredCredential,
    StoredEvent,
    StoredMessage,
    StoredTask,
    StoredUser,
)


logger = logging.getLogger(__name__)

MESSAGE_COLUMNS = """
    id, tenant_id, provider_message_id, source, thread_id, sender, subject, timestamp,
    body, attachment_text, attachment_error, fetched, processed, analyzed,
    provider_labeled, fetch_attempts, fetch_error, created_at
"""

ANALYSIS_COLUMNS = """
    id, tenant_id, message_id, version, ai_provider, summary, tone, intent,
    implicit_context, raw_json, quality_score, confidence_avg, events_extracted,
    tasks_extracted, recurring_items, inferred_items, status, reviewed_by,
    reviewed_at, review_notes, error, retry_count, created_at
"""

EVENT_COLUMNS = """
    id, tenant_id, source_message_id, title, start_at, end_at, description, location,
    subject_tag, confidence, time_of_day, recurring, sync_status, external_id,
    sync_error, retry_count, last_sync_attempt, synced_at, created_at
"""

TASK_COLUMNS = """
    id, tenant_id, source_message_id, description, category, due_date, subject_tag,
    url, amount, confidence, status, auto_completed, created_at, completed_at
"""


class SqliteStore(PipelineStore):
    """Summary: SQLite-backed storage for AgendaPilot.

    Importance: Enables local-first persistence with minimal dependencies.
    Alternatives: Use Postgres and SQLAlchemy from day one.
    """

    def __init__(self, db_path: str) -> None:
        """Summary: Initialize the storage with a database path.

        Importance: Allows configurable database location per environment.
        Alternatives: Hardcode a default path in the class.
        """

        self._db_path = Path(db_path)

    def initialize(self) -> None:
        """Summary: Create tables and indexes if they do not exist.

        Importance: Ensures the database is ready for every sweep.
        Alternatives: Run migrations using a dedicated migration tool.
        """

        with self._connection() as connection:
            connection.execute("PRAGMA journal_mode=WAL")
            connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    display_name TEXT NOT NULL,
                    email TEXT NOT NULL UNIQUE,
                    inbound_alias TEXT UNIQUE
                );

                CREATE TABLE IF NOT EXISTS messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id INTEGER NOT NULL,
                    provider_message_id TEXT NOT NULL,
                    source TEXT NOT NULL DEFAULT 'provider',
                    thread_id TEXT,
                    sender TEXT NOT NULL DEFAULT '',
                    subject TEXT NOT NULL DEFAULT '',
                    timestamp TEXT,
                    body TEXT NOT NULL DEFAULT '',
                    attachment_text TEXT NOT NULL DEFAULT '',
                    attachment_error TEXT,
                    fetched INTEGER NOT NULL DEFAULT 0,
                    processed INTEGER NOT NULL DEFAULT 0,
                    analyzed INTEGER NOT NULL DEFAULT 0,
                    provider_labeled INTEGER NOT NULL DEFAULT 0,
                    fetch_attempts INTEGER NOT NULL DEFAULT 0,
                    fetch_error TEXT,
                    created_at TEXT NOT NULL,
                    UNIQUE(tenant_id, provider_message_id)
                );

                CREATE INDEX IF NOT EXISTS idx_messages_analysis
                    ON messages(tenant_id, processed, analyzed);

                CREATE TABLE IF NOT EXISTS analyses (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id INTEGER NOT NULL,
                    message_id INTEGER NOT NULL,
                    version INTEGER NOT NULL,
                    ai_provider TEXT NOT NULL,
                    summary TEXT,
                    tone TEXT,
                    intent TEXT,
                    implicit_context TEXT,
                    raw_json TEXT,
                    quality_score REAL,
                    confidence_avg REAL,
                    events_extracted INTEGER NOT NULL DEFAULT 0,
                    tasks_extracted INTEGER NOT NULL DEFAULT 0,
                    recurring_items INTEGER NOT NULL DEFAULT 0,
                    inferred_items INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL CHECK(
                        status IN ('pending', 'analyzed', 'reviewed', 'approved', 'rejected')
                    ),
                    reviewed_by TEXT,
                    reviewed_at TEXT,
                    review_notes TEXT,
                    error TEXT,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    UNIQUE(message_id, version)
                );

                CREATE TABLE IF NOT EXISTS candidate_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id INTEGER NOT NULL,
                    source_message_id INTEGER,
                    analysis_id INTEGER,
                    title TEXT NOT NULL,
                    start_at TEXT NOT NULL,
                    end_at TEXT,
                    description TEXT,
                    location TEXT,
                    subject_tag TEXT,
                    confidence REAL NOT NULL,
                    time_of_day TEXT,
                    recurring INTEGER NOT NULL DEFAULT 0,
                    recurrence_pattern TEXT,
                    inferred INTEGER NOT NULL DEFAULT 0,
                    sync_status TEXT NOT NULL DEFAULT 'pending' CHECK(
                        sync_status IN ('pending', 'synced', 'failed')
                    ),
                    external_id TEXT,
                    sync_error TEXT,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    last_sync_attempt TEXT,
                    synced_at TEXT,
                    created_at TEXT NOT NULL
                );

                CREATE UNIQUE INDEX IF NOT EXISTS idx_events_source_dedup
                    ON candidate_events(tenant_id, source_message_id, title, start_at)
                    WHERE source_message_id IS NOT NULL;

                CREATE INDEX IF NOT EXISTS idx_events_sync
                    ON candidate_events(tenant_id, sync_status, retry_count);

                CREATE TABLE IF NOT EXISTS candidate_tasks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id INTEGER NOT NULL,
                    source_message_id INTEGER,
                    analysis_id INTEGER,
                    description TEXT NOT NULL,
                    category TEXT NOT NULL CHECK(
                        category IN ('pay', 'buy', 'pack', 'sign', 'fill', 'read', 'decide', 'remind')
                    ),
                    due_date TEXT,
                    subject_tag TEXT,
                    url TEXT,
                    amount TEXT,
                    confidence REAL NOT NULL,
                    recurring INTEGER NOT NULL DEFAULT 0,
                    responsible_party TEXT,
                    inferred INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'pending' CHECK(status IN ('pending', 'done')),
                    auto_completed INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    completed_at TEXT
                );

                CREATE UNIQUE INDEX IF NOT EXISTS idx_tasks_source_dedup
                    ON candidate_tasks(tenant_id, source_message_id, description, COALESCE(due_date, ''))
                    WHERE source_message_id IS NOT NULL;

                CREATE TABLE IF NOT EXISTS action_tokens (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    token TEXT NOT NULL UNIQUE,
                    tenant_id INTEGER NOT NULL,
                    action_kind TEXT NOT NULL CHECK(
                        action_kind IN ('complete_task', 'remove_event')
                    ),
                    target_id INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    used_at TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_action_tokens_target
                    ON action_tokens(tenant_id, action_kind, target_id);

                CREATE TABLE IF NOT EXISTS relevance_feedback (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id INTEGER NOT NULL,
                    item_type TEXT NOT NULL CHECK(item_type IN ('task', 'event')),
                    item_text TEXT NOT NULL,
                    is_relevant INTEGER NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS subject_profiles (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    notes TEXT,
                    UNIQUE(tenant_id, name)
                );

                CREATE TABLE IF NOT EXISTS provider_credentials (
                    tenant_id INTEGER NOT NULL,
                    provider_name TEXT NOT NULL,
                    access_token TEXT NOT NULL,
                    refresh_token TEXT,
                    expires_at TEXT,
                    PRIMARY KEY(tenant_id, provider_name)
                );

                CREATE TABLE IF NOT EXISTS ai_requests (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id INTEGER,
                    provider TEXT NOT NULL,
                    model TEXT NOT NULL,
                    prompt TEXT NOT NULL,
                    purpose TEXT NOT NULL,
                    timestamp TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS ai_responses (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    request_id INTEGER NOT NULL,
                    response_text TEXT NOT NULL,
                    latency_ms INTEGER NOT NULL,
                    token_estimate INTEGER NOT NULL
                );
                """
            )
            connection.commit()

    def ensure_user(self, user: User) -> int:
        """Summary: Ensure a tenant exists and return their ID.

        Importance: Provides a stable tenant record for data ownership.
        Alternatives: Omit user records in single-user mode.
        """

        alias = normalize_alias(user.inbound_alias)
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "INSERT OR IGNORE INTO users (display_name, email, inbound_alias) VALUES (?, ?, ?)",
                (user.display_name, user.email, alias),
            )
            if cursor.rowcount:
                user_id = cursor.lastrowid
            else:
                cursor.execute("SELECT id FROM users WHERE email = ?", (user.email,))
                row = cursor.fetchone()
                user_id = int(row[0]) if row else 0
                if user_id and alias:
                    # An alias already taken by another tenant is left unassigned.
                    cursor.execute(
                        """
                        UPDATE OR IGNORE users SET inbound_alias = ?
                        WHERE id = ? AND inbound_alias IS NULL
                        """,
                        (alias, user_id),
                    )
            connection.commit()
        return int(user_id)

    def set_inbound_alias(self, tenant_id: int, alias: str | None) -> bool:
        """Summary: Assign or clear the inbound address alias of a tenant.

        Importance: Aliases are unique, so a taken alias is refused.
        Alternatives: Derive the alias from the tenant email.
        """

        with self._connection() as connection:
            cursor = connection.execute(
                "UPDATE OR IGNORE users SET inbound_alias = ? WHERE id = ?",
                (normalize_alias(alias), tenant_id),
            )
            connection.commit()
            return cursor.rowcount > 0

    def get_user(self, tenant_id: int) -> StoredUser | None:
        with self._connection() as connection:
            row = connection.execute(
                "SELECT id, display_name, email, inbound_alias FROM users WHERE id = ?",
                (tenant_id,),
            ).fetchone()
        return StoredUser(*row) if row else None

    def find_user_by_alias(self, alias: str) -> StoredUser | None:
        """Summary: Resolve a tenant from an inbound address alias.

        Importance: Routes webhook deliveries to the right tenant.
        Alternatives: Require the tenant id in the webhook URL.
        """

        with self._connection() as connection:
            row = connection.execute(
                "SELECT id, display_name, email, inbound_alias FROM users WHERE inbound_alias = ?",
                (normalize_alias(alias),),
            ).fetchone()
        return StoredUser(*row) if row else None

    def list_tenants(self) -> list[StoredUser]:
        with self._connection() as connection:
            rows = connection.execute(
                "SELECT id, display_name, email, inbound_alias FROM users ORDER BY id"
            ).fetchall()
        return [StoredUser(*row) for row in rows]

    def get_message_by_provider_id(
        self, tenant_id: int, provider_message_id: str
    ) -> StoredMessage | None:
        with self._connection() as connection:
            row = connection.execute(
                f"""
                SELECT {MESSAGE_COLUMNS} FROM messages
                WHERE tenant_id = ? AND provider_message_id = ?
                """,
                (tenant_id, provider_message_id),
            ).fetchone()
        return _message(row) if row else None

    def get_message(self, tenant_id: int, message_id: int) -> StoredMessage | None:
        with self._connection() as connection:
            row = connection.execute(
                f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE tenant_id = ? AND id = ?",
                (tenant_id, message_id),
            ).fetchone()
        return _message(row) if row else None

    def store_message(
        self,
        tenant_id: int,
        message: FetchedMessage,
        source: str,
        attachments: AttachmentText,
        now: datetime,
    ) -> int | None:
        """Summary: Insert a message, or complete a fetch-error stub, as one statement.

        Importance: The unique key makes concurrent ingestion of the same id a no-op.
        Alternatives: SELECT first and INSERT when missing, which races.
        """

        attachment_error = "; ".join(attachments.errors) or None
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO messages (
                    tenant_id, provider_message_id, source, thread_id, sender, subject,
                    timestamp, body, attachment_text, attachment_error, fetched, processed,
                    analyzed, provider_labeled, fetch_attempts, fetch_error, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, 1, 0, 0, 0, NULL, ?)
                ON CONFLICT(tenant_id, provider_message_id) DO UPDATE SET
                    source = excluded.source,
                    thread_id = excluded.thread_id,
                    sender = excluded.sender,
                    subject = excluded.subject,
                    timestamp = excluded.timestamp,
                    body = excluded.body,
                    attachment_text = excluded.attachment_text,
                    attachment_error = excluded.attachment_error,
                    fetched = 1,
                    processed = 1,
                    fetch_error = NULL
                WHERE messages.fetched = 0
                """,
                (
                    tenant_id,
                    message.provider_message_id,
                    source,
                    message.thread_id,
                    message.sender,
                    message.subject,
                    format_timestamp(message.timestamp),
                    message.body,
                    attachments.text,
                    attachment_error,
                    format_timestamp(now),
                ),
            )
            stored = cursor.rowcount == 1
            row = cursor.execute(
                "SELECT id FROM messages WHERE tenant_id = ? AND provider_message_id = ?",
                (tenant_id, message.provider_message_id),
            ).fetchone()
            connection.commit()
        if not stored:
            return None
        return int(row[0])

    def record_fetch_error(
        self, tenant_id: int, provider_message_id: str, error: str, now: datetime
    ) -> int:
        """Summary: Upsert a stub row that counts failed fetch attempts.

        Importance: Failed fetches are retried later instead of being forgotten.
        Alternatives: Keep fetch failures only in logs.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO messages (
                    tenant_id, provider_message_id, fetched, fetch_attempts, fetch_error, created_at
                ) VALUES (?, ?, 0, 1, ?, ?)
                ON CONFLICT(tenant_id, provider_message_id) DO UPDATE SET
                    fetch_attempts = messages.fetch_attempts + 1,
                    fetch_error = excluded.fetch_error
                WHERE messages.fetched = 0
                """,
                (tenant_id, provider_message_id, error, format_timestamp(now)),
            )
            row = cursor.execute(
                """
                SELECT fetch_attempts FROM messages
                WHERE tenant_id = ? AND provider_message_id = ?
                """,
                (tenant_id, provider_message_id),
            ).fetchone()
            connection.commit()
        return int(row[0]) if row else 0

    def list_fetch_stubs(
        self, tenant_id: int, max_attempts: int, limit: int
    ) -> list[StoredMessage]:
        with self._connection() as connection:
            rows = connection.execute(
                f"""
                SELECT {MESSAGE_COLUMNS} FROM messages
                WHERE tenant_id = ? AND fetched = 0 AND fetch_attempts < ?
                ORDER BY created_at ASC, id ASC
                LIMIT ?
                """,
                (tenant_id, max_attempts, limit),
            ).fetchall()
        return [_message(row) for row in rows]

    def mark_labeled(self, tenant_id: int, provider_message_ids: list[str]) -> int:
        if not provider_message_ids:
            return 0
        placeholders = ", ".join("?" for _ in provider_message_ids)
        with self._connection() as connection:
            cursor = connection.execute(
                f"""
                UPDATE messages SET provider_labeled = 1
                WHERE tenant_id = ? AND provider_message_id IN ({placeholders})
                """,
                (tenant_id, *provider_message_ids),
            )
            updated = cursor.rowcount
            connection.commit()
        return updated

    def list_unlabeled_messages(
        self, tenant_id: int, source: str, limit: int
    ) -> list[StoredMessage]:
        with self._connection() as connection:
            rows = connection.execute(
                f"""
                SELECT {MESSAGE_COLUMNS} FROM messages
                WHERE tenant_id = ? AND source = ? AND fetched = 1 AND provider_labeled = 0
                ORDER BY id ASC
                LIMIT ?
                """,
                (tenant_id, source, limit),
            ).fetchall()
        return [_message(row) for row in rows]

    def list_messages_for_analysis(
        self, tenant_id: int, max_retries: int, limit: int
    ) -> list[StoredMessage]:
        """Summary: Select messages eligible for extraction.

        Importance: The filter alone defines the remaining work, so an
        interrupted sweep resumes where it stopped.
        Alternatives: Track batch progress in a cursor table.
        """

        with self._connection() as connection:
            rows = connection.execute(
                f"""
                SELECT {MESSAGE_COLUMNS} FROM messages m
                WHERE m.tenant_id = ? AND m.fetched = 1 AND m.processed = 1 AND m.analyzed = 0
                AND COALESCE((
                    SELECT a.retry_count FROM analyses a
                    WHERE a.message_id = m.id AND a.status = 'pending'
                    AND a.version = (SELECT MAX(b.version) FROM analyses b WHERE b.message_id = m.id)
                ), 0) < ?
                ORDER BY m.timestamp ASC, m.id ASC
                LIMIT ?
                """,
                (tenant_id, max_retries, limit),
            ).fetchall()
        return [_message(row) for row in rows]

    def reset_analysis(self, tenant_id: int, message_id: int, now: datetime) -> bool:
        """Summary: Clear the analyzed flag and restart the retry budget.

        Importance: Messages that exhausted their retries become eligible again;
        a pending marker version with retry_count 0 starts the new budget.
        Alternatives: Reset retry_count in place on the failed analysis row.
        """

        with self.transaction() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "UPDATE messages SET analyzed = 0 WHERE tenant_id = ? AND id = ? AND fetched = 1",
                (tenant_id, message_id),
            )
            if cursor.rowcount == 0:
                return False
            latest = cursor.execute(
                """
                SELECT status, retry_count FROM analyses
                WHERE message_id = ? ORDER BY version DESC LIMIT 1
                """,
                (message_id,),
            ).fetchone()
            if latest and latest[0] == AnalysisStatus.PENDING.value and int(latest[1]) > 0:
                cursor.execute(
                    """
                    INSERT INTO analyses (
                        tenant_id, message_id, version, ai_provider, status, error,
                        retry_count, created_at
                    ) VALUES (?, ?, ?, 'reanalysis', 'pending', ?, 0, ?)
                    """,
                    (
                        tenant_id,
                        message_id,
                        _next_version(cursor, message_id),
                        "Reanalysis requested",
                        format_timestamp(now),
                    ),
                )
        return True

    def count_messages(self, tenant_id: int) -> int:
        with self._connection() as connection:
            row = connection.execute(
                "SELECT COUNT(*) FROM messages WHERE tenant_id = ? AND fetched = 1",
                (tenant_id,),
            ).fetchone()
        return int(row[0])

    def record_successful_analysis(
        self,
        tenant_id: int,
        message_id: int,
        provider: str,
        result: ExtractionResult,
        now: datetime,
    ) -> AnalysisCommit | None:
        """Summary: Commit an analysis with its candidates and mark the message analyzed.

        Importance: Either the message is fully analyzed with its candidates or not at all.
        Returns None when a concurrent sweep already analyzed the message.
        Alternatives: Write candidates one by one and flag the message last.
        """

        created_at = format_timestamp(now)
        with self.transaction() as connection:
            cursor = connection.cursor()
            cursor.execute(
                "UPDATE messages SET analyzed = 1 WHERE tenant_id = ? AND id = ? AND analyzed = 0",
                (tenant_id, message_id),
            )
            if cursor.rowcount == 0:
                return None
            version = _next_version(cursor, message_id)
            cursor.execute(
                """
                INSERT INTO analyses (
                    tenant_id, message_id, version, ai_provider, summary, tone, intent,
                    implicit_context, raw_json, quality_score, confidence_avg,
                    events_extracted, tasks_extracted, recurring_items, inferred_items,
                    status, retry_count, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'analyzed', 0, ?)
                """,
                (
                    tenant_id,
                    message_id,
                    version,
                    provider,
                    result.analysis.summary,
                    result.analysis.tone,
                    result.analysis.intent,
                    result.analysis.implicit_context,
                    result.raw_json,
                    result.quality_score(),
                    round(result.average_confidence(), 3),
                    len(result.events),
                    len(result.tasks),
                    result.recurring_count(),
                    result.inferred_count(),
                    created_at,
                ),
            )
            analysis_id = int(cursor.lastrowid)
            commit = AnalysisCommit(analysis_id=analysis_id, version=version)
            for event in result.events:
                event_id = _insert_event(cursor, tenant_id, message_id, analysis_id, event, created_at)
                if event_id is not None:
                    commit.event_ids.append(event_id)
            for task in result.tasks:
                task_id = _insert_task(cursor, tenant_id, message_id, analysis_id, task, created_at)
                if task_id is not None:
                    commit.task_ids.append(task_id)
        return commit

    def record_failed_analysis(
        self,
        tenant_id: int,
        message_id: int,
        provider: str,
        error: str,
        raw_json: str | None,
        now: datetime,
    ) -> int:
        """Summary: Append a pending analysis carrying the error.

        Importance: The retry count on the newest row bounds future attempts.
        Alternatives: Store a retry counter on the message row.
        """

        with self.transaction() as connection:
            cursor = connection.cursor()
            previous = cursor.execute(
                """
                SELECT status, retry_count FROM analyses
                WHERE message_id = ? ORDER BY version DESC LIMIT 1
                """,
                (message_id,),
            ).fetchone()
            retry_count = 1
            if previous and previous[0] == AnalysisStatus.PENDING.value:
                retry_count = int(previous[1]) + 1
            version = _next_version(cursor, message_id)
            cursor.execute(
                """
                INSERT INTO analyses (
                    tenant_id, message_id, version, ai_provider, raw_json, status, error,
                    retry_count, created_at
                ) VALUES (?, ?, ?, ?, ?, 'pending', ?, ?, ?)
                """,
                (
                    tenant_id,
                    message_id,
                    version,
                    provider,
                    raw_json,
                    error,
                    retry_count,
                    format_timestamp(now),
                ),
            )
        return retry_count

    def get_analysis(self, tenant_id: int, analysis_id: int) -> StoredAnalysis | None:
        with self._connection() as connection:
            row = connection.execute(
                f"SELECT {ANALYSIS_COLUMNS} FROM analyses WHERE tenant_id = ? AND id = ?",
                (tenant_id, analysis_id),
            ).fetchone()
        return _analysis(row) if row else None

    def latest_analysis(self, tenant_id: int, message_id: int) -> StoredAnalysis | None:
        with self._connection() as connection:
            row = connection.execute(
                f"""
                SELECT {ANALYSIS_COLUMNS} FROM analyses
                WHERE tenant_id = ? AND message_id = ?
                ORDER BY version DESC LIMIT 1
                """,
                (tenant_id, message_id),
            ).fetchone()
        return _analysis(row) if row else None

    def list_analyses(self, tenant_id: int, message_id: int) -> list[StoredAnalysis]:
        with self._connection() as connection:
            rows = connection.execute(
                f"""
                SELECT {ANALYSIS_COLUMNS} FROM analyses
                WHERE tenant_id = ? AND message_id = ?
                ORDER BY version ASC
                """,
                (tenant_id, message_id),
            ).fetchall()
        return [_analysis(row) for row in rows]

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
        with self._connection() as connection:
            cursor = connection.execute(
                """
                UPDATE analyses SET
                    status = ?,
                    reviewed_by = COALESCE(?, reviewed_by),
                    reviewed_at = ?,
                    review_notes = COALESCE(?, review_notes)
                WHERE tenant_id = ? AND id = ? AND status = ?
                """,
                (
                    status.value,
                    reviewer,
                    format_timestamp(now),
                    notes,
                    tenant_id,
                    analysis_id,
                    expected.value,
                ),
            )
            updated = cursor.rowcount > 0
            connection.commit()
        return updated

    def list_failed_analyses(self, tenant_id: int, max_retries: int) -> list[StoredAnalysis]:
        """Summary: List messages whose extraction exhausted its retries.

        Importance: Failed analyses are surfaced for review instead of dropped.
        Alternatives: Delete messages that cannot be analyzed.
        """

        with self._connection() as connection:
            rows = connection.execute(
                f"""
                SELECT {", ".join("a." + column.strip() for column in ANALYSIS_COLUMNS.split(","))}
                FROM analyses a
                JOIN messages m ON m.id = a.message_id
                WHERE a.tenant_id = ? AND m.analyzed = 0 AND a.status = 'pending'
                AND a.retry_count >= ?
                AND a.version = (SELECT MAX(b.version) FROM analyses b WHERE b.message_id = a.message_id)
                ORDER BY a.created_at ASC
                """,
                (tenant_id, max_retries),
            ).fetchall()
        return [_analysis(row) for row in rows]

    def list_analyses_pending_review(
        self, tenant_id: int, quality_threshold: float, limit: int
    ) -> list[StoredAnalysis]:
        with self._connection() as connection:
            rows = connection.execute(
                f"""
                SELECT {ANALYSIS_COLUMNS} FROM analyses
                WHERE tenant_id = ? AND status = 'analyzed' AND quality_score < ?
                ORDER BY quality_score ASC, id ASC
                LIMIT ?
                """,
                (tenant_id, quality_threshold, limit),
            ).fetchall()
        return [_analysis(row) for row in rows]

    def analysis_stats(self, tenant_id: int) -> dict[str, int]:
        stats = {status.value: 0 for status in AnalysisStatus}
        with self._connection() as connection:
            rows = connection.execute(
                "SELECT status, COUNT(*) FROM analyses WHERE tenant_id = ? GROUP BY status",
                (tenant_id,),
            ).fetchall()
        for status, count in rows:
            stats[status] = int(count)
        return stats

    def get_event(self, tenant_id: int, event_id: int) -> StoredEvent | None:
        with self._connection() as connection:
            row = connection.execute(
                f"SELECT {EVENT_COLUMNS} FROM candidate_events WHERE tenant_id = ? AND id = ?",
                (tenant_id, event_id),
            ).fetchone()
        return _event(row) if row else None

    def list_events(self, tenant_id: int) -> list[StoredEvent]:
        with self._connection() as connection:
            rows = connection.execute(
                f"""
                SELECT {EVENT_COLUMNS} FROM candidate_events
                WHERE tenant_id = ? ORDER BY start_at ASC, id ASC
                """,
                (tenant_id,),
            ).fetchall()
        return [_event(row) for row in rows]

    def list_events_to_sync(
        self, tenant_id: int, max_retries: int, limit: int
    ) -> list[StoredEvent]:
        with self._connection() as connection:
            rows = connection.execute(
                f"""
                SELECT {EVENT_COLUMNS} FROM candidate_events
                WHERE tenant_id = ? AND sync_status IN ('pending', 'failed') AND retry_count < ?
                ORDER BY created_at ASC, id ASC
                LIMIT ?
                """,
                (tenant_id, max_retries, limit),
            ).fetchall()
        return [_event(row) for row in rows]

    def mark_event_synced(
        self, tenant_id: int, event_id: int, external_id: str | None, now: datetime
    ) -> bool:
        timestamp = format_timestamp(now)
        with self._connection() as connection:
            cursor = connection.execute(
                """
                UPDATE candidate_events SET
                    sync_status = 'synced',
                    external_id = COALESCE(?, external_id),
                    synced_at = ?,
                    last_sync_attempt = ?
                WHERE tenant_id = ? AND id = ? AND sync_status != 'synced'
                """,
                (external_id, timestamp, timestamp, tenant_id, event_id),
            )
            updated = cursor.rowcount > 0
            connection.commit()
        return updated

    def mark_event_sync_failed(
        self, tenant_id: int, event_id: int, error: str, now: datetime
    ) -> int:
        """Summary: Record one failed sync attempt on an event.

        Importance: Errors are appended so every attempt stays visible.
        Alternatives: Overwrite the last error only.
        """

        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                UPDATE candidate_events SET
                    sync_status = 'failed',
                    retry_count = retry_count + 1,
                    sync_error = CASE
                        WHEN sync_error IS NULL THEN ?
                        ELSE sync_error || char(10) || ?
                    END,
                    last_sync_attempt = ?
                WHERE tenant_id = ? AND id = ? AND sync_status != 'synced'
                """,
                (error, error, format_timestamp(now), tenant_id, event_id),
            )
            row = cursor.execute(
                "SELECT retry_count FROM candidate_events WHERE tenant_id = ? AND id = ?",
                (tenant_id, event_id),
            ).fetchone()
            connection.commit()
        return int(row[0]) if row else 0

    def list_failed_events(self, tenant_id: int, max_retries: int) -> list[StoredEvent]:
        with self._connection() as connection:
            rows = connection.execute(
                f"""
                SELECT {EVENT_COLUMNS} FROM candidate_events
                WHERE tenant_id = ? AND sync_status = 'failed' AND retry_count >= ?
                ORDER BY created_at ASC, id ASC
                """,
                (tenant_id, max_retries),
            ).fetchall()
        return [_event(row) for row in rows]

    def delete_event(self, tenant_id: int, event_id: int) -> bool:
        with self.transaction() as connection:
            connection.execute(
                """
                DELETE FROM action_tokens
                WHERE tenant_id = ? AND action_kind = ? AND target_id = ?
                """,
                (tenant_id, ActionKind.REMOVE_EVENT.value, event_id),
            )
            cursor = connection.execute(
                "DELETE FROM candidate_events WHERE tenant_id = ? AND id = ?",
                (tenant_id, event_id),
            )
            deleted = cursor.rowcount > 0
        return deleted

    def get_task(self, tenant_id: int, task_id: int) -> StoredTask | None:
        with self._connection() as connection:
            row = connection.execute(
                f"SELECT {TASK_COLUMNS} FROM candidate_tasks WHERE tenant_id = ? AND id = ?",
                (tenant_id, task_id),
            ).fetchone()
        return _task(row) if row else None

    def list_tasks(self, tenant_id: int, status: str | None = None) -> list[StoredTask]:
        with self._connection() as connection:
            if status is None:
                rows = connection.execute(
                    f"""
                    SELECT {TASK_COLUMNS} FROM candidate_tasks
                    WHERE tenant_id = ? ORDER BY id ASC
                    """,
                    (tenant_id,),
                ).fetchall()
            else:
                rows = connection.execute(
                    f"""
                    SELECT {TASK_COLUMNS} FROM candidate_tasks
                    WHERE tenant_id = ? AND status = ? ORDER BY id ASC
                    """,
                    (tenant_id, status),
                ).fetchall()
        return [_task(row) for row in rows]

    def complete_task(self, tenant_id: int, task_id: int, now: datetime) -> bool:
        with self._connection() as connection:
            cursor = connection.execute(
                """
                UPDATE candidate_tasks SET status = ?, completed_at = COALESCE(completed_at, ?)
                WHERE tenant_id = ? AND id = ?
                """,
                (TaskStatus.DONE.value, format_timestamp(now), tenant_id, task_id),
            )
            updated = cursor.rowcount > 0
            connection.commit()
        return updated

    def delete_task(self, tenant_id: int, task_id: int) -> bool:
        with self.transaction() as connection:
            connection.execute(
                """
                DELETE FROM action_tokens
                WHERE tenant_id = ? AND action_kind = ? AND target_id = ?
                """,
                (tenant_id, ActionKind.COMPLETE_TASK.value, task_id),
            )
            cursor = connection.execute(
                "DELETE FROM candidate_tasks WHERE tenant_id = ? AND id = ?",
                (tenant_id, task_id),
            )
            deleted = cursor.rowcount > 0
        return deleted

    def auto_complete_past_tasks(self, tenant_id: int, before: date, now: datetime) -> int:
        with self._connection() as connection:
            cursor = connection.execute(
                """
                UPDATE candidate_tasks SET status = 'done', auto_completed = 1, completed_at = ?
                WHERE tenant_id = ? AND status = 'pending'
                AND due_date IS NOT NULL AND due_date < ?
                """,
                (format_timestamp(now), tenant_id, before.isoformat()),
            )
            updated = cursor.rowcount
            connection.commit()
        return updated

    def create_action_token(
        self,
        tenant_id: int,
        token: str,
        action_kind: ActionKind,
        target_id: int,
        created_at: datetime,
        expires_at: datetime,
    ) -> int:
        with self._connection() as connection:
            cursor = connection.execute(
                """
                INSERT INTO action_tokens (
                    token, tenant_id, action_kind, target_id, created_at, expires_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    token,
                    tenant_id,
                    action_kind.value,
                    target_id,
                    format_timestamp(created_at),
                    format_timestamp(expires_at),
                ),
            )
            token_id = cursor.lastrowid
            connection.commit()
        return int(token_id)

    def redeem_action_token(self, token: str, now: datetime) -> RedeemResult:
        """Summary: Check and mark a token as used in one conditional update.

        Importance: Two concurrent redemptions cannot both succeed.
        Alternatives: Read the token, validate in Python, then write used_at.
        """

        timestamp = format_timestamp(now)
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                UPDATE action_tokens SET used_at = ?
                WHERE token = ? AND used_at IS NULL AND expires_at > ?
                """,
                (timestamp, token, timestamp),
            )
            redeemed = cursor.rowcount == 1
            row = cursor.execute(
                """
                SELECT tenant_id, action_kind, target_id, expires_at, used_at
                FROM action_tokens WHERE token = ?
                """,
                (token,),
            ).fetchone()
            connection.commit()
        if row is None:
            return RedeemResult(valid=False, reason=RedeemReason.NOT_FOUND)
        tenant_id, action_kind, target_id, _expires_at, used_at = row
        if redeemed:
            return RedeemResult(
                valid=True,
                tenant_id=int(tenant_id),
                action_kind=ActionKind(action_kind),
                target_id=int(target_id),
            )
        if used_at is not None:
            return RedeemResult(valid=False, reason=RedeemReason.ALREADY_USED)
        return RedeemResult(valid=False, reason=RedeemReason.EXPIRED)

    def get_action_token(self, token: str) -> StoredActionToken | None:
        with self._connection() as connection:
            row = connection.execute(
                """
                SELECT id, token, tenant_id, action_kind, target_id, created_at, expires_at, used_at
                FROM action_tokens WHERE token = ?
                """,
                (token,),
            ).fetchone()
        return StoredActionToken(*row) if row else None

    def delete_tokens_for_target(
        self, tenant_id: int, action_kind: ActionKind, target_id: int
    ) -> int:
        with self._connection() as connection:
            cursor = connection.execute(
                """
                DELETE FROM action_tokens
                WHERE tenant_id = ? AND action_kind = ? AND target_id = ?
                """,
                (tenant_id, action_kind.value, target_id),
            )
            deleted = cursor.rowcount
            connection.commit()
        return deleted

    def delete_expired_tokens(self, tenant_id: int, now: datetime) -> int:
        with self._connection() as connection:
            cursor = connection.execute(
                """
                DELETE FROM action_tokens
                WHERE tenant_id = ? AND used_at IS NULL AND expires_at <= ?
                """,
                (tenant_id, format_timestamp(now)),
            )
            deleted = cursor.rowcount
            connection.commit()
        return deleted

    def add_feedback(self, tenant_id: int, example: FeedbackExample, now: datetime) -> int:
        with self._connection() as connection:
            cursor = connection.execute(
                """
                INSERT INTO relevance_feedback (tenant_id, item_type, item_text, is_relevant, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    tenant_id,
                    example.item_type.value,
                    example.item_text,
                    int(example.is_relevant),
                    format_timestamp(now),
                ),
            )
            feedback_id = cursor.lastrowid
            connection.commit()
        return int(feedback_id)

    def list_feedback_examples(
        self, tenant_id: int, is_relevant: bool, limit: int
    ) -> list[FeedbackExample]:
        """Summary: Most recent graded items of one polarity.

        Importance: Supplies few-shot examples that reflect the tenant's latest preferences.
        Alternatives: Sample graded items at random.
        """

        with self._connection() as connection:
            rows = connection.execute(
                """
                SELECT item_type, item_text, is_relevant FROM relevance_feedback
                WHERE tenant_id = ? AND is_relevant = ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (tenant_id, int(is_relevant), limit),
            ).fetchall()
        return [
            FeedbackExample(
                item_type=FeedbackItemType(item_type),
                item_text=item_text,
                is_relevant=bool(relevant),
            )
            for item_type, item_text, relevant in rows
        ]

    def upsert_subject_profile(self, tenant_id: int, profile: SubjectProfile) -> int:
        with self._connection() as connection:
            cursor = connection.cursor()
            cursor.execute(
                """
                INSERT INTO subject_profiles (tenant_id, name, notes) VALUES (?, ?, ?)
                ON CONFLICT(tenant_id, name) DO UPDATE SET notes = excluded.notes
                """,
                (tenant_id, profile.name, profile.notes),
            )
            row = cursor.execute(
                "SELECT id FROM subject_profiles WHERE tenant_id = ? AND name = ?",
                (tenant_id, profile.name),
            ).fetchone()
            connection.commit()
        return int(row[0])

    def list_subject_profiles(self, tenant_id: int) -> list[SubjectProfile]:
        with self._connection() as connection:
            rows = connection.execute(
                "SELECT name, notes FROM subject_profiles WHERE tenant_id = ? ORDER BY name",
                (tenant_id,),
            ).fetchall()
        return [SubjectProfile(name=name, notes=notes) for name, notes in rows]

    def upsert_credential(
        self,
        tenant_id: int,
        provider_name: str,
        access_token: str,
        refresh_token: str | None,
        expires_at: str | None,
    ) -> None:
        with self._connection() as connection:
            connection.execute(
                """
                INSERT INTO provider_credentials (
                    tenant_id, provider_name, access_token, refresh_token, expires_at
                ) VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(tenant_id, provider_name) DO UPDATE SET
                    access_token = excluded.access_token,
                    refresh_token = COALESCE(excluded.refresh_token, provider_credentials.refresh_token),
                    expires_at = excluded.expires_at
                """,
                (tenant_id, provider_name, access_token, refresh_token, expires_at),
            )
            connection.commit()

    def get_credential(self, tenant_id: int, provider_name: str) -> StoredCredential | None:
        with self._connection() as connection:
            row = connection.execute(
                """
                SELECT tenant_id, provider_name, access_token, refresh_token, expires_at
                FROM provider_credentials WHERE tenant_id = ? AND provider_name = ?
                """,
                (tenant_id, provider_name),
            ).fetchone()
        return StoredCredential(*row) if row else None

    def log_ai_request(self, request: AiRequest, tenant_id: int | None = None) -> int:
        """Summary: Persist an AI request for auditing.

        Importance: Tracks prompts and providers used by the system.
        Alternatives: Use structured logs instead of database storage.
        """

        with self._connection() as connection:
            cursor = connection.execute(
                """
                INSERT INTO ai_requests (tenant_id, provider, model, prompt, purpose, timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    tenant_id,
                    request.provider,
                    request.model,
                    request.prompt,
                    request.purpose,
                    format_timestamp(request.timestamp),
                ),
            )
            request_id = cursor.lastrowid
            connection.commit()
        return int(request_id)

    def log_ai_response(self, response: AiResponse) -> int:
        """Summary: Persist an AI response for auditing.

        Importance: Enables traceability of AI outputs and latency.
        Alternatives: Store responses in a flat log file.
        """

        with self._connection() as connection:
            cursor = connection.execute(
                """
                INSERT INTO ai_responses (request_id, response_text, latency_ms, token_estimate)
                VALUES (?, ?, ?, ?)
                """,
                (
                    response.request_id,
                    response.response_text,
                    response.latency_ms,
                    response.token_estimate,
                ),
            )
            response_id = cursor.lastrowid
            connection.commit()
        return int(response_id)

    def count_ai_requests(self, tenant_id: int) -> int:
        with self._connection() as connection:
            row = connection.execute(
                "SELECT COUNT(*) FROM ai_requests WHERE tenant_id = ?", (tenant_id,)
            ).fetchone()
        return int(row[0])

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Summary: Run several statements under one write lock.

        Importance: Multi-row commits either land together or not at all.
        Alternatives: Rely on implicit transactions per statement.
        """

        with self._connection() as connection:
            connection.execute("BEGIN IMMEDIATE")
            try:
                yield connection
            except BaseException:
                connection.rollback()
                raise
            connection.commit()

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Summary: Context manager for SQLite connections.

        Importance: Ensures connections are closed cleanly after use.
        Alternatives: Keep a single long-lived connection.
        """

        connection = sqlite3.connect(self._db_path, timeout=30)
        try:
            yield connection
        finally:
            connection.close()


def format_timestamp(value: datetime) -> str:
    """Summary: Render a datetime as fixed-width UTC text.

    Importance: Fixed width keeps string comparison in SQL equal to time order.
    Alternatives: Store epoch integers.
    """

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%fZ").replace(tzinfo=timezone.utc)


def format_event_time(value: datetime) -> str:
    """Summary: Render an event wall-clock time for the dedup key."""

    return value.replace(tzinfo=None).strftime("%Y-%m-%dT%H:%M")


def _next_version(cursor: sqlite3.Cursor, message_id: int) -> int:
    row = cursor.execute(
        "SELECT COALESCE(MAX(version), 0) + 1 FROM analyses WHERE message_id = ?",
        (message_id,),
    ).fetchone()
    return int(row[0])


def _insert_event(
    cursor: sqlite3.Cursor,
    tenant_id: int,
    message_id: int,
    analysis_id: int,
    event: ExtractedEvent,
    created_at: str,
) -> int | None:
    """Summary: Insert a candidate event unless it already exists for the message.

    Importance: Re-running extraction on a message never duplicates its events.
    Alternatives: Delete previous candidates before inserting new ones.
    """

    try:
        cursor.execute(
            """
            INSERT INTO candidate_events (
                tenant_id, source_message_id, analysis_id, title, start_at, end_at,
                description, location, subject_tag, confidence, time_of_day, recurring,
                recurrence_pattern, inferred, sync_status, retry_count, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
            """,
            (
                tenant_id,
                message_id,
                analysis_id,
                event.title,
                format_event_time(event.start),
                format_event_time(event.end) if event.end else None,
                event.description,
                event.location,
                event.subject_tag,
                event.confidence,
                event.time_of_day.value if event.time_of_day else None,
                int(event.recurring),
                event.recurrence_pattern,
                int(event.inferred),
                SyncStatus.PENDING.value,
                created_at,
            ),
        )
    except sqlite3.IntegrityError:
        logger.info("Event %r already exists for message %s.", event.title, message_id)
        return None
    return int(cursor.lastrowid)


def _insert_task(
    cursor: sqlite3.Cursor,
    tenant_id: int,
    message_id: int,
    analysis_id: int,
    task: ExtractedTask,
    created_at: str,
) -> int | None:
    try:
        cursor.execute(
            """
            INSERT INTO candidate_tasks (
                tenant_id, source_message_id, analysis_id, description, category, due_date,
                subject_tag, url, amount, confidence, recurring, responsible_party, inferred,
                status, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?)
            """,
            (
                tenant_id,
                message_id,
                analysis_id,
                task.description,
                task.category.value,
                task.due_date.isoformat() if task.due_date else None,
                task.subject_tag,
                task.url,
                task.amount,
                task.confidence,
                int(task.recurring),
                task.responsible_party,
                int(task.inferred),
                created_at,
            ),
        )
    except sqlite3.IntegrityError:
        logger.info("Task %r already exists for message %s.", task.description, message_id)
        return None
    return int(cursor.lastrowid)


def _message(row: tuple[Any, ...]) -> StoredMessage:
    values = list(row)
    for index in (11, 12, 13, 14):
        values[index] = bool(values[index])
    return StoredMessage(*values)


def _analysis(row: tuple[Any, ...]) -> StoredAnalysis:
    values = list(row)
    values[16] = AnalysisStatus(values[16])
    return StoredAnalysis(*values)


def _event(row: tuple[Any, ...]) -> StoredEvent:
    values = list(row)
    values[11] = bool(values[11])
    return StoredEvent(*values)


def _task(row: tuple[Any, ...]) -> StoredTask:
    values = list(row)
    values[11] = bool(values[11])
    return StoredTask(*values)


def normalize_alias(alias: str | None) -> str | None:
    """Summary: Lowercase and trim an inbound alias; blank becomes None."""

    if alias is None:
        return None
    return alias.strip().lower() or None
