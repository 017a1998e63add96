"""Summary: Application factory wiring core services.

Importance: Centralizes dependency creation for the CLI, the API, and the scheduler.
Alternatives: Instantiate services manually in each entrypoint.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from agendapilot.ai import AiProvider, AiProviderFactory
from agendapilot.attachments import PlainTextAttachmentExtractor
from agendapilot.calendar import CalendarService, GoogleCalendarService, MockCalendarService
from agendapilot.config import AppConfig
from agendapilot.credentials import CredentialCodec
from agendapilot.email import FixtureMessageProvider, GmailMessageProvider, MessageProvider
from agendapilot.errors import ConfigurationError
from agendapilot.models import User, utc_now
from agendapilot.services import (
    ActionTokenService,
    CalendarSyncService,
    CleanupService,
    CredentialService,
    ExtractionService,
    FeedbackService,
    InboundService,
    IngestionService,
    ReviewService,
)
from agendapilot.storage.sqlite_store import SqliteStore

logger = logging.getLogger(__name__)

GMAIL_PROVIDER = "gmail"
GOOGLE_CALENDAR_PROVIDER = "google_calendar"


@dataclass(frozen=True)
class AppContext:
    """Summary: Shared application context for building tenant services.

    Importance: Reuses storage and AI providers across tenant-bound services.
    Alternatives: Rebuild dependencies for every request.
    """

    store: SqliteStore
    config: AppConfig
    primary_ai: AiProvider
    fallback_ai: AiProvider | None
    shared_message_provider: MessageProvider | None = None
    shared_calendar: CalendarService | None = None

    def services_for_tenant(self, tenant_id: int) -> "AppServices":
        """Summary: Build tenant-scoped services from shared context.

        Importance: Every service carries its tenant so queries stay isolated.
        Alternatives: Use a multi-tenant database with row-level security.
        """

        config = self.config
        extractor = PlainTextAttachmentExtractor()
        return AppServices(
            context=self,
            tenant_id=tenant_id,
            inbound=InboundService(store=self.store, tenant_id=tenant_id, extractor=extractor),
            extraction=ExtractionService(
                store=self.store,
                tenant_id=tenant_id,
                primary=self.primary_ai,
                fallback=self.fallback_ai,
                max_retries=config.analysis_max_retries,
                few_shot_examples=config.few_shot_examples,
            ),
            review=ReviewService(
                store=self.store, tenant_id=tenant_id, max_retries=config.analysis_max_retries
            ),
            tokens=ActionTokenService(
                store=self.store,
                ttl_days=config.token_ttl_days,
                public_base_url=config.public_base_url,
            ),
            cleanup=CleanupService(store=self.store, tenant_id=tenant_id),
            feedback=FeedbackService(store=self.store, tenant_id=tenant_id),
            credentials=CredentialService(
                store=self.store,
                tenant_id=tenant_id,
                codec=CredentialCodec(config.token_secret),
                config=config,
            ),
        )

    def message_provider_for(self, credentials: CredentialService) -> MessageProvider:
        if self.shared_message_provider is not None:
            return self.shared_message_provider
        if self.config.message_provider == "gmail":
            return GmailMessageProvider(
                credentials.get_access_token(GMAIL_PROVIDER),
                self.config.gmail_base_url,
                self.config.request_timeout_seconds,
            )
        raise ConfigurationError(f"Unknown message provider: {self.config.message_provider}")

    def calendar_for(self, credentials: CredentialService) -> CalendarService:
        if self.shared_calendar is not None:
            return self.shared_calendar
        if self.config.calendar_service == "google":
            return GoogleCalendarService(
                credentials.get_access_token(GOOGLE_CALENDAR_PROVIDER),
                self.config.calendar_base_url,
                self.config.calendar_id,
                self.config.calendar_time_zone,
                self.config.request_timeout_seconds,
            )
        raise ConfigurationError(f"Unknown calendar service: {self.config.calendar_service}")


@dataclass(frozen=True)
class AppServices:
    """Summary: Bundle of tenant-scoped services for AgendaPilot.

    Importance: Services that talk to a tenant's mailbox or calendar are built
    on demand, so missing credentials only fail the sweep that needs them.
    Alternatives: Use a dependency injection container.
    """

    context: AppContext
    tenant_id: int
    inbound: InboundService
    extraction: ExtractionService
    review: ReviewService
    tokens: ActionTokenService
    cleanup: CleanupService
    feedback: FeedbackService
    credentials: CredentialService

    @property
    def store(self) -> SqliteStore:
        return self.context.store

    def ingestion(self) -> IngestionService:
        config = self.context.config
        return IngestionService(
            store=self.context.store,
            tenant_id=self.tenant_id,
            provider=self.context.message_provider_for(self.credentials),
            extractor=PlainTextAttachmentExtractor(),
            processed_label=config.processed_label,
            max_fetch_attempts=config.max_fetch_attempts,
        )

    def calendar_sync(self) -> CalendarSyncService:
        config = self.context.config
        return CalendarSyncService(
            store=self.context.store,
            tenant_id=self.tenant_id,
            calendar=self.context.calendar_for(self.credentials),
            max_retries=config.sync_max_retries,
            batch_size=config.sync_batch_size,
            duplicate_window=timedelta(minutes=config.duplicate_window_minutes),
        )


def build_context(config: AppConfig) -> AppContext:
    """Summary: Build shared context for tenant-scoped services.

    Importance: Fixture mailboxes and mock calendars are shared so their
    in-memory state survives across sweeps in one process.
    Alternatives: Construct dependencies separately per request.
    """

    store = SqliteStore(config.db_path)
    store.initialize()
    factory = AiProviderFactory(config)
    shared_message_provider = None
    if config.message_provider == "fixture":
        shared_message_provider = FixtureMessageProvider(Path(config.message_fixture_path))
    shared_calendar = MockCalendarService() if config.calendar_service == "mock" else None
    return AppContext(
        store=store,
        config=config,
        primary_ai=factory.build(),
        fallback_ai=factory.build_fallback(),
        shared_message_provider=shared_message_provider,
        shared_calendar=shared_calendar,
    )


def default_tenant_id(context: AppContext) -> int:
    config = context.config
    user = User(
        display_name=config.default_user_name,
        email=config.default_user_email,
        inbound_alias=config.default_inbound_alias or None,
    )
    return context.store.ensure_user(user)


def build_services(config: AppConfig) -> AppServices:
    """Summary: Build services for the default tenant from configuration.

    Importance: Provides a single construction path for local operation.
    Alternatives: Instantiate services directly within the CLI entrypoint.
    """

    context = build_context(config)
    return context.services_for_tenant(default_tenant_id(context))


def run_tenant_sweeps(services: AppServices, now: datetime | None = None) -> dict[str, Any]:
    """Summary: Run ingestion, extraction, calendar sync, and cleanup for one tenant.

    Importance: Each stage commits its own progress, so a failing stage leaves
    earlier stages' work in place for the next run.
    Alternatives: Chain stages through a message queue.
    """

    config = services.context.config
    now = now or utc_now()
    report: dict[str, Any] = {}
    report["ingestion"] = services.ingestion().fetch_and_store(
        timedelta(days=config.fetch_window_days), config.fetch_max_results, now
    )
    report["extraction"] = services.extraction.analyze_unanalyzed(config.analysis_batch_size, now)
    report["calendar"] = services.calendar_sync().sync_pending(now=now)
    report["cleanup"] = services.cleanup.cleanup_past_items(now)
    return report


def run_all_sweeps(context: AppContext, now: datetime | None = None) -> dict[int, dict[str, Any]]:
    """Summary: Run every sweep for every tenant.

    Importance: A configuration failure for one tenant aborts only that tenant's run.
    Alternatives: Schedule one job per tenant and stage.
    """

    reports: dict[int, dict[str, Any]] = {}
    for tenant in context.store.list_tenants():
        services = context.services_for_tenant(tenant.id)
        try:
            reports[tenant.id] = run_tenant_sweeps(services, now)
        except ConfigurationError as exc:
            logger.error("Sweeps for tenant %s aborted: %s", tenant.id, exc)
            reports[tenant.id] = {"error": str(exc)}
    return reports
