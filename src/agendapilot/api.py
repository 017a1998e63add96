"""Summary: FastAPI application for AgendaPilot.

Importance: Exposes action links, the inbound webhook, and sweep triggers over HTTP.
Alternatives: Use a CLI-only workflow or a different web framework.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import html
import logging
from dataclasses import asdict
from datetime import datetime, timedelta
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.responses import HTMLResponse
from pydantic import BaseModel, Field

from agendapilot.app import AppContext, AppServices, build_context, default_tenant_id
from agendapilot.config import AppConfig
from agendapilot.errors import ConfigurationError
from agendapilot.models import (
    ActionKind,
    AnalysisStatus,
    Attachment,
    FeedbackItemType,
    FetchedMessage,
    RedeemReason,
    utc_now,
)

logger = logging.getLogger(__name__)

REDEEM_STATUS_CODES = {
    RedeemReason.NOT_FOUND: 404,
    RedeemReason.TARGET_MISSING: 404,
    RedeemReason.EXPIRED: 410,
    RedeemReason.ALREADY_USED: 409,
}


class InboundAttachment(BaseModel):
    """Summary: Base64 attachment carried by the inbound webhook."""

    filename: str
    mime_type: str = "application/octet-stream"
    content_base64: str = ""


class InboundRequest(BaseModel):
    """Summary: Parsed message delivered by the inbound mail relay.

    Importance: The relay forwards messages sent to a tenant's alias address.
    Alternatives: Accept raw MIME and parse it server-side.
    """

    message_id: str
    recipient: str
    sender: str
    subject: str = ""
    body: str = ""
    thread_id: str | None = None
    timestamp: datetime | None = None
    spam_verdict: str | None = None
    virus_verdict: str | None = None
    attachments: list[InboundAttachment] = Field(default_factory=list)


class SweepRequest(BaseModel):
    """Summary: Optional overrides for a triggered sweep."""

    tenant_id: int | None = None
    limit: int | None = Field(default=None, ge=1, le=1000)


class AnalysisStatusRequest(BaseModel):
    """Summary: Review decision for one analysis record."""

    status: AnalysisStatus
    reviewer: str | None = None
    notes: str | None = None


class FeedbackRequest(BaseModel):
    """Summary: Relevance grade for an extracted item.

    Importance: Graded items become few-shot examples for later extractions.
    Alternatives: Collect thumbs up/down without storing the item text.
    """

    item_type: FeedbackItemType
    item_text: str
    is_relevant: bool


class LinksRequest(BaseModel):
    """Summary: Items that need action links in a rendered summary."""

    task_ids: list[int] = Field(default_factory=list)
    event_ids: list[int] = Field(default_factory=list)


def create_app(config: AppConfig, context: AppContext | None = None) -> FastAPI:
    """Summary: Create a FastAPI app wired to AgendaPilot services.

    Importance: Ensures the API layer shares the same configuration and storage.
    Alternatives: Instantiate services globally outside the factory.
    """

    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    app = FastAPI(title="AgendaPilot API", version="0.1.0")
    context = context or build_context(config)
    default_tenant = default_tenant_id(context)

    def require_api_key(x_api_key: str | None = Header(default=None)) -> None:
        """Summary: Enforce API key authentication when configured.

        Importance: Adds a minimal security layer for local and private deployments.
        Alternatives: Use OAuth or session-based authentication.
        """

        if not config.api_key:
            return
        if not hmac.compare_digest((x_api_key or "").encode("utf-8"), config.api_key.encode("utf-8")):
            raise HTTPException(status_code=401, detail="Invalid API key")

    def require_webhook_secret(x_webhook_secret: str | None = Header(default=None)) -> None:
        if not config.webhook_secret:
            return
        if not hmac.compare_digest(
            (x_webhook_secret or "").encode("utf-8"), config.webhook_secret.encode("utf-8")
        ):
            raise HTTPException(status_code=401, detail="Invalid webhook secret")

    def _services(tenant_id: int | None) -> AppServices:
        tenant_id = tenant_id or default_tenant
        if context.store.get_user(tenant_id) is None:
            raise HTTPException(status_code=404, detail="Tenant not found")
        return context.services_for_tenant(tenant_id)

    @app.get("/health")
    def health() -> dict[str, str]:
        """Summary: Health check endpoint.

        Importance: Supports uptime checks in local and cloud deployments.
        Alternatives: Use a metrics endpoint only.
        """

        return {"status": "ok"}

    tokens = context.services_for_tenant(default_tenant).tokens

    def _run_action(token: str) -> HTMLResponse:
        outcome = tokens.execute(token)
        if outcome.success:
            return HTMLResponse(_action_page("Done", outcome.message), status_code=200)
        title = "Link Unavailable"
        if outcome.reason == RedeemReason.TARGET_MISSING:
            title = "Task Not Found" if outcome.action_kind == ActionKind.COMPLETE_TASK else "Event Not Found"
        return HTMLResponse(
            _action_page(title, outcome.message), status_code=REDEEM_STATUS_CODES[outcome.reason]
        )

    @app.get("/actions/{token}", response_class=HTMLResponse)
    def action_get(token: str) -> HTMLResponse:
        """Summary: Redeem an action link opened from a summary.

        Importance: The token is the only credential; it works exactly once.
        Alternatives: Show a confirmation page before mutating.
        """

        return _run_action(token)

    @app.post("/actions/{token}", response_class=HTMLResponse)
    def action_post(token: str) -> HTMLResponse:
        return _run_action(token)

    @app.post("/inbound", dependencies=[Depends(require_webhook_secret)])
    def inbound(payload: InboundRequest) -> dict[str, Any]:
        """Summary: Accept a message pushed by the inbound mail relay.

        Importance: Redelivered webhooks are absorbed by message dedup.
        Alternatives: Poll a shared mailbox instead.
        """

        local_part, _, domain = payload.recipient.strip().lower().partition("@")
        if config.inbound_domain and domain and domain != config.inbound_domain.lower():
            raise HTTPException(status_code=404, detail="Unknown recipient domain")
        tenant = context.store.find_user_by_alias(local_part)
        if tenant is None:
            logger.warning("Inbound message for unknown recipient %s.", payload.recipient)
            raise HTTPException(status_code=404, detail="Unknown recipient")
        try:
            attachments = tuple(
                Attachment(
                    filename=item.filename,
                    mime_type=item.mime_type,
                    content=base64.b64decode(item.content_base64),
                )
                for item in payload.attachments
            )
        except (binascii.Error, ValueError) as exc:
            raise HTTPException(status_code=400, detail="Invalid attachment encoding") from exc
        message = FetchedMessage(
            provider_message_id=payload.message_id,
            thread_id=payload.thread_id,
            sender=payload.sender,
            subject=payload.subject,
            timestamp=payload.timestamp or utc_now(),
            body=payload.body,
            attachments=attachments,
        )
        result = context.services_for_tenant(tenant.id).inbound.ingest_inbound(
            message, payload.spam_verdict, payload.virus_verdict
        )
        return {"status": result.status, "message_id": result.message_id}

    @app.post("/sweeps/ingest", dependencies=[Depends(require_api_key)])
    def sweep_ingest(payload: SweepRequest) -> dict[str, Any]:
        services = _services(payload.tenant_id)
        try:
            result = services.ingestion().fetch_and_store(
                timedelta(days=config.fetch_window_days),
                payload.limit or config.fetch_max_results,
            )
        except ConfigurationError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return asdict(result)

    @app.post("/sweeps/analyze", dependencies=[Depends(require_api_key)])
    def sweep_analyze(payload: SweepRequest) -> dict[str, Any]:
        """Summary: Run one extraction sweep.

        Importance: Lets an external scheduler drive extraction over HTTP.
        Alternatives: Run the sweep from cron via the CLI.
        """

        services = _services(payload.tenant_id)
        try:
            result = services.extraction.analyze_unanalyzed(
                payload.limit or config.analysis_batch_size
            )
        except ConfigurationError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return asdict(result)

    @app.post("/sweeps/sync", dependencies=[Depends(require_api_key)])
    def sweep_sync(payload: SweepRequest) -> dict[str, Any]:
        services = _services(payload.tenant_id)
        try:
            result = services.calendar_sync().sync_pending()
        except ConfigurationError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return asdict(result)

    @app.post("/sweeps/cleanup", dependencies=[Depends(require_api_key)])
    def sweep_cleanup(payload: SweepRequest) -> dict[str, Any]:
        result = _services(payload.tenant_id).cleanup.cleanup_past_items()
        return asdict(result)

    @app.get("/failures", dependencies=[Depends(require_api_key)])
    def failures(tenant_id: int | None = None) -> dict[str, Any]:
        """Summary: List analyses and events that exhausted their retries.

        Importance: Surfaces items the sweeps have given up on for manual follow-up.
        Alternatives: Send failure notifications instead.
        """

        services = _services(tenant_id)
        return {
            "analyses": [
                {
                    "id": item.id,
                    "message_id": item.message_id,
                    "error": item.error,
                    "retry_count": item.retry_count,
                }
                for item in services.review.list_failed()
            ],
            "events": [
                {
                    "id": item.id,
                    "title": item.title,
                    "start_at": item.start_at,
                    "sync_error": item.sync_error,
                    "retry_count": item.retry_count,
                }
                for item in services.store.list_failed_events(
                    services.tenant_id, config.sync_max_retries
                )
            ],
        }

    @app.post("/analyses/{analysis_id}/status", dependencies=[Depends(require_api_key)])
    def analysis_status(
        analysis_id: int, payload: AnalysisStatusRequest, tenant_id: int | None = None
    ) -> dict[str, Any]:
        services = _services(tenant_id)
        if services.store.get_analysis(services.tenant_id, analysis_id) is None:
            raise HTTPException(status_code=404, detail="Analysis not found")
        try:
            updated = services.review.update_status(
                analysis_id, payload.status, payload.reviewer, payload.notes
            )
        except ValueError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return {"id": updated.id, "status": updated.status.value, "reviewed_by": updated.reviewed_by}

    @app.post("/feedback", dependencies=[Depends(require_api_key)])
    def feedback(payload: FeedbackRequest, tenant_id: int | None = None) -> dict[str, Any]:
        feedback_id = _services(tenant_id).feedback.grade_item(
            payload.item_type, payload.item_text, payload.is_relevant
        )
        return {"id": feedback_id}

    @app.post("/links", dependencies=[Depends(require_api_key)])
    def links(payload: LinksRequest, tenant_id: int | None = None) -> dict[str, Any]:
        """Summary: Issue action links for the items of a rendered summary.

        Importance: Summaries embed one single-use link per actionable item.
        Alternatives: Link to an authenticated dashboard instead.
        """

        services = _services(tenant_id)
        return {
            "links": services.tokens.issue_links(
                services.tenant_id, payload.task_ids, payload.event_ids
            )
        }

    return app


def _action_page(title: str, message: str) -> str:
    return (
        "<!doctype html><html><head><meta charset=\"utf-8\">"
        f"<title>{html.escape(title)}</title></head>"
        f"<body><h1>{html.escape(title)}</h1><p>{html.escape(message)}</p></body></html>"
    )


def app_from_env() -> FastAPI:
    """Summary: App factory for ASGI servers, configured from the environment."""

    return create_app(AppConfig.from_env())
