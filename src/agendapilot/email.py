"""Summary: Message provider interfaces and implementations.

Importance: Encapsulates list, get, and label access to mailbox services.
Alternatives: Rely solely on provider SDKs with vendor lock-in.
"""

from __future__ import annotations

import base64
import html
import json
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from email.header import decode_header
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Any

from agendapilot.errors import AgendaPilotError
from agendapilot.http_client import send_json_request
from agendapilot.models import Attachment, FetchedMessage, LabelResult

logger = logging.getLogger(__name__)

GMAIL_MODIFY_BATCH = 1000


class MessageProvider(ABC):
    """Summary: Abstract interface for message ingestion.

    Importance: The pipeline only needs list, get, and label semantics with
    at-least-once delivery.
    Alternatives: Use provider-specific classes directly in ingestion flows.
    """

    name = "provider"

    @abstractmethod
    def list_message_ids(
        self, after: datetime, exclude_label: str | None, max_results: int
    ) -> list[str]:
        """Summary: List candidate message ids newer than a point in time.

        Importance: Excluding the processed label lets the provider skip known messages.
        Alternatives: Page through the full mailbox every run.
        """

    @abstractmethod
    def get_message(self, provider_message_id: str) -> FetchedMessage:
        """Summary: Fetch full content for one message."""

    @abstractmethod
    def apply_label(self, provider_message_ids: list[str], label: str) -> LabelResult:
        """Summary: Apply a label to messages on the provider side.

        Importance: Marks messages processed so later listings exclude them.
        Alternatives: Track processed ids only locally.
        """


class FixtureMessageProvider(MessageProvider):
    """Summary: Serves messages from a local JSON fixture.

    Importance: Supports offline runs, demos, and tests.
    Alternatives: Use SQLite fixtures or generate synthetic messages.
    """

    name = "fixture"

    def __init__(self, fixture_path: Path) -> None:
        """Summary: Initialize the fixture provider.

        Importance: Labels live in memory so repeated runs behave like a mailbox.
        Alternatives: Write labels back into the fixture file.
        """

        self._fixture_path = fixture_path
        self._labels: dict[str, set[str]] = {}
        self._items: dict[str, dict[str, Any]] | None = None

    def list_message_ids(
        self, after: datetime, exclude_label: str | None, max_results: int
    ) -> list[str]:
        ids: list[str] = []
        for message_id, item in self._load().items():
            if exclude_label and exclude_label in self._labels_for(message_id, item):
                continue
            if _as_utc(datetime.fromisoformat(item["timestamp"])) < _as_utc(after):
                continue
            ids.append(message_id)
        return ids[:max_results]

    def get_message(self, provider_message_id: str) -> FetchedMessage:
        items = self._load()
        if provider_message_id not in items:
            raise KeyError(f"Fixture message not found: {provider_message_id}")
        item = items[provider_message_id]
        attachments = tuple(
            Attachment(
                filename=attachment["filename"],
                mime_type=attachment.get("mime_type", "application/octet-stream"),
                content=base64.b64decode(attachment.get("content_base64", "")),
            )
            for attachment in item.get("attachments", [])
        )
        return FetchedMessage(
            provider_message_id=provider_message_id,
            thread_id=item.get("thread_id"),
            sender=item.get("sender", ""),
            subject=item.get("subject", ""),
            timestamp=datetime.fromisoformat(item["timestamp"]),
            body=item.get("body", ""),
            attachments=attachments,
        )

    def apply_label(self, provider_message_ids: list[str], label: str) -> LabelResult:
        items = self._load()
        result = LabelResult()
        for message_id in provider_message_ids:
            if message_id in items:
                self._labels.setdefault(message_id, set()).add(label)
                result.success.append(message_id)
            else:
                result.failed.append(message_id)
        return result

    def _labels_for(self, message_id: str, item: dict[str, Any]) -> set[str]:
        return set(item.get("labels", [])) | self._labels.get(message_id, set())

    def _load(self) -> dict[str, dict[str, Any]]:
        if self._items is None:
            data = json.loads(self._fixture_path.read_text(encoding="utf-8"))
            self._items = {item["provider_message_id"]: item for item in data}
        return self._items


class GmailMessageProvider(MessageProvider):
    """Summary: Reads and labels messages via the Gmail API using OAuth tokens.

    Importance: Enables OAuth-based ingestion with a provider-side processed marker.
    Alternatives: Use IMAP or a provider SDK.
    """

    name = "gmail"

    def __init__(self, access_token: str, base_url: str, timeout: float) -> None:
        """Summary: Initialize the Gmail provider.

        Importance: Stores access token, API base URL, and the request timeout.
        Alternatives: Fetch tokens on demand inside each request.
        """

        self._access_token = access_token
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._label_ids: dict[str, str] = {}

    def list_message_ids(
        self, after: datetime, exclude_label: str | None, max_results: int
    ) -> list[str]:
        """Summary: Search Gmail for recent inbox messages.

        Importance: Skips spam, trash, sent mail, and already processed messages.
        Alternatives: Use the Gmail history API with a stored cursor.
        """

        query = f"after:{after:%Y/%m/%d} -in:spam -in:trash -in:sent"
        if exclude_label:
            query += f" -label:{exclude_label}"
        ids: list[str] = []
        page_token: str | None = None
        while len(ids) < max_results:
            params: dict[str, Any] = {"q": query, "maxResults": min(500, max_results - len(ids))}
            if page_token:
                params["pageToken"] = page_token
            payload = self._get("/users/me/messages", params)
            ids.extend(item["id"] for item in payload.get("messages", []) if item.get("id"))
            page_token = payload.get("nextPageToken")
            if not page_token:
                break
        return ids[:max_results]

    def get_message(self, provider_message_id: str) -> FetchedMessage:
        payload = self._get(f"/users/me/messages/{provider_message_id}", {"format": "full"})
        parsed = _parse_gmail_message(payload)
        attachments = tuple(
            self._download_attachment(provider_message_id, part)
            for part in _walk_gmail_parts(payload.get("payload") or {})
            if part.get("filename")
        )
        return FetchedMessage(
            provider_message_id=parsed.provider_message_id or provider_message_id,
            thread_id=parsed.thread_id,
            sender=parsed.sender,
            subject=parsed.subject,
            timestamp=parsed.timestamp,
            body=parsed.body,
            attachments=attachments,
        )

    def apply_label(self, provider_message_ids: list[str], label: str) -> LabelResult:
        """Summary: Add a label to messages in batches.

        Importance: Applying a label twice is harmless, so retries are safe.
        Alternatives: Modify messages one at a time.
        """

        result = LabelResult()
        if not provider_message_ids:
            return result
        try:
            label_id = self._ensure_label(label)
        except (AgendaPilotError, RuntimeError) as exc:
            logger.warning("Could not resolve Gmail label %s: %s", label, exc)
            result.failed.extend(provider_message_ids)
            return result
        for start in range(0, len(provider_message_ids), GMAIL_MODIFY_BATCH):
            batch = provider_message_ids[start : start + GMAIL_MODIFY_BATCH]
            try:
                send_json_request(
                    "gmail",
                    "POST",
                    f"{self._base_url}/users/me/messages/batchModify",
                    self._timeout,
                    access_token=self._access_token,
                    payload={"ids": batch, "addLabelIds": [label_id]},
                )
            except (AgendaPilotError, RuntimeError) as exc:
                logger.warning("Gmail label batch of %s failed: %s", len(batch), exc)
                result.failed.extend(batch)
                continue
            result.success.extend(batch)
        return result

    def _ensure_label(self, label: str) -> str:
        if label in self._label_ids:
            return self._label_ids[label]
        payload = self._get("/users/me/labels", None)
        for item in payload.get("labels", []):
            if item.get("name") == label:
                self._label_ids[label] = item["id"]
                return item["id"]
        created = send_json_request(
            "gmail",
            "POST",
            f"{self._base_url}/users/me/labels",
            self._timeout,
            access_token=self._access_token,
            payload={
                "name": label,
                "labelListVisibility": "labelShow",
                "messageListVisibility": "show",
            },
        )
        self._label_ids[label] = created["id"]
        return created["id"]

    def _download_attachment(self, message_id: str, part: dict[str, Any]) -> Attachment:
        body = part.get("body") or {}
        data = body.get("data")
        if not data and body.get("attachmentId"):
            payload = self._get(
                f"/users/me/messages/{message_id}/attachments/{body['attachmentId']}", None
            )
            data = payload.get("data", "")
        return Attachment(
            filename=part.get("filename", ""),
            mime_type=part.get("mimeType", "application/octet-stream"),
            content=_decode_base64url_bytes(data or ""),
        )

    def _get(self, path: str, params: dict[str, Any] | None) -> dict[str, Any]:
        return send_json_request(
            "gmail",
            "GET",
            f"{self._base_url}{path}",
            self._timeout,
            access_token=self._access_token,
            params=params,
        )


def _parse_gmail_message(message: dict[str, Any]) -> FetchedMessage:
    """Summary: Parse a Gmail message payload into a FetchedMessage.

    Importance: Normalizes Gmail payloads into the core message model.
    Alternatives: Store raw Gmail payloads and parse later.
    """

    payload = message.get("payload") or {}
    headers = _parse_gmail_headers(payload.get("headers", []))
    internal_date = message.get("internalDate")
    if internal_date:
        try:
            timestamp = datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc)
        except ValueError:
            timestamp = _parse_date(headers.get("Date", ""))
    else:
        timestamp = _parse_date(headers.get("Date", ""))
    body = _extract_gmail_body(payload) or message.get("snippet", "")
    return FetchedMessage(
        provider_message_id=message.get("id", ""),
        thread_id=message.get("threadId"),
        sender=_decode_header_value(headers.get("From", "")),
        subject=_decode_header_value(headers.get("Subject", "")),
        timestamp=timestamp,
        body=body,
    )


def _parse_gmail_headers(headers: list[dict[str, Any]]) -> dict[str, str]:
    """Summary: Normalize Gmail header list into a dictionary.

    Importance: Simplifies access to header values for parsing.
    Alternatives: Scan header lists inline for each field.
    """

    normalized: dict[str, str] = {}
    for header in headers:
        name = header.get("name")
        value = header.get("value")
        if name and value:
            normalized[name] = value
    return normalized


def _extract_gmail_body(payload: dict[str, Any]) -> str:
    """Summary: Extract a plain text body from a Gmail payload.

    Importance: Provides readable content for extraction; HTML is a fallback.
    Alternatives: Store the snippet only for Gmail messages.
    """

    text_parts: list[str] = []
    html_parts: list[str] = []
    for part in _walk_gmail_parts(payload):
        if part.get("filename"):
            continue
        data = (part.get("body") or {}).get("data")
        if not data:
            continue
        decoded = _decode_base64url(data)
        if part.get("mimeType") == "text/plain":
            text_parts.append(decoded)
        elif part.get("mimeType") == "text/html":
            html_parts.append(strip_html(decoded))
    chosen = text_parts or html_parts
    return "\n".join(item.strip() for item in chosen if item.strip()).strip()


def _walk_gmail_parts(payload: dict[str, Any]) -> list[dict[str, Any]]:
    """Summary: Walk Gmail payload parts recursively."""

    parts: list[dict[str, Any]] = [payload]
    for part in payload.get("parts", []) or []:
        parts.extend(_walk_gmail_parts(part))
    return parts


def _decode_base64url(data: str) -> str:
    return _decode_base64url_bytes(data).decode("utf-8", errors="ignore")


def _decode_base64url_bytes(data: str) -> bytes:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded.encode("utf-8"))


def _decode_header_value(value: str) -> str:
    """Summary: Decode RFC 2047 encoded header values.

    Importance: Ensures senders and subjects are readable in storage and prompts.
    Alternatives: Store raw header values and decode at display time.
    """

    fragments: list[str] = []
    for part, encoding in decode_header(value):
        if isinstance(part, bytes):
            fragments.append(part.decode(encoding or "utf-8", errors="ignore"))
        else:
            fragments.append(part)
    return "".join(fragments).strip()


def _parse_date(raw_date: str) -> datetime:
    cleaned = re.sub(r"\(.*?\)", "", raw_date).strip()
    try:
        return _as_utc(parsedate_to_datetime(cleaned))
    except (TypeError, ValueError):
        return datetime.now(timezone.utc)


def strip_html(value: str) -> str:
    """Summary: Reduce HTML to whitespace-normalized text."""

    without_blocks = re.sub(r"(?is)<(script|style).*?>.*?</\1>", " ", value)
    with_breaks = re.sub(r"(?i)<br\s*/?>|</p>|</div>|</li>|</tr>", "\n", without_blocks)
    text = html.unescape(re.sub(r"<[^>]+>", " ", with_breaks))
    lines = [re.sub(r"[ \t]+", " ", line).strip() for line in text.splitlines()]
    return "\n".join(line for line in lines if line)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
