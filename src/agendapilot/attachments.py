"""Summary: Attachment text extraction.

Importance: Flyers and forms often carry the dates the message body omits.
Alternatives: Ignore attachments and rely on message bodies only.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from agendapilot.email import strip_html
from agendapilot.models import Attachment, AttachmentText


logger = logging.getLogger(__name__)

MAX_ATTACHMENT_BYTES = 5 * 1024 * 1024


class UnsupportedAttachment(Exception):
    """Raised when an extractor does not handle a file type."""


class AttachmentExtractor(ABC):
    """Summary: Pluggable strategy for turning attachment bytes into text.

    Importance: Lets deployments add PDF or OCR support without touching ingestion.
    Alternatives: Hardcode supported formats in the ingestion service.
    """

    @abstractmethod
    def extract(self, attachment: Attachment) -> str:
        """Summary: Return the text content of one attachment.

        Importance: Raises UnsupportedAttachment for types it does not handle.
        Alternatives: Return an empty string for unsupported types.
        """


class PlainTextAttachmentExtractor(AttachmentExtractor):
    """Summary: Handles plain text, CSV, and HTML attachments."""

    TEXT_TYPES = ("text/plain", "text/csv", "text/calendar")

    def extract(self, attachment: Attachment) -> str:
        mime_type = attachment.mime_type.lower()
        if mime_type in self.TEXT_TYPES:
            return attachment.content.decode("utf-8", errors="replace").strip()
        if mime_type == "text/html":
            return strip_html(attachment.content.decode("utf-8", errors="replace"))
        raise UnsupportedAttachment(mime_type)


def extract_attachment_text(
    extractor: AttachmentExtractor, attachments: tuple[Attachment, ...]
) -> AttachmentText:
    """Summary: Extract text from every attachment, recording failures per file.

    Importance: A broken attachment never prevents the message from being stored.
    Alternatives: Fail the whole message when one attachment cannot be read.
    """

    sections: list[str] = []
    errors: list[str] = []
    for attachment in attachments:
        if len(attachment.content) > MAX_ATTACHMENT_BYTES:
            errors.append(f"{attachment.filename}: larger than {MAX_ATTACHMENT_BYTES} bytes")
            continue
        try:
            text = extractor.extract(attachment)
        except UnsupportedAttachment:
            logger.info("Skipping unsupported attachment %s.", attachment.filename)
            continue
        except Exception as exc:
            logger.warning("Attachment %s could not be read: %s", attachment.filename, exc)
            errors.append(f"{attachment.filename}: {exc}")
            continue
        if text:
            sections.append(f"[Attachment: {attachment.filename}]\n{text}")
    return AttachmentText(text="\n\n".join(sections), errors=errors)
