"""Summary: Tests for attachment text extraction.

Importance: Attachment failures are recorded per file and never block storage.
Alternatives: Test attachments only through ingestion.
"""

from __future__ import annotations

from agendapilot.attachments import (
    MAX_ATTACHMENT_BYTES,
    AttachmentExtractor,
    PlainTextAttachmentExtractor,
    extract_attachment_text,
)
from agendapilot.models import Attachment


class BrokenExtractor(AttachmentExtractor):
    def extract(self, attachment: Attachment) -> str:
        raise RuntimeError("corrupt file")


def test_extracts_text_and_html_sections() -> None:
    result = extract_attachment_text(
        PlainTextAttachmentExtractor(),
        (
            Attachment("notes.txt", "text/plain", b"Bring water on 2026-03-21\n"),
            Attachment("flyer.html", "text/html", b"<p>Picture <b>Day</b></p>"),
        ),
    )
    assert "[Attachment: notes.txt]\nBring water on 2026-03-21" in result.text
    assert "[Attachment: flyer.html]" in result.text
    assert "Picture" in result.text
    assert result.errors == []


def test_unsupported_attachments_are_skipped() -> None:
    result = extract_attachment_text(
        PlainTextAttachmentExtractor(),
        (Attachment("photo.jpg", "image/jpeg", b"\xff\xd8\xff"),),
    )
    assert result.text == ""
    assert result.errors == []


def test_oversized_and_broken_attachments_are_recorded() -> None:
    """Summary: Size limits and extractor errors land in the per-file error list.

    Importance: Users can see which attachment was not read.
    Alternatives: Log and drop attachment failures silently.
    """

    oversized = Attachment("big.txt", "text/plain", b"x" * (MAX_ATTACHMENT_BYTES + 1))
    result = extract_attachment_text(PlainTextAttachmentExtractor(), (oversized,))
    assert result.errors == [f"big.txt: larger than {MAX_ATTACHMENT_BYTES} bytes"]

    broken = extract_attachment_text(
        BrokenExtractor(), (Attachment("form.txt", "text/plain", b"data"),)
    )
    assert broken.errors == ["form.txt: corrupt file"]
    assert broken.text == ""
