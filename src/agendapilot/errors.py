"""Summary: Error taxonomy shared by the AgendaPilot pipeline.

Importance: Lets sweeps decide per failure whether to retry, record, or abort.
Alternatives: Inspect exception messages or HTTP status codes at every call site.
"""

from __future__ import annotations


class AgendaPilotError(Exception):
    """Summary: Base class for pipeline errors.

    Importance: Allows entry points to catch every domain failure in one place.
    Alternatives: Raise builtin exceptions and rely on their messages.
    """


class TransientProviderError(AgendaPilotError):
    """Summary: Retryable failure from an external collaborator.

    Importance: Timeouts, rate limits, and 5xx responses are retried, never treated as success.
    Alternatives: Retry every exception regardless of cause.
    """

    def __init__(self, service: str, message: str, status_code: int | None = None) -> None:
        super().__init__(f"{service}: {message}")
        self.service = service
        self.status_code = status_code


class ExtractionValidationError(AgendaPilotError):
    """Summary: AI response did not match the extraction schema.

    Importance: Validation failures are recorded and retried on the same provider only.
    Alternatives: Accept partial responses and drop invalid items silently.
    """

    def __init__(self, message: str, raw_response: str | None = None) -> None:
        super().__init__(message)
        self.raw_response = raw_response


class ConfigurationError(AgendaPilotError):
    """Summary: Unusable configuration, such as missing provider credentials.

    Importance: Aborts a whole sweep because no partial progress is possible.
    Alternatives: Record the failure on every item of the batch.
    """
