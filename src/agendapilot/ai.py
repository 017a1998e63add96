"""Summary: AI provider abstraction, extraction prompt, and response validation.

Importance: Centralizes LLM access for portability, auditability, and schema checks.
Alternatives: Call provider SDKs directly in each service.
"""

from __future__ import annotations

import json
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from agendapilot.config import AppConfig
from agendapilot.errors import ConfigurationError, ExtractionValidationError
from agendapilot.http_client import send_json_request
from agendapilot.models import (
    ExtractedEvent,
    ExtractedTask,
    ExtractionRequest,
    ExtractionResult,
    HumanAnalysis,
    TaskCategory,
    TimeOfDay,
)

EXTRACTION_PURPOSE = "extraction"


class AiProvider(ABC):
    """Summary: Abstract interface for AI text generation.

    Importance: Allows switching between local and cloud LLMs without refactors.
    Alternatives: Use a single vendor SDK and accept lock-in risk.
    """

    name = "provider"
    model = "unknown"

    @abstractmethod
    def generate_text(self, prompt: str, purpose: str) -> tuple[str, int]:
        """Summary: Generate a response for a prompt.

        Importance: Returns the text and latency in milliseconds. Transport
        failures raise TransientProviderError so callers can fall back.
        Alternatives: Return provider-specific response objects directly.
        """


class MockAiProvider(AiProvider):
    """Summary: Deterministic AI provider for local runs and tests.

    Importance: Produces schema-valid extraction output without external services.
    Alternatives: Use fixture-based responses loaded from files.
    """

    name = "mock"
    model = "mock"

    def generate_text(self, prompt: str, purpose: str) -> tuple[str, int]:
        """Summary: Build an extraction from the subject line and ISO dates in the message.

        Importance: Allows the full pipeline to run offline with repeatable output.
        Alternatives: Echo the prompt back unchanged.
        """

        started = time.time()
        subject_match = re.search(r"^Subject: (.*)$", prompt, re.MULTILINE)
        subject = subject_match.group(1).strip() if subject_match else "Message"
        message_text = prompt.split("MESSAGE:", 1)[-1]
        events = [
            {
                "title": subject,
                "date": found,
                "confidence": 0.8,
                "time_of_day": "all_day",
            }
            for found in sorted(set(re.findall(r"\b(\d{4}-\d{2}-\d{2})\b", message_text)))
        ]
        payload = {
            "human_analysis": {
                "email_summary": f"{subject}: {' '.join(message_text.split())[:160]}",
                "email_intent": "informational",
            },
            "events": events,
            "todos": [],
            "emails_analyzed": 1,
        }
        latency_ms = int((time.time() - started) * 1000)
        return json.dumps(payload), latency_ms


class OllamaProvider(AiProvider):
    """Summary: AI provider that targets a local Ollama server.

    Importance: Supports privacy-sensitive workflows on local hardware.
    Alternatives: Use llama.cpp directly with a Python binding.
    """

    name = "ollama"

    def __init__(self, base_url: str, model: str, timeout: float) -> None:
        self._base_url = base_url.rstrip("/")
        self.model = model
        self._timeout = timeout

    def generate_text(self, prompt: str, purpose: str) -> tuple[str, int]:
        """Summary: Generate text using the Ollama HTTP API.

        Importance: Requests JSON output for extraction calls.
        Alternatives: Use Ollama's CLI and parse its output.
        """

        payload: dict[str, Any] = {"model": self.model, "prompt": prompt, "stream": False}
        if purpose == EXTRACTION_PURPOSE:
            payload["format"] = "json"
        started = time.time()
        raw = send_json_request(
            "ollama", "POST", f"{self._base_url}/api/generate", self._timeout, payload=payload
        )
        latency_ms = int((time.time() - started) * 1000)
        return raw.get("response", ""), latency_ms


class OpenAiProvider(AiProvider):
    """Summary: AI provider using OpenAI's chat completion API.

    Importance: Enables higher-quality extraction when configured.
    Alternatives: Use other cloud providers or a local model.
    """

    name = "openai"

    def __init__(self, api_key: str, model: str, timeout: float) -> None:
        self._api_key = api_key
        self.model = model
        self._timeout = timeout

    def generate_text(self, prompt: str, purpose: str) -> tuple[str, int]:
        """Summary: Generate text using OpenAI chat completions.

        Importance: Uses JSON mode for extraction so responses parse reliably.
        Alternatives: Use the responses API or a different provider.
        """

        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": f"You are AgendaPilot. Task: {purpose}."},
                {"role": "user", "content": prompt},
            ],
            "temperature": 0.2,
        }
        if purpose == EXTRACTION_PURPOSE:
            payload["response_format"] = {"type": "json_object"}
        started = time.time()
        raw = send_json_request(
            "openai",
            "POST",
            "https://api.openai.com/v1/chat/completions",
            self._timeout,
            access_token=self._api_key,
            payload=payload,
        )
        latency_ms = int((time.time() - started) * 1000)
        content = raw["choices"][0]["message"]["content"]
        return content, latency_ms


@dataclass(frozen=True)
class AiProviderFactory:
    """Summary: Factory for selecting AI providers from configuration.

    Importance: Keeps provider selection logic centralized.
    Alternatives: Wire providers manually at the application entrypoint.
    """

    config: AppConfig

    def build(self, name: str | None = None) -> AiProvider:
        """Summary: Construct the named provider, or the configured primary one.

        Importance: Ensures consistent provider selection across services.
        Alternatives: Use dependency injection frameworks.
        """

        name = name or self.config.ai_provider
        timeout = self.config.request_timeout_seconds
        if name == "ollama":
            return OllamaProvider(self.config.ollama_url, self.config.ollama_model, timeout)
        if name == "openai":
            if not self.config.openai_api_key:
                raise ConfigurationError("OPENAI_API_KEY is required for openai provider")
            return OpenAiProvider(self.config.openai_api_key, self.config.openai_model, timeout)
        if name == "mock":
            return MockAiProvider()
        raise ConfigurationError(f"Unknown AI provider: {name}")

    def build_fallback(self) -> AiProvider | None:
        fallback = self.config.fallback_ai_provider
        if not fallback or fallback == self.config.ai_provider:
            return None
        return self.build(fallback)


class HumanAnalysisSchema(BaseModel):
    email_summary: str | None = None
    email_tone: str | None = None
    email_intent: str | None = None
    implicit_context: str | None = None


class EventSchema(BaseModel):
    """Summary: Schema for one extracted event."""

    title: str = Field(min_length=1)
    date: str
    end_date: str | None = None
    description: str | None = None
    location: str | None = None
    child_name: str | None = None
    confidence: float = Field(ge=0.0, le=1.0)
    recurring: bool | None = False
    recurrence_pattern: str | None = None
    time_of_day: TimeOfDay | None = None
    inferred_date: bool | None = False

    @field_validator("date", "end_date")
    @classmethod
    def _valid_datetime(cls, value: str | None) -> str | None:
        if value is not None:
            parse_event_datetime(value)
        return value


class TodoSchema(BaseModel):
    """Summary: Schema for one extracted task."""

    description: str = Field(min_length=1)
    type: TaskCategory
    due_date: str | None = None
    child_name: str | None = None
    url: str | None = None
    amount: str | None = None
    confidence: float = Field(ge=0.0, le=1.0)
    recurring: bool | None = False
    recurrence_pattern: str | None = None
    responsible_party: str | None = None
    inferred: bool | None = False

    @field_validator("type", mode="before")
    @classmethod
    def _parse_category(cls, value: Any) -> TaskCategory:
        if isinstance(value, TaskCategory):
            return value
        return TaskCategory.parse(str(value))

    @field_validator("amount", mode="before")
    @classmethod
    def _amount_text(cls, value: Any) -> str | None:
        if value is None or value == "":
            return None
        return str(value)

    @field_validator("due_date")
    @classmethod
    def _valid_due_date(cls, value: str | None) -> str | None:
        if value:
            date.fromisoformat(value[:10])
        return value or None


class ExtractionSchema(BaseModel):
    """Summary: Fixed schema every extraction response must satisfy.

    Importance: Invalid values are rejected at the boundary instead of reaching storage.
    Alternatives: Store raw JSON and validate lazily on read.
    """

    human_analysis: HumanAnalysisSchema = Field(default_factory=HumanAnalysisSchema)
    events: list[EventSchema]
    todos: list[TodoSchema]
    emails_analyzed: int | None = None


def build_extraction_prompt(request: ExtractionRequest) -> str:
    """Summary: Render an extraction request into a provider-agnostic prompt.

    Importance: Carries household context and graded examples into every call.
    Alternatives: Send only the raw message and rely on the model's defaults.
    """

    lines = [
        "Extract calendar events and to-do items from the message below.",
        "Respond with a single JSON object with keys human_analysis, events, todos, emails_analyzed.",
        "human_analysis: {email_summary, email_tone, email_intent, implicit_context}.",
        "events[]: {title, date (YYYY-MM-DD or YYYY-MM-DDTHH:MM), end_date, description, location,"
        " child_name, confidence 0-1, recurring, recurrence_pattern,"
        " time_of_day (morning|afternoon|evening|all_day|specific), inferred_date}.",
        "todos[]: {description, type (PAY|BUY|PACK|SIGN|FILL|READ|DECIDE|REMIND), due_date,"
        " child_name, url, amount, confidence 0-1, recurring, recurrence_pattern,"
        " responsible_party, inferred}.",
    ]
    if request.subject_profiles:
        lines.append("")
        lines.append("Household members:")
        for profile in request.subject_profiles:
            note = f" ({profile.notes})" if profile.notes else ""
            lines.append(f"- {profile.name}{note}")
    if request.positive_examples:
        lines.append("")
        lines.append("Items this household found relevant:")
        lines.extend(f"- [{item.item_type.value}] {item.item_text}" for item in request.positive_examples)
    if request.negative_examples:
        lines.append("")
        lines.append("Items this household did NOT find relevant:")
        lines.extend(f"- [{item.item_type.value}] {item.item_text}" for item in request.negative_examples)
    lines.extend(
        [
            "",
            f"Sent: {request.sent_at.isoformat()}",
            f"From: {request.sender}",
            f"Subject: {request.subject}",
            "MESSAGE:",
            request.message_text,
        ]
    )
    return "\n".join(lines)


def parse_extraction_response(raw: str) -> ExtractionResult:
    """Summary: Validate an AI response and convert it into domain models.

    Importance: Raises ExtractionValidationError for anything outside the schema.
    Alternatives: Accept partial responses and drop invalid items.
    """

    candidate = _json_object_text(raw)
    try:
        parsed = ExtractionSchema.model_validate_json(candidate)
    except ValidationError as exc:
        raise ExtractionValidationError(
            f"Extraction failed schema validation: {exc}", raw_response=raw
        ) from exc
    events = tuple(
        ExtractedEvent(
            title=item.title.strip(),
            start=parse_event_datetime(item.date),
            end=parse_event_datetime(item.end_date) if item.end_date else None,
            description=item.description,
            location=item.location,
            subject_tag=item.child_name,
            confidence=item.confidence,
            recurring=bool(item.recurring),
            recurrence_pattern=item.recurrence_pattern,
            time_of_day=item.time_of_day,
            inferred=bool(item.inferred_date),
        )
        for item in parsed.events
    )
    tasks = tuple(
        ExtractedTask(
            description=item.description.strip(),
            category=item.type,
            due_date=date.fromisoformat(item.due_date[:10]) if item.due_date else None,
            subject_tag=item.child_name,
            url=item.url,
            amount=item.amount,
            confidence=item.confidence,
            recurring=bool(item.recurring),
            recurrence_pattern=item.recurrence_pattern,
            responsible_party=item.responsible_party,
            inferred=bool(item.inferred),
        )
        for item in parsed.todos
    )
    analysis = HumanAnalysis(
        summary=parsed.human_analysis.email_summary,
        tone=parsed.human_analysis.email_tone,
        intent=parsed.human_analysis.email_intent,
        implicit_context=parsed.human_analysis.implicit_context,
    )
    return ExtractionResult(analysis=analysis, events=events, tasks=tasks, raw_json=candidate)


def parse_event_datetime(value: str) -> datetime:
    """Summary: Parse a date or date-time string from an extraction.

    Importance: Date-only values become midnight wall-clock times.
    Alternatives: Require full timestamps from the model.
    """

    cleaned = value.strip()
    if cleaned.endswith("Z"):
        cleaned = cleaned[:-1] + "+00:00"
    parsed = datetime.fromisoformat(cleaned)
    return parsed.replace(tzinfo=None)


def _json_object_text(raw: str) -> str:
    text = raw.strip()
    fenced = re.match(r"^```(?:json)?\s*(.*?)\s*```$", text, re.DOTALL)
    if fenced:
        text = fenced.group(1)
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end < start:
        raise ExtractionValidationError(
            "Extraction response contained no JSON object", raw_response=raw
        )
    return text[start : end + 1]


def estimate_tokens(text: str) -> int:
    """Summary: Estimate tokens from text length.

    Importance: Provides a rough metric for AI usage auditing.
    Alternatives: Use provider token counters or tiktoken.
    """

    return max(1, len(text) // 4)
