"""Summary: Application configuration for AgendaPilot.

Importance: Centralizes environment, .env, and config defaults for consistent behavior.
Alternatives: Use a dedicated settings library like Pydantic Settings.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from dataclasses import dataclass

from agendapilot.errors import ConfigurationError


@dataclass(frozen=True)
class AppConfig:
    """Summary: Holds configuration values for providers, sweeps, and storage.

    Importance: Ensures all services derive settings from a single source of truth.
    Alternatives: Store settings in a shared config file and parse at startup.
    """

    db_path: str
    ai_provider: str
    fallback_ai_provider: str | None
    openai_api_key: str | None
    openai_model: str
    ollama_url: str
    ollama_model: str
    message_provider: str
    message_fixture_path: str
    gmail_base_url: str
    processed_label: str
    calendar_service: str
    calendar_base_url: str
    calendar_id: str
    calendar_time_zone: str
    google_client_id: str
    google_client_secret: str
    google_token_url: str
    request_timeout_seconds: int
    fetch_window_days: int
    fetch_max_results: int
    max_fetch_attempts: int
    analysis_batch_size: int
    analysis_max_retries: int
    few_shot_examples: int
    sync_batch_size: int
    sync_max_retries: int
    duplicate_window_minutes: int
    token_ttl_days: int
    public_base_url: str
    api_host: str
    api_port: int
    api_key: str
    webhook_secret: str
    token_secret: str
    inbound_domain: str
    default_user_name: str
    default_user_email: str
    default_inbound_alias: str

    @staticmethod
    def from_env() -> "AppConfig":
        """Summary: Build configuration from defaults, .env, and environment.

        Importance: Keeps all variables defined in config defaults while allowing overrides.
        Alternatives: Parse only environment variables without a defaults file.
        """

        defaults = load_defaults(Path("config") / "defaults.json")
        load_dotenv(Path(".env"))
        config = AppConfig(
            db_path=os.getenv("AGENDAPILOT_DB_PATH", defaults["db_path"]),
            ai_provider=os.getenv("AGENDAPILOT_AI_PROVIDER", defaults["ai_provider"]),
            fallback_ai_provider=os.getenv("AGENDAPILOT_FALLBACK_AI_PROVIDER")
            or defaults["fallback_ai_provider"]
            or None,
            openai_api_key=os.getenv("OPENAI_API_KEY") or defaults["openai_api_key"] or None,
            openai_model=os.getenv("OPENAI_MODEL", defaults["openai_model"]),
            ollama_url=os.getenv("OLLAMA_URL", defaults["ollama_url"]),
            ollama_model=os.getenv("OLLAMA_MODEL", defaults["ollama_model"]),
            message_provider=os.getenv(
                "AGENDAPILOT_MESSAGE_PROVIDER", defaults["message_provider"]
            ),
            message_fixture_path=os.getenv(
                "AGENDAPILOT_MESSAGE_FIXTURE", defaults["message_fixture_path"]
            ),
            gmail_base_url=os.getenv("AGENDAPILOT_GMAIL_BASE_URL", defaults["gmail_base_url"]),
            processed_label=os.getenv("AGENDAPILOT_PROCESSED_LABEL", defaults["processed_label"]),
            calendar_service=os.getenv(
                "AGENDAPILOT_CALENDAR_SERVICE", defaults["calendar_service"]
            ),
            calendar_base_url=os.getenv(
                "AGENDAPILOT_CALENDAR_BASE_URL", defaults["calendar_base_url"]
            ),
            calendar_id=os.getenv("AGENDAPILOT_CALENDAR_ID", defaults["calendar_id"]),
            calendar_time_zone=os.getenv(
                "AGENDAPILOT_CALENDAR_TIME_ZONE", defaults["calendar_time_zone"]
            ),
            google_client_id=os.getenv("GOOGLE_CLIENT_ID", defaults["google_client_id"]),
            google_client_secret=os.getenv("GOOGLE_CLIENT_SECRET", defaults["google_client_secret"]),
            google_token_url=os.getenv("GOOGLE_TOKEN_URL", defaults["google_token_url"]),
            request_timeout_seconds=int(
                os.getenv("AGENDAPILOT_REQUEST_TIMEOUT", defaults["request_timeout_seconds"])
            ),
            fetch_window_days=int(
                os.getenv("AGENDAPILOT_FETCH_WINDOW_DAYS", defaults["fetch_window_days"])
            ),
            fetch_max_results=int(
                os.getenv("AGENDAPILOT_FETCH_MAX_RESULTS", defaults["fetch_max_results"])
            ),
            max_fetch_attempts=int(
                os.getenv("AGENDAPILOT_MAX_FETCH_ATTEMPTS", defaults["max_fetch_attempts"])
            ),
            analysis_batch_size=int(
                os.getenv("AGENDAPILOT_ANALYSIS_BATCH_SIZE", defaults["analysis_batch_size"])
            ),
            analysis_max_retries=int(
                os.getenv("AGENDAPILOT_ANALYSIS_MAX_RETRIES", defaults["analysis_max_retries"])
            ),
            few_shot_examples=int(
                os.getenv("AGENDAPILOT_FEW_SHOT_EXAMPLES", defaults["few_shot_examples"])
            ),
            sync_batch_size=int(
                os.getenv("AGENDAPILOT_SYNC_BATCH_SIZE", defaults["sync_batch_size"])
            ),
            sync_max_retries=int(
                os.getenv("AGENDAPILOT_SYNC_MAX_RETRIES", defaults["sync_max_retries"])
            ),
            duplicate_window_minutes=int(
                os.getenv(
                    "AGENDAPILOT_DUPLICATE_WINDOW_MINUTES", defaults["duplicate_window_minutes"]
                )
            ),
            token_ttl_days=int(os.getenv("AGENDAPILOT_TOKEN_TTL_DAYS", defaults["token_ttl_days"])),
            public_base_url=os.getenv("AGENDAPILOT_PUBLIC_BASE_URL", defaults["public_base_url"]),
            api_host=os.getenv("AGENDAPILOT_API_HOST", defaults["api_host"]),
            api_port=int(os.getenv("AGENDAPILOT_API_PORT", defaults["api_port"])),
            api_key=os.getenv("AGENDAPILOT_API_KEY", defaults["api_key"]),
            webhook_secret=os.getenv("AGENDAPILOT_WEBHOOK_SECRET", defaults["webhook_secret"]),
            token_secret=os.getenv("AGENDAPILOT_TOKEN_SECRET", defaults["token_secret"]),
            inbound_domain=os.getenv("AGENDAPILOT_INBOUND_DOMAIN", defaults["inbound_domain"]),
            default_user_name=os.getenv(
                "AGENDAPILOT_DEFAULT_USER_NAME", defaults["default_user_name"]
            ),
            default_user_email=os.getenv(
                "AGENDAPILOT_DEFAULT_USER_EMAIL", defaults["default_user_email"]
            ),
            default_inbound_alias=os.getenv(
                "AGENDAPILOT_DEFAULT_INBOUND_ALIAS", defaults["default_inbound_alias"]
            ),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Summary: Reject settings the sweeps cannot run with.

        Importance: Every outbound call needs a bounded timeout and every retry loop a bound.
        Alternatives: Let invalid values fail deep inside a sweep.
        """

        if self.request_timeout_seconds <= 0:
            raise ConfigurationError("request_timeout_seconds must be positive")
        for name in ("analysis_max_retries", "sync_max_retries", "max_fetch_attempts"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be at least 1")
        if self.token_ttl_days < 1:
            raise ConfigurationError("token_ttl_days must be at least 1")


def load_defaults(path: Path) -> dict[str, str]:
    """Summary: Load configuration defaults from JSON.

    Importance: Ensures all variables exist in a single config file.
    Alternatives: Inline defaults in the AppConfig initializer.
    """

    if not path.exists():
        raise FileNotFoundError(f"Defaults file not found: {path}")
    return json.loads(path.read_text(encoding="utf-8"))


def load_dotenv(path: Path) -> None:
    """Summary: Load key-value pairs from a .env file into the environment.

    Importance: Keeps secrets out of code while supporting local workflows.
    Alternatives: Use python-dotenv or OS-specific secret stores.
    """

    if not path.exists():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip().strip('"'))
