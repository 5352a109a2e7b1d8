"""Runtime configuration for batch fan-out, execution and reconciliation."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

ENV_PREFIX = "PROMPT_VISIBILITY_"


@dataclass(slots=True)
class BatchSettings:
    """Micro-batch executor and reconciler settings."""

    micro_batch_size: int = 12
    time_budget_seconds: float = 240.0
    max_concurrency: int = 3
    circuit_breaker_threshold: int = 3
    stale_after_seconds: int = 300
    provider_max_attempts: int = 3
    retry_base_seconds: float = 1.0
    retry_max_seconds: float = 8.0
    request_timeout_seconds: float = 60.0
    reconcile_batch_limit: int = 50
    runner_id: str = field(default_factory=lambda: f"runner-{socket.gethostname()}")
    business_timezone: str = "America/New_York"


@dataclass(slots=True)
class DriverSettings:
    """Driver loop limits used by CLI and scheduler."""

    interval_seconds: float = 2.0
    max_iterations: int = 100
    max_wall_seconds: float = 1_200.0
    stall_iterations: int = 5


@dataclass(slots=True)
class SchedulerSettings:
    """Daily trigger execution window, hours in the business timezone."""

    window_start_hour: int = 3
    window_end_hour: int = 6


@dataclass(slots=True)
class ProviderSettings:
    """Credentials and endpoints for LLM provider integrations."""

    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_base_url: str = "https://api.openai.com/v1"
    perplexity_api_key: str = ""
    perplexity_model: str = "sonar"
    perplexity_base_url: str = "https://api.perplexity.ai"
    gemini_api_key: str = ""
    gemini_model: str = "gemini-1.5-flash-latest"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    ai_overview_service_url: str = ""
    ai_overview_service_key: str = ""
    temperature: float = 0.3
    max_output_tokens: int = 4_000


@dataclass(slots=True)
class ApiSettings:
    """HTTP surface authentication."""

    cron_secret: str = ""
    org_tokens: dict[str, str] = field(default_factory=dict)
    host: str = "127.0.0.1"
    port: int = 8000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".prompt_visibility.db")
    sqlite_busy_timeout_ms: int = 5_000
    batch: BatchSettings = field(default_factory=BatchSettings)
    driver: DriverSettings = field(default_factory=DriverSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    providers: ProviderSettings = field(default_factory=ProviderSettings)
    api: ApiSettings = field(default_factory=ApiSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        batch_defaults = BatchSettings()
        return cls(
            db_path=db_path or Path(_env("DB_PATH", ".prompt_visibility.db")),
            sqlite_busy_timeout_ms=int(_env("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            batch=BatchSettings(
                micro_batch_size=int(_env("MICRO_BATCH_SIZE", "12")),
                time_budget_seconds=float(_env("TIME_BUDGET_SECONDS", "240")),
                max_concurrency=int(_env("MAX_CONCURRENCY", "3")),
                circuit_breaker_threshold=int(_env("CIRCUIT_BREAKER_THRESHOLD", "3")),
                stale_after_seconds=int(_env("STALE_AFTER_SECONDS", "300")),
                provider_max_attempts=int(_env("PROVIDER_MAX_ATTEMPTS", "3")),
                retry_base_seconds=float(_env("RETRY_BASE_SECONDS", "1.0")),
                retry_max_seconds=float(_env("RETRY_MAX_SECONDS", "8.0")),
                request_timeout_seconds=float(_env("REQUEST_TIMEOUT_SECONDS", "60")),
                reconcile_batch_limit=int(_env("RECONCILE_BATCH_LIMIT", "50")),
                runner_id=_env("RUNNER_ID", batch_defaults.runner_id),
                business_timezone=_env("BUSINESS_TIMEZONE", "America/New_York"),
            ),
            driver=DriverSettings(
                interval_seconds=float(_env("DRIVER_INTERVAL_SECONDS", "2.0")),
                max_iterations=int(_env("DRIVER_MAX_ITERATIONS", "100")),
                max_wall_seconds=float(_env("DRIVER_MAX_WALL_SECONDS", "1200")),
                stall_iterations=int(_env("DRIVER_STALL_ITERATIONS", "5")),
            ),
            scheduler=SchedulerSettings(
                window_start_hour=int(_env("SCHEDULER_WINDOW_START_HOUR", "3")),
                window_end_hour=int(_env("SCHEDULER_WINDOW_END_HOUR", "6")),
            ),
            providers=ProviderSettings(
                openai_api_key=os.getenv("OPENAI_API_KEY", ""),
                openai_model=_env("OPENAI_MODEL", "gpt-4o-mini"),
                openai_base_url=_env("OPENAI_BASE_URL", "https://api.openai.com/v1"),
                perplexity_api_key=os.getenv("PERPLEXITY_API_KEY", ""),
                perplexity_model=_env("PERPLEXITY_MODEL", "sonar"),
                perplexity_base_url=_env("PERPLEXITY_BASE_URL", "https://api.perplexity.ai"),
                gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
                gemini_model=_env("GEMINI_MODEL", "gemini-1.5-flash-latest"),
                gemini_base_url=_env(
                    "GEMINI_BASE_URL",
                    "https://generativelanguage.googleapis.com/v1beta",
                ),
                ai_overview_service_url=_env("AI_OVERVIEW_SERVICE_URL", ""),
                ai_overview_service_key=_env("AI_OVERVIEW_SERVICE_KEY", ""),
                temperature=float(_env("PROVIDER_TEMPERATURE", "0.3")),
                max_output_tokens=int(_env("PROVIDER_MAX_OUTPUT_TOKENS", "4000")),
            ),
            api=ApiSettings(
                cron_secret=_env("CRON_SECRET", ""),
                org_tokens=_collect_org_tokens(),
                host=_env("API_HOST", "127.0.0.1"),
                port=int(_env("API_PORT", "8000")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on out-of-range values."""

        batch = self.batch
        if batch.micro_batch_size <= 0:
            raise ValueError(f"{ENV_PREFIX}MICRO_BATCH_SIZE must be > 0.")
        if batch.time_budget_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}TIME_BUDGET_SECONDS must be > 0.")
        if batch.max_concurrency <= 0:
            raise ValueError(f"{ENV_PREFIX}MAX_CONCURRENCY must be > 0.")
        if batch.circuit_breaker_threshold <= 0:
            raise ValueError(f"{ENV_PREFIX}CIRCUIT_BREAKER_THRESHOLD must be > 0.")
        if batch.stale_after_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}STALE_AFTER_SECONDS must be > 0.")
        if batch.provider_max_attempts <= 0:
            raise ValueError(f"{ENV_PREFIX}PROVIDER_MAX_ATTEMPTS must be > 0.")
        if batch.retry_base_seconds < 0 or batch.retry_max_seconds < 0:
            raise ValueError(f"{ENV_PREFIX}RETRY_BASE_SECONDS/RETRY_MAX_SECONDS must be >= 0.")
        if batch.request_timeout_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}REQUEST_TIMEOUT_SECONDS must be > 0.")
        try:
            ZoneInfo(batch.business_timezone)
        except (ZoneInfoNotFoundError, ValueError) as error:
            raise ValueError(
                f"Invalid {ENV_PREFIX}BUSINESS_TIMEZONE: {batch.business_timezone!r}",
            ) from error

        driver = self.driver
        if driver.interval_seconds < 0:
            raise ValueError(f"{ENV_PREFIX}DRIVER_INTERVAL_SECONDS must be >= 0.")
        if driver.max_iterations <= 0:
            raise ValueError(f"{ENV_PREFIX}DRIVER_MAX_ITERATIONS must be > 0.")
        if driver.stall_iterations <= 0:
            raise ValueError(f"{ENV_PREFIX}DRIVER_STALL_ITERATIONS must be > 0.")

        scheduler = self.scheduler
        if not 0 <= scheduler.window_start_hour < scheduler.window_end_hour <= 24:
            raise ValueError(
                f"{ENV_PREFIX}SCHEDULER_WINDOW_START_HOUR/END_HOUR must satisfy "
                "0 <= start < end <= 24.",
            )

        if self.providers.ai_overview_service_url:
            _validate_service_url(self.providers.ai_overview_service_url)

    def configured_providers(self) -> tuple[str, ...]:
        """Provider names with credentials present."""

        providers = self.providers
        configured: list[str] = []
        if providers.openai_api_key:
            configured.append("openai")
        if providers.perplexity_api_key:
            configured.append("perplexity")
        if providers.gemini_api_key:
            configured.append("gemini")
        if providers.ai_overview_service_url and providers.ai_overview_service_key:
            configured.append("google_ai_overview")
        return tuple(configured)


def _env(name: str, default: str) -> str:
    return os.getenv(f"{ENV_PREFIX}{name}", default)


def _collect_org_tokens() -> dict[str, str]:
    raw = _env("API_TOKENS", "").strip()
    if not raw:
        return {}

    tokens: dict[str, str] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "|" not in token:
            raise ValueError(
                f"Invalid {ENV_PREFIX}API_TOKENS entry. Expected format '<token>|<org_id>'.",
            )
        secret, org_id = token.rsplit("|", 1)
        secret = secret.strip()
        org_id = org_id.strip()
        if not secret or not org_id:
            raise ValueError(
                f"Invalid {ENV_PREFIX}API_TOKENS entry: token and org_id must be non-empty.",
            )
        tokens[secret] = org_id
    return tokens


def _validate_service_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {ENV_PREFIX}AI_OVERVIEW_SERVICE_URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )
