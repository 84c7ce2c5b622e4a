"""Configuration management for the SEO agent core."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_REPO_ROOT = Path(__file__).resolve().parents[1]
_DEFAULT_CONFIG_PATH = _REPO_ROOT / "config" / "seo-agent.yml"
_USER_CONFIG_PATHS = [
    Path("~/.config/seo-agent/seo-agent.yml").expanduser(),
    Path("/config/seo-agent.yml"),
]
_USER_SECRETS_PATHS = [
    Path("~/.config/seo-agent/secrets.yml").expanduser(),
    Path("/config/secrets.yml"),
]


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML mapping from disk, returning an empty mapping if missing."""
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file must contain a mapping: {path}")
    return data


def _yaml_settings_source(paths: list[Path]):
    """Create a Pydantic settings source for a list of YAML paths."""

    def source() -> dict[str, Any]:
        merged: dict[str, Any] = {}
        for path in paths:
            merged.update(_load_yaml(path))
        return merged

    return source


def _set_nested_value(target: dict[str, Any], path: str, value: Any) -> None:
    """Set a dotted-path value on a nested mapping, creating containers."""
    parts = path.split(".")
    cursor = target
    for key in parts[:-1]:
        node = cursor.get(key)
        if not isinstance(node, dict):
            node = {}
            cursor[key] = node
        cursor = node
    cursor[parts[-1]] = value


def _parse_env_value(raw: str, kind: str) -> Any:
    """Parse an environment value into the requested primitive type."""
    if kind == "int":
        return int(raw)
    if kind == "float":
        return float(raw)
    if kind == "bool":
        return raw.strip().lower() in {"1", "true", "yes", "on"}
    if kind == "json":
        return json.loads(raw)
    return raw


_ENV_MAPPING: dict[str, tuple[str, str]] = {
    "LOG_LEVEL": ("log_level", "str"),
    "LOG_JSON": ("log_json", "bool"),
    "ENVIRONMENT": ("environment", "str"),
    "DATABASE_URL": ("database.url", "str"),
    "DATABASE_ECHO": ("database.echo", "bool"),
    "QUEUE_BACKEND_URL": ("celery.broker_url", "str"),
    "CELERY_BROKER_URL": ("celery.broker_url", "str"),
    "CELERY_RESULT_BACKEND": ("celery.result_backend", "str"),
    "QUEUE_MAX_ATTEMPTS": ("queue.max_attempts", "int"),
    "QUEUE_BACKOFF_BASE_SECONDS": ("queue.backoff_base_seconds", "float"),
    "WORKER_CONCURRENCY": ("worker.concurrency", "int"),
    "VERIFICATION_MAX_ATTEMPTS": ("verification.max_attempts", "int"),
    "VERIFICATION_RECHECK_SCHEDULE": ("verification.recheck_schedule_seconds", "json"),
    "CRON_SECRET": ("http.cron_secret", "str"),
    "HTTP_HOST": ("http.host", "str"),
    "HTTP_PORT": ("http.port", "int"),
}


def _env_settings_source(environ: dict[str, str] | None = None):
    """Create a settings source that maps environment variables to config keys."""

    def source() -> dict[str, Any]:
        env = os.environ if environ is None else environ
        data: dict[str, Any] = {}
        for env_key, (path, kind) in _ENV_MAPPING.items():
            raw = env.get(env_key)
            if raw is None:
                continue
            _set_nested_value(data, path, _parse_env_value(raw, kind))
        return data

    return source


class DatabaseConfig(BaseModel):
    """Database connection configuration."""

    url: str = "sqlite:///seo_agent.db"
    echo: bool = False
    pool_pre_ping: bool = True

    @field_validator("url")
    @classmethod
    def validate_url(cls, value: str) -> str:
        """Ensure a database URL is present."""
        if not value or not value.strip():
            raise ValueError("database.url must not be empty.")
        return value.strip()


class QueueConfig(BaseModel):
    """Execution queue retry/backoff configuration defaults."""

    max_attempts: int = 3
    backoff_strategy: str = "exponential"
    backoff_base_seconds: float = 2.0
    default_priority: int = 50
    lease_seconds: int = 900
    lease_margin_seconds: int = 60
    poll_interval_seconds: float = 5.0
    retention_seconds: int = 86400

    @field_validator("max_attempts")
    @classmethod
    def validate_max_attempts(cls, value: int) -> int:
        """Ensure max attempts is positive."""
        if value < 1:
            raise ValueError("queue.max_attempts must be >= 1.")
        return value

    @field_validator("backoff_strategy")
    @classmethod
    def validate_backoff_strategy(cls, value: str) -> str:
        """Ensure backoff strategy is supported."""
        normalized = value.strip().lower()
        if normalized not in {"fixed", "exponential", "none"}:
            raise ValueError("queue.backoff_strategy must be fixed, exponential, or none.")
        return normalized

    @field_validator("backoff_base_seconds")
    @classmethod
    def validate_backoff_seconds(cls, value: float) -> float:
        """Ensure backoff base seconds is non-negative."""
        if value < 0:
            raise ValueError("queue.backoff_base_seconds must be >= 0.")
        return value

    @field_validator("default_priority")
    @classmethod
    def validate_default_priority(cls, value: int) -> int:
        """Ensure the default priority sits on the 0-100 scale."""
        if not 0 <= value <= 100:
            raise ValueError("queue.default_priority must be between 0 and 100.")
        return value

    @field_validator("lease_seconds", "retention_seconds")
    @classmethod
    def validate_positive_seconds(cls, value: int) -> int:
        """Ensure lease and retention windows are positive."""
        if value < 1:
            raise ValueError("queue lease and retention windows must be >= 1 second.")
        return value

    @field_validator("lease_margin_seconds")
    @classmethod
    def validate_lease_margin(cls, value: int) -> int:
        """Ensure the lease margin is non-negative."""
        if value < 0:
            raise ValueError("queue.lease_margin_seconds must be >= 0.")
        return value


class WorkerConfig(BaseModel):
    """Executor worker pool configuration."""

    concurrency: int = 5
    id_prefix: str = "worker"

    @field_validator("concurrency")
    @classmethod
    def validate_concurrency(cls, value: int) -> int:
        """Ensure at least one worker thread is started."""
        if value < 1:
            raise ValueError("worker.concurrency must be >= 1.")
        return value


class VerificationConfig(BaseModel):
    """Verification recheck configuration."""

    max_attempts: int = 5
    recheck_schedule_seconds: list[int] = Field(default_factory=lambda: [300, 3600, 86400])
    probe_timeout_seconds: float = 60.0
    sweep_delay_seconds: float = 0.1
    claim_lease_seconds: int = 300
    sweep_interval_seconds: int = 300

    @field_validator("max_attempts")
    @classmethod
    def validate_max_attempts(cls, value: int) -> int:
        """Ensure max attempts is positive."""
        if value < 1:
            raise ValueError("verification.max_attempts must be >= 1.")
        return value

    @field_validator("recheck_schedule_seconds")
    @classmethod
    def validate_schedule(cls, value: list[int]) -> list[int]:
        """Ensure the recheck schedule is non-empty and non-decreasing."""
        if not value:
            raise ValueError("verification.recheck_schedule_seconds must not be empty.")
        if any(step < 0 for step in value):
            raise ValueError("verification.recheck_schedule_seconds must be >= 0.")
        if any(later < earlier for earlier, later in zip(value, value[1:])):
            raise ValueError("verification.recheck_schedule_seconds must be non-decreasing.")
        return value

    @field_validator("probe_timeout_seconds", "sweep_delay_seconds")
    @classmethod
    def validate_non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("verification timings must be >= 0.")
        return value


class BackgroundConfig(BaseModel):
    """Bounded background task runner configuration."""

    max_workers: int = 2
    max_pending: int = 100

    @model_validator(mode="after")
    def validate_bounds(self) -> "BackgroundConfig":
        """Ensure the runner has capacity for at least one task."""
        if self.max_workers < 1 or self.max_pending < 1:
            raise ValueError("background.max_workers and background.max_pending must be >= 1.")
        return self


class CeleryConfig(BaseModel):
    """Celery broker configuration."""

    broker_url: str = "redis://redis:6379/0"
    result_backend: str | None = None
    task_always_eager: bool = False


class HttpConfig(BaseModel):
    """HTTP API binding and cron authentication."""

    host: str = "0.0.0.0"
    port: int = 8000
    cron_secret: str | None = None


class Settings(BaseSettings):
    """Application settings loaded from environment variables and YAML files."""

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        """Layer settings sources in descending order of precedence."""
        return (
            init_settings,
            _env_settings_source(),
            _yaml_settings_source(_USER_SECRETS_PATHS),
            _yaml_settings_source(_USER_CONFIG_PATHS),
            _yaml_settings_source([_DEFAULT_CONFIG_PATH]),
        )

    # Logging
    log_level: str = "INFO"
    log_json: bool = True
    environment: str = "development"

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    verification: VerificationConfig = Field(default_factory=VerificationConfig)
    background: BackgroundConfig = Field(default_factory=BackgroundConfig)
    celery: CeleryConfig = Field(default_factory=CeleryConfig)
    http: HttpConfig = Field(default_factory=HttpConfig)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Normalize the log level name."""
        normalized = value.strip().upper()
        if normalized not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {value}")
        return normalized


def load_settings(**overrides: Any) -> Settings:
    """Build a fresh settings object from all configured sources."""
    return Settings(**overrides)
