"""Engine configuration loading and validation.

Reads ``studycal.toml``, resolves ``${VAR_NAME}`` references, and returns a
validated :class:`EngineConfig`.
"""

from __future__ import annotations

import os
import re
import tomllib
from pathlib import Path
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from studycal.errors import ConfigError
from studycal.models import ConflictPolicy

__all__ = [
    "BatchConfig",
    "ConfigError",
    "DatabaseConfig",
    "EngineConfig",
    "LoggingConfig",
    "ProviderConfig",
    "RateLimitConfig",
    "RetryConfig",
    "SchedulingConfig",
    "SyncConfig",
    "TokenConfig",
    "WebhookConfig",
    "load_config",
    "resolve_env_vars",
]

DEFAULT_CONFIG_FILENAME = "studycal.toml"

DEFAULT_GOOGLE_SCOPES: tuple[str, ...] = (
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
)

# Pattern matching ${VAR_NAME}; alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ProviderConfig(BaseModel):
    """OAuth client and HTTP settings from the [provider] section."""

    model_config = ConfigDict(extra="forbid")

    name: str = "google"
    client_id: str | None = None
    client_secret: str | None = None
    redirect_uri: str | None = None
    scopes: list[str] = Field(default_factory=lambda: list(DEFAULT_GOOGLE_SCOPES))
    request_timeout_s: float = Field(default=20.0, ge=1.0, le=60.0)

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not normalized:
            raise ValueError("provider.name must be a non-empty string")
        return normalized


class RateLimitConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    capacity: int = Field(default=10, ge=1)
    refill_per_second: float = Field(default=5.0, gt=0)
    backoff_base_s: float = Field(default=1.0, gt=0)
    backoff_max_s: float = Field(default=60.0, gt=0)


class RetryConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=3, ge=1)
    base_delay_s: float = Field(default=0.5, ge=0)
    max_delay_s: float = Field(default=8.0, ge=0)
    jitter: bool = True


class BatchConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    concurrency: int = Field(default=5, ge=1)


class SyncConfig(BaseModel):
    """Periodic and windowed sync settings from the [sync] section."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    interval_minutes: int = Field(default=5, ge=1)
    past_days: int = Field(default=30, ge=0)
    future_days: int = Field(default=180, ge=1)
    conflict_policy: ConflictPolicy = ConflictPolicy.merge
    page_size: int = Field(default=250, ge=1, le=2500)

    @field_validator("conflict_policy", mode="before")
    @classmethod
    def _normalize_policy(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower().replace("_", "-")
        return value


class WebhookConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    callback_url: str | None = None
    renewal_window_hours: int = Field(default=24, ge=1)
    channel_ttl_hours: int = Field(default=168, ge=1)

    @model_validator(mode="after")
    def _check_window(self) -> WebhookConfig:
        if self.renewal_window_hours >= self.channel_ttl_hours:
            raise ValueError(
                "webhooks.renewal_window_hours must be smaller than webhooks.channel_ttl_hours"
            )
        return self


class TokenConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    expiry_buffer_s: int = Field(default=300, ge=0)


class SchedulingConfig(BaseModel):
    """Free-slot search defaults from the [scheduling] section."""

    model_config = ConfigDict(extra="forbid")

    timezone: str = "UTC"
    max_search_days: int = Field(default=14, ge=1)
    default_break_minutes: int = Field(default=0, ge=0)
    suggestion_count: int = Field(default=3, ge=0)

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        normalized = value.strip()
        try:
            ZoneInfo(normalized)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {value!r}") from exc
        return normalized


class LoggingConfig(BaseModel):
    """Logging configuration from the [logging] section."""

    model_config = ConfigDict(extra="forbid")

    level: str = "INFO"
    format: Literal["text", "json"] = "text"
    log_root: str | None = None

    @field_validator("level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        return value.strip().upper()


class DatabaseConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    dsn: str | None = None


class EngineConfig(BaseModel):
    """Fully validated engine configuration."""

    model_config = ConfigDict(extra="forbid")

    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    webhooks: WebhookConfig = Field(default_factory=WebhookConfig)
    tokens: TokenConfig = Field(default_factory=TokenConfig)
    scheduling: SchedulingConfig = Field(default_factory=SchedulingConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    @model_validator(mode="after")
    def _keep_batch_below_capacity(self) -> EngineConfig:
        """Batch workers must stay below the rate-limit burst capacity.

        An explicitly configured concurrency that reaches the capacity is an
        error; the default is clamped instead.
        """
        capacity = self.rate_limit.capacity
        if self.batch.concurrency < capacity:
            return self
        if "concurrency" in self.batch.model_fields_set:
            raise ValueError(
                f"batch.concurrency ({self.batch.concurrency}) must be below "
                f"rate_limit.capacity ({capacity})"
            )
        self.batch.concurrency = max(1, capacity - 1)
        return self


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(f"Unresolved environment variable(s) in config value: {vars_str}")

    return result


def parse_config(data: dict[str, Any]) -> EngineConfig:
    """Validate an already-parsed TOML mapping into an :class:`EngineConfig`."""
    resolved = resolve_env_vars(data)
    try:
        return EngineConfig.model_validate(resolved)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise ConfigError(f"Invalid configuration: {problems}") from exc


def load_config(path: Path | str) -> EngineConfig:
    """Load and validate ``studycal.toml``.

    Parameters
    ----------
    path:
        Either the TOML file itself or a directory containing
        ``studycal.toml``.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or fails validation.
    """
    toml_path = Path(path)
    if toml_path.is_dir():
        toml_path = toml_path / DEFAULT_CONFIG_FILENAME

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
