"""
Configuration management for the task escrow service.

Loads configuration from YAML with ZERO defaults.
Every value must be explicitly specified or startup fails.
"""

from __future__ import annotations

import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field

REDACTION_MARKER = "***REDACTED***"
_SENSITIVE_KEYS = frozenset({"api_key", "token", "secret", "password"})


class ConfigurationError(Exception):
    """Raised when the configuration file is missing or unreadable."""


class ServiceConfig(BaseModel):
    """Service identity configuration."""

    model_config = ConfigDict(extra="forbid")
    name: str
    version: str


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    model_config = ConfigDict(extra="forbid")
    host: str
    port: int
    log_level: str


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(extra="forbid")
    level: str
    directory: str


class DatabaseConfig(BaseModel):
    """Database configuration."""

    model_config = ConfigDict(extra="forbid")
    path: str
    busy_timeout_ms: int = Field(gt=0)


class PlatformConfig(BaseModel):
    """Platform ledger account that collects commission and forfeitures."""

    model_config = ConfigDict(extra="forbid")
    account_id: str


class TasksConfig(BaseModel):
    """Bounds enforced when creating tasks."""

    model_config = ConfigDict(extra="forbid")
    min_reward: Decimal = Field(gt=0)
    max_reward: Decimal = Field(gt=0)
    min_target_count: int = Field(ge=1)
    max_target_count: int = Field(ge=1)
    max_title_length: int = Field(gt=0)
    max_description_length: int = Field(gt=0)
    default_auto_approve_hours: int = Field(gt=0)
    max_auto_approve_hours: int = Field(gt=0)
    max_priority: int = Field(ge=0)


class ModerationConfig(BaseModel):
    """Who may moderate besides the task creator, and how long appeals stay open."""

    model_config = ConfigDict(extra="forbid")
    moderator_ids: list[str]
    appeal_window_hours: int = Field(gt=0)
    max_reason_length: int = Field(gt=0)


class SweeperConfig(BaseModel):
    """Auto-approval sweep worker configuration."""

    model_config = ConfigDict(extra="forbid")
    enabled: bool
    interval_seconds: float = Field(gt=0)
    batch_size: int = Field(gt=0)
    claim_ttl_seconds: int = Field(gt=0)


class VerifierConfig(BaseModel):
    """External completion verifier; AUTO tasks stay pending when base_url is null."""

    model_config = ConfigDict(extra="forbid")
    base_url: str | None
    verify_path: str
    timeout_seconds: float = Field(gt=0)


class NotificationsConfig(BaseModel):
    """Outbound notification endpoint; notifications are only logged when base_url is null."""

    model_config = ConfigDict(extra="forbid")
    base_url: str | None
    notify_path: str
    timeout_seconds: float = Field(gt=0)


class RequestConfig(BaseModel):
    """Request handling configuration."""

    model_config = ConfigDict(extra="forbid")
    max_body_size: int


class Settings(BaseModel):
    """
    Root configuration container.

    All fields are REQUIRED. No defaults exist.
    Missing fields cause immediate startup failure.
    """

    model_config = ConfigDict(extra="forbid")
    service: ServiceConfig
    server: ServerConfig
    logging: LoggingConfig
    database: DatabaseConfig
    platform: PlatformConfig
    tasks: TasksConfig
    moderation: ModerationConfig
    sweeper: SweeperConfig
    verifier: VerifierConfig
    notifications: NotificationsConfig
    request: RequestConfig


def get_config_path() -> Path:
    """Determine configuration file path (CONFIG_PATH wins over ./config.yaml)."""
    override = os.environ.get("CONFIG_PATH")
    if override:
        return Path(override)
    return Path.cwd() / "config.yaml"


def load_settings(path: Path) -> Settings:
    """Parse and validate a YAML configuration file."""
    if not path.is_file():
        raise ConfigurationError(f"Configuration file not found: {path}")
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Configuration file is not valid YAML: {path}") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Configuration root must be a mapping: {path}")
    return Settings.model_validate(raw)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings once per process."""
    return load_settings(get_config_path())


def clear_settings_cache() -> None:
    """Drop cached settings. Used in testing."""
    get_settings.cache_clear()


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: REDACTION_MARKER if key in _SENSITIVE_KEYS else _redact(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_redact(item) for item in value]
    return value


def get_safe_config() -> dict[str, Any]:
    """Get configuration with sensitive values redacted."""
    return _redact(get_settings().model_dump(mode="json"))
