"""
Configuration management for the task market service.

Loads configuration from YAML with ZERO defaults.
Every value must be explicitly specified or startup fails.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field

REDACTION_MARKER = "***REDACTED***"

_SENSITIVE_KEY_FRAGMENTS = ("secret", "password", "token", "key", "webhook_url")


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
    directory: str | None


class DatabaseConfig(BaseModel):
    """Database configuration."""

    model_config = ConfigDict(extra="forbid")
    path: str
    timeout_seconds: float = Field(gt=0)


class PlatformConfig(BaseModel):
    """Platform operator configuration."""

    model_config = ConfigDict(extra="forbid")
    admin_ids: list[str]


class NotifierConfig(BaseModel):
    """Outbound domain event delivery configuration."""

    model_config = ConfigDict(extra="forbid")
    webhook_url: str | None
    timeout_seconds: float = Field(gt=0)
    batch_size: int = Field(gt=0)
    retention_days: int = Field(gt=0)


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
    notifier: NotifierConfig
    request: RequestConfig


def get_config_path() -> Path:
    """Determine configuration file path from CONFIG_PATH, else ./config.yaml."""
    configured = os.environ.get("CONFIG_PATH")
    if configured:
        return Path(configured)
    return Path.cwd() / "config.yaml"


def load_settings(config_path: Path) -> Settings:
    """Parse and validate a YAML configuration file."""
    if not config_path.exists():
        msg = f"Configuration file not found: {config_path}"
        raise FileNotFoundError(msg)

    raw = yaml.safe_load(config_path.read_text())
    if not isinstance(raw, dict):
        msg = f"Invalid config file: {config_path}"
        raise ValueError(msg)
    return Settings(**raw)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings once per process."""
    return load_settings(get_config_path())


def clear_settings_cache() -> None:
    """Forget cached settings. Used in testing."""
    get_settings.cache_clear()


def _redact(value: Any, key: str = "") -> Any:
    if isinstance(value, dict):
        return {k: _redact(v, k) for k, v in value.items()}
    if isinstance(value, list):
        return [_redact(item, key) for item in value]
    if value is not None and any(fragment in key.lower() for fragment in _SENSITIVE_KEY_FRAGMENTS):
        return REDACTION_MARKER
    return value


def get_safe_config() -> dict[str, Any]:
    """Get configuration with sensitive values redacted."""
    return _redact(get_settings().model_dump())
