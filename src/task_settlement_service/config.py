"""
Configuration management for the task settlement service.

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

_SENSITIVE_KEYS = frozenset({"private_key_path", "webhook_public_key"})


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
    directory: str | None = None


class DatabaseConfig(BaseModel):
    """Database configuration."""

    model_config = ConfigDict(extra="forbid")
    path: str


class GatewayConfig(BaseModel):
    """Payment gateway connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    charge_path: str
    payout_path: str
    refund_path: str
    timeout_seconds: int
    provider: str
    webhook_public_key: str


class PlatformConfig(BaseModel):
    """Platform identity used to sign outgoing gateway requests."""

    model_config = ConfigDict(extra="forbid")
    agent_id: str
    private_key_path: str | None = None


class RequestConfig(BaseModel):
    """Request handling configuration."""

    model_config = ConfigDict(extra="forbid")
    max_body_size: int


class SettlementConfig(BaseModel):
    """Business rules for fees, penalties and time windows."""

    model_config = ConfigDict(extra="forbid")
    currency: str
    min_fee: int = Field(gt=0)
    max_penalty_ratio: float = Field(gt=0, le=1)
    confirmation_window_seconds: int = Field(gt=0)
    stage_review_seconds: int = Field(gt=0)
    reminder_lead_seconds: int = Field(ge=0)
    reminder_cooldown_seconds: int = Field(gt=0)
    min_expiry_hours: int = Field(gt=0)
    max_expiry_hours: int = Field(gt=0)
    max_completion_hours: int = Field(gt=0)
    description_min_length: int = Field(ge=0)
    description_max_length: int = Field(gt=0)


class SchedulerConfig(BaseModel):
    """Expiry/reminder sweep configuration."""

    model_config = ConfigDict(extra="forbid")
    enabled: bool
    interval_seconds: int = Field(gt=0)


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
    gateway: GatewayConfig
    platform: PlatformConfig
    request: RequestConfig
    settlement: SettlementConfig
    scheduler: SchedulerConfig


def get_config_path() -> Path:
    """Determine configuration file path from CONFIG_PATH or the working directory."""
    configured = os.environ.get("CONFIG_PATH")
    if configured:
        return Path(configured)
    return Path.cwd() / "config.yaml"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load and validate settings once per process."""
    config_path = get_config_path()
    raw = yaml.safe_load(config_path.read_text())
    if not isinstance(raw, dict):
        msg = f"Invalid config file: {config_path}"
        raise ValueError(msg)
    return Settings.model_validate(raw)


def clear_settings_cache() -> None:
    """Forget cached settings. Used in testing."""
    get_settings.cache_clear()


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: (REDACTION_MARKER if key in _SENSITIVE_KEYS and item else _redact(item))
            for key, item in value.items()
        }
    return value


def get_safe_config() -> dict[str, Any]:
    """Get configuration with sensitive values redacted."""
    redacted: dict[str, Any] = _redact(get_settings().model_dump())
    return redacted
