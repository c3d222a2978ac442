"""Configuration loading tests for the task settlement service."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

import pytest
from pydantic import ValidationError

from task_settlement_service.config import (
    REDACTION_MARKER,
    Settings,
    clear_settings_cache,
    get_safe_config,
    get_settings,
)

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

CONFIG_CONTENT = """\
service:
  name: "task-settlement"
  version: "0.1.0"
server:
  host: "0.0.0.0"
  port: 8010
  log_level: "info"
logging:
  level: "INFO"
  directory: "data/logs"
database:
  path: "data/task-settlement.db"
gateway:
  base_url: "http://localhost:8020"
  charge_path: "/charges"
  payout_path: "/payouts"
  refund_path: "/charges/{gateway_charge_id}/refunds"
  timeout_seconds: 10
  provider: "telegram_chapa"
  webhook_public_key: "ed25519:11qYAYKxCrfVS/7TyWQHOg7hcvPapiMlrwIaaPcHURo="
platform:
  agent_id: "a-platform"
  private_key_path: "data/platform.pem"
request:
  max_body_size: 1048576
settlement:
  currency: "ETB"
  min_fee: 50
  max_penalty_ratio: 0.2
  confirmation_window_seconds: 86400
  stage_review_seconds: 259200
  reminder_lead_seconds: 21600
  reminder_cooldown_seconds: 10800
  min_expiry_hours: 1
  max_expiry_hours: 24
  max_completion_hours: 120
  description_min_length: 20
  description_max_length: 1250
scheduler:
  enabled: true
  interval_seconds: 180
"""


@pytest.fixture
def config_path(tmp_path: Path) -> Iterator[Path]:
    path = tmp_path / "config.yaml"
    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(path)
    yield path
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


@pytest.mark.unit
def test_config_loads_from_yaml(config_path: Path) -> None:
    """Valid config loads without error."""
    config_path.write_text(CONFIG_CONTENT)

    settings = get_settings()

    assert isinstance(settings, Settings)
    assert settings.settlement.currency == "ETB"
    assert settings.settlement.max_penalty_ratio == pytest.approx(0.2)
    assert settings.gateway.provider == "telegram_chapa"
    assert settings.scheduler.interval_seconds == 180


@pytest.mark.unit
def test_settings_are_cached(config_path: Path) -> None:
    config_path.write_text(CONFIG_CONTENT)
    assert get_settings() is get_settings()

    config_path.write_text(CONFIG_CONTENT.replace("port: 8010", "port: 9010"))
    assert get_settings().server.port == 8010
    clear_settings_cache()
    assert get_settings().server.port == 9010


@pytest.mark.unit
def test_missing_section_fails(config_path: Path) -> None:
    """Settings have no defaults: a missing section is a startup error."""
    without_scheduler = CONFIG_CONTENT.split("scheduler:")[0]
    config_path.write_text(without_scheduler)

    with pytest.raises(ValidationError):
        get_settings()


@pytest.mark.unit
def test_unknown_key_rejected(config_path: Path) -> None:
    config_path.write_text(CONFIG_CONTENT + "extra_section:\n  value: 1\n")
    with pytest.raises(ValidationError):
        get_settings()


@pytest.mark.unit
def test_penalty_ratio_bounds(config_path: Path) -> None:
    config_path.write_text(CONFIG_CONTENT.replace("max_penalty_ratio: 0.2", "max_penalty_ratio: 1.5"))
    with pytest.raises(ValidationError):
        get_settings()


@pytest.mark.unit
def test_non_mapping_config_rejected(config_path: Path) -> None:
    config_path.write_text("- just\n- a list\n")
    with pytest.raises(ValueError, match="Invalid config file"):
        get_settings()


@pytest.mark.unit
def test_safe_config_redacts_secrets(config_path: Path) -> None:
    config_path.write_text(CONFIG_CONTENT)

    safe = get_safe_config()

    assert safe["gateway"]["webhook_public_key"] == REDACTION_MARKER
    assert safe["platform"]["private_key_path"] == REDACTION_MARKER
    assert safe["gateway"]["base_url"] == "http://localhost:8020"
