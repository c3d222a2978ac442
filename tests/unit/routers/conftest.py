"""Router test fixtures with a mocked payment gateway and a real webhook key."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any

import pytest
from httpx import ASGITransport, AsyncClient

from task_settlement_service.app import create_app
from task_settlement_service.config import clear_settings_cache
from task_settlement_service.core.lifespan import lifespan
from task_settlement_service.core.state import get_app_state, reset_app_state
from tests.helpers import (
    CREATOR_ID,
    DESCRIPTION,
    DOER_ID,
    generate_keypair,
    make_gateway_mock,
    make_jws_token,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

GATEWAY_KEY_ID = "gw-test"


# ---------------------------------------------------------------------------
# Keypair fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def gateway_keypair() -> tuple[Ed25519PrivateKey, str]:
    """Generate the gateway's webhook signing keypair."""
    return generate_keypair()


# ---------------------------------------------------------------------------
# App + client fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
async def app(tmp_path: Path, gateway_keypair: tuple[Ed25519PrivateKey, str]) -> AsyncIterator[Any]:
    """Create a test app with temp database and a mocked gateway client."""
    db_path = tmp_path / "test.db"
    config_content = f"""\
service:
  name: "task-settlement"
  version: "0.1.0"
server:
  host: "0.0.0.0"
  port: 8010
  log_level: "info"
logging:
  level: "WARNING"
database:
  path: "{db_path}"
gateway:
  base_url: "http://localhost:8020"
  charge_path: "/charges"
  payout_path: "/payouts"
  refund_path: "/charges/{{gateway_charge_id}}/refunds"
  timeout_seconds: 10
  provider: "telegram_chapa"
  webhook_public_key: "{gateway_keypair[1]}"
platform:
  agent_id: "a-platform-test-id"
request:
  max_body_size: 8192
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
  enabled: false
  interval_seconds: 60
"""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(config_content)

    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(config_path)

    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        # AppState pushes the mock into the escrow manager
        state = get_app_state()
        state.gateway_client = make_gateway_mock()
        yield test_app

    reset_app_state()
    clear_settings_cache()
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def gateway_mock(app: Any) -> Any:
    """The mocked gateway client installed in the running app."""
    return get_app_state().gateway_client


# ---------------------------------------------------------------------------
# Task lifecycle helper functions
# ---------------------------------------------------------------------------
def draft_body(**overrides: Any) -> dict[str, Any]:
    body: dict[str, Any] = {
        "creator_id": CREATOR_ID,
        "description": DESCRIPTION,
        "fields": ["translation"],
        "skill_level": "Intermediate",
        "fee": 200,
        "completion_hours": 48,
        "revision_hours": 12,
        "penalty_per_hour": 5,
        "expiry_hours": 12,
        "exchange_strategy": "30:40:30",
        "manual_confirmation": False,
    }
    body.update(overrides)
    return body


async def create_task(client: AsyncClient, draft_id: str = "d-1", **overrides: Any) -> dict[str, Any]:
    """Save a draft and post it; returns the posted task."""
    saved = await client.put(f"/drafts/{draft_id}", json=draft_body(**overrides))
    assert saved.status_code == 200
    posted = await client.post(f"/drafts/{draft_id}/post", json={"creator_id": CREATOR_ID})
    assert posted.status_code == 201
    task: dict[str, Any] = posted.json()["task"]
    return task


async def take_task(client: AsyncClient, task_id: str) -> dict[str, Any]:
    """Apply, accept and confirm the doer; returns the confirm response body."""
    applied = await client.post(
        f"/tasks/{task_id}/applicants", json={"user_id": DOER_ID, "cover_text": "I can do it"}
    )
    applicant_id = applied.json()["applicant"]["applicant_id"]
    await client.post(
        f"/tasks/{task_id}/applicants/{applicant_id}/accept", json={"actor_id": CREATOR_ID}
    )
    confirmed = await client.post(
        f"/tasks/{task_id}/applicants/{applicant_id}/confirm", json={"actor_id": DOER_ID}
    )
    assert confirmed.status_code == 200
    body: dict[str, Any] = confirmed.json()
    return body


def gateway_callback(
    keypair: tuple[Ed25519PrivateKey, str],
    reference: str,
    outcome: str = "success",
    gateway_charge_id: str | None = "ch-escrow",
) -> dict[str, str]:
    """Build a signed webhook body as the gateway would send it."""
    payload: dict[str, Any] = {"reference": reference, "outcome": outcome}
    if gateway_charge_id is not None:
        payload["gateway_charge_id"] = gateway_charge_id
    return {"token": make_jws_token(keypair[0], GATEWAY_KEY_ID, payload)}


async def fund_task(
    client: AsyncClient,
    keypair: tuple[Ed25519PrivateKey, str],
    task_id: str,
) -> dict[str, Any]:
    """Take the task, register the doer's bank and deliver a paid callback."""
    taken = await take_task(client, task_id)
    await client.put(
        f"/users/{DOER_ID}/payout-destination",
        json={"bank_name": "Commercial Bank of Ethiopia", "account_number": "1000123456789"},
    )
    response = await client.post(
        "/webhooks/gateway", json=gateway_callback(keypair, taken["escrow"]["reference"])
    )
    assert response.status_code == 200
    body: dict[str, Any] = response.json()
    return body
