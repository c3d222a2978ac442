"""Shared test helpers for signed tokens and wired settlement services."""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from joserfc import jws
from joserfc.jwk import OKPKey

from task_settlement_service.config import SettlementConfig
from task_settlement_service.services.applicant_manager import ApplicantManager
from task_settlement_service.services.escrow_manager import EscrowManager
from task_settlement_service.services.event_log import EventLog
from task_settlement_service.services.expiry_scheduler import ExpiryScheduler
from task_settlement_service.services.settlement_store import SettlementStore
from task_settlement_service.services.task_controller import TaskController

if TYPE_CHECKING:
    from pathlib import Path

CREATOR_ID = "u-creator"
DOER_ID = "u-doer"
OTHER_ID = "u-other"

DESCRIPTION = "Translate a two page rental agreement from Amharic to English"


def generate_keypair() -> tuple[Ed25519PrivateKey, str]:
    """Generate Ed25519 keypair -> (private_key, 'ed25519:<base64_pub>')."""
    private_key = Ed25519PrivateKey.generate()
    pub_bytes = private_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    public_key = f"ed25519:{base64.b64encode(pub_bytes).decode()}"
    return private_key, public_key


def make_jws_token(
    private_key: Ed25519PrivateKey,
    key_id: str,
    payload: dict[str, Any],
) -> str:
    """Create a real JWS compact token signed by the given key."""
    raw_private = private_key.private_bytes_raw()
    raw_public = private_key.public_key().public_bytes_raw()
    jwk_dict = {
        "kty": "OKP",
        "crv": "Ed25519",
        "d": base64.urlsafe_b64encode(raw_private).rstrip(b"=").decode(),
        "x": base64.urlsafe_b64encode(raw_public).rstrip(b"=").decode(),
    }
    key = OKPKey.import_key(jwk_dict)
    protected = {"alg": "EdDSA", "kid": key_id}
    payload_bytes = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()
    return jws.serialize_compact(protected, payload_bytes, key, algorithms=["EdDSA"])


def tamper_jws(token: str) -> str:
    """Alter the payload of a JWS after signing (creates invalid signature)."""
    parts = token.split(".")
    payload_bytes = base64.urlsafe_b64decode(parts[1] + "==")
    payload = json.loads(payload_bytes)
    payload["_tampered"] = True
    new_payload = base64.urlsafe_b64encode(json.dumps(payload).encode()).rstrip(b"=").decode()
    return f"{parts[0]}.{new_payload}.{parts[2]}"


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------
def make_settlement_config(**overrides: Any) -> SettlementConfig:
    values: dict[str, Any] = {
        "currency": "ETB",
        "min_fee": 50,
        "max_penalty_ratio": 0.2,
        "confirmation_window_seconds": 86400,
        "stage_review_seconds": 259200,
        "reminder_lead_seconds": 21600,
        "reminder_cooldown_seconds": 10800,
        "min_expiry_hours": 1,
        "max_expiry_hours": 24,
        "max_completion_hours": 120,
        "description_min_length": 20,
        "description_max_length": 1250,
    }
    values.update(overrides)
    return SettlementConfig(**values)


def make_gateway_mock() -> AsyncMock:
    """Gateway mock whose charges and payouts succeed."""
    gateway = AsyncMock()
    gateway.create_charge = AsyncMock(side_effect=lambda reference, *_args: f"chk-{reference}")
    gateway.create_payout = AsyncMock(side_effect=lambda reference, *_args: f"pay-{reference}")
    gateway.refund = AsyncMock(return_value="succeeded")
    gateway.close = AsyncMock()
    return gateway


@dataclass
class Services:
    store: SettlementStore
    events: EventLog
    applicants: ApplicantManager
    escrow: EscrowManager
    controller: TaskController
    scheduler: ExpiryScheduler
    gateway: AsyncMock
    settlement: SettlementConfig


def build_services(tmp_path: Path, **settlement_overrides: Any) -> Services:
    """Wire the full settlement stack over a temp database and a mocked gateway."""
    settlement = make_settlement_config(**settlement_overrides)
    store = SettlementStore(db_path=str(tmp_path / "settlement.db"))
    events = EventLog(store)
    gateway = make_gateway_mock()
    applicants = ApplicantManager(
        store=store,
        event_log=events,
        confirmation_window_seconds=settlement.confirmation_window_seconds,
        reminder_lead_seconds=settlement.reminder_lead_seconds,
        reminder_cooldown_seconds=settlement.reminder_cooldown_seconds,
    )
    escrow = EscrowManager(
        store=store,
        event_log=events,
        gateway_client=gateway,
        currency=settlement.currency,
        provider="telegram_chapa",
        max_penalty_ratio=settlement.max_penalty_ratio,
    )
    controller = TaskController(
        store=store,
        event_log=events,
        applicant_manager=applicants,
        escrow_manager=escrow,
        settlement=settlement,
    )
    scheduler = ExpiryScheduler(
        store=store,
        controller=controller,
        applicant_manager=applicants,
        interval_seconds=60,
    )
    return Services(
        store=store,
        events=events,
        applicants=applicants,
        escrow=escrow,
        controller=controller,
        scheduler=scheduler,
        gateway=gateway,
        settlement=settlement,
    )


# ---------------------------------------------------------------------------
# Lifecycle shortcuts
# ---------------------------------------------------------------------------
def draft_values(**overrides: Any) -> dict[str, Any]:
    values: dict[str, Any] = {
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
    values.update(overrides)
    return values


def post_task(
    services: Services,
    draft_id: str = "d-1",
    creator_id: str = CREATOR_ID,
    **overrides: Any,
) -> dict[str, Any]:
    """Save a complete draft and post it."""
    services.controller.save_draft(draft_id, creator_id, draft_values(**overrides))
    return services.controller.post_task(draft_id, creator_id)


def accept_applicant(services: Services, task_id: str, user_id: str = DOER_ID) -> dict[str, Any]:
    applicant = services.controller.apply(task_id, user_id, "I translate legal documents daily")
    return services.controller.accept(task_id, applicant["applicant_id"], CREATOR_ID)


async def take_task(services: Services, task_id: str, doer_id: str = DOER_ID) -> dict[str, Any]:
    """Apply, accept and confirm ``doer_id``; returns the escrow intent."""
    applicant = accept_applicant(services, task_id, doer_id)
    result = await services.controller.confirm_applicant(
        task_id, applicant["applicant_id"], doer_id
    )
    return result["escrow"]


async def fund_task(services: Services, task_id: str, doer_id: str = DOER_ID) -> dict[str, Any]:
    """Take the task and deliver a successful escrow callback; returns the paid intent."""
    intent = await take_task(services, task_id, doer_id)
    services.controller.set_payout_destination(doer_id, "Commercial Bank of Ethiopia", "1000123456789")
    return await services.escrow.on_gateway_callback(intent["reference"], "success", "ch-escrow")
