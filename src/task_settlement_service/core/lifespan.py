"""Application lifecycle management."""

from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from task_settlement_service.clients.payment_gateway_client import PaymentGatewayClient
from task_settlement_service.clients.platform_signer import PlatformSigner, ensure_private_key
from task_settlement_service.config import get_settings
from task_settlement_service.core.state import init_app_state
from task_settlement_service.logging import get_logger, setup_logging
from task_settlement_service.services.applicant_manager import ApplicantManager
from task_settlement_service.services.escrow_manager import EscrowManager
from task_settlement_service.services.event_log import EventLog
from task_settlement_service.services.expiry_scheduler import ExpiryScheduler
from task_settlement_service.services.settlement_store import SettlementStore
from task_settlement_service.services.task_controller import TaskController
from task_settlement_service.services.webhook_verifier import WebhookVerifier

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()

    db_path = settings.database.path

    # Platform signing key lives beside the database unless configured
    private_key_path = settings.platform.private_key_path
    if not private_key_path:
        private_key_path = str(Path(db_path).parent / "platform.pem")
    ensure_private_key(private_key_path)

    platform_signer = PlatformSigner.from_pem_file(settings.platform.agent_id, private_key_path)
    state.platform_signer = platform_signer

    gateway_client = PaymentGatewayClient(
        base_url=settings.gateway.base_url,
        charge_path=settings.gateway.charge_path,
        payout_path=settings.gateway.payout_path,
        refund_path=settings.gateway.refund_path,
        timeout_seconds=settings.gateway.timeout_seconds,
        provider=settings.gateway.provider,
        platform_signer=platform_signer,
    )
    state.gateway_client = gateway_client
    state.webhook_verifier = WebhookVerifier(settings.gateway.webhook_public_key)

    store = SettlementStore(db_path=db_path)
    event_log = EventLog(store)
    state.event_log = event_log

    applicant_manager = ApplicantManager(
        store=store,
        event_log=event_log,
        confirmation_window_seconds=settings.settlement.confirmation_window_seconds,
        reminder_lead_seconds=settings.settlement.reminder_lead_seconds,
        reminder_cooldown_seconds=settings.settlement.reminder_cooldown_seconds,
    )
    state.applicant_manager = applicant_manager

    escrow_manager = EscrowManager(
        store=store,
        event_log=event_log,
        gateway_client=gateway_client,
        currency=settings.settlement.currency,
        provider=settings.gateway.provider,
        max_penalty_ratio=settings.settlement.max_penalty_ratio,
    )
    state.escrow_manager = escrow_manager

    task_controller = TaskController(
        store=store,
        event_log=event_log,
        applicant_manager=applicant_manager,
        escrow_manager=escrow_manager,
        settlement=settings.settlement,
    )
    state.task_controller = task_controller

    scheduler = ExpiryScheduler(
        store=store,
        controller=task_controller,
        applicant_manager=applicant_manager,
        interval_seconds=settings.scheduler.interval_seconds,
    )
    state.scheduler = scheduler
    if settings.scheduler.enabled:
        state.scheduler_task = asyncio.create_task(scheduler.run())

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "db_path": db_path,
            "gateway_base_url": settings.gateway.base_url,
            "platform_agent_id": settings.platform.agent_id,
            "scheduler_enabled": settings.scheduler.enabled,
        },
    )

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})

    scheduler.stop()
    if state.scheduler_task is not None:
        state.scheduler_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await state.scheduler_task

    task_controller.close()
    await gateway_client.close()
