"""Application state management."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    import asyncio

    from task_settlement_service.clients.payment_gateway_client import PaymentGatewayClient
    from task_settlement_service.clients.platform_signer import PlatformSigner
    from task_settlement_service.services.applicant_manager import ApplicantManager
    from task_settlement_service.services.escrow_manager import EscrowManager
    from task_settlement_service.services.event_log import EventLog
    from task_settlement_service.services.expiry_scheduler import ExpiryScheduler
    from task_settlement_service.services.task_controller import TaskController
    from task_settlement_service.services.webhook_verifier import WebhookVerifier


@dataclass
class AppState:
    """Runtime application state."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    task_controller: TaskController | None = None
    applicant_manager: ApplicantManager | None = None
    escrow_manager: EscrowManager | None = None
    event_log: EventLog | None = None
    gateway_client: PaymentGatewayClient | None = None
    platform_signer: PlatformSigner | None = None
    webhook_verifier: WebhookVerifier | None = None
    scheduler: ExpiryScheduler | None = None
    scheduler_task: asyncio.Task[None] | None = None

    def __setattr__(self, name: str, value: Any) -> None:
        """Keep the escrow manager's gateway client in sync with AppState."""
        super().__setattr__(name, value)

        escrow_manager = self.__dict__.get("escrow_manager")
        if name == "gateway_client" and value is not None and escrow_manager is not None:
            escrow_manager.set_gateway_client(value)
        elif name == "escrow_manager" and value is not None:
            gateway_client = self.__dict__.get("gateway_client")
            if gateway_client is not None:
                value.set_gateway_client(gateway_client)

    @property
    def uptime_seconds(self) -> float:
        """Calculate uptime in seconds."""
        return (datetime.now(UTC) - self.start_time).total_seconds()

    @property
    def started_at(self) -> str:
        """ISO format start time."""
        return self.start_time.isoformat(timespec="seconds").replace("+00:00", "Z")


# Global application state container
_state_container: dict[str, AppState | None] = {"app_state": None}


def get_app_state() -> AppState:
    """Get the current application state."""
    app_state = _state_container["app_state"]
    if app_state is None:
        msg = "Application state not initialized"
        raise RuntimeError(msg)
    return app_state


def init_app_state() -> AppState:
    """Initialize application state. Called during startup."""
    app_state = AppState()
    _state_container["app_state"] = app_state
    return app_state


def reset_app_state() -> None:
    """Reset application state. Used in testing."""
    _state_container["app_state"] = None
