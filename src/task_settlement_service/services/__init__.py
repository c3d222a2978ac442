"""Service layer components."""

from task_settlement_service.services.applicant_manager import ApplicantManager
from task_settlement_service.services.escrow_manager import EscrowManager
from task_settlement_service.services.event_log import EventLog
from task_settlement_service.services.expiry_scheduler import ExpiryScheduler
from task_settlement_service.services.settlement_store import SettlementStore
from task_settlement_service.services.task_controller import TaskController
from task_settlement_service.services.webhook_verifier import WebhookVerifier

__all__ = [
    "ApplicantManager",
    "EscrowManager",
    "EventLog",
    "ExpiryScheduler",
    "SettlementStore",
    "TaskController",
    "WebhookVerifier",
]
