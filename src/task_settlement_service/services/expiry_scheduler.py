"""Periodic sweep for offer expiry, confirmation timeouts, reminders and stage auto-confirm."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from task_settlement_service.core.exceptions import ServiceError
from task_settlement_service.logging import get_logger
from task_settlement_service.services.state_machines import (
    DELIVERY_TASK_STATUSES,
    ApplicantStatus,
    TaskStatus,
)
from task_settlement_service.services.timestamps import is_past

if TYPE_CHECKING:
    from task_settlement_service.services.applicant_manager import ApplicantManager
    from task_settlement_service.services.settlement_store import SettlementStore
    from task_settlement_service.services.task_controller import TaskController

logger = get_logger(__name__)


class ExpiryScheduler:
    """
    Runs time-based transitions on a fixed interval.

    Each sweep goes through the same controller and manager methods as user
    commands, so repeating a sweep is a no-op for anything already handled.
    A failure on one record is logged and the sweep moves on.
    """

    def __init__(
        self,
        store: SettlementStore,
        controller: TaskController,
        applicant_manager: ApplicantManager,
        interval_seconds: int,
    ) -> None:
        self._store = store
        self._controller = controller
        self._applicants = applicant_manager
        self._interval_seconds = interval_seconds
        self._running = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Sweep until stopped or cancelled."""
        logger.info("Expiry scheduler starting", extra={"interval_seconds": self._interval_seconds})
        self._running = True
        while self._running:
            try:
                await self.run_once()
                await asyncio.sleep(self._interval_seconds)
            except asyncio.CancelledError:
                logger.info("Expiry scheduler cancelled, shutting down")
                self._running = False
            except Exception:
                logger.exception("Unhandled error in scheduler sweep")
                await asyncio.sleep(self._interval_seconds)
        logger.info("Expiry scheduler stopped")

    def stop(self) -> None:
        """Signal the loop to stop after the current sweep."""
        self._running = False

    async def run_once(self, now: datetime | None = None) -> dict[str, int]:
        """Run one sweep and return how many records each step changed."""
        current = now if now is not None else datetime.now(UTC)
        summary = {
            "declined": self._sweep_confirmations(current),
            "reminded": 0,
            "expired": 0,
            "auto_confirmed": 0,
        }
        summary["reminded"] = self._sweep_reminders(current)
        summary["expired"] = self._sweep_offers(current)
        summary["auto_confirmed"] = await self._sweep_stage_reviews(current)
        if any(summary.values()):
            logger.info("Scheduler sweep complete", extra=summary)
        return summary

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _log_failure(step: str, record_id: str, exc: Exception) -> None:
        if isinstance(exc, ServiceError):
            logger.warning(
                "Scheduler step skipped",
                extra={"step": step, "record_id": record_id, "error_code": exc.error},
            )
        else:
            logger.exception(
                "Scheduler step failed",
                extra={"step": step, "record_id": record_id},
            )

    def _sweep_confirmations(self, now: datetime) -> int:
        declined = 0
        for applicant in self._store.list_applicants_by_status(ApplicantStatus.ACCEPTED):
            try:
                if self._applicants.decline_if_lapsed(applicant, now):
                    declined += 1
            except Exception as exc:  # noqa: BLE001
                self._log_failure("confirmation_timeout", applicant["applicant_id"], exc)
        return declined

    def _sweep_reminders(self, now: datetime) -> int:
        reminded = 0
        for applicant in self._store.list_applicants_by_status(ApplicantStatus.ACCEPTED):
            try:
                if self._applicants.send_reminder(applicant, now):
                    reminded += 1
            except Exception as exc:  # noqa: BLE001
                self._log_failure("reminder", applicant["applicant_id"], exc)
        return reminded

    def _sweep_offers(self, now: datetime) -> int:
        expired = 0
        for task in self._store.list_tasks_by_status([TaskStatus.OPEN]):
            if not is_past(task["offer_expiry"], now):
                continue
            try:
                result: dict[str, Any] = self._controller.expire(task["task_id"], now)
            except Exception as exc:  # noqa: BLE001
                self._log_failure("offer_expiry", task["task_id"], exc)
                continue
            if result["status"] == TaskStatus.EXPIRED:
                expired += 1
        return expired

    async def _sweep_stage_reviews(self, now: datetime) -> int:
        confirmed = 0
        for stage in self._store.list_stages_awaiting_review():
            if not is_past(stage["review_deadline"], now):
                continue
            task = self._store.get_task(stage["task_id"])
            if task is None or task["status"] not in DELIVERY_TASK_STATUSES:
                continue
            record_id = f"{stage['task_id']}#{stage['stage_num']}"
            try:
                await self._controller.confirm_stage(
                    stage["task_id"], stage["stage_num"], auto=True
                )
            except Exception as exc:  # noqa: BLE001
                self._log_failure("stage_auto_confirm", record_id, exc)
                continue
            confirmed += 1
        return confirmed
