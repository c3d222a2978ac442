"""Bid intake, single-winner selection and confirmation deadlines."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from task_settlement_service.core.exceptions import (
    ConflictError,
    ExpiredError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from task_settlement_service.logging import get_logger
from task_settlement_service.services.event_log import EventType
from task_settlement_service.services.settlement_store import (
    DuplicateApplicationError,
    StaleVersionError,
    TaskNotOpenError,
    WinnerAlreadySelectedError,
)
from task_settlement_service.services.state_machines import (
    WINNING_APPLICANT_STATUSES,
    ApplicantStatus,
    TaskStatus,
    next_applicant_status,
)
from task_settlement_service.services.timestamps import add_seconds, is_past, parse_iso, to_iso

if TYPE_CHECKING:
    from task_settlement_service.services.event_log import EventLog
    from task_settlement_service.services.settlement_store import SettlementStore


def _conflict(message: str) -> ConflictError:
    return ConflictError("CONFLICT", message)


class ApplicantManager:
    """
    Owns applicant records once they exist.

    The one-winner guarantee is enforced in :meth:`accept`, backed by the
    store's partial unique index on winning applicants.
    """

    def __init__(
        self,
        store: SettlementStore,
        event_log: EventLog,
        confirmation_window_seconds: int,
        reminder_lead_seconds: int,
        reminder_cooldown_seconds: int,
    ) -> None:
        self._store = store
        self._events = event_log
        self._confirmation_window_seconds = confirmation_window_seconds
        self._reminder_lead = timedelta(seconds=reminder_lead_seconds)
        self._reminder_cooldown = timedelta(seconds=reminder_cooldown_seconds)
        self._logger = get_logger(__name__)

    def _require_task(self, task_id: str) -> dict[str, Any]:
        task = self._store.get_task(task_id)
        if task is None:
            raise NotFoundError("TASK_NOT_FOUND", "Task not found")
        return task

    def _require_applicant(self, task_id: str, applicant_id: str) -> dict[str, Any]:
        applicant = self._store.get_applicant(applicant_id)
        if applicant is None or applicant["task_id"] != task_id:
            raise NotFoundError("APPLICANT_NOT_FOUND", "Applicant not found")
        return applicant

    def _reload(self, applicant_id: str) -> dict[str, Any]:
        applicant = self._store.get_applicant(applicant_id)
        if applicant is None:
            msg = f"Applicant {applicant_id} not found after update"
            raise RuntimeError(msg)
        return applicant

    def get_applicant(self, task_id: str, applicant_id: str) -> dict[str, Any]:
        return self._require_applicant(task_id, applicant_id)

    def list_applicants(self, task_id: str) -> list[dict[str, Any]]:
        self._require_task(task_id)
        return self._store.list_applicants(task_id)

    def apply(self, task_id: str, user_id: str, cover_text: str) -> dict[str, Any]:
        """Create a Pending applicant for ``user_id`` on an open task."""
        if not cover_text.strip():
            raise ValidationError("INVALID_COVER_TEXT", "Cover text must not be empty")

        task = self._require_task(task_id)
        if task["creator_id"] == user_id:
            raise ForbiddenError("SELF_APPLICATION", "Task creators cannot apply to their own task")
        if task["status"] != TaskStatus.OPEN:
            raise ConflictError(
                "TASK_NOT_OPEN",
                f"Cannot apply to task in '{task['status']}' status, must be 'open'",
            )

        applicant_id = f"ap-{uuid.uuid4()}"
        try:
            self._store.insert_applicant(
                {
                    "applicant_id": applicant_id,
                    "task_id": task_id,
                    "user_id": user_id,
                    "cover_text": cover_text,
                    "status": ApplicantStatus.PENDING.value,
                    "applied_at": to_iso(datetime.now(UTC)),
                    "accepted_at": None,
                    "confirm_deadline": None,
                    "confirmed_at": None,
                    "declined_at": None,
                    "canceled_at": None,
                    "last_reminder_at": None,
                }
            )
        except DuplicateApplicationError as exc:
            raise ConflictError(
                "DUPLICATE_APPLICATION", "This user already applied to this task"
            ) from exc
        except TaskNotOpenError as exc:
            raise ConflictError("TASK_NOT_OPEN", "Task is no longer open") from exc

        self._events.emit(
            EventType.APPLICANT_APPLIED,
            task_id=task_id,
            user_id=task["creator_id"],
            applicant_id=applicant_id,
            applicant_user_id=user_id,
        )
        return self._reload(applicant_id)

    def accept(self, task_id: str, applicant_id: str) -> dict[str, Any]:
        """
        Accept one applicant and decline every other pending one.

        Raises ConflictError when the task already has a winner or another
        writer changed the task first.
        """
        task = self._require_task(task_id)
        applicant = self._require_applicant(task_id, applicant_id)

        if task["status"] != TaskStatus.OPEN:
            raise ConflictError(
                "TASK_NOT_OPEN",
                f"Cannot accept applicants on task in '{task['status']}' status",
            )
        for other in self._store.list_applicants(task_id):
            if other["status"] in WINNING_APPLICANT_STATUSES:
                raise _conflict("Task already has an accepted applicant")
        next_applicant_status(applicant["status"], ApplicantStatus.ACCEPTED)

        accepted_at = to_iso(datetime.now(UTC))
        confirm_deadline = add_seconds(accepted_at, self._confirmation_window_seconds)
        try:
            declined_ids = self._store.accept_applicant(
                task_id,
                applicant_id,
                expected_version=task["version"],
                accepted_at=accepted_at,
                confirm_deadline=str(confirm_deadline),
            )
        except WinnerAlreadySelectedError as exc:
            raise _conflict("Task already has an accepted applicant") from exc
        except StaleVersionError as exc:
            raise _conflict("Task was modified concurrently, re-read and retry") from exc

        self._logger.info(
            "Applicant accepted",
            extra={"task_id": task_id, "applicant_id": applicant_id, "declined": len(declined_ids)},
        )
        self._events.emit(
            EventType.APPLICANT_ACCEPTED,
            task_id=task_id,
            user_id=applicant["user_id"],
            applicant_id=applicant_id,
            confirm_deadline=confirm_deadline,
        )
        for declined_id in declined_ids:
            declined = self._store.get_applicant(declined_id)
            self._events.emit(
                EventType.APPLICANT_DECLINED,
                task_id=task_id,
                user_id=declined["user_id"] if declined else None,
                applicant_id=declined_id,
                reason="another_applicant_accepted",
            )
        return self._reload(applicant_id)

    def decline(self, task_id: str, applicant_id: str) -> dict[str, Any]:
        """Creator declines a pending applicant."""
        self._require_task(task_id)
        applicant = self._require_applicant(task_id, applicant_id)
        if applicant["status"] != ApplicantStatus.PENDING:
            raise ConflictError(
                "INVALID_TRANSITION",
                f"Only pending applicants can be declined, applicant is '{applicant['status']}'",
            )

        rows = self._store.update_applicant(
            applicant_id,
            {"status": ApplicantStatus.DECLINED.value, "declined_at": to_iso(datetime.now(UTC))},
            expected_status=ApplicantStatus.PENDING,
        )
        if rows == 0:
            raise _conflict("Applicant was modified concurrently")

        self._events.emit(
            EventType.APPLICANT_DECLINED,
            task_id=task_id,
            user_id=applicant["user_id"],
            applicant_id=applicant_id,
            reason="creator_declined",
        )
        return self._reload(applicant_id)

    def confirm(
        self,
        task_id: str,
        applicant_id: str,
        *,
        task_updates: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Move an Accepted applicant to Confirmed and apply ``task_updates``
        to the task in the same transaction.
        """
        task = self._require_task(task_id)
        applicant = self._require_applicant(task_id, applicant_id)

        if applicant["confirm_deadline"] is not None and is_past(applicant["confirm_deadline"]):
            raise ExpiredError(
                "EXPIRED",
                "The confirmation deadline has passed",
                details={"confirm_deadline": applicant["confirm_deadline"]},
            )
        next_applicant_status(applicant["status"], ApplicantStatus.CONFIRMED)
        if task["status"] != TaskStatus.OPEN:
            raise ConflictError(
                "TASK_NOT_OPEN",
                f"Cannot confirm on task in '{task['status']}' status",
            )

        try:
            self._store.confirm_applicant(
                task_id,
                applicant_id,
                expected_version=task["version"],
                confirmed_at=to_iso(datetime.now(UTC)),
                task_updates=task_updates,
            )
        except StaleVersionError as exc:
            raise _conflict("Task was modified concurrently, re-read and retry") from exc

        self._events.emit(
            EventType.APPLICANT_CONFIRMED,
            task_id=task_id,
            user_id=task["creator_id"],
            applicant_id=applicant_id,
            doer_id=applicant["user_id"],
        )
        return self._reload(applicant_id)

    def withdraw(self, task_id: str, applicant_id: str) -> dict[str, Any]:
        """Applicant cancels their own bid before confirming."""
        self._require_task(task_id)
        applicant = self._require_applicant(task_id, applicant_id)
        next_applicant_status(applicant["status"], ApplicantStatus.CANCELED)

        rows = self._store.update_applicant(
            applicant_id,
            {"status": ApplicantStatus.CANCELED.value, "canceled_at": to_iso(datetime.now(UTC))},
            expected_status=applicant["status"],
        )
        if rows == 0:
            raise _conflict("Applicant was modified concurrently")

        self._events.emit(
            EventType.APPLICANT_WITHDRAWN,
            task_id=task_id,
            user_id=applicant["user_id"],
            applicant_id=applicant_id,
        )
        return self._reload(applicant_id)

    def decline_if_lapsed(self, applicant: dict[str, Any], now: datetime) -> bool:
        """Auto-decline an Accepted applicant whose confirmation deadline passed."""
        if applicant["status"] != ApplicantStatus.ACCEPTED:
            return False
        if not is_past(applicant["confirm_deadline"], now):
            return False

        rows = self._store.update_applicant(
            applicant["applicant_id"],
            {"status": ApplicantStatus.DECLINED.value, "declined_at": to_iso(now)},
            expected_status=ApplicantStatus.ACCEPTED,
        )
        if rows == 0:
            return False

        self._logger.info(
            "Applicant confirmation lapsed",
            extra={"task_id": applicant["task_id"], "applicant_id": applicant["applicant_id"]},
        )
        self._events.emit(
            EventType.APPLICANT_DECLINED,
            task_id=applicant["task_id"],
            user_id=applicant["user_id"],
            applicant_id=applicant["applicant_id"],
            reason="confirmation_timeout",
        )
        return True

    def send_reminder(self, applicant: dict[str, Any], now: datetime) -> bool:
        """
        Emit a confirmation reminder when the deadline is near.

        At most one reminder per cooldown window: ``last_reminder_at`` is
        claimed with a compare-and-swap before the event is emitted.
        """
        deadline = applicant["confirm_deadline"]
        if applicant["status"] != ApplicantStatus.ACCEPTED or deadline is None:
            return False
        deadline_at = parse_iso(deadline)
        if now > deadline_at or now < deadline_at - self._reminder_lead:
            return False

        previous = applicant["last_reminder_at"]
        if previous is not None and now - parse_iso(previous) < self._reminder_cooldown:
            return False
        if self._store.claim_reminder(applicant["applicant_id"], previous=previous, now=to_iso(now)) == 0:
            return False

        self._events.emit(
            EventType.APPLICANT_REMINDER,
            task_id=applicant["task_id"],
            user_id=applicant["user_id"],
            applicant_id=applicant["applicant_id"],
            confirm_deadline=deadline,
        )
        return True
