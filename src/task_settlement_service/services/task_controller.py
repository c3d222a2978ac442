"""Task lifecycle controller: the authoritative task state machine."""

from __future__ import annotations

import math
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from task_settlement_service.core.exceptions import (
    ConflictError,
    ExpiredError,
    ForbiddenError,
    GatewayError,
    NotFoundError,
    ValidationError,
)
from task_settlement_service.logging import get_logger
from task_settlement_service.services import stage_ledger
from task_settlement_service.services.event_log import EventType
from task_settlement_service.services.settlement_store import (
    DraftAlreadyPostedError,
    DuplicateRatingError,
    StaleVersionError,
)
from task_settlement_service.services.state_machines import (
    CANCELABLE_TASK_STATUSES,
    DELIVERY_TASK_STATUSES,
    ApplicantStatus,
    IntentKind,
    IntentStatus,
    RefundStatus,
    SkillLevel,
    TaskStatus,
    next_task_status,
)
from task_settlement_service.services.timestamps import add_seconds, is_past, now_iso, parse_iso

if TYPE_CHECKING:
    from collections.abc import Callable

    from task_settlement_service.config import SettlementConfig
    from task_settlement_service.services.applicant_manager import ApplicantManager
    from task_settlement_service.services.escrow_manager import EscrowManager
    from task_settlement_service.services.event_log import EventLog
    from task_settlement_service.services.settlement_store import SettlementStore

_DRAFT_FIELDS = (
    "description",
    "fields",
    "skill_level",
    "fee",
    "completion_hours",
    "revision_hours",
    "penalty_per_hour",
    "expiry_hours",
    "exchange_strategy",
    "manual_confirmation",
)

# Attempts for bookkeeping CAS updates that must land after money already moved.
_CAS_ATTEMPTS = 3


def _is_int(value: object) -> bool:
    """Check if value is an integer (not float, not bool)."""
    return isinstance(value, int) and not isinstance(value, bool)


def _invalid_draft(field_name: str, message: str) -> ValidationError:
    return ValidationError("INVALID_DRAFT", message, details={"field": field_name})


def _conflict() -> ConflictError:
    return ConflictError("CONFLICT", "Task was modified concurrently, re-read and retry")


class TaskController:
    """
    Drives a task from Open to a terminal status.

    The only component that changes a task's status. Every mutation is a
    compare-and-swap on the task's ``version``; a lost race surfaces as
    ConflictError("CONFLICT") and is never retried on the caller's behalf.
    """

    def __init__(
        self,
        store: SettlementStore,
        event_log: EventLog,
        applicant_manager: ApplicantManager,
        escrow_manager: EscrowManager,
        settlement: SettlementConfig,
    ) -> None:
        self._store = store
        self._events = event_log
        self._applicants = applicant_manager
        self._escrow = escrow_manager
        self._settlement = settlement
        self._logger = get_logger(__name__)
        escrow_manager.set_funds_held_handler(self._handle_funds_held)

    # ------------------------------------------------------------------
    # Private helper methods
    # ------------------------------------------------------------------

    def _require_task(self, task_id: str) -> dict[str, Any]:
        task = self._store.get_task(task_id)
        if task is None:
            raise NotFoundError("TASK_NOT_FOUND", "Task not found")
        return task

    def _task_view(self, task: dict[str, Any]) -> dict[str, Any]:
        """Task row plus its stages and the derived completion deadline."""
        return {
            **task,
            "completion_deadline": add_seconds(task["funded_at"], task["completion_seconds"]),
            "stages": self._store.get_stages(task["task_id"]),
        }

    def _view(self, task_id: str) -> dict[str, Any]:
        return self._task_view(self._require_task(task_id))

    @staticmethod
    def _require_creator(task: dict[str, Any], actor_id: str) -> None:
        if actor_id != task["creator_id"]:
            raise ForbiddenError("FORBIDDEN", "Only the task creator can perform this action")

    @staticmethod
    def _require_doer(task: dict[str, Any], actor_id: str) -> None:
        if task["doer_id"] is None or actor_id != task["doer_id"]:
            raise ForbiddenError("FORBIDDEN", "Only the task doer can perform this action")

    def _update_with_retry(
        self,
        task_id: str,
        build_updates: Callable[[dict[str, Any]], dict[str, Any] | None],
    ) -> dict[str, Any] | None:
        """
        Re-read and re-apply an update until the CAS lands.

        ``build_updates(task)`` returns the updates or None to stop. Only used
        for bookkeeping that follows an already-recorded gateway fact.
        """
        for _ in range(_CAS_ATTEMPTS):
            task = self._require_task(task_id)
            updates = build_updates(task)
            if updates is None:
                return None
            if self._store.update_task(task_id, updates, expected_version=task["version"]):
                return self._require_task(task_id)
        raise _conflict()

    # ------------------------------------------------------------------
    # Drafts
    # ------------------------------------------------------------------

    def get_draft(self, draft_id: str) -> dict[str, Any]:
        draft = self._store.get_draft(draft_id)
        if draft is None:
            raise NotFoundError("DRAFT_NOT_FOUND", "Draft not found")
        return draft

    def save_draft(self, draft_id: str, creator_id: str, values: dict[str, Any]) -> dict[str, Any]:
        """Create or update a draft field by field; ``None`` values keep the stored value."""
        existing = self._store.get_draft(draft_id)
        if existing is not None:
            if existing["creator_id"] != creator_id:
                raise ForbiddenError("FORBIDDEN", "Only the draft creator can edit it")
            if existing["task_id"] is not None:
                raise ConflictError("DRAFT_ALREADY_POSTED", "Draft was already posted")

        now = now_iso()
        record: dict[str, Any] = {
            "draft_id": draft_id,
            "creator_id": creator_id,
            "task_id": None,
            "created_at": existing["created_at"] if existing else now,
            "updated_at": now,
        }
        for field_name in _DRAFT_FIELDS:
            value = values.get(field_name)
            if value is None and existing is not None:
                value = existing[field_name]
            record[field_name] = value
        if record["fields"] is None:
            record["fields"] = []
        if record["manual_confirmation"] is None:
            record["manual_confirmation"] = False

        try:
            self._store.save_draft(record)
        except DraftAlreadyPostedError as exc:
            raise ConflictError("DRAFT_ALREADY_POSTED", "Draft was already posted") from exc
        return self.get_draft(draft_id)

    def _validate_draft(self, draft: dict[str, Any]) -> list[dict[str, Any]]:
        """Check every draft field; returns the stage schedule on success."""
        rules = self._settlement

        description = draft["description"]
        if not isinstance(description, str) or not (
            rules.description_min_length <= len(description.strip()) <= rules.description_max_length
        ):
            raise _invalid_draft(
                "description",
                f"Description must be {rules.description_min_length}-"
                f"{rules.description_max_length} characters",
            )

        if draft["skill_level"] not in {level.value for level in SkillLevel}:
            raise _invalid_draft("skill_level", "Skill level must be Beginner, Intermediate or Professional")

        fee = draft["fee"]
        if not _is_int(fee):
            raise _invalid_draft("fee", "Fee must be a whole number")
        if fee < rules.min_fee:
            raise ValidationError(
                "FEE_TOO_LOW",
                f"Fee must be at least {rules.min_fee} {rules.currency}",
                details={"min_fee": rules.min_fee},
            )

        completion_hours = draft["completion_hours"]
        if not _is_int(completion_hours) or not 1 <= completion_hours <= rules.max_completion_hours:
            raise _invalid_draft(
                "completion_hours",
                f"Completion time must be 1-{rules.max_completion_hours} hours",
            )

        revision_hours = draft["revision_hours"]
        if not _is_int(revision_hours) or revision_hours < 0 or revision_hours * 2 > completion_hours:
            raise _invalid_draft(
                "revision_hours", "Revision time must be between 0 and half the completion time"
            )

        penalty_per_hour = draft["penalty_per_hour"]
        max_penalty = math.floor(fee * rules.max_penalty_ratio)
        if not _is_int(penalty_per_hour) or penalty_per_hour < 0:
            raise _invalid_draft("penalty_per_hour", "Penalty per hour must be a whole number >= 0")
        if penalty_per_hour > max_penalty:
            raise ValidationError(
                "PENALTY_TOO_HIGH",
                f"Penalty per hour cannot exceed {max_penalty} {rules.currency}",
                details={"max_penalty_per_hour": max_penalty},
            )

        expiry_hours = draft["expiry_hours"]
        if not _is_int(expiry_hours) or not (
            rules.min_expiry_hours <= expiry_hours <= rules.max_expiry_hours
        ):
            raise _invalid_draft(
                "expiry_hours",
                f"Offer expiry must be {rules.min_expiry_hours}-{rules.max_expiry_hours} hours",
            )

        if draft["exchange_strategy"] is None:
            raise _invalid_draft("exchange_strategy", "Exchange strategy is required")
        return stage_ledger.build_schedule(draft["exchange_strategy"], fee)

    # ------------------------------------------------------------------
    # Posting and queries
    # ------------------------------------------------------------------

    def post_task(self, draft_id: str, creator_id: str) -> dict[str, Any]:
        """Validate a complete draft and publish it as an Open task."""
        draft = self.get_draft(draft_id)
        if draft["creator_id"] != creator_id:
            raise ForbiddenError("FORBIDDEN", "Only the draft creator can post it")
        if draft["task_id"] is not None:
            raise ConflictError(
                "DRAFT_ALREADY_POSTED",
                "Draft was already posted",
                details={"task_id": draft["task_id"]},
            )

        stages = self._validate_draft(draft)
        task_id = f"t-{uuid.uuid4()}"
        created_at = now_iso()
        offer_expiry = add_seconds(created_at, draft["expiry_hours"] * 3600)

        try:
            self._store.insert_task(
                {
                    "task_id": task_id,
                    "draft_id": draft_id,
                    "creator_id": creator_id,
                    "description": draft["description"].strip(),
                    "fields": draft["fields"],
                    "skill_level": draft["skill_level"],
                    "fee": draft["fee"],
                    "currency": self._settlement.currency,
                    "completion_seconds": draft["completion_hours"] * 3600,
                    "revision_seconds": draft["revision_hours"] * 3600,
                    "penalty_per_hour": draft["penalty_per_hour"],
                    "exchange_strategy": draft["exchange_strategy"],
                    "manual_confirmation": draft["manual_confirmation"],
                    "offer_expiry": offer_expiry,
                    "status": TaskStatus.OPEN.value,
                    "accepted_applicant_id": None,
                    "doer_id": None,
                    "decisions_locked_at": None,
                    "payout_locked_at": None,
                    "version": 0,
                    "created_at": created_at,
                    "taken_at": None,
                    "funded_at": None,
                    "completed_at": None,
                    "canceled_at": None,
                    "canceled_by": None,
                    "cancel_reason": None,
                    "expired_at": None,
                },
                stages,
                created_at,
            )
        except DraftAlreadyPostedError as exc:
            raise ConflictError("DRAFT_ALREADY_POSTED", "Draft was already posted") from exc

        self._logger.info(
            "Task posted",
            extra={"task_id": task_id, "fee": draft["fee"], "strategy": draft["exchange_strategy"]},
        )
        self._events.emit(
            EventType.TASK_POSTED,
            task_id=task_id,
            user_id=creator_id,
            fee=draft["fee"],
            currency=self._settlement.currency,
            offer_expiry=offer_expiry,
        )
        return self._view(task_id)

    def get_task(self, task_id: str) -> dict[str, Any]:
        return self._view(task_id)

    def list_tasks(
        self,
        status: str | None = None,
        creator_id: str | None = None,
        doer_id: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[dict[str, Any]]:
        rows = self._store.list_tasks(status, creator_id, doer_id, limit, offset)
        return [self._task_view(row) for row in rows]

    def get_stats(self) -> dict[str, Any]:
        """Task counts for the health endpoint."""
        return {
            "total_tasks": self._store.count_tasks(),
            "tasks_by_status": self._store.count_tasks_by_status(),
        }

    def close(self) -> None:
        self._store.close()

    # ------------------------------------------------------------------
    # Applicants
    # ------------------------------------------------------------------

    def list_applicants(self, task_id: str) -> list[dict[str, Any]]:
        return self._applicants.list_applicants(task_id)

    def apply(self, task_id: str, user_id: str, cover_text: str) -> dict[str, Any]:
        return self._applicants.apply(task_id, user_id, cover_text)

    def accept(self, task_id: str, applicant_id: str, actor_id: str) -> dict[str, Any]:
        self._require_creator(self._require_task(task_id), actor_id)
        return self._applicants.accept(task_id, applicant_id)

    def decline(self, task_id: str, applicant_id: str, actor_id: str) -> dict[str, Any]:
        self._require_creator(self._require_task(task_id), actor_id)
        return self._applicants.decline(task_id, applicant_id)

    def withdraw(self, task_id: str, applicant_id: str, actor_id: str) -> dict[str, Any]:
        applicant = self._applicants.get_applicant(task_id, applicant_id)
        if applicant["user_id"] != actor_id:
            raise ForbiddenError("FORBIDDEN", "Only the applicant can withdraw")
        return self._applicants.withdraw(task_id, applicant_id)

    async def confirm_applicant(
        self,
        task_id: str,
        applicant_id: str,
        actor_id: str,
    ) -> dict[str, Any]:
        """
        Accepted applicant confirms. The task moves Open -> Taken with the
        decisions lock held, then escrow is requested for the full fee.
        """
        task = self._require_task(task_id)
        applicant = self._applicants.get_applicant(task_id, applicant_id)
        if applicant["user_id"] != actor_id:
            raise ForbiddenError("FORBIDDEN", "Only the accepted applicant can confirm")
        # A lapsed deadline wins over whatever the scheduler already did to the applicant.
        if applicant["confirm_deadline"] is not None and is_past(applicant["confirm_deadline"]):
            raise ExpiredError(
                "EXPIRED",
                "The confirmation deadline has passed",
                details={"confirm_deadline": applicant["confirm_deadline"]},
            )
        next_task_status(task["status"], TaskStatus.TAKEN)

        now = now_iso()
        confirmed = self._applicants.confirm(
            task_id,
            applicant_id,
            task_updates={
                "status": TaskStatus.TAKEN.value,
                "accepted_applicant_id": applicant_id,
                "doer_id": applicant["user_id"],
                "taken_at": now,
                "decisions_locked_at": now,
            },
        )
        intent = await self.on_applicant_confirmed(task_id, applicant_id)
        return {"applicant": confirmed, "task": self._view(task_id), "escrow": intent}

    async def on_applicant_confirmed(self, task_id: str, applicant_id: str) -> dict[str, Any] | None:
        """
        Request escrow for a Taken task.

        Holds ``decisions_locked_at`` while the gateway call runs and clears
        it on success or definitive failure. Raises GatewayError
        ("ESCROW_FAILED") when the charge cannot be created.
        """
        task = self._require_task(task_id)
        if task["status"] != TaskStatus.TAKEN:
            raise ConflictError(
                "INVALID_TRANSITION",
                f"Escrow can only be requested for a taken task, task is '{task['status']}'",
            )
        if task["accepted_applicant_id"] != applicant_id:
            raise ConflictError("CONFLICT", "Applicant is not the task's confirmed applicant")
        if task["decisions_locked_at"] is None:
            rows = self._store.update_task(
                task_id,
                {"decisions_locked_at": now_iso()},
                expected_version=task["version"],
                expected_status=TaskStatus.TAKEN,
            )
            if rows == 0:
                raise _conflict()

        try:
            intent = await self._escrow.open_escrow(
                task["draft_id"], task["creator_id"], task["fee"], task_id
            )
        except GatewayError as exc:
            self._release_decisions_lock(task_id)
            self._logger.warning(
                "Escrow request failed",
                extra={"task_id": task_id, "error_code": exc.error, "transient": exc.transient},
            )
            raise GatewayError(
                "ESCROW_FAILED",
                "Escrow could not be opened, the task stays taken and can retry",
                transient=exc.transient,
                details={"task_id": task_id, "cause": exc.error},
            ) from exc
        except ConflictError as exc:
            self._release_decisions_lock(task_id)
            if exc.error == "ALREADY_PAID":
                return None
            raise

        self._release_decisions_lock(task_id)
        return intent

    def _release_decisions_lock(self, task_id: str) -> None:
        self._update_with_retry(
            task_id,
            lambda task: {"decisions_locked_at": None} if task["decisions_locked_at"] else None,
        )

    def _release_payout_lock(self, task_id: str) -> None:
        self._update_with_retry(
            task_id,
            lambda task: {"payout_locked_at": None} if task["payout_locked_at"] else None,
        )

    async def retry_escrow(self, task_id: str, actor_id: str) -> dict[str, Any]:
        """Re-request escrow for a Taken task whose earlier attempt failed."""
        task = self._require_task(task_id)
        self._require_creator(task, actor_id)
        if task["decisions_locked_at"] is not None:
            raise ConflictError("CONFLICT", "An escrow request is already in progress")
        intent = await self.on_applicant_confirmed(task_id, str(task["accepted_applicant_id"]))
        return {"task": self._view(task_id), "escrow": intent}

    async def _handle_funds_held(self, intent: dict[str, Any]) -> None:
        """Escrow intent became Paid."""
        task = self._store.get_task(intent["task_id"]) if intent["task_id"] else None
        if task is None:
            self._logger.warning("Funds held for unknown task", extra={"intent_id": intent["intent_id"]})
            return
        if task["status"] in (TaskStatus.CANCELED, TaskStatus.EXPIRED):
            self._logger.info(
                "Funds arrived for a closed task, refunding",
                extra={"task_id": task["task_id"], "intent_id": intent["intent_id"]},
            )
            await self._escrow.refund(intent["intent_id"], f"task_{task['status']}")
            return
        self.on_escrow_funded(task["task_id"])

    def on_escrow_funded(self, task_id: str) -> dict[str, Any]:
        """Taken -> InProgress; the completion deadline starts now."""
        funded_at = now_iso()

        def build(task: dict[str, Any]) -> dict[str, Any]:
            next_task_status(task["status"], TaskStatus.IN_PROGRESS)
            return {
                "status": TaskStatus.IN_PROGRESS.value,
                "funded_at": funded_at,
                "decisions_locked_at": None,
            }

        task = self._update_with_retry(task_id, build)
        if task is None:
            msg = f"Task {task_id} not found after funding"
            raise RuntimeError(msg)
        self._logger.info("Escrow funded", extra={"task_id": task_id})
        self._events.emit(
            EventType.ESCROW_FUNDED,
            task_id=task_id,
            user_id=task["creator_id"],
            doer_id=task["doer_id"],
            completion_deadline=add_seconds(funded_at, task["completion_seconds"]),
        )
        return self._task_view(task)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    @staticmethod
    def _find_stage(stages: list[dict[str, Any]], stage_num: int) -> dict[str, Any]:
        for stage in stages:
            if stage["stage_num"] == stage_num:
                return stage
        raise NotFoundError("STAGE_NOT_FOUND", f"Stage {stage_num} not found")

    def mark_stage_delivered(self, task_id: str, stage_num: int, actor_id: str) -> dict[str, Any]:
        """Doer delivers the next stage in the pipeline."""
        task = self._require_task(task_id)
        self._require_doer(task, actor_id)
        if task["status"] != TaskStatus.IN_PROGRESS:
            raise ConflictError(
                "INVALID_TRANSITION",
                f"Cannot deliver on task in '{task['status']}' status, must be 'in_progress'",
            )

        stages = self._store.get_stages(task_id)
        self._find_stage(stages, stage_num)
        if not stage_ledger.can_mark_delivered(stages, stage_num):
            raise ConflictError(
                "STAGE_OUT_OF_ORDER",
                f"Stage {stage_num} cannot be delivered before earlier stages are paid",
                details={"stage_num": stage_num},
            )

        delivered_at = now_iso()
        review_deadline = (
            None
            if task["manual_confirmation"]
            else add_seconds(delivered_at, self._settlement.stage_review_seconds)
        )
        task_updates: dict[str, Any] = {}
        if stage_ledger.is_final_stage(stages, stage_num):
            task_updates["status"] = next_task_status(
                task["status"], TaskStatus.PENDING_FINAL_CONFIRMATION
            ).value

        try:
            self._store.update_task_and_stage(
                task_id,
                stage_num,
                expected_version=task["version"],
                task_updates=task_updates,
                stage_updates={
                    "delivered": True,
                    "delivered_at": delivered_at,
                    "review_deadline": review_deadline,
                },
            )
        except StaleVersionError as exc:
            raise _conflict() from exc

        self._events.emit(
            EventType.STAGE_DELIVERED,
            task_id=task_id,
            user_id=task["creator_id"],
            stage_num=stage_num,
            review_deadline=review_deadline,
        )
        return self._view(task_id)

    async def confirm_stage(
        self,
        task_id: str,
        stage_num: int,
        actor_id: str | None = None,
        *,
        auto: bool = False,
    ) -> dict[str, Any]:
        """
        Creator confirms a delivered stage (or the review timer does, with
        ``auto=True``); the stage is paid out through the escrow manager.
        """
        task = self._require_task(task_id)
        if not auto:
            self._require_creator(task, str(actor_id))
        if task["status"] not in DELIVERY_TASK_STATUSES:
            raise ConflictError(
                "INVALID_TRANSITION",
                f"Cannot confirm stages on task in '{task['status']}' status",
            )

        stages = self._store.get_stages(task_id)
        stage = self._find_stage(stages, stage_num)
        if stage["paid"]:
            raise ConflictError("ALREADY_PAID", f"Stage {stage_num} is already paid")
        if not stage_ledger.can_mark_paid(stages, stage_num):
            raise ConflictError(
                "STAGE_NOT_DELIVERED",
                f"Stage {stage_num} has not been delivered",
                details={"stage_num": stage_num},
            )

        if task["payout_locked_at"] is not None:
            raise ConflictError("CONFLICT", "A stage payout is already in flight")
        # Held until the payout settles; cancel and revision refuse while it is set.
        if (
            self._store.update_task(
                task_id, {"payout_locked_at": now_iso()}, expected_version=task["version"]
            )
            == 0
        ):
            raise _conflict()

        self._logger.info(
            "Stage confirmed",
            extra={"task_id": task_id, "stage_num": stage_num, "auto": auto},
        )
        try:
            await self._escrow.release_stage(task, stage)
        finally:
            self._release_payout_lock(task_id)

        if stage_ledger.all_paid(self._store.get_stages(task_id)):
            return self.on_final_stage_paid(task_id)
        return self._view(task_id)

    def request_revision(
        self,
        task_id: str,
        stage_num: int,
        actor_id: str,
        reason: str,
    ) -> dict[str, Any]:
        """Creator rejects a delivered, unpaid stage within the revision window."""
        task = self._require_task(task_id)
        self._require_creator(task, actor_id)
        if task["status"] not in DELIVERY_TASK_STATUSES:
            raise ConflictError(
                "INVALID_TRANSITION",
                f"Cannot request revisions on task in '{task['status']}' status",
            )
        if task["payout_locked_at"] is not None:
            raise ConflictError("CONFLICT", "A stage payout is in flight, retry shortly")

        stages = self._store.get_stages(task_id)
        stage = self._find_stage(stages, stage_num)
        if not stage_ledger.can_mark_paid(stages, stage_num):
            raise ConflictError(
                "STAGE_NOT_DELIVERED",
                f"Stage {stage_num} is not awaiting review",
            )
        revision_deadline = add_seconds(stage["delivered_at"], task["revision_seconds"])
        if task["revision_seconds"] == 0 or is_past(revision_deadline):
            raise ExpiredError(
                "EXPIRED",
                "The revision window for this stage has closed",
                details={"revision_deadline": revision_deadline},
            )

        task_updates: dict[str, Any] = {}
        if task["status"] == TaskStatus.PENDING_FINAL_CONFIRMATION:
            task_updates["status"] = next_task_status(task["status"], TaskStatus.IN_PROGRESS).value
        try:
            self._store.update_task_and_stage(
                task_id,
                stage_num,
                expected_version=task["version"],
                task_updates=task_updates,
                stage_updates={"delivered": False, "delivered_at": None, "review_deadline": None},
            )
        except StaleVersionError as exc:
            raise _conflict() from exc

        self._events.emit(
            EventType.STAGE_REVISION_REQUESTED,
            task_id=task_id,
            user_id=task["doer_id"],
            stage_num=stage_num,
            reason=reason,
        )
        return self._view(task_id)

    def on_final_stage_paid(self, task_id: str) -> dict[str, Any]:
        """PendingFinalConfirmation -> Completed, crediting both parties' stats."""
        for _ in range(_CAS_ATTEMPTS):
            task = self._require_task(task_id)
            if task["status"] == TaskStatus.COMPLETED:
                return self._task_view(task)
            next_task_status(task["status"], TaskStatus.COMPLETED)
            if not stage_ledger.all_paid(self._store.get_stages(task_id)):
                raise ConflictError("STAGES_UNPAID", "Not every stage has been paid")

            completed_at = now_iso()
            try:
                self._store.complete_task(
                    task_id,
                    expected_version=task["version"],
                    task_updates={"status": TaskStatus.COMPLETED.value, "completed_at": completed_at},
                    user_deltas={
                        task["doer_id"]: {"total_earned": task["fee"], "tasks_completed": 1},
                        task["creator_id"]: {"total_spent": task["fee"]},
                    },
                    completed_at=completed_at,
                )
            except StaleVersionError:
                continue

            self._logger.info("Task completed", extra={"task_id": task_id, "fee": task["fee"]})
            self._events.emit(
                EventType.TASK_COMPLETED,
                task_id=task_id,
                user_id=task["creator_id"],
                doer_id=task["doer_id"],
                fee=task["fee"],
            )
            return self._view(task_id)
        raise _conflict()

    # ------------------------------------------------------------------
    # Cancellation and expiry
    # ------------------------------------------------------------------

    def _hours_late(self, task: dict[str, Any], stages: list[dict[str, Any]]) -> int:
        """Whole hours (rounded up) past the completion deadline with stage 1 undelivered."""
        deadline = add_seconds(task["funded_at"], task["completion_seconds"])
        if deadline is None or stages[0]["delivered"]:
            return 0
        overdue = (datetime.now(UTC) - parse_iso(deadline)).total_seconds()
        return math.ceil(overdue / 3600) if overdue > 0 else 0

    async def cancel(self, task_id: str, initiator_id: str, reason: str) -> dict[str, Any]:
        """
        Cancel a Taken or InProgress task before any stage is paid.

        Pending escrow is voided, Paid escrow refunded, and a late doer is
        charged a penalty when the completion deadline passed without delivery.
        """
        task = self._require_task(task_id)
        if initiator_id not in (task["creator_id"], task["doer_id"]):
            raise ForbiddenError("FORBIDDEN", "Only the task's parties can cancel it")
        if task["status"] not in CANCELABLE_TASK_STATUSES:
            raise ConflictError(
                "INVALID_TRANSITION",
                f"Cannot cancel task in '{task['status']}' status",
            )
        stages = self._store.get_stages(task_id)
        if stage_ledger.any_paid(stages):
            raise ConflictError("STAGE_ALREADY_PAID", "Tasks with paid stages cannot be canceled")
        if task["decisions_locked_at"] is not None:
            raise ConflictError("CONFLICT", "An escrow request is in flight, retry shortly")
        if task["payout_locked_at"] is not None:
            raise ConflictError("CONFLICT", "A stage payout is in flight, retry shortly")

        next_task_status(task["status"], TaskStatus.CANCELED)
        hours_late = self._hours_late(task, stages)
        rows = self._store.update_task(
            task_id,
            {
                "status": TaskStatus.CANCELED.value,
                "canceled_at": now_iso(),
                "canceled_by": initiator_id,
                "cancel_reason": reason,
                "decisions_locked_at": None,
            },
            expected_version=task["version"],
        )
        if rows == 0:
            raise _conflict()

        self._logger.info(
            "Task canceled",
            extra={"task_id": task_id, "initiator_id": initiator_id, "hours_late": hours_late},
        )
        self._events.emit(
            EventType.TASK_CANCELED,
            task_id=task_id,
            user_id=task["creator_id"],
            doer_id=task["doer_id"],
            initiator_id=initiator_id,
            reason=reason,
        )

        # Escrow is voided only once the task is Canceled.
        for intent in self._store.list_intents(task_id=task_id, kind=IntentKind.ESCROW):
            if intent["status"] == IntentStatus.PENDING:
                try:
                    self._escrow.void_pending(intent["intent_id"])
                except ConflictError:
                    self._logger.info(
                        "Pending escrow settled during cancel",
                        extra={"task_id": task_id, "intent_id": intent["intent_id"]},
                    )

        refunds: list[dict[str, Any]] = []
        for intent in self._store.list_intents(task_id=task_id, kind=IntentKind.ESCROW):
            if intent["status"] != IntentStatus.PAID or intent["refund_status"] != RefundStatus.NONE:
                continue
            try:
                refunds.append(await self._escrow.refund(intent["intent_id"], reason))
            except ConflictError as exc:
                self._logger.info(
                    "Refund already requested elsewhere",
                    extra={"task_id": task_id, "intent_id": intent["intent_id"], "error_code": exc.error},
                )
        penalty = None
        if hours_late > 0 and task["doer_id"] is not None:
            penalty = await self._escrow.charge_penalty(task, task["doer_id"], hours_late)

        return {"task": self._view(task_id), "refunds": refunds, "penalty": penalty}

    def has_live_confirmation(self, task_id: str, now: datetime) -> bool:
        """True while an accepted applicant's confirmation window is still running."""
        return any(
            applicant["status"] == ApplicantStatus.ACCEPTED
            and not is_past(applicant["confirm_deadline"], now)
            for applicant in self._store.list_applicants(task_id)
        )

    def expire(self, task_id: str, now: datetime | None = None) -> dict[str, Any]:
        """
        Open -> Expired once the offer lapsed with nobody confirmed.

        A no-op for tasks that already left Open, and deferred while an
        accepted applicant can still confirm.
        """
        current = now if now is not None else datetime.now(UTC)
        task = self._require_task(task_id)
        if task["status"] != TaskStatus.OPEN:
            return self._task_view(task)
        if not is_past(task["offer_expiry"], current):
            raise ConflictError(
                "OFFER_NOT_EXPIRED",
                "The offer has not expired yet",
                details={"offer_expiry": task["offer_expiry"]},
            )
        if self.has_live_confirmation(task_id, current):
            self._logger.info("Expiry deferred for pending confirmation", extra={"task_id": task_id})
            return self._task_view(task)

        try:
            declined_ids = self._store.expire_task(
                task_id, expected_version=task["version"], expired_at=now_iso()
            )
        except StaleVersionError as exc:
            latest = self._require_task(task_id)
            if latest["status"] != TaskStatus.OPEN:
                return self._task_view(latest)
            raise _conflict() from exc

        self._logger.info("Task expired", extra={"task_id": task_id, "declined": len(declined_ids)})
        self._events.emit(EventType.TASK_EXPIRED, task_id=task_id, user_id=task["creator_id"])
        for applicant_id in declined_ids:
            applicant = self._store.get_applicant(applicant_id)
            self._events.emit(
                EventType.APPLICANT_DECLINED,
                task_id=task_id,
                user_id=applicant["user_id"] if applicant else None,
                applicant_id=applicant_id,
                reason="task_expired",
            )
        return self._view(task_id)

    # ------------------------------------------------------------------
    # Ratings, users and payment intents
    # ------------------------------------------------------------------

    def rate(self, task_id: str, rater_id: str, score: int) -> dict[str, Any]:
        """Each party of a completed task may rate the other once."""
        task = self._require_task(task_id)
        if task["status"] != TaskStatus.COMPLETED:
            raise ConflictError("TASK_NOT_COMPLETED", "Only completed tasks can be rated")
        if rater_id == task["creator_id"]:
            ratee_id = task["doer_id"]
        elif rater_id == task["doer_id"]:
            ratee_id = task["creator_id"]
        else:
            raise ForbiddenError("FORBIDDEN", "Only the task's parties can rate")
        if not _is_int(score) or not 1 <= score <= 5:
            raise ValidationError("INVALID_RATING", "Score must be a whole number from 1 to 5")

        try:
            self._store.record_rating(task_id, rater_id, ratee_id, score, now_iso())
        except DuplicateRatingError as exc:
            raise ConflictError("ALREADY_RATED", "This party already rated this task") from exc
        return self.get_user(ratee_id)

    def get_user(self, user_id: str) -> dict[str, Any]:
        user = self._store.get_user(user_id)
        if user is None:
            raise NotFoundError("USER_NOT_FOUND", "User not found")
        return user

    def set_payout_destination(
        self,
        user_id: str,
        bank_name: str,
        account_number: str,
    ) -> dict[str, Any]:
        if not bank_name.strip() or not account_number.strip():
            raise ValidationError(
                "INVALID_PAYOUT_DESTINATION", "Bank name and account number are required"
            )
        self._store.set_payout_destination(
            user_id, bank_name.strip(), account_number.strip(), now_iso()
        )
        return self.get_user(user_id)

    def get_intent(self, intent_id: str) -> dict[str, Any]:
        return self._escrow.get_intent(intent_id)

    async def refund_intent(self, intent_id: str, reason: str) -> dict[str, Any]:
        """Manual refund, including re-requesting a previously failed one."""
        return await self._escrow.refund(intent_id, reason)

    def void_intent(self, intent_id: str) -> dict[str, Any]:
        return self._escrow.void_pending(intent_id)

    async def handle_gateway_callback(
        self,
        reference: str,
        outcome: str,
        gateway_charge_id: str | None,
    ) -> dict[str, Any]:
        return await self._escrow.on_gateway_callback(reference, outcome, gateway_charge_id)
