"""
Status enums and transition tables for tasks, applicants and payment intents.

Every status change goes through one of the ``next_*`` functions, which only
accept ``(current, target)`` pairs listed in the tables below.
"""

from __future__ import annotations

from enum import StrEnum

from task_settlement_service.core.exceptions import ConflictError


class TaskStatus(StrEnum):
    OPEN = "open"
    TAKEN = "taken"
    IN_PROGRESS = "in_progress"
    PENDING_FINAL_CONFIRMATION = "pending_final_confirmation"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELED = "canceled"


class ApplicantStatus(StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    CONFIRMED = "confirmed"
    DECLINED = "declined"
    CANCELED = "canceled"


class IntentKind(StrEnum):
    ESCROW = "escrow"
    PENALTY = "penalty"


class IntentStatus(StrEnum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    VOIDED = "voided"


class RefundStatus(StrEnum):
    NONE = "none"
    REQUESTED = "requested"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ExchangeStrategy(StrEnum):
    FULL = "100%"
    THREE_WAY = "30:40:30"
    EVEN = "50:50"


class SkillLevel(StrEnum):
    BEGINNER = "Beginner"
    INTERMEDIATE = "Intermediate"
    PROFESSIONAL = "Professional"


_TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.OPEN: frozenset({TaskStatus.TAKEN, TaskStatus.EXPIRED}),
    TaskStatus.TAKEN: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.CANCELED}),
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.PENDING_FINAL_CONFIRMATION, TaskStatus.CANCELED}
    ),
    # Back to in_progress when the creator asks for a revision of the last stage.
    TaskStatus.PENDING_FINAL_CONFIRMATION: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.IN_PROGRESS}
    ),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.EXPIRED: frozenset(),
    TaskStatus.CANCELED: frozenset(),
}

_APPLICANT_TRANSITIONS: dict[ApplicantStatus, frozenset[ApplicantStatus]] = {
    ApplicantStatus.PENDING: frozenset(
        {ApplicantStatus.ACCEPTED, ApplicantStatus.DECLINED, ApplicantStatus.CANCELED}
    ),
    ApplicantStatus.ACCEPTED: frozenset(
        {ApplicantStatus.CONFIRMED, ApplicantStatus.DECLINED, ApplicantStatus.CANCELED}
    ),
    ApplicantStatus.CONFIRMED: frozenset(),
    ApplicantStatus.DECLINED: frozenset(),
    ApplicantStatus.CANCELED: frozenset(),
}

_INTENT_TRANSITIONS: dict[IntentStatus, frozenset[IntentStatus]] = {
    IntentStatus.PENDING: frozenset({IntentStatus.PAID, IntentStatus.FAILED, IntentStatus.VOIDED}),
    IntentStatus.PAID: frozenset(),
    IntentStatus.FAILED: frozenset(),
    IntentStatus.VOIDED: frozenset(),
}

_REFUND_TRANSITIONS: dict[RefundStatus, frozenset[RefundStatus]] = {
    RefundStatus.NONE: frozenset({RefundStatus.REQUESTED}),
    RefundStatus.REQUESTED: frozenset({RefundStatus.SUCCEEDED, RefundStatus.FAILED}),
    # A failed refund is only re-requested by an explicit manual call.
    RefundStatus.FAILED: frozenset({RefundStatus.REQUESTED}),
    RefundStatus.SUCCEEDED: frozenset(),
}

TERMINAL_TASK_STATUSES = frozenset(
    status for status, targets in _TASK_TRANSITIONS.items() if not targets
)
TERMINAL_APPLICANT_STATUSES = frozenset(
    status for status, targets in _APPLICANT_TRANSITIONS.items() if not targets
)
WINNING_APPLICANT_STATUSES = frozenset({ApplicantStatus.ACCEPTED, ApplicantStatus.CONFIRMED})
CANCELABLE_TASK_STATUSES = frozenset({TaskStatus.TAKEN, TaskStatus.IN_PROGRESS})
DELIVERY_TASK_STATUSES = frozenset(
    {TaskStatus.IN_PROGRESS, TaskStatus.PENDING_FINAL_CONFIRMATION}
)


def _invalid(entity: str, current: str, target: str) -> ConflictError:
    return ConflictError(
        "INVALID_TRANSITION",
        f"Cannot move {entity} from '{current}' to '{target}'",
        details={"current": current, "target": target},
    )


def can_transition_task(current: str, target: TaskStatus) -> bool:
    return target in _TASK_TRANSITIONS[TaskStatus(current)]


def next_task_status(current: str, target: TaskStatus) -> TaskStatus:
    if not can_transition_task(current, target):
        raise _invalid("task", current, target)
    return target


def next_applicant_status(current: str, target: ApplicantStatus) -> ApplicantStatus:
    if target not in _APPLICANT_TRANSITIONS[ApplicantStatus(current)]:
        raise _invalid("applicant", current, target)
    return target


def next_intent_status(current: str, target: IntentStatus) -> IntentStatus:
    if target not in _INTENT_TRANSITIONS[IntentStatus(current)]:
        raise _invalid("payment intent", current, target)
    return target


def next_refund_status(current: str, target: RefundStatus) -> RefundStatus:
    if target not in _REFUND_TRANSITIONS[RefundStatus(current)]:
        raise _invalid("refund", current, target)
    return target
