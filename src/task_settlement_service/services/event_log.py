"""Persisted domain event log consumed by the conversational layer."""

from __future__ import annotations

import contextlib
from contextvars import ContextVar
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from task_settlement_service.logging import get_logger
from task_settlement_service.services.timestamps import now_iso

if TYPE_CHECKING:
    from collections.abc import Iterator

    from task_settlement_service.services.settlement_store import SettlementStore

logger = get_logger(__name__)

_collected: ContextVar[list[dict[str, Any]] | None] = ContextVar("collected_events", default=None)


class EventType(StrEnum):
    TASK_POSTED = "task.posted"
    TASK_COMPLETED = "task.completed"
    TASK_EXPIRED = "task.expired"
    TASK_CANCELED = "task.canceled"
    APPLICANT_APPLIED = "applicant.applied"
    APPLICANT_ACCEPTED = "applicant.accepted"
    APPLICANT_DECLINED = "applicant.declined"
    APPLICANT_CONFIRMED = "applicant.confirmed"
    APPLICANT_WITHDRAWN = "applicant.withdrawn"
    APPLICANT_REMINDER = "applicant.reminder"
    ESCROW_REQUESTED = "escrow.requested"
    ESCROW_FUNDED = "escrow.funded"
    ESCROW_FAILED = "escrow.failed"
    STAGE_DELIVERED = "stage.delivered"
    STAGE_REVISION_REQUESTED = "stage.revision_requested"
    STAGE_PAID = "stage.paid"
    REFUND_ISSUED = "refund.issued"
    REFUND_FAILED = "refund.failed"
    PENALTY_CHARGED = "penalty.charged"
    PAYMENT_FAILED = "payment.failed"


class EventLog:
    """
    Appends domain events to the store.

    Callers that need the events emitted by one command wrap it in
    :meth:`collect`; collection is scoped to the current asyncio task.
    """

    def __init__(self, store: SettlementStore) -> None:
        self._store = store

    def emit(
        self,
        event_type: EventType,
        *,
        task_id: str | None = None,
        user_id: str | None = None,
        **payload: Any,
    ) -> dict[str, Any]:
        event = self._store.append_event(str(event_type), task_id, user_id, payload, now_iso())
        logger.info(
            "Event emitted",
            extra={"event_type": str(event_type), "task_id": task_id, "event_id": event["event_id"]},
        )
        collected = _collected.get()
        if collected is not None:
            collected.append(event)
        return event

    @contextlib.contextmanager
    def collect(self) -> Iterator[list[dict[str, Any]]]:
        """Gather every event emitted inside the block into the yielded list."""
        events: list[dict[str, Any]] = []
        token = _collected.set(events)
        try:
            yield events
        finally:
            _collected.reset(token)

    def list_events(
        self,
        after: int | None = None,
        task_id: str | None = None,
        user_id: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        return self._store.list_events(after, task_id, user_id, limit)
