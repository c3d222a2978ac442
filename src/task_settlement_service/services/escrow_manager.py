"""Payment intents: escrow holds, penalty charges, stage payouts and refunds."""

from __future__ import annotations

import math
import uuid
from typing import TYPE_CHECKING, Any

from task_settlement_service.core.exceptions import (
    ConflictError,
    GatewayError,
    NotFoundError,
    ServiceError,
)
from task_settlement_service.logging import get_logger
from task_settlement_service.services.event_log import EventType
from task_settlement_service.services.settlement_store import DuplicateIntentError
from task_settlement_service.services.state_machines import (
    IntentKind,
    IntentStatus,
    RefundStatus,
    TaskStatus,
    next_intent_status,
    next_refund_status,
)
from task_settlement_service.services.timestamps import now_iso

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from task_settlement_service.clients.payment_gateway_client import PaymentGatewayClient
    from task_settlement_service.services.event_log import EventLog
    from task_settlement_service.services.settlement_store import SettlementStore

    FundsHeldHandler = Callable[[dict[str, Any]], Awaitable[None]]

_FINAL_INTENT_STATUSES = frozenset({IntentStatus.PAID, IntentStatus.FAILED, IntentStatus.VOIDED})
_REFUNDABLE_TASK_STATUSES = frozenset({TaskStatus.CANCELED, TaskStatus.EXPIRED})


def penalty_amount(penalty_per_hour: int, hours_late: int, fee: int, max_ratio: float) -> int:
    """``min(rate x hours_late, ratio x fee)``, floored to whole currency units."""
    return max(0, min(penalty_per_hour * hours_late, math.floor(fee * max_ratio)))


class EscrowManager:
    """
    Creates, tracks and reconciles payment intents against the gateway.

    Every intent row is written before the gateway is called, so a crash
    between the two leaves a recoverable Pending record. Every status change
    is a check-then-set on the intent's current status, which makes gateway
    callbacks safe to replay.
    """

    def __init__(
        self,
        store: SettlementStore,
        event_log: EventLog,
        gateway_client: PaymentGatewayClient,
        currency: str,
        provider: str,
        max_penalty_ratio: float,
    ) -> None:
        self._store = store
        self._events = event_log
        self._gateway_client = gateway_client
        self._currency = currency
        self._provider = provider
        self._max_penalty_ratio = max_penalty_ratio
        self._funds_held_handler: FundsHeldHandler | None = None
        self._logger = get_logger(__name__)

    def set_gateway_client(self, gateway_client: PaymentGatewayClient) -> None:
        """Replace the gateway client (used by AppState sync in tests)."""
        self._gateway_client = gateway_client

    def set_funds_held_handler(self, handler: FundsHeldHandler) -> None:
        """Register the callback invoked once an escrow intent becomes Paid."""
        self._funds_held_handler = handler

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_intent(self, intent_id: str) -> dict[str, Any]:
        intent = self._store.get_intent(intent_id)
        if intent is None:
            raise NotFoundError("INTENT_NOT_FOUND", "Payment intent not found")
        return intent

    def list_intents(self, task_id: str) -> list[dict[str, Any]]:
        return self._store.list_intents(task_id=task_id)

    def _reload(self, intent_id: str) -> dict[str, Any]:
        intent = self._store.get_intent(intent_id)
        if intent is None:
            msg = f"Payment intent {intent_id} not found after update"
            raise RuntimeError(msg)
        return intent

    def _new_intent(
        self,
        *,
        kind: IntentKind,
        user_id: str,
        amount: int,
        draft_id: str | None,
        task_id: str | None,
        reference_prefix: str,
    ) -> dict[str, Any]:
        return {
            "intent_id": f"pi-{uuid.uuid4()}",
            "user_id": user_id,
            "kind": kind.value,
            "draft_id": draft_id,
            "task_id": task_id,
            "amount": amount,
            "currency": self._currency,
            "provider": self._provider,
            "reference": f"{reference_prefix}-{uuid.uuid4().hex}",
            "status": IntentStatus.PENDING.value,
            "refund_status": RefundStatus.NONE.value,
            "gateway_charge_id": None,
            "checkout_handle": None,
            "failure_reason": None,
            "refund_reason": None,
            "created_at": now_iso(),
            "paid_at": None,
            "failed_at": None,
            "voided_at": None,
            "refund_requested_at": None,
            "refunded_at": None,
        }

    # ------------------------------------------------------------------
    # Charges
    # ------------------------------------------------------------------

    async def _request_charge(self, intent: dict[str, Any]) -> dict[str, Any]:
        """
        Send the charge for a Pending intent.

        Transient gateway errors leave the intent Pending for a retry with the
        same reference. Permanent ones fail the intent, then re-raise.
        """
        try:
            checkout_handle = await self._gateway_client.create_charge(
                intent["reference"],
                intent["amount"],
                intent["currency"],
                intent["user_id"],
            )
        except GatewayError as exc:
            if exc.transient:
                self._logger.warning(
                    "Charge request failed, intent left pending",
                    extra={"intent_id": intent["intent_id"], "reference": intent["reference"]},
                )
                raise
            self._fail_intent(intent, exc.error)
            raise

        self._store.update_intent(
            intent["intent_id"],
            {"checkout_handle": checkout_handle},
            expected_status=IntentStatus.PENDING,
        )
        self._logger.info(
            "Charge requested",
            extra={
                "intent_id": intent["intent_id"],
                "kind": intent["kind"],
                "amount": intent["amount"],
                "reference": intent["reference"],
            },
        )
        return self._reload(intent["intent_id"])

    def _fail_intent(self, intent: dict[str, Any], reason: str) -> bool:
        next_intent_status(intent["status"], IntentStatus.FAILED)
        rows = self._store.update_intent(
            intent["intent_id"],
            {
                "status": IntentStatus.FAILED.value,
                "failure_reason": reason,
                "failed_at": now_iso(),
            },
            expected_status=IntentStatus.PENDING,
        )
        if rows == 0:
            return False
        self._logger.warning(
            "Payment intent failed",
            extra={"intent_id": intent["intent_id"], "kind": intent["kind"], "reason": reason},
        )
        self._events.emit(
            EventType.ESCROW_FAILED if intent["kind"] == IntentKind.ESCROW else EventType.PAYMENT_FAILED,
            task_id=intent["task_id"],
            user_id=intent["user_id"],
            intent_id=intent["intent_id"],
            kind=intent["kind"],
            reason=reason,
        )
        return True

    async def open_escrow(
        self,
        draft_id: str,
        user_id: str,
        amount: int,
        task_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Idempotently open the escrow hold for a draft.

        A Pending intent for the draft is returned (its charge is re-sent if
        the gateway never acknowledged it). A Paid one raises ALREADY_PAID.
        Failed and Voided intents are superseded by a fresh one.
        """
        existing = self._store.find_live_escrow_intent(draft_id)
        if existing is None:
            intent = self._new_intent(
                kind=IntentKind.ESCROW,
                user_id=user_id,
                amount=amount,
                draft_id=draft_id,
                task_id=task_id,
                reference_prefix="esc",
            )
            try:
                self._store.insert_intent(intent)
            except DuplicateIntentError:
                existing = self._store.find_live_escrow_intent(draft_id)
                if existing is None:
                    raise ConflictError(
                        "CONFLICT", "Escrow intent was modified concurrently"
                    ) from None
            else:
                self._logger.info(
                    "Escrow intent created",
                    extra={"intent_id": intent["intent_id"], "draft_id": draft_id, "amount": amount},
                )
                self._events.emit(
                    EventType.ESCROW_REQUESTED,
                    task_id=task_id,
                    user_id=user_id,
                    intent_id=intent["intent_id"],
                    amount=amount,
                    currency=self._currency,
                )
                return await self._request_charge(intent)

        if existing["status"] == IntentStatus.PAID:
            raise ConflictError(
                "ALREADY_PAID",
                "Escrow for this draft is already paid",
                details={"intent_id": existing["intent_id"]},
            )
        if existing["checkout_handle"] is None:
            return await self._request_charge(existing)
        return existing

    async def charge_penalty(
        self,
        task: dict[str, Any],
        user_id: str,
        hours_late: int,
    ) -> dict[str, Any] | None:
        """
        Open a Penalty intent against ``user_id`` for ``hours_late``.

        Returns None when the computed penalty is zero. Gateway errors are
        recorded on the intent, not raised.
        """
        amount = penalty_amount(
            task["penalty_per_hour"], hours_late, task["fee"], self._max_penalty_ratio
        )
        if amount <= 0:
            self._logger.info(
                "No penalty due",
                extra={"task_id": task["task_id"], "hours_late": hours_late},
            )
            return None

        intent = self._new_intent(
            kind=IntentKind.PENALTY,
            user_id=user_id,
            amount=amount,
            draft_id=None,
            task_id=task["task_id"],
            reference_prefix="pen",
        )
        self._store.insert_intent(intent)
        self._logger.info(
            "Penalty intent created",
            extra={
                "intent_id": intent["intent_id"],
                "task_id": task["task_id"],
                "hours_late": hours_late,
                "amount": amount,
            },
        )
        try:
            return await self._request_charge(intent)
        except GatewayError:
            return self._reload(intent["intent_id"])

    # ------------------------------------------------------------------
    # Gateway facts
    # ------------------------------------------------------------------

    async def on_gateway_callback(
        self,
        reference: str,
        outcome: str,
        gateway_charge_id: str | None,
    ) -> dict[str, Any]:
        """
        Apply a gateway webhook for ``reference``.

        A callback for an intent already in a final state is a no-op, so
        replays converge on the first outcome applied.
        """
        intent = self._store.get_intent_by_reference(reference)
        if intent is None:
            raise NotFoundError("INTENT_NOT_FOUND", "No payment intent for this reference")

        if intent["status"] == IntentStatus.VOIDED:
            self._logger.warning(
                "Callback for voided intent ignored",
                extra={"intent_id": intent["intent_id"], "reference": reference, "outcome": outcome},
            )
            if outcome == "success":
                self._events.emit(
                    EventType.PAYMENT_FAILED,
                    task_id=intent["task_id"],
                    user_id=intent["user_id"],
                    kind=intent["kind"],
                    intent_id=intent["intent_id"],
                    amount=intent["amount"],
                    gateway_charge_id=gateway_charge_id,
                    reason="voided_intent_paid",
                )
            return intent
        if intent["status"] in _FINAL_INTENT_STATUSES:
            self._logger.info(
                "Duplicate gateway callback ignored",
                extra={"intent_id": intent["intent_id"], "status": intent["status"]},
            )
            return intent

        if outcome != "success":
            self._fail_intent(intent, "gateway_declined")
            return self._reload(intent["intent_id"])

        rows = self._store.update_intent(
            intent["intent_id"],
            {
                "status": IntentStatus.PAID.value,
                "gateway_charge_id": gateway_charge_id,
                "paid_at": now_iso(),
            },
            expected_status=IntentStatus.PENDING,
        )
        if rows == 0:
            self._logger.info(
                "Gateway callback lost race, intent already settled",
                extra={"intent_id": intent["intent_id"]},
            )
            return self._reload(intent["intent_id"])

        paid = self._reload(intent["intent_id"])
        self._logger.info(
            "Payment intent paid",
            extra={
                "intent_id": paid["intent_id"],
                "kind": paid["kind"],
                "amount": paid["amount"],
                "gateway_charge_id": gateway_charge_id,
            },
        )

        if paid["kind"] == IntentKind.PENALTY:
            self._store.add_user_stats(paid["user_id"], {"total_penalties": paid["amount"]}, now_iso())
            self._events.emit(
                EventType.PENALTY_CHARGED,
                task_id=paid["task_id"],
                user_id=paid["user_id"],
                intent_id=paid["intent_id"],
                amount=paid["amount"],
            )
        elif self._funds_held_handler is not None:
            try:
                await self._funds_held_handler(paid)
            except ServiceError as exc:
                self._logger.error(
                    "Funds held handler failed",
                    extra={"intent_id": paid["intent_id"], "error_code": exc.error},
                )
        return self._reload(paid["intent_id"])

    # ------------------------------------------------------------------
    # Payouts
    # ------------------------------------------------------------------

    async def release_stage(self, task: dict[str, Any], stage: dict[str, Any]) -> dict[str, Any]:
        """
        Pay a delivered stage out to the doer's payout destination.

        The payout reference is stored on the stage before the gateway call
        and reused on retry. Only a confirmed payout sets ``paid``.
        """
        task_id = task["task_id"]
        stage_num = stage["stage_num"]
        doer = self._store.get_user(task["doer_id"]) if task["doer_id"] else None
        if doer is None or not doer["payout_account_number"]:
            self._store.update_stage(
                task_id,
                stage_num,
                {"payout_error": "PAYOUT_DESTINATION_MISSING"},
                require_unpaid=True,
            )
            raise ConflictError(
                "PAYOUT_DESTINATION_MISSING",
                "The doer has no registered payout destination",
                details={"doer_id": task["doer_id"]},
            )

        reference = stage["payout_reference"]
        if reference is None:
            reference = f"po-{uuid.uuid4().hex}"
            rows = self._store.update_stage(
                task_id, stage_num, {"payout_reference": reference}, require_unpaid=True
            )
            if rows == 0:
                raise ConflictError("ALREADY_PAID", f"Stage {stage_num} is already paid")

        try:
            payout_id = await self._gateway_client.create_payout(
                reference,
                stage["amount"],
                task["currency"],
                {
                    "bank_name": doer["payout_bank_name"],
                    "account_number": doer["payout_account_number"],
                },
            )
        except GatewayError as exc:
            self._store.update_stage(
                task_id, stage_num, {"payout_error": exc.error}, require_unpaid=True
            )
            self._events.emit(
                EventType.PAYMENT_FAILED,
                task_id=task_id,
                user_id=task["doer_id"],
                kind="payout",
                stage_num=stage_num,
                reason=exc.error,
            )
            raise

        rows = self._store.update_stage(
            task_id,
            stage_num,
            {"paid": True, "paid_at": now_iso(), "payout_id": payout_id, "payout_error": None},
            require_unpaid=True,
        )
        if rows == 0:
            self._logger.warning(
                "Stage already marked paid, payout not recorded twice",
                extra={"task_id": task_id, "stage_num": stage_num, "payout_reference": reference},
            )
            raise ConflictError("ALREADY_PAID", f"Stage {stage_num} is already paid")

        current_task = self._store.get_task(task_id)
        if current_task is not None and current_task["status"] in _REFUNDABLE_TASK_STATUSES:
            self._logger.error(
                "Payout landed on a closed task",
                extra={"task_id": task_id, "stage_num": stage_num, "status": current_task["status"]},
            )
            self._events.emit(
                EventType.PAYMENT_FAILED,
                task_id=task_id,
                user_id=task["doer_id"],
                kind="payout",
                stage_num=stage_num,
                amount=stage["amount"],
                reason="payout_on_closed_task",
            )
        self._logger.info(
            "Stage paid out",
            extra={
                "task_id": task_id,
                "stage_num": stage_num,
                "amount": stage["amount"],
                "payout_reference": reference,
            },
        )
        self._events.emit(
            EventType.STAGE_PAID,
            task_id=task_id,
            user_id=task["doer_id"],
            stage_num=stage_num,
            amount=stage["amount"],
        )
        for current in self._store.get_stages(task_id):
            if current["stage_num"] == stage_num:
                return current
        msg = f"Stage {stage_num} of task {task_id} not found after payout"
        raise RuntimeError(msg)

    # ------------------------------------------------------------------
    # Refunds and voids
    # ------------------------------------------------------------------

    async def refund(self, intent_id: str, reason: str) -> dict[str, Any]:
        """
        Refund a Paid intent whose task is Canceled or Expired.

        A failed refund is recorded as ``refund_status = failed`` and emitted
        as ``refund.failed`` for manual escalation. It is never retried here.
        """
        intent = self.get_intent(intent_id)
        if intent["status"] != IntentStatus.PAID:
            raise ConflictError(
                "INVALID_TRANSITION",
                f"Only paid intents can be refunded, intent is '{intent['status']}'",
            )
        task = self._store.get_task(intent["task_id"]) if intent["task_id"] else None
        if task is None or task["status"] not in _REFUNDABLE_TASK_STATUSES:
            raise ConflictError(
                "REFUND_NOT_ALLOWED",
                "Refunds are only allowed for canceled or expired tasks",
            )

        current_refund = intent["refund_status"]
        next_refund_status(current_refund, RefundStatus.REQUESTED)
        rows = self._store.update_intent(
            intent_id,
            {
                "refund_status": RefundStatus.REQUESTED.value,
                "refund_reason": reason,
                "refund_requested_at": now_iso(),
            },
            expected_status=IntentStatus.PAID,
            expected_refund_status=current_refund,
        )
        if rows == 0:
            raise ConflictError("CONFLICT", "Refund was requested concurrently")

        try:
            outcome = await self._gateway_client.refund(
                intent["gateway_charge_id"],
                intent["amount"],
                f"{intent['reference']}-refund",
            )
        except GatewayError as exc:
            outcome = f"error:{exc.error}"

        if outcome == "succeeded":
            self._store.update_intent(
                intent_id,
                {"refund_status": RefundStatus.SUCCEEDED.value, "refunded_at": now_iso()},
                expected_status=IntentStatus.PAID,
                expected_refund_status=RefundStatus.REQUESTED,
            )
            self._logger.info(
                "Refund issued",
                extra={"intent_id": intent_id, "task_id": intent["task_id"], "amount": intent["amount"]},
            )
            self._events.emit(
                EventType.REFUND_ISSUED,
                task_id=intent["task_id"],
                user_id=intent["user_id"],
                intent_id=intent_id,
                amount=intent["amount"],
                reason=reason,
            )
        else:
            self._store.update_intent(
                intent_id,
                {"refund_status": RefundStatus.FAILED.value},
                expected_status=IntentStatus.PAID,
                expected_refund_status=RefundStatus.REQUESTED,
            )
            self._logger.error(
                "Refund failed, manual escalation required",
                extra={"intent_id": intent_id, "task_id": intent["task_id"], "outcome": outcome},
            )
            self._events.emit(
                EventType.REFUND_FAILED,
                task_id=intent["task_id"],
                user_id=intent["user_id"],
                intent_id=intent_id,
                amount=intent["amount"],
                outcome=outcome,
            )
        return self._reload(intent_id)

    def void_pending(self, intent_id: str) -> dict[str, Any]:
        """Move a stale Pending intent to Voided so a new one can supersede it."""
        intent = self.get_intent(intent_id)
        next_intent_status(intent["status"], IntentStatus.VOIDED)
        rows = self._store.update_intent(
            intent_id,
            {"status": IntentStatus.VOIDED.value, "voided_at": now_iso()},
            expected_status=IntentStatus.PENDING,
        )
        if rows == 0:
            raise ConflictError("CONFLICT", "Payment intent was settled concurrently")
        self._logger.info(
            "Payment intent voided",
            extra={"intent_id": intent_id, "kind": intent["kind"]},
        )
        return self._reload(intent_id)
