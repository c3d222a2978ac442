"""
Stage schedule derivation and delivery/payment ordering rules.

Pure functions: no I/O, no clock. Stages are plain dicts with at least
``stage_num``, ``percent``, ``delivered`` and ``paid`` keys, as returned by
the store.
"""

from __future__ import annotations

from typing import Any

from task_settlement_service.core.exceptions import ValidationError
from task_settlement_service.services.state_machines import ExchangeStrategy

# Fixed by strategy identity so a schedule is always reproducible.
_STRATEGY_SPLITS: dict[ExchangeStrategy, tuple[int, ...]] = {
    ExchangeStrategy.FULL: (100,),
    ExchangeStrategy.EVEN: (50, 50),
    ExchangeStrategy.THREE_WAY: (30, 40, 30),
}


def stage_amounts(fee: int, percents: tuple[int, ...]) -> list[int]:
    """Split ``fee`` by percentage; the rounding remainder goes to the last stage."""
    amounts = [fee * percent // 100 for percent in percents]
    amounts[-1] += fee - sum(amounts)
    return amounts


def build_schedule(strategy: str, fee: int) -> list[dict[str, Any]]:
    """Derive the ordered stage schedule for an exchange strategy and fee."""
    try:
        percents = _STRATEGY_SPLITS[ExchangeStrategy(strategy)]
    except ValueError as exc:
        raise ValidationError(
            "INVALID_STRATEGY",
            f"Unknown exchange strategy '{strategy}'",
        ) from exc

    stages = [
        {
            "stage_num": index,
            "percent": percent,
            "amount": amount,
            "delivered": False,
            "paid": False,
            "delivered_at": None,
            "paid_at": None,
        }
        for index, (percent, amount) in enumerate(
            zip(percents, stage_amounts(fee, percents), strict=True), start=1
        )
    ]
    validate_schedule(stages)
    return stages


def validate_schedule(stages: list[dict[str, Any]]) -> None:
    """Percentages sum to 100 and stage numbers run 1..N without gaps."""
    if sum(stage["percent"] for stage in stages) != 100:
        raise ValidationError("INVALID_SCHEDULE", "Stage percentages must sum to 100")
    numbers = [stage["stage_num"] for stage in stages]
    if numbers != list(range(1, len(stages) + 1)):
        raise ValidationError("INVALID_SCHEDULE", "Stage numbers must be contiguous from 1")


def _find(stages: list[dict[str, Any]], stage_num: int) -> dict[str, Any] | None:
    for stage in stages:
        if stage["stage_num"] == stage_num:
            return stage
    return None


def can_mark_delivered(stages: list[dict[str, Any]], stage_num: int) -> bool:
    """
    A stage may be delivered only if it is the lowest undelivered stage and
    the previous stage (if any) has been paid.
    """
    undelivered = [stage["stage_num"] for stage in stages if not stage["delivered"]]
    if not undelivered or min(undelivered) != stage_num:
        return False
    if stage_num == 1:
        return True
    previous = _find(stages, stage_num - 1)
    return previous is not None and bool(previous["paid"])


def can_mark_paid(stages: list[dict[str, Any]], stage_num: int) -> bool:
    stage = _find(stages, stage_num)
    return stage is not None and bool(stage["delivered"]) and not stage["paid"]


def is_final_stage(stages: list[dict[str, Any]], stage_num: int) -> bool:
    return stage_num == max(stage["stage_num"] for stage in stages)


def all_paid(stages: list[dict[str, Any]]) -> bool:
    return all(stage["paid"] for stage in stages)


def any_paid(stages: list[dict[str, Any]]) -> bool:
    return any(stage["paid"] for stage in stages)
