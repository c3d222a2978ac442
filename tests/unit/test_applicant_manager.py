"""Unit tests for applicant intake, selection and confirmation."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import pytest
from freezegun import freeze_time

from task_settlement_service.core.exceptions import (
    ConflictError,
    ExpiredError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from task_settlement_service.services.timestamps import parse_iso
from tests.helpers import CREATOR_ID, DOER_ID, OTHER_ID, accept_applicant, post_task

if TYPE_CHECKING:
    from tests.helpers import Services


def _event_types(services: Services, task_id: str) -> list[str]:
    return [event["event_type"] for event in services.events.list_events(task_id=task_id)]


@pytest.mark.unit
def test_apply_creates_pending_applicant(services: Services) -> None:
    task = post_task(services)

    applicant = services.controller.apply(task["task_id"], DOER_ID, "Native Amharic speaker")

    assert applicant["status"] == "pending"
    assert applicant["user_id"] == DOER_ID
    assert applicant["applicant_id"].startswith("ap-")
    events = services.events.list_events(task_id=task["task_id"])
    assert events[-1]["event_type"] == "applicant.applied"
    assert events[-1]["user_id"] == CREATOR_ID


@pytest.mark.unit
def test_apply_twice_is_rejected(services: Services) -> None:
    task = post_task(services)
    services.controller.apply(task["task_id"], DOER_ID, "First try")

    with pytest.raises(ConflictError) as exc_info:
        services.controller.apply(task["task_id"], DOER_ID, "Second try")
    assert exc_info.value.error == "DUPLICATE_APPLICATION"


@pytest.mark.unit
def test_creator_cannot_apply(services: Services) -> None:
    task = post_task(services)
    with pytest.raises(ForbiddenError) as exc_info:
        services.controller.apply(task["task_id"], CREATOR_ID, "Doing it myself")
    assert exc_info.value.error == "SELF_APPLICATION"


@pytest.mark.unit
def test_blank_cover_text_rejected(services: Services) -> None:
    task = post_task(services)
    with pytest.raises(ValidationError) as exc_info:
        services.controller.apply(task["task_id"], DOER_ID, "   ")
    assert exc_info.value.error == "INVALID_COVER_TEXT"


@pytest.mark.unit
def test_apply_to_unknown_task(services: Services) -> None:
    with pytest.raises(NotFoundError) as exc_info:
        services.controller.apply("t-missing", DOER_ID, "Hello")
    assert exc_info.value.error == "TASK_NOT_FOUND"


@pytest.mark.unit
def test_accept_declines_other_pending_applicants(services: Services) -> None:
    task = post_task(services)
    task_id = task["task_id"]
    chosen = services.controller.apply(task_id, DOER_ID, "Pick me")
    rival = services.controller.apply(task_id, OTHER_ID, "Or me")

    accepted = services.controller.accept(task_id, chosen["applicant_id"], CREATOR_ID)

    assert accepted["status"] == "accepted"
    assert accepted["confirm_deadline"] is not None
    assert services.applicants.get_applicant(task_id, rival["applicant_id"])["status"] == "declined"
    assert _event_types(services, task_id)[-2:] == ["applicant.accepted", "applicant.declined"]


@pytest.mark.unit
def test_confirm_deadline_uses_confirmation_window(services: Services) -> None:
    task = post_task(services)
    accepted = accept_applicant(services, task["task_id"])

    window = parse_iso(accepted["confirm_deadline"]) - parse_iso(accepted["accepted_at"])
    assert window == timedelta(seconds=services.settlement.confirmation_window_seconds)


@pytest.mark.unit
def test_only_creator_accepts(services: Services) -> None:
    task = post_task(services)
    applicant = services.controller.apply(task["task_id"], DOER_ID, "Pick me")
    with pytest.raises(ForbiddenError):
        services.controller.accept(task["task_id"], applicant["applicant_id"], OTHER_ID)


@pytest.mark.unit
async def test_concurrent_accepts_select_one_winner(services: Services) -> None:
    """Two accepts racing on the same task: exactly one wins."""
    task = post_task(services)
    task_id = task["task_id"]
    first = services.controller.apply(task_id, DOER_ID, "Pick me")
    second = services.controller.apply(task_id, OTHER_ID, "No, me")

    async def attempt(applicant_id: str) -> dict[str, Any]:
        return services.controller.accept(task_id, applicant_id, CREATOR_ID)

    results = await asyncio.gather(
        attempt(first["applicant_id"]),
        attempt(second["applicant_id"]),
        return_exceptions=True,
    )

    winners = [result for result in results if isinstance(result, dict)]
    losers = [result for result in results if isinstance(result, ConflictError)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert losers[0].error == "CONFLICT"
    statuses = sorted(row["status"] for row in services.applicants.list_applicants(task_id))
    assert statuses == ["accepted", "declined"]


@pytest.mark.unit
def test_accept_after_winner_selected(services: Services) -> None:
    task = post_task(services)
    task_id = task["task_id"]
    accept_applicant(services, task_id)
    late = services.controller.apply(task_id, OTHER_ID, "Still interested")

    with pytest.raises(ConflictError) as exc_info:
        services.controller.accept(task_id, late["applicant_id"], CREATOR_ID)
    assert exc_info.value.error == "CONFLICT"


@pytest.mark.unit
def test_decline_only_pending(services: Services) -> None:
    task = post_task(services)
    task_id = task["task_id"]
    applicant = services.controller.apply(task_id, DOER_ID, "Pick me")

    declined = services.controller.decline(task_id, applicant["applicant_id"], CREATOR_ID)
    assert declined["status"] == "declined"

    with pytest.raises(ConflictError) as exc_info:
        services.controller.decline(task_id, applicant["applicant_id"], CREATOR_ID)
    assert exc_info.value.error == "INVALID_TRANSITION"


@pytest.mark.unit
def test_withdraw_by_applicant_only(services: Services) -> None:
    task = post_task(services)
    task_id = task["task_id"]
    applicant = services.controller.apply(task_id, DOER_ID, "Pick me")

    with pytest.raises(ForbiddenError):
        services.controller.withdraw(task_id, applicant["applicant_id"], OTHER_ID)

    withdrawn = services.controller.withdraw(task_id, applicant["applicant_id"], DOER_ID)
    assert withdrawn["status"] == "canceled"
    assert _event_types(services, task_id)[-1] == "applicant.withdrawn"


@pytest.mark.unit
async def test_confirm_takes_task(services: Services) -> None:
    task = post_task(services)
    task_id = task["task_id"]
    accepted = accept_applicant(services, task_id)

    result = await services.controller.confirm_applicant(task_id, accepted["applicant_id"], DOER_ID)

    assert result["applicant"]["status"] == "confirmed"
    assert result["task"]["status"] == "taken"
    assert result["task"]["doer_id"] == DOER_ID
    assert result["task"]["accepted_applicant_id"] == accepted["applicant_id"]
    assert result["task"]["decisions_locked_at"] is None
    assert result["escrow"]["status"] == "pending"


@pytest.mark.unit
async def test_confirm_by_other_user_forbidden(services: Services) -> None:
    task = post_task(services)
    accepted = accept_applicant(services, task["task_id"])
    with pytest.raises(ForbiddenError):
        await services.controller.confirm_applicant(
            task["task_id"], accepted["applicant_id"], OTHER_ID
        )


@pytest.mark.unit
async def test_confirm_pending_applicant_rejected(services: Services) -> None:
    task = post_task(services)
    applicant = services.controller.apply(task["task_id"], DOER_ID, "Pick me")
    with pytest.raises(ConflictError) as exc_info:
        await services.controller.confirm_applicant(
            task["task_id"], applicant["applicant_id"], DOER_ID
        )
    assert exc_info.value.error == "INVALID_TRANSITION"


@pytest.mark.unit
async def test_confirm_after_deadline_expired(services: Services) -> None:
    with freeze_time("2026-03-01 08:00:00") as frozen:
        task = post_task(services)
        accepted = accept_applicant(services, task["task_id"])

        frozen.tick(timedelta(seconds=services.settlement.confirmation_window_seconds + 1))
        with pytest.raises(ExpiredError) as exc_info:
            await services.controller.confirm_applicant(
                task["task_id"], accepted["applicant_id"], DOER_ID
            )

    assert exc_info.value.error == "EXPIRED"
    assert services.controller.get_task(task["task_id"])["status"] == "open"


@pytest.mark.unit
async def test_confirm_after_auto_decline_expired(services: Services) -> None:
    """Once the sweep has declined a lapsed applicant, confirming still reports expiry."""
    with freeze_time("2026-03-01 08:00:00") as frozen:
        task = post_task(services)
        accepted = accept_applicant(services, task["task_id"])

        frozen.tick(timedelta(seconds=services.settlement.confirmation_window_seconds + 1))
        await services.scheduler.run_once()
        assert services.applicants.get_applicant(task["task_id"], accepted["applicant_id"])[
            "status"
        ] == "declined"

        with pytest.raises(ExpiredError) as exc_info:
            await services.controller.confirm_applicant(
                task["task_id"], accepted["applicant_id"], DOER_ID
            )

    assert exc_info.value.error == "EXPIRED"


@pytest.mark.unit
def test_decline_if_lapsed(services: Services) -> None:
    with freeze_time("2026-03-01 08:00:00"):
        task = post_task(services)
        accepted = accept_applicant(services, task["task_id"])

    deadline = parse_iso(accepted["confirm_deadline"])
    assert services.applicants.decline_if_lapsed(accepted, deadline) is False
    assert services.applicants.decline_if_lapsed(accepted, deadline + timedelta(seconds=1)) is True
    # Second pass sees the stale snapshot and loses the status check.
    assert services.applicants.decline_if_lapsed(accepted, deadline + timedelta(seconds=2)) is False

    refreshed = services.applicants.get_applicant(task["task_id"], accepted["applicant_id"])
    assert refreshed["status"] == "declined"


@pytest.mark.unit
def test_send_reminder_respects_lead_and_cooldown(services: Services) -> None:
    with freeze_time("2026-03-01 08:00:00"):
        task = post_task(services)
        accept_applicant(services, task["task_id"])

    def current() -> dict[str, Any]:
        return services.store.list_applicants_by_status("accepted")[0]

    deadline = parse_iso(current()["confirm_deadline"])
    lead = timedelta(seconds=services.settlement.reminder_lead_seconds)
    cooldown = timedelta(seconds=services.settlement.reminder_cooldown_seconds)

    assert services.applicants.send_reminder(current(), deadline - lead - timedelta(minutes=1)) is False

    first = deadline - lead + timedelta(minutes=1)
    assert services.applicants.send_reminder(current(), first) is True
    assert services.applicants.send_reminder(current(), first + timedelta(minutes=5)) is False
    assert services.applicants.send_reminder(current(), first + cooldown + timedelta(seconds=1)) is True
    assert services.applicants.send_reminder(current(), deadline + timedelta(seconds=1)) is False

    reminders = [
        event
        for event in services.events.list_events(task_id=task["task_id"])
        if event["event_type"] == "applicant.reminder"
    ]
    assert len(reminders) == 2
    assert reminders[0]["user_id"] == DOER_ID


@pytest.mark.unit
def test_reminder_timestamps_are_utc(services: Services) -> None:
    with freeze_time("2026-03-01 08:00:00"):
        task = post_task(services)
        accepted = accept_applicant(services, task["task_id"])
    assert parse_iso(accepted["accepted_at"]) == datetime(2026, 3, 1, 8, 0, tzinfo=UTC)
