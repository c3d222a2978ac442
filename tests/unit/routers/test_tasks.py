"""Task query, cancellation and rating endpoint tests."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from tests.helpers import CREATOR_ID, DOER_ID, OTHER_ID
from tests.unit.routers.conftest import create_task, fund_task, take_task


async def _cancel(client, task_id, initiator_id=CREATOR_ID):
    return await client.post(
        f"/tasks/{task_id}/cancel", json={"initiator_id": initiator_id, "reason": "Plans changed"}
    )


async def _complete(client, keypair, task_id):
    await fund_task(client, keypair, task_id)
    await client.post(f"/tasks/{task_id}/stages/1/deliver", json={"actor_id": DOER_ID})
    await client.post(f"/tasks/{task_id}/stages/1/confirm", json={"actor_id": CREATOR_ID})


@pytest.mark.unit
async def test_get_task(client):
    task = await create_task(client)

    response = await client.get(f"/tasks/{task['task_id']}")

    assert response.status_code == 200
    assert response.json()["task_id"] == task["task_id"]
    assert len(response.json()["stages"]) == 3


@pytest.mark.unit
async def test_get_unknown_task(client):
    response = await client.get("/tasks/t-missing")
    assert response.status_code == 404
    assert response.json() == {"error": "TASK_NOT_FOUND", "message": "Task not found", "details": {}}


@pytest.mark.unit
async def test_list_tasks_filters(client, gateway_keypair):
    open_task = await create_task(client, "d-1")
    taken = await create_task(client, "d-2")
    await fund_task(client, gateway_keypair, taken["task_id"])

    by_status = (await client.get("/tasks", params={"status": "open"})).json()["tasks"]
    by_doer = (await client.get("/tasks", params={"doer_id": DOER_ID})).json()["tasks"]
    paged = (await client.get("/tasks", params={"limit": 1})).json()["tasks"]

    assert [task["task_id"] for task in by_status] == [open_task["task_id"]]
    assert [task["task_id"] for task in by_doer] == [taken["task_id"]]
    assert len(paged) == 1


@pytest.mark.unit
@pytest.mark.parametrize("params", [{"status": "archived"}, {"limit": "0"}, {"offset": "x"}])
async def test_list_tasks_bad_query(client, params):
    response = await client.get("/tasks", params=params)
    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_PAYLOAD"


@pytest.mark.unit
async def test_cancel_funded_task_refunds(client, gateway_keypair, gateway_mock):
    task = await create_task(client)
    funded = await fund_task(client, gateway_keypair, task["task_id"])

    response = await _cancel(client, task["task_id"])

    assert response.status_code == 200
    body = response.json()
    assert body["task"]["status"] == "canceled"
    assert body["task"]["canceled_by"] == CREATOR_ID
    assert [refund["intent_id"] for refund in body["refunds"]] == [funded["intent"]["intent_id"]]
    assert body["refunds"][0]["refund_status"] == "succeeded"
    assert body["penalty"] is None
    gateway_mock.refund.assert_awaited_once()
    event_types = [event["event_type"] for event in body["events"]]
    assert event_types == ["task.canceled", "refund.issued"]


@pytest.mark.unit
async def test_cancel_with_pending_escrow_voids_it(client, gateway_mock):
    task = await create_task(client)
    taken = await take_task(client, task["task_id"])

    response = await _cancel(client, task["task_id"], DOER_ID)

    assert response.status_code == 200
    assert response.json()["refunds"] == []
    intent = (await client.get(f"/payment-intents/{taken['escrow']['intent_id']}")).json()
    assert intent["status"] == "voided"
    gateway_mock.refund.assert_not_awaited()


@pytest.mark.unit
async def test_cancel_open_task_rejected(client):
    task = await create_task(client)
    response = await _cancel(client, task["task_id"])
    assert response.status_code == 409
    assert response.json()["error"] == "INVALID_TRANSITION"


@pytest.mark.unit
async def test_cancel_by_outsider(client, gateway_keypair):
    task = await create_task(client)
    await fund_task(client, gateway_keypair, task["task_id"])
    response = await _cancel(client, task["task_id"], OTHER_ID)
    assert response.status_code == 403


@pytest.mark.unit
async def test_cancel_after_paid_stage(client, gateway_keypair):
    task = await create_task(client)
    task_id = task["task_id"]
    await fund_task(client, gateway_keypair, task_id)
    await client.post(f"/tasks/{task_id}/stages/1/deliver", json={"actor_id": DOER_ID})
    await client.post(f"/tasks/{task_id}/stages/1/confirm", json={"actor_id": CREATOR_ID})

    response = await _cancel(client, task_id)

    assert response.status_code == 409
    assert response.json()["error"] == "STAGE_ALREADY_PAID"


@pytest.mark.unit
async def test_retry_escrow_on_funded_task(client, gateway_keypair, gateway_mock):
    task = await create_task(client)
    await fund_task(client, gateway_keypair, task["task_id"])
    gateway_mock.create_charge = AsyncMock(return_value="chk-unused")

    response = await client.post(
        f"/tasks/{task['task_id']}/escrow/retry", json={"actor_id": CREATOR_ID}
    )

    assert response.status_code == 409
    gateway_mock.create_charge.assert_not_awaited()


@pytest.mark.unit
async def test_rate_completed_task(client, gateway_keypair):
    task = await create_task(client, exchange_strategy="100%")
    await _complete(client, gateway_keypair, task["task_id"])

    response = await client.post(
        f"/tasks/{task['task_id']}/ratings", json={"rater_id": CREATOR_ID, "score": 4}
    )
    again = await client.post(
        f"/tasks/{task['task_id']}/ratings", json={"rater_id": CREATOR_ID, "score": 5}
    )

    assert response.status_code == 201
    assert response.json()["user"]["user_id"] == DOER_ID
    assert response.json()["user"]["average_rating"] == 4
    assert again.status_code == 409
    assert again.json()["error"] == "ALREADY_RATED"


@pytest.mark.unit
async def test_rate_score_out_of_range(client):
    task = await create_task(client)
    response = await client.post(
        f"/tasks/{task['task_id']}/ratings", json={"rater_id": CREATOR_ID, "score": 9}
    )
    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_PAYLOAD"


@pytest.mark.unit
async def test_payout_destination_round_trip(client):
    response = await client.put(
        f"/users/{DOER_ID}/payout-destination",
        json={"bank_name": " Awash Bank ", "account_number": "0132000000"},
    )

    assert response.status_code == 200
    assert response.json()["payout_bank_name"] == "Awash Bank"
    assert (await client.get(f"/users/{DOER_ID}")).json()["payout_account_number"] == "0132000000"


@pytest.mark.unit
async def test_unknown_user(client):
    response = await client.get("/users/u-nobody")
    assert response.status_code == 404
    assert response.json()["error"] == "USER_NOT_FOUND"
