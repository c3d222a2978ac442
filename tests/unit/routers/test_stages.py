"""Stage delivery, confirmation and revision endpoint tests."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from task_settlement_service.core.exceptions import GatewayError
from tests.helpers import CREATOR_ID, DOER_ID
from tests.unit.routers.conftest import create_task, fund_task


async def _deliver(client, task_id, stage_num):
    return await client.post(
        f"/tasks/{task_id}/stages/{stage_num}/deliver", json={"actor_id": DOER_ID}
    )


async def _confirm(client, task_id, stage_num):
    return await client.post(
        f"/tasks/{task_id}/stages/{stage_num}/confirm", json={"actor_id": CREATOR_ID}
    )


@pytest.mark.unit
async def test_full_staged_settlement(client, gateway_keypair, gateway_mock):
    task = await create_task(client)
    task_id = task["task_id"]
    await fund_task(client, gateway_keypair, task_id)

    for stage_num in (1, 2, 3):
        delivered = await _deliver(client, task_id, stage_num)
        assert delivered.status_code == 200
        confirmed = await _confirm(client, task_id, stage_num)
        assert confirmed.status_code == 200

    final = confirmed.json()
    assert final["task"]["status"] == "completed"
    assert all(stage["paid"] for stage in final["task"]["stages"])
    assert "task.completed" in [event["event_type"] for event in final["events"]]
    amounts = [call.args[1] for call in gateway_mock.create_payout.await_args_list]
    assert amounts == [60, 80, 60]

    doer = (await client.get(f"/users/{DOER_ID}")).json()
    assert doer["total_earned"] == 200
    assert doer["tasks_completed"] == 1


@pytest.mark.unit
async def test_final_delivery_awaits_confirmation(client, gateway_keypair):
    task = await create_task(client, exchange_strategy="100%")
    task_id = task["task_id"]
    await fund_task(client, gateway_keypair, task_id)

    response = await _deliver(client, task_id, 1)

    assert response.json()["task"]["status"] == "pending_final_confirmation"
    assert response.json()["task"]["stages"][0]["review_deadline"] is not None


@pytest.mark.unit
async def test_stage_out_of_order(client, gateway_keypair):
    task = await create_task(client)
    await fund_task(client, gateway_keypair, task["task_id"])

    response = await _deliver(client, task["task_id"], 2)

    assert response.status_code == 409
    assert response.json()["error"] == "STAGE_OUT_OF_ORDER"


@pytest.mark.unit
async def test_deliver_before_funding(client):
    task = await create_task(client)
    response = await _deliver(client, task["task_id"], 1)
    assert response.status_code == 403


@pytest.mark.unit
async def test_confirm_undelivered_stage(client, gateway_keypair):
    task = await create_task(client)
    await fund_task(client, gateway_keypair, task["task_id"])

    response = await _confirm(client, task["task_id"], 1)

    assert response.status_code == 409
    assert response.json()["error"] == "STAGE_NOT_DELIVERED"


@pytest.mark.unit
async def test_payout_failure_leaves_stage_unpaid(client, gateway_keypair, gateway_mock):
    task = await create_task(client)
    task_id = task["task_id"]
    await fund_task(client, gateway_keypair, task_id)
    await _deliver(client, task_id, 1)
    gateway_mock.create_payout = AsyncMock(
        side_effect=GatewayError("GATEWAY_UNAVAILABLE", "down", transient=True)
    )

    failed = await _confirm(client, task_id, 1)

    assert failed.status_code == 502
    stage = (await client.get(f"/tasks/{task_id}")).json()["stages"][0]
    assert stage["paid"] is False
    assert stage["payout_error"] == "GATEWAY_UNAVAILABLE"

    gateway_mock.create_payout = AsyncMock(return_value="pay-ok")
    retried = await _confirm(client, task_id, 1)
    assert retried.status_code == 200
    assert retried.json()["task"]["stages"][0]["paid"] is True


@pytest.mark.unit
async def test_request_revision(client, gateway_keypair):
    task = await create_task(client)
    task_id = task["task_id"]
    await fund_task(client, gateway_keypair, task_id)
    await _deliver(client, task_id, 1)

    response = await client.post(
        f"/tasks/{task_id}/stages/1/revision",
        json={"actor_id": CREATOR_ID, "reason": "Second paragraph is missing"},
    )

    assert response.status_code == 200
    stage = response.json()["task"]["stages"][0]
    assert stage["delivered"] is False
    assert [event["event_type"] for event in response.json()["events"]] == [
        "stage.revision_requested"
    ]


@pytest.mark.unit
@pytest.mark.parametrize("stage_num", ["zero", "0", "-1"])
async def test_invalid_stage_number(client, stage_num):
    task = await create_task(client)
    response = await _deliver(client, task["task_id"], stage_num)
    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_PAYLOAD"


@pytest.mark.unit
async def test_unknown_stage(client, gateway_keypair):
    task = await create_task(client)
    await fund_task(client, gateway_keypair, task["task_id"])

    response = await _deliver(client, task["task_id"], 9)

    assert response.status_code == 404
    assert response.json()["error"] == "STAGE_NOT_FOUND"
