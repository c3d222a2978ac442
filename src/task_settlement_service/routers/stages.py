"""Stage delivery, confirmation and revision endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from task_settlement_service.routers.validation import (
    get_controller,
    get_event_log,
    parse_model,
    parse_required_int,
)
from task_settlement_service.schemas import ActorRequest, RevisionRequest

router = APIRouter()


@router.post("/tasks/{task_id}/stages/{stage_num}/deliver")
async def deliver_stage(task_id: str, stage_num: str, request: Request) -> JSONResponse:
    number = parse_required_int(stage_num, "stage_num", minimum=1)
    body = parse_model(await request.body(), ActorRequest)
    with get_event_log().collect() as emitted:
        task = get_controller().mark_stage_delivered(task_id, number, body.actor_id)
    return JSONResponse(status_code=200, content={"task": task, "events": emitted})


@router.post("/tasks/{task_id}/stages/{stage_num}/confirm")
async def confirm_stage(task_id: str, stage_num: str, request: Request) -> JSONResponse:
    """Creator confirms a delivered stage, releasing its payout."""
    number = parse_required_int(stage_num, "stage_num", minimum=1)
    body = parse_model(await request.body(), ActorRequest)
    with get_event_log().collect() as emitted:
        task = await get_controller().confirm_stage(task_id, number, body.actor_id)
    return JSONResponse(status_code=200, content={"task": task, "events": emitted})


@router.post("/tasks/{task_id}/stages/{stage_num}/revision")
async def request_revision(task_id: str, stage_num: str, request: Request) -> JSONResponse:
    number = parse_required_int(stage_num, "stage_num", minimum=1)
    body = parse_model(await request.body(), RevisionRequest)
    with get_event_log().collect() as emitted:
        task = get_controller().request_revision(task_id, number, body.actor_id, body.reason)
    return JSONResponse(status_code=200, content={"task": task, "events": emitted})
