"""Task queries, escrow retry, cancellation and ratings."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from task_settlement_service.core.exceptions import ValidationError
from task_settlement_service.routers.validation import (
    get_controller,
    get_event_log,
    parse_int,
    parse_model,
)
from task_settlement_service.schemas import ActorRequest, CancelRequest, RatingRequest
from task_settlement_service.services.state_machines import TaskStatus

router = APIRouter()

_STATUSES = frozenset(status.value for status in TaskStatus)


@router.get("/tasks")
async def list_tasks(request: Request) -> dict[str, Any]:
    """List tasks with optional filters."""
    status = request.query_params.get("status")
    if status is not None and status not in _STATUSES:
        raise ValidationError("INVALID_PAYLOAD", f"Unknown task status '{status}'")
    offset = parse_int(request.query_params.get("offset"), "offset", minimum=0)
    limit = parse_int(request.query_params.get("limit"), "limit", minimum=1)

    tasks = get_controller().list_tasks(
        status=status,
        creator_id=request.query_params.get("creator_id"),
        doer_id=request.query_params.get("doer_id"),
        limit=limit,
        offset=offset,
    )
    return {"tasks": tasks}


@router.get("/tasks/{task_id}")
async def get_task(task_id: str) -> JSONResponse:
    return JSONResponse(status_code=200, content=get_controller().get_task(task_id))


@router.post("/tasks/{task_id}/escrow/retry")
async def retry_escrow(task_id: str, request: Request) -> JSONResponse:
    """Re-request escrow for a taken task whose earlier attempt failed."""
    body = parse_model(await request.body(), ActorRequest)
    with get_event_log().collect() as emitted:
        result = await get_controller().retry_escrow(task_id, body.actor_id)
    return JSONResponse(status_code=200, content={**result, "events": emitted})


@router.post("/tasks/{task_id}/cancel")
async def cancel_task(task_id: str, request: Request) -> JSONResponse:
    """Cancel a task, refunding escrow and charging any late penalty."""
    body = parse_model(await request.body(), CancelRequest)
    with get_event_log().collect() as emitted:
        result = await get_controller().cancel(task_id, body.initiator_id, body.reason)
    return JSONResponse(status_code=200, content={**result, "events": emitted})


@router.post("/tasks/{task_id}/ratings")
async def rate_task(task_id: str, request: Request) -> JSONResponse:
    body = parse_model(await request.body(), RatingRequest)
    user = get_controller().rate(task_id, body.rater_id, body.score)
    return JSONResponse(status_code=201, content={"user": user})
