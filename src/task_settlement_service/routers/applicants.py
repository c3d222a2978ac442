"""Applicant endpoints: apply, accept, decline, confirm, withdraw."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from task_settlement_service.routers.validation import get_controller, get_event_log, parse_model
from task_settlement_service.schemas import ActorRequest, ApplyRequest

router = APIRouter()


@router.get("/tasks/{task_id}/applicants")
async def list_applicants(task_id: str) -> dict[str, Any]:
    return {"applicants": get_controller().list_applicants(task_id)}


@router.post("/tasks/{task_id}/applicants")
async def apply(task_id: str, request: Request) -> JSONResponse:
    """Submit an application to an open task."""
    body = parse_model(await request.body(), ApplyRequest)
    with get_event_log().collect() as emitted:
        applicant = get_controller().apply(task_id, body.user_id, body.cover_text)
    return JSONResponse(status_code=201, content={"applicant": applicant, "events": emitted})


@router.post("/tasks/{task_id}/applicants/{applicant_id}/accept")
async def accept(task_id: str, applicant_id: str, request: Request) -> JSONResponse:
    body = parse_model(await request.body(), ActorRequest)
    with get_event_log().collect() as emitted:
        applicant = get_controller().accept(task_id, applicant_id, body.actor_id)
    return JSONResponse(status_code=200, content={"applicant": applicant, "events": emitted})


@router.post("/tasks/{task_id}/applicants/{applicant_id}/decline")
async def decline(task_id: str, applicant_id: str, request: Request) -> JSONResponse:
    body = parse_model(await request.body(), ActorRequest)
    with get_event_log().collect() as emitted:
        applicant = get_controller().decline(task_id, applicant_id, body.actor_id)
    return JSONResponse(status_code=200, content={"applicant": applicant, "events": emitted})


@router.post("/tasks/{task_id}/applicants/{applicant_id}/confirm")
async def confirm(task_id: str, applicant_id: str, request: Request) -> JSONResponse:
    """Accepted applicant confirms; the task is taken and escrow requested."""
    body = parse_model(await request.body(), ActorRequest)
    with get_event_log().collect() as emitted:
        result = await get_controller().confirm_applicant(task_id, applicant_id, body.actor_id)
    return JSONResponse(status_code=200, content={**result, "events": emitted})


@router.post("/tasks/{task_id}/applicants/{applicant_id}/withdraw")
async def withdraw(task_id: str, applicant_id: str, request: Request) -> JSONResponse:
    body = parse_model(await request.body(), ActorRequest)
    with get_event_log().collect() as emitted:
        applicant = get_controller().withdraw(task_id, applicant_id, body.actor_id)
    return JSONResponse(status_code=200, content={"applicant": applicant, "events": emitted})
