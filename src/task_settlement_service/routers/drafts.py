"""Draft editing and posting endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from task_settlement_service.routers.validation import get_controller, get_event_log, parse_model
from task_settlement_service.schemas import PostDraftRequest, SaveDraftRequest

router = APIRouter()


@router.get("/drafts/{draft_id}")
async def get_draft(draft_id: str) -> JSONResponse:
    return JSONResponse(status_code=200, content=get_controller().get_draft(draft_id))


@router.put("/drafts/{draft_id}")
async def save_draft(draft_id: str, request: Request) -> JSONResponse:
    """Create or update a draft field by field."""
    body = parse_model(await request.body(), SaveDraftRequest)
    values = body.model_dump(exclude={"creator_id"}, exclude_none=True)
    draft = get_controller().save_draft(draft_id, body.creator_id, values)
    return JSONResponse(status_code=200, content=draft)


@router.post("/drafts/{draft_id}/post")
async def post_draft(draft_id: str, request: Request) -> JSONResponse:
    """Validate a draft and publish it as an open task."""
    body = parse_model(await request.body(), PostDraftRequest)
    with get_event_log().collect() as emitted:
        task = get_controller().post_task(draft_id, body.creator_id)
    return JSONResponse(status_code=201, content={"task": task, "events": emitted})
