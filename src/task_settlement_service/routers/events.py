"""Domain event feed polled by the conversational layer."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request

from task_settlement_service.routers.validation import get_event_log, parse_int

router = APIRouter()

_MAX_LIMIT = 500


@router.get("/events")
async def list_events(request: Request) -> dict[str, Any]:
    """Events with ``event_id`` greater than ``after``, oldest first."""
    after = parse_int(request.query_params.get("after"), "after", minimum=0)
    limit = parse_int(request.query_params.get("limit"), "limit", minimum=1) or 100
    events = get_event_log().list_events(
        after=after,
        task_id=request.query_params.get("task_id"),
        user_id=request.query_params.get("user_id"),
        limit=min(limit, _MAX_LIMIT),
    )
    return {"events": events}
