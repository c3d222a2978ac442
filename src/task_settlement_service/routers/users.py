"""User payout destination and stats endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from task_settlement_service.routers.validation import get_controller, parse_model
from task_settlement_service.schemas import PayoutDestinationRequest

router = APIRouter()


@router.get("/users/{user_id}")
async def get_user(user_id: str) -> JSONResponse:
    return JSONResponse(status_code=200, content=get_controller().get_user(user_id))


@router.put("/users/{user_id}/payout-destination")
async def set_payout_destination(user_id: str, request: Request) -> JSONResponse:
    body = parse_model(await request.body(), PayoutDestinationRequest)
    user = get_controller().set_payout_destination(user_id, body.bank_name, body.account_number)
    return JSONResponse(status_code=200, content=user)
