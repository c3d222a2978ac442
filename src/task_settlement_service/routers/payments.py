"""Payment intent endpoints and the gateway webhook."""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from task_settlement_service.core.state import get_app_state
from task_settlement_service.routers.validation import get_controller, get_event_log, parse_model
from task_settlement_service.schemas import RefundRequest, WebhookRequest

router = APIRouter()


@router.get("/payment-intents/{intent_id}")
async def get_intent(intent_id: str) -> JSONResponse:
    return JSONResponse(status_code=200, content=get_controller().get_intent(intent_id))


@router.post("/payment-intents/{intent_id}/refund")
async def refund_intent(intent_id: str, request: Request) -> JSONResponse:
    """Manual refund of a paid intent on a canceled or expired task."""
    body = parse_model(await request.body(), RefundRequest)
    with get_event_log().collect() as emitted:
        intent = await get_controller().refund_intent(intent_id, body.reason)
    return JSONResponse(status_code=200, content={"intent": intent, "events": emitted})


@router.post("/payment-intents/{intent_id}/void")
async def void_intent(intent_id: str) -> JSONResponse:
    intent = get_controller().void_intent(intent_id)
    return JSONResponse(status_code=200, content={"intent": intent, "events": []})


@router.post("/webhooks/gateway")
async def gateway_webhook(request: Request) -> JSONResponse:
    """Apply a signed gateway callback. Replays are acknowledged without effect."""
    body = parse_model(await request.body(), WebhookRequest)

    state = get_app_state()
    if state.webhook_verifier is None:
        msg = "WebhookVerifier not initialized"
        raise RuntimeError(msg)
    payload = state.webhook_verifier.verify(body.token)

    with get_event_log().collect() as emitted:
        intent = await get_controller().handle_gateway_callback(
            payload["reference"], payload["outcome"], payload.get("gateway_charge_id")
        )
    return JSONResponse(status_code=200, content={"intent": intent, "events": emitted})
