"""Shared request validation helpers for settlement routers."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from task_settlement_service.core.exceptions import ValidationError
from task_settlement_service.core.state import get_app_state

if TYPE_CHECKING:
    from task_settlement_service.services.event_log import EventLog
    from task_settlement_service.services.task_controller import TaskController

ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_json_body(raw_body: bytes) -> dict[str, Any]:
    """Parse JSON body, raising ValidationError on failure."""
    try:
        data = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError("INVALID_JSON", "Request body is not valid JSON") from exc

    if not isinstance(data, dict):
        raise ValidationError("INVALID_JSON", "Request body must be a JSON object")

    return data


def parse_model(raw_body: bytes, model: type[ModelT]) -> ModelT:
    """Parse a JSON body into ``model``; the first pydantic error becomes INVALID_PAYLOAD."""
    data = parse_json_body(raw_body)
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        raise ValidationError(
            "INVALID_PAYLOAD",
            f"Invalid field '{location}': {first['msg']}",
            details={"field": location},
        ) from exc


def parse_required_int(raw: str, name: str, *, minimum: int) -> int:
    """Parse an integer path or query parameter."""
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValidationError("INVALID_PAYLOAD", f"{name} must be an integer") from exc
    if value < minimum:
        raise ValidationError("INVALID_PAYLOAD", f"{name} must be >= {minimum}")
    return value


def parse_int(raw: str | None, name: str, *, minimum: int) -> int | None:
    """Parse an optional integer query parameter."""
    if raw is None:
        return None
    return parse_required_int(raw, name, minimum=minimum)


def get_controller() -> TaskController:
    state = get_app_state()
    if state.task_controller is None:
        msg = "TaskController not initialized"
        raise RuntimeError(msg)
    return state.task_controller


def get_event_log() -> EventLog:
    state = get_app_state()
    if state.event_log is None:
        msg = "EventLog not initialized"
        raise RuntimeError(msg)
    return state.event_log
