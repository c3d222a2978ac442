"""Pydantic request/response models for the API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    model_config = ConfigDict(extra="forbid")
    status: Literal["ok"]
    uptime_seconds: float
    started_at: str
    total_tasks: int
    tasks_by_status: dict[str, int]


class ErrorResponse(BaseModel):
    """Standard error response model."""

    model_config = ConfigDict(extra="forbid")
    error: str
    message: str
    details: dict[str, object]


class SaveDraftRequest(BaseModel):
    """PUT /drafts/{draft_id}. Omitted fields keep their stored value."""

    model_config = ConfigDict(extra="forbid")
    creator_id: str = Field(min_length=1)
    description: str | None = None
    fields: list[str] | None = None
    skill_level: str | None = None
    fee: int | None = None
    completion_hours: int | None = None
    revision_hours: int | None = None
    penalty_per_hour: int | None = None
    expiry_hours: int | None = None
    exchange_strategy: str | None = None
    manual_confirmation: bool | None = None


class PostDraftRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    creator_id: str = Field(min_length=1)


class ApplyRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    user_id: str = Field(min_length=1)
    cover_text: str = Field(min_length=1, max_length=2000)


class ActorRequest(BaseModel):
    """Body for commands that only identify who is acting."""

    model_config = ConfigDict(extra="forbid")
    actor_id: str = Field(min_length=1)


class RevisionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    actor_id: str = Field(min_length=1)
    reason: str = Field(min_length=1, max_length=1000)


class CancelRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    initiator_id: str = Field(min_length=1)
    reason: str = Field(min_length=1, max_length=1000)


class RatingRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    rater_id: str = Field(min_length=1)
    score: int = Field(ge=1, le=5)


class RefundRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    reason: str = Field(min_length=1, max_length=1000)


class WebhookRequest(BaseModel):
    """Gateway webhook: a JWS compact token signed by the gateway."""

    model_config = ConfigDict(extra="forbid")
    token: str = Field(min_length=1)


class PayoutDestinationRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    bank_name: str = Field(min_length=1, max_length=200)
    account_number: str = Field(min_length=1, max_length=64)
