"""Schemas shared by the offer and order APIs."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ActorRequest(BaseModel):
    """Request body for actions that carry nothing but the acting party."""

    actor: str = Field(
        ...,
        min_length=1,
        max_length=64,
        description="User id of the acting party, or 'system'",
        examples=["user_buyer_1"],
    )


class ReasonRequest(ActorRequest):
    """Request body for actions that take an optional free-text reason."""

    reason: str = Field(default="", max_length=2000)


class AllowedActionsResponse(BaseModel):
    """Events an actor may fire on an entity right now."""

    status: str
    role: str | None
    allowed_events: list[str] = Field(
        description="State machine events this actor can fire from the current status"
    )


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"
    payment_backend: str = "unknown"
