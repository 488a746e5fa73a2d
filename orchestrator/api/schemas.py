"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field

from orchestrator.models import PlanTier


class ChatRequest(BaseModel):
    """Incoming chat message from a chatbot widget or integration."""

    message: str = Field(..., min_length=1, max_length=4000, description="The user's message")
    session_id: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Unique session identifier for conversation continuity",
    )
    tenant_id: str = Field(..., min_length=1, max_length=100, description="Owner of the chatbot")
    chatbot_id: str | None = Field(None, max_length=100)
    user_id: str | None = Field(None, max_length=100)
    plan: PlanTier | None = Field(
        None, description="Plan override; defaults to the tenant's plan on record",
    )


class ChatResponse(BaseModel):
    """Response from the orchestrator."""

    reply: str = Field(..., description="The assistant's response message")
    session_id: str = Field(..., description="The session ID for this conversation")
    request_id: str
    success: bool = True
    tools_used: list[str] = Field(default_factory=list)
    iterations: int = 0
    needs_tools: bool = False
    confidence: int = Field(0, ge=0, le=100, description="Tool-need confidence (0-100)")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "agent-orchestrator"


class ModelCount(BaseModel):
    model: str
    count: int


class ProviderCount(BaseModel):
    provider: str
    count: int


class StatsResponse(BaseModel):
    """Aggregated telemetry over a trailing window."""

    window_seconds: int
    total_requests: int
    avg_response_ms: int
    avg_decision_ms: int
    tool_usage_rate: float
    streaming_rate: float
    fallback_rate: float
    error_rate: float
    decision_cache_rate: float
    top_models: list[ModelCount]
    top_providers: list[ProviderCount]
    decision_engine: dict[str, float]
