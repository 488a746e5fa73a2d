"""FastAPI route definitions for the agent orchestrator API."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from orchestrator.api.schemas import ChatRequest, ChatResponse, HealthResponse, StatsResponse
from orchestrator.chat import ChatOrchestrator, ChatTurn
from orchestrator.config import TELEMETRY_WINDOW_SECONDS
from orchestrator.models import AgentEvent
from orchestrator.prompts import GENERIC_ERROR_MESSAGE

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_orchestrator(request: Request) -> ChatOrchestrator:
    """Retrieve the chat orchestrator built during the FastAPI lifespan."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=503,
            detail="The agent is still starting up. Please try again in a moment.",
        )
    return orchestrator


def _turn(body: ChatRequest, request_id: str | None) -> ChatTurn:
    return ChatTurn(
        message=body.message,
        session_id=body.session_id,
        tenant_id=body.tenant_id,
        chatbot_id=body.chatbot_id,
        user_id=body.user_id,
        plan=body.plan,
        request_id=request_id,
    )


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.post("/chat", response_model=ChatResponse)
async def chat(body: ChatRequest, http_request: Request):
    """Answer a message, running the agent loop when the message needs tools.

    ``ChatOrchestrator.handle`` is synchronous and blocking (model and
    Stripe calls), so it runs in the default thread pool via
    ``asyncio.to_thread`` to keep the event loop free.
    """
    orchestrator = _get_orchestrator(http_request)
    request_id = getattr(http_request.state, "request_id", None)

    try:
        reply = await asyncio.to_thread(orchestrator.handle, _turn(body, request_id))
    except Exception as e:
        # Full traceback server-side only
        logger.exception("[%s] Error processing chat request", request_id)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e

    return ChatResponse(
        reply=reply.content,
        session_id=reply.session_id,
        request_id=reply.request_id,
        success=reply.success,
        tools_used=reply.tools_used,
        iterations=reply.iterations,
        needs_tools=reply.needs_tools,
        confidence=reply.confidence,
    )


@router.post("/chat/stream")
async def chat_stream(body: ChatRequest, http_request: Request):
    """Server-Sent Events: one JSON ``AgentEvent`` per ``data:`` line.

    The sync generator is iterated by Starlette in its thread pool, so the
    blocking model calls never run on the event loop.
    """
    orchestrator = _get_orchestrator(http_request)
    request_id = getattr(http_request.state, "request_id", None)
    turn = _turn(body, request_id)

    def event_stream() -> Iterator[str]:
        try:
            for event in orchestrator.stream(turn):
                yield event.to_sse()
        except Exception:
            logger.exception("[%s] Error while streaming chat response", request_id)
            yield AgentEvent.error(GENERIC_ERROR_MESSAGE).to_sse()
            yield AgentEvent.done({"request_id": request_id, "success": False}).to_sse()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/stats", response_model=StatsResponse)
async def stats(
    http_request: Request,
    window_seconds: int = Query(TELEMETRY_WINDOW_SECONDS, ge=60, le=30 * 86_400),
):
    """Aggregated request telemetry plus decision-engine cache figures."""
    orchestrator = _get_orchestrator(http_request)
    return StatsResponse(
        window_seconds=window_seconds,
        decision_engine=orchestrator.engine.stats(),
        **orchestrator.monitor.aggregated_stats(window_seconds),
    )
