"""FastAPI server for the agent orchestrator.

Run with:
    uvicorn orchestrator.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from orchestrator.api.routes import router
from orchestrator.chat import create_chat_orchestrator
from orchestrator.config import CORS_ORIGINS, SERVER_HOST, SERVER_PORT
from orchestrator.services.metrics import metrics

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Build the orchestrator (registry, decision engine, executor) once.

    Everything shared between requests lives on ``app.state``; there are
    no module-level singletons for the decision cache or the engine.
    """
    logger.info("Building chat orchestrator…")
    application.state.orchestrator = create_chat_orchestrator()
    logger.info("Orchestrator ready.")
    yield
    metrics.close()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Agent Orchestrator",
    description=(
        "Multi-tenant chatbot orchestration: decides when a message needs "
        "tools, runs a bounded ReAct loop and streams the reply."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# ── CORS (chat widgets are served from tenant domains) ──────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a request ID to every request for log and telemetry correlation.

    The same ID keys the request's telemetry record and is echoed back in
    the ``X-Request-ID`` response header.
    """
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info("[%s] %s %s", request_id, request.method, request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Agent Orchestrator",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
        "stats": "/api/stats",
    }


# ── CLI entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    logger.info("Starting orchestrator API server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "orchestrator.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
    )
