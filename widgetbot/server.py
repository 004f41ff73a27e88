"""FastAPI server for the widget chat core.

Run with:
    uvicorn widgetbot.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from widgetbot.api.routes import router
from widgetbot.config import CORS_ORIGINS, SERVER_HOST, SERVER_PORT
from widgetbot.dependencies import build_services, close_services

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Start-up: build the service container once and store it in app state.

    Shutdown: close HTTP clients and the database pool, flush metrics.
    """
    logger.info("Building services…")
    application.state.services = build_services()
    logger.info("Chat core ready.")
    yield
    services = application.state.services
    application.state.services = None
    await close_services(services)


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Widget Bot Chat Core",
    description=(
        "Conversational core of the embeddable chat widget: intent, "
        "retrieval, knowledge-bounded answers and lead capture."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# ── CORS (the widget is embedded on tenant sites) ───────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-RateLimit-Remaining"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a unique request ID to every request for log correlation.

    The ID is echoed in the ``X-Request-ID`` response header so widget
    errors can be matched to server logs.
    """
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info(
        "[%s] %s %s", request_id, request.method, request.url.path,
    )
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Widget Bot Chat Core",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
    }


# ── CLI entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    logger.info("Starting chat core API server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "widgetbot.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
    )
