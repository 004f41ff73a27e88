"""FastAPI route definitions for the widget chat core."""

from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request, Response

from widgetbot.api.schemas import (
    ChatRequest,
    ChatResponse,
    HealthResponse,
    NextActionOut,
    ReindexResponse,
    SideEffectOut,
    VisitorCapture,
)
from widgetbot.dependencies import Services
from widgetbot.knowledge.indexer import IndexingError
from widgetbot.models import ChatMessage, ConversationState
from widgetbot.nlu.capture import CaptureState
from widgetbot.orchestrator import RATE_LIMITED_REPLY, ChatTurnRequest
from widgetbot.services.rate_limiter import rate_limit_key

logger = logging.getLogger(__name__)

router = APIRouter()

INTERNAL_ERROR_DETAIL = "An internal error occurred. Please try again."
RATE_LIMIT_HEADER = "X-RateLimit-Remaining"


def _get_services(request: Request) -> Services:
    """Retrieve the service container from app state.

    The container is built once during the FastAPI lifespan (see
    ``server.py``), which avoids module-level clients.
    """
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=503,
            detail="The service is still starting up. Please try again in a moment.",
        )
    return services


def client_ip(request: Request) -> str:
    """First ``X-Forwarded-For`` hop, else the peer address."""
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded.strip():
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.post("/chat", response_model=ChatResponse)
async def chat(
    request: ChatRequest,
    http_request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
):
    """Answer one visitor message.

    Side effects (lead captured, booking intent) are returned to the widget
    and delivered to the webhook after the response is sent.
    """
    services = _get_services(http_request)
    request_id = getattr(http_request.state, "request_id", "?")

    turn = ChatTurnRequest(
        bot_id=request.bot_id,
        conversation_id=request.conversation_id,
        message=request.message,
        history=tuple(ChatMessage(role=m.role, content=m.content) for m in request.history),
        rate_limit_key=rate_limit_key(request.bot_id, client_ip(http_request)),
        capture=CaptureState(
            name=request.visitor.name, email=request.visitor.email, phone=request.visitor.phone,
        ),
        state=ConversationState(
            calendar_shown=request.calendar_shown,
            booking_completed=request.booking_completed,
            version=request.state_version,
        ),
        after_hours=request.after_hours,
    )
    result = await services.orchestrator.handle_chat_turn(turn)

    if result.status == "rate_limited":
        raise HTTPException(
            status_code=429, detail=RATE_LIMITED_REPLY, headers={RATE_LIMIT_HEADER: "0"},
        )
    if result.status == "bot_not_found":
        raise HTTPException(status_code=404, detail="Bot not found.")
    if result.status == "errored":
        logger.error("[%s] Chat turn errored for bot %s", request_id, request.bot_id)
        raise HTTPException(status_code=500, detail=INTERNAL_ERROR_DETAIL)

    if result.rate_limit_remaining is not None:
        response.headers[RATE_LIMIT_HEADER] = str(result.rate_limit_remaining)
    if result.side_effects:
        background_tasks.add_task(services.dispatcher.dispatch, list(result.side_effects))

    return ChatResponse(
        reply=result.reply,
        conversation_id=request.conversation_id,
        intent=result.intent,
        fallback=result.used_fallback,
        after_hours=result.after_hours,
        capture=VisitorCapture(
            name=result.capture.name, email=result.capture.email, phone=result.capture.phone,
        ),
        side_effects=[
            SideEffectOut(type=e.type, idempotency_key=e.idempotency_key, payload=e.payload)
            for e in result.side_effects
        ],
        next_action=(
            NextActionOut(
                type=result.next_action.type,
                key=result.next_action.key,
                message=result.next_action.message,
                url=result.next_action.url,
            )
            if result.next_action
            else None
        ),
    )


@router.post("/bots/{bot_id}/reindex", response_model=ReindexResponse)
async def reindex_bot(bot_id: str, http_request: Request):
    """Rebuild the bot's knowledge chunks from its current sources."""
    services = _get_services(http_request)
    request_id = getattr(http_request.state, "request_id", "?")

    try:
        bot = await services.bots.get(bot_id)
        if bot is None:
            raise HTTPException(status_code=404, detail="Bot not found.")
        stored = await services.indexer.reindex(bot)
        return ReindexResponse(bot_id=bot_id, chunks=stored)

    except HTTPException:
        raise
    except IndexingError as e:
        logger.error("[%s] Reindex failed for bot %s: %s", request_id, bot_id, e)
        raise HTTPException(
            status_code=502,
            detail="Reindexing failed; the previous knowledge is still in use.",
        ) from e
    except Exception as e:
        logger.exception("[%s] Error reindexing bot %s", request_id, bot_id)
        raise HTTPException(status_code=500, detail=INTERNAL_ERROR_DETAIL) from e
