"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class HistoryMessage(BaseModel):
    """One prior turn of the conversation, as the widget keeps it."""

    role: Literal["user", "assistant"]
    content: str = Field(..., max_length=8000)


class VisitorCapture(BaseModel):
    """Visitor details the widget has already collected (e.g. via a form)."""

    name: str | None = Field(None, max_length=200)
    email: str | None = Field(None, max_length=320)
    phone: str | None = Field(None, max_length=50)


class ChatRequest(BaseModel):
    """Incoming chat message from the widget."""

    bot_id: str = Field(..., min_length=1, max_length=100)
    conversation_id: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Unique conversation identifier, also the side-effect idempotency scope",
    )
    message: str = Field(..., min_length=1, max_length=2000, description="The visitor's message")
    history: list[HistoryMessage] = Field(default_factory=list, max_length=100)
    visitor: VisitorCapture = Field(default_factory=VisitorCapture)
    calendar_shown: bool = False
    booking_completed: bool = False
    after_hours: bool | None = Field(
        None, description="Overrides the bot's working-hours calculation when set",
    )
    state_version: int = Field(0, ge=0)


class SideEffectOut(BaseModel):
    type: Literal["lead_captured", "booking_intent"]
    idempotency_key: str
    payload: dict[str, Any] = Field(default_factory=dict)


class NextActionOut(BaseModel):
    """The step the assistant is steering toward, for widget buttons."""

    type: Literal["ask", "confirm", "open_calendar", "show_link", "freeform", "handoff"]
    key: str = ""
    message: str = ""
    url: str = ""


class ChatResponse(BaseModel):
    """The assistant's reply plus what the widget should remember."""

    reply: str = Field(..., description="The assistant's response message")
    conversation_id: str
    intent: str
    fallback: bool = Field(False, description="True when the reply is a canned template")
    after_hours: bool = False
    capture: VisitorCapture = Field(default_factory=VisitorCapture)
    side_effects: list[SideEffectOut] = Field(default_factory=list)
    next_action: NextActionOut | None = None


class ReindexResponse(BaseModel):
    bot_id: str
    chunks: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "widgetbot-chat-core"
