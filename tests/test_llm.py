"""Tests for the chat-completion client."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from widgetbot.models import ChatMessage
from widgetbot.services.llm import LLMClient, trim_history


def _client(metrics, reply=None, error=None, history_messages=12) -> LLMClient:
    model = MagicMock()
    model.ainvoke = AsyncMock(return_value=reply, side_effect=error)
    return LLMClient(model, metrics, history_messages=history_messages)


class TestTrimHistory:
    def test_keeps_latest_and_starts_with_user(self):
        history = [
            ChatMessage("assistant", "Hi!"),
            ChatMessage("user", "one"),
            ChatMessage("assistant", "two"),
            ChatMessage("user", "three"),
        ]
        assert [m.content for m in trim_history(history, 2)] == ["three"]
        assert [m.content for m in trim_history(history, 10)] == ["one", "two", "three"]

    def test_drops_empty_turns(self):
        history = [ChatMessage("user", "  "), ChatMessage("user", "hello")]
        assert [m.content for m in trim_history(history, 10)] == ["hello"]

    def test_zero_budget(self):
        assert trim_history([ChatMessage("user", "hello")], 0) == []


class TestLLMClient:
    def test_build_messages(self, metrics):
        client = _client(metrics)
        messages = client.build_messages(
            "SYSTEM",
            [ChatMessage("user", "hi"), ChatMessage("assistant", "hello")],
            "What are your hours?",
        )
        assert [type(m) for m in messages] == [SystemMessage, HumanMessage, AIMessage, HumanMessage]
        assert messages[0].content == "SYSTEM"
        assert messages[-1].content == "What are your hours?"

    @pytest.mark.asyncio
    async def test_complete_returns_stripped_text(self, metrics):
        client = _client(metrics, reply=AIMessage(content="  We open at 9.  "))
        assert await client.complete("SYSTEM", [], "hours") == "We open at 9."
        metrics.record_success.assert_called_once()

    @pytest.mark.asyncio
    async def test_complete_flattens_content_blocks(self, metrics):
        reply = AIMessage(content=[{"type": "text", "text": "We "}, {"type": "text", "text": "do."}])
        client = _client(metrics, reply=reply)
        assert await client.complete("SYSTEM", [], "whitening?") == "We do."

    @pytest.mark.asyncio
    async def test_complete_reraises_and_records_failure(self, metrics):
        client = _client(metrics, error=TimeoutError("slow"))
        with pytest.raises(TimeoutError):
            await client.complete("SYSTEM", [], "hours")
        assert metrics.record_failure.call_args.kwargs["error_type"] == "TimeoutError"
