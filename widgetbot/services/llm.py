"""Chat-completion client over Anthropic (via LangChain).

The orchestrator only needs ``complete(system_prompt, history, message)``;
model choice and sampling settings come from ``widgetbot.config``.
Failures are recorded as metrics and re-raised: falling back to a canned
reply is the orchestrator's call.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Sequence

from langchain_anthropic import ChatAnthropic
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, AnyMessage, HumanMessage, SystemMessage

from widgetbot.config import (
    ANTHROPIC_API_KEY,
    LLM_HISTORY_MESSAGES,
    LLM_MAX_TOKENS,
    LLM_TEMPERATURE,
    MODEL_NAME,
)
from widgetbot.models import ChatMessage
from widgetbot.services.metrics import MetricsClient

logger = logging.getLogger(__name__)


def build_chat_model() -> ChatAnthropic:
    """Build the Anthropic chat model used for visitor-facing answers."""
    return ChatAnthropic(
        model=MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=LLM_TEMPERATURE,
        max_tokens=LLM_MAX_TOKENS,
    )


def trim_history(history: Sequence[ChatMessage], max_messages: int) -> list[ChatMessage]:
    """Keep the last *max_messages* non-empty turns, starting on a user turn.

    The widget opens with an assistant greeting; the model API wants the
    conversation to start with the user.
    """
    kept = [m for m in history if m.content.strip()][-max_messages:] if max_messages > 0 else []
    while kept and kept[0].role == "assistant":
        kept.pop(0)
    return kept


def _content_text(content: Any) -> str:
    """Flatten a LangChain message ``content`` (str or list of blocks)."""
    if isinstance(content, str):
        return content
    parts = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


class LLMClient:
    """Single-shot completion with conversation history."""

    def __init__(
        self,
        model: BaseChatModel,
        metrics: MetricsClient,
        *,
        history_messages: int = LLM_HISTORY_MESSAGES,
    ) -> None:
        self._model = model
        self._metrics = metrics
        self._history_messages = history_messages

    def build_messages(
        self, system_prompt: str, history: Sequence[ChatMessage], message: str,
    ) -> list[AnyMessage]:
        messages: list[AnyMessage] = [SystemMessage(content=system_prompt)]
        for turn in trim_history(history, self._history_messages):
            if turn.role == "user":
                messages.append(HumanMessage(content=turn.content))
            else:
                messages.append(AIMessage(content=turn.content))
        messages.append(HumanMessage(content=message))
        return messages

    async def complete(
        self, system_prompt: str, history: Sequence[ChatMessage], message: str,
    ) -> str:
        """Return the model's reply text (stripped)."""
        messages = self.build_messages(system_prompt, history, message)
        t0 = time.perf_counter()
        try:
            response = await self._model.ainvoke(messages)
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            self._metrics.record_failure(
                "anthropic", "chat_complete",
                error_type=type(exc).__name__, latency_ms=elapsed,
            )
            raise

        elapsed = (time.perf_counter() - t0) * 1000
        self._metrics.record_success("anthropic", "chat_complete", latency_ms=elapsed)
        logger.debug("LLM responded in %.0fms (%d messages)", elapsed, len(messages))
        return _content_text(response.content).strip()
