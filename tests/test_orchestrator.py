"""Tests for the per-message chat orchestrator.

The LangGraph pipeline runs for real; the bot repository, embeddings,
vector store and LLM are doubles.
"""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from tests.conftest import FakeBotRepository, FakeChunkStore, FakeEmbeddings
from widgetbot.knowledge.retriever import VectorRetriever
from widgetbot.models import ChatMessage, ConversationState, WorkingHours
from widgetbot.nlu.capture import CaptureState
from widgetbot.orchestrator import (
    BOT_NOT_FOUND_REPLY,
    GENERIC_APOLOGY,
    RATE_LIMITED_REPLY,
    ChatOrchestrator,
    ChatTurnRequest,
)
from widgetbot.prompts import CALENDAR_SHOWN_RULE
from widgetbot.services.rate_limiter import SlidingWindowRateLimiter

# Monday 2024-01-01 20:00 UTC
MONDAY_EVENING = datetime(2024, 1, 1, 20, 0, tzinfo=UTC)


class Harness:
    """Orchestrator wired to doubles, with handles on each of them."""

    def __init__(self, bot, metrics, *, max_requests=10, reply="We offer whitening for adults."):
        self.bots = FakeBotRepository(bot)
        self.embeddings = FakeEmbeddings()
        self.store = FakeChunkStore()
        self.llm = MagicMock()
        self.llm.complete = AsyncMock(return_value=reply)
        self.metrics = metrics
        self.orchestrator = ChatOrchestrator(
            self.bots,
            VectorRetriever(self.embeddings, self.store, metrics),
            self.llm,
            SlidingWindowRateLimiter(max_requests=max_requests, window_seconds=60),
            metrics,
            clock=lambda: MONDAY_EVENING,
        )

    async def turn(self, message, **kwargs):
        kwargs.setdefault("bot_id", "bot-1")
        kwargs.setdefault("conversation_id", "conv-1")
        kwargs.setdefault("rate_limit_key", "bot-1:203.0.113.7")
        return await self.orchestrator.handle_chat_turn(ChatTurnRequest(message=message, **kwargs))

    @property
    def system_prompt(self) -> str:
        return self.llm.complete.call_args.args[0]


@pytest.fixture
def harness(make_bot, metrics):
    return Harness(make_bot(), metrics)


# ── Outcomes before the pipeline ─────────────────────────────────────


class TestGatekeeping:
    @pytest.mark.asyncio
    async def test_rate_limited_turn_costs_nothing(self, make_bot, metrics):
        h = Harness(make_bot(), metrics, max_requests=0)

        result = await h.turn("Do you do teeth whitening?")

        assert result.status == "rate_limited"
        assert result.reply == RATE_LIMITED_REPLY
        assert h.bots.calls == []
        assert h.embeddings.queries == []
        h.llm.complete.assert_not_called()
        metrics.record_turn.assert_called_once()
        assert metrics.record_turn.call_args.args[0] == "rate_limited"

    @pytest.mark.asyncio
    async def test_budget_is_per_key(self, make_bot, metrics):
        h = Harness(make_bot(), metrics, max_requests=1)
        assert (await h.turn("hello there")).status == "answered"
        assert (await h.turn("hello there")).status == "rate_limited"
        other = await h.turn("hello there", rate_limit_key="bot-1:198.51.100.2")
        assert other.status == "answered"

    @pytest.mark.asyncio
    async def test_unknown_bot(self, harness):
        result = await harness.turn("Do you do teeth whitening?", bot_id="missing")
        assert result.status == "bot_not_found"
        assert result.reply == BOT_NOT_FOUND_REPLY
        harness.llm.complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_unexpected_error_hides_details(self, harness):
        harness.bots.get = AsyncMock(side_effect=RuntimeError("postgres://admin:hunter2@db"))

        result = await harness.turn("Do you do teeth whitening?")

        assert result.status == "errored"
        assert result.reply == GENERIC_APOLOGY
        assert "hunter2" not in result.reply


# ── Answering ────────────────────────────────────────────────────────


class TestAnswering:
    @pytest.mark.asyncio
    async def test_hours_question_without_hours_knowledge(self, harness):
        result = await harness.turn("What are your hours?")

        assert result.status == "answered"
        assert result.intent == "hours"
        assert result.low_signal is False
        assert result.used_fallback is True
        assert result.reply == (
            "Our contact details:\n"
            "- Email: hello@brightsmile.test\n"
            "- Phone: not available\n"
            "- Location: not available"
        )
        assert harness.embeddings.queries == ["What are your hours?"]
        harness.llm.complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_covered_question_reaches_the_model(self, harness):
        result = await harness.turn("Do you do teeth whitening?")

        assert result.status == "answered"
        assert result.used_fallback is False
        assert result.reply == "We offer whitening for adults."
        assert "Business Description:" in harness.system_prompt
        assert 'The user\'s intent is: "faq"' in harness.system_prompt

    @pytest.mark.asyncio
    async def test_llm_failure_falls_back(self, harness):
        harness.llm.complete.side_effect = RuntimeError("overloaded")

        result = await harness.turn("Do you do teeth whitening?")

        assert result.status == "answered"
        assert result.used_fallback is True
        assert result.reply.startswith("I don’t have that in this bot’s knowledge base.")

    @pytest.mark.asyncio
    async def test_empty_llm_reply_falls_back(self, harness):
        harness.llm.complete.return_value = ""
        result = await harness.turn("Do you do teeth whitening?")
        assert result.used_fallback is True

    @pytest.mark.asyncio
    async def test_low_signal_turn_skips_retrieval(self, harness):
        result = await harness.turn("ok")

        assert result.low_signal is True
        assert harness.embeddings.queries == []
        harness.llm.complete.assert_awaited_once()
        assert "Scraped Website Content:" not in harness.system_prompt

    @pytest.mark.asyncio
    async def test_early_booking_push_is_stripped(self, make_bot, metrics):
        h = Harness(
            make_bot(), metrics,
            reply="Yes, we offer whitening. Would you like to book an appointment?",
        )
        result = await h.turn("Do you do teeth whitening?")
        assert result.reply == "Yes, we offer whitening."

    @pytest.mark.asyncio
    async def test_calendar_rule_follows_conversation_state(self, make_bot, metrics):
        h = Harness(make_bot(calendar_url="https://cal.example/brightsmile"), metrics)

        await h.turn("Can I book a cleaning?", state=ConversationState(calendar_shown=True))
        assert CALENDAR_SHOWN_RULE in h.system_prompt
        assert "- CALENDAR_ALREADY_SHOWN: true" in h.system_prompt

        await h.turn(
            "Can I book a cleaning?",
            state=ConversationState(calendar_shown=True, booking_completed=True),
        )
        assert CALENDAR_SHOWN_RULE not in h.system_prompt
        assert "- BOOKING_COMPLETED: true" in h.system_prompt

    @pytest.mark.asyncio
    async def test_after_hours_from_working_hours(self, make_bot, metrics):
        hours = WorkingHours.from_mapping({"mon": [["09:00", "17:00"]]}, "UTC")
        h = Harness(make_bot(working_hours=hours), metrics)

        assert (await h.turn("ok")).after_hours is True
        assert (await h.turn("ok", after_hours=False)).after_hours is False


# ── Side effects ─────────────────────────────────────────────────────


class TestSideEffects:
    @pytest.mark.asyncio
    async def test_lead_captured_fires_on_completion(self, harness):
        history = (
            ChatMessage("assistant", "Happy to help! Can I take your name?"),
            ChatMessage("user", "Ana"),
            ChatMessage("assistant", "Thanks Ana, and your email?"),
        )

        result = await harness.turn("ana@example.com", history=history)

        assert result.capture == CaptureState(name="Ana", email="ana@example.com")
        assert [e.type for e in result.side_effects] == ["lead_captured"]
        effect = result.side_effects[0]
        assert effect.payload["email"] == "ana@example.com"
        assert effect.idempotency_key == "lead_captured:bot-1:conv-1"

    @pytest.mark.asyncio
    async def test_lead_captured_does_not_refire(self, harness):
        known = CaptureState(name="Ana", email="ana@example.com")
        result = await harness.turn("thanks", capture=known)
        assert result.side_effects == ()
        assert result.capture == known

    @pytest.mark.asyncio
    async def test_booking_intent_with_requested_time(self, harness):
        result = await harness.turn("Can I book for tomorrow at 3pm?")

        assert result.intent == "booking"
        booking = [e for e in result.side_effects if e.type == "booking_intent"]
        assert len(booking) == 1
        assert booking[0].payload["requested_times"] == ["tomorrow", "at 3pm"]
        assert booking[0].payload["timezone"] == "UTC"

    @pytest.mark.asyncio
    async def test_no_booking_intent_once_booked(self, harness):
        result = await harness.turn(
            "Can I book for tomorrow at 3pm?",
            state=ConversationState(booking_completed=True),
        )
        assert result.side_effects == ()

    @pytest.mark.asyncio
    async def test_each_proposed_time_gets_its_own_key(self, harness):
        first = await harness.turn("Can I book for tomorrow at 3pm?")
        second = await harness.turn("Actually, can I book Friday at 10am instead?")

        keys = [
            e.idempotency_key
            for result in (first, second)
            for e in result.side_effects
            if e.type == "booking_intent"
        ]
        assert len(keys) == 2
        assert keys[0] != keys[1]
        assert all(k.startswith("booking_intent:bot-1:conv-1:") for k in keys)


# ── Next step ────────────────────────────────────────────────────────

CALENDAR_URL = "https://cal.example/brightsmile"


class TestNextStep:
    @pytest.mark.asyncio
    async def test_booking_step_bypasses_coverage_fallback(self, make_bot, metrics):
        h = Harness(make_bot(calendar_url=CALENDAR_URL), metrics)

        result = await h.turn("What are your hours? Can you show me the calendar?")

        assert result.intent == "hours"
        assert result.next_action.type == "confirm"
        assert result.used_fallback is False
        h.llm.complete.assert_awaited_once()
        assert "booking calendar available in this chat" in h.system_prompt
        assert "Do not share any booking link until" in h.system_prompt

    @pytest.mark.asyncio
    async def test_uncovered_question_without_booking_step_still_falls_back(self, make_bot, metrics):
        h = Harness(make_bot(calendar_url=CALENDAR_URL), metrics)

        result = await h.turn("What are your hours?")

        assert result.next_action.type == "freeform"
        assert result.used_fallback is True
        h.llm.complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_reply_on_booking_step_uses_step_copy(self, make_bot, metrics):
        h = Harness(make_bot(calendar_url=CALENDAR_URL), metrics, reply="")

        result = await h.turn("What are your hours? Can you show me the calendar?")

        assert result.used_fallback is True
        assert result.reply == "Would you like to see available times now?"

    @pytest.mark.asyncio
    async def test_yes_to_offered_times_opens_calendar(self, make_bot, metrics):
        h = Harness(make_bot(calendar_url=CALENDAR_URL), metrics)
        history = (
            ChatMessage("user", "Do you do cleanings?"),
            ChatMessage("assistant", "We do! Would you like me to open the calendar so you can pick a time?"),
        )

        result = await h.turn("yes please", history=history)

        assert result.next_action.type == "open_calendar"
        assert "booking calendar available in this chat" in h.system_prompt
        assert "Do not share any booking link until" not in h.system_prompt

    @pytest.mark.asyncio
    async def test_contact_reply_keeps_the_booking_topic(self, make_bot, metrics):
        h = Harness(make_bot(calendar_url=CALENDAR_URL), metrics)
        history = (
            ChatMessage("user", "Can I book a cleaning?"),
            ChatMessage("assistant", "Sure! What’s the best email for a quick confirmation?"),
        )

        result = await h.turn("ana@example.com", history=history)

        assert result.next_action.type == "show_link"
        assert result.next_action.url == CALENDAR_URL
        assert result.next_action.message.endswith("for cleaning?")

    @pytest.mark.asyncio
    async def test_no_booking_step_after_booking_completed(self, make_bot, metrics):
        h = Harness(make_bot(calendar_url=CALENDAR_URL), metrics)
        result = await h.turn(
            "Can I book another cleaning?", state=ConversationState(booking_completed=True),
        )
        assert not result.next_action.is_booking_step


class TestRateLimitBudget:
    @pytest.mark.asyncio
    async def test_remaining_budget_is_reported(self, make_bot, metrics):
        h = Harness(make_bot(), metrics, max_requests=2)

        assert (await h.turn("hello there")).rate_limit_remaining == 1
        assert (await h.turn("hello there")).rate_limit_remaining == 0
        denied = await h.turn("hello there")
        assert denied.status == "rate_limited"
        assert denied.rate_limit_remaining == 0
