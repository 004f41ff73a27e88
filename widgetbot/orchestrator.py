"""Per-message chat orchestration, built as a LangGraph state machine.

Architecture:
  Before the graph runs, ``ChatOrchestrator.handle_chat_turn`` consults the
  rate limiter (so a denied request costs nothing) and loads the bot.  The
  graph then has six nodes:

    1. **classify**      intent, low-signal guard, retrieval query, after-hours
    2. **plan**          next conversational step (ask, confirm, open calendar ...)
    3. **retrieve**      vector search + knowledge-coverage check
    4. **build_prompt**  system prompt, or a canned fallback when the
                         knowledge does not cover the question and no
                         booking step is planned
    5. **answer**        LLM call (fallback template if it fails)
    6. **finalize**      capture tracking and side effects

  Routing:
    classify → plan → (guarded?)      → build_prompt
                    → (not guarded?)  → retrieve → build_prompt
    build_prompt → (fallback chosen?) → finalize → END
                 → (prompt built?)    → answer → finalize → END

  Conversation state is not checkpointed here: the caller sends history,
  known capture state and conversation flags with every turn.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Callable, Literal

from langgraph.graph import END, StateGraph
from typing_extensions import TypedDict

from widgetbot.knowledge.bots import BotRepository
from widgetbot.knowledge.coverage import knowledge_covers_question
from widgetbot.knowledge.retriever import VectorRetriever
from widgetbot.models import Bot, ChatMessage, ConversationState, RetrievedChunk, SideEffect
from widgetbot.nlu.capture import CaptureState, capture_just_completed, extract_capture_state
from widgetbot.nlu.guard import is_likely_capture_input, is_low_signal, last_meaningful_user_text
from widgetbot.nlu.intent import detect_intent, extract_time_phrases, last_assistant_text
from widgetbot.nlu.next_step import (
    NO_ACTION,
    BusinessContext,
    Entities,
    NextAction,
    booking_signals,
    plan_next_action,
)
from widgetbot.prompts import (
    PromptContext,
    assemble_knowledge,
    booking_instructions,
    build_system_prompt,
    contact_instruction,
    fallback_template,
    has_booking_language,
    minimal_knowledge,
    strip_early_booking_language,
    tone_instruction,
)
from widgetbot.services.llm import LLMClient
from widgetbot.services.metrics import MetricsClient
from widgetbot.services.rate_limiter import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)

TurnStatus = Literal["answered", "rate_limited", "bot_not_found", "errored"]

GENERIC_APOLOGY = "Sorry, something went wrong on our side. Please try again in a moment."
RATE_LIMITED_REPLY = "Too many requests. Please slow down and try again shortly."
BOT_NOT_FOUND_REPLY = "This assistant is not available."

# Intents answered by the model even when the knowledge does not cover them
_ALWAYS_ANSWER_INTENTS = frozenset({"booking", "emergency"})
# Informational answers stay free of booking pushes for this many assistant turns
EARLY_TURNS_WITHOUT_BOOKING = 2


# ── Request / result ─────────────────────────────────────────────────


@dataclass(frozen=True)
class ChatTurnRequest:
    """One inbound visitor message plus everything the caller knows."""

    bot_id: str
    conversation_id: str
    message: str
    history: tuple[ChatMessage, ...] = ()
    rate_limit_key: str = ""
    capture: CaptureState = field(default_factory=CaptureState)
    state: ConversationState = field(default_factory=ConversationState)
    # Overrides the bot's working-hours calculation when set
    after_hours: bool | None = None


@dataclass(frozen=True)
class ChatTurnResult:
    status: TurnStatus
    reply: str
    intent: str = ""
    low_signal: bool = False
    used_fallback: bool = False
    after_hours: bool = False
    capture: CaptureState = field(default_factory=CaptureState)
    side_effects: tuple[SideEffect, ...] = ()
    next_action: NextAction | None = None
    # Calls left for this caller in the current rate-limit window
    rate_limit_remaining: int | None = None


# ── Graph state ──────────────────────────────────────────────────────


class TurnState(TypedDict, total=False):
    """The state that flows through the graph.

    ``request``, ``bot`` and ``now`` are the input; every node adds the
    keys it computes and never rewrites earlier ones.
    """

    request: ChatTurnRequest
    bot: Bot
    now: datetime
    intent: str
    low_signal: bool
    retrieval_query: str
    after_hours: bool
    next_action: NextAction
    chunks: list[RetrievedChunk]
    covered: bool
    system_prompt: str
    reply: str
    used_fallback: bool
    capture: CaptureState
    side_effects: list[SideEffect]


def _utc_now() -> datetime:
    return datetime.now(UTC)


class ChatOrchestrator:
    """Sequences guard, intent, retrieval, prompt, LLM and capture per message.

    All collaborators are injected; nothing here is a module-level client.
    """

    def __init__(
        self,
        bots: BotRepository,
        retriever: VectorRetriever,
        llm: LLMClient,
        rate_limiter: SlidingWindowRateLimiter,
        metrics: MetricsClient,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._bots = bots
        self._retriever = retriever
        self._llm = llm
        self._rate_limiter = rate_limiter
        self._metrics = metrics
        self._clock = clock
        self._graph = self._build_graph()

    # ── Node: classify ───────────────────────────────────────────────

    async def _classify(self, state: TurnState) -> dict:
        request = state["request"]
        bot = state["bot"]
        history = list(request.history)

        intent = detect_intent(request.message, last_assistant_text(history))
        low_signal = is_low_signal(request.message, is_likely_capture_input)

        retrieval_query = request.message
        if is_likely_capture_input(request.message):
            retrieval_query = last_meaningful_user_text(history, request.message) or request.message

        if request.after_hours is not None:
            after_hours = request.after_hours
        else:
            after_hours = not bot.working_hours.is_open_at(state["now"])

        logger.debug(
            "Conversation %s: intent=%s low_signal=%s after_hours=%s",
            request.conversation_id, intent, low_signal, after_hours,
        )
        return {
            "intent": intent,
            "low_signal": low_signal,
            "retrieval_query": retrieval_query,
            "after_hours": after_hours,
        }

    # ── Node: plan ───────────────────────────────────────────────────

    async def _plan(self, state: TurnState) -> dict:
        request = state["request"]
        bot = state["bot"]
        history = list(request.history)
        previous = last_assistant_text(history)

        # A bare answer ("yes", an email) continues the topic of the last real question
        intent = state["intent"]
        if state.get("low_signal") and intent != "booking":
            intent = detect_intent(
                last_meaningful_user_text(history, request.message) or request.message, previous,
            )

        capture = request.capture.merge(extract_capture_state(history, request.message))
        entities = Entities.from_turn(capture, [m.content for m in history] + [request.message])
        action = plan_next_action(
            intent,
            entities,
            BusinessContext.for_bot(bot, state.get("after_hours", False)),
            booking_signals(request.message, previous, intent),
            request.message,
            booking_completed=request.state.booking_completed,
        )
        logger.debug(
            "Conversation %s: next step %s (for %s)", request.conversation_id, action.type, intent,
        )
        return {"next_action": action}

    # ── Node: retrieve ───────────────────────────────────────────────

    async def _retrieve(self, state: TurnState) -> dict:
        bot = state["bot"]
        chunks = await self._retriever.search(bot.id, state["retrieval_query"])
        covered = knowledge_covers_question(
            state["retrieval_query"], assemble_knowledge(bot, chunks), chunks,
        )
        logger.debug("Bot %s: %d chunk(s), covered=%s", bot.id, len(chunks), covered)
        return {"chunks": chunks, "covered": covered}

    # ── Node: build_prompt ───────────────────────────────────────────

    async def _build_prompt(self, state: TurnState) -> dict:
        request = state["request"]
        bot = state["bot"]
        intent = state["intent"]
        low_signal = state.get("low_signal", False)
        action = state.get("next_action") or NO_ACTION

        if (
            not low_signal
            and intent not in _ALWAYS_ANSWER_INTENTS
            and not action.is_booking_step
            and not state.get("covered", False)
        ):
            logger.info(
                "Conversation %s: knowledge does not cover %s question, using fallback",
                request.conversation_id, intent,
            )
            return {
                "reply": fallback_template(intent, bot.business_info),
                "used_fallback": True,
            }

        knowledge = (
            minimal_knowledge(bot)
            if low_signal
            else assemble_knowledge(bot, state.get("chunks", []))
        )
        ctx = PromptContext(
            detected_intent=intent,
            tone=tone_instruction(bot),
            contact=contact_instruction(bot),
            after_hours=state.get("after_hours", False),
            calendar_already_shown=request.state.calendar_shown,
            booking_completed=request.state.booking_completed,
            language=bot.preferred_language,
            knowledge=knowledge,
            **booking_instructions(bot, intent, request.state, action.type),
        )
        return {"system_prompt": build_system_prompt(ctx), "used_fallback": False}

    # ── Node: answer ─────────────────────────────────────────────────

    async def _answer(self, state: TurnState) -> dict:
        request = state["request"]
        bot = state["bot"]
        intent = state["intent"]

        try:
            reply = await self._llm.complete(
                state["system_prompt"], request.history, request.message,
            )
        except Exception as exc:
            logger.warning(
                "LLM call failed for conversation %s, using fallback: %s",
                request.conversation_id, exc,
            )
            return {"reply": fallback_template(intent, bot.business_info), "used_fallback": True}

        action = state.get("next_action") or NO_ACTION
        if not reply:
            if action.is_booking_step and action.message:
                return {"reply": action.message, "used_fallback": True}
            return {"reply": fallback_template(intent, bot.business_info), "used_fallback": True}

        assistant_turns = sum(1 for m in request.history if m.role == "assistant")
        if (
            intent != "booking"
            and not action.is_booking_step
            and assistant_turns < EARLY_TURNS_WITHOUT_BOOKING
            and has_booking_language(reply)
        ):
            reply = strip_early_booking_language(reply)
        return {"reply": reply}

    # ── Node: finalize ───────────────────────────────────────────────

    async def _finalize(self, state: TurnState) -> dict:
        request = state["request"]
        bot = state["bot"]
        history = list(request.history)

        before = request.capture.merge(extract_capture_state(history))
        after = before.merge(extract_capture_state(history, request.message))

        effects: list[SideEffect] = []
        if capture_just_completed(before, after):
            effects.append(
                SideEffect(
                    type="lead_captured",
                    bot_id=bot.id,
                    conversation_id=request.conversation_id,
                    payload={
                        "name": after.name,
                        "email": after.email,
                        "phone": after.phone,
                        "message": last_meaningful_user_text(history, request.message),
                    },
                )
            )

        requested_times = extract_time_phrases(request.message)
        if (
            state["intent"] == "booking"
            and requested_times
            and not request.state.booking_completed
        ):
            effects.append(
                SideEffect(
                    type="booking_intent",
                    bot_id=bot.id,
                    conversation_id=request.conversation_id,
                    payload={
                        "requested_times": requested_times,
                        "timezone": bot.timezone,
                        "message": request.message,
                        "name": after.name,
                        "email": after.email,
                    },
                )
            )

        for effect in effects:
            logger.info("Conversation %s: emitting %s", request.conversation_id, effect.type)
        return {"capture": after, "side_effects": effects}

    # ── Conditional edges ────────────────────────────────────────────

    @staticmethod
    def _route_after_plan(state: TurnState) -> str:
        return "build_prompt" if state.get("low_signal") else "retrieve"

    @staticmethod
    def _route_after_prompt(state: TurnState) -> str:
        return "finalize" if state.get("used_fallback") else "answer"

    # ── Graph assembly ───────────────────────────────────────────────

    def _build_graph(self):
        graph = StateGraph(TurnState)

        graph.add_node("classify", self._classify)
        graph.add_node("plan", self._plan)
        graph.add_node("retrieve", self._retrieve)
        graph.add_node("build_prompt", self._build_prompt)
        graph.add_node("answer", self._answer)
        graph.add_node("finalize", self._finalize)

        graph.set_entry_point("classify")
        graph.add_edge("classify", "plan")
        graph.add_conditional_edges(
            "plan",
            self._route_after_plan,
            {"retrieve": "retrieve", "build_prompt": "build_prompt"},
        )
        graph.add_edge("retrieve", "build_prompt")
        graph.add_conditional_edges(
            "build_prompt",
            self._route_after_prompt,
            {"answer": "answer", "finalize": "finalize"},
        )
        graph.add_edge("answer", "finalize")
        graph.add_edge("finalize", END)

        return graph.compile()

    # ── Public API ───────────────────────────────────────────────────

    async def handle_chat_turn(self, request: ChatTurnRequest) -> ChatTurnResult:
        """Run one chat turn.  Never raises; failures become ``errored``."""
        t0 = time.perf_counter()
        result = await self._handle(request)
        self._metrics.record_turn(
            result.status, intent=result.intent,
            latency_ms=(time.perf_counter() - t0) * 1000,
        )
        return result

    async def _handle(self, request: ChatTurnRequest) -> ChatTurnResult:
        try:
            key = request.rate_limit_key or f"{request.bot_id}:unknown"
            if not self._rate_limiter.check(key):
                return ChatTurnResult(
                    status="rate_limited", reply=RATE_LIMITED_REPLY, rate_limit_remaining=0,
                )
            remaining = self._rate_limiter.remaining(key)

            bot = await self._bots.get(request.bot_id)
            if bot is None:
                return ChatTurnResult(status="bot_not_found", reply=BOT_NOT_FOUND_REPLY)

            final = await self._graph.ainvoke(
                {"request": request, "bot": bot, "now": self._clock()},
            )
        except Exception:
            logger.exception(
                "Chat turn failed for bot %s conversation %s",
                request.bot_id, request.conversation_id,
            )
            return ChatTurnResult(status="errored", reply=GENERIC_APOLOGY)

        return ChatTurnResult(
            status="answered",
            reply=final["reply"],
            intent=final["intent"],
            low_signal=final.get("low_signal", False),
            used_fallback=final.get("used_fallback", False),
            after_hours=final.get("after_hours", False),
            capture=final["capture"],
            side_effects=tuple(final.get("side_effects", [])),
            next_action=final.get("next_action"),
            rate_limit_remaining=remaining,
        )
