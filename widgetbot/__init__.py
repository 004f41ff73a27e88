"""Widget Bot chat core: the conversational engine behind an embeddable
business chat widget.

Architecture Overview
=====================

Each inbound visitor message goes through a **LangGraph** state machine
(``widgetbot/orchestrator.py``), preceded by a rate-limit check and a bot
lookup:

1. **classify** — rule-based intent detection and the low-signal guard.
2. **plan** — the next-step engine picks the turn's action (ask, confirm,
   open the calendar, show a link, or answer freely).
3. **retrieve** — embeds the question and runs a pgvector similarity search
   scoped to the bot, then checks whether the knowledge covers it.
4. **build_prompt** — fills the knowledge-bounded system prompt, or picks a
   canned fallback reply when the knowledge does not cover the question
   and no booking step is planned.
5. **answer** — Claude via ``langchain-anthropic``.
6. **finalize** — capture tracking; emits ``lead_captured`` /
   ``booking_intent`` side effects.

Key Design Decisions
--------------------
- **Cost control first**: the rate limiter runs before any database,
  embedding or LLM call; low-signal turns skip retrieval.
- **Knowledge boundary**: the prompt forbids anything not in the bot's own
  content, and uncovered questions never reach the model.
- **Honest booking state**: the prompt's HARD RULES are driven by the
  conversation flags, so the assistant cannot claim a booking that did not
  happen.
- **Degrade, don't fail**: retrieval errors become empty knowledge, LLM
  errors become a fallback template, side-effect delivery retries in the
  background.
- **Explicit wiring**: ``widgetbot/dependencies.py`` builds every client; the
  server lifespan and the CLI own their lifecycle.

Package Structure
-----------------
- ``widgetbot/orchestrator.py`` — LangGraph StateGraph per chat turn
- ``widgetbot/prompts.py`` — system prompt template, fragments, fallbacks
- ``widgetbot/nlu/`` — intent rules, low-signal guard, capture tracking,
  next-step engine
- ``widgetbot/knowledge/`` — tokens, chunker, indexer, pgvector store,
  retriever, coverage, bot repository
- ``widgetbot/services/`` — LLM, rate limiter, side effects, metrics, database
- ``widgetbot/config.py`` — Centralized configuration from environment / SSM
- ``widgetbot/server.py`` — FastAPI application
- ``widgetbot/main.py`` — CLI chat and reindex commands
- ``widgetbot/api/`` — FastAPI routes and Pydantic schemas
"""
