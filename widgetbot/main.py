"""CLI entry point for the widget chat core.

Provides a terminal chat loop against a real bot (for testing prompts and
knowledge) and a reindex command.  For production, use the FastAPI server
(widgetbot/server.py).

Usage:
    python -m widgetbot.main chat --bot BOT_ID            # normal mode (quiet)
    python -m widgetbot.main --debug chat --bot BOT_ID    # debug mode (shows API calls)
    python -m widgetbot.main reindex --bot BOT_ID
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import uuid

from dotenv import load_dotenv

from widgetbot.dependencies import Services, build_services, close_services
from widgetbot.knowledge.indexer import IndexingError
from widgetbot.models import ChatMessage, ConversationState
from widgetbot.nlu.capture import CaptureState
from widgetbot.orchestrator import ChatTurnRequest
from widgetbot.services.rate_limiter import rate_limit_key

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )

    if not debug:
        # Silence chatty HTTP loggers even if root is WARNING
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    # Always keep our own logger at INFO minimum so session starts show
    logging.getLogger("widgetbot").setLevel(logging.DEBUG if debug else logging.INFO)


# ── chat ─────────────────────────────────────────────────────────────


async def _chat_loop(services: Services, bot_id: str) -> None:
    conversation_id = str(uuid.uuid4())
    history: list[ChatMessage] = []
    capture = CaptureState()
    logger.info("Started new conversation: %s", conversation_id)

    while True:
        try:
            user_input = (await asyncio.to_thread(input, "You: ")).strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\nGoodbye!")
            break

        if not user_input:
            continue

        if user_input.lower() in ("exit", "quit", "q"):
            print("\nGoodbye!")
            break

        if user_input.lower() == "new":
            conversation_id = str(uuid.uuid4())
            history, capture = [], CaptureState()
            print(f"\n>> New conversation started: {conversation_id[:8]}...\n")
            continue

        result = await services.orchestrator.handle_chat_turn(
            ChatTurnRequest(
                bot_id=bot_id,
                conversation_id=conversation_id,
                message=user_input,
                history=tuple(history),
                rate_limit_key=rate_limit_key(bot_id, "cli"),
                capture=capture,
                state=ConversationState(),
            )
        )

        if result.status != "answered":
            print(f"\n[{result.status}] {result.reply}\n")
            if result.status == "bot_not_found":
                break
            continue

        tag = f" ({result.intent}{', fallback' if result.used_fallback else ''})"
        print(f"\nAssistant{tag}: {result.reply}\n")
        for effect in result.side_effects:
            print(f"   >> side effect: {effect.type} {effect.payload}")
        if result.next_action and result.next_action.type != "freeform":
            print(f"   >> next step: {result.next_action.type} {result.next_action.url}".rstrip())

        history += [
            ChatMessage(role="user", content=user_input),
            ChatMessage(role="assistant", content=result.reply),
        ]
        capture = result.capture
        await services.dispatcher.dispatch(list(result.side_effects))


# ── reindex ──────────────────────────────────────────────────────────


async def _reindex(services: Services, bot_id: str) -> int:
    bot = await services.bots.get(bot_id)
    if bot is None:
        print(f"Bot {bot_id} not found.")
        return 1
    try:
        stored = await services.indexer.reindex(bot)
    except IndexingError as e:
        logger.error("Reindex failed: %s", e)
        print(f"Reindex failed, previous knowledge kept: {e}")
        return 1
    print(f"Stored {stored} chunk(s) for bot {bot_id}.")
    return 0


async def _run(args: argparse.Namespace) -> int:
    services = build_services()
    try:
        if args.command == "reindex":
            return await _reindex(services, args.bot)

        print("\n" + "=" * 60)
        print(f"  Widget Bot - CLI Chat (bot {args.bot})")
        print("=" * 60)
        print("  Type your message and press Enter.")
        print("  Commands: 'quit' to exit, 'new' for a new conversation.")
        print("=" * 60 + "\n")
        await _chat_loop(services, args.bot)
        return 0
    finally:
        await close_services(services)


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and run the chosen command."""
    parser = argparse.ArgumentParser(description="Widget Bot chat core CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    chat = subparsers.add_parser("chat", help="Chat with a bot in the terminal")
    chat.add_argument("--bot", required=True, help="Bot identifier")

    reindex = subparsers.add_parser("reindex", help="Rebuild a bot's knowledge chunks")
    reindex.add_argument("--bot", required=True, help="Bot identifier")

    args = parser.parse_args(argv)

    load_dotenv()
    _configure_logging(debug=args.debug)
    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
