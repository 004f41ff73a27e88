"""Read-only access to tenant bot records.

The bots table belongs to the CRUD layer; this core only reads the columns
it needs and maps them onto ``widgetbot.models.Bot``.
"""

from __future__ import annotations

import logging
from typing import Protocol

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from widgetbot.models import Bot

logger = logging.getLogger(__name__)

_BOT_SQL = text(
    """
    SELECT id, account_id, description, scraped_content, uploaded_files_text,
           tone, contact_email, contact_phone, address,
           calendar_provider, calendar_url, timezone, working_hours,
           preferred_language
    FROM bots
    WHERE id = :bot_id
    """
)


class BotRepository(Protocol):
    async def get(self, bot_id: str) -> Bot | None:
        ...


class SqlBotRepository:
    """``BotRepository`` over the shared PostgreSQL database."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, bot_id: str) -> Bot | None:
        """Return the bot, or ``None`` if no such bot exists."""
        async with self._session_factory() as session:
            result = await session.execute(_BOT_SQL, {"bot_id": bot_id})
            row = result.mappings().first()
        if row is None:
            logger.info("Bot %s not found", bot_id)
            return None
        return Bot.from_row(row)
