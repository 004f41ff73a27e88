"""(Re)build a bot's chunk set from its knowledge sources.

Reindexing is all-or-nothing: chunks are embedded in one batch before the
store is touched, and the store swaps the whole set in one transaction.  If
anything fails the previous chunk set stays live and ``IndexingError`` is
raised to the admin caller.
"""

from __future__ import annotations

import logging
import time

from langchain_core.embeddings import Embeddings

from widgetbot.knowledge.chunker import TokenCounter, chunk_text
from widgetbot.knowledge.html import clean_html
from widgetbot.knowledge.store import ChunkStore
from widgetbot.knowledge.tokens import count_tokens
from widgetbot.models import Bot
from widgetbot.services.metrics import MetricsClient

logger = logging.getLogger(__name__)


class IndexingError(Exception):
    """Raised when a bot's knowledge could not be embedded or stored."""

    def __init__(self, message: str, bot_id: str | None = None):
        self.bot_id = bot_id
        super().__init__(message)


def combine_sources(bot: Bot) -> str:
    """Concatenate description, scraped website text and uploaded files."""
    parts = [
        bot.description.strip(),
        bot.scraped_content.strip(),
        clean_html(bot.uploaded_files_text),
    ]
    return "\n\n".join(p for p in parts if p)


class KnowledgeIndexer:
    """Chunk → embed → replace, for one bot at a time."""

    def __init__(
        self,
        embeddings: Embeddings,
        store: ChunkStore,
        metrics: MetricsClient,
        *,
        counter: TokenCounter = count_tokens,
    ) -> None:
        self._embeddings = embeddings
        self._store = store
        self._metrics = metrics
        self._counter = counter

    async def reindex(self, bot: Bot) -> int:
        """Replace *bot*'s chunk set.  Returns the number of chunks stored."""
        chunks = chunk_text(combine_sources(bot), bot.id, counter=self._counter)
        logger.info("Reindexing bot %s: %d chunk(s)", bot.id, len(chunks))

        vectors: list[list[float]] = []
        if chunks:
            t0 = time.perf_counter()
            try:
                vectors = await self._embeddings.aembed_documents([c.text for c in chunks])
            except Exception as exc:
                elapsed = (time.perf_counter() - t0) * 1000
                self._metrics.record_failure(
                    "embeddings", "embed_documents",
                    error_type=type(exc).__name__, latency_ms=elapsed,
                )
                raise IndexingError(
                    f"Embedding failed for bot {bot.id}: {exc}", bot_id=bot.id,
                ) from exc
            self._metrics.record_success(
                "embeddings", "embed_documents",
                latency_ms=(time.perf_counter() - t0) * 1000,
            )

        try:
            return await self._store.replace_chunks(bot.id, chunks, vectors)
        except Exception as exc:
            raise IndexingError(
                f"Storing chunks failed for bot {bot.id}: {exc}", bot_id=bot.id,
            ) from exc
