"""Query-time nearest-neighbour retrieval scoped to one bot.

Retrieval failure must never abort a chat turn, so ``VectorRetriever.search``
swallows every error (and its own timeout), logs it, records a metric and
returns ``[]``.

The result is a plain list, materialised once per turn: the orchestrator
reads it twice (prompt assembly and the coverage check) and never
re-queries.
"""

from __future__ import annotations

import asyncio
import logging
import time

from langchain_core.embeddings import Embeddings

from widgetbot.config import RETRIEVAL_TIMEOUT_SECONDS, RETRIEVAL_TOP_K
from widgetbot.knowledge.store import ChunkStore
from widgetbot.models import RetrievedChunk
from widgetbot.services.metrics import MetricsClient

logger = logging.getLogger(__name__)


class VectorRetriever:
    """Embeds the query and delegates ranking to a ``ChunkStore``."""

    def __init__(
        self,
        embeddings: Embeddings,
        store: ChunkStore,
        metrics: MetricsClient,
        *,
        timeout_seconds: float = RETRIEVAL_TIMEOUT_SECONDS,
    ) -> None:
        self._embeddings = embeddings
        self._store = store
        self._metrics = metrics
        self._timeout_seconds = timeout_seconds

    async def _search(self, bot_id: str, query: str, top_k: int) -> list[RetrievedChunk]:
        vector = await self._embeddings.aembed_query(query)
        return await self._store.search(bot_id, vector, top_k)

    async def search(
        self, bot_id: str, query: str, top_k: int = RETRIEVAL_TOP_K,
    ) -> list[RetrievedChunk]:
        """Return up to *top_k* chunks of *bot_id*, best first, or ``[]``."""
        if not query or not query.strip() or top_k <= 0:
            return []

        t0 = time.perf_counter()
        try:
            results = await asyncio.wait_for(
                self._search(bot_id, query.strip(), top_k),
                timeout=self._timeout_seconds,
            )
        except TimeoutError:
            elapsed = (time.perf_counter() - t0) * 1000
            self._metrics.record_failure(
                "retrieval", "vector_search", error_type="timeout", latency_ms=elapsed,
            )
            logger.warning(
                "Retrieval for bot %s timed out after %.1fs", bot_id, self._timeout_seconds,
            )
            return []
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            self._metrics.record_failure(
                "retrieval", "vector_search",
                error_type=type(exc).__name__, latency_ms=elapsed,
            )
            logger.warning("Retrieval for bot %s failed: %s", bot_id, exc)
            return []

        elapsed = (time.perf_counter() - t0) * 1000
        self._metrics.record_success("retrieval", "vector_search", latency_ms=elapsed)
        logger.debug(
            "Retrieved %d chunk(s) for bot %s in %.0fms", len(results), bot_id, elapsed,
        )
        return list(results)[:top_k]
