"""Chunk vector storage and nearest-neighbour search.

The ranking itself is a database capability: pgvector's cosine distance
operator (``<=>``) orders the rows, and the score reported back is
``1 - distance`` so larger means more similar.

Expected table (created by the CRUD layer's migrations)::

    CREATE TABLE knowledge_chunks (
        id          uuid PRIMARY KEY,
        bot_id      text NOT NULL,
        text        text NOT NULL,
        tokens      integer NOT NULL,
        index       integer NOT NULL,
        embedding   vector(1536) NOT NULL,
        created_at  timestamptz NOT NULL DEFAULT now()
    );
"""

from __future__ import annotations

import logging
from typing import Protocol, Sequence

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from widgetbot.models import KnowledgeChunk, RetrievedChunk

logger = logging.getLogger(__name__)

_SEARCH_SQL = text(
    """
    SELECT id, text, index,
           1 - (embedding <=> CAST(:embedding AS vector)) AS score
    FROM knowledge_chunks
    WHERE bot_id = :bot_id
    ORDER BY embedding <=> CAST(:embedding AS vector)
    LIMIT :limit
    """
)

_DELETE_SQL = text("DELETE FROM knowledge_chunks WHERE bot_id = :bot_id")

_INSERT_SQL = text(
    """
    INSERT INTO knowledge_chunks (id, bot_id, text, tokens, index, embedding, created_at)
    VALUES (CAST(:id AS uuid), :bot_id, :text, :tokens, :index, CAST(:embedding AS vector), NOW())
    """
)


def to_vector_literal(vector: Sequence[float]) -> str:
    """Render *vector* in pgvector's text input format: ``[0.1,0.2,...]``."""
    return "[" + ",".join(repr(float(v)) for v in vector) + "]"


class ChunkStore(Protocol):
    """What the retriever and indexer need from a vector store."""

    async def search(
        self, bot_id: str, vector: Sequence[float], top_k: int,
    ) -> list[RetrievedChunk]:
        ...

    async def replace_chunks(
        self,
        bot_id: str,
        chunks: Sequence[KnowledgeChunk],
        vectors: Sequence[Sequence[float]],
    ) -> int:
        ...


class PgVectorChunkStore:
    """``ChunkStore`` backed by PostgreSQL + pgvector."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def search(
        self, bot_id: str, vector: Sequence[float], top_k: int,
    ) -> list[RetrievedChunk]:
        """Return up to *top_k* chunks of *bot_id*, most similar first."""
        async with self._session_factory() as session:
            result = await session.execute(
                _SEARCH_SQL,
                {
                    "bot_id": bot_id,
                    "embedding": to_vector_literal(vector),
                    "limit": top_k,
                },
            )
            return [
                RetrievedChunk(
                    text=row.text,
                    score=float(row.score),
                    chunk_id=str(row.id),
                    index=row.index,
                )
                for row in result
            ]

    async def replace_chunks(
        self,
        bot_id: str,
        chunks: Sequence[KnowledgeChunk],
        vectors: Sequence[Sequence[float]],
    ) -> int:
        """Swap the bot's whole chunk set in one transaction.

        Readers see either the old set or the new one, never a mix.
        """
        if len(chunks) != len(vectors):
            raise ValueError(
                f"Got {len(chunks)} chunks but {len(vectors)} embeddings for bot {bot_id}"
            )

        rows = [
            {
                "id": chunk.chunk_id,
                "bot_id": bot_id,
                "text": chunk.text,
                "tokens": chunk.tokens,
                "index": chunk.index,
                "embedding": to_vector_literal(vector),
            }
            for chunk, vector in zip(chunks, vectors)
        ]

        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(_DELETE_SQL, {"bot_id": bot_id})
                if rows:
                    await session.execute(_INSERT_SQL, rows)

        logger.info("Stored %d chunk(s) for bot %s", len(rows), bot_id)
        return len(rows)
