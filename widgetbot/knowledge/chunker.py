"""Sentence-aware, token-bounded chunking with a trailing overlap window.

Behaviour worth knowing before changing anything here:

* Text is split into sentences on whitespace that follows ``.``, ``?`` or
  ``!``.  A sentence is never split; one longer than
  ``MAX_TOKENS_PER_CHUNK`` is dropped entirely.
* A finalized chunk below ``MIN_TOKENS_PER_CHUNK`` is discarded, and so is
  a short trailing remainder.  Lost content is accepted in exchange for
  chunks that carry enough context to embed well.
* Each new chunk is seeded with the longest run of trailing sentences of
  the previous one that fits in ``OVERLAP_TOKENS``, shortened from the front
  when the seed plus the next sentence would exceed ``MAX_TOKENS_PER_CHUNK``.
"""

from __future__ import annotations

import logging
import re
import uuid
from typing import Callable

from widgetbot.knowledge.tokens import count_tokens
from widgetbot.models import KnowledgeChunk

logger = logging.getLogger(__name__)

MAX_TOKENS_PER_CHUNK = 800
MIN_TOKENS_PER_CHUNK = 200
OVERLAP_TOKENS = 200

_SENTENCE_BOUNDARY = re.compile(r"(?<=[.?!])\s+")

TokenCounter = Callable[[str], int]


def split_sentences(text: str) -> list[str]:
    """Split *text* on terminal punctuation followed by whitespace."""
    return [s.strip() for s in _SENTENCE_BOUNDARY.split(text or "") if s.strip()]


def _overlap_tail(sentences: list[str], counter: TokenCounter) -> tuple[list[str], int]:
    """Walk backwards collecting sentences until ``OVERLAP_TOKENS`` would be exceeded."""
    tail: list[str] = []
    tail_tokens = 0
    for sentence in reversed(sentences):
        tokens = counter(sentence)
        if tail_tokens + tokens > OVERLAP_TOKENS:
            break
        tail.insert(0, sentence)
        tail_tokens += tokens
    return tail, tail_tokens


def chunk_text(
    text: str,
    bot_id: str,
    counter: TokenCounter = count_tokens,
) -> list[KnowledgeChunk]:
    """Split *text* into ordered, overlapping chunks owned by *bot_id*.

    Args:
        text: The combined knowledge text of one bot.
        bot_id: Owner recorded on every chunk.
        counter: Token counter; injectable so boundaries can be computed
            without loading the tokenizer.

    Returns:
        Chunks with zero-based consecutive ``index`` values.  May be empty.
    """
    chunks: list[KnowledgeChunk] = []
    current: list[str] = []
    current_tokens = 0
    dropped_sentences = 0

    def _emit(sentences: list[str]) -> None:
        chunk_body = " ".join(sentences)
        tokens = counter(chunk_body)
        if tokens < MIN_TOKENS_PER_CHUNK:
            logger.debug("Dropping %d-token chunk for bot %s (below minimum)", tokens, bot_id)
            return
        chunks.append(
            KnowledgeChunk(
                chunk_id=str(uuid.uuid4()),
                bot_id=bot_id,
                text=chunk_body,
                tokens=tokens,
                index=len(chunks),
            )
        )

    for sentence in split_sentences(text):
        sentence_tokens = counter(sentence)
        if sentence_tokens > MAX_TOKENS_PER_CHUNK:
            dropped_sentences += 1
            continue

        if current_tokens + sentence_tokens > MAX_TOKENS_PER_CHUNK:
            _emit(current)
            current, current_tokens = _overlap_tail(current, counter)
            # The seed must leave room for the sentence that triggered the split
            while current and current_tokens + sentence_tokens > MAX_TOKENS_PER_CHUNK:
                current_tokens -= counter(current.pop(0))

        current.append(sentence)
        current_tokens += sentence_tokens

    _emit(current)

    if dropped_sentences:
        logger.info(
            "Chunking bot %s: dropped %d oversized sentence(s)", bot_id, dropped_sentences,
        )
    logger.debug("Chunking bot %s produced %d chunk(s)", bot_id, len(chunks))
    return chunks
