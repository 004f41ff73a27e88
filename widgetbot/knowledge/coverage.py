"""Does the bot's knowledge plausibly answer this question?

When it does not, the orchestrator replies with a canned fallback instead
of letting the model improvise.  The checks run cheapest-first and any one
of them is enough:

  1. Confident retrieval: non-boilerplate chunks scoring >= 0.72 whose text
     adds up to at least 400 characters.
  2. Structured fast path: the question asks for hours / location / contact
     and the knowledge names that field.
  3. Synonym groups: the same concept group appears in question and
     knowledge.
  4. Token overlap, per retrieved chunk and then over the whole knowledge
     text, with a threshold that scales with question length.
"""

from __future__ import annotations

import logging
import math
import re
from typing import Sequence

from widgetbot.models import RetrievedChunk

logger = logging.getLogger(__name__)

CONFIDENT_SCORE = 0.72
CONFIDENT_MIN_CHARS = 400
MAX_CHUNKS = 5

_BOILERPLATE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\bcookies?\b",
        r"\bprivacy\b",
        r"\bterms?\b",
        r"\bnewsletter\b",
        r"©|\ball rights reserved\b",
        r"\bfooter\b",
        r"\bsite by\b",
        r"\btracking\b",
        r"\bmarketing\b",
        r"\bsubscribe\b",
        r"\bbook now\b.*(banner|popup)",
    )
]

_STOP_WORDS = frozenset(
    "the a an and or for to in of on with at by from about into over after "
    "before is are was were be been being this that these those it as we "
    "you they i".split()
)

_SYNONYM_GROUPS: dict[str, tuple[str, ...]] = {
    "cleaning": ("clean", "cleaning", "scale", "scaling", "polish", "prophy", "deep clean"),
    "whitening": ("whiten", "whitening", "bleach", "brighten", "zoom"),
    "braces": ("braces", "invisalign", "aligner", "aligners", "orthodontic", "orthodontics"),
    "implants": ("implant", "implants", "dental implant"),
    "rootcanal": ("root canal", "endodontic", "endodontics", "endodontist"),
    "crown": ("crown", "crowns", "cap", "caps"),
    "veneer": ("veneer", "veneers"),
    "extraction": ("extraction", "extractions", "pull tooth", "remove tooth"),
    "emergency": ("emergency", "urgent", "toothache", "broken tooth", "swollen", "bleeding"),
    "hours": ("hours", "open", "close", "opening", "closing", "today"),
    "pricing": ("price", "pricing", "cost", "fee", "fees", "how much", "quote", "estimate"),
    "insurance": ("insurance", "insure", "in-network", "out of network", "ppo", "hmo"),
    "location": ("where", "address", "location", "near", "map", "directions", "direction"),
}

_ASKS_HOURS = re.compile(r"\b(hours?|open|close|opening|closing|today)\b", re.IGNORECASE)
_ASKS_LOCATION = re.compile(r"\b(where|address|location|near|map|directions?)\b", re.IGNORECASE)
_ASKS_CONTACT = re.compile(r"\b(email|phone|call|contact|reach)\b", re.IGNORECASE)
_KB_HOURS = re.compile(r"\bhours?\b", re.IGNORECASE)
_KB_LOCATION = re.compile(r"\b(address|location|map|directions?)\b", re.IGNORECASE)
_KB_CONTACT = re.compile(r"\b(email|phone|contact)\b", re.IGNORECASE)

_WORD = re.compile(r"[a-z][a-z0-9'-]+")


def is_boilerplate(text: str) -> bool:
    """Cookie banners, legal footers and similar scraped noise."""
    head = (text or "")[:4000]
    return any(p.search(head) for p in _BOILERPLATE_PATTERNS)


def filter_chunks(chunks: Sequence[RetrievedChunk], limit: int = MAX_CHUNKS) -> list[RetrievedChunk]:
    """Drop empty and boilerplate chunks, keep the *limit* best by score."""
    kept = [c for c in chunks if c.text.strip() and not is_boilerplate(c.text)]
    kept.sort(key=lambda c: c.score, reverse=True)
    return kept[:limit]


def has_confident_coverage(
    chunks: Sequence[RetrievedChunk],
    min_score: float = CONFIDENT_SCORE,
    min_chars: int = CONFIDENT_MIN_CHARS,
) -> bool:
    strong = sum(len(c.text) for c in chunks if c.score >= min_score)
    return strong >= min_chars


def _tokens(text: str) -> list[str]:
    return [w for w in _WORD.findall((text or "").lower()) if w not in _STOP_WORDS]


def _has_phrase(haystack: str, needle: str) -> bool:
    return re.search(rf"\b{re.escape(needle)}\b", haystack, re.IGNORECASE) is not None


def _synonym_hits(question: str, document: str) -> int:
    """Count concept groups present on both sides (one per group)."""
    hits = 0
    for terms in _SYNONYM_GROUPS.values():
        if any(_has_phrase(question, t) for t in terms) and any(
            _has_phrase(document, t) for t in terms
        ):
            hits += 1
    return hits


def knowledge_covers_question(
    question: str,
    knowledge_text: str,
    chunks: Sequence[RetrievedChunk],
) -> bool:
    """Return ``True`` if the knowledge plausibly answers *question*.

    Args:
        question: The visitor's question (or the last meaningful one).
        knowledge_text: Static knowledge: description, scraped and uploaded text.
        chunks: Chunks retrieved for this turn, any order.
    """
    filtered = filter_chunks(chunks)
    if has_confident_coverage(filtered):
        return True

    question = (question or "").strip()
    if not question:
        return False

    if _ASKS_HOURS.search(question) and _KB_HOURS.search(knowledge_text):
        return True
    if _ASKS_LOCATION.search(question) and _KB_LOCATION.search(knowledge_text):
        return True
    if _ASKS_CONTACT.search(question) and _KB_CONTACT.search(knowledge_text):
        return True

    if _synonym_hits(question, knowledge_text) > 0:
        return True

    question_tokens = _tokens(question)
    if not question_tokens:
        return False

    short = len(question_tokens) < 6
    per_chunk_threshold = 1 if short else min(4, math.ceil(len(question_tokens) * 0.3))
    for chunk in filtered:
        chunk_tokens = set(_tokens(chunk.text))
        overlap = sum(1 for t in question_tokens if t in chunk_tokens)
        if overlap >= per_chunk_threshold or _synonym_hits(question, chunk.text) > 0:
            return True

    knowledge_tokens = set(_tokens(knowledge_text))
    overlap = sum(1 for t in question_tokens if t in knowledge_tokens)
    overall_threshold = 2 if short else min(6, math.ceil(len(question_tokens) * 0.35))
    retrieved_chars = sum(len(c.text) for c in filtered)
    covered = overlap >= overall_threshold or retrieved_chars > 200
    logger.debug(
        "Coverage: overlap=%d/%d retrieved_chars=%d covered=%s",
        overlap, overall_threshold, retrieved_chars, covered,
    )
    return covered
