"""Low-signal guard: is this utterance worth a retrieval round-trip?

A cost-control heuristic.  A false positive only means one turn is answered
from the minimal prompt without retrieved knowledge.
"""

from __future__ import annotations

import logging
import re
from typing import Callable, Sequence

from widgetbot.models import ChatMessage

logger = logging.getLogger(__name__)

CapturePredicate = Callable[[str], bool]

_ACK = (
    r"(?:yes|yeah|yep|sure|ok|okay|please|more info|more information|tell me more|nothing"
    r"|no thanks?|no thank you|that'?s all|all good|no more|nope|nah|i'?m good|im good"
    r"|thanks|thank you)"
)
_KEYWORD = (
    r"(?:price|cost|fees?|hours?|address|location|directions?|book(?:ing)?|schedule|time"
    r"|when|where|phone|email|website|link|info|details?)"
)
# Words that add no specificity to a bare keyword ("your hours", "the price please")
_FILLER = r"(?:the|your|ur|a|an|and|any|some|more|please|pls|ok|okay|so)"

_ACK_UTTERANCE = re.compile(rf"{_ACK}(?:[\s,]+{_ACK})*", re.IGNORECASE)
_KEYWORD_UTTERANCE = re.compile(
    rf"(?:{_FILLER}\s+)*{_KEYWORD}(?:[\s,]+(?:{_FILLER}|{_KEYWORD}))*", re.IGNORECASE,
)
_TERMINAL_PUNCTUATION = re.compile(r"[?.!]")
_EDGE_PUNCTUATION = " \t\n?.!,;:\"'"

_CAPTURE_WORD = re.compile(
    r"\b(yes|yeah|yep|ok|okay|no|nah|nope|please|thanks|thank you)\b", re.IGNORECASE,
)
_EMAIL = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE = re.compile(r"^\+?\d[\d\s().-]{5,}$")


def _normalize(text: str) -> str:
    return re.sub(r"\s+", " ", (text or "").strip(_EDGE_PUNCTUATION)).lower()


def is_short_acknowledgement(text: str) -> bool:
    return bool(_ACK_UTTERANCE.fullmatch(_normalize(text)))


def is_generic_keyword(text: str) -> bool:
    """A topic keyword with nothing narrowing it down, e.g. ``"price?"``."""
    return bool(_KEYWORD_UTTERANCE.fullmatch(_normalize(text)))


def is_short_nudge(text: str) -> bool:
    """No sentence punctuation and at most two whitespace-delimited tokens."""
    stripped = (text or "").strip()
    if not stripped or _TERMINAL_PUNCTUATION.search(stripped):
        return False
    return len(stripped.split()) <= 2


def is_likely_capture_input(text: str) -> bool:
    """Does *text* look like an answer to a form-style question?

    Empty replies, short yes/no/ok/thanks answers, and a bare email
    address or phone number.
    """
    stripped = (text or "").strip()
    if not stripped:
        return True
    if _EMAIL.match(stripped) or _PHONE.match(stripped):
        return True
    return len(stripped.split()) <= 3 and bool(_CAPTURE_WORD.search(stripped))


def is_low_signal(text: str, is_capture_answer: CapturePredicate | None = None) -> bool:
    """Return ``True`` if retrieval should be skipped for *text*."""
    if is_capture_answer is not None and is_capture_answer(text):
        return True
    return is_short_acknowledgement(text) or is_generic_keyword(text) or is_short_nudge(text)


def last_meaningful_user_text(history: Sequence[ChatMessage], latest: str) -> str:
    """Latest user utterance that is not a capture-style answer, or ``""``.

    *latest* is considered first, then the history newest to oldest.
    """
    candidates = [latest] + [m.content for m in reversed(history) if m.role == "user"]
    for candidate in candidates:
        stripped = (candidate or "").strip()
        if stripped and not is_likely_capture_input(stripped):
            return stripped
    return ""
