"""Rule-based intent detection for a single visitor utterance.

The detector is an ordered table of ``(label, predicate)`` pairs; the first
predicate that fires wins.  Booking sits at the top on purpose: routing a
booking request to FAQ loses the conversion, routing a question to booking
costs one extra prompt line.

  1. booking    scheduling vocabulary or a date/time-like phrase
  2. emergency  urgent / pain / injury vocabulary
  3. pricing    cost / fee / quote vocabulary
  4. hours      open / close vocabulary
  5. location   address / map / direction vocabulary
  6. offer      deal / discount / promotion vocabulary
  7. booking    context overrides (needs the previous assistant turn):
                an affirmation after a booking offer, or a time-like
                phrase after the assistant talked about scheduling.
                Rule 1 already claims every time phrase, so precedence
                shadows the time override; it only fires if rule 1
                stops matching bare time phrases.
  8. faq        anything longer than two characters, else ``unknown``
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Literal, Sequence

from widgetbot.models import ChatMessage

logger = logging.getLogger(__name__)

Intent = Literal[
    "booking", "pricing", "emergency", "hours", "location", "offer", "faq", "unknown",
]

INTENTS: tuple[str, ...] = (
    "booking", "pricing", "emergency", "hours", "location", "offer", "faq", "unknown",
)


# ── Vocabulary ───────────────────────────────────────────────────────

_TIME_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\b(?:tom+or+ow|today|this week|next week)\b",
        r"\b(?:mon(?:day)?|tue(?:sday)?|wed(?:nesday)?|thu(?:rsday)?|fri(?:day)?|sat(?:urday)?|sun(?:day)?)\b",
        r"\b(?:at\s*)?\d{1,2}(?::\d{2})?\s?(?:am|pm)\b",
        r"\b\d{1,2}[:.]\d{2}\b",
        r"\b(?:next|this)\s+(?:morning|afternoon|evening|weekend)\b",
    )
]

_BOOKING = re.compile(
    r"\b(book\w*|schedul\w*|appointments?|availability|slots?|reserv\w*)\b", re.IGNORECASE,
)
_EMERGENCY = re.compile(
    r"\b(emergenc\w*|urgent(?:ly)?|pain(?:ful|s)?|toothache|broken|chipped|swollen|bleeding|same[- ]day)\b",
    re.IGNORECASE,
)
_PRICING = re.compile(
    r"\b(prices?|pricing|costs?|how much|fees?|payments?|quotes?|estimates?)\b", re.IGNORECASE,
)
_HOURS = re.compile(r"\b(hours?|open|opening|close|closing|closed)\b", re.IGNORECASE)
_LOCATION = re.compile(
    r"\b(where|address|location|near|nearby|map|directions?)\b", re.IGNORECASE,
)
_OFFER = re.compile(r"\b(offers?|deals?|discounts?|promotions?|specials?)\b", re.IGNORECASE)

_AFFIRMATION = re.compile(
    r"\b(yes|yeah|yep|sure|ok|okay|sounds good|please|go ahead|do it|confirm|let'?s|proceed)\b",
    re.IGNORECASE,
)
_ASSISTANT_OFFERED_BOOKING = re.compile(
    r"\b(book|schedule|appointment|calendar|pick(?:\s+a)?\s+time|choose\s+a\s+time"
    r"|select\s+(?:a\s+)?(?:time|date)|reserve\s+(?:a\s+)?(?:slot|time)"
    r"|set\s+up\s+(?:a\s+)?(?:consultation|visit|appointment)"
    r"|arrange\s+(?:a\s+)?(?:time|visit)|get\s+you\s+(?:in|scheduled)|proceed)\b",
    re.IGNORECASE,
)
_ASSISTANT_ASKED_TIMING = re.compile(
    r"\b(calendar|time|date|consultation|appointment|pick|choose|select|schedule)\b",
    re.IGNORECASE,
)


def extract_time_phrases(text: str) -> list[str]:
    """Date/time-like phrases in *text*, first-seen order, de-duplicated."""
    found: list[str] = []
    for pattern in _TIME_PATTERNS:
        for match in pattern.finditer(text or ""):
            phrase = match.group(0).strip()
            if phrase.lower() not in (f.lower() for f in found):
                found.append(phrase)
    return found


def last_assistant_text(history: Sequence[ChatMessage]) -> str:
    """Content of the most recent non-empty assistant turn, or ``""``."""
    for message in reversed(history):
        if message.role == "assistant" and message.content.strip():
            return message.content
    return ""


# ── Rule table ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class IntentRule:
    """One row of the precedence table.

    ``predicate(utterance, previous_assistant_text)`` receives the trimmed,
    lower-cased utterance and the (possibly empty) previous assistant turn.
    """

    label: str
    name: str
    predicate: Callable[[str, str], bool]


def _affirms_booking_offer(text: str, previous: str) -> bool:
    return bool(previous) and bool(_AFFIRMATION.search(text)) and bool(
        _ASSISTANT_OFFERED_BOOKING.search(previous)
    )


def _time_after_scheduling_talk(text: str, previous: str) -> bool:
    return bool(previous) and bool(extract_time_phrases(text)) and bool(
        _ASSISTANT_ASKED_TIMING.search(previous)
    )


INTENT_RULES: tuple[IntentRule, ...] = (
    IntentRule(
        "booking", "booking_vocabulary",
        lambda t, _: bool(_BOOKING.search(t) or extract_time_phrases(t)),
    ),
    IntentRule("emergency", "emergency_vocabulary", lambda t, _: bool(_EMERGENCY.search(t))),
    IntentRule("pricing", "pricing_vocabulary", lambda t, _: bool(_PRICING.search(t))),
    IntentRule("hours", "hours_vocabulary", lambda t, _: bool(_HOURS.search(t))),
    IntentRule("location", "location_vocabulary", lambda t, _: bool(_LOCATION.search(t))),
    IntentRule("offer", "offer_vocabulary", lambda t, _: bool(_OFFER.search(t))),
    IntentRule("booking", "affirmed_booking_offer", _affirms_booking_offer),
    IntentRule("booking", "time_after_scheduling_talk", _time_after_scheduling_talk),
)


def detect_intent(utterance: str, previous_assistant_text: str | None = None) -> str:
    """Classify *utterance* into one label of ``INTENTS``.

    Args:
        utterance: The visitor's latest message.
        previous_assistant_text: The assistant turn just before it, if any.
    """
    text = (utterance or "").strip().lower()
    previous = (previous_assistant_text or "").strip().lower()

    for rule in INTENT_RULES:
        if rule.predicate(text, previous):
            logger.debug("Intent %s via rule %s", rule.label, rule.name)
            return rule.label

    return "faq" if len(text) > 2 else "unknown"
