"""Visitor capture state (name / email / phone) and its completion edge.

Capture is complete once both name and email are present.  The
``lead_captured`` side effect must fire exactly once, on the turn where
that first becomes true, so ``capture_just_completed`` is a pure edge
trigger over the before/after states.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Sequence

from widgetbot.models import ChatMessage

logger = logging.getLogger(__name__)

_EMAIL = re.compile(r"([A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,})", re.IGNORECASE)
_PHONE = re.compile(r"(\+?\d[\d\s().-]{7,}\d)")
_NAME_ASK = re.compile(
    r"your name|name please|what'?s your name|what is your name|can i take your name"
    r"|what name should i put|put this under your name",
    re.IGNORECASE,
)
# "my name is ..." takes any casing; "I'm ..." / "this is ..." needs a capitalised name
_INLINE_NAME = re.compile(
    r"\b(?:(?i:my\s+name\s+is\s+|name\s*[:=]\s*)([^\W\d_][\w' -]{1,40})"
    r"|(?i:i'?m|i am|this is)\s+([A-Z][\w'-]{1,19}(?:\s+[A-Z][\w'-]{1,19}){0,2}))",
)
_BAD_NAME = re.compile(
    r"\b(yes|yeah|yep|ok|okay|please|no|nah|nope|not now|later|maybe|thanks|thank you)\b",
    re.IGNORECASE,
)
_NOT_A_NAME = re.compile(
    r"\b(when|how|what|where|who|why|which|can|could|would|should|cost|price|book"
    r"|schedule|today|tomorrow|looking|interested|here|good|fine)\b",
    re.IGNORECASE,
)
_NAME_WORD = re.compile(r"^[^\W\d_][\w'-]{0,19}$")


@dataclass(frozen=True)
class CaptureState:
    name: str | None = None
    email: str | None = None
    phone: str | None = None

    @property
    def is_complete(self) -> bool:
        return bool(self.name and self.email)

    def merge(self, other: CaptureState) -> CaptureState:
        """Field-wise merge; a present field is never replaced by an absent one."""
        return CaptureState(
            name=self.name or other.name,
            email=self.email or other.email,
            phone=self.phone or other.phone,
        )


def capture_just_completed(prev: CaptureState | None, curr: CaptureState | None) -> bool:
    """``True`` only on the transition into "name and email both present"."""
    was_complete = prev is not None and prev.is_complete
    is_complete = curr is not None and curr.is_complete
    return not was_complete and is_complete


# ── Extraction ───────────────────────────────────────────────────────


def looks_like_name(text: str) -> bool:
    """One to three plain words, no punctuation, not a yes/no or question."""
    candidate = (text or "").strip()
    if not candidate or re.search(r"[?!.@]", candidate):
        return False
    if _BAD_NAME.search(candidate) or _NOT_A_NAME.search(candidate):
        return False
    words = candidate.split()
    return 0 < len(words) <= 3 and all(_NAME_WORD.match(w) for w in words)


def _title(name: str) -> str:
    return " ".join(w[:1].upper() + w[1:].lower() for w in name.split())


def extract_inline_name(text: str) -> str | None:
    """Pull a name out of phrases like ``"my name is Ana Lopez"``."""
    match = _INLINE_NAME.search(text or "")
    if not match:
        return None
    # Stop at the first clause break ("I'm Ana, and my email is ...")
    candidate = re.split(r"[,;]| and ", match.group(1) or match.group(2))[0].strip()
    return _title(candidate) if looks_like_name(candidate) else None


def extract_capture_state(
    history: Sequence[ChatMessage], latest: str | None = None,
) -> CaptureState:
    """Scan the visitor's turns (plus *latest*) for name, email and phone."""
    messages = list(history)
    if latest is not None:
        messages.append(ChatMessage(role="user", content=latest))

    email = phone = name = None
    previous_assistant = ""
    for message in messages:
        if message.role == "assistant":
            previous_assistant = message.content or ""
            continue

        content = message.content or ""
        if email is None:
            found = _EMAIL.search(content)
            if found:
                email = found.group(1).lower()
        if phone is None:
            found = _PHONE.search(content)
            if found:
                phone = re.sub(r"[^\d+]", "", found.group(1))
        if name is None:
            name = extract_inline_name(content)
            if name is None and _NAME_ASK.search(previous_assistant) and looks_like_name(content):
                name = _title(content.strip())
        previous_assistant = ""

    return CaptureState(name=name, email=email, phone=phone)
