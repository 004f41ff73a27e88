"""Domain records shared by the knowledge, NLU and orchestration layers.

These are plain in-process values.  Persistence belongs to the CRUD layer;
the repositories in ``widgetbot.knowledge`` only map rows onto them.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, time
from typing import Any, Literal, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

Role = Literal["user", "assistant"]
LanguagePreference = Literal["auto", "en", "fr"]

WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


# ── Working hours / after-hours ──────────────────────────────────────


def _parse_hhmm(value: str) -> time:
    hours, _, minutes = value.strip().partition(":")
    return time(int(hours), int(minutes or 0))


@dataclass(frozen=True)
class WorkingHours:
    """Opening intervals per weekday, expressed in the bot's timezone.

    ``intervals`` maps ``"mon"`` … ``"sun"`` to a tuple of ``(open, close)``
    pairs.  A weekday that is missing or empty is closed.  A bot with no
    intervals at all has not configured hours and is never after-hours.
    """

    timezone: str = "UTC"
    intervals: Mapping[str, tuple[tuple[time, time], ...]] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None, timezone: str = "UTC") -> WorkingHours:
        """Build from JSON-ish config.

        Accepts ``{"mon": [["09:00", "17:00"]]}`` or ``{"mon": "09:00-17:00"}``.
        Unparseable entries are skipped with a warning.
        """
        intervals: dict[str, tuple[tuple[time, time], ...]] = {}
        for day, spans in (raw or {}).items():
            key = str(day).lower()[:3]
            if key not in WEEKDAYS or not spans:
                continue
            if isinstance(spans, str):
                spans = [spans.split("-", 1)]
            parsed: list[tuple[time, time]] = []
            for span in spans:
                try:
                    start, end = span
                    parsed.append((_parse_hhmm(start), _parse_hhmm(end)))
                except (TypeError, ValueError):
                    logger.warning("Ignoring malformed working-hours span %r for %s", span, key)
            if parsed:
                intervals[key] = tuple(parsed)
        return cls(timezone=timezone or "UTC", intervals=intervals)

    @property
    def configured(self) -> bool:
        return bool(self.intervals)

    def _zone(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone %r, falling back to UTC", self.timezone)
            return ZoneInfo("UTC")

    def is_open_at(self, now: datetime) -> bool:
        """Return ``True`` if *now* falls inside an opening interval."""
        if not self.configured:
            return True
        if now.tzinfo is None:
            now = now.replace(tzinfo=UTC)
        local = now.astimezone(self._zone())
        day = WEEKDAYS[local.weekday()]
        previous_day = WEEKDAYS[(local.weekday() - 1) % 7]
        current = local.time().replace(tzinfo=None)
        for start, end in self.intervals.get(day, ()):
            if start < end:
                if start <= current < end:
                    return True
            # Overnight span, e.g. 22:00-02:00: today's part runs to midnight
            elif current >= start:
                return True
        # The early-morning tail belongs to yesterday's overnight span
        for start, end in self.intervals.get(previous_day, ()):
            if start > end and current < end:
                return True
        return False


# ── Bot (tenant-configured assistant) ────────────────────────────────


@dataclass(frozen=True)
class Bot:
    """Read-only view of a tenant's bot as the chat core needs it."""

    id: str
    account_id: str = ""
    description: str = ""
    scraped_content: str = ""
    uploaded_files_text: str = ""
    tone: str = ""
    contact_email: str = ""
    contact_phone: str = ""
    address: str = ""
    calendar_provider: str = ""
    calendar_url: str = ""
    timezone: str = "UTC"
    working_hours: WorkingHours = field(default_factory=WorkingHours)
    preferred_language: LanguagePreference = "auto"

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Bot:
        """Map a database row / JSON object onto a ``Bot``."""
        timezone = row.get("timezone") or "UTC"
        language = row.get("preferred_language") or "auto"
        if language not in ("auto", "en", "fr"):
            language = "auto"
        return cls(
            id=str(row["id"]),
            account_id=str(row.get("account_id") or ""),
            description=row.get("description") or "",
            scraped_content=row.get("scraped_content") or "",
            uploaded_files_text=row.get("uploaded_files_text") or "",
            tone=row.get("tone") or "",
            contact_email=row.get("contact_email") or "",
            contact_phone=row.get("contact_phone") or "",
            address=row.get("address") or "",
            calendar_provider=row.get("calendar_provider") or "",
            calendar_url=row.get("calendar_url") or "",
            timezone=timezone,
            working_hours=WorkingHours.from_mapping(row.get("working_hours"), timezone),
            preferred_language=language,
        )

    @property
    def business_info(self) -> dict[str, str]:
        """Loose contact record consumed by the fallback templates."""
        return {
            "email": self.contact_email,
            "phone": self.contact_phone,
            "address": self.address,
        }

    @property
    def has_calendar(self) -> bool:
        return bool(self.calendar_url)


# ── Knowledge ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class KnowledgeChunk:
    """Immutable token-bounded slice of a bot's combined knowledge."""

    chunk_id: str
    bot_id: str
    text: str
    tokens: int
    index: int


@dataclass(frozen=True)
class RetrievedChunk:
    """A similarity-search hit, best-first order is the caller's contract."""

    text: str
    score: float = 0.0
    chunk_id: str = ""
    index: int = 0


# ── Conversation ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class ChatMessage:
    role: Role
    content: str


@dataclass(frozen=True)
class ConversationState:
    """Per-conversation flags carried between turns by the caller.

    ``version`` is reserved for optimistic concurrency in the persistence
    layer; the chat core reads it but never enforces it.
    """

    calendar_shown: bool = False
    booking_completed: bool = False
    version: int = 0


@dataclass(frozen=True)
class SideEffect:
    """Work for an external collaborator, emitted after a turn is answered."""

    type: Literal["lead_captured", "booking_intent"]
    bot_id: str
    conversation_id: str
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def idempotency_key(self) -> str:
        """Stable per conversation for ``lead_captured``, which fires once.

        A conversation can propose several times, so ``booking_intent`` keys
        also carry a digest of the requested times (or the message).
        """
        key = f"{self.type}:{self.bot_id}:{self.conversation_id}"
        if self.type != "booking_intent":
            return key
        times = sorted(str(t).strip().lower() for t in self.payload.get("requested_times") or ())
        basis = "|".join(times) or str(self.payload.get("message", "")).strip().lower()
        return f"{key}:{hashlib.sha256(basis.encode()).hexdigest()[:16]}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "bot_id": self.bot_id,
            "conversation_id": self.conversation_id,
            "idempotency_key": self.idempotency_key,
            "payload": dict(self.payload),
        }
