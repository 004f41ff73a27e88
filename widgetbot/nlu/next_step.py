"""Next conversational step: where the assistant should steer this turn.

Each intent owns an ordered pipeline of steps built from a few blocks
(confirm the booking, open the calendar, ask for the service, name, email
or phone, a free-form follow-up).  A step may be guarded on the business
context; the "we're closed right now" confirmation only applies after
hours.  ``decide_next_action`` walks the pipeline:

  * a visitor who just typed an email or phone number is thanked and kept
    on the same topic, or let go if they also said they are done
  * a low-signal turn with nothing pending yields an empty free-form step
  * ``ask`` steps are skipped once the entity is known
  * ``confirm`` is skipped after a yes and becomes a topic follow-up
    after a no
  * any other step wins as soon as it is reached

``plan_next_action`` adds the turn-level overrides: a visitor who is
clearly booking always ends on a booking step, and accepting an offer of
availability opens the calendar.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from typing import Callable, Literal, Sequence
from urllib.parse import quote_plus

from widgetbot.models import Bot
from widgetbot.nlu.capture import CaptureState

logger = logging.getLogger(__name__)

ActionType = Literal["ask", "confirm", "open_calendar", "show_link", "freeform", "handoff"]

BOOKING_STEPS = frozenset({"confirm", "open_calendar"})


@dataclass(frozen=True)
class NextAction:
    """What the assistant should do next, with the copy that goes with it."""

    type: ActionType
    message: str = ""
    key: str = ""
    url: str = ""

    @property
    def is_booking_step(self) -> bool:
        return self.type in BOOKING_STEPS


NO_ACTION = NextAction("freeform")


@dataclass(frozen=True)
class BusinessContext:
    """The slice of a bot the pipelines look at."""

    is_open: bool = True
    calendar_url: str = ""
    maps_url: str = ""

    @classmethod
    def for_bot(cls, bot: Bot, after_hours: bool) -> BusinessContext:
        address = bot.address.strip()
        return cls(
            is_open=not after_hours,
            calendar_url=bot.calendar_url,
            maps_url=f"https://maps.google.com/?q={quote_plus(address)}" if address else "",
        )


# ── Entities ─────────────────────────────────────────────────────────

_SERVICES = (
    ("cleaning", re.compile(r"\bclean(?:ing)?\b", re.IGNORECASE)),
    ("filling", re.compile(r"\bfillings?\b", re.IGNORECASE)),
    ("crown", re.compile(r"\bcrowns?\b", re.IGNORECASE)),
    ("orthodontics", re.compile(r"\b(?:braces?|aligners?|invisalign)\b", re.IGNORECASE)),
)


def infer_service(texts: Sequence[str]) -> str | None:
    joined = "\n".join(t for t in texts if t)
    for service, pattern in _SERVICES:
        if pattern.search(joined):
            return service
    return None


@dataclass(frozen=True)
class Entities:
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    service: str | None = None

    @classmethod
    def from_turn(cls, capture: CaptureState, texts: Sequence[str]) -> Entities:
        return cls(
            name=capture.name,
            email=capture.email,
            phone=capture.phone,
            service=infer_service(texts),
        )

    def has(self, key: str) -> bool:
        return bool(getattr(self, key, None))


# ── Booking signals ──────────────────────────────────────────────────

_ASSISTANT_OFFERS = re.compile(
    r"\b(want me to|shall i|should i|do you want (?:me )?to|would you (?:like|prefer)(?: me)? to"
    r"|would you like to|want to)\b",
    re.IGNORECASE,
)
_BOOKING_TOPIC = re.compile(
    r"\b(calendar|book|schedule|appointment|consultation|pick a time|choose a time|proceed"
    r"|reschedule|cancel)\b",
    re.IGNORECASE,
)
_PREVIOUS_BOOKING_TALK = re.compile(
    r"\b(schedule|book|appointment|consultation|reschedule|cancel)\b", re.IGNORECASE,
)
_OPEN_CALENDAR = re.compile(r"\b(open|show|give|get)\b.*\bcalendar\b", re.IGNORECASE)
_BOOK_SOMETHING = re.compile(
    r"\b(book|schedule|reschedule|cancel)\b.*\b(appointment|slot|time|tomorrow|today|\d{1,2}(?::\d{2})?)\b",
    re.IGNORECASE,
)
_BOOKING_NOUN = re.compile(r"\b(calendar|appointment|consultation|reschedule|cancel)\b", re.IGNORECASE)
_YES = re.compile(r"\b(yes|yeah|yep|sure|ok|okay|sounds good|please|go ahead|do it)\b", re.IGNORECASE)
_DECLINE = re.compile(r"\b(no|not now|later|maybe|nah|cancel)\b", re.IGNORECASE)
_SOFT_ACK = re.compile(
    r"\b(ok(?:ay)?|sounds good|got it|understood|great|cool|fine|alright|all right|right|noted"
    r"|thanks|thank you|ah i see|i see|hmm|mm)\b",
    re.IGNORECASE,
)
_OFFERED_AVAILABILITY = re.compile(
    r"(?:see|send|show).{0,30}availability|open (?:our|the) calendar|pick a time|choose a time"
    r"|book now|see (?:available )?slots",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class BookingSignals:
    booking_yes: bool = False
    booking_no: bool = False
    soft_ack: bool = False
    user_asked_to_open: bool = False
    accepted_availability: bool = False


def booking_signals(text: str, previous_assistant: str, intent: str) -> BookingSignals:
    """Read yes / no / "open it" out of the visitor's reply to the last turn."""
    text = (text or "").strip()
    previous = previous_assistant or ""

    assistant_asked = bool(_ASSISTANT_OFFERS.search(previous) and _BOOKING_TOPIC.search(previous))
    user_asked = bool(
        _OPEN_CALENDAR.search(text) or _BOOK_SOMETHING.search(text) or _BOOKING_NOUN.search(text)
    )
    said_yes = bool(_YES.search(text))

    return BookingSignals(
        booking_yes=(assistant_asked and said_yes) or user_asked or (intent == "booking" and said_yes),
        booking_no=bool(
            (assistant_asked or _PREVIOUS_BOOKING_TALK.search(previous)) and _DECLINE.search(text)
        ),
        soft_ack=bool(_SOFT_ACK.search(text)),
        user_asked_to_open=user_asked,
        accepted_availability=said_yes and bool(_OFFERED_AVAILABILITY.search(previous)),
    )


# ── Pipelines ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Step:
    action: NextAction
    when: Callable[[BusinessContext, Entities], bool] | None = None

    def applies(self, biz: BusinessContext, entities: Entities) -> bool:
        return self.when is None or self.when(biz, entities)


def _ask(key: str, message: str) -> Step:
    return Step(NextAction("ask", message, key=key))


def _say(message: str) -> tuple[Step, ...]:
    return (Step(NextAction("freeform", message)),)


_ASK_SERVICE = (_ask("service", "What are you looking for today (e.g., cleaning, whitening)?"),)
_COLLECT_LEAD = (
    _ask("name", "What name should I put on this?"),
    _ask("email", "What’s the best email for a quick confirmation?"),
)
_COLLECT_PHONE = (_ask("phone", "And a phone number in case we need to reach you?"),)
_CONFIRM_BOOKING = (
    Step(
        NextAction(
            "confirm", "Want me to open the calendar so you can pick a time?", key="booking_confirm",
        ),
        lambda biz, _: biz.is_open,
    ),
    Step(
        NextAction(
            "confirm",
            "We’re closed right now, but I can line it up. "
            "Want me to open the calendar so you can choose a time?",
            key="booking_confirm",
        ),
        lambda biz, _: not biz.is_open,
    ),
)
_OPEN_CALENDAR_STEP = (Step(NextAction("open_calendar", "Great, here’s the calendar.")),)

_BOOKING_PIPELINE = (
    _CONFIRM_BOOKING + _OPEN_CALENDAR_STEP + _ASK_SERVICE + _COLLECT_LEAD + _COLLECT_PHONE
)

PIPELINES: dict[str, tuple[Step, ...]] = {
    "booking": _BOOKING_PIPELINE,
    "emergency": _BOOKING_PIPELINE,
    "pricing": (
        _say("Typical ranges depend on the case. I can share a quick estimate and help you book.")
        + _CONFIRM_BOOKING + _ASK_SERVICE + _OPEN_CALENDAR_STEP + _COLLECT_LEAD + _COLLECT_PHONE
    ),
    "hours": _say(
        "Here are today’s hours. If you want, I can pull up available times for a quick visit."
    ),
    "location": (
        Step(
            NextAction("show_link", "Here’s our address and directions:"),
            lambda biz, _: bool(biz.maps_url),
        ),
    ),
    "offer": (
        _say("Here are our current promotions and how to claim them.")
        + _CONFIRM_BOOKING + _ASK_SERVICE + _OPEN_CALENDAR_STEP + _COLLECT_LEAD + _COLLECT_PHONE
    ),
}
_DEFAULT_PIPELINE = _say(
    "Ask me anything and I’ll help. If you’d like, I can show available times too."
)


def rules_for_intent(intent: str) -> tuple[Step, ...]:
    return PIPELINES.get(intent, _DEFAULT_PIPELINE)


# ── Decision ─────────────────────────────────────────────────────────

_EMAIL_IN_TEXT = re.compile(r"[^\s@]+@[^\s@]+\.[^\s@]+")
_PHONE_ONLY = re.compile(r"\+?\d[\d\s().-]{6,}\d")
_USER_DONE = re.compile(
    r"\b(nothing|no thanks?|no thank you|not now|that'?s all|all good|no more|nope|nah"
    r"|i'?m good|im good)\b",
    re.IGNORECASE,
)

_TOPICS = {
    "pricing": "pricing and what’s included",
    "emergency": "urgent care and pain relief",
    "hours": "today’s hours and earliest openings",
    "location": "directions and parking",
    "offer": "current promotions",
    "booking": "the treatment details",
}
# intent → (follow-up question, stand-in when no service is known)
_AFTER_LEAD = {
    "pricing": (
        "Do you want a breakdown of what’s included and the differences for {}, "
        "or should I check available times?",
        "this treatment",
    ),
    "hours": ("Want me to check today’s hours and the earliest openings for {}?", "your visit"),
    "location": ("Do you need directions or parking info for your {}?", "appointment"),
    "offer": ("Would you like the current promotions relevant to {}?", "your treatment"),
    "booking": ("Would you like me to pull up available times for {}?", "your visit"),
}


def _topic(intent: str, entities: Entities) -> str:
    return entities.service or _TOPICS.get(intent, "treatments and prices")


def just_provided_contact(text: str) -> bool:
    """An email anywhere in *text*, or *text* is nothing but a phone number."""
    text = (text or "").strip()
    return bool(_EMAIL_IN_TEXT.search(text) or _PHONE_ONLY.fullmatch(text))


def _after_lead(intent: str, entities: Entities, biz: BusinessContext, text: str) -> NextAction:
    if _USER_DONE.search(text):
        return NextAction("freeform", "All set. I’m here if you need anything else.")

    if intent in ("pricing", "booking") and biz.calendar_url:
        return NextAction(
            "show_link",
            f"Thanks! I’ve got your details. Want to pick a time now for {entities.service or 'your visit'}?",
            url=biz.calendar_url,
        )

    if intent in _AFTER_LEAD:
        question, stand_in = _AFTER_LEAD[intent]
        followup = question.format(entities.service or stand_in)
    else:
        followup = f"What else would you like to know about {_topic(intent, entities)}?"
    return NextAction("freeform", f"Thanks! I’ve saved your details. {followup}")


def _after_decline(intent: str, entities: Entities) -> NextAction:
    topic = _topic(intent, entities)
    if intent == "pricing":
        message = f"No problem, happy to break down {topic}. Anything specific you’re comparing or curious about?"
    elif intent in ("booking", "emergency"):
        message = f"All good, we can talk through {topic} first. What would you like to know?"
    else:
        message = f"Got it. What else would you like to know about {topic}?"
    return NextAction("freeform", message)


def decide_next_action(
    intent: str,
    entities: Entities,
    biz: BusinessContext,
    signals: BookingSignals | None = None,
    text: str = "",
) -> NextAction:
    """Walk the intent's pipeline and return the first step that applies.

    Args:
        intent: Intent label the step is chosen for.
        entities: What is already known about the visitor.
        biz: Opening state and links of the business.
        signals: Yes / no / "open it" read from this turn.
        text: The visitor's latest message.
    """
    signals = signals or BookingSignals()
    text = (text or "").strip()
    pipeline = [step for step in rules_for_intent(intent) if step.applies(biz, entities)]

    if just_provided_contact(text):
        return _after_lead(intent, entities, biz, text)

    low_signal = signals.soft_ack or len(text.split()) <= 1 or not re.search(r"\w", text)
    has_confirm = any(step.action.type == "confirm" for step in pipeline)
    pending_ask = any(
        step.action.type == "ask" and not entities.has(step.action.key) for step in pipeline
    )
    if low_signal and not has_confirm and not pending_ask:
        return NO_ACTION

    for step in pipeline:
        action = step.action
        if action.type == "ask":
            if entities.has(action.key):
                continue
            return action
        if action.type == "confirm":
            if signals.booking_no:
                return _after_decline(intent, entities)
            if not signals.booking_yes:
                return action
            continue
        if action.type == "show_link" and not action.url:
            return replace(action, url=biz.maps_url)
        return action

    return NO_ACTION


def plan_next_action(
    intent: str,
    entities: Entities,
    biz: BusinessContext,
    signals: BookingSignals,
    text: str = "",
    *,
    booking_completed: bool = False,
) -> NextAction:
    """``decide_next_action`` plus the overrides that apply to the whole turn."""
    action = decide_next_action(intent, entities, biz, signals, text)

    if booking_completed:
        return NO_ACTION if action.is_booking_step else action
    if signals.accepted_availability:
        return NextAction("open_calendar")

    booking_now = intent == "booking" or signals.booking_yes or signals.user_asked_to_open
    if booking_now and not signals.booking_no and action.type not in ("confirm", "open_calendar", "show_link"):
        logger.debug("Booking turn without a booking step (%s), confirming instead", action.type)
        return NextAction("confirm", "Would you like to see available times now?", key="booking_confirm")
    return action
