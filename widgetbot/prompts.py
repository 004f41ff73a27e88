"""System prompt and canned replies for the widget assistant.

``build_system_prompt`` fills one fixed template.  Everything
variable about a turn goes through ``PromptContext``: the detected intent,
six optional policy fragments (inserted verbatim, or left empty), the
three context flags and the language preference.  The template never
inspects fragment content.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Mapping, Sequence

from widgetbot.knowledge.html import clean_html
from widgetbot.models import Bot, ConversationState, LanguagePreference, RetrievedChunk

MAX_KNOWLEDGE_CHARS = 150_000

# ── Language ─────────────────────────────────────────────────────────

_LANGUAGE_INSTRUCTIONS = {
    "en": (
        "Always respond in clear, natural English.\n"
        "If the visitor writes in another language, you can briefly acknowledge it "
        "but continue answering in English."
    ),
    "fr": (
        "Always respond in clear, natural French.\n"
        "If the visitor writes in another language, you can briefly acknowledge it "
        "but continue answering in French."
    ),
    "auto": (
        "Detect the visitor's language from their recent messages (English or French) "
        "and always respond in the same language as the visitor.\n"
        "If they switch languages, you may switch too, following the language of "
        "their latest message."
    ),
}

SYSTEM_PROMPT_TEMPLATE = """You are the official AI assistant for this business. Always speak as if you're part of their team, using "we", "our", and "us". Never refer to the business in the third person.

{language_instruction}

Use ONLY the knowledge provided in this conversation: the Business Description, Scraped Website Content, and Uploaded Files. Do not rely on outside knowledge, generic industry info, or assumptions. If the information needed to answer is not present or is ambiguous, say you don't have that in our current info and offer a short next step.

Strict knowledge boundaries:
- Do not discuss, suggest, or market services, prices, offers, contact details, or policies unless they appear in the provided knowledge.
- If a requested topic or service is not in the provided knowledge, respond with a concise, helpful fallback such as: "I don't have that in our current info. If you tell me a bit more about what you're looking for, I can point you to what we do offer."
- Never invent prices, availability, or capabilities. Never fabricate links, emails, or phone numbers.
- When listing what we can do, list only what is present in the knowledge.

Use the detected intent to guide your reply. The user's intent is: "{detected_intent}".

If the visitor asks a question related to services offered (e.g., pricing, appointments, treatments):
- Confirm politely whether it's something we can help with, based only on the provided content.
- Ask a relevant follow-up to understand their needs.
- If appropriate, guide them to the real contact method (contact form, calendar or email) using the actual link provided in the knowledge.
- If the request is unclear or not covered by the knowledge, ask up to 1-2 concise clarifying questions to pinpoint what they need. If after clarification the info still isn't in our knowledge, state that plainly and suggest the closest supported next step. Do not invent contact info or use placeholders.

Behaviour with rude or offensive language:
- If the visitor uses rude or offensive language, remain calm, polite, and professional.
- Do NOT mirror or repeat insults, and never insult the visitor.
- Acknowledge their frustration briefly if appropriate, then gently redirect the conversation back to how we can help them.
- If the visitor continues to send only insults or nonsense without any real question across multiple turns, it is acceptable to end politely and invite them to return when they need help.

Focus on visitor benefit: explain how our services solve problems, save time, reduce stress, or improve outcomes. Be concise and friendly, and propose a next step.{fragments}

CONTEXT FLAGS:
- AFTER_HOURS: {after_hours}
- CALENDAR_ALREADY_SHOWN: {calendar_already_shown}
- BOOKING_COMPLETED: {booking_completed}

HARD RULES:
- Do NOT say or imply an appointment is booked unless BOOKING_COMPLETED = true.
{calendar_rule}- Never announce or describe the act of opening or embedding the calendar.
- Only include an after-hours notice if AFTER_HOURS = true AND the user is not actively booking.
- If the required information is not in the provided knowledge, say so plainly and offer the closest next step that *is* supported by the knowledge.
- Be concise, friendly, and avoid apologies unless something actually failed.
- Never mention scraping, AI, bots, or internal mechanics."""

CALENDAR_SHOWN_RULE = (
    "- The calendar was already shown and no booking is completed: "
    "do NOT announce that the calendar is open, and do not offer it as new.\n"
)

KNOWLEDGE_HEADER = "Use the following information to answer questions:"


@dataclass(frozen=True)
class PromptContext:
    """Everything that varies between two system prompts."""

    detected_intent: str
    tone: str = ""
    iframe: str = ""
    booking_fallback: str = ""
    contact: str = ""
    no_link_until_confirm: str = ""
    suppress_booking_after_done: str = ""
    after_hours: bool = False
    calendar_already_shown: bool = False
    booking_completed: bool = False
    language: LanguagePreference = "auto"
    knowledge: str = ""


def _flag(value: bool) -> str:
    return "true" if value else "false"


def build_system_prompt(ctx: PromptContext) -> str:
    """Render the full instruction string for one turn."""
    calendar_rule = (
        CALENDAR_SHOWN_RULE
        if ctx.calendar_already_shown and not ctx.booking_completed
        else ""
    )
    # Each present fragment becomes its own paragraph; absent ones leave nothing
    fragments = "".join(
        f"\n\n{fragment}"
        for fragment in (
            ctx.tone,
            ctx.iframe,
            ctx.booking_fallback,
            ctx.contact,
            ctx.no_link_until_confirm,
            ctx.suppress_booking_after_done,
        )
        if fragment
    )
    prompt = SYSTEM_PROMPT_TEMPLATE.format(
        language_instruction=_LANGUAGE_INSTRUCTIONS.get(ctx.language, _LANGUAGE_INSTRUCTIONS["auto"]),
        detected_intent=ctx.detected_intent,
        fragments=fragments,
        after_hours=_flag(ctx.after_hours),
        calendar_already_shown=_flag(ctx.calendar_already_shown),
        booking_completed=_flag(ctx.booking_completed),
        calendar_rule=calendar_rule,
    )
    if ctx.knowledge:
        prompt = f"{prompt}\n\n{KNOWLEDGE_HEADER}\n\n{ctx.knowledge}"
    return prompt


# ── Fragment builders ────────────────────────────────────────────────


def tone_instruction(bot: Bot) -> str:
    tone = f"Use a {bot.tone.strip().lower()} tone. " if bot.tone.strip() else ""
    return (
        f"{tone}Answer **only** using the Business Description, Scraped Website Content, "
        "and Uploaded Files provided. If the information is not present, say you don't "
        "have it and suggest relevant topics instead. Do not invent or speculate."
    )


def contact_instruction(bot: Bot) -> str:
    info = bot.business_info
    return "\n".join(
        [
            "If the user asks for contact details, share ONLY these exact values, "
            'and say "not available" if a field is empty:',
            f"- Email: {info['email'] or 'not available'}",
            f"- Phone: {info['phone'] or 'not available'}",
            f"- Location: {info['address'] or 'not available'}",
        ]
    )


def booking_instructions(
    bot: Bot, intent: str, state: ConversationState, next_step: str = "",
) -> dict[str, str]:
    """The four booking-related fragments for this turn, empty when not applicable.

    *next_step* is the planned action type.  ``confirm`` and
    ``open_calendar`` bring in the calendar for any intent; only
    ``open_calendar`` (the visitor already said yes) lifts the
    no-link-until-confirmed rule.
    """
    fragments = {
        "iframe": "",
        "booking_fallback": "",
        "no_link_until_confirm": "",
        "suppress_booking_after_done": "",
    }
    if state.booking_completed:
        fragments["suppress_booking_after_done"] = (
            "The visitor's appointment is already confirmed. Do not offer to book again "
            "unless they explicitly ask for another appointment; help with any other questions."
        )
        return fragments

    if not bot.has_calendar:
        fragments["booking_fallback"] = (
            "Online booking is not available here. If the visitor wants an appointment, "
            "ask for their name, email and preferred day and time, and tell them our team "
            "will follow up to confirm."
        )
        return fragments

    if intent == "booking" or next_step in ("confirm", "open_calendar"):
        fragments["iframe"] = (
            "The visitor can choose a time in the booking calendar available in this chat. "
            "Invite them to pick the slot that suits them; do not paste calendar links."
        )
        if next_step != "open_calendar" and not state.calendar_shown:
            fragments["no_link_until_confirm"] = (
                "Do not share any booking link until the visitor confirms they want to book."
            )
    return fragments


# ── Knowledge block ──────────────────────────────────────────────────


def assemble_knowledge(bot: Bot, chunks: Sequence[RetrievedChunk]) -> str:
    """Description, retrieved website chunks and uploaded files, capped."""
    scraped = "\n\n---\n\n".join(c.text for c in chunks)
    block = "\n".join(
        [
            "Business Description:",
            bot.description,
            "",
            "Scraped Website Content:",
            scraped,
            "",
            "Uploaded Files:",
            clean_html(bot.uploaded_files_text),
        ]
    )
    return block[:MAX_KNOWLEDGE_CHARS]


def minimal_knowledge(bot: Bot) -> str:
    """Knowledge block for guarded turns: the description only."""
    return f"Business Description:\n{bot.description}"[:MAX_KNOWLEDGE_CHARS]


# ── Fallback templates ───────────────────────────────────────────────


def fallback_template(intent: str, business_info: Mapping[str, str | None] | None) -> str:
    """Deterministic reply when knowledge or the model cannot be used."""
    info = business_info or {}
    label = (intent or "").lower()
    if "emergency" in label or "urgent" in label:
        return (
            "I can help right away with urgent dental issues. "
            "I can get you the soonest appointment."
        )
    if "pricing" in label:
        return (
            "I don’t have that exact price here. "
            "I can connect you with our team or help you book a quick consult."
        )
    if "services" in label:
        return (
            "I don’t see that in the knowledge base. "
            "I can connect you with our team or help you book a consult."
        )
    if "hours" in label:
        return (
            "Our contact details:\n"
            f"- Email: {info.get('email') or 'not available'}\n"
            f"- Phone: {info.get('phone') or 'not available'}\n"
            f"- Location: {info.get('address') or 'not available'}"
        )
    return (
        "I don’t have that in this bot’s knowledge base. "
        "I can still help you get the right appointment or connect you with our team."
    )


# ── Reply post-processing ────────────────────────────────────────────

_BOOKING_LANGUAGE = re.compile(
    r"\b(book|schedule|appointment|calendar|pick a time|choose a time)\b", re.IGNORECASE,
)


def has_booking_language(text: str) -> bool:
    return bool(_BOOKING_LANGUAGE.search(text or ""))


def strip_early_booking_language(text: str) -> str:
    """Drop sentences that push booking; keep *text* if nothing would remain."""
    sentences = re.split(r"(?<=[.!?])\s+", text or "")
    kept = " ".join(s for s in sentences if not has_booking_language(s)).strip()
    return kept or text
