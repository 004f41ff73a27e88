"""Tests for the next-step decision engine."""

from __future__ import annotations

import pytest

from widgetbot.nlu.next_step import (
    NO_ACTION,
    PIPELINES,
    BookingSignals,
    BusinessContext,
    Entities,
    NextAction,
    Step,
    booking_signals,
    decide_next_action,
    infer_service,
    just_provided_contact,
    plan_next_action,
    rules_for_intent,
)

OPEN = BusinessContext(is_open=True)
CLOSED = BusinessContext(is_open=False)
WITH_CALENDAR = BusinessContext(is_open=True, calendar_url="https://cal.example/brightsmile")


# ── Pipelines ────────────────────────────────────────────────────────


class TestPipelineWalk:
    def test_booking_asks_to_confirm_while_open(self):
        action = decide_next_action("booking", Entities(), OPEN, text="I'd like to come in")
        assert action.type == "confirm"
        assert action.key == "booking_confirm"
        assert action.message == "Want me to open the calendar so you can pick a time?"

    def test_booking_confirmation_mentions_closing_after_hours(self):
        action = decide_next_action("booking", Entities(), CLOSED, text="I'd like to come in")
        assert action.type == "confirm"
        assert action.message.startswith("We’re closed right now")

    def test_yes_skips_confirmation_and_opens_calendar(self):
        action = decide_next_action(
            "booking", Entities(), OPEN, BookingSignals(booking_yes=True), "yes please show me",
        )
        assert action.type == "open_calendar"
        assert action.is_booking_step

    def test_no_turns_confirmation_into_topic_followup(self):
        action = decide_next_action(
            "booking", Entities(service="cleaning"), OPEN,
            BookingSignals(booking_no=True), "not right now",
        )
        assert action == NextAction(
            "freeform", "All good, we can talk through cleaning first. What would you like to know?",
        )

    def test_offer_followup_comes_before_confirmation(self):
        action = decide_next_action(
            "offer", Entities(), OPEN, BookingSignals(booking_no=True), "maybe later on",
        )
        # The offer pipeline leads with its own follow-up
        assert action.message == "Here are our current promotions and how to claim them."

    def test_pricing_leads_with_estimate_followup(self):
        action = decide_next_action("pricing", Entities(), OPEN, text="how much is a cleaning?")
        assert action.type == "freeform"
        assert action.message.startswith("Typical ranges depend on the case.")

    def test_hours(self):
        action = decide_next_action("hours", Entities(), OPEN, text="when are you open?")
        assert action.message.startswith("Here are today’s hours.")

    def test_location_links_to_map(self, make_bot):
        biz = BusinessContext.for_bot(make_bot(address="1 Main St"), after_hours=False)
        action = decide_next_action("location", Entities(), biz, text="where are you located?")
        assert action.type == "show_link"
        assert action.url == "https://maps.google.com/?q=1+Main+St"

    def test_location_without_address_has_no_step(self):
        assert decide_next_action("location", Entities(), OPEN, text="where are you located?") == NO_ACTION

    def test_unknown_intents_use_the_default_pipeline(self):
        assert rules_for_intent("unknown") == rules_for_intent("faq")
        assert rules_for_intent("emergency") == rules_for_intent("booking")

    def test_ask_steps_skip_known_entities(self, monkeypatch):
        monkeypatch.setitem(
            PIPELINES,
            "intake",
            (
                Step(NextAction("ask", "Name?", key="name")),
                Step(NextAction("ask", "Email?", key="email")),
                Step(NextAction("open_calendar")),
            ),
        )
        assert decide_next_action("intake", Entities(), OPEN, text="hello there").key == "name"
        assert decide_next_action("intake", Entities(name="Ana"), OPEN, text="hello there").key == "email"
        known = Entities(name="Ana", email="ana@example.com")
        assert decide_next_action("intake", known, OPEN, text="hello there").type == "open_calendar"


class TestLowSignal:
    def test_acknowledgement_with_nothing_pending(self):
        signals = booking_signals("ok", "", "faq")
        assert decide_next_action("faq", Entities(), OPEN, signals, "ok") == NO_ACTION

    def test_punctuation_only(self):
        assert decide_next_action("hours", Entities(), OPEN, text="??") == NO_ACTION

    def test_pending_confirmation_still_surfaces(self):
        action = decide_next_action("booking", Entities(), OPEN, BookingSignals(soft_ack=True), "ok")
        assert action.type == "confirm"


class TestContactJustProvided:
    def test_booking_with_calendar_offers_the_link(self):
        action = decide_next_action(
            "booking", Entities(service="cleaning"), WITH_CALENDAR, text="ana@example.com",
        )
        assert action.type == "show_link"
        assert action.url == "https://cal.example/brightsmile"
        assert action.message == "Thanks! I’ve got your details. Want to pick a time now for cleaning?"

    def test_keeps_the_topic(self):
        action = decide_next_action("hours", Entities(), OPEN, text="ana@example.com")
        assert action.message == (
            "Thanks! I’ve saved your details. "
            "Want me to check today’s hours and the earliest openings for your visit?"
        )

    def test_generic_topic(self):
        action = decide_next_action("faq", Entities(), OPEN, text="+1 555 010 0199")
        assert action.message.endswith("What else would you like to know about treatments and prices?")

    def test_visitor_who_is_done_is_let_go(self):
        action = decide_next_action("booking", Entities(), WITH_CALENDAR, text="ana@example.com, that's all")
        assert action == NextAction("freeform", "All set. I’m here if you need anything else.")

    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("ana@example.com", True),
            ("my email is ana@example.com", True),
            ("+44 20 7946 0958", True),
            ("call me at 3pm", False),
            ("", False),
        ],
    )
    def test_contact_detection(self, text, expected):
        assert just_provided_contact(text) is expected


# ── Signals ──────────────────────────────────────────────────────────


class TestBookingSignals:
    def test_yes_to_calendar_offer(self):
        signals = booking_signals("yes", "Would you like me to open the calendar?", "faq")
        assert signals.booking_yes is True
        assert signals.booking_no is False

    def test_no_after_booking_talk(self):
        signals = booking_signals("no thanks", "Want me to book you in?", "booking")
        assert signals.booking_no is True

    def test_visitor_asks_for_calendar(self):
        signals = booking_signals("can you show me the calendar", "", "faq")
        assert signals.user_asked_to_open is True
        assert signals.booking_yes is True

    def test_yes_to_offered_availability(self):
        signals = booking_signals("sure", "You can pick a time that suits you.", "faq")
        assert signals.accepted_availability is True

    def test_plain_question_has_no_signals(self):
        assert booking_signals("what are your hours?", "", "hours") == BookingSignals()


# ── Turn-level plan ──────────────────────────────────────────────────


class TestPlanNextAction:
    def test_booking_request_always_reaches_a_booking_step(self):
        action = plan_next_action(
            "hours", Entities(), OPEN, BookingSignals(user_asked_to_open=True),
            "can I get an appointment when you open?",
        )
        assert action == NextAction(
            "confirm", "Would you like to see available times now?", key="booking_confirm",
        )

    def test_decline_is_not_overridden(self):
        action = plan_next_action(
            "hours", Entities(), OPEN, BookingSignals(user_asked_to_open=True, booking_no=True),
            "no, cancel that appointment idea",
        )
        assert action.type == "freeform"

    def test_accepted_availability_opens_calendar(self):
        action = plan_next_action(
            "faq", Entities(), OPEN, BookingSignals(accepted_availability=True), "sure",
        )
        assert action.type == "open_calendar"

    def test_no_booking_steps_once_booked(self):
        action = plan_next_action(
            "booking", Entities(), OPEN, BookingSignals(), "I'd like another slot",
            booking_completed=True,
        )
        assert action == NO_ACTION

    def test_calendar_link_after_contact_is_kept(self):
        action = plan_next_action(
            "booking", Entities(email="ana@example.com"), WITH_CALENDAR, BookingSignals(),
            "ana@example.com",
        )
        assert action.type == "show_link"


class TestEntities:
    def test_service_inference(self):
        assert infer_service(["Do you do braces?"]) == "orthodontics"
        assert infer_service(["I need a cleaning", "and a crown"]) == "cleaning"
        assert infer_service([]) is None

    def test_known_entities(self):
        entities = Entities(name="Ana", service="crown")
        assert entities.has("name") and entities.has("service")
        assert not entities.has("email")
