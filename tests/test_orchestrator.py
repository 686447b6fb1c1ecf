"""Tests for the chat session state machine and booking flow."""

from __future__ import annotations

from datetime import date
from unittest.mock import MagicMock

import pytest

from src.agent import FORM_PROMPT_MESSAGE
from src.models import BookingDraft, ExtractedIntent, Sender, ServiceRequestStatus, ServiceRequestType
from src.orchestrator import (
    BOOKING_ERROR_MESSAGE,
    GREETING_MESSAGE,
    TURN_ERROR_MESSAGE,
    ChatSession,
    IncompleteBookingError,
    NoActiveBookingError,
    SessionRegistry,
    SlotUnavailableError,
    TurnInProgressError,
    TurnPhase,
    confirmation_message,
    create_session_registry,
    format_long_date,
)
from src.services.calendar_client import CalendarAPIError
from src.services.completion import REPLY_FALLBACK_MESSAGE, CompletionEngine
from src.services.record_store import RecordStoreError
from src.services.result import Result

JUNE_10 = date(2024, 6, 10)

# ── Helpers ──────────────────────────────────────────────────────────


def _make_engine(reply: str = "Happy to help!", intent: ExtractedIntent | None = None):
    engine = MagicMock()
    engine.generate_reply.return_value = reply
    engine.extract_intent.return_value = intent or ExtractedIntent()
    return engine


def _jane_intent() -> ExtractedIntent:
    return ExtractedIntent(
        is_service_request=True,
        type="collection",
        customer_name="Jane",
        customer_email="jane@example.com",
        preferred_date="2024-06-10",
        description="Collect 5 boxes",
    )


def _session(engine, record_store, calendar, session_id: str = "s1") -> ChatSession:
    registry = create_session_registry(record_store=record_store, calendar=calendar, engine=engine)
    return registry.get_or_create(session_id)


def _assistant_messages(snapshot) -> list[str]:
    return [m.content for m in snapshot.transcript if m.sender is Sender.ASSISTANT]


# ── Tests: formatting ────────────────────────────────────────────────


class TestFormatting:
    @pytest.mark.parametrize(
        ("day", "expected"),
        [
            (date(2024, 6, 1), "June 1st, 2024"),
            (date(2024, 6, 2), "June 2nd, 2024"),
            (date(2024, 6, 3), "June 3rd, 2024"),
            (date(2024, 6, 10), "June 10th, 2024"),
            (date(2024, 6, 11), "June 11th, 2024"),
            (date(2024, 6, 12), "June 12th, 2024"),
            (date(2024, 6, 22), "June 22nd, 2024"),
        ],
    )
    def test_long_date(self, day, expected):
        assert format_long_date(day) == expected

    def test_confirmation_names_type(self):
        text = confirmation_message(ServiceRequestType.DELIVERY, JUNE_10, "10:00")
        assert text.startswith("Great! I've scheduled your delivery for June 10th, 2024 at 10:00.")

    def test_confirmation_for_other_says_service_request(self):
        text = confirmation_message(ServiceRequestType.OTHER, JUNE_10, "9:00")
        assert "your service request for" in text


# ── Tests: chat turns ────────────────────────────────────────────────


class TestSendMessage:
    def test_new_session_starts_with_greeting(self, record_store, calendar):
        snapshot = _session(_make_engine(), record_store, calendar).snapshot()
        assert _assistant_messages(snapshot) == [GREETING_MESSAGE]
        assert snapshot.phase is TurnPhase.IDLE
        assert snapshot.loading is False

    def test_question_turn_appends_reply(self, record_store, calendar):
        engine = _make_engine(reply="Units start at 5x5.")
        session = _session(engine, record_store, calendar)

        snapshot = session.send_message("What sizes do you have?")

        assert [(m.sender, m.content) for m in snapshot.transcript[1:]] == [
            (Sender.USER, "What sizes do you have?"),
            (Sender.ASSISTANT, "Units start at 5x5."),
        ]
        assert snapshot.phase is TurnPhase.IDLE
        assert snapshot.show_booking_form is False
        assert snapshot.booking_draft is None
        engine.extract_intent.assert_called_once_with(
            "What sizes do you have?", [("assistant", GREETING_MESSAGE)],
        )

    def test_blank_message_is_ignored(self, record_store, calendar):
        engine = _make_engine()
        session = _session(engine, record_store, calendar)
        snapshot = session.send_message("   ")
        assert len(snapshot.transcript) == 1
        engine.generate_reply.assert_not_called()

    def test_service_request_opens_prefilled_form(self, record_store, calendar):
        calendar.available_slots_for_date.return_value = ["9:00", "10:00", "12:00"]
        session = _session(_make_engine(intent=_jane_intent()), record_store, calendar)

        snapshot = session.send_message("Please collect 5 boxes on June 10, I'm Jane, jane@example.com")

        assert _assistant_messages(snapshot)[-1] == FORM_PROMPT_MESSAGE
        assert snapshot.phase is TurnPhase.AWAITING_BOOKING_FORM
        assert snapshot.show_booking_form is True
        assert snapshot.booking_form_delay_ms == 1000
        draft = snapshot.booking_draft
        assert draft.customer_name == "Jane"
        assert draft.customer_email == "jane@example.com"
        assert draft.preferred_date == JUNE_10
        assert draft.type is ServiceRequestType.COLLECTION
        assert snapshot.available_slots == ("9:00", "10:00", "12:00")
        assert snapshot.selected_slot == "9:00"
        calendar.available_slots_for_date.assert_called_once_with(JUNE_10)

    def test_form_without_date_offers_no_slots(self, record_store, calendar):
        intent = ExtractedIntent(is_service_request=True, type="delivery")
        session = _session(_make_engine(intent=intent), record_store, calendar)

        snapshot = session.send_message("Bring my stuff back")

        assert snapshot.booking_draft.preferred_date is None
        assert snapshot.booking_draft.description == "Bring my stuff back"
        assert snapshot.available_slots == ()
        calendar.available_slots_for_date.assert_not_called()

    def test_both_model_calls_failing_gives_one_apology(self, record_store, calendar):
        session = _session(CompletionEngine(record_store, api_key=""), record_store, calendar)

        snapshot = session.send_message("Hello?")

        assert snapshot.transcript[-2].sender is Sender.USER
        assert _assistant_messages(snapshot) == [GREETING_MESSAGE, REPLY_FALLBACK_MESSAGE]
        assert snapshot.show_booking_form is False

    def test_graph_error_appends_single_error_message(self, record_store, calendar):
        graph = MagicMock()
        graph.stream.side_effect = RuntimeError("graph exploded")
        session = ChatSession("s1", turn_graph=graph, record_store=record_store, calendar=calendar)

        snapshot = session.send_message("Hello")

        assert _assistant_messages(snapshot) == [GREETING_MESSAGE, TURN_ERROR_MESSAGE]
        assert snapshot.phase is TurnPhase.IDLE
        assert snapshot.loading is False

    def test_new_message_closes_open_form(self, record_store, calendar):
        engine = _make_engine(intent=_jane_intent())
        session = _session(engine, record_store, calendar)
        session.send_message("Collect my boxes")

        engine.extract_intent.return_value = ExtractedIntent()
        snapshot = session.send_message("Actually, what are your prices?")

        assert snapshot.booking_draft is None
        assert snapshot.phase is TurnPhase.IDLE

    def test_busy_session_rejects_second_turn(self, record_store, calendar):
        session = _session(_make_engine(), record_store, calendar)
        session._busy.acquire()
        try:
            with pytest.raises(TurnInProgressError):
                session.send_message("Hello")
        finally:
            session._busy.release()
        assert len(session.transcript) == 1


# ── Tests: booking form ──────────────────────────────────────────────


class TestBookingForm:
    def _open(self, record_store, calendar, intent=None) -> ChatSession:
        session = _session(_make_engine(intent=intent or _jane_intent()), record_store, calendar)
        session.send_message("Please collect my boxes")
        return session

    def test_select_date_refreshes_slots(self, record_store, calendar):
        session = self._open(record_store, calendar)
        calendar.available_slots_for_date.return_value = ["14:00", "15:00"]

        snapshot = session.select_date(date(2024, 6, 11))

        assert snapshot.booking_draft.preferred_date == date(2024, 6, 11)
        assert snapshot.available_slots == ("14:00", "15:00")
        assert snapshot.selected_slot == "14:00"

    def test_select_slot_must_be_offered(self, record_store, calendar):
        session = self._open(record_store, calendar)
        assert session.select_slot("13:00").selected_slot == "13:00"
        with pytest.raises(ValueError):
            session.select_slot("18:00")

    def test_actions_need_an_open_form(self, record_store, calendar):
        session = _session(_make_engine(), record_store, calendar)
        with pytest.raises(NoActiveBookingError):
            session.select_date(JUNE_10)
        with pytest.raises(NoActiveBookingError):
            session.submit_booking(BookingDraft())

    def test_close_form(self, record_store, calendar):
        session = self._open(record_store, calendar)
        snapshot = session.close_booking_form()
        assert snapshot.show_booking_form is False
        assert snapshot.booking_draft is None
        record_store.create_service_request.assert_not_called()

    def test_close_form_while_busy_is_rejected(self, record_store, calendar):
        session = self._open(record_store, calendar)
        session._busy.acquire()
        try:
            with pytest.raises(TurnInProgressError):
                session.close_booking_form()
        finally:
            session._busy.release()
        assert session.snapshot().booking_draft is not None
        assert session.close_booking_form().loading is False

    def test_calendar_exception_still_opens_form(self, record_store, calendar):
        calendar.available_slots_for_date.side_effect = ValueError("Expecting value")
        session = self._open(record_store, calendar)

        snapshot = session.snapshot()
        assert snapshot.phase is TurnPhase.AWAITING_BOOKING_FORM
        assert snapshot.show_booking_form is True
        assert snapshot.available_slots == ()
        assert snapshot.selected_slot == ""
        assert snapshot.loading is False


# ── Tests: submit_booking ────────────────────────────────────────────


class TestSubmitBooking:
    def _open(self, record_store, calendar, session_id: str = "s1") -> ChatSession:
        session = _session(_make_engine(intent=_jane_intent()), record_store, calendar, session_id)
        session.send_message("Please collect 5 boxes on June 10")
        return session

    def test_successful_booking(self, record_store, calendar):
        session = self._open(record_store, calendar)
        draft = session.snapshot().booking_draft

        snapshot = session.submit_booking(draft, "10:00")

        request = record_store.create_service_request.call_args[0][0]
        assert request.type is ServiceRequestType.COLLECTION
        assert request.status is ServiceRequestStatus.PENDING
        assert request.customer_name == "Jane"
        assert request.preferred_date == "2024-06-10T10:00:00.000Z"

        booked = calendar.book_event.call_args[0][0]
        assert booked.id == "recNEW"

        assert _assistant_messages(snapshot)[-1] == confirmation_message(
            ServiceRequestType.COLLECTION, JUNE_10, "10:00",
        )
        assert snapshot.phase is TurnPhase.IDLE
        assert snapshot.booking_draft is None
        assert snapshot.show_booking_form is False

    def test_defaults_to_selected_slot(self, record_store, calendar):
        session = self._open(record_store, calendar)
        session.submit_booking(session.snapshot().booking_draft)
        request = record_store.create_service_request.call_args[0][0]
        assert request.preferred_date == "2024-06-10T09:00:00.000Z"

    def test_incomplete_draft_is_rejected_before_any_call(self, record_store, calendar):
        session = self._open(record_store, calendar)
        draft = BookingDraft(customer_name="Jane", preferred_date=JUNE_10)

        with pytest.raises(IncompleteBookingError) as exc_info:
            session.submit_booking(draft, "10:00")

        assert exc_info.value.missing == ["customerEmail"]
        record_store.create_service_request.assert_not_called()
        calendar.book_event.assert_not_called()

    def test_missing_slot_is_reported(self, record_store, calendar):
        calendar.available_slots_for_date.return_value = []
        session = self._open(record_store, calendar)

        with pytest.raises(IncompleteBookingError) as exc_info:
            session.submit_booking(session.snapshot().booking_draft)

        assert exc_info.value.missing == ["timeSlot"]

    def test_unoffered_slot_is_rejected(self, record_store, calendar):
        calendar.available_slots_for_date.return_value = ["9:00", "10:00"]
        session = self._open(record_store, calendar)

        with pytest.raises(SlotUnavailableError):
            session.submit_booking(session.snapshot().booking_draft, "11:00")

        record_store.create_service_request.assert_not_called()
        assert session.snapshot().loading is False

    def test_changed_date_refreshes_slots(self, record_store, calendar):
        session = self._open(record_store, calendar)
        draft = session.snapshot().booking_draft.model_copy(update={"preferred_date": date(2024, 6, 12)})

        session.submit_booking(draft, "15:00")

        calendar.available_slots_for_date.assert_called_with(date(2024, 6, 12))
        request = record_store.create_service_request.call_args[0][0]
        assert request.preferred_date == "2024-06-12T15:00:00.000Z"

    def test_create_failure_shows_error_and_keeps_form(self, record_store, calendar):
        record_store.create_service_request.side_effect = None
        record_store.create_service_request.return_value = Result.failure(
            RecordStoreError("Failed to create service request", 500)
        )
        session = self._open(record_store, calendar)

        snapshot = session.submit_booking(session.snapshot().booking_draft, "10:00")

        messages = _assistant_messages(snapshot)
        assert messages[-1] == BOOKING_ERROR_MESSAGE
        assert not any(m.startswith("Great!") for m in messages)
        calendar.book_event.assert_not_called()
        assert snapshot.phase is TurnPhase.AWAITING_BOOKING_FORM
        assert snapshot.booking_draft is not None

    def test_calendar_failure_still_confirms(self, record_store, calendar):
        calendar.book_event.return_value = Result.failure(CalendarAPIError("quota", 403))
        session = self._open(record_store, calendar)

        snapshot = session.submit_booking(session.snapshot().booking_draft, "10:00")

        assert _assistant_messages(snapshot)[-1].startswith("Great! I've scheduled your collection")
        assert snapshot.phase is TurnPhase.IDLE

    def test_calendar_exception_still_confirms(self, record_store, calendar):
        calendar.book_event.side_effect = RuntimeError("socket closed")
        session = self._open(record_store, calendar)
        snapshot = session.submit_booking(session.snapshot().booking_draft, "10:00")
        assert _assistant_messages(snapshot)[-1].startswith("Great!")

    def test_two_sessions_can_book_the_same_slot(self, record_store, calendar):
        # Listing and booking are separate calls, so nothing stops a double booking
        first = self._open(record_store, calendar, "s1")
        second = self._open(record_store, calendar, "s2")
        assert "10:00" in first.snapshot().available_slots
        assert "10:00" in second.snapshot().available_slots

        first.submit_booking(first.snapshot().booking_draft, "10:00")
        second.submit_booking(second.snapshot().booking_draft, "10:00")

        starts = [c[0][0].preferred_date for c in calendar.book_event.call_args_list]
        assert starts == ["2024-06-10T10:00:00.000Z", "2024-06-10T10:00:00.000Z"]


class TestSessionRegistry:
    def test_same_id_returns_same_session(self, record_store, calendar):
        registry = create_session_registry(
            record_store=record_store, calendar=calendar, engine=_make_engine(),
        )
        assert registry.get_or_create("a") is registry.get_or_create("a")
        assert registry.get_or_create("b") is not registry.get("a")
        assert registry.get("missing") is None
        assert len(registry) == 2

    def _registry(self, **kwargs) -> SessionRegistry:
        return SessionRegistry(lambda session_id: MagicMock(session_id=session_id), **kwargs)

    def test_least_recently_used_session_is_evicted_at_capacity(self):
        registry = self._registry(max_sessions=2)
        first = registry.get_or_create("a")
        registry.get_or_create("b")
        registry.get("a")  # "b" is now the least recently used

        registry.get_or_create("c")

        assert len(registry) == 2
        assert registry.get("b") is None
        assert registry.get("a") is first

    def test_idle_sessions_expire(self):
        now = [0.0]
        registry = self._registry(idle_timeout_seconds=60, clock=lambda: now[0])
        registry.get_or_create("a")
        now[0] = 30.0
        registry.get_or_create("b")

        now[0] = 75.0
        assert registry.get("a") is None
        assert registry.get("b") is not None

    def test_use_keeps_a_session_alive(self):
        now = [0.0]
        registry = self._registry(idle_timeout_seconds=60, clock=lambda: now[0])
        session = registry.get_or_create("a")
        for tick in (50.0, 100.0, 150.0):
            now[0] = tick
            assert registry.get_or_create("a") is session
        assert len(registry) == 1
