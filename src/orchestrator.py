"""Conversation orchestrator: one ``ChatSession`` per chat widget.

Per-turn state machine::

    IDLE -> EXTRACTING -> REPLYING -> LOGGING -> IDLE
                                             └-> AWAITING_BOOKING_FORM -> BOOKING -> IDLE

Failure policy per operation:

=============================  ============  ===================================
operation                      policy        effect on the turn
=============================  ============  ===================================
extract intent / reply         fallback      engine returns neutral values
log inquiry                    best-effort   warning logged, turn continues
list calendar events (slots)   best-effort   no slots offered
create service request         load-bearing  error message, form stays open
book calendar event            tolerated     confirmation is still shown
=============================  ============  ===================================

The tolerated calendar failure means the confirmation can overstate what
happened: the customer is told the slot is booked even if no calendar event
exists.  Calendar booking also does not advance the request's status past
``pending``; status changes are made directly in the record store.

Slot listing and event creation are not atomic.  Two sessions looking at the
same date can both be offered, and both book, the same slot.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from datetime import UTC, date, datetime
from datetime import time as dt_time
from enum import Enum

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from src.agent import create_turn_graph
from src.config import MAX_SESSIONS, SESSION_IDLE_TIMEOUT_SECONDS
from src.models import (
    BookingDraft,
    ExtractedIntent,
    Message,
    Sender,
    ServiceRequest,
    ServiceRequestStatus,
    ServiceRequestType,
    isoformat_utc,
)
from src.services.calendar_client import GoogleCalendarClient, slot_hour
from src.services.completion import CompletionEngine
from src.services.record_store import AirtableClient

logger = logging.getLogger(__name__)

GREETING_MESSAGE = "Hello! How can I help you with your storage needs today?"
TURN_ERROR_MESSAGE = "I apologize, but I'm having trouble processing your request at the moment."
BOOKING_ERROR_MESSAGE = (
    "I'm sorry, there was an error scheduling your service. "
    "Please try again or contact our support team directly."
)

# Lets the form prompt render before the booking form opens
BOOKING_FORM_DELAY_MS = 1000

QUICK_ACTIONS: tuple[str, ...] = (
    "I'd like to schedule a storage service",
    "I need a delivery service",
    "I'd like to inquire about storage options",
    "I need help with my existing storage",
)


class TurnPhase(str, Enum):
    IDLE = "idle"
    EXTRACTING = "extracting"
    REPLYING = "replying"
    LOGGING = "logging"
    AWAITING_BOOKING_FORM = "awaiting_booking_form"
    BOOKING = "booking"


# Phase entered once the named graph node has finished
_PHASE_AFTER_NODE = {
    "extract_intent": TurnPhase.REPLYING,
    "generate_reply": TurnPhase.REPLYING,
    "compose_reply": TurnPhase.LOGGING,
}


class TurnInProgressError(RuntimeError):
    """A turn or booking is already running for this session."""


class NoActiveBookingError(RuntimeError):
    """A booking action was requested while no booking form is open."""


class IncompleteBookingError(ValueError):
    """The booking draft lacks required fields; nothing was persisted."""

    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__(f"Missing required booking fields: {', '.join(missing)}")


class SlotUnavailableError(ValueError):
    """The chosen slot is not offered for the chosen date."""

    def __init__(self, slot: str, day: date):
        self.slot = slot
        super().__init__(f"Slot {slot} is not available on {day.isoformat()}")


class SessionSnapshot(BaseModel):
    """Immutable view of a session for the presentation layer."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    session_id: str
    phase: TurnPhase
    loading: bool
    transcript: tuple[Message, ...]
    booking_draft: BookingDraft | None = None
    available_slots: tuple[str, ...] = ()
    selected_slot: str = ""
    show_booking_form: bool = False
    booking_form_delay_ms: int = BOOKING_FORM_DELAY_MS


def _ordinal(day: int) -> str:
    if 11 <= day % 100 <= 13:
        return f"{day}th"
    suffix = {1: "st", 2: "nd", 3: "rd"}.get(day % 10, "th")
    return f"{day}{suffix}"


def format_long_date(value: date) -> str:
    """``date(2024, 6, 10) -> "June 10th, 2024"``."""
    return f"{value.strftime('%B')} {_ordinal(value.day)}, {value.year}"


def confirmation_message(request_type: ServiceRequestType, day: date, slot: str) -> str:
    label = "service request" if request_type is ServiceRequestType.OTHER else request_type.value
    return (
        f"Great! I've scheduled your {label} for {format_long_date(day)} at {slot}. "
        "You can check your google calendar. Is there anything else I can help you with?"
    )


class ChatSession:
    """Owns one transcript and its booking form.

    The transcript is append-only; callers only ever see tuple snapshots.
    At most one turn or booking runs at a time: a second call while one is in
    flight raises :class:`TurnInProgressError`.
    """

    def __init__(
        self,
        session_id: str,
        *,
        turn_graph,
        record_store: AirtableClient,
        calendar: GoogleCalendarClient,
    ):
        self.session_id = session_id
        self._graph = turn_graph
        self._record_store = record_store
        self._calendar = calendar

        self._busy = threading.Lock()
        self._transcript: list[Message] = [
            Message(content=GREETING_MESSAGE, sender=Sender.ASSISTANT),
        ]
        self._phase = TurnPhase.IDLE
        self._loading = False
        self._draft: BookingDraft | None = None
        self._available_slots: list[str] = []
        self._selected_slot = ""

    # ── Observable state ─────────────────────────────────────────────

    @property
    def transcript(self) -> tuple[Message, ...]:
        return tuple(self._transcript)

    @property
    def phase(self) -> TurnPhase:
        return self._phase

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            session_id=self.session_id,
            phase=self._phase,
            loading=self._loading,
            transcript=tuple(self._transcript),
            booking_draft=self._draft.model_copy() if self._draft else None,
            available_slots=tuple(self._available_slots),
            selected_slot=self._selected_slot,
            show_booking_form=self._phase in (TurnPhase.AWAITING_BOOKING_FORM, TurnPhase.BOOKING),
        )

    # ── Internal helpers ─────────────────────────────────────────────

    def _append(self, content: str, sender: Sender) -> Message:
        message = Message(content=content, sender=sender)
        self._transcript.append(message)
        return message

    def _acquire(self) -> None:
        if not self._busy.acquire(blocking=False):
            raise TurnInProgressError(f"Session {self.session_id} is busy")
        self._loading = True

    def _release(self) -> None:
        self._loading = False
        self._busy.release()

    def _refresh_slots(self, day: date) -> None:
        """Re-derive slots for *day* and default to the first one."""
        try:
            self._available_slots = self._calendar.available_slots_for_date(day)
        except Exception:
            logger.exception("[%s] Error reading slots for %s", self.session_id, day.isoformat())
            self._available_slots = []
        self._selected_slot = self._available_slots[0] if self._available_slots else ""

    def _run_turn(self, message: str, history: list[tuple[str, str]]) -> ExtractedIntent:
        """Stream the turn graph, appending the reply as soon as it is composed."""
        self._phase = TurnPhase.EXTRACTING
        intent = ExtractedIntent()
        composed = False
        for chunk in self._graph.stream(
            {"message": message, "history": history}, stream_mode="updates",
        ):
            for node, update in chunk.items():
                self._phase = _PHASE_AFTER_NODE.get(node, self._phase)
                if not update:
                    continue
                if "intent" in update:
                    intent = update["intent"]
                if "display_text" in update:
                    self._append(update["display_text"], Sender.ASSISTANT)
                    composed = True
        if not composed:
            raise RuntimeError("Turn finished without a reply")
        return intent

    def _open_booking_form(self, intent: ExtractedIntent, message: str) -> None:
        self._draft = BookingDraft.from_intent(intent, message)
        self._available_slots = []
        self._selected_slot = ""
        if self._draft.preferred_date is not None:
            self._refresh_slots(self._draft.preferred_date)
        self._phase = TurnPhase.AWAITING_BOOKING_FORM
        logger.info(
            "[%s] Service request detected (%s); booking form opened",
            self.session_id, self._draft.type.value,
        )

    def _book_calendar_slot(self, request: ServiceRequest) -> None:
        """Tolerated side effect: failures are logged and dropped."""
        try:
            event = self._calendar.book_event(request)
        except Exception:
            logger.exception("[%s] Unexpected calendar error for request %s", self.session_id, request.id)
            return
        if not event.ok:
            logger.warning(
                "[%s] Calendar booking failed for request %s, confirming anyway: %s",
                self.session_id, request.id, event.reason,
            )

    def _reset_booking(self) -> None:
        self._draft = None
        self._available_slots = []
        self._selected_slot = ""

    # ── Entry points ─────────────────────────────────────────────────

    def send_message(self, text: str) -> SessionSnapshot:
        """Run one chat turn for *text*."""
        if not text.strip():
            return self.snapshot()
        self._acquire()
        try:
            history = [(m.role, m.content) for m in self._transcript]
            self._append(text, Sender.USER)
            # A new message supersedes any open form
            self._reset_booking()
            try:
                intent = self._run_turn(text, history)
            except Exception:
                logger.exception("[%s] Error in chat turn", self.session_id)
                self._append(TURN_ERROR_MESSAGE, Sender.ASSISTANT)
                self._phase = TurnPhase.IDLE
            else:
                if intent.is_service_request:
                    self._open_booking_form(intent, text)
                else:
                    self._phase = TurnPhase.IDLE
        finally:
            self._release()
        return self.snapshot()

    def select_date(self, day: date) -> SessionSnapshot:
        """Set the draft's preferred date and re-derive the offered slots."""
        if self._draft is None:
            raise NoActiveBookingError("No booking form is open")
        self._acquire()
        try:
            self._draft = self._draft.model_copy(update={"preferred_date": day})
            self._refresh_slots(day)
        finally:
            self._release()
        return self.snapshot()

    def select_slot(self, slot: str) -> SessionSnapshot:
        """Pick one of the currently offered slots."""
        if self._draft is None:
            raise NoActiveBookingError("No booking form is open")
        if slot not in self._available_slots:
            raise ValueError(f"Slot {slot!r} is not available")
        self._selected_slot = slot
        return self.snapshot()

    def close_booking_form(self) -> SessionSnapshot:
        """Dismiss the form without booking."""
        self._acquire()
        try:
            self._reset_booking()
            self._phase = TurnPhase.IDLE
        finally:
            self._release()
        return self.snapshot()

    def submit_booking(self, draft: BookingDraft, time_slot: str | None = None) -> SessionSnapshot:
        """Persist the service request, then try to book the calendar slot.

        Raises :class:`IncompleteBookingError` before any external call when
        name, email, date or slot is missing, and :class:`SlotUnavailableError`
        when the slot is not among those offered for the date.
        """
        if self._draft is None:
            raise NoActiveBookingError("No booking form is open")
        slot = time_slot or self._selected_slot
        missing = draft.missing_fields()
        if not slot:
            missing.append("timeSlot")
        if missing:
            raise IncompleteBookingError(missing)

        self._acquire()
        try:
            day = draft.preferred_date
            if day != self._draft.preferred_date:
                self._refresh_slots(day)
            self._draft = draft
            if slot not in self._available_slots:
                raise SlotUnavailableError(slot, day)
            self._selected_slot = slot
            self._phase = TurnPhase.BOOKING
            starts_at = datetime.combine(day, dt_time(slot_hour(slot)), tzinfo=self._calendar.timezone)
            request = ServiceRequest(
                type=draft.type,
                status=ServiceRequestStatus.PENDING,
                customer_name=draft.customer_name,
                customer_email=draft.customer_email,
                customer_phone=draft.customer_phone or None,
                description=draft.description,
                preferred_date=isoformat_utc(starts_at),
                created_at=isoformat_utc(datetime.now(UTC)),
            )

            try:
                created = self._record_store.create_service_request(request).unwrap()
            except Exception:
                logger.exception("[%s] Error submitting service request", self.session_id)
                self._append(BOOKING_ERROR_MESSAGE, Sender.ASSISTANT)
                self._phase = TurnPhase.AWAITING_BOOKING_FORM
            else:
                self._book_calendar_slot(created)
                self._append(confirmation_message(draft.type, day, slot), Sender.ASSISTANT)
                self._reset_booking()
                self._phase = TurnPhase.IDLE
        finally:
            self._release()
        return self.snapshot()


class SessionRegistry:
    """In-process map of session id -> ChatSession.  Lost on restart.

    Bounded two ways: sessions idle for longer than ``idle_timeout_seconds``
    are dropped, and once ``max_sessions`` is reached the least recently
    used session is evicted to make room.
    """

    def __init__(
        self,
        session_factory: Callable[[str], ChatSession],
        *,
        max_sessions: int = MAX_SESSIONS,
        idle_timeout_seconds: float = SESSION_IDLE_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._factory = session_factory
        self._max_sessions = max_sessions
        self._idle_timeout = idle_timeout_seconds
        self._clock = clock
        # session id -> (session, last used)
        self._sessions: OrderedDict[str, tuple[ChatSession, float]] = OrderedDict()
        self._lock = threading.Lock()

    def _expire_idle(self, now: float) -> None:
        # Oldest first, so stop at the first session still in use
        while self._sessions:
            session_id, (_, last_used) = next(iter(self._sessions.items()))
            if now - last_used <= self._idle_timeout:
                return
            self._sessions.popitem(last=False)
            logger.info("Expired idle session: %s", session_id)

    def get_or_create(self, session_id: str) -> ChatSession:
        with self._lock:
            now = self._clock()
            self._expire_idle(now)
            entry = self._sessions.pop(session_id, None)
            if entry is None:
                while len(self._sessions) >= self._max_sessions:
                    evicted_id, _ = self._sessions.popitem(last=False)
                    logger.info("Evicted least recently used session: %s", evicted_id)
                session = self._factory(session_id)
                logger.info("Started new session: %s", session_id)
            else:
                session = entry[0]
            self._sessions[session_id] = (session, now)
            return session

    def get(self, session_id: str) -> ChatSession | None:
        with self._lock:
            now = self._clock()
            self._expire_idle(now)
            entry = self._sessions.pop(session_id, None)
            if entry is None:
                return None
            self._sessions[session_id] = (entry[0], now)
            return entry[0]

    def __len__(self) -> int:
        return len(self._sessions)


def create_session_registry(
    *,
    record_store: AirtableClient,
    calendar: GoogleCalendarClient,
    engine: CompletionEngine | None = None,
) -> SessionRegistry:
    """Wire the clients and a shared turn graph into a registry."""
    engine = engine or CompletionEngine(record_store)
    turn_graph = create_turn_graph(engine, record_store)

    def _factory(session_id: str) -> ChatSession:
        return ChatSession(
            session_id,
            turn_graph=turn_graph,
            record_store=record_store,
            calendar=calendar,
        )

    return SessionRegistry(_factory)
