"""CLI entry point for the Storage Assistant.

A terminal chat for testing and development, including the booking form.
For production, use the FastAPI server (src/server.py).

Usage:
    uv run python -m src.main            # normal mode (quiet)
    uv run python -m src.main --debug    # debug mode (shows API calls)
"""

from __future__ import annotations

import argparse
import logging
import time
import uuid
from datetime import date

from dotenv import load_dotenv

from src.models import BookingDraft, Sender, ServiceRequestType
from src.orchestrator import (
    QUICK_ACTIONS,
    ChatSession,
    SessionSnapshot,
    create_session_registry,
)
from src.services.calendar_client import get_calendar_client
from src.services.record_store import get_airtable_client

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )
    if not debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("src").setLevel(logging.DEBUG if debug else logging.INFO)


def _ask(label: str, default: str = "") -> str:
    suffix = f" [{default}]" if default else ""
    answer = input(f"  {label}{suffix}: ").strip()
    return answer or default


def _print_new_messages(snapshot: SessionSnapshot, seen: int) -> int:
    for message in snapshot.transcript[seen:]:
        if message.sender is Sender.ASSISTANT:
            print(f"\nSam: {message.content}\n")
    return len(snapshot.transcript)


def _fill_booking_form(session: ChatSession, snapshot: SessionSnapshot) -> SessionSnapshot:
    """Walk the customer through the booking form on the terminal."""
    time.sleep(snapshot.booking_form_delay_ms / 1000)
    draft = snapshot.booking_draft or BookingDraft()
    print("── Booking form (leave blank to keep the suggested value) ──")

    types = ", ".join(t.value for t in ServiceRequestType)
    raw_type = _ask(f"Service type ({types})", draft.type.value)
    try:
        request_type = ServiceRequestType(raw_type.lower())
    except ValueError:
        request_type = draft.type

    name = _ask("Name", draft.customer_name)
    email = _ask("Email", draft.customer_email)
    phone = _ask("Phone (optional)", draft.customer_phone)
    description = _ask("Details", draft.description)

    default_date = draft.preferred_date.isoformat() if draft.preferred_date else ""
    raw_date = _ask("Preferred date (YYYY-MM-DD)", default_date)
    try:
        preferred = date.fromisoformat(raw_date) if raw_date else None
    except ValueError:
        print("  That date was not understood.")
        preferred = None

    slot = ""
    if preferred is not None:
        if preferred != draft.preferred_date or not snapshot.available_slots:
            snapshot = session.select_date(preferred)
        if not snapshot.available_slots:
            print("  No time slots are available on that date.")
        else:
            print(f"  Available slots: {', '.join(snapshot.available_slots)}")
            slot = _ask("Time slot", snapshot.selected_slot)

    completed = BookingDraft(
        type=request_type,
        customer_name=name,
        customer_email=email,
        customer_phone=phone,
        description=description,
        preferred_date=preferred,
    )
    try:
        return session.submit_booking(completed, slot or None)
    except ValueError as e:
        print(f"  Booking not submitted: {e}")
        return session.close_booking_form()


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="Storage Assistant CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    print("\n" + "=" * 60)
    print("  Storage Assistant - CLI Chat")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit' to exit, 'new' for a new session,")
    print("            '/help' for quick actions.")
    print("=" * 60 + "\n")

    registry = create_session_registry(
        record_store=get_airtable_client(),
        calendar=get_calendar_client(),
    )
    session = registry.get_or_create(str(uuid.uuid4()))
    seen = _print_new_messages(session.snapshot(), 0)

    while True:
        try:
            user_input = input("You: ").strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\nGoodbye!")
            break

        if not user_input:
            continue

        if user_input.lower() in ("exit", "quit", "q"):
            print("\nGoodbye! Thanks for chatting with us.")
            break

        if user_input.lower() == "new":
            session = registry.get_or_create(str(uuid.uuid4()))
            print(f"\n>> New session started: {session.session_id[:8]}...\n")
            seen = _print_new_messages(session.snapshot(), 0)
            continue

        if user_input.lower() == "/help":
            for index, action in enumerate(QUICK_ACTIONS, start=1):
                print(f"  {index}. {action}")
            print()
            continue

        if user_input.isdigit() and 1 <= int(user_input) <= len(QUICK_ACTIONS):
            user_input = QUICK_ACTIONS[int(user_input) - 1]
            print(f"You: {user_input}")

        try:
            snapshot = session.send_message(user_input)
            seen = _print_new_messages(snapshot, seen)
            if snapshot.show_booking_form:
                snapshot = _fill_booking_form(session, snapshot)
                seen = _print_new_messages(snapshot, seen)
        except KeyboardInterrupt:
            print("\n\nGoodbye!")
            break
        except Exception as e:
            logger.exception("Error processing message")
            print(f"\nSam: I'm sorry, something went wrong: {e}")
            print("     Please try again or type 'new' to start a fresh session.\n")


if __name__ == "__main__":
    main()
