"""HTTP client for the Google Calendar API v3 (the scheduling client).

Google Calendar docs: https://developers.google.com/calendar/api/v3/reference
Authentication uses an OAuth2 refresh token exchanged for short-lived access
tokens, which are cached until shortly before they expire.

All events live in the ``primary`` calendar, last exactly 60 minutes and are
written with ``timeZone: "UTC"``.

Slot labels are ``"H:00"`` strings (no leading zero, no AM/PM) for each
business hour from 9:00 up to, but excluding, 17:00.  The label is the join
key between candidate slots and booked events, so both sides are produced by
:func:`slot_label`.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import date, datetime, timedelta
from datetime import time as dt_time
from typing import Any
from zoneinfo import ZoneInfo

import httpx

from src.config import (
    BUSINESS_TIMEZONE,
    GOOGLE_CALENDAR_BASE_URL,
    GOOGLE_CLIENT_ID,
    GOOGLE_CLIENT_SECRET,
    GOOGLE_REFRESH_TOKEN,
    GOOGLE_TOKEN_URL,
    REQUEST_TIMEOUT_SECONDS,
)
from src.models import ServiceRequest, isoformat_utc, parse_instant
from src.services.metrics import metrics
from src.services.result import Result

logger = logging.getLogger(__name__)

CALENDAR_ID = "primary"
BUSINESS_OPEN_HOUR = 9
BUSINESS_CLOSE_HOUR = 17
EVENT_DURATION = timedelta(minutes=60)

# Refresh the access token this long before Google says it expires
_TOKEN_EXPIRY_MARGIN_SECONDS = 60


class CalendarAPIError(Exception):
    """Raised when a Google Calendar call fails."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class MissingDateError(CalendarAPIError):
    """The service request has no date to schedule against."""


def slot_label(hour: int) -> str:
    """``9 -> "9:00"``, ``14 -> "14:00"``."""
    return f"{hour}:00"


def slot_hour(label: str) -> int:
    """Inverse of :func:`slot_label`."""
    return int(label.split(":", 1)[0])


def business_slots() -> list[str]:
    """Candidate slots in ascending order: 9:00 … 16:00."""
    return [slot_label(h) for h in range(BUSINESS_OPEN_HOUR, BUSINESS_CLOSE_HOUR)]


def _capitalized(value: str) -> str:
    return value[:1].upper() + value[1:]


def _event_start(event: dict[str, Any], tz: ZoneInfo) -> datetime | None:
    """Return an event's start in *tz*; all-day events start at midnight."""
    start = event.get("start") or {}
    if start.get("dateTime"):
        return parse_instant(start["dateTime"]).astimezone(tz)
    if start.get("date"):
        return datetime.combine(date.fromisoformat(start["date"]), dt_time.min, tzinfo=tz)
    return None


def _event_body(request: ServiceRequest, start: datetime) -> dict[str, Any]:
    kind = _capitalized(request.type.value)
    return {
        "summary": f"Storage {kind}",
        "description": (
            f"{kind} for {request.customer_name}\n"
            f"Email: {request.customer_email}\n"
            f"Phone: {request.customer_phone or 'Not provided'}\n\n"
            f"Details: {request.description}"
        ),
        "start": {"dateTime": isoformat_utc(start), "timeZone": "UTC"},
        "end": {"dateTime": isoformat_utc(start + EVENT_DURATION), "timeZone": "UTC"},
    }


class GoogleCalendarClient:
    """Thin wrapper around the Google Calendar REST API for one calendar."""

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        refresh_token: str | None = None,
        *,
        base_url: str | None = None,
        timezone: str | None = None,
    ):
        self._client_id = client_id if client_id is not None else GOOGLE_CLIENT_ID
        self._client_secret = client_secret if client_secret is not None else GOOGLE_CLIENT_SECRET
        self._refresh_token = refresh_token if refresh_token is not None else GOOGLE_REFRESH_TOKEN
        self._tz = ZoneInfo(timezone or BUSINESS_TIMEZONE)
        self._client = httpx.Client(
            base_url=base_url or GOOGLE_CALENDAR_BASE_URL,
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
        self._access_token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    @property
    def timezone(self) -> ZoneInfo:
        return self._tz

    # ── Internal helpers ─────────────────────────────────────────────

    def _get_access_token(self) -> str:
        """Return a valid access token, refreshing it when needed."""
        with self._token_lock:
            if self._access_token and time.monotonic() < self._token_expires_at:
                return self._access_token
            if not self._refresh_token:
                raise CalendarAPIError("Missing GOOGLE_REFRESH_TOKEN; cannot authenticate")

            logger.info("Refreshing Google Calendar access token")
            try:
                response = self._client.request(
                    "POST",
                    GOOGLE_TOKEN_URL,
                    data={
                        "client_id": self._client_id,
                        "client_secret": self._client_secret,
                        "refresh_token": self._refresh_token,
                        "grant_type": "refresh_token",
                    },
                )
            except httpx.HTTPError as exc:
                raise CalendarAPIError(f"Token refresh failed: {exc}") from exc
            if response.status_code != 200:
                raise CalendarAPIError(
                    f"Token refresh failed {response.status_code}: {response.text}",
                    status_code=response.status_code,
                )
            try:
                tokens = response.json()
                access_token = tokens.get("access_token")
                expires_in = float(tokens.get("expires_in", 3600))
            except (ValueError, AttributeError, TypeError) as exc:
                raise CalendarAPIError("Token refresh returned an unreadable body") from exc
            if not access_token:
                raise CalendarAPIError("No access token in refresh response")

            self._access_token = access_token
            self._token_expires_at = time.monotonic() + expires_in - _TOKEN_EXPIRY_MARGIN_SECONDS
            return self._access_token

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Execute one authenticated request.  No retries: a failure is final."""
        with metrics.track("google_calendar", f"{method} events"):
            token = self._get_access_token()
            try:
                response = self._client.request(
                    method,
                    path,
                    params=params,
                    json=json_body,
                    headers={"Authorization": f"Bearer {token}"},
                )
            except httpx.HTTPError as exc:
                raise CalendarAPIError(f"Google Calendar request failed: {exc}") from exc

            if response.status_code >= 400:
                raise CalendarAPIError(
                    f"Google Calendar error {response.status_code}: {response.text}",
                    status_code=response.status_code,
                )
            try:
                return response.json()
            except ValueError as exc:
                raise CalendarAPIError("Google Calendar returned a non-JSON body") from exc

    # ── Public API methods ───────────────────────────────────────────

    def list_events_in_range(self, start: datetime, end: datetime) -> Result[list[dict[str, Any]]]:
        """List single events overlapping ``[start, end]``, ordered by start.

        Google includes events that started before *start* and are still
        running; callers filter on the start time themselves.
        """
        try:
            data = self._request(
                "GET",
                f"/calendars/{CALENDAR_ID}/events",
                params={
                    "timeMin": isoformat_utc(start),
                    "timeMax": isoformat_utc(end),
                    "singleEvents": "true",
                    "orderBy": "startTime",
                },
            )
        except CalendarAPIError as exc:
            logger.warning("Failed to list calendar events: %s", exc)
            return Result.failure(exc)
        return Result.success(data.get("items", []))

    def available_slots_for_date(self, day: date) -> list[str]:
        """Business-hour slots on *day* that no event starting on *day* occupies.

        Google also returns events that began earlier and still overlap the
        day; only events whose start falls on *day* block a slot.

        Never raises: returns an empty list when the calendar cannot be
        read, so that no slot is offered that might already be taken.
        """
        start = datetime.combine(day, dt_time.min, tzinfo=self._tz)
        end = datetime.combine(day, dt_time(23, 59, 59, 999000), tzinfo=self._tz)

        try:
            events = self.list_events_in_range(start, end)
        except Exception:
            logger.exception("Unexpected error listing events for %s", day.isoformat())
            return []
        if not events.ok:
            logger.warning("No slots offered for %s: %s", day.isoformat(), events.reason)
            return []

        booked: set[str] = set()
        for event in events.value or []:
            try:
                event_start = _event_start(event, self._tz)
            except ValueError:
                logger.warning("Skipping event %s with unparseable start", event.get("id"))
                continue
            if event_start is not None and event_start.date() == day:
                booked.add(slot_label(event_start.hour))

        available = [slot for slot in business_slots() if slot not in booked]
        logger.debug("Slots for %s: %d free, booked=%s", day.isoformat(), len(available), sorted(booked))
        return available

    def book_event(self, request: ServiceRequest) -> Result[dict[str, Any]]:
        """Create a one-hour event at the request's preferred date."""
        if not request.preferred_date:
            return Result.failure(MissingDateError("Preferred date is required for scheduling"))
        try:
            body = _event_body(request, parse_instant(request.preferred_date))
            event = self._request("POST", f"/calendars/{CALENDAR_ID}/events", json_body=body)
        except (CalendarAPIError, ValueError) as exc:
            logger.error("Error scheduling %s: %s", request.type.value, exc)
            return Result.failure(exc)
        logger.info("Booked calendar event %s for request %s", event.get("id"), request.id)
        return Result.success(event)

    def update_scheduled_event(self, event_id: str, request: ServiceRequest) -> Result[dict[str, Any]]:
        """Rewrite an existing event at the request's scheduled date."""
        if not request.scheduled_date:
            return Result.failure(MissingDateError("Scheduled date is required for updating"))
        if not event_id or not event_id.strip():
            return Result.failure(CalendarAPIError("A calendar event ID is required for updating"))
        try:
            body = _event_body(request, parse_instant(request.scheduled_date))
            event = self._request(
                "PUT", f"/calendars/{CALENDAR_ID}/events/{event_id}", json_body=body,
            )
        except (CalendarAPIError, ValueError) as exc:
            logger.error("Error updating scheduled %s: %s", request.type.value, exc)
            return Result.failure(exc)
        return Result.success(event)


# ── Module-level singleton (thread-safe) ────────────────────────────
_client: GoogleCalendarClient | None = None
_client_lock = threading.Lock()


def get_calendar_client() -> GoogleCalendarClient:
    """Return a module-level GoogleCalendarClient singleton."""
    global _client
    if _client is None:
        with _client_lock:
            if _client is None:
                _client = GoogleCalendarClient()
    return _client
