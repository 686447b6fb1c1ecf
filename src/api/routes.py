"""FastAPI route definitions for the storage assistant API."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, HTTPException, Request

from src.api.schemas import (
    BookingRequest,
    ChatRequest,
    HealthResponse,
    SelectDateRequest,
    SelectSlotRequest,
)
from src.models import ServiceRequest
from src.orchestrator import (
    QUICK_ACTIONS,
    ChatSession,
    IncompleteBookingError,
    NoActiveBookingError,
    SessionRegistry,
    SessionSnapshot,
    TurnInProgressError,
)
from src.services.record_store import AirtableClient, RecordNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_sessions(request: Request) -> SessionRegistry:
    """Retrieve the session registry built during the FastAPI lifespan."""
    sessions = getattr(request.app.state, "sessions", None)
    if sessions is None:
        raise HTTPException(
            status_code=503,
            detail="The assistant is still starting up. Please try again in a moment.",
        )
    return sessions


def _get_record_store(request: Request) -> AirtableClient:
    store = getattr(request.app.state, "record_store", None)
    if store is None:
        raise HTTPException(
            status_code=503,
            detail="The assistant is still starting up. Please try again in a moment.",
        )
    return store


def _existing_session(request: Request, session_id: str) -> ChatSession:
    session = _get_sessions(request).get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Unknown session.")
    return session


async def _run(http_request: Request, fn, *args) -> SessionSnapshot:
    """Run a blocking session call in a worker thread and map its errors."""
    request_id = getattr(http_request.state, "request_id", "?")
    try:
        return await asyncio.to_thread(fn, *args)
    except TurnInProgressError as e:
        raise HTTPException(
            status_code=409, detail="Please wait for the current reply to finish.",
        ) from e
    except NoActiveBookingError as e:
        raise HTTPException(status_code=409, detail="No booking form is open.") from e
    except IncompleteBookingError as e:
        raise HTTPException(
            status_code=422,
            detail={"message": "Please complete the required fields.", "missing": e.missing},
        ) from e
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    except Exception as e:
        # Full traceback server-side only; never leak internals to the client
        logger.exception("[%s] Error processing session request", request_id)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.get("/quick-actions", response_model=list[str])
async def quick_actions():
    """Canned messages the widget offers as one-click shortcuts."""
    return list(QUICK_ACTIONS)


@router.post("/chat", response_model=SessionSnapshot)
async def chat(request: ChatRequest, http_request: Request):
    """Send a message and get the updated session state.

    The session_id keeps the transcript and booking form across requests.
    """
    session = _get_sessions(http_request).get_or_create(request.session_id)
    return await _run(http_request, session.send_message, request.message)


@router.get("/sessions/{session_id}", response_model=SessionSnapshot)
async def get_session(session_id: str, http_request: Request):
    """Current state of a session (transcript, booking form, loading)."""
    return _existing_session(http_request, session_id).snapshot()


@router.post("/booking/date", response_model=SessionSnapshot)
async def select_date(request: SelectDateRequest, http_request: Request):
    """Change the preferred date and re-derive the available slots."""
    session = _existing_session(http_request, request.session_id)
    return await _run(http_request, session.select_date, request.preferred_date)


@router.post("/booking/slot", response_model=SessionSnapshot)
async def select_slot(request: SelectSlotRequest, http_request: Request):
    """Pick one of the offered slots."""
    session = _existing_session(http_request, request.session_id)
    return await _run(http_request, session.select_slot, request.time_slot)


@router.post("/booking", response_model=SessionSnapshot)
async def submit_booking(request: BookingRequest, http_request: Request):
    """Submit the booking form."""
    session = _existing_session(http_request, request.session_id)
    return await _run(http_request, session.submit_booking, request.to_draft(), request.time_slot)


@router.delete("/booking/{session_id}", response_model=SessionSnapshot)
async def close_booking(session_id: str, http_request: Request):
    """Close the booking form without submitting."""
    session = _existing_session(http_request, session_id)
    return await _run(http_request, session.close_booking_form)


@router.get("/service-requests", response_model=list[ServiceRequest])
async def list_service_requests(http_request: Request):
    """All service requests; empty when the record store is unreachable."""
    store = _get_record_store(http_request)
    result = await asyncio.to_thread(store.get_service_requests)
    return result.unwrap_or([])


@router.get("/service-requests/{request_id}", response_model=ServiceRequest)
async def get_service_request(request_id: str, http_request: Request):
    """One service request by id."""
    store = _get_record_store(http_request)
    result = await asyncio.to_thread(store.get_service_request_by_id, request_id)
    try:
        return result.unwrap()
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail="Service request not found.") from e
