"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from datetime import date

from pydantic import BaseModel, Field

from src.models import BookingDraft, ServiceRequestType


class ChatRequest(BaseModel):
    """Incoming chat message from the widget."""

    message: str = Field(..., min_length=1, max_length=2000, description="The user's message")
    session_id: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Unique session identifier for conversation continuity",
    )


class SessionRequest(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=100)


class SelectDateRequest(SessionRequest):
    preferred_date: date = Field(..., description="Preferred service date (YYYY-MM-DD)")


class SelectSlotRequest(SessionRequest):
    time_slot: str = Field(..., min_length=1, max_length=10, description='Slot label such as "9:00"')


class BookingRequest(SessionRequest):
    """Submitted booking form.  Required fields are checked by the session."""

    type: ServiceRequestType = ServiceRequestType.COLLECTION
    customer_name: str = Field("", max_length=200)
    customer_email: str = Field("", max_length=200)
    customer_phone: str = Field("", max_length=50)
    description: str = Field("", max_length=2000)
    preferred_date: date | None = None
    time_slot: str | None = Field(None, max_length=10)

    def to_draft(self) -> BookingDraft:
        return BookingDraft(
            type=self.type,
            customer_name=self.customer_name,
            customer_email=self.customer_email,
            customer_phone=self.customer_phone,
            description=self.description,
            preferred_date=self.preferred_date,
        )


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "storage-assistant"
