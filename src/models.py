"""Domain models shared by the clients, the orchestrator and the API.

All models serialise with camelCase keys (``customerName``,
``isServiceRequest``...) so the browser widget and the intent extractor see
the same field names; Python code uses snake_case.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, date, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)


def utc_now_iso() -> str:
    """Current instant as ``2024-06-10T11:00:00.000Z``."""
    return isoformat_utc(datetime.now(UTC))


def isoformat_utc(value: datetime) -> str:
    """Render an aware datetime as a millisecond-precision UTC ISO string."""
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_instant(value: str) -> datetime:
    """Parse an ISO 8601 instant; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Sender(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ServiceRequestType(str, Enum):
    COLLECTION = "collection"
    DELIVERY = "delivery"
    INQUIRY = "inquiry"
    OTHER = "other"


class ServiceRequestStatus(str, Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Message(_CamelModel):
    """One transcript entry.  Immutable once created."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    content: str
    sender: Sender
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def role(self) -> str:
        """Chat-completion role for this message."""
        return "user" if self.sender is Sender.USER else "assistant"


class ServiceRequest(_CamelModel):
    """A customer task tracked in the "Service Requests" table.

    ``id`` is assigned by the record store on creation.  Dates are ISO 8601
    strings, exactly as stored.
    """

    id: str | None = None
    type: ServiceRequestType
    status: ServiceRequestStatus = ServiceRequestStatus.PENDING
    customer_name: str
    customer_email: str
    customer_phone: str | None = None
    description: str = ""
    preferred_date: str | None = None
    scheduled_date: str | None = None
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str | None = None


class ExtractedIntent(_CamelModel):
    """Structured output of intent extraction.  Never persisted."""

    is_service_request: bool = Field(
        default=False,
        description="True when the customer wants a collection, delivery or other storage service booked.",
    )
    type: str | None = Field(
        default=None,
        description="One of: collection, delivery, inquiry, other.",
    )
    customer_name: str | None = Field(default=None, description="Customer's name, if given.")
    customer_email: str | None = Field(default=None, description="Customer's email, if given.")
    customer_phone: str | None = Field(default=None, description="Customer's phone number, if given.")
    preferred_date: str | None = Field(
        default=None,
        description="Preferred date as YYYY-MM-DD, resolved against today's date, if given.",
    )
    description: str | None = Field(default=None, description="Short description of the request.")


def _parse_draft_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return parse_instant(value).date()
    except ValueError:
        pass
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        logger.debug("Ignoring unparseable preferred date %r", value)
        return None


class BookingDraft(_CamelModel):
    """Editable booking form state, pre-filled from an extracted intent."""

    type: ServiceRequestType = ServiceRequestType.COLLECTION
    customer_name: str = ""
    customer_email: str = ""
    customer_phone: str = ""
    description: str = ""
    preferred_date: date | None = None

    @classmethod
    def from_intent(cls, intent: ExtractedIntent, message: str) -> BookingDraft:
        """Populate a draft from whatever fields extraction returned."""
        try:
            request_type = ServiceRequestType((intent.type or "").strip().lower())
        except ValueError:
            request_type = ServiceRequestType.COLLECTION
        return cls(
            type=request_type,
            customer_name=intent.customer_name or "",
            customer_email=intent.customer_email or "",
            customer_phone=intent.customer_phone or "",
            description=intent.description or message,
            preferred_date=_parse_draft_date(intent.preferred_date),
        )

    def missing_fields(self) -> list[str]:
        """Required fields that are still blank."""
        missing = []
        if not self.customer_name.strip():
            missing.append("customerName")
        if not self.customer_email.strip():
            missing.append("customerEmail")
        if self.preferred_date is None:
            missing.append("preferredDate")
        return missing
