"""HTTP client for the Airtable REST API (the record store).

Airtable API docs: https://airtable.com/developers/web/api/introduction
Requests carry a Personal Access Token as a Bearer token and address tables
by name under ``/v0/<base_id>/<table name>``.

Three tables are used; their field names are part of the stored data and
must not change:

* ``Customer Inquiries`` — Message, Response
* ``FAQs`` — Question, Answer
* ``Service Requests`` — Type, Status, Customer Name, Customer Email,
  Customer Phone, Description, Preferred Date, Scheduled Date, Updated At
  (plus the store-assigned id and Created At)

Every public method returns a :class:`~src.services.result.Result`; see
``src/orchestrator.py`` for which failures are best-effort and which are
load-bearing.
"""

from __future__ import annotations

import logging
import threading
from typing import Any
from urllib.parse import quote

import httpx

from src.config import (
    AIRTABLE_API_KEY,
    AIRTABLE_BASE_ID,
    AIRTABLE_BASE_URL,
    REQUEST_TIMEOUT_SECONDS,
)
from src.models import (
    ServiceRequest,
    ServiceRequestStatus,
    ServiceRequestType,
    utc_now_iso,
)
from src.services.metrics import metrics
from src.services.result import Result

logger = logging.getLogger(__name__)

INQUIRIES_TABLE = "Customer Inquiries"
FAQS_TABLE = "FAQs"
SERVICE_REQUESTS_TABLE = "Service Requests"


class RecordStoreError(Exception):
    """Raised when an Airtable call fails."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class RecordNotFoundError(RecordStoreError):
    """A point lookup did not produce a record."""


class MissingRecordIdError(RecordStoreError):
    """An update was attempted on a request that was never persisted."""


# ── Field mapping ───────────────────────────────────────────────────


def _service_request_fields(request: ServiceRequest, *, updated_at: str | None) -> dict[str, str]:
    return {
        "Type": request.type.value,
        "Status": request.status.value,
        "Customer Name": request.customer_name,
        "Customer Email": request.customer_email,
        "Customer Phone": request.customer_phone or "",
        "Description": request.description,
        "Preferred Date": request.preferred_date or "",
        "Scheduled Date": request.scheduled_date or "",
        "Updated At": updated_at or "",
    }


def _service_request_from_record(record: dict[str, Any]) -> ServiceRequest:
    fields = record.get("fields", {})
    return ServiceRequest(
        id=record["id"],
        type=ServiceRequestType(fields.get("Type", ServiceRequestType.OTHER.value)),
        status=ServiceRequestStatus(fields.get("Status", ServiceRequestStatus.PENDING.value)),
        customer_name=fields.get("Customer Name", ""),
        customer_email=fields.get("Customer Email", ""),
        # Airtable omits empty cells, so blanks come back as None
        customer_phone=fields.get("Customer Phone") or None,
        description=fields.get("Description", ""),
        preferred_date=fields.get("Preferred Date") or None,
        scheduled_date=fields.get("Scheduled Date") or None,
        created_at=fields.get("Created At") or record.get("createdTime") or "",
        updated_at=fields.get("Updated At") or None,
    )


class AirtableClient:
    """Thin wrapper around the Airtable REST API for one base."""

    def __init__(
        self,
        api_key: str | None = None,
        base_id: str | None = None,
        *,
        base_url: str | None = None,
    ):
        self._base_id = base_id or AIRTABLE_BASE_ID
        self._client = httpx.Client(
            base_url=base_url or AIRTABLE_BASE_URL,
            headers={
                "Authorization": f"Bearer {api_key or AIRTABLE_API_KEY}",
                "Content-Type": "application/json",
            },
            timeout=REQUEST_TIMEOUT_SECONDS,
        )

    # ── Internal helpers ─────────────────────────────────────────────

    def _path(self, table: str, record_id: str | None = None) -> str:
        path = f"/{self._base_id}/{quote(table, safe='')}"
        if record_id:
            path += f"/{quote(record_id, safe='')}"
        return path

    def _request(
        self,
        method: str,
        table: str,
        *,
        record_id: str | None = None,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Execute one HTTP request.  No retries: a failure is final."""
        with metrics.track("airtable", f"{method} {table}"):
            try:
                response = self._client.request(
                    method,
                    self._path(table, record_id),
                    params=params,
                    json=json_body,
                )
            except httpx.HTTPError as exc:
                raise RecordStoreError(f"Airtable request failed: {exc}") from exc

            if response.status_code >= 400:
                raise RecordStoreError(
                    f"Airtable error {response.status_code}: {response.text}",
                    status_code=response.status_code,
                )
            try:
                return response.json()
            except ValueError as exc:
                raise RecordStoreError("Airtable returned a non-JSON body") from exc

    def _list_records(self, table: str) -> list[dict[str, Any]]:
        """Fetch every record of *table*, following pagination offsets."""
        records: list[dict[str, Any]] = []
        params: dict[str, Any] = {}
        while True:
            data = self._request("GET", table, params=params or None)
            records.extend(data.get("records", []))
            offset = data.get("offset")
            if not offset:
                return records
            params = {"offset": offset}

    # ── Customer Inquiries ───────────────────────────────────────────

    def log_inquiry(self, message: str, response: str) -> Result[dict[str, str]]:
        """Append one row to the inquiry log."""
        try:
            record = self._request(
                "POST",
                INQUIRIES_TABLE,
                json_body={"fields": {"Message": message, "Response": response}},
            )
        except RecordStoreError as exc:
            logger.warning("Failed to log customer inquiry: %s", exc)
            return Result.failure(exc)
        fields = record.get("fields", {})
        return Result.success(
            {
                "id": record.get("id", ""),
                "message": fields.get("Message", message),
                "response": fields.get("Response", response),
            }
        )

    # ── FAQs ─────────────────────────────────────────────────────────

    def list_faqs(self) -> Result[list[dict[str, str]]]:
        """Return every stored question/answer pair."""
        try:
            records = self._list_records(FAQS_TABLE)
        except RecordStoreError as exc:
            logger.warning("Failed to fetch FAQs: %s", exc)
            return Result.failure(exc)
        return Result.success(
            [
                {
                    "question": r.get("fields", {}).get("Question", ""),
                    "answer": r.get("fields", {}).get("Answer", ""),
                }
                for r in records
            ]
        )

    # ── Service Requests ─────────────────────────────────────────────

    def create_service_request(self, request: ServiceRequest) -> Result[ServiceRequest]:
        """Persist *request* and return a copy carrying the assigned id."""
        try:
            record = self._request(
                "POST",
                SERVICE_REQUESTS_TABLE,
                json_body={"fields": _service_request_fields(request, updated_at=request.updated_at)},
            )
        except RecordStoreError as exc:
            logger.error("Failed to create service request: %s", exc)
            return Result.failure(RecordStoreError("Failed to create service request", exc.status_code))
        created = request.model_copy(update={"id": record["id"]})
        logger.info("Created service request %s (%s)", created.id, created.type.value)
        return Result.success(created)

    def update_service_request(self, request: ServiceRequest) -> Result[ServiceRequest]:
        """Overwrite a persisted request and stamp ``Updated At``."""
        if not request.id:
            return Result.failure(
                MissingRecordIdError("Service request ID is required for updates")
            )
        updated_at = utc_now_iso()
        try:
            self._request(
                "PATCH",
                SERVICE_REQUESTS_TABLE,
                record_id=request.id,
                json_body={"fields": _service_request_fields(request, updated_at=updated_at)},
            )
        except RecordStoreError as exc:
            logger.error("Failed to update service request %s: %s", request.id, exc)
            return Result.failure(RecordStoreError("Failed to update service request", exc.status_code))
        return Result.success(request.model_copy(update={"updated_at": updated_at}))

    def get_service_requests(self) -> Result[list[ServiceRequest]]:
        """List every service request.  Rows that cannot be mapped are skipped."""
        try:
            records = self._list_records(SERVICE_REQUESTS_TABLE)
        except RecordStoreError as exc:
            logger.warning("Failed to fetch service requests: %s", exc)
            return Result.failure(exc)

        requests: list[ServiceRequest] = []
        for record in records:
            try:
                requests.append(_service_request_from_record(record))
            except (KeyError, ValueError) as exc:
                logger.warning("Skipping malformed service request %s: %s", record.get("id"), exc)
        return Result.success(requests)

    def get_service_request_by_id(self, request_id: str) -> Result[ServiceRequest]:
        """Fetch one service request by its store-assigned id."""
        try:
            record = self._request("GET", SERVICE_REQUESTS_TABLE, record_id=request_id)
            return Result.success(_service_request_from_record(record))
        except (RecordStoreError, KeyError, ValueError) as exc:
            logger.warning("Failed to fetch service request %s: %s", request_id, exc)
            error = RecordNotFoundError("Service request not found", getattr(exc, "status_code", None))
            error.__cause__ = exc
            return Result.failure(error)


# ── Module-level singleton (thread-safe) ────────────────────────────
_client: AirtableClient | None = None
_client_lock = threading.Lock()


def get_airtable_client() -> AirtableClient:
    """Return a module-level AirtableClient singleton."""
    global _client
    if _client is None:
        with _client_lock:
            if _client is None:
                _client = AirtableClient()
    return _client
