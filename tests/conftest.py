"""Shared test fixtures for the Storage Assistant test suite."""

from __future__ import annotations

import os
from unittest.mock import MagicMock
from zoneinfo import ZoneInfo

import pytest

from src.services.result import Result


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("AIRTABLE_API_KEY", "test-airtable-key-123")
    os.environ.setdefault("AIRTABLE_BASE_ID", "appTESTBASE456")
    os.environ.setdefault("BUSINESS_TIMEZONE", "UTC")
    os.environ["METRICS_ENABLED"] = "false"


@pytest.fixture
def mock_response():
    """Factory fixture for creating mock httpx responses."""

    def _make(data: dict, status_code: int = 200):
        mock = MagicMock()
        mock.status_code = status_code
        mock.json.return_value = data
        mock.text = str(data)
        return mock

    return _make


@pytest.fixture
def record_store():
    """A record store whose calls all succeed."""
    store = MagicMock()
    store.log_inquiry.return_value = Result.success({"id": "recINQ"})
    store.list_faqs.return_value = Result.success([])
    store.create_service_request.side_effect = lambda req: Result.success(
        req.model_copy(update={"id": "recNEW"})
    )
    return store


@pytest.fixture
def calendar():
    """A calendar offering every business slot and accepting every booking."""
    cal = MagicMock()
    cal.timezone = ZoneInfo("UTC")
    cal.available_slots_for_date.return_value = [f"{h}:00" for h in range(9, 17)]
    cal.book_event.return_value = Result.success({"id": "evt1"})
    return cal
