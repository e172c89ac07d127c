"""Shared test fixtures for the lead-conversion agent test suite."""

from __future__ import annotations

import os
from datetime import UTC, datetime
from unittest.mock import MagicMock

import pytest

# Sunday 9 March 2025, noon.  Europe/London is on GMT until 30 March, so
# local wall-clock times equal UTC in these tests.
FIXED_NOW = datetime(2025, 3, 9, 12, 0, tzinfo=UTC)


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("TWILIO_ACCOUNT_SID", "ACtest000000000000000000000000000")
    os.environ.setdefault("TWILIO_AUTH_TOKEN", "test-twilio-token")
    os.environ.setdefault("TWILIO_WHATSAPP_NUMBER", "+14155238886")
    os.environ.setdefault("CRON_SECRET", "test-cron-secret")
    os.environ.setdefault("DEFAULT_TIMEZONE", "Europe/London")


@pytest.fixture
def now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def clock():
    """A clock frozen at ``FIXED_NOW``."""
    return lambda: FIXED_NOW


@pytest.fixture
def store():
    """In-memory store seeded with one organization and the lead Jane Doe."""
    from src.services.store import InMemoryStore

    return InMemoryStore(
        {
            "organizations": [
                {
                    "id": "org-1",
                    "name": "Peak Fitness",
                    "owner_phone": "+447700900001",
                    "timezone": "Europe/London",
                },
                {"id": "org-2", "name": "Other Gym", "timezone": "Europe/London"},
            ],
            "leads": [
                {
                    "id": "lead-jane",
                    "organization_id": "org-1",
                    "name": "Jane Doe",
                    "phone": "+15551234567",
                    "email": "jane@example.com",
                    "status": "new",
                },
            ],
        }
    )


@pytest.fixture
def messaging():
    """WhatsApp client double whose sends always succeed."""
    from src.services.whatsapp import SentMessage

    client = MagicMock()
    client.send_message.return_value = SentMessage(message_id="SM123")
    return client


@pytest.fixture
def calendar():
    """Calendar client double with a free calendar and a Meet link on every event."""
    from src.services.calendar_client import CalendarEvent

    client = MagicMock()
    client.check_availability.return_value = True
    client.create_event.return_value = CalendarEvent(
        event_id="evt-1",
        meeting_link="https://meet.google.com/abc-defg-hij",
        html_link="https://calendar.google.com/event?eid=evt-1",
    )
    return client


@pytest.fixture
def mock_response():
    """Factory fixture for creating mock httpx responses."""

    def _make(data: dict | list | None, status_code: int = 200):
        mock = MagicMock()
        mock.status_code = status_code
        mock.json.return_value = data
        mock.text = str(data)
        mock.content = b"" if data is None else b"{...}"
        return mock

    return _make
