"""Tests for the GoogleCalendarClient service."""

from __future__ import annotations

import time
from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

import httpx
import pytest

from src.errors import CalendarAPIError, CalendarAuthError
from src.services.calendar_client import (
    INITIAL_BACKOFF_SECONDS,
    EventDetails,
    GoogleCalendarClient,
)

START = datetime(2025, 3, 10, 14, 0, tzinfo=UTC)
END = datetime(2025, 3, 10, 14, 30, tzinfo=UTC)


# ── Helpers ──────────────────────────────────────────────────────────


def _make_client(max_attempts: int = 1) -> tuple[GoogleCalendarClient, MagicMock]:
    http = MagicMock()
    client = GoogleCalendarClient(
        "client-id", "client-secret", "refresh-token",
        calendar_id="primary", max_attempts=max_attempts, http_client=http,
    )
    # Skip the OAuth round trip unless a test wants it
    client._access_token = "access-token"
    client._token_expires_at = time.time() + 3600
    return client, http


# ── Tests: authentication ────────────────────────────────────────────


class TestAccessToken:
    def test_refreshes_token_on_first_use(self, mock_response):
        client, http = _make_client()
        client._access_token = None
        http.post.return_value = mock_response({"access_token": "fresh", "expires_in": 3600})
        http.request.return_value = mock_response({"calendars": {"primary": {"busy": []}}})

        client.check_availability(START, END)

        assert http.post.call_args[1]["data"]["grant_type"] == "refresh_token"
        assert http.request.call_args[1]["headers"] == {"Authorization": "Bearer fresh"}

    def test_token_is_reused_until_expiry(self, mock_response):
        client, http = _make_client()
        http.request.return_value = mock_response({"calendars": {"primary": {"busy": []}}})
        client.check_availability(START, END)
        client.check_availability(START, END)
        http.post.assert_not_called()

    def test_rejected_refresh_raises_auth_error(self, mock_response):
        client, http = _make_client()
        client._access_token = None
        http.post.return_value = mock_response({"error": "invalid_grant"}, 400)
        with pytest.raises(CalendarAuthError):
            client.check_availability(START, END)

    def test_missing_credentials_raise_auth_error(self):
        client, http = _make_client()
        client._access_token = None
        client._refresh_token = None
        with pytest.raises(CalendarAuthError, match="not configured"):
            client.check_availability(START, END)
        http.post.assert_not_called()


# ── Tests: check_availability ────────────────────────────────────────


class TestCheckAvailability:
    def test_free_slot(self, mock_response):
        client, http = _make_client()
        http.request.return_value = mock_response({"calendars": {"primary": {"busy": []}}})

        assert client.check_availability(START, END) is True
        method, path = http.request.call_args[0]
        assert (method, path) == ("POST", "/freeBusy")
        body = http.request.call_args[1]["json"]
        assert body["timeMin"] == START.isoformat()
        assert body["items"] == [{"id": "primary"}]

    def test_busy_slot(self, mock_response):
        client, http = _make_client()
        busy = [{"start": START.isoformat(), "end": END.isoformat()}]
        http.request.return_value = mock_response({"calendars": {"primary": {"busy": busy}}})
        assert client.check_availability(START, END) is False

    def test_calendar_level_error(self, mock_response):
        client, http = _make_client()
        http.request.return_value = mock_response(
            {"calendars": {"primary": {"errors": [{"reason": "notFound"}]}}}
        )
        with pytest.raises(CalendarAPIError):
            client.check_availability(START, END)


# ── Tests: create_event / delete_event ───────────────────────────────


class TestCreateEvent:
    def test_creates_event_with_meet_link(self, mock_response):
        client, http = _make_client()
        http.request.return_value = mock_response(
            {"id": "evt-1", "hangoutLink": "https://meet.google.com/abc", "htmlLink": "https://cal/evt-1"}
        )
        event = client.create_event(
            EventDetails(
                summary="Consultation: Jane Doe",
                start=START,
                end=END,
                timezone="Europe/London",
                attendee_emails=["jane@example.com"],
            )
        )

        assert event.event_id == "evt-1"
        assert event.meeting_link == "https://meet.google.com/abc"
        kwargs = http.request.call_args[1]
        assert kwargs["params"] == {"conferenceDataVersion": "1"}
        assert kwargs["json"]["attendees"] == [{"email": "jane@example.com"}]
        assert kwargs["json"]["conferenceData"]["createRequest"]["conferenceSolutionKey"] == {
            "type": "hangoutsMeet"
        }
        assert kwargs["json"]["start"] == {"dateTime": START.isoformat(), "timeZone": "Europe/London"}

    def test_event_without_conference(self, mock_response):
        client, http = _make_client()
        http.request.return_value = mock_response({"id": "evt-2"})
        event = client.create_event(EventDetails(summary="x", start=START, end=END, timezone="UTC"))
        assert event.meeting_link is None

    def test_delete_event(self, mock_response):
        client, http = _make_client()
        http.request.return_value = mock_response(None, 204)
        client.delete_event("evt-1")
        assert http.request.call_args[0] == ("DELETE", "/calendars/primary/events/evt-1")


# ── Tests: error handling and retries ────────────────────────────────


class TestRequestErrors:
    def test_401_raises_auth_error_and_drops_token(self, mock_response):
        client, http = _make_client()
        http.request.return_value = mock_response({"error": "unauthorized"}, 401)
        with pytest.raises(CalendarAuthError):
            client.check_availability(START, END)
        assert client._access_token is None

    def test_client_error_is_not_retried(self, mock_response):
        client, http = _make_client(max_attempts=3)
        http.request.return_value = mock_response({"error": "bad request"}, 400)
        with pytest.raises(CalendarAPIError) as excinfo:
            client.check_availability(START, END)
        assert excinfo.value.status_code == 400
        assert http.request.call_count == 1

    def test_single_attempt_by_default(self, mock_response):
        client, http = _make_client()
        http.request.return_value = mock_response({"error": "unavailable"}, 503)
        with pytest.raises(CalendarAPIError):
            client.check_availability(START, END)
        assert http.request.call_count == 1

    @patch("src.services.calendar_client.time.sleep")
    def test_server_error_retried_with_backoff(self, mock_sleep, mock_response):
        client, http = _make_client(max_attempts=3)
        http.request.side_effect = [
            mock_response({"error": "unavailable"}, 503),
            mock_response({"error": "unavailable"}, 503),
            mock_response({"calendars": {"primary": {"busy": []}}}),
        ]
        assert client.check_availability(START, END) is True
        assert http.request.call_count == 3
        assert [c[0][0] for c in mock_sleep.call_args_list] == [
            INITIAL_BACKOFF_SECONDS,
            INITIAL_BACKOFF_SECONDS * 2,
        ]

    @patch("src.services.calendar_client.time.sleep")
    def test_transport_errors_exhaust_attempts(self, mock_sleep, mock_response):
        client, http = _make_client(max_attempts=2)
        http.request.side_effect = httpx.ConnectError("refused")
        with pytest.raises(CalendarAPIError, match="refused"):
            client.check_availability(START, END)
        assert http.request.call_count == 2
