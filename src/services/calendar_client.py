"""HTTP client for the Google Calendar API v3.

Authenticates with a long-lived OAuth refresh token: a short-lived access
token is minted on first use and re-minted a minute before it expires.

Google Calendar API docs: https://developers.google.com/calendar/api/v3/reference
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from datetime import datetime
from typing import Any

import httpx
from pydantic import BaseModel, Field

from src.config import (
    CALENDAR_MAX_ATTEMPTS,
    GOOGLE_CALENDAR_BASE_URL,
    GOOGLE_CALENDAR_ID,
    GOOGLE_CLIENT_ID,
    GOOGLE_CLIENT_SECRET,
    GOOGLE_REFRESH_TOKEN,
    GOOGLE_TOKEN_URL,
)
from src.errors import CalendarAPIError, CalendarAuthError
from src.services.metrics import metrics

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
INITIAL_BACKOFF_SECONDS = 1.0
REQUEST_TIMEOUT_SECONDS = 15.0
TOKEN_EXPIRY_MARGIN_SECONDS = 60


class EventDetails(BaseModel):
    summary: str
    start: datetime
    end: datetime
    timezone: str
    description: str = ""
    attendee_emails: list[str] = Field(default_factory=list)


class CalendarEvent(BaseModel):
    event_id: str
    meeting_link: str | None = None
    html_link: str | None = None


class GoogleCalendarClient:
    """Thin wrapper around the Google Calendar REST API.

    Only the three calls the booking flow needs are exposed: a free/busy
    check, event creation with a Google Meet link, and event deletion.
    """

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        refresh_token: str | None = None,
        *,
        calendar_id: str = GOOGLE_CALENDAR_ID,
        base_url: str = GOOGLE_CALENDAR_BASE_URL,
        token_url: str = GOOGLE_TOKEN_URL,
        max_attempts: int = CALENDAR_MAX_ATTEMPTS,
        http_client: httpx.Client | None = None,
    ):
        self._client_id = client_id or GOOGLE_CLIENT_ID
        self._client_secret = client_secret or GOOGLE_CLIENT_SECRET
        self._refresh_token = refresh_token or GOOGLE_REFRESH_TOKEN
        self._calendar_id = calendar_id
        self._token_url = token_url
        self._max_attempts = max(1, max_attempts)
        self._client = http_client or httpx.Client(
            base_url=base_url, timeout=REQUEST_TIMEOUT_SECONDS,
        )
        self._access_token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    # ── Authentication ───────────────────────────────────────────────

    def _get_access_token(self) -> str:
        with self._token_lock:
            if self._access_token and time.time() < self._token_expires_at:
                return self._access_token

            if not (self._client_id and self._client_secret and self._refresh_token):
                raise CalendarAuthError("Google Calendar credentials are not configured")

            try:
                response = self._client.post(
                    self._token_url,
                    data={
                        "client_id": self._client_id,
                        "client_secret": self._client_secret,
                        "refresh_token": self._refresh_token,
                        "grant_type": "refresh_token",
                    },
                )
            except httpx.HTTPError as exc:
                raise CalendarAPIError(f"Token refresh failed: {exc}") from exc

            if response.status_code >= 400:
                raise CalendarAuthError(
                    f"Token refresh rejected {response.status_code}: {response.text}",
                    status_code=response.status_code,
                )
            payload = response.json()
            self._access_token = payload["access_token"]
            self._token_expires_at = (
                time.time() + int(payload.get("expires_in", 3600)) - TOKEN_EXPIRY_MARGIN_SECONDS
            )
            logger.debug("Refreshed Google Calendar access token")
            return self._access_token

    # ── Internal helpers ─────────────────────────────────────────────

    def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Execute a request; transport errors and 5xx are retried up to
        ``max_attempts`` times with exponential backoff."""
        last_error: Exception | None = None
        for attempt in range(1, self._max_attempts + 1):
            headers = {"Authorization": f"Bearer {self._get_access_token()}"}
            t0 = time.perf_counter()
            try:
                response = self._client.request(
                    method, path, params=params, json=json_body, headers=headers,
                )
            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                elapsed = (time.perf_counter() - t0) * 1000
                metrics.record_failure("google_calendar", operation, type(exc).__name__, elapsed)
                last_error = CalendarAPIError(f"Calendar request failed: {exc}")
                last_error.__cause__ = exc
            else:
                elapsed = (time.perf_counter() - t0) * 1000
                if response.status_code in (401, 403):
                    metrics.record_failure(
                        "google_calendar", operation, str(response.status_code), elapsed,
                    )
                    # Drop the token so the next call re-authenticates
                    self._access_token = None
                    raise CalendarAuthError(
                        f"Calendar auth error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                if response.status_code >= 400:
                    metrics.record_failure(
                        "google_calendar", operation, str(response.status_code), elapsed,
                    )
                    error = CalendarAPIError(
                        f"Calendar error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                    if response.status_code < 500:
                        raise error
                    last_error = error
                else:
                    metrics.record_success("google_calendar", operation, latency_ms=elapsed)
                    if not response.content:
                        return {}
                    return response.json()

            if attempt < self._max_attempts:
                backoff = INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1))
                logger.warning(
                    "Calendar %s attempt %d/%d failed (%s). Retrying in %.1fs…",
                    operation, attempt, self._max_attempts, last_error, backoff,
                )
                time.sleep(backoff)

        assert last_error is not None
        raise last_error

    # ── Public API methods ───────────────────────────────────────────

    def check_availability(self, start: datetime, end: datetime) -> bool:
        """Return True when nothing on the calendar overlaps ``[start, end)``."""
        data = self._request(
            "POST",
            "/freeBusy",
            operation="free_busy",
            json_body={
                "timeMin": start.isoformat(),
                "timeMax": end.isoformat(),
                "items": [{"id": self._calendar_id}],
            },
        )
        calendar = data.get("calendars", {}).get(self._calendar_id, {})
        if calendar.get("errors"):
            raise CalendarAPIError(f"freeBusy error: {calendar['errors']}")
        busy = calendar.get("busy", [])
        logger.debug("freeBusy %s → %s: %d busy blocks", start, end, len(busy))
        return not busy

    def create_event(self, details: EventDetails) -> CalendarEvent:
        """Create an event with a Google Meet conference attached."""
        body: dict[str, Any] = {
            "summary": details.summary,
            "description": details.description,
            "start": {"dateTime": details.start.isoformat(), "timeZone": details.timezone},
            "end": {"dateTime": details.end.isoformat(), "timeZone": details.timezone},
            "attendees": [{"email": e} for e in details.attendee_emails],
            "conferenceData": {
                "createRequest": {
                    "requestId": str(uuid.uuid4()),
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                },
            },
        }
        data = self._request(
            "POST",
            f"/calendars/{self._calendar_id}/events",
            operation="create_event",
            params={"conferenceDataVersion": "1"},
            json_body=body,
        )
        event = CalendarEvent(
            event_id=data["id"],
            meeting_link=data.get("hangoutLink"),
            html_link=data.get("htmlLink"),
        )
        logger.info("Created calendar event %s at %s", event.event_id, details.start)
        return event

    def delete_event(self, event_id: str) -> None:
        self._request(
            "DELETE",
            f"/calendars/{self._calendar_id}/events/{event_id}",
            operation="delete_event",
        )
        logger.info("Deleted calendar event %s", event_id)
