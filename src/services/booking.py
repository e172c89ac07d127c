"""Turn a lead's "let's do tomorrow at 2pm" into a calendar booking.

Each attempt walks a fixed sequence of stages::

    detected_intent → datetime_parsed → availability_checked
        → event_created → booking_persisted

and stops at the first failure with a ``BookingOutcome`` whose ``reply`` is
a polite apology the agent sends instead of its own text.  Nothing is held
between the availability check and the event creation; two leads asking for
the same slot at the same instant can both get it.

Date/time parsing is deliberately narrow.  It understands a day and a time
that are both stated explicitly and refuses to guess when either is missing.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from datetime import date, datetime, time, timedelta
from enum import Enum
from zoneinfo import ZoneInfo

from pydantic import BaseModel

from src.config import BOOKING_DURATION_MINUTES, DEFAULT_TIMEZONE
from src.errors import (
    BookingStateError,
    CalendarAPIError,
    DateTimeParseError,
    NotFoundError,
    ProviderError,
    UnavailableSlotError,
)
from src.models import (
    BOOKING_TRANSITIONS,
    Booking,
    BookingStatus,
    ConversationContext,
    Lead,
    LeadStatus,
    utc_now,
)
from src.services.calendar_client import EventDetails, GoogleCalendarClient
from src.services.leads import advance_lead_status
from src.services.reminders import ReminderScheduler, format_appointment_time
from src.services.store import Store

logger = logging.getLogger(__name__)

BOOKINGS_TABLE = "bookings"

# ── Date/time parsing ────────────────────────────────────────────────

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}

_ISO_DATETIME = re.compile(
    r"\b\d{4}-\d{2}-\d{2}T\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:Z|[+-]\d{2}:?\d{2})?\b"
)
_ISO_DATE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b")
_RELATIVE_DAY = re.compile(r"\b(today|tomorrow|" + "|".join(WEEKDAYS) + r")\b", re.IGNORECASE)
_MONTH_DAY = re.compile(
    r"\b(jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|aug(?:ust)?"
    r"|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)\.?\s+(\d{1,2})(?:st|nd|rd|th)?\b",
    re.IGNORECASE,
)
_TIME_12H = re.compile(r"\b(\d{1,2})(?::(\d{2}))?\s*(am|pm)\b", re.IGNORECASE)
_TIME_24H = re.compile(r"\b(\d{1,2}):(\d{2})\b")


def _find_day(text: str, today: date) -> tuple[date, bool] | None:
    """Return ``(day, is_weekday_name)`` for the first explicit day in *text*."""
    if m := _ISO_DATE.search(text):
        try:
            return date(int(m[1]), int(m[2]), int(m[3])), False
        except ValueError as exc:
            raise DateTimeParseError(f"Invalid date {m[0]!r}") from exc

    if m := _MONTH_DAY.search(text):
        month, day = MONTHS[m[1][:3].lower()], int(m[2])
        try:
            candidate = date(today.year, month, day)
        except ValueError as exc:
            raise DateTimeParseError(f"Invalid date {m[0]!r}") from exc
        if candidate < today:
            try:
                candidate = date(today.year + 1, month, day)
            except ValueError as exc:
                raise DateTimeParseError(f"Invalid date {m[0]!r}") from exc
        return candidate, False

    if m := _RELATIVE_DAY.search(text):
        word = m[1].lower()
        if word == "today":
            return today, False
        if word == "tomorrow":
            return today + timedelta(days=1), False
        ahead = (WEEKDAYS.index(word) - today.weekday()) % 7
        return today + timedelta(days=ahead), True

    return None


def _find_time(text: str) -> time | None:
    # Strip ISO dates so "2025-03-10" never reads as a clock time
    text = _ISO_DATE.sub(" ", text)
    if m := _TIME_12H.search(text):
        hour, minute, meridiem = int(m[1]), int(m[2] or 0), m[3].lower()
        if not 1 <= hour <= 12 or minute > 59:
            raise DateTimeParseError(f"Invalid time {m[0]!r}")
        hour = hour % 12 + (12 if meridiem == "pm" else 0)
        return time(hour, minute)
    if m := _TIME_24H.search(text):
        hour, minute = int(m[1]), int(m[2])
        if hour > 23 or minute > 59:
            raise DateTimeParseError(f"Invalid time {m[0]!r}")
        return time(hour, minute)
    return None


def has_datetime_hint(text: str) -> bool:
    """Whether *text* mentions any day or clock time at all."""
    return any(
        pattern.search(text)
        for pattern in (_ISO_DATETIME, _ISO_DATE, _RELATIVE_DAY, _MONTH_DAY, _TIME_12H, _TIME_24H)
    )


def parse_booking_datetime(text: str, *, now: datetime, tz: ZoneInfo) -> datetime:
    """Resolve a requested appointment start as an aware UTC datetime.

    Accepts "tomorrow at 2pm", "2pm tomorrow", "friday at 10:30am",
    "March 10 at 2:30pm", "2025-03-10 14:00" and full ISO-8601 strings.
    Raises ``DateTimeParseError`` when the day or the time is missing,
    invalid, or already in the past.
    """
    if m := _ISO_DATETIME.search(text):
        try:
            parsed = datetime.fromisoformat(m[0])
        except ValueError as exc:
            raise DateTimeParseError(f"Invalid timestamp {m[0]!r}") from exc
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=tz)
        if parsed <= now:
            raise DateTimeParseError("The requested time has already passed")
        return parsed.astimezone(ZoneInfo("UTC"))

    local_now = now.astimezone(tz)
    found_day = _find_day(text, local_now.date())
    found_time = _find_time(text)
    if found_day is None and found_time is None:
        raise DateTimeParseError("No date or time found")
    if found_day is None:
        raise DateTimeParseError("A time was given without a day")
    if found_time is None:
        raise DateTimeParseError("A day was given without a time")

    day, is_weekday_name = found_day
    start = datetime.combine(day, found_time, tzinfo=tz)
    if start <= local_now and is_weekday_name:
        start += timedelta(days=7)
    if start <= local_now:
        raise DateTimeParseError("The requested time has already passed")
    return start.astimezone(ZoneInfo("UTC"))


# ── Orchestration ────────────────────────────────────────────────────


class BookingStage(str, Enum):
    DETECTED_INTENT = "detected_intent"
    DATETIME_PARSED = "datetime_parsed"
    AVAILABILITY_CHECKED = "availability_checked"
    EVENT_CREATED = "event_created"
    BOOKING_PERSISTED = "booking_persisted"


class BookingOutcome(BaseModel):
    """Result of one booking attempt.

    ``stage`` is the last stage that completed; on failure the next stage is
    the one that went wrong.
    """

    success: bool
    stage: BookingStage
    reply: str
    booking: Booking | None = None
    error: str | None = None


def format_booking_confirmation(booking: Booking, lead: Lead, tz: ZoneInfo) -> str:
    message = (
        f"Great news {lead.name}! I've booked your consultation for "
        f"{format_appointment_time(booking.scheduled_at, tz)}."
    )
    if booking.google_meet_link:
        message += f"\n\nMeeting link: {booking.google_meet_link}"
    message += "\n\nYou'll receive a calendar invitation shortly. Looking forward to speaking with you!"
    return message


def _clarify_reply(lead: Lead) -> str:
    return (
        f"Sorry {lead.name}, I couldn't work out exactly when you'd like to meet. "
        "Could you give me a day and a time, for example \"tomorrow at 2pm\" or "
        "\"March 10 at 2:30pm\"?"
    )


def _unavailable_reply(lead: Lead, when: str) -> str:
    return f"Sorry {lead.name}, {when} is already taken. Would another time suit you?"


def _apology_reply(lead: Lead) -> str:
    return (
        f"Sorry {lead.name}, I couldn't book your appointment just now. "
        "Could you suggest a different time, or contact us directly?"
    )


class BookingOrchestrator:
    def __init__(
        self,
        store: Store,
        calendar: GoogleCalendarClient,
        reminders: ReminderScheduler,
        *,
        duration_minutes: int = BOOKING_DURATION_MINUTES,
        default_timezone: str = DEFAULT_TIMEZONE,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._calendar = calendar
        self._reminders = reminders
        self._duration = timedelta(minutes=duration_minutes)
        self._default_timezone = default_timezone
        self._clock = clock

    def book(self, context: ConversationContext, requested_text: str) -> BookingOutcome:
        lead, organization = context.lead, context.organization
        tz = ZoneInfo(organization.timezone or self._default_timezone)
        stage = BookingStage.DETECTED_INTENT

        try:
            start = parse_booking_datetime(requested_text, now=self._clock(), tz=tz)
            stage = BookingStage.DATETIME_PARSED
            end = start + self._duration

            if not self._calendar.check_availability(start, end):
                raise UnavailableSlotError(f"Slot {start.isoformat()} is busy")
            stage = BookingStage.AVAILABILITY_CHECKED

            event = self._calendar.create_event(
                EventDetails(
                    summary=f"Consultation: {lead.name} ({organization.name})",
                    description=f"Booked via WhatsApp.\nLead: {lead.name}\nPhone: {lead.phone}",
                    start=start,
                    end=end,
                    timezone=str(tz),
                    attendee_emails=[lead.email] if lead.email else [],
                )
            )
            stage = BookingStage.EVENT_CREATED

            booking = self._persist(lead, start, event.event_id, event.meeting_link)
            stage = BookingStage.BOOKING_PERSISTED
        except DateTimeParseError as exc:
            logger.info("Booking for lead %s needs clarification: %s", lead.id, exc)
            return BookingOutcome(success=False, stage=stage, reply=_clarify_reply(lead), error=str(exc))
        except UnavailableSlotError as exc:
            logger.info("Booking for lead %s rejected: %s", lead.id, exc)
            return BookingOutcome(
                success=False,
                stage=stage,
                reply=_unavailable_reply(lead, format_appointment_time(start, tz)),
                error=str(exc),
            )
        except ProviderError as exc:
            logger.error("Booking for lead %s failed after %s: %s", lead.id, stage.value, exc)
            if stage is BookingStage.EVENT_CREATED:
                self._discard_event(event.event_id)
            return BookingOutcome(success=False, stage=stage, reply=_apology_reply(lead), error=str(exc))

        try:
            self._reminders.schedule_booking_reminders(booking, lead, organization)
            self._reminders.send_immediate_reminders(booking.id)
        except ProviderError:
            logger.exception("Reminders for booking %s could not be scheduled", booking.id)

        advance_lead_status(self._store, lead, LeadStatus.BOOKED)
        logger.info("Booked lead %s for %s (booking %s)", lead.id, start.isoformat(), booking.id)
        return BookingOutcome(
            success=True,
            stage=stage,
            reply=format_booking_confirmation(booking, lead, tz),
            booking=booking,
        )

    def _persist(
        self, lead: Lead, start: datetime, event_id: str, meeting_link: str | None,
    ) -> Booking:
        row = self._store.insert(
            BOOKINGS_TABLE,
            {
                "lead_id": lead.id,
                "organization_id": lead.organization_id,
                "scheduled_at": start,
                "duration_minutes": int(self._duration.total_seconds() // 60),
                "status": BookingStatus.SCHEDULED,
                "google_calendar_event_id": event_id,
                "google_meet_link": meeting_link,
                "reminder_sent": False,
            },
        )
        return Booking.model_validate(row)

    def _discard_event(self, event_id: str) -> None:
        try:
            self._calendar.delete_event(event_id)
        except CalendarAPIError as exc:
            logger.warning("Could not remove orphaned calendar event %s: %s", event_id, exc)

    # ── Lifecycle ────────────────────────────────────────────────────

    def get_booking(self, organization_id: str, booking_id: str) -> Booking:
        row = self._store.select_one(
            BOOKINGS_TABLE, filters={"id": booking_id, "organization_id": organization_id},
        )
        if row is None:
            raise NotFoundError("booking", booking_id)
        return Booking.model_validate(row)

    def update_booking_status(
        self, organization_id: str, booking_id: str, new_status: BookingStatus,
    ) -> Booking:
        """Apply one transition from ``BOOKING_TRANSITIONS`` or raise ``BookingStateError``."""
        booking = self.get_booking(organization_id, booking_id)
        if new_status not in BOOKING_TRANSITIONS[booking.status]:
            raise BookingStateError(
                f"Booking {booking_id} cannot move from {booking.status.value} to {new_status.value}"
            )
        rows = self._store.update(
            BOOKINGS_TABLE,
            {"status": new_status},
            filters={"id": booking_id, "organization_id": organization_id, "status": booking.status},
        )
        if not rows:
            raise BookingStateError(f"Booking {booking_id} changed status concurrently")
        updated = Booking.model_validate(rows[0])

        if new_status is BookingStatus.COMPLETED:
            lead_row = self._store.select_one("leads", filters={"id": booking.lead_id})
            if lead_row:
                advance_lead_status(self._store, Lead.model_validate(lead_row), LeadStatus.COMPLETED)
        logger.info("Booking %s %s → %s", booking_id, booking.status.value, new_status.value)
        return updated

    def cancel_booking(self, organization_id: str, booking_id: str) -> Booking:
        """Cancel a scheduled booking, its pending reminders and its calendar event.

        The calendar delete is best-effort: the booking stays cancelled even
        when Google refuses.
        """
        booking = self.get_booking(organization_id, booking_id)
        if BookingStatus.CANCELLED not in BOOKING_TRANSITIONS[booking.status]:
            raise BookingStateError(
                f"Booking {booking_id} is {booking.status.value} and cannot be cancelled"
            )
        self._reminders.cancel_booking_reminders(booking_id)
        cancelled = self.update_booking_status(organization_id, booking_id, BookingStatus.CANCELLED)
        if booking.google_calendar_event_id:
            self._discard_event(booking.google_calendar_event_id)
        return cancelled

