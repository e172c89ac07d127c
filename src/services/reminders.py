"""Booking reminders: three WhatsApp notifications per booking.

Every booking gets, in one batch insert:

1. ``owner_notification`` — due immediately, to the business owner
2. ``confirmation``       — due immediately, to the lead
3. ``one_hour_before``    — due at ``scheduled_at - 1h``, to the lead

There is no in-process scheduler.  ``process_due_reminders`` is driven by an
external cron (``POST /api/cron/reminders``) and works through due rows one
at a time.  Each status write is conditional on ``status=pending``, so a
reminder is sent at most once no matter how often the sweep runs.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from pydantic import BaseModel

from src.config import DEFAULT_TIMEZONE, OWNER_NOTIFICATION_PHONE, REMINDER_BATCH_SIZE
from src.errors import ProviderError
from src.models import (
    Booking,
    Lead,
    Organization,
    Reminder,
    ReminderStatus,
    ReminderType,
    utc_now,
)
from src.services.store import Store
from src.services.whatsapp import WhatsAppClient, is_valid_phone_number

logger = logging.getLogger(__name__)

REMINDERS_TABLE = "booking_reminders"
ONE_HOUR = timedelta(hours=1)

OWNER_TEMPLATE = """🗓️ NEW BOOKING CONFIRMED

Client: {lead_name}
Phone: {lead_phone}
Time: {when}

Booking ID: {booking_id}

The client has been notified and will receive a reminder 1 hour before the call."""

CONFIRMATION_TEMPLATE = """Your consultation with {organization} is confirmed for {when}.
{meeting_line}
Reply here if you need to reschedule."""

ONE_HOUR_TEMPLATE = """⏰ REMINDER: Your consultation with {organization} is in 1 hour ({time}).
{meeting_line}
See you soon!"""


def resolve_timezone(organization: Organization | None) -> ZoneInfo:
    return ZoneInfo((organization.timezone if organization else None) or DEFAULT_TIMEZONE)


def format_appointment_time(when: datetime, tz: ZoneInfo) -> str:
    """``Monday 10 March at 2:00 PM`` in the organization's timezone."""
    local = when.astimezone(tz)
    return f"{local.strftime('%A')} {local.day} {local.strftime('%B')} at {format_clock_time(local)}"


def format_clock_time(local: datetime) -> str:
    return f"{local.hour % 12 or 12}:{local.minute:02d} {'AM' if local.hour < 12 else 'PM'}"


class SweepResult(BaseModel):
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0


class ReminderScheduler:
    def __init__(
        self,
        store: Store,
        messaging: WhatsAppClient,
        *,
        owner_phone: str | None = OWNER_NOTIFICATION_PHONE,
        clock: Callable[[], datetime] = utc_now,
        batch_size: int = REMINDER_BATCH_SIZE,
    ) -> None:
        self._store = store
        self._messaging = messaging
        self._owner_phone = owner_phone
        self._clock = clock
        self._batch_size = batch_size

    # ── Scheduling ───────────────────────────────────────────────────

    def schedule_booking_reminders(
        self, booking: Booking, lead: Lead, organization: Organization,
    ) -> list[Reminder]:
        now = self._clock()
        tz = resolve_timezone(organization)
        when = format_appointment_time(booking.scheduled_at, tz)
        meeting_line = (
            f"\nMeeting link: {booking.google_meet_link}\n" if booking.google_meet_link else ""
        )
        owner_phone = organization.owner_phone or self._owner_phone or ""
        if not owner_phone:
            logger.warning("No owner phone for organization %s; owner notice will fail", organization.id)

        rows = [
            {
                "booking_id": booking.id,
                "reminder_type": ReminderType.OWNER_NOTIFICATION,
                "scheduled_at": now,
                "recipient_phone": owner_phone,
                "message_template": OWNER_TEMPLATE.format(
                    lead_name=lead.name, lead_phone=lead.phone, when=when, booking_id=booking.id,
                ),
                "status": ReminderStatus.PENDING,
            },
            {
                "booking_id": booking.id,
                "reminder_type": ReminderType.CONFIRMATION,
                "scheduled_at": now,
                "recipient_phone": lead.phone,
                "message_template": CONFIRMATION_TEMPLATE.format(
                    organization=organization.name, when=when, meeting_line=meeting_line,
                ),
                "status": ReminderStatus.PENDING,
            },
            {
                "booking_id": booking.id,
                "reminder_type": ReminderType.ONE_HOUR_BEFORE,
                "scheduled_at": booking.scheduled_at - ONE_HOUR,
                "recipient_phone": lead.phone,
                "message_template": ONE_HOUR_TEMPLATE.format(
                    organization=organization.name,
                    time=format_clock_time(booking.scheduled_at.astimezone(tz)),
                    meeting_line=meeting_line,
                ),
                "status": ReminderStatus.PENDING,
            },
        ]
        inserted = self._store.insert_many(REMINDERS_TABLE, rows)
        logger.info("Scheduled %d reminders for booking %s", len(inserted), booking.id)
        return [Reminder.model_validate(r) for r in inserted]

    # ── Sending ──────────────────────────────────────────────────────

    def send_immediate_reminders(self, booking_id: str) -> SweepResult:
        """Send whatever is already due for one booking (owner + confirmation)."""
        rows = self._store.select(
            REMINDERS_TABLE,
            filters={
                "booking_id": booking_id,
                "status": ReminderStatus.PENDING,
                "scheduled_at__lte": self._clock(),
            },
            order_by="scheduled_at",
        )
        return self._process([Reminder.model_validate(r) for r in rows])

    def process_due_reminders(
        self, now: datetime | None = None, limit: int | None = None,
    ) -> SweepResult:
        now = now or self._clock()
        rows = self._store.select(
            REMINDERS_TABLE,
            filters={"status": ReminderStatus.PENDING, "scheduled_at__lte": now},
            order_by="scheduled_at",
            limit=limit or self._batch_size,
        )
        logger.info("Processing %d due reminders", len(rows))
        return self._process([Reminder.model_validate(r) for r in rows])

    def _process(self, reminders: list[Reminder]) -> SweepResult:
        result = SweepResult()
        for reminder in reminders:
            result.processed += 1
            outcome = self.send_reminder(reminder)
            if outcome is ReminderStatus.SENT:
                result.sent += 1
            elif outcome is ReminderStatus.FAILED:
                result.failed += 1
            else:
                result.skipped += 1
        return result

    def send_reminder(self, reminder: Reminder) -> ReminderStatus | None:
        """Send one reminder and record the outcome.

        Returns the new status, or ``None`` when another sweep got there
        first and the reminder is no longer pending.
        """
        pending = {"id": reminder.id, "status": ReminderStatus.PENDING}
        if not is_valid_phone_number(reminder.recipient_phone):
            return self._mark_failed(reminder, f"Invalid phone number: {reminder.recipient_phone!r}")

        try:
            sent = self._messaging.send_message(reminder.recipient_phone, reminder.message_template)
        except ProviderError as exc:
            return self._mark_failed(reminder, str(exc))
        except Exception as exc:
            # A reminder is never left pending once a send was attempted
            logger.exception("Unexpected error sending reminder %s", reminder.id)
            return self._mark_failed(reminder, f"{type(exc).__name__}: {exc}")

        rows = self._store.update(
            REMINDERS_TABLE,
            {
                "status": ReminderStatus.SENT,
                "sent_at": self._clock(),
                "provider_message_id": sent.message_id,
            },
            filters=pending,
        )
        if not rows:
            logger.warning("Reminder %s was no longer pending after send", reminder.id)
            return None
        if reminder.reminder_type is ReminderType.ONE_HOUR_BEFORE:
            self._store.update("bookings", {"reminder_sent": True}, filters={"id": reminder.booking_id})
        logger.info("Sent %s reminder %s", reminder.reminder_type.value, reminder.id)
        return ReminderStatus.SENT

    def _mark_failed(self, reminder: Reminder, error: str) -> ReminderStatus | None:
        logger.error("Reminder %s failed: %s", reminder.id, error)
        rows = self._store.update(
            REMINDERS_TABLE,
            {"status": ReminderStatus.FAILED, "error_message": error},
            filters={"id": reminder.id, "status": ReminderStatus.PENDING},
        )
        return ReminderStatus.FAILED if rows else None

    # ── Cancellation ─────────────────────────────────────────────────

    def cancel_booking_reminders(self, booking_id: str) -> int:
        rows = self._store.update(
            REMINDERS_TABLE,
            {"status": ReminderStatus.CANCELLED},
            filters={"booking_id": booking_id, "status": ReminderStatus.PENDING},
        )
        logger.info("Cancelled %d pending reminders for booking %s", len(rows), booking_id)
        return len(rows)
