"""Tests for booking reminder scheduling and the reminder sweep."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock
from zoneinfo import ZoneInfo

import pytest
import requests

from src.errors import MessagingError
from src.models import Booking, Lead, Organization, ReminderStatus, ReminderType
from src.services.reminders import (
    REMINDERS_TABLE,
    ReminderScheduler,
    format_appointment_time,
)
from src.services.whatsapp import WhatsAppClient

APPOINTMENT = datetime(2025, 3, 10, 14, 0, tzinfo=UTC)


@pytest.fixture
def booking(store):
    row = store.insert(
        "bookings",
        {
            "id": "booking-1",
            "lead_id": "lead-jane",
            "organization_id": "org-1",
            "scheduled_at": APPOINTMENT,
            "status": "scheduled",
            "google_meet_link": "https://meet.google.com/abc-defg-hij",
            "reminder_sent": False,
        },
    )
    return Booking.model_validate(row)


@pytest.fixture
def lead(store):
    return Lead.model_validate(store.select_one("leads", filters={"id": "lead-jane"}))


@pytest.fixture
def organization(store):
    return Organization.model_validate(store.select_one("organizations", filters={"id": "org-1"}))


@pytest.fixture
def scheduler(store, messaging, clock):
    return ReminderScheduler(store, messaging, owner_phone="+447700900999", clock=clock)


def _statuses(store) -> dict[str, str]:
    return {r["reminder_type"]: r["status"] for r in store.select(REMINDERS_TABLE)}


class TestFormatting:
    def test_appointment_time_in_local_timezone(self):
        assert format_appointment_time(APPOINTMENT, ZoneInfo("Europe/London")) == (
            "Monday 10 March at 2:00 PM"
        )

    def test_appointment_time_shifts_with_timezone(self):
        assert format_appointment_time(APPOINTMENT, ZoneInfo("America/New_York")) == (
            "Monday 10 March at 10:00 AM"
        )


class TestScheduleBookingReminders:
    def test_creates_exactly_three_reminders(self, scheduler, booking, lead, organization, now):
        reminders = scheduler.schedule_booking_reminders(booking, lead, organization)

        assert [r.reminder_type for r in reminders] == [
            ReminderType.OWNER_NOTIFICATION,
            ReminderType.CONFIRMATION,
            ReminderType.ONE_HOUR_BEFORE,
        ]
        assert [r.scheduled_at for r in reminders] == [now, now, APPOINTMENT - timedelta(hours=1)]
        assert all(r.status is ReminderStatus.PENDING for r in reminders)

    def test_recipients(self, scheduler, booking, lead, organization):
        owner, confirmation, one_hour = scheduler.schedule_booking_reminders(booking, lead, organization)
        assert owner.recipient_phone == "+447700900001"
        assert confirmation.recipient_phone == lead.phone
        assert one_hour.recipient_phone == lead.phone

    def test_owner_phone_falls_back_to_configured_number(self, scheduler, booking, lead):
        organization = Organization(id="org-1", name="Peak Fitness")
        owner, _, _ = scheduler.schedule_booking_reminders(booking, lead, organization)
        assert owner.recipient_phone == "+447700900999"

    def test_messages_carry_booking_details(self, scheduler, booking, lead, organization):
        owner, confirmation, one_hour = scheduler.schedule_booking_reminders(booking, lead, organization)
        assert "Jane Doe" in owner.message_template
        assert "booking-1" in owner.message_template
        assert "Monday 10 March at 2:00 PM" in confirmation.message_template
        assert "https://meet.google.com/abc-defg-hij" in confirmation.message_template
        assert "in 1 hour (2:00 PM)" in one_hour.message_template


class TestProcessDueReminders:
    def test_only_due_reminders_are_sent(self, scheduler, booking, lead, organization, messaging, now):
        scheduler.schedule_booking_reminders(booking, lead, organization)
        result = scheduler.process_due_reminders(now=now)

        assert (result.processed, result.sent, result.failed) == (2, 2, 0)
        assert messaging.send_message.call_count == 2
        assert _statuses(scheduler._store) == {
            "owner_notification": "sent",
            "confirmation": "sent",
            "one_hour_before": "pending",
        }

    def test_sent_reminder_records_timestamp_and_message_id(self, scheduler, booking, lead, organization, store, now):
        scheduler.schedule_booking_reminders(booking, lead, organization)
        scheduler.process_due_reminders(now=now)
        sent = store.select(REMINDERS_TABLE, filters={"status": "sent"})
        assert all(r["sent_at"] == now for r in sent)
        assert all(r["provider_message_id"] == "SM123" for r in sent)

    def test_one_hour_reminder_marks_booking(self, scheduler, booking, lead, organization, store):
        scheduler.schedule_booking_reminders(booking, lead, organization)
        result = scheduler.process_due_reminders(now=APPOINTMENT - timedelta(minutes=59))

        assert result.sent == 3
        assert store.select_one("bookings", filters={"id": "booking-1"})["reminder_sent"] is True

    def test_sweep_is_idempotent(self, scheduler, booking, lead, organization, messaging):
        scheduler.schedule_booking_reminders(booking, lead, organization)
        late = APPOINTMENT
        first = scheduler.process_due_reminders(now=late)
        second = scheduler.process_due_reminders(now=late)

        assert first.sent == 3
        assert second.processed == 0
        assert messaging.send_message.call_count == 3

    def test_stale_reminder_is_not_resent_twice(self, scheduler, booking, lead, organization):
        reminders = scheduler.schedule_booking_reminders(booking, lead, organization)
        assert scheduler.send_reminder(reminders[1]) is ReminderStatus.SENT
        assert scheduler.send_reminder(reminders[1]) is None

    def test_send_failure_marks_failed(self, scheduler, booking, lead, organization, messaging, store, now):
        messaging.send_message.side_effect = MessagingError("rate limited", status_code=429)
        scheduler.schedule_booking_reminders(booking, lead, organization)
        result = scheduler.process_due_reminders(now=now)

        assert result.failed == 2
        failed = store.select(REMINDERS_TABLE, filters={"status": "failed"})
        assert all(r["error_message"] == "rate limited" for r in failed)
        assert all(r.get("sent_at") is None for r in failed)

    def test_invalid_phone_fails_without_sending(self, scheduler, booking, lead, organization, messaging, now):
        organization = organization.model_copy(update={"owner_phone": "12345"})
        scheduler.schedule_booking_reminders(booking, lead, organization)
        result = scheduler.process_due_reminders(now=now)

        assert (result.sent, result.failed) == (1, 1)
        assert messaging.send_message.call_count == 1

    def test_limit_caps_batch(self, scheduler, booking, lead, organization, now):
        scheduler.schedule_booking_reminders(booking, lead, organization)
        assert scheduler.process_due_reminders(now=now, limit=1).processed == 1

    def test_transport_error_marks_failed_and_sweep_continues(self, store, booking, lead, organization, clock, now):
        twilio = MagicMock()
        twilio.messages.create.side_effect = requests.exceptions.ConnectionError("connection reset")
        whatsapp = WhatsAppClient("ACtest", "token", "+14155238886", client=twilio)
        scheduler = ReminderScheduler(store, whatsapp, owner_phone="+447700900999", clock=clock)
        scheduler.schedule_booking_reminders(booking, lead, organization)

        result = scheduler.process_due_reminders(now=now)

        assert (result.processed, result.failed) == (2, 2)
        assert _statuses(store) == {
            "owner_notification": "failed",
            "confirmation": "failed",
            "one_hour_before": "pending",
        }

    def test_unexpected_error_never_leaves_reminder_pending(
        self, scheduler, booking, lead, organization, messaging, store, now,
    ):
        messaging.send_message.side_effect = RuntimeError("boom")
        scheduler.schedule_booking_reminders(booking, lead, organization)
        result = scheduler.process_due_reminders(now=now)

        assert result.failed == 2
        failed = store.select(REMINDERS_TABLE, filters={"status": "failed"})
        assert {r["error_message"] for r in failed} == {"RuntimeError: boom"}


class TestCancelBookingReminders:
    def test_cancels_only_pending(self, scheduler, booking, lead, organization, store, now):
        scheduler.schedule_booking_reminders(booking, lead, organization)
        scheduler.process_due_reminders(now=now)

        assert scheduler.cancel_booking_reminders("booking-1") == 1
        assert _statuses(store)["one_hour_before"] == "cancelled"
        assert store.select(REMINDERS_TABLE, filters={"status": "pending"}) == []

    def test_cancelled_reminders_are_never_sent(self, scheduler, booking, lead, organization, messaging):
        scheduler.schedule_booking_reminders(booking, lead, organization)
        scheduler.cancel_booking_reminders("booking-1")
        assert scheduler.process_due_reminders(now=APPOINTMENT).processed == 0
        messaging.send_message.assert_not_called()
