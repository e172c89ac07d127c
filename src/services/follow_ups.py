"""Cron-driven follow-up sweeps.

* Lead nudges: a ``new`` or ``contacted`` lead whose conversation ends on
  our own message, sent more than 24 h ago, gets the next of three nudges.
  Three unanswered nudges and we stop.
* No-shows: a booking still ``scheduled`` 30 minutes after its start is
  marked ``no_show``, its pending reminders are cancelled and the lead gets
  an offer to reschedule.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from pydantic import BaseModel

from src.errors import ProviderError
from src.models import (
    Booking,
    BookingStatus,
    Conversation,
    ConversationStatus,
    Lead,
    LeadStatus,
    Message,
    MessageDirection,
    Organization,
    utc_now,
)
from src.services.reminders import ReminderScheduler
from src.services.store import Store
from src.services.whatsapp import WhatsAppClient

logger = logging.getLogger(__name__)

FOLLOW_UP_AFTER = timedelta(hours=24)
NO_SHOW_GRACE = timedelta(minutes=30)
MAX_UNANSWERED_FOLLOW_UPS = 3
FOLLOW_UP_STATUSES = (LeadStatus.NEW, LeadStatus.CONTACTED)

FOLLOW_UP_TEMPLATES = [
    """Hi {name}! 👋

I wanted to follow up on your interest in {organization}.

Are you still looking to get started? I'd love to help answer any questions you might have!""",
    """Hey {name}!

I know how busy life can get, but I didn't want you to miss out.

{organization} has helped lots of people just like you. Would you like to chat about your goals?""",
    """Hi {name},

Just checking in one more time!

If you're ready to take the first step, I'm here to help. What do you say?""",
]

NO_SHOW_TEMPLATE = """Hi {name},

I noticed you weren't able to make your consultation today. No worries, life happens!

I'd love to reschedule when it's more convenient for you. Just let me know what day and time works better."""


class FollowUpResult(BaseModel):
    follow_ups_sent: int = 0
    no_shows: int = 0
    failed: int = 0


class FollowUpService:
    def __init__(
        self,
        store: Store,
        messaging: WhatsAppClient,
        reminders: ReminderScheduler,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._messaging = messaging
        self._reminders = reminders
        self._clock = clock

    def run(self, now: datetime | None = None) -> FollowUpResult:
        now = now or self._clock()
        result = self.process_lead_follow_ups(now)
        no_shows = self.process_no_shows(now)
        result.no_shows = no_shows.no_shows
        result.failed += no_shows.failed
        return result

    # ── Lead nudges ──────────────────────────────────────────────────

    def process_lead_follow_ups(self, now: datetime | None = None) -> FollowUpResult:
        now = now or self._clock()
        result = FollowUpResult()
        rows = self._store.select(
            "conversations",
            filters={
                "status": ConversationStatus.ACTIVE,
                "last_message_at__lt": now - FOLLOW_UP_AFTER,
            },
        )
        for conversation in (Conversation.model_validate(r) for r in rows):
            lead_row = self._store.select_one(
                "leads",
                filters={"id": conversation.lead_id, "organization_id": conversation.organization_id},
            )
            if lead_row is None:
                continue
            lead = Lead.model_validate(lead_row)
            if lead.status not in FOLLOW_UP_STATUSES:
                continue

            unanswered = self._unanswered_outbound(conversation.id)
            if unanswered is None or unanswered > MAX_UNANSWERED_FOLLOW_UPS:
                continue
            # The greeting is the first unanswered message; nudges come after it
            nudge_index = unanswered - 1
            if nudge_index >= len(FOLLOW_UP_TEMPLATES):
                continue

            organization = self._organization(lead.organization_id)
            text = FOLLOW_UP_TEMPLATES[nudge_index].format(
                name=lead.name, organization=organization.name if organization else "us",
            )
            if self._send_and_log(lead, conversation.id, text, now):
                result.follow_ups_sent += 1
            else:
                result.failed += 1
        logger.info("Lead follow-ups: %d sent, %d failed", result.follow_ups_sent, result.failed)
        return result

    def _unanswered_outbound(self, conversation_id: str) -> int | None:
        """Outbound messages since the lead last wrote, or None if the lead spoke last."""
        rows = self._store.select(
            "messages",
            filters={"conversation_id": conversation_id},
            order_by="created_at",
            descending=True,
        )
        count = 0
        for message in (Message.model_validate(r) for r in rows):
            if message.direction is MessageDirection.INBOUND:
                break
            count += 1
        return count or None

    # ── No-shows ─────────────────────────────────────────────────────

    def process_no_shows(self, now: datetime | None = None) -> FollowUpResult:
        now = now or self._clock()
        result = FollowUpResult()
        rows = self._store.select(
            "bookings",
            filters={"status": BookingStatus.SCHEDULED, "scheduled_at__lte": now - NO_SHOW_GRACE},
        )
        for booking in (Booking.model_validate(r) for r in rows):
            updated = self._store.update(
                "bookings",
                {"status": BookingStatus.NO_SHOW},
                filters={"id": booking.id, "status": BookingStatus.SCHEDULED},
            )
            if not updated:
                continue
            result.no_shows += 1
            self._reminders.cancel_booking_reminders(booking.id)

            lead_row = self._store.select_one("leads", filters={"id": booking.lead_id})
            if lead_row is None:
                continue
            lead = Lead.model_validate(lead_row)
            conversation = self._store.select_one(
                "conversations",
                filters={"lead_id": lead.id, "status": ConversationStatus.ACTIVE},
            )
            text = NO_SHOW_TEMPLATE.format(name=lead.name)
            if not self._send_and_log(lead, conversation["id"] if conversation else None, text, now):
                result.failed += 1
        logger.info("No-show sweep: %d bookings marked no_show", result.no_shows)
        return result

    # ── Helpers ──────────────────────────────────────────────────────

    def _organization(self, organization_id: str) -> Organization | None:
        row = self._store.select_one("organizations", filters={"id": organization_id})
        return Organization.model_validate(row) if row else None

    def _send_and_log(
        self, lead: Lead, conversation_id: str | None, text: str, now: datetime,
    ) -> bool:
        try:
            sent = self._messaging.send_message(lead.phone, text)
        except ProviderError:
            logger.exception("Follow-up to lead %s failed", lead.id)
            return False

        if conversation_id:
            self._store.insert(
                "messages",
                {
                    "conversation_id": conversation_id,
                    "direction": MessageDirection.OUTBOUND,
                    "content": text,
                    "provider_message_id": sent.message_id,
                    "created_at": now,
                },
            )
            self._store.update(
                "conversations", {"last_message_at": now}, filters={"id": conversation_id},
            )
        logger.info("Follow-up sent to lead %s", lead.id)
        return True
