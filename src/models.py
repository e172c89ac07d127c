"""Validated record types for everything the agent reads from or writes to
the relational store.

Store rows are plain dicts; they are turned into these models with
``Model.model_validate(row)`` at each component boundary so that schema
drift fails loudly instead of surfacing as a broken prompt string.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(UTC)


# ── Enumerations ─────────────────────────────────────────────────────


class LeadStatus(str, Enum):
    NEW = "new"
    CONTACTED = "contacted"
    QUALIFIED = "qualified"
    BOOKED = "booked"
    COMPLETED = "completed"
    LOST = "lost"


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    PAUSED = "paused"


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class TrainingDataType(str, Enum):
    SALES_SCRIPT = "sales_script"
    OBJECTION_HANDLING = "objection_handling"
    QUALIFICATION_CRITERIA = "qualification_criteria"
    SOP = "sop"
    BUSINESS_INFO = "business_info"


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class BookingStatus(str, Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    NO_SHOW = "no_show"
    CANCELLED = "cancelled"


class ReminderType(str, Enum):
    CONFIRMATION = "confirmation"
    ONE_HOUR_BEFORE = "one_hour_before"
    OWNER_NOTIFICATION = "owner_notification"


class ReminderStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Lead status only moves forward along this order; ``lost`` sits outside it.
LEAD_STATUS_ORDER: list[LeadStatus] = [
    LeadStatus.NEW,
    LeadStatus.CONTACTED,
    LeadStatus.QUALIFIED,
    LeadStatus.BOOKED,
    LeadStatus.COMPLETED,
]

BOOKING_TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.SCHEDULED: {
        BookingStatus.COMPLETED,
        BookingStatus.NO_SHOW,
        BookingStatus.CANCELLED,
    },
    BookingStatus.COMPLETED: set(),
    BookingStatus.NO_SHOW: set(),
    BookingStatus.CANCELLED: set(),
}


# ── Records ──────────────────────────────────────────────────────────


class _Record(BaseModel):
    # Store rows carry extra columns (timestamps, provider ids) we don't model.
    model_config = ConfigDict(extra="ignore", use_enum_values=False)


class Organization(_Record):
    id: str
    name: str
    owner_phone: str | None = None
    timezone: str | None = None
    settings: dict[str, Any] = Field(default_factory=dict)


class Lead(_Record):
    id: str
    organization_id: str
    name: str
    phone: str
    email: str | None = None
    status: LeadStatus = LeadStatus.NEW
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


class Conversation(_Record):
    id: str
    lead_id: str
    organization_id: str
    status: ConversationStatus = ConversationStatus.ACTIVE
    last_message_at: datetime | None = None


class Message(_Record):
    id: str
    conversation_id: str
    direction: MessageDirection
    content: str
    created_at: datetime
    provider_message_id: str | None = None


class TrainingData(_Record):
    id: str
    organization_id: str
    data_type: TrainingDataType
    content: str
    is_active: bool = True
    version: int = 1


class KnowledgeEntry(_Record):
    id: str
    organization_id: str
    type: str
    content: str
    created_at: datetime | None = None


class CallTranscript(_Record):
    id: str
    organization_id: str
    raw_transcript: str
    sentiment: Sentiment | None = None
    sales_insights: dict[str, Any] | None = None
    created_at: datetime

    @property
    def analysis(self) -> str | None:
        if not self.sales_insights:
            return None
        return self.sales_insights.get("analysis") or None


class Booking(_Record):
    id: str
    lead_id: str
    organization_id: str
    scheduled_at: datetime
    duration_minutes: int = 30
    status: BookingStatus = BookingStatus.SCHEDULED
    google_calendar_event_id: str | None = None
    google_meet_link: str | None = None
    reminder_sent: bool = False


class Reminder(_Record):
    id: str
    booking_id: str
    reminder_type: ReminderType
    scheduled_at: datetime
    recipient_phone: str
    message_template: str
    status: ReminderStatus = ReminderStatus.PENDING
    sent_at: datetime | None = None
    error_message: str | None = None
    provider_message_id: str | None = None


class LeadSource(_Record):
    id: str
    organization_id: str
    source_type: str = "facebook"
    webhook_token: str
    is_active: bool = True


# ── Assembled context ────────────────────────────────────────────────


class ConversationContext(BaseModel):
    """Everything the prompt builder needs for one reply.

    ``messages`` is oldest → newest and never longer than the history
    limit; ``call_transcripts`` is already in sentiment-rank order.
    """

    lead: Lead
    organization: Organization
    conversation: Conversation | None = None
    messages: list[Message] = Field(default_factory=list)
    training_data: list[TrainingData] = Field(default_factory=list)
    knowledge: list[KnowledgeEntry] = Field(default_factory=list)
    call_transcripts: list[CallTranscript] = Field(default_factory=list)

    @property
    def conversation_id(self) -> str:
        return self.conversation.id if self.conversation else f"lead:{self.lead.id}"
