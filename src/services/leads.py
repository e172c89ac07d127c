"""Lead ingestion from ad-platform webhooks and lead-status bookkeeping.

Facebook Lead Ads and GoHighLevel post new contacts to a per-source URL
carrying a static webhook token.  The token is compared against
``lead_sources.webhook_token``; neither platform's payload signature is
verified.
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from src.errors import MessagingError, RequestValidationError, WebhookAuthError
from src.models import (
    LEAD_STATUS_ORDER,
    ConversationStatus,
    Lead,
    LeadSource,
    LeadStatus,
    MessageDirection,
    Organization,
    utc_now,
)
from src.services.store import Store
from src.services.whatsapp import WhatsAppClient, format_phone_number, is_valid_phone_number

logger = logging.getLogger(__name__)

GHL_CONTACT_EVENTS = {"ContactCreate", "contact.created"}

GREETING_TEMPLATE = """Hi {name}! 👋

Thanks for your interest in {organization}! I'm here to help you get started.

I'd love to learn a bit more about what you're looking for. What's your main goal right now?"""


class LeadInput(BaseModel):
    name: str
    phone: str
    email: str | None = None
    external_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


# ── Lead status ──────────────────────────────────────────────────────


def advance_lead_status(store: Store, lead: Lead, target: LeadStatus) -> Lead:
    """Move *lead* forward to *target*; never backwards and never out of ``lost``.

    The decision is made against the stored status, not the status on the
    (possibly stale) *lead* passed in.
    """
    scope = {"id": lead.id, "organization_id": lead.organization_id}
    current = store.select_one("leads", filters=scope)
    if current is not None:
        lead = Lead.model_validate(current)
    if lead.status is LeadStatus.LOST or target is LeadStatus.LOST:
        return lead
    if LEAD_STATUS_ORDER.index(target) <= LEAD_STATUS_ORDER.index(lead.status):
        return lead

    rows = store.update("leads", {"status": target}, filters=scope)
    logger.info("Lead %s status %s → %s", lead.id, lead.status.value, target.value)
    return Lead.model_validate(rows[0]) if rows else lead.model_copy(update={"status": target})


# ── Webhook parsing ──────────────────────────────────────────────────


def verify_webhook_token(store: Store, token: str) -> LeadSource:
    """Return the active lead source owning *token* or raise ``WebhookAuthError``."""
    row = store.select_one("lead_sources", filters={"webhook_token": token, "is_active": True})
    if row is None or not hmac.compare_digest(str(row["webhook_token"]), token):
        raise WebhookAuthError("Invalid webhook token")
    return LeadSource.model_validate(row)


def _require(name: str, phone: str) -> None:
    missing = [field for field, value in (("name", name), ("phone", phone)) if not value]
    if missing:
        raise RequestValidationError("Missing required lead data", fields=missing)
    if not is_valid_phone_number(phone):
        raise RequestValidationError(f"Invalid phone number {phone!r}", fields=["phone"])


def parse_facebook_lead(payload: dict[str, Any]) -> LeadInput:
    """Extract a lead from a Facebook ``leadgen`` change notification."""
    try:
        leadgen = payload["entry"][0]["changes"][0]["value"]
    except (KeyError, IndexError, TypeError) as exc:
        raise RequestValidationError("No lead data found", fields=["entry"]) from exc

    fields: dict[str, str] = {}
    for field in leadgen.get("field_data", []):
        values = field.get("values") or [""]
        fields[field.get("name", "").lower()] = values[0]

    name = fields.get("full_name") or fields.get("name") or ""
    phone = fields.get("phone_number") or fields.get("phone") or ""
    _require(name, phone)
    return LeadInput(
        name=name,
        phone=format_phone_number(phone),
        email=fields.get("email") or None,
        external_id=leadgen.get("leadgen_id"),
        metadata={"facebook_data": leadgen, "original_phone": phone},
    )


def parse_ghl_contact(payload: dict[str, Any]) -> LeadInput:
    """Extract a lead from a GoHighLevel contact-created webhook."""
    contact = payload.get("contact") or payload
    name = (
        f"{contact.get('firstName') or ''} {contact.get('lastName') or ''}".strip()
        or contact.get("name")
        or ""
    )
    phone = contact.get("phone") or ""
    _require(name, phone)
    return LeadInput(
        name=name,
        phone=format_phone_number(phone),
        email=contact.get("email") or None,
        external_id=contact.get("id"),
        metadata={"ghl_data": contact, "imported_from": "ghl_webhook"},
    )


# ── Ingestion ────────────────────────────────────────────────────────


class LeadIngestionService:
    def __init__(
        self,
        store: Store,
        messaging: WhatsAppClient,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._messaging = messaging
        self._clock = clock

    def ingest(self, source: LeadSource, lead_input: LeadInput) -> Lead:
        """Create the lead and its conversation, then send the greeting.

        A lead whose phone is already known to the organization is returned
        as-is.  A failed greeting is logged; the lead is kept either way.
        """
        existing = self._store.select_one(
            "leads",
            filters={"organization_id": source.organization_id, "phone": lead_input.phone},
        )
        if existing:
            logger.info("Lead with phone %s already exists (%s)", lead_input.phone, existing["id"])
            return Lead.model_validate(existing)

        org_row = self._store.select_one("organizations", filters={"id": source.organization_id})
        organization = Organization.model_validate(org_row) if org_row else None

        lead = Lead.model_validate(
            self._store.insert(
                "leads",
                {
                    "organization_id": source.organization_id,
                    "lead_source_id": source.id,
                    "name": lead_input.name,
                    "phone": lead_input.phone,
                    "email": lead_input.email,
                    "external_id": lead_input.external_id,
                    "status": LeadStatus.NEW,
                    "metadata": lead_input.metadata,
                },
            )
        )
        now = self._clock()
        conversation = self._store.insert(
            "conversations",
            {
                "organization_id": source.organization_id,
                "lead_id": lead.id,
                "status": ConversationStatus.ACTIVE,
                "last_message_at": now,
            },
        )
        logger.info("Created lead %s from %s source %s", lead.id, source.source_type, source.id)

        greeting = GREETING_TEMPLATE.format(
            name=lead.name,
            organization=organization.name if organization else "us",
        )
        try:
            sent = self._messaging.send_message(lead.phone, greeting)
        except MessagingError:
            logger.exception("Greeting to new lead %s failed", lead.id)
            return lead

        self._store.insert(
            "messages",
            {
                "conversation_id": conversation["id"],
                "direction": MessageDirection.OUTBOUND,
                "content": greeting,
                "provider_message_id": sent.message_id,
                "created_at": now,
            },
        )
        return advance_lead_status(self._store, lead, LeadStatus.CONTACTED)
