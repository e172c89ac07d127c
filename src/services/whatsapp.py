"""WhatsApp messaging over Twilio.

Outbound sends go through the Twilio REST client; inbound messages arrive
as Twilio's form-encoded webhook payload and are parsed into an
``InboundMessage``.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Mapping

from pydantic import BaseModel
import requests
from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.request_validator import RequestValidator
from twilio.rest import Client

from src.config import TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN, TWILIO_WHATSAPP_NUMBER
from src.errors import MessagingError, RequestValidationError
from src.services.metrics import metrics

logger = logging.getLogger(__name__)

WHATSAPP_PREFIX = "whatsapp:"
_NON_DIGITS = re.compile(r"\D")


class SentMessage(BaseModel):
    message_id: str


class InboundMessage(BaseModel):
    sender: str
    body: str
    provider_message_id: str | None = None


def format_phone_number(phone: str) -> str:
    """Normalize to E.164.

    Numbers already carrying ``+`` keep their country code; bare 10-digit
    numbers are assumed to be North American.
    """
    raw = phone.strip().removeprefix(WHATSAPP_PREFIX)
    digits = _NON_DIGITS.sub("", raw)
    if raw.startswith("00"):
        return f"+{digits[2:]}"
    if raw.startswith("+"):
        return f"+{digits}"
    if len(digits) == 10:
        return f"+1{digits}"
    return f"+{digits}"


def is_valid_phone_number(phone: str) -> bool:
    digits = _NON_DIGITS.sub("", phone)
    return 10 <= len(digits) <= 15


def parse_inbound(form: Mapping[str, str]) -> InboundMessage:
    """Parse a Twilio inbound-message webhook (``From``, ``Body``, ``MessageSid``)."""
    missing = [key for key in ("From", "Body") if not form.get(key)]
    if missing:
        raise RequestValidationError("Missing fields in WhatsApp webhook", fields=missing)
    return InboundMessage(
        sender=format_phone_number(form["From"]),
        body=form["Body"].strip(),
        provider_message_id=form.get("MessageSid"),
    )


class WhatsAppClient:
    def __init__(
        self,
        account_sid: str | None = None,
        auth_token: str | None = None,
        from_number: str | None = None,
        *,
        client: Client | None = None,
    ) -> None:
        self._auth_token = auth_token or TWILIO_AUTH_TOKEN
        self._from_number = from_number or TWILIO_WHATSAPP_NUMBER
        self._account_sid = account_sid or TWILIO_ACCOUNT_SID
        self._client = client  # lazy-init

    def _get_client(self) -> Client:
        if self._client is None:
            if not (self._account_sid and self._auth_token):
                raise MessagingError("Twilio credentials are not configured")
            self._client = Client(self._account_sid, self._auth_token)
        return self._client

    def send_message(self, phone: str, text: str) -> SentMessage:
        """Send *text* to *phone* over WhatsApp. Raises ``MessagingError``."""
        if not self._from_number:
            raise MessagingError("TWILIO_WHATSAPP_NUMBER is not configured")

        to = f"{WHATSAPP_PREFIX}{format_phone_number(phone)}"
        t0 = time.perf_counter()
        try:
            message = self._get_client().messages.create(
                body=text,
                from_=f"{WHATSAPP_PREFIX}{format_phone_number(self._from_number)}",
                to=to,
            )
        except TwilioRestException as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure("twilio", "send_whatsapp", str(exc.status), elapsed)
            raise MessagingError(f"Twilio send failed: {exc.msg}", status_code=exc.status) from exc
        except (TwilioException, requests.RequestException) as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure("twilio", "send_whatsapp", type(exc).__name__, elapsed)
            raise MessagingError(f"Twilio send failed: {exc}") from exc

        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_success("twilio", "send_whatsapp", latency_ms=elapsed)
        logger.info("WhatsApp message %s sent to %s", message.sid, to)
        return SentMessage(message_id=message.sid)

    def validate_signature(self, url: str, params: Mapping[str, str], signature: str) -> bool:
        if not self._auth_token:
            logger.error("TWILIO_AUTH_TOKEN not configured; cannot validate signature")
            return False
        return RequestValidator(self._auth_token).validate(url, dict(params), signature)
