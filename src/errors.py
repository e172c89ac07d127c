"""Exception taxonomy shared by every component.

``NotFoundError``, ``RequestValidationError`` and ``WebhookAuthError`` are
surfaced to API callers as 4xx responses.  ``ProviderError`` (and its
subclasses) wrap failures of the messaging, LLM, calendar and storage
providers.  ``DateTimeParseError`` and ``UnavailableSlotError`` are
booking-flow failures that the orchestrator turns into a polite reply
instead of raising to the lead.
"""

from __future__ import annotations

from typing import Any


class LeadAgentError(Exception):
    """Base class for all errors raised by this package."""

    error_code = "internal_error"

    def to_detail(self) -> dict[str, Any]:
        """Structured ``detail`` payload for HTTP error responses."""
        return {"error": self.error_code, "message": str(self)}


class NotFoundError(LeadAgentError):
    """A referenced lead, organization, conversation or booking is absent."""

    error_code = "not_found"

    def __init__(self, resource: str, identifier: str):
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} {identifier!r} not found")

    def to_detail(self) -> dict[str, Any]:
        return {
            "error": self.error_code,
            "resource": self.resource,
            "id": self.identifier,
            "message": str(self),
        }


class RequestValidationError(LeadAgentError):
    """Required webhook or API fields are missing or malformed."""

    error_code = "validation_error"

    def __init__(self, message: str, fields: list[str] | None = None):
        self.fields = fields or []
        super().__init__(message)

    def to_detail(self) -> dict[str, Any]:
        return {"error": self.error_code, "message": str(self), "fields": self.fields}


class ProviderError(LeadAgentError):
    """An external provider call failed or returned a non-success status."""

    error_code = "provider_error"

    def __init__(self, provider: str, message: str, status_code: int | None = None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(message)


class LLMError(ProviderError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__("anthropic", message, status_code)


class MessagingError(ProviderError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__("twilio", message, status_code)


class CalendarAPIError(ProviderError):
    """Raised when a Google Calendar API call fails."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__("google_calendar", message, status_code)


class CalendarAuthError(CalendarAPIError):
    """Calendar credentials are missing, expired or revoked."""


class StoreError(ProviderError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__("supabase", message, status_code)


class DateTimeParseError(LeadAgentError):
    """A requested booking time could not be resolved without guessing."""

    error_code = "parse_error"


class UnavailableSlotError(LeadAgentError):
    """The calendar already has something in the requested interval."""

    error_code = "unavailable_slot"


class BookingStateError(LeadAgentError):
    """A booking status transition would move the booking backwards."""

    error_code = "invalid_transition"


class WebhookAuthError(LeadAgentError):
    """A webhook presented an unknown or inactive token, or a bad signature."""

    error_code = "unauthorized"
