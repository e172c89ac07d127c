"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from src.models import BookingStatus
from src.services.cost_ledger import CostReport


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "lead-conversion-agent"


class ReplyRequest(BaseModel):
    """A message typed on the lead's behalf from the dashboard test chat."""

    message: str = Field(..., min_length=1, max_length=2000, description="The lead's message")
    deliver: bool = Field(
        False, description="Also send the reply to the lead over WhatsApp",
    )


class PromptVariantPreview(BaseModel):
    text: str
    chars: int
    estimated_tokens: int
    truncated: bool
    has_call_insights: bool
    warnings: list[str] = Field(default_factory=list)


class PromptPreviewResponse(BaseModel):
    organization_id: str
    lead_id: str
    full: PromptVariantPreview
    optimized: PromptVariantPreview
    savings_percent: float = Field(..., description="Optimized size saving relative to full")


class CancelBookingResponse(BaseModel):
    booking_id: str
    status: BookingStatus


class LeadIngestResponse(BaseModel):
    status: str = "ok"
    lead_id: str | None = None


class CostTargets(BaseModel):
    target_cost_per_message: float
    within_target: bool
    percent_of_target: float


class CostMonitorResponse(BaseModel):
    timestamp: datetime
    costs: CostReport
    targets: CostTargets
    recommendations: list[str]


class CostAlertResponse(BaseModel):
    alerts: list[str]
    costs: CostReport
