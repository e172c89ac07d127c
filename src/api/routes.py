"""FastAPI route definitions for the lead-conversion agent API."""

from __future__ import annotations

import asyncio
import hmac
import logging

from fastapi import APIRouter, HTTPException, Request, Response
from fastapi.responses import PlainTextResponse

from src.agent import AgentReply, LeadAgent
from src.api.schemas import (
    CancelBookingResponse,
    CostAlertResponse,
    CostMonitorResponse,
    CostTargets,
    HealthResponse,
    LeadIngestResponse,
    PromptPreviewResponse,
    PromptVariantPreview,
    ReplyRequest,
)
from src.config import COST_ALERT_AVERAGE_USD, CRON_SECRET, TWILIO_VALIDATE_SIGNATURE
from src.errors import (
    BookingStateError,
    LeadAgentError,
    NotFoundError,
    ProviderError,
    RequestValidationError,
    WebhookAuthError,
)
from src.models import utc_now
from src.prompts import RenderedPrompt
from src.services.cost_ledger import recommendations
from src.services.follow_ups import FollowUpResult
from src.services.leads import (
    GHL_CONTACT_EVENTS,
    parse_facebook_lead,
    parse_ghl_contact,
    verify_webhook_token,
)
from src.services.reminders import SweepResult
from src.services.whatsapp import parse_inbound

logger = logging.getLogger(__name__)

router = APIRouter()

EMPTY_TWIML = "<?xml version=\"1.0\" encoding=\"UTF-8\"?><Response></Response>"

_STATUS_BY_ERROR: list[tuple[type[LeadAgentError], int]] = [
    (NotFoundError, 404),
    (RequestValidationError, 400),
    (WebhookAuthError, 401),
    (BookingStateError, 409),
    (ProviderError, 502),
]


def _get_agent(request: Request) -> LeadAgent:
    """Retrieve the lead agent from app state (set up in the lifespan)."""
    agent = getattr(request.app.state, "agent", None)
    if agent is None:
        raise HTTPException(
            status_code=503,
            detail="The agent is still starting up. Please try again in a moment.",
        )
    return agent


def _to_http(exc: LeadAgentError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=exc.to_detail())
    return HTTPException(status_code=500, detail=exc.to_detail())


def _require_cron_secret(request: Request) -> None:
    header = request.headers.get("Authorization", "")
    if not CRON_SECRET or not hmac.compare_digest(header, f"Bearer {CRON_SECRET}"):
        raise HTTPException(status_code=401, detail="Unauthorized")


# ── Health ───────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


# ── Inbound WhatsApp (Twilio) ────────────────────────────────────────


@router.post("/webhooks/whatsapp")
async def whatsapp_webhook(http_request: Request):
    """Answer an inbound WhatsApp message.

    Twilio retries on any non-2xx, so once the payload is accepted the
    route always returns an empty TwiML document.  The reply itself is sent
    through the REST API by the agent.
    """
    agent = _get_agent(http_request)
    request_id = getattr(http_request.state, "request_id", "?")
    form = {key: str(value) for key, value in (await http_request.form()).items()}

    if TWILIO_VALIDATE_SIGNATURE:
        signature = http_request.headers.get("X-Twilio-Signature", "")
        if not agent.messaging.validate_signature(str(http_request.url), form, signature):
            logger.warning("[%s] Rejected WhatsApp webhook with bad signature", request_id)
            raise HTTPException(status_code=403, detail="Invalid signature")

    try:
        inbound = parse_inbound(form)
    except RequestValidationError as exc:
        raise _to_http(exc) from exc

    try:
        await asyncio.to_thread(agent.handle_inbound_message, inbound)
    except LeadAgentError:
        logger.exception("[%s] Inbound message from %s not processed", request_id, inbound.sender)
    except Exception as e:
        logger.exception("[%s] Error processing inbound WhatsApp message", request_id)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e
    return Response(content=EMPTY_TWIML, media_type="text/xml")


# ── Lead ingestion webhooks ──────────────────────────────────────────


@router.get("/webhooks/facebook/{token}")
async def facebook_verify(token: str, http_request: Request):
    """Facebook subscription handshake: echo ``hub.challenge`` for our token."""
    agent = _get_agent(http_request)
    params = http_request.query_params
    if params.get("hub.mode") != "subscribe" or params.get("hub.verify_token") != token:
        raise HTTPException(status_code=403, detail="Forbidden")
    try:
        await asyncio.to_thread(verify_webhook_token, agent.store, token)
    except WebhookAuthError as exc:
        raise HTTPException(status_code=403, detail="Forbidden") from exc
    return PlainTextResponse(params.get("hub.challenge", ""))


@router.post("/webhooks/facebook/{token}", response_model=LeadIngestResponse)
async def facebook_lead(token: str, http_request: Request):
    agent = _get_agent(http_request)
    payload = await http_request.json()
    try:
        source = await asyncio.to_thread(verify_webhook_token, agent.store, token)
        lead_input = parse_facebook_lead(payload)
        lead = await asyncio.to_thread(agent.ingestion.ingest, source, lead_input)
    except LeadAgentError as exc:
        raise _to_http(exc) from exc
    return LeadIngestResponse(lead_id=lead.id)


@router.post("/webhooks/ghl/{token}", response_model=LeadIngestResponse)
async def ghl_contact(token: str, http_request: Request):
    agent = _get_agent(http_request)
    payload = await http_request.json()
    try:
        source = await asyncio.to_thread(verify_webhook_token, agent.store, token)
        event_type = payload.get("type") or payload.get("event_type")
        if event_type not in GHL_CONTACT_EVENTS:
            logger.info("Ignoring GoHighLevel event %r", event_type)
            return LeadIngestResponse(status="ignored")
        lead_input = parse_ghl_contact(payload)
        lead = await asyncio.to_thread(agent.ingestion.ingest, source, lead_input)
    except LeadAgentError as exc:
        raise _to_http(exc) from exc
    return LeadIngestResponse(lead_id=lead.id)


# ── Dashboard ────────────────────────────────────────────────────────


@router.post(
    "/conversations/{organization_id}/{lead_id}/reply", response_model=AgentReply,
)
async def reply(organization_id: str, lead_id: str, request: ReplyRequest, http_request: Request):
    """Run the reply pipeline for one lead and return the agent's answer.

    ``agent.reply_to_lead()`` blocks on the Anthropic API, so it runs on
    the default thread-pool via ``asyncio.to_thread``.
    """
    agent = _get_agent(http_request)
    try:
        return await asyncio.to_thread(
            agent.reply_to_lead, organization_id, lead_id, request.message, deliver=request.deliver,
        )
    except LeadAgentError as exc:
        raise _to_http(exc) from exc


def _preview(prompt: RenderedPrompt) -> PromptVariantPreview:
    return PromptVariantPreview(
        text=prompt.text,
        chars=len(prompt.text),
        estimated_tokens=prompt.estimated_tokens,
        truncated=prompt.truncated,
        has_call_insights=prompt.has_call_insights,
        warnings=prompt.warnings,
    )


@router.get(
    "/organizations/{organization_id}/leads/{lead_id}/prompt-preview",
    response_model=PromptPreviewResponse,
)
async def prompt_preview(organization_id: str, lead_id: str, http_request: Request):
    """Both system-prompt variants for a lead, side by side."""
    agent = _get_agent(http_request)
    try:
        prompts = await asyncio.to_thread(agent.prompt_preview, organization_id, lead_id)
    except LeadAgentError as exc:
        raise _to_http(exc) from exc

    full, optimized = _preview(prompts["full"]), _preview(prompts["optimized"])
    savings = 100 * (1 - optimized.chars / full.chars) if full.chars else 0.0
    return PromptPreviewResponse(
        organization_id=organization_id,
        lead_id=lead_id,
        full=full,
        optimized=optimized,
        savings_percent=round(savings, 1),
    )


@router.post(
    "/organizations/{organization_id}/bookings/{booking_id}/cancel",
    response_model=CancelBookingResponse,
)
async def cancel_booking(organization_id: str, booking_id: str, http_request: Request):
    agent = _get_agent(http_request)
    try:
        booking = await asyncio.to_thread(
            agent.orchestrator.cancel_booking, organization_id, booking_id,
        )
    except LeadAgentError as exc:
        raise _to_http(exc) from exc
    return CancelBookingResponse(booking_id=booking.id, status=booking.status)


# ── Cron sweeps ──────────────────────────────────────────────────────


@router.post("/cron/reminders", response_model=SweepResult)
async def sweep_reminders(http_request: Request):
    _require_cron_secret(http_request)
    agent = _get_agent(http_request)
    return await asyncio.to_thread(agent.reminders.process_due_reminders)


@router.post("/cron/follow-ups", response_model=FollowUpResult)
async def sweep_follow_ups(http_request: Request):
    _require_cron_secret(http_request)
    agent = _get_agent(http_request)
    return await asyncio.to_thread(agent.follow_ups.run)


# ── Cost monitor ─────────────────────────────────────────────────────


@router.get("/cost-monitor", response_model=CostMonitorResponse)
async def cost_monitor(http_request: Request):
    agent = _get_agent(http_request)
    report = agent.ledger.report()
    return CostMonitorResponse(
        timestamp=utc_now(),
        costs=report,
        targets=CostTargets(
            target_cost_per_message=COST_ALERT_AVERAGE_USD,
            within_target=report.average_cost_per_call <= COST_ALERT_AVERAGE_USD,
            percent_of_target=round(report.average_cost_per_call / COST_ALERT_AVERAGE_USD * 100, 1),
        ),
        recommendations=recommendations(report),
    )


@router.post("/cost-monitor/alerts", response_model=CostAlertResponse)
async def cost_alerts(http_request: Request):
    agent = _get_agent(http_request)
    alerts = agent.ledger.check_alerts()
    return CostAlertResponse(alerts=alerts, costs=agent.ledger.report())
