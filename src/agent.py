"""LangGraph pipeline that answers one inbound WhatsApp message.

Architecture:
  A linear LangGraph ``StateGraph`` with one optional branch:

    1. **assemble_context** — lead, organization, last messages, training
                              data, knowledge and ranked call transcripts
    2. **build_prompt**     — cost-optimized system prompt
    3. **complete**         — one Claude call; reply text + intent hints
    4. **book**             — only when the reply talks about booking AND
                              the lead's own message names a day or time

  Routing:
    assemble_context → build_prompt → complete → (booking?) → book → END
                                               → (otherwise) → END

  Conversation memory lives in the store, not in a LangGraph checkpointer:
  every run starts from the persisted message history, and the inbound and
  outbound messages are written back once the graph has finished.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from langgraph.graph import END, StateGraph
from pydantic import BaseModel, Field
from typing_extensions import TypedDict

from src.config import OWNER_NOTIFICATION_PHONE, SUPABASE_SERVICE_KEY, SUPABASE_URL
from src.errors import MessagingError, ProviderError
from src.models import (
    Conversation,
    ConversationContext,
    ConversationStatus,
    Lead,
    LeadStatus,
    MessageDirection,
    utc_now,
)
from src.prompts import RenderedPrompt, build_full_prompt, build_optimized_prompt
from src.services.booking import BookingOrchestrator, BookingOutcome, has_datetime_hint
from src.services.calendar_client import GoogleCalendarClient
from src.services.context import ContextAssembler
from src.services.cost_ledger import CostLedger
from src.services.follow_ups import FollowUpService
from src.services.knowledge import KnowledgeRepository
from src.services.leads import LeadIngestionService, advance_lead_status
from src.services.llm import CompletionInvoker, CompletionResult
from src.services.reminders import ReminderScheduler
from src.services.store import InMemoryStore, Store, SupabaseStore
from src.services.whatsapp import InboundMessage, WhatsAppClient

logger = logging.getLogger(__name__)

APOLOGY_REPLY = (
    "Sorry, I'm having a little trouble right now. "
    "I'll get back to you shortly, or feel free to send your message again in a few minutes."
)


# ── State schema ─────────────────────────────────────────────────────


class ConversationState(TypedDict, total=False):
    """The state that flows through the graph.

    The first three keys are supplied by the caller; every node adds the
    key it owns and never rewrites another node's.
    """

    organization_id: str
    lead_id: str
    inbound_message: str
    context: ConversationContext
    prompt: RenderedPrompt
    completion: CompletionResult
    booking: BookingOutcome
    reply: str


class AgentReply(BaseModel):
    reply: str
    conversation_id: str | None = None
    should_book_call: bool = False
    lead_qualified: bool = False
    suggested_actions: list[str] = Field(default_factory=list)
    booking: BookingOutcome | None = None
    estimated_cost: float = 0.0
    delivered: bool = False
    failed: bool = False


# ── Nodes ────────────────────────────────────────────────────────────


def _make_context_node(assembler: ContextAssembler):
    def assemble_context_node(state: ConversationState) -> dict:
        context = assembler.assemble(
            state["organization_id"], state["lead_id"], state["inbound_message"],
        )
        return {"context": context}

    return assemble_context_node


def build_prompt_node(state: ConversationState) -> dict:
    prompt = build_optimized_prompt(state["context"])
    logger.debug(
        "Prompt for %s: %d chars (~%d tokens)",
        state["context"].conversation_id, len(prompt.text), prompt.estimated_tokens,
    )
    return {"prompt": prompt}


def _make_completion_node(invoker: CompletionInvoker):
    def complete_node(state: ConversationState) -> dict:
        context = state["context"]
        completion = invoker.invoke(
            state["prompt"].text,
            context.messages,
            state["inbound_message"],
            conversation_id=context.conversation_id,
        )
        return {"completion": completion, "reply": completion.reply}

    return complete_node


def _make_booking_node(orchestrator: BookingOrchestrator):
    def book_node(state: ConversationState) -> dict:
        outcome = orchestrator.book(state["context"], state["inbound_message"])
        return {"booking": outcome, "reply": outcome.reply}

    return book_node


# ── Conditional edges ────────────────────────────────────────────────


def should_attempt_booking(state: ConversationState) -> str:
    """Book only when the reply offers it and the lead named a day or time."""
    completion = state["completion"]
    if completion.should_book_call and has_datetime_hint(state["inbound_message"]):
        return "book"
    return END


# ── Graph assembly ───────────────────────────────────────────────────


def create_conversation_graph(
    assembler: ContextAssembler,
    invoker: CompletionInvoker,
    orchestrator: BookingOrchestrator,
):
    """Build and compile the reply graph.

    Invoke with::

        graph.invoke({"organization_id": ..., "lead_id": ..., "inbound_message": ...})
    """
    graph = StateGraph(ConversationState)

    graph.add_node("assemble_context", _make_context_node(assembler))
    graph.add_node("build_prompt", build_prompt_node)
    graph.add_node("complete", _make_completion_node(invoker))
    graph.add_node("book", _make_booking_node(orchestrator))

    graph.set_entry_point("assemble_context")
    graph.add_edge("assemble_context", "build_prompt")
    graph.add_edge("build_prompt", "complete")
    graph.add_conditional_edges("complete", should_attempt_booking, {"book": "book", END: END})
    graph.add_edge("book", END)

    return graph.compile()


# ── Agent facade ─────────────────────────────────────────────────────


class LeadAgent:
    """Everything the HTTP layer and the CLI need, wired to one store."""

    def __init__(
        self,
        store: Store,
        messaging: WhatsAppClient,
        invoker: CompletionInvoker,
        orchestrator: BookingOrchestrator,
        reminders: ReminderScheduler,
        follow_ups: FollowUpService,
        ingestion: LeadIngestionService,
        ledger: CostLedger,
        *,
        assembler: ContextAssembler | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.messaging = messaging
        self.orchestrator = orchestrator
        self.reminders = reminders
        self.follow_ups = follow_ups
        self.ingestion = ingestion
        self.ledger = ledger
        self.knowledge = KnowledgeRepository(store)
        self.assembler = assembler or ContextAssembler(store, self.knowledge)
        self._clock = clock
        self._graph = create_conversation_graph(self.assembler, invoker, orchestrator)

    # ── Inbound WhatsApp ─────────────────────────────────────────────

    def handle_inbound_message(self, inbound: InboundMessage) -> AgentReply | None:
        """Answer one inbound WhatsApp message.

        Returns ``None`` for senders that are not a known lead.  Provider
        failures never escape: the lead gets an apology and the error is
        logged.

        All organizations share one WhatsApp number, so the sender's phone
        is the only key.  When several organizations hold a lead with that
        phone, the most recently created lead answers.
        """
        rows = self.store.select(
            "leads", filters={"phone": inbound.sender}, order_by="created_at", descending=True,
        )
        if not rows:
            logger.warning("Ignoring WhatsApp message from unknown number %s", inbound.sender)
            return None
        if len(rows) > 1:
            logger.warning(
                "Phone %s matches %d leads in organizations %s; answering as lead %s",
                inbound.sender, len(rows), sorted({r["organization_id"] for r in rows}), rows[0]["id"],
            )
        lead = Lead.model_validate(rows[0])
        return self._respond(lead, inbound.body, deliver=True, provider_message_id=inbound.provider_message_id)

    def reply_to_lead(
        self, organization_id: str, lead_id: str, message: str, *, deliver: bool = False,
    ) -> AgentReply:
        """Run the pipeline for a message typed by an operator on the lead's behalf."""
        lead = self.assembler.get_lead(organization_id, lead_id)
        return self._respond(lead, message, deliver=deliver)

    def _respond(
        self,
        lead: Lead,
        text: str,
        *,
        deliver: bool,
        provider_message_id: str | None = None,
    ) -> AgentReply:
        received_at = self._clock()
        conversation = self._get_or_create_conversation(lead, received_at)

        try:
            state = self._graph.invoke(
                {
                    "organization_id": lead.organization_id,
                    "lead_id": lead.id,
                    "inbound_message": text,
                }
            )
        except ProviderError:
            logger.exception("Reply pipeline failed for lead %s", lead.id)
            result = AgentReply(reply=APOLOGY_REPLY, conversation_id=conversation.id, failed=True)
        else:
            completion: CompletionResult = state["completion"]
            result = AgentReply(
                reply=state["reply"],
                conversation_id=conversation.id,
                should_book_call=completion.should_book_call,
                lead_qualified=completion.lead_qualified,
                suggested_actions=completion.suggested_actions,
                booking=state.get("booking"),
                estimated_cost=completion.estimated_cost,
            )

        sent_id = None
        if deliver:
            try:
                sent_id = self.messaging.send_message(lead.phone, result.reply).message_id
                result.delivered = True
            except MessagingError:
                logger.exception("Could not deliver reply to lead %s", lead.id)

        self._log_exchange(conversation, text, provider_message_id, received_at, result.reply, sent_id)
        if not result.failed:
            lead = advance_lead_status(self.store, lead, LeadStatus.CONTACTED)
            if result.lead_qualified:
                advance_lead_status(self.store, lead, LeadStatus.QUALIFIED)
        return result

    def _get_or_create_conversation(self, lead: Lead, now: datetime) -> Conversation:
        existing = self.assembler.get_active_conversation(lead.organization_id, lead.id)
        if existing:
            return existing
        row = self.store.insert(
            "conversations",
            {
                "organization_id": lead.organization_id,
                "lead_id": lead.id,
                "status": ConversationStatus.ACTIVE,
                "last_message_at": now,
            },
        )
        logger.info("Opened conversation %s for lead %s", row["id"], lead.id)
        return Conversation.model_validate(row)

    def _log_exchange(
        self,
        conversation: Conversation,
        inbound: str,
        inbound_id: str | None,
        received_at: datetime,
        reply: str,
        reply_id: str | None,
    ) -> None:
        replied_at = self._clock()
        self.store.insert_many(
            "messages",
            [
                {
                    "conversation_id": conversation.id,
                    "direction": MessageDirection.INBOUND,
                    "content": inbound,
                    "provider_message_id": inbound_id,
                    "created_at": received_at,
                },
                {
                    "conversation_id": conversation.id,
                    "direction": MessageDirection.OUTBOUND,
                    "content": reply,
                    "provider_message_id": reply_id,
                    "created_at": replied_at,
                },
            ],
        )
        self.store.update(
            "conversations", {"last_message_at": replied_at}, filters={"id": conversation.id},
        )

    # ── Debugging ────────────────────────────────────────────────────

    def prompt_preview(self, organization_id: str, lead_id: str) -> dict[str, RenderedPrompt]:
        """Render both prompt variants for the lead without calling the model."""
        context = self.assembler.assemble(organization_id, lead_id)
        return {
            "full": build_full_prompt(context),
            "optimized": build_optimized_prompt(context),
        }


# ── Factory ──────────────────────────────────────────────────────────


def create_lead_agent(
    store: Store | None = None,
    messaging: WhatsAppClient | None = None,
    calendar: GoogleCalendarClient | None = None,
    invoker: CompletionInvoker | None = None,
    ledger: CostLedger | None = None,
    *,
    clock: Callable[[], datetime] = utc_now,
) -> LeadAgent:
    """Wire every service together; any collaborator can be swapped in tests."""
    if store is None:
        if SUPABASE_URL and SUPABASE_SERVICE_KEY:
            store = SupabaseStore(SUPABASE_URL, SUPABASE_SERVICE_KEY)
        else:
            logger.warning("SUPABASE_URL not configured; using an in-memory store")
            store = InMemoryStore()
    messaging = messaging or WhatsAppClient()
    calendar = calendar or GoogleCalendarClient()
    ledger = ledger or CostLedger(clock=clock)
    invoker = invoker or CompletionInvoker(None, ledger)

    reminders = ReminderScheduler(store, messaging, owner_phone=OWNER_NOTIFICATION_PHONE, clock=clock)
    orchestrator = BookingOrchestrator(store, calendar, reminders, clock=clock)
    follow_ups = FollowUpService(store, messaging, reminders, clock=clock)
    ingestion = LeadIngestionService(store, messaging, clock=clock)

    agent = LeadAgent(
        store, messaging, invoker, orchestrator, reminders, follow_ups, ingestion, ledger,
        clock=clock,
    )
    logger.debug("Lead agent ready (store=%s)", type(store).__name__)
    return agent
