"""Assemble the per-reply ``ConversationContext``.

Everything is read-only and scoped by ``organization_id``.  Call transcripts
are fetched one sentiment tier at a time so an older positive call is never
crowded out of the window by a burst of recent negative ones.
"""

from __future__ import annotations

import logging

from src.config import CALL_TRANSCRIPT_LIMIT, HISTORY_MESSAGE_LIMIT
from src.errors import NotFoundError
from src.models import (
    CallTranscript,
    Conversation,
    ConversationContext,
    ConversationStatus,
    Lead,
    Message,
    Organization,
    Sentiment,
)
from src.services.insights import rank_call_transcripts
from src.services.knowledge import DEFAULT_KNOWLEDGE_LIMIT, KnowledgeRepository
from src.services.store import Store

logger = logging.getLogger(__name__)

_SENTIMENT_TIERS = [Sentiment.POSITIVE, Sentiment.NEUTRAL, Sentiment.NEGATIVE]


class ContextAssembler:
    def __init__(
        self,
        store: Store,
        knowledge: KnowledgeRepository | None = None,
        *,
        history_limit: int = HISTORY_MESSAGE_LIMIT,
        transcript_limit: int = CALL_TRANSCRIPT_LIMIT,
    ) -> None:
        self._store = store
        self._knowledge = knowledge or KnowledgeRepository(store)
        self._history_limit = history_limit
        self._transcript_limit = transcript_limit

    def assemble(
        self,
        organization_id: str,
        lead_id: str,
        inbound_message: str | None = None,
    ) -> ConversationContext:
        """Gather lead, organization, history and training material.

        Raises ``NotFoundError`` when the lead or organization is missing;
        a partial context is never returned.
        """
        lead = self.get_lead(organization_id, lead_id)
        organization = self.get_organization(organization_id)
        conversation = self.get_active_conversation(organization_id, lead_id)
        messages = self.get_recent_messages(conversation.id) if conversation else []

        if inbound_message:
            knowledge = self._knowledge.get_relevant_knowledge(organization_id, inbound_message)
        else:
            knowledge = self._knowledge.get_knowledge_entries(
                organization_id, limit=DEFAULT_KNOWLEDGE_LIMIT,
            )

        context = ConversationContext(
            lead=lead,
            organization=organization,
            conversation=conversation,
            messages=messages,
            training_data=self._knowledge.get_active_training_data(organization_id),
            knowledge=knowledge,
            call_transcripts=self.get_ranked_transcripts(organization_id),
        )
        logger.debug(
            "Context for lead %s: %d messages, %d training, %d knowledge, %d transcripts",
            lead_id,
            len(context.messages),
            len(context.training_data),
            len(context.knowledge),
            len(context.call_transcripts),
        )
        return context

    # ── Individual lookups ───────────────────────────────────────────

    def get_lead(self, organization_id: str, lead_id: str) -> Lead:
        row = self._store.select_one(
            "leads", filters={"id": lead_id, "organization_id": organization_id},
        )
        if row is None:
            raise NotFoundError("lead", lead_id)
        return Lead.model_validate(row)

    def get_organization(self, organization_id: str) -> Organization:
        row = self._store.select_one("organizations", filters={"id": organization_id})
        if row is None:
            raise NotFoundError("organization", organization_id)
        return Organization.model_validate(row)

    def get_active_conversation(self, organization_id: str, lead_id: str) -> Conversation | None:
        rows = self._store.select(
            "conversations",
            filters={
                "organization_id": organization_id,
                "lead_id": lead_id,
                "status": ConversationStatus.ACTIVE,
            },
            order_by="created_at",
            descending=True,
            limit=1,
        )
        return Conversation.model_validate(rows[0]) if rows else None

    def get_recent_messages(self, conversation_id: str) -> list[Message]:
        """Last ``history_limit`` messages, oldest → newest."""
        rows = self._store.select(
            "messages",
            filters={"conversation_id": conversation_id},
            order_by="created_at",
            descending=True,
            limit=self._history_limit,
        )
        return [Message.model_validate(r) for r in reversed(rows)]

    def get_ranked_transcripts(self, organization_id: str) -> list[CallTranscript]:
        collected: list[CallTranscript] = []
        for sentiment in _SENTIMENT_TIERS:
            remaining = self._transcript_limit - len(collected)
            if remaining <= 0:
                break
            rows = self._store.select(
                "call_transcripts",
                filters={"organization_id": organization_id, "sentiment": sentiment},
                order_by="created_at",
                descending=True,
                limit=remaining,
            )
            collected.extend(CallTranscript.model_validate(r) for r in rows)
        return rank_call_transcripts(collected)
