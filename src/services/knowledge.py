"""Training-data and knowledge-base accessor.

Organizations author two kinds of prompt material:

* **training data** — versioned sales scripts, objection handling,
  qualification criteria, SOPs and business info.  Only ``is_active`` rows
  ever reach a prompt.
* **knowledge entries** — free-form business facts (pricing, schedule,
  services, policies, FAQ, style).  Entries relevant to the inbound message
  are picked by keyword matching, with the style guide always included.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from src.errors import NotFoundError
from src.models import KnowledgeEntry, TrainingData, TrainingDataType
from src.services.store import Store

logger = logging.getLogger(__name__)

TRAINING_TABLE = "training_data"
KNOWLEDGE_TABLE = "knowledge"

KNOWLEDGE_START_MARKER = "=== BUSINESS KNOWLEDGE ==="
KNOWLEDGE_END_MARKER = "=== END KNOWLEDGE ==="

# Knowledge type → words in the lead's message that make it relevant
KEYWORD_MAP: dict[str, list[str]] = {
    "pricing": ["price", "cost", "membership", "fee", "payment", "monthly", "annual", "discount"],
    "schedule": ["hours", "open", "close", "schedule", "time", "when"],
    "services": ["personal", "training", "classes", "service", "offer"],
    "policies": ["cancel", "cancellation", "policy", "refund", "terms"],
    "faq": ["help", "question", "how", "what", "where", "why"],
}
ALWAYS_INCLUDED_TYPES = ["style"]
FALLBACK_TYPES = ["sop", "faq"]
DEFAULT_KNOWLEDGE_LIMIT = 10

_TYPE_ORDER = {t: i for i, t in enumerate(TrainingDataType)}


def relevant_knowledge_types(message: str) -> list[str]:
    """Return the knowledge types a message touches, style guide included."""
    lower = message.lower()
    types = [t for t, words in KEYWORD_MAP.items() if any(w in lower for w in words)]
    matched_any = bool(types)
    types.extend(ALWAYS_INCLUDED_TYPES)
    if not matched_any:
        types.extend(FALLBACK_TYPES)
    return types


def format_knowledge_block(entries: Iterable[KnowledgeEntry]) -> str:
    """Group entries by type into a delimited prompt block ('' when empty)."""
    grouped: dict[str, list[KnowledgeEntry]] = {}
    for entry in entries:
        grouped.setdefault(entry.type, []).append(entry)
    if not grouped:
        return ""

    lines = [KNOWLEDGE_START_MARKER]
    for knowledge_type, typed in grouped.items():
        lines.append(f"{knowledge_type.upper()}:")
        lines.extend(f"- {e.content}" for e in typed)
    lines.append(KNOWLEDGE_END_MARKER)
    return "\n".join(lines)


class KnowledgeRepository:
    """Org-scoped reads and writes for training data and knowledge entries."""

    def __init__(self, store: Store) -> None:
        self._store = store

    # ── Training data ────────────────────────────────────────────────

    def get_active_training_data(self, organization_id: str) -> list[TrainingData]:
        rows = self._store.select(
            TRAINING_TABLE,
            filters={"organization_id": organization_id, "is_active": True},
        )
        entries = [TrainingData.model_validate(r) for r in rows]
        entries.sort(key=lambda e: (_TYPE_ORDER[e.data_type], e.version))
        return entries

    def add_training_entry(
        self, organization_id: str, data_type: TrainingDataType, content: str,
    ) -> TrainingData:
        row = self._store.insert(
            TRAINING_TABLE,
            {
                "organization_id": organization_id,
                "data_type": data_type,
                "content": content,
                "is_active": True,
                "version": 1,
            },
        )
        logger.info("Added %s training entry %s", data_type.value, row["id"])
        return TrainingData.model_validate(row)

    def update_training_entry(
        self, organization_id: str, entry_id: str, content: str,
    ) -> TrainingData:
        """Replace the content of an entry, bumping its logical version."""
        current = self._get_training_entry(organization_id, entry_id)
        rows = self._store.update(
            TRAINING_TABLE,
            {"content": content, "version": current.version + 1},
            filters={"id": entry_id, "organization_id": organization_id},
        )
        return TrainingData.model_validate(rows[0])

    def deactivate_training_entry(self, organization_id: str, entry_id: str) -> TrainingData:
        self._get_training_entry(organization_id, entry_id)
        rows = self._store.update(
            TRAINING_TABLE,
            {"is_active": False},
            filters={"id": entry_id, "organization_id": organization_id},
        )
        return TrainingData.model_validate(rows[0])

    def _get_training_entry(self, organization_id: str, entry_id: str) -> TrainingData:
        row = self._store.select_one(
            TRAINING_TABLE, filters={"id": entry_id, "organization_id": organization_id},
        )
        if row is None:
            raise NotFoundError("training_data", entry_id)
        return TrainingData.model_validate(row)

    # ── Knowledge base ───────────────────────────────────────────────

    def get_knowledge_entries(
        self,
        organization_id: str,
        types: list[str] | None = None,
        limit: int | None = None,
    ) -> list[KnowledgeEntry]:
        """Newest-first knowledge entries, optionally restricted to *types*."""
        rows = self._store.select(
            KNOWLEDGE_TABLE,
            filters={"organization_id": organization_id},
            order_by="created_at",
            descending=True,
        )
        entries = [KnowledgeEntry.model_validate(r) for r in rows]
        if types:
            wanted = set(types)
            entries = [e for e in entries if e.type in wanted]
        return entries[:limit] if limit is not None else entries

    def get_relevant_knowledge(
        self,
        organization_id: str,
        message: str,
        limit: int = DEFAULT_KNOWLEDGE_LIMIT,
    ) -> list[KnowledgeEntry]:
        types = relevant_knowledge_types(message)
        logger.debug("Relevant knowledge types for message: %s", types)
        return self.get_knowledge_entries(organization_id, types=types, limit=limit)

    def add_knowledge_entry(
        self, organization_id: str, knowledge_type: str, content: str,
    ) -> KnowledgeEntry:
        row = self._store.insert(
            KNOWLEDGE_TABLE,
            {"organization_id": organization_id, "type": knowledge_type, "content": content},
        )
        return KnowledgeEntry.model_validate(row)
