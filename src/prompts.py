"""System prompt rendering for WhatsApp replies.

Two variants are rendered from the same ``ConversationContext``:

* **full** — lead details, every active training entry verbatim, the
  business-knowledge block and the complete call-insight block.  Used for
  offline/debug comparison (see the prompt-preview endpoint).
* **optimized** — what production replies use: a minimal header, training
  data summarized as a list of types, a one-line call success rate and a
  single key insight, capped so one exchange stays under the per-call cost
  ceiling.

Section order is fixed for both: header → training → (knowledge) → call
insights → guidelines.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import UTC, datetime

from src.config import (
    INPUT_PRICE_PER_MILLION,
    LARGE_PROMPT_WARNING_TOKENS,
    MAX_COST_PER_CALL_USD,
    MAX_REPLY_TOKENS,
    OPTIMIZED_PROMPT_MAX_CHARS,
    OUTPUT_PRICE_PER_MILLION,
)
from src.models import ConversationContext, TrainingDataType
from src.services.insights import CallInsightSummary, summarize_call_insights
from src.services.knowledge import format_knowledge_block

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
KEY_INSIGHT_CHARS = 100

INSIGHTS_START_MARKER = "=== CALL TRANSCRIPTION INSIGHTS ==="
INSIGHTS_END_MARKER = "=== END CALL INSIGHTS ==="

TRAINING_HEADINGS: dict[TrainingDataType, str] = {
    TrainingDataType.SALES_SCRIPT: "Sales Script",
    TrainingDataType.OBJECTION_HANDLING: "Objection Handling",
    TrainingDataType.QUALIFICATION_CRITERIA: "Qualification Criteria",
    TrainingDataType.SOP: "Standard Operating Procedures",
    TrainingDataType.BUSINESS_INFO: "Business Information",
}

FULL_HEADER_TEMPLATE = """You are a professional sales agent for {organization_name}.
Your goal is to qualify leads over WhatsApp and book consultations for potential customers.
Today is {current_date}.

Lead Information:
- Name: {lead_name}
- Phone: {lead_phone}
- Email: {lead_email}
- Status: {lead_status}"""

FULL_GUIDELINES = """Guidelines:
- Be conversational and friendly
- Ask qualifying questions to understand their goals
- Address objections professionally using proven responses from successful calls
- When the lead is qualified and interested, offer to book a consultation and ask which day and time suits them
- Keep responses concise and focused
- Always end with a question to keep the conversation flowing
- Apply learnings from recent call transcriptions to improve your approach"""

OPTIMIZED_HEADER_TEMPLATE = """You are a sales agent for {organization_name}.
Lead: {lead_name} ({lead_status})

Your goal: qualify leads and book consultations. Be conversational and concise."""

OPTIMIZED_GUIDELINES = """Guidelines:
- Keep responses under 50 words
- Ask one qualifying question per message
- When qualified, offer to book a consultation
- End with a question"""


@dataclass
class RenderedPrompt:
    variant: str
    text: str
    estimated_tokens: int
    truncated: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def has_call_insights(self) -> bool:
        return INSIGHTS_START_MARKER in self.text


# ── Budget helpers ───────────────────────────────────────────────────


def estimate_tokens(text: str) -> int:
    """Rough token count: one token per four characters of English."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def max_prompt_tokens_for_budget(
    max_cost_usd: float = MAX_COST_PER_CALL_USD,
    *,
    input_price_per_million: float = INPUT_PRICE_PER_MILLION,
    output_price_per_million: float = OUTPUT_PRICE_PER_MILLION,
    reply_tokens: int = MAX_REPLY_TOKENS,
) -> int:
    """Largest input size that keeps prompt + a max-length reply under budget."""
    reply_cost = reply_tokens * output_price_per_million / 1_000_000
    remaining = max_cost_usd - reply_cost
    if remaining <= 0:
        return 0
    return math.floor(remaining / (input_price_per_million / 1_000_000))


def optimized_char_budget(max_chars: int | None = None) -> int:
    cost_chars = max_prompt_tokens_for_budget() * CHARS_PER_TOKEN
    return min(max_chars or OPTIMIZED_PROMPT_MAX_CHARS, cost_chars)


def _finish(variant: str, text: str, *, truncated: bool = False) -> RenderedPrompt:
    prompt = RenderedPrompt(
        variant=variant,
        text=text,
        estimated_tokens=estimate_tokens(text),
        truncated=truncated,
    )
    if prompt.estimated_tokens > LARGE_PROMPT_WARNING_TOKENS:
        message = (
            f"Large {variant} prompt: ~{prompt.estimated_tokens} tokens "
            f"(threshold {LARGE_PROMPT_WARNING_TOKENS})"
        )
        logger.warning(message)
        prompt.warnings.append(message)
    logger.debug(
        "%s prompt: %d chars (~%d tokens)", variant, len(text), prompt.estimated_tokens,
    )
    return prompt


# ── Section renderers ────────────────────────────────────────────────


def render_training_sections(context: ConversationContext) -> str:
    sections = [
        f"{TRAINING_HEADINGS[entry.data_type]}:\n{entry.content.strip()}"
        for entry in context.training_data
        if entry.is_active
    ]
    return "\n\n".join(sections)


def render_call_insights(summary: CallInsightSummary) -> str:
    """Full call-insight block, or '' when there are no transcripts."""
    if summary.is_empty:
        return ""

    lines = [
        INSIGHTS_START_MARKER,
        f"Based on {summary.total_calls} sales calls (prioritizing successful ones), "
        "here are key insights:",
        "",
        f"Call Performance Analysis: {summary.percent_positive}% positive "
        f"({summary.positive} positive, {summary.neutral} neutral, "
        f"{summary.negative} negative)",
    ]

    if summary.snippets:
        lines.append("")
        lines.append(f"PROVEN SUCCESSFUL PATTERNS (from {summary.positive} positive calls):")
        for index, snippet in enumerate(summary.snippets, start=1):
            lines.append(f'{index}. "{snippet.text}..." → {snippet.analysis}')

    if summary.success_insights or summary.improvement_insights:
        lines.append("")
        lines.append("ACTIONABLE INSIGHTS FROM CALLS:")
        if summary.success_insights:
            lines.append("From successful calls:")
            lines.extend(f"- {insight}" for insight in summary.success_insights)
        if summary.improvement_insights:
            lines.append("Areas for improvement:")
            lines.extend(f"- {insight}" for insight in summary.improvement_insights)

    lines.append("")
    lines.append(
        "Focus on replicating the successful patterns while avoiding the pitfalls "
        "identified in neutral/negative calls."
    )
    lines.append(INSIGHTS_END_MARKER)
    return "\n".join(lines)


def render_success_rate_line(summary: CallInsightSummary) -> str:
    if summary.is_empty:
        return ""
    return (
        f"Call insights: {summary.percent_positive}% success rate from "
        f"{summary.total_calls} calls. Focus on proven successful patterns."
    )


# ── Builders ─────────────────────────────────────────────────────────


def build_full_prompt(
    context: ConversationContext, *, now: datetime | None = None,
) -> RenderedPrompt:
    """Render the unrestricted prompt used for debugging and comparison."""
    now = now or datetime.now(UTC)
    lead = context.lead
    header = FULL_HEADER_TEMPLATE.format(
        organization_name=context.organization.name,
        current_date=now.strftime("%A %d %B %Y"),
        lead_name=lead.name,
        lead_phone=lead.phone,
        lead_email=lead.email or "Not provided",
        lead_status=lead.status.value,
    )
    sections = [
        header,
        render_training_sections(context),
        format_knowledge_block(context.knowledge),
        render_call_insights(summarize_call_insights(context.call_transcripts)),
        FULL_GUIDELINES,
    ]
    return _finish("full", "\n\n".join(s for s in sections if s))


def build_optimized_prompt(
    context: ConversationContext, *, max_chars: int | None = None,
) -> RenderedPrompt:
    """Render the cost-capped production prompt.

    Optional sections are dropped (key insight first, then the training
    list, then the success-rate line) until the prompt fits; the header and
    guidelines are always kept.
    """
    budget = optimized_char_budget(max_chars)
    lead = context.lead
    header = OPTIMIZED_HEADER_TEMPLATE.format(
        organization_name=context.organization.name,
        lead_name=lead.name,
        lead_status=lead.status.value,
    )

    training_types = list(dict.fromkeys(e.data_type.value for e in context.training_data))
    training_line = f"Training available: {', '.join(training_types)}" if training_types else ""

    summary = summarize_call_insights(context.call_transcripts, max_snippets=1)
    success_line = render_success_rate_line(summary)
    key_insight = ""
    if summary.success_insights:
        key_insight = f"Key insight: {summary.success_insights[0][:KEY_INSIGHT_CHARS]}"

    optional = {"key_insight": key_insight, "training": training_line, "success": success_line}
    drop_order = ["key_insight", "training", "success"]

    def _render() -> str:
        middle = "\n".join(
            optional[k] for k in ("training", "success", "key_insight") if optional[k]
        )
        return "\n\n".join(s for s in (header, middle, OPTIMIZED_GUIDELINES) if s)

    text = _render()
    truncated = False
    for key in drop_order:
        if len(text) <= budget:
            break
        if optional[key]:
            optional[key] = ""
            truncated = True
            text = _render()

    prompt = _finish("optimized", text, truncated=truncated)
    if len(text) > budget:
        message = f"Optimized prompt still {len(text)} chars after trimming (budget {budget})"
        logger.warning(message)
        prompt.warnings.append(message)
    return prompt
