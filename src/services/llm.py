"""Claude completion step for WhatsApp replies.

One call per inbound message: the rendered system prompt, plus a single
user turn carrying the trimmed history and the new message.  Every call,
successful or not, lands in the injected ``CostLedger``.

Intent flags are derived from the reply text with a keyword heuristic.  It
is best-effort only: "book" in "Facebook" or "we can't schedule anything
today" will both read as booking intent.  Callers treat the flags as hints
and the booking step re-checks the lead's own message for a date/time.
"""

from __future__ import annotations

import logging
import time

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage
from pydantic import BaseModel, Field

from src.config import (
    ANTHROPIC_API_KEY,
    HISTORY_MESSAGE_LIMIT,
    LARGE_PROMPT_WARNING_TOKENS,
    LLM_TEMPERATURE,
    MAX_REPLY_TOKENS,
    MODEL_NAME,
)
from src.errors import LLMError
from src.models import Message, MessageDirection
from src.prompts import estimate_tokens
from src.services.cost_ledger import CostLedger
from src.services.metrics import metrics

logger = logging.getLogger(__name__)

BOOKING_KEYWORDS = ("book", "schedule", "appointment")
QUALIFIED_KEYWORD = "qualified"
MIN_MESSAGES_FOR_QUALIFICATION = 3
FALLBACK_REPLY = "Unable to process response"


class CompletionResult(BaseModel):
    reply: str
    should_book_call: bool = False
    lead_qualified: bool = False
    suggested_actions: list[str] = Field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    estimated_cost: float = 0.0


def classify_reply(reply: str, prior_message_count: int) -> tuple[bool, bool, list[str]]:
    """Return ``(should_book_call, lead_qualified, suggested_actions)``.

    ``lead_qualified`` needs more than three prior messages no matter what
    the reply says.
    """
    lower = reply.lower()
    should_book = any(word in lower for word in BOOKING_KEYWORDS)
    qualified = prior_message_count > MIN_MESSAGES_FOR_QUALIFICATION and QUALIFIED_KEYWORD in lower

    actions = ["book_call"] if should_book else ["continue_conversation"]
    if qualified:
        actions.append("mark_qualified")
    return should_book, qualified, actions


def build_user_turn(history: list[Message], new_message: str) -> str:
    lines = [
        f"{'Customer' if m.direction is MessageDirection.INBOUND else 'Agent'}: {m.content}"
        for m in history[-HISTORY_MESSAGE_LIMIT:]
    ]
    if not lines:
        return f"New customer message: {new_message}"
    return "Previous conversation:\n" + "\n".join(lines) + f"\n\nNew customer message: {new_message}"


def _reply_text(response: AIMessage) -> str:
    content = response.content
    if isinstance(content, str):
        return content.strip() or FALLBACK_REPLY
    parts = [
        block.get("text", "")
        for block in content
        if isinstance(block, dict) and block.get("type") == "text"
    ]
    return "".join(parts).strip() or FALLBACK_REPLY


def build_chat_model(
    max_tokens: int = MAX_REPLY_TOKENS, temperature: float = LLM_TEMPERATURE,
) -> ChatAnthropic:
    return ChatAnthropic(
        model=MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=temperature,
        max_tokens=max_tokens,
    )


class CompletionInvoker:
    def __init__(
        self,
        llm: ChatAnthropic | None,
        ledger: CostLedger,
        *,
        max_tokens: int = MAX_REPLY_TOKENS,
        temperature: float = LLM_TEMPERATURE,
    ) -> None:
        self._llm = llm or build_chat_model(max_tokens, temperature)
        self._ledger = ledger

    def invoke(
        self,
        system_prompt: str,
        history: list[Message],
        new_message: str,
        *,
        conversation_id: str,
    ) -> CompletionResult:
        """Ask Claude for the next reply.

        Raises ``LLMError`` on any provider failure, after recording the
        attempt in the ledger with zero output tokens.
        """
        user_turn = build_user_turn(history, new_message)
        estimated_input = estimate_tokens(system_prompt) + estimate_tokens(user_turn)
        if estimated_input > LARGE_PROMPT_WARNING_TOKENS:
            logger.warning(
                "Large completion input for %s: ~%d tokens", conversation_id, estimated_input,
            )

        t0 = time.perf_counter()
        try:
            response = self._llm.invoke(
                [SystemMessage(content=system_prompt), HumanMessage(content=user_turn)]
            )
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(
                "anthropic", "reply_completion",
                error_type=type(exc).__name__, latency_ms=elapsed,
            )
            self._ledger.record(estimated_input, 0, conversation_id, success=False)
            raise LLMError(
                f"Completion failed: {exc}", status_code=getattr(exc, "status_code", None),
            ) from exc

        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_success("anthropic", "reply_completion", latency_ms=elapsed)

        reply = _reply_text(response)
        usage = response.usage_metadata or {}
        input_tokens = usage.get("input_tokens") or estimated_input
        output_tokens = usage.get("output_tokens") or estimate_tokens(reply)
        entry = self._ledger.record(input_tokens, output_tokens, conversation_id)
        metrics.record_cost("anthropic", "reply_completion", entry.estimated_cost)

        should_book, qualified, actions = classify_reply(reply, len(history))
        logger.debug(
            "Completion for %s in %.0fms: book=%s qualified=%s", conversation_id,
            elapsed, should_book, qualified,
        )
        return CompletionResult(
            reply=reply,
            should_book_call=should_book,
            lead_qualified=qualified,
            suggested_actions=actions,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            estimated_cost=entry.estimated_cost,
        )
