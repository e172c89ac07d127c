"""Tests for the full and cost-optimized system prompts."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from src.models import (
    CallTranscript,
    ConversationContext,
    KnowledgeEntry,
    Lead,
    Organization,
    Sentiment,
    TrainingData,
)
from src.prompts import (
    INSIGHTS_END_MARKER,
    INSIGHTS_START_MARKER,
    KEY_INSIGHT_CHARS,
    build_full_prompt,
    build_optimized_prompt,
    estimate_tokens,
    max_prompt_tokens_for_budget,
    optimized_char_budget,
)

BASE = datetime(2025, 3, 9, 12, 0, tzinfo=UTC)


def _context(*, training=None, transcripts=None, knowledge=None, email="jane@example.com"):
    return ConversationContext(
        lead=Lead(
            id="lead-jane",
            organization_id="org-1",
            name="Jane Doe",
            phone="+15551234567",
            email=email,
        ),
        organization=Organization(id="org-1", name="Peak Fitness"),
        training_data=training or [],
        knowledge=knowledge or [],
        call_transcripts=transcripts or [],
    )


@pytest.fixture
def training():
    return [
        TrainingData(id="t1", organization_id="org-1", data_type="sales_script",
                     content="Open by asking about their fitness goals."),
        TrainingData(id="t2", organization_id="org-1", data_type="objection_handling",
                     content="If price is a concern, mention the free trial week."),
    ]


@pytest.fixture
def transcripts():
    return [
        CallTranscript(
            id=f"c{i}",
            organization_id="org-1",
            raw_transcript=f"Call {i}: the customer loved the trial and signed up on the spot.",
            sentiment=sentiment,
            sales_insights={"analysis": f"Insight number {i} " + "z" * 200},
            created_at=BASE - timedelta(days=i),
        )
        for i, sentiment in enumerate(
            [Sentiment.POSITIVE, Sentiment.NEGATIVE, Sentiment.POSITIVE, Sentiment.NEUTRAL]
        )
    ]


class TestBudgetHelpers:
    def test_estimate_tokens_rounds_up(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_reply_cost_above_budget_leaves_no_room(self):
        # 300 reply tokens at $5/M already cost $0.0015
        assert max_prompt_tokens_for_budget(0.001, reply_tokens=300) == 0

    def test_budget_grows_with_allowed_cost(self):
        assert max_prompt_tokens_for_budget(0.02) > max_prompt_tokens_for_budget(0.01) > 0

    def test_char_budget_is_capped_by_max_chars(self):
        assert optimized_char_budget(2000) == 2000
        assert optimized_char_budget(500) == 500


class TestFullPrompt:
    def test_contains_organization_and_lead(self, training, transcripts):
        prompt = build_full_prompt(_context(training=training, transcripts=transcripts))
        assert "Peak Fitness" in prompt.text
        assert "Jane Doe" in prompt.text
        assert "+15551234567" in prompt.text
        assert prompt.variant == "full"

    def test_missing_email_is_labelled(self):
        prompt = build_full_prompt(_context(email=None))
        assert "Email: Not provided" in prompt.text

    def test_states_current_date(self):
        prompt = build_full_prompt(_context(), now=BASE)
        assert "Today is Sunday 09 March 2025" in prompt.text

    def test_sections_in_fixed_order(self, training, transcripts):
        knowledge = [KnowledgeEntry(id="k1", organization_id="org-1", type="pricing", content="£40/month")]
        text = build_full_prompt(
            _context(training=training, transcripts=transcripts, knowledge=knowledge)
        ).text
        positions = [
            text.index("Lead Information:"),
            text.index("Sales Script:"),
            text.index("=== BUSINESS KNOWLEDGE ==="),
            text.index(INSIGHTS_START_MARKER),
            text.index(INSIGHTS_END_MARKER),
            text.index("Guidelines:"),
        ]
        assert positions == sorted(positions)

    def test_insight_block_present_only_with_transcripts(self, transcripts):
        with_calls = build_full_prompt(_context(transcripts=transcripts))
        without_calls = build_full_prompt(_context())
        assert with_calls.has_call_insights
        assert "4 sales calls" in with_calls.text
        assert not without_calls.has_call_insights
        assert INSIGHTS_END_MARKER not in without_calls.text

    def test_huge_training_data_triggers_warning(self):
        training = [
            TrainingData(id="big", organization_id="org-1", data_type="sop", content="step " * 5000)
        ]
        prompt = build_full_prompt(_context(training=training))
        assert prompt.estimated_tokens > 5000
        assert prompt.warnings


class TestOptimizedPrompt:
    def test_contains_names_and_is_shorter_than_full(self, training, transcripts):
        context = _context(training=training, transcripts=transcripts)
        full = build_full_prompt(context)
        optimized = build_optimized_prompt(context)
        assert "Jane Doe" in optimized.text
        assert "Peak Fitness" in optimized.text
        assert len(optimized.text) < len(full.text)
        assert optimized.variant == "optimized"

    def test_summarizes_training_as_type_list(self, training):
        text = build_optimized_prompt(_context(training=training)).text
        assert "Training available: sales_script, objection_handling" in text
        assert "free trial week" not in text

    def test_success_rate_and_truncated_key_insight(self, transcripts):
        text = build_optimized_prompt(_context(transcripts=transcripts)).text
        assert "50% success rate from 4 calls" in text
        key_line = next(line for line in text.splitlines() if line.startswith("Key insight: "))
        assert len(key_line.removeprefix("Key insight: ")) == KEY_INSIGHT_CHARS
        assert INSIGHTS_START_MARKER not in text

    def test_fits_default_budget_untruncated(self, training, transcripts):
        prompt = build_optimized_prompt(_context(training=training, transcripts=transcripts))
        assert len(prompt.text) <= 2000
        assert not prompt.truncated
        assert prompt.warnings == []

    def test_drops_key_insight_first(self, training, transcripts):
        context = _context(training=training, transcripts=transcripts)
        untrimmed = build_optimized_prompt(context)
        key_line = next(line for line in untrimmed.text.splitlines() if line.startswith("Key insight"))
        trimmed = build_optimized_prompt(context, max_chars=len(untrimmed.text) - len(key_line))
        assert trimmed.truncated
        assert "Key insight" not in trimmed.text
        assert "Training available" in trimmed.text
        assert "success rate" in trimmed.text

    def test_tiny_budget_keeps_header_and_guidelines(self, training, transcripts):
        prompt = build_optimized_prompt(
            _context(training=training, transcripts=transcripts), max_chars=10,
        )
        assert prompt.truncated
        assert "Jane Doe" in prompt.text
        assert "Guidelines:" in prompt.text
        assert "Training available" not in prompt.text
        assert "success rate" not in prompt.text
        assert prompt.warnings
