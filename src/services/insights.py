"""Call-transcript ranking and insight summarization.

Past sales calls are prompt material: calls with a positive outcome are
ranked ahead of neutral and negative ones, and only short snippets plus the
analysis text attached by the transcription step ever reach a prompt.
"""

from __future__ import annotations

from collections.abc import Iterable

from pydantic import BaseModel, Field

from src.models import CallTranscript, Sentiment

SENTIMENT_RANK: dict[Sentiment | None, int] = {
    Sentiment.POSITIVE: 0,
    Sentiment.NEUTRAL: 1,
    Sentiment.NEGATIVE: 2,
    None: 3,
}

MAX_SNIPPETS = 5
SNIPPET_CHARS = 150
MAX_SUCCESS_INSIGHTS = 3
MAX_IMPROVEMENT_INSIGHTS = 2
DEFAULT_ANALYSIS = "High engagement call"


class CallSnippet(BaseModel):
    text: str
    analysis: str


class CallInsightSummary(BaseModel):
    total_calls: int = 0
    positive: int = 0
    neutral: int = 0
    negative: int = 0
    snippets: list[CallSnippet] = Field(default_factory=list)
    success_insights: list[str] = Field(default_factory=list)
    improvement_insights: list[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return self.total_calls == 0

    @property
    def rated_calls(self) -> int:
        return self.positive + self.neutral + self.negative

    @property
    def percent_positive(self) -> int:
        if not self.rated_calls:
            return 0
        return round(self.positive / self.rated_calls * 100)


def rank_call_transcripts(transcripts: Iterable[CallTranscript]) -> list[CallTranscript]:
    """Order by sentiment rank (positive first), newest first within a tier."""
    newest_first = sorted(transcripts, key=lambda t: t.created_at, reverse=True)
    # sort() is stable, so recency order survives within each tier
    return sorted(newest_first, key=lambda t: SENTIMENT_RANK[t.sentiment])


def summarize_call_insights(
    transcripts: list[CallTranscript],
    *,
    max_snippets: int = MAX_SNIPPETS,
    snippet_chars: int = SNIPPET_CHARS,
    max_success: int = MAX_SUCCESS_INSIGHTS,
    max_improvement: int = MAX_IMPROVEMENT_INSIGHTS,
) -> CallInsightSummary:
    """Build the structured summary the prompt builder renders.

    Selection depends only on the ranked order and the slice sizes, so the
    same transcripts always yield the same summary.
    """
    if not transcripts:
        return CallInsightSummary()

    ranked = rank_call_transcripts(transcripts)
    positives = [t for t in ranked if t.sentiment is Sentiment.POSITIVE]
    improvement_pool = [
        t for t in ranked if t.sentiment in (Sentiment.NEUTRAL, Sentiment.NEGATIVE)
    ]

    max_snippets = min(max_snippets, MAX_SNIPPETS)
    snippet_chars = min(snippet_chars, SNIPPET_CHARS)
    snippets = [
        CallSnippet(
            text=t.raw_transcript[:snippet_chars].strip(),
            analysis=t.analysis or DEFAULT_ANALYSIS,
        )
        for t in positives[:max_snippets]
    ]

    return CallInsightSummary(
        total_calls=len(ranked),
        positive=len(positives),
        neutral=sum(1 for t in ranked if t.sentiment is Sentiment.NEUTRAL),
        negative=sum(1 for t in ranked if t.sentiment is Sentiment.NEGATIVE),
        snippets=snippets,
        success_insights=[t.analysis for t in positives if t.analysis][:max_success],
        improvement_insights=[t.analysis for t in improvement_pool if t.analysis][:max_improvement],
    )
