"""Per-call LLM cost accounting.

A ``CostLedger`` is created once by the agent factory and passed to the
completion invoker; nothing here is module-level state, so two agents in one
process keep separate books.

Usage
-----
>>> ledger = CostLedger()
>>> ledger.record(input_tokens=1200, output_tokens=80, conversation_id="c-1")
>>> ledger.report().total_calls
1
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta

from pydantic import BaseModel

from src.config import (
    COST_ALERT_AVERAGE_USD,
    COST_ALERT_TOTAL_USD,
    INPUT_PRICE_PER_MILLION,
    MAX_COST_PER_CALL_USD,
    OUTPUT_PRICE_PER_MILLION,
)
from src.models import utc_now

logger = logging.getLogger(__name__)

# Thresholds behind the cost-monitor recommendations
HIGH_AVERAGE_COST_USD = 0.01
LARGE_INPUT_TOKENS_PER_CALL = 3000
LONG_OUTPUT_TOKENS_PER_CALL = 500
HIGH_DAILY_VOLUME = 100
BUDGET_TOTAL_USD = 5.0


class CostRecord(BaseModel):
    conversation_id: str
    input_tokens: int
    output_tokens: int
    estimated_cost: float
    success: bool = True
    timestamp: datetime


class CostReport(BaseModel):
    total_calls: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cost: float = 0.0
    average_cost_per_call: float = 0.0
    cost_per_hour: float = 0.0
    last_24h_calls: int = 0
    failed_calls: int = 0


class CostLedger:
    """Thread-safe accumulator of ``CostRecord`` entries."""

    def __init__(
        self,
        input_price_per_million: float = INPUT_PRICE_PER_MILLION,
        output_price_per_million: float = OUTPUT_PRICE_PER_MILLION,
        max_cost_per_call: float = MAX_COST_PER_CALL_USD,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.input_price_per_million = input_price_per_million
        self.output_price_per_million = output_price_per_million
        self.max_cost_per_call = max_cost_per_call
        self._clock = clock
        self._records: list[CostRecord] = []
        self._lock = threading.Lock()

    def estimate_cost(self, input_tokens: int, output_tokens: int) -> float:
        return (
            input_tokens * self.input_price_per_million
            + output_tokens * self.output_price_per_million
        ) / 1_000_000

    def record(
        self,
        input_tokens: int,
        output_tokens: int,
        conversation_id: str,
        *,
        success: bool = True,
    ) -> CostRecord:
        entry = CostRecord(
            conversation_id=conversation_id,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            estimated_cost=self.estimate_cost(input_tokens, output_tokens),
            success=success,
            timestamp=self._clock(),
        )
        with self._lock:
            self._records.append(entry)

        logger.info(
            "LLM cost: conversation=%s in=%d out=%d cost=$%.6f success=%s",
            conversation_id, input_tokens, output_tokens, entry.estimated_cost, success,
        )
        if entry.estimated_cost > self.max_cost_per_call:
            logger.warning(
                "LLM call for %s cost $%.6f, above the $%.4f per-call ceiling",
                conversation_id, entry.estimated_cost, self.max_cost_per_call,
            )
        return entry

    @property
    def records(self) -> list[CostRecord]:
        with self._lock:
            return list(self._records)

    def report(self, now: datetime | None = None) -> CostReport:
        """Aggregate totals.

        ``cost_per_hour`` spreads the total over the hours since the first
        recorded call, counting at least one hour.
        """
        now = now or self._clock()
        records = self.records
        if not records:
            return CostReport()

        total_cost = sum(r.estimated_cost for r in records)
        elapsed_hours = (now - records[0].timestamp).total_seconds() / 3600
        day_ago = now - timedelta(hours=24)
        return CostReport(
            total_calls=len(records),
            total_input_tokens=sum(r.input_tokens for r in records),
            total_output_tokens=sum(r.output_tokens for r in records),
            total_cost=total_cost,
            average_cost_per_call=total_cost / len(records),
            cost_per_hour=total_cost / max(1.0, elapsed_hours),
            last_24h_calls=sum(1 for r in records if r.timestamp > day_ago),
            failed_calls=sum(1 for r in records if not r.success),
        )

    def check_alerts(
        self,
        average_threshold: float = COST_ALERT_AVERAGE_USD,
        total_threshold: float = COST_ALERT_TOTAL_USD,
    ) -> list[str]:
        """Log and return an alert line for each threshold the ledger exceeds."""
        report = self.report()
        alerts: list[str] = []
        if report.average_cost_per_call > average_threshold:
            alerts.append(
                f"Average cost per call ${report.average_cost_per_call:.6f} "
                f"exceeds ${average_threshold:.4f}"
            )
        if report.total_cost > total_threshold:
            alerts.append(
                f"Total LLM cost ${report.total_cost:.4f} exceeds ${total_threshold:.2f}"
            )
        for alert in alerts:
            logger.warning("Cost alert: %s", alert)
        return alerts

    def reset(self) -> None:
        with self._lock:
            self._records.clear()


def recommendations(report: CostReport) -> list[str]:
    """Human-readable tuning hints for the cost-monitor endpoint."""
    calls = max(1, report.total_calls)
    hints: list[str] = []
    if report.average_cost_per_call > HIGH_AVERAGE_COST_USD:
        hints.append(
            "HIGH COST: average cost per call exceeds $0.01. "
            "Consider reducing conversation history or system prompt size."
        )
    if report.total_input_tokens / calls > LARGE_INPUT_TOKENS_PER_CALL:
        hints.append(
            "LARGE PROMPTS: input tokens per call are high. "
            "Review system prompt and conversation history limits."
        )
    if report.total_output_tokens / calls > LONG_OUTPUT_TOKENS_PER_CALL:
        hints.append(
            "LONG RESPONSES: output tokens per call are high. "
            "Consider reducing MAX_REPLY_TOKENS."
        )
    if report.last_24h_calls > HIGH_DAILY_VOLUME:
        hints.append(
            "HIGH VOLUME: over 100 calls in 24 hours. Monitor for unusual activity or loops."
        )
    if report.total_cost > BUDGET_TOTAL_USD:
        hints.append("BUDGET ALERT: total costs exceed $5. Consider rate limiting.")
    if not hints:
        hints.append("Costs are within normal ranges.")
    return hints
