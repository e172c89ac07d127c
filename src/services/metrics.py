"""CloudWatch custom metrics emitter with background batching.

Publishes per-call metrics (count, latency, errors) for every external
provider the agent talks to (Anthropic, Twilio, Google Calendar, Supabase)
and the estimated dollar cost of each LLM call.

Design
------
* Metrics are collected in a thread-safe in-memory buffer.
* A daemon thread flushes the buffer to CloudWatch every
  ``FLUSH_INTERVAL_SECONDS`` (default 60 s).
* When running locally (``METRICS_ENABLED != "true"``), metrics are
  logged at DEBUG level but **not** pushed to CloudWatch.
* Each ``put_metric_data`` call sends up to 1 000 metric data points
  (the CloudWatch API limit per request).

Usage
-----
>>> from src.services.metrics import metrics
>>> metrics.record_success("twilio", "send_whatsapp", latency_ms=212.0)
>>> metrics.record_failure("anthropic", "reply_completion", error_type="APIStatusError")
>>> metrics.record_cost("anthropic", "reply_completion", cost_usd=0.0021)
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
import time
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

NAMESPACE = "LeadAgent"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # PutMetricData limit

REQUEST_COUNT = "Provider/RequestCount"
LATENCY = "Provider/Latency"
ERROR_COUNT = "Provider/ErrorCount"
ESTIMATED_COST = "LLM/EstimatedCost"


def _datum(
    name: str, dimensions: dict[str, str], value: float, unit: str, at: datetime,
) -> dict[str, Any]:
    return {
        "MetricName": name,
        "Dimensions": [{"Name": k, "Value": v} for k, v in dimensions.items()],
        "Timestamp": at,
        "Value": value,
        "Unit": unit,
    }


class MetricsClient:
    """Buffers provider metrics and pushes them to CloudWatch in batches."""

    def __init__(self) -> None:
        self._enabled = os.getenv("METRICS_ENABLED", "false").lower() == "true"
        self._buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._cw_client = None

        if self._enabled:
            self._start_flush_thread()

    def _get_cw_client(self):
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    # ── Recording ────────────────────────────────────────────────────

    def record_success(self, service: str, operation: str, latency_ms: float) -> None:
        at = datetime.now(UTC)
        self._append(
            _datum(REQUEST_COUNT, {"Service": service, "Status": "success"}, 1, "Count", at),
            _datum(LATENCY, {"Service": service, "Operation": operation}, latency_ms, "Milliseconds", at),
        )
        logger.debug("Metric: %s %s ok in %.1fms", service, operation, latency_ms)

    def record_failure(
        self,
        service: str,
        operation: str,
        error_type: str,
        latency_ms: float = 0,
    ) -> None:
        """Count a failed call; latency is only recorded when it was measured."""
        at = datetime.now(UTC)
        data = [
            _datum(REQUEST_COUNT, {"Service": service, "Status": "failure"}, 1, "Count", at),
            _datum(ERROR_COUNT, {"Service": service, "ErrorType": error_type}, 1, "Count", at),
        ]
        if latency_ms > 0:
            data.append(
                _datum(LATENCY, {"Service": service, "Operation": operation}, latency_ms, "Milliseconds", at)
            )
        self._append(*data)
        logger.debug("Metric: %s %s failed (%s) in %.1fms", service, operation, error_type, latency_ms)

    def record_cost(self, service: str, operation: str, cost_usd: float) -> None:
        """Estimated USD cost of one billable call."""
        self._append(
            _datum(
                ESTIMATED_COST,
                {"Service": service, "Operation": operation},
                cost_usd,
                "None",
                datetime.now(UTC),
            )
        )
        logger.debug("Metric: %s %s cost=$%.6f", service, operation, cost_usd)

    # ── Publishing ───────────────────────────────────────────────────

    def flush(self) -> int:
        """Push the buffer to CloudWatch and return how many points were sent.

        The buffer is emptied even when publishing fails; a lost batch of
        operational metrics is not retried.
        """
        with self._lock:
            batch, self._buffer = self._buffer, []
        if not batch:
            return 0

        sent = 0
        try:
            cw = self._get_cw_client()
            for start in range(0, len(batch), MAX_BATCH_SIZE):
                chunk = batch[start : start + MAX_BATCH_SIZE]
                cw.put_metric_data(Namespace=NAMESPACE, MetricData=chunk)
                sent += len(chunk)
        except Exception:
            logger.exception("CloudWatch publish failed after %d of %d points", sent, len(batch))
        else:
            logger.info("Published %d metric points to CloudWatch", sent)
        return sent

    def _append(self, *data: dict[str, Any]) -> None:
        if not self._enabled:
            return
        with self._lock:
            self._buffer.extend(data)

    def _start_flush_thread(self) -> None:
        def _loop():
            while True:
                time.sleep(FLUSH_INTERVAL_SECONDS)
                try:
                    self.flush()
                except Exception:
                    logger.exception("Metrics flush loop error")

        threading.Thread(target=_loop, daemon=True, name="metrics-flush").start()
        atexit.register(self.flush)
        logger.info("Publishing metrics to CloudWatch every %ds", FLUSH_INTERVAL_SECONDS)


# Shared by every provider client
metrics = MetricsClient()
