"""Tests for the CloudWatch metrics client."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

from src.services.metrics import NAMESPACE, MetricsClient


def _make_client(*, enabled: bool = True) -> MetricsClient:
    """Client with the background flush thread disabled."""
    with patch.dict("os.environ", {"METRICS_ENABLED": str(enabled).lower()}), \
            patch.object(MetricsClient, "_start_flush_thread"):
        return MetricsClient()


def _dims(metric: dict) -> dict[str, str]:
    return {d["Name"]: d["Value"] for d in metric["Dimensions"]}


class TestMetricsRecording:
    """record_success / record_failure / record_cost buffer the right data."""

    def test_success_buffers_count_and_latency(self):
        client = _make_client()
        client.record_success("google_calendar", "POST /freeBusy", latency_ms=123.4)
        names = [m["MetricName"] for m in client._buffer]
        assert names == ["Provider/RequestCount", "Provider/Latency"]

        count = client._buffer[0]
        assert _dims(count) == {"Service": "google_calendar", "Status": "success"}
        assert client._buffer[1]["Value"] == 123.4

    def test_failure_without_latency(self):
        client = _make_client()
        client.record_failure("twilio", "send_message", error_type="21211")
        names = {m["MetricName"] for m in client._buffer}
        assert names == {"Provider/RequestCount", "Provider/ErrorCount"}

        error = next(m for m in client._buffer if m["MetricName"] == "Provider/ErrorCount")
        assert _dims(error)["ErrorType"] == "21211"

    def test_failure_with_latency(self):
        client = _make_client()
        client.record_failure("anthropic", "llm_invoke", error_type="timeout", latency_ms=500.0)
        assert len(client._buffer) == 3

    def test_cost_metric(self):
        client = _make_client()
        client.record_cost("anthropic", "llm_invoke", 0.00125)

        (metric,) = client._buffer
        assert metric["MetricName"] == "LLM/EstimatedCost"
        assert metric["Value"] == 0.00125
        assert _dims(metric) == {"Service": "anthropic", "Operation": "llm_invoke"}


class TestMetricsFlush:
    def test_disabled_client_buffers_nothing(self):
        client = _make_client(enabled=False)
        for _ in range(5000):
            client.record_success("twilio", "send_message", latency_ms=80.0)
        client.record_failure("anthropic", "llm_invoke", error_type="timeout")
        client.record_cost("anthropic", "llm_invoke", 0.002)

        assert client._buffer == []
        assert client.flush() == 0

    def test_flush_when_enabled_calls_put_metric_data(self):
        client = _make_client()
        mock_cw = MagicMock()
        client._cw_client = mock_cw  # inject mock

        client.record_success("twilio", "send_message", latency_ms=80.0)
        client.record_cost("anthropic", "llm_invoke", 0.002)
        sent = client.flush()

        assert sent == 3
        kwargs = mock_cw.put_metric_data.call_args[1]
        assert kwargs["Namespace"] == NAMESPACE == "LeadAgent"
        assert len(kwargs["MetricData"]) == 3

    def test_cloudwatch_failure_is_logged_not_raised(self):
        client = _make_client()
        client._cw_client = MagicMock()
        client._cw_client.put_metric_data.side_effect = RuntimeError("throttled")

        client.record_success("twilio", "send_message", latency_ms=80.0)
        assert client.flush() == 0

    def test_flush_empty_buffer_returns_zero(self):
        client = _make_client()
        assert client.flush() == 0
