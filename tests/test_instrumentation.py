"""Tests for call instrumentation."""

from __future__ import annotations

import json
import logging

import pytest

from hazwaste.core.aiops.errors import RateLimitError
from hazwaste.core.aiops.instrumentation import (
    AIInstrumentation,
    calculate_cost,
    sanitize,
)


@pytest.fixture
def instrumentation() -> AIInstrumentation:
    return AIInstrumentation(max_events=5)


class TestSanitize:
    def test_scrubs_email_ssn_and_long_ids(self):
        text = "Contact ops@plant.com, SSN 123-45-6789, manifest 123456789012"

        assert sanitize(text) == "Contact [EMAIL], SSN [SSN], manifest [ID]"

    def test_short_numbers_are_kept(self):
        assert sanitize("Quantity: 50kg, pH 2") == "Quantity: 50kg, pH 2"


class TestCost:
    def test_known_model_uses_output_price(self):
        assert calculate_cost("claude-3-5-sonnet-20241022", 1_000_000) == pytest.approx(15.0)

    def test_unknown_model_falls_back_to_cheapest(self):
        assert calculate_cost("claude-sonnet", 1_000_000) == pytest.approx(1.25)


class TestAIInstrumentation:
    """Structured events and running totals."""

    def test_output_updates_totals(self, instrumentation: AIInstrumentation):
        cost = instrumentation.log_output(
            "trace-1", "ok", "claude-3-haiku-20240307", tokens_used=1000, latency_ms=200,
        )
        instrumentation.log_output(
            "trace-2", "ok", "claude-3-haiku-20240307", tokens_used=500, latency_ms=400,
        )

        metrics = instrumentation.get_metrics()
        assert cost == pytest.approx(0.00125)
        assert metrics.total_requests == 2
        assert metrics.total_tokens == 1500
        assert metrics.average_latency_ms == pytest.approx(300)
        assert metrics.error_rate == 0.0

    def test_errors_count_toward_error_rate(self, instrumentation: AIInstrumentation):
        instrumentation.log_output("trace-1", "ok", tokens_used=10, latency_ms=1)
        instrumentation.log_error("trace-2", RateLimitError("slow down"), retry_count=1)

        metrics = instrumentation.get_metrics()
        assert metrics.errors == 1
        assert metrics.error_rate == pytest.approx(0.5)

    def test_only_failures_give_full_error_rate(self, instrumentation: AIInstrumentation):
        for attempt in range(3):
            instrumentation.log_error("trace-1", RateLimitError("slow down"), retry_count=attempt)

        metrics = instrumentation.get_metrics()
        assert metrics.total_requests == 0
        assert metrics.error_rate == pytest.approx(1.0)

    def test_empty_metrics(self, instrumentation: AIInstrumentation):
        metrics = instrumentation.get_metrics()

        assert metrics.average_latency_ms == 0.0
        assert metrics.error_rate == 0.0

    def test_events_are_logged_as_json_without_pii(self, instrumentation: AIInstrumentation, caplog):
        with caplog.at_level(logging.INFO, logger="hazwaste.core.aiops.instrumentation"):
            instrumentation.log_prompt("trace-1", "Generator email: ops@plant.com", "claude-3-haiku-20240307")

        event = json.loads(caplog.records[-1].getMessage())
        assert event["type"] == "prompt"
        assert event["trace_id"] == "trace-1"
        assert event["data"]["prompt"] == "Generator email: [EMAIL]"
        assert "ops@plant.com" not in caplog.text

    def test_error_event_carries_code(self, instrumentation: AIInstrumentation, caplog):
        with caplog.at_level(logging.ERROR, logger="hazwaste.core.aiops.instrumentation"):
            instrumentation.log_error("trace-1", RateLimitError("slow down"), retry_count=2)

        event = json.loads(caplog.records[-1].getMessage())
        assert event["type"] == "error"
        assert event["data"]["code"] == "RATE_LIMIT_EXCEEDED"
        assert event["data"]["retry_count"] == 2

    def test_recent_events_are_bounded(self, instrumentation: AIInstrumentation):
        for i in range(8):
            instrumentation.log_prompt(f"trace-{i}", "prompt")

        assert len(instrumentation.recent_events) == 5
        assert instrumentation.recent_events[0].trace_id == "trace-3"
