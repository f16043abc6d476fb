"""Structured logging and running aggregates for model calls."""

from __future__ import annotations

import logging
import re
from collections import deque
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from hazwaste.core.aiops.safety import DEFAULT_PII_PATTERNS, scrub_pii

logger = logging.getLogger(__name__)

# PERFORMANCE: Maximum events to keep in memory
MAX_EVENTS_IN_MEMORY = 1000

# Output price per token (USD)
MODEL_PRICING: dict[str, dict[str, float]] = {
    "claude-3-5-sonnet-20241022": {"input": 3.0 / 1_000_000, "output": 15.0 / 1_000_000},
    "claude-3-haiku-20240307": {"input": 0.25 / 1_000_000, "output": 1.25 / 1_000_000},
    "gpt-4-turbo": {"input": 10.0 / 1_000_000, "output": 30.0 / 1_000_000},
}
DEFAULT_PRICING_MODEL = "claude-3-haiku-20240307"

_ID_PATTERN = re.compile(r"\b\d{9,12}\b")
_LOG_PII_PATTERNS = {
    name: DEFAULT_PII_PATTERNS[name] for name in ("email", "ssn")
}


def calculate_cost(model: str | None, tokens: int) -> float:
    """Estimate cost of a call, falling back to the cheapest model's price."""
    pricing = MODEL_PRICING.get(model or "", MODEL_PRICING[DEFAULT_PRICING_MODEL])
    return tokens * pricing["output"]


def sanitize(text: str) -> str:
    """Scrub emails, SSNs and long numeric identifiers before logging."""
    scrubbed, _ = scrub_pii(text, _LOG_PII_PATTERNS)
    return _ID_PATTERN.sub("[ID]", scrubbed)


class InstrumentationEvent(BaseModel):
    """A structured log record for one model interaction."""

    trace_id: str | None = None
    type: Literal["prompt", "output", "error"]
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    model: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class MetricsSnapshot(BaseModel):
    """Aggregate call metrics."""

    total_requests: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    total_latency_ms: float = 0.0
    errors: int = 0
    average_latency_ms: float = 0.0
    error_rate: float = 0.0


class AIInstrumentation:
    """Emits PII-scrubbed call records and keeps running totals.

    Logging is an observability side effect: a failure while building or
    emitting a record is logged and never propagated to the caller.
    """

    def __init__(self, max_events: int = MAX_EVENTS_IN_MEMORY):
        self.total_requests = 0
        self.total_tokens = 0
        self.total_cost = 0.0
        self.total_latency_ms = 0.0
        self.errors = 0
        self.recent_events: deque[InstrumentationEvent] = deque(maxlen=max_events)

    def log_prompt(
        self,
        trace_id: str | None,
        prompt: str,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> None:
        self._emit(InstrumentationEvent(
            trace_id=trace_id,
            type="prompt",
            model=model,
            data={
                "temperature": temperature,
                "max_tokens": max_tokens,
                "prompt_length": len(prompt),
                "prompt": sanitize(prompt),
            },
        ))

    def log_output(
        self,
        trace_id: str | None,
        output: str,
        model: str | None = None,
        tokens_used: int = 0,
        latency_ms: float = 0.0,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
    ) -> float:
        """Record a completed call and return its estimated cost."""
        cost = calculate_cost(model, tokens_used)

        self.total_requests += 1
        self.total_tokens += tokens_used
        self.total_cost += cost
        self.total_latency_ms += latency_ms

        self._emit(InstrumentationEvent(
            trace_id=trace_id,
            type="output",
            model=model,
            data={
                "tokens_used": tokens_used,
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "cost": cost,
                "latency_ms": latency_ms,
                "output_length": len(output),
                "output": sanitize(output),
            },
        ))
        return cost

    def log_error(
        self,
        trace_id: str | None,
        error: BaseException,
        model: str | None = None,
        retry_count: int | None = None,
    ) -> None:
        self.errors += 1
        self._emit(InstrumentationEvent(
            trace_id=trace_id,
            type="error",
            model=model,
            data={
                "error": sanitize(str(error)),
                "error_type": type(error).__name__,
                "code": getattr(error, "code", None),
                "retry_count": retry_count,
            },
        ), level=logging.ERROR)

    def get_metrics(self) -> MetricsSnapshot:
        """Get totals plus average latency and error rate.

        Every attempt ends in exactly one output or error record, so the
        error rate is failed attempts over all attempts.
        """
        requests = self.total_requests
        attempts = requests + self.errors
        return MetricsSnapshot(
            total_requests=requests,
            total_tokens=self.total_tokens,
            total_cost=self.total_cost,
            total_latency_ms=self.total_latency_ms,
            errors=self.errors,
            average_latency_ms=self.total_latency_ms / requests if requests > 0 else 0.0,
            error_rate=self.errors / attempts if attempts > 0 else 0.0,
        )

    def _emit(self, event: InstrumentationEvent, level: int = logging.INFO) -> None:
        try:
            self.recent_events.append(event)
            # Log as structured JSON for easy parsing
            logger.log(level, event.model_dump_json())
        except Exception:
            logger.exception("Failed to emit instrumentation event")
