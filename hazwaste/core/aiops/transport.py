"""Network transports for the model endpoint.

A transport performs exactly one HTTP call per invocation. Retries,
caching and safety screening are the completion client's concern.
"""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any

import httpx

from hazwaste.core.aiops.config import AIOpsSettings
from hazwaste.core.aiops.errors import (
    AuthenticationError,
    RequestTimeoutError,
    ServerError,
    error_from_response,
)
from hazwaste.core.aiops.types import CompletionRequest, CompletionResult

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"


class AnthropicTransport:
    """Calls the Anthropic messages endpoint over HTTPS."""

    def __init__(
        self,
        settings: AIOpsSettings | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings or AIOpsSettings()
        if not self.settings.has_api_key:
            raise AuthenticationError("AI_MODEL_API_KEY is required")

        self.endpoint = self.settings.model_endpoint.rstrip("/")
        self.timeout = self.settings.model_timeout_seconds
        self._client = client or httpx.AsyncClient(timeout=self.timeout)

    async def __call__(self, request: CompletionRequest, model: str) -> CompletionResult:
        start = time.perf_counter()
        try:
            response = await self._client.post(
                f"{self.endpoint}/messages",
                json=request.to_body(model),
                headers={
                    "content-type": "application/json",
                    "x-api-key": self.settings.model_api_key,
                    "anthropic-version": ANTHROPIC_VERSION,
                },
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(
                f"AI service request timed out after {self.timeout:.0f}s", self.timeout,
            ) from e

        if response.is_error:
            raise error_from_response(response.status_code, response.headers, response.text)

        latency_ms = (time.perf_counter() - start) * 1000

        try:
            data = response.json()
            text = data["content"][0]["text"]
            usage = data.get("usage") or {}
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ServerError(response.status_code, response.text[:500]) from e

        return CompletionResult(
            text=text,
            model=data.get("model", model),
            input_tokens=usage.get("input_tokens", 0),
            output_tokens=usage.get("output_tokens", 0),
            latency_ms=latency_ms,
            trace_id=request.trace_id,
        )

    async def aclose(self) -> None:
        await self._client.aclose()


# =============================================================================
# Mock transport
# =============================================================================

# (pattern, waste code, category, chemical name, reasoning)
_MOCK_RULES: list[tuple[re.Pattern[str], str, str, str, str]] = [
    (
        re.compile(r"acetone|flash\s*point", re.IGNORECASE),
        "D001", "ignitable", "Acetone",
        "Flash point below 140°F meets the ignitability characteristic",
    ),
    (
        re.compile(r"sulfuric|hydrochloric|pH:\s*[01]\.", re.IGNORECASE),
        "D002", "corrosive", "Sulfuric Acid",
        "pH at or below 2.0 meets the corrosivity characteristic",
    ),
    (
        re.compile(r"sodium metal|water[- ]reactive|reacts violently", re.IGNORECASE),
        "D003", "reactive", "Sodium",
        "Reacts violently with water and generates flammable gas",
    ),
    (
        re.compile(r"mercury", re.IGNORECASE),
        "D009", "toxic", "Mercury",
        "Mercury concentration exceeds the TCLP regulatory level",
    ),
    (
        re.compile(r"\blead\b", re.IGNORECASE),
        "D008", "toxic", "Lead",
        "Lead concentration exceeds the TCLP regulatory level",
    ),
]


def _estimate_tokens(text: str) -> int:
    # Roughly 4 characters per token
    return max(1, len(text) // 4)


class MockTransport:
    """Deterministic offline transport for development and tests.

    Returns a waste-classification JSON document derived from keywords in
    the prompt, and counts every call it receives.
    """

    def __init__(self, latency_ms: float = 0.0):
        self.latency_ms = latency_ms
        self.calls: list[tuple[CompletionRequest, str]] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def classify(self, text: str) -> dict[str, Any]:
        for pattern, code, category, chemical, reasoning in _MOCK_RULES:
            if pattern.search(text):
                return {
                    "wasteCode": code,
                    "category": category,
                    "confidence": 0.92,
                    "chemicalsDetected": [chemical],
                    "reasoning": reasoning,
                }
        return {
            "wasteCode": None,
            "category": "non-hazardous",
            "confidence": 0.5,
            "chemicalsDetected": [],
            "reasoning": "No listed or characteristic hazardous constituents found",
        }

    async def __call__(self, request: CompletionRequest, model: str) -> CompletionResult:
        self.calls.append((request, model))
        text = json.dumps(self.classify(request.prompt))
        logger.debug("Mock completion served: trace=%s model=%s", request.trace_id, model)
        return CompletionResult(
            text=text,
            model=model,
            input_tokens=_estimate_tokens(request.prompt),
            output_tokens=_estimate_tokens(text),
            latency_ms=self.latency_ms,
            trace_id=request.trace_id,
        )
