"""Completion client: safety, caching, retries and instrumentation around a transport."""

from __future__ import annotations

import hashlib
import json
import logging
import time
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ValidationError

from hazwaste.core.aiops.errors import SafetyViolationError, StructuredOutputError
from hazwaste.core.aiops.instrumentation import AIInstrumentation
from hazwaste.core.aiops.reliability import ReliabilityExecutor
from hazwaste.core.aiops.safety import SafetyFilter
from hazwaste.core.aiops.types import (
    CompletionOptions,
    CompletionRequest,
    CompletionResult,
    IssueType,
    ReliabilityOptions,
    Transport,
)

logger = logging.getLogger(__name__)

STRUCTURED_SYSTEM_PROMPT = (
    "You are a precise data extraction system. Return ONLY valid JSON matching "
    "the schema. Do not include any explanatory text."
)
STRUCTURED_TEMPERATURE = 0.1

PostCallHook = Callable[[CompletionResult], None]


def make_trace_id() -> str:
    return f"trace-{int(time.time() * 1000)}"


def make_cache_key(request: CompletionRequest, model: str) -> str:
    """Derive a cache key from everything that shapes the response."""
    payload = json.dumps(
        [model, request.system, request.temperature, request.max_tokens, request.prompt],
    )
    return "claude-" + hashlib.sha256(payload.encode()).hexdigest()[:32]


def extract_json_object(text: str) -> dict[str, Any]:
    """Parse the first balanced JSON object embedded in ``text``.

    Raises:
        ValueError: If no JSON object can be decoded.
    """
    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            value, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            value = None
        if isinstance(value, dict):
            return value
        start = text.find("{", start + 1)
    raise ValueError("No JSON found in response")


class CompletionClient:
    """Front door for model completions.

    Each call screens the prompt, consults the cache, invokes the transport
    with retry, records the call and screens the output. Unsafe prompts are
    rejected before anything reaches the network.
    """

    def __init__(
        self,
        transport: Transport,
        reliability: ReliabilityExecutor,
        safety: SafetyFilter,
        instrumentation: AIInstrumentation,
        model: str = "claude-3-5-sonnet-20241022",
        cache_ttl_seconds: float = 3600.0,
        post_call_hook: PostCallHook | None = None,
    ):
        self.transport = transport
        self.reliability = reliability
        self.safety = safety
        self.instrumentation = instrumentation
        self.model = model
        self.cache_ttl_seconds = cache_ttl_seconds
        self.post_call_hook = post_call_hook

    async def generate_completion(
        self,
        prompt: str,
        options: CompletionOptions | None = None,
    ) -> CompletionResult:
        """Generate a completion for a prompt.

        Raises:
            SafetyViolationError: If the prompt fails the input screen.
            AIServiceError: If the endpoint call fails after retries.
        """
        options = options or CompletionOptions()
        trace_id = options.trace_id or make_trace_id()
        model = options.model or self.model

        if options.enable_safety:
            report = self.safety.filter_input(prompt, trace_id=trace_id)
            if not report.safe:
                raise SafetyViolationError(
                    "Input rejected by safety layer", report.issues_as_dicts(),
                )
            prompt = report.text

        request = CompletionRequest(
            prompt=prompt,
            system=options.system_prompt,
            temperature=options.temperature,
            max_tokens=options.max_tokens,
            trace_id=trace_id,
            enable_cache=options.enable_cache,
            enable_safety=options.enable_safety,
        )
        attempts = 0

        async def call_model() -> CompletionResult:
            nonlocal attempts
            attempts += 1
            self.instrumentation.log_prompt(
                trace_id, request.prompt, model,
                temperature=request.temperature, max_tokens=request.max_tokens,
            )
            try:
                result = await self.transport(request, model)
            except Exception as e:
                self.instrumentation.log_error(trace_id, e, model, retry_count=attempts - 1)
                raise

            self.instrumentation.log_output(
                trace_id,
                result.text,
                result.model,
                tokens_used=result.total_tokens,
                latency_ms=result.latency_ms,
                input_tokens=result.input_tokens,
                output_tokens=result.output_tokens,
            )

            if request.enable_safety:
                output_report = self.safety.filter_output(result.text, trace_id=trace_id)
                if output_report.has_issue(IssueType.PII_LEAKED):
                    logger.error("PII leaked in output: trace=%s", trace_id)
                result = result.model_copy(update={"text": output_report.text})
            return result

        outcome = await self.reliability.execute_with_reliability(
            call_model,
            ReliabilityOptions(
                trace_id=trace_id,
                cache_key=make_cache_key(request, model) if options.enable_cache else None,
                cache_ttl_seconds=self.cache_ttl_seconds,
                enable_cache=options.enable_cache,
                enable_retry=True,
            ),
        )

        result = outcome.result.model_copy(
            update={"from_cache": outcome.from_cache, "trace_id": trace_id},
        )
        if self.post_call_hook is not None:
            self.post_call_hook(result)
        return result

    async def generate_structured_completion(
        self,
        prompt: str,
        schema: dict[str, Any] | type[BaseModel],
        options: CompletionOptions | None = None,
    ) -> tuple[dict[str, Any], CompletionResult]:
        """Generate JSON matching ``schema`` and return it with the raw result.

        ``schema`` may be a JSON schema dict or a pydantic model class; a model
        class also validates the parsed object.

        Raises:
            StructuredOutputError: If the response holds no valid JSON object.
        """
        options = options or CompletionOptions()
        schema_dict = schema.model_json_schema() if isinstance(schema, type) else schema
        full_prompt = (
            f"{prompt}\n\nReturn your response as JSON matching this schema:\n"
            f"{json.dumps(schema_dict, indent=2)}"
        )
        structured_options = options.model_copy(update={
            "system_prompt": options.system_prompt or STRUCTURED_SYSTEM_PROMPT,
            "temperature": STRUCTURED_TEMPERATURE,
        })

        result = await self.generate_completion(full_prompt, structured_options)

        try:
            data = extract_json_object(result.text)
            if isinstance(schema, type):
                data = schema.model_validate(data).model_dump()
        except (ValueError, ValidationError) as e:
            logger.error(
                "Failed to parse structured output: trace=%s error=%s", result.trace_id, e,
            )
            raise StructuredOutputError(response=result.text) from e

        return data, result

    async def generate_structured_output(
        self,
        prompt: str,
        schema: dict[str, Any] | type[BaseModel],
        options: CompletionOptions | None = None,
    ) -> dict[str, Any]:
        """Generate a completion and parse it as a JSON object."""
        data, _ = await self.generate_structured_completion(prompt, schema, options)
        return data
