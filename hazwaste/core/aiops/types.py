"""Core types for the AI operations control plane."""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


class Severity(str, Enum):
    """Severity of a safety issue."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class IssueType(str, Enum):
    """Kinds of issues raised by the safety filter."""

    JAILBREAK_ATTEMPT = "jailbreak_attempt"
    PII_DETECTED = "pii_detected"
    PII_LEAKED = "pii_leaked"
    TOXICITY = "toxicity"
    MODEL_REFUSAL = "model_refusal"


class Issue(BaseModel):
    """A single finding from the safety filter."""

    type: IssueType
    severity: Severity
    detail: dict[str, Any] = Field(default_factory=dict)


class SafetyReport(BaseModel):
    """Result of screening a piece of text."""

    safe: bool = True
    issues: list[Issue] = Field(default_factory=list)
    text: str = Field(description="Input or output text after PII scrubbing")

    def has_issue(self, issue_type: IssueType) -> bool:
        return any(issue.type == issue_type for issue in self.issues)

    def issues_as_dicts(self) -> list[dict[str, Any]]:
        return [issue.model_dump(mode="json") for issue in self.issues]


class CompletionOptions(BaseModel):
    """Per-call options for the completion client."""

    trace_id: str | None = None
    model: str | None = Field(default=None, description="Overrides the client default model")
    temperature: float = Field(default=0.3, ge=0.0, le=1.0)
    max_tokens: int = Field(default=4096, gt=0)
    system_prompt: str | None = None
    enable_cache: bool = True
    enable_safety: bool = True


class CompletionRequest(BaseModel):
    """A single request to the model endpoint."""

    model_config = ConfigDict(frozen=True)

    prompt: str
    system: str | None = None
    temperature: float = 0.3
    max_tokens: int = 4096
    trace_id: str
    enable_cache: bool = True
    enable_safety: bool = True

    def to_body(self, model: str) -> dict[str, Any]:
        """Build the messages API request body."""
        body: dict[str, Any] = {
            "model": model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": [{"role": "user", "content": self.prompt}],
        }
        if self.system:
            body["system"] = self.system
        return body


class CompletionResult(BaseModel):
    """Response from the model endpoint."""

    text: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: float = 0.0
    trace_id: str | None = None
    from_cache: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


# The injected network call: (request, model name) -> result
Transport = Callable[[CompletionRequest, str], Awaitable[CompletionResult]]


@dataclass
class CacheEntry:
    """A cached operation result."""

    key: str
    value: Any
    expires_at: float
    created_at: float
    hit_count: int = 0

    def is_expired(self, now: float | None = None) -> bool:
        return (now if now is not None else time.time()) > self.expires_at


@dataclass
class ReliabilityOptions:
    """Options for a single reliable execution."""

    trace_id: str | None = None
    cache_key: str | None = None
    cache_ttl_seconds: float = 3600.0
    enable_cache: bool = True
    enable_retry: bool = True
    enable_shadow: bool = False
    shadow_operation: Callable[[], Awaitable[Any]] | None = None


@dataclass
class ExecutionOutcome(Generic[T]):
    """Result of a reliable execution."""

    result: T
    from_cache: bool = False


@dataclass
class Settled:
    """Outcome of one item in a settle-all fan-out."""

    status: Literal["fulfilled", "rejected"]
    value: Any = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.status == "fulfilled"

    @classmethod
    def from_result(cls, result: Any) -> Settled:
        if isinstance(result, BaseException):
            return cls(status="rejected", error=result)
        return cls(status="fulfilled", value=result)


class ShadowComparison(BaseModel):
    """Comparison between a primary and a shadow result."""

    match: bool
    similarity: float


class ShadowRecord(BaseModel):
    """Recorded shadow execution, keyed by trace id."""

    trace_id: str | None = None
    primary_result: Any = None
    shadow_result: Any = None
    comparison: ShadowComparison
    latency_ms: float = 0.0
    timestamp: datetime = Field(default_factory=datetime.utcnow)
