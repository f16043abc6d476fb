"""Error taxonomy for the AI operations control plane.

Every error raised toward callers is an ``AIServiceError`` carrying a
machine-readable ``code`` and a ``retryable`` flag, so that callers can
decide whether repeating the whole call is sensible.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Mapping
from typing import Any

import httpx


class AIServiceError(Exception):
    """Base error for AI service operations."""

    def __init__(
        self,
        message: str,
        code: str = "AI_ERROR",
        status_code: int = 500,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.retryable = retryable
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "code": self.code,
            "status_code": self.status_code,
            "retryable": self.retryable,
            "details": self.details,
        }


class RateLimitError(AIServiceError):
    """Raised when the model endpoint rate-limits us."""

    def __init__(self, message: str, retry_after: int = 60):
        super().__init__(
            message,
            code="RATE_LIMIT_EXCEEDED",
            status_code=429,
            retryable=True,
            details={"retry_after": retry_after},
        )
        self.retry_after = retry_after


class AuthenticationError(AIServiceError):
    """Raised when the API key is missing or rejected."""

    def __init__(self, message: str = "Invalid API key or authentication failed."):
        super().__init__(message, code="AUTHENTICATION_FAILED", status_code=401)


class InvalidRequestError(AIServiceError):
    """Raised when the endpoint rejects the request body."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, code="INVALID_REQUEST", status_code=400, details=details)


class ModelOverloadedError(AIServiceError):
    """Raised when the model is temporarily overloaded."""

    def __init__(self, message: str = "AI service is temporarily overloaded. Please try again."):
        super().__init__(message, code="MODEL_OVERLOADED", status_code=529, retryable=True)


class RequestTimeoutError(AIServiceError):
    """Raised when a single attempt exceeds the transport timeout."""

    def __init__(self, message: str, timeout_seconds: float | None = None):
        super().__init__(
            message,
            code="REQUEST_TIMEOUT",
            status_code=408,
            retryable=True,
            details={"timeout_seconds": timeout_seconds},
        )


class ServerError(AIServiceError):
    """Raised on 5xx responses from the model endpoint."""

    def __init__(self, status_code: int, response_text: str = ""):
        super().__init__(
            "AI service encountered an internal error.",
            code="SERVER_ERROR",
            status_code=status_code,
            retryable=True,
            details={"response_text": response_text},
        )


class SafetyViolationError(AIServiceError):
    """Raised before any network call when input fails the safety filter."""

    def __init__(self, message: str, issues: list[dict[str, Any]]):
        super().__init__(
            message,
            code="SAFETY_VIOLATION",
            status_code=400,
            details={"issues": issues},
        )
        self.issues = issues


class BudgetExceededError(AIServiceError):
    """Raised when a budget check refuses a request."""

    def __init__(self, budget: str, reason: str):
        super().__init__(
            f"Budget limit exceeded: {reason}",
            code="BUDGET_EXCEEDED",
            status_code=429,
            details={"budget": budget, "reason": reason},
        )
        self.reason = reason


class StructuredOutputError(AIServiceError):
    """Raised when a structured completion does not contain valid JSON."""

    def __init__(self, message: str = "Invalid JSON response from model", response: str = ""):
        super().__init__(
            message,
            code="INVALID_STRUCTURED_OUTPUT",
            status_code=502,
            details={"response_preview": response[:200]},
        )


class NoModelAvailableError(AIServiceError):
    """Raised when model selection is attempted with an empty registry."""

    def __init__(self):
        super().__init__("No models registered", code="NO_MODEL_AVAILABLE", status_code=503)


class WorkflowError(Exception):
    """Base error for workflow orchestration."""


class WorkflowNotFoundError(WorkflowError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Workflow not found: {name}")


class AgentNotFoundError(WorkflowError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Agent not found: {name}")


class WorkflowStepError(WorkflowError):
    """Raised when a workflow step exhausts its retries."""

    def __init__(self, execution_id: str, step_name: str, cause: BaseException):
        self.execution_id = execution_id
        self.step_name = step_name
        self.cause = cause
        super().__init__(f"Step {step_name} failed: {cause}")


def error_from_response(
    status: int,
    headers: Mapping[str, str] | None = None,
    response_text: str = "",
) -> AIServiceError:
    """Classify a non-2xx model endpoint response into a typed error."""
    headers = headers or {}

    if status == 429:
        retry_after = headers.get("retry-after") or "60"
        try:
            seconds = int(retry_after)
        except ValueError:
            seconds = 60
        return RateLimitError("Rate limit exceeded. Please try again later.", seconds)

    if status == 401:
        return AuthenticationError()

    if status == 400:
        try:
            details = json.loads(response_text)
            if not isinstance(details, dict):
                details = {"message": details}
        except json.JSONDecodeError:
            details = {"message": response_text}
        return InvalidRequestError("Invalid request to AI service.", details)

    if status == 408:
        return RequestTimeoutError("AI service request timed out.")

    if status == 529:
        return ModelOverloadedError()

    if status >= 500:
        return ServerError(status, response_text)

    return AIServiceError(
        f"AI service error: {status}",
        status_code=status,
        details={"response_text": response_text},
    )


def is_retryable(error: BaseException) -> bool:
    """Determine whether a failed attempt should be retried."""
    if isinstance(error, AIServiceError):
        return error.retryable

    # Network and transport failures are generally transient
    return isinstance(
        error,
        (httpx.TransportError, asyncio.TimeoutError, ConnectionError, TimeoutError),
    )
