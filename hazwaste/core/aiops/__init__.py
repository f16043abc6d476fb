"""AI operations control plane for the waste compliance backend.

Sits between application code and the model endpoint:
- Caching, retry with backoff and shadow execution (reliability)
- Prompt and output screening (safety)
- Cost-aware routing and daily budgets (optimizer)
- Drift detection and retraining triggers (lifecycle)
- Multi-step agent workflows (orchestrator)
- Structured call logging and totals (instrumentation)
"""

from hazwaste.core.aiops.client import CompletionClient
from hazwaste.core.aiops.config import AIOpsSettings, configure_logging
from hazwaste.core.aiops.control_plane import (
    ClassificationResult,
    ControlPlane,
    WasteClassification,
    build_control_plane,
)
from hazwaste.core.aiops.errors import (
    AgentNotFoundError,
    AIServiceError,
    AuthenticationError,
    BudgetExceededError,
    InvalidRequestError,
    ModelOverloadedError,
    NoModelAvailableError,
    RateLimitError,
    RequestTimeoutError,
    SafetyViolationError,
    ServerError,
    StructuredOutputError,
    WorkflowError,
    WorkflowNotFoundError,
    WorkflowStepError,
    error_from_response,
    is_retryable,
)
from hazwaste.core.aiops.evaluation import AIEvaluator, EvaluationCase, ExpectedMatch
from hazwaste.core.aiops.instrumentation import AIInstrumentation, MetricsSnapshot
from hazwaste.core.aiops.lifecycle import LifecycleManager
from hazwaste.core.aiops.optimizer import ModelOptimizer, RoutingRequest
from hazwaste.core.aiops.orchestrator import (
    ExecutionStatus,
    WorkflowExecution,
    WorkflowOrchestrator,
    WorkflowStep,
)
from hazwaste.core.aiops.reliability import ReliabilityExecutor
from hazwaste.core.aiops.safety import SafetyFilter, scrub_pii
from hazwaste.core.aiops.transport import AnthropicTransport, MockTransport
from hazwaste.core.aiops.types import (
    CompletionOptions,
    CompletionRequest,
    CompletionResult,
    Issue,
    IssueType,
    ReliabilityOptions,
    SafetyReport,
    Settled,
    Severity,
)

__all__ = [
    # Components
    "AIInstrumentation",
    "SafetyFilter",
    "ReliabilityExecutor",
    "ModelOptimizer",
    "LifecycleManager",
    "WorkflowOrchestrator",
    "CompletionClient",
    "AIEvaluator",
    "AnthropicTransport",
    "MockTransport",
    # Wiring
    "AIOpsSettings",
    "configure_logging",
    "ControlPlane",
    "build_control_plane",
    "WasteClassification",
    "ClassificationResult",
    # Types
    "CompletionOptions",
    "CompletionRequest",
    "CompletionResult",
    "EvaluationCase",
    "ExecutionStatus",
    "ExpectedMatch",
    "Issue",
    "IssueType",
    "MetricsSnapshot",
    "ReliabilityOptions",
    "RoutingRequest",
    "SafetyReport",
    "Settled",
    "Severity",
    "WorkflowExecution",
    "WorkflowStep",
    "scrub_pii",
    # Errors
    "AIServiceError",
    "RateLimitError",
    "AuthenticationError",
    "InvalidRequestError",
    "ModelOverloadedError",
    "RequestTimeoutError",
    "ServerError",
    "SafetyViolationError",
    "BudgetExceededError",
    "StructuredOutputError",
    "NoModelAvailableError",
    "WorkflowError",
    "WorkflowNotFoundError",
    "AgentNotFoundError",
    "WorkflowStepError",
    "error_from_response",
    "is_retryable",
]
