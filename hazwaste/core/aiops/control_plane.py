"""Startup wiring for the control plane and the waste-classification pipeline.

The application builds one ``ControlPlane`` at startup and passes it to
whatever needs it; there are no module-level instances.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from hazwaste.core.aiops.client import CompletionClient
from hazwaste.core.aiops.config import AIOpsSettings
from hazwaste.core.aiops.errors import BudgetExceededError, SafetyViolationError
from hazwaste.core.aiops.evaluation import AIEvaluator
from hazwaste.core.aiops.instrumentation import AIInstrumentation
from hazwaste.core.aiops.lifecycle import LifecycleManager
from hazwaste.core.aiops.optimizer import ModelOptimizer, RoutingRequest
from hazwaste.core.aiops.orchestrator import (
    WorkflowExecution,
    WorkflowOrchestrator,
    WorkflowStep,
)
from hazwaste.core.aiops.reliability import ReliabilityExecutor
from hazwaste.core.aiops.safety import SafetyFilter
from hazwaste.core.aiops.transport import AnthropicTransport, MockTransport
from hazwaste.core.aiops.types import CompletionOptions, Transport

logger = logging.getLogger(__name__)

DAILY_BUDGET = "daily-ai-budget"
ACCURACY_DETECTOR = "accuracy-drift"
CLASSIFICATION_TEST_SET = "waste-classification-v1"
WASTE_PROFILE_WORKFLOW = "complete-waste-profile"

# Routing names -> endpoint model ids
MODEL_IDS: dict[str, str] = {
    "claude-sonnet": "claude-3-5-sonnet-20241022",
    "claude-haiku": "claude-3-haiku-20240307",
}

LONG_DOCUMENT_CHARS = 50_000
LOW_CONFIDENCE_THRESHOLD = 0.7
LOW_CONFIDENCE_MIN_SAMPLES = 10

# Static treatment facility catalogue
FACILITIES: list[dict[str, Any]] = [
    {"id": "fac-1", "name": "SafeWaste LLC", "accepts_codes": ["D001", "D002"], "price": 2.5},
    {"id": "fac-2", "name": "HazardPro Inc", "accepts_codes": ["D001", "D003", "D008", "D009"], "price": 3.0},
    {"id": "fac-3", "name": "EnviroCycle Partners", "accepts_codes": ["D002", "D009"], "price": 2.8},
]
# Billed quantity used for route cost estimates
DEFAULT_QUANTITY_KG = 100


class WasteClassification(BaseModel):
    """Schema requested from the model for a lab report."""

    model_config = ConfigDict(populate_by_name=True)

    waste_code: str | None = Field(default=None, alias="wasteCode")
    category: str = "unknown"
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    chemicals_detected: list[str] = Field(default_factory=list, alias="chemicalsDetected")
    reasoning: str = ""


class ClassificationResult(WasteClassification):
    trace_id: str
    model: str
    from_cache: bool = False
    safety_checks: dict[str, list[dict[str, Any]]] = Field(default_factory=dict)


@dataclass
class ControlPlane:
    """Process-lifetime container for every control plane component."""

    settings: AIOpsSettings
    transport: Transport
    instrumentation: AIInstrumentation
    safety: SafetyFilter
    reliability: ReliabilityExecutor
    optimizer: ModelOptimizer
    lifecycle: LifecycleManager
    orchestrator: WorkflowOrchestrator
    evaluator: AIEvaluator
    client: CompletionClient

    # =========================================================================
    # Setup
    # =========================================================================

    def setup_waste_classification(self) -> None:
        """Register models, routing, budget, drift tracking and test cases."""
        logger.info("Setting up AIOps for waste classification")

        self.optimizer.register_model(
            "claude-sonnet",
            cost_per_token=0.000015,
            avg_latency_ms=2000,
            max_tokens=200_000,
            capabilities=["long-context", "document-analysis"],
            endpoint=self.settings.model_endpoint,
        )
        self.optimizer.register_model(
            "claude-haiku",
            cost_per_token=0.00000125,
            avg_latency_ms=800,
            max_tokens=200_000,
            capabilities=["fast-inference"],
            endpoint=self.settings.model_endpoint,
        )

        self.optimizer.add_routing_rule(
            lambda req: req.document_size > LONG_DOCUMENT_CHARS, "claude-sonnet", priority=100,
        )
        self.optimizer.add_routing_rule(
            lambda req: req.prioritize_latency, "claude-haiku", priority=50,
        )

        self.optimizer.set_budget(
            DAILY_BUDGET,
            max_cost_per_day=100.0,
            max_requests_per_day=10_000,
            max_tokens_per_day=50_000_000,
        )

        self.lifecycle.register_drift_detector(
            ACCURACY_DETECTOR,
            metric_name="classification_accuracy",
            window_size=1000,
            threshold=0.15,
            check_interval_seconds=300,
        )
        self.lifecycle.register_retraining_trigger("low-confidence", self._low_confidence)

        self.evaluator.register_test_set(CLASSIFICATION_TEST_SET, [
            {
                "id": "test-1",
                "input": "Chemical: Acetone, Flash Point: 0°F, Quantity: 50kg",
                "expected": {"type": "contains", "values": ["D001", "ignitable"]},
                "threshold": 0.9,
            },
            {
                "id": "test-2",
                "input": "Chemical: Mercury, Concentration: 250ppm",
                "expected": {"type": "contains", "values": ["D009", "toxic"]},
                "threshold": 0.9,
            },
        ])

        self._setup_waste_profile_workflow()
        logger.info("AIOps setup complete")

    def _low_confidence(self) -> bool:
        detector = self.lifecycle.get_detector(ACCURACY_DETECTOR)
        if detector is None or len(detector.samples) < LOW_CONFIDENCE_MIN_SAMPLES:
            return False
        recent = list(detector.samples)[-LOW_CONFIDENCE_MIN_SAMPLES:]
        return sum(s.value for s in recent) / len(recent) < LOW_CONFIDENCE_THRESHOLD

    def _setup_waste_profile_workflow(self) -> None:
        async def classify(request: dict[str, Any], _context: dict[str, Any]) -> dict[str, Any]:
            result = await self.classify_waste(request["lab_report"], request["user_id"])
            return result.model_dump()

        def match_facilities(classification: dict[str, Any], _context: dict[str, Any]) -> dict[str, Any]:
            code = classification.get("waste_code")
            return {"facilities": [f for f in FACILITIES if code in f["accepts_codes"]]}

        def optimize_route(facilities: list[dict[str, Any]], _context: dict[str, Any]) -> dict[str, Any]:
            if not facilities:
                raise ValueError("No facility accepts this waste code")
            best = min(facilities, key=lambda f: f["price"])
            return {
                "facility": best,
                "estimated_cost": best["price"] * DEFAULT_QUANTITY_KG,
                "route": "direct-transport",
            }

        self.orchestrator.register_agent("waste-classifier", classify)
        self.orchestrator.register_agent("facility-matcher", match_facilities)
        self.orchestrator.register_agent("route-optimizer", optimize_route)

        self.orchestrator.define_workflow(WASTE_PROFILE_WORKFLOW, [
            WorkflowStep(name="classify-waste", agent="waste-classifier"),
            WorkflowStep(
                name="find-facilities",
                agent="facility-matcher",
                input_selector=lambda ctx: ctx,
                condition=lambda ctx: ctx.get("waste_code") is not None,
            ),
            WorkflowStep(
                name="optimize-route",
                agent="route-optimizer",
                input_selector=lambda ctx: ctx["facilities"],
            ),
        ])

    # =========================================================================
    # Pipeline
    # =========================================================================

    async def classify_waste(self, lab_report: str, user_id: str) -> ClassificationResult:
        """Classify a lab report into an EPA waste code.

        Raises:
            SafetyViolationError: If the report fails the input screen.
            BudgetExceededError: If the daily budget refuses the request.
            StructuredOutputError: If the model response is not valid JSON.
        """
        trace_id = f"trace-{int(time.time() * 1000)}-{user_id}"
        logger.info("Starting waste classification: trace=%s", trace_id)

        input_check = self.safety.filter_input(lab_report, trace_id=trace_id)
        if not input_check.safe:
            logger.error("Input failed safety check: trace=%s", trace_id)
            raise SafetyViolationError("Input contains unsafe content", input_check.issues_as_dicts())

        estimated_tokens = len(lab_report) // 4
        selected = self.optimizer.select_optimal_model(RoutingRequest(
            estimated_tokens=estimated_tokens,
            requires_capability="document-analysis",
            budget=0.5,
            document_size=len(lab_report),
        ))
        descriptor = self.optimizer.get_model(selected)
        cost_per_token = descriptor.cost_per_token if descriptor else 0.0

        budget_check = self.optimizer.check_budget(
            DAILY_BUDGET,
            estimated_cost=estimated_tokens * cost_per_token,
            estimated_tokens=estimated_tokens,
        )
        if not budget_check.allowed:
            logger.error("Budget limit exceeded: trace=%s reason=%s", trace_id, budget_check.reason)
            raise BudgetExceededError(DAILY_BUDGET, budget_check.reason or "unknown")

        data, completion = await self.client.generate_structured_completion(
            f"Classify the hazardous waste described in this lab report:\n\n{input_check.text}",
            WasteClassification,
            CompletionOptions(trace_id=trace_id, model=MODEL_IDS.get(selected, selected)),
        )
        classification = WasteClassification.model_validate(data)

        output_check = self.safety.filter_output(
            json.dumps(classification.model_dump(by_alias=True)), trace_id=trace_id,
        )
        if not output_check.safe:
            logger.error("Output failed safety check: trace=%s", trace_id)

        self.lifecycle.record_metric(
            ACCURACY_DETECTOR, classification.confidence, {"waste_code": classification.waste_code},
        )
        if not completion.from_cache:
            self.optimizer.record_usage(
                selected,
                cost=completion.total_tokens * cost_per_token,
                tokens=completion.total_tokens,
                latency_ms=completion.latency_ms,
            )

        result = ClassificationResult(
            **classification.model_dump(),
            trace_id=trace_id,
            model=selected,
            from_cache=completion.from_cache,
            safety_checks={
                "input": input_check.issues_as_dicts(),
                "output": output_check.issues_as_dicts(),
            },
        )
        logger.info(
            "Classification completed: trace=%s waste_code=%s confidence=%.2f",
            trace_id, result.waste_code, result.confidence,
        )
        return result

    async def run_waste_profile_workflow(self, lab_report: str, user_id: str) -> WorkflowExecution:
        """Classify a report, match facilities and pick the cheapest route."""
        return await self.orchestrator.execute_workflow(
            WASTE_PROFILE_WORKFLOW, {"lab_report": lab_report, "user_id": user_id},
        )

    # =========================================================================
    # Reporting
    # =========================================================================

    def get_metrics(self) -> dict[str, Any]:
        """Aggregate every pull-based accessor into one snapshot."""
        return {
            "instrumentation": self.instrumentation.get_metrics().model_dump(),
            "cache": self.reliability.get_cache_stats(),
            "model_stats": self.optimizer.get_model_stats(),
            "budget_status": self.optimizer.get_budget_status(),
            "drift_report": [e.model_dump(mode="json") for e in self.lifecycle.get_drift_report()],
            "retraining_status": [
                s.model_dump(mode="json") for s in self.lifecycle.get_retraining_status()
            ],
        }

    async def aclose(self) -> None:
        await self.reliability.drain_shadows()
        aclose = getattr(self.transport, "aclose", None)
        if aclose is not None:
            await aclose()


def build_control_plane(
    settings: AIOpsSettings | None = None,
    transport: Transport | None = None,
) -> ControlPlane:
    """Construct and wire fresh instances of every component."""
    settings = settings or AIOpsSettings()
    if transport is None:
        transport = MockTransport() if settings.mock_mode else AnthropicTransport(settings)

    instrumentation = AIInstrumentation()
    safety = SafetyFilter(toxicity_threshold=settings.toxicity_threshold)
    reliability = ReliabilityExecutor(
        max_retries=settings.max_retries,
        base_delay_seconds=settings.base_delay_seconds,
        single_flight=settings.single_flight,
    )
    client = CompletionClient(
        transport=transport,
        reliability=reliability,
        safety=safety,
        instrumentation=instrumentation,
        model=settings.model_name,
        cache_ttl_seconds=settings.cache_ttl_seconds,
    )

    return ControlPlane(
        settings=settings,
        transport=transport,
        instrumentation=instrumentation,
        safety=safety,
        reliability=reliability,
        optimizer=ModelOptimizer(),
        lifecycle=LifecycleManager(),
        orchestrator=WorkflowOrchestrator(),
        evaluator=AIEvaluator(),
        client=client,
    )
