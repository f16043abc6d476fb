"""Cost-aware model routing and budget enforcement.

Provides:
- A registry of model cost / latency / capability profiles
- Priority-ordered routing rules with hard-constraint checks
- Weighted cost/latency scoring as the routing fallback
- Named daily budgets with midnight reset
- Batched execution of pre-built requests
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal

from pydantic import BaseModel, Field

from hazwaste.core.aiops.errors import NoModelAvailableError
from hazwaste.core.aiops.types import Settled

logger = logging.getLogger(__name__)

# Tokens assumed when a request carries a cost budget but no token estimate
DEFAULT_ESTIMATED_TOKENS = 1000

PRIORITY_WEIGHT = 0.7
DEFAULT_WEIGHT = 0.3


class RoutingRequest(BaseModel):
    """Characteristics of a request used for model selection."""

    estimated_tokens: int | None = None
    requires_capability: str | None = None
    budget: float | None = Field(default=None, description="Max cost for this request (USD)")
    latency_budget_ms: float | None = None
    prioritize_cost: bool = False
    prioritize_latency: bool = False
    document_size: int = 0
    attributes: dict[str, Any] = Field(default_factory=dict)


@dataclass
class ModelDescriptor:
    """A registered model and its running usage counters."""

    name: str
    endpoint: str | None = None
    cost_per_token: float = 0.0
    avg_latency_ms: float = 1000.0
    max_tokens: int = 4096
    capabilities: list[str] = field(default_factory=list)
    request_count: int = 0
    total_cost: float = 0.0
    total_latency_ms: float = 0.0
    total_tokens: int = 0


@dataclass
class RoutingRule:
    """Routes matching requests to a specific model."""

    condition: Callable[[RoutingRequest], bool]
    model_name: str
    priority: int = 50


def next_local_midnight(now: datetime | None = None) -> datetime:
    """Get the start of the next local day."""
    now = now or datetime.now()
    tomorrow = now.date() + timedelta(days=1)
    return datetime(tomorrow.year, tomorrow.month, tomorrow.day)


@dataclass
class Budget:
    """Daily caps and accumulators for a named budget."""

    name: str
    max_cost_per_day: float | None = None
    max_requests_per_day: int | None = None
    max_tokens_per_day: int | None = None
    current_cost: float = 0.0
    current_requests: int = 0
    current_tokens: int = 0
    reset_at: datetime = field(default_factory=next_local_midnight)

    def reset(self, now: datetime | None = None) -> None:
        self.current_cost = 0.0
        self.current_requests = 0
        self.current_tokens = 0
        self.reset_at = next_local_midnight(now)


class BudgetCheck(BaseModel):
    """Result of a budget check."""

    allowed: bool
    reason: Literal["cost_limit", "token_limit", "request_limit"] | None = None


class ModelOptimizer:
    """Selects the cheapest adequate model and enforces daily budgets.

    Checking a budget and recording usage are separate calls; concurrent
    callers may both pass a check before either records usage.
    """

    def __init__(
        self,
        now: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._models: dict[str, ModelDescriptor] = {}
        self._rules: list[RoutingRule] = []
        self._budgets: dict[str, Budget] = {}
        self._now = now
        self._sleep = sleep

    # =========================================================================
    # Registry
    # =========================================================================

    def register_model(
        self,
        name: str,
        cost_per_token: float = 0.0,
        avg_latency_ms: float = 1000.0,
        max_tokens: int = 4096,
        capabilities: Sequence[str] = (),
        endpoint: str | None = None,
    ) -> ModelDescriptor:
        model = ModelDescriptor(
            name=name,
            endpoint=endpoint,
            cost_per_token=cost_per_token,
            avg_latency_ms=avg_latency_ms,
            max_tokens=max_tokens,
            capabilities=list(capabilities),
        )
        self._models[name] = model
        logger.info("Registered model: %s", name)
        return model

    def get_model(self, name: str) -> ModelDescriptor | None:
        return self._models.get(name)

    def add_routing_rule(
        self,
        condition: Callable[[RoutingRequest], bool],
        model_name: str,
        priority: int = 50,
    ) -> None:
        self._rules.append(RoutingRule(condition=condition, model_name=model_name, priority=priority))
        # Stable sort keeps insertion order among equal priorities
        self._rules.sort(key=lambda r: r.priority, reverse=True)
        logger.info("Added routing rule for %s with priority %d", model_name, priority)

    # =========================================================================
    # Selection
    # =========================================================================

    def select_optimal_model(self, request: RoutingRequest | None = None) -> str:
        """Pick a model for a request.

        Routing rules are tried in descending priority; the first rule whose
        condition matches and whose model satisfies the request's hard
        constraints wins. Otherwise qualifying models are scored on cost and
        latency. If nothing qualifies, the first registered model is used.
        """
        request = request or RoutingRequest()
        if not self._models:
            raise NoModelAvailableError()

        for rule in self._rules:
            if not rule.condition(request):
                continue
            model = self._models.get(rule.model_name)
            if model is not None and self._meets_constraints(model, request):
                logger.info("Model selected via routing rule: %s", rule.model_name)
                return rule.model_name

        candidates = [m for m in self._models.values() if self._meets_constraints(m, request)]
        if not candidates:
            default = next(iter(self._models))
            logger.warning("No models meet constraints, using default: %s", default)
            return default

        scored = [(self._calculate_score(m, request, candidates), m.name) for m in candidates]
        # Stable sort: ties resolve to registration order
        scored.sort(key=lambda item: item[0], reverse=True)
        best_score, best_name = scored[0]

        logger.info(
            "Model selected via scoring: %s score=%.3f candidates=%d",
            best_name, best_score, len(candidates),
        )
        return best_name

    def _meets_constraints(self, model: ModelDescriptor, request: RoutingRequest) -> bool:
        if request.requires_capability and request.requires_capability not in model.capabilities:
            return False

        if request.estimated_tokens and request.estimated_tokens > model.max_tokens:
            return False

        if request.budget is not None:
            tokens = request.estimated_tokens or DEFAULT_ESTIMATED_TOKENS
            if tokens * model.cost_per_token > request.budget:
                return False

        if request.latency_budget_ms is not None and model.avg_latency_ms > request.latency_budget_ms:
            return False

        return True

    def _calculate_score(
        self,
        model: ModelDescriptor,
        request: RoutingRequest,
        candidates: list[ModelDescriptor],
    ) -> float:
        cost_weight = PRIORITY_WEIGHT if request.prioritize_cost else DEFAULT_WEIGHT
        latency_weight = PRIORITY_WEIGHT if request.prioritize_latency else DEFAULT_WEIGHT

        max_cost = max(m.cost_per_token for m in candidates)
        max_latency = max(m.avg_latency_ms for m in candidates)

        cost_score = 1 - model.cost_per_token / max_cost if max_cost > 0 else 1.0
        latency_score = 1 - model.avg_latency_ms / max_latency if max_latency > 0 else 1.0

        return cost_score * cost_weight + latency_score * latency_weight

    # =========================================================================
    # Budgets
    # =========================================================================

    def set_budget(
        self,
        name: str,
        max_cost_per_day: float | None = None,
        max_requests_per_day: int | None = None,
        max_tokens_per_day: int | None = None,
    ) -> Budget:
        budget = Budget(
            name=name,
            max_cost_per_day=max_cost_per_day,
            max_requests_per_day=max_requests_per_day,
            max_tokens_per_day=max_tokens_per_day,
            reset_at=next_local_midnight(self._now()),
        )
        self._budgets[name] = budget
        logger.info("Set budget: %s", name)
        return budget

    def check_budget(
        self,
        name: str,
        estimated_cost: float = 0.0,
        estimated_tokens: int = 0,
    ) -> BudgetCheck:
        """Check whether one more request fits within a budget's caps.

        Unknown budgets always allow. Accumulators reset the first time a
        check runs after the budget's reset time has passed.
        """
        budget = self._budgets.get(name)
        if budget is None:
            return BudgetCheck(allowed=True)

        now = self._now()
        if now >= budget.reset_at:
            budget.reset(now)
            logger.info("Budget reset: %s", name)

        exceeds_cost = (
            budget.max_cost_per_day is not None
            and budget.current_cost + estimated_cost > budget.max_cost_per_day
        )
        exceeds_tokens = (
            budget.max_tokens_per_day is not None
            and budget.current_tokens + estimated_tokens > budget.max_tokens_per_day
        )
        exceeds_requests = (
            budget.max_requests_per_day is not None
            and budget.current_requests + 1 > budget.max_requests_per_day
        )

        if exceeds_cost:
            reason = "cost_limit"
        elif exceeds_tokens:
            reason = "token_limit"
        elif exceeds_requests:
            reason = "request_limit"
        else:
            return BudgetCheck(allowed=True)

        logger.warning("Budget limit would be exceeded: budget=%s reason=%s", name, reason)
        return BudgetCheck(allowed=False, reason=reason)

    def record_usage(
        self,
        model_name: str,
        cost: float,
        tokens: int,
        latency_ms: float,
    ) -> None:
        """Update model counters and every budget's accumulators."""
        model = self._models.get(model_name)
        if model is not None:
            model.request_count += 1
            model.total_cost += cost
            model.total_tokens += tokens
            model.total_latency_ms += latency_ms

        for budget in self._budgets.values():
            budget.current_cost += cost
            budget.current_tokens += tokens
            budget.current_requests += 1

    # =========================================================================
    # Batching
    # =========================================================================

    async def batch_requests(
        self,
        requests: Sequence[Callable[[], Awaitable[Any]]],
        max_batch_size: int = 20,
        delay_between_batches: float = 0.1,
    ) -> list[Settled]:
        """Run request factories in batches with settle-all semantics."""
        batches = [
            requests[i:i + max_batch_size]
            for i in range(0, len(requests), max_batch_size)
        ]
        logger.info(
            "Starting batch processing: requests=%d batches=%d max_batch_size=%d",
            len(requests), len(batches), max_batch_size,
        )

        results: list[Settled] = []
        for index, batch in enumerate(batches):
            batch_results = await asyncio.gather(
                *(factory() for factory in batch),
                return_exceptions=True,
            )
            settled = [Settled.from_result(r) for r in batch_results]
            results.extend(settled)

            logger.info(
                "Batch completed: batch=%d/%d succeeded=%d",
                index + 1, len(batches), sum(1 for s in settled if s.ok),
            )

            if index < len(batches) - 1:
                await self._sleep(delay_between_batches)

        return results

    # =========================================================================
    # Reporting
    # =========================================================================

    def get_model_stats(self) -> list[dict[str, Any]]:
        return [
            {
                "name": m.name,
                "request_count": m.request_count,
                "total_cost": m.total_cost,
                "total_tokens": m.total_tokens,
                "avg_cost": m.total_cost / m.request_count if m.request_count > 0 else 0.0,
                "avg_latency_ms": m.total_latency_ms / m.request_count if m.request_count > 0 else 0.0,
            }
            for m in self._models.values()
        ]

    def get_budget_status(self) -> list[dict[str, Any]]:
        return [
            {
                "name": name,
                "current_cost": b.current_cost,
                "max_cost": b.max_cost_per_day,
                "cost_utilization": (
                    b.current_cost / b.max_cost_per_day * 100 if b.max_cost_per_day else 0.0
                ),
                "current_requests": b.current_requests,
                "max_requests": b.max_requests_per_day,
                "current_tokens": b.current_tokens,
                "max_tokens": b.max_tokens_per_day,
                "reset_at": b.reset_at.isoformat(),
            }
            for name, b in self._budgets.items()
        ]
