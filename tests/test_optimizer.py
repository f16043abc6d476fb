"""Tests for model routing and budgets."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from hazwaste.core.aiops.errors import NoModelAvailableError
from hazwaste.core.aiops.optimizer import ModelOptimizer, RoutingRequest, next_local_midnight


class FakeNow:
    def __init__(self, start: datetime):
        self.value = start

    def __call__(self) -> datetime:
        return self.value


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def now() -> FakeNow:
    return FakeNow(datetime(2025, 1, 27, 9, 30))


@pytest.fixture
def optimizer(now, sleeps) -> ModelOptimizer:
    optimizer = ModelOptimizer(now=now, sleep=sleeps)
    optimizer.register_model(
        "claude-sonnet",
        cost_per_token=0.000015,
        avg_latency_ms=2000,
        max_tokens=200_000,
        capabilities=["long-context", "document-analysis"],
    )
    optimizer.register_model(
        "claude-haiku",
        cost_per_token=0.00000125,
        avg_latency_ms=800,
        max_tokens=200_000,
        capabilities=["fast-inference"],
    )
    return optimizer


# ============================================================================
# Routing
# ============================================================================

class TestRouting:
    """Rule-based and scored model selection."""

    def test_higher_priority_rule_wins(self, optimizer: ModelOptimizer):
        optimizer.add_routing_rule(lambda r: r.prioritize_latency, "claude-haiku", priority=50)
        optimizer.add_routing_rule(lambda r: r.document_size > 50_000, "claude-sonnet", priority=100)

        request = RoutingRequest(document_size=80_000, prioritize_latency=True)

        assert optimizer.select_optimal_model(request) == "claude-sonnet"

    def test_rule_skipped_when_model_violates_constraints(self, optimizer: ModelOptimizer):
        optimizer.add_routing_rule(lambda r: True, "claude-haiku", priority=100)

        request = RoutingRequest(requires_capability="document-analysis")

        assert optimizer.select_optimal_model(request) == "claude-sonnet"

    def test_equal_priority_keeps_insertion_order(self, optimizer: ModelOptimizer):
        optimizer.add_routing_rule(lambda r: True, "claude-haiku", priority=10)
        optimizer.add_routing_rule(lambda r: True, "claude-sonnet", priority=10)

        assert optimizer.select_optimal_model() == "claude-haiku"

    def test_scoring_prefers_cheap_fast_model(self, optimizer: ModelOptimizer):
        assert optimizer.select_optimal_model(RoutingRequest(prioritize_cost=True)) == "claude-haiku"

    def test_budget_constraint_filters_expensive_models(self, optimizer: ModelOptimizer):
        optimizer.register_model("premium", cost_per_token=0.001, avg_latency_ms=100)

        request = RoutingRequest(estimated_tokens=1000, budget=0.5, prioritize_latency=True)

        assert optimizer.select_optimal_model(request) != "premium"

    def test_falls_back_to_first_registered_model(self, optimizer: ModelOptimizer):
        request = RoutingRequest(requires_capability="image-analysis")

        assert optimizer.select_optimal_model(request) == "claude-sonnet"

    def test_empty_registry_raises(self, now, sleeps):
        with pytest.raises(NoModelAvailableError):
            ModelOptimizer(now=now, sleep=sleeps).select_optimal_model()

    def test_token_limit_constraint(self, optimizer: ModelOptimizer):
        optimizer.register_model("small", cost_per_token=0.0, avg_latency_ms=10, max_tokens=1000)

        request = RoutingRequest(estimated_tokens=5000)

        assert optimizer.select_optimal_model(request) != "small"


# ============================================================================
# Budgets
# ============================================================================

class TestBudgets:
    """Daily budget enforcement."""

    def test_request_limit(self, optimizer: ModelOptimizer):
        optimizer.set_budget("daily", max_requests_per_day=1)

        assert optimizer.check_budget("daily").allowed is True
        optimizer.record_usage("claude-haiku", cost=0.001, tokens=100, latency_ms=500)

        check = optimizer.check_budget("daily")
        assert check.allowed is False
        assert check.reason == "request_limit"

    def test_cost_reason_takes_precedence(self, optimizer: ModelOptimizer):
        optimizer.set_budget("daily", max_cost_per_day=1.0, max_requests_per_day=1, max_tokens_per_day=10)
        optimizer.record_usage("claude-haiku", cost=1.0, tokens=10, latency_ms=500)

        check = optimizer.check_budget("daily", estimated_cost=0.5, estimated_tokens=5)

        assert check.reason == "cost_limit"

    def test_token_limit(self, optimizer: ModelOptimizer):
        optimizer.set_budget("daily", max_tokens_per_day=1000)

        check = optimizer.check_budget("daily", estimated_tokens=1001)

        assert check.allowed is False
        assert check.reason == "token_limit"

    def test_zero_cap_is_enforced(self, optimizer: ModelOptimizer):
        optimizer.set_budget("frozen", max_cost_per_day=0.0)

        assert optimizer.check_budget("frozen", estimated_cost=0.01).allowed is False

    def test_unknown_budget_allows(self, optimizer: ModelOptimizer):
        assert optimizer.check_budget("missing", estimated_cost=1e9).allowed is True

    def test_resets_after_midnight(self, optimizer: ModelOptimizer, now: FakeNow):
        optimizer.set_budget("daily", max_requests_per_day=1)
        optimizer.record_usage("claude-haiku", cost=0.0, tokens=0, latency_ms=0)
        assert optimizer.check_budget("daily").allowed is False

        now.value = datetime(2025, 1, 28, 0, 0, 1)

        assert optimizer.check_budget("daily").allowed is True
        status = optimizer.get_budget_status()[0]
        assert status["current_requests"] == 0
        assert status["reset_at"] == "2025-01-29T00:00:00"

    def test_check_then_record_is_not_atomic(self, optimizer: ModelOptimizer):
        optimizer.set_budget("daily", max_requests_per_day=1)

        first = optimizer.check_budget("daily")
        second = optimizer.check_budget("daily")
        optimizer.record_usage("claude-haiku", cost=0.0, tokens=10, latency_ms=1)
        optimizer.record_usage("claude-haiku", cost=0.0, tokens=10, latency_ms=1)

        assert first.allowed and second.allowed
        assert optimizer.get_budget_status()[0]["current_requests"] == 2

    def test_next_local_midnight(self):
        assert next_local_midnight(datetime(2025, 12, 31, 23, 59)) == datetime(2026, 1, 1)


# ============================================================================
# Usage and batching
# ============================================================================

class TestUsageAndBatching:
    def test_model_stats_average_usage(self, optimizer: ModelOptimizer):
        optimizer.record_usage("claude-haiku", cost=0.002, tokens=200, latency_ms=600)
        optimizer.record_usage("claude-haiku", cost=0.004, tokens=400, latency_ms=1000)

        stats = {s["name"]: s for s in optimizer.get_model_stats()}

        assert stats["claude-haiku"]["request_count"] == 2
        assert stats["claude-haiku"]["total_tokens"] == 600
        assert stats["claude-haiku"]["avg_cost"] == pytest.approx(0.003)
        assert stats["claude-haiku"]["avg_latency_ms"] == pytest.approx(800)
        assert stats["claude-sonnet"]["avg_cost"] == 0.0

    @pytest.mark.asyncio
    async def test_batch_requests_settles_all(self, optimizer: ModelOptimizer, sleeps):
        async def ok():
            return "ok"

        async def fail():
            raise RuntimeError("boom")

        results = await optimizer.batch_requests([ok, fail, ok], max_batch_size=2, delay_between_batches=0.5)

        assert [r.ok for r in results] == [True, False, True]
        assert sleeps.delays == [0.5]

    def test_budget_reset_time_is_next_midnight(self, optimizer: ModelOptimizer, now: FakeNow):
        budget = optimizer.set_budget("daily", max_cost_per_day=10.0)

        assert budget.reset_at == now.value.replace(hour=0, minute=0) + timedelta(days=1)
