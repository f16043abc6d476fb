"""Offline evaluation against labelled test sets, and A/B test bookkeeping.

Scoring modes for a test case's expectation:
- ``contains``: every listed value appears in the output (1.0 or 0.0)
- ``regex``: the pattern matches the output (1.0 or 0.0)
- anything else: normalised Levenshtein similarity to the expected value
"""

from __future__ import annotations

import inspect
import json
import logging
import re
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_PASS_THRESHOLD = 0.8

# A/B winner rules
MIN_REQUESTS_PER_VARIANT = 100
TIE_MARGIN = 0.05
SUCCESS_WEIGHT = 0.7
LATENCY_WEIGHT = 0.3

Variant = Literal["variant_a", "variant_b"]


class ExpectedMatch(BaseModel):
    """Rule-based expectation for a test case."""

    type: Literal["contains", "regex"]
    values: list[str] = Field(default_factory=list)
    pattern: str = ""


class EvaluationCase(BaseModel):
    id: str
    input: Any
    # An ExpectedMatch (or its dict form), or a literal expected value
    expected: Any
    threshold: float = DEFAULT_PASS_THRESHOLD


class CaseResult(BaseModel):
    test_case_id: str
    input: Any
    expected: Any
    actual: Any
    score: float
    latency_ms: float
    passed: bool


class EvaluationSummary(BaseModel):
    test_set: str
    total_cases: int
    passed: int
    avg_score: float
    avg_latency_ms: float
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class EvaluationReport(BaseModel):
    summary: EvaluationSummary
    results: list[CaseResult]


@dataclass
class VariantState:
    config: dict[str, Any] = field(default_factory=dict)
    requests: int = 0
    successes: int = 0
    total_latency_ms: float = 0.0


@dataclass
class ABTest:
    name: str
    variant_a: VariantState
    variant_b: VariantState
    traffic_split: float = 0.5
    created_at: datetime = field(default_factory=datetime.utcnow)


class VariantStats(BaseModel):
    requests: int
    success_rate: float
    avg_latency_ms: float


class ABTestResults(BaseModel):
    name: str
    variant_a: VariantStats
    variant_b: VariantStats
    winner: Literal["variant_a", "variant_b", "tie", "insufficient_data"]


def levenshtein_distance(first: str, second: str) -> int:
    previous = list(range(len(second) + 1))
    for i, a in enumerate(first, start=1):
        current = [i]
        for j, b in enumerate(second, start=1):
            current.append(min(
                current[j - 1] + 1,
                previous[j] + 1,
                previous[j - 1] + (a != b),
            ))
        previous = current
    return previous[-1]


def similarity(first: str, second: str) -> float:
    """1 minus the edit distance as a share of the longer string."""
    longer = max(len(first), len(second))
    if longer == 0:
        return 1.0
    return (longer - levenshtein_distance(first, second)) / longer


def hash_user_id(user_id: str) -> float:
    """Map a user id to a stable bucket in [0, 1) using a 32-bit string hash."""
    value = 0
    for char in user_id:
        value = (value * 31 + ord(char)) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return abs(value) % 100 / 100


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, default=str)


def score_output(actual: Any, expected: Any) -> float:
    text = _as_text(actual)
    if isinstance(expected, dict) and expected.get("type") in ("contains", "regex"):
        expected = ExpectedMatch.model_validate(expected)
    if isinstance(expected, ExpectedMatch):
        if expected.type == "contains":
            return 1.0 if all(v in text for v in expected.values) else 0.0
        return 1.0 if re.search(expected.pattern, text) else 0.0
    return similarity(text, _as_text(expected))


class AIEvaluator:
    """Runs labelled test sets and tracks A/B experiments."""

    def __init__(self):
        self._test_sets: dict[str, list[EvaluationCase]] = {}
        self._ab_tests: dict[str, ABTest] = {}

    # =========================================================================
    # Offline evaluation
    # =========================================================================

    def register_test_set(self, name: str, cases: Sequence[EvaluationCase | dict[str, Any]]) -> None:
        self._test_sets[name] = [
            c if isinstance(c, EvaluationCase) else EvaluationCase.model_validate(c)
            for c in cases
        ]
        logger.info("Registered test set: %s with %d cases", name, len(cases))

    def get_test_set(self, name: str) -> list[EvaluationCase]:
        if name not in self._test_sets:
            raise KeyError(f"Test set not found: {name}")
        return list(self._test_sets[name])

    async def run_offline_evaluation(
        self,
        name: str,
        model_fn: Callable[[Any], Any],
    ) -> EvaluationReport:
        """Run every case in a test set through ``model_fn`` (sync or async)."""
        cases = self.get_test_set(name)

        results: list[CaseResult] = []
        for case in cases:
            start = time.perf_counter()
            output = model_fn(case.input)
            if inspect.isawaitable(output):
                output = await output
            latency_ms = (time.perf_counter() - start) * 1000

            score = score_output(output, case.expected)
            results.append(CaseResult(
                test_case_id=case.id,
                input=case.input,
                expected=case.expected,
                actual=output,
                score=score,
                latency_ms=latency_ms,
                passed=score >= case.threshold,
            ))

        count = len(results)
        summary = EvaluationSummary(
            test_set=name,
            total_cases=count,
            passed=sum(1 for r in results if r.passed),
            avg_score=sum(r.score for r in results) / count if count else 0.0,
            avg_latency_ms=sum(r.latency_ms for r in results) / count if count else 0.0,
        )
        logger.info(summary.model_dump_json())
        return EvaluationReport(summary=summary, results=results)

    # =========================================================================
    # A/B testing
    # =========================================================================

    def create_ab_test(
        self,
        name: str,
        variant_a: dict[str, Any],
        variant_b: dict[str, Any],
        traffic_split: float = 0.5,
    ) -> ABTest:
        test = ABTest(
            name=name,
            variant_a=VariantState(config=dict(variant_a)),
            variant_b=VariantState(config=dict(variant_b)),
            traffic_split=traffic_split,
        )
        self._ab_tests[name] = test
        logger.info("Created A/B test: %s with %.0f%% split", name, traffic_split * 100)
        return test

    def _get_ab_test(self, name: str) -> ABTest:
        test = self._ab_tests.get(name)
        if test is None:
            raise KeyError(f"A/B test not found: {name}")
        return test

    def select_variant(self, name: str, user_id: str) -> Variant:
        """Assign a user to a variant; the same user always gets the same one."""
        test = self._get_ab_test(name)
        return "variant_a" if hash_user_id(user_id) < test.traffic_split else "variant_b"

    def record_ab_test_result(
        self,
        name: str,
        variant: Variant,
        success: bool,
        latency_ms: float,
    ) -> None:
        test = self._ab_tests.get(name)
        if test is None:
            logger.debug("Result for unknown A/B test ignored: %s", name)
            return
        state = test.variant_a if variant == "variant_a" else test.variant_b
        state.requests += 1
        if success:
            state.successes += 1
        state.total_latency_ms += latency_ms

    def get_ab_test_results(self, name: str) -> ABTestResults:
        test = self._get_ab_test(name)
        stats_a = _variant_stats(test.variant_a)
        stats_b = _variant_stats(test.variant_b)
        return ABTestResults(
            name=name,
            variant_a=stats_a,
            variant_b=stats_b,
            winner=_determine_winner(stats_a, stats_b),
        )


def _variant_stats(state: VariantState) -> VariantStats:
    requests = state.requests
    return VariantStats(
        requests=requests,
        success_rate=state.successes / requests if requests else 0.0,
        avg_latency_ms=state.total_latency_ms / requests if requests else 0.0,
    )


def _variant_score(stats: VariantStats) -> float:
    latency_term = 1 / stats.avg_latency_ms if stats.avg_latency_ms > 0 else 0.0
    return stats.success_rate * SUCCESS_WEIGHT + latency_term * LATENCY_WEIGHT


def _determine_winner(
    stats_a: VariantStats,
    stats_b: VariantStats,
) -> Literal["variant_a", "variant_b", "tie", "insufficient_data"]:
    if stats_a.requests < MIN_REQUESTS_PER_VARIANT or stats_b.requests < MIN_REQUESTS_PER_VARIANT:
        return "insufficient_data"

    score_a = _variant_score(stats_a)
    score_b = _variant_score(stats_b)
    if abs(score_a - score_b) < TIE_MARGIN:
        return "tie"
    return "variant_a" if score_a > score_b else "variant_b"
