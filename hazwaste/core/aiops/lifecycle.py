"""Model lifecycle management: drift detection and retraining triggers."""

from __future__ import annotations

import logging
import statistics
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import BaseModel

logger = logging.getLogger(__name__)

# Samples required before a baseline is frozen
BASELINE_MIN_SAMPLES = 100


class Baseline(BaseModel):
    """Summary statistics of a metric window."""

    mean: float
    median: float
    stddev: float
    min: float
    max: float


@dataclass
class Sample:
    value: float
    timestamp: float
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class DriftDetector:
    """Sliding window of metric samples compared against a frozen baseline."""

    name: str
    metric_name: str
    window_size: int
    threshold: float
    check_interval_seconds: float
    last_check: float
    samples: deque[Sample] = field(init=False)
    baseline: Baseline | None = None
    last_drift_score: float | None = None

    def __post_init__(self):
        # FIFO: appending past maxlen evicts the oldest sample
        self.samples = deque(maxlen=self.window_size)


@dataclass
class RetrainingTrigger:
    """A named condition that signals retraining is needed."""

    name: str
    condition: Callable[[], bool]
    triggered: bool = False
    triggered_at: datetime | None = None
    triggered_count: int = 0


class DriftReportEntry(BaseModel):
    detector: str
    metric_name: str
    drift_score: float
    threshold: float
    drift_detected: bool
    baseline: Baseline
    current: Baseline
    sample_count: int


class TriggerStatus(BaseModel):
    trigger: str
    triggered: bool
    triggered_at: datetime | None = None
    triggered_count: int = 0


def summarize(values: list[float]) -> Baseline:
    """Compute mean, median, population stddev, min and max."""
    return Baseline(
        mean=statistics.fmean(values),
        median=statistics.median(values),
        stddev=statistics.pstdev(values),
        min=min(values),
        max=max(values),
    )


def _relative_change(reference: float, current: float) -> float:
    difference = abs(reference - current)
    if reference == 0:
        return 0.0 if difference == 0 else 1.0
    return difference / abs(reference)


def calculate_drift(baseline: Baseline, current: Baseline) -> float:
    """Average relative change of mean and standard deviation."""
    mean_drift = _relative_change(baseline.mean, current.mean)
    stddev_drift = _relative_change(baseline.stddev, current.stddev)
    return (mean_drift + stddev_drift) / 2


class LifecycleManager:
    """Tracks metric drift and evaluates retraining triggers."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._detectors: dict[str, DriftDetector] = {}
        self._triggers: dict[str, RetrainingTrigger] = {}
        self._clock = clock

    # =========================================================================
    # Drift detection
    # =========================================================================

    def register_drift_detector(
        self,
        name: str,
        metric_name: str,
        window_size: int = 1000,
        threshold: float = 0.1,
        check_interval_seconds: float = 60.0,
    ) -> DriftDetector:
        """Register a detector over a rolling window of ``window_size`` samples.

        The baseline is frozen once ``BASELINE_MIN_SAMPLES`` samples are held,
        so a smaller window never produces a drift score.
        """
        detector = DriftDetector(
            name=name,
            metric_name=metric_name,
            window_size=window_size,
            threshold=threshold,
            check_interval_seconds=check_interval_seconds,
            last_check=self._clock(),
        )
        if window_size < BASELINE_MIN_SAMPLES:
            logger.warning(
                "Drift detector window too small for a baseline, drift will never be reported: "
                "%s (window_size=%d, required=%d)",
                name, window_size, BASELINE_MIN_SAMPLES,
            )
        self._detectors[name] = detector
        logger.info("Registered drift detector: %s (metric=%s)", name, metric_name)
        return detector

    def get_detector(self, name: str) -> DriftDetector | None:
        return self._detectors.get(name)

    def record_metric(
        self,
        detector_name: str,
        value: float,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Append a sample; establish the baseline and check drift when due."""
        detector = self._detectors.get(detector_name)
        if detector is None:
            logger.debug("Metric for unknown drift detector ignored: %s", detector_name)
            return

        now = self._clock()
        detector.samples.append(Sample(value=value, timestamp=now, metadata=metadata or {}))

        if detector.baseline is None and len(detector.samples) >= BASELINE_MIN_SAMPLES:
            detector.baseline = self._window_stats(detector)
            logger.info(
                "Baseline established: detector=%s mean=%.4f stddev=%.4f",
                detector_name, detector.baseline.mean, detector.baseline.stddev,
            )

        if now - detector.last_check >= detector.check_interval_seconds:
            self._check_for_drift(detector)
            detector.last_check = now

    def _window_stats(self, detector: DriftDetector) -> Baseline:
        return summarize([s.value for s in detector.samples])

    def _current_drift(self, detector: DriftDetector) -> float | None:
        if detector.baseline is None or not detector.samples:
            return None
        return calculate_drift(detector.baseline, self._window_stats(detector))

    def _check_for_drift(self, detector: DriftDetector) -> float | None:
        drift_score = self._current_drift(detector)
        if drift_score is None:
            return None

        detector.last_drift_score = drift_score

        if drift_score > detector.threshold:
            logger.warning(
                "Model drift detected: detector=%s score=%.4f threshold=%.4f",
                detector.name, drift_score, detector.threshold,
            )
            self._register_drift_trigger(detector)
        else:
            logger.info("No significant drift: detector=%s score=%.4f", detector.name, drift_score)

        return drift_score

    def _register_drift_trigger(self, detector: DriftDetector) -> None:
        def condition() -> bool:
            score = self._current_drift(detector)
            return score is not None and score > detector.threshold

        name = f"drift_{detector.name}"
        existing = self._triggers.get(name)
        if existing is not None:
            existing.condition = condition
        else:
            self.register_retraining_trigger(name, condition)

    # =========================================================================
    # Retraining triggers
    # =========================================================================

    def register_retraining_trigger(self, name: str, condition: Callable[[], bool]) -> None:
        self._triggers[name] = RetrainingTrigger(name=name, condition=condition)
        logger.info("Registered retraining trigger: %s", name)

    def check_retraining_triggers(self) -> list[str]:
        """Evaluate every trigger and return the names that fired.

        A trigger that keeps firing increments its count on every check.
        """
        fired: list[str] = []
        for name, trigger in self._triggers.items():
            if not trigger.condition():
                continue
            trigger.triggered = True
            trigger.triggered_at = datetime.utcnow()
            trigger.triggered_count += 1
            fired.append(name)
            logger.warning(
                "Retraining trigger activated: %s (count=%d)", name, trigger.triggered_count,
            )
        return fired

    def reset_trigger(self, name: str) -> bool:
        trigger = self._triggers.get(name)
        if trigger is None:
            return False
        trigger.triggered = False
        trigger.triggered_at = None
        logger.info("Reset retraining trigger: %s", name)
        return True

    # =========================================================================
    # Reporting
    # =========================================================================

    def get_drift_report(self) -> list[DriftReportEntry]:
        """Report current drift for every detector with a baseline."""
        report: list[DriftReportEntry] = []
        for name, detector in self._detectors.items():
            if detector.baseline is None:
                continue
            current = self._window_stats(detector)
            score = calculate_drift(detector.baseline, current)
            report.append(DriftReportEntry(
                detector=name,
                metric_name=detector.metric_name,
                drift_score=score,
                threshold=detector.threshold,
                drift_detected=score > detector.threshold,
                baseline=detector.baseline,
                current=current,
                sample_count=len(detector.samples),
            ))
        return report

    def get_retraining_status(self) -> list[TriggerStatus]:
        return [
            TriggerStatus(
                trigger=name,
                triggered=t.triggered,
                triggered_at=t.triggered_at,
                triggered_count=t.triggered_count,
            )
            for name, t in self._triggers.items()
        ]
