"""Input and output safety screening for model calls.

Provides:
- Jailbreak phrasing detection
- PII detection and scrubbing
- Keyword toxicity scoring
- Canned-refusal detection on model output

All detectors are pattern heuristics. They are best-effort screening, not
classifiers, and give no accuracy guarantee.
"""

from __future__ import annotations

import logging
import re
from re import Pattern

from hazwaste.core.aiops.types import Issue, IssueType, SafetyReport, Severity

logger = logging.getLogger(__name__)


DEFAULT_JAILBREAK_PATTERNS: list[Pattern[str]] = [
    re.compile(r"ignore (previous|all|above) instructions", re.IGNORECASE),
    re.compile(r"you are now (a|an|the)", re.IGNORECASE),
    re.compile(r"forget (everything|all|your)", re.IGNORECASE),
    re.compile(r"new (instructions|prompt|system)", re.IGNORECASE),
    re.compile(r"roleplay as", re.IGNORECASE),
    re.compile(r"pretend (you|to)", re.IGNORECASE),
]

# Order matters: SSNs must be replaced before the looser phone pattern runs
DEFAULT_PII_PATTERNS: dict[str, Pattern[str]] = {
    "ssn": re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    "email": re.compile(r"\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}\b", re.IGNORECASE),
    "phone": re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b"),
    "credit_card": re.compile(r"\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b"),
    "passport": re.compile(r"\b[A-Z]{1,2}\d{6,9}\b"),
}

DEFAULT_TOXIC_KEYWORDS: list[str] = [
    "kill",
    "hate",
    "violent",
    "attack",
    "bomb",
    "weapon",
]

REFUSAL_PATTERNS: list[Pattern[str]] = [
    re.compile(r"I (can't|cannot|won't|will not)", re.IGNORECASE),
    re.compile(r"I'm (not able|unable) to", re.IGNORECASE),
    re.compile(r"I don't have (access|permission|the ability)", re.IGNORECASE),
    re.compile(r"that's (not something|something) I can", re.IGNORECASE),
]

TOXICITY_INCREMENT = 0.3


def scrub_pii(
    text: str,
    patterns: dict[str, Pattern[str]] | None = None,
) -> tuple[str, list[str]]:
    """Replace every PII match with a ``[TYPE]`` placeholder.

    Returns the scrubbed text and the names of the matched types, in
    pattern order. Scrubbing already-scrubbed text is a no-op.
    """
    scrubbed = text
    detected: list[str] = []
    for name, pattern in (patterns or DEFAULT_PII_PATTERNS).items():
        if pattern.search(scrubbed):
            detected.append(name)
            scrubbed = pattern.sub(f"[{name.upper()}]", scrubbed)
    return scrubbed, detected


class SafetyFilter:
    """Pattern-based screening of prompts and model outputs.

    Jailbreak phrasing and toxicity make text unsafe. PII is scrubbed and
    reported but does not by itself make text unsafe. Refusals in model
    output are reported at low severity.
    """

    def __init__(
        self,
        toxicity_threshold: float = 0.7,
        toxic_keywords: list[str] | None = None,
    ):
        self.toxicity_threshold = toxicity_threshold
        self.jailbreak_patterns: list[Pattern[str]] = list(DEFAULT_JAILBREAK_PATTERNS)
        self.pii_patterns: dict[str, Pattern[str]] = dict(DEFAULT_PII_PATTERNS)
        self.toxic_keywords = list(toxic_keywords or DEFAULT_TOXIC_KEYWORDS)
        self.refusal_patterns: list[Pattern[str]] = list(REFUSAL_PATTERNS)

    # =========================================================================
    # Public API
    # =========================================================================

    def filter_input(self, text: str, trace_id: str | None = None) -> SafetyReport:
        """Screen a prompt before it is sent to the model."""
        report = SafetyReport(text=text)

        pattern = self.detect_jailbreak(text)
        if pattern is not None:
            report.safe = False
            report.issues.append(Issue(
                type=IssueType.JAILBREAK_ATTEMPT,
                severity=Severity.HIGH,
                detail={"pattern": pattern},
            ))
            logger.warning("Jailbreak attempt detected: trace=%s pattern=%s", trace_id, pattern)

        scrubbed, pii_types = scrub_pii(text, self.pii_patterns)
        if pii_types:
            report.text = scrubbed
            for pii_type in pii_types:
                report.issues.append(Issue(
                    type=IssueType.PII_DETECTED,
                    severity=Severity.MEDIUM,
                    detail={"pii_type": pii_type},
                ))
            logger.info("PII detected and scrubbed: trace=%s types=%s", trace_id, pii_types)

        score = self.assess_toxicity(text)
        if score > self.toxicity_threshold:
            report.safe = False
            report.issues.append(Issue(
                type=IssueType.TOXICITY,
                severity=Severity.HIGH,
                detail={"score": score},
            ))
            logger.warning("High toxicity detected: trace=%s score=%.2f", trace_id, score)

        return report

    def filter_output(self, text: str, trace_id: str | None = None) -> SafetyReport:
        """Screen model output before it is returned to the caller."""
        report = SafetyReport(text=text)

        scrubbed, pii_types = scrub_pii(text, self.pii_patterns)
        if pii_types:
            report.text = scrubbed
            for pii_type in pii_types:
                report.issues.append(Issue(
                    type=IssueType.PII_LEAKED,
                    severity=Severity.HIGH,
                    detail={"pii_type": pii_type},
                ))
            logger.error("PII leaked in model output: trace=%s types=%s", trace_id, pii_types)

        if self.detect_refusal(text):
            report.issues.append(Issue(
                type=IssueType.MODEL_REFUSAL,
                severity=Severity.LOW,
                detail={"reason": "model_policy_refusal"},
            ))
            logger.info("Model refused to answer: trace=%s", trace_id)

        return report

    # =========================================================================
    # Detectors
    # =========================================================================

    def detect_jailbreak(self, text: str) -> str | None:
        """Return the first matching jailbreak pattern, if any."""
        for pattern in self.jailbreak_patterns:
            if pattern.search(text):
                return pattern.pattern
        return None

    def assess_toxicity(self, text: str) -> float:
        """Score text by counting toxic keywords (heuristic, capped at 1.0)."""
        lowered = text.lower()
        matches = sum(1 for keyword in self.toxic_keywords if keyword in lowered)
        return min(matches * TOXICITY_INCREMENT, 1.0)

    def detect_refusal(self, text: str) -> bool:
        return any(pattern.search(text) for pattern in self.refusal_patterns)

    # =========================================================================
    # Extension
    # =========================================================================

    def add_jailbreak_pattern(self, pattern: str) -> None:
        """Register an additional case-insensitive jailbreak pattern."""
        self.jailbreak_patterns.append(re.compile(pattern, re.IGNORECASE))
        logger.info("Added jailbreak pattern: %s", pattern)

    def add_pii_pattern(self, name: str, pattern: str) -> None:
        """Register an additional named PII pattern, scrubbed as ``[NAME]``."""
        self.pii_patterns[name] = re.compile(pattern)
        logger.info("Added PII pattern: %s", name)
