"""Quality gate for composed pipeline output.

Completion is not binary: a plan that produced content below the quality
threshold may regenerate once, feeding the shortfall back to the generator.
The regenerated result replaces the original only when it scores strictly
higher; otherwise the original is kept and a quality warning is raised.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from contentcore.pipeline.fallback import FallbackStrategy
from contentcore.pipeline.stages import ExecutionContext

logger = logging.getLogger(__name__)


# ── Configuration ────────────────────────────────────────────────────


class GateAction(str, Enum):
    """What to do when the gate fails."""

    REGENERATE = "regenerate"  # One feedback-driven regeneration
    WARN_AND_PASS = "warn_and_pass"  # Log warning, return the content anyway


@dataclass(frozen=True)
class QualityGate:
    min_quality: float = 0.7
    max_regenerations: int = 1
    gate_action: GateAction = GateAction.REGENERATE


GATE_DISABLED = QualityGate(min_quality=0.0, max_regenerations=0, gate_action=GateAction.WARN_AND_PASS)


# ── Gate evaluation result ───────────────────────────────────────────


class GateVerdict(str, Enum):
    PASSED = "passed"
    REGENERATE = "regenerate"
    WARN_PASS = "warn_pass"


@dataclass
class GateResult:
    verdict: GateVerdict
    quality_score: float
    threshold: float
    reason: str = ""

    @property
    def feedback(self) -> str:
        return (
            f"Previous draft scored {self.quality_score:.2f}, below the required "
            f"{self.threshold:.2f}. Improve clarity, relevance and structure."
        )


# ── Policy ───────────────────────────────────────────────────────────


class QualityGatePolicy:
    """Evaluates the composed quality score of one execution."""

    def __init__(self, gate: Optional[QualityGate] = None) -> None:
        self.gate = gate or QualityGate()

    @classmethod
    def from_settings(cls, threshold: float, enabled: bool) -> "QualityGatePolicy":
        if not enabled:
            return cls(GATE_DISABLED)
        return cls(QualityGate(min_quality=threshold))

    def evaluate(
        self,
        quality_score: float,
        strategy: FallbackStrategy,
        context: ExecutionContext,
    ) -> GateResult:
        gate = self.gate
        if quality_score >= gate.min_quality:
            return GateResult(GateVerdict.PASSED, quality_score, gate.min_quality)

        reason = f"quality {quality_score:.2f} < {gate.min_quality:.2f}"
        blocked_by = None
        if gate.gate_action != GateAction.REGENERATE or gate.max_regenerations < 1:
            blocked_by = "gate does not regenerate"
        elif context.regeneration_attempted:
            blocked_by = "regeneration already attempted"
        elif not strategy.allows_regeneration():
            blocked_by = f"fallback strategy {strategy.name!r} does not allow regeneration"
        elif context.fallback_budget_remaining < 1:
            blocked_by = "fallback budget exhausted"

        if blocked_by:
            logger.info("Quality gate WARN_PASS for %s: %s (%s)", context.request_id, reason, blocked_by)
            return GateResult(GateVerdict.WARN_PASS, quality_score, gate.min_quality, f"{reason}; {blocked_by}")

        logger.info("Quality gate REGENERATE for %s: %s", context.request_id, reason)
        return GateResult(GateVerdict.REGENERATE, quality_score, gate.min_quality, reason)

    @staticmethod
    def should_adopt(original_score: float, regenerated_score: Optional[float]) -> bool:
        """Adopt a regenerated result only if it scores strictly higher."""
        return regenerated_score is not None and regenerated_score > original_score
