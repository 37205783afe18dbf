"""Stage value objects and the per-request execution context."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from contentcore.exceptions_unified import StageErrorRecord


# ── Enums ────────────────────────────────────────────────────────────


class StageName(str, Enum):
    RESEARCH = "research"
    GENERATE = "generate"
    OPTIMIZE = "optimize"
    VALIDATE = "validate"


class StageState(str, Enum):
    """Per-stage lifecycle: PENDING -> RUNNING -> one terminal state."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self not in (StageState.PENDING, StageState.RUNNING)


STAGE_ORDER = (StageName.RESEARCH, StageName.GENERATE, StageName.OPTIMIZE, StageName.VALIDATE)
REQUIRED_STAGES = frozenset({StageName.GENERATE, StageName.VALIDATE})


# ── Value objects ────────────────────────────────────────────────────


@dataclass(frozen=True)
class StageSpec:
    id: str
    name: StageName
    required: bool
    timeout: float
    retries: int
    config: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name.value,
            "required": self.required,
            "timeout": self.timeout,
            "retries": self.retries,
            "config": dict(self.config),
        }


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StageResult:
    """Outcome of one stage (including any retries or substitutes)."""

    stage: str
    success: bool
    output: Dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(default_factory=_now)
    completed_at: datetime = field(default_factory=_now)
    cache_hit: bool = False
    attempts: int = 1
    state: StageState = StageState.SUCCEEDED
    error: Optional[StageErrorRecord] = None

    @property
    def duration(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "success": self.success,
            "state": self.state.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "duration": self.duration,
            "cache_hit": self.cache_hit,
            "attempts": self.attempts,
            "error": self.error.to_dict() if self.error else None,
        }


# ── Execution context ────────────────────────────────────────────────


@dataclass
class ExecutionContext:
    """Mutable state of one plan execution.

    Owned by exactly one PlanExecutor; never shared between requests.
    """

    request_id: str
    plan_id: str
    max_fallback_chain: int
    results: Dict[str, StageResult] = field(default_factory=dict)
    states: Dict[str, StageState] = field(default_factory=dict)
    errors: List[StageErrorRecord] = field(default_factory=list)
    stages_executed: List[str] = field(default_factory=list)
    fallbacks_used: List[str] = field(default_factory=list)
    fallback_attempts: int = 0
    parallel_stages: int = 0
    best_effort: bool = False
    regeneration_attempted: bool = False

    # ── Fallback budget ─────────────────────────────────────────────

    @property
    def fallback_budget_remaining(self) -> int:
        return max(0, self.max_fallback_chain - self.fallback_attempts)

    def consume_fallback(self) -> bool:
        """Reserve one fallback/regeneration attempt; False when exhausted."""
        if self.fallback_attempts >= self.max_fallback_chain:
            return False
        self.fallback_attempts += 1
        return True

    # ── Recording ───────────────────────────────────────────────────

    def set_state(self, stage: str, state: StageState) -> None:
        self.states[stage] = state

    def record(self, result: StageResult, label: Optional[str] = None) -> None:
        self.results[result.stage] = result
        self.states[result.stage] = result.state
        if result.success:
            self.stages_executed.append(label or result.stage)
        if result.error is not None:
            self.errors.append(result.error)

    def add_error(self, error: StageErrorRecord) -> None:
        self.errors.append(error)

    def succeeded(self, stage: str) -> Optional[StageResult]:
        result = self.results.get(stage)
        if result is not None and result.success:
            return result
        return None

    def cache_hit_rate(self) -> float:
        settled = [r for r in self.results.values() if r.success]
        if not settled:
            return 0.0
        return sum(1 for r in settled if r.cache_hit) / len(settled)

    def stage_timings(self) -> Dict[str, float]:
        return {name: r.duration for name, r in self.results.items()}
