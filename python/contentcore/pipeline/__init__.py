"""Staged content pipeline: planning, execution, fallback and quality gating."""

from .composer import ContentPipeline
from .executor import PipelineResult, PlanExecutor, StageBackends
from .fallback import (
    FallbackAction,
    FallbackCondition,
    FallbackController,
    FallbackOutcome,
    FallbackRule,
    FallbackStrategy,
    get_fallback_strategy,
)
from .plan_builder import ExecutionPlan, PlanBuilder
from .quality_gates import GateVerdict, QualityGate, QualityGatePolicy
from .stages import ExecutionContext, StageName, StageResult, StageSpec, StageState

__all__ = [
    # Entry points
    "ContentPipeline",
    "PlanBuilder",
    "PlanExecutor",
    # Plans and results
    "ExecutionPlan",
    "PipelineResult",
    "StageBackends",
    # Stages
    "ExecutionContext",
    "StageName",
    "StageResult",
    "StageSpec",
    "StageState",
    # Fallback
    "FallbackAction",
    "FallbackCondition",
    "FallbackController",
    "FallbackOutcome",
    "FallbackRule",
    "FallbackStrategy",
    "get_fallback_strategy",
    # Quality
    "GateVerdict",
    "QualityGate",
    "QualityGatePolicy",
]
