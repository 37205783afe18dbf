"""Builds an ExecutionPlan for one content request.

Stage set: research (optional), generate, optimize (optional), validate,
minus whatever the caller or configuration skips. Phases are the waves of
the stage graph:

    [research] -> [generate] -> [optimize, validate]

Research is a soft dependency of generate: generate waits for it when it
is planned but runs regardless of its outcome. Optimize and validate both
depend only on generate, so they share a phase unless parallel execution
is disabled.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from contentcore.config.settings import OrchestratorSettings
from contentcore.enhanced_logging import track_performance
from contentcore.exceptions_unified import InvalidRequest
from contentcore.models.request import ContentRequest
from contentcore.pipeline.dependency_resolver import StageGraph
from contentcore.pipeline.fallback import FallbackStrategy, get_fallback_strategy
from contentcore.pipeline.mappings import (
    CONTENT_TYPE_MAP,
    TONE_MAP,
    generator_content_type,
    generator_tone,
    validate_mappings,
)
from contentcore.pipeline.stages import REQUIRED_STAGES, STAGE_ORDER, StageName, StageSpec

logger = logging.getLogger(__name__)

DURATION_ESTIMATE_FACTOR = 0.7


@dataclass(frozen=True)
class ExecutionPlan:
    id: str
    request_id: str
    stages: List[StageSpec] = field(hash=False)
    phases: List[List[str]] = field(hash=False)
    dependencies: Dict[str, List[str]] = field(hash=False)
    fallback_strategy: FallbackStrategy = field(hash=False)
    estimated_duration: float = 0.0

    def stage(self, name: str) -> Optional[StageSpec]:
        for spec in self.stages:
            if spec.name.value == name:
                return spec
        return None

    def has_stage(self, name: str) -> bool:
        return self.stage(name) is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "request_id": self.request_id,
            "stages": [s.to_dict() for s in self.stages],
            "phases": [list(p) for p in self.phases],
            "dependencies": {k: list(v) for k, v in self.dependencies.items()},
            "fallback_strategy": self.fallback_strategy.to_dict(),
            "estimated_duration": self.estimated_duration,
        }


def validate_request(request: ContentRequest) -> None:
    """Raise InvalidRequest for requests that cannot be planned."""
    if not request.topic or not request.topic.strip():
        raise InvalidRequest("Content request topic must not be empty", details={"request_id": request.id})
    if not request.id:
        raise InvalidRequest("Content request id must not be empty")


class PlanBuilder:
    """Turns a ContentRequest into an ExecutionPlan. Pure given its inputs."""

    def __init__(self, settings: OrchestratorSettings) -> None:
        validate_mappings(CONTENT_TYPE_MAP, TONE_MAP)
        self.settings = settings

    def _configured_skips(self, request: ContentRequest) -> set:
        skips = set()
        if not (request.enable_research and self.settings.enable_research_stage):
            skips.add(StageName.RESEARCH.value)
        if not self.settings.enable_optimization_stage:
            skips.add(StageName.OPTIMIZE.value)
        if not self.settings.enable_validation_stage:
            skips.add(StageName.VALIDATE.value)
        return skips

    def _stage_config(self, name: StageName, request: ContentRequest) -> Dict[str, Any]:
        if name == StageName.GENERATE:
            return {
                "content_type": generator_content_type(request.content_type),
                "tone": generator_tone(request.tone),
                "language": request.target_language.value,
            }
        if name == StageName.VALIDATE:
            return {
                "language": request.target_language.value,
                "cultural_context": request.cultural_context,
            }
        if name == StageName.RESEARCH:
            return {"keywords": list(request.keywords)}
        return {}

    @track_performance(operation="plan_builder.build")
    def build(
        self,
        request: ContentRequest,
        skip_stages: Optional[Iterable[str]] = None,
        strategy_name: Optional[str] = None,
    ) -> ExecutionPlan:
        """Build a fresh plan.

        Raises:
            InvalidRequest: on an empty topic, or when asked to skip generate.
        """
        validate_request(request)

        skips = {str(getattr(s, "value", s)) for s in (skip_stages or [])}
        if StageName.GENERATE.value in skips:
            raise InvalidRequest("The generate stage cannot be skipped")
        skips |= self._configured_skips(request)

        timeouts = self.settings.stage_timeouts()
        retries = self.settings.stage_retries()
        stages = [
            StageSpec(
                id=f"{name.value}-{request.id}",
                name=name,
                required=name in REQUIRED_STAGES,
                timeout=timeouts[name.value],
                retries=retries[name.value],
                config=self._stage_config(name, request),
            )
            for name in STAGE_ORDER
            if name.value not in skips
        ]

        graph = StageGraph()
        if StageName.RESEARCH.value not in skips:
            graph.add_stage(StageName.RESEARCH.value)
        graph.add_stage(StageName.GENERATE.value, soft=[StageName.RESEARCH.value])
        if StageName.OPTIMIZE.value not in skips:
            graph.add_stage(StageName.OPTIMIZE.value, dependencies=[StageName.GENERATE.value])
        if StageName.VALIDATE.value not in skips:
            # Sequential mode orders validate after optimize without making it conditional.
            soft = [] if self.settings.enable_parallel_execution else [StageName.OPTIMIZE.value]
            graph.add_stage(
                StageName.VALIDATE.value,
                dependencies=[StageName.GENERATE.value],
                soft=soft,
            )

        strategy = get_fallback_strategy(strategy_name or self.settings.default_fallback_strategy)
        plan = ExecutionPlan(
            id=f"plan-{uuid.uuid4().hex[:12]}",
            request_id=request.id,
            stages=stages,
            phases=graph.get_execution_waves(),
            dependencies=graph.edges(),
            fallback_strategy=strategy,
            estimated_duration=sum(s.timeout for s in stages) * DURATION_ESTIMATE_FACTOR,
        )
        logger.debug(
            "Built plan %s for request %s: phases=%s strategy=%s",
            plan.id, request.id, plan.phases, strategy.name,
        )
        return plan
