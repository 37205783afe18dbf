"""Pipeline entry point: admission, planning, execution and recording.

``ContentPipeline`` is constructed once by the host and shared by all
requests. Each ``compose`` call gets its own plan and its own PlanExecutor;
only the admission semaphore and the PerformanceRecorder are shared.
Requests beyond ``max_concurrent_executions`` wait for a slot.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Optional

from contentcore.config.settings import OrchestratorSettings
from contentcore.exceptions_unified import PlanExecutionFailure, create_error_record
from contentcore.models.request import ContentRequest
from contentcore.monitoring.performance_recorder import (
    HealthReport,
    PerformanceMetrics,
    PerformanceRecorder,
)
from contentcore.pipeline.executor import PipelineResult, PlanExecutor, StageBackends
from contentcore.pipeline.plan_builder import PlanBuilder, validate_request
from contentcore.pipeline.quality_gates import QualityGatePolicy

logger = logging.getLogger(__name__)


class ContentPipeline:
    """The new-architecture content pipeline."""

    def __init__(
        self,
        settings: OrchestratorSettings,
        backends: StageBackends,
        recorder: Optional[PerformanceRecorder] = None,
        event_bus: Any = None,
        plan_builder: Optional[PlanBuilder] = None,
    ) -> None:
        self.settings = settings
        self.backends = backends
        self.recorder = recorder or PerformanceRecorder.from_settings(settings)
        self.event_bus = event_bus
        self.plan_builder = plan_builder or PlanBuilder(settings)
        self.quality_policy = QualityGatePolicy.from_settings(
            settings.quality_threshold, settings.enable_quality_gates
        )
        self._slots: Optional[asyncio.Semaphore] = None

    @property
    def slots(self) -> asyncio.Semaphore:
        # Created lazily so the semaphore binds to the loop that first uses it.
        if self._slots is None:
            self._slots = asyncio.Semaphore(self.settings.max_concurrent_executions)
        return self._slots

    async def compose(
        self,
        request: ContentRequest,
        skip_stages: Optional[Iterable[str]] = None,
        fallback_strategy: Optional[str] = None,
    ) -> PipelineResult:
        """Run the full pipeline for *request*.

        Raises:
            InvalidRequest: for a malformed request. Every runtime failure is
                reported through the returned result instead.
        """
        validate_request(request)
        skips = set(skip_stages or []) | set(self.backends.missing_stages())

        self.recorder.mark_queued()
        try:
            await self.slots.acquire()
        finally:
            self.recorder.mark_dequeued()

        self.recorder.mark_started()
        try:
            plan = self.plan_builder.build(request, skip_stages=skips, strategy_name=fallback_strategy)
            executor = PlanExecutor(
                plan,
                request,
                self.backends,
                self.settings,
                event_bus=self.event_bus,
                quality_policy=self.quality_policy,
            )
            try:
                result = await executor.execute()
            except Exception as exc:
                logger.exception("Plan %s raised unexpectedly for %s", plan.id, request.id)
                failure = PlanExecutionFailure(f"Pipeline execution raised: {exc}")
                result = PipelineResult(
                    success=False,
                    content="",
                    quality_score=0.0,
                    errors=list(executor.context.errors) + [create_error_record(failure, "pipeline")],
                    request_id=request.id,
                    plan_id=plan.id,
                    performance=PerformanceMetrics(),
                )
        finally:
            self.recorder.mark_finished()
            self.slots.release()

        self.recorder.record(result.performance, success=result.success, quality_score=result.quality_score)
        logger.info(
            "Composed %s: success=%s quality=%.2f stages=%s fallbacks=%s time=%.3fs",
            request.id,
            result.success,
            result.quality_score,
            result.stages_executed,
            result.fallbacks_used,
            result.performance.total_time,
        )
        return result

    def health(self) -> HealthReport:
        return self.recorder.health()
