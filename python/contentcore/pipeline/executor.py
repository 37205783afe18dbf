"""Runs one ExecutionPlan phase by phase.

A PlanExecutor is built for a single request and owns that request's
ExecutionContext. Stages inside a phase run as concurrent tasks and the
executor waits for every one of them to settle before starting the next
phase. Stage wrappers never raise: timeouts, backend errors and bad payloads
become failed StageResults that the FallbackController may recover.

Only an unrecoverable generate failure fails the plan.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from numbers import Real
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

import structlog

from contentcore.config.settings import OrchestratorSettings
from contentcore.enhanced_logging import track_performance
from contentcore.event_bus import emit
from contentcore.exceptions_unified import (
    ConfigurationError,
    PlanExecutionFailure,
    StageError,
    StageErrorRecord,
    StageInvalidOutput,
    StageTimeout,
    create_error_record,
    wrap_stage_exception,
)
from contentcore.interfaces.backends import (
    GenerationBackend,
    OptimizationBackend,
    ResearchBackend,
    ValidationBackend,
)
from contentcore.interfaces.event_bus import EventType
from contentcore.models.request import ContentRequest
from contentcore.monitoring.performance_recorder import PerformanceMetrics
from contentcore.pipeline.fallback import FallbackController
from contentcore.pipeline.plan_builder import ExecutionPlan
from contentcore.pipeline.quality_gates import GateVerdict, QualityGatePolicy
from contentcore.pipeline.stages import (
    ExecutionContext,
    StageName,
    StageResult,
    StageSpec,
    StageState,
)

logger = logging.getLogger(__name__)

GENERATE = StageName.GENERATE.value
RESEARCH = StageName.RESEARCH.value
OPTIMIZE = StageName.OPTIMIZE.value
VALIDATE = StageName.VALIDATE.value


# ── Value objects ────────────────────────────────────────────────────


@dataclass
class StageBackends:
    """Backends available to an executor. Only ``generator`` is mandatory."""

    generator: GenerationBackend
    research: Optional[ResearchBackend] = None
    optimizer: Optional[OptimizationBackend] = None
    validator: Optional[ValidationBackend] = None
    fallback_generator: Optional[GenerationBackend] = None  # simplified generator; defaults to ``generator``

    def __post_init__(self) -> None:
        checks = (
            ("generator", self.generator, GenerationBackend),
            ("research", self.research, ResearchBackend),
            ("optimizer", self.optimizer, OptimizationBackend),
            ("validator", self.validator, ValidationBackend),
            ("fallback_generator", self.fallback_generator, GenerationBackend),
        )
        for name, backend, protocol in checks:
            if backend is None and name != "generator":
                continue
            if not isinstance(backend, protocol):
                raise ConfigurationError(
                    f"Backend {name!r} does not implement {protocol.__name__}",
                    details={"backend": type(backend).__name__},
                )

    def for_stage(self, stage: str) -> Any:
        return {
            RESEARCH: self.research,
            GENERATE: self.generator,
            OPTIMIZE: self.optimizer,
            VALIDATE: self.validator,
        }[stage]

    def missing_stages(self) -> List[str]:
        return [s for s in (RESEARCH, OPTIMIZE, VALIDATE) if self.for_stage(s) is None]


@dataclass
class PipelineResult:
    """Terminal result of one pipeline execution."""

    success: bool
    content: str
    quality_score: float
    stages_executed: List[str] = field(default_factory=list)
    fallbacks_used: List[str] = field(default_factory=list)
    errors: List[StageErrorRecord] = field(default_factory=list)
    performance: PerformanceMetrics = field(default_factory=PerformanceMetrics)
    request_id: str = ""
    plan_id: str = ""
    research: Optional[Dict[str, Any]] = None
    optimization: Optional[Dict[str, Any]] = None
    validation: Optional[Dict[str, Any]] = None
    stage_results: Dict[str, StageResult] = field(default_factory=dict)
    best_effort: bool = False
    quality_warning: bool = False
    regenerated: bool = False

    @property
    def error_types(self) -> List[str]:
        return [e.error_type for e in self.errors]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "content": self.content,
            "quality_score": self.quality_score,
            "stages_executed": list(self.stages_executed),
            "fallbacks_used": list(self.fallbacks_used),
            "errors": [e.to_dict() for e in self.errors],
            "performance": self.performance.to_dict(),
            "request_id": self.request_id,
            "plan_id": self.plan_id,
            "best_effort": self.best_effort,
            "quality_warning": self.quality_warning,
            "regenerated": self.regenerated,
        }


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _discard_late_result(task: "asyncio.Future[Any]") -> None:
    """Consume the outcome of work that finished after its deadline."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("Discarded late stage failure: %r", exc)
    else:
        logger.debug("Discarded late stage result")


def _first(payload: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return None


# ── Payload normalization ────────────────────────────────────────────


def normalize_output(stage: str, payload: Any) -> Dict[str, Any]:
    """Coerce a backend payload into the executor's shape or raise StageInvalidOutput."""
    if not isinstance(payload, Mapping):
        raise StageInvalidOutput(stage, f"{stage} returned {type(payload).__name__}, expected a mapping")

    if stage == GENERATE:
        content = payload.get("content")
        if isinstance(content, Mapping):
            # Variant sets carry the chosen draft under ``selected``.
            content = content.get("selected")
        if not isinstance(content, str) or not content.strip():
            raise StageInvalidOutput(stage, "generate returned empty content")
        return {"content": content, "metadata": dict(payload.get("metadata") or {})}

    if stage == OPTIMIZE:
        optimized = _first(payload, "optimized_content", "optimizedContent")
        if not isinstance(optimized, str) or not optimized.strip():
            raise StageInvalidOutput(stage, "optimize returned empty content")
        return {
            "optimized_content": optimized,
            "changes": list(payload.get("changes") or []),
            "confidence": payload.get("confidence"),
        }

    if stage == VALIDATE:
        score = _first(payload, "overall_score", "overallScore", "overall")
        if isinstance(score, bool) or not isinstance(score, Real) or not 0.0 <= float(score) <= 1.0:
            raise StageInvalidOutput(stage, f"validate returned invalid score {score!r}")
        return {"overall_score": float(score), "details": dict(payload.get("details") or {})}

    return dict(payload)


def _cache_hit(output: Mapping[str, Any]) -> bool:
    metadata = output.get("metadata") or {}
    return bool(metadata.get("cache_hit") or metadata.get("cacheHit"))


# ── Executor ─────────────────────────────────────────────────────────


class PlanExecutor:
    """Executes one plan for one request. Not reusable."""

    def __init__(
        self,
        plan: ExecutionPlan,
        request: ContentRequest,
        backends: StageBackends,
        settings: OrchestratorSettings,
        event_bus: Any = None,
        quality_policy: Optional[QualityGatePolicy] = None,
    ) -> None:
        self.plan = plan
        self.request = request
        self.backends = backends
        self.settings = settings
        self.event_bus = event_bus
        self.quality_policy = quality_policy or QualityGatePolicy.from_settings(
            settings.quality_threshold, settings.enable_quality_gates
        )
        self.controller = FallbackController(plan.fallback_strategy)
        self.context = ExecutionContext(
            request_id=request.id,
            plan_id=plan.id,
            max_fallback_chain=plan.fallback_strategy.max_fallback_chain,
        )
        for spec in plan.stages:
            self.context.set_state(spec.name.value, StageState.PENDING)
        self._extra_timings: Dict[str, float] = {}
        self._generate_failed = False
        self._executed = False

    # ── Stage invocation ─────────────────────────────────────────────

    async def _race(self, stage: str, call: Callable[[], Awaitable[Any]], timeout: float) -> Any:
        """Run *call* against its deadline. Late results are discarded, never awaited."""
        task = asyncio.ensure_future(call())
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise
        if not done:
            task.cancel()
            task.add_done_callback(_discard_late_result)
            raise StageTimeout(stage, timeout)
        try:
            return task.result()
        except StageError:
            raise
        except asyncio.TimeoutError as exc:
            raise StageTimeout(stage, timeout) from exc
        except Exception as exc:
            raise wrap_stage_exception(stage, exc) from exc

    async def _attempt(
        self,
        spec: StageSpec,
        call: Callable[[], Awaitable[Any]],
        timeout: Optional[float] = None,
        label: Optional[str] = None,
        track_state: bool = True,
    ) -> StageResult:
        """One timed invocation of a stage backend. Never raises."""
        stage = spec.name.value
        started = _now()
        if track_state:
            self.context.set_state(stage, StageState.RUNNING)
        try:
            payload = await self._race(stage, call, timeout or spec.timeout)
            output = normalize_output(stage, payload)
        except StageError as exc:
            state = StageState.TIMED_OUT if isinstance(exc, StageTimeout) else StageState.FAILED
            logger.warning("Stage %s failed for %s: %s", label or stage, self.request.id, exc.message)
            return StageResult(
                stage=stage,
                success=False,
                started_at=started,
                completed_at=_now(),
                state=state,
                error=create_error_record(exc, label or stage),
            )
        return StageResult(
            stage=stage,
            success=True,
            output=output,
            started_at=started,
            completed_at=_now(),
            cache_hit=_cache_hit(output),
            state=StageState.SUCCEEDED,
        )

    def _call_for(self, stage: str, request: Optional[ContentRequest] = None) -> Callable[[], Awaitable[Any]]:
        request = request or self.request
        if stage == RESEARCH:
            return lambda: self.backends.research.research(request)
        if stage == GENERATE:
            research = self.context.succeeded(RESEARCH)
            research_context = research.output if research else None
            return lambda: self.backends.generator.generate(request, research_context)
        if stage == OPTIMIZE:
            content = self._generated_content()
            return lambda: self.backends.optimizer.optimize(content, request)
        if stage == VALIDATE:
            content = self._generated_content()
            return lambda: self.backends.validator.validate(content, self._validation_context(request))
        raise ValueError(f"Unknown stage {stage!r}")

    def _fallback_generate(self) -> Callable[[], Awaitable[Any]]:
        generator = self.backends.fallback_generator or self.backends.generator
        request = self.request.as_fallback()
        return lambda: generator.generate(request, None)

    def _validation_context(self, request: ContentRequest) -> Dict[str, Any]:
        spec = self.plan.stage(VALIDATE)
        return {
            "request": request,
            "content_type": request.content_type.value,
            "language": request.target_language.value,
            "audience": request.audience,
            "stage_config": dict(spec.config) if spec else {},
        }

    def _generated_content(self) -> str:
        result = self.context.succeeded(GENERATE)
        return result.output["content"] if result else ""

    # ── Stage wrappers ───────────────────────────────────────────────

    async def _run_stage(self, stage: str) -> None:
        spec = self.plan.stage(stage)
        if spec is None:
            return
        try:
            if self.backends.for_stage(stage) is None:
                self._skip(stage, "no backend configured")
            elif stage == RESEARCH:
                await self._run_research(spec)
            elif stage == GENERATE:
                await self._run_generate(spec)
            else:
                await self._run_post_generate(spec)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Unexpected error running stage %s", stage)
            self.context.set_state(stage, StageState.FAILED)
            self.context.add_error(create_error_record(exc, stage))
            if stage == GENERATE:
                self._generate_failed = True
        await self._stage_settled(stage)

    def _skip(self, stage: str, reason: str) -> None:
        logger.info("Skipping %s for %s: %s", stage, self.request.id, reason)
        self.context.set_state(stage, StageState.SKIPPED)

    async def _run_research(self, spec: StageSpec) -> None:
        # Research failures are recorded and never retried or fatal.
        result = await self._attempt(spec, self._call_for(RESEARCH))
        self.context.record(result)

    async def _run_generate(self, spec: StageSpec) -> None:
        result = await self._attempt(spec, self._call_for(GENERATE))
        if result.success:
            self.context.record(result)
            return

        outcome = await self.controller.handle_failure(
            spec,
            result,
            self.context,
            retry=lambda: self._attempt(spec, self._call_for(GENERATE)),
            alternative=lambda: self._attempt(
                spec,
                self._fallback_generate(),
                timeout=self.plan.fallback_strategy.fallback_timeout,
                label="generate-fallback",
            ),
        )
        errors = [e for e in (result.error, *outcome.errors) if e is not None]
        if outcome.recovered:
            # A substitute produced content, so the generate failures were recoverable.
            errors = [replace(e, recoverable=True) for e in errors]
        for error in errors:
            self.context.add_error(error)

        if outcome.recovered:
            label = "generate-fallback" if outcome.via_alternative else GENERATE
            self.context.record(outcome.result, label=label)
            self.context.fallbacks_used.append(GENERATE)
            return

        self._generate_failed = True
        self.context.set_state(GENERATE, outcome.final_state)
        self.context.results[GENERATE] = result
        failure = PlanExecutionFailure(
            "generate failed and no fallback produced content",
            details={"actions": [a.value for a in outcome.actions], "attempts": outcome.attempts + 1},
        )
        self.context.add_error(create_error_record(failure, GENERATE))

    async def _run_post_generate(self, spec: StageSpec) -> None:
        stage = spec.name.value
        if stage == VALIDATE and not self._generated_content():
            self._skip(stage, "generate produced no content")
            return

        result = await self._attempt(spec, self._call_for(stage))
        if result.success:
            self.context.record(result)
            return

        outcome = await self.controller.handle_failure(
            spec,
            result,
            self.context,
            retry=lambda: self._attempt(spec, self._call_for(stage)),
        )
        if outcome.recovered:
            self.context.add_error(result.error)
            self.context.record(outcome.result)
            self.context.fallbacks_used.append(stage)
            return
        self.context.record(result)
        for error in outcome.errors:
            self.context.add_error(error)

    async def _stage_settled(self, stage: str) -> None:
        result = self.context.results.get(stage)
        await emit(
            self.event_bus,
            EventType.STAGE_SETTLED,
            {
                "request_id": self.request.id,
                "plan_id": self.plan.id,
                "stage": stage,
                "state": self.context.states.get(stage, StageState.PENDING).value,
                "duration": result.duration if result else 0.0,
            },
            source="plan_executor",
        )

    # ── Phases ───────────────────────────────────────────────────────

    async def _run_phase(self, phase: List[str]) -> None:
        await asyncio.gather(*(self._run_stage(stage) for stage in phase))
        if len(phase) > 1:
            self.context.parallel_stages += sum(
                1 for s in phase if self.context.states.get(s) not in (StageState.SKIPPED, StageState.PENDING)
            )

    def _skip_remaining(self) -> None:
        for spec in self.plan.stages:
            if self.context.states.get(spec.name.value) == StageState.PENDING:
                self.context.set_state(spec.name.value, StageState.SKIPPED)

    # ── Quality gate ─────────────────────────────────────────────────

    async def _regenerate(self, feedback: str, original_score: float) -> Optional[Dict[str, Any]]:
        """One feedback-driven generate + validate pass. Returns the adopted outcome or None."""
        self.context.regeneration_attempted = True
        self.context.consume_fallback()

        improved_request = self.request.with_quality_feedback(feedback)
        generate_spec = self.plan.stage(GENERATE)
        generated = await self._attempt(
            generate_spec,
            lambda: self.backends.generator.generate(improved_request, None),
            label="generate-improved",
            track_state=False,
        )
        self._extra_timings["generate-improved"] = generated.duration
        if not generated.success:
            self.context.add_error(generated.error)
            return None

        content = generated.output["content"]
        score = self.settings.default_quality_estimate
        validate_spec = self.plan.stage(VALIDATE)
        if validate_spec is not None and self.backends.validator is not None:
            validated = await self._attempt(
                validate_spec,
                lambda: self.backends.validator.validate(content, self._validation_context(improved_request)),
                label="validate-improved",
                track_state=False,
            )
            self._extra_timings["validate-improved"] = validated.duration
            if not validated.success:
                self.context.add_error(validated.error)
                return None
            score = validated.output["overall_score"]
            validation = validated.output
        else:
            validation = None

        if not QualityGatePolicy.should_adopt(original_score, score):
            logger.info(
                "Regeneration for %s scored %.2f, not above %.2f; keeping original",
                self.request.id, score, original_score,
            )
            return None
        return {"content": content, "quality_score": score, "validation": validation}

    # ── Entry point ──────────────────────────────────────────────────

    @track_performance(operation="plan_executor.execute")
    async def execute(self) -> PipelineResult:
        if self._executed:
            raise RuntimeError("PlanExecutor instances run exactly one plan")
        self._executed = True
        # Stage tasks copy the context, so every log line of this plan carries both ids.
        with structlog.contextvars.bound_contextvars(request_id=self.request.id, plan_id=self.plan.id):
            return await self._execute()

    async def _execute(self) -> PipelineResult:
        started = time.perf_counter()
        ctx = self.context
        await emit(
            self.event_bus,
            EventType.PLAN_STARTED,
            {"request_id": self.request.id, "plan_id": self.plan.id, "phases": self.plan.phases},
            source="plan_executor",
        )

        for phase in self.plan.phases:
            await self._run_phase(phase)
            if self._generate_failed:
                self._skip_remaining()
                break

        if self._generate_failed:
            return await self._finish_failure(started)

        generated = ctx.succeeded(GENERATE)
        optimized = ctx.succeeded(OPTIMIZE)
        validated = ctx.succeeded(VALIDATE)

        content = optimized.output["optimized_content"] if optimized else generated.output["content"]
        quality = validated.output["overall_score"] if validated else self.settings.default_quality_estimate
        validation = validated.output if validated else None

        quality_warning = False
        regenerated = False
        verdict = self.quality_policy.evaluate(quality, self.plan.fallback_strategy, ctx)
        if verdict.verdict == GateVerdict.REGENERATE:
            improved = await self._regenerate(verdict.feedback, quality)
            if improved is not None:
                content = improved["content"]
                quality = improved["quality_score"]
                validation = improved["validation"] or validation
                regenerated = True
                ctx.stages_executed.extend(["generate-improved", "validate-improved", "quality-improvement"])
                ctx.fallbacks_used.append("quality-improvement")
            else:
                quality_warning = True
        elif verdict.verdict == GateVerdict.WARN_PASS:
            quality_warning = True

        if quality_warning:
            await emit(
                self.event_bus,
                EventType.QUALITY_WARNING,
                {
                    "request_id": self.request.id,
                    "quality_score": quality,
                    "threshold": verdict.threshold,
                    "regeneration_attempted": ctx.regeneration_attempted,
                },
                source="plan_executor",
            )

        result = PipelineResult(
            success=True,
            content=content,
            quality_score=quality,
            stages_executed=list(ctx.stages_executed),
            fallbacks_used=list(ctx.fallbacks_used),
            errors=list(ctx.errors),
            performance=self._metrics(started),
            request_id=self.request.id,
            plan_id=self.plan.id,
            research=ctx.succeeded(RESEARCH).output if ctx.succeeded(RESEARCH) else None,
            optimization=optimized.output if optimized else None,
            validation=validation,
            stage_results=dict(ctx.results),
            best_effort=ctx.best_effort,
            quality_warning=quality_warning,
            regenerated=regenerated,
        )
        await emit(
            self.event_bus,
            EventType.PLAN_COMPLETED,
            {
                "request_id": self.request.id,
                "plan_id": self.plan.id,
                "quality_score": quality,
                "stages_executed": result.stages_executed,
                "fallbacks_used": result.fallbacks_used,
                "total_time": result.performance.total_time,
            },
            source="plan_executor",
        )
        return result

    async def _finish_failure(self, started: float) -> PipelineResult:
        ctx = self.context
        result = PipelineResult(
            success=False,
            content="",
            quality_score=0.0,
            stages_executed=list(ctx.stages_executed),
            fallbacks_used=list(ctx.fallbacks_used),
            errors=list(ctx.errors),
            performance=self._metrics(started),
            request_id=self.request.id,
            plan_id=self.plan.id,
            research=ctx.succeeded(RESEARCH).output if ctx.succeeded(RESEARCH) else None,
            stage_results=dict(ctx.results),
        )
        logger.error("Plan %s failed for %s: %s", self.plan.id, self.request.id, result.error_types)
        await emit(
            self.event_bus,
            EventType.PLAN_FAILED,
            {"request_id": self.request.id, "plan_id": self.plan.id, "errors": result.error_types},
            source="plan_executor",
        )
        return result

    def _metrics(self, started: float) -> PerformanceMetrics:
        total = time.perf_counter() - started
        ran = [
            s for s, state in self.context.states.items()
            if state not in (StageState.SKIPPED, StageState.PENDING)
        ]
        timings = self.context.stage_timings()
        timings.update(self._extra_timings)
        return PerformanceMetrics(
            total_time=total,
            parallel_efficiency=self.context.parallel_stages / len(ran) if ran else 0.0,
            cache_hit_rate=self.context.cache_hit_rate(),
            stage_timings=timings,
            throughput=1.0 / total if total > 0 else 0.0,
        )
