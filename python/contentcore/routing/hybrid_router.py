"""Hybrid router: runs the selected strategy with a guaranteed legacy fallback.

The router is the public entry point for hosts. It validates the request,
asks the StrategySelector for a decision, executes it and converts every
runtime failure into a structured HybridResult. A failing non-legacy
strategy is retried exactly once through legacy; there are no fallback loops.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from contentcore.config.settings import OrchestratorSettings
from contentcore.event_bus import emit
from contentcore.exceptions_unified import (
    AllStrategiesFailed,
    ConfigurationError,
    StageErrorRecord,
    create_error_record,
)
from contentcore.interfaces.event_bus import EventType
from contentcore.models.request import ContentRequest
from contentcore.pipeline.composer import ContentPipeline
from contentcore.pipeline.executor import PipelineResult
from contentcore.pipeline.plan_builder import validate_request
from contentcore.routing.legacy import LegacyTemplateProcessor
from contentcore.routing.strategy_selector import RolloutDecision, StrategyName, StrategySelector

logger = logging.getLogger(__name__)

HEALTHY_SUCCESS_RATE = 0.85
STATS_RETENTION_DAYS = 7
HEALTH_LOOKBACK_DAYS = 3
MAX_STATS_ENTRIES = 1000
ROLLOUT_EVALUATION_INTERVAL = 50

# Settings a caller may override for one request. Stage settings are fixed
# at pipeline construction and cannot change per call.
OVERRIDABLE_FLAGS = frozenset({
    "enable_new_architecture",
    "new_architecture_percentage",
    "canary_users",
    "fallback_enabled",
    "enable_hybrid_comparison",
    "hybrid_quality_margin",
    "complexity_threshold",
    "enable_cultural_adaptation",
    "cultural_adaptation_languages",
})


# ── Value objects ────────────────────────────────────────────────────


@dataclass
class HybridResult:
    success: bool
    content: str
    quality_score: float
    strategy_used: StrategyName
    decision: RolloutDecision
    request_id: str
    fallback_used: bool = False
    comparison_performed: bool = False
    processing_time: float = 0.0
    errors: List[StageErrorRecord] = field(default_factory=list)
    pipeline_result: Optional[PipelineResult] = None
    legacy_result: Optional[PipelineResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "content": self.content,
            "quality_score": self.quality_score,
            "strategy_used": self.strategy_used.value,
            "decision": self.decision.to_dict(),
            "request_id": self.request_id,
            "fallback_used": self.fallback_used,
            "comparison_performed": self.comparison_performed,
            "processing_time": self.processing_time,
            "errors": [e.to_dict() for e in self.errors],
        }


@dataclass
class ProcessingStats:
    """Per strategy, per UTC day."""

    strategy: str
    day: date
    total_requests: int = 0
    successful_requests: int = 0
    average_processing_time: float = 0.0
    average_quality_score: float = 0.0

    @property
    def success_rate(self) -> float:
        return self.successful_requests / self.total_requests if self.total_requests else 0.0

    def update(self, success: bool, processing_time: float, quality_score: float) -> None:
        self.total_requests += 1
        if success:
            self.successful_requests += 1
        n = self.total_requests
        self.average_processing_time += (processing_time - self.average_processing_time) / n
        self.average_quality_score += (quality_score - self.average_quality_score) / n

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy,
            "date": self.day.isoformat(),
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "success_rate": self.success_rate,
            "average_processing_time": self.average_processing_time,
            "average_quality_score": self.average_quality_score,
        }


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


def _strategy_failure(strategy: StrategyName, reason: str) -> StageErrorRecord:
    return StageErrorRecord(
        stage=strategy.value,
        error_type="StrategyFailure",
        message=f"Primary strategy failed: {reason}",
        recoverable=True,
    )


# ── Router ───────────────────────────────────────────────────────────


class HybridRouter:
    """Routes each request to legacy, the new pipeline, or both."""

    def __init__(
        self,
        settings: OrchestratorSettings,
        pipeline: ContentPipeline,
        legacy: Optional[LegacyTemplateProcessor] = None,
        selector: Optional[StrategySelector] = None,
        event_bus: Any = None,
        today: Callable[[], date] = _utc_today,
    ) -> None:
        self.settings = settings
        self.pipeline = pipeline
        self.legacy = legacy or LegacyTemplateProcessor()
        self.selector = selector or StrategySelector(settings)
        self.event_bus = event_bus
        self._today = today
        self._lock = threading.Lock()
        self._stats: Dict[Tuple[str, date], ProcessingStats] = {}
        self._processed = 0

    def _effective_settings(self, flags: Optional[Dict[str, Any]]) -> OrchestratorSettings:
        if not flags:
            return self.settings
        unknown = set(flags) - OVERRIDABLE_FLAGS
        if unknown:
            raise ConfigurationError(f"Flags cannot be overridden per request: {sorted(unknown)}")
        # Validated copy; the shared settings object is never mutated.
        return self.settings.model_validate({**self.settings.model_dump(), **flags})

    # ── Strategy runners ─────────────────────────────────────────────

    async def _run_new(self, request: ContentRequest) -> PipelineResult:
        return await self.pipeline.compose(request)

    async def _run_legacy(self, request: ContentRequest) -> PipelineResult:
        return await self.legacy.process(request)

    async def _legacy_fallback(
        self,
        request: ContentRequest,
        decision: RolloutDecision,
        reason: str,
        prior_errors: List[StageErrorRecord],
        pipeline_result: Optional[PipelineResult],
        started: float,
    ) -> HybridResult:
        logger.warning("Strategy %s failed for %s (%s); retrying via legacy", decision.strategy.value, request.id, reason)
        await emit(
            self.event_bus,
            EventType.STRATEGY_FALLBACK,
            {"request_id": request.id, "from": decision.strategy.value, "to": StrategyName.LEGACY.value, "reason": reason},
            source="hybrid_router",
        )
        errors = list(prior_errors) + [_strategy_failure(decision.strategy, reason)]
        try:
            legacy_result = await self._run_legacy(request)
        except Exception as exc:
            logger.exception("Legacy fallback raised for %s", request.id)
            errors.append(create_error_record(exc, StrategyName.LEGACY.value))
            legacy_result = None

        if legacy_result is None or not legacy_result.success:
            return self._terminal_failure(request, decision, errors, started, pipeline_result, fallback_used=True)
        return HybridResult(
            success=True,
            content=legacy_result.content,
            quality_score=legacy_result.quality_score,
            strategy_used=StrategyName.LEGACY,
            decision=decision,
            request_id=request.id,
            fallback_used=True,
            processing_time=time.perf_counter() - started,
            errors=errors,
            pipeline_result=pipeline_result,
            legacy_result=legacy_result,
        )

    def _terminal_failure(
        self,
        request: ContentRequest,
        decision: RolloutDecision,
        errors: List[StageErrorRecord],
        started: float,
        pipeline_result: Optional[PipelineResult] = None,
        fallback_used: bool = False,
        comparison_performed: bool = False,
    ) -> HybridResult:
        failure = AllStrategiesFailed(f"No strategy produced content for request {request.id}")
        return HybridResult(
            success=False,
            content="",
            quality_score=0.0,
            strategy_used=decision.strategy,
            decision=decision,
            request_id=request.id,
            fallback_used=fallback_used,
            comparison_performed=comparison_performed,
            processing_time=time.perf_counter() - started,
            errors=list(errors) + [create_error_record(failure, "router")],
            pipeline_result=pipeline_result,
        )

    async def _execute_new(
        self, request: ContentRequest, decision: RolloutDecision, cfg: OrchestratorSettings, started: float
    ) -> HybridResult:
        result: Optional[PipelineResult] = None
        try:
            result = await self._run_new(request)
        except Exception as exc:
            logger.exception("New architecture raised for %s", request.id)
            reason = str(exc) or type(exc).__name__
            errors = [create_error_record(exc, decision.strategy.value)]
        else:
            if result.success:
                return HybridResult(
                    success=True,
                    content=result.content,
                    quality_score=result.quality_score,
                    strategy_used=StrategyName.NEW_ARCHITECTURE,
                    decision=decision,
                    request_id=request.id,
                    processing_time=time.perf_counter() - started,
                    errors=list(result.errors),
                    pipeline_result=result,
                )
            reason = ", ".join(result.error_types) or "pipeline reported failure"
            errors = list(result.errors)

        if not cfg.fallback_enabled:
            return self._terminal_failure(request, decision, errors, started, result)
        return await self._legacy_fallback(request, decision, reason, errors, result, started)

    async def _execute_legacy(self, request: ContentRequest, decision: RolloutDecision, started: float) -> HybridResult:
        try:
            result = await self._run_legacy(request)
        except Exception as exc:
            logger.exception("Legacy strategy raised for %s", request.id)
            return self._terminal_failure(request, decision, [create_error_record(exc, "legacy")], started)
        return HybridResult(
            success=result.success,
            content=result.content,
            quality_score=result.quality_score,
            strategy_used=StrategyName.LEGACY,
            decision=decision,
            request_id=request.id,
            processing_time=time.perf_counter() - started,
            legacy_result=result,
        )

    async def _execute_hybrid(
        self, request: ContentRequest, decision: RolloutDecision, cfg: OrchestratorSettings, started: float
    ) -> HybridResult:
        new_outcome, legacy_outcome = await asyncio.gather(
            self._run_new(request), self._run_legacy(request), return_exceptions=True
        )
        errors: List[StageErrorRecord] = []
        new_result = legacy_result = None

        if isinstance(new_outcome, BaseException):
            logger.error("Hybrid: new architecture raised for %s: %r", request.id, new_outcome)
            errors.append(create_error_record(new_outcome, StrategyName.NEW_ARCHITECTURE.value))
        else:
            new_result = new_outcome
            errors.extend(new_outcome.errors)
        if isinstance(legacy_outcome, BaseException):
            logger.error("Hybrid: legacy raised for %s: %r", request.id, legacy_outcome)
            errors.append(create_error_record(legacy_outcome, StrategyName.LEGACY.value))
        else:
            legacy_result = legacy_outcome

        new_ok = new_result is not None and new_result.success
        legacy_ok = legacy_result is not None and legacy_result.success
        if not new_ok and not legacy_ok:
            return self._terminal_failure(request, decision, errors, started, new_result, comparison_performed=True)

        if new_ok and legacy_ok:
            # Prefer new unless it trails legacy by more than the margin.
            use_new = new_result.quality_score >= legacy_result.quality_score - cfg.hybrid_quality_margin
        else:
            use_new = new_ok
        chosen = new_result if use_new else legacy_result
        logger.info(
            "Hybrid comparison for %s: new=%s legacy=%s chose=%s",
            request.id,
            f"{new_result.quality_score:.2f}" if new_ok else "failed",
            f"{legacy_result.quality_score:.2f}" if legacy_ok else "failed",
            "new_architecture" if use_new else "legacy",
        )
        return HybridResult(
            success=True,
            content=chosen.content,
            quality_score=chosen.quality_score,
            strategy_used=StrategyName.NEW_ARCHITECTURE if use_new else StrategyName.LEGACY,
            decision=decision,
            request_id=request.id,
            comparison_performed=True,
            processing_time=time.perf_counter() - started,
            errors=errors,
            pipeline_result=new_result,
            legacy_result=legacy_result,
        )

    # ── Entry point ──────────────────────────────────────────────────

    async def process(
        self,
        request: ContentRequest,
        user_id: Optional[str] = None,
        force_strategy: Optional[Union[StrategyName, str]] = None,
        flags: Optional[Dict[str, Any]] = None,
    ) -> HybridResult:
        """Produce content for *request*.

        Raises:
            InvalidRequest: for a malformed request.
            ConfigurationError: for flags that cannot be overridden per call,
                or an unknown forced strategy.
        """
        validate_request(request)
        cfg = self._effective_settings(flags)
        started = time.perf_counter()

        decision = self.selector.select(request, user_id=user_id, override=force_strategy, settings=cfg)
        logger.info(
            "Strategy %s for %s (confidence %.2f): %s",
            decision.strategy.value, request.id, decision.confidence, " | ".join(decision.reasoning),
        )
        await emit(
            self.event_bus,
            EventType.STRATEGY_SELECTED,
            {"request_id": request.id, "user_id": user_id, **decision.to_dict()},
            source="hybrid_router",
        )

        if decision.strategy == StrategyName.LEGACY:
            result = await self._execute_legacy(request, decision, started)
        elif decision.strategy == StrategyName.HYBRID:
            result = await self._execute_hybrid(request, decision, cfg, started)
        else:
            result = await self._execute_new(request, decision, cfg, started)

        self._record(decision.strategy, result)
        await emit(
            self.event_bus,
            EventType.PROCESSING_COMPLETED,
            result.to_dict(),
            source="hybrid_router",
        )
        if self._due_for_evaluation():
            await self.evaluate_rollout()
        return result

    # ── Statistics ───────────────────────────────────────────────────

    def _record(self, strategy: StrategyName, result: HybridResult) -> None:
        day = self._today()
        # The decided strategy is credited only when it produced the content itself.
        primary_success = result.success and not result.fallback_used
        entries = [(strategy.value, primary_success)]
        if result.fallback_used:
            entries.append((StrategyName.LEGACY.value, result.success))
        with self._lock:
            for name, success in entries:
                stats = self._stats.get((name, day))
                if stats is None:
                    stats = self._stats[(name, day)] = ProcessingStats(strategy=name, day=day)
                stats.update(success, result.processing_time, result.quality_score if success else 0.0)
            self._processed += 1
            self._cleanup_locked(day)

    def _cleanup_locked(self, today: date) -> None:
        cutoff = today - timedelta(days=STATS_RETENTION_DAYS)
        for key in [k for k in self._stats if k[1] < cutoff]:
            del self._stats[key]

    def _due_for_evaluation(self) -> bool:
        with self._lock:
            return self._processed % ROLLOUT_EVALUATION_INTERVAL == 0

    def processing_stats(self) -> List[ProcessingStats]:
        with self._lock:
            return sorted(
                (ProcessingStats(**vars(s)) for s in self._stats.values()),
                key=lambda s: (s.day, s.strategy),
            )

    def _average_success_rate(self, strategy: Optional[str] = None, since: Optional[date] = None) -> Optional[float]:
        with self._lock:
            rates = [
                s.success_rate
                for s in self._stats.values()
                if s.total_requests and (strategy is None or s.strategy == strategy)
                and (since is None or s.day >= since)
            ]
        return sum(rates) / len(rates) if rates else None

    async def evaluate_rollout(self) -> Optional[float]:
        """Publish a warning when the new architecture's success rate drops too low."""
        rate = self._average_success_rate(StrategyName.NEW_ARCHITECTURE.value)
        if rate is not None and rate < HEALTHY_SUCCESS_RATE:
            logger.warning("New architecture success rate %.2f below %.2f", rate, HEALTHY_SUCCESS_RATE)
            await emit(
                self.event_bus,
                EventType.ROLLOUT_WARNING,
                {
                    "success_rate": rate,
                    "recommendation": "Consider reducing new_architecture_percentage",
                },
                source="hybrid_router",
            )
        return rate

    def health_check(self) -> Dict[str, Any]:
        since = self._today() - timedelta(days=HEALTH_LOOKBACK_DAYS)
        rate = self._average_success_rate(since=since)
        recent_rate = 1.0 if rate is None else rate
        with self._lock:
            stats_count = len(self._stats)
        pipeline_health = self.pipeline.health()
        healthy = (
            recent_rate >= HEALTHY_SUCCESS_RATE
            and stats_count < MAX_STATS_ENTRIES
            and pipeline_health.healthy
        )
        return {
            "status": "healthy" if healthy else "degraded",
            "details": {
                "recent_success_rate": recent_rate,
                "stats_count": stats_count,
                "pipeline": pipeline_health.to_dict(),
                "new_architecture_percentage": self.settings.new_architecture_percentage,
                "enable_new_architecture": self.settings.enable_new_architecture,
            },
        }
