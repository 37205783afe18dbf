"""Tests for plan execution: scenarios, concurrency, timeouts and the quality gate."""

import pytest

from contentcore.event_bus import InMemoryEventBus
from contentcore.exceptions_unified import ProviderError, StageInvalidOutput
from contentcore.interfaces.event_bus import EventType
from contentcore.pipeline.executor import PlanExecutor, StageBackends, normalize_output
from contentcore.pipeline.plan_builder import PlanBuilder
from contentcore.pipeline.stages import StageState
from stubs import (
    StubGenerator,
    StubOptimizer,
    StubResearch,
    StubValidator,
    failing_generator,
    make_request,
    make_settings,
)


async def _execute(settings, backends, request=None, strategy=None, bus=None):
    request = request or make_request()
    plan = PlanBuilder(settings).build(
        request, skip_stages=backends.missing_stages(), strategy_name=strategy
    )
    executor = PlanExecutor(plan, request, backends, settings, event_bus=bus)
    return await executor.execute(), executor


class ImprovingGenerator(StubGenerator):
    async def generate(self, request, research_context=None):
        self.calls.append(request)
        return {"content": "Better" if request.improvement_mode else "Draft"}


# ========================================================================
# SCENARIOS
# ========================================================================


class TestScenarios:
    async def test_scenario_a_happy_path(self, settings):
        backends = StageBackends(generator=StubGenerator("Hello"), validator=StubValidator([0.9]))
        result, _ = await _execute(settings, backends, make_request(topic="X", enable_research=False))
        assert result.success is True
        assert result.content == "Hello"
        assert result.quality_score == 0.9
        assert {"generate", "validate"} <= set(result.stages_executed)
        assert result.fallbacks_used == []

    async def test_scenario_b_fallback_generator(self, settings):
        backends = StageBackends(
            generator=failing_generator(),
            fallback_generator=StubGenerator("Fallback content"),
            validator=StubValidator([0.9]),
        )
        result, _ = await _execute(settings, backends)
        assert result.success is True
        assert result.content == "Fallback content"
        assert "generate" in result.fallbacks_used
        assert "generate-fallback" in result.stages_executed
        assert "StageProviderError" in result.error_types
        assert all(e.recoverable for e in result.errors if e.stage == "generate")

    async def test_scenario_c_both_generators_fail(self, settings):
        validator = StubValidator([0.9])
        backends = StageBackends(
            generator=failing_generator(),
            fallback_generator=failing_generator("fallback down"),
            validator=validator,
        )
        result, executor = await _execute(settings, backends)
        assert result.success is False
        assert "PlanExecutionFailure" in result.error_types
        assert validator.calls == []
        assert not any(e.recoverable for e in result.errors if e.error_type == "StageProviderError")
        assert executor.context.states["validate"] == StageState.SKIPPED

    async def test_fallback_uses_simplified_request(self, settings):
        generator = StubGenerator("unused", error=ProviderError("down"))
        backends = StageBackends(generator=generator, validator=StubValidator([0.9]))
        await _execute(settings, backends, make_request(enable_research=True))
        assert len(generator.calls) == 2
        fallback_request = generator.calls[1]
        assert fallback_request.fallback_mode is True
        assert fallback_request.enable_research is False


# ========================================================================
# PARTIAL FAILURES
# ========================================================================


class TestPartialFailures:
    async def test_success_regardless_of_optimize_and_validate(self, settings):
        backends = StageBackends(
            generator=StubGenerator("Hello"),
            optimizer=StubOptimizer(error=ProviderError("optimizer down")),
            validator=StubValidator(error=ProviderError("validator down")),
        )
        result, _ = await _execute(settings, backends)
        assert result.success is True
        assert result.content == "Hello"
        assert result.quality_score == settings.default_quality_estimate
        assert result.best_effort is True
        assert sorted(e.stage for e in result.errors) == ["optimize", "validate"]

    async def test_optimized_content_preferred(self, settings):
        backends = StageBackends(
            generator=StubGenerator("Hello"),
            optimizer=StubOptimizer(suffix=" (optimized)"),
            validator=StubValidator([0.9]),
        )
        result, _ = await _execute(settings, backends)
        assert result.content == "Hello (optimized)"
        assert result.optimization["changes"] == ["polish"]

    async def test_research_failure_is_not_fatal(self, settings):
        generator = StubGenerator("Hello")
        backends = StageBackends(
            generator=generator,
            research=StubResearch(error=ProviderError("search down")),
            validator=StubValidator([0.9]),
        )
        result, _ = await _execute(settings, backends, make_request(enable_research=True))
        assert result.success is True
        assert generator.research_contexts == [None]
        assert "research" in [e.stage for e in result.errors]

    async def test_research_output_feeds_generate(self, settings):
        generator = StubGenerator("Hello")
        research = StubResearch()
        backends = StageBackends(generator=generator, research=research, validator=StubValidator([0.9]))
        result, _ = await _execute(settings, backends, make_request(topic="tides", enable_research=True))
        assert research.calls == 1
        assert generator.research_contexts[0]["enriched_content"] == "facts about tides"
        assert result.stages_executed[0] == "research"

    async def test_research_disabled_never_runs(self, settings):
        research = StubResearch()
        backends = StageBackends(generator=StubGenerator("Hello"), research=research, validator=StubValidator([0.9]))
        result, _ = await _execute(settings, backends, make_request(enable_research=False))
        assert "research" not in result.stages_executed
        assert research.calls == 0

    async def test_invalid_validation_score_degrades(self, settings):
        backends = StageBackends(generator=StubGenerator("Hello"), validator=StubValidator([1.5]))
        result, _ = await _execute(settings, backends)
        assert result.success is True
        assert result.quality_score == settings.default_quality_estimate
        assert "StageInvalidOutput" in result.error_types

    async def test_empty_generate_output_uses_fallback(self, settings):
        backends = StageBackends(
            generator=StubGenerator("   "),
            fallback_generator=StubGenerator("Fallback content"),
            validator=StubValidator([0.9]),
        )
        result, _ = await _execute(settings, backends)
        assert result.content == "Fallback content"
        assert "StageInvalidOutput" in result.error_types

    async def test_variant_content_is_unwrapped(self, settings):
        backends = StageBackends(
            generator=StubGenerator({"selected": "Variant B", "variants": ["Variant A", "Variant B"]}),
            validator=StubValidator([0.9]),
        )
        result, _ = await _execute(settings, backends)
        assert result.content == "Variant B"


# ========================================================================
# TIMEOUTS AND CONCURRENCY
# ========================================================================


class TestTimingAndConcurrency:
    async def test_timeout_then_alternative(self):
        settings = make_settings(generate_timeout=0.05, generate_retries=0)
        slow = StubGenerator("too late", delay=0.5)
        backends = StageBackends(
            generator=slow,
            fallback_generator=StubGenerator("Fallback content"),
            validator=StubValidator([0.9]),
        )
        result, _ = await _execute(settings, backends)
        assert result.content == "Fallback content"
        assert "StageTimeout" in result.error_types
        assert result.performance.total_time < 0.4

    async def test_repeated_timeouts_still_reach_fallback_generator(self):
        settings = make_settings(generate_timeout=0.05)
        generator = StubGenerator("too late", delay=0.5)
        fallback = StubGenerator("Fallback content")
        backends = StageBackends(generator=generator, fallback_generator=fallback, validator=StubValidator([0.9]))
        result, executor = await _execute(settings, backends)
        # default chain of 2: one retry, then the fallback generator
        assert len(generator.calls) == 2
        assert len(fallback.calls) == 1
        assert result.success is True
        assert result.content == "Fallback content"
        assert result.error_types.count("StageTimeout") == 2
        assert executor.context.fallback_budget_remaining == 0

    async def test_post_generate_phase_runs_concurrently(self, settings):
        backends = StageBackends(
            generator=StubGenerator("Hello", delay=0.5),
            optimizer=StubOptimizer(delay=0.3),
            validator=StubValidator([0.9], delay=0.3),
        )
        result, _ = await _execute(settings, backends)
        optimize = result.stage_results["optimize"]
        validate = result.stage_results["validate"]
        phase_wall = (max(optimize.completed_at, validate.completed_at)
                      - min(optimize.started_at, validate.started_at)).total_seconds()
        assert 0.25 <= phase_wall < 0.5
        assert result.performance.total_time < 1.0
        assert result.performance.parallel_efficiency == pytest.approx(2 / 3)

    async def test_validate_never_precedes_generate(self, settings):
        backends = StageBackends(
            generator=StubGenerator("Hello", delay=0.05),
            optimizer=StubOptimizer(),
            validator=StubValidator([0.9]),
        )
        result, _ = await _execute(settings, backends)
        generate = result.stage_results["generate"]
        validate = result.stage_results["validate"]
        assert validate.started_at >= generate.completed_at

    async def test_cache_hit_rate(self, settings):
        backends = StageBackends(
            generator=StubGenerator("Hello", metadata={"cache_hit": True}),
            validator=StubValidator([0.9]),
        )
        result, _ = await _execute(settings, backends)
        assert result.performance.cache_hit_rate == pytest.approx(0.5)


# ========================================================================
# QUALITY GATE
# ========================================================================


class TestQualityGate:
    async def test_single_regeneration_keeps_original(self, settings):
        generator = StubGenerator("Hello")
        validator = StubValidator([0.1])
        result, executor = await _execute(settings, StageBackends(generator=generator, validator=validator))
        assert len(generator.calls) == 2
        assert len(validator.calls) == 2
        assert generator.calls[1].improvement_mode is True
        assert generator.calls[1].quality_feedback
        assert result.content == "Hello"
        assert result.quality_score == 0.1
        assert result.quality_warning is True
        assert result.regenerated is False
        assert executor.context.regeneration_attempted

    async def test_improved_result_adopted(self, settings):
        generator = ImprovingGenerator()
        validator = StubValidator([0.5, 0.9])
        result, _ = await _execute(settings, StageBackends(generator=generator, validator=validator))
        assert result.content == "Better"
        assert result.quality_score == 0.9
        assert result.regenerated is True
        assert "quality-improvement" in result.stages_executed

    async def test_fast_strategy_never_regenerates(self, settings):
        generator = StubGenerator("Hello")
        result, _ = await _execute(
            settings, StageBackends(generator=generator, validator=StubValidator([0.1])), strategy="fast"
        )
        assert len(generator.calls) == 1
        assert result.quality_warning is True

    async def test_quality_warning_event(self, settings):
        bus = InMemoryEventBus()
        warnings = []

        async def on_warning(data):
            warnings.append(data)

        await bus.subscribe(EventType.QUALITY_WARNING, on_warning)
        await _execute(settings, StageBackends(generator=StubGenerator("Hello"), validator=StubValidator([0.1])), bus=bus)
        assert len(warnings) == 1
        assert warnings[0]["regeneration_attempted"] is True


# ========================================================================
# CONTRACT
# ========================================================================


class TestContract:
    async def test_idempotent_content(self, settings):
        request = make_request(topic="repeatable")
        contents = []
        for _ in range(3):
            backends = StageBackends(
                generator=StubGenerator("Same every time"),
                optimizer=StubOptimizer(suffix="!"),
                validator=StubValidator([0.9]),
            )
            result, _ = await _execute(settings, backends, request)
            contents.append(result.content)
        assert contents == ["Same every time!"] * 3

    async def test_executor_runs_once(self, settings, backends):
        _, executor = await _execute(settings, backends)
        with pytest.raises(RuntimeError):
            await executor.execute()

    async def test_lifecycle_events(self, settings, backends):
        bus = InMemoryEventBus()
        seen = []

        async def record(data):
            seen.append(data.get("stage", "plan"))

        for event in (EventType.PLAN_STARTED, EventType.STAGE_SETTLED, EventType.PLAN_COMPLETED):
            await bus.subscribe(event, record)
        await _execute(settings, backends, bus=bus)
        assert seen[0] == "plan" and seen[-1] == "plan"
        assert sorted(seen[1:-1]) == ["generate", "validate"]

    def test_normalize_rejects_non_mapping(self):
        with pytest.raises(StageInvalidOutput):
            normalize_output("generate", "plain string")

    def test_normalize_accepts_overall_key(self):
        assert normalize_output("validate", {"overall": 0.75})["overall_score"] == 0.75
