"""Tests for plan building, phase grouping and request validation."""

import pytest

from contentcore.exceptions_unified import ConfigurationError, InvalidRequest
from contentcore.models.request import ContentType, Tone
from contentcore.pipeline.mappings import CONTENT_TYPE_MAP, TONE_MAP, validate_mappings
from contentcore.pipeline.plan_builder import PlanBuilder
from contentcore.pipeline.stages import StageName
from stubs import make_request, make_settings


# ========================================================================
# STAGE SET AND PHASES
# ========================================================================


class TestPlanShape:
    def test_research_disabled_plan(self, settings):
        plan = PlanBuilder(settings).build(make_request())
        assert [s.name for s in plan.stages] == [StageName.GENERATE, StageName.OPTIMIZE, StageName.VALIDATE]
        assert plan.phases == [["generate"], ["optimize", "validate"]]

    def test_research_enabled_gets_own_phase(self, settings):
        plan = PlanBuilder(settings).build(make_request(enable_research=True))
        assert plan.phases == [["research"], ["generate"], ["optimize", "validate"]]
        # research is a soft dependency: it orders generate but is not a hard edge
        assert plan.dependencies["generate"] == []
        assert plan.dependencies["optimize"] == ["generate"]
        assert plan.dependencies["validate"] == ["generate"]

    def test_research_stage_kill_switch(self):
        plan = PlanBuilder(make_settings(enable_research_stage=False)).build(make_request(enable_research=True))
        assert not plan.has_stage("research")

    def test_skip_list_removes_stages(self, settings):
        plan = PlanBuilder(settings).build(make_request(), skip_stages=["optimize"])
        assert plan.phases == [["generate"], ["validate"]]

    def test_cannot_skip_generate(self, settings):
        with pytest.raises(InvalidRequest):
            PlanBuilder(settings).build(make_request(), skip_stages=["generate"])

    def test_sequential_mode_splits_post_generate_phase(self):
        plan = PlanBuilder(make_settings(enable_parallel_execution=False)).build(make_request())
        assert plan.phases == [["generate"], ["optimize"], ["validate"]]

    def test_required_flags_and_stage_defaults(self, settings):
        plan = PlanBuilder(settings).build(make_request(enable_research=True))
        specs = {s.name.value: s for s in plan.stages}
        assert specs["generate"].required and specs["validate"].required
        assert not specs["research"].required and not specs["optimize"].required
        assert (specs["research"].timeout, specs["research"].retries) == (10.0, 2)
        assert (specs["generate"].timeout, specs["generate"].retries) == (15.0, 3)
        assert (specs["optimize"].timeout, specs["optimize"].retries) == (5.0, 1)
        assert (specs["validate"].timeout, specs["validate"].retries) == (3.0, 1)


# ========================================================================
# ESTIMATES, STRATEGIES, CONFIG
# ========================================================================


class TestPlanDetails:
    def test_duration_estimate_is_seventy_percent_of_timeouts(self, settings):
        plan = PlanBuilder(settings).build(make_request(enable_research=True))
        assert plan.estimated_duration == pytest.approx((10 + 15 + 5 + 3) * 0.7)

    def test_fallback_strategy_lookup(self, settings):
        builder = PlanBuilder(settings)
        assert builder.build(make_request()).fallback_strategy.name == "default"
        fast = builder.build(make_request(), strategy_name="fast").fallback_strategy
        assert fast.name == "fast"
        assert fast.enabled is False
        assert fast.max_fallback_chain == 1

    def test_unknown_strategy_falls_back_to_default(self, settings):
        plan = PlanBuilder(settings).build(make_request(), strategy_name="nope")
        assert plan.fallback_strategy.name == "default"

    def test_generate_config_uses_mapped_vocabulary(self, settings):
        plan = PlanBuilder(settings).build(
            make_request(content_type=ContentType.LANDING, tone=Tone.PERSUASIVE)
        )
        config = plan.stage("generate").config
        assert config["content_type"] == "websiteCopy"
        assert config["tone"] == "authoritative"

    def test_builds_are_independent(self, settings):
        builder = PlanBuilder(settings)
        first = builder.build(make_request())
        second = builder.build(make_request())
        assert first.id != second.id
        assert first.phases == second.phases

    def test_plan_serializes(self, settings):
        data = PlanBuilder(settings).build(make_request()).to_dict()
        assert data["fallback_strategy"]["name"] == "default"
        assert [s["name"] for s in data["stages"]] == ["generate", "optimize", "validate"]


# ========================================================================
# VALIDATION
# ========================================================================


class TestValidation:
    @pytest.mark.parametrize("topic", ["", "   "])
    def test_empty_topic_rejected(self, settings, topic):
        with pytest.raises(InvalidRequest):
            PlanBuilder(settings).build(make_request(topic=topic))

    def test_mappings_are_complete(self):
        validate_mappings()

    def test_incomplete_mapping_fails_fast(self):
        partial = {k: v for k, v in CONTENT_TYPE_MAP.items() if k != ContentType.AD}
        with pytest.raises(ConfigurationError):
            validate_mappings(partial, TONE_MAP)

    def test_incomplete_tone_mapping_fails_fast(self):
        partial = {k: v for k, v in TONE_MAP.items() if k != Tone.FRIENDLY}
        with pytest.raises(ConfigurationError):
            validate_mappings(CONTENT_TYPE_MAP, partial)
