"""Tests for quality gate verdicts and the regeneration policy."""

from contentcore.pipeline.fallback import strategy_default, strategy_fast
from contentcore.pipeline.quality_gates import (
    GATE_DISABLED,
    GateVerdict,
    QualityGate,
    QualityGatePolicy,
)
from contentcore.pipeline.stages import ExecutionContext


def _ctx(chain=2) -> ExecutionContext:
    return ExecutionContext(request_id="r1", plan_id="p1", max_fallback_chain=chain)


class TestQualityGatePolicy:
    def test_passes_at_threshold(self):
        result = QualityGatePolicy(QualityGate(min_quality=0.7)).evaluate(0.7, strategy_default(), _ctx())
        assert result.verdict == GateVerdict.PASSED

    def test_regenerates_below_threshold(self):
        result = QualityGatePolicy().evaluate(0.1, strategy_default(), _ctx())
        assert result.verdict == GateVerdict.REGENERATE
        assert "0.10" in result.feedback

    def test_only_one_regeneration(self):
        ctx = _ctx()
        ctx.regeneration_attempted = True
        result = QualityGatePolicy().evaluate(0.1, strategy_default(), ctx)
        assert result.verdict == GateVerdict.WARN_PASS

    def test_strategy_must_allow_regeneration(self):
        result = QualityGatePolicy().evaluate(0.1, strategy_fast(), _ctx())
        assert result.verdict == GateVerdict.WARN_PASS

    def test_exhausted_budget_blocks_regeneration(self):
        ctx = _ctx(chain=1)
        assert ctx.consume_fallback()
        result = QualityGatePolicy().evaluate(0.1, strategy_default(), ctx)
        assert result.verdict == GateVerdict.WARN_PASS
        assert "budget" in result.reason

    def test_disabled_gate(self):
        policy = QualityGatePolicy.from_settings(threshold=0.7, enabled=False)
        assert policy.gate == GATE_DISABLED
        assert policy.evaluate(0.1, strategy_default(), _ctx()).verdict == GateVerdict.PASSED

    def test_adopt_only_when_strictly_higher(self):
        assert QualityGatePolicy.should_adopt(0.5, 0.6)
        assert not QualityGatePolicy.should_adopt(0.5, 0.5)
        assert not QualityGatePolicy.should_adopt(0.5, 0.4)
        assert not QualityGatePolicy.should_adopt(0.5, None)
