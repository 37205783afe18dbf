"""Fallback decisions for failed stages.

The controller sits between the executor and the stage backends. When a
stage fails it classifies the failure, looks up the plan's fallback rule
and walks an escalation chain:

    retry -> alternative -> skip (optional stage) / degrade (required stage)

Every retry and alternative attempt draws from the per-request budget
``max_fallback_chain`` held on the ExecutionContext. The controller never
raises: errors from fallback attempts are recorded on the outcome.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from contentcore.exceptions_unified import (
    StageErrorRecord,
    StageInvalidOutput,
    create_error_record,
)
from contentcore.pipeline.stages import (
    ExecutionContext,
    StageName,
    StageResult,
    StageSpec,
    StageState,
)

logger = logging.getLogger(__name__)

StageAttempt = Callable[[], Awaitable[StageResult]]


# ── Strategy types ───────────────────────────────────────────────────


class FallbackCondition(str, Enum):
    """What went wrong."""

    TIMEOUT = "timeout"
    ERROR = "error"
    INVALID_OUTPUT = "invalid_output"
    QUALITY_LOW = "quality_low"


class FallbackAction(str, Enum):
    """What to do about it."""

    SKIP = "skip"  # omit the stage and continue
    RETRY = "retry"  # re-invoke immediately, up to the stage's retry count
    ALTERNATIVE = "alternative"  # invoke the simplified implementation
    DEGRADE = "degrade"  # continue with partial results, mark best effort


@dataclass(frozen=True)
class FallbackRule:
    condition: FallbackCondition
    action: FallbackAction
    target: Optional[str] = None  # restrict the rule to one stage

    def applies_to(self, condition: FallbackCondition, stage: str) -> bool:
        return self.condition == condition and (self.target is None or self.target == stage)


@dataclass(frozen=True)
class FallbackStrategy:
    """Per-plan fallback policy."""

    name: str = "default"
    enabled: bool = True
    rules: tuple = ()
    max_fallback_chain: int = 2
    fallback_timeout: float = 10.0  # deadline for alternative attempts
    cooldown: float = 0.0  # pause between retries, seconds

    def action_for(self, condition: FallbackCondition, stage: str) -> Optional[FallbackAction]:
        """First matching rule wins; stage-targeted rules are listed first by convention."""
        if not self.enabled:
            return None
        for rule in self.rules:
            if rule.applies_to(condition, stage):
                return rule.action
        return None

    def allows_regeneration(self) -> bool:
        return self.action_for(FallbackCondition.QUALITY_LOW, StageName.GENERATE.value) in (
            FallbackAction.ALTERNATIVE,
            FallbackAction.RETRY,
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "enabled": self.enabled,
            "max_fallback_chain": self.max_fallback_chain,
            "fallback_timeout": self.fallback_timeout,
            "cooldown": self.cooldown,
            "rules": [
                {"condition": r.condition.value, "action": r.action.value, "target": r.target}
                for r in self.rules
            ],
        }


# ── Pre-built strategies ─────────────────────────────────────────────


def strategy_default() -> FallbackStrategy:
    """Retry timeouts, substitute the simplified generator on errors and low quality."""
    return FallbackStrategy(
        name="default",
        enabled=True,
        rules=(
            FallbackRule(FallbackCondition.TIMEOUT, FallbackAction.RETRY),
            FallbackRule(FallbackCondition.ERROR, FallbackAction.ALTERNATIVE),
            FallbackRule(FallbackCondition.INVALID_OUTPUT, FallbackAction.ALTERNATIVE),
            FallbackRule(FallbackCondition.QUALITY_LOW, FallbackAction.ALTERNATIVE),
        ),
        max_fallback_chain=2,
        fallback_timeout=10.0,
    )


def strategy_fast() -> FallbackStrategy:
    """No fallbacks at all. Stages either succeed or fail."""
    return FallbackStrategy(
        name="fast",
        enabled=False,
        rules=(),
        max_fallback_chain=1,
        fallback_timeout=5.0,
    )


FALLBACK_STRATEGIES: Dict[str, Callable[[], FallbackStrategy]] = {
    "default": strategy_default,
    "fast": strategy_fast,
}


def get_fallback_strategy(name: Optional[str]) -> FallbackStrategy:
    """Look up a strategy by name; unknown names resolve to ``default``."""
    factory = FALLBACK_STRATEGIES.get(name or "default")
    if factory is None:
        logger.warning("Unknown fallback strategy %r, using default", name)
        factory = strategy_default
    return factory()


# ── Outcome ──────────────────────────────────────────────────────────


@dataclass
class FallbackOutcome:
    """What the controller did for one failed stage."""

    stage: str
    condition: FallbackCondition
    actions: List[FallbackAction] = field(default_factory=list)
    result: Optional[StageResult] = None
    attempts: int = 0
    errors: List[StageErrorRecord] = field(default_factory=list)
    final_state: StageState = StageState.FAILED
    best_effort: bool = False
    via_alternative: bool = False

    @property
    def recovered(self) -> bool:
        return self.result is not None and self.result.success

    @property
    def action(self) -> Optional[FallbackAction]:
        return self.actions[-1] if self.actions else None


def classify_failure(failed: StageResult) -> FallbackCondition:
    if failed.state == StageState.TIMED_OUT:
        return FallbackCondition.TIMEOUT
    if failed.error is not None and failed.error.error_type == StageInvalidOutput.__name__:
        return FallbackCondition.INVALID_OUTPUT
    return FallbackCondition.ERROR


# ── Controller ───────────────────────────────────────────────────────


class FallbackController:
    """Decides and performs recovery for a failed stage."""

    def __init__(self, strategy: FallbackStrategy) -> None:
        self.strategy = strategy

    def _chain(self, first: Optional[FallbackAction], spec: StageSpec) -> List[FallbackAction]:
        terminal = FallbackAction.DEGRADE if spec.required else FallbackAction.SKIP
        if first is None:
            return [terminal]
        order = [FallbackAction.RETRY, FallbackAction.ALTERNATIVE]
        if first in order:
            return order[order.index(first):] + [terminal]
        if first == FallbackAction.SKIP and spec.required:
            return [FallbackAction.DEGRADE]
        return [first]

    async def handle_failure(
        self,
        spec: StageSpec,
        failed: StageResult,
        context: ExecutionContext,
        retry: StageAttempt,
        alternative: Optional[StageAttempt] = None,
    ) -> FallbackOutcome:
        """Try to recover *spec* after *failed*. Never raises."""
        condition = classify_failure(failed)
        outcome = FallbackOutcome(
            stage=spec.name.value,
            condition=condition,
            final_state=failed.state,
        )
        first = self.strategy.action_for(condition, spec.name.value)
        chain = self._chain(first, spec)
        # Retries leave one attempt for a later alternative substitute.
        reserve = 1 if alternative is not None and FallbackAction.ALTERNATIVE in chain else 0

        for action in chain:
            outcome.actions.append(action)

            if action == FallbackAction.RETRY:
                if await self._retry(spec, context, retry, outcome, reserve):
                    return outcome

            elif action == FallbackAction.ALTERNATIVE:
                if alternative is None:
                    continue
                if await self._alternative(spec, context, alternative, outcome):
                    return outcome

            elif action == FallbackAction.SKIP:
                logger.info("Skipping failed optional stage %s", spec.name.value)
                return outcome

            elif action == FallbackAction.DEGRADE:
                # Generate cannot be degraded: there is no content to continue with.
                if spec.name != StageName.GENERATE:
                    outcome.best_effort = True
                    context.best_effort = True
                    logger.warning("Stage %s failed; continuing best effort", spec.name.value)
                return outcome

        return outcome

    async def _retry(
        self,
        spec: StageSpec,
        context: ExecutionContext,
        retry: StageAttempt,
        outcome: FallbackOutcome,
        reserve: int = 0,
    ) -> bool:
        for attempt in range(1, spec.retries + 1):
            if context.fallback_budget_remaining <= reserve or not context.consume_fallback():
                logger.info("Fallback budget exhausted before retry %d of %s", attempt, spec.name.value)
                return False
            if self.strategy.cooldown and attempt > 1:
                await asyncio.sleep(self.strategy.cooldown)
            outcome.attempts += 1
            result = await self._attempt(spec, retry, outcome)
            if result is not None and result.success:
                result.attempts = 1 + outcome.attempts
                outcome.result = result
                outcome.final_state = StageState.SUCCEEDED
                logger.info("Stage %s recovered on retry %d", spec.name.value, attempt)
                return True
        return False

    async def _alternative(
        self,
        spec: StageSpec,
        context: ExecutionContext,
        alternative: StageAttempt,
        outcome: FallbackOutcome,
    ) -> bool:
        if not context.consume_fallback():
            logger.info("Fallback budget exhausted before alternative for %s", spec.name.value)
            return False
        outcome.attempts += 1
        result = await self._attempt(spec, alternative, outcome)
        if result is not None and result.success:
            outcome.result = result
            outcome.via_alternative = True
            outcome.final_state = StageState.SUCCEEDED
            logger.info("Stage %s recovered via alternative implementation", spec.name.value)
            return True
        return False

    async def _attempt(
        self,
        spec: StageSpec,
        call: StageAttempt,
        outcome: FallbackOutcome,
    ) -> Optional[StageResult]:
        try:
            result = await call()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Fallback attempt for %s raised", spec.name.value)
            outcome.errors.append(create_error_record(exc, spec.name.value))
            return None
        if not result.success:
            outcome.final_state = result.state
            if result.error is not None:
                outcome.errors.append(result.error)
        return result
