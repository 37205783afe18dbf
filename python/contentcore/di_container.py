"""Dependency injection container for the content orchestrator.

The host constructs one container with its settings and stage backends and
keeps it for the life of the process. Services are created on first access
and shared afterwards; there is no module-level instance.
"""

import logging
import random
from typing import Any, Optional

from contentcore.config.settings import OrchestratorSettings
from contentcore.enhanced_logging import configure_logging
from contentcore.pipeline.executor import StageBackends

logger = logging.getLogger(__name__)


class ContentCoreContainer:
    """Central service container."""

    def __init__(
        self,
        settings: OrchestratorSettings,
        backends: StageBackends,
        event_bus: Any = None,
        rng: Optional[random.Random] = None,
        configure_logs: bool = False,
    ) -> None:
        self.settings = settings
        self.backends = backends
        self._event_bus = event_bus
        self._rng = rng
        self._recorder = None
        self._plan_builder = None
        self._pipeline = None
        self._legacy = None
        self._selector = None
        self._router = None
        if configure_logs:
            configure_logging(settings.log_level, settings.log_format)

    @property
    def event_bus(self):
        if self._event_bus is None:
            from contentcore.event_bus import InMemoryEventBus
            self._event_bus = InMemoryEventBus()
        return self._event_bus

    @property
    def recorder(self):
        if self._recorder is None:
            from contentcore.monitoring.performance_recorder import PerformanceRecorder
            self._recorder = PerformanceRecorder.from_settings(self.settings)
        return self._recorder

    @property
    def plan_builder(self):
        if self._plan_builder is None:
            from contentcore.pipeline.plan_builder import PlanBuilder
            self._plan_builder = PlanBuilder(self.settings)
        return self._plan_builder

    @property
    def pipeline(self):
        if self._pipeline is None:
            from contentcore.pipeline.composer import ContentPipeline
            self._pipeline = ContentPipeline(
                self.settings,
                self.backends,
                recorder=self.recorder,
                event_bus=self.event_bus,
                plan_builder=self.plan_builder,
            )
            logger.info(
                "ContentPipeline initialized (max_concurrent=%d)",
                self.settings.max_concurrent_executions,
            )
        return self._pipeline

    @property
    def legacy(self):
        if self._legacy is None:
            from contentcore.routing.legacy import LegacyTemplateProcessor
            self._legacy = LegacyTemplateProcessor()
        return self._legacy

    @property
    def selector(self):
        if self._selector is None:
            from contentcore.routing.strategy_selector import StrategySelector
            self._selector = StrategySelector(self.settings, rng=self._rng)
        return self._selector

    @property
    def router(self):
        if self._router is None:
            from contentcore.routing.hybrid_router import HybridRouter
            self._router = HybridRouter(
                self.settings,
                self.pipeline,
                legacy=self.legacy,
                selector=self.selector,
                event_bus=self.event_bus,
            )
            logger.info(
                "HybridRouter initialized (rollout=%d%%, new_architecture=%s)",
                self.settings.new_architecture_percentage,
                self.settings.enable_new_architecture,
            )
        return self._router

    def health(self):
        return self.router.health_check()
