from .hybrid_router import HybridResult, HybridRouter, ProcessingStats
from .legacy import LegacyTemplateProcessor
from .strategy_selector import RolloutDecision, StrategyName, StrategySelector, complexity_score

__all__ = [
    "HybridResult",
    "HybridRouter",
    "LegacyTemplateProcessor",
    "ProcessingStats",
    "RolloutDecision",
    "StrategyName",
    "StrategySelector",
    "complexity_score",
]
