"""Strategy selection between the legacy generator and the new pipeline.

Rules are evaluated in order and the first match wins:

1. explicit per-call override
2. global kill-switch (new architecture disabled -> legacy)
3. canary allow-list -> new architecture
4. rollout bucket outside the configured percentage -> legacy
5. request complexity above the threshold -> new architecture
6. target language requiring cultural adaptation -> new architecture
7. default: new architecture, or hybrid when comparison is enabled

Every decision carries the ordered list of rules it evaluated.
"""

import hashlib
import logging
import random
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Union

from contentcore.config.settings import OrchestratorSettings
from contentcore.exceptions_unified import ConfigurationError
from contentcore.models.request import ContentRequest, ContentType

logger = logging.getLogger(__name__)


class StrategyName(str, Enum):
    LEGACY = "legacy"
    NEW_ARCHITECTURE = "new_architecture"
    HYBRID = "hybrid"


CONTENT_TYPE_COMPLEXITY: Dict[ContentType, float] = {
    ContentType.SOCIAL: 0.1,
    ContentType.EMAIL: 0.1,
    ContentType.AD: 0.1,
    ContentType.BLOG: 0.3,
    ContentType.ARTICLE: 0.4,
    ContentType.LANDING: 0.5,
}
DEFAULT_WORD_COUNT = 500
BUCKET_CACHE_SIZE = 10_000
ROLLOUT_EXPERIMENT = "new_architecture"


@dataclass(frozen=True)
class RolloutDecision:
    strategy: StrategyName
    confidence: float
    reasoning: List[str] = field(default_factory=list, hash=False)
    complexity: Optional[float] = None
    bucket: Optional[float] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "strategy": self.strategy.value,
            "confidence": self.confidence,
            "reasoning": list(self.reasoning),
            "complexity": self.complexity,
            "bucket": self.bucket,
        }


def stable_bucket(value: str) -> float:
    """Map an arbitrary string to [0,1) using SHA256."""
    h = hashlib.sha256(value.encode("utf-8")).digest()
    n = int.from_bytes(h[:8], byteorder="big", signed=False)
    return (n % 10_000_000) / 10_000_000.0


def complexity_score(request: ContentRequest) -> float:
    """0-1 score; higher means the request benefits more from the full pipeline."""
    word_count = request.word_count or DEFAULT_WORD_COUNT
    score = min(0.3, word_count / 2000)
    if request.requires_translation:
        score += 0.2
    if request.cultural_context:
        score += 0.2
    if request.enable_research:
        score += 0.2
    score += CONTENT_TYPE_COMPLEXITY.get(request.content_type, 0.1)
    return round(min(1.0, score), 4)


class StrategySelector:
    """Chooses a strategy per request. Safe to share across concurrent requests."""

    def __init__(self, settings: OrchestratorSettings, rng: Optional[random.Random] = None) -> None:
        self.settings = settings
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._bucket_cache: "OrderedDict[str, float]" = OrderedDict()

    def rollout_bucket(self, user_id: Optional[str]) -> float:
        """Stable bucket per user; a fresh uniform draw for anonymous requests."""
        if not user_id:
            with self._lock:
                return self._rng.random()
        with self._lock:
            bucket = self._bucket_cache.get(user_id)
            if bucket is None:
                bucket = stable_bucket(f"{ROLLOUT_EXPERIMENT}::{user_id}")
                self._bucket_cache[user_id] = bucket
                if len(self._bucket_cache) > BUCKET_CACHE_SIZE:
                    self._bucket_cache.popitem(last=False)
            else:
                self._bucket_cache.move_to_end(user_id)
            return bucket

    def select(
        self,
        request: ContentRequest,
        user_id: Optional[str] = None,
        override: Optional[Union[StrategyName, str]] = None,
        settings: Optional[OrchestratorSettings] = None,
    ) -> RolloutDecision:
        cfg = settings or self.settings
        reasoning: List[str] = []

        if override is not None:
            try:
                strategy = StrategyName(override)
            except ValueError:
                raise ConfigurationError(
                    f"Unknown strategy {override!r}",
                    details={"allowed": [s.value for s in StrategyName]},
                ) from None
            reasoning.append(f"override: strategy forced to {strategy.value}")
            return RolloutDecision(strategy, 1.0, reasoning)
        reasoning.append("override: none")

        if not cfg.enable_new_architecture:
            reasoning.append("kill-switch: new architecture disabled")
            return RolloutDecision(StrategyName.LEGACY, 1.0, reasoning)
        reasoning.append("kill-switch: new architecture enabled")

        if user_id and user_id in cfg.canary_users:
            reasoning.append(f"canary: user {user_id} is on the allow-list")
            return RolloutDecision(StrategyName.NEW_ARCHITECTURE, 1.0, reasoning)
        reasoning.append("canary: not a canary user")

        bucket = self.rollout_bucket(user_id)
        source = "user hash" if user_id else "random draw"
        if bucket * 100 >= cfg.new_architecture_percentage:
            reasoning.append(
                f"rollout: bucket {bucket:.4f} ({source}) outside {cfg.new_architecture_percentage}%"
            )
            return RolloutDecision(StrategyName.LEGACY, 0.9, reasoning, bucket=bucket)
        reasoning.append(f"rollout: bucket {bucket:.4f} ({source}) within {cfg.new_architecture_percentage}%")

        complexity = complexity_score(request)
        if complexity > cfg.complexity_threshold:
            reasoning.append(f"complexity: {complexity:.2f} > {cfg.complexity_threshold:.2f}")
            return RolloutDecision(StrategyName.NEW_ARCHITECTURE, complexity, reasoning, complexity, bucket)
        reasoning.append(f"complexity: {complexity:.2f} <= {cfg.complexity_threshold:.2f}")

        language = request.target_language.value
        if cfg.enable_cultural_adaptation and language in cfg.cultural_adaptation_languages:
            reasoning.append(f"language: {language} requires cultural adaptation")
            return RolloutDecision(StrategyName.NEW_ARCHITECTURE, 0.9, reasoning, complexity, bucket)
        reasoning.append(f"language: {language} has no adaptation requirement")

        if cfg.enable_hybrid_comparison:
            reasoning.append("default: hybrid comparison enabled")
            return RolloutDecision(StrategyName.HYBRID, 0.7, reasoning, complexity, bucket)
        reasoning.append("default: new architecture")
        return RolloutDecision(StrategyName.NEW_ARCHITECTURE, 0.7, reasoning, complexity, bucket)
