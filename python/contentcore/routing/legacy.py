"""Template-based legacy generator.

Deterministic and dependency free: no backends, no stages. It is the
guaranteed fallback for the new pipeline, so it must not fail on any
request that passed validation.
"""

import logging
import time
from typing import Dict, Tuple

from contentcore.models.request import ContentRequest, ContentType, Language
from contentcore.monitoring.performance_recorder import PerformanceMetrics
from contentcore.pipeline.executor import PipelineResult

logger = logging.getLogger(__name__)

LEGACY_QUALITY_SCORE = 0.6

SOCIAL_TEMPLATE = (
    "Here's a thought about {topic}.\n\n"
    "This is an important consideration for professionals in the field.\n\n"
    "What do you think?"
)
BLOG_TEMPLATE = (
    "# {topic}\n\n"
    "This is an important topic that deserves attention.\n\n"
    "## Key Points\n\n- Point 1\n- Point 2\n- Point 3\n\n"
    "## Conclusion\n\nThank you for reading."
)
EMAIL_TEMPLATE = (
    "Subject: {topic}\n\n"
    "Hello,\n\n"
    "I wanted to share some thoughts about {topic}.\n\n"
    "Best regards"
)

TEMPLATES: Dict[ContentType, str] = {
    ContentType.SOCIAL: SOCIAL_TEMPLATE,
    ContentType.BLOG: BLOG_TEMPLATE,
    ContentType.ARTICLE: BLOG_TEMPLATE,
    ContentType.EMAIL: EMAIL_TEMPLATE,
}

NORWEGIAN_REPLACEMENTS: Tuple[Tuple[str, str], ...] = (
    ("Here's a thought about", "Her er en tanke om"),
    ("What do you think?", "Hva tenker du?"),
    ("Thank you for reading", "Takk for at du leser"),
)


class LegacyTemplateProcessor:
    """Fills a fixed template per content type."""

    def render(self, request: ContentRequest) -> str:
        template = TEMPLATES.get(request.content_type, SOCIAL_TEMPLATE)
        content = template.format(topic=request.topic.strip())
        if request.target_language == Language.NORWEGIAN:
            for english, norwegian in NORWEGIAN_REPLACEMENTS:
                content = content.replace(english, norwegian)
        return content

    async def process(self, request: ContentRequest) -> PipelineResult:
        started = time.perf_counter()
        content = self.render(request)
        elapsed = time.perf_counter() - started
        logger.debug("Legacy template rendered for %s (%s)", request.id, request.content_type.value)
        return PipelineResult(
            success=True,
            content=content,
            quality_score=LEGACY_QUALITY_SCORE,
            stages_executed=["legacy-template"],
            request_id=request.id,
            performance=PerformanceMetrics(
                total_time=elapsed,
                stage_timings={"legacy-template": elapsed},
                throughput=1.0 / elapsed if elapsed > 0 else 0.0,
            ),
        )
