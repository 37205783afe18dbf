"""Content request model.

Requests are immutable. The executor derives simplified or feedback-carrying
variants with ``model_copy(update=...)`` instead of mutating the caller's object.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ContentType(str, Enum):
    ARTICLE = "article"
    SOCIAL = "social"
    EMAIL = "email"
    LANDING = "landing"
    AD = "ad"
    BLOG = "blog"


class Tone(str, Enum):
    PROFESSIONAL = "professional"
    CASUAL = "casual"
    PERSUASIVE = "persuasive"
    INFORMATIVE = "informative"
    FRIENDLY = "friendly"
    AUTHORITATIVE = "authoritative"


class Language(str, Enum):
    ENGLISH = "en"
    NORWEGIAN = "no"


class ContentRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    topic: str
    content_type: ContentType = ContentType.SOCIAL
    target_language: Language = Language.ENGLISH
    audience: str = "general"
    tone: Optional[Tone] = None
    keywords: List[str] = Field(default_factory=list)
    word_count: Optional[int] = Field(default=None, ge=1, le=20000)
    enable_research: bool = False
    requires_translation: bool = False
    cultural_context: bool = False
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    # Set by the executor on derived requests only.
    fallback_mode: bool = False
    improvement_mode: bool = False
    quality_feedback: Optional[str] = None

    def as_fallback(self) -> "ContentRequest":
        """Simplified request for the degraded generation path."""
        return self.model_copy(update={"enable_research": False, "fallback_mode": True})

    def with_quality_feedback(self, feedback: str) -> "ContentRequest":
        return self.model_copy(update={"quality_feedback": feedback, "improvement_mode": True})
