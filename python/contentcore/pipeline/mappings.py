"""Content-type and tone tables translating requests into generator vocabulary.

Both tables must cover every member of their enum. ``validate_mappings`` is
run when a PlanBuilder is constructed so an incomplete table fails at
startup instead of silently defaulting at request time.
"""

from types import MappingProxyType
from typing import Mapping

from contentcore.exceptions_unified import ConfigurationError
from contentcore.models.request import ContentType, Tone

CONTENT_TYPE_MAP: Mapping[ContentType, str] = MappingProxyType({
    ContentType.SOCIAL: "socialMedia",
    ContentType.ARTICLE: "blogPost",
    ContentType.BLOG: "blogPost",
    ContentType.EMAIL: "email",
    ContentType.LANDING: "websiteCopy",
    ContentType.AD: "websiteCopy",
})

TONE_MAP: Mapping[Tone, str] = MappingProxyType({
    Tone.PROFESSIONAL: "professional",
    Tone.CASUAL: "casual",
    Tone.PERSUASIVE: "authoritative",
    Tone.INFORMATIVE: "professional",
    Tone.FRIENDLY: "friendly",
    Tone.AUTHORITATIVE: "authoritative",
})

DEFAULT_TONE = Tone.PROFESSIONAL


def validate_mappings(
    content_types: Mapping[ContentType, str] = CONTENT_TYPE_MAP,
    tones: Mapping[Tone, str] = TONE_MAP,
) -> None:
    """Raise ConfigurationError if either table misses an enum member."""
    missing_types = [ct.value for ct in ContentType if ct not in content_types]
    if missing_types:
        raise ConfigurationError(
            f"Content type mapping is missing {missing_types}",
            details={"missing": missing_types},
        )
    missing_tones = [t.value for t in Tone if t not in tones]
    if missing_tones:
        raise ConfigurationError(
            f"Tone mapping is missing {missing_tones}",
            details={"missing": missing_tones},
        )


def generator_content_type(content_type: ContentType, table: Mapping[ContentType, str] = CONTENT_TYPE_MAP) -> str:
    try:
        return table[content_type]
    except KeyError:
        raise ConfigurationError(f"No generator content type for {content_type.value!r}") from None


def generator_tone(tone, table: Mapping[Tone, str] = TONE_MAP) -> str:
    try:
        return table[tone or DEFAULT_TONE]
    except KeyError:
        raise ConfigurationError(f"No generator tone for {tone!r}") from None
