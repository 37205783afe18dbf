from .request import ContentRequest, ContentType, Language, Tone

__all__ = ["ContentRequest", "ContentType", "Language", "Tone"]
