"""In-process orchestration of staged content-generation pipelines."""

__version__ = "1.0.0"
