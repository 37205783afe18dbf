"""
Configuration management using Pydantic Settings.

The orchestrator is configured once by the host process and the resulting
object is passed explicitly to every service. Values can come from the
environment (``CONTENTCORE_*``) or a ``.env`` file. Hot reload is not supported.
"""
import logging
from functools import lru_cache
from typing import Dict, List

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class OrchestratorSettings(BaseSettings):
    """Orchestrator settings with validation and environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="CONTENTCORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Rollout
    enable_new_architecture: bool = Field(default=True, description="Global kill-switch for the new pipeline")
    new_architecture_percentage: int = Field(default=100, ge=0, le=100, description="% of users routed to the new pipeline")
    canary_users: List[str] = Field(default_factory=list, description="Users always routed to the new pipeline")
    fallback_enabled: bool = Field(default=True, description="Retry through legacy when a strategy fails")
    enable_hybrid_comparison: bool = Field(default=False, description="Run legacy and new side by side by default")
    hybrid_quality_margin: float = Field(default=0.1, ge=0.0, le=1.0, description="Quality margin favouring new architecture")
    complexity_threshold: float = Field(default=0.8, ge=0.0, le=1.0, description="Complexity score that prefers new architecture")
    enable_cultural_adaptation: bool = Field(default=True, description="Route culturally adapted languages to new architecture")
    cultural_adaptation_languages: List[str] = Field(default_factory=lambda: ["no"], description="Languages requiring cultural adaptation")

    # Stages
    enable_research_stage: bool = Field(default=True, description="Run research when the request asks for it")
    enable_optimization_stage: bool = Field(default=True, description="Run the optimize stage")
    enable_validation_stage: bool = Field(default=True, description="Run the validate stage")
    enable_parallel_execution: bool = Field(default=True, description="Run optimize and validate concurrently")
    research_timeout: float = Field(default=10.0, gt=0, description="Research stage timeout in seconds")
    generate_timeout: float = Field(default=15.0, gt=0, description="Generate stage timeout in seconds")
    optimize_timeout: float = Field(default=5.0, gt=0, description="Optimize stage timeout in seconds")
    validate_timeout: float = Field(default=3.0, gt=0, description="Validate stage timeout in seconds")
    research_retries: int = Field(default=2, ge=0, description="Research retry count")
    generate_retries: int = Field(default=3, ge=0, description="Generate retry count")
    optimize_retries: int = Field(default=1, ge=0, description="Optimize retry count")
    validate_retries: int = Field(default=1, ge=0, description="Validate retry count")

    # Quality
    quality_threshold: float = Field(default=0.7, ge=0.0, le=1.0, description="Minimum acceptable quality score")
    default_quality_estimate: float = Field(default=0.8, ge=0.0, le=1.0, description="Assumed quality when validation is unavailable")
    enable_quality_gates: bool = Field(default=True, description="Allow one quality-driven regeneration")

    # Fallback
    default_fallback_strategy: str = Field(default="default", description="Fallback strategy name used by plans")

    # Capacity and health
    max_concurrent_executions: int = Field(default=5, ge=1, description="Max pipeline executions admitted at once")
    queue_depth_threshold: int = Field(default=10, ge=1, description="Queue depth above which health degrades")
    max_average_execution_seconds: float = Field(default=30.0, gt=0, description="Average execution time ceiling")
    performance_window: int = Field(default=100, ge=1, description="Executions kept in the rolling window")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="text", description="Log format: json or text")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"Log level must be one of {allowed}")
        return v_upper

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format is valid."""
        allowed = ["json", "text"]
        if v not in allowed:
            raise ValueError(f"Log format must be one of {allowed}")
        return v

    @field_validator("default_fallback_strategy")
    @classmethod
    def validate_fallback_strategy(cls, v: str) -> str:
        allowed = ["default", "fast"]
        if v not in allowed:
            raise ValueError(f"Fallback strategy must be one of {allowed}")
        return v

    @field_validator("cultural_adaptation_languages")
    @classmethod
    def normalize_languages(cls, v: List[str]) -> List[str]:
        return [lang.lower() for lang in v]

    @model_validator(mode="after")
    def check_quality_bounds(self) -> "OrchestratorSettings":
        if self.default_quality_estimate < self.quality_threshold:
            logging.getLogger(__name__).warning(
                "default_quality_estimate %.2f is below quality_threshold %.2f; "
                "unvalidated content will always trigger regeneration",
                self.default_quality_estimate, self.quality_threshold,
            )
        return self

    def stage_timeouts(self) -> Dict[str, float]:
        """Per-stage timeouts keyed by stage name."""
        return {
            "research": self.research_timeout,
            "generate": self.generate_timeout,
            "optimize": self.optimize_timeout,
            "validate": self.validate_timeout,
        }

    def stage_retries(self) -> Dict[str, int]:
        """Per-stage retry counts keyed by stage name."""
        return {
            "research": self.research_retries,
            "generate": self.generate_retries,
            "optimize": self.optimize_retries,
            "validate": self.validate_retries,
        }

    def get_log_level(self) -> int:
        """Get logging level as integer."""
        return getattr(logging, self.log_level)


@lru_cache(maxsize=1)
def get_settings() -> OrchestratorSettings:
    """
    Get cached settings instance built from the environment.

    Returns:
        OrchestratorSettings: Orchestrator settings
    """
    return OrchestratorSettings()
