"""
Unified error system for the content orchestrator.

Provides one hierarchy for every failure the orchestrator can observe:
- Request and configuration validation errors (raised to the caller)
- Stage errors (timeout, provider failure, invalid output) recorded per stage
- Plan and strategy level terminal failures
- Errors stage backends raise to signal provider or payload problems

Runtime errors are converted into ``StageErrorRecord`` entries with
``create_error_record`` and returned inside structured results. Only
validation errors propagate out of the public entry points.
"""

import logging
import traceback
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


# ============================================================================
# Enums
# ============================================================================

class ErrorSeverity(Enum):
    """Error severity levels."""
    CRITICAL = "critical"      # Request cannot produce content
    ERROR = "error"            # Stage or strategy failure
    WARNING = "warning"        # Degraded result, caller should be aware
    INFO = "info"


class ErrorCategory(Enum):
    """Error categories for classification."""
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    TIMEOUT = "timeout"
    PROVIDER = "provider"
    INVALID_OUTPUT = "invalid_output"
    PLAN = "plan"
    STRATEGY = "strategy"
    INTERNAL = "internal"


# ============================================================================
# Data Classes
# ============================================================================

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ErrorContext:
    """Rich error context with metadata."""
    error_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=_utcnow)
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.INTERNAL
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    stack_trace: Optional[str] = None
    is_recoverable: bool = True

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (excludes stack trace)."""
        return {
            "error_id": self.error_id,
            "timestamp": self.timestamp.isoformat(),
            "severity": self.severity.value,
            "category": self.category.value,
            "message": self.message,
            "details": self.details,
            "is_recoverable": self.is_recoverable,
        }


@dataclass(frozen=True)
class StageErrorRecord:
    """One entry in a result's error list."""
    stage: str
    error_type: str
    message: str
    recoverable: bool
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "error_type": self.error_type,
            "message": self.message,
            "recoverable": self.recoverable,
            "timestamp": self.timestamp.isoformat(),
        }


# ============================================================================
# Exception Hierarchy
# ============================================================================

class ContentCoreError(Exception):
    """Base exception for all orchestrator errors with rich context."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        details: Optional[Dict[str, Any]] = None,
        is_recoverable: bool = True,
        context: Optional[ErrorContext] = None,
    ):
        self.message = message
        self.category = category
        self.severity = severity
        self.details = details or {}
        self.is_recoverable = is_recoverable

        if context:
            self.context = context
        else:
            self.context = ErrorContext(
                severity=severity,
                category=category,
                message=message,
                details=self.details,
                stack_trace=traceback.format_exc(),
                is_recoverable=is_recoverable,
            )

        super().__init__(self.message)

    def __str__(self) -> str:
        return f"[{self.context.error_id}] {self.category.value}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return self.context.to_dict()


# ============================================================================
# Validation Errors
# ============================================================================

class ValidationError(ContentCoreError):
    """Validation error (input or configuration rejected)."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        kwargs.setdefault("is_recoverable", False)
        super().__init__(message, **kwargs)


class InvalidRequest(ValidationError):
    """Malformed content request, rejected before planning."""
    pass


class ConfigurationError(ValidationError):
    """Configuration is incomplete or inconsistent."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.CONFIGURATION)
        kwargs.setdefault("severity", ErrorSeverity.CRITICAL)
        super().__init__(message, **kwargs)


# ============================================================================
# Backend Errors
# ============================================================================

class ProviderError(ContentCoreError):
    """Raised by a stage backend when its provider fails."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.PROVIDER)
        super().__init__(message, **kwargs)


class InvalidOutputError(ContentCoreError):
    """Raised by a stage backend when it cannot produce a usable payload."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.INVALID_OUTPUT)
        super().__init__(message, **kwargs)


# ============================================================================
# Stage Errors
# ============================================================================

class StageError(ContentCoreError):
    """Base error for a single stage invocation.

    Generate-stage errors are unrecoverable unless a fallback substitute
    succeeds; every other stage's errors are recoverable.
    """
    def __init__(self, stage: str, message: str, **kwargs):
        self.stage = stage
        kwargs.setdefault("is_recoverable", stage != "generate")
        details = kwargs.pop("details", None) or {}
        details.setdefault("stage", stage)
        super().__init__(message, details=details, **kwargs)


class StageTimeout(StageError):
    """Stage did not settle before its deadline."""
    def __init__(self, stage: str, timeout: float, **kwargs):
        self.timeout = timeout
        kwargs.setdefault("category", ErrorCategory.TIMEOUT)
        kwargs.setdefault("details", {"timeout_seconds": timeout})
        super().__init__(stage, f"{stage} timed out after {timeout:.3f}s", **kwargs)


class StageProviderError(StageError):
    """Backend raised while executing the stage."""
    def __init__(self, stage: str, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.PROVIDER)
        super().__init__(stage, message, **kwargs)


class StageInvalidOutput(StageError):
    """Backend returned an empty or malformed payload."""
    def __init__(self, stage: str, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.INVALID_OUTPUT)
        super().__init__(stage, message, **kwargs)


# ============================================================================
# Terminal Errors
# ============================================================================

class PlanExecutionFailure(ContentCoreError):
    """Generate failed and no fallback produced content."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.PLAN)
        kwargs.setdefault("severity", ErrorSeverity.CRITICAL)
        kwargs.setdefault("is_recoverable", False)
        super().__init__(message, **kwargs)


class AllStrategiesFailed(ContentCoreError):
    """Every strategy attempted for a request failed."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.STRATEGY)
        kwargs.setdefault("severity", ErrorSeverity.CRITICAL)
        kwargs.setdefault("is_recoverable", False)
        super().__init__(message, **kwargs)


# ============================================================================
# Utilities
# ============================================================================

def wrap_stage_exception(stage: str, exc: BaseException) -> StageError:
    """Convert whatever a backend raised into the matching stage error."""
    if isinstance(exc, StageError):
        return exc
    if isinstance(exc, InvalidOutputError):
        wrapped: StageError = StageInvalidOutput(stage, exc.message)
    else:
        message = exc.message if isinstance(exc, ContentCoreError) else str(exc) or type(exc).__name__
        wrapped = StageProviderError(stage, message, details={"cause": type(exc).__name__})
    wrapped.__cause__ = exc
    return wrapped


def create_error_record(exc: BaseException, stage: str) -> StageErrorRecord:
    """Build the result-list entry for an exception."""
    if isinstance(exc, ContentCoreError):
        return StageErrorRecord(
            stage=stage,
            error_type=type(exc).__name__,
            message=exc.message,
            recoverable=exc.is_recoverable,
        )
    return StageErrorRecord(
        stage=stage,
        error_type=type(exc).__name__,
        message=str(exc),
        recoverable=False,
    )
