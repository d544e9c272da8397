"""
Structured error types for envforge.

Each error carries a category, a retry flag and structured context so the
orchestrator can map it onto a Deploy status and log it with the build and
deploy identifiers attached.

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                       EnvforgeError                          │
        │        (category, retryable, context, cause)                 │
        ├──────────────────────────────────────────────────────────────┤
        │  ConfigurationError           → CONFIG_ERROR                 │
        │  DependencyTimeoutError       → ERROR                        │
        │  BuildExecutionError          → BUILD_FAILED                 │
        │  LogRetrievalError            → (falls back to status probe) │
        │  TransientInfrastructureError → ERROR                        │
        │  StaleAttemptError            → (attempt abandoned)          │
        └──────────────────────────────────────────────────────────────┘

Retry policy is owned by the enqueuing layer; ``retryable`` is advisory
metadata for that caller and is never acted on inside this package.

Usage:
    from envforge.core.errors import ConfigurationError

    raise ConfigurationError(
        f"No build engine for type={deploy_type!r} builder={builder!r}"
    ).with_context(deploy_uuid=deploy.uuid)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Error categories for classification and status mapping."""

    CONFIG = "CONFIG"  # Malformed config, unknown builder
    DEPENDENCY = "DEPENDENCY"  # Cross-service wait exhausted
    BUILD = "BUILD"  # Job/pipeline failed, registry auth failed
    LOGS = "LOGS"  # Log retrieval failed
    TRANSIENT = "TRANSIENT"  # Timeouts, rate limits
    CONFLICT = "CONFLICT"  # Superseded attempt token
    INTERNAL = "INTERNAL"  # Bugs, unexpected state


@dataclass
class ErrorContext:
    """Structured metadata attached to an error."""

    build_uuid: str | None = None
    deploy_uuid: str | None = None
    service: str | None = None
    engine: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["build_uuid", "deploy_uuid", "service", "engine"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class EnvforgeError(Exception):
    """Base exception for all envforge errors.

    Subclasses set ``default_category`` and ``default_retryable``.

    Example:
        >>> err = EnvforgeError("boom").with_context(deploy_uuid="api-b1")
        >>> err.to_dict()["context"]
        {'deploy_uuid': 'api-b1'}
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> EnvforgeError:
        """Add context to this error (fluent API)."""
        for key, value in kwargs.items():
            if key != "metadata" and hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


class ConfigurationError(EnvforgeError):
    """Malformed or missing declarative config, unknown builder, missing registry."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


class DependencyTimeoutError(EnvforgeError):
    """A sibling deploy never produced build output within the poll budget."""

    default_category = ErrorCategory.DEPENDENCY
    default_retryable = False

    def __init__(
        self,
        dependency_uuid: str,
        attempts: int,
        interval_seconds: float,
        message: str | None = None,
    ):
        super().__init__(
            message
            or f"Timed out waiting for {dependency_uuid} build output "
            f"after {attempts} attempts at {interval_seconds}s"
        )
        self.dependency_uuid = dependency_uuid
        self.attempts = attempts
        self.interval_seconds = interval_seconds
        self.context.metadata.update(
            {"dependency_uuid": dependency_uuid, "attempts": attempts, "interval_seconds": interval_seconds}
        )


class BuildExecutionError(EnvforgeError):
    """Cluster job or remote pipeline failed."""

    default_category = ErrorCategory.BUILD
    default_retryable = False

    def __init__(self, message: str, *, logs: str = "", **kwargs: Any):
        super().__init__(message, **kwargs)
        self.logs = logs


class LogRetrievalError(EnvforgeError):
    """Fetching job logs failed; the job itself may still have succeeded."""

    default_category = ErrorCategory.LOGS
    default_retryable = True


class TransientInfrastructureError(EnvforgeError):
    """Registry timeout, API rate limit, or other infrastructure hiccup."""

    default_category = ErrorCategory.TRANSIENT
    default_retryable = True


class StaleAttemptError(EnvforgeError):
    """The attempt token this worker holds has been superseded."""

    default_category = ErrorCategory.CONFLICT
    default_retryable = False


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "EnvforgeError",
    "ConfigurationError",
    "DependencyTimeoutError",
    "BuildExecutionError",
    "LogRetrievalError",
    "TransientInfrastructureError",
    "StaleAttemptError",
]
