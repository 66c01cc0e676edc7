"""Autopilot error definitions."""

import hashlib
from typing import Optional, Any
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for classification."""
    LOW = "low"           # Policy outcome, nothing to fix
    MEDIUM = "medium"     # Step or page level failure
    HIGH = "high"         # Definition or job misconfiguration
    CRITICAL = "critical" # Safety gate triggered


class ErrorCategory(Enum):
    """Error categories for routing and reporting."""
    TRANSIENT = "transient"       # Page not ready, element missing
    PERMANENT = "permanent"       # Bad definition, unknown name
    RESOURCE = "resource"         # Timeouts
    EXTERNAL = "external"         # Driver or backend issue
    VALIDATION = "validation"     # Job spec or input validation failure
    SAFETY = "safety"             # Script safety gate
    CANCELLED = "cancelled"       # Cooperative stop observed


class AutopilotError(Exception):
    """Base exception for all autopilot errors."""

    def __init__(
        self,
        message: str,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.TRANSIENT,
        context: Optional[dict[str, Any]] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.severity = severity
        self.category = category
        self.context = context or {}
        self.retryable = retryable

    def fingerprint(self) -> str:
        """Generate error fingerprint for deduplication."""
        components = [
            self.__class__.__name__,
            self.category.value,
            str(self.context.get("job_id", "")),
            str(self.context.get("step_index", "")),
            str(self.context.get("selector", "")),
        ]
        return hashlib.sha256(":".join(components).encode()).hexdigest()[:16]

    def to_dict(self) -> dict[str, Any]:
        """Serialize error for logging/storage."""
        return {
            "type": self.__class__.__name__,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "context": self.context,
            "retryable": self.retryable,
            "fingerprint": self.fingerprint(),
        }


class ConfigError(AutopilotError):
    """Configuration loading or validation error."""

    def __init__(self, message: str, config_path: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.PERMANENT)
        super().__init__(message, **kwargs)
        self.context["config_path"] = config_path


class ValidationError(AutopilotError):
    """Malformed job spec, function definition or run inputs."""

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        super().__init__(message, **kwargs)
        self.field = field
        self.context["field"] = field


class NotFoundError(AutopilotError):
    """Unknown job, function or capability name."""

    def __init__(self, message: str, kind: str = "job", name: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.PERMANENT)
        super().__init__(message, **kwargs)
        self.kind = kind
        self.name = name
        self.context["kind"] = kind
        self.context["name"] = name


class TargetResolutionError(AutopilotError):
    """No eligible execution context for a context-dependent workflow."""

    def __init__(self, message: str, function_name: Optional[str] = None, **kwargs):
        kwargs.setdefault("category", ErrorCategory.EXTERNAL)
        super().__init__(message, **kwargs)
        self.context["function_name"] = function_name


class StepExecutionError(AutopilotError):
    """A step's primitive failed."""

    def __init__(
        self,
        message: str,
        step_index: Optional[int] = None,
        step_type: Optional[str] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.step_index = step_index
        self.context["step_index"] = step_index
        self.context["step_type"] = step_type


class StepTimeoutError(StepExecutionError):
    """A wait/poll or sandbox round trip ran past its timeout."""

    def __init__(self, message: str, timeout_ms: Optional[float] = None, **kwargs):
        kwargs.setdefault("category", ErrorCategory.RESOURCE)
        super().__init__(message, **kwargs)
        self.context["timeout_ms"] = timeout_ms


class SafetyViolation(AutopilotError):
    """Script rejected by the static safety scan."""

    def __init__(self, message: str, rule: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.CRITICAL)
        kwargs.setdefault("category", ErrorCategory.SAFETY)
        super().__init__(message, **kwargs)
        self.rule = rule
        self.context["safety_rule"] = rule


class AbortError(AutopilotError):
    """Cooperative cancellation observed."""

    def __init__(self, message: str = "Stopped by user", **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.LOW)
        kwargs.setdefault("category", ErrorCategory.CANCELLED)
        super().__init__(message, **kwargs)
