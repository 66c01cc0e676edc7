"""Core autopilot components."""

from .config import ConfigLoader, AutopilotConfig
from .state import StateManager
from .models import Job, JobSpec, FunctionDefinition, ExecutionResult, RunResult
from .errors import (
    AutopilotError,
    ConfigError,
    ValidationError,
    NotFoundError,
    TargetResolutionError,
    StepExecutionError,
    StepTimeoutError,
    SafetyViolation,
    AbortError,
)

__all__ = [
    "ConfigLoader",
    "AutopilotConfig",
    "StateManager",
    "Job",
    "JobSpec",
    "FunctionDefinition",
    "ExecutionResult",
    "RunResult",
    "AutopilotError",
    "ConfigError",
    "ValidationError",
    "NotFoundError",
    "TargetResolutionError",
    "StepExecutionError",
    "StepTimeoutError",
    "SafetyViolation",
    "AbortError",
]
