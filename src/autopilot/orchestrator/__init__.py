"""Orchestration: scheduling triggers and running workflows."""

from .cancellation import CancellationToken
from .interpreter import StepInterpreter, StepScope
from .runner import WorkflowRunner
from .sandbox import SandboxBridge
from .scheduler import TriggerScheduler

__all__ = [
    "CancellationToken",
    "StepInterpreter",
    "StepScope",
    "WorkflowRunner",
    "SandboxBridge",
    "TriggerScheduler",
]
