"""Workflow definitions and scratch storage."""

from .functions import WorkflowStore
from .notepad import ScratchStore
from .backend import BackendFunctionClient

__all__ = ["WorkflowStore", "ScratchStore", "BackendFunctionClient"]
