"""Capability registry."""

from .registry import CapabilityRegistry, register_builtin_capabilities

__all__ = ["CapabilityRegistry", "register_builtin_capabilities"]
