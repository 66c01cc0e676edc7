"""Capability registry for tool steps and sandbox tool calls."""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import jsonschema
import structlog

from ..core.errors import NotFoundError, ValidationError, StepExecutionError


logger = structlog.get_logger()

# handler(params, context) -> result dict
CapabilityHandler = Callable[[dict[str, Any], dict[str, Any]], Awaitable[Any]]


@dataclass
class Capability:
    """A named tool with an optional JSON schema for its parameters."""
    name: str
    handler: CapabilityHandler
    description: str = ""
    parameters: Optional[dict[str, Any]] = None
    tags: list[str] = field(default_factory=list)


class CapabilityRegistry:
    """
    Registry for opaque capabilities.

    Capabilities cover everything the autopilot forwards without owning
    the logic: output tools (generatePage, downloadFile, modifySite,
    embedText, askOllama), generic ``useTool`` tools and the scheduler
    command surface. Parameters are validated against the registered
    JSON schema before the handler runs.
    """

    def __init__(self):
        self._capabilities: dict[str, Capability] = {}

    def register(
        self,
        name: str,
        handler: CapabilityHandler,
        description: str = "",
        parameters: Optional[dict[str, Any]] = None,
    ) -> None:
        """Register a capability, replacing any previous one with that name."""
        if parameters is not None:
            jsonschema.Draft7Validator.check_schema(parameters)
        self._capabilities[name] = Capability(
            name=name,
            handler=handler,
            description=description,
            parameters=parameters,
        )
        logger.debug("capability_registered", name=name)

    def unregister(self, name: str) -> None:
        self._capabilities.pop(name, None)

    def get(self, name: str) -> Optional[Capability]:
        return self._capabilities.get(name)

    def list(self) -> list[dict[str, Any]]:
        """Name, description and schema of every capability."""
        return [
            {"name": c.name, "description": c.description, "parameters": c.parameters}
            for c in self._capabilities.values()
        ]

    async def execute(
        self,
        name: str,
        params: Optional[dict[str, Any]] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> Any:
        """
        Run a capability.

        Raises:
            NotFoundError: unknown capability name
            ValidationError: parameters violate the capability schema
        """
        capability = self._capabilities.get(name)
        if capability is None:
            raise NotFoundError(f"Unknown tool: {name}", kind="capability", name=name)

        params = dict(params or {})
        if capability.parameters is not None:
            try:
                jsonschema.validate(params, capability.parameters)
            except jsonschema.ValidationError as e:
                path = ".".join(str(p) for p in e.absolute_path) or None
                raise ValidationError(f"Invalid parameters for {name}: {e.message}", field=path)

        logger.debug("capability_executing", name=name)
        return await capability.handler(params, dict(context or {}))


# ==================== Built-in capabilities ====================

NOTEPAD_SCHEMA = {
    "type": "object",
    "properties": {
        "action": {"enum": ["write", "read", "clear", "readAll", "keys"]},
        "key": {"type": "string"},
        "data": {},
    },
    "required": ["action"],
}

PERSISTENT_SCHEMA = {
    "type": "object",
    "properties": {
        "action": {"enum": ["save", "load", "remove", "listKeys"]},
        "key": {"type": "string"},
        "data": {},
    },
    "required": ["action"],
}

SCHEDULER_SCHEMA = {
    "type": "object",
    "properties": {
        "action": {"type": "string"},
    },
}


def _require_key(params: dict[str, Any], action: str) -> str:
    key = params.get("key")
    if not key:
        raise ValidationError(f"'{action}' requires a key", field="key")
    return key


def register_builtin_capabilities(registry: CapabilityRegistry, scratch, scheduler=None) -> None:
    """Register shared_notepad, persistent_state_manager and (if given) scheduler."""

    async def shared_notepad(params: dict, context: dict) -> dict:
        action = params["action"]
        if action == "write":
            scratch.write(_require_key(params, action), params.get("data"))
            return {"success": True}
        if action == "read":
            return {"success": True, "result": scratch.read(_require_key(params, action))}
        if action == "clear":
            scratch.clear(params.get("key"))
            return {"success": True}
        if action == "readAll":
            return {"success": True, "result": scratch.read_all()}
        if action == "keys":
            return {"success": True, "result": scratch.keys()}
        raise StepExecutionError(f"Unknown shared_notepad action: {action}")

    async def persistent_state_manager(params: dict, context: dict) -> dict:
        action = params["action"]
        if action == "save":
            await scratch.save(_require_key(params, action), params.get("data"))
            return {"success": True}
        if action == "load":
            return {"success": True, "result": await scratch.load(_require_key(params, action))}
        if action == "remove":
            return {"success": True, "result": await scratch.remove(_require_key(params, action))}
        if action == "listKeys":
            return {"success": True, "result": await scratch.list_keys()}
        raise StepExecutionError(f"Unknown persistent_state_manager action: {action}")

    registry.register(
        "shared_notepad",
        shared_notepad,
        description="In-memory notepad shared between steps and workflows",
        parameters=NOTEPAD_SCHEMA,
    )
    registry.register(
        "persistent_state_manager",
        persistent_state_manager,
        description="Durable key/value storage that survives restarts",
        parameters=PERSISTENT_SCHEMA,
    )

    if scheduler is not None:
        async def scheduler_tool(params: dict, context: dict) -> dict:
            return await scheduler.execute_command(params, context.get("context_id"))

        registry.register(
            "scheduler",
            scheduler_tool,
            description="Create, list, enable, disable, run and remove scheduled jobs",
            parameters=SCHEDULER_SCHEMA,
        )
