"""Function library: named workflow definitions."""

import re
from typing import Any, Optional, Union

import structlog

from ..core.errors import NotFoundError, ValidationError
from ..core.models import FunctionDefinition
from ..core.state import StateManager


logger = structlog.get_logger()

DEFAULT_FUNCTION_NAME = "GeneratedFunction"

_VERSION_SUFFIX = re.compile(r"^(.*?)V(\d+)$")


def normalize_name(name: Optional[str]) -> str:
    name = (name or "").strip()
    return name or DEFAULT_FUNCTION_NAME


class WorkflowStore:
    """
    Name -> FunctionDefinition map with optional SQLite persistence.

    Names are unique. Saving under a taken name either overwrites
    (``unique=False``) or picks the next free ``V2``, ``V3``... suffix.
    """

    def __init__(self, state: Optional[StateManager] = None):
        self.state = state
        self._functions: dict[str, FunctionDefinition] = {}

    async def load(self) -> int:
        """Populate the cache from persistent state."""
        if self.state is None:
            return 0
        for definition in await self.state.load_functions():
            self._functions[definition.name] = definition
        logger.info("function_library_loaded", count=len(self._functions))
        return len(self._functions)

    def get(self, name: str) -> Optional[FunctionDefinition]:
        return self._functions.get(name)

    def get_all(self) -> dict[str, FunctionDefinition]:
        return dict(self._functions)

    def names(self) -> list[str]:
        return list(self._functions)

    def unique_name(self, base: str) -> str:
        """First free name derived from base."""
        base = normalize_name(base)
        if base not in self._functions:
            return base

        match = _VERSION_SUFFIX.match(base)
        stem = match.group(1) if match and match.group(1) else base
        version = 2
        while f"{stem}V{version}" in self._functions:
            version += 1
        return f"{stem}V{version}"

    async def upsert(
        self,
        definition: Union[FunctionDefinition, dict[str, Any]],
        unique: bool = True,
    ) -> dict[str, Any]:
        """
        Save a definition.

        Returns:
            ``{"name", "renamed"}`` with the name actually used
        """
        if isinstance(definition, dict):
            definition = FunctionDefinition.parse(definition)

        requested = normalize_name(definition.name)
        name = self.unique_name(requested) if unique else requested
        if name != definition.name:
            definition = definition.model_copy(update={"name": name})

        self._functions[name] = definition
        if self.state is not None:
            await self.state.save_function(definition)

        logger.info("function_saved", name=name, steps=len(definition.steps))
        return {"name": name, "renamed": name != requested}

    async def upsert_many(
        self,
        definitions: list[Union[FunctionDefinition, dict[str, Any]]],
        unique: bool = True,
    ) -> dict[str, Any]:
        saved = []
        for definition in definitions:
            result = await self.upsert(definition, unique=unique)
            saved.append(result["name"])
        return {"saved": saved}

    async def remove(self, name: str) -> bool:
        removed = self._functions.pop(name, None) is not None
        if removed and self.state is not None:
            await self.state.delete_function(name)
        if removed:
            logger.info("function_removed", name=name)
        return removed

    async def rename(self, old_name: str, new_name: str, unique: bool = True) -> str:
        """Rename a definition; returns the name actually used."""
        definition = self._functions.get(old_name)
        if definition is None:
            raise NotFoundError(f'Function "{old_name}" not found', kind="function", name=old_name)
        if not (new_name or "").strip():
            raise ValidationError("New function name is required", field="name")

        del self._functions[old_name]
        if self.state is not None:
            await self.state.delete_function(old_name)

        result = await self.upsert(definition.model_copy(update={"name": new_name.strip()}), unique=unique)
        return result["name"]
