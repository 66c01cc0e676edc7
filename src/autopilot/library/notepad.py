"""Scratch storage shared between steps: an in-memory notepad plus durable values."""

from typing import Any, Optional

import structlog

from ..core.errors import ConfigError
from ..core.state import StateManager


logger = structlog.get_logger()

PERSISTENT_PREFIX = "persistent_"


class ScratchStore:
    """
    Two namespaces:

    - notepad: in-memory, lives as long as the process, shared by all runs
    - persistent: backed by the ``persistent_state`` table, survives restarts
    """

    def __init__(self, state: Optional[StateManager] = None):
        self.state = state
        self._notepad: dict[str, Any] = {}

    # ==================== Notepad ====================

    def write(self, key: str, value: Any) -> None:
        self._notepad[key] = value

    def read(self, key: str) -> Any:
        return self._notepad.get(key)

    def has(self, key: str) -> bool:
        return key in self._notepad

    def append(self, key: str, value: Any) -> Any:
        """Append to a list entry (created if missing) or concatenate text."""
        current = self._notepad.get(key)
        if current is None:
            current = [value]
        elif isinstance(current, list):
            current = current + [value]
        elif isinstance(current, str) and isinstance(value, str):
            current = current + value
        else:
            current = [current, value]
        self._notepad[key] = current
        return current

    def clear(self, key: Optional[str] = None) -> None:
        """Clear one entry, or everything when key is None."""
        if key is None:
            self._notepad.clear()
        else:
            self._notepad.pop(key, None)

    def read_all(self) -> dict[str, Any]:
        return dict(self._notepad)

    def keys(self) -> list[str]:
        return list(self._notepad)

    # ==================== Persistent ====================

    def _require_state(self) -> StateManager:
        if self.state is None:
            raise ConfigError("Persistent storage is not configured")
        return self.state

    async def save(self, key: str, value: Any) -> None:
        await self._require_state().put_value(PERSISTENT_PREFIX + key, value)
        logger.debug("persistent_value_saved", key=key)

    async def load(self, key: str) -> Any:
        return await self._require_state().get_value(PERSISTENT_PREFIX + key)

    async def remove(self, key: str) -> bool:
        return await self._require_state().delete_value(PERSISTENT_PREFIX + key)

    async def list_keys(self) -> list[str]:
        keys = await self._require_state().list_value_keys(PERSISTENT_PREFIX)
        return [key[len(PERSISTENT_PREFIX):] for key in keys]
