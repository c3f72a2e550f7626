"""Key-value store with atomic compare-and-set.

Liquidation state lives behind this seam so a transactional store can
replace the in-memory one without touching call sites.
"""
from __future__ import annotations

import asyncio
from typing import Any, Protocol


class KeyValueStore(Protocol):
    """Abstract interface for keyed state with per-key atomic updates."""

    async def get(self, key: str) -> Any | None: ...

    async def put(self, key: str, value: Any) -> None: ...

    async def compare_and_set(self, key: str, expected: Any, new: Any) -> bool: ...

    async def values(self, prefix: str = "") -> list[Any]: ...


class InMemoryStore:
    """Process-local store; values are expected to be immutable records."""

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Any | None:
        return self._data.get(key)

    async def put(self, key: str, value: Any) -> None:
        async with self._lock:
            self._data[key] = value

    async def compare_and_set(self, key: str, expected: Any, new: Any) -> bool:
        """Store ``new`` only if the current value equals ``expected``."""
        async with self._lock:
            if self._data.get(key) != expected:
                return False
            self._data[key] = new
            return True

    async def values(self, prefix: str = "") -> list[Any]:
        return [v for k, v in list(self._data.items()) if k.startswith(prefix)]
