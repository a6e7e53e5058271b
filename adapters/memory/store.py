"""
In-memory implementation of the ``Store`` protocol.

Used by the demo and the test suite. Values are deep-copied on the way in and out,
so stored state is never shared with callers.
"""

import asyncio
import copy
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


class InMemoryStore:
    """Dict-backed store with an optional artificial latency per call."""

    def __init__(self, latency_seconds: float = 0.0) -> None:
        self._data: dict[str, dict[str, Any]] = {}
        self.latency_seconds = latency_seconds
        self.logger = logger.bind(component="memory_store")

    async def _tick(self) -> None:
        # Always yield so concurrent callers actually interleave.
        await asyncio.sleep(self.latency_seconds)

    async def get(self, key: str) -> dict[str, Any] | None:
        await self._tick()
        value = self._data.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def put(self, key: str, value: dict[str, Any]) -> None:
        await self._tick()
        self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        await self._tick()
        self._data.pop(key, None)

    async def keys(self, prefix: str) -> list[str]:
        await self._tick()
        return [key for key in self._data if key.startswith(prefix)]

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return copy.deepcopy(self._data)

    def __len__(self) -> int:
        return len(self._data)
