"""
Persistence contract and per-key serialization.

The engines never touch a concrete database. They depend on the narrow ``Store``
protocol (async get/put/delete/keys over JSON dicts) and serialize writers per
entity key with ``KeyedLock``.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, Protocol, TypeVar

import pydantic
import structlog
from pydantic import BaseModel

from guardian.domain.errors import DependencyFailure, DispatchError

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class Store(Protocol):
    """
    Key-value persistence contract. Adapters satisfy it structurally.
    """

    async def get(self, key: str) -> dict[str, Any] | None: ...

    async def put(self, key: str, value: dict[str, Any]) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def keys(self, prefix: str) -> list[str]: ...


def case_key(case_id: str) -> str:
    return f"case:{case_id}"


def volunteer_key(volunteer_id: str) -> str:
    return f"volunteer:{volunteer_id}"


def match_key(match_id: str) -> str:
    return f"match:{match_id}"


def zone_key(subject_id: str, zone_id: str) -> str:
    return f"zone:{subject_id}:{zone_id}"


def status_key(subject_id: str, zone_id: str) -> str:
    return f"geofence_status:{subject_id}:{zone_id}"


def cleanup_job_key(case_id: str) -> str:
    return f"cleanup_job:{case_id}"


class KeyedLock:
    """
    One ``asyncio.Lock`` per key, created on demand and dropped when idle.

    ``hold`` acquires several keys in the order given; callers must use a fixed
    global order (match -> case -> volunteer) to stay deadlock free.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def _acquire(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    @asynccontextmanager
    async def hold(self, *keys: str) -> AsyncIterator[None]:
        async with AsyncExitStack() as stack:
            for key in dict.fromkeys(keys):
                await stack.enter_async_context(self._acquire(key))
            yield


class Repository:
    """Typed access to a ``Store`` that maps storage errors to ``DependencyFailure``."""

    def __init__(self, store: Store) -> None:
        self._store = store
        self.logger = logger.bind(component="repository")

    async def load(self, key: str, model: type[ModelT]) -> ModelT | None:
        try:
            raw = await self._store.get(key)
        except Exception as e:
            raise DependencyFailure(f"Failed to read {key}", key=key, error=str(e)) from e
        if raw is None:
            return None
        try:
            return model.model_validate(raw)
        except pydantic.ValidationError as e:
            raise DependencyFailure(f"Corrupt record at {key}", key=key, error=str(e)) from e

    async def load_all(self, prefix: str, model: type[ModelT]) -> list[ModelT]:
        try:
            keys = await self._store.keys(prefix)
        except Exception as e:
            raise DependencyFailure(f"Failed to list {prefix}", prefix=prefix, error=str(e)) from e
        records = []
        for key in sorted(keys):
            record = await self.load(key, model)
            if record is not None:
                records.append(record)
        return records

    async def save(self, key: str, record: BaseModel) -> None:
        await self.commit({key: record})

    async def remove(self, key: str) -> None:
        await self.commit({key: None})

    async def commit(self, writes: dict[str, BaseModel | None]) -> None:
        """
        Apply several writes as a unit. ``None`` deletes the key.

        On a failed write the keys already written are restored to their previous
        values before ``DependencyFailure`` is raised.
        """
        previous: dict[str, dict[str, Any] | None] = {}
        written: list[str] = []
        try:
            for key, record in writes.items():
                previous[key] = await self._store.get(key)
                if record is None:
                    await self._store.delete(key)
                else:
                    await self._store.put(key, record.model_dump(mode="json"))
                written.append(key)
        except DispatchError:
            raise
        except Exception as e:
            await self._rollback(written, previous)
            raise DependencyFailure(
                "Persistence write failed", keys=list(writes), error=str(e)
            ) from e

    async def _rollback(
        self, written: list[str], previous: dict[str, dict[str, Any] | None]
    ) -> None:
        for key in reversed(written):
            try:
                if previous[key] is None:
                    await self._store.delete(key)
                else:
                    await self._store.put(key, previous[key])  # type: ignore[arg-type]
            except Exception as e:
                self.logger.error("rollback_failed", key=key, error=str(e))
