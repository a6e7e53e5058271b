"""Shared fixtures: a controllable clock, the in-memory store and recording sinks."""

from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from adapters.memory.store import InMemoryStore
from adapters.sinks.logging_sinks import LoggingAuditSink, LoggingBroadcaster, LoggingNotifier
from guardian.config import AppConfig, MatchingConfig
from guardian.services.case_lifecycle import CaseLifecycleManager
from guardian.services.dispatch import DispatchOrchestrator, build_orchestrator
from guardian.services.events import EventBus
from guardian.services.geofence_monitor import GeofenceMonitor
from guardian.services.matching import MatchingEngine
from guardian.services.workflow import WorkflowTracker

# Reference point used across scenarios (Hsinchu city center).
HSINCHU = (24.8138, 120.9675)


class FixedClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 8, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FailingStore(InMemoryStore):
    """Store that can refuse reads, or writes for keys with a given prefix."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_put_prefixes: set[str] = set()
        self.fail_reads = False

    async def get(self, key: str) -> dict[str, Any] | None:
        if self.fail_reads:
            raise ConnectionError("store unreachable")
        return await super().get(key)

    async def keys(self, prefix: str) -> list[str]:
        if self.fail_reads:
            raise ConnectionError("store unreachable")
        return await super().keys(prefix)

    async def put(self, key: str, value: dict[str, Any]) -> None:
        if any(key.startswith(prefix) for prefix in self.fail_put_prefixes):
            raise ConnectionError(f"write refused for {key}")
        await super().put(key, value)


class FailingNotifier:
    async def notify(self, target_id: str, alert: Any) -> None:
        raise RuntimeError("push provider down")


class FailingBroadcaster:
    async def broadcast(self, *args: Any) -> None:
        raise RuntimeError("broadcast provider down")


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def store() -> FailingStore:
    return FailingStore()


@pytest.fixture
def notifier() -> LoggingNotifier:
    return LoggingNotifier()


@pytest.fixture
def broadcaster() -> LoggingBroadcaster:
    return LoggingBroadcaster()


@pytest.fixture
def audit() -> LoggingAuditSink:
    return LoggingAuditSink()


@pytest.fixture
def config() -> AppConfig:
    return AppConfig(matching=MatchingConfig(max_volunteers_per_case=3, matching_interval_seconds=0.01))


@pytest.fixture
def orchestrator(
    store: FailingStore,
    notifier: LoggingNotifier,
    broadcaster: LoggingBroadcaster,
    audit: LoggingAuditSink,
    config: AppConfig,
    clock: FixedClock,
) -> DispatchOrchestrator:
    return build_orchestrator(store, notifier, broadcaster, audit, config, clock)


@pytest.fixture
def bus(orchestrator: DispatchOrchestrator) -> EventBus:
    return orchestrator.bus


@pytest.fixture
def monitor(orchestrator: DispatchOrchestrator) -> GeofenceMonitor:
    return orchestrator.monitor


@pytest.fixture
def cases(orchestrator: DispatchOrchestrator) -> CaseLifecycleManager:
    return orchestrator.cases


@pytest.fixture
def workflow(orchestrator: DispatchOrchestrator) -> WorkflowTracker:
    return orchestrator.workflow


@pytest.fixture
def matching(orchestrator: DispatchOrchestrator) -> MatchingEngine:
    return orchestrator.matching


def case_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "title": "Missing elderly person",
        "description": "Last seen near the east gate wearing a grey jacket",
        "location": {"lat": HSINCHU[0], "lng": HSINCHU[1], "address": "East District"},
        "contact_info": {"phone": "0912-345-678"},
        "subject_description": "82 years old, 165 cm",
    }
    payload.update(overrides)
    return payload


def offset(lat: float, lng: float, north_meters: float = 0.0) -> tuple[float, float]:
    """Shift a point due north by roughly ``north_meters``."""
    return lat + north_meters / 111_195.0, lng
