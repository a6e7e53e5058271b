"""
Dispatch orchestration.

Wires the geofence monitor, case lifecycle and matching engine together over the
event bus:

1. A subject leaving a zone or pressing SOS opens (or escalates) a case
2. Urgent or newly dispatched cases get an immediate matching round
3. A background sweep re-matches open cases, expires stale assignments and runs
   retention cleanup

Architecture pattern: event-driven pipeline with a single consumer task
"""

import asyncio
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime

import structlog

from guardian.config import AppConfig, get_config
from guardian.domain.events import (
    CaseChanged,
    DomainEvent,
    EventKind,
    GeofenceCrossed,
    SosTriggered,
)
from guardian.domain.models import PRIORITY_ORDER, Case, CaseStatus, Priority, utcnow
from guardian.services.case_lifecycle import CaseLifecycleManager
from guardian.services.events import EventBus
from guardian.services.geofence_monitor import GeofenceMonitor
from guardian.services.matching import MatchingEngine
from guardian.services.persistence import KeyedLock, Repository, Store
from guardian.services.sinks import AuditSink, Broadcaster, Notifier, SinkDispatcher
from guardian.services.workflow import WorkflowTracker

logger = structlog.get_logger(__name__)

ORCHESTRATOR_ACTOR = "dispatch_orchestrator"

_SUBSCRIBED = (
    EventKind.GEOFENCE_EXIT,
    EventKind.SOS_TRIGGERED,
    EventKind.CASE_CREATED,
    EventKind.CASE_UPDATED,
)


@dataclass
class SweepReport:
    """Outcome of one background sweep."""

    matched_cases: list[str] = field(default_factory=list)
    expired_matches: list[str] = field(default_factory=list)
    cleaned_cases: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0


def next_priority(priority: Priority) -> Priority:
    return PRIORITY_ORDER[min(priority.rank + 1, len(PRIORITY_ORDER) - 1)]


class DispatchOrchestrator:
    """
    Reacts to monitor and lifecycle events and runs the periodic sweep.

    Events are handled one at a time by a single consumer task, so two exits for
    the same subject can never both decide that no case exists yet.
    """

    def __init__(
        self,
        monitor: GeofenceMonitor,
        cases: CaseLifecycleManager,
        workflow: WorkflowTracker,
        matching: MatchingEngine,
        bus: EventBus,
        config: AppConfig | None = None,
    ) -> None:
        self.monitor = monitor
        self.cases = cases
        self.workflow = workflow
        self.matching = matching
        self.bus = bus
        self.config = config or get_config()
        self.logger = logger.bind(component="dispatch_orchestrator")

        self._queue: asyncio.Queue[DomainEvent] | None = None
        self._consumer: asyncio.Task[None] | None = None
        self._sweeper: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    async def start(self, sweep: bool = True) -> None:
        """Subscribe to events and launch the consumer and (optionally) the sweep loop."""
        if self.is_running:
            return
        self._queue = self.bus.subscribe(*_SUBSCRIBED)
        self._consumer = asyncio.create_task(self._consume(self._queue), name="dispatch-consumer")
        if sweep:
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="dispatch-sweep")
        self.logger.info(
            "orchestrator_started",
            sweep=sweep,
            interval_seconds=self.config.matching.matching_interval_seconds,
        )

    async def stop(self) -> None:
        """Cancel background tasks and wait for them. Persisted state is untouched."""
        tasks = [task for task in (self._consumer, self._sweeper) if task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        if self._queue is not None:
            self.bus.unsubscribe(self._queue)
        self._queue = self._consumer = self._sweeper = None
        self.logger.info("orchestrator_stopped")

    @asynccontextmanager
    async def session(self, sweep: bool = True) -> AsyncIterator["DispatchOrchestrator"]:
        await self.start(sweep=sweep)
        try:
            yield self
        finally:
            await self.stop()

    async def drain(self) -> None:
        """Wait until every event queued so far has been handled."""
        if self._queue is not None:
            await self._queue.join()

    async def _consume(self, queue: asyncio.Queue[DomainEvent]) -> None:
        while True:
            event = await queue.get()
            try:
                await self.handle(event)
            except Exception as e:
                self.logger.error("event_handling_failed", kind=event.kind.value, error=str(e))
            finally:
                queue.task_done()

    # ------------------------------------------------------------------
    # Reactions
    # ------------------------------------------------------------------

    async def handle(self, event: DomainEvent) -> None:
        if isinstance(event, GeofenceCrossed) and event.kind == EventKind.GEOFENCE_EXIT:
            await self._on_geofence_exit(event)
        elif isinstance(event, SosTriggered):
            await self._on_sos(event)
        elif isinstance(event, CaseChanged):
            await self._on_case_changed(event)

    async def _on_geofence_exit(self, event: GeofenceCrossed) -> None:
        crossing = event.event
        open_cases = await self.cases.open_cases_for_subject(crossing.subject_id)
        if open_cases:
            for case in open_cases:
                await self._escalate(case, next_priority(case.priority), f"left zone {crossing.zone_name}")
            return

        await self.cases.create(
            {
                "title": f"Subject left safe zone '{crossing.zone_name}'",
                "description": (
                    f"Geofence exit detected {crossing.distance} m from the zone center "
                    f"at {crossing.timestamp.isoformat()}"
                ),
                "priority": Priority.HIGH,
                "location": {"lat": crossing.lat, "lng": crossing.lng},
                "subject_id": crossing.subject_id,
            },
            ORCHESTRATOR_ACTOR,
        )

    async def _on_sos(self, event: SosTriggered) -> None:
        open_cases = await self.cases.open_cases_for_subject(event.subject_id)
        if open_cases:
            for case in open_cases:
                await self._escalate(case, Priority.CRITICAL, "SOS triggered")
            return

        await self.cases.create(
            {
                "title": "SOS emergency",
                "description": event.message,
                "priority": Priority.CRITICAL,
                "location": {"lat": event.lat, "lng": event.lng},
                "subject_id": event.subject_id,
            },
            ORCHESTRATOR_ACTOR,
        )

    async def _escalate(self, case: Case, priority: Priority, reason: str) -> None:
        if priority.rank <= case.priority.rank:
            self.logger.debug("escalation_skipped_already_at_priority", case_id=case.id)
            return
        await self.cases.escalate(case.id, priority, ORCHESTRATOR_ACTOR, reason)

    async def _on_case_changed(self, event: CaseChanged) -> None:
        case = event.case
        if event.kind == EventKind.CASE_CREATED and case.priority.is_urgent:
            await self.matching.match_case(case.id, trigger="case_created")
        elif (
            event.kind == EventKind.CASE_UPDATED
            and case.status == CaseStatus.DISPATCHED
            and event.previous_status != CaseStatus.DISPATCHED
        ):
            await self.matching.match_case(case.id, trigger="dispatched")

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def run_sweep_once(self) -> SweepReport:
        """One matching round, assignment-timeout check and retention pass."""
        start_time = time.perf_counter()
        report = SweepReport()

        try:
            report.matched_cases = list(await self.matching.run_matching_round("periodic"))
        except Exception as e:
            self.logger.error("sweep_matching_failed", error=str(e))
            report.errors.append(f"matching: {e}")

        try:
            report.expired_matches = [m.id for m in await self.matching.expire_stale_assignments()]
        except Exception as e:
            self.logger.error("sweep_timeout_check_failed", error=str(e))
            report.errors.append(f"timeouts: {e}")

        try:
            report.cleaned_cases = await self.cases.process_scheduled_cleanups()
        except Exception as e:
            self.logger.error("sweep_cleanup_failed", error=str(e))
            report.errors.append(f"cleanup: {e}")

        report.duration_seconds = round(time.perf_counter() - start_time, 3)
        self.logger.info(
            "sweep_completed",
            matched_cases=len(report.matched_cases),
            expired_matches=len(report.expired_matches),
            cleaned_cases=len(report.cleaned_cases),
            degraded=bool(report.errors),
            duration_seconds=report.duration_seconds,
        )
        return report

    async def _sweep_loop(self) -> None:
        interval = self.config.matching.matching_interval_seconds
        try:
            while True:
                started = time.perf_counter()
                await self.run_sweep_once()
                await asyncio.sleep(max(0.0, interval - (time.perf_counter() - started)))
        except asyncio.CancelledError:
            self.logger.info("sweep_loop_cancelled")
            raise


def build_orchestrator(
    store: Store,
    notifier: Notifier | None = None,
    broadcaster: Broadcaster | None = None,
    audit: AuditSink | None = None,
    config: AppConfig | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> DispatchOrchestrator:
    """Build every engine over one store, lock table, bus and sink dispatcher."""
    config = config or get_config()
    repository = Repository(store)
    locks = KeyedLock()
    bus = EventBus()
    sinks = SinkDispatcher(notifier=notifier, broadcaster=broadcaster, audit=audit)

    monitor = GeofenceMonitor(repository, locks, sinks, bus, config.geofence, clock)
    cases = CaseLifecycleManager(repository, locks, sinks, bus, config.cases, clock)
    workflow = WorkflowTracker(repository, locks, bus, clock)
    matching = MatchingEngine(repository, locks, sinks, bus, cases, config.matching, clock)
    return DispatchOrchestrator(monitor, cases, workflow, matching, bus, config)
