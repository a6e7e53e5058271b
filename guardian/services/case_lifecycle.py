"""
Case lifecycle state machine.

Owns creation, status transitions and their side effects (geo-alert activation,
broadcast, retention cleanup). Every mutation of a case runs under the
``case:<id>`` lock and is written with a single ``Repository.commit``; events,
broadcasts and audit records go out only after the write succeeded.
"""

import itertools
import secrets
import time
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from typing import Any

import pydantic
import structlog
from pydantic import BaseModel

from guardian.config import CaseConfig
from guardian.domain.errors import InvalidState, InvalidTransition, NotFound, ValidationError
from guardian.domain.events import CaseChanged, EventKind
from guardian.domain.models import (
    Case,
    CaseStatus,
    CleanupJob,
    Coordinates,
    Priority,
    StageEntry,
    StateTransition,
    WorkflowStage,
    utcnow,
)
from guardian.services.events import EventBus
from guardian.services.geo import search_radius_for, validate_coordinates
from guardian.services.persistence import KeyedLock, Repository, case_key, cleanup_job_key
from guardian.services.sinks import SinkDispatcher

logger = structlog.get_logger(__name__)

TRANSITIONS: dict[CaseStatus, frozenset[CaseStatus]] = {
    CaseStatus.CREATED: frozenset({CaseStatus.ASSIGNED, CaseStatus.CANCELLED}),
    CaseStatus.ASSIGNED: frozenset({CaseStatus.DISPATCHED, CaseStatus.CANCELLED}),
    CaseStatus.DISPATCHED: frozenset(
        {CaseStatus.IN_PROGRESS, CaseStatus.RESOLVED, CaseStatus.CANCELLED}
    ),
    CaseStatus.IN_PROGRESS: frozenset({CaseStatus.RESOLVED, CaseStatus.CANCELLED}),
    CaseStatus.RESOLVED: frozenset({CaseStatus.CLOSED}),
    CaseStatus.CLOSED: frozenset(),
    CaseStatus.CANCELLED: frozenset(),
    CaseStatus.ACTIVE: frozenset(
        {CaseStatus.IN_PROGRESS, CaseStatus.RESOLVED, CaseStatus.CANCELLED}
    ),
}

_ENTRY_STATUSES = (CaseStatus.CREATED, CaseStatus.ACTIVE)
_REQUIRED_FIELDS = ("title", "description", "location")
_PERSONAL_FIELDS = ("contact_info", "subject_description")

_case_sequence = itertools.count(1)


def generate_case_id() -> str:
    """Sortable id: creation millis, process-local sequence, random suffix."""
    return f"case_{time.time_ns() // 1_000_000:013d}_{next(_case_sequence):04d}_{secrets.token_hex(3)}"


def allowed_transitions(status: CaseStatus | str) -> list[CaseStatus]:
    return sorted(TRANSITIONS[CaseStatus(status)], key=lambda s: s.value)


def case_temp_key(case_id: str) -> str:
    return f"case_temp:{case_id}"


def notification_queue_key(case_id: str) -> str:
    return f"notification_queue:{case_id}"


class CaseLifecycleManager:
    """Creates cases and moves them through ``TRANSITIONS``."""

    def __init__(
        self,
        repository: Repository,
        locks: KeyedLock,
        sinks: SinkDispatcher,
        bus: EventBus,
        config: CaseConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.locks = locks
        self.sinks = sinks
        self.bus = bus
        self.config = config or CaseConfig()
        self.clock = clock
        self.logger = logger.bind(component="case_lifecycle")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, case_id: str) -> Case:
        case = await self.repository.load(case_key(case_id), Case)
        if case is None:
            raise NotFound("Case", case_id)
        return case

    async def list_cases(self, status: CaseStatus | str | None = None) -> list[Case]:
        cases = await self.repository.load_all("case:", Case)
        if status is None:
            return cases
        wanted = CaseStatus(status)
        return [case for case in cases if case.status == wanted]

    async def open_cases_for_subject(self, subject_id: str) -> list[Case]:
        return [
            case
            for case in await self.repository.load_all("case:", Case)
            if case.subject_id == subject_id and case.is_open
        ]

    def allowed_transitions(self, status: CaseStatus | str) -> list[CaseStatus]:
        return allowed_transitions(status)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create(self, case_data: Mapping[str, Any], actor: str) -> Case:
        """
        Create a case from caller-supplied data.

        ``title``, ``description`` and ``location`` (with ``lat``/``lng``) are
        required. Priority defaults to ``medium``; the alert radius defaults to the
        location radius, then to the priority's search radius.
        """
        missing = [name for name in _REQUIRED_FIELDS if not case_data.get(name)]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}", fields=missing)

        location = case_data["location"]
        if isinstance(location, BaseModel):
            location = location.model_dump()
        if not isinstance(location, Mapping):
            raise ValidationError("Location must be an object", fields=["location"])
        lat, lng = validate_coordinates(location.get("lat"), location.get("lng"))

        try:
            priority = Priority(case_data.get("priority") or Priority.MEDIUM)
        except ValueError as e:
            raise ValidationError("Unknown priority", fields=["priority"]) from e
        try:
            status = CaseStatus(case_data.get("status") or CaseStatus.CREATED)
        except ValueError as e:
            raise ValidationError("Unknown status", fields=["status"]) from e
        if status not in _ENTRY_STATUSES:
            raise ValidationError("Cases must start as created or active", fields=["status"])

        now = self.clock()
        radius = location.get("radius") or search_radius_for(priority)
        data = {
            key: value
            for key, value in case_data.items()
            if key in ("title", "description", "contact_info", "subject_description", "subject_id")
        }
        try:
            case = Case.model_validate(
                {
                    **data,
                    "id": generate_case_id(),
                    "priority": priority,
                    "status": status,
                    "location": {**location, "lat": lat, "lng": lng},
                    "alert_config": {"enabled": False, "radius_meters": radius},
                    "created_by": actor,
                    "created_at": now,
                    "updated_by": actor,
                    "updated_at": now,
                    "state_history": [
                        StateTransition(
                            from_status=None, to_status=status, timestamp=now, actor=actor, reason="created"
                        )
                    ],
                    "stage_history": [
                        StageEntry(stage=WorkflowStage.INTAKE, timestamp=now, performer=actor)
                    ],
                }
            )
        except pydantic.ValidationError as e:
            raise ValidationError.from_pydantic(e) from e

        async with self.locks.hold(case_key(case.id)):
            await self.repository.save(case_key(case.id), case)

        self.logger.info("case_created", case_id=case.id, priority=case.priority.value, actor=actor)
        await self.sinks.audit(actor, "case_created", case.id, after={"status": case.status.value})
        self.bus.publish(CaseChanged(kind=EventKind.CASE_CREATED, case=case.model_copy(deep=True)))
        return case

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def transition(
        self, case_id: str, to_status: CaseStatus | str, actor: str, reason: str | None = None
    ) -> Case:
        """Move a case to ``to_status`` and run the side effects of entering it."""
        target = self._parse_status(to_status)
        async with self.locks.hold(case_key(case_id)):
            case = await self.get(case_id)
            previous = case.status
            writes = self._apply_transition(case, target, actor, reason)
            await self.repository.commit(writes)

        await self._after_transition(case, previous, actor, reason)
        return case

    async def assign(self, case_id: str, assignee_id: str, actor: str) -> Case:
        """Record the assignee and move the case to ``assigned`` in one write."""
        if not assignee_id:
            raise ValidationError("Missing required fields: assignee_id", fields=["assignee_id"])
        async with self.locks.hold(case_key(case_id)):
            case = await self.get(case_id)
            previous = case.status
            self._check_transition(case, CaseStatus.ASSIGNED)
            case.assigned_to = assignee_id
            case.assigned_by = actor
            case.assigned_at = self.clock()
            writes = self._apply_transition(case, CaseStatus.ASSIGNED, actor, f"assigned to {assignee_id}")
            await self.repository.commit(writes)

        await self._after_transition(case, previous, actor, f"assigned to {assignee_id}")
        return case

    def _parse_status(self, status: CaseStatus | str) -> CaseStatus:
        try:
            return CaseStatus(status)
        except ValueError as e:
            raise ValidationError(f"Unknown status: {status}", fields=["status"]) from e

    def _check_transition(self, case: Case, target: CaseStatus) -> None:
        if target not in TRANSITIONS[case.status]:
            raise InvalidTransition(
                case.status.value,
                target.value,
                [status.value for status in allowed_transitions(case.status)],
            )

    def _apply_transition(
        self, case: Case, target: CaseStatus, actor: str, reason: str | None
    ) -> dict[str, BaseModel | None]:
        """Mutate ``case`` for the transition and return every write it needs."""
        self._check_transition(case, target)
        now = self.clock()
        writes: dict[str, BaseModel | None] = {}

        case.state_history.append(
            StateTransition(
                from_status=case.status, to_status=target, timestamp=now, actor=actor, reason=reason
            )
        )
        case.status = target
        case.updated_by = actor
        case.updated_at = now

        if target == CaseStatus.DISPATCHED:
            case.alert_config.enabled = True
            case.alert_config.dispatched_by = actor
            case.alert_config.dispatched_at = now
        elif target == CaseStatus.RESOLVED:
            case.alert_config.enabled = False
            case.resolved_by = actor
            case.resolved_at = now
        elif target == CaseStatus.CLOSED:
            case.alert_config.enabled = False
            case.closed_by = actor
            case.closed_at = now
            job = CleanupJob(case_id=case.id, scheduled_for=now + timedelta(days=self.config.retention_days))
            writes[cleanup_job_key(case.id)] = job
        elif target == CaseStatus.CANCELLED:
            case.alert_config.enabled = False
            case.cancelled_by = actor
            case.cancelled_at = now
            writes.update(self._purge_personal_data(case, "immediate"))

        writes[case_key(case.id)] = case
        return writes

    def _purge_personal_data(self, case: Case, mode: str) -> dict[str, BaseModel | None]:
        case.contact_info = {}
        case.subject_description = None
        case.data_cleaned_at = self.clock()
        case.cleanup_mode = mode
        return {case_temp_key(case.id): None, notification_queue_key(case.id): None}

    async def _after_transition(
        self, case: Case, previous: CaseStatus, actor: str, reason: str | None
    ) -> None:
        self.logger.info(
            "case_status_changed",
            case_id=case.id,
            from_status=previous.value,
            to_status=case.status.value,
            actor=actor,
            reason=reason,
        )

        if case.status == CaseStatus.DISPATCHED:
            await self.sinks.broadcast(
                Coordinates(lat=case.location.lat, lng=case.location.lng),
                case.alert_config.radius_meters,
                case.priority,
                self.config.safety_message,
            )

        await self.sinks.audit(
            actor,
            "case_status_changed",
            case.id,
            before={"status": previous.value},
            after={"status": case.status.value, "reason": reason},
        )

        snapshot = case.model_copy(deep=True)
        self.bus.publish(CaseChanged(kind=EventKind.CASE_UPDATED, case=snapshot, previous_status=previous))
        if case.is_terminal:
            self.bus.publish(CaseChanged(kind=EventKind.CASE_CLOSED, case=snapshot, previous_status=previous))

    # ------------------------------------------------------------------
    # Priority
    # ------------------------------------------------------------------

    async def escalate(
        self, case_id: str, priority: Priority | str, actor: str, reason: str | None = None
    ) -> Case:
        """Raise a case's priority. Lowering is rejected; the same priority is a no-op."""
        try:
            target = Priority(priority)
        except ValueError as e:
            raise ValidationError(f"Unknown priority: {priority}", fields=["priority"]) from e

        async with self.locks.hold(case_key(case_id)):
            case = await self.get(case_id)
            if not case.is_open:
                raise InvalidState(
                    f"Cannot escalate a {case.status.value} case", case_id=case_id, status=case.status.value
                )
            if target.rank < case.priority.rank:
                raise ValidationError("Priority can only be raised", fields=["priority"])
            if target == case.priority:
                return case

            previous = case.priority
            case.priority = target
            if case.location.radius is None:
                case.alert_config.radius_meters = search_radius_for(target)
            case.updated_by = actor
            case.updated_at = self.clock()
            await self.repository.save(case_key(case.id), case)

        self.logger.info(
            "case_escalated", case_id=case.id, from_priority=previous.value, to_priority=target.value
        )
        await self.sinks.audit(
            actor,
            "case_escalated",
            case.id,
            before={"priority": previous.value},
            after={"priority": target.value, "reason": reason},
        )
        self.bus.publish(
            CaseChanged(kind=EventKind.CASE_UPDATED, case=case.model_copy(deep=True), previous_status=case.status)
        )
        return case

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    async def cleanup_case_data(self, case_id: str, mode: str = "manual") -> Case:
        """Strip personal fields and ancillary records; the case record itself stays."""
        async with self.locks.hold(case_key(case_id)):
            case = await self.get(case_id)
            writes = self._purge_personal_data(case, mode)
            writes[case_key(case.id)] = case
            await self.repository.commit(writes)

        self.logger.info("case_data_cleaned", case_id=case_id, mode=mode)
        await self.sinks.audit("system", "case_data_cleaned", case_id, after={"mode": mode})
        return case

    async def process_scheduled_cleanups(self, now: datetime | None = None) -> list[str]:
        """Run every retention job that is due. Returns the cleaned case ids."""
        now = now or self.clock()
        cleaned: list[str] = []
        for job in await self.repository.load_all("cleanup_job:", CleanupJob):
            if job.status != "scheduled" or job.scheduled_for > now:
                continue
            async with self.locks.hold(case_key(job.case_id)):
                case = await self.repository.load(case_key(job.case_id), Case)
                job.status = "completed"
                writes: dict[str, BaseModel | None] = {cleanup_job_key(job.case_id): job}
                if case is not None:
                    writes.update(self._purge_personal_data(case, "scheduled"))
                    writes[case_key(case.id)] = case
                await self.repository.commit(writes)
            if case is None:
                self.logger.warning("cleanup_case_missing", case_id=job.case_id)
                continue
            cleaned.append(job.case_id)
            await self.sinks.audit("system", "case_data_cleaned", job.case_id, after={"mode": "scheduled"})

        if cleaned:
            self.logger.info("scheduled_cleanups_processed", count=len(cleaned))
        return cleaned
