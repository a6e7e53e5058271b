"""
Workflow stage tracking.

Stages are a second, coarser state machine over a case. They are validated on
their own table and never drive ``CaseStatus``; disagreement between the two is
reported by ``detect_divergence`` and left for an operator to resolve.
"""

from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any

import structlog

from guardian.domain.errors import InvalidTransition, NotFound, ValidationError
from guardian.domain.events import CaseChanged, EventKind
from guardian.domain.models import Case, StageEntry, WorkflowStage, utcnow
from guardian.services.events import EventBus
from guardian.services.persistence import KeyedLock, Repository, case_key

logger = structlog.get_logger(__name__)

STAGE_TRANSITIONS: dict[WorkflowStage, frozenset[WorkflowStage]] = {
    WorkflowStage.INTAKE: frozenset({WorkflowStage.DISPATCH}),
    WorkflowStage.DISPATCH: frozenset({WorkflowStage.EXECUTING, WorkflowStage.PAUSED}),
    WorkflowStage.EXECUTING: frozenset({WorkflowStage.CLOSED, WorkflowStage.PAUSED}),
    WorkflowStage.PAUSED: frozenset({WorkflowStage.EXECUTING, WorkflowStage.CLOSED}),
    WorkflowStage.CLOSED: frozenset(),
}


def validate_stage_history(history: Sequence[StageEntry]) -> list[str]:
    """Return every violation found in a stage history; empty means valid."""
    if not history:
        return ["stage history is empty"]

    violations = []
    if history[0].stage != WorkflowStage.INTAKE:
        violations.append(f"first stage must be intake, got {history[0].stage.value}")
    for index, (previous, current) in enumerate(zip(history, history[1:], strict=False), start=1):
        if current.stage not in STAGE_TRANSITIONS[previous.stage]:
            violations.append(
                f"entry {index}: {previous.stage.value} -> {current.stage.value} is not allowed"
            )
    return violations


def detect_divergence(case: Case) -> str | None:
    """Describe a mismatch between status and stage, or return None."""
    stage_closed = case.workflow_stage == WorkflowStage.CLOSED
    if case.is_terminal and not stage_closed:
        return f"status {case.status.value} but stage {case.workflow_stage.value}"
    if stage_closed and not case.is_terminal:
        return f"stage closed but status {case.status.value}"
    return None


class WorkflowTracker:
    def __init__(
        self,
        repository: Repository,
        locks: KeyedLock,
        bus: EventBus,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.locks = locks
        self.bus = bus
        self.clock = clock
        self.logger = logger.bind(component="workflow_tracker")

    async def advance_stage(
        self,
        case_id: str,
        stage: WorkflowStage | str,
        actor: str,
        details: dict[str, Any] | None = None,
    ) -> Case:
        try:
            target = WorkflowStage(stage)
        except ValueError as e:
            raise ValidationError(f"Unknown stage: {stage}", fields=["stage"]) from e

        async with self.locks.hold(case_key(case_id)):
            case = await self.repository.load(case_key(case_id), Case)
            if case is None:
                raise NotFound("Case", case_id)

            allowed = STAGE_TRANSITIONS[case.workflow_stage]
            if target not in allowed:
                raise InvalidTransition(
                    case.workflow_stage.value,
                    target.value,
                    sorted(s.value for s in allowed),
                )

            now = self.clock()
            case.stage_history.append(
                StageEntry(stage=target, timestamp=now, performer=actor, details=details or {})
            )
            case.workflow_stage = target
            case.updated_by = actor
            case.updated_at = now
            await self.repository.save(case_key(case_id), case)

        self.logger.info("workflow_stage_advanced", case_id=case_id, stage=target.value, actor=actor)
        divergence = detect_divergence(case)
        if divergence:
            self.logger.warning("workflow_status_divergence", case_id=case_id, detail=divergence)

        self.bus.publish(
            CaseChanged(kind=EventKind.CASE_UPDATED, case=case.model_copy(deep=True), previous_status=case.status)
        )
        return case
