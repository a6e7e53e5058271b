"""
Guardian services.

This package contains the engines (geofence monitoring, case lifecycle, workflow
stages, volunteer matching) and the orchestrator that wires them over the event bus.
"""

from .case_lifecycle import TRANSITIONS, CaseLifecycleManager
from .dispatch import DispatchOrchestrator, SweepReport, build_orchestrator
from .events import EventBus
from .geofence_monitor import EvaluationResult, GeofenceMonitor
from .matching import MatchingEngine
from .persistence import KeyedLock, Repository, Store
from .sinks import AuditSink, Broadcaster, Notifier, SinkDispatcher
from .workflow import STAGE_TRANSITIONS, WorkflowTracker

__all__ = [
    "TRANSITIONS",
    "STAGE_TRANSITIONS",
    "AuditSink",
    "Broadcaster",
    "CaseLifecycleManager",
    "DispatchOrchestrator",
    "EvaluationResult",
    "EventBus",
    "GeofenceMonitor",
    "KeyedLock",
    "MatchingEngine",
    "Notifier",
    "Repository",
    "SinkDispatcher",
    "Store",
    "SweepReport",
    "WorkflowTracker",
    "build_orchestrator",
]
