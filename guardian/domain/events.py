"""
Typed events emitted by the engines.

These are the only integration points with notification, UI and transport
layers. Consumers subscribe on the event bus by ``EventKind``.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from guardian.domain.models import (
    Anomaly,
    Case,
    CaseStatus,
    GeofenceEvent,
    GeofenceEventType,
    GeofenceZone,
    Match,
    MatchCandidate,
    utcnow,
)


class EventKind(str, Enum):
    GEOFENCE_ENTER = "geofence_enter"
    GEOFENCE_EXIT = "geofence_exit"
    ANOMALY_DETECTED = "anomaly_detected"
    SOS_TRIGGERED = "sos_triggered"
    CASE_CREATED = "case_created"
    CASE_UPDATED = "case_updated"
    CASE_CLOSED = "case_closed"
    VOLUNTEER_ASSIGNED = "volunteer_assigned"
    ASSIGNMENT_ACCEPTED = "assignment_accepted"
    ASSIGNMENT_REJECTED = "assignment_rejected"
    ASSIGNMENT_COMPLETED = "assignment_completed"
    MATCHES_FOUND = "matches_found"


@dataclass(frozen=True)
class GeofenceCrossed:
    """A subject entered or left a zone."""

    event: GeofenceEvent
    zone: GeofenceZone
    occurred_at: datetime = field(default_factory=utcnow)

    @property
    def kind(self) -> EventKind:
        if self.event.type == GeofenceEventType.ENTER:
            return EventKind.GEOFENCE_ENTER
        return EventKind.GEOFENCE_EXIT


@dataclass(frozen=True)
class AnomalyDetected:
    anomaly: Anomaly
    occurred_at: datetime = field(default_factory=utcnow)
    kind: EventKind = field(default=EventKind.ANOMALY_DETECTED, init=False)


@dataclass(frozen=True)
class SosTriggered:
    subject_id: str
    lat: float
    lng: float
    message: str
    guardian_id: str | None = None
    occurred_at: datetime = field(default_factory=utcnow)
    kind: EventKind = field(default=EventKind.SOS_TRIGGERED, init=False)


@dataclass(frozen=True)
class CaseChanged:
    """Emitted for case creation, every transition and closure."""

    kind: EventKind
    case: Case
    previous_status: CaseStatus | None = None
    occurred_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class MatchChanged:
    kind: EventKind
    match: Match
    occurred_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class MatchesFound:
    case_id: str
    candidates: list[MatchCandidate]
    trigger: str
    occurred_at: datetime = field(default_factory=utcnow)
    kind: EventKind = field(default=EventKind.MATCHES_FOUND, init=False)


DomainEvent = GeofenceCrossed | AnomalyDetected | SosTriggered | CaseChanged | MatchChanged | MatchesFound
