"""
Domain models for geofence alerting and volunteer dispatch.

These models represent the core business concepts and are framework-agnostic.
They use Pydantic for validation; records are persisted as plain JSON dicts via
``model_dump(mode="json")`` and rebuilt with ``model_validate``.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(UTC)


class Priority(str, Enum):
    """Case urgency levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return PRIORITY_ORDER.index(self)

    @property
    def is_urgent(self) -> bool:
        return self in (Priority.HIGH, Priority.CRITICAL)


PRIORITY_ORDER = [Priority.LOW, Priority.MEDIUM, Priority.HIGH, Priority.CRITICAL]


class CaseStatus(str, Enum):
    """Case lifecycle states. ``ACTIVE`` is the legacy entry alias."""

    CREATED = "created"
    ASSIGNED = "assigned"
    DISPATCHED = "dispatched"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"
    CANCELLED = "cancelled"
    ACTIVE = "active"


class WorkflowStage(str, Enum):
    """Internal workflow stages, tracked independently of ``CaseStatus``."""

    INTAKE = "intake"
    DISPATCH = "dispatch"
    EXECUTING = "executing"
    PAUSED = "paused"
    CLOSED = "closed"


class Coordinates(BaseModel):
    """A WGS84 point."""

    model_config = ConfigDict(allow_inf_nan=False)

    lat: float = Field(ge=-90.0, le=90.0)
    lng: float = Field(ge=-180.0, le=180.0)


class CaseLocation(Coordinates):
    """Last known location of a case; address and area are advisory."""

    address: str | None = None
    area: str | None = None
    radius: float | None = Field(default=None, gt=0.0, description="Search radius in meters")


class AlertConfig(BaseModel):
    """Geo-alert settings for a case. Enabled only while dispatched or in progress."""

    model_config = ConfigDict(validate_assignment=True)

    enabled: bool = False
    radius_meters: float = Field(gt=0.0)
    priority: str = "warning"
    dispatched_by: str | None = None
    dispatched_at: datetime | None = None


class StateTransition(BaseModel):
    """One entry of a case's append-only state history."""

    model_config = ConfigDict(frozen=True)

    from_status: CaseStatus | None
    to_status: CaseStatus
    timestamp: datetime = Field(default_factory=utcnow)
    actor: str
    reason: str | None = None


class StageEntry(BaseModel):
    """One entry of a case's workflow stage history."""

    model_config = ConfigDict(frozen=True)

    stage: WorkflowStage
    timestamp: datetime = Field(default_factory=utcnow)
    performer: str
    details: dict[str, Any] = Field(default_factory=dict)


class AssignedVolunteer(BaseModel):
    """A volunteer slot held by a case."""

    volunteer_id: str
    match_id: str
    role: str
    assigned_at: datetime


class Case(BaseModel):
    """A tracked incident, typically a missing person report."""

    model_config = ConfigDict(validate_assignment=True)

    id: str
    title: str = Field(min_length=1)
    description: str = Field(min_length=1)
    priority: Priority = Priority.MEDIUM
    status: CaseStatus = CaseStatus.CREATED
    location: CaseLocation
    contact_info: dict[str, str] = Field(default_factory=dict)
    subject_description: str | None = None
    subject_id: str | None = None
    alert_config: AlertConfig

    created_by: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_by: str | None = None
    updated_at: datetime = Field(default_factory=utcnow)

    assigned_to: str | None = None
    assigned_by: str | None = None
    assigned_at: datetime | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    closed_by: str | None = None
    closed_at: datetime | None = None
    cancelled_by: str | None = None
    cancelled_at: datetime | None = None

    assigned_volunteers: list[AssignedVolunteer] = Field(default_factory=list)
    state_history: list[StateTransition] = Field(default_factory=list)

    workflow_stage: WorkflowStage = WorkflowStage.INTAKE
    stage_history: list[StageEntry] = Field(default_factory=list)

    data_cleaned_at: datetime | None = None
    cleanup_mode: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (CaseStatus.CLOSED, CaseStatus.CANCELLED)

    @property
    def is_open(self) -> bool:
        return self.status not in (CaseStatus.RESOLVED, CaseStatus.CLOSED, CaseStatus.CANCELLED)


class GeofenceZone(BaseModel):
    """A named circular zone monitored for one subject."""

    model_config = ConfigDict(validate_assignment=True)

    id: str
    subject_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    center: Coordinates
    radius: float = Field(gt=0.0, description="Radius in meters")
    description: str = ""
    alert_on_enter: bool = True
    alert_on_exit: bool = True
    active: bool = True
    emergency_contacts: list[str] = Field(default_factory=list)
    guardian_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class GeofenceStatus(BaseModel):
    """Whether a subject is currently inside a zone, as of the last evaluation."""

    subject_id: str
    zone_id: str
    inside: bool = False
    last_event: datetime | None = None
    last_check: datetime = Field(default_factory=utcnow)
    distance: int | None = None


class GeofenceEventType(str, Enum):
    ENTER = "ENTER_GEOFENCE"
    EXIT = "EXIT_GEOFENCE"


class GeofenceEvent(BaseModel):
    """A single boundary crossing."""

    model_config = ConfigDict(frozen=True)

    type: GeofenceEventType
    subject_id: str
    zone_id: str
    zone_name: str
    lat: float
    lng: float
    distance: int
    timestamp: datetime = Field(default_factory=utcnow)


class LocationPoint(Coordinates):
    """A timestamped location sample."""

    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    timestamp: datetime


class Anomaly(BaseModel):
    """Prolonged absence of movement for a subject."""

    model_config = ConfigDict(frozen=True)

    type: str = "NO_MOVEMENT"
    subject_id: str
    location: LocationPoint
    duration_minutes: float
    max_distance: float
    detected_at: datetime = Field(default_factory=utcnow)


class VolunteerStatus(str, Enum):
    AVAILABLE = "available"
    ASSIGNED = "assigned"
    ACTIVE = "active"


class VolunteerLocation(Coordinates):
    timestamp: datetime = Field(default_factory=utcnow)


class VolunteerPreferences(BaseModel):
    max_distance: float = Field(default=5000.0, gt=0.0, description="Meters")
    case_types: list[str] = Field(default_factory=lambda: ["missing_person"])
    time_availability: list[str] = Field(default_factory=lambda: ["24/7"])


class VolunteerCapabilities(BaseModel):
    has_vehicle: bool = False
    can_provide_transport: bool = False
    has_first_aid: bool = False
    languages: list[str] = Field(default_factory=lambda: ["zh-TW"])


class Volunteer(BaseModel):
    """A registered volunteer and their current capacity."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(min_length=1)
    location: VolunteerLocation
    preferences: VolunteerPreferences = Field(default_factory=VolunteerPreferences)
    capabilities: VolunteerCapabilities = Field(default_factory=VolunteerCapabilities)
    status: VolunteerStatus = VolunteerStatus.AVAILABLE
    rating: float = Field(default=5.0, ge=0.0, le=5.0)
    total_cases: int = Field(default=0, ge=0)
    successful_cases: int = Field(default=0, ge=0)
    current_matches: list[str] = Field(default_factory=list)
    registered_at: datetime = Field(default_factory=utcnow)
    last_active_at: datetime = Field(default_factory=utcnow)

    @property
    def success_rate(self) -> float:
        if self.total_cases == 0:
            return 0.5
        return self.successful_cases / self.total_cases


class MatchStatus(str, Enum):
    ASSIGNED = "assigned"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    COMPLETED = "completed"


class Completion(BaseModel):
    outcome: str = "completed"
    notes: str = ""
    found_person: bool = False


class Match(BaseModel):
    """Assignment of one volunteer to one case."""

    model_config = ConfigDict(validate_assignment=True)

    id: str
    case_id: str
    volunteer_id: str
    status: MatchStatus = MatchStatus.ASSIGNED
    role: str = "searcher"
    search_radius_meters: float = Field(gt=0.0)
    estimated_arrival_minutes: int = Field(ge=0)
    assigned_at: datetime = Field(default_factory=utcnow)
    accepted_at: datetime | None = None
    rejected_at: datetime | None = None
    completed_at: datetime | None = None
    rejection_reason: str | None = None
    completion: Completion | None = None

    @property
    def is_unresolved(self) -> bool:
        return self.status in (MatchStatus.ASSIGNED, MatchStatus.ACCEPTED)


class MatchCandidate(BaseModel):
    """A scored volunteer for a case."""

    model_config = ConfigDict(frozen=True)

    volunteer_id: str
    score: float
    distance: float


class AlertType(str, Enum):
    SOS_EMERGENCY = "SOS_EMERGENCY"
    EXIT_GEOFENCE = "EXIT_GEOFENCE"
    ENTER_GEOFENCE = "ENTER_GEOFENCE"
    NO_MOVEMENT = "NO_MOVEMENT"
    GENERIC = "GENERIC"


class Alert(BaseModel):
    """Outbound notification payload."""

    model_config = ConfigDict(frozen=True)

    type: AlertType
    message: str
    data: dict[str, Any] = Field(default_factory=dict)


class AuditRecord(BaseModel):
    """Best-effort audit trail entry."""

    model_config = ConfigDict(frozen=True)

    actor: str
    action: str
    entity_id: str
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    timestamp: datetime = Field(default_factory=utcnow)


class CleanupJob(BaseModel):
    """A scheduled retention action for a closed case."""

    case_id: str
    scheduled_for: datetime
    type: str = "case_data_cleanup"
    status: str = "scheduled"
