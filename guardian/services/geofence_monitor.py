"""
Per-subject geofence monitoring.

Tracks, for every (subject, zone) pair, whether the subject is inside the zone and
raises ENTER/EXIT events exactly once per boundary crossing. Also detects prolonged
absence of movement and handles SOS triggers.

Concurrency: all evaluation for one subject runs under the ``subject:<id>`` lock so
two location updates for the same subject can never both observe the same
previous status.
"""

import asyncio
import itertools
import time
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Any

import pydantic
import structlog
from pydantic import BaseModel, Field

from guardian.config import GeofenceConfig
from guardian.domain.errors import DispatchError, NotFound, ValidationError
from guardian.domain.events import AnomalyDetected, GeofenceCrossed, SosTriggered
from guardian.domain.models import (
    Alert,
    AlertType,
    Anomaly,
    Coordinates,
    GeofenceEvent,
    GeofenceEventType,
    GeofenceStatus,
    GeofenceZone,
    LocationPoint,
    utcnow,
)
from guardian.domain.result import Result
from guardian.services.events import EventBus
from guardian.services.geo import haversine_distance, validate_coordinates
from guardian.services.persistence import KeyedLock, Repository, status_key, zone_key
from guardian.services.sinks import SinkDispatcher

logger = structlog.get_logger(__name__)

_zone_sequence = itertools.count(1)

_UPDATABLE_ZONE_FIELDS = {
    "name",
    "description",
    "radius",
    "alert_on_enter",
    "alert_on_exit",
    "emergency_contacts",
    "guardian_id",
}


class EvaluationResult(BaseModel):
    """Outcome of one location update for one subject."""

    subject_id: str
    statuses: list[GeofenceStatus] = Field(default_factory=list)
    events: list[GeofenceEvent] = Field(default_factory=list)


def _generate_zone_id() -> str:
    return f"gf_{time.time_ns() // 1_000_000:013d}_{next(_zone_sequence):04d}"


class GeofenceMonitor:
    """
    Geofence registry and boundary-crossing detector.

    Design principles:
    - Absence of prior status means "outside" (no spurious exit on first sight)
    - Status is persisted before events leave the monitor
    - Notification failures are logged, never raised
    """

    def __init__(
        self,
        repository: Repository,
        locks: KeyedLock,
        sinks: SinkDispatcher,
        bus: EventBus,
        config: GeofenceConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.locks = locks
        self.sinks = sinks
        self.bus = bus
        self.config = config or GeofenceConfig()
        self.clock = clock
        self.logger = logger.bind(component="geofence_monitor")

    # ------------------------------------------------------------------
    # Zone registry
    # ------------------------------------------------------------------

    def _validate_radius(self, radius: object) -> float:
        if isinstance(radius, bool) or not isinstance(radius, int | float) or radius <= 0:
            raise ValidationError("Radius must be a positive number of meters", fields=["radius"])
        if not self.config.min_radius_meters <= radius <= self.config.max_radius_meters:
            raise ValidationError(
                f"Radius must be between {self.config.min_radius_meters} and "
                f"{self.config.max_radius_meters} meters",
                fields=["radius"],
            )
        return float(radius)

    async def create_zone(
        self,
        subject_id: str,
        name: str,
        lat: float,
        lng: float,
        radius: float,
        *,
        alert_on_enter: bool = True,
        alert_on_exit: bool = True,
        emergency_contacts: list[str] | None = None,
        guardian_id: str | None = None,
        description: str = "",
    ) -> GeofenceZone:
        """Create a zone for a subject and seed its status as outside."""
        missing = [field for field, value in (("subject_id", subject_id), ("name", name)) if not value]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}", fields=missing)
        lat, lng = validate_coordinates(lat, lng)
        radius = self._validate_radius(radius)

        async with self.locks.hold(f"subject:{subject_id}"):
            existing = await self.zones_for(subject_id)
            if len(existing) >= self.config.max_zones_per_subject:
                raise ValidationError(
                    f"Maximum number of zones ({self.config.max_zones_per_subject}) "
                    f"reached for subject",
                    fields=["subject_id"],
                )
            if any(zone.name == name for zone in existing):
                raise ValidationError(f"Zone name already exists: {name}", fields=["name"])

            now = self.clock()
            zone = GeofenceZone(
                id=_generate_zone_id(),
                subject_id=subject_id,
                name=name,
                center=Coordinates(lat=lat, lng=lng),
                radius=radius,
                description=description,
                alert_on_enter=alert_on_enter,
                alert_on_exit=alert_on_exit,
                emergency_contacts=list(emergency_contacts or []),
                guardian_id=guardian_id,
                created_at=now,
                updated_at=now,
            )
            status = GeofenceStatus(subject_id=subject_id, zone_id=zone.id, last_check=now)
            await self.repository.commit(
                {zone_key(subject_id, zone.id): zone, status_key(subject_id, zone.id): status}
            )

        self.logger.info("zone_created", subject_id=subject_id, zone_id=zone.id, radius=radius)
        return zone

    async def get_zone(self, subject_id: str, zone_id: str) -> GeofenceZone:
        zone = await self.repository.load(zone_key(subject_id, zone_id), GeofenceZone)
        if zone is None:
            raise NotFound("Zone", zone_id)
        return zone

    async def update_zone(self, subject_id: str, zone_id: str, **changes: Any) -> GeofenceZone:
        unknown = sorted(set(changes) - _UPDATABLE_ZONE_FIELDS)
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {', '.join(unknown)}", fields=unknown)
        if "radius" in changes:
            changes["radius"] = self._validate_radius(changes["radius"])

        async with self.locks.hold(f"subject:{subject_id}"):
            zone = await self.get_zone(subject_id, zone_id)
            data = zone.model_dump()
            data.update(changes)
            data["updated_at"] = self.clock()
            try:
                updated = GeofenceZone.model_validate(data)
            except pydantic.ValidationError as e:
                raise ValidationError.from_pydantic(e) from e
            await self.repository.save(zone_key(subject_id, zone_id), updated)

        self.logger.info("zone_updated", zone_id=zone_id, fields=sorted(changes))
        return updated

    async def deactivate_zone(self, subject_id: str, zone_id: str) -> GeofenceZone:
        """Deactivate a zone and discard its tracked status."""
        async with self.locks.hold(f"subject:{subject_id}"):
            zone = await self.get_zone(subject_id, zone_id)
            zone.active = False
            zone.updated_at = self.clock()
            await self.repository.commit(
                {zone_key(subject_id, zone_id): zone, status_key(subject_id, zone_id): None}
            )

        self.logger.info("zone_deactivated", subject_id=subject_id, zone_id=zone_id)
        return zone

    async def zones_for(self, subject_id: str, include_inactive: bool = False) -> list[GeofenceZone]:
        zones = await self.repository.load_all(f"zone:{subject_id}:", GeofenceZone)
        return [zone for zone in zones if include_inactive or zone.active]

    async def get_status(self, subject_id: str, zone_id: str) -> GeofenceStatus | None:
        return await self.repository.load(status_key(subject_id, zone_id), GeofenceStatus)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def evaluate(
        self, subject_id: str, lat: float, lng: float, zones: Sequence[GeofenceZone]
    ) -> tuple[list[GeofenceStatus], list[GeofenceEvent]]:
        """
        Evaluate a point against the subject's zones.

        Returns the new statuses and the boundary-crossing events. Statuses are
        persisted before this returns.
        """
        lat, lng = validate_coordinates(lat, lng)
        for zone in zones:
            if zone.radius <= 0:
                raise ValidationError(f"Zone {zone.id} has a non-positive radius", fields=["radius"])

        async with self.locks.hold(f"subject:{subject_id}"):
            return await self._evaluate_locked(subject_id, lat, lng, zones)

    async def _evaluate_locked(
        self, subject_id: str, lat: float, lng: float, zones: Sequence[GeofenceZone]
    ) -> tuple[list[GeofenceStatus], list[GeofenceEvent]]:
        now = self.clock()
        statuses: list[GeofenceStatus] = []
        events: list[GeofenceEvent] = []
        writes: dict[str, Any] = {}

        for zone in zones:
            if not zone.active or zone.subject_id != subject_id:
                continue

            distance = haversine_distance(zone.center.lat, zone.center.lng, lat, lng)
            inside = distance <= zone.radius

            previous = await self.get_status(subject_id, zone.id)
            was_inside = previous.inside if previous else False
            crossed = inside != was_inside

            status = GeofenceStatus(
                subject_id=subject_id,
                zone_id=zone.id,
                inside=inside,
                last_event=now if crossed else (previous.last_event if previous else None),
                last_check=now,
                distance=round(distance),
            )
            statuses.append(status)
            writes[status_key(subject_id, zone.id)] = status

            event_type: GeofenceEventType | None = None
            if was_inside and not inside and zone.alert_on_exit:
                event_type = GeofenceEventType.EXIT
            elif not was_inside and inside and zone.alert_on_enter:
                event_type = GeofenceEventType.ENTER

            if event_type is not None:
                events.append(
                    GeofenceEvent(
                        type=event_type,
                        subject_id=subject_id,
                        zone_id=zone.id,
                        zone_name=zone.name,
                        lat=lat,
                        lng=lng,
                        distance=round(distance),
                        timestamp=now,
                    )
                )

        if writes:
            await self.repository.commit(writes)
        return statuses, events

    async def update_location(self, subject_id: str, lat: float, lng: float) -> EvaluationResult:
        """Evaluate a location update against the subject's active zones and alert."""
        lat, lng = validate_coordinates(lat, lng)

        async with self.locks.hold(f"subject:{subject_id}"):
            zones = await self.zones_for(subject_id)
            statuses, events = await self._evaluate_locked(subject_id, lat, lng, zones)

        zones_by_id = {zone.id: zone for zone in zones}
        for event in events:
            zone = zones_by_id[event.zone_id]
            await self._deliver_crossing(event, zone)
            self.bus.publish(GeofenceCrossed(event=event, zone=zone))

        if events:
            self.logger.info(
                "geofence_events_detected",
                subject_id=subject_id,
                events=[(e.type.value, e.zone_id) for e in events],
            )
        return EvaluationResult(subject_id=subject_id, statuses=statuses, events=events)

    async def _deliver_crossing(self, event: GeofenceEvent, zone: GeofenceZone) -> None:
        data = {
            "subject_id": event.subject_id,
            "zone_id": zone.id,
            "zone_name": zone.name,
            "lat": event.lat,
            "lng": event.lng,
            "distance": event.distance,
            "timestamp": event.timestamp.isoformat(),
        }
        if event.type == GeofenceEventType.EXIT:
            alert = Alert(
                type=AlertType.EXIT_GEOFENCE,
                message=(
                    f"Alert: subject has left safe zone '{zone.name}'. "
                    f"Distance: {event.distance} m"
                ),
                data=data,
            )
            targets = ([zone.guardian_id] if zone.guardian_id else []) + zone.emergency_contacts
        else:
            alert = Alert(
                type=AlertType.ENTER_GEOFENCE,
                message=f"Notice: subject has entered safe zone '{zone.name}'",
                data=data,
            )
            targets = [zone.guardian_id] if zone.guardian_id else []
        await self.sinks.notify_many(targets, alert)

    async def process_batch(
        self, updates: Sequence[tuple[str, float, float]]
    ) -> list[Result[EvaluationResult, DispatchError]]:
        """
        Process many location updates concurrently.

        Different subjects run in parallel; updates for the same subject are
        serialized by the subject lock. One failing update never affects another.
        """
        start_time = time.perf_counter()

        async def _one(subject_id: str, lat: float, lng: float) -> Result[EvaluationResult, DispatchError]:
            try:
                return Result.ok(await self.update_location(subject_id, lat, lng))
            except DispatchError as e:
                self.logger.warning("batch_location_failed", subject_id=subject_id, error=e.reason)
                return Result.err(e)

        async with asyncio.TaskGroup() as task_group:
            tasks = [task_group.create_task(_one(*update)) for update in updates]

        results = [task.result() for task in tasks]
        self.logger.info(
            "batch_locations_processed",
            total=len(results),
            failed=sum(1 for r in results if r.is_err()),
            duration_seconds=round(time.perf_counter() - start_time, 3),
        )
        return results

    # ------------------------------------------------------------------
    # Anomaly and SOS
    # ------------------------------------------------------------------

    def detect_anomaly(
        self,
        subject_id: str,
        history: Sequence[LocationPoint],
        threshold_minutes: float | None = None,
    ) -> Anomaly | None:
        """
        Detect a prolonged absence of movement.

        Walks back from the latest sample while samples are within
        ``threshold_minutes`` of it. Any sample further than the movement
        threshold from the latest one confirms movement.
        """
        if not history:
            raise ValidationError("Location history is empty", fields=["history"])
        threshold = self.config.anomaly_threshold_minutes if threshold_minutes is None else threshold_minutes
        if threshold <= 0:
            raise ValidationError("Anomaly threshold must be positive", fields=["threshold_minutes"])

        ordered = sorted(history, key=lambda point: point.timestamp, reverse=True)
        latest = ordered[0]
        window_start = latest.timestamp - timedelta(minutes=threshold)

        max_distance = 0.0
        for point in ordered[1:]:
            if point.timestamp < window_start:
                break
            distance = haversine_distance(latest.lat, latest.lng, point.lat, point.lng)
            max_distance = max(max_distance, distance)
            if distance > self.config.movement_threshold_meters:
                return None

        return Anomaly(
            subject_id=subject_id,
            location=latest,
            duration_minutes=threshold,
            max_distance=max_distance,
            detected_at=self.clock(),
        )

    async def check_anomaly(
        self,
        subject_id: str,
        history: Sequence[LocationPoint],
        threshold_minutes: float | None = None,
        guardian_id: str | None = None,
    ) -> Anomaly | None:
        """Run ``detect_anomaly`` and alert the subject's guardians on a hit."""
        anomaly = self.detect_anomaly(subject_id, history, threshold_minutes)
        if anomaly is None:
            return None

        alert = Alert(
            type=AlertType.NO_MOVEMENT,
            message=(
                f"Anomaly: subject has not moved noticeably for "
                f"{anomaly.duration_minutes:g} minutes"
            ),
            data={
                "subject_id": subject_id,
                "lat": anomaly.location.lat,
                "lng": anomaly.location.lng,
                "duration_minutes": anomaly.duration_minutes,
                "max_distance": round(anomaly.max_distance),
            },
        )
        await self.sinks.notify_many(await self._guardians_for(subject_id, guardian_id), alert)
        self.bus.publish(AnomalyDetected(anomaly=anomaly))
        self.logger.warning("no_movement_detected", subject_id=subject_id, max_distance=anomaly.max_distance)
        return anomaly

    async def trigger_sos(
        self,
        subject_id: str,
        lat: float,
        lng: float,
        message: str | None = None,
        guardian_id: str | None = None,
    ) -> SosTriggered:
        """Send an SOS to the guardian and every emergency contact of the subject."""
        lat, lng = validate_coordinates(lat, lng)
        text = message or "Emergency SOS! Immediate assistance required."
        zones = await self.zones_for(subject_id)

        alert = Alert(
            type=AlertType.SOS_EMERGENCY,
            message=f"SOS: {text} Location: {lat:.6f}, {lng:.6f}",
            data={"subject_id": subject_id, "lat": lat, "lng": lng},
        )
        targets = await self._guardians_for(subject_id, guardian_id, zones)
        targets += [contact for zone in zones for contact in zone.emergency_contacts]
        notified = await self.sinks.notify_many(targets, alert)

        event = SosTriggered(
            subject_id=subject_id, lat=lat, lng=lng, message=text, guardian_id=guardian_id
        )
        self.bus.publish(event)
        self.logger.warning("sos_triggered", subject_id=subject_id, notified=notified)
        return event

    async def _guardians_for(
        self,
        subject_id: str,
        guardian_id: str | None,
        zones: list[GeofenceZone] | None = None,
    ) -> list[str]:
        if zones is None:
            zones = await self.zones_for(subject_id)
        guardians = [guardian_id] if guardian_id else []
        guardians += [zone.guardian_id for zone in zones if zone.guardian_id]
        return list(dict.fromkeys(guardians))
