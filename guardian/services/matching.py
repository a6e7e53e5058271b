"""
Volunteer matching and assignment.

Scores available volunteers against a case, assigns them under the per-case cap
and tracks each match through assigned -> accepted/rejected -> completed.
Case, volunteer and match records for one operation are written together with
``Repository.commit`` under the locks match -> case -> volunteer.
"""

import itertools
import secrets
import time
from collections import Counter
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from typing import Any

import pydantic
import structlog
from pydantic import BaseModel

from guardian.config import MatchingConfig
from guardian.domain.errors import (
    CapacityExceeded,
    DispatchError,
    InvalidState,
    InvalidTransition,
    NotFound,
    Unavailable,
    ValidationError,
)
from guardian.domain.events import EventKind, MatchChanged, MatchesFound
from guardian.domain.models import (
    Alert,
    AlertType,
    AssignedVolunteer,
    Case,
    CaseStatus,
    Completion,
    Match,
    MatchCandidate,
    MatchStatus,
    Priority,
    Volunteer,
    VolunteerLocation,
    VolunteerPreferences,
    VolunteerStatus,
    utcnow,
)
from guardian.services.case_lifecycle import CaseLifecycleManager
from guardian.services.events import EventBus
from guardian.services.geo import (
    estimated_arrival_minutes,
    haversine_distance,
    search_radius_for,
    validate_coordinates,
)
from guardian.services.persistence import KeyedLock, Repository, case_key, match_key, volunteer_key
from guardian.services.sinks import SinkDispatcher

logger = structlog.get_logger(__name__)

PRIORITY_MULTIPLIERS: dict[Priority, float] = {
    Priority.LOW: 1.0,
    Priority.MEDIUM: 1.2,
    Priority.HIGH: 1.5,
    Priority.CRITICAL: 2.0,
}

_match_sequence = itertools.count(1)


def generate_match_id() -> str:
    return f"match_{time.time_ns() // 1_000_000:013d}_{next(_match_sequence):04d}_{secrets.token_hex(3)}"


class MatchingEngine:
    """
    Ranks and assigns volunteers to cases.

    Design principles:
    - Only ``available`` volunteers are candidates
    - A volunteer is ``available`` exactly when it holds no unresolved match
    - Follow-up work (re-matching, resolving the case) runs after locks are released
    """

    def __init__(
        self,
        repository: Repository,
        locks: KeyedLock,
        sinks: SinkDispatcher,
        bus: EventBus,
        cases: CaseLifecycleManager,
        config: MatchingConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.locks = locks
        self.sinks = sinks
        self.bus = bus
        self.cases = cases
        self.config = config or MatchingConfig()
        self.clock = clock
        self.logger = logger.bind(component="matching_engine")

    # ------------------------------------------------------------------
    # Volunteer registry
    # ------------------------------------------------------------------

    async def register_volunteer(
        self,
        volunteer_id: str,
        location: Mapping[str, Any],
        preferences: Mapping[str, Any] | None = None,
        capabilities: Mapping[str, Any] | None = None,
        rating: float = 5.0,
    ) -> Volunteer:
        if not volunteer_id:
            raise ValidationError("Missing required fields: volunteer_id", fields=["volunteer_id"])
        lat, lng = validate_coordinates(location.get("lat"), location.get("lng"))
        now = self.clock()

        try:
            volunteer = Volunteer(
                id=volunteer_id,
                location=VolunteerLocation(lat=lat, lng=lng, timestamp=now),
                preferences=VolunteerPreferences.model_validate(
                    {"max_distance": self.config.max_distance_meters, **(preferences or {})}
                ),
                capabilities=capabilities or {},
                rating=rating,
                registered_at=now,
                last_active_at=now,
            )
        except pydantic.ValidationError as e:
            raise ValidationError.from_pydantic(e) from e

        async with self.locks.hold(volunteer_key(volunteer_id)):
            if await self.repository.load(volunteer_key(volunteer_id), Volunteer) is not None:
                raise ValidationError(f"Volunteer already registered: {volunteer_id}", fields=["volunteer_id"])
            await self.repository.save(volunteer_key(volunteer_id), volunteer)

        self.logger.info("volunteer_registered", volunteer_id=volunteer_id)
        return volunteer

    async def update_volunteer(
        self,
        volunteer_id: str,
        *,
        location: Mapping[str, Any] | None = None,
        preferences: Mapping[str, Any] | None = None,
        rating: float | None = None,
    ) -> Volunteer:
        """Update location, preferences or rating. Status is owned by the engine."""
        async with self.locks.hold(volunteer_key(volunteer_id)):
            volunteer = await self.get_volunteer(volunteer_id)
            try:
                if location is not None:
                    lat, lng = validate_coordinates(location.get("lat"), location.get("lng"))
                    volunteer.location = VolunteerLocation(lat=lat, lng=lng, timestamp=self.clock())
                if preferences is not None:
                    volunteer.preferences = VolunteerPreferences.model_validate(
                        {**volunteer.preferences.model_dump(), **preferences}
                    )
                if rating is not None:
                    volunteer.rating = rating
            except pydantic.ValidationError as e:
                raise ValidationError.from_pydantic(e) from e
            volunteer.last_active_at = self.clock()
            await self.repository.save(volunteer_key(volunteer_id), volunteer)
        return volunteer

    async def get_volunteer(self, volunteer_id: str) -> Volunteer:
        volunteer = await self.repository.load(volunteer_key(volunteer_id), Volunteer)
        if volunteer is None:
            raise NotFound("Volunteer", volunteer_id)
        return volunteer

    async def list_volunteers(self, status: VolunteerStatus | None = None) -> list[Volunteer]:
        volunteers = await self.repository.load_all("volunteer:", Volunteer)
        if status is None:
            return volunteers
        return [v for v in volunteers if v.status == status]

    async def get_match(self, match_id: str) -> Match:
        match = await self.repository.load(match_key(match_id), Match)
        if match is None:
            raise NotFound("Match", match_id)
        return match

    async def case_matches(self, case_id: str) -> list[Match]:
        return [m for m in await self.repository.load_all("match:", Match) if m.case_id == case_id]

    async def volunteer_matches(self, volunteer_id: str) -> list[Match]:
        return [
            m for m in await self.repository.load_all("match:", Match) if m.volunteer_id == volunteer_id
        ]

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def score(self, case: Case, volunteer: Volunteer, distance: float) -> float:
        """(distance + availability + experience) x priority."""
        max_distance = volunteer.preferences.max_distance
        distance_score = max(0.0, (max_distance - distance) / max_distance) * self.config.distance_weight
        availability_score = (
            self.config.availability_weight if volunteer.status == VolunteerStatus.AVAILABLE else 0.0
        )
        experience_score = (volunteer.rating / 5) * (1 + volunteer.success_rate)
        priority_score = PRIORITY_MULTIPLIERS[case.priority] * self.config.priority_weight
        return (distance_score + availability_score + experience_score) * priority_score

    async def find_matches(
        self, case_id: str, max_results: int | None = None, trigger: str = "manual"
    ) -> list[MatchCandidate]:
        """
        Rank available volunteers for a case, best first.

        Volunteers who already rejected this case are not offered it again.
        """
        case = await self.cases.get(case_id)
        limit = self.config.max_volunteers_per_case if max_results is None else max_results
        if limit < 0:
            raise ValidationError("max_results must not be negative", fields=["max_results"])
        rejected = {
            m.volunteer_id for m in await self.case_matches(case_id) if m.status == MatchStatus.REJECTED
        }

        candidates = []
        for volunteer in await self.list_volunteers(VolunteerStatus.AVAILABLE):
            if volunteer.id in rejected:
                continue
            distance = haversine_distance(
                case.location.lat, case.location.lng, volunteer.location.lat, volunteer.location.lng
            )
            if distance > volunteer.preferences.max_distance:
                continue
            score = self.score(case, volunteer, distance)
            if score > 0:
                candidates.append(MatchCandidate(volunteer_id=volunteer.id, score=score, distance=distance))

        candidates.sort(key=lambda c: c.score, reverse=True)
        candidates = candidates[:limit]

        self.logger.info("matches_found", case_id=case_id, count=len(candidates), trigger=trigger)
        if candidates:
            self.bus.publish(MatchesFound(case_id=case_id, candidates=candidates, trigger=trigger))
        return candidates

    # ------------------------------------------------------------------
    # Assignment lifecycle
    # ------------------------------------------------------------------

    async def assign_volunteer(
        self, case_id: str, volunteer_id: str, role: str = "searcher", actor: str = "system"
    ) -> Match:
        match_id = generate_match_id()
        async with self.locks.hold(match_key(match_id), case_key(case_id), volunteer_key(volunteer_id)):
            case = await self.cases.get(case_id)
            volunteer = await self.get_volunteer(volunteer_id)

            if not case.is_open:
                raise InvalidState(
                    f"Cannot assign volunteers to a {case.status.value} case",
                    case_id=case_id,
                    status=case.status.value,
                )
            if volunteer.status != VolunteerStatus.AVAILABLE:
                raise Unavailable(
                    f"Volunteer is not available: {volunteer_id}",
                    volunteer_id=volunteer_id,
                    status=volunteer.status.value,
                )
            if len(case.assigned_volunteers) >= self.config.max_volunteers_per_case:
                raise CapacityExceeded(
                    "Case has reached its volunteer cap",
                    case_id=case_id,
                    cap=self.config.max_volunteers_per_case,
                )

            now = self.clock()
            distance = haversine_distance(
                case.location.lat, case.location.lng, volunteer.location.lat, volunteer.location.lng
            )
            match = Match(
                id=match_id,
                case_id=case_id,
                volunteer_id=volunteer_id,
                role=role,
                search_radius_meters=search_radius_for(case.priority),
                estimated_arrival_minutes=estimated_arrival_minutes(distance),
                assigned_at=now,
            )
            case.assigned_volunteers.append(
                AssignedVolunteer(volunteer_id=volunteer_id, match_id=match_id, role=role, assigned_at=now)
            )
            case.updated_at = now
            volunteer.status = VolunteerStatus.ASSIGNED
            volunteer.current_matches.append(match_id)

            await self.repository.commit(
                {
                    match_key(match_id): match,
                    case_key(case_id): case,
                    volunteer_key(volunteer_id): volunteer,
                }
            )

        self.logger.info(
            "volunteer_assigned",
            case_id=case_id,
            volunteer_id=volunteer_id,
            match_id=match_id,
            estimated_arrival_minutes=match.estimated_arrival_minutes,
        )
        await self.sinks.notify(
            volunteer_id,
            Alert(
                type=AlertType.GENERIC,
                message=f"New {case.priority.value} priority assignment near you. Please respond.",
                data={
                    "case_id": case_id,
                    "match_id": match_id,
                    "search_radius_meters": match.search_radius_meters,
                    "estimated_arrival_minutes": match.estimated_arrival_minutes,
                },
            ),
        )
        await self.sinks.audit(actor, "volunteer_assigned", match_id, after={"case_id": case_id, "volunteer_id": volunteer_id})
        self.bus.publish(MatchChanged(kind=EventKind.VOLUNTEER_ASSIGNED, match=match.model_copy(deep=True)))
        return match

    async def respond_to_assignment(
        self, match_id: str, accepted: bool, reason: str | None = None, actor: str | None = None
    ) -> Match:
        """Accept or reject an ``assigned`` match. A rejection re-matches the case."""
        known = await self.get_match(match_id)
        async with self.locks.hold(
            match_key(match_id), case_key(known.case_id), volunteer_key(known.volunteer_id)
        ):
            match = await self.get_match(match_id)
            if match.status != MatchStatus.ASSIGNED:
                raise InvalidState(
                    f"Match is {match.status.value}, expected assigned",
                    match_id=match_id,
                    status=match.status.value,
                )
            volunteer = await self.repository.load(volunteer_key(match.volunteer_id), Volunteer)
            case = await self.repository.load(case_key(match.case_id), Case)
            now = self.clock()
            writes: dict[str, BaseModel | None] = {match_key(match_id): match}

            if accepted:
                match.status = MatchStatus.ACCEPTED
                match.accepted_at = now
                if volunteer is not None:
                    volunteer.status = VolunteerStatus.ACTIVE
            else:
                match.status = MatchStatus.REJECTED
                match.rejected_at = now
                match.rejection_reason = reason
                if case is not None:
                    case.assigned_volunteers = [
                        slot for slot in case.assigned_volunteers if slot.match_id != match_id
                    ]
                    case.updated_at = now
                    writes[case_key(case.id)] = case
                if volunteer is not None:
                    self._release(volunteer, match_id)

            if volunteer is not None:
                volunteer.last_active_at = now
                writes[volunteer_key(volunteer.id)] = volunteer
            await self.repository.commit(writes)

        kind = EventKind.ASSIGNMENT_ACCEPTED if accepted else EventKind.ASSIGNMENT_REJECTED
        self.logger.info(kind.value, match_id=match_id, case_id=match.case_id, reason=reason)
        await self.sinks.audit(
            actor or match.volunteer_id,
            kind.value,
            match_id,
            before={"status": MatchStatus.ASSIGNED.value},
            after={"status": match.status.value, "reason": reason},
        )
        self.bus.publish(MatchChanged(kind=kind, match=match.model_copy(deep=True)))

        if not accepted and case is not None and case.is_open:
            await self.match_case(match.case_id, trigger="rejection")
        return match

    async def complete_assignment(
        self,
        match_id: str,
        completion: Completion | Mapping[str, Any] | None = None,
        actor: str | None = None,
    ) -> Match:
        """Close an accepted match. A found person resolves the case when legal."""
        if not isinstance(completion, Completion):
            try:
                completion = Completion.model_validate(completion or {})
            except pydantic.ValidationError as e:
                raise ValidationError.from_pydantic(e, prefix="completion.") from e

        known = await self.get_match(match_id)
        async with self.locks.hold(
            match_key(match_id), case_key(known.case_id), volunteer_key(known.volunteer_id)
        ):
            match = await self.get_match(match_id)
            if match.status != MatchStatus.ACCEPTED:
                raise InvalidState(
                    f"Match is {match.status.value}, expected accepted",
                    match_id=match_id,
                    status=match.status.value,
                )
            now = self.clock()
            match.status = MatchStatus.COMPLETED
            match.completed_at = now
            match.completion = completion
            writes: dict[str, BaseModel | None] = {match_key(match_id): match}

            volunteer = await self.repository.load(volunteer_key(match.volunteer_id), Volunteer)
            if volunteer is not None:
                volunteer.total_cases += 1
                if completion.found_person:
                    volunteer.successful_cases += 1
                self._release(volunteer, match_id)
                volunteer.last_active_at = now
                writes[volunteer_key(volunteer.id)] = volunteer
            await self.repository.commit(writes)

        self.logger.info(
            "assignment_completed",
            match_id=match_id,
            case_id=match.case_id,
            found_person=completion.found_person,
        )
        await self.sinks.audit(
            actor or match.volunteer_id,
            "assignment_completed",
            match_id,
            before={"status": MatchStatus.ACCEPTED.value},
            after={"status": match.status.value, "outcome": completion.outcome},
        )
        self.bus.publish(MatchChanged(kind=EventKind.ASSIGNMENT_COMPLETED, match=match.model_copy(deep=True)))

        if completion.found_person:
            try:
                await self.cases.transition(
                    match.case_id, CaseStatus.RESOLVED, actor or match.volunteer_id, "person found"
                )
            except (InvalidTransition, NotFound) as e:
                self.logger.warning("case_resolution_skipped", case_id=match.case_id, reason=e.reason)
        return match

    def _release(self, volunteer: Volunteer, match_id: str) -> None:
        volunteer.current_matches = [m for m in volunteer.current_matches if m != match_id]
        if not volunteer.current_matches:
            volunteer.status = VolunteerStatus.AVAILABLE

    # ------------------------------------------------------------------
    # Rounds and sweeps
    # ------------------------------------------------------------------

    async def match_case(self, case_id: str, trigger: str = "manual") -> list[MatchCandidate]:
        """One matching round for one case; assigns the top candidates when auto_assign is on."""
        candidates = await self.find_matches(case_id, trigger=trigger)
        if self.config.auto_assign:
            await self._auto_assign(case_id, candidates)
        return candidates

    async def _auto_assign(self, case_id: str, candidates: list[MatchCandidate]) -> None:
        for candidate in candidates:
            try:
                await self.assign_volunteer(case_id, candidate.volunteer_id, actor="auto_assign")
            except Unavailable:
                continue
            except CapacityExceeded:
                break

    async def run_matching_round(self, trigger: str = "periodic") -> dict[str, list[MatchCandidate]]:
        """Match every open case that is still under its cap. Per-case failures are logged."""
        results: dict[str, list[MatchCandidate]] = {}
        for case in await self.cases.list_cases():
            if not case.is_open or len(case.assigned_volunteers) >= self.config.max_volunteers_per_case:
                continue
            try:
                results[case.id] = await self.match_case(case.id, trigger=trigger)
            except DispatchError as e:
                self.logger.error("matching_round_case_failed", case_id=case.id, error=e.reason)
            except Exception as e:
                self.logger.exception("matching_round_case_crashed", case_id=case.id, error=str(e))

        self.logger.info("matching_round_completed", trigger=trigger, cases=len(results))
        return results

    async def expire_stale_assignments(self, now: datetime | None = None) -> list[Match]:
        """Reject ``assigned`` matches older than the configured timeout."""
        if self.config.assignment_timeout_seconds is None:
            return []
        now = now or self.clock()
        cutoff = now - timedelta(seconds=self.config.assignment_timeout_seconds)

        expired = []
        for match in await self.repository.load_all("match:", Match):
            if match.status != MatchStatus.ASSIGNED or match.assigned_at > cutoff:
                continue
            try:
                expired.append(await self.respond_to_assignment(match.id, False, "timeout", actor="system"))
            except InvalidState:
                # Answered between listing and locking.
                continue

        if expired:
            self.logger.warning("assignments_timed_out", count=len(expired))
        return expired

    async def stats(self) -> dict[str, Any]:
        volunteers = await self.list_volunteers()
        matches = await self.repository.load_all("match:", Match)
        cases = await self.cases.list_cases()
        return {
            "volunteers": {
                "total": len(volunteers),
                **{status.value: sum(1 for v in volunteers if v.status == status) for status in VolunteerStatus},
            },
            "matches": {status.value: count for status, count in Counter(m.status for m in matches).items()},
            "open_cases": sum(1 for c in cases if c.is_open),
        }
