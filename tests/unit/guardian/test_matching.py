"""
Tests for volunteer scoring, assignment and the match lifecycle.

Testing philosophy:
- Exact score arithmetic on simple inputs
- Property-based monotonicity in case priority
- Invariants (capacity, availability) checked after every operation
"""

import asyncio
from typing import Any

import pytest
from conftest import HSINCHU, FailingStore, FixedClock, case_payload, offset
from hypothesis import given
from hypothesis import strategies as st

from adapters.memory.store import InMemoryStore
from adapters.sinks.logging_sinks import LoggingNotifier
from guardian.config import AppConfig, MatchingConfig
from guardian.domain.errors import (
    CapacityExceeded,
    DependencyFailure,
    InvalidState,
    NotFound,
    Unavailable,
    ValidationError,
)
from guardian.domain.events import EventKind
from guardian.domain.models import (
    PRIORITY_ORDER,
    Case,
    CaseStatus,
    Match,
    MatchStatus,
    Priority,
    Volunteer,
    VolunteerLocation,
    VolunteerStatus,
)
from guardian.services.case_lifecycle import CaseLifecycleManager
from guardian.services.dispatch import build_orchestrator
from guardian.services.events import EventBus
from guardian.services.matching import MatchingEngine

ACTOR = "coordinator-1"


async def _volunteer(matching: MatchingEngine, volunteer_id: str, meters_north: float, **kwargs: Any) -> Volunteer:
    lat, lng = offset(*HSINCHU, north_meters=meters_north)
    return await matching.register_volunteer(volunteer_id, {"lat": lat, "lng": lng}, **kwargs)


async def _case(cases: CaseLifecycleManager, **overrides: Any) -> Case:
    return await cases.create(case_payload(**overrides), ACTOR)


async def _assert_availability_conserved(matching: MatchingEngine) -> None:
    for volunteer in await matching.list_volunteers():
        assert (volunteer.status == VolunteerStatus.AVAILABLE) == (not volunteer.current_matches)


class TestVolunteerRegistry:
    async def test_register_uses_configured_max_distance(self, matching: MatchingEngine) -> None:
        volunteer = await _volunteer(matching, "v1", 100)

        assert volunteer.status == VolunteerStatus.AVAILABLE
        assert volunteer.preferences.max_distance == 5000.0
        assert await matching.get_volunteer("v1") == volunteer

    async def test_duplicate_and_invalid_registration(self, matching: MatchingEngine) -> None:
        await _volunteer(matching, "v1", 100)
        with pytest.raises(ValidationError):
            await _volunteer(matching, "v1", 100)
        with pytest.raises(ValidationError):
            await matching.register_volunteer("v2", {"lat": 24.8})
        with pytest.raises(ValidationError):
            await _volunteer(matching, "v3", 100, rating=7)

    async def test_update_volunteer(self, matching: MatchingEngine) -> None:
        await _volunteer(matching, "v1", 100)

        updated = await matching.update_volunteer(
            "v1", location={"lat": 24.9, "lng": 121.0}, preferences={"max_distance": 1500}, rating=4.0
        )

        assert updated.location.lat == 24.9
        assert updated.preferences.max_distance == 1500
        assert updated.preferences.case_types == ["missing_person"]
        assert updated.rating == 4.0

        with pytest.raises(ValidationError):
            await matching.update_volunteer("v1", rating=-1)
        with pytest.raises(NotFound):
            await matching.update_volunteer("ghost", rating=3)


class TestScoring:
    def _volunteer_at(self, rating: float = 5.0, **kwargs: Any) -> Volunteer:
        return Volunteer(id="v", location=VolunteerLocation(lat=HSINCHU[0], lng=HSINCHU[1]), rating=rating, **kwargs)

    def _case_with(self, priority: Priority) -> Case:
        return Case.model_validate(
            {
                "id": "case_x",
                "title": "t",
                "description": "d",
                "priority": priority,
                "location": {"lat": HSINCHU[0], "lng": HSINCHU[1]},
                "alert_config": {"radius_meters": 1000},
                "created_by": ACTOR,
            }
        )

    def test_score_formula(self, matching: MatchingEngine) -> None:
        # (distance 1.0 + availability 2.0 + experience 1.5) x (1.2 x 1.5)
        score = matching.score(self._case_with(Priority.MEDIUM), self._volunteer_at(), 0.0)
        assert score == pytest.approx(8.1)

    def test_half_distance_and_track_record(self, matching: MatchingEngine) -> None:
        volunteer = self._volunteer_at(rating=4.0, total_cases=4, successful_cases=1)
        # (0.5 + 2.0 + 0.8 x 1.25) x (1.0 x 1.5)
        score = matching.score(self._case_with(Priority.LOW), volunteer, 2500.0)
        assert score == pytest.approx(5.25)

    def test_unavailable_volunteer_loses_availability_bonus(self, matching: MatchingEngine) -> None:
        busy = self._volunteer_at(status=VolunteerStatus.ASSIGNED)
        score = matching.score(self._case_with(Priority.MEDIUM), busy, 0.0)
        assert score == pytest.approx((1.0 + 0.0 + 1.5) * 1.8)


@given(
    distance=st.floats(min_value=0.0, max_value=5000.0),
    rating=st.floats(min_value=0.0, max_value=5.0),
    low=st.sampled_from(PRIORITY_ORDER),
    high=st.sampled_from(PRIORITY_ORDER),
)
def test_score_is_monotonic_in_priority(distance: float, rating: float, low: Priority, high: Priority) -> None:
    if high.rank < low.rank:
        low, high = high, low
    matching = build_orchestrator(InMemoryStore(), config=AppConfig()).matching
    volunteer = TestScoring()._volunteer_at(rating=rating)

    low_score = matching.score(TestScoring()._case_with(low), volunteer, distance)
    high_score = matching.score(TestScoring()._case_with(high), volunteer, distance)
    assert high_score >= low_score


class TestFindMatches:
    async def test_ranked_and_filtered(
        self, matching: MatchingEngine, cases: CaseLifecycleManager, bus: EventBus
    ) -> None:
        await _volunteer(matching, "near", 200)
        await _volunteer(matching, "mid", 1500)
        await _volunteer(matching, "picky", 1500, preferences={"max_distance": 1000})
        await _volunteer(matching, "far", 8000)
        case = await _case(cases)

        candidates = await matching.find_matches(case.id)

        assert [c.volunteer_id for c in candidates] == ["near", "mid"]
        assert candidates[0].score > candidates[1].score
        assert candidates[0].distance == pytest.approx(200, abs=1)
        (event,) = bus.published(EventKind.MATCHES_FOUND)
        assert event.candidates == candidates  # type: ignore[union-attr]

    async def test_only_available_volunteers(self, matching: MatchingEngine, cases: CaseLifecycleManager) -> None:
        await _volunteer(matching, "v1", 100)
        await _volunteer(matching, "v2", 200)
        other = await _case(cases)
        await matching.assign_volunteer(other.id, "v1")

        case = await _case(cases)
        assert [c.volunteer_id for c in await matching.find_matches(case.id)] == ["v2"]

    async def test_truncated_to_max_results(self, matching: MatchingEngine, cases: CaseLifecycleManager) -> None:
        for index in range(5):
            await _volunteer(matching, f"v{index}", 100 * (index + 1))
        case = await _case(cases)

        assert len(await matching.find_matches(case.id, max_results=2)) == 2
        # Default cap from config (3).
        assert len(await matching.find_matches(case.id)) == 3

    async def test_zero_max_results_returns_nothing(
        self, matching: MatchingEngine, cases: CaseLifecycleManager
    ) -> None:
        await _volunteer(matching, "v1", 100)
        case = await _case(cases)

        assert await matching.find_matches(case.id, max_results=0) == []

    async def test_unknown_case(self, matching: MatchingEngine) -> None:
        with pytest.raises(NotFound):
            await matching.find_matches("case_missing")


class TestAssignment:
    async def test_assign_volunteer(
        self, matching: MatchingEngine, cases: CaseLifecycleManager, notifier: LoggingNotifier, bus: EventBus
    ) -> None:
        await _volunteer(matching, "v1", 2500)
        case = await _case(cases, priority="high")

        match = await matching.assign_volunteer(case.id, "v1")

        assert match.status == MatchStatus.ASSIGNED
        assert match.search_radius_meters == 3000.0
        assert match.estimated_arrival_minutes == 5
        volunteer = await matching.get_volunteer("v1")
        assert volunteer.status == VolunteerStatus.ASSIGNED
        assert volunteer.current_matches == [match.id]
        stored = await cases.get(case.id)
        assert [slot.match_id for slot in stored.assigned_volunteers] == [match.id]
        assert notifier.sent[-1].target_id == "v1"
        assert len(bus.published(EventKind.VOLUNTEER_ASSIGNED)) == 1

    async def test_busy_volunteer_is_unavailable(self, matching: MatchingEngine, cases: CaseLifecycleManager) -> None:
        await _volunteer(matching, "v1", 100)
        first = await _case(cases)
        second = await _case(cases)
        await matching.assign_volunteer(first.id, "v1")

        with pytest.raises(Unavailable):
            await matching.assign_volunteer(second.id, "v1")

    async def test_capacity_cap(self, matching: MatchingEngine, cases: CaseLifecycleManager) -> None:
        case = await _case(cases)
        for index in range(4):
            await _volunteer(matching, f"v{index}", 100)
        for index in range(3):
            await matching.assign_volunteer(case.id, f"v{index}")

        with pytest.raises(CapacityExceeded):
            await matching.assign_volunteer(case.id, "v3")

        assert len((await cases.get(case.id)).assigned_volunteers) == 3
        assert (await matching.get_volunteer("v3")).status == VolunteerStatus.AVAILABLE
        await _assert_availability_conserved(matching)

    async def test_concurrent_assignments_respect_cap(
        self, matching: MatchingEngine, cases: CaseLifecycleManager, store: FailingStore
    ) -> None:
        case = await _case(cases)
        for index in range(6):
            await _volunteer(matching, f"v{index}", 100)
        store.latency_seconds = 0.001

        outcomes = await asyncio.gather(
            *(matching.assign_volunteer(case.id, f"v{index}") for index in range(6)), return_exceptions=True
        )

        assert sum(isinstance(o, Match) for o in outcomes) == 3
        assert sum(isinstance(o, CapacityExceeded) for o in outcomes) == 3
        assert len((await cases.get(case.id)).assigned_volunteers) == 3
        await _assert_availability_conserved(matching)

    async def test_closed_case_rejects_assignment(self, matching: MatchingEngine, cases: CaseLifecycleManager) -> None:
        await _volunteer(matching, "v1", 100)
        case = await _case(cases)
        await cases.transition(case.id, CaseStatus.CANCELLED, ACTOR)

        with pytest.raises(InvalidState):
            await matching.assign_volunteer(case.id, "v1")

    async def test_assignment_is_all_or_nothing(
        self, matching: MatchingEngine, cases: CaseLifecycleManager, store: FailingStore
    ) -> None:
        await _volunteer(matching, "v1", 100)
        case = await _case(cases)
        store.fail_put_prefixes.add("volunteer:")

        with pytest.raises(DependencyFailure):
            await matching.assign_volunteer(case.id, "v1")

        store.fail_put_prefixes.clear()
        assert (await cases.get(case.id)).assigned_volunteers == []
        assert await matching.case_matches(case.id) == []
        assert (await matching.get_volunteer("v1")).status == VolunteerStatus.AVAILABLE


class TestResponses:
    async def test_accept(self, matching: MatchingEngine, cases: CaseLifecycleManager, clock: FixedClock) -> None:
        await _volunteer(matching, "v1", 100)
        case = await _case(cases)
        match = await matching.assign_volunteer(case.id, "v1")

        accepted = await matching.respond_to_assignment(match.id, True)

        assert accepted.status == MatchStatus.ACCEPTED
        assert accepted.accepted_at == clock()
        assert (await matching.get_volunteer("v1")).status == VolunteerStatus.ACTIVE
        with pytest.raises(InvalidState):
            await matching.respond_to_assignment(match.id, False)

    async def test_reject_rematches_case(
        self, matching: MatchingEngine, cases: CaseLifecycleManager, bus: EventBus
    ) -> None:
        """A volunteer declines as too far; the case is released and re-matched."""
        await _volunteer(matching, "v1", 100)
        await _volunteer(matching, "v2", 900)
        case = await _case(cases)
        match = await matching.assign_volunteer(case.id, "v1")

        rejected = await matching.respond_to_assignment(match.id, False, "too_far")

        assert rejected.status == MatchStatus.REJECTED
        assert rejected.rejection_reason == "too_far"
        assert (await matching.get_volunteer("v1")).status == VolunteerStatus.AVAILABLE
        assert (await cases.get(case.id)).assigned_volunteers == []

        rounds = [e for e in bus.published(EventKind.MATCHES_FOUND) if e.trigger == "rejection"]  # type: ignore[union-attr]
        assert len(rounds) == 1
        assert [c.volunteer_id for c in rounds[0].candidates] == ["v2"]  # type: ignore[union-attr]
        assert len(bus.published(EventKind.ASSIGNMENT_REJECTED)) == 1
        await _assert_availability_conserved(matching)

    async def test_unknown_match(self, matching: MatchingEngine) -> None:
        with pytest.raises(NotFound):
            await matching.respond_to_assignment("match_missing", True)


class TestCompletion:
    async def _accepted(self, matching: MatchingEngine, cases: CaseLifecycleManager, **overrides: Any) -> tuple[Case, str]:
        await _volunteer(matching, "v1", 100)
        case = await _case(cases, **overrides)
        match = await matching.assign_volunteer(case.id, "v1")
        await matching.respond_to_assignment(match.id, True)
        return case, match.id

    async def test_requires_accepted_match(self, matching: MatchingEngine, cases: CaseLifecycleManager) -> None:
        await _volunteer(matching, "v1", 100)
        case = await _case(cases)
        match = await matching.assign_volunteer(case.id, "v1")

        with pytest.raises(InvalidState):
            await matching.complete_assignment(match.id, {"found_person": True})

    async def test_found_person_resolves_dispatched_case(
        self, matching: MatchingEngine, cases: CaseLifecycleManager
    ) -> None:
        case, match_id = await self._accepted(matching, cases)
        await cases.assign(case.id, "officer-7", ACTOR)
        await cases.transition(case.id, CaseStatus.DISPATCHED, ACTOR)

        match = await matching.complete_assignment(match_id, {"found_person": True, "notes": "at the park"})

        assert match.status == MatchStatus.COMPLETED
        assert match.completion is not None and match.completion.notes == "at the park"
        volunteer = await matching.get_volunteer("v1")
        assert (volunteer.total_cases, volunteer.successful_cases) == (1, 1)
        assert volunteer.status == VolunteerStatus.AVAILABLE
        assert (await cases.get(case.id)).status == CaseStatus.RESOLVED
        await _assert_availability_conserved(matching)

    async def test_resolution_skipped_when_not_legal(
        self, matching: MatchingEngine, cases: CaseLifecycleManager
    ) -> None:
        case, match_id = await self._accepted(matching, cases)

        match = await matching.complete_assignment(match_id, {"found_person": True})

        assert match.status == MatchStatus.COMPLETED
        assert (await cases.get(case.id)).status == CaseStatus.CREATED

    async def test_not_found_outcome(self, matching: MatchingEngine, cases: CaseLifecycleManager) -> None:
        _, match_id = await self._accepted(matching, cases)
        await matching.complete_assignment(match_id, {"outcome": "searched_area"})

        volunteer = await matching.get_volunteer("v1")
        assert (volunteer.total_cases, volunteer.successful_cases) == (1, 0)
        assert volunteer.success_rate == 0.0


class TestRounds:
    async def test_round_skips_closed_and_full_cases(
        self, matching: MatchingEngine, cases: CaseLifecycleManager
    ) -> None:
        for index in range(4):
            await _volunteer(matching, f"v{index}", 100 * (index + 1))
        open_case = await _case(cases)
        closed = await _case(cases)
        await cases.transition(closed.id, CaseStatus.CANCELLED, ACTOR)
        full = await _case(cases)
        for index in range(3):
            await matching.assign_volunteer(full.id, f"v{index}")

        results = await matching.run_matching_round()

        assert list(results) == [open_case.id]
        assert [c.volunteer_id for c in results[open_case.id]] == ["v3"]

    async def test_round_survives_an_unexpected_case_failure(
        self, matching: MatchingEngine, cases: CaseLifecycleManager, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        await _volunteer(matching, "v1", 100)
        broken = await _case(cases)
        healthy = await _case(cases)
        original = matching.find_matches

        async def flaky(case_id: str, **kwargs: Any) -> list[Any]:
            if case_id == broken.id:
                raise RuntimeError("scoring blew up")
            return await original(case_id, **kwargs)

        monkeypatch.setattr(matching, "find_matches", flaky)

        results = await matching.run_matching_round()

        assert list(results) == [healthy.id]
        assert [c.volunteer_id for c in results[healthy.id]] == ["v1"]

    async def test_round_handles_case_beyond_every_volunteer(
        self, matching: MatchingEngine, cases: CaseLifecycleManager
    ) -> None:
        await _volunteer(matching, "v1", 100)
        lat, lng = HSINCHU
        far = await _case(cases, location={"lat": -lat, "lng": lng - 180.0})

        results = await matching.run_matching_round()

        assert results == {far.id: []}

    async def test_auto_assign_fills_to_cap(self, store: FailingStore, clock: FixedClock) -> None:
        config = AppConfig(matching=MatchingConfig(max_volunteers_per_case=2, auto_assign=True))
        orchestrator = build_orchestrator(store, config=config, clock=clock)
        matching, cases = orchestrator.matching, orchestrator.cases
        for index in range(3):
            await _volunteer(matching, f"v{index}", 100 * (index + 1))
        case = await _case(cases)

        await matching.run_matching_round()

        assert [slot.volunteer_id for slot in (await cases.get(case.id)).assigned_volunteers] == ["v0", "v1"]
        assert (await matching.get_volunteer("v2")).status == VolunteerStatus.AVAILABLE
        await _assert_availability_conserved(matching)

    async def test_stale_assignments_expire(self, store: FailingStore, clock: FixedClock) -> None:
        config = AppConfig(matching=MatchingConfig(assignment_timeout_seconds=60))
        orchestrator = build_orchestrator(store, config=config, clock=clock)
        matching, cases = orchestrator.matching, orchestrator.cases
        await _volunteer(matching, "v1", 100)
        case = await _case(cases)
        match = await matching.assign_volunteer(case.id, "v1")

        clock.advance(seconds=30)
        assert await matching.expire_stale_assignments() == []

        clock.advance(seconds=60)
        (expired,) = await matching.expire_stale_assignments()
        assert expired.id == match.id
        assert expired.rejection_reason == "timeout"
        assert (await matching.get_volunteer("v1")).status == VolunteerStatus.AVAILABLE

    async def test_no_timeout_by_default(
        self, matching: MatchingEngine, cases: CaseLifecycleManager, clock: FixedClock
    ) -> None:
        await _volunteer(matching, "v1", 100)
        case = await _case(cases)
        await matching.assign_volunteer(case.id, "v1")

        clock.advance(days=3)
        assert await matching.expire_stale_assignments() == []

    async def test_stats(self, matching: MatchingEngine, cases: CaseLifecycleManager) -> None:
        await _volunteer(matching, "v1", 100)
        await _volunteer(matching, "v2", 200)
        case = await _case(cases)
        match = await matching.assign_volunteer(case.id, "v1")
        await matching.respond_to_assignment(match.id, True)

        stats = await matching.stats()

        assert stats["volunteers"] == {"total": 2, "available": 1, "assigned": 0, "active": 1}
        assert stats["matches"] == {"accepted": 1}
        assert stats["open_cases"] == 1
        assert [m.id for m in await matching.volunteer_matches("v1")] == [match.id]
        assert [m.id for m in await matching.case_matches(case.id)] == [match.id]
