"""Tests for volunteer matching and the dispatch lifecycle."""

from datetime import timedelta

import pytest
from conftest import PICKUP, START, volunteer

from rescue_core_lib.auth.roles import RoleId
from rescue_core_lib.core.dispatch import (
    DispatchMatcher,
    DispatchService,
    can_volunteer_handle_dispatch,
    get_dispatch_eta,
    get_dispatch_priority_score,
    is_dispatch_overdue,
)
from rescue_core_lib.errors import InvalidStateTransitionError, PermissionDeniedError, ValidationFailedError
from rescue_core_lib.models.common import CaseId, Severity, UserId, evolve
from rescue_core_lib.models.dispatch import (
    DispatchLocation,
    DispatchMatchingCriteria,
    DispatchPriority,
    DispatchRequirements,
    DispatchStatus,
    DispatchType,
    ExperienceLevel,
    NoteType,
)
from rescue_core_lib.models.events import EventType

MODERATOR = UserId("mod-1")


@pytest.fixture
def matcher(config):
    return DispatchMatcher(config.dispatch)


@pytest.fixture
def service(ctx):
    return DispatchService(ctx)


@pytest.fixture
def dispatch(service):
    return service.create_dispatch(
        CaseId("case-1"),
        DispatchType.TRANSPORT,
        DispatchPriority.HIGH,
        Severity.MODERATE,
        MODERATOR,
        RoleId.MODERATOR,
        requirements=DispatchRequirements(required_skills=("transport",)),
        pickup_location=DispatchLocation(coordinates=PICKUP),
        needed_by=START + timedelta(hours=2),
    ).aggregate


def _criteria(**overrides):
    data = dict(location=PICKUP, requirements=DispatchRequirements(required_skills=("transport",)))
    data.update(overrides)
    return DispatchMatchingCriteria(**data)


class TestMatcher:
    def test_closer_volunteer_ranks_first(self, matcher):
        near = volunteer("near", km_north=3)
        far = volunteer("far", km_north=40)
        matches = matcher.find_matches(_criteria(), [far, near])

        assert [m.volunteer_id for m in matches] == ["near", "far"]
        assert matches[0].score > matches[1].score
        assert matches[0].distance_km == pytest.approx(3.0, abs=0.01)
        assert "Very close to location" in matches[0].positive_reasons
        assert "Far from location" in matches[1].negative_reasons

    def test_every_match_within_effective_distance(self, matcher):
        pool = [volunteer(f"v{km}", km_north=km) for km in (1, 10, 20, 30, 45)]
        criteria = _criteria(max_distance_km=25)
        matches = matcher.find_matches(criteria, pool)

        assert {m.volunteer_id for m in matches} == {"v1", "v10", "v20"}
        assert all(m.distance_km <= matcher.effective_max_distance(criteria) for m in matches)

    def test_requirement_cap_used_when_criteria_silent(self, matcher):
        criteria = _criteria(requirements=DispatchRequirements(max_distance_km=5))
        assert matcher.effective_max_distance(criteria) == 5
        assert matcher.effective_max_distance(_criteria()) == 50

    def test_hard_filters(self, matcher):
        pool = [
            volunteer("busy", is_available=False),
            volunteer("unskilled", skills=()),
            volunteer("ok"),
        ]
        matches = matcher.find_matches(_criteria(), pool)
        assert [m.volunteer_id for m in matches] == ["ok"]

    def test_roles_are_any_of(self, matcher):
        criteria = _criteria(requirements=DispatchRequirements(required_roles=("transporter", "foster")))
        pool = [volunteer("foster", roles=("foster",)), volunteer("trapper", roles=("trapper",))]
        assert [m.volunteer_id for m in matcher.find_matches(criteria, pool)] == ["foster"]

    def test_excluded_volunteers_skipped(self, matcher):
        matches = matcher.find_matches(_criteria(exclude_volunteers=("a",)), [volunteer("a"), volunteer("b")])
        assert [m.volunteer_id for m in matches] == ["b"]

    def test_preferred_bonus(self, matcher):
        pool = [volunteer("a", km_north=2), volunteer("b", km_north=2)]
        matches = matcher.find_matches(_criteria(preferred_volunteers=("b",)), pool)
        assert matches[0].volunteer_id == "b"

    def test_results_truncated(self, matcher):
        pool = [volunteer(f"v{n}", km_north=n + 1) for n in range(5)]
        assert len(matcher.find_matches(_criteria(max_results=2), pool)) == 2

    def test_factor_scores(self, matcher):
        match = matcher.find_matches(_criteria(), [volunteer("a", km_north=25)])[0]
        assert match.factors.location == 50
        assert match.factors.skills == 100
        assert match.factors.availability == 70
        assert match.factors.workload == 60
        assert match.estimated_arrival_minutes == 50

    def test_experience_score(self, matcher):
        assert matcher.experience_score(volunteer("a", completed_dispatches=0)) == 10
        assert matcher.experience_score(volunteer("b", completed_dispatches=11)) == 20
        expert = volunteer("c", experience_level=ExperienceLevel.EXPERT, completed_dispatches=150)
        assert matcher.experience_score(expert) == 60


class TestHelpers:
    def test_priority_scores(self, config):
        assert get_dispatch_priority_score(DispatchPriority.CRITICAL, config.dispatch) == 100
        assert get_dispatch_priority_score(DispatchPriority.LOW, config.dispatch) == 20

    def test_can_handle_checks_experience(self, dispatch):
        strict = evolve(
            dispatch,
            requirements=DispatchRequirements(required_skills=("transport",), min_experience_level=ExperienceLevel.ADVANCED),
        )
        assert can_volunteer_handle_dispatch(volunteer("a", experience_level=ExperienceLevel.EXPERT), strict) is True
        assert can_volunteer_handle_dispatch(volunteer("b"), strict) is False

    def test_overdue(self, dispatch):
        assert is_dispatch_overdue(dispatch, START) is False
        assert is_dispatch_overdue(dispatch, START + timedelta(hours=2)) is True

    def test_eta_only_while_en_route(self, dispatch):
        assert get_dispatch_eta(dispatch, START) is None


class TestLifecycle:
    def test_only_moderators_create(self, service):
        with pytest.raises(PermissionDeniedError):
            service.create_dispatch(
                CaseId("case-1"), DispatchType.TRANSPORT, DispatchPriority.LOW, Severity.MINOR,
                UserId("v-1"), RoleId.TRANSPORTER,
            )

    def test_find_volunteers_requires_pickup(self, service):
        dispatch = service.create_dispatch(
            CaseId("case-1"), DispatchType.TRANSPORT, DispatchPriority.LOW, Severity.MINOR,
            MODERATOR, RoleId.MODERATOR,
        ).aggregate
        with pytest.raises(ValidationFailedError, match="pickup location"):
            service.find_volunteers(dispatch, [volunteer("a")], MODERATOR)

    def test_happy_path(self, service, dispatch):
        found = service.find_volunteers(dispatch, [volunteer("a"), volunteer("b", km_north=10)], MODERATOR)
        dispatch = found.aggregate
        assert dispatch.status is DispatchStatus.SEARCHING
        assert dispatch.matching_score == dispatch.matched_volunteers[0].score
        assert found.event_types == (EventType.DISPATCH_MATCHED,)

        dispatch = service.assign_dispatch(dispatch, UserId("a"), MODERATOR, RoleId.MODERATOR).aggregate
        dispatch = service.accept_dispatch(dispatch, UserId("a")).aggregate
        dispatch = service.update_status(dispatch, DispatchStatus.EN_ROUTE, UserId("a")).aggregate
        assert dispatch.en_route_at == START
        dispatch = service.update_status(dispatch, DispatchStatus.ON_SCENE, UserId("a")).aggregate
        dispatch = service.update_status(dispatch, DispatchStatus.COMPLETED, UserId("a")).aggregate

        assert dispatch.status is DispatchStatus.COMPLETED
        assert dispatch.audit.version == 7
        assert len(dispatch.notes) == 6
        assert all(note.type is NoteType.STATUS_UPDATE for note in dispatch.notes)

    def test_only_assigned_volunteer_can_accept(self, service, dispatch):
        dispatch = service.assign_dispatch(dispatch, UserId("a"), MODERATOR, RoleId.MODERATOR).aggregate
        with pytest.raises(InvalidStateTransitionError, match="Only assigned volunteer"):
            service.accept_dispatch(dispatch, UserId("b"))

    def test_decline_returns_to_search_and_excludes(self, service, dispatch):
        dispatch = service.assign_dispatch(dispatch, UserId("a"), MODERATOR, RoleId.MODERATOR).aggregate
        dispatch = service.decline_dispatch(dispatch, UserId("a"), "car trouble").aggregate
        assert dispatch.status is DispatchStatus.SEARCHING
        assert dispatch.assigned_to is None
        assert dispatch.declined_by == ("a",)

        found = service.find_volunteers(dispatch, [volunteer("a"), volunteer("b")], MODERATOR).aggregate
        assert [m.volunteer_id for m in found.matched_volunteers] == ["b"]
        with pytest.raises(InvalidStateTransitionError):
            service.assign_dispatch(found, UserId("a"), MODERATOR, RoleId.MODERATOR)

    def test_invalid_transition(self, service, dispatch):
        with pytest.raises(InvalidStateTransitionError):
            service.update_status(dispatch, DispatchStatus.COMPLETED, MODERATOR, RoleId.MODERATOR)

    def test_stranger_cannot_update_status(self, service, dispatch):
        with pytest.raises(PermissionDeniedError):
            service.update_status(dispatch, DispatchStatus.CANCELLED, UserId("x"), RoleId.TRANSPORTER)

    def test_statistics(self, service, dispatch):
        cancelled = service.update_status(dispatch, DispatchStatus.CANCELLED, MODERATOR, RoleId.MODERATOR).aggregate
        stats = DispatchService.get_statistics([dispatch, cancelled])
        assert stats.total == 2
        assert stats.pending == 1
        assert stats.cancelled == 1
