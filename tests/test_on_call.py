"""Tests for on-call rotations and tiered escalation."""

from datetime import date, datetime, time, timedelta, timezone

import pytest
from conftest import START, assignment
from pydantic import ValidationError

from rescue_core_lib.auth.roles import RoleId
from rescue_core_lib.core.on_call import (
    NO_MORE_TIERS,
    TIMED_OUT,
    OnCallService,
    can_volunteer_be_on_call,
    count_consecutive_on_call_days,
    is_escalation_overdue,
    is_escalation_timed_out,
    is_within_coverage_window,
    settings_from_policy,
    validate_rotation,
)
from rescue_core_lib.errors import InvalidStateTransitionError, PermissionDeniedError, ValidationFailedError
from rescue_core_lib.models.common import DayOfWeek, UserId
from rescue_core_lib.models.events import EventType
from rescue_core_lib.models.on_call import (
    AttemptResponseKind,
    CoverageWindow,
    EscalationSeverity,
    EscalationStatus,
    OnCallTier,
)

LEAD = UserId("lead-1")
WEEK = date(2024, 3, 4)
PREVIOUS_WEEK = date(2024, 2, 26)


@pytest.fixture
def service(ctx):
    return OnCallService(ctx)


@pytest.fixture
def schedule(service, weekday_window):
    return service.create_schedule(
        "region-east", RoleId.MODERATOR, "East moderators", "America/New_York", weekday_window, LEAD
    ).aggregate


@pytest.fixture
def rotation(service, schedule):
    return service.create_rotation(schedule, WEEK, assignment("alice"), assignment("bob")).aggregate


@pytest.fixture
def escalation(service, schedule, rotation):
    return service.initiate_escalation(
        schedule, rotation, LEAD, "Injured dog on highway shoulder", EscalationSeverity.CRITICAL
    ).aggregate


class TestRotations:
    def test_rotation_spans_one_week(self, rotation):
        assert rotation.week_ending == date(2024, 3, 11)
        assert rotation.tiers == (OnCallTier.PRIMARY, OnCallTier.BACKUP)

    def test_same_person_cannot_hold_two_tiers(self, service, schedule):
        with pytest.raises(ValidationError):
            service.create_rotation(schedule, WEEK, assignment("alice"), assignment("alice"))

    def test_week_must_start_on_monday(self, service, schedule):
        with pytest.raises(ValidationFailedError, match="Monday"):
            service.create_rotation(schedule, date(2024, 3, 5), assignment("alice"), assignment("bob"))

    def test_acknowledgement_clears_warning(self, service, schedule, rotation):
        result = validate_rotation(rotation, schedule, [])
        assert result.valid is True
        assert result.warnings == ("Primary has not acknowledged schedule", "Backup has not acknowledged schedule")

        acked = service.acknowledge_assignment(rotation, UserId("alice"), OnCallTier.PRIMARY).aggregate
        assert acked.primary.acknowledged_at == START
        assert validate_rotation(acked, schedule, []).warnings == ("Backup has not acknowledged schedule",)

    def test_only_slot_holder_acknowledges(self, service, rotation):
        with pytest.raises(PermissionDeniedError):
            service.acknowledge_assignment(rotation, UserId("bob"), OnCallTier.PRIMARY)

    def test_duplicate_week_is_an_error(self, service, schedule, rotation):
        other = service.create_rotation(schedule, WEEK, assignment("carol"), assignment("dave")).aggregate
        result = validate_rotation(other, schedule, [rotation])
        assert result.valid is False
        assert "A rotation already exists for this week" in result.errors

    def test_swap_request_recorded(self, service, rotation):
        mutation = service.request_swap(rotation, UserId("bob"), OnCallTier.BACKUP, "travelling")
        assert mutation.aggregate.backup.swap_requested is True
        assert mutation.aggregate.backup.swap_reason == "travelling"
        assert mutation.event_types == (EventType.ON_CALL_SWAP_REQUESTED,)


class TestEscalationChain:
    def test_two_tier_chain_fails_to_manual_override(self, service, schedule, rotation, clock):
        started = service.initiate_escalation(
            schedule, rotation, LEAD, "Injured dog on highway shoulder", EscalationSeverity.CRITICAL
        )
        escalation = started.aggregate
        first = escalation.current_attempt
        assert first.user_id == "alice"
        assert first.attempt_number == 1
        assert first.response_deadline == START + timedelta(minutes=5)
        assert escalation.timeout_at == START + timedelta(minutes=20)
        assert started.event_types == (EventType.FIELD_OPERATION_ESCALATED,)

        clock.advance(minutes=5)
        assert is_escalation_overdue(escalation, clock.now()) is True
        advanced = service.escalate_to_next_tier(escalation, rotation, schedule)
        escalation = advanced.aggregate
        second = escalation.current_attempt
        assert second.user_id == "bob"
        assert second.attempt_number == 2
        assert second.response_deadline == START + timedelta(minutes=15)
        assert escalation.responses[0].response is AttemptResponseKind.NO_RESPONSE
        assert advanced.event_types == (EventType.ESCALATION_TIER_ADVANCED,)

        clock.advance(minutes=10)
        failed = service.escalate_to_next_tier(escalation, rotation, schedule)
        escalation = failed.aggregate
        assert escalation.status is EscalationStatus.FAILED
        assert escalation.manual_override_required is True
        assert escalation.failure_reason == NO_MORE_TIERS
        assert len(escalation.attempts) == 2
        assert failed.event_types == (EventType.ESCALATION_FAILED,)

    def test_max_attempts_stops_chain(self, service, weekday_window):
        schedule = service.create_schedule(
            "region-east", RoleId.MODERATOR, "East", "America/New_York", weekday_window, LEAD,
            settings={"max_escalation_attempts": 1},
        ).aggregate
        rotation = service.create_rotation(schedule, WEEK, assignment("alice"), assignment("bob")).aggregate
        escalation = service.initiate_escalation(
            schedule, rotation, LEAD, "Trap check", EscalationSeverity.URGENT
        ).aggregate

        failed = service.escalate_to_next_tier(escalation, rotation, schedule).aggregate
        assert failed.status is EscalationStatus.FAILED
        assert failed.failure_reason == "Maximum escalation attempts reached"

    def test_acknowledgement_ends_chain(self, service, escalation, clock):
        clock.advance(minutes=2)
        acked = service.record_response(escalation, UserId("alice"), AttemptResponseKind.ACKNOWLEDGED).aggregate
        assert acked.status is EscalationStatus.ACKNOWLEDGED
        assert acked.acknowledged_by == "alice"

        resolved = service.resolve_escalation(acked, UserId("alice"), "Dog picked up").aggregate
        assert resolved.status is EscalationStatus.RESOLVED

    def test_decline_waits_for_next_tier(self, service, escalation):
        declined = service.record_response(
            escalation, UserId("alice"), AttemptResponseKind.DECLINED, "Out of town"
        ).aggregate
        assert declined.status is EscalationStatus.ESCALATING
        assert declined.awaiting_next_tier is True

    def test_only_current_contact_may_respond(self, service, escalation):
        with pytest.raises(PermissionDeniedError):
            service.record_response(escalation, UserId("bob"), AttemptResponseKind.ACKNOWLEDGED)

    def test_attempt_answered_once(self, service, escalation):
        declined = service.record_response(escalation, UserId("alice"), AttemptResponseKind.DECLINED).aggregate
        with pytest.raises(InvalidStateTransitionError):
            service.record_response(declined, UserId("alice"), AttemptResponseKind.ACKNOWLEDGED)

    def test_responders_cannot_record_no_response(self, service, escalation):
        with pytest.raises(ValidationFailedError):
            service.record_response(escalation, UserId("alice"), AttemptResponseKind.NO_RESPONSE)

    def test_overall_timeout(self, service, escalation, clock):
        with pytest.raises(InvalidStateTransitionError):
            service.fail_timed_out(escalation)

        clock.advance(minutes=20)
        failed = service.fail_timed_out(escalation).aggregate
        assert failed.status is EscalationStatus.FAILED
        assert failed.failure_reason == TIMED_OUT

    def test_closed_escalations_never_time_out(self, service, escalation, clock):
        cancelled = service.cancel_escalation(escalation, LEAD, "False alarm").aggregate
        clock.advance(minutes=30)
        assert is_escalation_timed_out(escalation, clock.now()) is True
        assert is_escalation_timed_out(cancelled, clock.now()) is False
        assert is_escalation_overdue(cancelled, clock.now()) is False
        with pytest.raises(InvalidStateTransitionError):
            service.fail_timed_out(cancelled)

    def test_terminal_escalation_cannot_be_cancelled(self, service, escalation):
        cancelled = service.cancel_escalation(escalation, LEAD, "False alarm").aggregate
        assert cancelled.status is EscalationStatus.CANCELLED
        with pytest.raises(InvalidStateTransitionError):
            service.cancel_escalation(cancelled, LEAD, "again")

    def test_statistics(self, service, escalation, clock):
        clock.advance(minutes=4)
        acked = service.record_response(escalation, UserId("alice"), AttemptResponseKind.ACKNOWLEDGED).aggregate
        stats = OnCallService.get_statistics([acked, escalation])
        assert stats.total == 2
        assert stats.acknowledged == 1
        assert stats.average_response_minutes == pytest.approx(4.0)
        assert stats.escalation_rate == 0.0


class TestCoverageWindow:
    def test_same_day_window_in_schedule_timezone(self, schedule):
        # 09:00 UTC on 2024-03-04 is 04:00 in New York
        assert is_within_coverage_window(schedule, START) is False
        assert is_within_coverage_window(schedule, START + timedelta(hours=5)) is True
        saturday = datetime(2024, 3, 9, 15, 0, tzinfo=timezone.utc)
        assert is_within_coverage_window(schedule, saturday) is False

    def test_overnight_window_belongs_to_previous_day(self, service):
        friday_nights = CoverageWindow(
            start_time_local=time(22, 0),
            end_time_local=time(7, 0),
            days_of_week=(DayOfWeek.FRIDAY,),
            is_overnight=True,
        )
        schedule = service.create_schedule(
            "region-east", RoleId.MODERATOR, "Night", "UTC", friday_nights, LEAD
        ).aggregate

        assert is_within_coverage_window(schedule, datetime(2024, 3, 8, 23, 0, tzinfo=timezone.utc)) is True
        assert is_within_coverage_window(schedule, datetime(2024, 3, 9, 2, 0, tzinfo=timezone.utc)) is True
        assert is_within_coverage_window(schedule, datetime(2024, 3, 9, 8, 0, tzinfo=timezone.utc)) is False
        assert is_within_coverage_window(schedule, datetime(2024, 3, 7, 23, 0, tzinfo=timezone.utc)) is False

    def test_overnight_flag_must_match_times(self):
        with pytest.raises(ValidationError):
            CoverageWindow(start_time_local=time(8, 0), end_time_local=time(20, 0),
                           days_of_week=(DayOfWeek.MONDAY,), is_overnight=True)


class TestEligibility:
    @pytest.fixture
    def last_week(self, service, schedule):
        return service.create_rotation(schedule, PREVIOUS_WEEK, assignment("alice"), assignment("bob")).aggregate

    def test_consecutive_days_use_calendar_adjacency(self, last_week, weekday_window):
        alice = UserId("alice")
        assert count_consecutive_on_call_days(alice, [last_week], WEEK) == 7
        # Sunday is outside the weekday window, which breaks the run
        assert count_consecutive_on_call_days(alice, [last_week], WEEK, weekday_window) == 0
        assert count_consecutive_on_call_days(alice, [last_week], date(2024, 3, 2), weekday_window) == 5
        assert count_consecutive_on_call_days(UserId("carol"), [last_week], WEEK) == 0

    def test_too_many_consecutive_days(self, last_week, schedule):
        eligibility = can_volunteer_be_on_call(UserId("alice"), [last_week], schedule.settings, WEEK)
        assert eligibility.allowed is False
        assert eligibility.consecutive_days == 7

    def test_rest_gap_satisfied(self, last_week, schedule, weekday_window):
        eligibility = can_volunteer_be_on_call(UserId("alice"), [last_week], schedule.settings, WEEK, weekday_window)
        assert eligibility.allowed is True

    def test_rest_gap_too_short(self, last_week, config, weekday_window):
        settings = settings_from_policy(config.on_call, {"max_consecutive_days": 10})
        eligibility = can_volunteer_be_on_call(
            UserId("alice"), [last_week], settings, date(2024, 3, 2), weekday_window
        )
        assert eligibility.allowed is False
        assert "1 more days" in eligibility.reason
