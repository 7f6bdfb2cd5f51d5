"""On-call rotations and tiered escalation.

The engine is pure: it decides what the next state of an escalation is and
exposes the predicates (``is_escalation_overdue``, ``is_escalation_timed_out``)
an external poller uses to decide when to call it. See
``rescue_core_lib.coordination.sweeper`` for that poller.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set

from rescue_core_lib.auth.roles import RoleId
from rescue_core_lib.config import OnCallPolicy
from rescue_core_lib.core.context import OperationsContext
from rescue_core_lib.errors import (
    InvalidStateTransitionError,
    PermissionDeniedError,
    ValidationFailedError,
)
from rescue_core_lib.models.common import (
    SYSTEM_ACTOR,
    CaseId,
    DayOfWeek,
    DispatchId,
    EscalationId,
    RotationId,
    ScheduleId,
    UserId,
    evolve,
    new_audit,
)
from rescue_core_lib.models.events import AggregateType, DomainEvent, EventType, Mutation
from rescue_core_lib.models.on_call import (
    AttemptResponse,
    AttemptResponseKind,
    CoverageWindow,
    Escalation,
    EscalationAttempt,
    EscalationSeverity,
    EscalationStatistics,
    EscalationStatus,
    OnCallAssignment,
    OnCallEligibility,
    OnCallRotation,
    OnCallSchedule,
    OnCallSettings,
    OnCallTier,
    RotationStatus,
    RotationValidation,
)

logger = logging.getLogger(__name__)

NO_MORE_TIERS = "All on-call personnel unavailable"
MAX_ATTEMPTS_REACHED = "Maximum escalation attempts reached"
TIMED_OUT = "Escalation timed out before anyone acknowledged"


def settings_from_policy(policy: OnCallPolicy, overrides: Optional[Mapping[str, Any]] = None) -> OnCallSettings:
    settings = OnCallSettings(
        primary_response_minutes=policy.primary_response_minutes,
        backup_response_minutes=policy.backup_response_minutes,
        tertiary_response_minutes=policy.tertiary_response_minutes,
        escalation_delay_minutes=policy.escalation_delay_minutes,
        max_escalation_attempts=policy.max_escalation_attempts,
        max_consecutive_days=policy.max_consecutive_days,
        min_days_between_weeks=policy.min_days_between_weeks,
        requires_acknowledgement=policy.require_acknowledgement,
        acknowledgement_deadline_hours=policy.acknowledgement_deadline_hours,
    )
    if overrides:
        settings = evolve(settings, **overrides)
    return settings


def escalation_timeout_minutes(settings: OnCallSettings, rotation: OnCallRotation) -> int:
    """Sum of the staffed tiers' windows plus the delay between each pair of tiers."""
    tiers = rotation.tiers
    windows = sum(settings.response_minutes(t) for t in tiers)
    return windows + settings.escalation_delay_minutes * (len(tiers) - 1)


# ============================================================
# Predicates
# ============================================================

def is_escalation_overdue(escalation: Escalation, now: datetime) -> bool:
    if escalation.status is not EscalationStatus.ESCALATING:
        return False
    return escalation.current_attempt.response_deadline <= now


def is_escalation_timed_out(escalation: Escalation, now: datetime) -> bool:
    if escalation.status is not EscalationStatus.ESCALATING:
        return False
    return escalation.timeout_at <= now


def is_within_coverage_window(schedule: OnCallSchedule, at: datetime) -> bool:
    """Whether ``at`` falls inside the schedule's coverage window.

    The window is evaluated in the schedule's timezone. For an overnight
    window the early-morning part belongs to the previous day's shift, so a
    Saturday 02:00 is covered by a Friday 22:00-07:00 window.
    """
    local = at.astimezone(schedule.tz)
    current = local.time().replace(tzinfo=None)
    window = schedule.coverage_window
    today = DayOfWeek.from_weekday(local.weekday())

    if not window.is_overnight:
        return today in window.days_of_week and window.start_time_local <= current < window.end_time_local

    if current >= window.start_time_local:
        return today in window.days_of_week
    if current < window.end_time_local:
        yesterday = DayOfWeek.from_weekday((local.weekday() - 1) % 7)
        return yesterday in window.days_of_week
    return False


def on_call_dates(
    user_id: UserId, rotations: Iterable[OnCallRotation], window: Optional[CoverageWindow] = None
) -> Set[date]:
    """Calendar days the user holds any tier, limited to the window's covered days."""
    days: Set[date] = set()
    for rotation in rotations:
        if rotation.status is RotationStatus.CANCELLED or not rotation.includes(user_id):
            continue
        day = rotation.week_starting
        while day < rotation.week_ending:
            if window is None or DayOfWeek.from_weekday(day.weekday()) in window.days_of_week:
                days.add(day)
            day += timedelta(days=1)
    return days


def count_consecutive_on_call_days(
    user_id: UserId,
    rotations: Iterable[OnCallRotation],
    as_of: date,
    window: Optional[CoverageWindow] = None,
) -> int:
    """Length of the unbroken run of on-call days ending the day before ``as_of``."""
    days = on_call_dates(user_id, rotations, window)
    count = 0
    cursor = as_of - timedelta(days=1)
    while cursor in days:
        count += 1
        cursor -= timedelta(days=1)
    return count


def can_volunteer_be_on_call(
    user_id: UserId,
    recent_rotations: Sequence[OnCallRotation],
    settings: OnCallSettings,
    as_of: date,
    window: Optional[CoverageWindow] = None,
) -> OnCallEligibility:
    consecutive = count_consecutive_on_call_days(user_id, recent_rotations, as_of, window)
    if consecutive >= settings.max_consecutive_days:
        return OnCallEligibility(
            allowed=False,
            reason=f"Exceeded maximum consecutive on-call days ({settings.max_consecutive_days})",
            consecutive_days=consecutive,
        )

    past = [d for d in on_call_dates(user_id, recent_rotations, window) if d < as_of]
    if past:
        days_since = (as_of - max(past)).days
        if days_since < settings.min_days_between_weeks:
            return OnCallEligibility(
                allowed=False,
                reason=f"Must wait {settings.min_days_between_weeks - days_since} more days before next on-call",
                consecutive_days=consecutive,
            )

    return OnCallEligibility(allowed=True, consecutive_days=consecutive)


def validate_rotation(
    rotation: OnCallRotation, schedule: OnCallSchedule, existing_rotations: Sequence[OnCallRotation]
) -> RotationValidation:
    errors: List[str] = []
    warnings: List[str] = []

    if rotation.schedule_id != schedule.id:
        errors.append("Rotation belongs to a different schedule")
    if any(r.week_starting == rotation.week_starting and r.id != rotation.id for r in existing_rotations):
        errors.append("A rotation already exists for this week")

    if schedule.settings.requires_acknowledgement:
        for tier in rotation.tiers:
            if not rotation.assignment_for(tier).acknowledged_schedule:
                warnings.append(f"{tier.value.capitalize()} has not acknowledged schedule")

    for tier in rotation.tiers:
        if rotation.assignment_for(tier).preferred_contact is None:
            warnings.append(f"{tier.value.capitalize()} has no enabled contact method")

    if any(not gap.filled for gap in rotation.coverage_gaps):
        warnings.append("There are unfilled coverage gaps")

    return RotationValidation(valid=not errors, errors=tuple(errors), warnings=tuple(warnings))


# ============================================================
# Service
# ============================================================

class OnCallService:
    def __init__(self, ctx: OperationsContext):
        self.ctx = ctx

    # ---------- schedules & rotations ----------

    def create_schedule(
        self,
        region_id: str,
        role: RoleId,
        name: str,
        timezone: str,
        coverage_window: CoverageWindow,
        created_by: UserId,
        settings: Optional[Mapping[str, Any]] = None,
        description: Optional[str] = None,
    ) -> Mutation[OnCallSchedule]:
        now = self.ctx.now()
        schedule = OnCallSchedule(
            id=ScheduleId(self.ctx.new_id("sched")),
            region_id=region_id,
            role=role,
            name=name,
            description=description,
            timezone=timezone,
            coverage_window=coverage_window,
            settings=settings_from_policy(self.ctx.config.on_call, settings),
            activated_at=now,
            audit=new_audit(created_by, now),
        )
        logger.info(f"On-call schedule {schedule.id} created for region {region_id} ({role.value})")
        return Mutation(
            schedule,
            (self.ctx.event(AggregateType.ON_CALL_SCHEDULE, schedule.id, EventType.ON_CALL_SCHEDULE_CREATED,
                            schedule.audit.version, created_by, {"region_id": region_id}),),
        )

    def create_rotation(
        self,
        schedule: OnCallSchedule,
        week_starting: date,
        primary: OnCallAssignment,
        backup: OnCallAssignment,
        tertiary: Optional[OnCallAssignment] = None,
        created_by: Optional[UserId] = None,
    ) -> Mutation[OnCallRotation]:
        """Create a week-long rotation starting on a Monday.

        Raises:
            ValidationFailedError: week does not start on a Monday
            pydantic.ValidationError: the same person holds two tiers
        """
        if week_starting.weekday() != 0:
            raise ValidationFailedError(
                "Rotations must start on a Monday", {"week_starting": week_starting.isoformat()}
            )
        actor = created_by or schedule.audit.created_by
        now = self.ctx.now()
        rotation = OnCallRotation(
            id=RotationId(self.ctx.new_id("rot")),
            schedule_id=schedule.id,
            week_starting=week_starting,
            week_ending=week_starting + timedelta(days=7),
            primary=_fresh(primary),
            backup=_fresh(backup),
            tertiary=_fresh(tertiary) if tertiary else None,
            audit=new_audit(actor, now),
        )
        logger.info(f"Rotation {rotation.id} created for week of {week_starting} on schedule {schedule.id}")
        return Mutation(rotation, (self._rotation_event(rotation, EventType.ON_CALL_ROTATION_CREATED, actor),))

    def acknowledge_assignment(self, rotation: OnCallRotation, user_id: UserId, tier: OnCallTier) -> Mutation[OnCallRotation]:
        assignment = self._assignment_held_by(rotation, user_id, tier)
        now = self.ctx.now()
        updated = evolve(
            rotation,
            **{tier.value: evolve(assignment, acknowledged_schedule=True, acknowledged_at=now)},
            audit=rotation.audit.bumped(user_id, now),
        )
        return Mutation(
            updated,
            (self._rotation_event(updated, EventType.ON_CALL_ASSIGNMENT_ACKNOWLEDGED, user_id, {"tier": tier.value}),),
        )

    def request_swap(self, rotation: OnCallRotation, user_id: UserId, tier: OnCallTier, reason: str) -> Mutation[OnCallRotation]:
        assignment = self._assignment_held_by(rotation, user_id, tier)
        now = self.ctx.now()
        updated = evolve(
            rotation,
            **{tier.value: evolve(assignment, swap_requested=True, swap_requested_at=now, swap_reason=reason)},
            audit=rotation.audit.bumped(user_id, now),
        )
        logger.info(f"Swap requested on rotation {rotation.id} by {user_id} ({tier.value})")
        return Mutation(
            updated,
            (self._rotation_event(updated, EventType.ON_CALL_SWAP_REQUESTED, user_id,
                                  {"tier": tier.value, "reason": reason}),),
        )

    # ---------- escalation ----------

    def initiate_escalation(
        self,
        schedule: OnCallSchedule,
        rotation: OnCallRotation,
        triggered_by: UserId,
        trigger_reason: str,
        severity: EscalationSeverity,
        case_id: Optional[CaseId] = None,
        incident_id: Optional[str] = None,
        dispatch_id: Optional[DispatchId] = None,
    ) -> Mutation[Escalation]:
        if not schedule.is_active:
            raise InvalidStateTransitionError(f"Schedule {schedule.id} is not active")
        if rotation.schedule_id != schedule.id:
            raise ValidationFailedError(
                "Rotation does not belong to schedule",
                {"rotation_id": rotation.id, "schedule_id": schedule.id},
            )

        now = self.ctx.now()
        escalation_id = EscalationId(self.ctx.new_id("esc"))
        first = self._attempt(rotation, OnCallTier.PRIMARY, 1, schedule.settings, now)
        timeout = now + timedelta(minutes=escalation_timeout_minutes(schedule.settings, rotation))

        escalation = Escalation(
            id=escalation_id,
            schedule_id=schedule.id,
            rotation_id=rotation.id,
            triggered_at=now,
            triggered_by=triggered_by,
            trigger_reason=trigger_reason,
            severity=severity,
            case_id=case_id,
            incident_id=incident_id,
            dispatch_id=dispatch_id,
            attempts=(first,),
            timeout_at=timeout,
            audit=new_audit(triggered_by, now),
        )
        logger.info(
            f"Escalation {escalation.id} started ({severity.value}): contacting primary "
            f"{first.user_id}, deadline {first.response_deadline.isoformat()}"
        )
        return Mutation(
            escalation,
            (self._event(escalation, EventType.FIELD_OPERATION_ESCALATED, triggered_by,
                         {"severity": severity.value, "reason": trigger_reason, "user_id": first.user_id}),),
        )

    def record_response(
        self,
        escalation: Escalation,
        user_id: UserId,
        response: AttemptResponseKind,
        decline_reason: Optional[str] = None,
    ) -> Mutation[Escalation]:
        """Record the current attempt's answer.

        Acknowledged ends the chain successfully. Declined leaves the
        escalation escalating until ``escalate_to_next_tier`` is called.
        """
        if response not in (AttemptResponseKind.ACKNOWLEDGED, AttemptResponseKind.DECLINED):
            raise ValidationFailedError(f"Responders can only acknowledge or decline, got {response.value}")
        self._ensure_escalating(escalation, response.value)
        attempt = escalation.current_attempt
        if attempt.user_id != user_id:
            raise PermissionDeniedError(
                f"User {user_id} is not the current escalation contact",
                {"escalation_id": escalation.id, "current_user_id": attempt.user_id},
            )
        if escalation.current_response is not None:
            raise InvalidStateTransitionError(
                f"Attempt {attempt.attempt_number} already answered",
                current_state=escalation.current_response.response.value,
                requested_state=response.value,
            )

        now = self.ctx.now()
        changes: Dict[str, Any] = {
            "responses": escalation.responses + (
                AttemptResponse(
                    attempt_number=attempt.attempt_number,
                    user_id=user_id,
                    response=response,
                    responded_at=now,
                    decline_reason=decline_reason,
                ),
            ),
        }
        if response is AttemptResponseKind.ACKNOWLEDGED:
            changes.update(status=EscalationStatus.ACKNOWLEDGED, acknowledged_by=user_id, acknowledged_at=now)

        updated = evolve(escalation, audit=escalation.audit.bumped(user_id, now), **changes)
        logger.info(f"Escalation {escalation.id}: {attempt.tier.value} {user_id} {response.value}")
        return Mutation(
            updated,
            (self._event(updated, EventType.ESCALATION_RESPONSE_RECORDED, user_id,
                         {"attempt_number": attempt.attempt_number, "response": response.value}),),
        )

    def escalate_to_next_tier(
        self,
        escalation: Escalation,
        rotation: OnCallRotation,
        schedule: OnCallSchedule,
        actor: UserId = SYSTEM_ACTOR,
    ) -> Mutation[Escalation]:
        """Move to the next staffed tier, or fail with manual override required.

        An unanswered current attempt is closed with a ``no_response`` entry.
        """
        self._ensure_escalating(escalation, "next_tier")
        if rotation.id != escalation.rotation_id:
            raise ValidationFailedError(
                "Rotation does not match escalation",
                {"rotation_id": rotation.id, "escalation_rotation_id": escalation.rotation_id},
            )

        now = self.ctx.now()
        current = escalation.current_attempt
        responses = escalation.responses
        if escalation.current_response is None:
            responses += (
                AttemptResponse(
                    attempt_number=current.attempt_number,
                    user_id=current.user_id,
                    response=AttemptResponseKind.NO_RESPONSE,
                    responded_at=now,
                ),
            )

        tiers = rotation.tiers
        position = tiers.index(current.tier)
        next_tier = tiers[position + 1] if position + 1 < len(tiers) else None

        failure = None
        if next_tier is None:
            failure = NO_MORE_TIERS
        elif len(escalation.attempts) >= schedule.settings.max_escalation_attempts:
            failure = MAX_ATTEMPTS_REACHED

        if failure:
            updated = evolve(
                escalation,
                responses=responses,
                status=EscalationStatus.FAILED,
                escalated_to_next_tier=True,
                manual_override_required=True,
                failure_reason=failure,
                audit=escalation.audit.bumped(actor, now),
            )
            logger.warning(f"Escalation {escalation.id} failed: {failure}; manual override required")
            return Mutation(
                updated,
                (self._event(updated, EventType.ESCALATION_FAILED, actor,
                             {"reason": failure, "attempts": len(updated.attempts)}),),
            )

        attempt = self._attempt(
            rotation, next_tier, len(escalation.attempts) + 1, schedule.settings, now,
            not_before=current.response_deadline,
        )
        updated = evolve(
            escalation,
            attempts=escalation.attempts + (attempt,),
            responses=responses,
            current_attempt_index=len(escalation.attempts),
            escalated_to_next_tier=True,
            audit=escalation.audit.bumped(actor, now),
        )
        logger.info(
            f"Escalation {escalation.id} advanced to {next_tier.value} {attempt.user_id}, "
            f"deadline {attempt.response_deadline.isoformat()}"
        )
        return Mutation(
            updated,
            (self._event(updated, EventType.ESCALATION_TIER_ADVANCED, actor,
                         {"tier": next_tier.value, "attempt_number": attempt.attempt_number,
                          "user_id": attempt.user_id}),),
        )

    def fail_timed_out(self, escalation: Escalation, actor: UserId = SYSTEM_ACTOR) -> Mutation[Escalation]:
        """Close an escalation whose overall timeout passed without acknowledgement."""
        self._ensure_escalating(escalation, EscalationStatus.FAILED.value)
        now = self.ctx.now()
        if not is_escalation_timed_out(escalation, now):
            raise InvalidStateTransitionError(
                f"Escalation {escalation.id} has not timed out",
                current_state=escalation.status.value,
                requested_state=EscalationStatus.FAILED.value,
            )
        updated = evolve(
            escalation,
            status=EscalationStatus.FAILED,
            manual_override_required=True,
            failure_reason=TIMED_OUT,
            audit=escalation.audit.bumped(actor, now),
        )
        logger.warning(f"Escalation {escalation.id} timed out; manual override required")
        return Mutation(updated, (self._event(updated, EventType.ESCALATION_FAILED, actor, {"reason": TIMED_OUT}),))

    def resolve_escalation(
        self, escalation: Escalation, resolved_by: UserId, resolution_notes: Optional[str] = None
    ) -> Mutation[Escalation]:
        if escalation.status.is_terminal:
            raise InvalidStateTransitionError(
                f"Escalation {escalation.id} is already {escalation.status.value}",
                current_state=escalation.status.value,
                requested_state=EscalationStatus.RESOLVED.value,
            )
        now = self.ctx.now()
        updated = evolve(
            escalation,
            status=EscalationStatus.RESOLVED,
            resolved_at=now,
            resolved_by=resolved_by,
            resolution_notes=resolution_notes,
            audit=escalation.audit.bumped(resolved_by, now),
        )
        logger.info(f"Escalation {escalation.id} resolved by {resolved_by}")
        return Mutation(updated, (self._event(updated, EventType.ESCALATION_RESOLVED, resolved_by),))

    def cancel_escalation(self, escalation: Escalation, cancelled_by: UserId, reason: str) -> Mutation[Escalation]:
        if escalation.status.is_terminal:
            raise InvalidStateTransitionError(
                f"Escalation {escalation.id} is already {escalation.status.value}",
                current_state=escalation.status.value,
                requested_state=EscalationStatus.CANCELLED.value,
            )
        now = self.ctx.now()
        updated = evolve(
            escalation,
            status=EscalationStatus.CANCELLED,
            resolution_notes=reason,
            resolved_at=now,
            resolved_by=cancelled_by,
            audit=escalation.audit.bumped(cancelled_by, now),
        )
        logger.info(f"Escalation {escalation.id} cancelled by {cancelled_by}: {reason}")
        return Mutation(updated, (self._event(updated, EventType.ESCALATION_CANCELLED, cancelled_by, {"reason": reason}),))

    @staticmethod
    def get_statistics(escalations: Sequence[Escalation]) -> EscalationStatistics:
        total = len(escalations)
        by_status = {status: sum(1 for e in escalations if e.status is status) for status in EscalationStatus}
        answered = [e for e in escalations if e.acknowledged_at is not None]
        average = (
            sum((e.acknowledged_at - e.triggered_at).total_seconds() for e in answered) / len(answered) / 60
            if answered
            else 0.0
        )
        escalated = sum(1 for e in escalations if e.escalated_to_next_tier)
        return EscalationStatistics(
            total=total,
            acknowledged=len(answered),
            resolved=by_status[EscalationStatus.RESOLVED],
            failed=by_status[EscalationStatus.FAILED],
            average_response_minutes=average,
            escalation_rate=escalated / total * 100 if total else 0.0,
            by_status=by_status,
        )

    # ---------- internals ----------

    def _attempt(
        self,
        rotation: OnCallRotation,
        tier: OnCallTier,
        number: int,
        settings: OnCallSettings,
        now: datetime,
        not_before: Optional[datetime] = None,
    ) -> EscalationAttempt:
        assignment = rotation.assignment_for(tier)
        contact = assignment.preferred_contact
        deadline = now + timedelta(minutes=settings.response_minutes(tier))
        if not_before is not None and deadline < not_before:
            deadline = not_before
        return EscalationAttempt(
            id=self.ctx.new_id("att"),
            attempt_number=number,
            user_id=assignment.user_id,
            user_name=assignment.user_name,
            tier=tier,
            contact_method=contact.method if contact else self.ctx.config.on_call.default_contact_order[0],
            contact_value=contact.value if contact else "",
            attempted_at=now,
            response_deadline=deadline,
        )

    @staticmethod
    def _assignment_held_by(rotation: OnCallRotation, user_id: UserId, tier: OnCallTier) -> OnCallAssignment:
        assignment = rotation.assignment_for(tier)
        if assignment is None or assignment.user_id != user_id:
            raise PermissionDeniedError(
                f"User {user_id} does not hold the {tier.value} slot on rotation {rotation.id}"
            )
        return assignment

    @staticmethod
    def _ensure_escalating(escalation: Escalation, requested: str) -> None:
        if escalation.status is not EscalationStatus.ESCALATING:
            raise InvalidStateTransitionError(
                f"Escalation {escalation.id} is {escalation.status.value}",
                current_state=escalation.status.value,
                requested_state=requested,
            )

    def _rotation_event(
        self, rotation: OnCallRotation, event_type: EventType, actor: UserId, payload: Optional[dict] = None
    ) -> DomainEvent:
        return self.ctx.event(
            AggregateType.ON_CALL_ROTATION, rotation.id, event_type, rotation.audit.version, actor, payload
        )

    def _event(
        self, escalation: Escalation, event_type: EventType, actor: UserId, payload: Optional[dict] = None
    ) -> DomainEvent:
        return self.ctx.event(
            AggregateType.ESCALATION, escalation.id, event_type, escalation.audit.version, actor, payload
        )


def _fresh(assignment: OnCallAssignment) -> OnCallAssignment:
    return evolve(
        assignment,
        acknowledged_schedule=False,
        acknowledged_at=None,
        swap_requested=False,
        swap_requested_at=None,
        swap_reason=None,
    )
