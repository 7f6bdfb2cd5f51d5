"""Volunteer dispatch matching and the dispatch lifecycle.

``DispatchMatcher`` ranks an availability snapshot against a request: hard
filters first, then a weighted score. ``DispatchService`` drives the
request through its state machine; every transition appends a note and
bumps the audit version.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Tuple

from rescue_core_lib.auth.roles import MODERATOR_TIER, RoleId, parse_role
from rescue_core_lib.config import DispatchPolicy
from rescue_core_lib.core.context import OperationsContext
from rescue_core_lib.core.geo import haversine_km
from rescue_core_lib.core.scoring import clamp, linear_decay, round_half_up, weighted_sum
from rescue_core_lib.errors import (
    InvalidStateTransitionError,
    PermissionDeniedError,
    ValidationFailedError,
)
from rescue_core_lib.models.common import CaseId, DispatchId, Severity, UserId, evolve, new_audit
from rescue_core_lib.models.dispatch import (
    AnimalDetails,
    DispatchLocation,
    DispatchMatchingCriteria,
    DispatchNote,
    DispatchPriority,
    DispatchRequest,
    DispatchRequirements,
    DispatchStatistics,
    DispatchStatus,
    DispatchType,
    MatchFactorScores,
    NoteType,
    VolunteerDispatchProfile,
    VolunteerMatch,
    is_valid_dispatch_transition,
)
from rescue_core_lib.models.events import AggregateType, DomainEvent, EventType, Mutation

logger = logging.getLogger(__name__)

_EXPERIENCE_ORDER = ["beginner", "intermediate", "advanced", "expert"]


# ============================================================
# Matcher
# ============================================================

class DispatchMatcher:
    def __init__(self, policy: DispatchPolicy):
        self.policy = policy

    def effective_max_distance(self, criteria: DispatchMatchingCriteria) -> float:
        if criteria.max_distance_km is not None:
            return criteria.max_distance_km
        if criteria.requirements.max_distance_km is not None:
            return criteria.requirements.max_distance_km
        return self.policy.default_max_distance_km

    def find_matches(
        self, criteria: DispatchMatchingCriteria, volunteers: Iterable[VolunteerDispatchProfile]
    ) -> List[VolunteerMatch]:
        """Rank eligible volunteers, best first, truncated to max_results."""
        max_distance = self.effective_max_distance(criteria)
        excluded = set(criteria.exclude_volunteers)
        scored: List[Tuple[VolunteerMatch, float]] = []

        for volunteer in volunteers:
            if volunteer.user_id in excluded:
                continue
            if not volunteer.is_available:
                continue
            if not self.meets_role_requirements(volunteer, criteria.requirements.required_roles):
                logger.debug(f"Volunteer {volunteer.user_id} filtered: missing role")
                continue
            if not self.meets_skill_requirements(volunteer, criteria.requirements.required_skills):
                logger.debug(f"Volunteer {volunteer.user_id} filtered: missing skill")
                continue
            if not self.meets_equipment_requirements(volunteer, criteria.requirements.required_equipment):
                logger.debug(f"Volunteer {volunteer.user_id} filtered: missing equipment")
                continue

            distance = haversine_km(criteria.location, volunteer.effective_location)
            if distance > max_distance:
                logger.debug(f"Volunteer {volunteer.user_id} filtered: {distance:.1f}km > {max_distance}km")
                continue

            scored.append((self.score_volunteer(criteria, volunteer, distance), distance))

        scored.sort(key=lambda pair: (-pair[0].score, pair[1]))
        limit = criteria.max_results or self.policy.default_max_results
        return [match for match, _ in scored[:limit]]

    @staticmethod
    def meets_role_requirements(volunteer: VolunteerDispatchProfile, required_roles: Sequence[str]) -> bool:
        if not required_roles:
            return True
        return any(role in volunteer.roles for role in required_roles)

    @staticmethod
    def meets_skill_requirements(volunteer: VolunteerDispatchProfile, required_skills: Sequence[str]) -> bool:
        return all(skill in volunteer.skills for skill in required_skills)

    @staticmethod
    def meets_equipment_requirements(volunteer: VolunteerDispatchProfile, required_equipment: Sequence[str]) -> bool:
        return all(item in volunteer.equipment for item in required_equipment)

    def score_volunteer(
        self, criteria: DispatchMatchingCriteria, volunteer: VolunteerDispatchProfile, distance: float
    ) -> VolunteerMatch:
        p = self.policy
        components = {
            "location": linear_decay(distance, p.reference_distance_km),
            "skills": self.skills_score(criteria.requirements.required_skills, volunteer.skills),
            "availability": volunteer.response_time_score,
            "experience": float(self.experience_score(volunteer)),
            "workload": 100.0 - volunteer.workload_score,
        }
        weights = {
            "location": p.location_weight,
            "skills": p.skills_weight,
            "availability": p.availability_weight,
            "experience": p.experience_weight,
            "workload": p.workload_weight,
        }
        score = weighted_sum(components, weights)

        if criteria.priority.is_emergency:
            score += volunteer.emergency_response_bonus
        if volunteer.user_id in criteria.preferred_volunteers:
            score += p.preferred_volunteer_bonus

        positive, negative = self.match_reasons(criteria, volunteer, distance)
        return VolunteerMatch(
            volunteer_id=volunteer.user_id,
            score=round_half_up(clamp(score, 0, 100)),
            distance_km=distance,
            estimated_arrival_minutes=round_half_up(distance * 60 / p.average_speed_kmh),
            factors=MatchFactorScores(**{name: round_half_up(value) for name, value in components.items()}),
            positive_reasons=tuple(positive),
            negative_reasons=tuple(negative),
        )

    @staticmethod
    def skills_score(required: Sequence[str], present: Sequence[str]) -> float:
        if not required:
            return 100.0
        return sum(1 for skill in required if skill in present) / len(required) * 100

    def experience_score(self, volunteer: VolunteerDispatchProfile) -> int:
        score = self.policy.experience_points.get(volunteer.experience_level.value, 0)
        for minimum, bonus in self.policy.volume_bonus_tiers:
            if volunteer.completed_dispatches > minimum:
                score += bonus
                break
        return min(self.policy.experience_cap, score)

    @staticmethod
    def match_reasons(
        criteria: DispatchMatchingCriteria, volunteer: VolunteerDispatchProfile, distance: float
    ) -> Tuple[List[str], List[str]]:
        positive: List[str] = []
        negative: List[str] = []

        if distance < 5:
            positive.append("Very close to location")
        elif distance > 30:
            negative.append("Far from location")

        if all(skill in volunteer.skills for skill in criteria.requirements.required_skills):
            positive.append("Has all required skills")

        if volunteer.completed_dispatches > 50:
            positive.append("Highly experienced")
        elif volunteer.completed_dispatches < 5:
            negative.append("Limited experience")

        if volunteer.response_time_score > 80:
            positive.append("Very responsive")

        if volunteer.workload_score < 30:
            positive.append("Low current workload")
        elif volunteer.workload_score > 80:
            negative.append("High current workload")

        return positive, negative


# ============================================================
# Helpers
# ============================================================

def can_volunteer_handle_dispatch(volunteer: VolunteerDispatchProfile, dispatch: DispatchRequest) -> bool:
    """Hard-requirement check including physical and handling restrictions."""
    req = dispatch.requirements
    if not volunteer.is_available:
        return False
    if not DispatchMatcher.meets_role_requirements(volunteer, req.required_roles):
        return False
    if not DispatchMatcher.meets_skill_requirements(volunteer, req.required_skills):
        return False
    if not DispatchMatcher.meets_equipment_requirements(volunteer, req.required_equipment):
        return False
    if req.must_lift_weight_kg and volunteer.cannot_lift_weight_kg is not None:
        if volunteer.cannot_lift_weight_kg < req.must_lift_weight_kg:
            return False
    if any(category in volunteer.cannot_handle for category in req.must_be_comfortable_with):
        return False
    if req.min_experience_level is not None:
        have = _EXPERIENCE_ORDER.index(volunteer.experience_level.value)
        need = _EXPERIENCE_ORDER.index(req.min_experience_level.value)
        if have < need:
            return False
    return True


def get_dispatch_priority_score(priority: DispatchPriority, policy: DispatchPolicy) -> int:
    return policy.priority_scores[priority.value]


def is_dispatch_overdue(dispatch: DispatchRequest, now: datetime) -> bool:
    if dispatch.needed_by is None or dispatch.status.is_terminal:
        return False
    return dispatch.needed_by <= now


def get_dispatch_eta(dispatch: DispatchRequest, now: datetime, default_duration_minutes: int = 60) -> Optional[float]:
    """Minutes remaining for an en-route volunteer, or None when not en route."""
    if dispatch.status is not DispatchStatus.EN_ROUTE or dispatch.en_route_at is None:
        return None
    elapsed = (now - dispatch.en_route_at).total_seconds() / 60
    duration = dispatch.estimated_duration_minutes or default_duration_minutes
    return max(0.0, duration - elapsed)


# ============================================================
# Service
# ============================================================

class DispatchService:
    def __init__(self, ctx: OperationsContext):
        self.ctx = ctx
        self.matcher = DispatchMatcher(ctx.config.dispatch)

    def create_dispatch(
        self,
        case_id: CaseId,
        dispatch_type: DispatchType,
        priority: DispatchPriority,
        severity: Severity,
        requested_by: UserId,
        role: RoleId,
        requirements: Optional[DispatchRequirements] = None,
        pickup_location: Optional[DispatchLocation] = None,
        destination_location: Optional[DispatchLocation] = None,
        animal_details: Optional[AnimalDetails] = None,
        needed_by: Optional[datetime] = None,
        estimated_duration_minutes: Optional[int] = None,
    ) -> Mutation[DispatchRequest]:
        if parse_role(role) not in MODERATOR_TIER:
            raise PermissionDeniedError(f"Role {role} cannot create dispatches")
        now = self.ctx.now()
        dispatch = DispatchRequest(
            id=DispatchId(self.ctx.new_id("dsp")),
            case_id=case_id,
            type=dispatch_type,
            priority=priority,
            severity=severity,
            pickup_location=pickup_location,
            destination_location=destination_location,
            animal_details=animal_details,
            requirements=requirements or DispatchRequirements(),
            requested_at=now,
            requested_by=requested_by,
            needed_by=needed_by,
            estimated_duration_minutes=estimated_duration_minutes,
            audit=new_audit(requested_by, now),
        )
        logger.info(f"Dispatch {dispatch.id} created for case {case_id} ({dispatch_type.value}, {priority.value})")
        return Mutation(
            dispatch,
            (self._event(dispatch, EventType.DISPATCH_CREATED, requested_by,
                         {"type": dispatch_type.value, "priority": priority.value}),),
        )

    def find_volunteers(
        self,
        dispatch: DispatchRequest,
        volunteers: Iterable[VolunteerDispatchProfile],
        actor: UserId,
        max_distance_km: Optional[float] = None,
        max_results: Optional[int] = None,
        exclude_volunteers: Sequence[UserId] = (),
        preferred_volunteers: Sequence[UserId] = (),
    ) -> Mutation[DispatchRequest]:
        if dispatch.pickup_location is None:
            raise ValidationFailedError("Dispatch must have pickup location", {"dispatch_id": dispatch.id})
        if dispatch.status not in (DispatchStatus.PENDING, DispatchStatus.SEARCHING):
            raise InvalidStateTransitionError(
                f"Cannot match volunteers for a {dispatch.status.value} dispatch",
                current_state=dispatch.status.value,
                requested_state=DispatchStatus.SEARCHING.value,
            )

        criteria = DispatchMatchingCriteria(
            dispatch_id=dispatch.id,
            location=dispatch.pickup_location.coordinates,
            requirements=dispatch.requirements,
            priority=dispatch.priority,
            # Volunteers who already declined are not offered it again
            exclude_volunteers=tuple(exclude_volunteers) + dispatch.declined_by,
            preferred_volunteers=tuple(preferred_volunteers),
            max_distance_km=max_distance_km,
            max_results=max_results,
        )
        matches = self.matcher.find_matches(criteria, volunteers)

        updated = self._apply(
            dispatch,
            actor,
            f"Volunteer search found {len(matches)} candidate(s)",
            status=DispatchStatus.SEARCHING,
            matched_volunteers=tuple(matches),
            matching_score=matches[0].score if matches else 0,
        )
        logger.info(f"Dispatch {dispatch.id}: {len(matches)} volunteer match(es)")
        return Mutation(
            updated,
            (self._event(updated, EventType.DISPATCH_MATCHED, actor,
                         {"candidates": [m.volunteer_id for m in matches]}),),
        )

    def assign_dispatch(
        self, dispatch: DispatchRequest, volunteer_id: UserId, assigned_by: UserId, role: RoleId
    ) -> Mutation[DispatchRequest]:
        if parse_role(role) not in MODERATOR_TIER:
            raise PermissionDeniedError(f"Role {role} cannot assign dispatches")
        self._check_transition(dispatch, DispatchStatus.ASSIGNED)
        if volunteer_id in dispatch.declined_by:
            raise InvalidStateTransitionError(
                f"Volunteer {volunteer_id} already declined dispatch {dispatch.id}",
                current_state=dispatch.status.value,
                requested_state=DispatchStatus.ASSIGNED.value,
            )

        updated = self._apply(
            dispatch,
            assigned_by,
            f"Assigned to volunteer {volunteer_id}",
            status=DispatchStatus.ASSIGNED,
            assigned_to=volunteer_id,
            assigned_at=self.ctx.now(),
        )
        logger.info(f"Dispatch {dispatch.id} assigned to {volunteer_id} by {assigned_by}")
        return Mutation(
            updated,
            (self._event(updated, EventType.DISPATCH_ASSIGNED, assigned_by, {"volunteer_id": volunteer_id}),),
        )

    def accept_dispatch(self, dispatch: DispatchRequest, accepted_by: UserId) -> Mutation[DispatchRequest]:
        if dispatch.assigned_to != accepted_by:
            raise InvalidStateTransitionError(
                "Only assigned volunteer can accept dispatch",
                current_state=dispatch.status.value,
                requested_state=DispatchStatus.ACCEPTED.value,
                details={"assigned_to": dispatch.assigned_to, "accepted_by": accepted_by},
            )
        self._check_transition(dispatch, DispatchStatus.ACCEPTED)
        updated = self._apply(
            dispatch, accepted_by, "Dispatch accepted",
            status=DispatchStatus.ACCEPTED, accepted_at=self.ctx.now(),
        )
        return Mutation(updated, (self._event(updated, EventType.DISPATCH_ACCEPTED, accepted_by),))

    def decline_dispatch(self, dispatch: DispatchRequest, volunteer_id: UserId, reason: str = "") -> Mutation[DispatchRequest]:
        """Hand the dispatch back to the search pool."""
        if dispatch.assigned_to != volunteer_id or dispatch.status is not DispatchStatus.ASSIGNED:
            raise InvalidStateTransitionError(
                "Only the assigned volunteer can decline an assigned dispatch",
                current_state=dispatch.status.value,
                requested_state=DispatchStatus.SEARCHING.value,
            )
        updated = self._apply(
            dispatch,
            volunteer_id,
            f"Declined by {volunteer_id}" + (f": {reason}" if reason else ""),
            status=DispatchStatus.SEARCHING,
            assigned_to=None,
            assigned_at=None,
            declined_by=dispatch.declined_by + (volunteer_id,),
        )
        logger.info(f"Dispatch {dispatch.id} declined by {volunteer_id}; back to searching")
        return Mutation(updated, (self._event(updated, EventType.DISPATCH_DECLINED, volunteer_id, {"reason": reason}),))

    def update_status(
        self,
        dispatch: DispatchRequest,
        new_status: DispatchStatus,
        updated_by: UserId,
        role: Optional[RoleId] = None,
        note: Optional[str] = None,
    ) -> Mutation[DispatchRequest]:
        if new_status in (DispatchStatus.ASSIGNED, DispatchStatus.ACCEPTED):
            raise InvalidStateTransitionError(
                f"Use the dedicated operation to move a dispatch to {new_status.value}",
                current_state=dispatch.status.value,
                requested_state=new_status.value,
            )
        if updated_by != dispatch.assigned_to and parse_role(role) not in MODERATOR_TIER:
            raise PermissionDeniedError("Only the assigned volunteer or a moderator can update dispatch status")
        self._check_transition(dispatch, new_status)

        now = self.ctx.now()
        stamps = {
            DispatchStatus.EN_ROUTE: "en_route_at",
            DispatchStatus.ON_SCENE: "on_scene_at",
            DispatchStatus.COMPLETED: "completed_at",
        }
        changes = {"status": new_status}
        if new_status in stamps:
            changes[stamps[new_status]] = now

        updated = self._apply(dispatch, updated_by, note or f"Status changed to {new_status.value}", **changes)
        logger.info(f"Dispatch {dispatch.id}: {dispatch.status.value} → {new_status.value}")
        return Mutation(
            updated,
            (self._event(updated, EventType.DISPATCH_STATUS_CHANGED, updated_by,
                         {"from": dispatch.status.value, "to": new_status.value}),),
        )

    def add_note(
        self,
        dispatch: DispatchRequest,
        author_id: UserId,
        content: str,
        note_type: NoteType = NoteType.GENERAL,
        visible_to_volunteer: bool = True,
    ) -> Mutation[DispatchRequest]:
        updated = self._apply(dispatch, author_id, content, note_type=note_type, visible=visible_to_volunteer)
        return Mutation(
            updated,
            (self._event(updated, EventType.DISPATCH_NOTE_ADDED, author_id, {"note_type": note_type.value}),),
        )

    @staticmethod
    def get_statistics(dispatches: Sequence[DispatchRequest]) -> DispatchStatistics:
        def count(*statuses: DispatchStatus) -> int:
            return sum(1 for d in dispatches if d.status in statuses)

        response = [
            (d.assigned_at - d.requested_at).total_seconds() / 60 for d in dispatches if d.assigned_at
        ]
        completion = [
            (d.completed_at - d.accepted_at).total_seconds() / 60
            for d in dispatches
            if d.completed_at and d.accepted_at
        ]
        total = len(dispatches)
        completed = count(DispatchStatus.COMPLETED)
        return DispatchStatistics(
            total=total,
            pending=count(DispatchStatus.PENDING),
            searching=count(DispatchStatus.SEARCHING),
            assigned=count(DispatchStatus.ASSIGNED),
            active=count(DispatchStatus.ACCEPTED, DispatchStatus.EN_ROUTE, DispatchStatus.ON_SCENE),
            completed=completed,
            cancelled=count(DispatchStatus.CANCELLED),
            failed=count(DispatchStatus.FAILED),
            average_response_minutes=sum(response) / len(response) if response else 0.0,
            average_completion_minutes=sum(completion) / len(completion) if completion else 0.0,
            success_rate=completed / total * 100 if total else 0.0,
        )

    # ---------- internals ----------

    def _check_transition(self, dispatch: DispatchRequest, to_status: DispatchStatus) -> None:
        if not is_valid_dispatch_transition(dispatch.status, to_status):
            raise InvalidStateTransitionError(
                f"Invalid dispatch transition: {dispatch.status.value} → {to_status.value}",
                current_state=dispatch.status.value,
                requested_state=to_status.value,
            )

    def _apply(
        self,
        dispatch: DispatchRequest,
        actor: UserId,
        note_content: str,
        note_type: NoteType = NoteType.STATUS_UPDATE,
        visible: bool = True,
        **changes,
    ) -> DispatchRequest:
        now = self.ctx.now()
        note = DispatchNote(
            id=self.ctx.new_id("note"),
            author_id=actor,
            content=note_content,
            created_at=now,
            type=note_type,
            visible_to_volunteer=visible,
        )
        return evolve(
            dispatch,
            notes=dispatch.notes + (note,),
            audit=dispatch.audit.bumped(actor, now),
            **changes,
        )

    def _event(self, dispatch: DispatchRequest, event_type: EventType, actor: UserId, payload: Optional[dict] = None) -> DomainEvent:
        return self.ctx.event(
            AggregateType.DISPATCH_REQUEST, dispatch.id, event_type, dispatch.audit.version, actor, payload
        )
