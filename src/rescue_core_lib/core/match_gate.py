"""Match confidence gate (false-hope prevention).

``can_notify_owner`` is the single choke point before any owner-facing
communication about a match. It fails closed: every gate is evaluated and
all must pass. Human review is mandatory at every confidence score,
including 100.

Gate status and the notification block only change through recorded
verification events: AI analysis, human review, chip scan, owner contact,
reunification and expiry.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from rescue_core_lib.auth.roles import MODERATOR_TIER, RoleId
from rescue_core_lib.config import MatchGatePolicy
from rescue_core_lib.core.context import OperationsContext
from rescue_core_lib.core.scoring import weighted_fraction
from rescue_core_lib.errors import (
    InvalidStateTransitionError,
    PermissionDeniedError,
    ValidationFailedError,
)
from rescue_core_lib.models.common import SYSTEM_ACTOR, MatchId, UserId, evolve, new_audit
from rescue_core_lib.models.events import AggregateType, DomainEvent, EventType, Mutation
from rescue_core_lib.models.matches import (
    NOTIFIABLE_STATUSES,
    FalseHopeAuditEntry,
    FalseHopeAuditKind,
    MatchConfidenceLevel,
    MatchEventType,
    MatchGateStatus,
    MatchingFactor,
    MatchVerificationEvent,
    NotificationDecision,
    NotificationGate,
    PotentialMatch,
    ReviewDecision,
)

logger = logging.getLogger(__name__)

SPECIES_FACTOR = "species"


def confidence_level_for(
    score: int, human_verified: bool, chip_verified: bool, policy: MatchGatePolicy
) -> MatchConfidenceLevel:
    if chip_verified:
        return MatchConfidenceLevel.CHIP_VERIFIED
    if human_verified and score >= policy.high_confidence:
        return MatchConfidenceLevel.HUMAN_VERIFIED
    if score >= policy.high_confidence:
        return MatchConfidenceLevel.HIGH
    if score >= policy.moderate_confidence:
        return MatchConfidenceLevel.MODERATE
    if score >= policy.low_confidence:
        return MatchConfidenceLevel.LOW
    return MatchConfidenceLevel.UNVERIFIED


def can_notify_owner(match: PotentialMatch, policy: MatchGatePolicy) -> NotificationDecision:
    """Evaluate every notification gate; allowed only when all pass."""
    passed: List[NotificationGate] = []
    failed: List[NotificationGate] = []
    reasons: List[str] = []
    actions: List[str] = []

    # Order matters only for which reason is reported first
    species = match.factor(SPECIES_FACTOR)
    if species is not None and not species.matched:
        failed.append(NotificationGate.SPECIES_MATCH)
        reasons.append("Species mismatch - cannot be the same animal")
        actions.append("Reject this match")
    else:
        passed.append(NotificationGate.SPECIES_MATCH)

    if match.has_human_review:
        passed.append(NotificationGate.HUMAN_REVIEW)
    else:
        failed.append(NotificationGate.HUMAN_REVIEW)
        reasons.append("Human review required before any owner contact")
        actions.append("Human review required")

    if match.owner_notification_blocked:
        failed.append(NotificationGate.NOT_BLOCKED)
        reasons.append(match.block_reason or "Notification blocked by system")
        actions.append("Review and resolve block reason")
    else:
        passed.append(NotificationGate.NOT_BLOCKED)

    if match.ai_confidence_score < policy.owner_notification_threshold:
        failed.append(NotificationGate.CONFIDENCE_THRESHOLD)
        reasons.append(
            f"AI confidence ({match.ai_confidence_score}%) below threshold "
            f"({policy.owner_notification_threshold}%)"
        )
        actions.append("Gather more evidence")
    else:
        passed.append(NotificationGate.CONFIDENCE_THRESHOLD)

    if match.gate_status in NOTIFIABLE_STATUSES:
        passed.append(NotificationGate.GATE_STATUS)
    else:
        failed.append(NotificationGate.GATE_STATUS)
        reasons.append(f"Match status {match.gate_status.value} does not permit owner contact")
        if match.gate_status is MatchGateStatus.PENDING_ANALYSIS:
            actions.append("Complete AI analysis")
        elif match.gate_status is MatchGateStatus.PENDING_HUMAN_REVIEW:
            actions.append("Complete human review")

    if failed:
        return NotificationDecision(
            allowed=False,
            reason=reasons[0],
            required_actions=tuple(dict.fromkeys(actions)),
            gates_passed=tuple(passed),
            gates_failed=tuple(failed),
        )
    return NotificationDecision(
        allowed=True,
        reason="All verification gates passed",
        gates_passed=tuple(passed),
    )


@dataclass(frozen=True)
class NotificationCheck:
    decision: NotificationDecision
    audit_entry: FalseHopeAuditEntry
    event: DomainEvent


class MatchGate:
    """Potential-match lifecycle driven by explicit verification events."""

    def __init__(self, ctx: OperationsContext):
        self.ctx = ctx

    @property
    def policy(self) -> MatchGatePolicy:
        return self.ctx.config.match_gate

    def factor(self, name: str, matched: bool, details: str = "") -> MatchingFactor:
        """Build a factor carrying its configured weight."""
        weight = self.policy.weight_for(name)
        if weight is None:
            raise ValidationFailedError(f"Unknown matching factor '{name}'", {"factor": name})
        return MatchingFactor(factor=name, weight=weight, matched=matched, details=details)

    def create_potential_match(
        self,
        lost_report_id: str,
        found_report_id: str,
        factors: Sequence[MatchingFactor],
        sighting_id: Optional[str] = None,
    ) -> Mutation[PotentialMatch]:
        names = [f.factor for f in factors]
        missing = [name for name in self.policy.required_factors if name not in names]
        if missing:
            raise ValidationFailedError(f"Required matching factors missing: {missing}", {"missing": missing})
        if len(set(names)) != len(names):
            raise ValidationFailedError("Each matching factor may appear only once")

        now = self.ctx.now()
        score = weighted_fraction((f.weight, f.matched) for f in factors)
        status = (
            MatchGateStatus.PENDING_HUMAN_REVIEW
            if score >= self.policy.review_threshold
            else MatchGateStatus.PENDING_ANALYSIS
        )
        analysis = MatchVerificationEvent(
            id=self.ctx.new_id("mev"),
            timestamp=now,
            event_type=MatchEventType.AI_ANALYSIS,
            actor=SYSTEM_ACTOR,
            previous_status=MatchGateStatus.PENDING_ANALYSIS,
            new_status=status,
            notes=f"Initial AI analysis: {score}% confidence",
        )
        match = PotentialMatch(
            id=MatchId(self.ctx.new_id("match")),
            lost_report_id=lost_report_id,
            found_report_id=found_report_id,
            sighting_id=sighting_id,
            created_at=now,
            confidence_level=confidence_level_for(score, False, False, self.policy),
            gate_status=status,
            ai_confidence_score=score,
            matching_factors=tuple(factors),
            verification_history=(analysis,),
            owner_notification_blocked=True,
            block_reason="Awaiting verification",
            audit=new_audit(SYSTEM_ACTOR, now),
        )
        logger.info(f"Potential match {match.id} created: score={score} status={status.value}")
        return Mutation(
            match,
            (self._event(match, EventType.MATCH_CREATED, SYSTEM_ACTOR,
                         {"ai_confidence_score": score, "gate_status": status.value}),),
        )

    def check_owner_notification(self, match: PotentialMatch, actor: UserId = SYSTEM_ACTOR) -> NotificationCheck:
        """Evaluate the gate and produce the audit record proving the outcome."""
        decision = can_notify_owner(match, self.policy)
        if decision.allowed:
            kind = FalseHopeAuditKind.NOTIFICATION_ALLOWED
        elif NotificationGate.SPECIES_MATCH in decision.gates_failed or \
                match.gate_status is MatchGateStatus.REJECTED_FALSE_POSITIVE:
            kind = FalseHopeAuditKind.FALSE_POSITIVE_PREVENTED
        else:
            kind = FalseHopeAuditKind.NOTIFICATION_BLOCKED

        entry = FalseHopeAuditEntry(
            id=self.ctx.new_id("fha"),
            timestamp=self.ctx.now(),
            match_id=match.id,
            kind=kind,
            actor=actor,
            details=decision.reason,
            ai_confidence_score=match.ai_confidence_score,
            gate_status=match.gate_status,
            gates_passed=decision.gates_passed,
            gates_failed=decision.gates_failed,
        )
        if not decision.allowed:
            logger.warning(f"Owner notification blocked for match {match.id}: {decision.reason}")
        event = self._event(
            match,
            EventType.MATCH_NOTIFICATION_EVALUATED,
            actor,
            {
                "allowed": decision.allowed,
                "gates_passed": [g.value for g in decision.gates_passed],
                "gates_failed": [g.value for g in decision.gates_failed],
            },
        )
        return NotificationCheck(decision=decision, audit_entry=entry, event=event)

    def record_human_review(
        self,
        match: PotentialMatch,
        moderator: UserId,
        role: RoleId,
        decision: ReviewDecision,
        notes: str,
    ) -> Mutation[PotentialMatch]:
        if role not in MODERATOR_TIER:
            raise PermissionDeniedError(f"Role {role.value} cannot review matches")
        self._ensure_open(match, "review")

        species = match.factor(SPECIES_FACTOR)
        if decision is ReviewDecision.APPROVE and species is not None and not species.matched:
            raise InvalidStateTransitionError(
                "A match with a species mismatch cannot be approved",
                current_state=match.gate_status.value,
                requested_state=MatchGateStatus.PENDING_OWNER_CONTACT.value,
            )

        if decision is ReviewDecision.APPROVE:
            new_status = (
                match.gate_status if match.gate_status in NOTIFIABLE_STATUSES
                else MatchGateStatus.PENDING_OWNER_CONTACT
            )
            changes = dict(
                owner_notification_blocked=False,
                block_reason=None,
                confidence_level=(
                    match.confidence_level if match.confidence_level is MatchConfidenceLevel.CHIP_VERIFIED
                    else MatchConfidenceLevel.HUMAN_VERIFIED
                ),
            )
        elif decision is ReviewDecision.REJECT:
            new_status = MatchGateStatus.REJECTED_FALSE_POSITIVE
            changes = dict(
                owner_notification_blocked=True,
                block_reason=f"Rejected by human review: {notes}",
                confidence_level=MatchConfidenceLevel.FALSE_POSITIVE,
            )
        else:
            new_status = MatchGateStatus.PENDING_HUMAN_REVIEW
            changes = dict(
                owner_notification_blocked=True,
                block_reason=f"Additional information required: {notes}",
            )

        updated = self._record(
            match, MatchEventType.HUMAN_REVIEW, moderator, new_status, notes, decision=decision, **changes
        )
        logger.info(f"Match {match.id} reviewed by {moderator}: {decision.value} → {new_status.value}")
        return Mutation(
            updated,
            (self._event(updated, EventType.MATCH_HUMAN_REVIEWED, moderator,
                         {"decision": decision.value, "gate_status": new_status.value}),),
        )

    def record_chip_verification(
        self,
        match: PotentialMatch,
        verifier: UserId,
        chip_number: str,
        registry_match: bool,
    ) -> Mutation[PotentialMatch]:
        """Record a microchip scan. A scan always overrides AI and human judgement."""
        if match.gate_status in (MatchGateStatus.REUNIFICATION_COMPLETE, MatchGateStatus.EXPIRED):
            raise InvalidStateTransitionError(
                f"Match {match.id} is {match.gate_status.value}", current_state=match.gate_status.value
            )

        if registry_match:
            # Never move backwards past a notification that already happened
            new_status = (
                match.gate_status
                if match.gate_status in NOTIFIABLE_STATUSES
                else MatchGateStatus.PENDING_OWNER_CONTACT
            )
            if new_status is MatchGateStatus.PENDING_OWNER_CONTACT and match.gate_status is MatchGateStatus.REJECTED_FALSE_POSITIVE:
                logger.warning(f"Chip scan reverses prior rejection of match {match.id}")
            changes = dict(
                confidence_level=MatchConfidenceLevel.CHIP_VERIFIED,
                ai_confidence_score=100,
                owner_notification_blocked=False,
                block_reason=None,
            )
            notes = f"Chip #{chip_number} matches registered owner"
        else:
            new_status = MatchGateStatus.REJECTED_FALSE_POSITIVE
            changes = dict(
                confidence_level=MatchConfidenceLevel.FALSE_POSITIVE,
                ai_confidence_score=0,
                owner_notification_blocked=True,
                block_reason="Chip verification failed - not the same animal",
            )
            notes = f"Chip #{chip_number} does not match - different animal"

        if not registry_match and match.gate_status in (
            MatchGateStatus.OWNER_NOTIFIED,
            MatchGateStatus.REUNIFICATION_IN_PROGRESS,
        ):
            logger.warning(f"Chip mismatch on match {match.id} after owner contact; reunification halted")

        updated = self._record(match, MatchEventType.CHIP_SCAN, verifier, new_status, notes, **changes)
        return Mutation(
            updated,
            (self._event(updated, EventType.MATCH_CHIP_VERIFIED, verifier,
                         {"registry_match": registry_match, "gate_status": new_status.value}),),
        )

    def record_owner_notification(
        self, match: PotentialMatch, method: str, actor: UserId = SYSTEM_ACTOR
    ) -> Mutation[PotentialMatch]:
        decision = can_notify_owner(match, self.policy)
        if not decision.allowed:
            raise InvalidStateTransitionError(
                f"Owner notification not permitted: {decision.reason}",
                current_state=match.gate_status.value,
                requested_state=MatchGateStatus.OWNER_NOTIFIED.value,
                details={"required_actions": list(decision.required_actions)},
            )
        new_status = (
            match.gate_status
            if match.gate_status is MatchGateStatus.REUNIFICATION_IN_PROGRESS
            else MatchGateStatus.OWNER_NOTIFIED
        )
        updated = self._record(match, MatchEventType.OWNER_CONTACT, actor, new_status, f"Owner notified via {method}")
        logger.info(f"Owner notified for match {match.id} via {method}")
        return Mutation(updated, (self._event(updated, EventType.MATCH_OWNER_NOTIFIED, actor, {"method": method}),))

    def record_reunification(
        self, match: PotentialMatch, actor: UserId, complete: bool, notes: str = ""
    ) -> Mutation[PotentialMatch]:
        allowed_from = (
            (MatchGateStatus.OWNER_NOTIFIED, MatchGateStatus.REUNIFICATION_IN_PROGRESS)
            if complete
            else (MatchGateStatus.OWNER_NOTIFIED,)
        )
        target = MatchGateStatus.REUNIFICATION_COMPLETE if complete else MatchGateStatus.REUNIFICATION_IN_PROGRESS
        if match.gate_status not in allowed_from:
            raise InvalidStateTransitionError(
                f"Cannot move match from {match.gate_status.value} to {target.value}",
                current_state=match.gate_status.value,
                requested_state=target.value,
            )
        changes = {}
        if complete:
            changes["confidence_level"] = MatchConfidenceLevel.OWNER_CONFIRMED
        updated = self._record(match, MatchEventType.REUNIFICATION, actor, target, notes, **changes)
        return Mutation(
            updated,
            (self._event(updated, EventType.MATCH_REUNIFICATION_UPDATED, actor, {"gate_status": target.value}),),
        )

    def expire_if_stale(self, match: PotentialMatch, now: Optional[datetime] = None) -> Mutation[PotentialMatch]:
        """Expire a match left unreviewed past the horizon; otherwise a no-op."""
        now = now or self.ctx.now()
        horizon = match.created_at + timedelta(hours=self.policy.expiry_hours)
        stale = (
            match.gate_status in (MatchGateStatus.PENDING_ANALYSIS, MatchGateStatus.PENDING_HUMAN_REVIEW)
            and not match.has_human_review
            and now >= horizon
        )
        if not stale:
            return Mutation(match, ())

        updated = self._record(
            match,
            MatchEventType.EXPIRATION,
            SYSTEM_ACTOR,
            MatchGateStatus.EXPIRED,
            f"Unreviewed for {self.policy.expiry_hours}h",
            owner_notification_blocked=True,
            block_reason="Match expired without review",
        )
        logger.info(f"Match {match.id} expired unreviewed")
        return Mutation(updated, (self._event(updated, EventType.MATCH_EXPIRED, SYSTEM_ACTOR),))

    # ---------- internals ----------

    def _ensure_open(self, match: PotentialMatch, action: str) -> None:
        if match.gate_status.is_terminal:
            raise InvalidStateTransitionError(
                f"Cannot {action} a {match.gate_status.value} match", current_state=match.gate_status.value
            )

    def _record(
        self,
        match: PotentialMatch,
        event_type: MatchEventType,
        actor: UserId,
        new_status: MatchGateStatus,
        notes: str,
        decision: Optional[ReviewDecision] = None,
        **changes,
    ) -> PotentialMatch:
        now = self.ctx.now()
        event = MatchVerificationEvent(
            id=self.ctx.new_id("mev"),
            timestamp=now,
            event_type=event_type,
            actor=actor,
            previous_status=match.gate_status,
            new_status=new_status,
            notes=notes,
            decision=decision,
        )
        return evolve(
            match,
            gate_status=new_status,
            verification_history=match.verification_history + (event,),
            audit=match.audit.bumped(actor, now),
            **changes,
        )

    def _event(self, match: PotentialMatch, event_type: EventType, actor: UserId, payload: Optional[dict] = None) -> DomainEvent:
        return self.ctx.event(AggregateType.POTENTIAL_MATCH, match.id, event_type, match.audit.version, actor, payload)
