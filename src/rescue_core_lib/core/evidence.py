"""Evidence scoring and the release gate.

Pure scoring and gating functions sit at module level; ``ClaimService``
wraps them into mutations that bump the audit version, append review
history and emit DomainEvents.

Gates never raise for "not yet allowed": ``can_clear_hold`` and
``get_required_verification_steps`` return data describing what is missing.
Mutations raise when asked to do something structurally forbidden (clearing
an unverified hold, approving twice as the same person, releasing over a
recorded contradiction).
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from rescue_core_lib.auth.roles import (
    MODERATOR_TIER,
    RoleId,
    has_minimum_role,
    roles_at_or_above,
)
from rescue_core_lib.config import EvidencePolicy
from rescue_core_lib.core.approvals import ApprovalService
from rescue_core_lib.core.context import OperationsContext
from rescue_core_lib.core.scoring import rank_and_cap
from rescue_core_lib.errors import (
    BreakGlassRequiredError,
    InvalidStateTransitionError,
    PermissionDeniedError,
    ValidationFailedError,
)
from rescue_core_lib.models.approvals import BreakGlassGrant, BreakGlassScope
from rescue_core_lib.models.claims import (
    ClaimantIdentity,
    ClaimDecision,
    ClaimReviewAction,
    ClaimReviewEvent,
    ClaimStatus,
    ClaimStatusTransition,
    ClearanceApproval,
    Contradiction,
    ContradictionKind,
    DecisionOutcome,
    DisputeStatus,
    EvidenceItem,
    EvidenceType,
    EvidenceScoreEntry,
    EvidenceSubmission,
    OwnershipClaim,
    RejectionReason,
    ReleaseHold,
    ReleaseHoldReason,
    ReleaseHoldStatus,
    ScoreAdjustment,
    VerificationStatus,
    VerificationStep,
)
from rescue_core_lib.models.common import (
    SYSTEM_ACTOR,
    CaseId,
    ClaimId,
    FrozenModel,
    UserId,
    evolve,
    new_audit,
)
from rescue_core_lib.models.events import AggregateType, DomainEvent, EventType, Mutation

logger = logging.getLogger(__name__)

# Lowest role allowed to sign off a release hold
HOLD_APPROVER_MIN_ROLE = RoleId.MODERATOR

_CONTRADICTION_REJECTIONS = {
    ContradictionKind.SPECIES_MISMATCH: RejectionReason.EVIDENCE_CONTRADICTED,
    ContradictionKind.MICROCHIP_MISMATCH: RejectionReason.MICROCHIP_MISMATCH,
    ContradictionKind.IDENTITY_MISMATCH: RejectionReason.ID_VERIFICATION_FAILED,
}


# ============================================================
# Decision results
# ============================================================

class ApprovalThreshold(FrozenModel):
    can_approve: Tuple[RoleId, ...]
    requires_lead_review: bool
    auto_reject: bool


@dataclass(frozen=True)
class BreakGlassRelease:
    """A break-glass release touches two aggregates; callers commit both."""

    claim: Mutation[OwnershipClaim]
    grant: Mutation[BreakGlassGrant]


class HoldClearanceDecision(FrozenModel):
    """Whether an approver of a given role may sign off the release hold.

    ``allowed`` answers "may this role take part"; the number of distinct
    approvals still missing is reported separately so UIs can show it.
    """

    allowed: bool
    reason: str
    requires_two_person: bool
    required_actions: Tuple[str, ...] = ()
    approvals_required: int = 1
    approvals_recorded: int = 0


# ============================================================
# Pure scoring & gating
# ============================================================

def calculate_score(
    items: Sequence[EvidenceItem], policy: EvidencePolicy
) -> Tuple[int, Tuple[EvidenceScoreEntry, ...]]:
    """Total of the best verified evidence per type, within instance caps."""

    def counts(item: EvidenceItem) -> bool:
        if policy.rule_for(item.type).requires_verification:
            return item.verification_status is VerificationStatus.VERIFIED
        return item.verification_status is not VerificationStatus.REJECTED

    total, ranked = rank_and_cap(
        items,
        score_of=lambda item: item.score,
        category_of=lambda item: item.type,
        cap_of=lambda evidence_type: policy.rule_for(evidence_type).max_instances,
        counts_if=counts,
    )

    breakdown = tuple(
        EvidenceScoreEntry(
            evidence_id=entry.item.id,
            evidence_type=entry.item.type,
            base_score=entry.base_score,
            adjustments=tuple(ScoreAdjustment(reason=r, amount=a) for r, a in entry.adjustments),
            final_score=entry.final_score,
            counted=entry.counted,
        )
        for entry in ranked
    )
    return total, breakdown


def _forces_lead_review(claim: OwnershipClaim) -> bool:
    return claim.has_active_dispute or claim.release_hold.reason is ReleaseHoldReason.SUSPECTED_FRAUD


def get_approval_threshold(score: int, disputed: bool, policy: EvidencePolicy) -> ApprovalThreshold:
    """Roles that may verify a claim at ``score``.

    A dispute or suspected fraud forces lead review regardless of score.
    """
    if score < policy.reject_below:
        return ApprovalThreshold(can_approve=(), requires_lead_review=True, auto_reject=True)

    if disputed or score < policy.lead_review_threshold:
        return ApprovalThreshold(
            can_approve=tuple(roles_at_or_above(RoleId.LEAD_MODERATOR)),
            requires_lead_review=True,
            auto_reject=False,
        )

    return ApprovalThreshold(
        can_approve=tuple(roles_at_or_above(RoleId.MODERATOR)),
        requires_lead_review=False,
        auto_reject=False,
    )


def requires_two_person_clearance(claim: OwnershipClaim, policy: EvidencePolicy) -> bool:
    return (
        claim.total_score < policy.standard_approval_threshold
        or claim.has_active_dispute
        or claim.has_competing_claims
        or claim.release_hold.reason is ReleaseHoldReason.SUSPECTED_FRAUD
    )


def get_required_verification_steps(claim: OwnershipClaim, policy: EvidencePolicy) -> List[VerificationStep]:
    """Ordered verification checklist for a claim.

    Low scores add steps rather than raising; this is how insufficient
    evidence is surfaced to reviewers.
    """
    steps = [VerificationStep.CLAIMANT_IDENTITY_VERIFIED]
    types = {item.type for item in claim.evidence}

    if EvidenceType.MICROCHIP_REGISTRATION not in types:
        steps.append(VerificationStep.MICROCHIP_SCAN_REQUESTED)

    if not claim.linked_prereg_profile_id:
        steps.append(VerificationStep.PREREG_PROFILE_CHECKED)

    if types & {EvidenceType.DATED_PHOTO_WITH_PET, EvidenceType.UNDATED_PHOTO_WITH_PET}:
        steps.extend([VerificationStep.PHOTOS_COMPARED, VerificationStep.DISTINCTIVE_MARKS_VERIFIED])

    if claim.total_score < policy.standard_approval_threshold:
        steps.append(VerificationStep.KNOWLEDGE_TEST_ADMINISTERED)
        if claim.total_score < policy.lead_review_threshold:
            steps.append(VerificationStep.VET_CONTACTED)

    if claim.has_active_dispute:
        steps.append(VerificationStep.DISPUTE_RESOLVED)
    if _forces_lead_review(claim) or claim.total_score < policy.lead_review_threshold:
        steps.append(VerificationStep.LEAD_REVIEW_COMPLETED)

    steps.append(VerificationStep.FINAL_REVIEW_COMPLETED)
    return steps


def can_clear_hold(claim: OwnershipClaim, approver_role: Optional[RoleId], policy: EvidencePolicy) -> HoldClearanceDecision:
    two_person = requires_two_person_clearance(claim, policy)
    needed = 2 if two_person else 1
    recorded = len(claim.release_hold.clearance_approvers)

    def denied(reason: str, *actions: str) -> HoldClearanceDecision:
        return HoldClearanceDecision(
            allowed=False,
            reason=reason,
            requires_two_person=two_person,
            required_actions=actions,
            approvals_required=needed,
            approvals_recorded=recorded,
        )

    if claim.release_hold.status is ReleaseHoldStatus.CLEARED:
        return denied("Release hold is already cleared")
    if claim.contradictions:
        return denied("Claim has a recorded contradiction and can never be released")
    if claim.status is not ClaimStatus.VERIFIED:
        return denied(
            "Claim must be verified before clearing hold",
            "Complete verification steps",
            "Record a verified decision",
        )
    if claim.decision is None or not claim.decision.release_authorized:
        return denied("Release not authorized in decision", "Record a decision that authorizes release")
    if not has_minimum_role(approver_role, HOLD_APPROVER_MIN_ROLE):
        return denied(
            f"Requires {HOLD_APPROVER_MIN_ROLE.value} or above",
            f"Have a {HOLD_APPROVER_MIN_ROLE.value} or higher sign off",
        )

    actions = ()
    if recorded < needed:
        missing = needed - recorded
        actions = (f"Obtain {missing} more distinct approval(s)",)
    return HoldClearanceDecision(
        allowed=True,
        reason="Authorized",
        requires_two_person=two_person,
        required_actions=actions,
        approvals_required=needed,
        approvals_recorded=recorded,
    )


# ============================================================
# Service
# ============================================================

class ClaimService:
    """Mutating operations on ownership claims.

    Every method takes a claim snapshot and returns ``Mutation`` holding the
    new snapshot and its events; the input is never modified.
    """

    def __init__(self, ctx: OperationsContext):
        self.ctx = ctx

    @property
    def policy(self) -> EvidencePolicy:
        return self.ctx.config.evidence

    # ---------- creation & evidence ----------

    def create_claim(
        self,
        case_id: CaseId,
        claimant_user_id: UserId,
        identity: ClaimantIdentity,
        animal_id: Optional[str] = None,
    ) -> Mutation[OwnershipClaim]:
        now = self.ctx.now()
        claim = OwnershipClaim(
            id=ClaimId(self.ctx.new_id("claim")),
            case_id=case_id,
            animal_id=animal_id,
            claimant_user_id=claimant_user_id,
            claimant_identity=identity,
            claimed_at=now,
            release_hold=ReleaseHold(
                status=ReleaseHoldStatus.ACTIVE,
                reason=ReleaseHoldReason.PENDING_VERIFICATION,
                set_by=SYSTEM_ACTOR,
                set_at=now,
                # Score starts at 0, below the standard threshold
                requires_two_person_clearance=True,
            ),
            audit=new_audit(claimant_user_id, now),
        )
        logger.info(f"Ownership claim {claim.id} created for case {case_id}")
        return Mutation(
            claim,
            (self._event(claim, EventType.OWNERSHIP_CLAIM_CREATED, claimant_user_id, {"case_id": case_id}),),
        )

    def add_evidence(self, claim: OwnershipClaim, submission: EvidenceSubmission, actor: UserId) -> Mutation[OwnershipClaim]:
        self._ensure_open(claim, "add evidence")
        now = self.ctx.now()
        rule = self.policy.rule_for(submission.type)

        item = EvidenceItem(
            id=self.ctx.new_id("ev"),
            type=submission.type,
            description=submission.description,
            document_ref=submission.document_ref,
            submitted_by=submission.submitted_by,
            submitted_at=now,
            verification_status=(
                VerificationStatus.PENDING if rule.requires_verification else VerificationStatus.VERIFIED
            ),
            score=rule.points,
            microchip=submission.microchip,
        )

        changes = self._rescored(claim.evidence + (item,))
        status_history = claim.status_history
        new_status = claim.status
        if claim.status is ClaimStatus.EVIDENCE_REQUESTED:
            new_status = ClaimStatus.UNDER_REVIEW
            status_history = self._transitioned(claim, new_status, actor, "Requested evidence received")

        updated = self._apply(
            claim,
            actor,
            ClaimReviewAction.EVIDENCE_ADDED,
            f"Added {item.type.value} evidence ({item.score} pts)",
            status=new_status,
            status_history=status_history,
            **changes,
        )
        updated = self._refresh_two_person(updated)

        logger.info(
            f"Evidence {item.id} ({item.type.value}) added to claim {claim.id}; "
            f"score {claim.total_score} → {updated.total_score}"
        )
        return Mutation(
            updated,
            (
                self._event(updated, EventType.OWNERSHIP_EVIDENCE_ADDED, actor,
                            {"evidence_id": item.id, "evidence_type": item.type.value}),
                self._score_event(updated, actor),
            ),
        )

    def verify_evidence(
        self,
        claim: OwnershipClaim,
        evidence_id: str,
        verifier: UserId,
        role: RoleId,
        accepted: bool,
        notes: Optional[str] = None,
    ) -> Mutation[OwnershipClaim]:
        self._ensure_open(claim, "verify evidence")
        if role not in MODERATOR_TIER:
            raise PermissionDeniedError(
                f"Role {role.value} cannot verify evidence", {"required": "moderator tier"}
            )
        if verifier == claim.claimant_user_id:
            raise PermissionDeniedError("Claimants cannot verify their own evidence")

        item = claim.evidence_by_id(evidence_id)
        if item is None:
            raise ValidationFailedError(f"Evidence {evidence_id} not found on claim {claim.id}")
        if item.verification_status is not VerificationStatus.PENDING:
            raise InvalidStateTransitionError(
                f"Evidence {evidence_id} already {item.verification_status.value}",
                current_state=item.verification_status.value,
                requested_state="verified" if accepted else "rejected",
            )

        now = self.ctx.now()
        verified_item = evolve(
            item,
            verification_status=VerificationStatus.VERIFIED if accepted else VerificationStatus.REJECTED,
            verified_by=verifier,
            verified_at=now,
            verification_notes=notes,
        )
        evidence = tuple(verified_item if e.id == evidence_id else e for e in claim.evidence)

        new_status = claim.status
        status_history = claim.status_history
        if claim.status is ClaimStatus.PENDING:
            new_status = ClaimStatus.UNDER_REVIEW
            status_history = self._transitioned(claim, new_status, verifier, "Evidence review started")

        updated = self._apply(
            claim,
            verifier,
            ClaimReviewAction.EVIDENCE_VERIFIED if accepted else ClaimReviewAction.EVIDENCE_REJECTED,
            f"Evidence {evidence_id} {'accepted' if accepted else 'rejected'}",
            role=role,
            status=new_status,
            status_history=status_history,
            **self._rescored(evidence),
        )
        updated = self._refresh_two_person(updated)

        return Mutation(
            updated,
            (
                self._event(updated, EventType.OWNERSHIP_EVIDENCE_VERIFIED, verifier,
                            {"evidence_id": evidence_id, "accepted": accepted}),
                self._score_event(updated, verifier),
            ),
        )

    def request_more_evidence(self, claim: OwnershipClaim, actor: UserId, role: RoleId, details: str) -> Mutation[OwnershipClaim]:
        self._ensure_open(claim, "request evidence")
        if role not in MODERATOR_TIER:
            raise PermissionDeniedError(f"Role {role.value} cannot request evidence")
        updated = self._apply(
            claim,
            actor,
            ClaimReviewAction.ESCALATED,
            details,
            role=role,
            status=ClaimStatus.EVIDENCE_REQUESTED,
            status_history=self._transitioned(claim, ClaimStatus.EVIDENCE_REQUESTED, actor, details),
        )
        return Mutation(updated, ())

    # ---------- decisions ----------

    def record_decision(
        self,
        claim: OwnershipClaim,
        decided_by: UserId,
        role: RoleId,
        outcome: DecisionOutcome,
        reasoning: str,
        release_authorized: bool = False,
        rejection_reason: Optional[RejectionReason] = None,
        conditions: Iterable[str] = (),
    ) -> Mutation[OwnershipClaim]:
        self._ensure_open(claim, "record a decision")

        if outcome is DecisionOutcome.VERIFIED:
            if claim.contradictions:
                raise InvalidStateTransitionError(
                    "Claim has a recorded contradiction and cannot be verified",
                    current_state=claim.status.value,
                    requested_state=ClaimStatus.VERIFIED.value,
                )
            threshold = get_approval_threshold(claim.total_score, _forces_lead_review(claim), self.policy)
            if threshold.auto_reject:
                raise InvalidStateTransitionError(
                    f"Score {claim.total_score} is below the rejection threshold {self.policy.reject_below}",
                    current_state=claim.status.value,
                    requested_state=ClaimStatus.VERIFIED.value,
                )
            if role not in threshold.can_approve:
                raise PermissionDeniedError(
                    f"Role {role.value} cannot verify a claim at score {claim.total_score}",
                    {"can_approve": [r.value for r in threshold.can_approve]},
                )
        elif not has_minimum_role(role, RoleId.MODERATOR):
            raise PermissionDeniedError(f"Role {role.value} cannot reject claims")

        decision = ClaimDecision(
            outcome=outcome,
            decided_by=decided_by,
            decider_role=role,
            decided_at=self.ctx.now(),
            reasoning=reasoning,
            score_at_decision=claim.total_score,
            release_authorized=release_authorized if outcome is DecisionOutcome.VERIFIED else False,
            rejection_reason=rejection_reason,
            conditions=tuple(conditions),
        )
        return self._decide(claim, decision, decided_by, role)

    def auto_verify(self, claim: OwnershipClaim) -> Mutation[OwnershipClaim]:
        """Record a system verification for microchip-grade scores.

        Returns the claim unchanged (no events) when it is not eligible. The
        release hold is untouched; a human still has to clear it.
        """
        eligible = (
            not claim.status.is_terminal
            and claim.total_score >= self.policy.auto_verify_threshold
            and not claim.contradictions
            and not _forces_lead_review(claim)
            and not claim.has_competing_claims
        )
        if not eligible:
            logger.debug(f"Claim {claim.id} not eligible for auto-verification (score {claim.total_score})")
            return Mutation(claim, ())

        decision = ClaimDecision(
            outcome=DecisionOutcome.VERIFIED,
            decided_by=SYSTEM_ACTOR,
            decider_role=None,
            decided_at=self.ctx.now(),
            reasoning=(
                f"Automatic verification: score {claim.total_score} ≥ {self.policy.auto_verify_threshold}"
            ),
            score_at_decision=claim.total_score,
            release_authorized=True,
        )
        return self._decide(claim, decision, SYSTEM_ACTOR, None)

    def record_contradiction(
        self,
        claim: OwnershipClaim,
        kind: ContradictionKind,
        actor: UserId,
        details: str = "",
    ) -> Mutation[OwnershipClaim]:
        """Hard-reject a claim over a species, chip or identity contradiction."""
        if claim.status in (ClaimStatus.REJECTED, ClaimStatus.WITHDRAWN):
            raise InvalidStateTransitionError(
                f"Claim {claim.id} is already {claim.status.value}", current_state=claim.status.value
            )
        if claim.release_hold.status is ReleaseHoldStatus.CLEARED:
            raise InvalidStateTransitionError(
                "Release hold already cleared; contradiction must be handled as an incident",
                current_state=claim.status.value,
                requested_state=ClaimStatus.REJECTED.value,
            )

        now = self.ctx.now()
        contradiction = Contradiction(kind=kind, recorded_by=actor, recorded_at=now, details=details)
        decision = ClaimDecision(
            outcome=DecisionOutcome.REJECTED,
            decided_by=actor,
            decided_at=now,
            reasoning=f"Contradiction recorded: {kind.value}" + (f" ({details})" if details else ""),
            score_at_decision=claim.total_score,
            release_authorized=False,
            rejection_reason=_CONTRADICTION_REJECTIONS[kind],
        )
        updated = self._apply(
            claim,
            actor,
            ClaimReviewAction.CONTRADICTION_RECORDED,
            decision.reasoning,
            status=ClaimStatus.REJECTED,
            status_history=self._transitioned(claim, ClaimStatus.REJECTED, actor, decision.reasoning),
            contradictions=claim.contradictions + (contradiction,),
            decision=decision,
            release_hold=evolve(
                claim.release_hold,
                status=ReleaseHoldStatus.DENIED,
                reason=ReleaseHoldReason.CONTRADICTION,
                set_by=actor,
                set_at=now,
            ),
        )
        logger.warning(f"Claim {claim.id} hard-rejected: {kind.value} contradiction recorded by {actor}")
        return Mutation(
            updated,
            (
                self._event(updated, EventType.OWNERSHIP_CONTRADICTION_RECORDED, actor, {"kind": kind.value}),
                self._event(updated, EventType.OWNERSHIP_CLAIM_REJECTED, actor,
                            {"rejection_reason": decision.rejection_reason.value}),
            ),
        )

    # ---------- disputes & withdrawal ----------

    def flag_dispute(
        self,
        claim: OwnershipClaim,
        actor: UserId,
        dispute: DisputeStatus,
        competing_claim_id: Optional[ClaimId] = None,
        details: str = "",
    ) -> Mutation[OwnershipClaim]:
        self._ensure_open(claim, "flag a dispute")
        if not dispute.is_active:
            raise ValidationFailedError(f"{dispute.value} is not an active dispute state")

        hold_reason = {
            DisputeStatus.COMPETING_CLAIM: ReleaseHoldReason.COMPETING_CLAIM,
            DisputeStatus.FRAUD_SUSPECTED: ReleaseHoldReason.SUSPECTED_FRAUD,
        }.get(dispute, ReleaseHoldReason.DISPUTE)

        competing = claim.competing_claim_ids
        if competing_claim_id is not None and competing_claim_id not in competing:
            competing = competing + (competing_claim_id,)

        status_history = claim.status_history
        if claim.status is not ClaimStatus.DISPUTED:
            status_history = self._transitioned(claim, ClaimStatus.DISPUTED, actor, details or dispute.value)

        updated = self._apply(
            claim,
            actor,
            ClaimReviewAction.ESCALATED,
            f"Dispute flagged: {dispute.value}",
            status=ClaimStatus.DISPUTED,
            status_history=status_history,
            dispute_status=dispute,
            competing_claim_ids=competing,
            release_hold=evolve(claim.release_hold, reason=hold_reason, set_by=actor, set_at=self.ctx.now()),
        )
        updated = self._refresh_two_person(updated)
        logger.info(f"Claim {claim.id} disputed ({dispute.value})")
        return Mutation(
            updated,
            (self._event(updated, EventType.OWNERSHIP_CLAIM_DISPUTED, actor,
                         {"dispute_status": dispute.value, "competing_claim_id": competing_claim_id}),),
        )

    def resolve_dispute(self, claim: OwnershipClaim, actor: UserId, role: RoleId, notes: str) -> Mutation[OwnershipClaim]:
        if claim.status is not ClaimStatus.DISPUTED:
            raise InvalidStateTransitionError(
                f"Claim {claim.id} is not disputed", current_state=claim.status.value
            )
        if not has_minimum_role(role, RoleId.LEAD_MODERATOR):
            raise PermissionDeniedError(f"Role {role.value} cannot resolve disputes")

        updated = self._apply(
            claim,
            actor,
            ClaimReviewAction.DEESCALATED,
            notes,
            role=role,
            status=ClaimStatus.UNDER_REVIEW,
            status_history=self._transitioned(claim, ClaimStatus.UNDER_REVIEW, actor, notes),
            dispute_status=DisputeStatus.RESOLVED,
            release_hold=evolve(
                claim.release_hold,
                reason=ReleaseHoldReason.PENDING_VERIFICATION,
                set_by=actor,
                set_at=self.ctx.now(),
            ),
        )
        updated = self._refresh_two_person(updated)
        return Mutation(updated, (self._event(updated, EventType.OWNERSHIP_DISPUTE_RESOLVED, actor, {"notes": notes}),))

    def withdraw_claim(self, claim: OwnershipClaim, actor: UserId, role: Optional[RoleId] = None) -> Mutation[OwnershipClaim]:
        if actor != claim.claimant_user_id and not has_minimum_role(role, RoleId.MODERATOR):
            raise PermissionDeniedError("Only the claimant or a moderator can withdraw a claim")
        self._ensure_open(claim, "withdraw")

        updated = self._apply(
            claim,
            actor,
            ClaimReviewAction.WITHDRAWN,
            "Claim withdrawn",
            role=role,
            status=ClaimStatus.WITHDRAWN,
            status_history=self._transitioned(claim, ClaimStatus.WITHDRAWN, actor, "Claim withdrawn"),
            release_hold=evolve(claim.release_hold, status=ReleaseHoldStatus.DENIED, set_by=actor, set_at=self.ctx.now()),
        )
        return Mutation(updated, (self._event(updated, EventType.OWNERSHIP_CLAIM_WITHDRAWN, actor),))

    # ---------- release hold ----------

    def approve_hold_clearance(self, claim: OwnershipClaim, approver: UserId, role: RoleId) -> Mutation[OwnershipClaim]:
        """Record one approver's sign-off on the release hold."""
        gate = can_clear_hold(claim, role, self.policy)
        if not gate.allowed:
            self._raise_gate(claim, gate, role)

        hold = claim.release_hold
        if approver in hold.approver_ids:
            raise InvalidStateTransitionError(
                f"{approver} has already approved this release; a second approver must be a different person",
                details={"approver": approver},
            )
        if approver == claim.claimant_user_id:
            raise PermissionDeniedError("Claimants cannot approve their own release")
        if len(hold.clearance_approvers) >= gate.approvals_required:
            raise InvalidStateTransitionError(
                f"Release hold already has the {gate.approvals_required} approval(s) it needs"
            )

        approval = ClearanceApproval(user_id=approver, role=role, approved_at=self.ctx.now())
        updated = self._apply(
            claim,
            approver,
            ClaimReviewAction.HOLD_APPROVED,
            f"Release approved by {approver} ({role.value})",
            role=role,
            release_hold=evolve(hold, clearance_approvers=hold.clearance_approvers + (approval,)),
        )
        logger.info(
            f"Release hold on claim {claim.id} approved by {approver} "
            f"({len(updated.release_hold.clearance_approvers)}/{gate.approvals_required})"
        )
        return Mutation(
            updated,
            (self._event(updated, EventType.RELEASE_HOLD_APPROVED, approver, {"role": role.value}),),
        )

    def clear_hold(self, claim: OwnershipClaim, actor: UserId, role: RoleId) -> Mutation[OwnershipClaim]:
        """Clear the release hold.

        The actor's own approval is added when missing. Raises unless every
        clearance condition holds; the resulting ReleaseHold re-validates
        the two-person invariant.
        """
        gate = can_clear_hold(claim, role, self.policy)
        if not gate.allowed:
            self._raise_gate(claim, gate, role)

        events: List[DomainEvent] = []
        current = claim
        hold = claim.release_hold
        if actor not in hold.approver_ids and len(hold.clearance_approvers) < gate.approvals_required:
            approved = self.approve_hold_clearance(claim, actor, role)
            current = approved.aggregate
            events.extend(approved.events)

        hold = current.release_hold
        distinct = len(set(hold.approver_ids))
        if distinct < gate.approvals_required:
            raise InvalidStateTransitionError(
                f"Release requires {gate.approvals_required} distinct approvers, {distinct} recorded",
                details={"approvers": list(hold.approver_ids)},
            )

        now = self.ctx.now()
        updated = self._apply(
            current,
            actor,
            ClaimReviewAction.HOLD_CLEARED,
            "Release hold cleared",
            role=role,
            release_hold=evolve(
                hold,
                status=ReleaseHoldStatus.CLEARED,
                reason=None,
                cleared_by=actor,
                cleared_at=now,
                requires_two_person_clearance=gate.requires_two_person,
            ),
        )
        logger.info(f"Release hold cleared on claim {claim.id} by {actor}; approvers={list(hold.approver_ids)}")
        events.append(
            self._event(updated, EventType.RELEASE_HOLD_CLEARED, actor,
                        {"approvers": list(hold.approver_ids), "two_person": gate.requires_two_person})
        )
        return Mutation(updated, tuple(events))

    def break_glass_release(
        self,
        claim: OwnershipClaim,
        grant: BreakGlassGrant,
        actor: UserId,
        role: RoleId,
        justification: str,
    ) -> BreakGlassRelease:
        """Clear a hold outside the evidence path under a release_override grant.

        The use is recorded on the grant itself, so the grant comes back
        with a new version and an access record alongside the claim.
        """
        min_role = self.ctx.config.break_glass.release_override_min_role
        if not has_minimum_role(role, min_role):
            raise PermissionDeniedError(f"Break-glass release requires {min_role.value} or above")

        now = self.ctx.now()
        if grant.requester_id != actor or not grant.is_valid_for(BreakGlassScope.RELEASE_OVERRIDE, now):
            raise BreakGlassRequiredError(
                "A granted, unexpired release_override break-glass held by the actor is required",
                {"break_glass_id": grant.id, "status": grant.status.value},
            )
        if claim.contradictions:
            raise InvalidStateTransitionError("Contradicted claims can never be released, even with break-glass")
        if claim.status in (ClaimStatus.REJECTED, ClaimStatus.WITHDRAWN):
            raise InvalidStateTransitionError(
                f"Claim {claim.id} is {claim.status.value}", current_state=claim.status.value
            )
        if claim.release_hold.status is not ReleaseHoldStatus.ACTIVE:
            raise InvalidStateTransitionError(
                f"Release hold is {claim.release_hold.status.value}",
                current_state=claim.release_hold.status.value,
            )

        grant_mutation = ApprovalService(self.ctx).record_access(
            grant, BreakGlassScope.RELEASE_OVERRIDE, "ownership_claim", claim.id, access_type="release"
        )

        hold = claim.release_hold
        updated = self._apply(
            claim,
            actor,
            ClaimReviewAction.HOLD_CLEARED,
            f"Break-glass release ({grant.id}): {justification}",
            role=role,
            release_hold=evolve(
                hold,
                status=ReleaseHoldStatus.CLEARED,
                reason=None,
                cleared_by=actor,
                cleared_at=now,
                break_glass_id=grant.id,
            ),
        )
        logger.warning(f"BREAK-GLASS release of claim {claim.id} by {actor} using {grant.id}: {justification}")
        return BreakGlassRelease(
            claim=Mutation(
                updated,
                (self._event(updated, EventType.RELEASE_HOLD_CLEARED, actor,
                             {"break_glass_id": grant.id, "justification": justification}),),
            ),
            grant=grant_mutation,
        )

    # ---------- internals ----------

    def _decide(
        self,
        claim: OwnershipClaim,
        decision: ClaimDecision,
        actor: UserId,
        role: Optional[RoleId],
    ) -> Mutation[OwnershipClaim]:
        verified = decision.outcome is DecisionOutcome.VERIFIED
        to_status = ClaimStatus.VERIFIED if verified else ClaimStatus.REJECTED
        changes = {}
        if not verified:
            changes["release_hold"] = evolve(
                claim.release_hold,
                status=ReleaseHoldStatus.DENIED,
                reason=ReleaseHoldReason.INSUFFICIENT_EVIDENCE,
                set_by=actor,
                set_at=decision.decided_at,
            )

        updated = self._apply(
            claim,
            actor,
            ClaimReviewAction.DECISION_MADE,
            decision.reasoning,
            role=role,
            status=to_status,
            status_history=self._transitioned(claim, to_status, actor, decision.reasoning),
            decision=decision,
            **changes,
        )
        updated = self._refresh_two_person(updated)
        logger.info(
            f"Claim {claim.id} {to_status.value} by {actor} at score {claim.total_score} "
            f"(release_authorized={decision.release_authorized})"
        )
        payload = {"score": claim.total_score, "release_authorized": decision.release_authorized}
        if decision.rejection_reason is not None:
            payload["rejection_reason"] = decision.rejection_reason.value
        event_type = EventType.OWNERSHIP_CLAIM_VERIFIED if verified else EventType.OWNERSHIP_CLAIM_REJECTED
        return Mutation(updated, (self._event(updated, event_type, actor, payload),))

    def _raise_gate(self, claim: OwnershipClaim, gate: HoldClearanceDecision, role: Optional[RoleId]) -> None:
        logger.warning(f"Release hold on claim {claim.id} blocked for role {role}: {gate.reason}")
        # Only the role was wrong when a qualifying role would have passed
        if can_clear_hold(claim, HOLD_APPROVER_MIN_ROLE, self.policy).allowed:
            raise PermissionDeniedError(gate.reason, {"required_actions": list(gate.required_actions)})
        raise InvalidStateTransitionError(
            gate.reason,
            current_state=claim.status.value,
            requested_state="hold_cleared",
            details={"required_actions": list(gate.required_actions)},
        )

    def _ensure_open(self, claim: OwnershipClaim, action: str) -> None:
        if claim.status.is_terminal:
            raise InvalidStateTransitionError(
                f"Cannot {action} on a {claim.status.value} claim", current_state=claim.status.value
            )

    def _rescored(self, evidence: Tuple[EvidenceItem, ...]) -> dict:
        total, breakdown = calculate_score(evidence, self.policy)
        return {
            "evidence": evidence,
            "total_score": total,
            "score_breakdown": breakdown,
            "score_calculated_at": self.ctx.now(),
        }

    def _refresh_two_person(self, claim: OwnershipClaim) -> OwnershipClaim:
        if claim.release_hold.status is not ReleaseHoldStatus.ACTIVE:
            return claim
        required = requires_two_person_clearance(claim, self.policy)
        if required == claim.release_hold.requires_two_person_clearance:
            return claim
        return evolve(claim, release_hold=evolve(claim.release_hold, requires_two_person_clearance=required))

    def _transitioned(
        self, claim: OwnershipClaim, to_status: ClaimStatus, actor: UserId, reason: str
    ) -> Tuple[ClaimStatusTransition, ...]:
        try:
            transition = ClaimStatusTransition(
                from_status=claim.status,
                to_status=to_status,
                triggered_at=self.ctx.now(),
                triggered_by=actor,
                reason=reason[:500],
            )
        except ValueError as e:
            raise InvalidStateTransitionError(
                str(e), current_state=claim.status.value, requested_state=to_status.value
            ) from e
        return claim.status_history + (transition,)

    def _apply(
        self,
        claim: OwnershipClaim,
        actor: UserId,
        action: ClaimReviewAction,
        details: str,
        role: Optional[RoleId] = None,
        **changes,
    ) -> OwnershipClaim:
        now = self.ctx.now()
        review = ClaimReviewEvent(
            id=self.ctx.new_id("rev"),
            timestamp=now,
            reviewer_id=actor,
            reviewer_role=role,
            action=action,
            details=details,
            previous_state=claim.status.value,
            new_state=changes.get("status", claim.status).value,
        )
        return evolve(
            claim,
            review_history=claim.review_history + (review,),
            audit=claim.audit.bumped(actor, now),
            **changes,
        )

    def _event(self, claim: OwnershipClaim, event_type: EventType, actor: UserId, payload: Optional[dict] = None) -> DomainEvent:
        return self.ctx.event(
            AggregateType.OWNERSHIP_CLAIM, claim.id, event_type, claim.audit.version, actor, payload
        )

    def _score_event(self, claim: OwnershipClaim, actor: UserId) -> DomainEvent:
        return self._event(
            claim,
            EventType.OWNERSHIP_SCORE_CALCULATED,
            actor,
            {"total_score": claim.total_score, "counted": sum(1 for e in claim.score_breakdown if e.counted)},
        )
