"""Ownership claim models.

Releasing an animal to the wrong person is unrecoverable, so the release
hold carries its own invariants: a hold can only be *represented* as cleared
when the clearing conditions were met. Scoring and gating logic lives in
``rescue_core_lib.core.evidence``.

Key Models:
- OwnershipClaim: claim aggregate with evidence, score, hold and decision
- EvidenceItem: one piece of ownership proof with a type-defined base score
- ReleaseHold: blocking flag preventing physical handoff until cleared
- ClaimDecision: verified/rejected outcome with release authorization
"""

from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional, Tuple

from pydantic import Field, model_validator

from rescue_core_lib.auth.roles import RoleId
from rescue_core_lib.models.common import (
    Address,
    AuditMetadata,
    BreakGlassId,
    CaseId,
    ClaimId,
    FrozenModel,
    UserId,
)


# ============================================================
# Status & Lifecycle
# ============================================================

class ClaimStatus(str, Enum):
    """
    Claim lifecycle status.

    Lifecycle Flow:
      PENDING → UNDER_REVIEW → VERIFIED (terminal)
              ↘ EVIDENCE_REQUESTED ↗    → REJECTED (terminal)
              ↘ DISPUTED                → WITHDRAWN (terminal)

    A VERIFIED claim is only usable once its release hold is cleared. A
    contradiction discovered before handoff may still move it to REJECTED.
    """

    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    EVIDENCE_REQUESTED = "evidence_requested"
    VERIFIED = "verified"
    REJECTED = "rejected"
    DISPUTED = "disputed"
    WITHDRAWN = "withdrawn"

    @property
    def is_terminal(self) -> bool:
        return self in (ClaimStatus.VERIFIED, ClaimStatus.REJECTED, ClaimStatus.WITHDRAWN)


_OPEN_TARGETS = [
    ClaimStatus.UNDER_REVIEW,
    ClaimStatus.EVIDENCE_REQUESTED,
    ClaimStatus.VERIFIED,
    ClaimStatus.REJECTED,
    ClaimStatus.DISPUTED,
    ClaimStatus.WITHDRAWN,
]

CLAIM_TRANSITIONS = {
    ClaimStatus.PENDING: _OPEN_TARGETS,
    ClaimStatus.UNDER_REVIEW: [s for s in _OPEN_TARGETS if s is not ClaimStatus.UNDER_REVIEW],
    ClaimStatus.EVIDENCE_REQUESTED: [s for s in _OPEN_TARGETS if s is not ClaimStatus.EVIDENCE_REQUESTED],
    ClaimStatus.DISPUTED: [
        ClaimStatus.UNDER_REVIEW,
        ClaimStatus.VERIFIED,
        ClaimStatus.REJECTED,
        ClaimStatus.WITHDRAWN,
    ],
    ClaimStatus.VERIFIED: [ClaimStatus.REJECTED],
    ClaimStatus.REJECTED: [],
    ClaimStatus.WITHDRAWN: [],
}


def is_valid_claim_transition(from_status: ClaimStatus, to_status: ClaimStatus) -> bool:
    return to_status in CLAIM_TRANSITIONS.get(from_status, [])


class DisputeStatus(str, Enum):
    NONE = "none"
    COMPETING_CLAIM = "competing_claim"
    EVIDENCE_CONFLICT = "evidence_conflict"
    FRAUD_SUSPECTED = "fraud_suspected"
    UNDER_INVESTIGATION = "under_investigation"
    RESOLVED = "resolved"

    @property
    def is_active(self) -> bool:
        return self not in (DisputeStatus.NONE, DisputeStatus.RESOLVED)


class ClaimStatusTransition(FrozenModel):
    """Record of one status change."""

    from_status: ClaimStatus
    to_status: ClaimStatus
    triggered_at: datetime
    triggered_by: UserId
    reason: str = Field(max_length=500)

    @model_validator(mode="after")
    def validate_transition(self):
        if not is_valid_claim_transition(self.from_status, self.to_status):
            raise ValueError(f"Invalid transition: {self.from_status.value} → {self.to_status.value}")
        return self


# ============================================================
# Evidence
# ============================================================

class EvidenceType(str, Enum):
    MICROCHIP_REGISTRATION = "microchip_registration"
    OWNER_PREREG_PROFILE_MATCH = "owner_prereg_profile_match"
    VET_RECORDS = "vet_records"
    ADOPTION_PAPERS = "adoption_papers"
    PURCHASE_RECEIPT = "purchase_receipt"
    PET_LICENSE = "pet_license"
    INSURANCE_POLICY = "insurance_policy"
    DATED_PHOTO_WITH_PET = "dated_photo_with_pet"
    UNDATED_PHOTO_WITH_PET = "undated_photo_with_pet"
    KNOWLEDGE_TEST = "knowledge_test"
    WITNESS_STATEMENT = "witness_statement"
    SOCIAL_MEDIA_HISTORY = "social_media_history"
    OTHER = "other"


class VerificationStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"
    EXPIRED = "expired"


class MicrochipDetails(FrozenModel):
    chip_number: str = Field(min_length=1, max_length=32)
    chip_format: Optional[str] = None
    registries_checked: Tuple[str, ...] = ()
    found_in_registry: Optional[str] = None
    registered_owner_match: Optional[
        Literal["confirmed", "mismatch", "not_found", "registry_error"]
    ] = None


class EvidenceSubmission(FrozenModel):
    """Evidence as submitted, before id, score and verification are assigned."""

    type: EvidenceType
    description: str = Field(min_length=1, max_length=2000)
    submitted_by: UserId
    document_ref: Optional[str] = Field(default=None, description="Opaque reference into the evidence store")
    microchip: Optional[MicrochipDetails] = None

    @model_validator(mode="after")
    def require_chip_details(self):
        if self.type is EvidenceType.MICROCHIP_REGISTRATION and self.microchip is None:
            raise ValueError("microchip_registration evidence requires microchip details")
        return self


class EvidenceItem(FrozenModel):
    id: str
    type: EvidenceType
    description: str
    document_ref: Optional[str] = None
    submitted_by: UserId
    submitted_at: datetime
    verification_status: VerificationStatus = VerificationStatus.PENDING
    verified_by: Optional[UserId] = None
    verified_at: Optional[datetime] = None
    verification_notes: Optional[str] = None
    score: int = Field(ge=0, description="Raw score before caps and verification")
    microchip: Optional[MicrochipDetails] = None


class ScoreAdjustment(FrozenModel):
    reason: str
    amount: int


class EvidenceScoreEntry(FrozenModel):
    evidence_id: str
    evidence_type: EvidenceType
    base_score: int
    adjustments: Tuple[ScoreAdjustment, ...] = ()
    final_score: int
    counted: bool


# ============================================================
# Identity
# ============================================================

class ClaimantIdentity(FrozenModel):
    full_name: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    email: str = Field(min_length=3)
    address: Optional[Address] = None
    id_verified: bool = False
    id_type: Optional[Literal["drivers_license", "state_id", "passport", "military_id"]] = None
    id_last4: Optional[str] = Field(default=None, min_length=4, max_length=4, description="Never the full ID")


# ============================================================
# Release Hold
# ============================================================

class ReleaseHoldStatus(str, Enum):
    ACTIVE = "active"
    CLEARED = "cleared"
    DENIED = "denied"


class ReleaseHoldReason(str, Enum):
    INSUFFICIENT_EVIDENCE = "insufficient_evidence"
    PENDING_VERIFICATION = "pending_verification"
    DISPUTE = "dispute"
    SUSPECTED_FRAUD = "suspected_fraud"
    LAW_ENFORCEMENT = "law_enforcement"
    PENDING_CHIP_SCAN = "pending_chip_scan"
    COMPETING_CLAIM = "competing_claim"
    KNOWLEDGE_TEST_FAILED = "knowledge_test_failed"
    CONTRADICTION = "contradiction"
    OTHER = "other"


class ClearanceApproval(FrozenModel):
    user_id: UserId
    role: RoleId
    approved_at: datetime


class ReleaseHold(FrozenModel):
    """Blocking flag preventing physical handoff.

    A CLEARED hold always names who cleared it and when. When two-person
    clearance is required (and the hold was not cleared through break-glass)
    exactly two approvals from distinct identities must be present.
    """

    status: ReleaseHoldStatus = ReleaseHoldStatus.ACTIVE
    reason: Optional[ReleaseHoldReason] = ReleaseHoldReason.PENDING_VERIFICATION
    set_by: Optional[UserId] = None
    set_at: Optional[datetime] = None
    cleared_by: Optional[UserId] = None
    cleared_at: Optional[datetime] = None
    clearance_approvers: Tuple[ClearanceApproval, ...] = ()
    requires_two_person_clearance: bool = False
    break_glass_id: Optional[BreakGlassId] = None

    @model_validator(mode="after")
    def validate_clearance(self):
        approver_ids = [a.user_id for a in self.clearance_approvers]
        if len(set(approver_ids)) != len(approver_ids):
            raise ValueError("A release-hold approver may only sign off once")

        if self.status is ReleaseHoldStatus.CLEARED:
            if self.cleared_by is None or self.cleared_at is None:
                raise ValueError("A cleared hold must record who cleared it and when")
            if self.break_glass_id is None:
                if not self.clearance_approvers:
                    raise ValueError("A cleared hold needs at least one approver")
                if self.requires_two_person_clearance and len(self.clearance_approvers) != 2:
                    raise ValueError(
                        "Two-person clearance requires exactly two distinct approvers"
                    )
        return self

    @property
    def approver_ids(self) -> List[UserId]:
        return [a.user_id for a in self.clearance_approvers]


# ============================================================
# Decision, review log, contradictions
# ============================================================

class DecisionOutcome(str, Enum):
    VERIFIED = "verified"
    REJECTED = "rejected"


class RejectionReason(str, Enum):
    INSUFFICIENT_EVIDENCE = "insufficient_evidence"
    EVIDENCE_CONTRADICTED = "evidence_contradicted"
    SUSPECTED_FRAUD = "suspected_fraud"
    FAILED_KNOWLEDGE_TEST = "failed_knowledge_test"
    DISPUTE_UNRESOLVED = "dispute_unresolved"
    CLAIMANT_WITHDREW = "claimant_withdrew"
    MICROCHIP_MISMATCH = "microchip_mismatch"
    ID_VERIFICATION_FAILED = "id_verification_failed"


class ClaimDecision(FrozenModel):
    outcome: DecisionOutcome
    decided_by: UserId
    decider_role: Optional[RoleId] = Field(default=None, description="None for system auto-verification")
    decided_at: datetime
    reasoning: str
    score_at_decision: int
    release_authorized: bool = False
    rejection_reason: Optional[RejectionReason] = None
    conditions: Tuple[str, ...] = ()

    @model_validator(mode="after")
    def rejected_never_authorizes_release(self):
        if self.outcome is DecisionOutcome.REJECTED:
            if self.release_authorized:
                raise ValueError("A rejection cannot authorize release")
            if self.rejection_reason is None:
                raise ValueError("A rejection must state its reason")
        return self


class ClaimReviewAction(str, Enum):
    EVIDENCE_ADDED = "evidence_added"
    EVIDENCE_VERIFIED = "evidence_verified"
    EVIDENCE_REJECTED = "evidence_rejected"
    SCORE_CALCULATED = "score_calculated"
    HOLD_SET = "hold_set"
    HOLD_APPROVED = "hold_approved"
    HOLD_CLEARED = "hold_cleared"
    ESCALATED = "escalated"
    DEESCALATED = "deescalated"
    DECISION_MADE = "decision_made"
    CONTRADICTION_RECORDED = "contradiction_recorded"
    WITHDRAWN = "withdrawn"


class ClaimReviewEvent(FrozenModel):
    id: str
    timestamp: datetime
    reviewer_id: UserId
    reviewer_role: Optional[RoleId] = None
    action: ClaimReviewAction
    details: str
    previous_state: Optional[str] = None
    new_state: Optional[str] = None


class ContradictionKind(str, Enum):
    SPECIES_MISMATCH = "species_mismatch"
    MICROCHIP_MISMATCH = "microchip_mismatch"
    IDENTITY_MISMATCH = "identity_mismatch"


class Contradiction(FrozenModel):
    kind: ContradictionKind
    recorded_by: UserId
    recorded_at: datetime
    details: str = ""


class VerificationStep(str, Enum):
    CLAIMANT_IDENTITY_VERIFIED = "claimant_identity_verified"
    MICROCHIP_SCAN_REQUESTED = "microchip_scan_requested"
    MICROCHIP_LOOKUP_COMPLETED = "microchip_lookup_completed"
    VET_RECORDS_REQUESTED = "vet_records_requested"
    VET_CONTACTED = "vet_contacted"
    PHOTOS_COMPARED = "photos_compared"
    DISTINCTIVE_MARKS_VERIFIED = "distinctive_marks_verified"
    KNOWLEDGE_TEST_ADMINISTERED = "knowledge_test_administered"
    PREREG_PROFILE_CHECKED = "prereg_profile_checked"
    DISPUTE_RESOLVED = "dispute_resolved"
    LEAD_REVIEW_COMPLETED = "lead_review_completed"
    FINAL_REVIEW_COMPLETED = "final_review_completed"


# ============================================================
# Claim aggregate
# ============================================================

class OwnershipClaim(FrozenModel):
    """Assertion of ownership over a recovered animal."""

    id: ClaimId
    case_id: CaseId
    animal_id: Optional[str] = None

    claimant_user_id: UserId
    claimant_identity: ClaimantIdentity
    claimed_at: datetime

    status: ClaimStatus = ClaimStatus.PENDING
    release_hold: ReleaseHold

    evidence: Tuple[EvidenceItem, ...] = ()
    total_score: int = Field(default=0, ge=0)
    score_breakdown: Tuple[EvidenceScoreEntry, ...] = ()
    score_calculated_at: Optional[datetime] = None

    linked_prereg_profile_id: Optional[str] = None

    dispute_status: DisputeStatus = DisputeStatus.NONE
    competing_claim_ids: Tuple[ClaimId, ...] = ()
    contradictions: Tuple[Contradiction, ...] = ()

    decision: Optional[ClaimDecision] = None

    review_history: Tuple[ClaimReviewEvent, ...] = ()
    status_history: Tuple[ClaimStatusTransition, ...] = ()
    audit: AuditMetadata

    @model_validator(mode="after")
    def cleared_hold_requires_authorized_verification(self):
        hold = self.release_hold
        if hold.status is ReleaseHoldStatus.CLEARED and hold.break_glass_id is None:
            if self.status is not ClaimStatus.VERIFIED:
                raise ValueError("A release hold can only be cleared on a verified claim")
            if self.decision is None or not self.decision.release_authorized:
                raise ValueError("A release hold can only be cleared when the decision authorizes release")
        return self

    @property
    def has_active_dispute(self) -> bool:
        return self.dispute_status.is_active

    @property
    def has_competing_claims(self) -> bool:
        return len(self.competing_claim_ids) > 0

    def evidence_by_id(self, evidence_id: str) -> Optional[EvidenceItem]:
        for item in self.evidence:
            if item.id == evidence_id:
                return item
        return None
