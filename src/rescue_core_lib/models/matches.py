"""Potential lost/found match models.

An owner must never hear about an unverified match. The PotentialMatch
validator makes any post-notification gate status unrepresentable unless a
non-rejecting human review is on record.
"""

from datetime import datetime
from enum import Enum
from typing import Optional, Tuple

from pydantic import Field, model_validator

from rescue_core_lib.models.common import AuditMetadata, FrozenModel, MatchId, UserId


class MatchConfidenceLevel(str, Enum):
    UNVERIFIED = "unverified"
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    HUMAN_VERIFIED = "human_verified"
    OWNER_CONFIRMED = "owner_confirmed"
    CHIP_VERIFIED = "chip_verified"
    FALSE_POSITIVE = "false_positive"


class MatchGateStatus(str, Enum):
    PENDING_ANALYSIS = "pending_analysis"
    PENDING_HUMAN_REVIEW = "pending_human_review"
    PENDING_OWNER_CONTACT = "pending_owner_contact"
    OWNER_NOTIFIED = "owner_notified"
    REUNIFICATION_IN_PROGRESS = "reunification_in_progress"
    REUNIFICATION_COMPLETE = "reunification_complete"
    REJECTED_FALSE_POSITIVE = "rejected_false_positive"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (
            MatchGateStatus.REUNIFICATION_COMPLETE,
            MatchGateStatus.REJECTED_FALSE_POSITIVE,
            MatchGateStatus.EXPIRED,
        )


# Statuses from which an owner may be (or already has been) contacted
NOTIFIABLE_STATUSES = frozenset({
    MatchGateStatus.PENDING_OWNER_CONTACT,
    MatchGateStatus.OWNER_NOTIFIED,
    MatchGateStatus.REUNIFICATION_IN_PROGRESS,
})

_POST_NOTIFICATION_STATUSES = frozenset({
    MatchGateStatus.OWNER_NOTIFIED,
    MatchGateStatus.REUNIFICATION_IN_PROGRESS,
    MatchGateStatus.REUNIFICATION_COMPLETE,
})


class MatchEventType(str, Enum):
    AI_ANALYSIS = "ai_analysis"
    HUMAN_REVIEW = "human_review"
    OWNER_CONTACT = "owner_contact"
    CHIP_SCAN = "chip_scan"
    REUNIFICATION = "reunification"
    EXPIRATION = "expiration"


class ReviewDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    NEEDS_MORE_INFO = "needs_more_info"


class MatchingFactor(FrozenModel):
    factor: str = Field(min_length=1)
    weight: float = Field(gt=0, le=100)
    matched: bool
    details: str = ""


class MatchVerificationEvent(FrozenModel):
    id: str
    timestamp: datetime
    event_type: MatchEventType
    actor: UserId
    previous_status: MatchGateStatus
    new_status: MatchGateStatus
    notes: str = ""
    decision: Optional[ReviewDecision] = None

    @property
    def is_supporting_human_review(self) -> bool:
        return (
            self.event_type is MatchEventType.HUMAN_REVIEW
            and self.decision is not ReviewDecision.REJECT
            and self.new_status is not MatchGateStatus.REJECTED_FALSE_POSITIVE
        )


class PotentialMatch(FrozenModel):
    id: MatchId
    lost_report_id: str
    found_report_id: str
    sighting_id: Optional[str] = None
    created_at: datetime

    confidence_level: MatchConfidenceLevel
    gate_status: MatchGateStatus
    ai_confidence_score: int = Field(ge=0, le=100)
    matching_factors: Tuple[MatchingFactor, ...]
    verification_history: Tuple[MatchVerificationEvent, ...] = ()

    owner_notification_blocked: bool = True
    block_reason: Optional[str] = "Awaiting verification"
    audit: AuditMetadata

    @model_validator(mode="after")
    def notified_requires_human_review(self):
        if self.gate_status in _POST_NOTIFICATION_STATUSES and not self.has_human_review:
            raise ValueError(
                f"Match cannot be {self.gate_status.value} without a non-rejecting human review"
            )
        return self

    @property
    def has_human_review(self) -> bool:
        return any(e.is_supporting_human_review for e in self.verification_history)

    @property
    def has_chip_verification(self) -> bool:
        return any(
            e.event_type is MatchEventType.CHIP_SCAN
            and e.new_status is not MatchGateStatus.REJECTED_FALSE_POSITIVE
            for e in self.verification_history
        )

    def factor(self, name: str) -> Optional[MatchingFactor]:
        for f in self.matching_factors:
            if f.factor == name:
                return f
        return None


# ============================================================
# Gate results
# ============================================================

class NotificationGate(str, Enum):
    NOT_BLOCKED = "not_blocked"
    CONFIDENCE_THRESHOLD = "confidence_threshold"
    HUMAN_REVIEW = "human_review"
    GATE_STATUS = "gate_status"
    SPECIES_MATCH = "species_match"


class NotificationDecision(FrozenModel):
    allowed: bool
    reason: str
    required_actions: Tuple[str, ...] = ()
    gates_passed: Tuple[NotificationGate, ...] = ()
    gates_failed: Tuple[NotificationGate, ...] = ()


class FalseHopeAuditKind(str, Enum):
    GATE_CHECK = "gate_check"
    NOTIFICATION_BLOCKED = "notification_blocked"
    NOTIFICATION_ALLOWED = "notification_allowed"
    FALSE_POSITIVE_PREVENTED = "false_positive_prevented"


class FalseHopeAuditEntry(FrozenModel):
    """Proof, after the fact, of which gates a notification attempt passed."""

    id: str
    timestamp: datetime
    match_id: MatchId
    kind: FalseHopeAuditKind
    actor: UserId
    details: str
    ai_confidence_score: int
    gate_status: MatchGateStatus
    gates_passed: Tuple[NotificationGate, ...]
    gates_failed: Tuple[NotificationGate, ...]
