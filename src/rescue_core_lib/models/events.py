"""Audit event shape and the closed event vocabulary.

DomainEvent is the contract consumed by dashboards and compliance export:
{id, aggregate_type, aggregate_id, event_type, version, timestamp, actor,
correlation_id, payload}. Adding or renaming an EventType is a vocabulary
change and must bump EVENT_VOCABULARY_VERSION.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Generic, Optional, Tuple, TypeVar

from pydantic import Field

from rescue_core_lib.models.common import EventId, FrozenModel, UserId

EVENT_VOCABULARY_VERSION = 1


class AggregateType(str, Enum):
    OWNERSHIP_CLAIM = "ownership_claim"
    POTENTIAL_MATCH = "potential_match"
    DISPATCH_REQUEST = "dispatch_request"
    ON_CALL_SCHEDULE = "on_call_schedule"
    ON_CALL_ROTATION = "on_call_rotation"
    ESCALATION = "escalation"
    APPROVAL_REQUEST = "approval_request"
    BREAK_GLASS_GRANT = "break_glass_grant"
    ROLE_ASSIGNMENT = "role_assignment"


class EventType(str, Enum):
    # Claims & evidence
    OWNERSHIP_CLAIM_CREATED = "OwnershipClaimCreated"
    OWNERSHIP_EVIDENCE_ADDED = "OwnershipEvidenceAdded"
    OWNERSHIP_EVIDENCE_VERIFIED = "OwnershipEvidenceVerified"
    OWNERSHIP_SCORE_CALCULATED = "OwnershipScoreCalculated"
    OWNERSHIP_CLAIM_VERIFIED = "OwnershipClaimVerified"
    OWNERSHIP_CLAIM_REJECTED = "OwnershipClaimRejected"
    OWNERSHIP_CLAIM_DISPUTED = "OwnershipClaimDisputed"
    OWNERSHIP_DISPUTE_RESOLVED = "OwnershipDisputeResolved"
    OWNERSHIP_CLAIM_WITHDRAWN = "OwnershipClaimWithdrawn"
    OWNERSHIP_CONTRADICTION_RECORDED = "OwnershipContradictionRecorded"
    # Release hold
    RELEASE_HOLD_APPROVED = "ReleaseHoldApproved"
    RELEASE_HOLD_CLEARED = "ReleaseHoldCleared"
    # Matches
    MATCH_CREATED = "MatchCreated"
    MATCH_HUMAN_REVIEWED = "MatchHumanReviewed"
    MATCH_CHIP_VERIFIED = "MatchChipVerified"
    MATCH_NOTIFICATION_EVALUATED = "MatchNotificationEvaluated"
    MATCH_OWNER_NOTIFIED = "MatchOwnerNotified"
    MATCH_REUNIFICATION_UPDATED = "MatchReunificationUpdated"
    MATCH_EXPIRED = "MatchExpired"
    # Dispatch
    DISPATCH_CREATED = "DispatchCreated"
    DISPATCH_MATCHED = "DispatchMatched"
    DISPATCH_ASSIGNED = "DispatchAssigned"
    DISPATCH_ACCEPTED = "DispatchAccepted"
    DISPATCH_DECLINED = "DispatchDeclined"
    DISPATCH_STATUS_CHANGED = "DispatchStatusChanged"
    DISPATCH_NOTE_ADDED = "DispatchNoteAdded"
    # On-call
    ON_CALL_SCHEDULE_CREATED = "OnCallScheduleCreated"
    ON_CALL_ROTATION_CREATED = "OnCallRotationCreated"
    ON_CALL_ASSIGNMENT_ACKNOWLEDGED = "OnCallAssignmentAcknowledged"
    ON_CALL_SWAP_REQUESTED = "OnCallSwapRequested"
    FIELD_OPERATION_ESCALATED = "FieldOperationEscalated"
    ESCALATION_RESPONSE_RECORDED = "EscalationResponseRecorded"
    ESCALATION_TIER_ADVANCED = "EscalationTierAdvanced"
    ESCALATION_FAILED = "EscalationFailed"
    ESCALATION_RESOLVED = "EscalationResolved"
    ESCALATION_CANCELLED = "EscalationCancelled"
    # Approvals & break-glass
    APPROVAL_REQUESTED = "ApprovalRequested"
    APPROVAL_GRANTED = "ApprovalGranted"
    APPROVAL_COMPLETED = "ApprovalCompleted"
    APPROVAL_DENIED = "ApprovalDenied"
    APPROVAL_EXPIRED = "ApprovalExpired"
    ROLE_SUSPENDED = "RoleSuspended"
    ROLE_REVOKED = "RoleRevoked"
    ROLE_REINSTATED = "RoleReinstated"
    BREAK_GLASS_REQUESTED = "BreakGlassRequested"
    BREAK_GLASS_GRANTED = "BreakGlassGranted"
    BREAK_GLASS_DENIED = "BreakGlassDenied"
    BREAK_GLASS_USED = "BreakGlassUsed"
    BREAK_GLASS_REVOKED = "BreakGlassRevoked"


class DomainEvent(FrozenModel):
    """One append-only audit record.

    ``version`` is the aggregate version *after* the mutation that produced
    the event, so events for one aggregate can be ordered and deduplicated.
    """

    id: EventId
    aggregate_type: AggregateType
    aggregate_id: str
    event_type: EventType
    version: int = Field(ge=1)
    timestamp: datetime
    actor: UserId
    correlation_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    vocabulary_version: int = EVENT_VOCABULARY_VERSION


A = TypeVar("A")


@dataclass(frozen=True)
class Mutation(Generic[A]):
    """Result of a mutating operation: the new snapshot plus the events it emitted."""

    aggregate: A
    events: Tuple[DomainEvent, ...] = ()

    @property
    def event_types(self) -> Tuple[EventType, ...]:
        return tuple(e.event_type for e in self.events)
