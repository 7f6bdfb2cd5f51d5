"""
Domain models for the operations core.

All aggregates are frozen Pydantic models; services return new validated
snapshots together with the DomainEvents the change produced.
"""

from rescue_core_lib.models.approvals import (
    BreakGlassGrant,
    BreakGlassReason,
    BreakGlassScope,
    RoleAssignment,
    TwoPersonApprovalRequest,
)
from rescue_core_lib.models.claims import (
    ClaimStatus,
    ClaimantIdentity,
    EvidenceItem,
    EvidenceSubmission,
    EvidenceType,
    OwnershipClaim,
    ReleaseHold,
    ReleaseHoldStatus,
)
from rescue_core_lib.models.common import (
    SYSTEM_ACTOR,
    AuditMetadata,
    CaseId,
    ClaimId,
    DispatchId,
    EscalationId,
    GeoLocation,
    MatchId,
    UserId,
    evolve,
)
from rescue_core_lib.models.dispatch import (
    DispatchPriority,
    DispatchRequest,
    DispatchStatus,
    VolunteerDispatchProfile,
    VolunteerMatch,
)
from rescue_core_lib.models.events import AggregateType, DomainEvent, EventType, Mutation
from rescue_core_lib.models.matches import MatchGateStatus, NotificationDecision, PotentialMatch
from rescue_core_lib.models.on_call import Escalation, EscalationStatus, OnCallRotation, OnCallSchedule

__all__ = [
    # Common
    "SYSTEM_ACTOR", "AuditMetadata", "CaseId", "ClaimId", "DispatchId", "EscalationId",
    "GeoLocation", "MatchId", "UserId", "evolve",
    # Events
    "AggregateType", "DomainEvent", "EventType", "Mutation",
    # Claims
    "ClaimStatus", "ClaimantIdentity", "EvidenceItem", "EvidenceSubmission", "EvidenceType",
    "OwnershipClaim", "ReleaseHold", "ReleaseHoldStatus",
    # Matches
    "MatchGateStatus", "NotificationDecision", "PotentialMatch",
    # Dispatch
    "DispatchPriority", "DispatchRequest", "DispatchStatus", "VolunteerDispatchProfile", "VolunteerMatch",
    # On-call
    "Escalation", "EscalationStatus", "OnCallRotation", "OnCallSchedule",
    # Approvals
    "BreakGlassGrant", "BreakGlassReason", "BreakGlassScope", "RoleAssignment", "TwoPersonApprovalRequest",
]
