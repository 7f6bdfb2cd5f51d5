"""Two-person approvals, break-glass grants and role assignments."""

from datetime import datetime
from enum import Enum
from typing import Optional, Tuple

from pydantic import Field, model_validator

from rescue_core_lib.auth.roles import RoleId
from rescue_core_lib.models.common import (
    ApprovalId,
    AuditMetadata,
    BreakGlassId,
    CaseId,
    FrozenModel,
    UserId,
)


# ============================================================
# Two-person approval
# ============================================================

class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class Approval(FrozenModel):
    user_id: UserId
    role: RoleId
    approved_at: datetime
    notes: Optional[str] = None


class TwoPersonApprovalRequest(FrozenModel):
    """Request for a high-risk action that needs distinct qualified approvers.

    The requester can never count as one of the approvers.
    """

    id: ApprovalId
    action: str
    requested_by: UserId
    requested_at: datetime
    target_resource_type: str
    target_resource_id: str
    required_approvals: int = Field(ge=2)
    approver_roles: Tuple[RoleId, ...]
    approvals: Tuple[Approval, ...] = ()
    timeout_at: datetime
    status: ApprovalStatus = ApprovalStatus.PENDING
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[UserId] = None
    resolution_notes: Optional[str] = None
    audit: AuditMetadata

    @model_validator(mode="after")
    def approvals_distinct(self):
        ids = [a.user_id for a in self.approvals]
        if len(set(ids)) != len(ids):
            raise ValueError("Each approver may approve only once")
        if self.requested_by in ids:
            raise ValueError("The requester cannot approve their own request")
        if self.status is ApprovalStatus.APPROVED and len(ids) < self.required_approvals:
            raise ValueError("An approved request needs the required number of distinct approvers")
        return self

    @property
    def approver_ids(self) -> Tuple[UserId, ...]:
        return tuple(a.user_id for a in self.approvals)


# ============================================================
# Break-glass
# ============================================================

class BreakGlassScope(str, Enum):
    PII = "pii"
    ADDRESS = "address"
    CONTACT = "contact"
    RELEASE_OVERRIDE = "release_override"


class BreakGlassReason(str, Enum):
    IMMEDIATE_SAFETY = "immediate_safety"
    OWNER_CONTACT_FAILED = "owner_contact_failed"
    LAW_ENFORCEMENT = "law_enforcement"
    VET_EMERGENCY = "vet_emergency"
    FRAUD_INVESTIGATION = "fraud_investigation"
    OTHER = "other"


class BreakGlassStatus(str, Enum):
    PENDING = "pending"
    GRANTED = "granted"
    DENIED = "denied"
    EXPIRED = "expired"
    REVOKED = "revoked"


class AccessRecord(FrozenModel):
    resource_type: str
    resource_id: str
    accessed_at: datetime
    access_type: str = Field(pattern="^(read|write)$")


class BreakGlassGrant(FrozenModel):
    id: BreakGlassId
    requester_id: UserId
    requested_at: datetime
    scopes: Tuple[BreakGlassScope, ...] = Field(min_length=1)
    reason: BreakGlassReason
    justification: str = Field(min_length=10, max_length=2000)
    case_id: Optional[CaseId] = None
    status: BreakGlassStatus = BreakGlassStatus.PENDING
    granted_at: Optional[datetime] = None
    granted_by: Optional[UserId] = None
    denied_at: Optional[datetime] = None
    denied_by: Optional[UserId] = None
    denial_reason: Optional[str] = None
    expires_at: datetime
    accessed_resources: Tuple[AccessRecord, ...] = ()
    audit: AuditMetadata

    @model_validator(mode="after")
    def granted_has_grantor(self):
        if self.status is BreakGlassStatus.GRANTED and (self.granted_at is None or self.granted_by is None):
            raise ValueError("A granted break-glass must record who granted it and when")
        if self.granted_by is not None and self.granted_by == self.requester_id:
            raise ValueError("Break-glass cannot be self-granted")
        return self

    def is_valid_for(self, scope: BreakGlassScope, at: datetime) -> bool:
        return self.status is BreakGlassStatus.GRANTED and at < self.expires_at and scope in self.scopes


# ============================================================
# Role assignments
# ============================================================

class RoleAssignmentStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    REVOKED = "revoked"


class RoleAssignment(FrozenModel):
    """A role held by a user, suspended or revoked only under two-person control."""

    id: str
    user_id: UserId
    role: RoleId
    status: RoleAssignmentStatus = RoleAssignmentStatus.ACTIVE
    granted_at: datetime
    granted_by: UserId
    approval_id: Optional[ApprovalId] = Field(default=None, description="Approval that authorized the last status change")
    status_approvers: Tuple[UserId, ...] = ()
    consumed_approval_ids: Tuple[ApprovalId, ...] = Field(default=(), description="Approvals already applied; each authorizes one change")
    status_changed_at: Optional[datetime] = None
    status_reason: Optional[str] = None
    audit: AuditMetadata

    @model_validator(mode="after")
    def status_change_needs_two_approvers(self):
        if self.status is not RoleAssignmentStatus.ACTIVE:
            if len(set(self.status_approvers)) < 2 or self.approval_id is None:
                raise ValueError(
                    f"A {self.status.value} role requires an approval with two distinct approvers"
                )
        return self
