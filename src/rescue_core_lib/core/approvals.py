"""Two-person approvals, break-glass grants and role status changes.

A two-person request is satisfied only by ``required_approvals`` distinct
approvers holding one of the rule's approver roles, none of whom is the
requester. Break-glass grants are time-boxed and scoped; the
``release_override`` scope is never auto-granted.
"""

import logging
from datetime import timedelta
from typing import Iterable, Optional

from rescue_core_lib.auth.roles import MODERATOR_TIER, RoleId, has_minimum_role, parse_role
from rescue_core_lib.core.context import OperationsContext
from rescue_core_lib.errors import (
    BreakGlassRequiredError,
    InvalidStateTransitionError,
    PermissionDeniedError,
    ValidationFailedError,
)
from rescue_core_lib.models.approvals import (
    AccessRecord,
    Approval,
    ApprovalStatus,
    BreakGlassGrant,
    BreakGlassReason,
    BreakGlassScope,
    BreakGlassStatus,
    RoleAssignment,
    RoleAssignmentStatus,
    TwoPersonApprovalRequest,
)
from rescue_core_lib.models.common import SYSTEM_ACTOR, ApprovalId, BreakGlassId, CaseId, UserId, evolve, new_audit
from rescue_core_lib.models.events import AggregateType, DomainEvent, EventType, Mutation

logger = logging.getLogger(__name__)

ROLE_ASSIGNMENT_RESOURCE = "role_assignment"


def is_satisfied(request: TwoPersonApprovalRequest) -> bool:
    return request.status is ApprovalStatus.APPROVED and len(set(request.approver_ids)) >= request.required_approvals


class ApprovalService:
    def __init__(self, ctx: OperationsContext):
        self.ctx = ctx

    # ============================================================
    # Two-person approvals
    # ============================================================

    def request_approval(
        self,
        action: str,
        requested_by: UserId,
        target_resource_type: str,
        target_resource_id: str,
    ) -> Mutation[TwoPersonApprovalRequest]:
        rule = self.ctx.config.approvals.rule_for(action)
        if rule is None:
            raise ValidationFailedError(f"No two-person rule for action '{action}'", {"action": action})

        now = self.ctx.now()
        request = TwoPersonApprovalRequest(
            id=ApprovalId(self.ctx.new_id("apr")),
            action=action,
            requested_by=requested_by,
            requested_at=now,
            target_resource_type=target_resource_type,
            target_resource_id=target_resource_id,
            required_approvals=rule.required_approvals,
            approver_roles=rule.approver_roles,
            timeout_at=now + timedelta(minutes=rule.timeout_minutes),
            audit=new_audit(requested_by, now),
        )
        logger.info(f"Approval {request.id} requested for {action} on {target_resource_type} {target_resource_id}")
        return Mutation(
            request,
            (self._approval_event(request, EventType.APPROVAL_REQUESTED, requested_by,
                                  {"action": action, "target_resource_id": target_resource_id}),),
        )

    def approve(
        self,
        request: TwoPersonApprovalRequest,
        approver: UserId,
        role: RoleId,
        notes: Optional[str] = None,
    ) -> Mutation[TwoPersonApprovalRequest]:
        self._ensure_pending(request, ApprovalStatus.APPROVED)
        now = self.ctx.now()
        if now >= request.timeout_at:
            raise InvalidStateTransitionError(
                f"Approval {request.id} timed out at {request.timeout_at.isoformat()}",
                current_state=request.status.value,
                requested_state=ApprovalStatus.APPROVED.value,
            )
        self._check_approver(request, approver, role)
        if approver in request.approver_ids:
            raise InvalidStateTransitionError(
                f"User {approver} already approved {request.id}",
                current_state=request.status.value,
                requested_state=ApprovalStatus.APPROVED.value,
            )

        approvals = request.approvals + (Approval(user_id=approver, role=parse_role(role), approved_at=now, notes=notes),)
        changes = {"approvals": approvals}
        complete = len(approvals) >= request.required_approvals
        if complete:
            changes.update(status=ApprovalStatus.APPROVED, resolved_at=now, resolved_by=approver)

        updated = evolve(request, audit=request.audit.bumped(approver, now), **changes)
        events = [self._approval_event(updated, EventType.APPROVAL_GRANTED, approver, {"approvals": len(approvals)})]
        if complete:
            events.append(self._approval_event(updated, EventType.APPROVAL_COMPLETED, approver))
            logger.info(f"Approval {request.id} complete for {request.action}")
        return Mutation(updated, tuple(events))

    def deny(self, request: TwoPersonApprovalRequest, denier: UserId, role: RoleId, reason: str) -> Mutation[TwoPersonApprovalRequest]:
        self._ensure_pending(request, ApprovalStatus.DENIED)
        self._check_approver(request, denier, role)
        now = self.ctx.now()
        updated = evolve(
            request,
            status=ApprovalStatus.DENIED,
            resolved_at=now,
            resolved_by=denier,
            resolution_notes=reason,
            audit=request.audit.bumped(denier, now),
        )
        logger.info(f"Approval {request.id} denied by {denier}: {reason}")
        return Mutation(updated, (self._approval_event(updated, EventType.APPROVAL_DENIED, denier, {"reason": reason}),))

    def expire_if_due(self, request: TwoPersonApprovalRequest) -> Mutation[TwoPersonApprovalRequest]:
        """Expire a pending request past its timeout; otherwise return it unchanged."""
        now = self.ctx.now()
        if request.status is not ApprovalStatus.PENDING or now < request.timeout_at:
            return Mutation(request, ())
        updated = evolve(
            request,
            status=ApprovalStatus.EXPIRED,
            resolved_at=now,
            resolved_by=SYSTEM_ACTOR,
            audit=request.audit.bumped(SYSTEM_ACTOR, now),
        )
        logger.info(f"Approval {request.id} expired with {len(request.approvals)}/{request.required_approvals} approvals")
        return Mutation(updated, (self._approval_event(updated, EventType.APPROVAL_EXPIRED, SYSTEM_ACTOR),))

    # ============================================================
    # Break-glass
    # ============================================================

    def request_break_glass(
        self,
        requester: UserId,
        scopes: Iterable[BreakGlassScope],
        reason: BreakGlassReason,
        justification: str,
        case_id: Optional[CaseId] = None,
        ttl_minutes: Optional[int] = None,
    ) -> Mutation[BreakGlassGrant]:
        """Open a break-glass request.

        Life-safety reasons are granted immediately by the system, unless a
        release override is among the requested scopes.
        """
        policy = self.ctx.config.break_glass
        scopes = tuple(scopes)
        ttl = min(ttl_minutes or policy.default_ttl_minutes, policy.max_ttl_minutes)
        now = self.ctx.now()

        auto_grant = reason.value in policy.auto_grant_reasons and BreakGlassScope.RELEASE_OVERRIDE not in scopes
        grant = BreakGlassGrant(
            id=BreakGlassId(self.ctx.new_id("bg")),
            requester_id=requester,
            requested_at=now,
            scopes=scopes,
            reason=reason,
            justification=justification,
            case_id=case_id,
            status=BreakGlassStatus.GRANTED if auto_grant else BreakGlassStatus.PENDING,
            granted_at=now if auto_grant else None,
            granted_by=SYSTEM_ACTOR if auto_grant else None,
            expires_at=now + timedelta(minutes=ttl),
            audit=new_audit(requester, now),
        )

        logger.warning(
            f"Break-glass {grant.id} requested by {requester} for {[s.value for s in scopes]} "
            f"({reason.value}); {'auto-granted' if auto_grant else 'awaiting approval'}"
        )
        events = [self._grant_event(grant, EventType.BREAK_GLASS_REQUESTED, requester,
                                    {"scopes": [s.value for s in scopes], "reason": reason.value, "ttl_minutes": ttl})]
        if auto_grant:
            events.append(self._grant_event(grant, EventType.BREAK_GLASS_GRANTED, SYSTEM_ACTOR, {"auto": True}))
        return Mutation(grant, tuple(events))

    def grant_break_glass(self, grant: BreakGlassGrant, approver: UserId, role: RoleId) -> Mutation[BreakGlassGrant]:
        self._ensure_grant_pending(grant, BreakGlassStatus.GRANTED)
        self._check_break_glass_approver(grant, approver, role)
        now = self.ctx.now()
        ttl = grant.expires_at - grant.requested_at
        updated = evolve(
            grant,
            status=BreakGlassStatus.GRANTED,
            granted_at=now,
            granted_by=approver,
            expires_at=now + ttl,
            audit=grant.audit.bumped(approver, now),
        )
        logger.warning(f"Break-glass {grant.id} granted by {approver} until {updated.expires_at.isoformat()}")
        return Mutation(updated, (self._grant_event(updated, EventType.BREAK_GLASS_GRANTED, approver),))

    def deny_break_glass(self, grant: BreakGlassGrant, approver: UserId, role: RoleId, reason: str) -> Mutation[BreakGlassGrant]:
        self._ensure_grant_pending(grant, BreakGlassStatus.DENIED)
        self._check_break_glass_approver(grant, approver, role)
        now = self.ctx.now()
        updated = evolve(
            grant,
            status=BreakGlassStatus.DENIED,
            denied_at=now,
            denied_by=approver,
            denial_reason=reason,
            audit=grant.audit.bumped(approver, now),
        )
        logger.info(f"Break-glass {grant.id} denied by {approver}: {reason}")
        return Mutation(updated, (self._grant_event(updated, EventType.BREAK_GLASS_DENIED, approver, {"reason": reason}),))

    def revoke_break_glass(self, grant: BreakGlassGrant, actor: UserId, role: RoleId, reason: str) -> Mutation[BreakGlassGrant]:
        """Withdraw a live grant. The requester may always give up their own access."""
        if grant.status is not BreakGlassStatus.GRANTED:
            raise InvalidStateTransitionError(
                f"Break-glass {grant.id} is {grant.status.value}",
                current_state=grant.status.value,
                requested_state=BreakGlassStatus.REVOKED.value,
            )
        if actor != grant.requester_id and not has_minimum_role(role, self.ctx.config.break_glass.approver_min_role):
            raise PermissionDeniedError(f"Role {role} cannot revoke break-glass grants")
        now = self.ctx.now()
        updated = evolve(
            grant,
            status=BreakGlassStatus.REVOKED,
            denial_reason=reason,
            audit=grant.audit.bumped(actor, now),
        )
        logger.warning(f"Break-glass {grant.id} revoked by {actor}: {reason}")
        return Mutation(updated, (self._grant_event(updated, EventType.BREAK_GLASS_REVOKED, actor, {"reason": reason}),))

    def record_access(
        self,
        grant: BreakGlassGrant,
        scope: BreakGlassScope,
        resource_type: str,
        resource_id: str,
        access_type: str = "read",
    ) -> Mutation[BreakGlassGrant]:
        """Log one use of a grant. Every access is auditable after the fact."""
        now = self.ctx.now()
        if not grant.is_valid_for(scope, now):
            raise BreakGlassRequiredError(
                f"Break-glass {grant.id} does not currently authorize {scope.value}",
                {"break_glass_id": grant.id, "status": grant.status.value, "scope": scope.value},
            )
        record = AccessRecord(
            resource_type=resource_type, resource_id=resource_id, accessed_at=now, access_type=access_type
        )
        updated = evolve(
            grant,
            accessed_resources=grant.accessed_resources + (record,),
            audit=grant.audit.bumped(grant.requester_id, now),
        )
        logger.warning(f"Break-glass {grant.id} used: {access_type} {resource_type} {resource_id}")
        return Mutation(
            updated,
            (self._grant_event(updated, EventType.BREAK_GLASS_USED, grant.requester_id,
                               {"scope": scope.value, "resource_type": resource_type,
                                "resource_id": resource_id, "access_type": access_type}),),
        )

    # ============================================================
    # Role status
    # ============================================================

    @staticmethod
    def suspension_action(assignment: RoleAssignment) -> str:
        return "moderator.suspend" if assignment.role in MODERATOR_TIER else "volunteer.suspend"

    def suspend_role(
        self, assignment: RoleAssignment, approval: TwoPersonApprovalRequest, actor: UserId, reason: str
    ) -> Mutation[RoleAssignment]:
        return self._change_role_status(
            assignment, approval, actor, reason,
            RoleAssignmentStatus.SUSPENDED, self.suspension_action(assignment), EventType.ROLE_SUSPENDED,
        )

    def revoke_role(
        self, assignment: RoleAssignment, approval: TwoPersonApprovalRequest, actor: UserId, reason: str
    ) -> Mutation[RoleAssignment]:
        return self._change_role_status(
            assignment, approval, actor, reason,
            RoleAssignmentStatus.REVOKED, "volunteer.revoke", EventType.ROLE_REVOKED,
        )

    def reinstate_role(self, assignment: RoleAssignment, actor: UserId, role: RoleId, reason: str) -> Mutation[RoleAssignment]:
        """Lift a suspension. Revoked roles stay revoked."""
        if assignment.status is not RoleAssignmentStatus.SUSPENDED:
            raise InvalidStateTransitionError(
                f"Only suspended roles can be reinstated; role is {assignment.status.value}",
                current_state=assignment.status.value,
                requested_state=RoleAssignmentStatus.ACTIVE.value,
            )
        if not has_minimum_role(role, RoleId.LEAD_MODERATOR):
            raise PermissionDeniedError(f"Role {role} cannot reinstate roles")
        now = self.ctx.now()
        updated = evolve(
            assignment,
            status=RoleAssignmentStatus.ACTIVE,
            approval_id=None,
            status_approvers=(),
            status_changed_at=now,
            status_reason=reason,
            audit=assignment.audit.bumped(actor, now),
        )
        logger.info(f"Role {assignment.role.value} reinstated for {assignment.user_id} by {actor}")
        return Mutation(updated, (self._role_event(updated, EventType.ROLE_REINSTATED, actor, {"reason": reason}),))

    # ---------- internals ----------

    def _change_role_status(
        self,
        assignment: RoleAssignment,
        approval: TwoPersonApprovalRequest,
        actor: UserId,
        reason: str,
        new_status: RoleAssignmentStatus,
        action: str,
        event_type: EventType,
    ) -> Mutation[RoleAssignment]:
        if assignment.status is RoleAssignmentStatus.REVOKED:
            raise InvalidStateTransitionError(
                "Revoked roles cannot change status",
                current_state=assignment.status.value,
                requested_state=new_status.value,
            )
        if approval.action != action:
            raise ValidationFailedError(
                f"Approval {approval.id} is for '{approval.action}', not '{action}'",
                {"approval_id": approval.id},
            )
        if approval.target_resource_type != ROLE_ASSIGNMENT_RESOURCE or approval.target_resource_id != assignment.id:
            raise ValidationFailedError(
                f"Approval {approval.id} targets a different resource",
                {"approval_id": approval.id, "assignment_id": assignment.id},
            )
        if not is_satisfied(approval):
            raise PermissionDeniedError(
                f"{action} requires a completed two-person approval",
                {"approval_id": approval.id, "status": approval.status.value},
            )
        if approval.id in assignment.consumed_approval_ids:
            raise InvalidStateTransitionError(
                f"Approval {approval.id} was already applied",
                current_state=assignment.status.value,
                requested_state=new_status.value,
            )

        now = self.ctx.now()
        updated = evolve(
            assignment,
            status=new_status,
            approval_id=approval.id,
            status_approvers=approval.approver_ids,
            consumed_approval_ids=assignment.consumed_approval_ids + (approval.id,),
            status_changed_at=now,
            status_reason=reason,
            audit=assignment.audit.bumped(actor, now),
        )
        logger.info(
            f"Role {assignment.role.value} for {assignment.user_id} {new_status.value} "
            f"(approval {approval.id}, approvers {list(approval.approver_ids)})"
        )
        return Mutation(
            updated,
            (self._role_event(updated, event_type, actor, {"approval_id": approval.id, "reason": reason}),),
        )

    @staticmethod
    def _ensure_pending(request: TwoPersonApprovalRequest, requested: ApprovalStatus) -> None:
        if request.status is not ApprovalStatus.PENDING:
            raise InvalidStateTransitionError(
                f"Approval {request.id} is {request.status.value}",
                current_state=request.status.value,
                requested_state=requested.value,
            )

    @staticmethod
    def _check_approver(request: TwoPersonApprovalRequest, approver: UserId, role: RoleId) -> None:
        if approver == request.requested_by:
            raise PermissionDeniedError("The requester cannot act on their own approval request")
        if parse_role(role) not in request.approver_roles:
            raise PermissionDeniedError(
                f"Role {role} cannot approve {request.action}",
                {"approver_roles": [r.value for r in request.approver_roles]},
            )

    @staticmethod
    def _ensure_grant_pending(grant: BreakGlassGrant, requested: BreakGlassStatus) -> None:
        if grant.status is not BreakGlassStatus.PENDING:
            raise InvalidStateTransitionError(
                f"Break-glass {grant.id} is {grant.status.value}",
                current_state=grant.status.value,
                requested_state=requested.value,
            )

    def _check_break_glass_approver(self, grant: BreakGlassGrant, approver: UserId, role: RoleId) -> None:
        if approver == grant.requester_id:
            raise PermissionDeniedError("Break-glass cannot be self-granted")
        if not has_minimum_role(role, self.ctx.config.break_glass.approver_min_role):
            raise PermissionDeniedError(f"Role {role} cannot decide break-glass requests")

    def _approval_event(self, request: TwoPersonApprovalRequest, event_type: EventType, actor: UserId,
                        payload: Optional[dict] = None) -> DomainEvent:
        return self.ctx.event(AggregateType.APPROVAL_REQUEST, request.id, event_type, request.audit.version, actor, payload)

    def _grant_event(self, grant: BreakGlassGrant, event_type: EventType, actor: UserId,
                     payload: Optional[dict] = None) -> DomainEvent:
        return self.ctx.event(AggregateType.BREAK_GLASS_GRANT, grant.id, event_type, grant.audit.version, actor, payload)

    def _role_event(self, assignment: RoleAssignment, event_type: EventType, actor: UserId,
                    payload: Optional[dict] = None) -> DomainEvent:
        return self.ctx.event(AggregateType.ROLE_ASSIGNMENT, assignment.id, event_type, assignment.audit.version, actor, payload)
