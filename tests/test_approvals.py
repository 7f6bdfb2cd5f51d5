"""Tests for two-person approvals, break-glass grants and role status changes."""

from datetime import timedelta

import pytest
from conftest import START

from rescue_core_lib.auth.roles import RoleId
from rescue_core_lib.core.approvals import ROLE_ASSIGNMENT_RESOURCE, ApprovalService, is_satisfied
from rescue_core_lib.errors import (
    BreakGlassRequiredError,
    InvalidStateTransitionError,
    PermissionDeniedError,
    ValidationFailedError,
)
from rescue_core_lib.models.approvals import (
    ApprovalStatus,
    BreakGlassReason,
    BreakGlassScope,
    BreakGlassStatus,
    RoleAssignment,
    RoleAssignmentStatus,
)
from rescue_core_lib.models.common import SYSTEM_ACTOR, UserId, evolve, new_audit
from rescue_core_lib.models.events import EventType

REQUESTER = UserId("lead-1")
LEAD_A = UserId("lead-2")
LEAD_B = UserId("lead-3")
REGIONAL = UserId("regional-1")


@pytest.fixture
def service(ctx):
    return ApprovalService(ctx)


@pytest.fixture
def transporter_role():
    return RoleAssignment(
        id="ra-1",
        user_id=UserId("vol-9"),
        role=RoleId.TRANSPORTER,
        granted_at=START - timedelta(days=90),
        granted_by=REGIONAL,
        audit=new_audit(REGIONAL, START - timedelta(days=90)),
    )


@pytest.fixture
def suspend_request(service):
    return service.request_approval("volunteer.suspend", REQUESTER, ROLE_ASSIGNMENT_RESOURCE, "ra-1").aggregate


def _approved(service, request):
    request = service.approve(request, LEAD_A, RoleId.LEAD_MODERATOR).aggregate
    return service.approve(request, LEAD_B, RoleId.REGIONAL_COORDINATOR).aggregate


class TestTwoPersonApproval:
    def test_request_uses_rule(self, suspend_request):
        assert suspend_request.required_approvals == 2
        assert RoleId.MODERATOR not in suspend_request.approver_roles
        assert suspend_request.timeout_at == START + timedelta(minutes=60)

    def test_unknown_action_rejected(self, service):
        with pytest.raises(ValidationFailedError):
            service.request_approval("volunteer.promote", REQUESTER, ROLE_ASSIGNMENT_RESOURCE, "ra-1")

    def test_two_distinct_approvers_complete(self, service, suspend_request):
        first = service.approve(suspend_request, LEAD_A, RoleId.LEAD_MODERATOR)
        assert first.aggregate.status is ApprovalStatus.PENDING
        assert first.event_types == (EventType.APPROVAL_GRANTED,)

        second = service.approve(first.aggregate, LEAD_B, RoleId.LEAD_MODERATOR)
        assert second.aggregate.status is ApprovalStatus.APPROVED
        assert second.event_types == (EventType.APPROVAL_GRANTED, EventType.APPROVAL_COMPLETED)
        assert is_satisfied(second.aggregate) is True

    def test_requester_cannot_approve(self, service, suspend_request):
        with pytest.raises(PermissionDeniedError):
            service.approve(suspend_request, REQUESTER, RoleId.LEAD_MODERATOR)

    def test_role_must_be_listed(self, service, suspend_request):
        with pytest.raises(PermissionDeniedError):
            service.approve(suspend_request, LEAD_A, RoleId.MODERATOR)

    def test_same_approver_counts_once(self, service, suspend_request):
        once = service.approve(suspend_request, LEAD_A, RoleId.LEAD_MODERATOR).aggregate
        with pytest.raises(InvalidStateTransitionError):
            service.approve(once, LEAD_A, RoleId.LEAD_MODERATOR)

    def test_timeout(self, service, suspend_request, clock):
        clock.advance(minutes=60)
        with pytest.raises(InvalidStateTransitionError):
            service.approve(suspend_request, LEAD_A, RoleId.LEAD_MODERATOR)

        expired = service.expire_if_due(suspend_request)
        assert expired.aggregate.status is ApprovalStatus.EXPIRED
        assert expired.event_types == (EventType.APPROVAL_EXPIRED,)

    def test_not_expired_before_timeout(self, service, suspend_request):
        assert service.expire_if_due(suspend_request).events == ()

    def test_denial_is_final(self, service, suspend_request):
        denied = service.deny(suspend_request, LEAD_A, RoleId.LEAD_MODERATOR, "Insufficient cause").aggregate
        assert denied.status is ApprovalStatus.DENIED
        assert is_satisfied(denied) is False
        with pytest.raises(InvalidStateTransitionError):
            service.approve(denied, LEAD_B, RoleId.LEAD_MODERATOR)


class TestBreakGlass:
    def test_life_safety_is_auto_granted(self, service):
        mutation = service.request_break_glass(
            UserId("mod-1"), [BreakGlassScope.ADDRESS], BreakGlassReason.IMMEDIATE_SAFETY,
            "Dog locked in a hot car, need finder address",
        )
        grant = mutation.aggregate
        assert grant.status is BreakGlassStatus.GRANTED
        assert grant.granted_by == SYSTEM_ACTOR
        assert grant.expires_at == START + timedelta(minutes=30)
        assert mutation.event_types == (EventType.BREAK_GLASS_REQUESTED, EventType.BREAK_GLASS_GRANTED)

    def test_release_override_never_auto_granted(self, service):
        grant = service.request_break_glass(
            UserId("mod-1"), [BreakGlassScope.RELEASE_OVERRIDE], BreakGlassReason.VET_EMERGENCY,
            "Animal needs surgery tonight",
        ).aggregate
        assert grant.status is BreakGlassStatus.PENDING

    def test_ttl_capped(self, service):
        grant = service.request_break_glass(
            UserId("mod-1"), [BreakGlassScope.PII], BreakGlassReason.FRAUD_INVESTIGATION,
            "Repeated claims from the same phone", ttl_minutes=500,
        ).aggregate
        assert grant.expires_at == START + timedelta(minutes=120)

    def test_cannot_self_grant(self, service):
        grant = service.request_break_glass(
            REGIONAL, [BreakGlassScope.PII], BreakGlassReason.OTHER, "Need to check owner records",
        ).aggregate
        with pytest.raises(PermissionDeniedError):
            service.grant_break_glass(grant, REGIONAL, RoleId.REGIONAL_COORDINATOR)

    def test_lead_cannot_grant(self, service):
        grant = service.request_break_glass(
            UserId("mod-1"), [BreakGlassScope.PII], BreakGlassReason.OTHER, "Need to check owner records",
        ).aggregate
        with pytest.raises(PermissionDeniedError):
            service.grant_break_glass(grant, LEAD_A, RoleId.LEAD_MODERATOR)

    def test_deny(self, service):
        grant = service.request_break_glass(
            UserId("mod-1"), [BreakGlassScope.PII], BreakGlassReason.OTHER, "Need to check owner records",
        ).aggregate
        denied = service.deny_break_glass(grant, REGIONAL, RoleId.REGIONAL_COORDINATOR, "Not urgent").aggregate
        assert denied.status is BreakGlassStatus.DENIED
        assert denied.is_valid_for(BreakGlassScope.PII, START) is False

    def test_access_is_logged_and_scoped(self, service, clock):
        grant = service.request_break_glass(
            UserId("mod-1"), [BreakGlassScope.CONTACT], BreakGlassReason.VET_EMERGENCY,
            "Vet needs to reach the finder now",
        ).aggregate
        used = service.record_access(grant, BreakGlassScope.CONTACT, "case", "case-7")
        assert len(used.aggregate.accessed_resources) == 1
        assert used.event_types == (EventType.BREAK_GLASS_USED,)

        with pytest.raises(BreakGlassRequiredError):
            service.record_access(grant, BreakGlassScope.PII, "case", "case-7")

        clock.advance(minutes=30)
        with pytest.raises(BreakGlassRequiredError):
            service.record_access(used.aggregate, BreakGlassScope.CONTACT, "case", "case-7")

    def test_requester_may_revoke_own_grant(self, service):
        grant = service.request_break_glass(
            UserId("mod-1"), [BreakGlassScope.ADDRESS], BreakGlassReason.IMMEDIATE_SAFETY,
            "Dog locked in a hot car, need finder address",
        ).aggregate
        revoked = service.revoke_break_glass(grant, UserId("mod-1"), RoleId.MODERATOR, "Resolved").aggregate
        assert revoked.status is BreakGlassStatus.REVOKED
        with pytest.raises(BreakGlassRequiredError):
            service.record_access(revoked, BreakGlassScope.ADDRESS, "case", "case-7")

    def test_others_need_approver_role_to_revoke(self, service):
        grant = service.request_break_glass(
            UserId("mod-1"), [BreakGlassScope.ADDRESS], BreakGlassReason.IMMEDIATE_SAFETY,
            "Dog locked in a hot car, need finder address",
        ).aggregate
        with pytest.raises(PermissionDeniedError):
            service.revoke_break_glass(grant, LEAD_A, RoleId.LEAD_MODERATOR, "Overreach")


class TestRoleStatus:
    def test_suspension_needs_completed_approval(self, service, transporter_role, suspend_request):
        with pytest.raises(PermissionDeniedError):
            service.suspend_role(transporter_role, suspend_request, REQUESTER, "No-show twice")

    def test_suspend_and_reinstate(self, service, transporter_role, suspend_request):
        approval = _approved(service, suspend_request)
        suspended = service.suspend_role(transporter_role, approval, REQUESTER, "No-show twice")
        role = suspended.aggregate
        assert role.status is RoleAssignmentStatus.SUSPENDED
        assert role.status_approvers == (LEAD_A, LEAD_B)
        assert role.approval_id == approval.id
        assert suspended.event_types == (EventType.ROLE_SUSPENDED,)

        with pytest.raises(InvalidStateTransitionError):
            service.suspend_role(role, approval, REQUESTER, "again")

        with pytest.raises(PermissionDeniedError):
            service.reinstate_role(role, UserId("mod-1"), RoleId.MODERATOR, "Apologised")
        reinstated = service.reinstate_role(role, LEAD_A, RoleId.LEAD_MODERATOR, "Apologised").aggregate
        assert reinstated.status is RoleAssignmentStatus.ACTIVE
        assert reinstated.approval_id is None
        assert reinstated.consumed_approval_ids == (approval.id,)

    def test_approval_cannot_resuspend_after_reinstatement(self, service, transporter_role, suspend_request):
        approval = _approved(service, suspend_request)
        role = service.suspend_role(transporter_role, approval, REQUESTER, "No-show twice").aggregate
        role = service.reinstate_role(role, LEAD_A, RoleId.LEAD_MODERATOR, "Apologised").aggregate

        with pytest.raises(InvalidStateTransitionError):
            service.suspend_role(role, approval, REQUESTER, "No-show again")

        fresh = service.request_approval("volunteer.suspend", REQUESTER, ROLE_ASSIGNMENT_RESOURCE, "ra-1").aggregate
        resuspended = service.suspend_role(role, _approved(service, fresh), REQUESTER, "No-show again").aggregate
        assert resuspended.status is RoleAssignmentStatus.SUSPENDED
        assert len(resuspended.consumed_approval_ids) == 2

    def test_approval_must_match_action(self, service, transporter_role, suspend_request):
        approval = _approved(service, suspend_request)
        with pytest.raises(ValidationFailedError):
            service.revoke_role(transporter_role, approval, REQUESTER, "Fraud")

    def test_approval_must_target_assignment(self, service, transporter_role):
        request = service.request_approval("volunteer.suspend", REQUESTER, ROLE_ASSIGNMENT_RESOURCE, "ra-2").aggregate
        approval = _approved(service, request)
        with pytest.raises(ValidationFailedError):
            service.suspend_role(transporter_role, approval, REQUESTER, "No-show")

    def test_moderators_use_moderator_rule(self, transporter_role):
        moderator = evolve(transporter_role, role=RoleId.MODERATOR)
        assert ApprovalService.suspension_action(moderator) == "moderator.suspend"
        assert ApprovalService.suspension_action(transporter_role) == "volunteer.suspend"

    def test_revoked_role_is_final(self, service, transporter_role):
        request = service.request_approval("volunteer.revoke", REQUESTER, ROLE_ASSIGNMENT_RESOURCE, "ra-1").aggregate
        request = service.approve(request, REGIONAL, RoleId.REGIONAL_COORDINATOR).aggregate
        approval = service.approve(request, UserId("admin-1"), RoleId.FOUNDATION_ADMIN).aggregate
        revoked = service.revoke_role(transporter_role, approval, REQUESTER, "Fraud").aggregate
        assert revoked.status is RoleAssignmentStatus.REVOKED

        with pytest.raises(InvalidStateTransitionError):
            service.reinstate_role(revoked, REGIONAL, RoleId.REGIONAL_COORDINATOR, "Appeal")
