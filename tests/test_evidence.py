"""Tests for evidence scoring and the release-hold gate."""

from datetime import timedelta

import pytest
from conftest import START, submission

from rescue_core_lib.auth.roles import RoleId
from rescue_core_lib.core.approvals import ApprovalService
from rescue_core_lib.core.evidence import (
    ClaimService,
    calculate_score,
    can_clear_hold,
    get_approval_threshold,
    get_required_verification_steps,
    requires_two_person_clearance,
)
from rescue_core_lib.errors import (
    BreakGlassRequiredError,
    InvalidStateTransitionError,
    PermissionDeniedError,
    ValidationFailedError,
)
from rescue_core_lib.models.approvals import BreakGlassReason, BreakGlassScope
from rescue_core_lib.models.claims import (
    ClaimStatus,
    ContradictionKind,
    DecisionOutcome,
    DisputeStatus,
    EvidenceItem,
    EvidenceType,
    RejectionReason,
    ReleaseHoldReason,
    ReleaseHoldStatus,
    VerificationStatus,
    VerificationStep,
)
from rescue_core_lib.models.common import CaseId, UserId
from rescue_core_lib.models.events import EventType

CLAIMANT = UserId("claimant-1")
MOD_A = UserId("mod-a")
MOD_B = UserId("mod-b")


def _item(evidence_type, score, status=VerificationStatus.VERIFIED, item_id=None):
    return EvidenceItem(
        id=item_id or f"ev-{evidence_type.value}-{score}",
        type=evidence_type,
        description="test",
        submitted_by=CLAIMANT,
        submitted_at=START,
        verification_status=status,
        score=score,
    )


@pytest.fixture
def service(ctx):
    return ClaimService(ctx)


@pytest.fixture
def claim(service, identity):
    return service.create_claim(CaseId("case-1"), CLAIMANT, identity).aggregate


def _add_verified(service, claim, evidence_type):
    claim = service.add_evidence(claim, submission(evidence_type), CLAIMANT).aggregate
    item = claim.evidence[-1]
    if item.verification_status is VerificationStatus.PENDING:
        claim = service.verify_evidence(claim, item.id, MOD_A, RoleId.MODERATOR, accepted=True).aggregate
    return claim


class TestCalculateScore:
    def test_verified_microchip_scores_80(self, config):
        total, breakdown = calculate_score([_item(EvidenceType.MICROCHIP_REGISTRATION, 80)], config.evidence)
        assert total == 80
        assert breakdown[0].counted is True

    def test_dated_photos_capped_at_three_best(self, config):
        photos = [
            _item(EvidenceType.DATED_PHOTO_WITH_PET, score, item_id=f"photo-{n}")
            for n, score in enumerate([20, 12, 20, 15, 20])
        ]
        total, breakdown = calculate_score(photos, config.evidence)

        counted = [entry for entry in breakdown if entry.counted]
        assert total == 60
        assert len(counted) == 3
        assert all(entry.base_score == 20 for entry in counted)

    def test_unverified_evidence_does_not_count(self, config):
        total, _ = calculate_score(
            [_item(EvidenceType.VET_RECORDS, 40, status=VerificationStatus.PENDING)], config.evidence
        )
        assert total == 0

    def test_knowledge_test_counts_without_verification(self, config):
        total, _ = calculate_score(
            [_item(EvidenceType.KNOWLEDGE_TEST, 15, status=VerificationStatus.PENDING)], config.evidence
        )
        assert total == 15

    def test_evidence_beyond_cap_never_changes_total(self, config):
        base = [_item(EvidenceType.VET_RECORDS, 40, item_id="vet-1")]
        before, _ = calculate_score(base, config.evidence)
        after, _ = calculate_score(base + [_item(EvidenceType.VET_RECORDS, 40, item_id="vet-2")], config.evidence)
        assert before == after == 40

    def test_total_non_decreasing_as_verified_evidence_added(self, config):
        items = []
        previous = 0
        for evidence_type, points in [
            (EvidenceType.PET_LICENSE, 30),
            (EvidenceType.WITNESS_STATEMENT, 10),
            (EvidenceType.DATED_PHOTO_WITH_PET, 20),
        ]:
            items.append(_item(evidence_type, points))
            total, _ = calculate_score(items, config.evidence)
            assert total >= previous
            previous = total


class TestApprovalThreshold:
    def test_standard_score_moderator_can_approve(self, config):
        threshold = get_approval_threshold(80, disputed=False, policy=config.evidence)
        assert RoleId.MODERATOR in threshold.can_approve
        assert threshold.requires_lead_review is False

    def test_dispute_forces_lead_review(self, config):
        threshold = get_approval_threshold(80, disputed=True, policy=config.evidence)
        assert RoleId.MODERATOR not in threshold.can_approve
        assert RoleId.LEAD_MODERATOR in threshold.can_approve

    def test_below_reject_threshold(self, config):
        assert get_approval_threshold(10, disputed=False, policy=config.evidence).auto_reject is True


class TestClaimLifecycle:
    def test_microchip_claim_clearable_by_one_moderator(self, service, claim, config):
        claim = _add_verified(service, claim, EvidenceType.MICROCHIP_REGISTRATION)
        assert claim.total_score == 80
        assert claim.status is ClaimStatus.UNDER_REVIEW

        claim = service.record_decision(
            claim, MOD_A, RoleId.MODERATOR, DecisionOutcome.VERIFIED, "Chip confirmed", release_authorized=True
        ).aggregate
        gate = can_clear_hold(claim, RoleId.MODERATOR, config.evidence)
        assert gate.allowed is True
        assert gate.requires_two_person is False
        assert requires_two_person_clearance(claim, config.evidence) is False

        mutation = service.clear_hold(claim, MOD_A, RoleId.MODERATOR)
        hold = mutation.aggregate.release_hold
        assert hold.status is ReleaseHoldStatus.CLEARED
        assert hold.approver_ids == [MOD_A]
        assert mutation.event_types == (EventType.RELEASE_HOLD_APPROVED, EventType.RELEASE_HOLD_CLEARED)

    def test_new_claim_starts_blocked(self, claim, config):
        assert claim.release_hold.status is ReleaseHoldStatus.ACTIVE
        gate = can_clear_hold(claim, RoleId.FOUNDATION_ADMIN, config.evidence)
        assert gate.allowed is False
        assert "verified" in gate.reason
        assert gate.required_actions

    def test_low_score_needs_two_distinct_approvers(self, service, claim, config):
        claim = _add_verified(service, claim, EvidenceType.VET_RECORDS)
        assert claim.total_score == 40
        claim = service.record_decision(
            claim, UserId("lead-1"), RoleId.LEAD_MODERATOR, DecisionOutcome.VERIFIED, "Vet confirmed",
            release_authorized=True,
        ).aggregate
        assert can_clear_hold(claim, RoleId.MODERATOR, config.evidence).requires_two_person is True

        with pytest.raises(InvalidStateTransitionError):
            service.clear_hold(claim, MOD_A, RoleId.MODERATOR)

        claim = service.approve_hold_clearance(claim, MOD_A, RoleId.MODERATOR).aggregate
        with pytest.raises(InvalidStateTransitionError):
            service.approve_hold_clearance(claim, MOD_A, RoleId.MODERATOR)

        cleared = service.clear_hold(claim, MOD_B, RoleId.MODERATOR).aggregate
        assert cleared.release_hold.status is ReleaseHoldStatus.CLEARED
        assert cleared.release_hold.approver_ids == [MOD_A, MOD_B]
        assert cleared.release_hold.requires_two_person_clearance is True

    def test_junior_moderator_cannot_clear(self, service, claim):
        claim = _add_verified(service, claim, EvidenceType.MICROCHIP_REGISTRATION)
        claim = service.record_decision(
            claim, MOD_A, RoleId.MODERATOR, DecisionOutcome.VERIFIED, "ok", release_authorized=True
        ).aggregate
        with pytest.raises(PermissionDeniedError):
            service.clear_hold(claim, UserId("junior"), RoleId.JUNIOR_MODERATOR)

    def test_moderator_cannot_verify_disputed_claim(self, service, claim):
        claim = _add_verified(service, claim, EvidenceType.MICROCHIP_REGISTRATION)
        claim = service.flag_dispute(claim, MOD_A, DisputeStatus.COMPETING_CLAIM, competing_claim_id="claim-9").aggregate
        with pytest.raises(PermissionDeniedError):
            service.record_decision(claim, MOD_A, RoleId.MODERATOR, DecisionOutcome.VERIFIED, "ok")

    def test_claimant_cannot_verify_own_evidence(self, service, claim):
        claim = service.add_evidence(claim, submission(EvidenceType.VET_RECORDS), CLAIMANT).aggregate
        with pytest.raises(PermissionDeniedError):
            service.verify_evidence(claim, claim.evidence[0].id, CLAIMANT, RoleId.MODERATOR, accepted=True)

    def test_verifying_unknown_evidence_is_validation_error(self, service, claim):
        with pytest.raises(ValidationFailedError):
            service.verify_evidence(claim, "missing", MOD_A, RoleId.MODERATOR, accepted=True)

    def test_input_snapshot_is_never_modified(self, service, claim):
        service.add_evidence(claim, submission(EvidenceType.VET_RECORDS), CLAIMANT)
        assert claim.evidence == ()
        assert claim.audit.version == 1

    def test_versions_increase_by_one(self, service, claim):
        updated = service.add_evidence(claim, submission(EvidenceType.VET_RECORDS), CLAIMANT)
        assert updated.aggregate.audit.version == 2
        assert all(event.version == 2 for event in updated.events)
        assert all(event.correlation_id == "corr-1" for event in updated.events)


class TestAutoVerify:
    def test_high_score_auto_verifies_but_keeps_hold(self, service, claim):
        claim = _add_verified(service, claim, EvidenceType.MICROCHIP_REGISTRATION)
        claim = _add_verified(service, claim, EvidenceType.KNOWLEDGE_TEST)
        assert claim.total_score == 95

        mutation = service.auto_verify(claim)
        assert mutation.aggregate.status is ClaimStatus.VERIFIED
        assert mutation.aggregate.release_hold.status is ReleaseHoldStatus.ACTIVE
        assert mutation.event_types == (EventType.OWNERSHIP_CLAIM_VERIFIED,)

    def test_ineligible_claim_unchanged(self, service, claim):
        mutation = service.auto_verify(claim)
        assert mutation.aggregate is claim
        assert mutation.events == ()


class TestContradictions:
    def test_contradiction_hard_rejects(self, service, claim, config):
        claim = _add_verified(service, claim, EvidenceType.MICROCHIP_REGISTRATION)
        mutation = service.record_contradiction(claim, ContradictionKind.MICROCHIP_MISMATCH, MOD_A, "chip differs")

        rejected = mutation.aggregate
        assert rejected.status is ClaimStatus.REJECTED
        assert rejected.decision.rejection_reason is RejectionReason.MICROCHIP_MISMATCH
        assert rejected.release_hold.status is ReleaseHoldStatus.DENIED
        assert can_clear_hold(rejected, RoleId.FOUNDATION_ADMIN, config.evidence).allowed is False


class TestVerificationSteps:
    def test_low_score_adds_knowledge_test_and_vet_contact(self, claim, config):
        steps = get_required_verification_steps(claim, config.evidence)
        assert steps[0] is VerificationStep.CLAIMANT_IDENTITY_VERIFIED
        assert VerificationStep.KNOWLEDGE_TEST_ADMINISTERED in steps
        assert VerificationStep.VET_CONTACTED in steps
        assert steps[-1] is VerificationStep.FINAL_REVIEW_COMPLETED


class TestBreakGlassRelease:
    def test_requires_granted_release_override(self, service, claim, ctx, clock):
        approvals = ApprovalService(ctx)
        requester = UserId("regional-1")
        grant = approvals.request_break_glass(
            requester, [BreakGlassScope.RELEASE_OVERRIDE], BreakGlassReason.IMMEDIATE_SAFETY,
            "Animal in danger at current location",
        ).aggregate
        # Release overrides are never auto-granted
        with pytest.raises(BreakGlassRequiredError):
            service.break_glass_release(claim, grant, requester, RoleId.REGIONAL_COORDINATOR, "safety")

        granted = approvals.grant_break_glass(grant, UserId("admin-1"), RoleId.FOUNDATION_ADMIN)
        grant = granted.aggregate
        release = service.break_glass_release(claim, grant, requester, RoleId.REGIONAL_COORDINATOR, "safety")
        assert release.claim.aggregate.release_hold.status is ReleaseHoldStatus.CLEARED
        assert release.claim.aggregate.release_hold.break_glass_id == grant.id
        assert release.claim.event_types == (EventType.RELEASE_HOLD_CLEARED,)

        used = release.grant
        assert used.event_types == (EventType.BREAK_GLASS_USED,)
        assert used.events[0].version > granted.events[0].version
        assert used.aggregate.audit.version == grant.audit.version + 1
        assert [(r.resource_id, r.access_type) for r in used.aggregate.accessed_resources] == [(claim.id, "release")]

        clock.advance(minutes=31)
        with pytest.raises(BreakGlassRequiredError):
            service.break_glass_release(claim, grant, requester, RoleId.REGIONAL_COORDINATOR, "again")

    def test_moderator_cannot_break_glass(self, service, claim, ctx):
        grant = ApprovalService(ctx).request_break_glass(
            MOD_A, [BreakGlassScope.RELEASE_OVERRIDE], BreakGlassReason.OTHER, "Needs override for testing",
        ).aggregate
        with pytest.raises(PermissionDeniedError):
            service.break_glass_release(claim, grant, MOD_A, RoleId.MODERATOR, "no")


class TestDisputesAndWithdrawal:
    def test_fraud_dispute_sets_hold_reason(self, service, claim):
        mutation = service.flag_dispute(claim, MOD_A, DisputeStatus.FRAUD_SUSPECTED, competing_claim_id="claim-9")
        disputed = mutation.aggregate
        assert disputed.status is ClaimStatus.DISPUTED
        assert disputed.release_hold.reason is ReleaseHoldReason.SUSPECTED_FRAUD
        assert disputed.competing_claim_ids == ("claim-9",)
        assert mutation.event_types == (EventType.OWNERSHIP_CLAIM_DISPUTED,)

        again = service.flag_dispute(disputed, MOD_A, DisputeStatus.COMPETING_CLAIM, competing_claim_id="claim-9")
        assert again.aggregate.competing_claim_ids == ("claim-9",)
        assert len(again.aggregate.status_history) == len(disputed.status_history)

    def test_inactive_dispute_state_rejected(self, service, claim):
        with pytest.raises(ValidationFailedError):
            service.flag_dispute(claim, MOD_A, DisputeStatus.RESOLVED)

    def test_resolve_dispute_requires_lead(self, service, claim):
        claim = service.flag_dispute(claim, MOD_A, DisputeStatus.EVIDENCE_CONFLICT).aggregate
        with pytest.raises(PermissionDeniedError):
            service.resolve_dispute(claim, MOD_A, RoleId.MODERATOR, "looked fine")

        mutation = service.resolve_dispute(claim, UserId("lead-1"), RoleId.LEAD_MODERATOR, "Documents reconciled")
        resolved = mutation.aggregate
        assert resolved.status is ClaimStatus.UNDER_REVIEW
        assert resolved.dispute_status is DisputeStatus.RESOLVED
        assert resolved.release_hold.status is ReleaseHoldStatus.ACTIVE
        assert resolved.release_hold.reason is ReleaseHoldReason.PENDING_VERIFICATION
        assert mutation.event_types == (EventType.OWNERSHIP_DISPUTE_RESOLVED,)

    def test_resolve_requires_disputed_claim(self, service, claim):
        with pytest.raises(InvalidStateTransitionError):
            service.resolve_dispute(claim, UserId("lead-1"), RoleId.LEAD_MODERATOR, "nothing to resolve")

    def test_requested_evidence_returns_claim_to_review(self, service, claim):
        with pytest.raises(PermissionDeniedError):
            service.request_more_evidence(claim, UserId("foster-1"), RoleId.FOSTER, "send vet records")

        claim = service.request_more_evidence(claim, MOD_A, RoleId.MODERATOR, "send vet records").aggregate
        assert claim.status is ClaimStatus.EVIDENCE_REQUESTED

        claim = service.add_evidence(claim, submission(EvidenceType.VET_RECORDS), CLAIMANT).aggregate
        assert claim.status is ClaimStatus.UNDER_REVIEW

    def test_claimant_withdraws(self, service, claim):
        with pytest.raises(PermissionDeniedError):
            service.withdraw_claim(claim, UserId("stranger"))

        mutation = service.withdraw_claim(claim, CLAIMANT)
        withdrawn = mutation.aggregate
        assert withdrawn.status is ClaimStatus.WITHDRAWN
        assert withdrawn.release_hold.status is ReleaseHoldStatus.DENIED
        assert mutation.event_types == (EventType.OWNERSHIP_CLAIM_WITHDRAWN,)

        with pytest.raises(InvalidStateTransitionError):
            service.withdraw_claim(withdrawn, MOD_A, RoleId.MODERATOR)
