"""Operations policy configuration.

All scoring weights, instance caps, thresholds and response windows used by
the decision engines live here as named, overridable values. Services accept
an explicit ``OperationsConfig``; ``get_operations_config()`` provides a
process-wide default built from the environment.

Environment Variables:
    OPS_<SECTION>_<FIELD>: Override a scalar field of a policy section, e.g.
        OPS_EVIDENCE_AUTO_VERIFY_THRESHOLD=90
        OPS_ON_CALL_PRIMARY_RESPONSE_MINUTES=7
        OPS_DISPATCH_DEFAULT_MAX_DISTANCE_KM=80
    Unparsable values are logged and the default is kept.
"""

import logging
import os
from typing import Dict, Mapping, Optional, Tuple

from pydantic import Field, ValidationError, model_validator

from rescue_core_lib.auth.roles import RoleId
from rescue_core_lib.models.claims import EvidenceType
from rescue_core_lib.models.common import ContactMethod, FrozenModel, evolve

logger = logging.getLogger(__name__)


# ============================================================
# Evidence
# ============================================================

class EvidenceRule(FrozenModel):
    points: int = Field(ge=0, le=100)
    max_instances: int = Field(ge=1)
    requires_verification: bool = True


DEFAULT_EVIDENCE_RULES: Dict[EvidenceType, EvidenceRule] = {
    EvidenceType.MICROCHIP_REGISTRATION: EvidenceRule(points=80, max_instances=1),
    EvidenceType.OWNER_PREREG_PROFILE_MATCH: EvidenceRule(points=60, max_instances=1),
    EvidenceType.VET_RECORDS: EvidenceRule(points=40, max_instances=1),
    EvidenceType.ADOPTION_PAPERS: EvidenceRule(points=40, max_instances=1),
    EvidenceType.PURCHASE_RECEIPT: EvidenceRule(points=30, max_instances=1),
    EvidenceType.PET_LICENSE: EvidenceRule(points=30, max_instances=1),
    EvidenceType.INSURANCE_POLICY: EvidenceRule(points=25, max_instances=1),
    EvidenceType.DATED_PHOTO_WITH_PET: EvidenceRule(points=20, max_instances=3),
    EvidenceType.UNDATED_PHOTO_WITH_PET: EvidenceRule(points=10, max_instances=2),
    # Administered by staff, so the result is already first-hand
    EvidenceType.KNOWLEDGE_TEST: EvidenceRule(points=15, max_instances=1, requires_verification=False),
    EvidenceType.WITNESS_STATEMENT: EvidenceRule(points=10, max_instances=2),
    EvidenceType.SOCIAL_MEDIA_HISTORY: EvidenceRule(points=10, max_instances=1),
    EvidenceType.OTHER: EvidenceRule(points=5, max_instances=2),
}


class EvidencePolicy(FrozenModel):
    rules: Dict[EvidenceType, EvidenceRule] = Field(default_factory=lambda: dict(DEFAULT_EVIDENCE_RULES))
    auto_verify_threshold: int = Field(default=85, ge=0)
    standard_approval_threshold: int = Field(default=60, ge=0)
    lead_review_threshold: int = Field(default=40, ge=0)
    reject_below: int = Field(default=25, ge=0)

    @model_validator(mode="after")
    def thresholds_ordered(self):
        if not (
            self.reject_below
            <= self.lead_review_threshold
            <= self.standard_approval_threshold
            <= self.auto_verify_threshold
        ):
            raise ValueError("Evidence thresholds must be non-decreasing from reject to auto-verify")
        missing = set(EvidenceType) - set(self.rules)
        if missing:
            raise ValueError(f"Evidence rules missing for: {sorted(m.value for m in missing)}")
        return self

    def rule_for(self, evidence_type: EvidenceType) -> EvidenceRule:
        return self.rules[evidence_type]


# ============================================================
# Match gate
# ============================================================

DEFAULT_FACTOR_WEIGHTS: Dict[str, int] = {
    "species": 20,
    "breed": 15,
    "color": 15,
    "size": 10,
    "distinctive_marks": 20,
    "location": 10,
    "microchip": 50,
    "photo_match": 25,
}


class MatchGatePolicy(FrozenModel):
    review_threshold: int = Field(default=40, ge=0, le=100)
    owner_notification_threshold: int = Field(default=60, ge=0, le=100)
    auto_notify_reference: int = Field(default=85, ge=0, le=100, description="Informational only; never bypasses human review")
    high_confidence: int = Field(default=75, ge=0, le=100)
    moderate_confidence: int = Field(default=50, ge=0, le=100)
    low_confidence: int = Field(default=25, ge=0, le=100)
    expiry_hours: int = Field(default=72, ge=1)
    factor_weights: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_FACTOR_WEIGHTS))
    required_factors: Tuple[str, ...] = ("species",)

    def weight_for(self, factor: str) -> Optional[int]:
        return self.factor_weights.get(factor)


# ============================================================
# Dispatch
# ============================================================

DEFAULT_EXPERIENCE_POINTS: Dict[str, int] = {
    "beginner": 10,
    "intermediate": 20,
    "advanced": 30,
    "expert": 40,
}

DEFAULT_PRIORITY_SCORES: Dict[str, int] = {
    "critical": 100,
    "urgent": 80,
    "high": 60,
    "normal": 40,
    "low": 20,
}


class DispatchPolicy(FrozenModel):
    location_weight: float = 0.30
    skills_weight: float = 0.25
    availability_weight: float = 0.20
    experience_weight: float = 0.15
    workload_weight: float = 0.10

    reference_distance_km: float = Field(default=50.0, gt=0)
    default_max_distance_km: float = Field(default=50.0, gt=0)
    average_speed_kmh: float = Field(default=30.0, gt=0)
    preferred_volunteer_bonus: int = 20
    default_max_results: int = Field(default=10, ge=1)

    experience_points: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_EXPERIENCE_POINTS))
    # (minimum completed dispatches, bonus), checked highest first
    volume_bonus_tiers: Tuple[Tuple[int, int], ...] = ((100, 30), (50, 20), (10, 10))
    experience_cap: int = 60

    priority_scores: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_PRIORITY_SCORES))

    @model_validator(mode="after")
    def weights_sum_to_one(self):
        total = (
            self.location_weight
            + self.skills_weight
            + self.availability_weight
            + self.experience_weight
            + self.workload_weight
        )
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Dispatch weights must sum to 1.0, got {total:.3f}")
        return self


# ============================================================
# On-call
# ============================================================

class OnCallPolicy(FrozenModel):
    primary_response_minutes: int = Field(default=5, ge=1)
    backup_response_minutes: int = Field(default=10, ge=1)
    tertiary_response_minutes: int = Field(default=15, ge=1)
    escalation_delay_minutes: int = Field(default=5, ge=0)
    max_escalation_attempts: int = Field(default=3, ge=1)
    max_consecutive_days: int = Field(default=3, ge=1)
    min_days_between_weeks: int = Field(default=2, ge=0)
    require_acknowledgement: bool = True
    acknowledgement_deadline_hours: int = Field(default=48, ge=1)
    default_contact_order: Tuple[ContactMethod, ...] = (
        ContactMethod.PUSH,
        ContactMethod.SMS,
        ContactMethod.PHONE,
        ContactMethod.EMAIL,
    )


# ============================================================
# Break-glass & two-person approvals
# ============================================================

class BreakGlassPolicy(FrozenModel):
    default_ttl_minutes: int = Field(default=30, ge=1)
    max_ttl_minutes: int = Field(default=120, ge=1)
    auto_grant_reasons: Tuple[str, ...] = ("immediate_safety", "vet_emergency")
    release_override_min_role: RoleId = RoleId.REGIONAL_COORDINATOR
    approver_min_role: RoleId = RoleId.REGIONAL_COORDINATOR


class TwoPersonRule(FrozenModel):
    action: str
    approver_roles: Tuple[RoleId, ...]
    required_approvals: int = Field(default=2, ge=2)
    timeout_minutes: int = Field(default=60, ge=1)
    description: str = ""


_LEAD_AND_UP = (RoleId.LEAD_MODERATOR, RoleId.REGIONAL_COORDINATOR, RoleId.FOUNDATION_ADMIN)
_REGIONAL_AND_UP = (RoleId.REGIONAL_COORDINATOR, RoleId.FOUNDATION_ADMIN)

DEFAULT_TWO_PERSON_RULES: Dict[str, TwoPersonRule] = {
    rule.action: rule
    for rule in (
        TwoPersonRule(action="volunteer.suspend", approver_roles=_LEAD_AND_UP, timeout_minutes=60,
                      description="Suspend a volunteer role"),
        TwoPersonRule(action="volunteer.revoke", approver_roles=_REGIONAL_AND_UP, timeout_minutes=120,
                      description="Permanently revoke a volunteer role"),
        TwoPersonRule(action="moderator.suspend", approver_roles=_REGIONAL_AND_UP, timeout_minutes=60,
                      description="Suspend a moderator"),
        TwoPersonRule(action="case.legal_hold", approver_roles=_LEAD_AND_UP, timeout_minutes=120,
                      description="Place or lift a legal hold on a case"),
        TwoPersonRule(action="case.redact_pii", approver_roles=_REGIONAL_AND_UP, timeout_minutes=120,
                      description="Redact personal data from a case"),
        TwoPersonRule(action="system.user_ban", approver_roles=_LEAD_AND_UP, timeout_minutes=60,
                      description="Ban a user account"),
    )
}


class ApprovalPolicy(FrozenModel):
    rules: Dict[str, TwoPersonRule] = Field(default_factory=lambda: dict(DEFAULT_TWO_PERSON_RULES))

    def rule_for(self, action: str) -> Optional[TwoPersonRule]:
        return self.rules.get(action)


# ============================================================
# Aggregate
# ============================================================

class OperationsConfig(FrozenModel):
    evidence: EvidencePolicy = Field(default_factory=EvidencePolicy)
    match_gate: MatchGatePolicy = Field(default_factory=MatchGatePolicy)
    dispatch: DispatchPolicy = Field(default_factory=DispatchPolicy)
    on_call: OnCallPolicy = Field(default_factory=OnCallPolicy)
    break_glass: BreakGlassPolicy = Field(default_factory=BreakGlassPolicy)
    approvals: ApprovalPolicy = Field(default_factory=ApprovalPolicy)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "OperationsConfig":
        """Build a config from defaults plus ``OPS_<SECTION>_<FIELD>`` overrides.

        Only scalar fields (int, float, bool, str, enum) are overridable.
        A value that fails validation is logged and the default is kept.
        """
        env = os.environ if environ is None else environ
        base = cls()
        sections = {}

        for section_name in cls.model_fields:
            section = getattr(base, section_name)
            for field_name, field_info in type(section).model_fields.items():
                if not _is_scalar(field_info.annotation):
                    continue
                key = f"OPS_{section_name.upper()}_{field_name.upper()}"
                raw = env.get(key)
                if raw is None:
                    continue
                try:
                    section = evolve(section, **{field_name: raw})
                except ValidationError as e:
                    logger.warning(
                        f"Ignoring invalid value for {key}={raw!r}; keeping default "
                        f"{getattr(section, field_name)!r} ({e.error_count()} error(s))"
                    )
                    continue
                logger.info(f"Config override applied: {key}={raw}")
            sections[section_name] = section

        return cls(**sections)


def _is_scalar(annotation) -> bool:
    if annotation in (int, float, bool, str):
        return True
    return isinstance(annotation, type) and issubclass(annotation, RoleId)


# Global config instance
_config_instance: Optional[OperationsConfig] = None


def get_operations_config() -> OperationsConfig:
    """Get the process-wide default config, building it from the environment on first use."""
    global _config_instance
    if _config_instance is None:
        _config_instance = OperationsConfig.from_env()
    return _config_instance


def reset_operations_config() -> None:
    """Reset the process-wide config (mainly for tests)."""
    global _config_instance
    _config_instance = None
    logger.debug("Operations config instance reset")
