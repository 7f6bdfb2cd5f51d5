"""On-call schedule, rotation and escalation models."""

from datetime import date, datetime, time
from enum import Enum
from typing import Dict, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator, model_validator

from rescue_core_lib.auth.roles import RoleId
from rescue_core_lib.models.common import (
    AuditMetadata,
    CaseId,
    ContactMethod,
    DayOfWeek,
    DispatchId,
    EscalationId,
    FrozenModel,
    RotationId,
    ScheduleId,
    UserId,
)


class OnCallTier(str, Enum):
    PRIMARY = "primary"
    BACKUP = "backup"
    TERTIARY = "tertiary"


TIER_ORDER: Tuple[OnCallTier, ...] = (OnCallTier.PRIMARY, OnCallTier.BACKUP, OnCallTier.TERTIARY)


class CoverageWindow(FrozenModel):
    """Local-time window; an overnight window ends on the following day."""

    start_time_local: time
    end_time_local: time
    days_of_week: Tuple[DayOfWeek, ...] = Field(min_length=1)
    is_overnight: bool = False

    @model_validator(mode="after")
    def window_orientation(self):
        if self.is_overnight and self.start_time_local <= self.end_time_local:
            raise ValueError("Overnight window must start later in the day than it ends")
        if not self.is_overnight and self.start_time_local >= self.end_time_local:
            raise ValueError("Same-day window must start before it ends")
        return self


class OnCallSettings(FrozenModel):
    primary_response_minutes: int = Field(ge=1)
    backup_response_minutes: int = Field(ge=1)
    tertiary_response_minutes: int = Field(ge=1)
    auto_escalate_on_no_response: bool = True
    escalation_delay_minutes: int = Field(ge=0)
    max_escalation_attempts: int = Field(ge=1)
    max_consecutive_days: int = Field(ge=1)
    min_days_between_weeks: int = Field(ge=0)
    requires_acknowledgement: bool = True
    acknowledgement_deadline_hours: int = Field(ge=1)

    def response_minutes(self, tier: OnCallTier) -> int:
        return {
            OnCallTier.PRIMARY: self.primary_response_minutes,
            OnCallTier.BACKUP: self.backup_response_minutes,
            OnCallTier.TERTIARY: self.tertiary_response_minutes,
        }[tier]


class OnCallSchedule(FrozenModel):
    id: ScheduleId
    region_id: str
    role: RoleId
    name: str = Field(min_length=1)
    description: Optional[str] = None
    timezone: str
    coverage_window: CoverageWindow
    settings: OnCallSettings
    is_active: bool = True
    activated_at: Optional[datetime] = None
    deactivated_at: Optional[datetime] = None
    audit: AuditMetadata

    @field_validator("timezone")
    @classmethod
    def known_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {value}")
        return value

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


class ContactMethodPreference(FrozenModel):
    method: ContactMethod
    value: str
    priority: int = Field(default=1, ge=1, description="1 = first to try")
    enabled: bool = True


class OnCallAssignment(FrozenModel):
    user_id: UserId
    user_name: str
    contact_methods: Tuple[ContactMethodPreference, ...] = ()

    acknowledged_schedule: bool = False
    acknowledged_at: Optional[datetime] = None

    swap_requested: bool = False
    swap_requested_at: Optional[datetime] = None
    swap_reason: Optional[str] = None

    @property
    def preferred_contact(self) -> Optional[ContactMethodPreference]:
        enabled = [c for c in self.contact_methods if c.enabled]
        if not enabled:
            return None
        return min(enabled, key=lambda c: c.priority)


class RotationStatus(str, Enum):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CoverageGap(FrozenModel):
    start: datetime
    end: datetime
    reason: str
    filled: bool = False
    filled_by: Optional[UserId] = None


class OnCallRotation(FrozenModel):
    """One week of coverage. Each tier is held by a different person."""

    id: RotationId
    schedule_id: ScheduleId
    week_starting: date
    week_ending: date
    primary: OnCallAssignment
    backup: OnCallAssignment
    tertiary: Optional[OnCallAssignment] = None
    status: RotationStatus = RotationStatus.SCHEDULED
    coverage_gaps: Tuple[CoverageGap, ...] = ()
    audit: AuditMetadata

    @model_validator(mode="after")
    def distinct_tiers(self):
        if self.primary.user_id == self.backup.user_id:
            raise ValueError("Primary and backup cannot be the same person")
        if self.tertiary is not None:
            if self.tertiary.user_id == self.primary.user_id:
                raise ValueError("Primary and tertiary cannot be the same person")
            if self.tertiary.user_id == self.backup.user_id:
                raise ValueError("Backup and tertiary cannot be the same person")
        if self.week_ending <= self.week_starting:
            raise ValueError("Rotation must end after it starts")
        return self

    @property
    def tiers(self) -> Tuple[OnCallTier, ...]:
        """Tiers staffed in this rotation, in escalation order."""
        return tuple(t for t in TIER_ORDER if self.assignment_for(t) is not None)

    def assignment_for(self, tier: OnCallTier) -> Optional[OnCallAssignment]:
        return {
            OnCallTier.PRIMARY: self.primary,
            OnCallTier.BACKUP: self.backup,
            OnCallTier.TERTIARY: self.tertiary,
        }[tier]

    def includes(self, user_id: UserId) -> bool:
        return any(self.assignment_for(t).user_id == user_id for t in self.tiers)


# ============================================================
# Escalation
# ============================================================

class EscalationSeverity(str, Enum):
    URGENT = "urgent"
    CRITICAL = "critical"


class EscalationStatus(str, Enum):
    """
    ESCALATING → ACKNOWLEDGED → RESOLVED
    ESCALATING → FAILED (manual override required)
    ESCALATING/ACKNOWLEDGED → CANCELLED
    """

    ESCALATING = "escalating"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (EscalationStatus.RESOLVED, EscalationStatus.FAILED, EscalationStatus.CANCELLED)


class AttemptResponseKind(str, Enum):
    ACKNOWLEDGED = "acknowledged"
    DECLINED = "declined"
    NO_RESPONSE = "no_response"
    FAILED = "failed"


class EscalationAttempt(FrozenModel):
    id: str
    attempt_number: int = Field(ge=1)
    user_id: UserId
    user_name: str
    tier: OnCallTier
    contact_method: ContactMethod
    contact_value: str = ""
    attempted_at: datetime
    response_deadline: datetime


class AttemptResponse(FrozenModel):
    attempt_number: int = Field(ge=1)
    user_id: UserId
    response: AttemptResponseKind
    responded_at: datetime
    decline_reason: Optional[str] = None


class Escalation(FrozenModel):
    """Timed contact chain. Attempts and responses are append-only."""

    id: EscalationId
    schedule_id: ScheduleId
    rotation_id: RotationId

    triggered_at: datetime
    triggered_by: UserId
    trigger_reason: str
    severity: EscalationSeverity
    case_id: Optional[CaseId] = None
    incident_id: Optional[str] = None
    dispatch_id: Optional[DispatchId] = None

    attempts: Tuple[EscalationAttempt, ...] = Field(min_length=1)
    responses: Tuple[AttemptResponse, ...] = ()
    current_attempt_index: int = Field(default=0, ge=0)

    status: EscalationStatus = EscalationStatus.ESCALATING
    acknowledged_by: Optional[UserId] = None
    acknowledged_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[UserId] = None
    resolution_notes: Optional[str] = None

    escalated_to_next_tier: bool = False
    failure_reason: Optional[str] = None
    manual_override_required: bool = False

    timeout_at: datetime
    audit: AuditMetadata

    @model_validator(mode="after")
    def attempt_sequence(self):
        numbers = [a.attempt_number for a in self.attempts]
        if numbers != list(range(1, len(numbers) + 1)):
            raise ValueError(f"Attempt numbers must run 1..n without gaps, got {numbers}")
        deadlines = [a.response_deadline for a in self.attempts]
        if any(later < earlier for earlier, later in zip(deadlines, deadlines[1:])):
            raise ValueError("Attempt response deadlines must be non-decreasing")
        if self.current_attempt_index >= len(self.attempts):
            raise ValueError("current_attempt_index out of range")
        if self.status is EscalationStatus.FAILED and not (self.manual_override_required and self.failure_reason):
            raise ValueError("A failed escalation must require manual override and state a reason")
        if self.status is EscalationStatus.ACKNOWLEDGED and self.acknowledged_by is None:
            raise ValueError("An acknowledged escalation must record who acknowledged it")
        return self

    @property
    def current_attempt(self) -> EscalationAttempt:
        return self.attempts[self.current_attempt_index]

    @property
    def current_response(self) -> Optional[AttemptResponse]:
        number = self.current_attempt.attempt_number
        for response in self.responses:
            if response.attempt_number == number:
                return response
        return None

    @property
    def awaiting_next_tier(self) -> bool:
        """Current attempt was declined and the chain has not moved on yet."""
        response = self.current_response
        return (
            self.status is EscalationStatus.ESCALATING
            and response is not None
            and response.response is AttemptResponseKind.DECLINED
        )


# ============================================================
# Results
# ============================================================

class RotationValidation(FrozenModel):
    valid: bool
    errors: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()


class OnCallEligibility(FrozenModel):
    allowed: bool
    reason: Optional[str] = None
    consecutive_days: int = 0


class EscalationStatistics(FrozenModel):
    total: int
    acknowledged: int
    resolved: int
    failed: int
    average_response_minutes: float
    escalation_rate: float
    by_status: Dict[EscalationStatus, int] = Field(default_factory=dict)
