"""Common models shared across the operations core.

This module contains foundational types used by every engine:
- Branded identifiers: UserId, CaseId, ClaimId, ... (NewType over str)
- AuditMetadata: created/updated stamps and the optimistic-concurrency version
- Geo and contact primitives: GeoLocation, Address, ContactMethod, DayOfWeek
- evolve(): validated copy-on-write update for frozen models
"""

from datetime import datetime
from enum import Enum
from typing import Any, NewType, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field


# ============================================================
# Identifiers
# ============================================================

UserId = NewType("UserId", str)
CaseId = NewType("CaseId", str)
ClaimId = NewType("ClaimId", str)
MatchId = NewType("MatchId", str)
DispatchId = NewType("DispatchId", str)
ScheduleId = NewType("ScheduleId", str)
RotationId = NewType("RotationId", str)
EscalationId = NewType("EscalationId", str)
ApprovalId = NewType("ApprovalId", str)
BreakGlassId = NewType("BreakGlassId", str)
EventId = NewType("EventId", str)

SYSTEM_ACTOR = UserId("system")


# ============================================================
# Base model
# ============================================================

class FrozenModel(BaseModel):
    """Immutable model base. Every mutation produces a new validated snapshot."""

    model_config = ConfigDict(frozen=True)


M = TypeVar("M", bound=BaseModel)


def evolve(model: M, **changes: Any) -> M:
    """Return a copy of ``model`` with ``changes`` applied.

    Unlike ``model_copy(update=...)`` the copy is re-validated, so model
    validators guarding cross-field invariants run on every transition.
    """
    data = {name: getattr(model, name) for name in type(model).model_fields}
    data.update(changes)
    return type(model).model_validate(data)


# ============================================================
# Audit
# ============================================================

class AuditMetadata(FrozenModel):
    """Audit block carried by every aggregate.

    ``version`` starts at 1 and increases by exactly one per mutation; stores
    use it for compare-and-swap writes.
    """

    created_at: datetime = Field(description="When the aggregate was created")
    created_by: UserId = Field(description="Actor that created the aggregate")
    updated_at: Optional[datetime] = Field(default=None, description="Last mutation time")
    updated_by: Optional[UserId] = Field(default=None, description="Actor of the last mutation")
    version: int = Field(default=1, ge=1, description="Monotonic optimistic-concurrency version")

    def bumped(self, actor: UserId, at: datetime) -> "AuditMetadata":
        return evolve(self, updated_at=at, updated_by=actor, version=self.version + 1)


def new_audit(actor: UserId, at: datetime) -> AuditMetadata:
    return AuditMetadata(created_at=at, created_by=actor, version=1)


# ============================================================
# Geo & contact primitives
# ============================================================

class GeoLocation(FrozenModel):
    lat: float = Field(ge=-90.0, le=90.0)
    lng: float = Field(ge=-180.0, le=180.0)


class Address(FrozenModel):
    street: Optional[str] = None
    city: Optional[str] = None
    county: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None


class ContactMethod(str, Enum):
    PHONE = "phone"
    SMS = "sms"
    EMAIL = "email"
    IN_APP = "in_app"
    PUSH = "push"


class DayOfWeek(str, Enum):
    """Days in ``datetime.weekday()`` order."""

    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"

    @classmethod
    def from_weekday(cls, weekday: int) -> "DayOfWeek":
        return list(cls)[weekday]


class Severity(str, Enum):
    MINOR = "minor"
    MODERATE = "moderate"
    MAJOR = "major"
    CRITICAL = "critical"
