"""Dispatch request and volunteer-matching models."""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import Field

from rescue_core_lib.models.common import (
    Address,
    AuditMetadata,
    CaseId,
    DispatchId,
    FrozenModel,
    GeoLocation,
    Severity,
    UserId,
)


class DispatchType(str, Enum):
    TRANSPORT = "transport"
    TRAPPING = "trapping"
    RESCUE = "rescue"
    WELLNESS_CHECK = "wellness_check"
    SUPPLY_DELIVERY = "supply_delivery"
    MEDICAL_ESCORT = "medical_escort"
    HOME_VISIT = "home_visit"
    SEARCH_ASSIST = "search_assist"
    EMERGENCY_RESPONSE = "emergency_response"


class DispatchPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"
    CRITICAL = "critical"

    @property
    def is_emergency(self) -> bool:
        return self in (DispatchPriority.URGENT, DispatchPriority.CRITICAL)


class DispatchStatus(str, Enum):
    """
    Dispatch lifecycle.

    PENDING → SEARCHING → ASSIGNED → ACCEPTED → EN_ROUTE → ON_SCENE → COMPLETED
    A decline returns ASSIGNED to SEARCHING. CANCELLED and FAILED are terminal.
    """

    PENDING = "pending"
    SEARCHING = "searching"
    ASSIGNED = "assigned"
    ACCEPTED = "accepted"
    EN_ROUTE = "en_route"
    ON_SCENE = "on_scene"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DispatchStatus.COMPLETED, DispatchStatus.CANCELLED, DispatchStatus.FAILED)

    @property
    def is_active(self) -> bool:
        """Volunteer is committed to this dispatch."""
        return self in (
            DispatchStatus.ASSIGNED,
            DispatchStatus.ACCEPTED,
            DispatchStatus.EN_ROUTE,
            DispatchStatus.ON_SCENE,
        )


DISPATCH_TRANSITIONS: Dict[DispatchStatus, List[DispatchStatus]] = {
    DispatchStatus.PENDING: [DispatchStatus.SEARCHING, DispatchStatus.ASSIGNED, DispatchStatus.CANCELLED],
    DispatchStatus.SEARCHING: [DispatchStatus.ASSIGNED, DispatchStatus.CANCELLED, DispatchStatus.FAILED],
    DispatchStatus.ASSIGNED: [DispatchStatus.ACCEPTED, DispatchStatus.SEARCHING, DispatchStatus.CANCELLED],
    DispatchStatus.ACCEPTED: [DispatchStatus.EN_ROUTE, DispatchStatus.CANCELLED, DispatchStatus.FAILED],
    DispatchStatus.EN_ROUTE: [DispatchStatus.ON_SCENE, DispatchStatus.CANCELLED, DispatchStatus.FAILED],
    DispatchStatus.ON_SCENE: [DispatchStatus.COMPLETED, DispatchStatus.FAILED],
    DispatchStatus.COMPLETED: [],
    DispatchStatus.CANCELLED: [],
    DispatchStatus.FAILED: [],
}


def is_valid_dispatch_transition(from_status: DispatchStatus, to_status: DispatchStatus) -> bool:
    return to_status in DISPATCH_TRANSITIONS.get(from_status, [])


class ExperienceLevel(str, Enum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"
    EXPERT = "expert"


class HandlingCategory(str, Enum):
    AGGRESSIVE_ANIMALS = "aggressive_animals"
    FERAL_ANIMALS = "feral_animals"
    INJURED_ANIMALS = "injured_animals"
    DECEASED_ANIMALS = "deceased_animals"


class DispatchLocation(FrozenModel):
    coordinates: GeoLocation
    address: Optional[Address] = None
    contact_name: Optional[str] = None
    contact_phone: Optional[str] = None
    special_instructions: Optional[str] = None


class AnimalDetails(FrozenModel):
    species: str
    breed: Optional[str] = None
    size: Optional[str] = None
    health_status: str = "healthy"
    aggressive: bool = False
    feral: bool = False
    requires_cage: bool = False
    weight_kg: Optional[float] = Field(default=None, ge=0)


class DispatchRequirements(FrozenModel):
    required_roles: Tuple[str, ...] = ()
    required_skills: Tuple[str, ...] = ()
    required_equipment: Tuple[str, ...] = ()
    min_experience_level: Optional[ExperienceLevel] = None
    must_lift_weight_kg: Optional[float] = Field(default=None, ge=0)
    must_be_able_to_drive: bool = False
    must_have_vehicle: bool = False
    must_be_comfortable_with: Tuple[HandlingCategory, ...] = ()
    requires_buddy: bool = False
    max_distance_km: Optional[float] = Field(default=None, gt=0)


class NoteType(str, Enum):
    GENERAL = "general"
    STATUS_UPDATE = "status_update"
    SAFETY_CONCERN = "safety_concern"
    PRIVATE = "private"


class DispatchNote(FrozenModel):
    id: str
    author_id: UserId
    content: str = Field(min_length=1)
    created_at: datetime
    type: NoteType = NoteType.GENERAL
    visible_to_volunteer: bool = True


class MatchFactorScores(FrozenModel):
    location: int
    skills: int
    availability: int
    experience: int
    workload: int


class VolunteerMatch(FrozenModel):
    volunteer_id: UserId
    score: int = Field(ge=0, le=100)
    distance_km: float = Field(ge=0)
    estimated_arrival_minutes: int = Field(ge=0)
    factors: MatchFactorScores
    positive_reasons: Tuple[str, ...] = ()
    negative_reasons: Tuple[str, ...] = ()


class DispatchMatchingCriteria(FrozenModel):
    dispatch_id: Optional[DispatchId] = None
    location: GeoLocation
    requirements: DispatchRequirements = Field(default_factory=DispatchRequirements)
    priority: DispatchPriority = DispatchPriority.NORMAL
    exclude_volunteers: Tuple[UserId, ...] = ()
    preferred_volunteers: Tuple[UserId, ...] = ()
    max_distance_km: Optional[float] = Field(default=None, gt=0)
    max_results: Optional[int] = Field(default=None, ge=1)


class DispatchRequest(FrozenModel):
    id: DispatchId
    case_id: CaseId
    type: DispatchType
    priority: DispatchPriority
    severity: Severity

    pickup_location: Optional[DispatchLocation] = None
    destination_location: Optional[DispatchLocation] = None
    animal_details: Optional[AnimalDetails] = None
    requirements: DispatchRequirements = Field(default_factory=DispatchRequirements)

    requested_at: datetime
    requested_by: UserId
    needed_by: Optional[datetime] = None
    estimated_duration_minutes: Optional[int] = Field(default=None, gt=0)

    status: DispatchStatus = DispatchStatus.PENDING
    assigned_to: Optional[UserId] = None
    assigned_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    en_route_at: Optional[datetime] = None
    on_scene_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    declined_by: Tuple[UserId, ...] = ()

    notes: Tuple[DispatchNote, ...] = ()
    matched_volunteers: Tuple[VolunteerMatch, ...] = ()
    matching_score: Optional[int] = None
    audit: AuditMetadata


class VolunteerAvailabilityStatus(str, Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    ON_BREAK = "on_break"
    UNAVAILABLE = "unavailable"


class VolunteerDispatchProfile(FrozenModel):
    """Read-only availability snapshot, refreshed outside the core."""

    user_id: UserId
    is_available: bool
    status: VolunteerAvailabilityStatus = VolunteerAvailabilityStatus.AVAILABLE

    home_location: GeoLocation
    current_location: Optional[GeoLocation] = None
    service_radius_km: float = Field(default=25.0, gt=0)

    roles: Tuple[str, ...] = ()
    skills: Tuple[str, ...] = ()
    equipment: Tuple[str, ...] = ()
    experience_level: ExperienceLevel = ExperienceLevel.BEGINNER

    completed_dispatches: int = Field(default=0, ge=0)
    success_rate: float = Field(default=0.0, ge=0, le=100)
    average_rating: Optional[float] = Field(default=None, ge=1, le=5)
    on_time_percentage: float = Field(default=0.0, ge=0, le=100)

    response_time_score: float = Field(default=50.0, ge=0, le=100)
    workload_score: float = Field(default=0.0, ge=0, le=100, description="Current load; lower is better")
    emergency_response_bonus: float = Field(default=0.0, ge=0, le=20)

    max_distance_km: Optional[float] = Field(default=None, gt=0)
    cannot_lift_weight_kg: Optional[float] = Field(
        default=None, ge=0, description="Heaviest load the volunteer can lift; None means unrestricted"
    )
    cannot_handle: Tuple[HandlingCategory, ...] = ()
    requires_buddy: bool = False
    last_updated: Optional[datetime] = None

    @property
    def effective_location(self) -> GeoLocation:
        return self.current_location or self.home_location


class DispatchStatistics(FrozenModel):
    total: int
    pending: int
    searching: int
    assigned: int
    active: int
    completed: int
    cancelled: int
    failed: int
    average_response_minutes: float
    average_completion_minutes: float
    success_rate: float
