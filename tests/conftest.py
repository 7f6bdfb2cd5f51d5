"""Shared fixtures for operations-core tests.

Engines get a ManualClock pinned to a Monday morning (UTC) and sequential
ids, so every snapshot and event is reproducible.
"""

from datetime import datetime, time, timezone

import pytest

from rescue_core_lib.config import OperationsConfig, reset_operations_config
from rescue_core_lib.core.context import ManualClock, OperationsContext, SequentialIdGenerator
from rescue_core_lib.models.claims import ClaimantIdentity, EvidenceSubmission, EvidenceType, MicrochipDetails
from rescue_core_lib.models.common import ContactMethod, DayOfWeek, GeoLocation, UserId
from rescue_core_lib.models.dispatch import VolunteerDispatchProfile
from rescue_core_lib.models.on_call import ContactMethodPreference, CoverageWindow, OnCallAssignment

START = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)  # a Monday
PICKUP = GeoLocation(lat=40.0, lng=-75.0)

# Degrees of latitude per kilometre along a meridian
KM_LAT = 1 / 111.195


@pytest.fixture(autouse=True)
def _reset_config():
    reset_operations_config()
    yield
    reset_operations_config()


@pytest.fixture
def clock():
    return ManualClock(START)


@pytest.fixture
def config():
    return OperationsConfig()


@pytest.fixture
def ctx(clock, config):
    return OperationsContext(clock=clock, ids=SequentialIdGenerator(), config=config, correlation_id="corr-1")


@pytest.fixture
def identity():
    return ClaimantIdentity(full_name="Dana Reyes", phone="555-0100", email="dana@example.org")


def submission(evidence_type: EvidenceType, submitted_by: str = "claimant-1", **overrides) -> EvidenceSubmission:
    """Build an EvidenceSubmission; microchip evidence gets chip details automatically."""
    data = dict(type=evidence_type, description=f"{evidence_type.value} evidence", submitted_by=UserId(submitted_by))
    if evidence_type is EvidenceType.MICROCHIP_REGISTRATION:
        data["microchip"] = MicrochipDetails(chip_number="985112003456789", registered_owner_match="confirmed")
    data.update(overrides)
    return EvidenceSubmission(**data)


def volunteer(user_id: str, km_north: float = 1.0, **overrides) -> VolunteerDispatchProfile:
    """Available volunteer ``km_north`` kilometres due north of PICKUP."""
    data = dict(
        user_id=UserId(user_id),
        is_available=True,
        home_location=GeoLocation(lat=PICKUP.lat + km_north * KM_LAT, lng=PICKUP.lng),
        skills=("transport",),
        completed_dispatches=20,
        response_time_score=70.0,
        workload_score=40.0,
    )
    data.update(overrides)
    return VolunteerDispatchProfile(**data)


def assignment(user_id: str, name: str = "") -> OnCallAssignment:
    return OnCallAssignment(
        user_id=UserId(user_id),
        user_name=name or user_id.title(),
        contact_methods=(ContactMethodPreference(method=ContactMethod.SMS, value="555-0199", priority=1),),
    )


@pytest.fixture
def weekday_window():
    return CoverageWindow(
        start_time_local=time(8, 0),
        end_time_local=time(20, 0),
        days_of_week=tuple(DayOfWeek)[:5],
    )
