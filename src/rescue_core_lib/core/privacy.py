"""Location privacy: how precisely a viewer may see an address.

Each location carries a ``PrivacyLevel``. A viewer whose tier meets the level
sees the level's precision; otherwise precision degrades with the size of
the gap. Verified viewers count one full tier higher, but verification
never reaches the owner-only or system-only tiers.
"""

import logging
import math
import re
from enum import Enum
from typing import Dict, Optional

from rescue_core_lib.models.common import Address, FrozenModel, GeoLocation, UserId

logger = logging.getLogger(__name__)


class PrivacyLevel(str, Enum):
    PUBLIC = "public"
    COMMUNITY = "community"
    RESPONDER = "responder"
    MODERATOR = "moderator"
    OWNER_ONLY = "owner_only"
    SYSTEM_ONLY = "system_only"


class ViewerRole(str, Enum):
    PUBLIC = "public"
    COMMUNITY = "community"
    RESPONDER = "responder"
    MODERATOR = "moderator"
    OWNER = "owner"
    SYSTEM = "system"


class LocationPrecision(str, Enum):
    EXACT = "exact"
    STREET = "street"
    NEIGHBORHOOD = "neighborhood"
    CITY = "city"
    COUNTY = "county"
    HIDDEN = "hidden"


VIEWER_TIERS: Dict[ViewerRole, int] = {
    ViewerRole.PUBLIC: 0,
    ViewerRole.COMMUNITY: 1,
    ViewerRole.RESPONDER: 2,
    ViewerRole.MODERATOR: 3,
    ViewerRole.OWNER: 4,
    ViewerRole.SYSTEM: 5,
}

LEVEL_TIERS: Dict[PrivacyLevel, int] = {
    PrivacyLevel.PUBLIC: 0,
    PrivacyLevel.COMMUNITY: 1,
    PrivacyLevel.RESPONDER: 2,
    PrivacyLevel.MODERATOR: 3,
    PrivacyLevel.OWNER_ONLY: 4,
    PrivacyLevel.SYSTEM_ONLY: 5,
}

# Highest tier a verification bonus can lift a viewer to
VERIFIED_TIER_CEILING = LEVEL_TIERS[PrivacyLevel.MODERATOR]

PRECISION_BY_LEVEL: Dict[PrivacyLevel, LocationPrecision] = {
    PrivacyLevel.PUBLIC: LocationPrecision.NEIGHBORHOOD,
    PrivacyLevel.COMMUNITY: LocationPrecision.STREET,
    PrivacyLevel.RESPONDER: LocationPrecision.EXACT,
    PrivacyLevel.MODERATOR: LocationPrecision.EXACT,
    PrivacyLevel.OWNER_ONLY: LocationPrecision.EXACT,
    PrivacyLevel.SYSTEM_ONLY: LocationPrecision.EXACT,
}

FUZZY_RADIUS_METERS: Dict[LocationPrecision, int] = {
    LocationPrecision.EXACT: 0,
    LocationPrecision.STREET: 100,
    LocationPrecision.NEIGHBORHOOD: 500,
    LocationPrecision.CITY: 2000,
    LocationPrecision.COUNTY: 10000,
    LocationPrecision.HIDDEN: 0,
}


class PrivacyContext(FrozenModel):
    viewer_role: ViewerRole
    viewer_verified: bool = False
    viewer_user_id: Optional[UserId] = None
    owner_user_id: Optional[UserId] = None


class ProtectedLocation(FrozenModel):
    display_text: str
    display_precision: LocationPrecision
    exact_address: Optional[str] = None
    exact_coordinates: Optional[GeoLocation] = None
    street_name: Optional[str] = None
    neighborhood: Optional[str] = None
    city: Optional[str] = None
    county: Optional[str] = None
    state: Optional[str] = None
    center_point: Optional[GeoLocation] = None
    fuzzy_radius_meters: int = 0


def effective_viewer_tier(context: PrivacyContext) -> int:
    tier = VIEWER_TIERS[context.viewer_role]
    if context.viewer_verified and tier < VERIFIED_TIER_CEILING:
        tier += 1
    return tier


def allowed_precision(context: PrivacyContext, level: PrivacyLevel) -> LocationPrecision:
    if context.viewer_role is ViewerRole.SYSTEM:
        return LocationPrecision.EXACT
    if (
        context.viewer_role is ViewerRole.OWNER
        and context.viewer_user_id is not None
        and context.viewer_user_id == context.owner_user_id
    ):
        return LocationPrecision.EXACT

    required = LEVEL_TIERS[level]
    effective = effective_viewer_tier(context)
    if effective >= required:
        return PRECISION_BY_LEVEL[level]

    gap = required - effective
    if gap <= 1:
        return LocationPrecision.NEIGHBORHOOD
    if gap <= 2:
        return LocationPrecision.CITY
    if gap <= 3:
        return LocationPrecision.COUNTY
    return LocationPrecision.HIDDEN


def extract_street_name(street: Optional[str]) -> Optional[str]:
    """Street without its house number, or None when there is no number to strip."""
    if not street:
        return None
    match = re.match(r"^\d+\s+(.+?)(?:,|$)", street)
    return match.group(1) if match else None


def generalize_coordinates(exact: GeoLocation, radius_meters: int) -> GeoLocation:
    """Snap to a grid of roughly ``radius_meters`` so nearby points share a center."""
    if radius_meters <= 0:
        return exact
    lat_step = radius_meters / 111_000
    lng_step = radius_meters / (111_000 * max(math.cos(math.radians(exact.lat)), 0.01))
    return GeoLocation(
        lat=max(-90.0, min(90.0, round(exact.lat / lat_step) * lat_step)),
        lng=max(-180.0, min(180.0, round(exact.lng / lng_step) * lng_step)),
    )


def protect_location(
    address: Address,
    coordinates: GeoLocation,
    context: PrivacyContext,
    level: PrivacyLevel,
    neighborhood: Optional[str] = None,
) -> ProtectedLocation:
    precision = allowed_precision(context, level)
    radius = FUZZY_RADIUS_METERS[precision]
    city, county, state = address.city, address.county, address.state

    if precision is LocationPrecision.EXACT:
        return ProtectedLocation(
            display_text=address.street or f"{city}, {state}",
            display_precision=precision,
            exact_address=address.street,
            exact_coordinates=coordinates,
            street_name=extract_street_name(address.street),
            neighborhood=neighborhood,
            city=city,
            county=county,
            state=state,
            center_point=coordinates,
        )

    if precision is LocationPrecision.STREET:
        street = extract_street_name(address.street)
        return ProtectedLocation(
            display_text=f"{street}, {city}" if street else f"{city}, {state}",
            display_precision=precision,
            street_name=street,
            neighborhood=neighborhood,
            city=city,
            county=county,
            state=state,
            center_point=generalize_coordinates(coordinates, radius),
            fuzzy_radius_meters=radius,
        )

    if precision is LocationPrecision.NEIGHBORHOOD:
        return ProtectedLocation(
            display_text=f"{neighborhood}, {city}" if neighborhood else f"{city} area",
            display_precision=precision,
            neighborhood=neighborhood,
            city=city,
            county=county,
            state=state,
            center_point=generalize_coordinates(coordinates, radius),
            fuzzy_radius_meters=radius,
        )

    if precision is LocationPrecision.CITY:
        return ProtectedLocation(
            display_text=f"{city}, {state}",
            display_precision=precision,
            city=city,
            county=county,
            state=state,
            center_point=generalize_coordinates(coordinates, radius),
            fuzzy_radius_meters=radius,
        )

    if precision is LocationPrecision.COUNTY:
        return ProtectedLocation(
            display_text=f"{county} County, {state}",
            display_precision=precision,
            county=county,
            state=state,
            center_point=generalize_coordinates(coordinates, radius),
            fuzzy_radius_meters=radius,
        )

    logger.debug(f"Location hidden from {context.viewer_role.value} viewer at level {level.value}")
    return ProtectedLocation(display_text="Location protected", display_precision=precision, state=state)
