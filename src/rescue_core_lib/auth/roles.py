"""Canonical role ranking.

Every gate (hold clearance, claim decisions, match review, two-person
approvals, break-glass) compares roles through this single table so that
authority levels cannot drift between call sites.
"""

import logging
from enum import Enum
from typing import Dict, Iterable, List, Optional, Union

logger = logging.getLogger(__name__)


class RoleId(str, Enum):
    # Staff
    FOUNDATION_ADMIN = "foundation_admin"
    REGIONAL_COORDINATOR = "regional_coordinator"
    # Moderators
    LEAD_MODERATOR = "lead_moderator"
    MODERATOR = "moderator"
    JUNIOR_MODERATOR = "junior_moderator"
    # Volunteers
    SENIOR_TRANSPORTER = "senior_transporter"
    TRANSPORTER = "transporter"
    EMERGENCY_FOSTER = "emergency_foster"
    FOSTER = "foster"
    TRAPPER = "trapper"
    COMMUNITY_VOLUNTEER = "community_volunteer"
    # Base
    VERIFIED_USER = "verified_user"
    USER = "user"


ROLE_LEVELS: Dict[RoleId, int] = {
    RoleId.FOUNDATION_ADMIN: 100,
    RoleId.REGIONAL_COORDINATOR: 90,
    RoleId.LEAD_MODERATOR: 80,
    RoleId.MODERATOR: 70,
    RoleId.JUNIOR_MODERATOR: 60,
    RoleId.SENIOR_TRANSPORTER: 50,
    RoleId.EMERGENCY_FOSTER: 45,
    RoleId.TRAPPER: 45,
    RoleId.TRANSPORTER: 40,
    RoleId.FOSTER: 40,
    RoleId.COMMUNITY_VOLUNTEER: 30,
    RoleId.VERIFIED_USER: 20,
    RoleId.USER: 10,
}

MODERATOR_TIER = frozenset(
    role for role, level in ROLE_LEVELS.items() if level >= ROLE_LEVELS[RoleId.JUNIOR_MODERATOR]
)


def parse_role(role: Union[RoleId, str, None]) -> Optional[RoleId]:
    """Coerce a role string to a RoleId, or None when unknown."""
    if role is None:
        return None
    if isinstance(role, RoleId):
        return role
    try:
        return RoleId(role)
    except ValueError:
        logger.warning(f"Unknown role '{role}' treated as unprivileged")
        return None


def role_level(role: Union[RoleId, str, None]) -> int:
    parsed = parse_role(role)
    return ROLE_LEVELS[parsed] if parsed is not None else 0


def has_minimum_role(role: Union[RoleId, str, None], minimum: RoleId) -> bool:
    return role_level(role) >= ROLE_LEVELS[minimum]


def roles_at_or_above(minimum: RoleId) -> List[RoleId]:
    """Roles whose level is at least ``minimum``'s, highest first."""
    floor = ROLE_LEVELS[minimum]
    ranked = sorted(ROLE_LEVELS.items(), key=lambda item: item[1], reverse=True)
    return [role for role, level in ranked if level >= floor]


def highest_role(roles: Iterable[Union[RoleId, str]]) -> Optional[RoleId]:
    best: Optional[RoleId] = None
    for candidate in roles:
        parsed = parse_role(candidate)
        if parsed is not None and (best is None or ROLE_LEVELS[parsed] > ROLE_LEVELS[best]):
            best = parsed
    return best
