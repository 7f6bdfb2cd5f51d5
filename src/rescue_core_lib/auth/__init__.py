"""Role ranking and request context.

Services trust X-User-* headers from the API Gateway; every authorization
check compares roles through the single ranking in ``roles``.
"""

from rescue_core_lib.auth.request_context import RequestContext, get_request_context, require_role
from rescue_core_lib.auth.roles import (
    MODERATOR_TIER,
    ROLE_LEVELS,
    RoleId,
    has_minimum_role,
    highest_role,
    parse_role,
    role_level,
    roles_at_or_above,
)

__all__ = [
    "MODERATOR_TIER",
    "ROLE_LEVELS",
    "RequestContext",
    "RoleId",
    "get_request_context",
    "has_minimum_role",
    "highest_role",
    "parse_role",
    "require_role",
    "role_level",
    "roles_at_or_above",
]
