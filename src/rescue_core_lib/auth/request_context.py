"""Request context extraction from API Gateway headers.

The gateway validates the user's JWT, strips any client-supplied X-User-*
headers and adds its own. Services trust these headers and resolve the
user's roles against the canonical ranking in ``auth.roles``.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from fastapi import HTTPException, Request, status

from rescue_core_lib.auth.roles import RoleId, has_minimum_role, highest_role, parse_role

logger = logging.getLogger(__name__)


@dataclass
class RequestContext:
    """Acting user for one request.

    Attributes:
        user_id: User ID from X-User-ID header
        user_email: User email from X-User-Email header
        user_roles: Known roles from X-User-Roles header (JSON array); unknown names are dropped
        correlation_id: Optional correlation ID, propagated onto emitted events
    """

    user_id: str
    user_email: Optional[str] = None
    user_roles: List[RoleId] = field(default_factory=list)
    correlation_id: Optional[str] = None

    @property
    def primary_role(self) -> Optional[RoleId]:
        """Highest-ranked role the user holds."""
        return highest_role(self.user_roles)

    def has_role_at_least(self, minimum: RoleId) -> bool:
        return has_minimum_role(self.primary_role, minimum)


def get_request_context(request: Request) -> RequestContext:
    """Extract request context from API Gateway headers.

    Raises:
        HTTPException: 401 when the X-User-ID header is missing
    """
    user_id = request.headers.get("X-User-ID")
    if not user_id:
        logger.error("Missing X-User-ID header in request")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-ID header required (should be added by API Gateway)",
        )

    roles: List[RoleId] = []
    roles_header = request.headers.get("X-User-Roles")
    if roles_header:
        try:
            raw_roles = json.loads(roles_header)
        except json.JSONDecodeError:
            logger.warning(f"Failed to parse X-User-Roles header: {roles_header}")
            raw_roles = []
        if not isinstance(raw_roles, list):
            logger.warning(f"X-User-Roles is not a JSON array: {roles_header}")
            raw_roles = []
        for name in raw_roles:
            role = parse_role(name) if isinstance(name, str) else None
            if role is not None:
                roles.append(role)

    return RequestContext(
        user_id=user_id,
        user_email=request.headers.get("X-User-Email"),
        user_roles=roles,
        correlation_id=request.headers.get("X-Correlation-ID"),
    )


def require_role(minimum: RoleId) -> Callable[[Request], RequestContext]:
    """FastAPI dependency factory rejecting users below ``minimum``.

    Usage:
        @router.post("/claims/{claim_id}/hold/clear")
        async def clear_hold(ctx: RequestContext = Depends(require_role(RoleId.MODERATOR))):
            ...
    """

    def dependency(request: Request) -> RequestContext:
        context = get_request_context(request)
        if not context.has_role_at_least(minimum):
            logger.warning(
                f"User {context.user_id} ({context.primary_role}) denied: requires {minimum.value}"
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires role {minimum.value} or higher",
            )
        return context

    return dependency
