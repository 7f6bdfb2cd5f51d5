"""Exception taxonomy for the operations core.

Structural problems and forbidden transitions are raised. "Not yet allowed"
outcomes (a gate that is still blocked, a hold that needs a second approver)
are never raised; the gates return decision models instead.
"""

from typing import Any, Dict, Optional


class OperationsError(Exception):
    """Base class for all operations errors.

    Attributes:
        code: Stable machine-readable error code
        message: Human-readable description
        details: Extra structured context for callers and logs
    """

    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationFailedError(OperationsError):
    """Input rejected before any mutation took place."""

    code = "VALIDATION_ERROR"


class InvalidStateTransitionError(OperationsError):
    """The requested transition is not allowed from the current state."""

    code = "INVALID_STATE_TRANSITION"

    def __init__(
        self,
        message: str,
        current_state: Optional[str] = None,
        requested_state: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        merged = dict(details or {})
        if current_state is not None:
            merged["current_state"] = current_state
        if requested_state is not None:
            merged["requested_state"] = requested_state
        super().__init__(message, merged)
        self.current_state = current_state
        self.requested_state = requested_state


class PermissionDeniedError(OperationsError):
    """The actor lacks the role or identity required for the action."""

    code = "PERMISSION_DENIED"


class ConcurrencyConflictError(OperationsError):
    """Optimistic-concurrency check failed; re-fetch and retry."""

    code = "CONFLICT"

    def __init__(
        self,
        aggregate_type: str,
        aggregate_id: str,
        expected_version: Optional[int],
        actual_version: Optional[int],
    ):
        super().__init__(
            f"Version conflict on {aggregate_type} {aggregate_id}: "
            f"expected {expected_version}, found {actual_version}",
            {
                "aggregate_type": aggregate_type,
                "aggregate_id": aggregate_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
        )
        self.aggregate_type = aggregate_type
        self.aggregate_id = aggregate_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class VolunteerUnavailableError(OperationsError):
    """The volunteer already holds an active dispatch."""

    code = "CONFLICT"

    def __init__(self, volunteer_id: str, dispatch_id: str):
        super().__init__(
            f"Volunteer {volunteer_id} is not available for dispatch {dispatch_id}",
            {"volunteer_id": volunteer_id, "dispatch_id": dispatch_id},
        )
        self.volunteer_id = volunteer_id
        self.dispatch_id = dispatch_id


class AggregateNotFoundError(OperationsError):
    code = "RESOURCE_NOT_FOUND"

    def __init__(self, aggregate_type: str, aggregate_id: str):
        super().__init__(
            f"{aggregate_type} {aggregate_id} not found",
            {"aggregate_type": aggregate_type, "aggregate_id": aggregate_id},
        )
        self.aggregate_type = aggregate_type
        self.aggregate_id = aggregate_id


class BreakGlassRequiredError(OperationsError):
    """The action needs a valid, granted break-glass authorization."""

    code = "REQUIRES_BREAK_GLASS"
