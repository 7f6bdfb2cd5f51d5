"""Rescue Core Library

Decision-gating engines, domain models and infrastructure adapters shared by
the rescue operations services.
"""

__version__ = "0.1.0"

# Models and config first (no service dependencies)
from rescue_core_lib.config import (
    OperationsConfig,
    get_operations_config,
    reset_operations_config,
)
from rescue_core_lib.errors import (
    BreakGlassRequiredError,
    ConcurrencyConflictError,
    InvalidStateTransitionError,
    OperationsError,
    PermissionDeniedError,
    ValidationFailedError,
    VolunteerUnavailableError,
)
from rescue_core_lib.core import (
    ApprovalService,
    ClaimService,
    DispatchService,
    MatchGate,
    OnCallService,
    OperationsContext,
)


# Lazy import for adapters so the engines load without network libraries initialized
def __getattr__(name):
    if name == "CaseStoreClient":
        from rescue_core_lib.clients import CaseStoreClient
        return CaseStoreClient
    if name == "RedisAggregateStore":
        from rescue_core_lib.coordination.redis_store import RedisAggregateStore
        return RedisAggregateStore
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")


__all__ = [
    # Config
    "OperationsConfig",
    "get_operations_config",
    "reset_operations_config",
    # Errors
    "BreakGlassRequiredError",
    "ConcurrencyConflictError",
    "InvalidStateTransitionError",
    "OperationsError",
    "PermissionDeniedError",
    "ValidationFailedError",
    "VolunteerUnavailableError",
    # Engines
    "ApprovalService",
    "ClaimService",
    "DispatchService",
    "MatchGate",
    "OnCallService",
    "OperationsContext",
    # Adapters (lazy loaded)
    "CaseStoreClient",
    "RedisAggregateStore",
]
