"""Decision engines.

Each engine is constructed with an OperationsContext and never touches
storage, the wall clock or random ids directly.
"""

from rescue_core_lib.core.approvals import ApprovalService
from rescue_core_lib.core.context import ManualClock, OperationsContext, SequentialIdGenerator
from rescue_core_lib.core.dispatch import DispatchMatcher, DispatchService
from rescue_core_lib.core.evidence import ClaimService, can_clear_hold, get_approval_threshold
from rescue_core_lib.core.match_gate import MatchGate, can_notify_owner
from rescue_core_lib.core.on_call import OnCallService

__all__ = [
    "ApprovalService",
    "ClaimService",
    "DispatchMatcher",
    "DispatchService",
    "ManualClock",
    "MatchGate",
    "OnCallService",
    "OperationsContext",
    "SequentialIdGenerator",
    "can_clear_hold",
    "can_notify_owner",
    "get_approval_threshold",
]
