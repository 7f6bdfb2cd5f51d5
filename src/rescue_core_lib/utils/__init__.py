"""Utility Functions"""

from rescue_core_lib.utils.resilience import (
    conflict_retry,
    create_conflict_retry,
    service_startup_retry,
)

__all__ = [
    "conflict_retry",
    "create_conflict_retry",
    "service_startup_retry",
]
