"""Stores, sweeper and dispatch coordination around the pure engines."""

from rescue_core_lib.coordination.dispatch_coordinator import DispatchCoordinator
from rescue_core_lib.coordination.redis_store import RedisAggregateStore
from rescue_core_lib.coordination.store import (
    AGGREGATE_MODELS,
    AggregateStore,
    InMemoryAggregateStore,
    aggregate_type_of,
    commit,
)
from rescue_core_lib.coordination.sweeper import EscalationSweeper, SweepReport

__all__ = [
    "AGGREGATE_MODELS",
    "AggregateStore",
    "DispatchCoordinator",
    "EscalationSweeper",
    "InMemoryAggregateStore",
    "RedisAggregateStore",
    "SweepReport",
    "aggregate_type_of",
    "commit",
]
