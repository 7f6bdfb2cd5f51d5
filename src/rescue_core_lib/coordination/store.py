"""Aggregate storage with optimistic concurrency.

Every aggregate carries ``audit.version``. A write names the version it was
derived from; if the stored version moved on in the meantime the write is
refused with ``ConcurrencyConflictError`` and the caller re-fetches.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Dict, List, Optional, Protocol, Sequence, Tuple, Type

from pydantic import BaseModel

from rescue_core_lib.errors import AggregateNotFoundError, ConcurrencyConflictError, ValidationFailedError
from rescue_core_lib.models.approvals import BreakGlassGrant, RoleAssignment, TwoPersonApprovalRequest
from rescue_core_lib.models.claims import OwnershipClaim
from rescue_core_lib.models.dispatch import DispatchRequest
from rescue_core_lib.models.events import AggregateType, DomainEvent, Mutation
from rescue_core_lib.models.matches import PotentialMatch
from rescue_core_lib.models.on_call import Escalation, OnCallRotation, OnCallSchedule

logger = logging.getLogger(__name__)

AGGREGATE_MODELS: Dict[AggregateType, Type[BaseModel]] = {
    AggregateType.OWNERSHIP_CLAIM: OwnershipClaim,
    AggregateType.POTENTIAL_MATCH: PotentialMatch,
    AggregateType.DISPATCH_REQUEST: DispatchRequest,
    AggregateType.ON_CALL_SCHEDULE: OnCallSchedule,
    AggregateType.ON_CALL_ROTATION: OnCallRotation,
    AggregateType.ESCALATION: Escalation,
    AggregateType.APPROVAL_REQUEST: TwoPersonApprovalRequest,
    AggregateType.BREAK_GLASS_GRANT: BreakGlassGrant,
    AggregateType.ROLE_ASSIGNMENT: RoleAssignment,
}

_TYPES_BY_MODEL = {model: aggregate_type for aggregate_type, model in AGGREGATE_MODELS.items()}


def aggregate_type_of(aggregate: BaseModel) -> AggregateType:
    try:
        return _TYPES_BY_MODEL[type(aggregate)]
    except KeyError:
        raise ValidationFailedError(f"{type(aggregate).__name__} is not a stored aggregate") from None


def identity_of(aggregate: BaseModel) -> Tuple[AggregateType, str]:
    return aggregate_type_of(aggregate), aggregate.id


class AggregateStore(Protocol):
    async def get(self, aggregate_type: AggregateType, aggregate_id: str) -> BaseModel:
        """Raises AggregateNotFoundError."""
        ...

    async def list_aggregates(self, aggregate_type: AggregateType) -> List[BaseModel]:
        ...

    async def save(self, aggregate: BaseModel, expected_version: Optional[int]) -> None:
        """Write ``aggregate`` if the stored version equals ``expected_version``.

        ``expected_version=None`` means the aggregate must not exist yet.
        Raises ConcurrencyConflictError otherwise.
        """
        ...

    async def append_events(self, events: Sequence[DomainEvent]) -> None:
        ...

    async def events_for(self, aggregate_type: AggregateType, aggregate_id: str) -> List[DomainEvent]:
        ...

    async def acquire_volunteer(self, volunteer_id: str, dispatch_id: str) -> bool:
        """Claim the volunteer for a dispatch. True if now (or already) held by it."""
        ...

    async def release_volunteer(self, volunteer_id: str, dispatch_id: str) -> None:
        """Release the volunteer if held by ``dispatch_id``."""
        ...


async def commit(store: AggregateStore, mutation: Mutation, expected_version: Optional[int]) -> None:
    """Persist a mutation's aggregate, then its events."""
    await store.save(mutation.aggregate, expected_version)
    if mutation.events:
        await store.append_events(mutation.events)


class InMemoryAggregateStore:
    """Process-local store. One lock serializes every compare-and-swap."""

    def __init__(self):
        self._aggregates: Dict[Tuple[AggregateType, str], BaseModel] = {}
        self._events: Dict[Tuple[AggregateType, str], List[DomainEvent]] = defaultdict(list)
        self._volunteer_locks: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, aggregate_type: AggregateType, aggregate_id: str) -> BaseModel:
        try:
            return self._aggregates[(aggregate_type, aggregate_id)]
        except KeyError:
            raise AggregateNotFoundError(aggregate_type.value, aggregate_id) from None

    async def list_aggregates(self, aggregate_type: AggregateType) -> List[BaseModel]:
        return [a for (t, _), a in self._aggregates.items() if t is aggregate_type]

    async def save(self, aggregate: BaseModel, expected_version: Optional[int]) -> None:
        key = identity_of(aggregate)
        async with self._lock:
            current = self._aggregates.get(key)
            actual = current.audit.version if current is not None else None
            if actual != expected_version:
                logger.warning(
                    f"Rejected write to {key[0].value} {key[1]}: expected v{expected_version}, found v{actual}"
                )
                raise ConcurrencyConflictError(key[0].value, key[1], expected_version, actual)
            self._aggregates[key] = aggregate
        logger.debug(f"Saved {key[0].value} {key[1]} at v{aggregate.audit.version}")

    async def append_events(self, events: Sequence[DomainEvent]) -> None:
        for event in events:
            self._events[(event.aggregate_type, event.aggregate_id)].append(event)

    async def events_for(self, aggregate_type: AggregateType, aggregate_id: str) -> List[DomainEvent]:
        return list(self._events.get((aggregate_type, aggregate_id), []))

    async def acquire_volunteer(self, volunteer_id: str, dispatch_id: str) -> bool:
        async with self._lock:
            holder = self._volunteer_locks.get(volunteer_id)
            if holder is None:
                self._volunteer_locks[volunteer_id] = dispatch_id
                return True
            return holder == dispatch_id

    async def release_volunteer(self, volunteer_id: str, dispatch_id: str) -> None:
        async with self._lock:
            if self._volunteer_locks.get(volunteer_id) == dispatch_id:
                del self._volunteer_locks[volunteer_id]
