"""Injected clock, id generator and event factory.

Engines never read the wall clock or generate random ids themselves; they ask
the ``OperationsContext`` they were constructed with. Tests inject a
``ManualClock`` and ``SequentialIdGenerator`` for reproducible output.
"""

import itertools
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Protocol

from rescue_core_lib.config import OperationsConfig, get_operations_config
from rescue_core_lib.models.common import EventId, UserId
from rescue_core_lib.models.events import AggregateType, DomainEvent, EventType


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class IdGenerator(Protocol):
    def new_id(self, prefix: str) -> str:
        ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime):
        self._now = start

    def now(self) -> datetime:
        return self._now

    def advance(self, **delta: float) -> datetime:
        self._now = self._now + timedelta(**delta)
        return self._now

    def set(self, moment: datetime) -> None:
        self._now = moment


class UuidGenerator:
    def new_id(self, prefix: str) -> str:
        return f"{prefix}_{uuid.uuid4().hex[:16]}"


class SequentialIdGenerator:
    def __init__(self, start: int = 1):
        self._counter = itertools.count(start)

    def new_id(self, prefix: str) -> str:
        return f"{prefix}_{next(self._counter):04d}"


@dataclass
class OperationsContext:
    """Dependencies shared by every engine.

    Attributes:
        clock: Source of "now"
        ids: Identifier generator
        config: Policy configuration (process default when not given)
        correlation_id: Propagated onto every emitted DomainEvent
    """

    clock: Clock = field(default_factory=SystemClock)
    ids: IdGenerator = field(default_factory=UuidGenerator)
    config: OperationsConfig = field(default_factory=get_operations_config)
    correlation_id: Optional[str] = None

    def now(self) -> datetime:
        return self.clock.now()

    def new_id(self, prefix: str) -> str:
        return self.ids.new_id(prefix)

    def with_correlation(self, correlation_id: Optional[str]) -> "OperationsContext":
        return OperationsContext(
            clock=self.clock, ids=self.ids, config=self.config, correlation_id=correlation_id
        )

    def event(
        self,
        aggregate_type: AggregateType,
        aggregate_id: str,
        event_type: EventType,
        version: int,
        actor: UserId,
        payload: Optional[Dict[str, Any]] = None,
        at: Optional[datetime] = None,
    ) -> DomainEvent:
        return DomainEvent(
            id=EventId(self.new_id("evt")),
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            event_type=event_type,
            version=version,
            timestamp=at or self.now(),
            actor=actor,
            correlation_id=self.correlation_id,
            payload=payload or {},
        )
