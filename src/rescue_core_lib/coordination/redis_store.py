"""Redis-backed aggregate store.

Key layout (``prefix`` defaults to "ops"):
    {prefix}:agg:{type}:{id}        JSON snapshot
    {prefix}:idx:{type}             set of ids per aggregate type
    {prefix}:events:{type}:{id}     list of JSON events, append-only
    {prefix}:volunteer:{user_id}    dispatch id currently holding the volunteer

Versioned writes use WATCH/MULTI/EXEC; volunteer locks use SET NX.
"""

import json
import logging
from typing import List, Optional, Sequence

from pydantic import BaseModel
from redis.asyncio import Redis
from redis.exceptions import WatchError

from rescue_core_lib.coordination.store import AGGREGATE_MODELS, identity_of
from rescue_core_lib.errors import AggregateNotFoundError, ConcurrencyConflictError
from rescue_core_lib.models.events import AggregateType, DomainEvent

logger = logging.getLogger(__name__)


class RedisAggregateStore:
    def __init__(self, client: Redis, key_prefix: str = "ops"):
        self.client = client
        self.key_prefix = key_prefix

    def _aggregate_key(self, aggregate_type: AggregateType, aggregate_id: str) -> str:
        return f"{self.key_prefix}:agg:{aggregate_type.value}:{aggregate_id}"

    def _index_key(self, aggregate_type: AggregateType) -> str:
        return f"{self.key_prefix}:idx:{aggregate_type.value}"

    def _events_key(self, aggregate_type: AggregateType, aggregate_id: str) -> str:
        return f"{self.key_prefix}:events:{aggregate_type.value}:{aggregate_id}"

    def _volunteer_key(self, volunteer_id: str) -> str:
        return f"{self.key_prefix}:volunteer:{volunteer_id}"

    async def get(self, aggregate_type: AggregateType, aggregate_id: str) -> BaseModel:
        raw = await self.client.get(self._aggregate_key(aggregate_type, aggregate_id))
        if raw is None:
            raise AggregateNotFoundError(aggregate_type.value, aggregate_id)
        return AGGREGATE_MODELS[aggregate_type].model_validate_json(raw)

    async def list_aggregates(self, aggregate_type: AggregateType) -> List[BaseModel]:
        ids = sorted(await self.client.smembers(self._index_key(aggregate_type)))
        if not ids:
            return []
        raws = await self.client.mget([self._aggregate_key(aggregate_type, i) for i in ids])
        model = AGGREGATE_MODELS[aggregate_type]
        return [model.model_validate_json(raw) for raw in raws if raw is not None]

    async def save(self, aggregate: BaseModel, expected_version: Optional[int]) -> None:
        aggregate_type, aggregate_id = identity_of(aggregate)
        key = self._aggregate_key(aggregate_type, aggregate_id)

        async with self.client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                raw = await pipe.get(key)
                actual = json.loads(raw)["audit"]["version"] if raw is not None else None
                if actual != expected_version:
                    await pipe.unwatch()
                    raise ConcurrencyConflictError(aggregate_type.value, aggregate_id, expected_version, actual)
                pipe.multi()
                pipe.set(key, aggregate.model_dump_json())
                pipe.sadd(self._index_key(aggregate_type), aggregate_id)
                await pipe.execute()
            except WatchError:
                logger.warning(f"Concurrent write to {aggregate_type.value} {aggregate_id} detected")
                raise ConcurrencyConflictError(aggregate_type.value, aggregate_id, expected_version, None) from None

        logger.debug(f"Saved {aggregate_type.value} {aggregate_id} at v{aggregate.audit.version}")

    async def append_events(self, events: Sequence[DomainEvent]) -> None:
        if not events:
            return
        pipe = self.client.pipeline(transaction=True)
        for event in events:
            pipe.rpush(self._events_key(event.aggregate_type, event.aggregate_id), event.model_dump_json())
        await pipe.execute()

    async def events_for(self, aggregate_type: AggregateType, aggregate_id: str) -> List[DomainEvent]:
        raws = await self.client.lrange(self._events_key(aggregate_type, aggregate_id), 0, -1)
        return [DomainEvent.model_validate_json(raw) for raw in raws]

    async def acquire_volunteer(self, volunteer_id: str, dispatch_id: str) -> bool:
        key = self._volunteer_key(volunteer_id)
        if await self.client.set(key, dispatch_id, nx=True):
            return True
        return await self.client.get(key) == dispatch_id

    async def release_volunteer(self, volunteer_id: str, dispatch_id: str) -> None:
        key = self._volunteer_key(volunteer_id)
        async with self.client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                if await pipe.get(key) != dispatch_id:
                    await pipe.unwatch()
                    return
                pipe.multi()
                pipe.delete(key)
                await pipe.execute()
            except WatchError:
                logger.warning(f"Volunteer lock {volunteer_id} changed during release; leaving it")
