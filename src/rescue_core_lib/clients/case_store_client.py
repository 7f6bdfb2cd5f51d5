"""HTTP client for the case store service."""

import logging
from typing import List, Optional, Sequence

import httpx
from pydantic import BaseModel

from rescue_core_lib.clients.base import BaseServiceClient
from rescue_core_lib.coordination.store import AGGREGATE_MODELS, identity_of
from rescue_core_lib.errors import AggregateNotFoundError, ConcurrencyConflictError
from rescue_core_lib.models.common import SYSTEM_ACTOR
from rescue_core_lib.models.dispatch import VolunteerDispatchProfile
from rescue_core_lib.models.events import AggregateType, DomainEvent

logger = logging.getLogger(__name__)


class CaseStoreClient(BaseServiceClient):
    """Aggregate store backed by the case store service.

    Versioned writes send ``If-Match: <expected version>`` (or
    ``If-None-Match: *`` for a new aggregate); the service answers 409 or 412
    when the stored version moved on.

    Usage:
        client = CaseStoreClient(base_url="http://case-store:8000")
        claim = await client.get(AggregateType.OWNERSHIP_CLAIM, "claim_123")
    """

    def __init__(
        self,
        base_url: str = "http://case-store:8000",
        timeout: float = 30.0,
        actor_id: str = SYSTEM_ACTOR,
        correlation_id: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(base_url=base_url, timeout=timeout, transport=transport)
        self.actor_id = actor_id
        self.correlation_id = correlation_id

    def _request_headers(self, **extra: str) -> dict:
        return self._headers(self.actor_id, self.correlation_id, **extra)

    async def get(self, aggregate_type: AggregateType, aggregate_id: str) -> BaseModel:
        """Fetch one aggregate.

        Raises:
            AggregateNotFoundError: service answered 404
            httpx.HTTPStatusError: any other error status
        """
        async with self._get_client() as client:
            response = await client.get(
                self._url(f"aggregates/{aggregate_type.value}/{aggregate_id}"),
                headers=self._request_headers(),
            )
        if response.status_code == 404:
            raise AggregateNotFoundError(aggregate_type.value, aggregate_id)
        response.raise_for_status()
        return AGGREGATE_MODELS[aggregate_type].model_validate(response.json())

    async def list_aggregates(self, aggregate_type: AggregateType) -> List[BaseModel]:
        async with self._get_client() as client:
            response = await client.get(
                self._url(f"aggregates/{aggregate_type.value}"), headers=self._request_headers()
            )
        response.raise_for_status()
        model = AGGREGATE_MODELS[aggregate_type]
        return [model.model_validate(item) for item in response.json()]

    async def save(self, aggregate: BaseModel, expected_version: Optional[int]) -> None:
        """Write an aggregate under optimistic concurrency.

        Raises:
            ConcurrencyConflictError: service answered 409 or 412
        """
        aggregate_type, aggregate_id = identity_of(aggregate)
        if expected_version is None:
            precondition = {"If-None-Match": "*"}
        else:
            precondition = {"If-Match": str(expected_version)}

        async with self._get_client() as client:
            response = await client.put(
                self._url(f"aggregates/{aggregate_type.value}/{aggregate_id}"),
                content=aggregate.model_dump_json(),
                headers=self._request_headers(**precondition),
            )

        if response.status_code in (409, 412):
            actual = _actual_version(response)
            logger.warning(
                f"Case store rejected write to {aggregate_type.value} {aggregate_id}: "
                f"expected v{expected_version}, found v{actual}"
            )
            raise ConcurrencyConflictError(aggregate_type.value, aggregate_id, expected_version, actual)
        response.raise_for_status()

    async def append_events(self, events: Sequence[DomainEvent]) -> None:
        if not events:
            return
        async with self._get_client() as client:
            response = await client.post(
                self._url("events"),
                json=[event.model_dump(mode="json") for event in events],
                headers=self._request_headers(),
            )
        response.raise_for_status()

    async def events_for(self, aggregate_type: AggregateType, aggregate_id: str) -> List[DomainEvent]:
        async with self._get_client() as client:
            response = await client.get(
                self._url(f"events/{aggregate_type.value}/{aggregate_id}"), headers=self._request_headers()
            )
        response.raise_for_status()
        return [DomainEvent.model_validate(item) for item in response.json()]

    async def acquire_volunteer(self, volunteer_id: str, dispatch_id: str) -> bool:
        async with self._get_client() as client:
            response = await client.post(
                self._url(f"volunteers/{volunteer_id}/lock"),
                json={"dispatch_id": dispatch_id},
                headers=self._request_headers(),
            )
        if response.status_code == 409:
            return False
        response.raise_for_status()
        return True

    async def release_volunteer(self, volunteer_id: str, dispatch_id: str) -> None:
        async with self._get_client() as client:
            response = await client.delete(
                self._url(f"volunteers/{volunteer_id}/lock"),
                params={"dispatch_id": dispatch_id},
                headers=self._request_headers(),
            )
        if response.status_code not in (404, 409):
            response.raise_for_status()

    async def list_dispatch_profiles(
        self, available_only: bool = True, region_id: Optional[str] = None
    ) -> List[VolunteerDispatchProfile]:
        """Fetch the current volunteer-availability snapshot."""
        params = {"available_only": str(available_only).lower()}
        if region_id:
            params["region_id"] = region_id
        async with self._get_client() as client:
            response = await client.get(
                self._url("volunteers/dispatch-profiles"), params=params, headers=self._request_headers()
            )
        response.raise_for_status()
        return [VolunteerDispatchProfile.model_validate(item) for item in response.json()]


def _actual_version(response: httpx.Response) -> Optional[int]:
    try:
        body = response.json()
    except ValueError:
        return None
    return body.get("actual_version") if isinstance(body, dict) else None
