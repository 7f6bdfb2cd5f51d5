"""Stored-dispatch workflow with at-most-one active dispatch per volunteer."""

import logging
from typing import Iterable, Optional

from rescue_core_lib.auth.roles import RoleId
from rescue_core_lib.coordination.store import AggregateStore, commit
from rescue_core_lib.core.context import OperationsContext
from rescue_core_lib.core.dispatch import DispatchService
from rescue_core_lib.errors import ConcurrencyConflictError, VolunteerUnavailableError
from rescue_core_lib.models.common import UserId
from rescue_core_lib.models.dispatch import DispatchRequest, DispatchStatus, VolunteerDispatchProfile
from rescue_core_lib.models.events import AggregateType, Mutation
from rescue_core_lib.utils.resilience import conflict_retry

logger = logging.getLogger(__name__)


class DispatchCoordinator:
    """Runs DispatchService operations against a store.

    Assignment claims the volunteer lock before the dispatch is written, so
    two dispatches racing for one volunteer cannot both succeed. Accept and status
    updates re-read and re-apply on a version conflict.
    """

    def __init__(self, store: AggregateStore, ctx: OperationsContext):
        self.store = store
        self.service = DispatchService(ctx)

    async def _load(self, dispatch_id: str) -> DispatchRequest:
        return await self.store.get(AggregateType.DISPATCH_REQUEST, dispatch_id)

    async def find_volunteers(
        self, dispatch_id: str, volunteers: Iterable[VolunteerDispatchProfile], actor: UserId, **criteria
    ) -> Mutation[DispatchRequest]:
        dispatch = await self._load(dispatch_id)
        mutation = self.service.find_volunteers(dispatch, volunteers, actor, **criteria)
        await commit(self.store, mutation, dispatch.audit.version)
        return mutation

    async def assign(
        self, dispatch_id: str, volunteer_id: UserId, assigned_by: UserId, role: RoleId
    ) -> Mutation[DispatchRequest]:
        """Assign a volunteer.

        Raises:
            VolunteerUnavailableError: volunteer already holds another active dispatch
            ConcurrencyConflictError: dispatch changed since it was read
        """
        dispatch = await self._load(dispatch_id)
        mutation = self.service.assign_dispatch(dispatch, volunteer_id, assigned_by, role)

        if not await self.store.acquire_volunteer(volunteer_id, dispatch.id):
            logger.warning(f"Volunteer {volunteer_id} busy; assignment to {dispatch.id} refused")
            raise VolunteerUnavailableError(volunteer_id, dispatch.id)

        try:
            await commit(self.store, mutation, dispatch.audit.version)
        except ConcurrencyConflictError:
            await self.store.release_volunteer(volunteer_id, dispatch.id)
            raise
        return mutation

    @conflict_retry
    async def accept(self, dispatch_id: str, accepted_by: UserId) -> Mutation[DispatchRequest]:
        dispatch = await self._load(dispatch_id)
        mutation = self.service.accept_dispatch(dispatch, accepted_by)
        await commit(self.store, mutation, dispatch.audit.version)
        return mutation

    async def decline(self, dispatch_id: str, volunteer_id: UserId, reason: str = "") -> Mutation[DispatchRequest]:
        dispatch = await self._load(dispatch_id)
        mutation = self.service.decline_dispatch(dispatch, volunteer_id, reason)
        await commit(self.store, mutation, dispatch.audit.version)
        await self.store.release_volunteer(volunteer_id, dispatch.id)
        return mutation

    @conflict_retry
    async def update_status(
        self,
        dispatch_id: str,
        new_status: DispatchStatus,
        updated_by: UserId,
        role: Optional[RoleId] = None,
        note: Optional[str] = None,
    ) -> Mutation[DispatchRequest]:
        dispatch = await self._load(dispatch_id)
        mutation = self.service.update_status(dispatch, new_status, updated_by, role, note)
        await commit(self.store, mutation, dispatch.audit.version)
        if new_status.is_terminal and dispatch.assigned_to:
            await self.store.release_volunteer(dispatch.assigned_to, dispatch.id)
        return mutation
