"""Periodic sweep over time-driven transitions.

Advances overdue escalations, fails timed-out ones and expires stale
unreviewed matches. Several sweepers may run at once: each transition is a
read-check-write cycle guarded by the aggregate version, and a loser
re-reads and re-checks, so a due transition is applied exactly once.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from rescue_core_lib.coordination.store import AggregateStore, commit
from rescue_core_lib.core.context import OperationsContext
from rescue_core_lib.core.match_gate import MatchGate
from rescue_core_lib.core.on_call import (
    OnCallService,
    is_escalation_overdue,
    is_escalation_timed_out,
)
from rescue_core_lib.errors import ConcurrencyConflictError
from rescue_core_lib.models.events import AggregateType, Mutation
from rescue_core_lib.models.on_call import Escalation, EscalationStatus
from rescue_core_lib.utils.resilience import create_conflict_retry

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    advanced: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    expired_matches: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)

    @property
    def transitions(self) -> int:
        return len(self.advanced) + len(self.failed) + len(self.expired_matches)


class EscalationSweeper:
    def __init__(self, store: AggregateStore, ctx: OperationsContext, max_attempts: int = 3):
        self.store = store
        self.ctx = ctx
        self.on_call = OnCallService(ctx)
        self.match_gate = MatchGate(ctx)
        self._retry = create_conflict_retry(max_attempts=max_attempts)

    async def sweep(self) -> SweepReport:
        report = SweepReport()

        for escalation in await self.store.list_aggregates(AggregateType.ESCALATION):
            if escalation.status is not EscalationStatus.ESCALATING:
                continue
            try:
                result = await self._retry(self._advance_escalation)(escalation.id)
            except ConcurrencyConflictError:
                logger.warning(f"Gave up on escalation {escalation.id} after repeated conflicts")
                report.conflicts.append(escalation.id)
                continue
            if result is None:
                continue
            if result.aggregate.status is EscalationStatus.FAILED:
                report.failed.append(escalation.id)
            else:
                report.advanced.append(escalation.id)

        for match in await self.store.list_aggregates(AggregateType.POTENTIAL_MATCH):
            if match.gate_status.is_terminal:
                continue
            try:
                result = await self._retry(self._expire_match)(match.id)
            except ConcurrencyConflictError:
                report.conflicts.append(match.id)
                continue
            if result is not None:
                report.expired_matches.append(match.id)

        if report.transitions or report.conflicts:
            logger.info(
                f"Sweep: {len(report.advanced)} advanced, {len(report.failed)} failed, "
                f"{len(report.expired_matches)} matches expired, {len(report.conflicts)} conflicts"
            )
        return report

    async def _advance_escalation(self, escalation_id: str) -> Optional[Mutation[Escalation]]:
        """Apply the due transition, re-checked against a fresh read. None when nothing is due."""
        escalation = await self.store.get(AggregateType.ESCALATION, escalation_id)
        if escalation.status is not EscalationStatus.ESCALATING:
            return None

        now = self.ctx.now()
        if is_escalation_timed_out(escalation, now):
            mutation = self.on_call.fail_timed_out(escalation)
        elif is_escalation_overdue(escalation, now) or escalation.awaiting_next_tier:
            schedule = await self.store.get(AggregateType.ON_CALL_SCHEDULE, escalation.schedule_id)
            if not schedule.settings.auto_escalate_on_no_response and not escalation.awaiting_next_tier:
                return None
            rotation = await self.store.get(AggregateType.ON_CALL_ROTATION, escalation.rotation_id)
            mutation = self.on_call.escalate_to_next_tier(escalation, rotation, schedule)
        else:
            return None

        await commit(self.store, mutation, escalation.audit.version)
        return mutation

    async def _expire_match(self, match_id: str):
        match = await self.store.get(AggregateType.POTENTIAL_MATCH, match_id)
        mutation = self.match_gate.expire_if_stale(match)
        if not mutation.events:
            return None
        await commit(self.store, mutation, match.audit.version)
        return mutation
