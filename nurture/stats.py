"""Best-effort workflow counters derived from enrollment transitions."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from .contracts import EnrollmentStatus, WorkflowStats
from .errors import WorkflowNotFoundError
from .persistence.repository import WorkflowRepository

logger = logging.getLogger(__name__)

_ENROLLMENT_COUNTERS = (
    "total_entered",
    "currently_active",
    "completed",
    "exited",
    "failed",
    "goal_reached",
)
_DELIVERY_COUNTERS = ("emails_sent", "emails_opened", "emails_clicked", "revenue")


class StatsAggregator:
    """Updates workflow and per-step counters.

    Counter updates never interrupt enrollment processing: a failed update
    is logged and dropped. ``rebuild`` restores exact values from storage.
    """

    def __init__(self, repository: WorkflowRepository) -> None:
        self._repository = repository

    async def _bump(
        self,
        workflow_id: str,
        deltas: dict[str, float],
        step_id: Optional[str] = None,
        last_entry_at: Optional[datetime] = None,
    ) -> None:
        try:
            await self._repository.increment_stats(
                workflow_id, deltas, step_id=step_id, last_entry_at=last_entry_at
            )
        except Exception as exc:
            logger.warning(
                f"Stats update {deltas} for workflow {workflow_id} dropped: {exc}"
            )

    async def enrolled(self, workflow_id: str, at: datetime) -> None:
        await self._bump(
            workflow_id, {"total_entered": 1, "currently_active": 1}, last_entry_at=at
        )

    async def step_entered(self, workflow_id: str, step_id: str) -> None:
        await self._bump(workflow_id, {"entered": 1}, step_id=step_id)

    async def step_finished(self, workflow_id: str, step_id: str, outcome: str) -> None:
        """Record a step outcome: ``completed``, ``skipped`` or ``failed``."""
        await self._bump(workflow_id, {outcome: 1}, step_id=step_id)

    async def email_sent(self, workflow_id: str) -> None:
        await self._bump(workflow_id, {"emails_sent": 1})

    async def email_engaged(self, workflow_id: str, event: str) -> None:
        counter = {"opened": "emails_opened", "clicked": "emails_clicked"}.get(event)
        if counter:
            await self._bump(workflow_id, {counter: 1})

    async def revenue(self, workflow_id: str, amount: float) -> None:
        await self._bump(workflow_id, {"revenue": amount})

    async def goal_reached(self, workflow_id: str) -> None:
        await self._bump(workflow_id, {"goal_reached": 1})

    async def finished(self, workflow_id: str, status: EnrollmentStatus) -> None:
        await self._bump(workflow_id, {"currently_active": -1, status.value: 1})

    async def rebuild(self, workflow_id: str) -> WorkflowStats:
        """Recompute enrollment and delivery counters from stored records."""
        definition = await self._repository.get_definition(workflow_id)
        if definition is None:
            raise WorkflowNotFoundError(workflow_id)

        fresh = WorkflowStats()
        enrollments = await self._repository.list_enrollments(workflow_id=workflow_id)
        for enrollment in enrollments:
            fresh.total_entered += 1
            if enrollment.is_terminal:
                setattr(
                    fresh,
                    enrollment.status.value,
                    getattr(fresh, enrollment.status.value) + 1,
                )
            else:
                fresh.currently_active += 1
            if enrollment.goal_reached:
                fresh.goal_reached += 1
            if fresh.last_entry_at is None or enrollment.enrolled_at > fresh.last_entry_at:
                fresh.last_entry_at = enrollment.enrolled_at
            for log in await self._repository.list_deliveries(enrollment.id):
                fresh.emails_sent += 1
                fresh.emails_opened += log.opened_at is not None
                fresh.emails_clicked += log.clicked_at is not None
                fresh.revenue += log.revenue

        current = definition.stats
        deltas = {
            key: getattr(fresh, key) - getattr(current, key)
            for key in _ENROLLMENT_COUNTERS + _DELIVERY_COUNTERS
            if getattr(fresh, key) != getattr(current, key)
        }
        await self._repository.increment_stats(
            workflow_id, deltas, last_entry_at=fresh.last_entry_at
        )
        fresh.steps = current.steps
        return fresh
