"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Dict, Optional

from ..contracts import (
    EnrollmentStatus,
    StepStats,
    WorkflowDefinition,
    WorkflowStatus,
)
from ..errors import DuplicateEnrollmentError, SchedulerClaimConflict
from .models import DeliveryLog, Enrollment
from .repository import WorkflowRepository

_SCHEDULABLE = (EnrollmentStatus.ACTIVE, EnrollmentStatus.PAUSED)


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store automation state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in
    and out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._enrollments: Dict[str, Enrollment] = {}
        self._deliveries: Dict[str, DeliveryLog] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        async with self._lock:
            stored = definition.model_copy(deep=True)
            existing = self._definitions.get(definition.id)
            if existing is not None:
                stored.stats = existing.stats.model_copy(deep=True)
            self._definitions[definition.id] = stored

    async def get_definition(self, workflow_id: str) -> WorkflowDefinition | None:
        wf = self._definitions.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def list_definitions(
        self,
        status: Optional[WorkflowStatus] = None,
        trigger_type: Optional[str] = None,
    ) -> list[WorkflowDefinition]:
        return [
            wf.model_copy(deep=True)
            for wf in self._definitions.values()
            if (status is None or wf.status == status)
            and (trigger_type is None or wf.trigger.type == trigger_type)
        ]

    async def increment_stats(
        self,
        workflow_id: str,
        deltas: dict[str, float],
        step_id: Optional[str] = None,
        last_entry_at: Optional[datetime] = None,
    ) -> None:
        async with self._lock:
            wf = self._definitions.get(workflow_id)
            if not wf:
                return
            target = wf.stats
            if step_id is not None:
                target = wf.stats.steps.setdefault(step_id, StepStats())
            for key, delta in deltas.items():
                setattr(target, key, getattr(target, key) + delta)
            if last_entry_at is not None:
                wf.stats.last_entry_at = last_entry_at

    # ------------------------------------------------------------------
    async def create_enrollment(self, enrollment: Enrollment) -> None:
        async with self._lock:
            for existing in self._enrollments.values():
                if (
                    existing.workflow_id == enrollment.workflow_id
                    and existing.contact_id == enrollment.contact_id
                    and not existing.is_terminal
                ):
                    raise DuplicateEnrollmentError(
                        f"Contact {enrollment.contact_id} already enrolled in "
                        f"workflow {enrollment.workflow_id}"
                    )
            self._enrollments[enrollment.id] = enrollment.model_copy(deep=True)

    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        enrollment = self._enrollments.get(enrollment_id)
        return enrollment.model_copy(deep=True) if enrollment else None

    async def list_enrollments(
        self,
        workflow_id: Optional[str] = None,
        contact_id: Optional[str] = None,
        status: Optional[EnrollmentStatus] = None,
    ) -> list[Enrollment]:
        matches = [
            e.model_copy(deep=True)
            for e in self._enrollments.values()
            if (workflow_id is None or e.workflow_id == workflow_id)
            and (contact_id is None or e.contact_id == contact_id)
            and (status is None or e.status == status)
        ]
        return sorted(matches, key=lambda e: e.enrolled_at)

    async def find_due(self, now: datetime, limit: int) -> list[Enrollment]:
        due = [
            e
            for e in self._enrollments.values()
            if e.status in _SCHEDULABLE
            and e.next_action_at is not None
            and e.next_action_at <= now
            and (e.claimed_until is None or e.claimed_until <= now)
        ]
        due.sort(key=lambda e: e.next_action_at)
        return [e.model_copy(deep=True) for e in due[:limit]]

    async def claim_enrollment(
        self, enrollment_id: str, worker_id: str, now: datetime, until: datetime
    ) -> Enrollment | None:
        async with self._lock:
            enrollment = self._enrollments.get(enrollment_id)
            if enrollment is None or enrollment.status not in _SCHEDULABLE:
                return None
            if enrollment.next_action_at is None or enrollment.next_action_at > now:
                return None
            if enrollment.claimed_until is not None and enrollment.claimed_until > now:
                return None
            enrollment.claimed_by = worker_id
            enrollment.claimed_until = until
            return enrollment.model_copy(deep=True)

    async def save_enrollment(self, enrollment: Enrollment, worker_id: str) -> None:
        async with self._lock:
            stored = self._enrollments.get(enrollment.id)
            if stored is None or stored.claimed_by != worker_id:
                raise SchedulerClaimConflict(
                    f"Worker {worker_id} does not hold enrollment {enrollment.id}"
                )
            updated = enrollment.model_copy(deep=True)
            updated.claimed_by = stored.claimed_by
            updated.claimed_until = stored.claimed_until
            self._enrollments[enrollment.id] = updated

    async def release_claim(self, enrollment_id: str, worker_id: str) -> None:
        async with self._lock:
            stored = self._enrollments.get(enrollment_id)
            if stored is not None and stored.claimed_by == worker_id:
                stored.claimed_by = None
                stored.claimed_until = None

    # ------------------------------------------------------------------
    async def create_delivery(self, log: DeliveryLog) -> None:
        self._deliveries[log.delivery_id] = log.model_copy(deep=True)

    async def save_delivery(self, log: DeliveryLog) -> None:
        self._deliveries[log.delivery_id] = log.model_copy(deep=True)

    async def get_delivery(self, delivery_id: str) -> DeliveryLog | None:
        log = self._deliveries.get(delivery_id)
        return log.model_copy(deep=True) if log else None

    async def find_delivery(
        self, enrollment_id: str, step_id: str
    ) -> DeliveryLog | None:
        for log in self._deliveries.values():
            if log.enrollment_id == enrollment_id and log.step_id == step_id:
                return log.model_copy(deep=True)
        return None

    async def list_deliveries(self, enrollment_id: str) -> list[DeliveryLog]:
        logs = [
            log.model_copy(deep=True)
            for log in self._deliveries.values()
            if log.enrollment_id == enrollment_id
        ]
        return sorted(logs, key=lambda log: log.sent_at)
