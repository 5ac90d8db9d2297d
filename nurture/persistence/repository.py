"""Repository abstraction for automation state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from ..contracts import EnrollmentStatus, WorkflowDefinition, WorkflowStatus
from .models import DeliveryLog, Enrollment


class WorkflowRepository(Protocol):
    """Protocol for persistence backends.

    Enrollments are never deleted. ``claim_enrollment`` must be an atomic
    conditional update: it succeeds only for a due enrollment with no unexpired claim.
    """

    # -- workflow definitions -------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        """Insert or replace a workflow definition (stats excluded on replace)."""

    async def get_definition(self, workflow_id: str) -> WorkflowDefinition | None:
        """Retrieve a workflow definition by id."""

    async def list_definitions(
        self,
        status: Optional[WorkflowStatus] = None,
        trigger_type: Optional[str] = None,
    ) -> list[WorkflowDefinition]:
        """Return definitions, optionally filtered."""

    async def increment_stats(
        self,
        workflow_id: str,
        deltas: dict[str, float],
        step_id: Optional[str] = None,
        last_entry_at: Optional[datetime] = None,
    ) -> None:
        """Add ``deltas`` to workflow (or per-step) counters."""

    # -- enrollments -----------------------------------------------------
    async def create_enrollment(self, enrollment: Enrollment) -> None:
        """Persist a new enrollment.

        Raises:
            DuplicateEnrollmentError: if a non-terminal enrollment already
                exists for the same workflow and contact.
        """

    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        """Retrieve an enrollment by id."""

    async def list_enrollments(
        self,
        workflow_id: Optional[str] = None,
        contact_id: Optional[str] = None,
        status: Optional[EnrollmentStatus] = None,
    ) -> list[Enrollment]:
        """Return enrollments ordered by enrollment time."""

    async def find_due(self, now: datetime, limit: int) -> list[Enrollment]:
        """Active or paused enrollments with ``next_action_at <= now``."""

    async def claim_enrollment(
        self, enrollment_id: str, worker_id: str, now: datetime, until: datetime
    ) -> Enrollment | None:
        """Claim the enrollment for ``worker_id`` or return ``None``."""

    async def save_enrollment(self, enrollment: Enrollment, worker_id: str) -> None:
        """Persist enrollment state.

        Raises:
            SchedulerClaimConflict: if ``worker_id`` no longer holds the claim.
        """

    async def release_claim(self, enrollment_id: str, worker_id: str) -> None:
        """Drop the claim if ``worker_id`` still holds it."""

    # -- delivery logs ---------------------------------------------------
    async def create_delivery(self, log: DeliveryLog) -> None:
        """Persist a new delivery log."""

    async def save_delivery(self, log: DeliveryLog) -> None:
        """Persist delivery log updates."""

    async def get_delivery(self, delivery_id: str) -> DeliveryLog | None:
        """Retrieve a delivery log by the dispatch service's delivery id."""

    async def find_delivery(
        self, enrollment_id: str, step_id: str
    ) -> DeliveryLog | None:
        """Delivery log written by ``step_id`` for ``enrollment_id``."""

    async def list_deliveries(self, enrollment_id: str) -> list[DeliveryLog]:
        """Delivery logs of one enrollment."""
