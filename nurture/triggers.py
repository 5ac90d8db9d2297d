"""Trigger matching: turns incoming events into new enrollments."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from .conditions import compare, resolve_field
from .constants import DEFAULT_CALL_TIMEOUT_SECONDS
from .contracts import (
    EnrollmentStatus,
    FilterRule,
    TriggerEvent,
    WorkflowDefinition,
    WorkflowStatus,
)
from .errors import DuplicateEnrollmentError, TriggerMatchError
from .persistence.models import Enrollment
from .persistence.repository import WorkflowRepository
from .services.base import ContactStore
from .stats import StatsAggregator
from .utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)


def filter_passes(
    rule: FilterRule,
    payload: Dict[str, Any],
    contact: Optional[Dict[str, Any]],
) -> bool:
    """Evaluate one trigger filter.

    A field found in neither source fails every operator except
    ``not_equals``.

    Raises:
        TriggerMatchError: if the operator cannot be applied to the value.
    """
    if rule.source == "payload":
        sources = (payload,)
    elif rule.source == "contact":
        sources = (contact,)
    else:
        sources = (payload, contact)
    found, value = resolve_field(rule.field, *sources)
    if not found:
        return rule.operator == "not_equals"
    try:
        return compare(value, rule.operator, rule.value)
    except ValueError as exc:
        raise TriggerMatchError(f"Filter on {rule.field!r}: {exc}") from exc


class TriggerMatcher:
    """Creates at most one enrollment per matching active workflow."""

    def __init__(
        self,
        repository: WorkflowRepository,
        contacts: ContactStore,
        stats: Optional[StatsAggregator] = None,
        call_timeout: float = DEFAULT_CALL_TIMEOUT_SECONDS,
    ) -> None:
        self._repository = repository
        self._contacts = contacts
        self._stats = stats or StatsAggregator(repository)
        self._call_timeout = call_timeout

    async def match(
        self, event: TriggerEvent, now: Optional[datetime] = None
    ) -> List[Enrollment]:
        """Enroll ``event.contact_id`` in every workflow the event triggers.

        Returns the enrollments that were created.
        """
        now = ensure_utc(now) if now else utcnow()
        candidates = await self._repository.list_definitions(
            status=WorkflowStatus.ACTIVE, trigger_type=event.type
        )
        if not candidates:
            logger.debug(f"No active workflow listens for {event.type!r}")
            return []

        contact = await asyncio.wait_for(
            self._contacts.get_contact(event.contact_id), timeout=self._call_timeout
        )
        if contact is None:
            logger.info(f"Ignoring {event.type!r} event for unknown contact {event.contact_id}")
            return []

        created: List[Enrollment] = []
        for definition in candidates:
            try:
                matched = all(
                    filter_passes(rule, event.payload, contact)
                    for rule in definition.trigger.filters
                )
            except TriggerMatchError as exc:
                logger.error(f"Workflow {definition.id} trigger skipped: {exc}")
                continue
            if not matched:
                continue
            enrollment = await self._enroll(definition, event, contact, now)
            if enrollment is not None:
                created.append(enrollment)
        return created

    async def _enroll(
        self,
        definition: WorkflowDefinition,
        event: TriggerEvent,
        contact: Dict[str, Any],
        now: datetime,
    ) -> Optional[Enrollment]:
        settings = definition.settings
        tags = set(contact.get("tags") or [])
        excluded = tags.intersection(settings.exclude_tags)
        if excluded:
            logger.debug(
                f"Contact {event.contact_id} excluded from {definition.id} by tags {sorted(excluded)}"
            )
            return None

        previous = await self._repository.list_enrollments(
            workflow_id=definition.id, contact_id=event.contact_id
        )
        if any(not e.is_terminal for e in previous):
            logger.debug(
                f"Contact {event.contact_id} already enrolled in {definition.id}"
            )
            return None
        if previous and not self._reentry_allowed(definition, previous, now):
            return None

        enrollment = Enrollment(
            workflow_id=definition.id,
            contact_id=event.contact_id,
            status=EnrollmentStatus.ACTIVE,
            current_step=None,
            next_action_at=now,
            entry_data=dict(event.payload),
            enrolled_at=now,
        )
        try:
            await self._repository.create_enrollment(enrollment)
        except DuplicateEnrollmentError:
            logger.debug(
                f"Concurrent enrollment of {event.contact_id} in {definition.id} ignored"
            )
            return None

        logger.info(
            f"Enrolled contact {event.contact_id} in workflow {definition.id} "
            f"(enrollment {enrollment.id})"
        )
        await self._stats.enrolled(definition.id, now)
        return enrollment

    @staticmethod
    def _reentry_allowed(
        definition: WorkflowDefinition, previous: List[Enrollment], now: datetime
    ) -> bool:
        settings = definition.settings
        if not settings.allow_reentry:
            logger.debug(f"Workflow {definition.id} does not allow re-entry")
            return False
        limit = settings.max_entries_per_contact
        if limit and len(previous) >= limit:
            logger.debug(f"Workflow {definition.id} entry limit {limit} reached")
            return False
        finished = [e.finished_at for e in previous if e.finished_at is not None]
        if finished and now < max(finished) + settings.reentry_delay:
            logger.debug(f"Workflow {definition.id} re-entry delay not elapsed")
            return False
        return True
