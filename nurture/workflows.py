"""Workflow definition lifecycle: save, activate, pause, resume, archive."""

from __future__ import annotations

import logging
from typing import Optional

from .contracts import WorkflowDefinition, WorkflowStatus
from .errors import GraphValidationError, WorkflowNotFoundError, WorkflowStateError
from .graph import validate_definition
from .persistence.repository import WorkflowRepository
from .utils.time import utcnow

logger = logging.getLogger(__name__)


class WorkflowManager:
    """Validates and stores workflow definitions and moves them between states."""

    def __init__(self, repository: WorkflowRepository) -> None:
        self._repository = repository

    async def get(self, workflow_id: str) -> WorkflowDefinition:
        definition = await self._repository.get_definition(workflow_id)
        if definition is None:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
        return definition

    async def list_definitions(
        self, status: Optional[WorkflowStatus] = None
    ) -> list[WorkflowDefinition]:
        return await self._repository.list_definitions(status=status)

    async def save(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Validate and store ``definition``.

        Drafts may be saved without steps; anything else needs a valid graph.

        Raises:
            GraphValidationError: if the step graph is rejected.
            WorkflowStateError: if the stored definition is archived.
        """
        if definition.steps or definition.status != WorkflowStatus.DRAFT:
            self._check_graph(definition)

        existing = await self._repository.get_definition(definition.id)
        if existing is not None:
            if existing.status == WorkflowStatus.ARCHIVED:
                raise WorkflowStateError(f"Workflow {definition.id} is archived")
            definition.created_at = existing.created_at
        definition.updated_at = utcnow()
        await self._repository.save_definition(definition)
        logger.info(f"Saved workflow {definition.id} ({definition.status.value})")
        return definition

    async def activate(self, workflow_id: str) -> WorkflowDefinition:
        definition = await self.get(workflow_id)
        if definition.status == WorkflowStatus.ARCHIVED:
            raise WorkflowStateError(f"Workflow {workflow_id} is archived")
        self._check_graph(definition)
        definition.status = WorkflowStatus.ACTIVE
        definition.activated_at = utcnow()
        definition.paused_at = None
        return await self._store(definition)

    async def pause(self, workflow_id: str) -> WorkflowDefinition:
        definition = await self.get(workflow_id)
        if definition.status != WorkflowStatus.ACTIVE:
            raise WorkflowStateError(
                f"Only active workflows can be paused; {workflow_id} is {definition.status.value}"
            )
        definition.status = WorkflowStatus.PAUSED
        definition.paused_at = utcnow()
        return await self._store(definition)

    async def resume(self, workflow_id: str) -> WorkflowDefinition:
        definition = await self.get(workflow_id)
        if definition.status != WorkflowStatus.PAUSED:
            raise WorkflowStateError(
                f"Only paused workflows can be resumed; {workflow_id} is {definition.status.value}"
            )
        definition.status = WorkflowStatus.ACTIVE
        definition.paused_at = None
        return await self._store(definition)

    async def archive(self, workflow_id: str) -> WorkflowDefinition:
        definition = await self.get(workflow_id)
        definition.status = WorkflowStatus.ARCHIVED
        return await self._store(definition)

    async def _store(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        definition.updated_at = utcnow()
        await self._repository.save_definition(definition)
        logger.info(f"Workflow {definition.id} is now {definition.status.value}")
        return definition

    @staticmethod
    def _check_graph(definition: WorkflowDefinition) -> None:
        if not definition.steps:
            raise GraphValidationError(
                ["workflow needs at least one step"], workflow_id=definition.id
            )
        validate_definition(definition)
