"""Exception hierarchy for the automation engine."""

from __future__ import annotations

from typing import Iterable, Optional


class NurtureError(Exception):
    """Base class for all engine errors."""


class TriggerMatchError(NurtureError):
    """A trigger filter could not be evaluated against an event."""


class StepConfigError(NurtureError):
    """A step references a missing step or carries unusable configuration."""


class ConditionEvalError(NurtureError):
    """A branch predicate could not be evaluated."""


class DeliveryError(NurtureError):
    """An email dispatch or webhook call failed."""

    def __init__(self, message: str, attempts: int = 1) -> None:
        super().__init__(message)
        self.attempts = attempts


class SchedulerClaimConflict(NurtureError):
    """Another worker holds (or took over) the claim on an enrollment."""


class DuplicateEnrollmentError(NurtureError):
    """An active enrollment already exists for the workflow and contact."""


class WorkflowNotFoundError(NurtureError):
    """No workflow definition exists with the requested id."""


class GraphValidationError(NurtureError):
    """A workflow definition's step graph is not acceptable."""

    def __init__(self, problems: Iterable[str], workflow_id: Optional[str] = None) -> None:
        self.problems = list(problems)
        self.workflow_id = workflow_id
        prefix = f"Workflow {workflow_id}: " if workflow_id else ""
        super().__init__(prefix + "; ".join(self.problems))


class WorkflowStateError(NurtureError):
    """A lifecycle transition is not allowed from the definition's status."""
