"""Nurture: marketing automation workflows for contact journeys."""

from .contracts import (
    DeliveryEvent,
    EnrollmentStatus,
    TriggerEvent,
    WorkflowDefinition,
    WorkflowStatus,
)
from .engine import AutomationEngine
from .execute import ExecutionResult, StepExecutor
from .graph import StepGraph, validate_definition
from .persistence import Enrollment, get_repository
from .projection import Projection, is_consistent, project
from .scheduler import Scheduler
from .services import get_services
from .triggers import TriggerMatcher
from .workflows import WorkflowManager

__version__ = "0.1.0"
__all__ = [
    "AutomationEngine",
    "DeliveryEvent",
    "Enrollment",
    "EnrollmentStatus",
    "ExecutionResult",
    "Projection",
    "Scheduler",
    "StepExecutor",
    "StepGraph",
    "TriggerEvent",
    "TriggerMatcher",
    "WorkflowDefinition",
    "WorkflowManager",
    "WorkflowStatus",
    "get_repository",
    "get_services",
    "is_consistent",
    "project",
    "validate_definition",
]
