"""Branch predicates and the operator table shared with trigger filters."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional, Tuple

from .constants import DEFAULT_CALL_TIMEOUT_SECONDS
from .contracts import ConditionConfig
from .errors import ConditionEvalError
from .persistence.models import Enrollment
from .persistence.repository import WorkflowRepository
from .services.base import ContactStore

logger = logging.getLogger(__name__)

MISSING = object()


def resolve_path(data: Optional[Mapping[str, Any]], path: str) -> Any:
    """Follow a dotted ``path`` through nested mappings, or return ``MISSING``."""
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return MISSING
        current = current[part]
    return current


def resolve_field(
    path: str, *sources: Optional[Mapping[str, Any]]
) -> Tuple[bool, Any]:
    """Look ``path`` up in each source in turn; ``(found, value)``."""
    for source in sources:
        value = resolve_path(source, path)
        if value is not MISSING:
            return True, value
    return False, None


def _loosely_equal(actual: Any, expected: Any) -> bool:
    if actual == expected:
        return True
    if actual is None or expected is None:
        return False
    return str(actual) == str(expected)


def compare(actual: Any, operator: str, expected: Any) -> bool:
    """Apply ``operator`` to a resolved value.

    Raises:
        ValueError: for unknown operators or values that cannot be ordered.
    """
    if operator == "exists":
        return actual is not None
    if operator == "equals":
        return _loosely_equal(actual, expected)
    if operator == "not_equals":
        return not _loosely_equal(actual, expected)
    if operator == "contains":
        if actual is None:
            return False
        if isinstance(actual, (list, tuple, set, frozenset)):
            return expected in actual
        return str(expected) in str(actual)
    if operator in ("greater_than", "less_than"):
        try:
            left, right = float(actual), float(expected)
        except (TypeError, ValueError):
            raise ValueError(
                f"{operator} needs numeric values, got {actual!r} and {expected!r}"
            ) from None
        return left > right if operator == "greater_than" else left < right
    raise ValueError(f"Unknown operator {operator!r}")


class ConditionEvaluator:
    """Answers condition-step predicates for one enrollment.

    Raises ``ConditionEvalError`` whenever the answer cannot be determined;
    the executor routes such cases to the no-path.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        contacts: ContactStore,
        call_timeout: float = DEFAULT_CALL_TIMEOUT_SECONDS,
    ) -> None:
        self._repository = repository
        self._contacts = contacts
        self._call_timeout = call_timeout

    async def evaluate(
        self,
        enrollment: Enrollment,
        config: ConditionConfig,
        contact: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        kind = config.condition_type
        if kind in ("email_opened", "email_clicked"):
            return await self._email_engagement(enrollment, config)
        if kind == "has_tag":
            try:
                return await asyncio.wait_for(
                    self._contacts.has_tag(enrollment.contact_id, config.tag),
                    timeout=self._call_timeout,
                )
            except (Exception, asyncio.TimeoutError) as exc:
                raise ConditionEvalError(
                    f"Tag lookup {config.tag!r} for contact {enrollment.contact_id} failed: "
                    f"{exc!r}"
                ) from exc
        if kind == "custom":
            return self._custom(enrollment, config, contact)
        raise ConditionEvalError(f"Unsupported condition type {kind!r}")

    async def _email_engagement(
        self, enrollment: Enrollment, config: ConditionConfig
    ) -> bool:
        step_id = config.email_step_id
        if step_id is None:
            for entry in reversed(enrollment.history):
                if entry.step_type == "email":
                    step_id = entry.step_id
                    break
        if step_id is None:
            raise ConditionEvalError("No email step found in enrollment history")

        log = await self._repository.find_delivery(enrollment.id, step_id)
        if log is None:
            raise ConditionEvalError(f"No delivery log for email step {step_id!r}")
        if config.condition_type == "email_opened":
            return log.opened_at is not None
        return log.clicked_at is not None

    def _custom(
        self,
        enrollment: Enrollment,
        config: ConditionConfig,
        contact: Optional[Mapping[str, Any]],
    ) -> bool:
        found, value = resolve_field(
            config.condition_field, contact, enrollment.entry_data
        )
        if not found:
            if config.condition_operator == "exists":
                return False
            raise ConditionEvalError(
                f"Field {config.condition_field!r} not found on contact or entry data"
            )
        try:
            return compare(value, config.condition_operator, config.condition_value)
        except ValueError as exc:
            raise ConditionEvalError(str(exc)) from exc
