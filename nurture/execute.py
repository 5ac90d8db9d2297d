"""Step execution engine for nurture workflows."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from .conditions import ConditionEvaluator, compare, resolve_field
from .config import NurtureConfig, load_config
from .constants import NOTIFY_TEMPLATE_REF
from .contracts import (
    ActionStep,
    ConditionStep,
    DelayStep,
    EmailRequest,
    EmailStep,
    EnrollmentStatus,
    GoalDefinition,
    SplitStep,
    Step,
    WorkflowDefinition,
    WorkflowSettings,
    WorkflowStatus,
)
from .delays import compute_wake_time, next_window_opening
from .errors import ConditionEvalError, DeliveryError, StepConfigError
from .graph import StepGraph
from .persistence.models import DeliveryLog, Enrollment, HistoryEntry
from .persistence.repository import WorkflowRepository
from .services import Services
from .split import choose_path
from .stats import StatsAggregator
from .utils.retry import retry_async
from .utils.time import ensure_utc, parse_timestamp, utcnow

T = TypeVar("T")

logger = logging.getLogger(__name__)

Contact = Dict[str, Any]


@dataclass
class ExecutionResult:
    """Outcome of running one step for one enrollment.

    Exactly one of three shapes: advance to ``next_current_step`` now,
    wait until ``next_action_at``, or stop with ``terminal_status``.
    """

    entry: Optional[HistoryEntry] = None
    next_current_step: Optional[str] = None
    next_action_at: Optional[datetime] = None
    terminal_status: Optional[EnrollmentStatus] = None
    exit_reason: Optional[str] = None
    error: Optional[str] = None
    outcome: Optional[str] = None

    @property
    def waits(self) -> bool:
        return self.terminal_status is None and self.next_action_at is not None


def _first(successors: list[str]) -> Optional[str]:
    return successors[0] if successors else None


def _moved_on(
    step: Step, now: datetime, next_step: Optional[str], action: str = "completed", **data: Any
) -> ExecutionResult:
    entry = HistoryEntry(
        step_id=step.id,
        step_type=step.type,
        action=action,
        timestamp=now,
        data={"next_step": next_step, **data},
    )
    if next_step is None:
        return ExecutionResult(
            entry=entry, terminal_status=EnrollmentStatus.COMPLETED, outcome=action
        )
    return ExecutionResult(entry=entry, next_current_step=next_step, outcome=action)


class StepExecutor:
    """Interprets workflow steps and moves enrollments through the graph."""

    def __init__(
        self,
        repository: WorkflowRepository,
        services: Services,
        config: Optional[NurtureConfig] = None,
        stats: Optional[StatsAggregator] = None,
        evaluator: Optional[ConditionEvaluator] = None,
    ) -> None:
        config = config or load_config()
        self._repository = repository
        self._services = services
        self._retry = config.retry
        self._call_timeout = config.services.call_timeout_seconds
        self._stats = stats or StatsAggregator(repository)
        self._evaluator = evaluator or ConditionEvaluator(
            repository, services.contacts, call_timeout=self._call_timeout
        )

    # ------------------------------------------------------------------
    # single step

    async def execute(
        self,
        enrollment: Enrollment,
        step: Step,
        definition: WorkflowDefinition,
        contact: Contact,
        now: datetime,
    ) -> ExecutionResult:
        """Run ``step`` once for ``enrollment`` without persisting anything.

        Delivery failures that survive retries are folded into the result
        according to the step's ``continue_on_error``.

        Raises:
            StepConfigError: if the step cannot be interpreted.
        """
        try:
            if isinstance(step, EmailStep):
                return await self._run_email(enrollment, step, definition, contact, now)
            if isinstance(step, DelayStep):
                return self._run_delay(enrollment, step, definition.settings, now)
            if isinstance(step, ConditionStep):
                return await self._run_condition(enrollment, step, contact, now)
            if isinstance(step, ActionStep):
                return await self._run_action(enrollment, step, definition, contact, now)
            if isinstance(step, SplitStep):
                path = choose_path(enrollment.id, step.id, step.config)
                return _moved_on(step, now, path.next_step, path=path.id)
        except DeliveryError as exc:
            return self._delivery_failed(enrollment, step, exc, now)
        raise StepConfigError(f"Unsupported step type {getattr(step, 'type', step)!r}")

    async def _run_email(
        self,
        enrollment: Enrollment,
        step: EmailStep,
        definition: WorkflowDefinition,
        contact: Contact,
        now: datetime,
    ) -> ExecutionResult:
        deferred = self._outside_window(enrollment, definition.settings, now)
        if deferred is not None:
            return deferred

        config = step.config
        log = await self._repository.find_delivery(enrollment.id, step.id)
        if log is not None:
            logger.info(
                f"Enrollment {enrollment.id} reuses delivery {log.delivery_id} of step {step.id}"
            )
            return _moved_on(
                step,
                now,
                _first(step.next_steps),
                delivery_id=log.delivery_id,
                template_ref=config.template_ref,
                reused=True,
            )

        address = contact.get("email")
        if not address:
            raise DeliveryError(f"Contact {enrollment.contact_id} has no email address")
        request = EmailRequest(
            to=address,
            template_ref=config.template_ref,
            subject=config.subject,
            vars={**contact, **enrollment.entry_data, **config.vars},
        )
        delivery_id = await self._with_retry(
            lambda: self._services.email.send(request),
            f"Email step {step.id} for enrollment {enrollment.id}",
        )
        await self._repository.create_delivery(
            DeliveryLog(
                delivery_id=delivery_id,
                enrollment_id=enrollment.id,
                workflow_id=definition.id,
                contact_id=enrollment.contact_id,
                step_id=step.id,
                sent_at=now,
            )
        )
        await self._stats.email_sent(definition.id)
        return _moved_on(
            step,
            now,
            _first(step.next_steps),
            delivery_id=delivery_id,
            template_ref=config.template_ref,
        )

    def _run_delay(
        self,
        enrollment: Enrollment,
        step: DelayStep,
        settings: WorkflowSettings,
        now: datetime,
    ) -> ExecutionResult:
        following = _first(step.next_steps)
        last = enrollment.last_entry_for(step.id)
        if last is not None and last.action == "waiting":
            until = parse_timestamp(last.data.get("until"))
            if until is not None and now < until:
                return ExecutionResult(next_current_step=step.id, next_action_at=until)
            return _moved_on(step, now, following)

        wake = compute_wake_time(step.config, now, settings.tzinfo)
        if wake <= now:
            return _moved_on(step, now, following, until=wake.isoformat())
        entry = HistoryEntry(
            step_id=step.id,
            step_type=step.type,
            action="waiting",
            timestamp=now,
            data={"until": wake.isoformat()},
        )
        return ExecutionResult(entry=entry, next_current_step=step.id, next_action_at=wake)

    async def _run_condition(
        self,
        enrollment: Enrollment,
        step: ConditionStep,
        contact: Contact,
        now: datetime,
    ) -> ExecutionResult:
        extra: Dict[str, Any] = {}
        try:
            matched = await self._evaluator.evaluate(enrollment, step.config, contact)
        except ConditionEvalError as exc:
            logger.warning(
                f"Condition {step.id} of enrollment {enrollment.id} defaulted to no: {exc}"
            )
            matched = False
            extra["error"] = str(exc)
        following = step.yes_path if matched else step.no_path
        return _moved_on(step, now, following, result=matched, **extra)

    async def _run_action(
        self,
        enrollment: Enrollment,
        step: ActionStep,
        definition: WorkflowDefinition,
        contact: Contact,
        now: datetime,
    ) -> ExecutionResult:
        deferred = self._outside_window(enrollment, definition.settings, now)
        if deferred is not None:
            return deferred

        config = step.config
        contacts = self._services.contacts
        contact_id = enrollment.contact_id
        data: Dict[str, Any] = {"action_type": config.action_type}

        described = f"Action {config.action_type} of step {step.id} for contact {contact_id}"
        if config.action_type == "add_tag":
            await self._with_retry(
                lambda: contacts.add_tag(contact_id, config.tag), described
            )
        elif config.action_type == "remove_tag":
            await self._with_retry(
                lambda: contacts.remove_tag(contact_id, config.tag), described
            )
        elif config.action_type == "add_to_list":
            await self._with_retry(
                lambda: contacts.add_to_list(contact_id, config.list_id), described
            )
        elif config.action_type == "remove_from_list":
            await self._with_retry(
                lambda: contacts.remove_from_list(contact_id, config.list_id), described
            )
        elif config.action_type == "update_field":
            await self._with_retry(
                lambda: contacts.update_field(contact_id, config.field, config.value),
                described,
            )
        elif config.action_type == "webhook":
            data["status_code"] = await self._call_webhook(
                enrollment, definition, config.webhook_url, config.webhook_body, contact, now
            )
        elif config.action_type == "notify":
            message = config.notify_message or (
                f"Contact {contact_id} reached step {step.name or step.id} "
                f"of workflow {definition.name}"
            )
            for address in config.notify_emails:
                request = EmailRequest(
                    to=address,
                    template_ref=NOTIFY_TEMPLATE_REF,
                    subject=f"Workflow notification: {definition.name}",
                    vars={
                        "message": message,
                        "contact_id": contact_id,
                        "workflow_id": definition.id,
                    },
                )
                await self._with_retry(
                    lambda request=request: self._services.email.send(request),
                    f"Notification to {address} from step {step.id}",
                )
            data["notified"] = list(config.notify_emails)
        else:
            raise StepConfigError(f"Unsupported action type {config.action_type!r}")

        return _moved_on(step, now, _first(step.next_steps), **data)

    async def _call_webhook(
        self,
        enrollment: Enrollment,
        definition: WorkflowDefinition,
        url: str,
        extra_body: Dict[str, Any],
        contact: Contact,
        now: datetime,
    ) -> int:
        body = {
            "contact_id": enrollment.contact_id,
            "email": contact.get("email"),
            "workflow_id": definition.id,
            "enrollment_id": enrollment.id,
            "timestamp": now.isoformat(),
            **extra_body,
        }

        async def post() -> int:
            status = await self._services.webhooks.post(
                url, body, int(self._call_timeout * 1000)
            )
            if not 200 <= status < 300:
                raise DeliveryError(f"Webhook {url} answered {status}")
            return status

        return await self._with_retry(post, f"Webhook {url} for enrollment {enrollment.id}")

    def _outside_window(
        self, enrollment: Enrollment, settings: WorkflowSettings, now: datetime
    ) -> Optional[ExecutionResult]:
        opening = next_window_opening(settings.sending_window, now, settings.tzinfo)
        if opening is None:
            return None
        logger.debug(f"Enrollment {enrollment.id} deferred to sending window at {opening}")
        return ExecutionResult(
            next_current_step=enrollment.current_step, next_action_at=opening
        )

    def _delivery_failed(
        self, enrollment: Enrollment, step: Step, exc: DeliveryError, now: datetime
    ) -> ExecutionResult:
        if step.config.continue_on_error:
            logger.warning(
                f"Step {step.id} of enrollment {enrollment.id} skipped after "
                f"{exc.attempts} attempt(s): {exc}"
            )
            return _moved_on(
                step,
                now,
                _first(step.successor_ids()),
                action="skipped",
                error=str(exc),
                attempts=exc.attempts,
            )
        logger.error(
            f"Step {step.id} of enrollment {enrollment.id} failed after "
            f"{exc.attempts} attempt(s): {exc}"
        )
        entry = HistoryEntry(
            step_id=step.id,
            step_type=step.type,
            action="failed",
            timestamp=now,
            data={"error": str(exc), "attempts": exc.attempts},
        )
        return ExecutionResult(
            entry=entry,
            terminal_status=EnrollmentStatus.FAILED,
            error=str(exc),
            outcome="failed",
        )

    async def _bounded(self, call: Awaitable[T]) -> T:
        return await asyncio.wait_for(call, timeout=self._call_timeout)

    async def _with_retry(
        self, factory: Callable[[], Awaitable[T]], description: str
    ) -> T:
        async def guarded() -> T:
            # collaborator faults are delivery failures; the timeout below is not
            try:
                return await factory()
            except DeliveryError:
                raise
            except Exception as exc:
                raise DeliveryError(f"{description} failed: {exc}") from exc

        async def attempt() -> T:
            return await asyncio.wait_for(guarded(), timeout=self._call_timeout)

        try:
            return await retry_async(
                attempt,
                max_attempts=self._retry.max_attempts,
                retry_on=(DeliveryError,),
                base=self._retry.backoff_base,
                jitter=self._retry.backoff_jitter,
                description=description,
            )
        except DeliveryError as exc:
            exc.attempts = self._retry.max_attempts
            raise

    # ------------------------------------------------------------------
    # enrollment loop

    async def advance(
        self,
        enrollment: Enrollment,
        worker_id: str,
        now: Optional[datetime] = None,
    ) -> Enrollment:
        """Advance a claimed enrollment until it waits or terminates.

        State is saved after every step so a crash never repeats committed
        work. Raises ``SchedulerClaimConflict`` if the claim is lost.
        """
        now = ensure_utc(now) if now else utcnow()
        definition = await self._repository.get_definition(enrollment.workflow_id)
        if definition is None:
            return await self._fail(
                enrollment, worker_id, now, f"Workflow {enrollment.workflow_id} does not exist"
            )

        if definition.status != WorkflowStatus.ACTIVE:
            if enrollment.status != EnrollmentStatus.PAUSED:
                enrollment.status = EnrollmentStatus.PAUSED
                await self._repository.save_enrollment(enrollment, worker_id)
                logger.info(
                    f"Enrollment {enrollment.id} paused with workflow {definition.id}"
                )
            return enrollment
        if enrollment.status == EnrollmentStatus.PAUSED:
            enrollment.status = EnrollmentStatus.ACTIVE
            logger.info(f"Enrollment {enrollment.id} resumed")

        graph = StepGraph.from_definition(definition)
        for _ in range(len(graph) + 1):
            contact = await self._bounded(
                self._services.contacts.get_contact(enrollment.contact_id)
            )
            if contact is None:
                return await self._exit(enrollment, worker_id, now, "contact_missing")

            goal = definition.settings.goal
            if goal is not None and not enrollment.goal_reached:
                if await self._stamp_goal(enrollment, goal, contact, worker_id, now):
                    if goal.exit_on_goal:
                        return await self._finish(
                            enrollment,
                            worker_id,
                            now,
                            EnrollmentStatus.COMPLETED,
                            reason="goal_reached",
                        )

            reason = self._exit_reason(definition.settings, enrollment, contact)
            if reason is not None:
                return await self._exit(enrollment, worker_id, now, reason)

            step_id = enrollment.current_step or graph.entry_id
            try:
                if step_id is None:
                    raise StepConfigError(f"Workflow {definition.id} has no steps")
                step = graph.get(step_id)
                first_visit = enrollment.last_entry_for(step.id) is None
                result = await self.execute(enrollment, step, definition, contact, now)
            except StepConfigError as exc:
                return await self._fail(enrollment, worker_id, now, str(exc), step_id=step_id)

            if result.entry is not None:
                enrollment.append(result.entry)
                logger.info(
                    f"Enrollment {enrollment.id} step {step.id} ({step.type}) "
                    f"{result.entry.action}"
                )
            if result.terminal_status is not None:
                await self._finish(
                    enrollment,
                    worker_id,
                    now,
                    result.terminal_status,
                    reason=result.exit_reason,
                    error=result.error,
                )
            else:
                enrollment.current_step = result.next_current_step
                enrollment.next_action_at = result.next_action_at or now
                await self._repository.save_enrollment(enrollment, worker_id)

            if first_visit and result.entry is not None:
                await self._stats.step_entered(definition.id, step.id)
            if result.outcome is not None:
                await self._stats.step_finished(definition.id, step.id, result.outcome)

            if result.terminal_status is not None or result.waits:
                return enrollment

        return await self._fail(
            enrollment, worker_id, now, f"Workflow {definition.id} did not settle"
        )

    async def _stamp_goal(
        self,
        enrollment: Enrollment,
        goal: GoalDefinition,
        contact: Contact,
        worker_id: str,
        now: datetime,
    ) -> bool:
        value: Optional[float] = None
        if goal.goal_type == "purchase":
            purchased = parse_timestamp(contact.get("last_purchase_at"))
            reached = purchased is not None and purchased >= enrollment.enrolled_at
            amount = contact.get("last_purchase_amount")
            value = float(amount) if reached and amount is not None else None
        elif goal.goal_type == "has_tag":
            reached = goal.tag in (contact.get("tags") or [])
        else:
            found, actual = resolve_field(goal.field or "", contact)
            reached = found and compare(actual, "equals", goal.value)
        if not reached:
            return False

        enrollment.goal_reached = True
        enrollment.goal_reached_at = now
        enrollment.goal_value = value
        enrollment.append(
            HistoryEntry(
                action="goal_reached",
                timestamp=now,
                data={
                    "goal_type": goal.goal_type,
                    "value": value,
                    "exit": goal.exit_on_goal,
                },
            )
        )
        logger.info(f"Enrollment {enrollment.id} reached its {goal.goal_type} goal")
        if not goal.exit_on_goal:
            await self._repository.save_enrollment(enrollment, worker_id)
        await self._stats.goal_reached(enrollment.workflow_id)
        return True

    @staticmethod
    def _exit_reason(
        settings: WorkflowSettings, enrollment: Enrollment, contact: Contact
    ) -> Optional[str]:
        if settings.exit_on_unsubscribe and (
            contact.get("unsubscribed") is True or contact.get("subscribed") is False
        ):
            return "unsubscribed"
        if settings.exit_on_purchase:
            purchased = parse_timestamp(contact.get("last_purchase_at"))
            if purchased is not None and purchased >= enrollment.enrolled_at:
                return "purchase"
        tags = set(contact.get("tags") or [])
        for tag in settings.exit_on_tags:
            if tag in tags:
                return f"tag:{tag}"
        return None

    async def _exit(
        self, enrollment: Enrollment, worker_id: str, now: datetime, reason: str
    ) -> Enrollment:
        enrollment.append(
            HistoryEntry(
                step_id=enrollment.current_step,
                action="exited",
                timestamp=now,
                data={"reason": reason},
            )
        )
        return await self._finish(
            enrollment, worker_id, now, EnrollmentStatus.EXITED, reason=reason
        )

    async def _fail(
        self,
        enrollment: Enrollment,
        worker_id: str,
        now: datetime,
        error: str,
        step_id: Optional[str] = None,
    ) -> Enrollment:
        logger.error(f"Enrollment {enrollment.id} failed: {error}")
        enrollment.append(
            HistoryEntry(
                step_id=step_id,
                action="failed",
                timestamp=now,
                data={"error": error},
            )
        )
        return await self._finish(
            enrollment, worker_id, now, EnrollmentStatus.FAILED, error=error
        )

    async def _finish(
        self,
        enrollment: Enrollment,
        worker_id: str,
        now: datetime,
        status: EnrollmentStatus,
        reason: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Enrollment:
        enrollment.status = status
        enrollment.current_step = None
        enrollment.next_action_at = None
        if status == EnrollmentStatus.COMPLETED:
            enrollment.completed_at = now
        else:
            enrollment.exited_at = now
        if reason is not None:
            enrollment.exit_reason = reason
        if error is not None:
            enrollment.last_error = error
        await self._repository.save_enrollment(enrollment, worker_id)
        await self._stats.finished(enrollment.workflow_id, status)
        logger.info(
            f"Enrollment {enrollment.id} {status.value}"
            + (f" ({reason})" if reason else "")
        )
        return enrollment
