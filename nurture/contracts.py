"""Workflow definition models and collaborator message contracts."""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator

from .constants import DEFAULT_TIMEZONE

Operator = Literal[
    "equals", "not_equals", "contains", "greater_than", "less_than", "exists"
]

_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class EnrollmentStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    EXITED = "exited"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {EnrollmentStatus.COMPLETED, EnrollmentStatus.EXITED, EnrollmentStatus.FAILED}
)


# ---------------------------------------------------------------------------
# Trigger


class FilterRule(BaseModel):
    """A single field/operator/value predicate of a trigger."""

    field: str
    operator: Operator = "equals"
    value: Any = None
    source: Literal["auto", "payload", "contact"] = "auto"


class TriggerSpec(BaseModel):
    """Event type that starts the workflow plus AND-ed filters."""

    type: str
    filters: List[FilterRule] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Step configuration variants


class EmailConfig(BaseModel):
    template_ref: str
    subject: Optional[str] = None
    vars: Dict[str, Any] = Field(default_factory=dict)
    continue_on_error: bool = True


class DelayConfig(BaseModel):
    delay_type: Literal["fixed", "until_time", "until_day", "until_date"] = "fixed"
    delay_value: int = Field(default=0, ge=0)
    delay_unit: Literal["minutes", "hours", "days", "weeks"] = "minutes"
    until_time: Optional[str] = None
    until_day: Optional[int] = Field(default=None, ge=0, le=6)
    until_date: Optional[datetime] = None

    @field_validator("until_time")
    @classmethod
    def _check_time(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not _HHMM.match(v):
            raise ValueError("until_time must be HH:MM")
        return v

    @model_validator(mode="after")
    def _check_required(self) -> "DelayConfig":
        if self.delay_type == "until_time" and self.until_time is None:
            raise ValueError("until_time delay requires until_time")
        if self.delay_type == "until_day" and self.until_day is None:
            raise ValueError("until_day delay requires until_day")
        if self.delay_type == "until_date" and self.until_date is None:
            raise ValueError("until_date delay requires until_date")
        return self


class ConditionConfig(BaseModel):
    condition_type: Literal["email_opened", "email_clicked", "has_tag", "custom"]
    email_step_id: Optional[str] = None
    tag: Optional[str] = None
    condition_field: Optional[str] = None
    condition_operator: Operator = "equals"
    condition_value: Any = None

    @model_validator(mode="after")
    def _check_required(self) -> "ConditionConfig":
        if self.condition_type == "has_tag" and not self.tag:
            raise ValueError("has_tag condition requires tag")
        if self.condition_type == "custom" and not self.condition_field:
            raise ValueError("custom condition requires condition_field")
        return self


class ActionConfig(BaseModel):
    action_type: Literal[
        "add_tag",
        "remove_tag",
        "add_to_list",
        "remove_from_list",
        "update_field",
        "webhook",
        "notify",
    ]
    tag: Optional[str] = None
    list_id: Optional[str] = None
    field: Optional[str] = None
    value: Any = None
    webhook_url: Optional[str] = None
    webhook_body: Dict[str, Any] = Field(default_factory=dict)
    notify_emails: List[str] = Field(default_factory=list)
    notify_message: Optional[str] = None
    continue_on_error: bool = True

    @model_validator(mode="after")
    def _check_required(self) -> "ActionConfig":
        required = {
            "add_tag": "tag",
            "remove_tag": "tag",
            "add_to_list": "list_id",
            "remove_from_list": "list_id",
            "update_field": "field",
            "webhook": "webhook_url",
            "notify": "notify_emails",
        }[self.action_type]
        if not getattr(self, required):
            raise ValueError(f"{self.action_type} action requires {required}")
        return self


class SplitPath(BaseModel):
    id: str
    percentage: float = Field(default=0, ge=0)
    next_step: Optional[str] = None


class SplitConfig(BaseModel):
    split_type: Literal["random", "weighted"] = "random"
    paths: List[SplitPath] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Steps


class StepBase(BaseModel):
    id: str = Field(min_length=1)
    name: Optional[str] = None

    def successor_ids(self) -> List[str]:
        """Every step id this step may hand over to."""
        return []


class EmailStep(StepBase):
    type: Literal["email"] = "email"
    config: EmailConfig
    next_steps: List[str] = Field(default_factory=list)

    def successor_ids(self) -> List[str]:
        return list(self.next_steps)


class DelayStep(StepBase):
    type: Literal["delay"] = "delay"
    config: DelayConfig = DelayConfig()
    next_steps: List[str] = Field(default_factory=list)

    def successor_ids(self) -> List[str]:
        return list(self.next_steps)


class ConditionStep(StepBase):
    type: Literal["condition"] = "condition"
    config: ConditionConfig
    yes_path: Optional[str] = None
    no_path: Optional[str] = None

    def successor_ids(self) -> List[str]:
        return [s for s in (self.yes_path, self.no_path) if s]


class ActionStep(StepBase):
    type: Literal["action"] = "action"
    config: ActionConfig
    next_steps: List[str] = Field(default_factory=list)

    def successor_ids(self) -> List[str]:
        return list(self.next_steps)


class SplitStep(StepBase):
    type: Literal["split"] = "split"
    config: SplitConfig

    def successor_ids(self) -> List[str]:
        return [p.next_step for p in self.config.paths if p.next_step]


Step = Annotated[
    Union[EmailStep, DelayStep, ConditionStep, ActionStep, SplitStep],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Settings and stats


class SendingWindow(BaseModel):
    """Hours and weekdays (Monday=0) during which email/action steps may run."""

    enabled: bool = False
    start_hour: int = Field(default=9, ge=0, le=23)
    end_hour: int = Field(default=17, ge=1, le=24)
    days_of_week: List[int] = Field(default_factory=lambda: list(range(7)))

    @model_validator(mode="after")
    def _check_range(self) -> "SendingWindow":
        if self.start_hour >= self.end_hour:
            raise ValueError("start_hour must be before end_hour")
        if not self.days_of_week or any(d < 0 or d > 6 for d in self.days_of_week):
            raise ValueError("days_of_week must hold weekday numbers 0-6")
        return self


class GoalDefinition(BaseModel):
    goal_type: Literal["purchase", "has_tag", "field_equals"]
    tag: Optional[str] = None
    field: Optional[str] = None
    value: Any = None
    exit_on_goal: bool = True


class WorkflowSettings(BaseModel):
    allow_reentry: bool = False
    reentry_delay: timedelta = timedelta(0)
    max_entries_per_contact: Optional[int] = Field(default=None, ge=0)
    exit_on_unsubscribe: bool = True
    exit_on_purchase: bool = False
    exit_on_tags: List[str] = Field(default_factory=list)
    exclude_tags: List[str] = Field(default_factory=list)
    sending_window: SendingWindow = SendingWindow()
    goal: Optional[GoalDefinition] = None
    timezone: str = DEFAULT_TIMEZONE

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {v}") from exc
        return v

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


class StepStats(BaseModel):
    entered: int = 0
    completed: int = 0
    skipped: int = 0
    failed: int = 0


class WorkflowStats(BaseModel):
    total_entered: int = 0
    currently_active: int = 0
    completed: int = 0
    exited: int = 0
    failed: int = 0
    goal_reached: int = 0
    emails_sent: int = 0
    emails_opened: int = 0
    emails_clicked: int = 0
    revenue: float = 0.0
    last_entry_at: Optional[datetime] = None
    steps: Dict[str, StepStats] = Field(default_factory=dict)


class WorkflowDefinition(BaseModel):
    """A stored automation: trigger, step graph and settings."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    owner: Optional[str] = None
    name: str
    description: Optional[str] = None
    status: WorkflowStatus = WorkflowStatus.DRAFT
    trigger: TriggerSpec
    steps: List[Step] = Field(default_factory=list)
    entry_step_id: Optional[str] = None
    settings: WorkflowSettings = WorkflowSettings()
    stats: WorkflowStats = WorkflowStats()
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    activated_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None

    @property
    def entry_step(self) -> Optional[str]:
        """Explicit entry step, else the first step listed."""
        if self.entry_step_id:
            return self.entry_step_id
        return self.steps[0].id if self.steps else None

    def get_step(self, step_id: str) -> Optional[Step]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None


# ---------------------------------------------------------------------------
# Collaborator messages


class TriggerEvent(BaseModel):
    """Incoming event that may enroll a contact."""

    type: str
    contact_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=_now)


class EmailRequest(BaseModel):
    """Render request handed to the Email Dispatch Service."""

    to: str
    template_ref: str
    subject: Optional[str] = None
    vars: Dict[str, Any] = Field(default_factory=dict)


DeliveryEventType = Literal["delivered", "opened", "clicked", "bounced", "failed"]


class DeliveryEvent(BaseModel):
    """Asynchronous callback posted by the Email Dispatch Service."""

    delivery_id: str
    event: DeliveryEventType
    timestamp: datetime = Field(default_factory=_now)
