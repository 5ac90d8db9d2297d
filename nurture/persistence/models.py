"""Data models for persisted enrollment and delivery state."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from ..contracts import EnrollmentStatus

HistoryAction = Literal[
    "completed", "skipped", "waiting", "exited", "failed", "goal_reached"
]

DeliveryStatus = Literal["sent", "delivered", "opened", "clicked", "bounced", "failed"]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class HistoryEntry(BaseModel):
    """One append-only record of what happened to an enrollment."""

    step_id: Optional[str] = None
    step_type: Optional[str] = None
    action: HistoryAction
    timestamp: datetime = Field(default_factory=_now)
    data: Dict[str, Any] = Field(default_factory=dict)


class Enrollment(BaseModel):
    """One contact's progress through one workflow definition."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    contact_id: str
    status: EnrollmentStatus = EnrollmentStatus.ACTIVE
    current_step: Optional[str] = None
    next_action_at: Optional[datetime] = None
    history: List[HistoryEntry] = Field(default_factory=list)
    entry_data: Dict[str, Any] = Field(default_factory=dict)
    enrolled_at: datetime = Field(default_factory=_now)
    completed_at: Optional[datetime] = None
    exited_at: Optional[datetime] = None
    exit_reason: Optional[str] = None
    last_error: Optional[str] = None
    goal_reached: bool = False
    goal_reached_at: Optional[datetime] = None
    goal_value: Optional[float] = None
    claimed_by: Optional[str] = None
    claimed_until: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def finished_at(self) -> Optional[datetime]:
        """When the enrollment reached a terminal status, if it did."""
        return self.exited_at or self.completed_at

    def append(self, entry: HistoryEntry) -> None:
        self.history.append(entry)

    def last_entry_for(self, step_id: str) -> Optional[HistoryEntry]:
        """Most recent history entry recorded against ``step_id``."""
        for entry in reversed(self.history):
            if entry.step_id == step_id:
                return entry
        return None


class DeliveryLog(BaseModel):
    """Outcome of one email step execution."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    delivery_id: str
    enrollment_id: str
    workflow_id: str
    contact_id: str
    step_id: str
    status: DeliveryStatus = "sent"
    sent_at: datetime = Field(default_factory=_now)
    delivered_at: Optional[datetime] = None
    opened_at: Optional[datetime] = None
    clicked_at: Optional[datetime] = None
    bounced_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    revenue: float = 0.0
