"""Replays enrollment history into its current state."""

from __future__ import annotations

from typing import NamedTuple, Optional

from .contracts import EnrollmentStatus
from .persistence.models import Enrollment


class Projection(NamedTuple):
    status: EnrollmentStatus
    current_step: Optional[str]


def project(enrollment: Enrollment) -> Projection:
    """Derive ``(status, current_step)`` from ``enrollment.history`` alone.

    Pausing is driven by the workflow definition and never recorded in
    history, so a paused enrollment projects as active.
    """
    current: Optional[str] = None
    for entry in enrollment.history:
        if entry.action == "exited":
            return Projection(EnrollmentStatus.EXITED, None)
        if entry.action == "failed":
            return Projection(EnrollmentStatus.FAILED, None)
        if entry.action == "goal_reached":
            if entry.data.get("exit"):
                return Projection(EnrollmentStatus.COMPLETED, None)
        elif entry.action == "waiting":
            current = entry.step_id
        else:
            following = entry.data.get("next_step")
            if following is None:
                return Projection(EnrollmentStatus.COMPLETED, None)
            current = following
    return Projection(EnrollmentStatus.ACTIVE, current)


def is_consistent(enrollment: Enrollment) -> bool:
    """Whether the stored fields agree with the replayed history."""
    projected = project(enrollment)
    status = enrollment.status
    if status == EnrollmentStatus.PAUSED:
        status = EnrollmentStatus.ACTIVE
    return projected == (status, enrollment.current_step)
