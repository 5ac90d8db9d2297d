"""Replaying enrollment history."""

from datetime import timedelta

import pytest

from nurture import is_consistent, project
from nurture.contracts import EnrollmentStatus, TriggerEvent
from nurture.persistence import Enrollment, HistoryEntry


def _entry(step_id, action, **data):
    return HistoryEntry(step_id=step_id, action=action, data=data)


def _enrollment(*history, **fields):
    return Enrollment(workflow_id="wf", contact_id="c-1", history=list(history), **fields)


def test_fresh_enrollment_projects_to_entry():
    assert project(_enrollment()) == (EnrollmentStatus.ACTIVE, None)


def test_waiting_step_is_current():
    enrollment = _enrollment(
        _entry("welcome", "completed", next_step="wait"),
        _entry("wait", "waiting", until="2024-01-02T10:00:00+00:00"),
    )
    assert project(enrollment) == (EnrollmentStatus.ACTIVE, "wait")


def test_last_step_completes():
    enrollment = _enrollment(
        _entry("welcome", "completed", next_step="bye"),
        _entry("bye", "skipped", next_step=None, error="boom"),
    )
    assert project(enrollment) == (EnrollmentStatus.COMPLETED, None)


@pytest.mark.parametrize(
    "action, status",
    [("exited", EnrollmentStatus.EXITED), ("failed", EnrollmentStatus.FAILED)],
)
def test_terminal_entries(action, status):
    enrollment = _enrollment(
        _entry("welcome", "completed", next_step="wait"),
        _entry("wait", action, reason="unsubscribed"),
    )
    assert project(enrollment) == (status, None)


def test_goal_entry_only_ends_when_exiting():
    staying = _enrollment(
        HistoryEntry(action="goal_reached", data={"exit": False}),
        _entry("welcome", "completed", next_step="wait"),
    )
    leaving = _enrollment(HistoryEntry(action="goal_reached", data={"exit": True}))
    assert project(staying) == (EnrollmentStatus.ACTIVE, "wait")
    assert project(leaving) == (EnrollmentStatus.COMPLETED, None)


def test_paused_enrollment_is_consistent_with_active_projection():
    enrollment = _enrollment(
        _entry("welcome", "completed", next_step="wait"),
        status=EnrollmentStatus.PAUSED,
        current_step="wait",
    )
    assert is_consistent(enrollment)
    enrollment.current_step = "elsewhere"
    assert not is_consistent(enrollment)


@pytest.mark.asyncio
async def test_engine_runs_leave_consistent_state(engine, install, make_welcome, repo, t0):
    await install(make_welcome())
    [created] = await engine.ingest(
        TriggerEvent(type="subscriber_joined", contact_id="c-1"), now=t0
    )
    for offset in (timedelta(0), timedelta(days=1)):
        await engine.run_once(now=t0 + offset)
        assert is_consistent(await repo.get_enrollment(created.id))
