from datetime import datetime, timedelta, timezone

import pytest

from nurture.contracts import (
    EnrollmentStatus,
    FilterRule,
    TriggerEvent,
    WorkflowDefinition,
)
from nurture.persistence import Enrollment
from nurture.triggers import TriggerMatcher, filter_passes

T0 = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)


def _definition(filters=(), status="active", **settings):
    return WorkflowDefinition.model_validate(
        {
            "name": "Trigger test",
            "status": status,
            "trigger": {"type": "subscriber_joined", "filters": list(filters)},
            "steps": [{"id": "hello", "type": "email", "config": {"template_ref": "hi"}}],
            "settings": settings,
        }
    )


def _event(contact_id="c-1", **payload):
    return TriggerEvent(type="subscriber_joined", contact_id=contact_id, payload=payload)


async def _finished_enrollment(repo, definition, finished_at):
    await repo.create_enrollment(
        Enrollment(
            workflow_id=definition.id,
            contact_id="c-1",
            status=EnrollmentStatus.COMPLETED,
            enrolled_at=finished_at - timedelta(days=3),
            completed_at=finished_at,
        )
    )


@pytest.mark.asyncio
async def test_event_creates_enrollment(repo, contacts):
    wf = _definition()
    await repo.save_definition(wf)
    matcher = TriggerMatcher(repo, contacts)

    created = await matcher.match(_event(source="landing"), now=T0)

    assert len(created) == 1
    enrollment = await repo.get_enrollment(created[0].id)
    assert enrollment.status == EnrollmentStatus.ACTIVE
    assert enrollment.current_step is None
    assert enrollment.next_action_at == T0
    assert enrollment.entry_data == {"source": "landing"}
    assert enrollment.history == []

    stats = (await repo.get_definition(wf.id)).stats
    assert stats.total_entered == 1
    assert stats.currently_active == 1
    assert stats.last_entry_at == T0


@pytest.mark.asyncio
async def test_retrigger_with_active_enrollment_is_a_no_op(repo, contacts):
    wf = _definition()
    await repo.save_definition(wf)
    matcher = TriggerMatcher(repo, contacts)

    await matcher.match(_event(), now=T0)
    again = await matcher.match(_event(), now=T0 + timedelta(minutes=5))

    assert again == []
    assert len(await repo.list_enrollments(workflow_id=wf.id)) == 1
    assert (await repo.get_definition(wf.id)).stats.total_entered == 1


@pytest.mark.asyncio
async def test_only_active_definitions_of_the_event_type_match(repo, contacts):
    await repo.save_definition(_definition(status="draft"))
    await repo.save_definition(_definition(status="paused"))
    other = _definition()
    other.trigger.type = "purchase_made"
    await repo.save_definition(other)

    assert await TriggerMatcher(repo, contacts).match(_event(), now=T0) == []


@pytest.mark.asyncio
async def test_filters_are_anded(repo, contacts):
    wf = _definition(
        filters=[
            {"field": "source", "operator": "equals", "value": "landing"},
            {"field": "first_name", "operator": "exists", "source": "contact"},
        ]
    )
    await repo.save_definition(wf)
    matcher = TriggerMatcher(repo, contacts)

    assert await matcher.match(_event(source="import"), now=T0) == []
    assert len(await matcher.match(_event(source="landing"), now=T0)) == 1


def test_filter_sources():
    payload = {"plan": "free"}
    contact = {"plan": "pro"}
    assert filter_passes(FilterRule(field="plan", value="free"), payload, contact)
    assert filter_passes(
        FilterRule(field="plan", value="pro", source="contact"), payload, contact
    )
    assert not filter_passes(
        FilterRule(field="plan", value="pro", source="payload"), payload, contact
    )
    assert filter_passes(
        FilterRule(field="missing", operator="not_equals", value="x"), payload, contact
    )
    assert not filter_passes(FilterRule(field="missing", value="x"), payload, contact)


@pytest.mark.asyncio
async def test_malformed_filter_skips_only_its_workflow(repo, contacts, caplog):
    broken = _definition(
        filters=[{"field": "score", "operator": "greater_than", "value": 10}]
    )
    healthy = _definition()
    await repo.save_definition(broken)
    await repo.save_definition(healthy)

    created = await TriggerMatcher(repo, contacts).match(_event(score="high"), now=T0)

    assert [e.workflow_id for e in created] == [healthy.id]
    assert f"Workflow {broken.id} trigger skipped" in caplog.text


@pytest.mark.asyncio
async def test_excluded_tags_prevent_enrollment(repo, contacts):
    await contacts.add_tag("c-1", "customer")
    await repo.save_definition(_definition(exclude_tags=["customer"]))
    assert await TriggerMatcher(repo, contacts).match(_event(), now=T0) == []


@pytest.mark.asyncio
async def test_unknown_contact_is_ignored(repo, contacts):
    await repo.save_definition(_definition())
    assert await TriggerMatcher(repo, contacts).match(_event("nobody"), now=T0) == []


@pytest.mark.asyncio
async def test_reentry_disabled_by_default(repo, contacts):
    wf = _definition()
    await repo.save_definition(wf)
    await _finished_enrollment(repo, wf, T0)

    later = T0 + timedelta(days=30)
    assert await TriggerMatcher(repo, contacts).match(_event(), now=later) == []


@pytest.mark.asyncio
async def test_reentry_waits_for_delay(repo, contacts):
    wf = _definition(allow_reentry=True, reentry_delay=timedelta(days=1))
    await repo.save_definition(wf)
    await _finished_enrollment(repo, wf, T0)
    matcher = TriggerMatcher(repo, contacts)

    assert await matcher.match(_event(), now=T0 + timedelta(hours=12)) == []
    created = await matcher.match(_event(), now=T0 + timedelta(days=2))
    assert len(created) == 1
    assert len(await repo.list_enrollments(workflow_id=wf.id, contact_id="c-1")) == 2


@pytest.mark.asyncio
async def test_max_entries_per_contact(repo, contacts):
    wf = _definition(allow_reentry=True, max_entries_per_contact=1)
    await repo.save_definition(wf)
    await _finished_enrollment(repo, wf, T0)

    assert await TriggerMatcher(repo, contacts).match(
        _event(), now=T0 + timedelta(days=2)
    ) == []
