from datetime import datetime, timezone

import pytest

from nurture.conditions import ConditionEvaluator, compare, resolve_field
from nurture.contracts import ConditionConfig
from nurture.errors import ConditionEvalError
from nurture.persistence import DeliveryLog, Enrollment, HistoryEntry

T0 = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "actual, operator, expected, result",
    [
        ("gold", "equals", "gold", True),
        (5, "equals", "5", True),
        ("gold", "not_equals", "silver", True),
        (None, "equals", None, True),
        (["vip", "beta"], "contains", "vip", True),
        ("hello world", "contains", "world", True),
        (None, "contains", "x", False),
        ("10", "greater_than", 9, True),
        (3, "less_than", "2.5", False),
        ("", "exists", None, True),
        (None, "exists", None, False),
    ],
)
def test_compare(actual, operator, expected, result):
    assert compare(actual, operator, expected) is result


def test_compare_rejects_non_numeric_ordering():
    with pytest.raises(ValueError):
        compare("abc", "greater_than", 1)
    with pytest.raises(ValueError):
        compare(1, "between", 2)


def test_resolve_field_walks_sources_in_order():
    payload = {"order": {"total": 42}}
    contact = {"plan": "pro", "order": {"total": 7}}
    assert resolve_field("order.total", payload, contact) == (True, 42)
    assert resolve_field("plan", payload, contact) == (True, "pro")
    assert resolve_field("order.items", payload, contact) == (False, None)
    assert resolve_field("plan", None, contact) == (True, "pro")


def _enrollment(**kwargs):
    return Enrollment(workflow_id="wf", contact_id="c-1", **kwargs)


async def _log(repo, enrollment, step_id, **stamps):
    await repo.create_delivery(
        DeliveryLog(
            delivery_id=f"dlv-{step_id}",
            enrollment_id=enrollment.id,
            workflow_id="wf",
            contact_id="c-1",
            step_id=step_id,
            sent_at=T0,
            **stamps,
        )
    )


@pytest.mark.asyncio
async def test_email_opened_reads_delivery_log(repo, contacts):
    evaluator = ConditionEvaluator(repo, contacts)
    enrollment = _enrollment()
    await _log(repo, enrollment, "welcome", opened_at=T0)
    config = ConditionConfig(condition_type="email_opened", email_step_id="welcome")
    assert await evaluator.evaluate(enrollment, config) is True

    clicked = ConditionConfig(condition_type="email_clicked", email_step_id="welcome")
    assert await evaluator.evaluate(enrollment, clicked) is False


@pytest.mark.asyncio
async def test_email_opened_defaults_to_most_recent_email(repo, contacts):
    evaluator = ConditionEvaluator(repo, contacts)
    enrollment = _enrollment(
        history=[
            HistoryEntry(step_id="first", step_type="email", action="completed"),
            HistoryEntry(step_id="pause", step_type="delay", action="waiting"),
            HistoryEntry(step_id="second", step_type="email", action="completed"),
        ]
    )
    await _log(repo, enrollment, "first", opened_at=T0)
    await _log(repo, enrollment, "second")
    config = ConditionConfig(condition_type="email_opened")
    assert await evaluator.evaluate(enrollment, config) is False


@pytest.mark.asyncio
async def test_email_condition_without_log_raises(repo, contacts):
    evaluator = ConditionEvaluator(repo, contacts)
    config = ConditionConfig(condition_type="email_opened", email_step_id="welcome")
    with pytest.raises(ConditionEvalError):
        await evaluator.evaluate(_enrollment(), config)
    with pytest.raises(ConditionEvalError):
        await evaluator.evaluate(_enrollment(), ConditionConfig(condition_type="email_clicked"))


@pytest.mark.asyncio
async def test_has_tag_asks_contact_store(repo, contacts):
    await contacts.add_tag("c-1", "vip")
    evaluator = ConditionEvaluator(repo, contacts)
    assert await evaluator.evaluate(
        _enrollment(), ConditionConfig(condition_type="has_tag", tag="vip")
    )
    assert not await evaluator.evaluate(
        _enrollment(), ConditionConfig(condition_type="has_tag", tag="churned")
    )


@pytest.mark.asyncio
async def test_custom_condition_uses_contact_then_entry_data(repo, contacts):
    evaluator = ConditionEvaluator(repo, contacts)
    enrollment = _enrollment(entry_data={"cart_value": 120})
    contact = {"plan": "pro"}

    on_contact = ConditionConfig(
        condition_type="custom", condition_field="plan", condition_value="pro"
    )
    on_entry = ConditionConfig(
        condition_type="custom",
        condition_field="cart_value",
        condition_operator="greater_than",
        condition_value=100,
    )
    assert await evaluator.evaluate(enrollment, on_contact, contact) is True
    assert await evaluator.evaluate(enrollment, on_entry, contact) is True


@pytest.mark.asyncio
async def test_custom_condition_missing_field(repo, contacts):
    evaluator = ConditionEvaluator(repo, contacts)
    missing = ConditionConfig(condition_type="custom", condition_field="score")
    exists = ConditionConfig(
        condition_type="custom", condition_field="score", condition_operator="exists"
    )
    with pytest.raises(ConditionEvalError):
        await evaluator.evaluate(_enrollment(), missing, {})
    assert await evaluator.evaluate(_enrollment(), exists, {}) is False
