"""Shared fixtures: in-memory storage, collaborators and sample workflows."""

from datetime import datetime, timezone

import pytest

from nurture.config import NurtureConfig, RetryConfig, SchedulerConfig
from nurture.contracts import WorkflowDefinition
from nurture.engine import AutomationEngine
from nurture.persistence import InMemoryWorkflowRepository
from nurture.services import (
    InMemoryContactStore,
    InMemoryEmailDispatcher,
    InMemoryWebhookCaller,
    Services,
)

# a Monday
T0 = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)


def welcome_series(**overrides) -> WorkflowDefinition:
    """email(welcome) -> delay(1 day) -> condition(opened) -> email(b) | email(c)."""
    data = {
        "name": "Welcome series",
        "trigger": {"type": "subscriber_joined"},
        "steps": [
            {
                "id": "welcome",
                "type": "email",
                "config": {"template_ref": "welcome", "subject": "Welcome!"},
                "next_steps": ["wait"],
            },
            {
                "id": "wait",
                "type": "delay",
                "config": {"delay_type": "fixed", "delay_value": 1, "delay_unit": "days"},
                "next_steps": ["opened"],
            },
            {
                "id": "opened",
                "type": "condition",
                "config": {"condition_type": "email_opened", "email_step_id": "welcome"},
                "yes_path": "email_b",
                "no_path": "email_c",
            },
            {"id": "email_b", "type": "email", "config": {"template_ref": "B"}},
            {"id": "email_c", "type": "email", "config": {"template_ref": "C"}},
        ],
    }
    data.update(overrides)
    return WorkflowDefinition.model_validate(data)


@pytest.fixture
def t0():
    return T0


@pytest.fixture
def config():
    return NurtureConfig(
        scheduler=SchedulerConfig(claim_lease_seconds=60, execution_timeout_seconds=5),
        retry=RetryConfig(max_attempts=3, backoff_base=0, backoff_jitter=0),
    )


@pytest.fixture
def repo():
    return InMemoryWorkflowRepository()


@pytest.fixture
def contacts():
    store = InMemoryContactStore()
    store.add_contact("c-1", email="ada@example.com", first_name="Ada")
    store.add_contact("c-2", email="grace@example.com", first_name="Grace")
    return store


@pytest.fixture
def email():
    return InMemoryEmailDispatcher()


@pytest.fixture
def webhooks():
    return InMemoryWebhookCaller()


@pytest.fixture
def services(contacts, email, webhooks):
    return Services(contacts=contacts, email=email, webhooks=webhooks)


@pytest.fixture
def engine(repo, services, config):
    return AutomationEngine(
        repository=repo, services=services, config=config, worker_id="worker-a"
    )


@pytest.fixture
def install(engine):
    """Save and activate a definition through the lifecycle manager."""

    async def _install(definition: WorkflowDefinition) -> WorkflowDefinition:
        await engine.workflows.save(definition)
        return await engine.workflows.activate(definition.id)

    return _install


@pytest.fixture
def make_welcome():
    return welcome_series
