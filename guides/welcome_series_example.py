"""Walk one subscriber through a welcome series with a simulated clock."""

import asyncio
from datetime import datetime, timedelta, timezone

from nurture import AutomationEngine, DeliveryEvent, TriggerEvent, WorkflowDefinition
from nurture.config import NurtureConfig, RetryConfig
from nurture.services import (
    InMemoryContactStore,
    InMemoryEmailDispatcher,
    InMemoryWebhookCaller,
    Services,
)

WELCOME_SERIES = {
    "name": "Welcome series",
    "trigger": {
        "type": "subscriber_joined",
        "filters": [{"field": "source", "operator": "equals", "value": "landing"}],
    },
    "steps": [
        {
            "id": "welcome",
            "type": "email",
            "config": {"template_ref": "welcome", "subject": "Welcome aboard"},
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
            "yes_path": "tips",
            "no_path": "reminder",
        },
        {"id": "tips", "type": "email", "config": {"template_ref": "getting_started"}},
        {"id": "reminder", "type": "email", "config": {"template_ref": "welcome_reminder"}},
    ],
    "settings": {"exit_on_purchase": True},
}


async def main():
    """Welcome series example."""
    contacts = InMemoryContactStore(
        {"ada": {"email": "ada@example.com", "first_name": "Ada"}}
    )
    email = InMemoryEmailDispatcher()
    engine = AutomationEngine(
        services=Services(contacts=contacts, email=email, webhooks=InMemoryWebhookCaller()),
        config=NurtureConfig(retry=RetryConfig(backoff_base=0, backoff_jitter=0)),
    )

    # Store and activate the workflow
    definition = await engine.workflows.save(WorkflowDefinition.model_validate(WELCOME_SERIES))
    await engine.workflows.activate(definition.id)

    # Day 0: the subscriber joins and receives the welcome email
    now = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
    event = TriggerEvent(type="subscriber_joined", contact_id="ada", payload={"source": "landing"})
    [enrollment] = await engine.ingest(event, now=now)
    await engine.run_once(now=now)

    # A few hours later the email is opened
    delivery_id, _ = email.sent[0]
    await engine.handle_delivery_event(
        DeliveryEvent(delivery_id=delivery_id, event="opened", timestamp=now + timedelta(hours=3))
    )

    # Day 1: the delay is over and the opened branch is taken
    await engine.run_once(now=now + timedelta(days=1))

    stored = await engine.repository.get_enrollment(enrollment.id)
    print(f"✅ Enrollment {stored.id}: {stored.status.value}")
    for entry in stored.history:
        print(f"   {entry.timestamp:%Y-%m-%d %H:%M} {entry.step_id} {entry.action}")
    print(f"📬 Templates sent: {email.templates_sent()}")
    stats = (await engine.repository.get_definition(definition.id)).stats
    print(f"📊 Sent {stats.emails_sent}, opened {stats.emails_opened}, completed {stats.completed}")


if __name__ == "__main__":
    asyncio.run(main())
