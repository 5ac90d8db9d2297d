"""Command line interface for running nurture workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
import yaml
from pydantic import ValidationError

from nurture import AutomationEngine
from nurture.config import load_config
from nurture.contracts import (
    DeliveryEvent,
    EnrollmentStatus,
    TriggerEvent,
    WorkflowDefinition,
    WorkflowStatus,
)
from nurture.errors import NurtureError
from nurture.graph import StepGraph

app = typer.Typer(help="CLI for nurture marketing automation")

# Command groups
scheduler_app = typer.Typer(help="Commands for running the scheduler")
workflow_app = typer.Typer(help="Commands for managing workflow definitions")
enrollment_app = typer.Typer(help="Commands for inspecting enrollments")
event_app = typer.Typer(help="Commands for ingesting trigger events")
delivery_app = typer.Typer(help="Commands for email delivery callbacks")

app.add_typer(scheduler_app, name="scheduler")
app.add_typer(workflow_app, name="workflow")
app.add_typer(enrollment_app, name="enrollment")
app.add_typer(event_app, name="event")
app.add_typer(delivery_app, name="delivery")


@app.callback()
def main() -> None:
    """Nurture CLI entry point."""
    pass


def _engine(worker_id: Optional[str] = None) -> AutomationEngine:
    config = load_config()
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return AutomationEngine(config=config, worker_id=worker_id)


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED)
    raise typer.Exit(code=1)


def _read_definition(path: Path) -> WorkflowDefinition:
    if not path.exists():
        _fail(f"File not found: {path}")
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    try:
        return WorkflowDefinition.model_validate(data)
    except ValidationError as exc:
        _fail(f"Invalid workflow definition:\n{exc}")


@scheduler_app.command("run")
def scheduler_run(
    lifespan: Optional[float] = None,
    worker_id: Optional[str] = None,
    once: bool = typer.Option(False, help="Run a single scan and exit"),
) -> None:
    """
    Run a scheduler worker.

    Scans for due enrollments every ``scheduler.scan_interval`` seconds,
    claims them and advances them through their workflow. Several workers
    may run against the same database.

    Example:
        nurture scheduler run
        nurture scheduler run --lifespan 300 --worker-id worker-a
        nurture scheduler run --once
    """
    engine = _engine(worker_id)
    if once:
        report = asyncio.run(engine.run_once())
        typer.echo(
            f"due={report.due} processed={report.processed} skipped={report.skipped} "
            f"conflicts={report.conflicts} timeouts={report.timeouts} errors={report.errors}"
        )
        return
    typer.echo(f"Starting scheduler: {engine.scheduler.worker_id}")
    asyncio.run(engine.scheduler.start(lifespan=lifespan))


@workflow_app.command("validate")
def workflow_validate(path: Path) -> None:
    """
    Check a workflow definition file without storing it.

    Reports every graph problem found: duplicate or missing step ids, cycles,
    unreachable steps and malformed splits.

    Example:
        nurture workflow validate ./workflows/welcome.yaml
    """
    definition = _read_definition(path)
    problems = StepGraph.from_definition(definition).problems()
    if not definition.steps:
        problems.insert(0, "workflow needs at least one step")
    if problems:
        for problem in problems:
            typer.secho(f"- {problem}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {definition.name} is valid ({len(definition.steps)} steps)")


@workflow_app.command("load")
def workflow_load(
    path: Path,
    activate: bool = typer.Option(False, help="Activate after saving"),
) -> None:
    """
    Store a workflow definition from a YAML or JSON file.

    Example:
        nurture workflow load ./workflows/welcome.yaml --activate
    """
    definition = _read_definition(path)
    engine = _engine()

    async def _load() -> WorkflowDefinition:
        saved = await engine.workflows.save(definition)
        if activate:
            saved = await engine.workflows.activate(saved.id)
        return saved

    try:
        saved = asyncio.run(_load())
    except NurtureError as exc:
        _fail(str(exc))
    typer.echo(f"{saved.id}\t{saved.status.value}\t{saved.name}")


@workflow_app.command("list")
def workflow_list(status: Optional[WorkflowStatus] = None) -> None:
    """List workflow definitions with their status."""
    engine = _engine()
    workflows = asyncio.run(engine.workflows.list_definitions(status=status))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.status.value}\t{wf.trigger.type}\t{wf.name}")


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """
    Show a workflow definition and its steps.

    Example:
        nurture workflow show 3f2b...
        # Output: Workflow Welcome series (3f2b...): active
        #         Trigger: subscriber_joined
        #         - welcome [email] -> wait
        #         - wait [delay] -> opened
    """
    engine = _engine()
    try:
        wf = asyncio.run(engine.workflows.get(workflow_id))
    except NurtureError as exc:
        _fail(str(exc))
    typer.echo(f"Workflow {wf.name} ({wf.id}): {wf.status.value}")
    typer.echo(f"Trigger: {wf.trigger.type}")
    for rule in wf.trigger.filters:
        typer.echo(f"  filter: {rule.field} {rule.operator} {rule.value!r}")
    for step in wf.steps:
        successors = ", ".join(step.successor_ids()) or "end"
        typer.echo(f"- {step.id} [{step.type}] -> {successors}")


def _transition(action: str, workflow_id: str) -> None:
    engine = _engine()
    try:
        wf = asyncio.run(getattr(engine.workflows, action)(workflow_id))
    except NurtureError as exc:
        _fail(str(exc))
    typer.echo(f"Workflow {wf.id}: {wf.status.value}")


@workflow_app.command("activate")
def workflow_activate(workflow_id: str) -> None:
    """Start enrolling contacts into a workflow."""
    _transition("activate", workflow_id)


@workflow_app.command("pause")
def workflow_pause(workflow_id: str) -> None:
    """Stop enrolling and advancing contacts; in-flight enrollments wait."""
    _transition("pause", workflow_id)


@workflow_app.command("resume")
def workflow_resume(workflow_id: str) -> None:
    _transition("resume", workflow_id)


@workflow_app.command("archive")
def workflow_archive(workflow_id: str) -> None:
    _transition("archive", workflow_id)


@workflow_app.command("stats")
def workflow_stats(
    workflow_id: str,
    rebuild: bool = typer.Option(False, help="Recompute counters from enrollments"),
) -> None:
    """Print workflow and per-step counters."""
    engine = _engine()
    try:
        if rebuild:
            stats = asyncio.run(engine.rebuild_stats(workflow_id))
        else:
            stats = asyncio.run(engine.workflows.get(workflow_id)).stats
    except NurtureError as exc:
        _fail(str(exc))
    typer.echo(json.dumps(stats.model_dump(mode="json"), indent=2))


@enrollment_app.command("list")
def enrollment_list(
    workflow: Optional[str] = None,
    status: Optional[EnrollmentStatus] = None,
) -> None:
    """List enrollments, optionally for one workflow or status."""
    engine = _engine()
    enrollments = asyncio.run(
        engine.repository.list_enrollments(workflow_id=workflow, status=status)
    )
    if not enrollments:
        typer.echo("No enrollments found")
        return
    for e in enrollments:
        typer.echo(
            f"{e.id}\t{e.contact_id}\t{e.status.value}\t{e.current_step or '-'}\t{e.next_action_at or '-'}"
        )


@enrollment_app.command("show")
def enrollment_show(enrollment_id: str) -> None:
    """
    Show an enrollment and its full history.

    Example:
        nurture enrollment show 7c1d...
        # Output: Enrollment 7c1d... (contact c-1): completed
        #         - 2024-01-01 10:00:00+00:00 welcome [email] completed {...}
    """
    engine = _engine()
    e = asyncio.run(engine.repository.get_enrollment(enrollment_id))
    if e is None:
        _fail("Enrollment not found")
    typer.echo(f"Enrollment {e.id} (contact {e.contact_id}): {e.status.value}")
    if e.exit_reason:
        typer.echo(f"Exit reason: {e.exit_reason}")
    if e.last_error:
        typer.echo(f"Last error: {e.last_error}")
    for entry in e.history:
        label = f"{entry.step_id} [{entry.step_type}]" if entry.step_id else "-"
        typer.echo(f"- {entry.timestamp} {label} {entry.action} {json.dumps(entry.data)}")


@event_app.command("emit")
def event_emit(
    event_type: str,
    contact_id: str,
    payload: Optional[str] = typer.Option(None, help="JSON object payload"),
) -> None:
    """
    Ingest a trigger event and print the enrollments it created.

    Example:
        nurture event emit subscriber_joined c-1 --payload '{"source": "landing"}'
    """
    try:
        data = json.loads(payload) if payload else {}
    except json.JSONDecodeError as exc:
        _fail(f"Invalid payload: {exc}")
    engine = _engine()
    event = TriggerEvent(type=event_type, contact_id=contact_id, payload=data)
    created = asyncio.run(engine.ingest(event))
    if not created:
        typer.echo("No enrollments created")
        return
    for e in created:
        typer.echo(f"{e.id}\t{e.workflow_id}")


@delivery_app.command("event")
def delivery_event(delivery_id: str, event: str) -> None:
    """Apply a delivered/opened/clicked/bounced/failed callback."""
    try:
        callback = DeliveryEvent(delivery_id=delivery_id, event=event)
    except ValidationError:
        _fail(f"Unknown delivery event: {event}")
    engine = _engine()
    log = asyncio.run(engine.handle_delivery_event(callback))
    if log is None:
        _fail("Delivery not found")
    typer.echo(f"Delivery {log.delivery_id}: {log.status}")


@delivery_app.command("revenue")
def delivery_revenue(delivery_id: str, amount: float) -> None:
    """Credit revenue to a delivery."""
    engine = _engine()
    log = asyncio.run(engine.attribute_revenue(delivery_id, amount))
    if log is None:
        _fail("Delivery not found")
    typer.echo(f"Delivery {log.delivery_id}: revenue {log.revenue:.2f}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
