import asyncio
import json

import pytest
import yaml
from typer.testing import CliRunner

from nurture.cli import app
from nurture.persistence import SQLiteWorkflowRepository


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """Point the CLI at a SQLite file and a seeded contacts file."""
    contacts = tmp_path / "contacts.yaml"
    contacts.write_text(
        yaml.safe_dump({"c-1": {"email": "ada@example.com", "first_name": "Ada"}})
    )
    config = tmp_path / "config.yaml"
    config.write_text(
        yaml.safe_dump(
            {
                "log_level": "WARNING",
                "services": {"contacts_path": str(contacts)},
                "retry": {"backoff_base": 0, "backoff_jitter": 0},
            }
        )
    )
    db_path = tmp_path / "nurture.db"
    monkeypatch.setenv("NURTURE_CONFIG", str(config))
    monkeypatch.setenv("NURTURE_DATABASE_URL", f"sqlite://{db_path}")
    return db_path


@pytest.fixture
def welcome_file(tmp_path, make_welcome):
    path = tmp_path / "welcome.yaml"
    definition = make_welcome().model_dump(mode="json", exclude={"stats"})
    path.write_text(yaml.safe_dump(definition))
    return path


def _load(runner, path, *flags):
    result = runner.invoke(app, ["workflow", "load", str(path), *flags])
    assert result.exit_code == 0, f"Load failed: {result.stdout}"
    workflow_id, status, name = result.stdout.strip().split("\t")
    return workflow_id, status


def test_validate_reports_problems(cli_env, tmp_path, welcome_file, make_welcome):
    runner = CliRunner()
    result = runner.invoke(app, ["workflow", "validate", str(welcome_file)])
    assert result.exit_code == 0, result.stdout
    assert "is valid (5 steps)" in result.stdout

    broken = make_welcome().model_dump(mode="json", exclude={"stats"})
    broken["steps"][0]["next_steps"] = ["ghost"]
    bad_file = tmp_path / "broken.yaml"
    bad_file.write_text(yaml.safe_dump(broken))
    result = runner.invoke(app, ["workflow", "validate", str(bad_file)])
    assert result.exit_code == 1
    assert "references missing step 'ghost'" in result.stdout

    missing = runner.invoke(app, ["workflow", "validate", str(tmp_path / "nope.yaml")])
    assert missing.exit_code == 1
    assert "File not found" in missing.stdout


def test_load_list_and_lifecycle(cli_env, welcome_file):
    runner = CliRunner()
    workflow_id, status = _load(runner, welcome_file)
    assert status == "draft"

    listed = runner.invoke(app, ["workflow", "list"])
    assert workflow_id in listed.stdout
    assert "subscriber_joined" in listed.stdout

    shown = runner.invoke(app, ["workflow", "show", workflow_id])
    assert "- welcome [email] -> wait" in shown.stdout
    assert "- opened [condition] -> email_b, email_c" in shown.stdout

    for command, expected in (
        ("activate", "active"),
        ("pause", "paused"),
        ("resume", "active"),
        ("archive", "archived"),
    ):
        result = runner.invoke(app, ["workflow", command, workflow_id])
        assert result.exit_code == 0, result.stdout
        assert f"Workflow {workflow_id}: {expected}" in result.stdout

    refused = runner.invoke(app, ["workflow", "activate", workflow_id])
    assert refused.exit_code == 1
    assert "archived" in refused.stdout


def test_unknown_workflow_fails(cli_env):
    result = CliRunner().invoke(app, ["workflow", "show", "missing-id"])
    assert result.exit_code == 1
    assert "Workflow missing-id not found" in result.stdout


def test_event_to_delivery_round(cli_env, welcome_file):
    runner = CliRunner()
    workflow_id, _ = _load(runner, welcome_file, "--activate")

    emitted = runner.invoke(
        app,
        ["event", "emit", "subscriber_joined", "c-1", "--payload", '{"source": "cli"}'],
    )
    assert emitted.exit_code == 0, emitted.stdout
    enrollment_id, emitted_workflow = emitted.stdout.strip().split("\t")
    assert emitted_workflow == workflow_id

    again = runner.invoke(app, ["event", "emit", "subscriber_joined", "c-1"])
    assert "No enrollments created" in again.stdout

    scanned = runner.invoke(app, ["scheduler", "run", "--once"])
    assert scanned.exit_code == 0, scanned.stdout
    assert "processed=1" in scanned.stdout

    shown = runner.invoke(app, ["enrollment", "show", enrollment_id])
    assert "welcome [email] completed" in shown.stdout
    assert "wait [delay] waiting" in shown.stdout

    listed = runner.invoke(app, ["enrollment", "list", "--workflow", workflow_id])
    assert f"{enrollment_id}\tc-1\tactive\twait" in listed.stdout

    repo = SQLiteWorkflowRepository(cli_env)
    [log] = asyncio.run(repo.list_deliveries(enrollment_id))

    opened = runner.invoke(app, ["delivery", "event", log.delivery_id, "clicked"])
    assert opened.exit_code == 0, opened.stdout
    assert f"Delivery {log.delivery_id}: clicked" in opened.stdout

    credited = runner.invoke(app, ["delivery", "revenue", log.delivery_id, "12.5"])
    assert "revenue 12.50" in credited.stdout

    stats = runner.invoke(app, ["workflow", "stats", workflow_id, "--rebuild"])
    assert stats.exit_code == 0, stats.stdout
    counters = json.loads(stats.stdout)
    assert counters["total_entered"] == 1
    assert counters["emails_sent"] == 1
    assert counters["emails_clicked"] == 1
    assert counters["revenue"] == 12.5


def test_bad_event_input(cli_env):
    runner = CliRunner()
    bad_payload = runner.invoke(
        app, ["event", "emit", "subscriber_joined", "c-1", "--payload", "{nope"]
    )
    assert bad_payload.exit_code == 1
    assert "Invalid payload" in bad_payload.stdout

    bad_kind = runner.invoke(app, ["delivery", "event", "dlv-1", "teleported"])
    assert bad_kind.exit_code == 1
    assert "Unknown delivery event: teleported" in bad_kind.stdout

    missing = runner.invoke(app, ["delivery", "event", "dlv-1", "opened"])
    assert missing.exit_code == 1
    assert "Delivery not found" in missing.stdout
