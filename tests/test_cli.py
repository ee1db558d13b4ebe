from __future__ import annotations

import json
import re
from pathlib import Path

import allure
from click.testing import CliRunner, Result

from task_orchestrator.main import task_orchestrator

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Ticket & Queue CLI"),
]

_TICKET_ID_RE = re.compile(r"id=(TICKET-[0-9A-F]+)")


def _create(runner: CliRunner, db_path: Path, *args: str) -> str:
    result = runner.invoke(
        task_orchestrator,
        ["tickets", "create", "--db-path", str(db_path), *args],
    )
    assert result.exit_code == 0, result.output
    match = _TICKET_ID_RE.search(result.output)
    assert match is not None
    return match.group(1)


def _show(runner: CliRunner, db_path: Path, ticket_id: str) -> Result:
    return runner.invoke(
        task_orchestrator,
        ["tickets", "show", ticket_id, "--db-path", str(db_path)],
    )


def test_ticket_lifecycle_through_cli(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    ticket_id = _create(runner, db_path, "--title", "Write docs", "--priority", "1")

    updated = runner.invoke(
        task_orchestrator,
        [
            "tickets",
            "update",
            ticket_id,
            "--db-path",
            str(db_path),
            "--status",
            "in-progress",
            "--expected-version",
            "1",
        ],
    )
    assert updated.exit_code == 0, updated.output
    assert f"Ticket updated: id={ticket_id} status=in-progress version=2" in updated.output

    stale = runner.invoke(
        task_orchestrator,
        [
            "tickets",
            "update",
            ticket_id,
            "--db-path",
            str(db_path),
            "--title",
            "Stale write",
            "--expected-version",
            "1",
        ],
    )
    assert stale.exit_code != 0

    replied = runner.invoke(
        task_orchestrator,
        ["tickets", "reply", ticket_id, "Outline first?", "--db-path", str(db_path)],
    )
    assert replied.exit_code == 0, replied.output
    assert "thread=1 version=3" in replied.output

    shown = _show(runner, db_path, ticket_id)
    assert shown.exit_code == 0, shown.output
    assert "Title: Write docs" in shown.output
    assert "Status: in-progress" in shown.output
    assert "Version: 3" in shown.output
    assert "user: Outline first?" in shown.output

    history = runner.invoke(
        task_orchestrator,
        ["tickets", "history", ticket_id, "--db-path", str(db_path)],
    )
    assert history.exit_code == 0, history.output
    assert "Events: 3" in history.output
    assert "status_changed open->in-progress" in history.output

    listed = runner.invoke(
        task_orchestrator,
        ["tickets", "list", "--db-path", str(db_path), "--status", "in-progress"],
    )
    assert listed.exit_code == 0, listed.output
    assert "Tickets: 1" in listed.output
    assert f"{ticket_id} status=in-progress priority=1 v3" in listed.output


def test_show_missing_ticket(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        task_orchestrator,
        ["tickets", "show", "TICKET-NOPE", "--db-path", str(tmp_path / "cli.db")],
    )

    assert result.exit_code == 0
    assert "Ticket not found: TICKET-NOPE" in result.output


def test_invalid_transition_is_reported_as_cli_error(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    ticket_id = _create(runner, db_path, "--title", "Skip ahead")

    result = runner.invoke(
        task_orchestrator,
        ["tickets", "update", ticket_id, "--db-path", str(db_path), "--status", "done"],
    )

    assert result.exit_code != 0
    shown = _show(runner, db_path, ticket_id)
    assert "Status: open" in shown.output


def test_queue_status_and_plan(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    schema = _create(runner, db_path, "--title", "Schema")
    api = _create(runner, db_path, "--title", "API", "--depends-on", schema)

    status = runner.invoke(task_orchestrator, ["queue", "status", "--db-path", str(db_path)])
    assert status.exit_code == 0, status.output
    assert "Queue: 2 pending, 0 in flight" in status.output
    assert "Blocked P1 tickets: 0" in status.output
    assert f"Dispatch order: {schema}, {api}" in status.output

    plan = runner.invoke(task_orchestrator, ["queue", "plan", "--db-path", str(db_path)])
    assert plan.exit_code == 0, plan.output
    assert f"Topological order: {schema} -> {api}" in plan.output
    assert f"Critical path: {schema} -> {api}" in plan.output
    assert "No circular dependencies detected." in plan.output


def test_queue_plan_reports_cycles_and_breakers(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    first = _create(runner, db_path, "--title", "First")
    second = _create(runner, db_path, "--title", "Second", "--depends-on", first)
    updated = runner.invoke(
        task_orchestrator,
        ["tickets", "update", first, "--db-path", str(db_path), "--depends-on", second],
    )
    assert updated.exit_code == 0, updated.output

    plan = runner.invoke(task_orchestrator, ["queue", "plan", "--db-path", str(db_path)])

    assert plan.exit_code == 0, plan.output
    assert "Found 1 circular dependency cycle(s)" in plan.output
    assert f"Edges to remove: {second} -> {first}" in plan.output


def test_serve_speaks_json_rpc_over_stdio(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    ticket_id = _create(runner, db_path, "--title", "Served task")
    requests = [
        {"jsonrpc": "2.0", "id": 1, "method": "getNextTask", "params": {"filter": "all"}},
        {
            "jsonrpc": "2.0",
            "id": 2,
            "method": "reportTaskDone",
            "params": {"taskId": ticket_id, "status": "done"},
        },
        {"jsonrpc": "2.0", "id": 3, "method": "callAgent", "params": {"command": "ask"}},
    ]

    result = runner.invoke(
        task_orchestrator,
        ["serve", "--db-path", str(db_path), "--max-workers", "1"],
        input="".join(json.dumps(request) + "\n" for request in requests),
    )

    assert result.exit_code == 0, result.output
    responses = [
        json.loads(line) for line in result.output.splitlines() if line.startswith("{")
    ]
    assert [response["id"] for response in responses] == [1, 2, 3]
    assert responses[0]["result"]["id"] == ticket_id
    assert responses[1]["result"]["status"] == "done"
    assert responses[2]["error"]["code"] == -32602

    shown = _show(runner, db_path, ticket_id)
    assert "Status: done" in shown.output


def test_invalid_environment_is_rejected(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("TASK_ORCHESTRATOR_TASK_TIMEOUT_SECONDS", "soon")

    result = CliRunner().invoke(
        task_orchestrator,
        ["tickets", "list", "--db-path", str(tmp_path / "cli.db")],
    )

    assert result.exit_code != 0
