"""CLI entrypoint for task-orchestrator."""

from collections.abc import Callable
from pathlib import Path

import rich_click as click

from task_orchestrator import __version__
from task_orchestrator.config import Settings
from task_orchestrator.controllers import (
    QueueCommand,
    ServeCommand,
    TaskOrchestratorCliController,
    TicketCreateCommand,
    TicketInspectCommand,
    TicketListCommand,
    TicketReplyCommand,
    TicketUpdateCommand,
)
from task_orchestrator.errors import OrchestratorError
from task_orchestrator.tickets.models import ThreadRole, TicketStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TaskOrchestratorCliController()
STATUS_CHOICES = [status.value for status in TicketStatus]


@click.group()
@click.version_option(version=__version__, prog_name="task-orchestrator")
def task_orchestrator() -> None:
    """Ticket-backed task orchestration CLI."""

    try:
        settings = Settings.from_env()
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    settings.configure_logging()


@task_orchestrator.group()
def tickets() -> None:
    """Ticket store commands."""


@tickets.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--title", required=True, help="Short ticket title.")
@click.option("--description", default="", help="Ticket description.")
@click.option(
    "--priority",
    type=click.IntRange(min=0),
    default=2,
    show_default=True,
    help="Priority, lower is more urgent.",
)
@click.option(
    "--depends-on",
    "dependencies",
    multiple=True,
    help="Ticket id that must be done first. Can be repeated.",
)
@click.option(
    "--status",
    type=click.Choice(STATUS_CHOICES),
    default=TicketStatus.OPEN.value,
    show_default=True,
    help="Initial status.",
)
def tickets_create(  # noqa: PLR0913
    db_path: Path | None,
    title: str,
    description: str,
    priority: int,
    dependencies: tuple[str, ...],
    status: str,
) -> None:
    """Create a ticket."""

    _emit_lines(
        _run(
            CONTROLLER.create_ticket,
            TicketCreateCommand(
                db_path=db_path,
                title=title,
                description=description,
                priority=priority,
                dependencies=dependencies,
                status=status,
            ),
        ),
    )


@tickets.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--status", type=click.Choice(STATUS_CHOICES), default=None, help="Status filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Maximum tickets to show.",
)
@click.option("--offset", type=click.IntRange(min=0), default=0, show_default=True)
def tickets_list(db_path: Path | None, status: str | None, limit: int, offset: int) -> None:
    """List tickets in creation order."""

    _emit_lines(
        _run(
            CONTROLLER.list_tickets,
            TicketListCommand(db_path=db_path, status=status, limit=limit, offset=offset),
        ),
    )


@tickets.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("ticket_id")
def tickets_show(db_path: Path | None, ticket_id: str) -> None:
    """Show one ticket with its thread."""

    _emit_lines(
        _run(CONTROLLER.show_ticket, TicketInspectCommand(db_path=db_path, ticket_id=ticket_id)),
    )


@tickets.command("update")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("ticket_id")
@click.option(
    "--expected-version",
    type=click.IntRange(min=1),
    default=None,
    help="Reject the update unless the stored version matches.",
)
@click.option("--status", type=click.Choice(STATUS_CHOICES), default=None, help="New status.")
@click.option("--title", default=None, help="New title.")
@click.option("--description", default=None, help="New description.")
@click.option("--priority", type=click.IntRange(min=0), default=None, help="New priority.")
@click.option(
    "--depends-on",
    "dependencies",
    multiple=True,
    help="Replace prerequisites. Can be repeated.",
)
def tickets_update(  # noqa: PLR0913
    db_path: Path | None,
    ticket_id: str,
    expected_version: int | None,
    status: str | None,
    title: str | None,
    description: str | None,
    priority: int | None,
    dependencies: tuple[str, ...],
) -> None:
    """Update a ticket with optimistic version check."""

    _emit_lines(
        _run(
            CONTROLLER.update_ticket,
            TicketUpdateCommand(
                db_path=db_path,
                ticket_id=ticket_id,
                expected_version=expected_version,
                status=status,
                title=title,
                description=description,
                priority=priority,
                dependencies=dependencies or None,
            ),
        ),
    )


@tickets.command("reply")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("ticket_id")
@click.argument("message")
@click.option(
    "--role",
    type=click.Choice([role.value for role in ThreadRole]),
    default=ThreadRole.USER.value,
    show_default=True,
)
def tickets_reply(db_path: Path | None, ticket_id: str, message: str, role: str) -> None:
    """Append a message to the ticket thread."""

    _emit_lines(
        _run(
            CONTROLLER.reply_ticket,
            TicketReplyCommand(db_path=db_path, ticket_id=ticket_id, message=message, role=role),
        ),
    )


@tickets.command("history")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("ticket_id")
def tickets_history(db_path: Path | None, ticket_id: str) -> None:
    """Show the audit trail of a ticket."""

    _emit_lines(
        _run(
            CONTROLLER.ticket_history,
            TicketInspectCommand(db_path=db_path, ticket_id=ticket_id),
        ),
    )


@task_orchestrator.group()
def queue() -> None:
    """Task queue inspection."""


@queue.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def queue_status(db_path: Path | None) -> None:
    """Show queue counts and dispatch order."""

    _emit_lines(_run(CONTROLLER.queue_status, QueueCommand(db_path=db_path)))


@queue.command("plan")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def queue_plan(db_path: Path | None) -> None:
    """Show dependency order, parallel levels, critical path and cycles."""

    _emit_lines(_run(CONTROLLER.queue_plan, QueueCommand(db_path=db_path)))


@task_orchestrator.command("serve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--max-workers",
    type=click.IntRange(min=1),
    default=None,
    help="Concurrent request handlers (defaults to TASK_ORCHESTRATOR_RPC_MAX_WORKERS).",
)
def serve(db_path: Path | None, max_workers: int | None) -> None:
    """Serve line-delimited JSON-RPC 2.0 on stdin/stdout."""

    for line in _run(CONTROLLER.serve, ServeCommand(db_path=db_path, max_workers=max_workers)):
        click.echo(line, err=True)


def _run(action: Callable[..., list[str]], command: object) -> list[str]:
    try:
        return action(command)
    except (OrchestratorError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    task_orchestrator()
