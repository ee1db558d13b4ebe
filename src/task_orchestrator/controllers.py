"""Controllers for ticket, queue and server CLI commands."""

from __future__ import annotations

import sys
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TextIO

from task_orchestrator.agents.base import TextGenerator, UnconfiguredTextGenerator
from task_orchestrator.agents.cli_backend import CliTextGenerator
from task_orchestrator.agents.router import AgentRouter
from task_orchestrator.config import Settings
from task_orchestrator.rpc.handlers import RpcMethods
from task_orchestrator.rpc.server import ProtocolServer
from task_orchestrator.scheduler.analysis import (
    analyze_cycles,
    find_cycle_breakers,
    format_cycle_report,
)
from task_orchestrator.scheduler.graph import DependencyGraph
from task_orchestrator.scheduler.service import OrchestratorService
from task_orchestrator.tickets.models import (
    ThreadRole,
    TicketCreate,
    TicketPatch,
    TicketStatus,
    TicketView,
)
from task_orchestrator.tickets.repository import TicketRepository


@dataclass(slots=True)
class TicketCreateCommand:
    """CLI input for ticket creation."""

    db_path: Path | None
    title: str
    description: str
    priority: int
    dependencies: tuple[str, ...]
    status: str


@dataclass(slots=True)
class TicketListCommand:
    db_path: Path | None
    status: str | None
    limit: int
    offset: int = 0


@dataclass(slots=True)
class TicketInspectCommand:
    """CLI input for ticket show/history."""

    db_path: Path | None
    ticket_id: str


@dataclass(slots=True)
class TicketUpdateCommand:
    """CLI input for a guarded ticket update."""

    db_path: Path | None
    ticket_id: str
    expected_version: int | None
    status: str | None = None
    title: str | None = None
    description: str | None = None
    priority: int | None = None
    dependencies: tuple[str, ...] | None = None


@dataclass(slots=True)
class TicketReplyCommand:
    db_path: Path | None
    ticket_id: str
    message: str
    role: str = ThreadRole.USER.value


@dataclass(slots=True)
class QueueCommand:
    """CLI input for queue inspection."""

    db_path: Path | None


@dataclass(slots=True)
class ServeCommand:
    """CLI input for the JSON-RPC server."""

    db_path: Path | None
    max_workers: int | None = None


class TaskOrchestratorCliController:
    """Coordinates ticket, queue and protocol server CLI operations."""

    def create_ticket(self, command: TicketCreateCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _repository(settings) as repository:
            ticket = repository.create(
                TicketCreate(
                    title=command.title,
                    description=command.description,
                    priority=command.priority,
                    dependencies=command.dependencies,
                    status=_parse_status(command.status) or TicketStatus.OPEN,
                    creator=settings.user_name,
                ),
            )
        return [
            "Ticket created: "
            f"id={ticket.id} status={ticket.status.value} version={ticket.version}",
        ]

    def list_tickets(self, command: TicketListCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            tickets = repository.list_tickets(
                statuses=[status_filter] if status_filter is not None else None,
                limit=command.limit,
                offset=command.offset,
            )

        lines = [f"Tickets: {len(tickets)}"]
        lines.extend(f"  {_ticket_line(ticket)}" for ticket in tickets)
        return lines

    def show_ticket(self, command: TicketInspectCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _repository(settings) as repository:
            ticket = repository.get(command.ticket_id)
        if ticket is None:
            return [f"Ticket not found: {command.ticket_id}"]

        lines = [
            f"Ticket: {ticket.id}",
            f"Title: {ticket.title}",
            f"Status: {ticket.status.value}",
            f"Priority: {ticket.priority}",
            f"Version: {ticket.version}",
            f"Creator: {ticket.creator}",
            f"Dependencies: {', '.join(ticket.dependencies) or '-'}",
            f"Created: {ticket.created_at.isoformat()}",
            f"Updated: {ticket.updated_at.isoformat()}",
            f"Description: {ticket.description or '-'}",
            f"Thread: {len(ticket.thread)}",
        ]
        for message in ticket.thread:
            lines.append(
                f"  [{message.created_at.isoformat()}] {message.role.value}: {message.content}",
            )
        return lines

    def update_ticket(self, command: TicketUpdateCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _repository(settings) as repository:
            ticket = repository.update(
                command.ticket_id,
                TicketPatch(
                    status=_parse_status(command.status),
                    title=command.title,
                    description=command.description,
                    priority=command.priority,
                    dependencies=command.dependencies,
                ),
                expected_version=command.expected_version,
            )
        return [
            "Ticket updated: "
            f"id={ticket.id} status={ticket.status.value} version={ticket.version}",
        ]

    def reply_ticket(self, command: TicketReplyCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _repository(settings) as repository:
            ticket = repository.append_thread_message(
                command.ticket_id,
                role=ThreadRole(command.role),
                content=command.message,
            )
        return [f"Reply added: id={ticket.id} thread={len(ticket.thread)} version={ticket.version}"]

    def ticket_history(self, command: TicketInspectCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _repository(settings) as repository:
            events = repository.history(command.ticket_id)

        lines = [f"Events: {len(events)}"]
        for event in events:
            transition = ""
            if event.status_to is not None:
                source = event.status_from.value if event.status_from is not None else "-"
                transition = f" {source}->{event.status_to.value}"
            lines.append(
                f"  {event.created_at.isoformat()} v{event.version} "
                f"{event.event_type}{transition} details={event.details}",
            )
        return lines

    def queue_status(self, command: QueueCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _repository(settings) as repository:
            scheduler = _scheduler(settings, repository, auto_refresh=False)
            status = scheduler.get_queue_status()
            order = scheduler.dispatch_order()

        return [
            f"Queue: {status.queue_count} pending, {status.in_flight_count} in flight",
            f"Blocked P1 tickets: {status.blocked_p1_count}",
            f"Dispatch order: {', '.join(order) or '-'}",
        ]

    def queue_plan(self, command: QueueCommand) -> list[str]:
        """Dependency analysis over every ticket that is not done yet."""

        settings = _load_settings(command.db_path)
        with _repository(settings) as repository:
            tickets = repository.list_tickets()

        remaining = {ticket.id for ticket in tickets if ticket.status is not TicketStatus.DONE}
        done = {ticket.id for ticket in tickets if ticket.status is TicketStatus.DONE}
        graph = DependencyGraph.from_tasks(
            {
                ticket.id: [item for item in ticket.dependencies if item not in done]
                for ticket in tickets
                if ticket.id in remaining
            },
        )

        lines = [f"Tasks: {len(graph)}"]
        lines.append(f"Topological order: {' -> '.join(graph.topological_sort()) or '-'}")
        for index, level in enumerate(graph.parallel_levels(), start=1):
            lines.append(f"  level {index}: {', '.join(level)}")
        lines.append(f"Critical path: {' -> '.join(graph.critical_path()) or '-'}")
        unknown = [node for node in graph.nodes() if node not in remaining]
        if unknown:
            lines.append(f"Unknown prerequisites: {', '.join(unknown)}")
        analysis = analyze_cycles(graph)
        lines.extend(format_cycle_report(analysis))
        if analysis.has_cycles:
            breakers = find_cycle_breakers(graph)
            lines.append(
                "Edges to remove: "
                + ", ".join(f"{task} -> {dependency}" for task, dependency in breakers),
            )
        return lines

    def serve(
        self,
        command: ServeCommand,
        *,
        input_stream: TextIO | None = None,
        output_stream: TextIO | None = None,
    ) -> list[str]:
        settings = _load_settings(command.db_path)
        with _repository(settings) as repository:
            scheduler = _scheduler(
                settings,
                repository,
                auto_refresh=settings.scheduler.auto_refresh,
            )
            router = AgentRouter(_text_generator(settings), store=repository)
            server = ProtocolServer(
                RpcMethods(scheduler=scheduler, router=router, store=repository),
                input_stream=input_stream or sys.stdin,
                output_stream=output_stream or sys.stdout,
                max_workers=command.max_workers or settings.server.rpc_max_workers,
            )
            try:
                server.serve_forever()
            finally:
                scheduler.shutdown()
            status = scheduler.get_queue_status()

        return [
            "Server stopped: "
            f"pending={status.queue_count} in_flight={status.in_flight_count} "
            f"escalated={status.escalated_count}",
        ]


def _load_settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _scheduler(
    settings: Settings,
    repository: TicketRepository,
    *,
    auto_refresh: bool,
) -> OrchestratorService:
    scheduler = OrchestratorService(
        repository,
        task_timeout_seconds=settings.scheduler.task_timeout_seconds,
        auto_refresh=auto_refresh,
    )
    scheduler.initialize()
    return scheduler


def _text_generator(settings: Settings) -> TextGenerator:
    if not settings.agent.command_template:
        return UnconfiguredTextGenerator()
    return CliTextGenerator(
        settings.agent.command_template,
        timeout_seconds=settings.agent.timeout_seconds,
    )


def _parse_status(value: str | None) -> TicketStatus | None:
    if value is None:
        return None
    return TicketStatus(value.strip().lower())


def _ticket_line(ticket: TicketView) -> str:
    dependencies = ",".join(ticket.dependencies) or "-"
    return (
        f"{ticket.id} status={ticket.status.value} priority={ticket.priority} "
        f"v{ticket.version} deps={dependencies} title={ticket.title}"
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[TicketRepository]:
    repository = TicketRepository(
        settings.db_path,
        busy_timeout_ms=settings.store.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
