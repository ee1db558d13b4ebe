"""In-memory task projections owned by the scheduler."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from task_orchestrator.tickets.models import TicketView


class TaskStatus(str, Enum):
    PENDING = "pending"
    PICKED = "picked"
    BLOCKED = "blocked"


class TaskFilter(str, Enum):
    """Which queued tasks ``get_next_task`` may hand out."""

    READY = "ready"
    BLOCKED = "blocked"
    ALL = "all"


@dataclass(slots=True)
class Task:
    """Transient projection of a workable ticket.

    ``version`` is the ticket version observed when the task was loaded; the
    claim uses it as the compare-and-swap guard.
    """

    id: str
    ticket_id: str
    title: str
    status: TaskStatus
    created_at: datetime
    version: int
    dependencies: tuple[str, ...] = ()
    last_picked_at: datetime | None = None
    blocked_at: datetime | None = None

    @classmethod
    def from_ticket(cls, ticket: TicketView) -> Task:
        return cls(
            id=ticket.id,
            ticket_id=ticket.id,
            title=ticket.title,
            status=TaskStatus.PENDING,
            created_at=ticket.created_at,
            version=ticket.version,
            dependencies=ticket.dependencies,
        )

    def snapshot(self) -> Task:
        return replace(self)

    def to_dict(self, *, include_context: bool = True) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "ticketId": self.ticket_id,
            "title": self.title,
            "status": self.status.value,
            "createdAt": self.created_at.isoformat(),
        }
        if not include_context:
            return payload
        payload["lastPickedAt"] = (
            self.last_picked_at.isoformat() if self.last_picked_at is not None else None
        )
        payload["blockedAt"] = self.blocked_at.isoformat() if self.blocked_at is not None else None
        payload["dependencies"] = list(self.dependencies)
        return payload


@dataclass(slots=True)
class QueueStatus:
    queue_count: int
    in_flight_count: int
    escalated_count: int
    blocked_p1_count: int
    last_picked_title: str | None = None
    in_flight_titles: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "queueCount": self.queue_count,
            "inFlightCount": self.in_flight_count,
            "escalatedCount": self.escalated_count,
            "blockedP1Count": self.blocked_p1_count,
            "lastPickedTitle": self.last_picked_title,
        }
