"""Domain models for durable tickets."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TicketStatus(str, Enum):
    """Durable ticket lifecycle states."""

    OPEN = "open"
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    BLOCKED = "blocked"
    DONE = "done"


WORKABLE_STATUSES = frozenset({TicketStatus.OPEN, TicketStatus.IN_PROGRESS})


class ThreadRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(slots=True)
class ThreadMessage:
    """One entry of a ticket conversation log."""

    role: ThreadRole
    content: str
    created_at: datetime
    status: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "role": self.role.value,
            "content": self.content,
            "createdAt": self.created_at.isoformat(),
        }
        if self.status is not None:
            payload["status"] = self.status
        return payload


@dataclass(slots=True)
class TicketCreate:
    """Input payload for creating a ticket."""

    title: str
    status: TicketStatus = TicketStatus.OPEN
    priority: int = 2
    description: str = ""
    dependencies: tuple[str, ...] = ()
    ticket_type: str | None = None
    creator: str = "system"
    assignee: str | None = None


@dataclass(slots=True)
class TicketPatch:
    """Partial update; ``None`` leaves a field untouched."""

    status: TicketStatus | None = None
    title: str | None = None
    description: str | None = None
    priority: int | None = None
    dependencies: tuple[str, ...] | None = None
    assignee: str | None = None
    resolution: str | None = None

    def changed_fields(self) -> dict[str, Any]:
        changed: dict[str, Any] = {}
        for name in (
            "status",
            "title",
            "description",
            "priority",
            "dependencies",
            "assignee",
            "resolution",
        ):
            value = getattr(self, name)
            if value is not None:
                changed[name] = value
        return changed


@dataclass(slots=True)
class TicketView:
    """Readable ticket view for scheduler, protocol and CLI."""

    id: str
    title: str
    status: TicketStatus
    priority: int
    description: str
    version: int
    dependencies: tuple[str, ...]
    thread: list[ThreadMessage]
    created_at: datetime
    updated_at: datetime
    ticket_type: str | None = None
    creator: str = "system"
    assignee: str | None = None
    resolution: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status.value,
            "priority": self.priority,
            "description": self.description,
            "version": self.version,
            "dependencies": list(self.dependencies),
            "thread": [message.to_dict() for message in self.thread],
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "type": self.ticket_type,
            "creator": self.creator,
            "assignee": self.assignee,
            "resolution": self.resolution,
        }


@dataclass(slots=True)
class TicketEventView:
    """Ticket event entry for audit trail."""

    event_id: int
    ticket_id: str
    event_type: str
    status_from: TicketStatus | None
    status_to: TicketStatus | None
    version: int
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)
