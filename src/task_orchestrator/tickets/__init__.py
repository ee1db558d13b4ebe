"""Durable ticket store: models, state machine and repository."""

from task_orchestrator.tickets.models import (
    ThreadMessage,
    ThreadRole,
    TicketCreate,
    TicketEventView,
    TicketPatch,
    TicketStatus,
    TicketView,
)
from task_orchestrator.tickets.notifications import TicketNotifier
from task_orchestrator.tickets.repository import TicketRepository
from task_orchestrator.tickets.state_machine import TICKET_TRANSITIONS, validate_transition

__all__ = [
    "TICKET_TRANSITIONS",
    "ThreadMessage",
    "ThreadRole",
    "TicketCreate",
    "TicketEventView",
    "TicketNotifier",
    "TicketPatch",
    "TicketRepository",
    "TicketStatus",
    "TicketView",
    "validate_transition",
]
