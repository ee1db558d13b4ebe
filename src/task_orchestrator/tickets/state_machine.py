"""Ticket status transition table."""

from __future__ import annotations

from task_orchestrator.errors import InvalidTransitionError
from task_orchestrator.tickets.models import TicketStatus

TICKET_TRANSITIONS: dict[TicketStatus, tuple[TicketStatus, ...]] = {
    TicketStatus.OPEN: (TicketStatus.IN_PROGRESS, TicketStatus.BLOCKED, TicketStatus.PENDING),
    TicketStatus.PENDING: (TicketStatus.OPEN, TicketStatus.IN_PROGRESS, TicketStatus.BLOCKED),
    TicketStatus.IN_PROGRESS: (TicketStatus.DONE, TicketStatus.BLOCKED, TicketStatus.PENDING),
    TicketStatus.BLOCKED: (TicketStatus.OPEN, TicketStatus.IN_PROGRESS, TicketStatus.PENDING),
    TicketStatus.DONE: (),
}


def allowed_transitions(current: TicketStatus) -> tuple[TicketStatus, ...]:
    return TICKET_TRANSITIONS.get(current, ())


def is_valid_transition(current: TicketStatus, requested: TicketStatus) -> bool:
    """Keeping the current status is not a transition and is always accepted."""

    if current == requested:
        return True
    return requested in allowed_transitions(current)


def validate_transition(
    *,
    ticket_id: str,
    current: TicketStatus,
    requested: TicketStatus,
) -> None:
    """Raise ``InvalidTransitionError`` listing the legal targets on a bad edge."""

    if is_valid_transition(current, requested):
        return
    raise InvalidTransitionError(
        ticket_id=ticket_id,
        current_state=current.value,
        requested_state=requested.value,
        allowed_transitions=[status.value for status in allowed_transitions(current)],
    )
