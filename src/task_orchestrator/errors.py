"""Error taxonomy shared by the store, scheduler, router and protocol layer."""

from __future__ import annotations

from typing import Any


class OrchestratorError(RuntimeError):
    """Base error carrying a stable code and structured details for callers."""

    code = "ORCHESTRATOR_ERROR"

    def details(self) -> dict[str, Any]:
        return {"code": self.code}


class TicketNotFoundError(OrchestratorError):
    code = "TICKET_NOT_FOUND"

    def __init__(self, ticket_id: str) -> None:
        super().__init__(f"Ticket not found: {ticket_id}")
        self.ticket_id = ticket_id

    def details(self) -> dict[str, Any]:
        return {"code": self.code, "ticket_id": self.ticket_id}


class TicketValidationError(OrchestratorError):
    code = "VALIDATION_ERROR"


class TicketConflictError(OrchestratorError):
    """Optimistic version check failed; the stored ticket was not modified."""

    code = "TICKET_UPDATE_CONFLICT"

    def __init__(self, *, ticket_id: str, expected_version: int, actual_version: int) -> None:
        super().__init__(
            f"Ticket {ticket_id} was modified concurrently: "
            f"expected version {expected_version}, found {actual_version}",
        )
        self.ticket_id = ticket_id
        self.expected_version = expected_version
        self.actual_version = actual_version

    def resolution_steps(self) -> list[str]:
        return [
            f"Reload ticket {self.ticket_id} to get version {self.actual_version}",
            "Re-apply the change on top of the reloaded ticket",
            "Retry the update with the new expected version",
        ]

    def details(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "ticket_id": self.ticket_id,
            "expected_version": self.expected_version,
            "actual_version": self.actual_version,
            "resolution_steps": self.resolution_steps(),
        }


class InvalidTransitionError(OrchestratorError):
    """Requested status change is not an edge of the ticket state machine."""

    code = "INVALID_STATE"

    def __init__(
        self,
        *,
        ticket_id: str,
        current_state: str,
        requested_state: str,
        allowed_transitions: list[str],
    ) -> None:
        allowed = ", ".join(allowed_transitions) if allowed_transitions else "none (terminal)"
        super().__init__(
            f"Cannot transition ticket {ticket_id} from '{current_state}' "
            f"to '{requested_state}'. Allowed: {allowed}",
        )
        self.ticket_id = ticket_id
        self.current_state = current_state
        self.requested_state = requested_state
        self.allowed_transitions = allowed_transitions

    def details(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "ticket_id": self.ticket_id,
            "current_state": self.current_state,
            "requested_state": self.requested_state,
            "allowed_transitions": list(self.allowed_transitions),
        }


class AgentRouteError(OrchestratorError):
    """Text-generation collaborator failed, with retryability hint."""

    code = "AGENT_ROUTE_FAILED"

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient

    def details(self) -> dict[str, Any]:
        return {"code": self.code, "transient": self.transient}
