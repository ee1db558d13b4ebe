"""Method table exposed over JSON-RPC: parameter checks, then scheduler calls."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from task_orchestrator.agents.base import VerificationResult
from task_orchestrator.agents.router import AgentRouter, validate_agent_args
from task_orchestrator.errors import TicketNotFoundError
from task_orchestrator.rpc.protocol import METHOD_NOT_FOUND, RpcError, invalid_params
from task_orchestrator.scheduler.models import Task, TaskFilter
from task_orchestrator.scheduler.service import OrchestratorService
from task_orchestrator.storage.common import utc_now
from task_orchestrator.tickets.models import TicketPatch, TicketStatus
from task_orchestrator.tickets.repository import TicketRepository
from task_orchestrator.tickets.state_machine import validate_transition

logger = logging.getLogger(__name__)

REPORT_STATUS_MAP = {
    "done": TicketStatus.DONE,
    "failed": TicketStatus.BLOCKED,
    "blocked": TicketStatus.BLOCKED,
    "partial": TicketStatus.IN_PROGRESS,
}


class RpcMethods:
    """Dispatch ``getNextTask``, ``reportTaskDone`` and ``callAgent``.

    Every parameter is validated before anything is mutated; a bad value
    raises ``RpcError`` with ``-32602``.
    """

    def __init__(
        self,
        *,
        scheduler: OrchestratorService,
        router: AgentRouter,
        store: TicketRepository,
    ) -> None:
        self.scheduler = scheduler
        self.router = router
        self.store = store
        self._methods: dict[str, Callable[[dict[str, Any]], Any]] = {
            "getNextTask": self.get_next_task,
            "reportTaskDone": self.report_task_done,
            "callAgent": self.call_agent,
        }

    @property
    def method_names(self) -> list[str]:
        return list(self._methods)

    def dispatch(self, method: str, params: object) -> Any:
        handler = self._methods.get(method)
        if handler is None:
            raise RpcError(METHOD_NOT_FOUND, f"Method not found: {method}")
        if params is None:
            params = {}
        if not isinstance(params, Mapping):
            raise invalid_params("params must be an object")
        return handler(dict(params))

    def get_next_task(self, params: dict[str, Any]) -> dict[str, Any] | None:
        raw_filter = params.get("filter", TaskFilter.READY.value)
        try:
            task_filter = TaskFilter(raw_filter)
        except ValueError as error:
            raise invalid_params("filter must be one of: ready, blocked, all") from error
        include_context = params.get("includeContext", True)
        if not isinstance(include_context, bool):
            raise invalid_params("includeContext must be a boolean")

        task = self.scheduler.get_next_task(task_filter)
        if task is None:
            return None
        payload = task.to_dict(include_context=include_context)
        if include_context:
            payload["context"] = self._task_context(task)
        return payload

    def report_task_done(self, params: dict[str, Any]) -> dict[str, Any]:
        task_id = params.get("taskId")
        if not isinstance(task_id, str) or not task_id.strip():
            raise invalid_params("taskId is required and must be a non-empty string")
        status = params.get("status")
        if status not in REPORT_STATUS_MAP:
            raise invalid_params("status must be one of: done, failed, blocked, partial")
        for optional in ("taskDescription", "codeDiff", "notes"):
            if optional in params and params[optional] is not None:
                if not isinstance(params[optional], str):
                    raise invalid_params(f"{optional} must be a string")

        ticket = self.store.get(task_id)
        if ticket is None:
            raise TicketNotFoundError(task_id)
        target = REPORT_STATUS_MAP[status]
        validate_transition(ticket_id=task_id, current=ticket.status, requested=target)

        description = None
        notes = params.get("notes")
        if notes:
            stamp = utc_now().isoformat()
            description = f"{ticket.description}\n\nReport Notes ({stamp}):\n{notes}".lstrip()

        result: VerificationResult | None = None
        task_description = params.get("taskDescription") or ticket.title
        code_diff = params.get("codeDiff")
        if target is TicketStatus.DONE and code_diff is not None:
            result = self.router.assess(task_description, code_diff)
            if not result.passed:
                target = TicketStatus.BLOCKED

        # The follow-up ticket is filed only once the guarded update has applied.
        updated = self.store.update(
            task_id,
            TicketPatch(status=target, description=description),
            expected_version=ticket.version,
        )
        if result is not None and not result.passed:
            self.router.file_verification_failure(task_description, result)
        if target is TicketStatus.IN_PROGRESS:
            self.scheduler.touch_task(task_id)
        else:
            self.scheduler.complete_task(task_id)
        logger.info("Task %s reported %s, ticket now %s", task_id, status, updated.status.value)

        response: dict[str, Any] = {
            "success": True,
            "taskId": task_id,
            "status": updated.status.value,
            "message": f"Task {task_id} marked as {updated.status.value}",
        }
        if result is not None:
            response["verification"] = {"passed": result.passed, "explanation": result.explanation}
        return response

    def call_agent(self, params: dict[str, Any]) -> str:
        command = params.get("command")
        if not isinstance(command, str):
            raise invalid_params("command is required and must be one of: plan, verify, ask")
        try:
            validate_agent_args(command, params.get("args"))
        except ValueError as error:
            raise invalid_params(str(error)) from error
        return self.router.route(command, params["args"])

    def _task_context(self, task: Task) -> dict[str, Any] | None:
        ticket = self.store.get(task.ticket_id)
        if ticket is None:
            return None
        return {
            "description": ticket.description,
            "priority": ticket.priority,
            "dependencies": list(ticket.dependencies),
            "threadLength": len(ticket.thread),
        }
