"""Route plan/verify/ask commands to a text generator and file follow-up tickets."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any

from task_orchestrator.agents.base import AgentCommand, TextGenerator, VerificationResult
from task_orchestrator.agents.prompts import (
    ANSWER_SYSTEM_PROMPT,
    PLANNING_SYSTEM_PROMPT,
    VERIFICATION_SYSTEM_PROMPT,
    verification_prompt,
)
from task_orchestrator.tickets.models import TicketCreate, TicketStatus
from task_orchestrator.tickets.repository import TicketRepository

logger = logging.getLogger(__name__)

VERIFICATION_FAILED_PREFIX = "VERIFICATION FAILED: "
ANSWER_NEEDS_ACTION_PREFIX = "ANSWER NEEDS ACTION: "
ACTION_KEYWORDS = ("ticket", "create", "fix", "implement")
EMPTY_QUESTION_REPLY = "Please ask a question."

_VERDICT_RE = re.compile(r"\b(PASS|FAIL)\b", re.IGNORECASE)
_REQUIRED_ARGS = {
    AgentCommand.PLAN: "task",
    AgentCommand.VERIFY: "code",
    AgentCommand.ASK: "question",
}


def validate_agent_args(command: str, args: object) -> tuple[AgentCommand, dict[str, Any]]:
    """Check command name and arguments; raise ``ValueError`` with a readable reason."""

    try:
        agent_command = AgentCommand(command)
    except ValueError as error:
        allowed = ", ".join(item.value for item in AgentCommand)
        raise ValueError(f"command must be one of: {allowed}") from error
    if not isinstance(args, Mapping):
        raise ValueError("args must be an object")

    required = _REQUIRED_ARGS[agent_command]
    value = args.get(required)
    if not isinstance(value, str):
        raise ValueError(
            f"args.{required} is required for '{agent_command.value}' and must be a string",
        )
    if agent_command is AgentCommand.VERIFY and not isinstance(args.get("task", ""), str):
        raise ValueError("args.task must be a string")
    return agent_command, dict(args)


class AgentRouter:
    """Thin pass-through from orchestrator commands to a ``TextGenerator``.

    When a ticket store is attached, failed verifications and answers that
    call for action are filed as blocked tickets.
    """

    def __init__(self, generator: TextGenerator, *, store: TicketRepository | None = None) -> None:
        self.generator = generator
        self.store = store

    def route(self, command: str, args: Mapping[str, Any]) -> str:
        agent_command, checked = validate_agent_args(command, args)
        if agent_command is AgentCommand.PLAN:
            return self.plan(checked["task"])
        if agent_command is AgentCommand.VERIFY:
            task = checked.get("task") or "Verification"
            return self.verify(task, checked["code"]).summary()
        return self.ask(checked["question"])

    def plan(self, task: str) -> str:
        return self.generator.complete(task, system_prompt=PLANNING_SYSTEM_PROMPT).strip()

    def verify(self, task_description: str, code_diff: str) -> VerificationResult:
        result = self.assess(task_description, code_diff)
        if not result.passed:
            self.file_verification_failure(task_description, result)
        return result

    def assess(self, task_description: str, code_diff: str) -> VerificationResult:
        """Ask the generator for a verdict without filing anything."""

        if not code_diff.strip():
            result = VerificationResult(passed=False, explanation="No code changes provided.")
        else:
            reply = self.generator.complete(
                verification_prompt(task_description, code_diff),
                system_prompt=VERIFICATION_SYSTEM_PROMPT,
            )
            result = parse_verification_reply(reply)
        logger.info("Verification of %r: %s", task_description, result.verdict)
        return result

    def file_verification_failure(
        self,
        task_description: str,
        result: VerificationResult,
    ) -> None:
        self._file_ticket(
            title=f"{VERIFICATION_FAILED_PREFIX}{task_description or 'Unknown task'}",
            description=result.explanation,
        )

    def ask(self, question: str) -> str:
        if not question.strip():
            return EMPTY_QUESTION_REPLY
        answer = self.generator.complete(question, system_prompt=ANSWER_SYSTEM_PROMPT).strip()
        lowered = answer.lower()
        if any(keyword in lowered for keyword in ACTION_KEYWORDS):
            suffix = "..." if len(question) > 50 else ""
            self._file_ticket(
                title=f"{ANSWER_NEEDS_ACTION_PREFIX}{question[:50]}{suffix}",
                description=f"Question: {question}\n\nAnswer: {answer}",
            )
        return answer

    def _file_ticket(self, *, title: str, description: str) -> None:
        if self.store is None:
            return
        try:
            self.store.create(
                TicketCreate(
                    title=title,
                    status=TicketStatus.BLOCKED,
                    priority=1,
                    description=description,
                    ticket_type="ai_to_human",
                ),
            )
        except Exception:  # noqa: BLE001
            logger.exception("Failed to create follow-up ticket %r", title)


def parse_verification_reply(reply: str) -> VerificationResult:
    """Take the first PASS/FAIL token; a reply without one counts as FAIL."""

    content = reply.strip()
    match = _VERDICT_RE.search(content)
    if match is None:
        logger.warning("Ambiguous verification reply: %.100s", content)
        return VerificationResult(
            passed=False,
            explanation="Ambiguous response from verification, defaulting to FAIL.",
        )
    passed = match.group(1).upper() == "PASS"
    explanation = content[match.end() :].lstrip(":- \t\n").strip()
    if not explanation:
        explanation = "All criteria met." if passed else "Criteria not met."
    return VerificationResult(passed=passed, explanation=explanation)
