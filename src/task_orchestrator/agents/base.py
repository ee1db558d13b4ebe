"""Interfaces between the agent router and text-generation backends."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from task_orchestrator.errors import AgentRouteError


class AgentCommand(str, Enum):
    PLAN = "plan"
    VERIFY = "verify"
    ASK = "ask"


@dataclass(slots=True)
class VerificationResult:
    """Outcome of checking a code diff against a task description."""

    passed: bool
    explanation: str

    @property
    def verdict(self) -> str:
        return "PASS" if self.passed else "FAIL"

    def summary(self) -> str:
        return f"{self.verdict} - {self.explanation}"


class TextGenerator(Protocol):
    """Protocol implemented by text-generation backends."""

    def complete(self, prompt: str, *, system_prompt: str) -> str:
        """Return the generated reply; raise ``AgentRouteError`` on transport failure."""


class UnconfiguredTextGenerator:
    """Placeholder used when no agent command template is configured."""

    def complete(self, prompt: str, *, system_prompt: str) -> str:
        raise AgentRouteError(
            "No agent command configured; set TASK_ORCHESTRATOR_AGENT_COMMAND_TEMPLATE.",
            transient=False,
        )
