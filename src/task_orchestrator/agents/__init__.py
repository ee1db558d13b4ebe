"""Routing of plan/verify/ask commands to a text-generation collaborator."""

from task_orchestrator.agents.base import AgentCommand, TextGenerator, VerificationResult
from task_orchestrator.agents.cli_backend import CliTextGenerator
from task_orchestrator.agents.router import AgentRouter, validate_agent_args

__all__ = [
    "AgentCommand",
    "AgentRouter",
    "CliTextGenerator",
    "TextGenerator",
    "VerificationResult",
    "validate_agent_args",
]
