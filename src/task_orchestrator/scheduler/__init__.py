"""Dependency-aware scheduling of ticket-backed tasks."""

from task_orchestrator.scheduler.graph import DependencyGraph
from task_orchestrator.scheduler.models import QueueStatus, Task, TaskFilter, TaskStatus
from task_orchestrator.scheduler.service import OrchestratorService

__all__ = [
    "DependencyGraph",
    "OrchestratorService",
    "QueueStatus",
    "Task",
    "TaskFilter",
    "TaskStatus",
]
