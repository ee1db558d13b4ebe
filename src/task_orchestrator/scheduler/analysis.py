"""Cycle diagnostics built on top of ``DependencyGraph.detect_cycles``."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from task_orchestrator.scheduler.graph import DependencyGraph

logger = logging.getLogger(__name__)


class CycleSeverity(str, Enum):
    WARNING = "warning"
    ERROR = "error"


@dataclass(slots=True)
class CycleInfo:
    """One detected cycle with a readable description and a fix hint."""

    cycle: list[str]
    description: str
    suggestion: str
    severity: CycleSeverity


@dataclass(slots=True)
class CycleAnalysis:
    cycles: list[CycleInfo] = field(default_factory=list)
    affected_tasks: list[str] = field(default_factory=list)
    safe_tasks: list[str] = field(default_factory=list)

    @property
    def has_cycles(self) -> bool:
        return bool(self.cycles)


def analyze_cycles(graph: DependencyGraph) -> CycleAnalysis:
    """Report every cycle and split nodes into affected and safe sets."""

    affected: dict[str, None] = {}
    infos: list[CycleInfo] = []
    for cycle in graph.detect_cycles():
        affected.update(dict.fromkeys(cycle))
        infos.append(_describe_cycle(cycle))

    analysis = CycleAnalysis(
        cycles=infos,
        affected_tasks=list(affected),
        safe_tasks=[node for node in graph.nodes() if node not in affected],
    )
    if analysis.has_cycles:
        logger.error(
            "Found %d circular dependencies affecting %d tasks",
            len(infos),
            len(analysis.affected_tasks),
        )
    return analysis


def find_cycle_breakers(graph: DependencyGraph) -> list[tuple[str, str]]:
    """Greedy set of edges whose removal leaves the graph acyclic.

    Each round drops the closing edge of the first reported cycle on a copy of
    the graph. Not guaranteed minimal.
    """

    working = graph.copy()
    removed: list[tuple[str, str]] = []
    cycles = working.detect_cycles()
    while cycles:
        cycle = cycles[0]
        edge = (cycle[-1], cycle[0])
        removed.append(edge)
        working.remove_edge(*edge)
        cycles = working.detect_cycles()
    if removed:
        logger.warning("Removing %d dependencies would break all cycles", len(removed))
    return removed


def would_create_cycle(graph: DependencyGraph, task_id: str, dependency_id: str) -> bool:
    """True when adding ``task_id -> dependency_id`` closes a loop."""

    if task_id == dependency_id:
        return True
    return task_id in graph.all_dependencies(dependency_id)


def format_cycle_report(analysis: CycleAnalysis) -> list[str]:
    if not analysis.has_cycles:
        return ["No circular dependencies detected. All tasks can be scheduled."]

    lines = [f"Found {len(analysis.cycles)} circular dependency cycle(s)", "", "Cycles detected:"]
    for index, info in enumerate(analysis.cycles, start=1):
        lines.append(f"  {index}. {info.description}")
        for suggestion_line in info.suggestion.splitlines():
            lines.append(f"     {suggestion_line}")
    lines.append("")
    lines.append(
        f"Affected tasks ({len(analysis.affected_tasks)}): {', '.join(analysis.affected_tasks)}",
    )
    lines.append(f"Safe tasks ({len(analysis.safe_tasks)}): {', '.join(analysis.safe_tasks)}")
    return lines


def _describe_cycle(cycle: list[str]) -> CycleInfo:
    closed = [*cycle, cycle[0]]
    return CycleInfo(
        cycle=list(cycle),
        description="Circular dependency: " + " → ".join(closed),
        suggestion=_suggest_resolution(cycle),
        severity=CycleSeverity.ERROR if len(cycle) <= 1 else CycleSeverity.WARNING,
    )


def _suggest_resolution(cycle: list[str]) -> str:
    if len(cycle) == 1:
        return f'Task "{cycle[0]}" depends on itself. Remove the self-dependency.'
    if len(cycle) == 2:
        first, second = cycle
        return (
            f'Remove the dependency from "{first}" to "{second}" '
            f'or from "{second}" to "{first}".'
        )
    return (
        f'Remove the dependency from "{cycle[-1]}" to "{cycle[0]}", '
        "or introduce a shared prerequisite both tasks can depend on."
    )
