"""Shared test fixtures."""

from __future__ import annotations

import os
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

from task_orchestrator.tickets.repository import TicketRepository

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m task_orchestrator.agents.echo_agent --prompt-file {{prompt_file}}"
)


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[TicketRepository]:
    """Migrated ticket store in a throwaway SQLite file."""

    repo = TicketRepository(tmp_path / "tickets.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def echo_agent_template() -> str:
    return ECHO_AGENT_COMMAND_TEMPLATE


@pytest.fixture(autouse=True)
def _clean_orchestrator_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer TASK_ORCHESTRATOR_* variables out of the tests."""

    for name in list(os.environ):
        if name.startswith("TASK_ORCHESTRATOR_"):
            monkeypatch.delenv(name, raising=False)
