"""Subprocess-based text generator driven by a CLI command template."""

from __future__ import annotations

import os
import shlex
import subprocess
import tempfile
from pathlib import Path

from task_orchestrator.errors import AgentRouteError

_STDERR_TAIL_CHARS = 500


class CliTextGenerator:
    """Run a configured CLI agent once per prompt and return its stdout.

    The template may use ``{prompt}``, ``{prompt_file}`` and ``{system_prompt}``;
    values are shell-quoted before the command line is split.
    """

    def __init__(self, command_template: str, *, timeout_seconds: float = 120.0) -> None:
        self.command_template = command_template
        self.timeout_seconds = timeout_seconds

    def complete(self, prompt: str, *, system_prompt: str) -> str:
        with tempfile.TemporaryDirectory(prefix="task-orchestrator-") as workdir:
            prompt_file = Path(workdir) / "prompt.txt"
            prompt_file.write_text(f"{system_prompt}\n\n{prompt}", "utf-8")
            run_args = _build_run_args(
                command_template=self.command_template,
                prompt=prompt,
                prompt_file=prompt_file,
                system_prompt=system_prompt,
            )
            env = os.environ.copy()
            env["TASK_ORCHESTRATOR_PROMPT_FILE"] = str(prompt_file)
            try:
                process = subprocess.Popen(  # noqa: S603
                    run_args,
                    env=env,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                )
            except FileNotFoundError as error:
                raise AgentRouteError(
                    f"Agent command not found: {run_args[0]}",
                    transient=False,
                ) from error
            except OSError as error:
                raise AgentRouteError(
                    f"Agent command failed to start: {error}",
                    transient=True,
                ) from error

            try:
                stdout, stderr = process.communicate(timeout=self.timeout_seconds)
            except subprocess.TimeoutExpired as error:
                _terminate_process(process)
                raise AgentRouteError(
                    f"Agent command timed out after {self.timeout_seconds:g}s",
                    transient=True,
                ) from error

        if process.returncode != 0:
            raise AgentRouteError(
                f"Agent command exited with code {process.returncode}: "
                f"{stderr.strip()[-_STDERR_TAIL_CHARS:]}",
                transient=True,
            )
        return stdout.strip()


def _build_run_args(
    *,
    command_template: str,
    prompt: str,
    prompt_file: Path,
    system_prompt: str,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise AgentRouteError("Agent command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise AgentRouteError(
            "Agent command template must include {prompt} or {prompt_file}.",
            transient=False,
        )
    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            system_prompt=shlex.quote(system_prompt),
        )
    except (KeyError, IndexError) as error:
        raise AgentRouteError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise AgentRouteError("Agent command template rendered empty command.", transient=False)
    return argv


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.communicate(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.communicate(timeout=2)
