"""Runtime configuration for the ticket store, scheduler and protocol server."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

ENV_PREFIX = "TASK_ORCHESTRATOR_"
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class StoreSettings:
    """SQLite ticket store settings."""

    sqlite_busy_timeout_ms: int = 5000


@dataclass(slots=True)
class SchedulerSettings:
    """Queue and idle escalation settings."""

    task_timeout_seconds: float = 30.0
    auto_refresh: bool = True


@dataclass(slots=True)
class AgentSettings:
    """Text-generation collaborator settings."""

    command_template: str | None = None
    timeout_seconds: float = 120.0


@dataclass(slots=True)
class ServerSettings:
    rpc_max_workers: int = 4


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".task_orchestrator.db")
    store: StoreSettings = field(default_factory=StoreSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    server: ServerSettings = field(default_factory=ServerSettings)
    log_level: str = "WARNING"
    user_name: str = "user"

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv(f"{ENV_PREFIX}DB_PATH", ".task_orchestrator.db")),
            store=StoreSettings(
                sqlite_busy_timeout_ms=_env_int("SQLITE_BUSY_TIMEOUT_MS", 5000),
            ),
            scheduler=SchedulerSettings(
                task_timeout_seconds=_env_float("TASK_TIMEOUT_SECONDS", 30.0),
                auto_refresh=_env_bool(f"{ENV_PREFIX}AUTO_REFRESH", default=True),
            ),
            agent=AgentSettings(
                command_template=os.getenv(f"{ENV_PREFIX}AGENT_COMMAND_TEMPLATE") or None,
                timeout_seconds=_env_float("AGENT_TIMEOUT_SECONDS", 120.0),
            ),
            server=ServerSettings(
                rpc_max_workers=_env_int("RPC_MAX_WORKERS", 4),
            ),
            log_level=os.getenv(f"{ENV_PREFIX}LOG_LEVEL", "WARNING").strip().upper(),
            user_name=os.getenv(f"{ENV_PREFIX}USER_NAME", "user"),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        if self.store.sqlite_busy_timeout_ms <= 0:
            raise ValueError(f"{ENV_PREFIX}SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.scheduler.task_timeout_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}TASK_TIMEOUT_SECONDS must be > 0.")
        if self.agent.timeout_seconds <= 0:
            raise ValueError(f"{ENV_PREFIX}AGENT_TIMEOUT_SECONDS must be > 0.")
        if self.server.rpc_max_workers < 1:
            raise ValueError(f"{ENV_PREFIX}RPC_MAX_WORKERS must be >= 1.")
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"{ENV_PREFIX}LOG_LEVEL must be one of: {', '.join(_LOG_LEVELS)}.",
            )

    def configure_logging(self) -> None:
        """Send log records to stderr; stdout carries protocol traffic."""

        logging.basicConfig(
            level=getattr(logging, self.log_level, logging.WARNING),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


def _env_int(suffix: str, default: int) -> int:
    name = f"{ENV_PREFIX}{suffix}"
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(suffix: str, default: float) -> float:
    name = f"{ENV_PREFIX}{suffix}"
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
