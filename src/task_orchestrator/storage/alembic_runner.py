"""Programmatic Alembic entry points for the ticket store schema."""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from sqlalchemy.engine import Engine

from task_orchestrator.storage.common import sqlite_url

logger = logging.getLogger(__name__)

# Repository root holding alembic.ini and alembic/ (src layout, editable install).
_PROJECT_ROOT = Path(__file__).resolve().parents[3]
_UPGRADE_LOCK = threading.Lock()


def alembic_config(db_path: Path) -> Config:
    config = Config(str(_PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", sqlite_url(db_path))
    return config


def upgrade_head(db_path: Path) -> None:
    """Migrate ``db_path`` to the latest revision.

    Serialized per process: Alembic's version-table bootstrap is not safe
    against concurrent first runs on the same file.
    """

    config = alembic_config(db_path)
    with _UPGRADE_LOCK:
        logger.debug("Upgrading ticket store schema at %s", db_path)
        command.upgrade(config, "head")


def current_revision(engine: Engine) -> str | None:
    """Revision stamped in ``alembic_version``, or ``None`` before the first upgrade."""

    with engine.connect() as connection:
        return MigrationContext.configure(connection).get_current_revision()
