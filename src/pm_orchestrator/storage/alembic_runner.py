"""Run the queue database Alembic migrations from code."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parents[3]


def alembic_config(db_path: Path) -> Config:
    """Build an Alembic config bound to ``db_path``.

    Logging is left to the caller; ``alembic/env.py`` skips ``fileConfig``
    when ``configure_logger`` is false.
    """

    config = Config(str(_PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    config.attributes["configure_logger"] = False
    return config


def upgrade_head(db_path: Path, *, revision: str = "head") -> None:
    """Apply migrations up to ``revision`` for the given SQLite database."""

    logger.debug("Upgrading %s to %s", db_path, revision)
    command.upgrade(alembic_config(db_path), revision)
