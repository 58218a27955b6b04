"""Run the taskfleet Alembic migrations from inside the package."""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy.engine import Engine

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[3]


def alembic_config(db_path: Path) -> Config:
    """Alembic config pointing at the bundled scripts and the given database."""

    config = Config(str(PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def current_revision(engine: Engine) -> str | None:
    with engine.connect() as connection:
        return MigrationContext.configure(connection).get_current_revision()


def ensure_schema(db_path: Path, engine: Engine) -> str | None:
    """Upgrade the database to the newest revision and return that revision.

    Nothing runs when the stored revision already matches head.
    """

    config = alembic_config(db_path)
    head = ScriptDirectory.from_config(config).get_current_head()
    current = current_revision(engine)
    if current == head:
        return head
    logger.info("Migrating %s from %s to %s", db_path, current or "empty schema", head)
    command.upgrade(config, "head")
    return head
