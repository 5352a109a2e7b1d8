"""Programmatic Alembic upgrades for the prompt-visibility SQLite schema.

The migration environment lives at the repository root, next to
``pyproject.toml``: ``alembic.ini`` plus the ``alembic/`` script directory
holding the batch job store revisions (catalog, jobs, tasks, events,
responses and the scheduler run log). From this module that root is
``parents[3]`` (``src/prompt_visibility/storage/alembic_runner.py``).
"""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config

MIGRATIONS_ROOT = Path(__file__).resolve().parents[3]


def upgrade_head(db_path: Path, *, root_dir: Path | None = None) -> None:
    """Upgrade the job store at ``db_path`` to the latest revision.

    ``root_dir`` overrides the directory holding ``alembic.ini`` and ``alembic/``.
    """

    root = root_dir or MIGRATIONS_ROOT
    alembic_ini = root / "alembic.ini"
    alembic_dir = root / "alembic"
    if not alembic_ini.is_file() or not alembic_dir.is_dir():
        raise FileNotFoundError(f"Alembic environment not found under {root}")

    config = Config(str(alembic_ini))
    # The ini holds a relative script_location and a dev database URL.
    config.set_main_option("script_location", str(alembic_dir))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    command.upgrade(config, "head")
