"""Configuration helpers for the cassette tracker."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path


CELL_COUNT = 180
SURA_COUNT = 114
HISTORY_LIMIT = 100
CLICK_TIMEOUT_SECONDS = 0.25
MIN_PASSWORD_LENGTH = 6
TRACKER_ROW_ID = "main"

HOME_ENV_VAR = "CASSETTE_TRACKER_HOME"
SECRET_KEY_ENV_VAR = "CASSETTE_TRACKER_SECRET_KEY"
DEFAULT_SECRET_KEY = "cassette-tracker-dev-secret"


@dataclass(frozen=True)
class AppPaths:
    """Where the tracker keeps its database and logs."""

    root: Path
    data_dir: Path
    db_path: Path
    logs_dir: Path


def get_paths(root: Path | None = None) -> AppPaths:
    """Resolve application paths.

    Args:
        root: Optional data root override. Falls back to the
            CASSETTE_TRACKER_HOME environment variable, then ./data.

    Returns:
        AppPaths for the tracker database and the logs directory.
    """

    if root is None:
        env_root = os.environ.get(HOME_ENV_VAR)
        root = Path(env_root) if env_root else Path.cwd() / "data"
    data_dir = Path(root)
    db_path = data_dir / "tracker.db"
    logs_dir = data_dir / "logs"
    return AppPaths(root=data_dir, data_dir=data_dir, db_path=db_path, logs_dir=logs_dir)


def ensure_dirs(paths: AppPaths) -> AppPaths:
    """Ensure the data and log directories exist."""

    logger = logging.getLogger(__name__)
    for directory in (paths.data_dir, paths.logs_dir):
        directory.mkdir(parents=True, exist_ok=True)
    logger.info(
        "Ensured data directories",
        extra={
            "event": "data_dirs_ensured",
            "context": {"data_dir": str(paths.data_dir)},
        },
    )
    return paths


def get_secret_key() -> str:
    """Return the session secret key."""

    return os.environ.get(SECRET_KEY_ENV_VAR, DEFAULT_SECRET_KEY)
