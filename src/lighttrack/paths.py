"""Helpers for locating application directories."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from platformdirs import PlatformDirs

logger = logging.getLogger(__name__)

APP_NAME = "LightTrack"
APP_AUTHOR = "LightTrack"


def get_data_dir(override: Optional[Path] = None) -> Path:
    """Return the base directory for persistent data, creating it if needed."""
    if override is not None:
        path = Path(override)
    else:
        dirs = PlatformDirs(appname=APP_NAME, appauthor=APP_AUTHOR, roaming=True)
        path = Path(dirs.user_data_path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_db_path(data_dir: Optional[Path] = None) -> Path:
    return get_data_dir(data_dir) / "lighttrack.sqlite3"


def get_keyref_path(data_dir: Optional[Path] = None) -> Path:
    return get_data_dir(data_dir) / ".keyref"


def get_log_path(data_dir: Optional[Path] = None) -> Path:
    return get_data_dir(data_dir) / "lighttrack.log"


def consume_upgrade_marker(data_dir: Optional[Path] = None) -> Optional[str]:
    """Delete the upgrade marker left by an installer and return its contents."""
    marker = get_data_dir(data_dir) / "upgrade-marker"
    if not marker.exists():
        return None
    try:
        contents = marker.read_text(encoding="utf-8").strip()
        marker.unlink()
    except OSError:
        logger.exception("Failed to consume upgrade marker at %s", marker)
        return None
    logger.info("Consumed upgrade marker (%s)", contents or "no version")
    return contents
