"""File path resolution using platformdirs.

The default SQLite store lives in the platform user data directory:
  macOS: ~/Library/Application Support/lastmile/
  Linux: ~/.local/share/lastmile/
LASTMILE_DATA_DIR overrides the location (containers, tests).
"""

import os
from pathlib import Path

import platformdirs

APP_NAME = "lastmile"


def get_data_dir() -> Path:
    """Return the directory for persistent data (DB, config)."""
    override = os.environ.get("LASTMILE_DATA_DIR", "").strip()
    if override:
        return Path(override).expanduser()
    return Path(platformdirs.user_data_dir(APP_NAME, appauthor=False))


def get_default_db_path() -> Path:
    """Return the default SQLite database file path."""
    return get_data_dir() / "lastmile.db"


def get_user_config_dir() -> Path:
    """Return the per-user config directory (~/.lastmile)."""
    return Path.home() / ".lastmile"


def ensure_dirs_exist() -> None:
    """Create all required directories if they don't exist."""
    get_data_dir().mkdir(parents=True, exist_ok=True)
