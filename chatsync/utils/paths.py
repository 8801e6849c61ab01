"""File path resolution using platformdirs.

Durable state (the key-value database) lives in the platform user data
directory unless overridden:
  macOS: ~/Library/Application Support/chatsync/
  Linux: ~/.local/share/chatsync/
  Windows: %LOCALAPPDATA%/chatsync/
"""

import os
from pathlib import Path

import platformdirs

APP_NAME = "chatsync"


def get_data_dir() -> Path:
    """Return the directory for persistent data (queue and cache store).

    CHATSYNC_DATA_DIR overrides the platform default.
    """
    override = os.environ.get("CHATSYNC_DATA_DIR", "").strip()
    if override:
        return Path(override).expanduser()
    return Path(platformdirs.user_data_dir(APP_NAME, appauthor=False))


def get_default_db_path() -> Path:
    """Return the default SQLite database file path.

    CHATSYNC_DB_PATH overrides the location of the file itself.
    """
    override = os.environ.get("CHATSYNC_DB_PATH", "").strip()
    if override:
        return Path(override).expanduser()
    return get_data_dir() / "chatsync.db"


def ensure_dirs_exist() -> None:
    """Create all required directories if they don't exist."""
    get_default_db_path().parent.mkdir(parents=True, exist_ok=True)
