"""Utility functions for pinlink runtime paths and timestamps."""

import os
import time
from datetime import datetime, timezone
from pathlib import Path

DATA_DIR_NAME = ".pinlink"


def now_ms() -> int:
    """Current timestamp in milliseconds."""
    return int(time.time() * 1000)


def iso_now() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """
    Get the runtime data directory.

    Priority:
    1. `PINLINK_DATA_DIR` env override
    2. `~/.pinlink`
    """
    env_path = str(os.environ.get("PINLINK_DATA_DIR") or "").strip()
    if env_path:
        return ensure_dir(Path(env_path).expanduser())
    return ensure_dir(Path.home() / DATA_DIR_NAME)
