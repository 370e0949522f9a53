"""
CodeMind Collaboration - Project Paths and Persistence
======================================================

Filesystem layout shared with IDE agents, plus the atomic JSON write and
timestamp helpers every other module relies on.
"""

import os
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union
from datetime import datetime, timezone
import logging

logger = logging.getLogger(__name__)


CODEMIND_DIR = ".codemind"
LOCK_FILE_NAME = ".codemind.lock"
SUGGESTIONS_DIR_NAME = "suggestions"
STATUS_FILE_NAME = "status.json"
CONFIG_FILE_NAME = "config.json"
EVENTS_FILE_NAME = "events.log"
SESSION_LOG_NAME = "session.jsonl"


def default_home() -> Path:
    """Home directory used for the global config (``CODEMIND_HOME`` wins)."""
    override = os.environ.get("CODEMIND_HOME")
    if override:
        return Path(override)
    return Path.home()


@dataclass(frozen=True)
class ProjectPaths:
    """Every shared path for one project root."""

    root: Path
    lock_file: Path
    data_dir: Path
    suggestions_dir: Path
    status_file: Path
    local_config: Path
    global_config: Path
    events_log: Path
    session_log: Path

    @classmethod
    def for_root(
        cls, root: Union[str, Path], home: Optional[Union[str, Path]] = None
    ) -> "ProjectPaths":
        """Build the layout for a project.

        Args:
            root: Project root directory
            home: Directory holding the global ``.codemind`` folder
                (defaults to the user's home)

        Returns:
            ProjectPaths for the project
        """
        root = Path(root).absolute()
        home = Path(home) if home is not None else default_home()
        data_dir = root / CODEMIND_DIR
        return cls(
            root=root,
            lock_file=root / LOCK_FILE_NAME,
            data_dir=data_dir,
            suggestions_dir=data_dir / SUGGESTIONS_DIR_NAME,
            status_file=data_dir / STATUS_FILE_NAME,
            local_config=data_dir / CONFIG_FILE_NAME,
            global_config=home / CODEMIND_DIR / CONFIG_FILE_NAME,
            events_log=data_dir / EVENTS_FILE_NAME,
            session_log=data_dir / SESSION_LOG_NAME,
        )


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON atomically (temp + fsync + rename).

    A crash mid-write leaves either the old file or the new one, never a
    truncated record that an IDE agent could half-read.

    Args:
        path: Destination file
        data: JSON-serializable object
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")

    with open(tmp_path, "w") as f:
        json.dump(data, f, indent=2)
        f.flush()
        os.fsync(f.fileno())

    # POSIX rename is atomic
    tmp_path.replace(path)
    logger.debug(f"Atomic write complete: {path}")


def read_json(path: Path) -> Any:
    """Read and parse a JSON file.

    Raises:
        OSError: If the file cannot be read
        json.JSONDecodeError: If the content is not JSON
    """
    with open(path, "r") as f:
        return json.load(f)


def get_timestamp() -> str:
    """Get current ISO 8601 timestamp (UTC, ``Z`` suffix).

    Returns:
        ISO 8601 formatted timestamp
    """
    return utc_now().isoformat().replace("+00:00", "Z")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Render an aware or naive datetime as ISO 8601 UTC with ``Z``."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO 8601 timestamp into an aware UTC datetime.

    Args:
        value: ISO string, with or without a trailing ``Z``

    Returns:
        Timezone-aware datetime

    Raises:
        ValueError: If the value is not a parseable timestamp
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    else:
        raise ValueError(f"Not a timestamp: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
