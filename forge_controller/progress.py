"""
Progress Journal & State File

ProgressLog: human-readable, append-only journal (claude-progress.txt).
Each entry is a timestamped heading, the message, and the continuation
token so a reader can resume the session by hand:

    ## 2026-01-31 14:25:01
    [T002] next - Added login form (a1b2c3d)
    Session: 7f0c...

StateFile: optional `.forge/state.json` phase tracker. Only updated when
the file already exists; writes are atomic (temp file + os.replace).
Both are advisory and never fail a driver run.
"""

import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from .errors import best_effort

logger = logging.getLogger("progress")

PROGRESS_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


class ProgressLog:
    """Append-only human-readable run journal."""

    def __init__(self, path: Path):
        self.path = Path(path)

    @best_effort(logger, "Progress log update")
    def append(self, message: str, continuation_token: Optional[str] = None) -> None:
        timestamp = datetime.now().strftime(PROGRESS_TIMESTAMP_FORMAT)
        lines = [f"\n## {timestamp}\n", f"{message}\n"]
        if continuation_token:
            lines.append(f"Session: {continuation_token}\n")
        if self.path.parent != Path(""):
            self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a") as f:
            f.writelines(lines)


class StateFile:
    """
    `.forge/state.json` updater.

    Keys are dotted paths (`build.current_task`); intermediate tables are
    created as needed. A missing state file is left alone.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    @best_effort(logger, "State file update", default=False)
    def update(self, **updates: Any) -> bool:
        """Apply `key=value` updates, where `__` in a key means a nested table."""
        if not self.path.is_file():
            return False
        with open(self.path, "r") as f:
            state = json.load(f)
        if not isinstance(state, dict):
            logger.warning(f"State file {self.path} is not a JSON object, not updating")
            return False
        for key, value in updates.items():
            _set_nested(state, key.split("__"), value)
        _atomic_write_json(self.path, state)
        return True

    def read(self) -> Dict[str, Any]:
        if not self.path.is_file():
            return {}
        with open(self.path, "r") as f:
            return json.load(f)


def _set_nested(target: Dict[str, Any], parts: list, value: Any) -> None:
    cursor = target
    for part in parts[:-1]:
        node = cursor.get(part)
        if not isinstance(node, dict):
            node = {}
            cursor[part] = node
        cursor = node
    cursor[parts[-1]] = value


def _atomic_write_json(path: Path, data: Dict[str, Any]) -> None:
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_name, path)
    except Exception:
        try:
            os.unlink(temp_name)
        except OSError:
            pass
        raise
