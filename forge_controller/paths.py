"""
Forge Filesystem Layout

Default locations for locks, history, metrics, progress and config tiers.
Every location can be overridden from the environment; drivers receive a
ForgePaths instance so tests can point everything at a temp directory.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------
STATE_DIR = Path(os.getenv("FORGE_STATE_DIR", ".forge"))
PROGRESS_FILE = Path(os.getenv("FORGE_PROGRESS_FILE", "claude-progress.txt"))
FORGE_HOME = Path(os.getenv("FORGE_HOME", str(Path.home() / ".claude" / "forge")))
SCHEMA_DIR = Path(os.getenv("FORGE_SCHEMA_DIR", str(Path.home() / ".claude" / "loops" / "lib")))
COMMANDS_DIR = Path(os.getenv("FORGE_COMMANDS_DIR", str(Path.home() / ".claude" / "commands")))

BUILD_LOCK_NAME = "build.lock"
IMPROVE_LOCK_NAME = "forge-loop.lock"
METRICS_FILE_NAME = "forge-metrics.jsonl"

INSTANCE_CONFIG = Path(".claude") / "forge" / "project.toml"
GLOBAL_CONFIG_NAME = "forge.toml"


@dataclass(frozen=True)
class ForgePaths:
    """Resolved filesystem layout for one driver run."""
    state_dir: Path = STATE_DIR
    progress_file: Path = PROGRESS_FILE
    schema_dir: Path = SCHEMA_DIR
    commands_dir: Path = COMMANDS_DIR
    instance_config: Path = INSTANCE_CONFIG
    global_config: Path = FORGE_HOME / GLOBAL_CONFIG_NAME

    @property
    def history_dir(self) -> Path:
        return self.state_dir / "history"

    @property
    def metrics_file(self) -> Path:
        return self.state_dir / "metrics" / METRICS_FILE_NAME

    @property
    def state_file(self) -> Path:
        return self.state_dir / "state.json"

    def lock_file(self, scope: str) -> Path:
        """Lock file for a driver scope ("build" or "improve")."""
        name = BUILD_LOCK_NAME if scope == "build" else IMPROVE_LOCK_NAME
        return self.state_dir / name

    @classmethod
    def rooted_at(cls, root: Path, home: Optional[Path] = None) -> "ForgePaths":
        """Layout with every project-relative path anchored at `root`."""
        forge_home = home or FORGE_HOME
        return cls(
            state_dir=root / ".forge",
            progress_file=root / "claude-progress.txt",
            schema_dir=SCHEMA_DIR,
            commands_dir=COMMANDS_DIR,
            instance_config=root / INSTANCE_CONFIG,
            global_config=forge_home / GLOBAL_CONFIG_NAME,
        )
