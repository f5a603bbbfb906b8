"""
Config Resolver - Tiered Config Cascade

Looks up dotted keys across three config tiers, first non-empty match wins:

    instance (.claude/forge/project.toml)
        -> group (--workspace-toml / WORKSPACE_TOML, optional)
            -> global (~/.claude/forge/forge.toml)
                -> caller default

Tier files are TOML; a tier path ending in .yaml/.yml is read as YAML.
A missing or malformed tier contributes nothing. Resolution never raises.
"""

import logging
import os
import tomllib
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .paths import ForgePaths

logger = logging.getLogger("config_resolver")

GROUP_CONFIG_ENV = "WORKSPACE_TOML"


class ConfigTier(str, Enum):
    """Where a resolved value came from."""
    INSTANCE = "instance"
    GROUP = "group"
    GLOBAL = "global"
    DEFAULT = "default"


@dataclass(frozen=True)
class ConfigValue:
    """A resolved key with provenance."""
    key: str
    value: Any
    source: ConfigTier
    path: Optional[Path] = None


class ConfigResolver:
    """
    Hierarchical config lookup.

    Tier files are parsed lazily, once per resolver instance.
    """

    def __init__(
        self,
        instance_path: Optional[Path] = None,
        group_path: Optional[Path] = None,
        global_path: Optional[Path] = None,
    ):
        paths = ForgePaths()
        self._tiers: List[Tuple[ConfigTier, Optional[Path]]] = [
            (ConfigTier.INSTANCE, instance_path or paths.instance_config),
            (ConfigTier.GROUP, group_path),
            (ConfigTier.GLOBAL, global_path or paths.global_config),
        ]
        self._cache: Dict[ConfigTier, Dict[str, Any]] = {}

    @classmethod
    def from_paths(cls, paths: ForgePaths, group_path: Optional[str] = None) -> "ConfigResolver":
        """Build a resolver for a layout; group path falls back to WORKSPACE_TOML."""
        group = group_path or os.getenv(GROUP_CONFIG_ENV) or None
        return cls(
            instance_path=paths.instance_config,
            group_path=Path(group).expanduser() if group else None,
            global_path=paths.global_config,
        )

    def resolve(self, key: str, default: Any = None) -> Any:
        """Return the first non-empty value for `key`, else `default`."""
        return self.lookup(key, default).value

    def lookup(self, key: str, default: Any = None) -> ConfigValue:
        """Like resolve(), but reports which tier supplied the value."""
        for tier, path in self._tiers:
            if path is None:
                continue
            value = _get_dotted(self._load(tier, path), key)
            if _is_empty(value):
                continue
            logger.debug(f"Config {key}={value!r} from {tier.value} ({path})")
            return ConfigValue(key=key, value=value, source=tier, path=path)
        return ConfigValue(key=key, value=default, source=ConfigTier.DEFAULT)

    def _load(self, tier: ConfigTier, path: Path) -> Dict[str, Any]:
        if tier not in self._cache:
            self._cache[tier] = _read_config_file(path)
        return self._cache[tier]


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _read_config_file(path: Path) -> Dict[str, Any]:
    if not path.is_file():
        return {}
    try:
        if path.suffix.lower() in (".yaml", ".yml"):
            with open(path, "r") as f:
                data = yaml.safe_load(f)
        else:
            with open(path, "rb") as f:
                data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError, yaml.YAMLError) as e:
        logger.warning(f"Ignoring unreadable config file {path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Ignoring config file {path}: root is not a table")
        return {}
    return data


def _get_dotted(data: Dict[str, Any], key: str) -> Any:
    cursor: Any = data
    for part in key.split("."):
        if not isinstance(cursor, dict) or part not in cursor:
            return None
        cursor = cursor[part]
    return cursor


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False
