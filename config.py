"""
CodeMind Collaboration - Configuration
======================================

Layered collaboration settings: built-in defaults, then the global
(``~/.codemind/config.json``) file, then the project-local
(``.codemind/config.json``) file. Layers merge field by field.
"""

import copy
import json
from dataclasses import dataclass, field
from typing import Any, Optional
import logging

from schema import VALID_MODES, VALID_SUGGESTION_FORMATS
from state import ProjectPaths, atomic_write_json, read_json

logger = logging.getLogger(__name__)


DEFAULT_LOCK_TIMEOUT_MS = 30_000
DEFAULT_SUGGESTION_RETENTION_MS = 86_400_000

DEFAULT_CONFIG: dict[str, Any] = {
    "collaboration": {
        "mode": "active",
        "autoDetect": True,
        "preferIDE": True,
        "suggestionFormat": "json",
    },
    "lockTimeout": DEFAULT_LOCK_TIMEOUT_MS,
    "suggestionRetention": DEFAULT_SUGGESTION_RETENTION_MS,
    "ideSpecific": {
        "kiro": {
            "readSteeringFiles": True,
            "respectSpecs": True,
            "coordinateHooks": True,
        }
    },
}

NUMERIC_FIELDS = ("lockTimeout", "suggestionRetention")


class ConfigValidationError(ValueError):
    """Raised when a config fails validation. Carries every violation."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("Invalid config: " + "; ".join(self.errors))


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)


def default_config() -> dict[str, Any]:
    """Fresh copy of the built-in defaults."""
    return copy.deepcopy(DEFAULT_CONFIG)


def deep_merge(target: dict, source: dict) -> dict:
    """Merge ``source`` onto ``target`` field by field.

    Nested objects merge recursively; every other value (lists included)
    replaces the target's. Neither input is mutated.
    """
    result = copy.deepcopy(target)
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _is_non_negative_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return value >= 0


def validate_config(config: Any) -> ValidationResult:
    """Validate a configuration object without touching it.

    Only fields that are present are checked, so partial configs validate.

    Args:
        config: Configuration to validate

    Returns:
        ValidationResult listing every violation
    """
    errors = []

    if not isinstance(config, dict):
        return ValidationResult(valid=False, errors=["Config must be a JSON object"])

    collaboration = config.get("collaboration")
    if collaboration is not None:
        if not isinstance(collaboration, dict):
            errors.append("collaboration must be an object")
        else:
            mode = collaboration.get("mode")
            if "mode" in collaboration and mode not in VALID_MODES:
                errors.append(
                    f"Invalid collaboration mode: {mode!r}. Must be one of: {', '.join(VALID_MODES)}"
                )
            fmt = collaboration.get("suggestionFormat")
            if "suggestionFormat" in collaboration and fmt not in VALID_SUGGESTION_FORMATS:
                errors.append(
                    f"Invalid suggestion format: {fmt!r}. "
                    f"Must be one of: {', '.join(VALID_SUGGESTION_FORMATS)}"
                )

    for name in NUMERIC_FIELDS:
        if name in config and not _is_non_negative_number(config[name]):
            errors.append(f"{name} must be a non-negative number, got {config[name]!r}")

    ide_specific = config.get("ideSpecific")
    if ide_specific is not None and not isinstance(ide_specific, dict):
        errors.append("ideSpecific must be an object")

    return ValidationResult(valid=not errors, errors=errors)


class ConfigStore:
    """Loads, merges, validates and persists collaboration settings."""

    def __init__(self, paths: ProjectPaths):
        """Initialize config store.

        Args:
            paths: Project layout (local and global config locations)
        """
        self.paths = paths
        self.local_config_path = paths.local_config
        self.global_config_path = paths.global_config
        self._cached_config: Optional[dict] = None

    def _read_layer(self, path, label: str) -> Optional[dict]:
        if not path.exists():
            return None
        try:
            data = read_json(path)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load {label} config {path}: {e}")
            return None
        if not isinstance(data, dict):
            logger.error(f"Ignoring {label} config {path}: not a JSON object")
            return None
        return data

    def load_config(self) -> dict:
        """Load the project-local config merged onto defaults.

        Returns:
            Configuration (defaults if the local file is absent or unreadable)
        """
        local = self._read_layer(self.local_config_path, "local")
        if local is None:
            return default_config()
        return deep_merge(DEFAULT_CONFIG, local)

    def save_config(self, config: dict) -> None:
        """Validate and save configuration to the project-local file.

        Raises:
            ConfigValidationError: If validation fails (nothing is written)
        """
        result = validate_config(config)
        if not result.valid:
            raise ConfigValidationError(result.errors)

        atomic_write_json(self.local_config_path, config)
        self._cached_config = None
        logger.info(f"Saved config to {self.local_config_path}")

    def get_effective_config(self) -> dict:
        """Defaults, then global, then local; cached until invalidated.

        Returns:
            Merged configuration (a copy; mutating it does not touch the cache)
        """
        if self._cached_config is None:
            config = default_config()
            for path, label in (
                (self.global_config_path, "global"),
                (self.local_config_path, "local"),
            ):
                layer = self._read_layer(path, label)
                if layer is not None:
                    config = deep_merge(config, layer)
            self._cached_config = config
        return copy.deepcopy(self._cached_config)

    def validate_config(self, config: Any) -> ValidationResult:
        return validate_config(config)

    def get(self, key: str) -> Any:
        """Read a dotted key (e.g. ``collaboration.mode``) from the effective config.

        Returns:
            The value, or None if any segment is missing
        """
        value: Any = self.get_effective_config()
        for part in key.split("."):
            if not isinstance(value, dict) or part not in value:
                return None
            value = value[part]
        return value

    def set(self, key: str, value: Any) -> None:
        """Write a dotted key into the project-local config and persist it.

        Intermediate objects are created as needed.

        Raises:
            ConfigValidationError: If the resulting config is invalid
            ValueError: If the key is empty or walks through a non-object
        """
        parts = [p for p in key.split(".") if p]
        if not parts:
            raise ValueError("Config key must not be empty")

        config = self._read_layer(self.local_config_path, "local") or {}
        current = config
        for part in parts[:-1]:
            nxt = current.get(part)
            if nxt is None:
                nxt = current[part] = {}
            elif not isinstance(nxt, dict):
                raise ValueError(f"Cannot set {key}: {part} is not an object")
            current = nxt

        current[parts[-1]] = value
        self.save_config(config)

    def clear_cache(self) -> None:
        self._cached_config = None
