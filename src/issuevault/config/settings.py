"""
Configuration settings management for issuevault.

This module handles loading, validating, and saving the human-editable
settings in ``config.yaml`` with support for environment variable overrides.

The settings file lives in the project directory (``.issuevault/``) found
by walking up from the working directory. ISSUEVAULT_DIR points at the
project directory explicitly and ISSUEVAULT_CONFIG overrides the settings
file location.

``config.yaml`` is subordinate to ``metadata.json``: the backend actually in
use is recorded in metadata, and the ``sync.mode`` value here is kept in
step with it on a best-effort basis.
"""

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

PROJECT_DIRNAME = ".issuevault"
CONFIG_FILENAME = "config.yaml"

SYNC_MODE_PORTABLE = "portable"
SYNC_MODE_NATIVE = "native"
VALID_SYNC_MODES = {SYNC_MODE_PORTABLE, SYNC_MODE_NATIVE}

DEFAULT_BACKUP_INTERVAL_MINUTES = 15
DEFAULT_BACKUP_DIRNAME = "backup"


@dataclass
class SyncConfig:
    """How the project is kept in sync between machines."""

    mode: str = SYNC_MODE_PORTABLE


@dataclass
class BackupConfig:
    """
    Portable backup settings.

    ``enabled`` and ``git_push`` are tri-state: None means "not set", in
    which case automatic backup follows whether the project has a git
    remote, and git push follows automatic backup.
    """

    enabled: bool | None = None
    interval_minutes: int = DEFAULT_BACKUP_INTERVAL_MINUTES
    git_push: bool | None = None
    git_repo: str = ""
    directory: str = DEFAULT_BACKUP_DIRNAME


@dataclass
class Settings:
    """Main settings container."""

    log_level: str = "INFO"
    sync: SyncConfig = field(default_factory=SyncConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def find_project_dir(start: Path | None = None) -> Path | None:
    """
    Locate the project directory.

    Uses ISSUEVAULT_DIR when set, otherwise walks up from ``start`` (or the
    working directory) looking for a ``.issuevault`` directory.

    Returns:
        The project directory, or None if none was found.
    """
    env_dir = os.environ.get("ISSUEVAULT_DIR")
    if env_dir:
        return Path(env_dir).expanduser()

    current = (start or Path.cwd()).resolve()
    for candidate in (current, *current.parents):
        project_dir = candidate / PROJECT_DIRNAME
        if project_dir.is_dir():
            return project_dir
    return None


def get_config_path(project_dir: Path | None = None) -> Path:
    """
    Get the configuration file path.

    Checks ISSUEVAULT_CONFIG environment variable first, then falls back to
    ``config.yaml`` inside the project directory.
    """
    env_path = os.environ.get("ISSUEVAULT_CONFIG")
    if env_path:
        return Path(env_path).expanduser()
    if project_dir is None:
        project_dir = find_project_dir() or Path.cwd() / PROJECT_DIRNAME
    return Path(project_dir) / CONFIG_FILENAME


def load_config(config_path: Path | None = None) -> Settings:
    """
    Load configuration from YAML file.

    Reads configuration from the specified path (or default if not provided),
    applies environment variable overrides, and validates the configuration.
    A missing file yields default settings.

    Args:
        config_path: Optional path to configuration file.

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If the configuration file cannot be read or
                          contains invalid settings.
    """
    if config_path is None:
        config_path = get_config_path()

    settings = Settings()

    if config_path.exists():
        config_data = _read_yaml(config_path)
        settings = _apply_config_data(settings, config_data)

    settings = _apply_environment_overrides(settings)

    _validate_config(settings)

    return settings


def save_config(settings: Settings, config_path: Path | None = None) -> None:
    """
    Save configuration to YAML file.

    Args:
        settings: Settings instance to save.
        config_path: Optional path to configuration file.

    Raises:
        ConfigurationError: If the configuration cannot be written.
    """
    if config_path is None:
        config_path = get_config_path()

    _write_yaml(config_path, _settings_to_dict(settings))


def set_config_value(config_path: Path, key: str, value: Any) -> None:
    """
    Set a single dotted key in the YAML file, preserving everything else.

    Args:
        config_path: Path to the YAML file (created if missing).
        key: Dotted key such as ``sync.mode``.
        value: Value to store.

    Raises:
        ConfigurationError: If the file cannot be read or written, or an
                          intermediate key holds a non-mapping value.
    """
    data = _read_yaml(config_path) if config_path.exists() else {}

    parts = key.split(".")
    node = data
    for part in parts[:-1]:
        child = node.setdefault(part, {})
        if not isinstance(child, dict):
            raise ConfigurationError(f"Cannot set {key}: '{part}' is not a mapping")
        node = child
    node[parts[-1]] = value

    _write_yaml(config_path, data)


def _read_yaml(config_path: Path) -> dict[str, Any]:
    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in config file: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Cannot read config file: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file must contain a mapping: {config_path}")
    return data


def _write_yaml(config_path: Path, data: dict[str, Any]) -> None:
    config_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        with open(config_path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
    except OSError as e:
        raise ConfigurationError(f"Cannot write config file: {e}") from e


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"Invalid boolean value: {value!r}")


def _optional_bool(value: Any) -> bool | None:
    if value is None or value == "":
        return None
    return _parse_bool(value)


def _apply_config_data(settings: Settings, data: dict[str, Any]) -> Settings:
    """Apply configuration data from parsed YAML to settings."""
    general = data.get("issuevault") or {}
    if "log_level" in general:
        settings.log_level = str(general["log_level"]).upper()

    sync = data.get("sync") or {}
    if "mode" in sync:
        settings.sync.mode = str(sync["mode"]).lower()

    backup = data.get("backup") or {}
    if "enabled" in backup:
        settings.backup.enabled = _optional_bool(backup["enabled"])
    if "interval_minutes" in backup:
        try:
            settings.backup.interval_minutes = int(backup["interval_minutes"])
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                f"backup.interval_minutes must be an integer: {backup['interval_minutes']!r}"
            ) from e
    if "git_push" in backup:
        settings.backup.git_push = _optional_bool(backup["git_push"])
    if "git_repo" in backup:
        settings.backup.git_repo = str(backup["git_repo"] or "")
    if "directory" in backup:
        settings.backup.directory = str(backup["directory"] or DEFAULT_BACKUP_DIRNAME)

    return settings


def _apply_environment_overrides(settings: Settings) -> Settings:
    """Apply environment variable overrides to settings."""
    env_map: dict[str, tuple[str, Callable[[str], Any]]] = {
        "ISSUEVAULT_LOG_LEVEL": ("log_level", lambda x: x.upper()),
        "ISSUEVAULT_SYNC_MODE": ("sync.mode", lambda x: x.lower()),
        "ISSUEVAULT_BACKUP_ENABLED": ("backup.enabled", _optional_bool),
        "ISSUEVAULT_BACKUP_INTERVAL": ("backup.interval_minutes", int),
        "ISSUEVAULT_BACKUP_GIT_PUSH": ("backup.git_push", _optional_bool),
        "ISSUEVAULT_BACKUP_GIT_REPO": ("backup.git_repo", str),
    }

    for env_var, (attr_path, converter) in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            try:
                converted = converter(value)
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {env_var}: {value!r}") from e
            _set_nested_attr(settings, attr_path, converted)

    return settings


def _set_nested_attr(obj: Any, path: str, value: Any) -> None:
    """Set a nested attribute on an object using dot notation."""
    parts = path.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    setattr(obj, parts[-1], value)


def _validate_config(settings: Settings) -> None:
    """
    Validate configuration settings.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if settings.log_level not in valid_log_levels:
        raise ConfigurationError(
            f"Invalid log_level: {settings.log_level}. "
            f"Must be one of: {', '.join(sorted(valid_log_levels))}"
        )

    if settings.sync.mode not in VALID_SYNC_MODES:
        raise ConfigurationError(
            f"Invalid sync.mode: {settings.sync.mode}. "
            f"Must be one of: {', '.join(sorted(VALID_SYNC_MODES))}"
        )

    if settings.backup.interval_minutes < 0:
        raise ConfigurationError("backup.interval_minutes must not be negative")


def _settings_to_dict(settings: Settings) -> dict[str, Any]:
    """Convert Settings instance to dictionary for YAML serialization."""
    backup: dict[str, Any] = {}
    if settings.backup.enabled is not None:
        backup["enabled"] = settings.backup.enabled
    backup["interval_minutes"] = settings.backup.interval_minutes
    if settings.backup.git_push is not None:
        backup["git_push"] = settings.backup.git_push
    backup["git_repo"] = settings.backup.git_repo
    backup["directory"] = settings.backup.directory

    return {
        "issuevault": {
            "log_level": settings.log_level,
        },
        "sync": {
            "mode": settings.sync.mode,
        },
        "backup": backup,
    }
