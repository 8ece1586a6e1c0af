"""Configuration for roo-task-man."""

import os
import sys
from dataclasses import dataclass
from pathlib import Path

import yaml

from .errors import TaskManError

APP_NAME = "roo-task-man"
CONFIG_FILENAME = f"{APP_NAME}.yaml"


class ConfigError(TaskManError):
    """Raised when configuration is invalid."""
    pass


DEFAULT_PLUGIN_ID = "RooVeterinaryInc.roo-cline"
DEFAULT_CODE_CHANNEL = "Code"
DEFAULT_LOCK_TIMEOUT_SECONDS = 5.0
DEFAULT_HOOKS_DIR = f"~/.config/{APP_NAME}/hooks"

VALID_FIELDS = {
    "plugin_id", "code_channel", "data_dir", "state_dir", "hooks_dir",
    "export_dir", "debug", "lock_timeout_seconds",
}

# Known VS Code forks and the name of their application data folder
EDITOR_CHANNELS = {
    "code": "Code",
    "stable": "Code",
    "insiders": "Code - Insiders",
    "code-insiders": "Code - Insiders",
    "code---insiders": "Code - Insiders",
    "vscodium": "VSCodium",
    "codium": "VSCodium",
    "cursor": "Cursor",
    "windsurf": "Windsurf",
    "trae": "Trae",
}


def default_config_path() -> Path:
    return Path.home() / ".config" / CONFIG_FILENAME


def map_editor_channel(channel: str) -> tuple[str, bool]:
    """Normalize an editor channel to its application data folder name.

    Returns:
        Tuple of (folder name, is_custom). Unknown names are returned as-is.
    """
    s = channel.strip()
    if not s:
        return "Code", False
    norm = s.lower().replace("_", "-").replace(" ", "-")
    if norm == "custom":
        return "", True
    return EDITOR_CHANNELS.get(norm, s), False


def display_editor_name(channel: str) -> str:
    """Friendly editor name used for display and path resolution."""
    if not channel:
        return "Code"
    name, custom = map_editor_channel(channel)
    if not custom and name:
        return name
    return channel


def app_data_base() -> Path:
    """Per-user application data directory for the current platform."""
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support"
    if sys.platform.startswith("win"):
        appdata = os.getenv("APPDATA")
        if not appdata:
            raise ConfigError("APPDATA not set")
        return Path(appdata)
    return Path.home() / ".config"


def _env_bool(value: str) -> bool:
    return value.strip().lower() not in ("", "0", "false", "no", "off")


@dataclass
class Config:
    plugin_id: str = DEFAULT_PLUGIN_ID
    code_channel: str = DEFAULT_CODE_CHANNEL  # Code | Insiders | VSCodium | Cursor | Custom | <AppDir>
    data_dir: str = ""  # Override for the extension's globalStorage root
    state_dir: str = ""  # Override for the directory holding state.vscdb
    hooks_dir: str = DEFAULT_HOOKS_DIR
    export_dir: str = ""  # Default export destination; "" means the current directory
    debug: bool = False
    lock_timeout_seconds: float = DEFAULT_LOCK_TIMEOUT_SECONDS

    @property
    def editor_name(self) -> str:
        return display_editor_name(self.code_channel)

    @property
    def storage_root(self) -> Path:
        """Directory where the extension keeps its task folders."""
        if self.data_dir:
            return Path(self.data_dir).expanduser()
        folder, is_custom = map_editor_channel(self.code_channel or DEFAULT_CODE_CHANNEL)
        if is_custom:
            raise ConfigError("custom editor requires a data_dir override")
        return app_data_base() / folder / "User" / "globalStorage" / self.plugin_id

    @property
    def state_path(self) -> Path:
        """Directory that should contain state.vscdb, whether or not it exists."""
        if self.state_dir:
            return Path(self.state_dir).expanduser()
        return app_data_base() / self.editor_name / "User" / "globalStorage"

    @property
    def hooks_path(self) -> Path | None:
        if not self.hooks_dir:
            return None
        return Path(self.hooks_dir).expanduser()

    @property
    def export_path(self) -> Path:
        return Path(self.export_dir).expanduser() if self.export_dir else Path(".")

    @classmethod
    def load(cls, config_path: Path | None = None) -> "Config":
        """Load config from YAML, then apply RTM_* environment overrides.

        A missing file is not an error; defaults are used instead.
        Raises ConfigError if the file is not a mapping or a field has the wrong type.
        """
        config_path = config_path or default_config_path()
        data: dict = {}
        if config_path.exists():
            try:
                with open(config_path) as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML syntax in {config_path}: {e}") from e
            if not isinstance(data, dict):
                raise ConfigError(f"Configuration must be a YAML mapping: {config_path}")

        for key in data.keys():
            if key not in VALID_FIELDS:
                print(f"Warning: Unknown configuration field '{key}' in {config_path}", file=sys.stderr)

        errors = _type_errors(data)
        if errors:
            raise ConfigError(f"{config_path}: " + "; ".join(errors))

        config = cls()
        for key in VALID_FIELDS:
            if key in data and data[key] is not None:
                setattr(config, key, data[key])

        # Environment variables override file config
        for key in ("plugin_id", "code_channel", "data_dir", "state_dir", "hooks_dir", "export_dir"):
            env_value = os.getenv(f"RTM_{key.upper()}")
            if env_value:
                setattr(config, key, env_value)
        env_debug = os.getenv("RTM_DEBUG")
        if env_debug:
            config.debug = _env_bool(env_debug)
        env_timeout = os.getenv("RTM_LOCK_TIMEOUT_SECONDS")
        if env_timeout:
            try:
                config.lock_timeout_seconds = float(env_timeout)
            except ValueError as e:
                raise ConfigError(f"RTM_LOCK_TIMEOUT_SECONDS must be a number, got {env_timeout!r}") from e

        if not config.plugin_id:
            config.plugin_id = DEFAULT_PLUGIN_ID
        if not config.code_channel:
            config.code_channel = DEFAULT_CODE_CHANNEL
        return config

    @classmethod
    def validate(cls, config_path: Path) -> tuple[bool, list[str], list[str]]:
        """Validate a config file without raising.

        Returns:
            Tuple of (is_valid, list of error messages, list of warning messages)
        """
        errors: list[str] = []
        warnings: list[str] = []

        if not config_path.exists():
            warnings.append(f"Configuration file not found: {config_path} (defaults apply)")
            return True, errors, warnings

        try:
            with open(config_path) as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            errors.append(f"Invalid YAML syntax: {e}")
            return False, errors, warnings
        except OSError as e:
            errors.append(f"Error reading file: {e}")
            return False, errors, warnings

        if data is None:
            return True, errors, warnings

        if not isinstance(data, dict):
            errors.append("Configuration must be a YAML dictionary/object")
            return False, errors, warnings

        for key in data.keys():
            if key not in VALID_FIELDS:
                warnings.append(f"Unknown configuration field: '{key}'")

        errors.extend(_type_errors(data))

        channel = data.get("code_channel")
        if isinstance(channel, str) and map_editor_channel(channel)[1] and not data.get("data_dir"):
            errors.append("'code_channel: custom' requires 'data_dir'")

        return len(errors) == 0, errors, warnings


def _type_errors(data: dict) -> list[str]:
    errors = []
    for key in ("plugin_id", "code_channel", "data_dir", "state_dir", "hooks_dir", "export_dir"):
        if key in data and data[key] is not None and not isinstance(data[key], str):
            errors.append(f"'{key}' must be a string")
    if "debug" in data and not isinstance(data["debug"], bool):
        errors.append("'debug' must be a boolean (true/false)")
    if "lock_timeout_seconds" in data:
        value = data["lock_timeout_seconds"]
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            errors.append("'lock_timeout_seconds' must be a number")
        elif value < 0:
            errors.append("'lock_timeout_seconds' must be non-negative")
    return errors
