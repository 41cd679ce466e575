"""
Configuration management for the self-updating supervisor.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. Manifest file (selfupdater.yml, --config path, or the "selfUpdater"
   section of package.json)
3. Environment variables (SELFUPDATER_* prefix, __ for nesting)
4. Command-line arguments (highest precedence)
"""

from __future__ import annotations

import argparse
import json
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator

DEFAULT_MANIFEST_NAME = "selfupdater.yml"
PACKAGE_MANIFEST_NAME = "package.json"
PACKAGE_MANIFEST_SECTION = "selfUpdater"

VALID_STRATEGIES = {"auto", "supervisor", "touch", "spawn_exit", "spawn_observe"}

# Strategy names used by older manifests
STRATEGY_ALIASES = {
    "pm2": "supervisor",
    "systemd": "supervisor",
    "nodemon": "touch",
    "spawn": "spawn_observe",
}

# Strategy aliases that also name the supervisor backend
SUPERVISOR_BACKENDS = {"pm2", "systemd"}

# =============================================================================
# Updater Configuration
# =============================================================================


class UpdaterConfig(BaseModel):
    """Update loop, restart strategy and health check settings.

    Attributes:
        repo_dir: Git working copy to watch (top level of the repository).
        remote: Git remote to pull from.
        watch_branch: Branch to pull.
        check_interval_ms: Poll interval in milliseconds.
        main_file: Application entry point, relative to repo_dir.
        supervisor_name: Logical application name known to pm2/systemd.
        supervisor_backend: Which external supervisor to drive.
        health_file: Heartbeat file path, relative to repo_dir.
        strategy: Restart strategy or "auto" for environment detection.
        touch_file: File touched by the touch strategy (defaults to main_file).
        spawn_command: Command line for the spawn strategies.
        spawn_log_dir: Directory receiving spawned process output.
        grace_period_ms: Wait between restart and health verdict.
        health_timeout_ms: Maximum heartbeat age considered healthy.
        command_timeout_seconds: Timeout applied to every external command.
        stop_timeout_seconds: Wait after SIGTERM before SIGKILL.
        self_paths: Repository paths belonging to the updater itself.
        state_file: Persisted verdict/rejection state, relative to repo_dir.
    """

    repo_dir: str = Field(
        default=".",
        description="Git working copy to watch",
    )
    remote: str = Field(
        default="origin",
        description="Git remote to pull from",
    )
    watch_branch: str = Field(
        default="main",
        validation_alias=AliasChoices("watch_branch", "watchBranch"),
        description="Branch to pull",
    )
    check_interval_ms: int = Field(
        default=10000,
        validation_alias=AliasChoices("check_interval_ms", "checkInterval"),
        description="Poll interval in milliseconds",
    )
    main_file: str = Field(
        default="app.py",
        validation_alias=AliasChoices("main_file", "mainFile"),
        description="Application entry point",
    )
    supervisor_name: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "supervisor_name", "supervisorName", "pm2Name"
        ),
        description="Application name known to the external supervisor",
    )
    supervisor_backend: str = Field(
        default="pm2",
        description="External supervisor: 'pm2' or 'systemd'",
    )
    health_file: str = Field(
        default=".alive",
        validation_alias=AliasChoices("health_file", "healthFile"),
        description="Heartbeat file written by the application",
    )
    strategy: str = Field(
        default="auto",
        validation_alias=AliasChoices("strategy", "type"),
        description="Restart strategy: auto, supervisor, touch, spawn_exit, spawn_observe",
    )
    touch_file: str | None = Field(
        default=None,
        description="File touched by the touch strategy (defaults to main_file)",
    )
    spawn_command: list[str] | None = Field(
        default=None,
        description="Command line used by the spawn strategies",
    )
    spawn_log_dir: str | None = Field(
        default=None,
        description="Directory for spawned process stdout/stderr (inherit if unset)",
    )
    grace_period_ms: int = Field(
        default=20000,
        description="Wait between restart and health verdict in milliseconds",
    )
    health_timeout_ms: int = Field(
        default=20000,
        description="Maximum heartbeat age in milliseconds",
    )
    command_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout applied to every external command",
    )
    stop_timeout_seconds: float = Field(
        default=10.0,
        description="Wait after SIGTERM before SIGKILL when replacing a child",
    )
    self_paths: list[str] = Field(
        default_factory=list,
        description="Repository paths (files or directories) of the updater itself",
    )
    state_file: str = Field(
        default=".selfupdater-state.json",
        description="Persisted pending-verdict and rejected-revision state",
    )

    @model_validator(mode="before")
    @classmethod
    def backend_from_strategy_alias(cls, data: Any) -> Any:
        """A "pm2" or "systemd" strategy also selects that supervisor backend."""
        if not isinstance(data, dict) or "supervisor_backend" in data:
            return data
        for key in ("strategy", "type"):
            value = data.get(key)
            if value is None:
                continue
            if isinstance(value, str) and value.lower() in SUPERVISOR_BACKENDS:
                return {**data, "supervisor_backend": value.lower()}
            break
        return data

    @field_validator(
        "check_interval_ms",
        "grace_period_ms",
        "health_timeout_ms",
    )
    @classmethod
    def validate_positive_ms(cls, v: int) -> int:
        """Reject zero or negative durations."""
        if v <= 0:
            raise ValueError(f"Duration must be positive, got {v}")
        return v

    @field_validator("command_timeout_seconds", "stop_timeout_seconds")
    @classmethod
    def validate_positive_seconds(cls, v: float) -> float:
        """Reject zero or negative timeouts."""
        if v <= 0:
            raise ValueError(f"Timeout must be positive, got {v}")
        return v

    @field_validator("strategy")
    @classmethod
    def validate_strategy(cls, v: str) -> str:
        """Validate and normalize the restart strategy."""
        v_lower = v.lower().replace("-", "_")
        v_lower = STRATEGY_ALIASES.get(v_lower, v_lower)
        if v_lower not in VALID_STRATEGIES:
            raise ValueError(
                f"Invalid strategy: {v}. Must be one of: {', '.join(sorted(VALID_STRATEGIES))}"
            )
        return v_lower

    @field_validator("supervisor_backend")
    @classmethod
    def validate_supervisor_backend(cls, v: str) -> str:
        """Validate the supervisor backend."""
        v_lower = v.lower()
        if v_lower not in SUPERVISOR_BACKENDS:
            raise ValueError(
                f"Invalid supervisor backend: {v}. Must be one of: pm2, systemd"
            )
        return v_lower

    @field_validator(
        "remote",
        "watch_branch",
        "main_file",
        "supervisor_name",
        "health_file",
        "touch_file",
        "spawn_log_dir",
        "state_file",
        mode="before",
    )
    @classmethod
    def coerce_string(cls, v: Any) -> Any:
        """Environment parsing may turn numeric values such as 2024 into ints."""
        if v is None:
            return v
        return str(v)

    @field_validator("self_paths", "spawn_command", mode="before")
    @classmethod
    def coerce_string_list(cls, v: Any) -> Any:
        """Accept a single string where a list is expected."""
        if isinstance(v, str):
            return [v]
        if isinstance(v, list):
            return [str(item) for item in v]
        return v

    def resolve_path(self, value: str) -> Path:
        """Resolve a path setting relative to repo_dir."""
        path = Path(value)
        if path.is_absolute():
            return path
        return Path(self.repo_dir) / path


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        log_to_stdout: Whether to log to stdout.
        json_format: Whether to emit JSON lines.
        log_file: Optional log file path.
        debug_mode: Force DEBUG level.
    """

    level: str = Field(
        default="info",
        description="Log level: debug, info, warning, error",
    )
    log_to_stdout: bool = Field(
        default=True,
        description="Whether to log to stdout",
    )
    json_format: bool = Field(
        default=True,
        description="Emit JSON lines instead of plain text",
    )
    log_file: str | None = Field(
        default=None,
        description="Optional log file path",
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable extra diagnostic logging",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        updater: Update loop and restart settings.
        logging: Logging configuration.
    """

    updater: UpdaterConfig = Field(
        default_factory=UpdaterConfig,
        description="Update loop and restart settings",
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML manifest.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _load_package_manifest(manifest_path: Path) -> dict[str, Any]:
    """
    Load the "selfUpdater" section of a package.json-style manifest.

    The section holds flat camelCase keys for the updater, e.g.
    ``{"watchBranch": "main", "checkInterval": 10000, "type": "pm2"}``.
    The manifest's top-level "name" is used as the default supervisor name.

    Raises:
        FileNotFoundError: If the manifest doesn't exist.
        json.JSONDecodeError: If the manifest is not valid JSON.
    """
    if not manifest_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {manifest_path}")

    with open(manifest_path) as f:
        manifest = json.load(f)

    section = dict(manifest.get(PACKAGE_MANIFEST_SECTION) or {})
    if "name" in manifest and not {
        "supervisor_name",
        "supervisorName",
        "pm2Name",
    } & section.keys():
        section["supervisor_name"] = manifest["name"]

    return {"updater": section}


def _load_manifest(config_path: Path) -> dict[str, Any]:
    """Load a manifest, choosing the reader by file extension."""
    if config_path.suffix == ".json":
        return _load_package_manifest(config_path)
    return _load_yaml_config(config_path)


def _find_default_manifest(search_dir: Path) -> Path | None:
    """Return selfupdater.yml, or a package.json with a selfUpdater section."""
    yaml_path = search_dir / DEFAULT_MANIFEST_NAME
    if yaml_path.exists():
        return yaml_path

    package_path = search_dir / PACKAGE_MANIFEST_NAME
    if package_path.exists():
        try:
            with open(package_path) as f:
                if PACKAGE_MANIFEST_SECTION in json.load(f):
                    return package_path
        except (OSError, ValueError):
            return None

    return None


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to appropriate Python type.

    Args:
        value: String value from environment variable.

    Returns:
        Parsed value (bool, int, float, list, or string).
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    if "," in value:
        return [_parse_env_value(item.strip()) for item in value.split(",")]

    return value


def _load_env_config(prefix: str = "SELFUPDATER_") -> dict[str, Any]:
    """
    Load configuration from environment variables.

    - Prefix: SELFUPDATER_ (configurable)
    - Nested keys: Double underscore (__) separator
    - Example: SELFUPDATER_UPDATER__WATCH_BRANCH=release

    Args:
        prefix: Environment variable prefix.

    Returns:
        Dictionary with configuration values.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = _parse_env_value(value)

    return result


def _parse_cli_args(args: list[str] | None = None) -> dict[str, Any]:
    """
    Parse command-line arguments.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Dictionary with parsed arguments.
    """
    parser = argparse.ArgumentParser(
        prog="selfupdater",
        description="Self-updating process supervisor",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--config",
        "-c",
        type=str,
        help="Path to manifest (YAML, or package.json with a selfUpdater section)",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode",
    )

    parsed = parser.parse_args(args)

    result: dict[str, Any] = {}

    if parsed.config:
        result["_config_path"] = parsed.config

    if parsed.log_level:
        result["logging"] = {"level": parsed.log_level}

    if parsed.debug:
        result.setdefault("logging", {})
        result["logging"]["debug_mode"] = True
        result["logging"]["level"] = "debug"

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = "SELFUPDATER_",
    cli_args: list[str] | None = None,
    search_dir: Path | str | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to manifest. If None, uses the CLI --config
            argument or searches search_dir for a default manifest.
        env_prefix: Prefix for environment variables.
        cli_args: Command-line arguments. If None, uses sys.argv.
        search_dir: Directory searched for a default manifest
            (current directory if None).

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If specified config file doesn't exist.
        ValidationError: If configuration is invalid.

    Example:
        >>> config = load_config(cli_args=[])
        >>> config.updater.watch_branch
        'main'
    """
    config_dict: dict[str, Any] = {}

    cli_config = _parse_cli_args(cli_args)

    if config_path is None:
        if "_config_path" in cli_config:
            config_path = Path(cli_config.pop("_config_path"))
        else:
            config_path = _find_default_manifest(
                Path(search_dir) if search_dir is not None else Path.cwd()
            )
    else:
        cli_config.pop("_config_path", None)
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_manifest(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))
    config_dict = _deep_merge(config_dict, cli_config)

    return AppConfig(**config_dict)
