"""
Tests for the configuration module.

This test module validates:
- Model defaults and validation
- Manifest loading (YAML and package.json "selfUpdater" section)
- Environment variable overrides
- CLI argument overrides
- Configuration precedence (defaults < manifest < env vars < CLI args)
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any
from unittest import mock

import pytest
import yaml
from pydantic import ValidationError

from selfupdater.config import (
    AppConfig,
    LoggingConfig,
    UpdaterConfig,
    _deep_merge,
    _find_default_manifest,
    _load_env_config,
    _load_package_manifest,
    _load_yaml_config,
    _parse_cli_args,
    _parse_env_value,
    load_config,
)

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def temp_config_file(tmp_path: Path) -> Path:
    """Path for a temporary YAML manifest."""
    return tmp_path / "selfupdater.yml"


@pytest.fixture
def sample_yaml_config() -> dict[str, Any]:
    """Sample YAML configuration for testing."""
    return {
        "updater": {
            "watch_branch": "release",
            "check_interval_ms": 5000,
            "strategy": "touch",
            "touch_file": "app.py",
            "self_paths": ["tools/updater"],
        },
        "logging": {
            "level": "debug",
            "json_format": False,
        },
    }


def write_yaml(path: Path, data: dict[str, Any]) -> Path:
    with open(path, "w") as f:
        yaml.dump(data, f)
    return path


# =============================================================================
# Model Tests
# =============================================================================


class TestDefaults:
    """Tests for configuration defaults."""

    def test_updater_defaults(self) -> None:
        config = UpdaterConfig()

        assert config.repo_dir == "."
        assert config.remote == "origin"
        assert config.watch_branch == "main"
        assert config.check_interval_ms == 10000
        assert config.main_file == "app.py"
        assert config.health_file == ".alive"
        assert config.strategy == "auto"
        assert config.grace_period_ms == 20000
        assert config.health_timeout_ms == 20000
        assert config.supervisor_name is None
        assert config.self_paths == []

    def test_app_config_defaults(self) -> None:
        config = AppConfig()

        assert isinstance(config.updater, UpdaterConfig)
        assert config.logging.level == "info"
        assert config.logging.json_format is True


class TestValidation:
    """Tests for Pydantic validation."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("touch", "touch"),
            ("SPAWN-EXIT", "spawn_exit"),
            ("pm2", "supervisor"),
            ("systemd", "supervisor"),
            ("nodemon", "touch"),
            ("spawn", "spawn_observe"),
        ],
    )
    def test_strategy_normalization(self, value: str, expected: str) -> None:
        assert UpdaterConfig(strategy=value).strategy == expected

    def test_strategy_invalid(self) -> None:
        with pytest.raises(ValidationError):
            UpdaterConfig(strategy="docker")

    def test_supervisor_backend_invalid(self) -> None:
        with pytest.raises(ValidationError):
            UpdaterConfig(supervisor_backend="runit")

    @pytest.mark.parametrize(
        "field", ["check_interval_ms", "grace_period_ms", "health_timeout_ms"]
    )
    def test_durations_must_be_positive(self, field: str) -> None:
        with pytest.raises(ValidationError):
            UpdaterConfig(**{field: 0})

    def test_timeouts_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            UpdaterConfig(command_timeout_seconds=-1)

    def test_camel_case_aliases(self) -> None:
        """Test the keys used by package.json manifests."""
        config = UpdaterConfig(
            watchBranch="prod",
            checkInterval=15000,
            mainFile="server.py",
            pm2Name="web",
            healthFile="run/.alive",
            type="pm2",
        )

        assert config.watch_branch == "prod"
        assert config.check_interval_ms == 15000
        assert config.main_file == "server.py"
        assert config.supervisor_name == "web"
        assert config.health_file == "run/.alive"
        assert config.strategy == "supervisor"

    def test_single_string_becomes_list(self) -> None:
        config = UpdaterConfig(self_paths="updater.py", spawn_command="./run.sh")

        assert config.self_paths == ["updater.py"]
        assert config.spawn_command == ["./run.sh"]

    def test_numeric_supervisor_name_is_string(self) -> None:
        assert UpdaterConfig(supervisor_name=3).supervisor_name == "3"

    @pytest.mark.parametrize(
        ("value", "backend"),
        [("systemd", "systemd"), ("SystemD", "systemd"), ("pm2", "pm2")],
    )
    def test_supervisor_alias_selects_backend(self, value: str, backend: str) -> None:
        config = UpdaterConfig(strategy=value, supervisor_name="svc")

        assert config.strategy == "supervisor"
        assert config.supervisor_backend == backend

    def test_manifest_type_systemd_selects_backend(self) -> None:
        config = UpdaterConfig.model_validate({"type": "systemd", "pm2Name": "svc"})
        assert config.supervisor_backend == "systemd"

    def test_explicit_backend_wins_over_alias(self) -> None:
        config = UpdaterConfig(strategy="systemd", supervisor_backend="pm2")
        assert config.supervisor_backend == "pm2"

    def test_non_alias_strategy_keeps_default_backend(self) -> None:
        config = UpdaterConfig(strategy="touch", type="systemd")
        assert config.supervisor_backend == "pm2"

    @pytest.mark.parametrize(
        "field",
        ["remote", "watch_branch", "main_file", "health_file", "touch_file", "state_file"],
    )
    def test_numeric_string_fields_are_coerced(self, field: str) -> None:
        config = UpdaterConfig(**{field: 2024})
        assert getattr(config, field) == "2024"

    def test_resolve_path(self, tmp_path: Path) -> None:
        config = UpdaterConfig(repo_dir=str(tmp_path))

        assert config.resolve_path(".alive") == tmp_path / ".alive"
        assert config.resolve_path("/var/run/app.alive") == Path("/var/run/app.alive")

    def test_log_level_validation(self) -> None:
        assert LoggingConfig(level="WARN").level == "warning"
        assert LoggingConfig(level="Debug").level == "debug"
        with pytest.raises(ValidationError):
            LoggingConfig(level="verbose")


# =============================================================================
# Manifest Loading Tests
# =============================================================================


class TestManifestLoading:
    """Tests for manifest loading."""

    def test_load_yaml_config_success(
        self, temp_config_file: Path, sample_yaml_config: dict[str, Any]
    ) -> None:
        write_yaml(temp_config_file, sample_yaml_config)
        assert _load_yaml_config(temp_config_file) == sample_yaml_config

    def test_load_yaml_config_file_not_found(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            _load_yaml_config(tmp_path / "missing.yml")

    def test_load_yaml_config_empty_file(self, temp_config_file: Path) -> None:
        temp_config_file.write_text("")
        assert _load_yaml_config(temp_config_file) == {}

    def test_load_package_manifest(self, tmp_path: Path) -> None:
        """Test reading the selfUpdater section of package.json."""
        manifest = tmp_path / "package.json"
        manifest.write_text(
            json.dumps(
                {
                    "name": "my-app",
                    "selfUpdater": {
                        "type": "pm2",
                        "watchBranch": "main",
                        "checkInterval": 10000,
                    },
                }
            )
        )

        result = _load_package_manifest(manifest)

        assert result == {
            "updater": {
                "type": "pm2",
                "watchBranch": "main",
                "checkInterval": 10000,
                "supervisor_name": "my-app",
            }
        }

    def test_package_manifest_explicit_name_wins(self, tmp_path: Path) -> None:
        manifest = tmp_path / "package.json"
        manifest.write_text(
            json.dumps({"name": "my-app", "selfUpdater": {"pm2Name": "web"}})
        )

        result = _load_package_manifest(manifest)

        assert result["updater"] == {"pm2Name": "web"}

    def test_find_default_manifest_prefers_yaml(self, tmp_path: Path) -> None:
        (tmp_path / "selfupdater.yml").write_text("updater: {}\n")
        (tmp_path / "package.json").write_text('{"selfUpdater": {}}')

        assert _find_default_manifest(tmp_path) == tmp_path / "selfupdater.yml"

    def test_find_default_manifest_package_json(self, tmp_path: Path) -> None:
        (tmp_path / "package.json").write_text('{"selfUpdater": {}}')
        assert _find_default_manifest(tmp_path) == tmp_path / "package.json"

    def test_package_json_without_section_is_ignored(self, tmp_path: Path) -> None:
        (tmp_path / "package.json").write_text('{"name": "unrelated"}')
        assert _find_default_manifest(tmp_path) is None

    def test_load_config_with_yaml_file(
        self, temp_config_file: Path, sample_yaml_config: dict[str, Any]
    ) -> None:
        write_yaml(temp_config_file, sample_yaml_config)

        config = load_config(config_path=temp_config_file, cli_args=[])

        assert config.updater.watch_branch == "release"
        assert config.updater.check_interval_ms == 5000
        assert config.updater.strategy == "touch"
        assert config.updater.self_paths == ["tools/updater"]
        assert config.logging.level == "debug"
        assert config.logging.json_format is False

    def test_load_config_discovers_package_json(self, tmp_path: Path) -> None:
        (tmp_path / "package.json").write_text(
            json.dumps(
                {
                    "name": "my-app",
                    "selfUpdater": {"type": "nodemon", "mainFile": "server.py"},
                }
            )
        )

        config = load_config(cli_args=[], search_dir=tmp_path)

        assert config.updater.strategy == "touch"
        assert config.updater.main_file == "server.py"
        assert config.updater.supervisor_name == "my-app"

    def test_load_config_without_manifest(self, tmp_path: Path) -> None:
        config = load_config(cli_args=[], search_dir=tmp_path)
        assert config.updater == UpdaterConfig()


# =============================================================================
# Environment Variable Tests
# =============================================================================


class TestEnvironmentVariables:
    """Tests for environment variable parsing."""

    def test_parse_env_value_boolean(self) -> None:
        assert _parse_env_value("true") is True
        assert _parse_env_value("YES") is True
        assert _parse_env_value("off") is False

    def test_parse_env_value_numbers(self) -> None:
        """Test that 0/1 stay integers."""
        assert _parse_env_value("1") == 1
        assert _parse_env_value("0") == 0
        assert _parse_env_value("2.5") == 2.5

    def test_parse_env_value_list(self) -> None:
        assert _parse_env_value("a.py,lib") == ["a.py", "lib"]

    def test_parse_env_value_string(self) -> None:
        assert _parse_env_value("release") == "release"

    def test_load_env_config_nested(self) -> None:
        env_vars = {
            "SELFUPDATER_UPDATER__WATCH_BRANCH": "release",
            "SELFUPDATER_UPDATER__CHECK_INTERVAL_MS": "2000",
            "SELFUPDATER_LOGGING__LEVEL": "error",
        }
        with mock.patch.dict(os.environ, env_vars, clear=False):
            result = _load_env_config()

        assert result["updater"]["watch_branch"] == "release"
        assert result["updater"]["check_interval_ms"] == 2000
        assert result["logging"]["level"] == "error"

    def test_load_config_with_env_vars(self, tmp_path: Path) -> None:
        env_vars = {
            "SELFUPDATER_UPDATER__STRATEGY": "spawn-exit",
            "SELFUPDATER_UPDATER__SELF_PATHS": "updater.py,tools",
        }
        with mock.patch.dict(os.environ, env_vars, clear=False):
            config = load_config(cli_args=[], search_dir=tmp_path)

        assert config.updater.strategy == "spawn_exit"
        assert config.updater.self_paths == ["updater.py", "tools"]

    @pytest.mark.parametrize(("raw", "expected"), [("2024", "2024"), ("1.0", "1.0")])
    def test_numeric_branch_from_env(self, tmp_path: Path, raw: str, expected: str) -> None:
        """Test that a numeric-looking branch name survives env parsing."""
        env_vars = {"SELFUPDATER_UPDATER__WATCH_BRANCH": raw}
        with mock.patch.dict(os.environ, env_vars, clear=False):
            config = load_config(cli_args=[], search_dir=tmp_path)

        assert config.updater.watch_branch == expected

    def test_systemd_strategy_from_env(self, tmp_path: Path) -> None:
        env_vars = {
            "SELFUPDATER_UPDATER__STRATEGY": "systemd",
            "SELFUPDATER_UPDATER__SUPERVISOR_NAME": "web.service",
        }
        with mock.patch.dict(os.environ, env_vars, clear=False):
            config = load_config(cli_args=[], search_dir=tmp_path)

        assert config.updater.strategy == "supervisor"
        assert config.updater.supervisor_backend == "systemd"


# =============================================================================
# CLI Tests
# =============================================================================


class TestCLIArguments:
    """Tests for CLI argument parsing."""

    def test_parse_cli_args_config_path(self) -> None:
        result = _parse_cli_args(["--config", "/etc/selfupdater.yml"])
        assert result["_config_path"] == "/etc/selfupdater.yml"

    def test_parse_cli_args_log_level(self) -> None:
        result = _parse_cli_args(["--log-level", "warning"])
        assert result["logging"]["level"] == "warning"

    def test_parse_cli_args_debug(self) -> None:
        result = _parse_cli_args(["--debug"])
        assert result["logging"]["debug_mode"] is True
        assert result["logging"]["level"] == "debug"

    def test_parse_cli_args_empty(self) -> None:
        assert _parse_cli_args([]) == {}

    def test_load_config_with_cli_config_path(
        self, temp_config_file: Path, sample_yaml_config: dict[str, Any]
    ) -> None:
        write_yaml(temp_config_file, sample_yaml_config)

        config = load_config(cli_args=["-c", str(temp_config_file)])

        assert config.updater.watch_branch == "release"


# =============================================================================
# Precedence Tests
# =============================================================================


class TestPrecedence:
    """Tests for configuration precedence."""

    def test_deep_merge(self) -> None:
        base = {"updater": {"watch_branch": "main", "remote": "origin"}}
        override = {"updater": {"watch_branch": "release"}}

        assert _deep_merge(base, override) == {
            "updater": {"watch_branch": "release", "remote": "origin"}
        }
        assert base["updater"]["watch_branch"] == "main"

    def test_env_overrides_manifest(self, temp_config_file: Path) -> None:
        write_yaml(temp_config_file, {"updater": {"watch_branch": "release"}})
        env_vars = {"SELFUPDATER_UPDATER__WATCH_BRANCH": "hotfix"}

        with mock.patch.dict(os.environ, env_vars, clear=False):
            config = load_config(config_path=temp_config_file, cli_args=[])

        assert config.updater.watch_branch == "hotfix"

    def test_cli_overrides_env(self, temp_config_file: Path) -> None:
        write_yaml(temp_config_file, {"logging": {"level": "info"}})
        env_vars = {"SELFUPDATER_LOGGING__LEVEL": "error"}

        with mock.patch.dict(os.environ, env_vars, clear=False):
            config = load_config(
                config_path=temp_config_file, cli_args=["--log-level", "debug"]
            )

        assert config.logging.level == "debug"
