"""Tests for host settings models and the taskhost.yaml loader."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
import yaml
from pydantic import ValidationError

from taskhost.config import ConfigError, HostSettings, load_settings
from taskhost.constants import DEFAULT_MAX_BYTES

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_yaml(path: Path, data: dict[str, Any]) -> Path:
    """Write *data* as YAML and return the file path."""
    path.write_text(yaml.dump(data), encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove override variables; anything a .env file sets is undone too."""
    for key in (
        "TASKHOST_AGENT_BINARY",
        "TASKHOST_AGENT_NAME",
        "TASKHOST_MAX_CONCURRENT_TASKS",
    ):
        monkeypatch.setenv(key, "")
        monkeypatch.delenv(key)


# ===================================================================
# Model validation tests
# ===================================================================


class TestHostSettings:
    def test_defaults(self) -> None:
        settings = HostSettings()
        assert settings.agent_binary == "opencode"
        assert settings.agent_base_args == []
        assert settings.max_concurrent_tasks == 10
        assert settings.parser_max_bytes == DEFAULT_MAX_BYTES
        assert settings.use_pty is True
        assert (settings.pty_columns, settings.pty_rows) == (200, 30)
        assert settings.print_agent_logs is False
        assert settings.interrupt_followup_delay == 0.1

    def test_unknown_field_rejected(self) -> None:
        with pytest.raises(ValidationError, match="extra"):
            HostSettings.model_validate({"agent_bin": "x"})

    def test_blank_binary_rejected(self) -> None:
        with pytest.raises(ValidationError, match="must not be empty"):
            HostSettings(agent_binary="  ")

    def test_concurrency_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            HostSettings(max_concurrent_tasks=0)

    def test_parser_limit_floor(self) -> None:
        with pytest.raises(ValidationError):
            HostSettings(parser_max_bytes=10)


# ===================================================================
# Loader tests
# ===================================================================


class TestLoadSettings:
    def test_no_file_gives_defaults(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.chdir(tmp_path)
        assert load_settings() == HostSettings()

    def test_default_file_in_cwd(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        _write_yaml(tmp_path / "taskhost.yaml", {"agent_binary": "/opt/opencode/bin/opencode"})
        monkeypatch.chdir(tmp_path)
        assert load_settings().agent_binary == "/opt/opencode/bin/opencode"

    def test_explicit_path(self, tmp_path: Path) -> None:
        path = _write_yaml(
            tmp_path / "custom.yaml",
            {"max_concurrent_tasks": 3, "agent_base_args": ["--quiet"], "use_pty": False},
        )
        settings = load_settings(path)
        assert settings.max_concurrent_tasks == 3
        assert settings.agent_base_args == ["--quiet"]
        assert settings.use_pty is False

    def test_missing_explicit_path(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="Config file not found"):
            load_settings(tmp_path / "nope.yaml")

    def test_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "taskhost.yaml"
        path.write_text("", encoding="utf-8")
        assert load_settings(path) == HostSettings()

    def test_non_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "taskhost.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="Expected a YAML mapping"):
            load_settings(path)

    def test_invalid_yaml_reports_position(self, tmp_path: Path) -> None:
        path = tmp_path / "taskhost.yaml"
        path.write_text("agent_binary: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="Invalid YAML in taskhost.yaml"):
            load_settings(path)

    def test_unknown_setting_message(self, tmp_path: Path) -> None:
        path = _write_yaml(tmp_path / "taskhost.yaml", {"max_tasks": 4})
        with pytest.raises(ConfigError) as exc_info:
            load_settings(path)
        assert "max_tasks: Unknown setting" in str(exc_info.value)

    def test_invalid_value_message(self, tmp_path: Path) -> None:
        path = _write_yaml(tmp_path / "taskhost.yaml", {"use_pty": "sometimes"})
        with pytest.raises(ConfigError) as exc_info:
            load_settings(path)
        message = str(exc_info.value)
        assert message.startswith("Config validation failed:")
        assert "use_pty: Invalid value" in message


class TestEnvironmentOverrides:
    def test_env_overrides_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = _write_yaml(tmp_path / "taskhost.yaml", {"max_concurrent_tasks": 3})
        monkeypatch.setenv("TASKHOST_MAX_CONCURRENT_TASKS", "7")
        monkeypatch.setenv("TASKHOST_AGENT_NAME", "reviewer")
        settings = load_settings(path)
        assert settings.max_concurrent_tasks == 7
        assert settings.agent_name == "reviewer"

    def test_invalid_env_value(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("TASKHOST_MAX_CONCURRENT_TASKS", "many")
        with pytest.raises(ConfigError, match="max_concurrent_tasks"):
            load_settings()

    def test_dotenv_next_to_config(self, tmp_path: Path) -> None:
        path = _write_yaml(tmp_path / "taskhost.yaml", {})
        (tmp_path / ".env").write_text("TASKHOST_AGENT_BINARY=/srv/bin/opencode\n", encoding="utf-8")
        assert load_settings(path).agent_binary == "/srv/bin/opencode"
