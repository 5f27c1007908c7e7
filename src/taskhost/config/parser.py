"""Load, validate, and resolve taskhost.yaml settings."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from taskhost.config.models import HostSettings

DEFAULT_CONFIG_NAME = "taskhost.yaml"

#: Environment variables that override file settings, by field name.
ENV_OVERRIDES = {
    "TASKHOST_AGENT_BINARY": "agent_binary",
    "TASKHOST_AGENT_NAME": "agent_name",
    "TASKHOST_MAX_CONCURRENT_TASKS": "max_concurrent_tasks",
}


class ConfigError(Exception):
    """User-facing configuration error."""


def load_settings(path: Path | None = None) -> HostSettings:
    """Load and validate host settings.

    Args:
        path: Explicit settings file path. If None, uses taskhost.yaml
              in the current directory when present, defaults otherwise.

    Returns:
        A validated HostSettings instance.

    Raises:
        ConfigError: On a missing explicit file, bad YAML, or validation failure.
    """
    config_path = _resolve_path(path)
    raw: dict[str, Any] = {}
    if config_path is not None:
        raw = _read_yaml(config_path)
        _load_env(config_path.parent)
    else:
        _load_env(Path.cwd())
    _apply_env_overrides(raw)
    return _validate(raw)


def _resolve_path(path: Path | None) -> Path | None:
    """Pick the settings file: the explicit one, or taskhost.yaml in cwd."""
    if path is None:
        candidate = Path.cwd() / DEFAULT_CONFIG_NAME
        return candidate if candidate.is_file() else None

    explicit = Path(path)
    if not explicit.is_file():
        msg = f"Config file not found: {explicit}"
        raise ConfigError(msg)
    return explicit


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with path.open(encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except OSError as exc:
        msg = f"Cannot read {path}: {exc.strerror or exc}"
        raise ConfigError(msg) from exc
    except yaml.MarkedYAMLError as exc:
        where = ""
        if exc.problem_mark is not None:
            where = f" at line {exc.problem_mark.line + 1}"
        msg = f"Invalid YAML in {path.name}{where}: {exc.problem}"
        raise ConfigError(msg) from exc
    except yaml.YAMLError as exc:
        msg = f"Invalid YAML in {path.name}: {exc}"
        raise ConfigError(msg) from exc

    if data is None:
        return {}
    if isinstance(data, dict):
        return data
    msg = f"Expected a YAML mapping in {path.name}, not a {type(data).__name__}"
    raise ConfigError(msg)


def _load_env(directory: Path) -> None:
    # Existing environment variables win over the .env file.
    dotenv_file = directory / ".env"
    if dotenv_file.is_file():
        load_dotenv(dotenv_file, override=False)


def _apply_env_overrides(raw: dict[str, Any]) -> None:
    for env_key, field in ENV_OVERRIDES.items():
        value = os.environ.get(env_key)
        if value:
            raw[field] = value


def _describe(error: Any) -> str:
    field = ".".join(str(part) for part in error["loc"]) or "settings"
    kind = error["type"]
    if kind == "extra_forbidden":
        return f"  {field}: Unknown setting"
    text = error["msg"]
    if text.lower().startswith("input should be"):
        text = f"Invalid value ({text[0].lower()}{text[1:]})"
    return f"  {field}: {text}"


def _validate(raw: dict[str, Any]) -> HostSettings:
    try:
        return HostSettings.model_validate(raw)
    except ValidationError as exc:
        lines = "\n".join(_describe(err) for err in exc.errors())
        msg = f"Config validation failed:\n{lines}"
        raise ConfigError(msg) from exc
