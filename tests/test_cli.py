"""Smoke tests for the taskhost CLI."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

from click.testing import CliRunner

from taskhost import __version__
from taskhost.cli import cli


def test_help() -> None:
    result = CliRunner().invoke(cli, ["--help"])
    assert result.exit_code == 0
    assert "serve" in result.output
    assert "check" in result.output


def test_version() -> None:
    result = CliRunner().invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert f"taskhost, version {__version__}" in result.output


def test_serve_flags() -> None:
    result = CliRunner().invoke(cli, ["serve", "--help"])
    assert result.exit_code == 0
    assert "--config" in result.output
    assert "--log-level" in result.output
    assert "--verbose" in result.output


def test_serve_missing_config_errors() -> None:
    runner = CliRunner()
    with runner.isolated_filesystem():
        result = runner.invoke(cli, ["serve", "--config", "missing.yaml"])
        assert result.exit_code == 1
        assert "Config file not found" in result.output


def test_serve_runs_server_with_settings() -> None:
    runner = CliRunner()
    with runner.isolated_filesystem():
        with open("taskhost.yaml", "w", encoding="utf-8") as fh:
            fh.write("max_concurrent_tasks: 4\n")
        with patch("taskhost.commands.serve._run_server", new=AsyncMock()) as run:
            result = runner.invoke(cli, ["serve", "-v"])
        assert result.exit_code == 0
        settings = run.await_args.args[0]
        assert settings.max_concurrent_tasks == 4


def test_check_reports_binary() -> None:
    runner = CliRunner()
    with runner.isolated_filesystem():
        with (
            patch(
                "taskhost.commands.check.resolve_agent_binary",
                return_value="/usr/bin/opencode",
            ),
            patch(
                "taskhost.commands.check.agent_version",
                new=AsyncMock(return_value="0.9.1"),
            ),
        ):
            result = runner.invoke(cli, ["check"])
    assert result.exit_code == 0
    assert "/usr/bin/opencode" in result.output
    assert "0.9.1" in result.output


def test_check_missing_binary() -> None:
    runner = CliRunner()
    with runner.isolated_filesystem():
        with patch("taskhost.commands.check.resolve_agent_binary", return_value=None):
            result = runner.invoke(cli, ["check"])
    assert result.exit_code == 1
    assert "Agent CLI not found: opencode" in result.output


def test_check_unknown_version() -> None:
    runner = CliRunner()
    with runner.isolated_filesystem():
        with (
            patch("taskhost.commands.check.resolve_agent_binary", return_value="/bin/oc"),
            patch("taskhost.commands.check.agent_version", new=AsyncMock(return_value=None)),
        ):
            result = runner.invoke(cli, ["check"])
    assert result.exit_code == 0
    assert "unknown" in result.output

