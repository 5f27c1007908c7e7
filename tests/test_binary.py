"""Tests for agent binary resolution and version probing."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

from taskhost.agent.binary import agent_version, resolve_agent_binary
from taskhost.agent.helpers import format_stderr_preview, generate_id

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="shell scripts")


def _script(tmp_path: Path, body: str, name: str = "fake-agent") -> Path:
    path = tmp_path / name
    path.write_text(f"#!/bin/sh\n{body}\n")
    path.chmod(0o755)
    return path


class TestResolveAgentBinary:
    @posix_only
    def test_explicit_executable_path(self, tmp_path: Path) -> None:
        script = _script(tmp_path, "exit 0")
        assert resolve_agent_binary(str(script)) == str(script)

    def test_explicit_missing_path(self, tmp_path: Path) -> None:
        assert resolve_agent_binary(str(tmp_path / "absent")) is None

    @posix_only
    def test_bare_name_uses_path(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        _script(tmp_path, "exit 0", name="opencode-test")
        monkeypatch.setenv("PATH", str(tmp_path))
        assert resolve_agent_binary("opencode-test") == str(tmp_path / "opencode-test")

    def test_bare_name_not_found(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PATH", "")
        assert resolve_agent_binary("definitely-not-installed") is None


@posix_only
class TestAgentVersion:
    async def test_extracts_semver(self, tmp_path: Path) -> None:
        script = _script(tmp_path, "echo 'opencode v0.15.3 (build abc)'")
        assert await agent_version(str(script)) == "0.15.3"

    async def test_no_version_in_output(self, tmp_path: Path) -> None:
        script = _script(tmp_path, "echo 'development build'")
        assert await agent_version(str(script)) is None

    async def test_unrunnable_binary(self, tmp_path: Path) -> None:
        assert await agent_version(str(tmp_path / "absent")) is None

    async def test_timeout(self, tmp_path: Path) -> None:
        script = _script(tmp_path, "exec sleep 10")
        assert await agent_version(str(script), timeout=0.2) is None


class TestHelpers:
    def test_generate_id_shape(self) -> None:
        prefix, millis, suffix = generate_id("task").split("_")
        assert prefix == "task"
        assert millis.isdigit()
        assert len(suffix) == 9

    def test_generate_id_unique(self) -> None:
        assert len({generate_id("req") for _ in range(100)}) == 100

    def test_stderr_preview_keeps_last_lines(self) -> None:
        text = "\n".join(f"line {i}" for i in range(10)) + "\n\n"
        assert format_stderr_preview(text, max_lines=2) == "line 8\n  line 9"
