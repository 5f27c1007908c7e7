"""Shared fakes for task session, manager and dispatcher tests."""

from __future__ import annotations

import asyncio
import json
import os
import sys
from collections.abc import Iterator
from typing import Any
from unittest.mock import patch

import pytest

from taskhost.agent.launcher import LaunchSpec
from taskhost.agent.session import TaskCallbacks
from taskhost.errors import NoActiveProcessError


def _pty_available() -> bool:
    try:
        master, slave = os.openpty()
    except (AttributeError, OSError):
        return False
    os.close(master)
    os.close(slave)
    return True


posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX process model")
needs_pty = pytest.mark.skipif(not _pty_available(), reason="no pseudo-terminal support")


class FakeHandle:
    """Stand-in for a spawned agent process, driven by the test."""

    mode = "fake"

    def __init__(self, spec: LaunchSpec, on_data: Any, on_exit: Any, on_stderr: Any) -> None:
        self.spec = spec
        self.pid = 4242
        self.alive = True
        self.accepts_input = True
        # While set and not yet opened, writes wait like an agent not reading.
        self.write_gate: asyncio.Event | None = None
        self.writes: list[str] = []
        self.interrupts = 0
        self.killed = False
        self.detached = False
        self._on_data = on_data
        self._on_exit = on_exit
        self._on_stderr = on_stderr

    async def write(self, text: str) -> None:
        if self.write_gate is not None:
            await self.write_gate.wait()
        if not self.alive:
            msg = "No active process"
            raise NoActiveProcessError(msg)
        self.writes.append(text)

    def interrupt(self) -> None:
        self.interrupts += 1

    def kill(self) -> None:
        self.killed = True

    def detach(self) -> None:
        self.detached = True

    # -- test drivers ---------------------------------------------------

    def emit(self, *records: dict[str, Any] | str | bytes) -> None:
        """Deliver records (dicts become JSON lines) as process output."""
        for record in records:
            if isinstance(record, dict):
                data = (json.dumps(record) + "\n").encode()
            elif isinstance(record, str):
                data = record.encode()
            else:
                data = record
            if not self.detached:
                self._on_data(data)

    def stderr(self, text: str) -> None:
        if not self.detached and self._on_stderr is not None:
            self._on_stderr(text)

    def exit(self, code: int) -> None:
        self.alive = False
        if not self.detached:
            self._on_exit(code)


class CallbackRecorder:
    """Collects everything a task reports, in order."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []

    def callbacks(self) -> TaskCallbacks:
        return TaskCallbacks(
            on_started=lambda task_id: self.calls.append(("started", task_id)),
            on_message=lambda event: self.calls.append(("message", event)),
            on_progress=lambda progress: self.calls.append(("progress", progress)),
            on_permission_request=lambda req: self.calls.append(("permission", req)),
            on_complete=lambda result: self.calls.append(("complete", result)),
            on_error=lambda error: self.calls.append(("error", error)),
            on_response_error=lambda error: self.calls.append(("response_error", error)),
        )

    def of(self, kind: str) -> list[Any]:
        return [value for k, value in self.calls if k == kind]

    @property
    def kinds(self) -> list[str]:
        return [k for k, _ in self.calls]

    def terminal(self) -> list[tuple[str, Any]]:
        return [(k, v) for k, v in self.calls if k in ("complete", "error")]


@pytest.fixture
def spawned() -> Iterator[list[FakeHandle]]:
    """Replace process spawning with FakeHandle; yields the spawned handles."""
    handles: list[FakeHandle] = []

    async def _fake_spawn(
        spec: LaunchSpec,
        *,
        on_data: Any,
        on_exit: Any,
        on_stderr: Any = None,
    ) -> FakeHandle:
        handle = FakeHandle(spec, on_data, on_exit, on_stderr)
        handles.append(handle)
        return handle

    with patch("taskhost.agent.session.spawn_process", _fake_spawn):
        yield handles


@pytest.fixture
def recorder() -> CallbackRecorder:
    return CallbackRecorder()


STEP_START = {"type": "step_start", "part": {"sessionID": "ses_abc"}}
STOP = {"type": "step_finish", "part": {"reason": "stop"}}


def text(content: str) -> dict[str, Any]:
    return {"type": "text", "part": {"text": content}}


def ask_user(call_id: str | None = "call_1", status: str = "running") -> dict[str, Any]:
    part: dict[str, Any] = {
        "tool": "AskUserQuestion",
        "state": {
            "status": status,
            "input": {
                "questions": [
                    {
                        "question": "Which database?",
                        "header": "Storage",
                        "options": [{"label": "Postgres"}, {"label": "SQLite"}],
                        "multiSelect": False,
                    }
                ]
            },
        },
    }
    if call_id is not None:
        part["callID"] = call_id
    return {"type": "tool_use", "part": part}
