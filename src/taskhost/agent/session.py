"""TaskSession — one task, one agent process, one lifecycle.

A session owns exactly one :class:`~taskhost.agent.launcher.ProcessHandle`
and one :class:`~taskhost.agent.stream_parser.StreamParser`.  Parsed
domain events drive the lifecycle state machine::

    Starting → Connected → Running ⇄ ToolUse → Completing → Terminated

and are reported to the caller through a single :class:`TaskCallbacks`
bundle.  A terminal outcome (``on_complete`` or ``on_error``) is reported
at most once; nothing is reported after it.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from taskhost.agent.helpers import format_stderr_preview, generate_id
from taskhost.agent.launcher import LaunchSpec, ProcessHandle, spawn_process
from taskhost.agent.stream_parser import StreamParser
from taskhost.config.models import HostSettings
from taskhost.constants import ASK_USER_TOOL
from taskhost.errors import (
    DuplicateTaskError,
    NoActiveProcessError,
    ProcessExitError,
    SessionDisposedError,
)
from taskhost.events.models import (
    DomainEvent,
    Error,
    StepFinish,
    StepStart,
    Text,
    ToolCallStart,
    ToolResult,
    ToolUseState,
)
from taskhost.protocol.models import (
    PermissionRequest,
    ProgressStage,
    TaskConfig,
    TaskProgress,
    TaskResult,
)

logger = logging.getLogger(__name__)

#: Characters of agent stderr kept for exit error messages.
_STDERR_TAIL_CHARS = 4096


class LifecycleState(enum.Enum):
    STARTING = "starting"
    CONNECTED = "connected"
    RUNNING = "running"
    TOOL_USE = "tool_use"
    COMPLETING = "completing"
    TERMINATED = "terminated"


def _ignore(_: Any) -> None:
    return None


@dataclass
class TaskCallbacks:
    """Outbound channels for one task."""

    on_started: Callable[[str], None] = _ignore
    on_message: Callable[[DomainEvent], None] = _ignore
    on_progress: Callable[[TaskProgress], None] = _ignore
    on_permission_request: Callable[[PermissionRequest], None] = _ignore
    on_complete: Callable[[TaskResult], None] = _ignore
    on_error: Callable[[Exception], None] = _ignore
    on_response_error: Callable[[Exception], None] = _ignore


class TaskSession:
    """Drives one agent process from spawn to a single terminal outcome."""

    def __init__(
        self,
        config: TaskConfig,
        callbacks: TaskCallbacks,
        settings: HostSettings | None = None,
    ) -> None:
        self._config = config
        self._callbacks: TaskCallbacks | None = callbacks
        self._settings = settings or HostSettings()
        self._parser = StreamParser(
            self._handle_event,
            max_bytes=self._settings.parser_max_bytes,
        )
        self._handle: ProcessHandle | None = None
        self._state = LifecycleState.STARTING
        self._session_id = config.session_id
        self._completed = False
        self._interrupted = False
        self._disposed = False
        self._last_text: str | None = None
        self._asked_calls: set[str] = set()
        self._stderr_tail = ""
        self._writes: set[asyncio.Task[None]] = set()
        self._last_write: asyncio.Task[None] | None = None

    @property
    def task_id(self) -> str:
        return self._config.task_id

    @property
    def config(self) -> TaskConfig:
        return self._config

    @property
    def session_id(self) -> str | None:
        """External session id reported by the agent (or the one resumed)."""
        return self._session_id

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def completed(self) -> bool:
        return self._completed

    @property
    def is_running(self) -> bool:
        return (
            self._handle is not None
            and self._handle.alive
            and not self._completed
        )

    # ------------------------------------------------------------------ #
    # Control operations
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        """Spawn the agent process for this task.

        Raises:
            SessionDisposedError: If the session was already disposed.
            DuplicateTaskError: If a process is already attached.
            ProcessSpawnError: If the agent binary cannot be launched.
        """
        if self._disposed:
            msg = f"Task {self.task_id} has been disposed"
            raise SessionDisposedError(msg)
        if self._handle is not None:
            raise DuplicateTaskError(self.task_id)

        self._parser.reset()
        self._state = LifecycleState.STARTING
        self._completed = False
        self._interrupted = False
        self._last_text = None
        self._asked_calls.clear()
        self._stderr_tail = ""

        spec = LaunchSpec.for_task(self._settings.agent_binary, self._config, self._settings)
        handle = await spawn_process(
            spec,
            on_data=self._on_data,
            on_exit=self._on_exit,
            on_stderr=self._on_stderr,
        )
        if self._disposed or self._completed:
            # Cancelled or disposed while the spawn was in flight.
            handle.detach()
            handle.kill()
            return
        self._handle = handle
        logger.info("Task %s started (pid %d, %s)", self.task_id, handle.pid, handle.mode)
        if self._callbacks is not None:
            self._callbacks.on_started(self.task_id)
        self._progress("starting", "Starting task...")
        self._progress("loading", "Loading agent...")

    def interrupt(self) -> None:
        """Ask the agent to wrap up; a later clean exit counts as interrupted."""
        if self._handle is None or not self._handle.alive:
            return
        self._interrupted = True
        logger.info("Interrupting task %s", self.task_id)
        self._handle.interrupt()

    def cancel(self) -> None:
        """Kill the agent process; safe to call at any time."""
        self._cancel_writes()
        if self._handle is not None:
            self._handle.kill()
        if not self._completed and not self._disposed:
            logger.info("Task %s cancelled", self.task_id)
            self._complete(TaskResult(status="cancelled", session_id=self._session_id))

    def send_response(self, text: str) -> asyncio.Task[None]:
        """Queue a reply line for the agent's input and return at once.

        Replies are written in order by a background task, so an agent that
        is not reading never holds up the caller.  A write that fails later
        is reported through ``on_response_error``.  The returned task can be
        awaited to wait for delivery; it never raises.

        Raises:
            NoActiveProcessError: If the agent process has exited or cannot
                take input.
        """
        handle = self._handle
        if handle is None or not handle.alive:
            msg = f"Task {self.task_id} has no active process"
            raise NoActiveProcessError(msg)
        if not handle.accepts_input:
            msg = f"Task {self.task_id} cannot take replies ({handle.mode} mode)"
            raise NoActiveProcessError(msg)

        write = asyncio.create_task(
            self._write_response(handle, text + "\n", self._last_write)
        )
        self._last_write = write
        self._writes.add(write)
        write.add_done_callback(self._writes.discard)
        return write

    def dispose(self) -> None:
        """Kill the process if alive, detach listeners and clear parser state."""
        if self._disposed:
            return
        self._disposed = True
        self._state = LifecycleState.TERMINATED
        self._cancel_writes()
        if self._handle is not None:
            self._handle.detach()
            self._handle.kill()
        self._parser.reset()
        self._callbacks = None

    # ------------------------------------------------------------------ #
    # Process callbacks
    # ------------------------------------------------------------------ #

    def _on_data(self, data: bytes) -> None:
        if self._completed or self._disposed:
            return
        self._parser.feed(data)

    def _on_stderr(self, text: str) -> None:
        self._stderr_tail = (self._stderr_tail + text)[-_STDERR_TAIL_CHARS:]
        message = text.strip()
        if message and not self._completed:
            self._progress("loading", message)

    def _on_exit(self, code: int) -> None:
        if self._disposed:
            return
        self._parser.flush()
        logger.debug("Task %s agent exited with code %d", self.task_id, code)
        if self._completed:
            return
        if code == 0 and self._interrupted:
            self._complete(TaskResult(status="interrupted", session_id=self._session_id))
        elif code == 0:
            self._complete(
                TaskResult(
                    status="success",
                    session_id=self._session_id,
                    summary=self._last_text,
                )
            )
        else:
            self._fail(ProcessExitError(code, format_stderr_preview(self._stderr_tail)))

    # ------------------------------------------------------------------ #
    # Replies
    # ------------------------------------------------------------------ #

    async def _write_response(
        self,
        handle: ProcessHandle,
        text: str,
        previous: asyncio.Task[None] | None,
    ) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        try:
            await handle.write(text)
        except NoActiveProcessError as exc:
            logger.warning("Task %s: reply not delivered: %s", self.task_id, exc)
            if self._callbacks is not None and not self._completed:
                self._callbacks.on_response_error(exc)

    def _cancel_writes(self) -> None:
        for write in list(self._writes):
            write.cancel()
        self._last_write = None

    # ------------------------------------------------------------------ #
    # Event interpretation
    # ------------------------------------------------------------------ #

    def _handle_event(self, event: DomainEvent) -> None:
        if self._completed or self._disposed:
            return

        match event:
            case StepStart():
                if event.session_id and not self._session_id:
                    self._session_id = event.session_id
                self._state = LifecycleState.CONNECTED
                model = self._config.model_id
                self._progress(
                    "connecting",
                    f"Connecting to {model or 'AI'}...",
                    model_name=model,
                )
            case Text():
                if event.session_id and not self._session_id:
                    self._session_id = event.session_id
                self._enter_running()
                if event.content.strip():
                    self._last_text = event.content
                self._message(event)
            case ToolCallStart():
                self._tool_started(event, event.tool, event.input, event.call_id)
            case ToolUseState() if event.finished:
                self._message(event)
                self._enter_running()
            case ToolUseState():
                self._tool_started(event, event.tool, event.input, event.call_id)
            case ToolResult():
                self._message(event)
                self._enter_running()
            case StepFinish():
                self._step_finished(event.reason)
            case Error():
                self._complete(
                    TaskResult(
                        status="error",
                        session_id=self._session_id,
                        error=event.message,
                    )
                )

    def _tool_started(
        self,
        event: DomainEvent,
        tool: str,
        tool_input: Any,
        call_id: str | None,
    ) -> None:
        self._state = LifecycleState.TOOL_USE
        self._progress("tool-use", f"Using {tool}")
        if tool == ASK_USER_TOOL:
            self._ask_user(tool_input, call_id)
        else:
            self._message(event)

    def _enter_running(self) -> None:
        if self._state is not LifecycleState.RUNNING:
            self._state = LifecycleState.RUNNING
            self._progress("executing", "Working...")

    def _step_finished(self, reason: str) -> None:
        if reason == "error":
            self._complete(
                TaskResult(
                    status="error",
                    session_id=self._session_id,
                    error="Task failed",
                )
            )
        elif reason in ("stop", "end_turn"):
            self._state = LifecycleState.COMPLETING
            self._progress("completing", "Finishing up...")
            self._complete(
                TaskResult(
                    status="success",
                    session_id=self._session_id,
                    summary=self._last_text,
                )
            )
        # tool_use and unknown reasons: the agent keeps going.

    def _ask_user(self, tool_input: Any, call_id: str | None) -> None:
        if call_id is not None and call_id in self._asked_calls:
            return
        questions = tool_input.get("questions") if isinstance(tool_input, dict) else None
        if not isinstance(questions, list) or not questions:
            return
        first = questions[0]
        if not isinstance(first, dict) or not first.get("question"):
            return
        if call_id is not None:
            self._asked_calls.add(call_id)

        options = [
            str(option["label"])
            for option in first.get("options") or []
            if isinstance(option, dict) and option.get("label") is not None
        ]
        request = PermissionRequest(
            id=generate_id("req"),
            type="question",
            tool=ASK_USER_TOOL,
            question=str(first["question"]),
            header=first.get("header"),
            options=options or None,
            multi_select=first.get("multiSelect"),
        )
        if self._callbacks is not None:
            self._callbacks.on_permission_request(request)

    # ------------------------------------------------------------------ #
    # Outbound
    # ------------------------------------------------------------------ #

    def _message(self, event: DomainEvent) -> None:
        if self._callbacks is not None:
            self._callbacks.on_message(event)

    def _progress(
        self,
        stage: ProgressStage,
        message: str | None = None,
        model_name: str | None = None,
    ) -> None:
        if self._callbacks is None or self._completed:
            return
        self._callbacks.on_progress(
            TaskProgress(stage=stage, message=message, model_name=model_name)
        )

    def _complete(self, result: TaskResult) -> None:
        if self._completed:
            return
        self._completed = True
        self._state = LifecycleState.TERMINATED
        logger.info("Task %s completed: %s", self.task_id, result.status)
        if self._callbacks is not None:
            self._callbacks.on_complete(result)

    def _fail(self, error: Exception) -> None:
        if self._completed:
            return
        self._completed = True
        self._state = LifecycleState.TERMINATED
        logger.warning("Task %s failed: %s", self.task_id, error)
        if self._callbacks is not None:
            self._callbacks.on_error(error)
