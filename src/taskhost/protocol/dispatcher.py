"""Dispatcher — decodes inbound command lines and encodes outbound events.

This is the only component aware of the wire format.  Each inbound line
is one JSON command; each outbound line is one JSON event tagged with the
originating task id.  Nothing that goes wrong while handling a single line
escapes :meth:`Dispatcher.handle_line`.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

import click
from pydantic import ValidationError

from taskhost import __version__
from taskhost.agent.binary import agent_version, resolve_agent_binary
from taskhost.agent.helpers import generate_id
from taskhost.agent.session import TaskCallbacks
from taskhost.config.models import HostSettings
from taskhost.errors import (
    ConcurrencyLimitExceeded,
    DuplicateTaskError,
    NoActiveProcessError,
    ProcessSpawnError,
    TaskHostError,
    TaskNotFoundError,
)
from taskhost.events.models import DomainEvent, Text
from taskhost.manager import TaskManager
from taskhost.protocol.models import (
    InboundCommand,
    OutboundMessage,
    OutboundType,
    PermissionRequest,
    SendResponsePayload,
    TaskConfig,
    TaskProgress,
    TaskResult,
)

logger = logging.getLogger(__name__)

#: Error codes reported in ``task_error`` payloads for rejected starts.
_ERROR_CODES: dict[type[Exception], str] = {
    DuplicateTaskError: "duplicate_task",
    ConcurrencyLimitExceeded: "concurrency_limit",
    ProcessSpawnError: "spawn_failed",
}


def _default_writer(line: str) -> None:
    click.echo(line)


class Dispatcher:
    """Routes commands to a :class:`TaskManager` and reports its events."""

    def __init__(
        self,
        manager: TaskManager,
        settings: HostSettings | None = None,
        write: Callable[[str], None] = _default_writer,
    ) -> None:
        self._manager = manager
        self._settings = settings or HostSettings()
        self._write = write

    @property
    def manager(self) -> TaskManager:
        return self._manager

    def send(
        self,
        type_: OutboundType,
        payload: Any = None,
        task_id: str | None = None,
    ) -> None:
        """Write one outbound event line."""
        message = OutboundMessage(type=type_, task_id=task_id, payload=payload)
        self._write(message.to_line())

    def announce_ready(self) -> None:
        self.send("ready", {"version": __version__})

    # ------------------------------------------------------------------ #
    # Inbound
    # ------------------------------------------------------------------ #

    async def handle_line(self, line: str) -> None:
        """Decode and execute one inbound command line."""
        line = line.strip()
        if not line:
            return

        try:
            command = InboundCommand.model_validate_json(line)
        except ValidationError as exc:
            self._log("error", f"Invalid command: {_first_error(exc)}")
            return

        try:
            await self._dispatch(command)
        except TaskHostError as exc:
            self._log("error", f"{command.type} failed: {exc}", command.task_id)
        except Exception as exc:
            logger.debug("Unhandled error in %s", command.type, exc_info=True)
            self._log("error", f"{command.type} failed: {exc}", command.task_id)

    async def _dispatch(self, command: InboundCommand) -> None:
        match command.type:
            case "start_task":
                await self._start_task(command)
            case "cancel_task":
                task_id = self._require_task_id(command)
                if task_id and not self._manager.cancel_task(task_id):
                    self._log("warn", f"Task {task_id} not found", task_id)
            case "interrupt_task":
                task_id = self._require_task_id(command)
                if task_id and not self._manager.interrupt_task(task_id):
                    self._log("warn", f"Task {task_id} not found", task_id)
            case "send_response":
                self._send_response(command)
            case "ping":
                self.send("pong", {"timestamp": int(time.time() * 1000)})
            case "check_cli":
                await self._check_cli()
            case _:
                self._log("warn", f"Unknown command type: {command.type}")

    async def _start_task(self, command: InboundCommand) -> None:
        task_id = command.task_id or generate_id("task")
        try:
            config = TaskConfig.model_validate({**command.payload, "taskId": task_id})
        except ValidationError as exc:
            self._task_error(
                task_id,
                f"Invalid start_task payload: {_first_error(exc)}",
                "invalid_payload",
            )
            return

        try:
            await self._manager.start_task(config, self._callbacks_for(task_id))
        except (DuplicateTaskError, ConcurrencyLimitExceeded, ProcessSpawnError) as exc:
            self._task_error(task_id, str(exc), _ERROR_CODES.get(type(exc), "error"))

    def _send_response(self, command: InboundCommand) -> None:
        task_id = self._require_task_id(command)
        if not task_id:
            return
        try:
            payload = SendResponsePayload.model_validate(command.payload)
        except ValidationError as exc:
            msg = f"Invalid send_response payload: {_first_error(exc)}"
            self._log("error", msg, task_id)
            return
        try:
            # Delivery runs in the background; failures arrive as on_response_error.
            self._manager.send_response(task_id, payload.response)
        except TaskNotFoundError as exc:
            self._log("warn", str(exc), task_id)
        except NoActiveProcessError as exc:
            self._log("error", str(exc), task_id)

    async def _check_cli(self) -> None:
        path = resolve_agent_binary(self._settings.agent_binary)
        version = await agent_version(path) if path else None
        self.send(
            "cli_status",
            {"available": path is not None, "path": path, "version": version},
        )

    def _require_task_id(self, command: InboundCommand) -> str | None:
        if not command.task_id:
            self._log("error", f"{command.type} requires a taskId")
        return command.task_id

    # ------------------------------------------------------------------ #
    # Outbound
    # ------------------------------------------------------------------ #

    def _callbacks_for(self, task_id: str) -> TaskCallbacks:
        def on_started(_: str) -> None:
            self.send("task_started", {"taskId": task_id}, task_id)

        def on_message(event: DomainEvent) -> None:
            self.send("task_message", _message_payload(event), task_id)

        def on_progress(progress: TaskProgress) -> None:
            self.send("task_progress", progress.to_payload(), task_id)

        def on_permission_request(request: PermissionRequest) -> None:
            self.send("permission_request", request.to_payload(), task_id)

        def on_complete(result: TaskResult) -> None:
            self.send("task_complete", result.to_payload(), task_id)

        def on_error(error: Exception) -> None:
            self.send("task_error", {"error": str(error)}, task_id)

        def on_response_error(error: Exception) -> None:
            self._log("error", f"send_response failed: {error}", task_id)

        return TaskCallbacks(
            on_started=on_started,
            on_message=on_message,
            on_progress=on_progress,
            on_permission_request=on_permission_request,
            on_complete=on_complete,
            on_error=on_error,
            on_response_error=on_response_error,
        )

    def _task_error(self, task_id: str, error: str, code: str) -> None:
        self.send("task_error", {"error": error, "code": code}, task_id)

    def _log(self, level: str, message: str, task_id: str | None = None) -> None:
        self.send("log", {"level": level, "message": message}, task_id)


def _message_payload(event: DomainEvent) -> dict[str, Any]:
    """The agent's record as sent, with text replaced by its cleaned content."""
    if not event.raw:
        return event.model_dump(mode="json", exclude={"raw"})
    if not isinstance(event, Text):
        return event.raw
    part = event.raw.get("part")
    part = dict(part) if isinstance(part, dict) else {}
    part["text"] = event.content
    return {**event.raw, "part": part}


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    err = errors[0]
    loc = ".".join(str(part) for part in err["loc"])
    return f"{loc}: {err['msg']}" if loc else err["msg"]


class WireLogHandler(logging.Handler):
    """Forwards log records to the caller as ``log`` events."""

    def __init__(self, dispatcher: Dispatcher, level: int = logging.INFO) -> None:
        super().__init__(level)
        self._dispatcher = dispatcher

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = record.getMessage()
            if record.levelno >= logging.ERROR:
                level = "error"
            elif record.levelno >= logging.WARNING:
                level = "warn"
            else:
                level = "info"
            self._dispatcher.send("log", {"level": level, "message": message})
        except Exception:
            self.handleError(record)

