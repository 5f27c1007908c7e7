"""Error taxonomy for the task host."""

from __future__ import annotations


class TaskHostError(Exception):
    """Base class for every error raised by the task host."""


class ProcessSpawnError(TaskHostError):
    """The agent binary could not be launched."""


class ParseError(TaskHostError):
    """A line of agent output could not be turned into a domain event.

    Always recovered inside the stream parser; never fatal to a task.
    """

    def __init__(self, message: str, line: str = "") -> None:
        super().__init__(message)
        self.line = line


class ProcessExitError(TaskHostError):
    """The agent process exited abnormally before reporting completion."""

    def __init__(self, exit_code: int, stderr_preview: str = "") -> None:
        if exit_code < 0:
            message = f"Agent CLI terminated by signal {-exit_code}"
        else:
            message = f"Agent CLI exited with code {exit_code}"
        if stderr_preview:
            message += f". Stderr:\n  {stderr_preview}"
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr_preview = stderr_preview


class DuplicateTaskError(TaskHostError):
    """A task with the same id is already running."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} is already running")
        self.task_id = task_id


class ConcurrencyLimitExceeded(TaskHostError):
    """The task registry is full."""

    def __init__(self, limit: int) -> None:
        super().__init__(f"Maximum concurrent tasks ({limit}) reached")
        self.limit = limit


class NoActiveProcessError(TaskHostError):
    """A write or signal was aimed at a task whose process is gone."""


class TaskNotFoundError(TaskHostError):
    """No registered task has the given id."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} not found or not active")
        self.task_id = task_id


class SessionDisposedError(TaskHostError):
    """A disposed task session cannot be started again."""
