"""TaskManager — registry of live task sessions."""

from __future__ import annotations

import asyncio
import logging

from taskhost.agent.session import TaskCallbacks, TaskSession
from taskhost.config.models import HostSettings
from taskhost.errors import (
    ConcurrencyLimitExceeded,
    DuplicateTaskError,
    TaskNotFoundError,
)
from taskhost.protocol.models import TaskConfig, TaskResult

logger = logging.getLogger(__name__)


class TaskManager:
    """Runs many task sessions side by side.

    Each session is registered under its task id before its process is
    spawned, and unregistered and disposed exactly once when it reaches a
    terminal outcome, is cancelled, or fails to start.
    """

    def __init__(self, settings: HostSettings | None = None) -> None:
        self._settings = settings or HostSettings()
        self._tasks: dict[str, TaskSession] = {}

    @property
    def max_concurrent_tasks(self) -> int:
        return self._settings.max_concurrent_tasks

    @property
    def active_task_count(self) -> int:
        return len(self._tasks)

    @property
    def active_task_ids(self) -> list[str]:
        return list(self._tasks)

    def has_active_task(self, task_id: str) -> bool:
        return task_id in self._tasks

    def get_session_id(self, task_id: str) -> str | None:
        """Return the agent session id for *task_id*, if known."""
        session = self._tasks.get(task_id)
        return session.session_id if session is not None else None

    # ------------------------------------------------------------------ #
    # Commands
    # ------------------------------------------------------------------ #

    async def start_task(self, config: TaskConfig, callbacks: TaskCallbacks) -> TaskSession:
        """Register and start a session for *config*.

        Raises:
            DuplicateTaskError: If ``config.task_id`` is already registered.
            ConcurrencyLimitExceeded: If the registry is full.
            ProcessSpawnError: If the agent process cannot be launched.
        """
        task_id = config.task_id
        if task_id in self._tasks:
            raise DuplicateTaskError(task_id)
        if len(self._tasks) >= self.max_concurrent_tasks:
            raise ConcurrencyLimitExceeded(self.max_concurrent_tasks)

        session = TaskSession(config, self._wrap_callbacks(task_id, callbacks), self._settings)
        self._tasks[task_id] = session
        logger.debug(
            "Registered task %s (%d/%d)",
            task_id,
            len(self._tasks),
            self.max_concurrent_tasks,
        )

        try:
            await session.start()
        except Exception:
            self._cleanup(task_id, session)
            raise
        return session

    def cancel_task(self, task_id: str) -> bool:
        """Cancel *task_id*. Returns False if no such task is registered."""
        session = self._tasks.get(task_id)
        if session is None:
            return False
        session.cancel()
        # cancel() normally completes the session, which cleans it up.
        self._cleanup(task_id, session)
        return True

    def interrupt_task(self, task_id: str) -> bool:
        """Interrupt *task_id*. Returns False if no such task is registered."""
        session = self._tasks.get(task_id)
        if session is None:
            return False
        session.interrupt()
        return True

    def send_response(self, task_id: str, text: str) -> asyncio.Task[None]:
        """Queue *text* for the agent running *task_id*; returns the write task.

        Raises:
            TaskNotFoundError: If no such task is registered.
            NoActiveProcessError: If the task's process has exited.
        """
        session = self._tasks.get(task_id)
        if session is None:
            raise TaskNotFoundError(task_id)
        return session.send_response(text)

    def dispose(self) -> None:
        """Dispose every registered session (used at shutdown)."""
        for task_id, session in list(self._tasks.items()):
            self._cleanup(task_id, session)

    # ------------------------------------------------------------------ #
    # Internal
    # ------------------------------------------------------------------ #

    def _wrap_callbacks(self, task_id: str, callbacks: TaskCallbacks) -> TaskCallbacks:
        def on_complete(result: TaskResult) -> None:
            try:
                callbacks.on_complete(result)
            finally:
                self._cleanup(task_id)

        def on_error(error: Exception) -> None:
            try:
                callbacks.on_error(error)
            finally:
                self._cleanup(task_id)

        return TaskCallbacks(
            on_started=callbacks.on_started,
            on_message=callbacks.on_message,
            on_progress=callbacks.on_progress,
            on_permission_request=callbacks.on_permission_request,
            on_complete=on_complete,
            on_error=on_error,
            on_response_error=callbacks.on_response_error,
        )

    def _cleanup(self, task_id: str, session: TaskSession | None = None) -> None:
        """Unregister and dispose *task_id*; later calls are no-ops."""
        registered = self._tasks.get(task_id)
        if registered is None or (session is not None and registered is not session):
            return
        del self._tasks[task_id]
        registered.dispose()
        logger.debug("Cleaned up task %s (%d active)", task_id, len(self._tasks))
