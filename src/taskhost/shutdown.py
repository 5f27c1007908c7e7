"""ShutdownManager — orchestrates the graceful shutdown of ``taskhost serve``."""

from __future__ import annotations

import asyncio
import logging
import time

import click

from taskhost.agent.launcher import wait_for_exits
from taskhost.manager import TaskManager

logger = logging.getLogger(__name__)


def _format_duration(seconds: float) -> str:
    """Format a duration as '1m 22s' or '34.2s'."""
    if seconds >= 60:
        minutes = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{minutes}m {secs:02d}s"
    return f"{seconds:.1f}s"


class ShutdownManager:
    """Orchestrates the shutdown sequence.

    Steps:
        1. SIGNAL  -- set the shutdown flag so no more commands are read
        2. KILL    -- dispose every task (kills the agent processes)
        3. REAP    -- wait for the killed processes to exit, with timeout
        4. CLOSE   -- print a summary to stderr
    """

    REAP_TIMEOUT = 3.0  # seconds

    def __init__(
        self,
        manager: TaskManager,
        shutdown_event: asyncio.Event,
        started_at: float | None = None,
    ) -> None:
        self._manager = manager
        self._shutdown_event = shutdown_event
        self._start_time = started_at if started_at is not None else time.monotonic()

    async def execute(self, reason: str) -> bool:
        """Run the full shutdown sequence.

        Returns True if every agent process was reaped in time.
        """
        self._signal()
        killed = self._kill()
        reaped = await self._reap()
        self._close(reason, killed, reaped)
        return reaped

    # ------------------------------------------------------------------ #
    # Step 1: SIGNAL
    # ------------------------------------------------------------------ #

    def _signal(self) -> None:
        self._shutdown_event.set()

    # ------------------------------------------------------------------ #
    # Step 2: KILL
    # ------------------------------------------------------------------ #

    def _kill(self) -> int:
        """Dispose every live task. Returns how many were running."""
        count = self._manager.active_task_count
        if count:
            logger.info("Stopping %d running task(s)", count)
        self._manager.dispose()
        return count

    # ------------------------------------------------------------------ #
    # Step 3: REAP
    # ------------------------------------------------------------------ #

    async def _reap(self) -> bool:
        return await wait_for_exits(self.REAP_TIMEOUT)

    # ------------------------------------------------------------------ #
    # Step 4: CLOSE
    # ------------------------------------------------------------------ #

    def _close(self, reason: str, killed: int, reaped: bool) -> None:
        elapsed = time.monotonic() - self._start_time
        summary_parts = [
            f"Task host stopped ({reason})",
            _format_duration(elapsed),
            f"{killed} task(s) stopped",
        ]
        if not reaped:
            summary_parts.append("some agent processes did not exit")
        click.echo(" | ".join(summary_parts), err=True)
