"""Process launcher — spawns the agent CLI on a pseudo-terminal or pipes.

The agent CLI changes its behaviour when it does not see a terminal, so
each task's process is attached to its own PTY.  When a PTY cannot be
allocated (no ``pty`` support on the platform, descriptor exhaustion) the
launcher falls back to plain stdin/stdout/stderr pipes.

Either way the caller gets a :class:`ProcessHandle` exposing the same
small surface: ``write``, ``interrupt`` (best-effort graceful stop),
``kill`` (hard stop) and data/exit callbacks delivered on the event loop.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import os
import re
import signal
import subprocess
import sys
import tempfile
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from taskhost.config.models import HostSettings
from taskhost.constants import INTERRUPT_CHAR
from taskhost.errors import NoActiveProcessError, ProcessSpawnError
from taskhost.protocol.models import TaskConfig

logger = logging.getLogger(__name__)

#: Bytes requested per read from the agent's output.
_READ_SIZE = 65536

#: Extra keystroke some platforms need after Ctrl+C (batch-job prompt).
_INTERRUPT_FOLLOWUP = "Y\n" if sys.platform == "win32" else None

#: Credential keys mapped onto the environment variables the agent reads.
PROVIDER_ENV_KEYS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "google": "GOOGLE_GENERATIVE_AI_API_KEY",
    "xai": "XAI_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "litellm": "LITELLM_API_KEY",
}

#: Sub-keys of the ``bedrock`` credential and their environment variables.
_BEDROCK_ENV_KEYS = {
    "accessKeyId": "AWS_ACCESS_KEY_ID",
    "secretAccessKey": "AWS_SECRET_ACCESS_KEY",
    "region": "AWS_REGION",
}

_ENV_NAME_RE = re.compile(r"^[A-Z][A-Z0-9_]*$")

# Output handles whose processes are still being reaped.
_background_tasks: set[asyncio.Task[None]] = set()

DataCallback = Callable[[bytes], None]
ExitCallback = Callable[[int], None]
StderrCallback = Callable[[str], None]


# ------------------------------------------------------------------ #
# Argument and environment construction
# ------------------------------------------------------------------ #


def build_agent_args(config: TaskConfig, settings: HostSettings) -> list[str]:
    """Build the agent CLI arguments for *config* (binary excluded)."""
    args = [*settings.agent_base_args, "run", config.prompt, "--format", "json"]
    if config.model_id:
        args.extend(["--model", config.model_id])
    if config.session_id:
        args.extend(["--session", config.session_id])
    if settings.agent_name:
        args.extend(["--agent", settings.agent_name])
    if settings.print_agent_logs:
        args.extend(["--print-logs", "--log-level", "DEBUG"])
    return args


def build_agent_environment(
    credentials: Mapping[str, Any],
    settings: HostSettings,
    base_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Build the child environment: inherited vars plus mapped credentials."""
    env = dict(os.environ if base_env is None else base_env)

    for key, value in credentials.items():
        if not value:
            continue
        if key in PROVIDER_ENV_KEYS and isinstance(value, str):
            env[PROVIDER_ENV_KEYS[key]] = value
        elif key == "bedrock" and isinstance(value, Mapping):
            for sub_key, env_key in _BEDROCK_ENV_KEYS.items():
                sub_value = value.get(sub_key)
                if isinstance(sub_value, str) and sub_value:
                    env[env_key] = sub_value
        elif _ENV_NAME_RE.match(key) and isinstance(value, str):
            env[key] = value
        else:
            logger.debug("Ignoring unsupported credential entry %r", key)

    if settings.agent_config_path:
        env["OPENCODE_CONFIG"] = settings.agent_config_path
    if settings.agent_config_dir:
        env["OPENCODE_CONFIG_DIR"] = settings.agent_config_dir
    return env


@dataclass
class LaunchSpec:
    """Everything needed to start one agent process."""

    command: str
    args: list[str] = field(default_factory=list)
    cwd: str | None = None
    env: dict[str, str] | None = None
    use_pty: bool = True
    columns: int = 200
    rows: int = 30
    interrupt_followup_delay: float = 0.1

    @classmethod
    def for_task(
        cls,
        command: str,
        config: TaskConfig,
        settings: HostSettings,
    ) -> LaunchSpec:
        """Assemble the spec for *config* using the host *settings*."""
        cwd = (
            config.working_directory
            or settings.default_working_directory
            or tempfile.gettempdir()
        )
        env = build_agent_environment(config.credentials, settings)
        if settings.use_pty:
            env.setdefault("TERM", "xterm-256color")
        return cls(
            command=command,
            args=build_agent_args(config, settings),
            cwd=cwd,
            env=env,
            use_pty=settings.use_pty,
            columns=settings.pty_columns,
            rows=settings.pty_rows,
            interrupt_followup_delay=settings.interrupt_followup_delay,
        )


# ------------------------------------------------------------------ #
# Process handles
# ------------------------------------------------------------------ #


class ProcessHandle:
    """Exclusive handle on one spawned agent process.

    Output is delivered through ``on_data`` in arrival order, and
    ``on_exit`` fires exactly once after all output has been delivered.
    ``detach()`` drops both callbacks; the process is still reaped.
    Only handles with ``accepts_input`` can be written to.
    """

    mode = "process"
    accepts_input = False

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        on_data: DataCallback,
        on_exit: ExitCallback,
        interrupt_followup_delay: float = 0.1,
    ) -> None:
        self._proc = proc
        self._on_data: DataCallback | None = on_data
        self._on_exit: ExitCallback | None = on_exit
        self._followup_delay = interrupt_followup_delay
        self._exit_code: int | None = None
        self._exited = asyncio.Event()

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def alive(self) -> bool:
        """True until the process has exited and its output is drained."""
        return self._exit_code is None

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    async def write(self, text: str) -> None:
        """Write *text* to the process's input.

        May wait while the process is not reading; callers that must not
        stall run it as a task.
        """
        msg = f"Agent process {self.pid} does not accept input ({self.mode} mode)"
        raise NoActiveProcessError(msg)

    def interrupt(self) -> None:
        """Ask the process to stop gracefully (best effort)."""
        raise NotImplementedError

    def kill(self) -> None:
        """Terminate the process and its process group immediately."""
        if self._proc.returncode is not None:
            return
        if hasattr(os, "killpg"):
            with contextlib.suppress(ProcessLookupError, PermissionError):
                os.killpg(self._proc.pid, signal.SIGKILL)
                return
        with contextlib.suppress(ProcessLookupError):
            self._proc.kill()

    def detach(self) -> None:
        """Stop delivering callbacks."""
        self._on_data = None
        self._on_exit = None

    async def wait(self) -> int:
        """Wait until the process has exited and its output is drained."""
        await self._exited.wait()
        assert self._exit_code is not None
        return self._exit_code

    # ------------------------------------------------------------------ #
    # Internal
    # ------------------------------------------------------------------ #

    def _deliver(self, data: bytes) -> None:
        if data and self._on_data is not None:
            self._on_data(data)

    def _finish(self, code: int) -> None:
        self._exit_code = code
        self._exited.set()
        callback = self._on_exit
        self.detach()
        if callback is not None:
            callback(code)


class PtyProcessHandle(ProcessHandle):
    """Process attached to a pseudo-terminal; we own the master side."""

    mode = "pty"
    accepts_input = True

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        master_fd: int,
        on_data: DataCallback,
        on_exit: ExitCallback,
        interrupt_followup_delay: float = 0.1,
    ) -> None:
        super().__init__(proc, on_data, on_exit, interrupt_followup_delay)
        self._master_fd: int | None = master_fd
        self._loop = asyncio.get_running_loop()
        os.set_blocking(master_fd, False)
        self._loop.add_reader(master_fd, self._on_readable)
        _track(self._watch())

    async def write(self, text: str) -> None:
        data = text.encode("utf-8")
        while data:
            fd = self._writable_fd()
            try:
                written = os.write(fd, data)
            except BlockingIOError:
                await asyncio.sleep(0.01)
                continue
            except OSError as exc:
                msg = f"Cannot write to agent process: {exc}"
                raise NoActiveProcessError(msg) from exc
            data = data[written:]

    def interrupt(self) -> None:
        self._write_now(INTERRUPT_CHAR.encode())
        if _INTERRUPT_FOLLOWUP is not None:
            self._loop.call_later(self._followup_delay, self._send_followup)

    def _send_followup(self) -> None:
        if not self.alive or _INTERRUPT_FOLLOWUP is None:
            return
        with contextlib.suppress(NoActiveProcessError):
            self._write_now(_INTERRUPT_FOLLOWUP.encode())

    def _write_now(self, data: bytes) -> None:
        fd = self._writable_fd()
        try:
            os.write(fd, data)
        except OSError as exc:
            msg = f"Cannot write to agent process: {exc}"
            raise NoActiveProcessError(msg) from exc

    def _writable_fd(self) -> int:
        if not self.alive or self._master_fd is None:
            msg = "No active process"
            raise NoActiveProcessError(msg)
        return self._master_fd

    def _on_readable(self) -> None:
        if self._master_fd is None:
            return
        try:
            data = os.read(self._master_fd, _READ_SIZE)
        except BlockingIOError:
            return
        except OSError:
            # EIO: every slave descriptor is closed.
            self._stop_reading()
            return
        if not data:
            self._stop_reading()
            return
        self._deliver(data)

    def _stop_reading(self) -> None:
        if self._master_fd is not None:
            self._loop.remove_reader(self._master_fd)

    def _drain(self) -> None:
        """Deliver output still queued in the terminal after the exit."""
        while self._master_fd is not None:
            try:
                data = os.read(self._master_fd, _READ_SIZE)
            except OSError:
                break
            if not data:
                break
            self._deliver(data)

    async def _watch(self) -> None:
        code = await self._proc.wait()
        self._drain()
        self._stop_reading()
        if self._master_fd is not None:
            with contextlib.suppress(OSError):
                os.close(self._master_fd)
            self._master_fd = None
        self._finish(code)


class PipeProcessHandle(ProcessHandle):
    """Process attached to plain pipes (PTY fallback).

    The agent's stdin is at EOF from the start: without a terminal the
    agent reads piped input until EOF before doing any work.  Replies can
    therefore only be sent to PTY-attached agents.
    """

    mode = "pipe"

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        on_data: DataCallback,
        on_exit: ExitCallback,
        on_stderr: StderrCallback | None = None,
        interrupt_followup_delay: float = 0.1,
    ) -> None:
        super().__init__(proc, on_data, on_exit, interrupt_followup_delay)
        self._on_stderr = on_stderr
        self._stderr_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        _track(self._watch())

    def interrupt(self) -> None:
        if not self.alive:
            msg = "No active process"
            raise NoActiveProcessError(msg)
        try:
            if sys.platform == "win32":
                # The child runs in its own process group (CREATE_NEW_PROCESS_GROUP).
                self._proc.send_signal(signal.CTRL_BREAK_EVENT)
            else:
                os.killpg(self._proc.pid, signal.SIGINT)
        except ProcessLookupError as exc:
            msg = "No active process"
            raise NoActiveProcessError(msg) from exc
        except PermissionError:
            self._proc.send_signal(signal.SIGINT)

    def detach(self) -> None:
        super().detach()
        self._on_stderr = None

    def _deliver_stderr(self, data: bytes) -> None:
        text = self._stderr_decoder.decode(data)
        if text and self._on_stderr is not None:
            self._on_stderr(text)

    async def _pump(
        self,
        stream: asyncio.StreamReader | None,
        deliver: DataCallback,
    ) -> None:
        if stream is None:
            return
        try:
            while chunk := await stream.read(_READ_SIZE):
                deliver(chunk)
        except OSError as exc:
            logger.warning("pid %d: error reading agent output: %s", self.pid, exc)

    async def _watch(self) -> None:
        await asyncio.gather(
            self._pump(self._proc.stdout, self._deliver),
            self._pump(self._proc.stderr, self._deliver_stderr),
        )
        code = await self._proc.wait()
        self._finish(code)


# ------------------------------------------------------------------ #
# Spawning
# ------------------------------------------------------------------ #


async def spawn_process(
    spec: LaunchSpec,
    *,
    on_data: DataCallback,
    on_exit: ExitCallback,
    on_stderr: StderrCallback | None = None,
) -> ProcessHandle:
    """Start the process described by *spec*.

    Tries a pseudo-terminal first (when ``spec.use_pty``), then pipes.

    Raises:
        ProcessSpawnError: If the executable is missing or cannot be run.
    """
    if spec.use_pty:
        fds = _open_pty(spec.columns, spec.rows)
        if fds is not None:
            master_fd, slave_fd = fds
            try:
                proc = await asyncio.create_subprocess_exec(
                    spec.command,
                    *spec.args,
                    stdin=slave_fd,
                    stdout=slave_fd,
                    stderr=slave_fd,
                    cwd=spec.cwd,
                    env=spec.env,
                    start_new_session=True,
                    preexec_fn=_claim_controlling_tty,
                )
            except OSError as exc:
                os.close(master_fd)
                raise _spawn_error(spec.command, exc) from exc
            finally:
                os.close(slave_fd)
            logger.debug("Spawned %s on a PTY (pid %d)", spec.command, proc.pid)
            return PtyProcessHandle(
                proc,
                master_fd,
                on_data,
                on_exit,
                interrupt_followup_delay=spec.interrupt_followup_delay,
            )
        logger.warning("PTY unavailable for %s, falling back to pipes", spec.command)

    if sys.platform == "win32":
        group: dict[str, Any] = {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    else:
        group = {"start_new_session": True}
    try:
        proc = await asyncio.create_subprocess_exec(
            spec.command,
            *spec.args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=spec.cwd,
            env=spec.env,
            **group,
        )
    except OSError as exc:
        raise _spawn_error(spec.command, exc) from exc
    logger.debug("Spawned %s on pipes (pid %d)", spec.command, proc.pid)
    return PipeProcessHandle(
        proc,
        on_data,
        on_exit,
        on_stderr=on_stderr,
        interrupt_followup_delay=spec.interrupt_followup_delay,
    )


async def wait_for_exits(timeout: float) -> bool:
    """Wait for every spawned process to be reaped.

    Returns True if all exited within *timeout* seconds.
    """
    loop = asyncio.get_running_loop()
    pending = [t for t in _background_tasks if t.get_loop() is loop]
    if not pending:
        return True
    _, still_running = await asyncio.wait(pending, timeout=timeout)
    if still_running:
        logger.warning(
            "%d agent process(es) still running after %.1fs",
            len(still_running),
            timeout,
        )
        return False
    return True


def _track(coro: Any) -> None:
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


def _spawn_error(command: str, exc: OSError) -> ProcessSpawnError:
    if isinstance(exc, FileNotFoundError):
        msg = (
            f"Agent CLI not found: {command}. "
            "Make sure it is installed and on your PATH."
        )
    elif isinstance(exc, PermissionError):
        msg = f"Agent CLI is not executable: {command}"
    else:
        msg = f"Failed to spawn agent CLI {command}: {exc}"
    return ProcessSpawnError(msg)


def _open_pty(columns: int, rows: int) -> tuple[int, int] | None:
    """Allocate a PTY sized *columns* x *rows*, or None if unsupported."""
    if sys.platform == "win32":
        return None
    try:
        import fcntl
        import pty
        import struct
        import termios

        master_fd, slave_fd = pty.openpty()
    except (ImportError, OSError) as exc:
        logger.warning("Pseudo-terminal allocation failed: %s", exc)
        return None

    with contextlib.suppress(OSError):
        fcntl.ioctl(
            slave_fd,
            termios.TIOCSWINSZ,
            struct.pack("HHHH", rows, columns, 0, 0),
        )
    return master_fd, slave_fd


def _claim_controlling_tty() -> None:
    """Make the PTY on stdin the controlling terminal of the new session.

    Runs in the child between fork and exec, so Ctrl+C written to the
    master side reaches the agent as SIGINT.
    """
    import fcntl
    import termios

    with contextlib.suppress(OSError):
        fcntl.ioctl(0, termios.TIOCSCTTY, 0)
