"""taskhost serve — run the task host on stdin/stdout."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from pathlib import Path

import click

from taskhost.config.models import HostSettings
from taskhost.config.parser import ConfigError, load_settings
from taskhost.manager import TaskManager
from taskhost.protocol.dispatcher import Dispatcher, WireLogHandler
from taskhost.shutdown import ShutdownManager

logger = logging.getLogger(__name__)

#: Longest inbound command line accepted (prompts can be large).
_MAX_COMMAND_BYTES = 16 * 1024 * 1024

_LOG_LEVELS = ["debug", "info", "warning", "error"]


@click.command()
@click.option(
    "-c", "--config", "config_file", type=click.Path(), help="Settings file path."
)
@click.option(
    "--log-level",
    type=click.Choice(_LOG_LEVELS, case_sensitive=False),
    default="info",
    show_default=True,
    help="Log level for stderr and forwarded log events.",
)
@click.option("-v", "--verbose", is_flag=True, help="Shortcut for --log-level debug.")
def serve(config_file: str | None, log_level: str, verbose: bool) -> None:
    """Read commands from stdin and stream task events to stdout."""
    try:
        settings = load_settings(Path(config_file) if config_file else None)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    level = logging.DEBUG if verbose else getattr(logging, log_level.upper())
    _configure_logging(level)

    asyncio.run(_run_server(settings))


def _configure_logging(level: int) -> None:
    """Send log records to stderr; stdout carries the protocol."""
    logging.basicConfig(
        level=level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ------------------------------------------------------------------ #
# Server runner
# ------------------------------------------------------------------ #


async def _run_server(settings: HostSettings) -> None:
    """Wire up the dispatcher and process commands until EOF or a signal."""
    manager = TaskManager(settings)
    dispatcher = Dispatcher(manager, settings)

    package_logger = logging.getLogger("taskhost")
    wire_handler = WireLogHandler(dispatcher)
    package_logger.addHandler(wire_handler)

    shutdown_event = asyncio.Event()
    reason = "eof"
    loop = asyncio.get_running_loop()

    def _signal_shutdown(sig_name: str) -> None:
        nonlocal reason
        logger.info("Received %s, shutting down", sig_name)
        reason = sig_name
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, _signal_shutdown, sig.name)

    try:
        reader = await _open_stdin()
        dispatcher.announce_ready()
        await command_loop(dispatcher, reader, shutdown_event)
    finally:
        await ShutdownManager(manager, shutdown_event).execute(reason)
        package_logger.removeHandler(wire_handler)


async def _open_stdin() -> asyncio.StreamReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=_MAX_COMMAND_BYTES)
    await loop.connect_read_pipe(
        lambda: asyncio.StreamReaderProtocol(reader),
        sys.stdin,
    )
    return reader


async def command_loop(
    dispatcher: Dispatcher,
    reader: asyncio.StreamReader,
    shutdown_event: asyncio.Event,
) -> None:
    """Feed each line from *reader* to *dispatcher* until EOF or shutdown."""
    stop = asyncio.create_task(shutdown_event.wait())
    try:
        while not shutdown_event.is_set():
            read = asyncio.create_task(reader.readline())
            done, _ = await asyncio.wait(
                {read, stop},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if read not in done:
                read.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await read
                break

            try:
                line = read.result()
            except ValueError:
                logger.error("Command exceeds %d bytes, ignored", _MAX_COMMAND_BYTES)
                continue
            if not line:
                break

            await dispatcher.handle_line(line.decode("utf-8", errors="replace"))
    finally:
        stop.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await stop
