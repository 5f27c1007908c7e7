"""Root CLI group and version flag."""

import signal

import click

# stdout is a pipe to the front end; a closed pipe must surface as an
# error, not kill the process.
if hasattr(signal, "SIGPIPE"):
    signal.signal(signal.SIGPIPE, signal.SIG_IGN)

from taskhost import __version__
from taskhost.commands.check import check
from taskhost.commands.serve import serve


@click.group()
@click.version_option(version=__version__, prog_name="taskhost")
def cli() -> None:
    """Taskhost — run agent CLI tasks for a desktop front end."""


cli.add_command(serve)
cli.add_command(check)
