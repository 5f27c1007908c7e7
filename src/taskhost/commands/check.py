"""taskhost check — verify that the agent CLI is installed."""

from __future__ import annotations

import asyncio
from pathlib import Path

import click

from taskhost.agent.binary import agent_version, resolve_agent_binary
from taskhost.config.parser import ConfigError, load_settings


@click.command()
@click.option(
    "-c", "--config", "config_file", type=click.Path(), help="Settings file path."
)
def check(config_file: str | None) -> None:
    """Print the agent CLI path and version; exit 1 if it is missing."""
    try:
        settings = load_settings(Path(config_file) if config_file else None)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    path = resolve_agent_binary(settings.agent_binary)
    if path is None:
        click.echo(f"Agent CLI not found: {settings.agent_binary}", err=True)
        raise SystemExit(1)

    version = asyncio.run(agent_version(path))
    click.echo(f"Agent CLI: {path}")
    click.echo(f"Version:   {version or 'unknown'}")
