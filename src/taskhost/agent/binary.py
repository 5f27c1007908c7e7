"""Locate the agent CLI executable and query its version."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil

logger = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"\d+\.\d+\.\d+")

#: Seconds allowed for ``<binary> --version``.
VERSION_TIMEOUT = 5.0


def resolve_agent_binary(binary: str) -> str | None:
    """Return the absolute path of *binary*, or None if it cannot be found.

    Values containing a path separator are checked directly; bare names
    are looked up on ``PATH``.
    """
    if os.sep in binary or (os.altsep and os.altsep in binary):
        if os.path.isfile(binary) and os.access(binary, os.X_OK):
            return os.path.abspath(binary)
        return None
    return shutil.which(binary)


async def agent_version(path: str, timeout: float = VERSION_TIMEOUT) -> str | None:
    """Run ``<path> --version`` and extract the first semantic version."""
    try:
        proc = await asyncio.create_subprocess_exec(
            path,
            "--version",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as exc:
        logger.debug("Cannot run %s --version: %s", path, exc)
        return None

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        proc.kill()
        await proc.wait()
        logger.warning("%s --version timed out after %.0fs", path, timeout)
        return None

    match = _VERSION_RE.search(stdout.decode("utf-8", errors="replace"))
    return match.group(0) if match else None
