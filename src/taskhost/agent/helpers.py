"""Shared helper functions for the agent layer."""

from __future__ import annotations

import secrets
import string
import time

_ID_ALPHABET = string.ascii_lowercase + string.digits


def format_stderr_preview(stderr_text: str, max_lines: int = 5) -> str:
    """Extract and format the last N non-empty lines from stderr output."""
    lines = [line for line in stderr_text.split("\n") if line.strip()]
    last = lines[-max_lines:] if len(lines) > max_lines else lines
    return "\n  ".join(last)


def generate_id(prefix: str) -> str:
    """Return ``<prefix>_<epoch ms>_<9 random chars>``."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"
