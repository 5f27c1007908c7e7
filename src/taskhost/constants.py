"""Shared constants for the task host runtime."""

from __future__ import annotations

#: Hard ceiling on buffered agent output without a newline (10 MiB).
DEFAULT_MAX_BYTES = 10 * 1024 * 1024

#: Default ceiling on simultaneously running tasks.
DEFAULT_MAX_CONCURRENT_TASKS = 10

#: Tool name the agent uses to ask the user a question.
ASK_USER_TOOL = "AskUserQuestion"

#: Byte written to a pseudo-terminal to request a graceful stop (Ctrl+C).
INTERRUPT_CHAR = "\x03"
