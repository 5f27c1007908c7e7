"""Stream parser — rebuilds domain events from raw, terminal-decorated output.

The agent CLI writes one JSON record per line, but when it runs under a
pseudo-terminal its output is interleaved with cursor movement, colour and
title sequences, and a single logical line may arrive split across many
reads.  :class:`StreamParser` buffers the raw bytes, cuts them on newline
boundaries, strips the decoration and turns each complete line into one
:data:`~taskhost.events.DomainEvent`.

Anything that is not a recognised record is treated as noise: it is
dropped and reported through the optional ``on_error`` callback as a
:class:`~taskhost.errors.ParseError`, never raised.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from taskhost.constants import DEFAULT_MAX_BYTES
from taskhost.errors import ParseError
from taskhost.events.models import (
    DomainEvent,
    Error,
    StepFinish,
    StepStart,
    Text,
    ToolCallStart,
    ToolResult,
    ToolUseState,
)

logger = logging.getLogger(__name__)

#: Characters of an offending line kept on a ParseError.
_PREVIEW_CHARS = 200

# CSI: ESC [ params intermediates final (cursor movement, colours, modes).
_CSI_RE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]")
# OSC: ESC ] ... terminated by BEL or ST (window titles, hyperlinks).
_OSC_RE = re.compile(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)")
# Charset selection and remaining two-character escapes.
_ESC_RE = re.compile(r"\x1b[()#][0-9A-Za-z]|\x1b[@-Z\\-_]")
# Stray C0 controls other than tab and newline (includes CR and BEL).
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")


def strip_terminal_decoration(text: str) -> str:
    """Remove terminal escape sequences and stray control characters."""
    text = _OSC_RE.sub("", text)
    text = _CSI_RE.sub("", text)
    text = _ESC_RE.sub("", text)
    return _CONTROL_RE.sub("", text)


class StreamParser:
    """Stateful reassembler turning raw agent output into domain events.

    ``feed`` accepts arbitrary fragments; the emitted event sequence is the
    same however the input is split.  The internal buffer never holds more
    than ``max_bytes``: a line that would exceed it is discarded up to its
    terminating newline and reported once as a parse error.
    """

    def __init__(
        self,
        on_event: Callable[[DomainEvent], None],
        on_error: Callable[[ParseError], None] | None = None,
        max_bytes: int = DEFAULT_MAX_BYTES,
    ) -> None:
        if max_bytes < 1:
            msg = f"max_bytes must be positive, got {max_bytes}"
            raise ValueError(msg)
        self._on_event = on_event
        self._on_error = on_error
        self._max_bytes = max_bytes
        self._buffer = bytearray()
        # True while skipping the tail of an oversized line.
        self._discarding = False
        # Bumped by reset() so a feed() in progress stops emitting.
        self._generation = 0

    @property
    def buffered_bytes(self) -> int:
        """Number of bytes waiting for a newline."""
        return len(self._buffer)

    @property
    def max_bytes(self) -> int:
        return self._max_bytes

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def feed(self, chunk: bytes | str) -> None:
        """Append a fragment of raw output and emit every completed record."""
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        if not chunk:
            return

        generation = self._generation
        start = 0
        while True:
            newline = chunk.find(b"\n", start)
            if newline == -1:
                break
            segment = chunk[start:newline]
            start = newline + 1

            if self._discarding:
                # End of the oversized line; resume normal parsing.
                self._discarding = False
                continue
            if len(self._buffer) + len(segment) > self._max_bytes:
                self._overflow(len(self._buffer) + len(segment))
                self._discarding = False
                continue

            self._buffer += segment
            line = bytes(self._buffer)
            self._buffer.clear()
            self._process_line(line)
            if generation != self._generation:
                return

        rest = chunk[start:]
        if not rest or self._discarding:
            return
        if len(self._buffer) + len(rest) > self._max_bytes:
            self._overflow(len(self._buffer) + len(rest))
            return
        self._buffer += rest

    def flush(self) -> None:
        """Parse a pending unterminated line as if it ended with a newline."""
        if self._discarding:
            self._discarding = False
            return
        if not self._buffer:
            return
        line = bytes(self._buffer)
        self._buffer.clear()
        self._process_line(line)

    def reset(self) -> None:
        """Drop all buffered state (used when a task restarts its process)."""
        self._buffer.clear()
        self._discarding = False
        self._generation += 1

    # ------------------------------------------------------------------ #
    # Internal
    # ------------------------------------------------------------------ #

    def _overflow(self, size: int) -> None:
        self._buffer.clear()
        self._discarding = True
        self._report(
            ParseError(
                f"Agent output exceeded {self._max_bytes} bytes without a "
                f"newline; discarded {size} bytes"
            )
        )

    def _process_line(self, raw: bytes) -> None:
        text = strip_terminal_decoration(raw.decode("utf-8", errors="replace"))
        line = text.strip()
        if not line:
            return

        preview = line[:_PREVIEW_CHARS]
        record = _decode_record(line)
        if record is None:
            self._report(ParseError("Not a structured record", preview))
            return

        record_type = record.get("type")
        try:
            event = record_to_event(record)
        except ValidationError as exc:
            self._report(
                ParseError(f"Malformed {record_type!r} record: {exc}", preview)
            )
            return
        if event is None:
            self._report(ParseError(f"Unknown record type {record_type!r}", preview))
            return

        self._on_event(event)

    def _report(self, error: ParseError) -> None:
        logger.debug("Dropped agent output: %s %s", error, error.line)
        if self._on_error is not None:
            self._on_error(error)


def _decode_record(line: str) -> dict[str, Any] | None:
    """Decode *line* as a JSON object, tolerating leading terminal junk."""
    candidates = [line]
    brace = line.find("{")
    if brace > 0:
        candidates.append(line[brace:])
    for candidate in candidates:
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            return value
    return None


def _part(record: dict[str, Any]) -> dict[str, Any]:
    part = record.get("part")
    return part if isinstance(part, dict) else {}


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def _session_id(record: dict[str, Any], part: dict[str, Any]) -> str | None:
    value = part.get("sessionID") or record.get("sessionID")
    return value if isinstance(value, str) and value else None


def _call_id(part: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = part.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def record_to_event(record: dict[str, Any]) -> DomainEvent | None:
    """Map one agent record onto a domain event.

    Returns ``None`` for record types the host does not understand.

    Raises:
        ValidationError: If a known record carries unusable field values.
    """
    record_type = record.get("type")
    part = _part(record)

    match record_type:
        case "step_start":
            return StepStart(raw=record, session_id=_session_id(record, part))
        case "text":
            return Text(
                raw=record,
                content=strip_terminal_decoration(_as_text(part.get("text"))),
                session_id=_session_id(record, part),
            )
        case "tool_call":
            return ToolCallStart(
                raw=record,
                tool=str(part.get("tool") or "unknown"),
                input=part.get("input"),
                call_id=_call_id(part, "callID", "id"),
            )
        case "tool_use":
            state = part.get("state")
            if not isinstance(state, dict):
                state = {}
            return ToolUseState(
                raw=record,
                tool=str(part.get("tool") or "unknown"),
                status=str(state.get("status") or "pending"),
                input=state.get("input"),
                output=_as_text(state.get("output")),
                call_id=_call_id(part, "callID", "id"),
            )
        case "tool_result":
            return ToolResult(
                raw=record,
                output=_as_text(part.get("output")),
                call_id=_call_id(part, "toolCallID", "callID"),
                is_error=bool(part.get("isError", False)),
            )
        case "step_finish":
            return StepFinish(raw=record, reason=str(part.get("reason") or ""))
        case "error":
            error = record.get("error")
            if isinstance(error, dict):
                message = _as_text(error.get("message") or error)
            else:
                message = _as_text(error) or _as_text(record.get("message"))
            code = record.get("code")
            return Error(
                raw=record,
                message=message or "Unknown agent error",
                code=str(code) if code is not None else None,
            )
    return None
