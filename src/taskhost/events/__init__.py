"""Domain events produced by the stream parser."""

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

__all__ = [
    "DomainEvent",
    "Error",
    "StepFinish",
    "StepStart",
    "Text",
    "ToolCallStart",
    "ToolResult",
    "ToolUseState",
]
