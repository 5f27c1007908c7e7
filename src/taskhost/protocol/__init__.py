"""JSON-lines control protocol between the front end and the task host."""

from taskhost.protocol.models import (
    InboundCommand,
    OutboundMessage,
    PermissionRequest,
    SendResponsePayload,
    TaskConfig,
    TaskProgress,
    TaskResult,
)

__all__ = [
    "InboundCommand",
    "OutboundMessage",
    "PermissionRequest",
    "SendResponsePayload",
    "TaskConfig",
    "TaskProgress",
    "TaskResult",
]
