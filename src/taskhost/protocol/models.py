"""Pydantic v2 models for the JSON-lines control protocol.

Every model serialises with camelCase keys, matching what the front end
sends and expects; Python code uses the snake_case field names.
"""

from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _WireModel(BaseModel):
    """Base for camelCase wire models."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> dict[str, Any]:
        """Dump to a JSON-ready dict with wire keys and no null fields."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ------------------------------------------------------------------ #
# Task inputs
# ------------------------------------------------------------------ #


class TaskConfig(_WireModel):
    """Configuration captured when a task starts; immutable afterwards."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    task_id: str = Field(description="Caller-assigned task identifier")
    prompt: str = Field(description="Instruction for the agent")
    session_id: str | None = Field(
        default=None,
        description="Agent session to resume",
    )
    model_id: str | None = Field(
        default=None,
        description="Model identifier, e.g. 'anthropic/claude-sonnet-4-5'",
    )
    working_directory: str | None = Field(
        default=None,
        description="Directory the agent runs in",
    )
    credentials: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("credentials", "apiKeys", "api_keys"),
        description="Provider credentials forwarded into the agent environment",
    )


class SendResponsePayload(_WireModel):
    """Payload of a ``send_response`` command."""

    response: str = Field(description="Text written to the agent's input")


# ------------------------------------------------------------------ #
# Task outputs
# ------------------------------------------------------------------ #

ProgressStage = Literal[
    "starting",
    "loading",
    "connecting",
    "waiting",
    "executing",
    "tool-use",
    "completing",
]


class TaskProgress(_WireModel):
    """Coarse progress report for a running task."""

    stage: ProgressStage = Field(description="Current stage")
    message: str | None = Field(default=None, description="Human-readable detail")
    model_name: str | None = Field(default=None, description="Model in use")


class TaskResult(_WireModel):
    """Terminal outcome of a task."""

    status: Literal["success", "error", "cancelled", "interrupted"] = Field(
        description="How the task ended",
    )
    session_id: str | None = Field(
        default=None,
        description="Agent session id, for resuming later",
    )
    summary: str | None = Field(default=None, description="Last assistant text")
    error: str | None = Field(default=None, description="Error description")


class PermissionRequest(_WireModel):
    """A question or permission prompt raised by the agent."""

    id: str = Field(description="Request identifier")
    type: Literal["file", "bash", "mcp", "question"] = Field(
        description="Kind of request",
    )
    tool: str | None = Field(default=None, description="Tool that asked")
    path: str | None = Field(default=None, description="File path concerned")
    command: str | None = Field(default=None, description="Command concerned")
    question: str | None = Field(default=None, description="Question text")
    header: str | None = Field(default=None, description="Short question header")
    options: list[str] | None = Field(default=None, description="Answer choices")
    multi_select: bool | None = Field(
        default=None,
        description="Whether several options may be chosen",
    )


# ------------------------------------------------------------------ #
# Envelopes
# ------------------------------------------------------------------ #

InboundType = Literal[
    "start_task",
    "cancel_task",
    "interrupt_task",
    "send_response",
    "ping",
    "check_cli",
]

OutboundType = Literal[
    "ready",
    "pong",
    "cli_status",
    "task_started",
    "task_message",
    "task_progress",
    "permission_request",
    "task_complete",
    "task_error",
    "log",
]


class InboundCommand(_WireModel):
    """One line received from the caller."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    type: str = Field(description="Command type")
    task_id: str | None = Field(default=None, description="Target task")
    payload: dict[str, Any] = Field(default_factory=dict, description="Arguments")


class OutboundMessage(_WireModel):
    """One line sent to the caller."""

    type: OutboundType = Field(description="Event type")
    task_id: str | None = Field(default=None, description="Originating task")
    payload: Any = Field(default=None, description="Event body")

    def to_line(self) -> str:
        """Encode as a single JSON line without the trailing newline."""
        return json.dumps(self.to_payload(), ensure_ascii=False, default=str)
