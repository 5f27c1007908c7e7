"""Pydantic v2 models for the domain events reconstructed from agent output."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag


class _EventBase(BaseModel):
    """Fields shared by every domain event."""

    model_config = ConfigDict(extra="forbid")

    raw: dict[str, Any] = Field(
        default_factory=dict,
        description="The agent's structured record this event was built from",
    )


class StepStart(_EventBase):
    """The agent started a reasoning step."""

    type: Literal["step_start"] = "step_start"
    session_id: str | None = Field(
        default=None,
        description="Session identifier minted by the agent CLI",
    )


class Text(_EventBase):
    """A block of assistant text."""

    type: Literal["text"] = "text"
    content: str = Field(description="Text content, terminal decoration removed")
    session_id: str | None = Field(default=None, description="Agent session id")


class ToolCallStart(_EventBase):
    """A tool invocation (legacy ``tool_call`` record)."""

    type: Literal["tool_call"] = "tool_call"
    tool: str = Field(description="Tool name")
    input: Any = Field(default=None, description="Tool input as sent by the agent")
    call_id: str | None = Field(default=None, description="Tool call identifier")


class ToolUseState(_EventBase):
    """State-carrying tool record combining call and result."""

    type: Literal["tool_use"] = "tool_use"
    tool: str = Field(description="Tool name")
    status: str = Field(description="pending, running, completed or error")
    input: Any = Field(default=None, description="Tool input")
    output: str = Field(default="", description="Tool output, once available")
    call_id: str | None = Field(default=None, description="Tool call identifier")

    @property
    def finished(self) -> bool:
        return self.status in ("completed", "error")


class ToolResult(_EventBase):
    """Result of a previously started tool call."""

    type: Literal["tool_result"] = "tool_result"
    output: str = Field(default="", description="Tool output")
    call_id: str | None = Field(default=None, description="Tool call identifier")
    is_error: bool = Field(default=False, description="Whether the tool failed")


class StepFinish(_EventBase):
    """The agent finished a step.

    ``reason`` is one of ``stop``, ``end_turn``, ``tool_use`` or ``error``
    for the agent versions we know; other values are passed through.
    """

    type: Literal["step_finish"] = "step_finish"
    reason: str = Field(description="Why the step ended")


class Error(_EventBase):
    """The agent reported a fatal error."""

    type: Literal["error"] = "error"
    message: str = Field(description="Error description")
    code: str | None = Field(default=None, description="Agent error code")


def _event_discriminator(v: Any) -> str:
    """Extract the discriminator value from raw data or a model instance."""
    if isinstance(v, dict):
        return str(v.get("type", ""))
    return str(getattr(v, "type", ""))


DomainEvent = Annotated[
    Annotated[StepStart, Tag("step_start")]
    | Annotated[Text, Tag("text")]
    | Annotated[ToolCallStart, Tag("tool_call")]
    | Annotated[ToolUseState, Tag("tool_use")]
    | Annotated[ToolResult, Tag("tool_result")]
    | Annotated[StepFinish, Tag("step_finish")]
    | Annotated[Error, Tag("error")],
    Discriminator(_event_discriminator),
]
"""Discriminated union of all domain event types."""
