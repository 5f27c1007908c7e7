"""Pydantic v2 models for taskhost.yaml settings."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator

from taskhost.constants import DEFAULT_MAX_BYTES, DEFAULT_MAX_CONCURRENT_TASKS


class HostSettings(BaseModel):
    """Process-wide settings for the task host."""

    model_config = ConfigDict(extra="forbid")

    agent_binary: str = Field(
        default="opencode",
        description="Agent CLI executable name or path",
    )
    agent_base_args: list[str] = Field(
        default_factory=list,
        description="Arguments placed before the generated run arguments",
    )
    agent_name: str | None = Field(
        default=None,
        description="Agent profile passed to the CLI as --agent",
    )
    max_concurrent_tasks: int = Field(
        default=DEFAULT_MAX_CONCURRENT_TASKS,
        ge=1,
        description="Maximum number of tasks running at once",
    )
    parser_max_bytes: int = Field(
        default=DEFAULT_MAX_BYTES,
        ge=1024,
        description="Maximum buffered bytes of agent output without a newline",
    )
    use_pty: bool = Field(
        default=True,
        description="Attach the agent to a pseudo-terminal (false forces pipes)",
    )
    pty_columns: int = Field(default=200, ge=1, description="PTY width")
    pty_rows: int = Field(default=30, ge=1, description="PTY height")
    print_agent_logs: bool = Field(
        default=False,
        description="Ask the agent CLI for debug logs on stderr",
    )
    agent_config_path: str | None = Field(
        default=None,
        description="Pre-generated agent configuration file (OPENCODE_CONFIG)",
    )
    agent_config_dir: str | None = Field(
        default=None,
        description="Agent configuration directory (OPENCODE_CONFIG_DIR)",
    )
    default_working_directory: str | None = Field(
        default=None,
        description="Working directory for tasks that do not name one",
    )
    interrupt_followup_delay: float = Field(
        default=0.1,
        ge=0,
        description="Seconds before the platform follow-up keystroke on interrupt",
    )

    @field_validator("agent_binary")
    @classmethod
    def _binary_not_blank(cls, value: str) -> str:
        if not value.strip():
            msg = "agent_binary must not be empty"
            raise ValueError(msg)
        return value
