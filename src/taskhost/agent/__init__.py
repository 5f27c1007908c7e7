"""Agent process runtime for the task host."""

from taskhost.agent.binary import agent_version, resolve_agent_binary
from taskhost.agent.launcher import (
    LaunchSpec,
    PipeProcessHandle,
    ProcessHandle,
    PtyProcessHandle,
    build_agent_args,
    build_agent_environment,
    spawn_process,
    wait_for_exits,
)
from taskhost.agent.session import LifecycleState, TaskCallbacks, TaskSession
from taskhost.agent.stream_parser import StreamParser, strip_terminal_decoration

__all__ = [
    "LaunchSpec",
    "LifecycleState",
    "PipeProcessHandle",
    "ProcessHandle",
    "PtyProcessHandle",
    "StreamParser",
    "TaskCallbacks",
    "TaskSession",
    "agent_version",
    "build_agent_args",
    "build_agent_environment",
    "resolve_agent_binary",
    "spawn_process",
    "strip_terminal_decoration",
    "wait_for_exits",
]
