"""Taskhost — supervisor for concurrent agent CLI tasks."""

__version__ = "0.1.0"
