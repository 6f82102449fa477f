"""Coding-agent CLI process management."""

from .runner import (
    AgentExecutionResult,
    AgentNotFoundError,
    AgentProcess,
    AgentRunner,
    AgentRunnerError,
    FakeAgentRunner,
)

__all__ = [
    "AgentExecutionResult",
    "AgentNotFoundError",
    "AgentProcess",
    "AgentRunner",
    "AgentRunnerError",
    "FakeAgentRunner",
]
