"""Agent execution: CLI subprocess runner and stage prompts."""

from src.rpi.runner.agent import AgentCLIRunner, AgentExecutor
from src.rpi.runner.models import (
    AgentExecutionError,
    AgentInputs,
    AgentOutput,
    AgentTimeoutError,
)

__all__ = [
    "AgentCLIRunner",
    "AgentExecutionError",
    "AgentExecutor",
    "AgentInputs",
    "AgentOutput",
    "AgentTimeoutError",
]
