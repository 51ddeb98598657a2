"""Agent invocation inputs, outputs and errors."""

from dataclasses import dataclass, field
from typing import Dict, Optional

from src.rpi.state.models import Stage


@dataclass
class AgentInputs:
    """What the agent sees for one invocation.

    Attributes:
        feature_id: The run's feature id.
        title: Issue title.
        body: Issue body.
        upstream: Content of the upstream artifacts, by stage.
        feedback: Reviewer feedback when the stage is being rerun.
        question: The question for a read-only ad-hoc query.
    """

    feature_id: str
    title: str
    body: str = ""
    upstream: Dict[Stage, str] = field(default_factory=dict)
    feedback: Optional[str] = None
    question: Optional[str] = None


@dataclass
class AgentOutput:
    """Result of a successful agent invocation.

    Attributes:
        content: Standard output; the artifact text for research and plan,
            the change summary for implement, the answer for a query.
        stderr: Captured standard error.
        duration_seconds: Wall-clock execution time.
    """

    content: str
    stderr: str = ""
    duration_seconds: float = 0.0


class AgentExecutionError(Exception):
    """Raised when the agent fails to produce a stage's output.

    Attributes:
        stage: The stage being executed (None for queries).
        exit_code: Process exit code (-1 when the process never finished).
        stderr: Captured standard error.
    """

    def __init__(
        self,
        message: str,
        stage: Optional[Stage] = None,
        exit_code: int = -1,
        stderr: str = "",
    ):
        self.stage = stage
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(message)


class AgentTimeoutError(AgentExecutionError):
    """Raised when the agent exceeds its configured timeout."""

    def __init__(self, stage: Optional[Stage], timeout_seconds: int):
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Agent timed out after {timeout_seconds}s",
            stage=stage,
            exit_code=-1,
        )
