"""Pipeline event models for observability.

This module defines the data models for pipeline events:
- EventType: Enum of all event types emitted by the pipeline
- PipelineEvent: Structured event with feature, repository and details

The models use Pydantic for validation, consistent with state/models.py
and webhook/models.py.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Types of events emitted by the pipeline.

    Attributes:
        STATE_TRANSITION: A run completed a stage and moved forward.
        RERUN: A run was rewound to research or plan.
        ERROR: A request failed (agent, dependency, git or API failure).
        COMPLETION: A run reached completed and its review object is open.
        TIMEOUT: The agent exceeded its time limit.
        CLEANUP: The retention sweep finished.
    """

    STATE_TRANSITION = "state_transition"
    RERUN = "rerun"
    ERROR = "error"
    COMPLETION = "completion"
    TIMEOUT = "timeout"
    CLEANUP = "cleanup"


class PipelineEvent(BaseModel):
    """Structured event emitted by the pipeline.

    Details Field Conventions:
        STATE_TRANSITION: from_stage, to_stage, strategy
        RERUN: from_stage, to_stage, strategy, actor, invalidated
        ERROR: error_message, error_type, stage
        COMPLETION: pr_number, pr_url, duration_seconds
        TIMEOUT: stage, timeout_seconds
        CLEANUP: removed, skipped, errors

    Attributes:
        event_type: The category of event.
        feature_id: The affected run, when the event concerns one.
        repository: Full repository path "{owner}/{repo}".
        timestamp: When the event occurred (UTC).
        details: Additional context specific to the event type.
    """

    event_type: EventType = Field(
        ...,
        description="The category of event being emitted",
    )

    feature_id: Optional[str] = Field(
        default=None,
        description="Feature id of the affected run",
    )

    repository: str = Field(
        default="",
        description='Full repository path in format "{owner}/{repo}"',
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC timezone)",
    )

    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Additional context specific to the event type",
    )

    def to_log_dict(self) -> Dict[str, Any]:
        """Flatten the event for structured logging.

        Example:
            >>> event = PipelineEvent(
            ...     event_type=EventType.ERROR,
            ...     feature_id="add-cache",
            ...     repository="acme/api",
            ...     details={"error_message": "Agent timed out"},
            ... )
            >>> event.to_log_dict()["event_type"]
            'error'
        """
        return {
            "event_type": self.event_type.value,
            "feature_id": self.feature_id,
            "repository": self.repository,
            "timestamp": self.timestamp.isoformat(),
            **self.details,
        }
