"""Pipeline run state machine and persistence.

This module manages feature progression through pipeline stages:
- research → plan → implement → completed
- reruns rewind to research or plan, discarding dependent artifacts

State is persisted to PostgreSQL with optimistic locking for
concurrent update protection.
"""

from src.rpi.state.models import (
    ARTIFACT_STAGES,
    FORWARD_TRANSITIONS,
    RERUN_STAGES,
    Artifact,
    CommitStrategy,
    PipelineRun,
    Stage,
    StageTransition,
    invalidated_by,
    is_valid_forward_transition,
    next_stage,
    required_artifacts,
)
from src.rpi.state.machine import (
    InvalidTransitionError,
    RunExistsError,
    RunNotFoundError,
    RunRepository,
    StageStateMachine,
    VersionConflictError,
)
from src.rpi.state.memory import InMemoryRunRepository
from src.rpi.state.repository import (
    DatabaseError,
    PostgresRunRepository,
)

__all__ = [
    # Models
    "ARTIFACT_STAGES",
    "FORWARD_TRANSITIONS",
    "RERUN_STAGES",
    "Artifact",
    "CommitStrategy",
    "PipelineRun",
    "Stage",
    "StageTransition",
    "invalidated_by",
    "is_valid_forward_transition",
    "next_stage",
    "required_artifacts",
    # State machine
    "InvalidTransitionError",
    "RunExistsError",
    "RunNotFoundError",
    "RunRepository",
    "StageStateMachine",
    "VersionConflictError",
    # Repositories
    "InMemoryRunRepository",
    "DatabaseError",
    "PostgresRunRepository",
]
