"""Pipeline run models.

This module defines the data models for the stage controller, including:
- Stage: Enum of the ordered pipeline stages
- CommitStrategy: How stage commits are applied (rewrite or append)
- Artifact: Durable output of the Research or Plan stage
- StageTransition: Record of a stage change with timestamp and details
- PipelineRun: Complete state of one feature's pipeline run
- FORWARD_TRANSITIONS: Map defining the normal forward progression

The models use Pydantic for validation, consistent with the webhook and
event models.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, model_validator


class Stage(str, Enum):
    """Pipeline stages that a run progresses through.

    Stage Flow:
        research → plan → implement → completed

    Reruns rewind a run to ``research`` or ``plan``. There is no failed
    stage: a failed stage execution leaves the run where it was.

    Attributes:
        RESEARCH: Agent researches the codebase for the issue.
        PLAN: Agent writes an implementation plan from the research.
        IMPLEMENT: Agent implements the plan; the review object is opened.
        COMPLETED: Implementation committed and review object opened/updated.
    """

    RESEARCH = "research"
    PLAN = "plan"
    IMPLEMENT = "implement"
    COMPLETED = "completed"

    @property
    def order(self) -> int:
        """Position of the stage in the pipeline."""
        return STAGE_ORDER.index(self)

    @property
    def produces_artifact(self) -> bool:
        """Whether completing this stage produces a stored artifact."""
        return self in ARTIFACT_STAGES


STAGE_ORDER: Tuple[Stage, ...] = (
    Stage.RESEARCH,
    Stage.PLAN,
    Stage.IMPLEMENT,
    Stage.COMPLETED,
)

# Stages whose output is persisted as an artifact file
ARTIFACT_STAGES: Tuple[Stage, ...] = (Stage.RESEARCH, Stage.PLAN)

# Stages a rerun may target
RERUN_STAGES: Tuple[Stage, ...] = (Stage.RESEARCH, Stage.PLAN)


class CommitStrategy(str, Enum):
    """How the commit for a stage is applied to the run's branch.

    Attributes:
        REWRITE: Replace the prior commit(s) for the stage (force update).
        APPEND: Add new commits on top, preserving prior history.
    """

    REWRITE = "rewrite"
    APPEND = "append"


class Artifact(BaseModel):
    """Durable output of one stage.

    Attributes:
        stage: The stage that produced the artifact (research or plan).
        content: Opaque artifact text as produced by the agent.
        path: Filesystem path derived from the feature id and stage.
        committed_as: Strategy used to commit the artifact.
        commit_sha: Commit that recorded the artifact, when known.
        created_at: When the artifact was written (UTC).
    """

    stage: Stage = Field(
        ...,
        description="The stage that produced this artifact",
    )

    content: str = Field(
        ...,
        description="Artifact text as produced by the agent",
    )

    path: str = Field(
        ...,
        min_length=1,
        description="Filesystem path of the artifact file",
    )

    committed_as: CommitStrategy = Field(
        default=CommitStrategy.APPEND,
        description="Strategy used when committing this artifact",
    )

    commit_sha: Optional[str] = Field(
        default=None,
        description="Commit that recorded the artifact",
    )

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the artifact was written (UTC)",
    )

    @model_validator(mode="after")
    def _check_stage(self) -> "Artifact":
        if self.stage not in ARTIFACT_STAGES:
            raise ValueError(
                f"stage {self.stage.value} does not produce an artifact"
            )
        return self


class StageTransition(BaseModel):
    """Record of a stage transition in a pipeline run.

    Attributes:
        from_stage: The stage before the transition.
        to_stage: The stage after the transition.
        timestamp: When the transition occurred (UTC).
        details: Optional metadata (rerun actor, commit strategy, PR number).
    """

    from_stage: Stage = Field(
        ...,
        description="The stage before this transition",
    )

    to_stage: Stage = Field(
        ...,
        description="The stage after this transition",
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the transition occurred (UTC timezone)",
    )

    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Optional metadata about the transition",
    )


class PipelineRun(BaseModel):
    """Complete state of one feature's pipeline run.

    A run is keyed by feature id and persisted to PostgreSQL with
    optimistic locking via the version field. The run record is kept
    indefinitely; only its artifact files are swept.

    Invariant: ``artifacts`` never contains a plan entry without a
    research entry.

    Attributes:
        feature_id: Path-safe id derived from the issue title.
        item_id: Canonical issue identifier "{owner}/{repo}#{number}".
        repository: Full repository path "{owner}/{repo}".
        item_number: Issue number within the repository.
        title: Issue title at the time the run was created.
        body: Issue body at the time the run was created.
        current_stage: The stage that executes next (or completed).
        author: Login of the actor who started the run.
        artifacts: Stage → artifact, in completion order.
        review_object_id: Pull request number once opened.
        state_history: Ordered list of stage transitions.
        error: Last surfaced failure, if any.
        created_at: When the run was created (UTC).
        updated_at: When the run was last updated (UTC).
        completed_at: When the run last reached completed (UTC).
        version: Optimistic locking version.
    """

    feature_id: str = Field(
        ...,
        min_length=1,
        description="Path-safe feature identifier derived from the issue title",
    )

    item_id: str = Field(
        ...,
        min_length=1,
        description='Canonical issue identifier in format "{owner}/{repo}#{number}"',
    )

    repository: str = Field(
        ...,
        min_length=1,
        description='Full repository path in format "{owner}/{repo}"',
    )

    item_number: int = Field(
        ...,
        gt=0,
        description="Issue number within the repository",
    )

    title: str = Field(
        ...,
        min_length=1,
        description="Issue title when the run was created",
    )

    body: str = Field(
        default="",
        description="Issue body when the run was created",
    )

    current_stage: Stage = Field(
        default=Stage.RESEARCH,
        description="The stage that executes next",
    )

    author: Optional[str] = Field(
        default=None,
        description="Login of the actor who initiated the run",
    )

    artifacts: Dict[Stage, Artifact] = Field(
        default_factory=dict,
        description="Stage artifacts in completion order",
    )

    review_object_id: Optional[int] = Field(
        default=None,
        gt=0,
        description="Pull request number once the review object is opened",
    )

    state_history: List[StageTransition] = Field(
        default_factory=list,
        description="Ordered list of all stage transitions",
    )

    error: Optional[str] = Field(
        default=None,
        description="Last failure surfaced to the requester",
    )

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the run was created (UTC)",
    )

    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the run was last updated (UTC)",
    )

    completed_at: Optional[datetime] = Field(
        default=None,
        description="When the run last reached the completed stage (UTC)",
    )

    version: int = Field(
        default=1,
        ge=1,
        description="Optimistic locking version for concurrent update protection",
    )

    @model_validator(mode="after")
    def _check_artifact_dependencies(self) -> "PipelineRun":
        for stage, artifact in self.artifacts.items():
            if artifact.stage != stage:
                raise ValueError(
                    f"artifact for {artifact.stage.value} stored under {stage.value}"
                )
        if Stage.PLAN in self.artifacts and Stage.RESEARCH not in self.artifacts:
            raise ValueError("plan artifact cannot exist without a research artifact")
        return self

    @property
    def branch_name(self) -> str:
        """Head branch that carries the run's commits."""
        return f"rpi/{self.feature_id}"

    @property
    def owner(self) -> str:
        return self.repository.split("/", 1)[0]

    @property
    def repo(self) -> str:
        return self.repository.split("/", 1)[-1]

    @property
    def is_completed(self) -> bool:
        return self.current_stage == Stage.COMPLETED

    def has_artifact(self, stage: Stage) -> bool:
        return stage in self.artifacts


# Normal forward progression. Reruns are the only backward moves and are
# handled separately by StageStateMachine.rewind().
FORWARD_TRANSITIONS: Dict[Stage, Optional[Stage]] = {
    Stage.RESEARCH: Stage.PLAN,
    Stage.PLAN: Stage.IMPLEMENT,
    Stage.IMPLEMENT: Stage.COMPLETED,
    Stage.COMPLETED: None,
}


def next_stage(stage: Stage) -> Optional[Stage]:
    """Return the stage that follows ``stage`` in a normal run.

    Example:
        >>> next_stage(Stage.PLAN)
        <Stage.IMPLEMENT: 'implement'>
        >>> next_stage(Stage.COMPLETED) is None
        True
    """
    return FORWARD_TRANSITIONS.get(stage)


def is_valid_forward_transition(from_stage: Stage, to_stage: Stage) -> bool:
    """Check that ``to_stage`` directly follows ``from_stage``."""
    return next_stage(from_stage) == to_stage


def invalidated_by(target_stage: Stage) -> List[Stage]:
    """Artifact stages discarded by a rerun targeting ``target_stage``.

    A rerun discards the target stage's artifact and every artifact that
    follows it, so no artifact outlives its upstream dependency.

    Args:
        target_stage: The rerun target (research or plan).

    Returns:
        Artifact stages to discard, in pipeline order.

    Raises:
        ValueError: If the stage cannot be a rerun target.

    Example:
        >>> invalidated_by(Stage.PLAN)
        [<Stage.PLAN: 'plan'>]
        >>> invalidated_by(Stage.RESEARCH)
        [<Stage.RESEARCH: 'research'>, <Stage.PLAN: 'plan'>]
    """
    if target_stage not in RERUN_STAGES:
        raise ValueError(f"{target_stage.value} is not a rerun target")
    return [s for s in ARTIFACT_STAGES if s.order >= target_stage.order]


def required_artifacts(stage: Stage) -> List[Stage]:
    """Artifact stages that must exist before ``stage`` may start.

    Example:
        >>> required_artifacts(Stage.IMPLEMENT)
        [<Stage.RESEARCH: 'research'>, <Stage.PLAN: 'plan'>]
    """
    return [s for s in ARTIFACT_STAGES if s.order < stage.order]
