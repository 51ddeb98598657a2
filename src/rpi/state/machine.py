"""Stage state machine implementation.

This module implements the StageStateMachine class that moves a pipeline
run through Research → Plan → Implement → Completed, rewinds it for
reruns, and records stage failures without changing the stage.

The state machine depends on a RunRepository interface for persistence,
implemented by PostgresRunRepository (repository.py) and
InMemoryRunRepository (memory.py).
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple, runtime_checkable

from src.rpi.state.models import (
    RERUN_STAGES,
    Artifact,
    PipelineRun,
    Stage,
    StageTransition,
    invalidated_by,
    is_valid_forward_transition,
    next_stage,
    required_artifacts,
)


logger = logging.getLogger(__name__)


class InvalidTransitionError(Exception):
    """Raised when a stage transition violates the pipeline order.

    Attributes:
        from_stage: The current stage.
        to_stage: The attempted target stage.
        message: Human-readable error message.
    """

    def __init__(
        self,
        from_stage: Stage,
        to_stage: Stage,
        message: Optional[str] = None,
    ):
        self.from_stage = from_stage
        self.to_stage = to_stage
        self.message = message or (
            f"Invalid transition from {from_stage.value} to {to_stage.value}"
        )
        super().__init__(self.message)


class RunNotFoundError(Exception):
    """Raised when no pipeline run exists for a feature id.

    Attributes:
        feature_id: The feature id that was not found.
    """

    def __init__(self, feature_id: str):
        self.feature_id = feature_id
        super().__init__(f"Pipeline run not found for feature: {feature_id}")


class RunExistsError(Exception):
    """Raised when creating a run for a feature id that already has one."""

    def __init__(self, feature_id: str):
        self.feature_id = feature_id
        super().__init__(f"Pipeline run already exists for feature: {feature_id}")


class VersionConflictError(Exception):
    """Raised when optimistic locking detects a concurrent update.

    Attributes:
        feature_id: The feature id with the conflict.
        expected_version: The version that was expected.
    """

    def __init__(self, feature_id: str, expected_version: int):
        self.feature_id = feature_id
        self.expected_version = expected_version
        super().__init__(
            f"Version conflict for feature {feature_id}: expected {expected_version}"
        )


@runtime_checkable
class RunRepository(Protocol):
    """Protocol defining the interface for pipeline run persistence.

    The repository is responsible for:
    - Persisting pipeline runs keyed by feature id
    - Retrieving runs by feature id, issue or review object
    - Implementing optimistic locking via the version field
    """

    async def save(self, run: PipelineRun) -> None:
        """Persist a new pipeline run."""
        ...

    async def get(self, feature_id: str) -> Optional[PipelineRun]:
        """Get a pipeline run by feature id."""
        ...

    async def get_by_item(self, item_id: str) -> Optional[PipelineRun]:
        """Get the pipeline run started from an issue."""
        ...

    async def get_by_review_object(
        self, repository: str, review_object_id: int
    ) -> Optional[PipelineRun]:
        """Get the pipeline run that opened a pull request."""
        ...

    async def list_all(self) -> List[PipelineRun]:
        """List every pipeline run."""
        ...

    async def list_by_stage(self, stage: Stage) -> List[PipelineRun]:
        """List the pipeline runs currently at a stage."""
        ...

    async def update_with_version(self, run: PipelineRun) -> bool:
        """Update a run only if the stored version is ``run.version - 1``.

        Returns:
            True if the update succeeded, False on version conflict.
        """
        ...


class StageStateMachine:
    """State machine for a feature's pipeline run.

    The state machine enforces the following invariants:
    - Normal progression is forward only: research → plan → implement → completed
    - Only the stage currently due may be completed
    - Research and plan completions record their artifact
    - A rerun rewinds to research or plan and drops the target artifact and
      every artifact downstream of it
    - Failures are recorded without moving the stage
    - Each update increments the version for optimistic locking

    Attributes:
        repository: The run repository for persistence.

    Example:
        >>> machine = StageStateMachine(InMemoryRunRepository())
        >>> run = await machine.create(
        ...     feature_id="add-rate-limiting",
        ...     item_id="acme/api#7",
        ...     repository="acme/api",
        ...     item_number=7,
        ...     title="Add rate limiting",
        ...     author="alice",
        ... )
        >>> run = await machine.complete_stage(
        ...     "add-rate-limiting", Stage.RESEARCH, artifact=research
        ... )
    """

    def __init__(self, repository: RunRepository):
        self.repository = repository

    async def create(
        self,
        feature_id: str,
        item_id: str,
        repository: str,
        item_number: int,
        title: str,
        author: Optional[str],
        body: str = "",
    ) -> PipelineRun:
        """Create a new pipeline run at the research stage.

        Raises:
            ValueError: If feature_id is empty.
            RunExistsError: If a run already exists for the feature.
        """
        if not feature_id:
            raise ValueError("feature_id cannot be empty")

        if await self.repository.get(feature_id) is not None:
            raise RunExistsError(feature_id)

        now = datetime.now(timezone.utc)
        run = PipelineRun(
            feature_id=feature_id,
            item_id=item_id,
            repository=repository,
            item_number=item_number,
            title=title,
            body=body,
            current_stage=Stage.RESEARCH,
            author=author,
            created_at=now,
            updated_at=now,
            version=1,
        )

        logger.info(
            "Creating pipeline run",
            extra={
                "feature_id": feature_id,
                "item_id": item_id,
                "author": author,
            },
        )

        await self.repository.save(run)
        return run

    async def get(self, feature_id: str) -> Optional[PipelineRun]:
        return await self.repository.get(feature_id)

    async def require(self, feature_id: str) -> PipelineRun:
        """Get a run or raise RunNotFoundError."""
        run = await self.repository.get(feature_id)
        if run is None:
            raise RunNotFoundError(feature_id)
        return run

    async def get_by_item(self, item_id: str) -> Optional[PipelineRun]:
        return await self.repository.get_by_item(item_id)

    async def get_by_review_object(
        self, repository: str, review_object_id: int
    ) -> Optional[PipelineRun]:
        return await self.repository.get_by_review_object(repository, review_object_id)

    async def list_all(self) -> List[PipelineRun]:
        return await self.repository.list_all()

    async def list_by_stage(self, stage: Stage) -> List[PipelineRun]:
        return await self.repository.list_by_stage(stage)

    async def complete_stage(
        self,
        feature_id: str,
        stage: Stage,
        artifact: Optional[Artifact] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> PipelineRun:
        """Mark the current stage as completed and advance the run.

        Args:
            feature_id: The run's feature id.
            stage: The stage that finished. Must equal ``current_stage``.
            artifact: The stage output; required for research and plan.
            details: Optional metadata recorded in the transition.

        Returns:
            The updated run.

        Raises:
            RunNotFoundError: If the run doesn't exist.
            InvalidTransitionError: If ``stage`` is not the stage due.
            ValueError: If the artifact is missing or mismatched.
            VersionConflictError: If a concurrent update occurred.
        """
        run = await self.require(feature_id)
        to_stage = next_stage(stage)

        if to_stage is None or not is_valid_forward_transition(
            run.current_stage, to_stage
        ):
            logger.warning(
                "Invalid stage completion attempted",
                extra={
                    "feature_id": feature_id,
                    "current_stage": run.current_stage.value,
                    "completed_stage": stage.value,
                },
            )
            raise InvalidTransitionError(
                run.current_stage,
                to_stage or stage,
                f"Cannot complete {stage.value} while run is at "
                f"{run.current_stage.value}",
            )

        missing = [s for s in required_artifacts(stage) if s not in run.artifacts]
        if missing:
            raise InvalidTransitionError(
                stage,
                to_stage,
                f"Cannot complete {stage.value} without "
                f"{', '.join(s.value for s in missing)} artifact(s)",
            )

        artifacts = dict(run.artifacts)
        if stage.produces_artifact:
            if artifact is None:
                raise ValueError(f"{stage.value} completion requires an artifact")
            if artifact.stage != stage:
                raise ValueError(
                    f"artifact for {artifact.stage.value} cannot complete {stage.value}"
                )
            artifacts.pop(stage, None)
            artifacts[stage] = artifact

        now = datetime.now(timezone.utc)
        updated = run.model_copy(
            update={
                "current_stage": to_stage,
                "artifacts": artifacts,
                "state_history": run.state_history
                + [
                    StageTransition(
                        from_stage=stage,
                        to_stage=to_stage,
                        timestamp=now,
                        details=details or {},
                    )
                ],
                "error": None,
                "completed_at": now if to_stage == Stage.COMPLETED else run.completed_at,
                "updated_at": now,
                "version": run.version + 1,
            }
        )
        # Re-validate so the artifact dependency invariant is checked
        updated = PipelineRun.model_validate(updated.model_dump())

        logger.info(
            "Advancing pipeline run",
            extra={
                "feature_id": feature_id,
                "from_stage": stage.value,
                "to_stage": to_stage.value,
                "version": updated.version,
            },
        )

        await self._persist(updated, run.version)
        return updated

    async def rewind(
        self,
        feature_id: str,
        target_stage: Stage,
        details: Optional[Dict[str, Any]] = None,
    ) -> Tuple[PipelineRun, List[Stage]]:
        """Rewind a run for a rerun.

        Sets ``current_stage`` to the target and discards the target's
        artifact and every artifact that depends on it. A plan rerun keeps
        the research artifact untouched; a research rerun discards both.

        Args:
            feature_id: The run's feature id.
            target_stage: research or plan.
            details: Metadata recorded in the transition (actor, strategy).

        Returns:
            Tuple of (updated run, artifact stages that were invalidated).

        Raises:
            RunNotFoundError: If the run doesn't exist.
            InvalidTransitionError: If the target is not a rerun stage or
                lies ahead of the current stage.
            VersionConflictError: If a concurrent update occurred.
        """
        run = await self.require(feature_id)

        if target_stage not in RERUN_STAGES:
            raise InvalidTransitionError(
                run.current_stage,
                target_stage,
                f"{target_stage.value} cannot be targeted by a rerun",
            )

        # A rerun only moves backward (or restarts the current stage)
        if target_stage.order > run.current_stage.order:
            raise InvalidTransitionError(
                run.current_stage,
                target_stage,
                f"Cannot rerun {target_stage.value} while run is at "
                f"{run.current_stage.value}",
            )

        invalidated = invalidated_by(target_stage)
        artifacts = {
            stage: artifact
            for stage, artifact in run.artifacts.items()
            if stage not in invalidated
        }

        now = datetime.now(timezone.utc)
        transition_details = {"rerun": True, **(details or {})}
        updated = run.model_copy(
            update={
                "current_stage": target_stage,
                "artifacts": artifacts,
                "state_history": run.state_history
                + [
                    StageTransition(
                        from_stage=run.current_stage,
                        to_stage=target_stage,
                        timestamp=now,
                        details=transition_details,
                    )
                ],
                "error": None,
                "completed_at": None,
                "updated_at": now,
                "version": run.version + 1,
            }
        )

        logger.info(
            "Rewinding pipeline run",
            extra={
                "feature_id": feature_id,
                "from_stage": run.current_stage.value,
                "to_stage": target_stage.value,
                "invalidated": [s.value for s in invalidated],
            },
        )

        await self._persist(updated, run.version)
        return updated, invalidated

    async def record_failure(
        self,
        feature_id: str,
        stage: Stage,
        message: str,
    ) -> PipelineRun:
        """Store a failure message without changing the run's stage."""
        run = await self.require(feature_id)
        error_message = f"{stage.value}: {message}" if message else stage.value

        updated = run.model_copy(
            update={
                "error": error_message,
                "updated_at": datetime.now(timezone.utc),
                "version": run.version + 1,
            }
        )

        logger.info(
            "Recording stage failure",
            extra={
                "feature_id": feature_id,
                "stage": stage.value,
                "current_stage": run.current_stage.value,
            },
        )

        await self._persist(updated, run.version)
        return updated

    async def set_review_object(
        self,
        feature_id: str,
        review_object_id: int,
    ) -> PipelineRun:
        """Store the pull request number that reviews the run.

        Raises:
            ValueError: If the number is not positive.
        """
        if review_object_id <= 0:
            raise ValueError("review_object_id must be positive")

        run = await self.require(feature_id)
        if run.review_object_id == review_object_id:
            return run

        updated = run.model_copy(
            update={
                "review_object_id": review_object_id,
                "updated_at": datetime.now(timezone.utc),
                "version": run.version + 1,
            }
        )
        await self._persist(updated, run.version)
        return updated

    async def _persist(self, updated: PipelineRun, previous_version: int) -> None:
        success = await self.repository.update_with_version(updated)
        if not success:
            raise VersionConflictError(updated.feature_id, previous_version)
