"""Artifact lifecycle management.

The ArtifactLifecycleManager is the only writer of the artifact tree:

    <artifact_root>/<feature_id>/research.md
    <artifact_root>/<feature_id>/plan.md

It computes artifact paths, writes artifacts atomically (temp file in the
same directory, fsync, os.replace) so readers never see partial content,
checks upstream dependencies before a stage starts, and removes artifacts
invalidated by reruns or swept by the cleanup job.
"""

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Iterable, Iterator, List, Optional

from src.rpi.feature import is_valid_feature_id
from src.rpi.state.models import (
    ARTIFACT_STAGES,
    Artifact,
    CommitStrategy,
    PipelineRun,
    Stage,
    required_artifacts,
)

logger = logging.getLogger(__name__)

ARTIFACT_FILE_NAMES = {
    Stage.RESEARCH: "research.md",
    Stage.PLAN: "plan.md",
}


class DependencyViolationError(Exception):
    """Raised when a stage would run without (or over) its dependencies.

    Attributes:
        feature_id: The affected feature.
        stage: The stage whose start or write was refused.
        missing: Upstream artifact stages that are absent or unreadable.
    """

    def __init__(
        self,
        feature_id: str,
        stage: Stage,
        message: str,
        missing: Optional[List[Stage]] = None,
    ):
        self.feature_id = feature_id
        self.stage = stage
        self.missing = missing or []
        super().__init__(message)


class ArtifactLifecycleManager:
    """Creates, reads, invalidates and removes per-stage artifacts.

    Attributes:
        root: Artifact retention root; one directory per feature id.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def feature_dir(self, feature_id: str) -> Path:
        """Directory holding a feature's artifacts.

        Raises:
            ValueError: If the feature id is not path-safe.
        """
        if not is_valid_feature_id(feature_id):
            raise ValueError(f"Invalid feature id: {feature_id!r}")
        return self.root / feature_id

    def path_for(self, feature_id: str, stage: Stage) -> Path:
        """Compute the artifact path for a feature and stage.

        Raises:
            ValueError: If the stage produces no artifact or the feature id
                is not path-safe.
        """
        if stage not in ARTIFACT_FILE_NAMES:
            raise ValueError(f"Stage {stage.value} does not produce an artifact")
        return self.feature_dir(feature_id) / ARTIFACT_FILE_NAMES[stage]

    def exists(self, feature_id: str, stage: Stage) -> bool:
        return self.path_for(feature_id, stage).is_file()

    def read(self, feature_id: str, stage: Stage) -> str:
        """Read an artifact's content.

        Raises:
            FileNotFoundError: If the artifact does not exist.
        """
        return self.path_for(feature_id, stage).read_text(encoding="utf-8")

    def require_upstream(self, run: PipelineRun, stage: Stage) -> None:
        """Check that every artifact ``stage`` depends on is present.

        Plan requires research; implement requires research and plan. Each
        must be recorded in the run and readable on disk.

        Raises:
            DependencyViolationError: If any upstream artifact is missing.
        """
        missing: List[Stage] = []
        for upstream in required_artifacts(stage):
            if not run.has_artifact(upstream):
                missing.append(upstream)
                continue
            try:
                self.read(run.feature_id, upstream)
            except OSError:
                missing.append(upstream)

        if missing:
            names = ", ".join(s.value for s in missing)
            logger.warning(
                "Stage dependency violation",
                extra={
                    "feature_id": run.feature_id,
                    "stage": stage.value,
                    "missing": [s.value for s in missing],
                },
            )
            raise DependencyViolationError(
                run.feature_id,
                stage,
                f"Cannot start {stage.value} for {run.feature_id}: "
                f"missing {names} artifact",
                missing=missing,
            )

    def write(
        self,
        run: PipelineRun,
        stage: Stage,
        content: str,
        committed_as: CommitStrategy = CommitStrategy.APPEND,
    ) -> Artifact:
        """Atomically write a stage's artifact.

        Refuses to replace an artifact that a recorded downstream artifact
        was built on; a rerun must invalidate it first.

        Returns:
            The Artifact describing the written file.

        Raises:
            DependencyViolationError: If upstream is missing or a downstream
                artifact still depends on this one.
        """
        self.require_upstream(run, stage)

        dependents = [
            s for s in ARTIFACT_STAGES
            if s.order > stage.order and run.has_artifact(s)
        ]
        if dependents:
            raise DependencyViolationError(
                run.feature_id,
                stage,
                f"Cannot overwrite {stage.value} for {run.feature_id}: "
                f"{', '.join(s.value for s in dependents)} depends on it",
            )

        path = self.path_for(run.feature_id, stage)
        self._atomic_write(path, content)

        logger.info(
            "Wrote artifact",
            extra={
                "feature_id": run.feature_id,
                "stage": stage.value,
                "path": str(path),
                "bytes": len(content.encode("utf-8")),
            },
        )

        return Artifact(
            stage=stage,
            content=content,
            path=str(path),
            committed_as=committed_as,
        )

    def invalidate(self, feature_id: str, stages: Iterable[Stage]) -> List[Path]:
        """Remove the artifact files of discarded stages.

        Returns:
            Paths that were removed.
        """
        removed: List[Path] = []
        for stage in stages:
            path = self.path_for(feature_id, stage)
            if path.exists():
                path.unlink()
                removed.append(path)
                logger.info(
                    "Invalidated artifact",
                    extra={
                        "feature_id": feature_id,
                        "stage": stage.value,
                        "path": str(path),
                    },
                )
        return removed

    def feature_dirs(self) -> Iterator[Path]:
        """Yield each feature directory under the artifact root."""
        if not self.root.is_dir():
            return
        for entry in sorted(self.root.iterdir()):
            if entry.is_dir() and is_valid_feature_id(entry.name):
                yield entry

    def remove_feature(self, feature_id: str) -> Path:
        """Delete a feature's artifact directory.

        Raises:
            OSError: If the directory cannot be removed.
        """
        target = self.feature_dir(feature_id)
        shutil.rmtree(target)
        logger.info(
            "Removed feature artifacts",
            extra={"feature_id": feature_id, "path": str(target)},
        )
        return target

    def _atomic_write(self, path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
