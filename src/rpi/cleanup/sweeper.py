"""Artifact retention sweep.

CleanupSweeper removes the artifact directories of runs that finished long
enough ago. It shares no mutable state with the orchestrator: it reads run
records and lock files and deletes directories, nothing else. Run records
are never modified.

A directory is removed only when all of these hold:
- no run lock is held on it
- a run record exists and is at ``completed``
- ``completed_at`` is older than the retention window
- the review pull request is not known to be open (advisory; a failed
  lookup does not block removal)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

from src.rpi.artifacts.locks import is_locked
from src.rpi.artifacts.manager import ArtifactLifecycleManager
from src.rpi.state.machine import RunRepository
from src.rpi.state.models import PipelineRun

logger = logging.getLogger(__name__)

ReviewStatusLookup = Callable[[PipelineRun], Awaitable[Optional[bool]]]

SKIP_LOCKED = "locked"
SKIP_NO_RUN = "no_run"
SKIP_IN_PROGRESS = "in_progress"
SKIP_RETAINED = "retained"
SKIP_REVIEW_OPEN = "review_open"


@dataclass
class SweepReport:
    """Outcome of one sweep.

    Attributes:
        removed: Feature ids whose directories were removed.
        skipped: Feature id → reason the directory was kept.
        errors: Feature id (or "commit") → error message.
        commit_sha: The cleanup commit, if one was made.
    """

    removed: List[str] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    commit_sha: Optional[str] = None


def cleanup_commit_message(removed: List[str]) -> str:
    """Message for the single commit recording a sweep's deletions."""
    count = len(removed)
    noun = "feature" if count == 1 else "features"
    lines = [f"[cleanup] Remove artifacts for {count} {noun}", ""]
    lines.extend(f"- {feature}" for feature in removed)
    return "\n".join(lines) + "\n"


class CleanupSweeper:
    """Removes expired artifact directories.

    Attributes:
        artifacts: The artifact manager owning the tree.
        repository: Run store, read only.
        retention_days: Days a completed run's artifacts are kept.
        committer: Commit layer for the summary commit; None skips it.
        review_status: Optional lookup reporting whether a run's review
            pull request is open.
    """

    def __init__(
        self,
        artifacts: ArtifactLifecycleManager,
        repository: RunRepository,
        retention_days: int = 30,
        committer=None,
        review_status: Optional[ReviewStatusLookup] = None,
    ):
        if retention_days < 0:
            raise ValueError("retention_days must be non-negative")
        self.artifacts = artifacts
        self.repository = repository
        self.retention = timedelta(days=retention_days)
        self.committer = committer
        self.review_status = review_status

    async def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """Scan the artifact root and remove expired feature directories.

        Args:
            now: Reference time (UTC); defaults to the current time.

        Returns:
            SweepReport describing what was removed, kept and failed.
        """
        now = now or datetime.now(timezone.utc)
        report = SweepReport()

        if self.committer is not None:
            try:
                await self.committer.checkout_base()
            except Exception as e:
                logger.error("Cannot check out base branch for cleanup: %s", e)
                report.errors["checkout"] = str(e)
                return report

        removed_paths: List[Path] = []
        for feature_dir in list(self.artifacts.feature_dirs()):
            feature = feature_dir.name
            reason = await self._skip_reason(feature_dir, now)
            if reason is not None:
                report.skipped[feature] = reason
                logger.info(
                    "Keeping artifacts",
                    extra={"feature_id": feature, "reason": reason},
                )
                continue

            try:
                removed_paths.append(self.artifacts.remove_feature(feature))
            except OSError as e:
                logger.error(
                    "Failed to remove artifacts for %s: %s",
                    feature,
                    e,
                    extra={"feature_id": feature},
                )
                report.errors[feature] = str(e)
                continue
            report.removed.append(feature)

        if report.removed and self.committer is not None:
            try:
                report.commit_sha = await self.committer.commit_cleanup(
                    cleanup_commit_message(report.removed), removed_paths
                )
            except Exception as e:
                logger.error("Failed to commit cleanup: %s", e)
                report.errors["commit"] = str(e)

        logger.info(
            "Cleanup sweep finished",
            extra={
                "removed": len(report.removed),
                "skipped": len(report.skipped),
                "errors": len(report.errors),
            },
        )
        return report

    async def _skip_reason(self, feature_dir: Path, now: datetime) -> Optional[str]:
        if is_locked(feature_dir):
            return SKIP_LOCKED

        run = await self.repository.get(feature_dir.name)
        if run is None:
            return SKIP_NO_RUN
        if not run.is_completed or run.completed_at is None:
            return SKIP_IN_PROGRESS
        if run.completed_at + self.retention > now:
            return SKIP_RETAINED

        if self.review_status is not None:
            try:
                is_open = await self.review_status(run)
            except Exception as e:
                logger.warning(
                    "Review status lookup failed for %s: %s",
                    run.feature_id,
                    e,
                )
                is_open = None
            if is_open:
                return SKIP_REVIEW_OPEN

        return None
