"""In-memory run repository.

Satisfies the RunRepository protocol without a database. Used for local
development when no database URL is configured, and by the test suite.
"""

from typing import Dict, List, Optional

from src.rpi.state.models import PipelineRun, Stage


class InMemoryRunRepository:
    """Minimal in-memory run repository keyed by feature id."""

    def __init__(self) -> None:
        self._runs: Dict[str, PipelineRun] = {}

    async def save(self, run: PipelineRun) -> None:
        self._runs[run.feature_id] = run.model_copy(deep=True)

    async def get(self, feature_id: str) -> Optional[PipelineRun]:
        run = self._runs.get(feature_id)
        return run.model_copy(deep=True) if run is not None else None

    async def get_by_item(self, item_id: str) -> Optional[PipelineRun]:
        for run in self._runs.values():
            if run.item_id == item_id:
                return run.model_copy(deep=True)
        return None

    async def get_by_review_object(
        self, repository: str, review_object_id: int
    ) -> Optional[PipelineRun]:
        for run in self._runs.values():
            if (
                run.repository == repository
                and run.review_object_id == review_object_id
            ):
                return run.model_copy(deep=True)
        return None

    async def list_all(self) -> List[PipelineRun]:
        return [run.model_copy(deep=True) for run in self._runs.values()]

    async def list_by_stage(self, stage: Stage) -> List[PipelineRun]:
        return [
            run.model_copy(deep=True)
            for run in self._runs.values()
            if run.current_stage == stage
        ]

    async def update_with_version(self, run: PipelineRun) -> bool:
        existing = self._runs.get(run.feature_id)
        if existing is None:
            return False
        if existing.version != run.version - 1:
            return False
        self._runs[run.feature_id] = run.model_copy(deep=True)
        return True

    def clear(self) -> None:
        self._runs.clear()
