"""PostgreSQL repository for pipeline run persistence.

This module implements the RunRepository protocol using asyncpg for
async PostgreSQL access. It provides:
- Connection pooling for production use
- Atomic transactions for run updates
- Optimistic locking via version field
- Stage history reconstruction from the transitions table

Source:
- migrations/001_pipeline_runs.sql (schema definition)
- src/rpi/state/machine.py (RunRepository protocol)
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg

from src.rpi.state.models import (
    Artifact,
    PipelineRun,
    Stage,
    StageTransition,
)


logger = logging.getLogger(__name__)


_RUN_COLUMNS = """
    feature_id,
    item_id,
    repository,
    item_number,
    title,
    body,
    current_stage,
    author,
    artifacts,
    review_object_id,
    error,
    created_at,
    updated_at,
    completed_at,
    version
"""


class DatabaseError(Exception):
    """Raised when a database operation fails.

    Attributes:
        message: Human-readable error description.
        original_error: The underlying exception, if any.
    """

    def __init__(
        self,
        message: str,
        original_error: Optional[Exception] = None,
    ):
        self.message = message
        self.original_error = original_error
        super().__init__(message)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _dump_artifacts(run: PipelineRun) -> str:
    # List form keeps completion order through JSONB, which reorders object keys
    return json.dumps(
        [artifact.model_dump(mode="json") for artifact in run.artifacts.values()]
    )


def _load_artifacts(raw: Any) -> Dict[Stage, Artifact]:
    if not raw:
        return {}
    items = json.loads(raw) if isinstance(raw, str) else raw
    artifacts: Dict[Stage, Artifact] = {}
    for item in items:
        artifact = Artifact.model_validate(item)
        artifacts[artifact.stage] = artifact
    return artifacts


class PostgresRunRepository:
    """PostgreSQL implementation of the RunRepository protocol.

    The repository expects the schema from migrations/001_pipeline_runs.sql
    to be applied before use.

    Attributes:
        connection_string: PostgreSQL connection URL.
        min_pool_size: Minimum connections in pool.
        max_pool_size: Maximum connections in pool.

    Example:
        >>> async with PostgresRunRepository("postgresql://...") as repo:
        ...     run = await repo.get("add-rate-limiting")
    """

    def __init__(
        self,
        connection_string: str,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ):
        self.connection_string = connection_string
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def pool(self) -> asyncpg.Pool:
        """Get the connection pool, raising if not connected.

        Raises:
            DatabaseError: If the pool is not initialized.
        """
        if self._pool is None:
            raise DatabaseError(
                "Database pool not initialized. Call connect() first."
            )
        return self._pool

    async def connect(self) -> None:
        """Initialize the connection pool.

        Raises:
            DatabaseError: If connection fails.
        """
        if self._pool is not None:
            logger.warning("Connection pool already initialized")
            return

        try:
            logger.info(
                "Connecting to PostgreSQL",
                extra={
                    "min_pool_size": self.min_pool_size,
                    "max_pool_size": self.max_pool_size,
                },
            )
            self._pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
            )
            logger.info("PostgreSQL connection pool established")
        except Exception as e:
            logger.error(
                "Failed to connect to PostgreSQL",
                extra={"error": str(e)},
            )
            raise DatabaseError(
                f"Failed to connect to PostgreSQL: {e}",
                original_error=e,
            ) from e

    async def disconnect(self) -> None:
        """Close the connection pool."""
        if self._pool is not None:
            logger.info("Closing PostgreSQL connection pool")
            await self._pool.close()
            self._pool = None

    async def __aenter__(self) -> "PostgresRunRepository":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[asyncpg.Connection]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def _insert_transitions(
        self,
        conn: asyncpg.Connection,
        feature_id: str,
        transitions: List[StageTransition],
    ) -> None:
        for transition in transitions:
            await conn.execute(
                """
                INSERT INTO run_transitions (
                    feature_id,
                    from_stage,
                    to_stage,
                    timestamp,
                    details
                ) VALUES ($1, $2, $3, $4, $5)
                """,
                feature_id,
                transition.from_stage.value,
                transition.to_stage.value,
                transition.timestamp,
                json.dumps(transition.details) if transition.details else None,
            )

    async def save(self, run: PipelineRun) -> None:
        """Insert a new pipeline run.

        Raises:
            DatabaseError: If the run already exists or the insert fails.
        """
        try:
            async with self._transaction() as conn:
                await conn.execute(
                    f"""
                    INSERT INTO pipeline_runs ({_RUN_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11,
                            $12, $13, $14, $15)
                    """,
                    run.feature_id,
                    run.item_id,
                    run.repository,
                    run.item_number,
                    run.title,
                    run.body,
                    run.current_stage.value,
                    run.author,
                    _dump_artifacts(run),
                    run.review_object_id,
                    run.error,
                    run.created_at,
                    run.updated_at,
                    run.completed_at,
                    run.version,
                )
                await self._insert_transitions(
                    conn, run.feature_id, run.state_history
                )

                logger.info(
                    "Saved pipeline run",
                    extra={
                        "feature_id": run.feature_id,
                        "stage": run.current_stage.value,
                        "version": run.version,
                    },
                )

        except asyncpg.UniqueViolationError as e:
            logger.error(
                "Pipeline run already exists",
                extra={"feature_id": run.feature_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Pipeline run already exists for feature: {run.feature_id}",
                original_error=e,
            ) from e
        except Exception as e:
            logger.error(
                "Failed to save pipeline run",
                extra={"feature_id": run.feature_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to save pipeline run: {e}",
                original_error=e,
            ) from e

    async def _fetch_one(
        self, where: str, *args: Any
    ) -> Optional[PipelineRun]:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT {_RUN_COLUMNS} FROM pipeline_runs WHERE {where}",
                    *args,
                )
                if row is None:
                    return None
                return await self._build_run(conn, row)
        except DatabaseError:
            raise
        except Exception as e:
            logger.error(
                "Failed to get pipeline run",
                extra={"where": where, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to get pipeline run: {e}",
                original_error=e,
            ) from e

    async def _build_run(
        self, conn: asyncpg.Connection, row: asyncpg.Record
    ) -> PipelineRun:
        transition_rows = await conn.fetch(
            """
            SELECT from_stage, to_stage, timestamp, details
            FROM run_transitions
            WHERE feature_id = $1
            ORDER BY timestamp ASC, id ASC
            """,
            row["feature_id"],
        )

        state_history = [
            StageTransition(
                from_stage=Stage(tr["from_stage"]),
                to_stage=Stage(tr["to_stage"]),
                timestamp=_utc(tr["timestamp"]),
                details=json.loads(tr["details"]) if tr["details"] else {},
            )
            for tr in transition_rows
        ]

        return PipelineRun(
            feature_id=row["feature_id"],
            item_id=row["item_id"],
            repository=row["repository"],
            item_number=row["item_number"],
            title=row["title"],
            body=row["body"] or "",
            current_stage=Stage(row["current_stage"]),
            author=row["author"],
            artifacts=_load_artifacts(row["artifacts"]),
            review_object_id=row["review_object_id"],
            state_history=state_history,
            error=row["error"],
            created_at=_utc(row["created_at"]),
            updated_at=_utc(row["updated_at"]),
            completed_at=_utc(row["completed_at"]),
            version=row["version"],
        )

    async def _fetch_many(self, where: str, *args: Any) -> List[PipelineRun]:
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {_RUN_COLUMNS} FROM pipeline_runs
                    WHERE {where}
                    ORDER BY created_at ASC
                    """,
                    *args,
                )
                return [await self._build_run(conn, row) for row in rows]
        except DatabaseError:
            raise
        except Exception as e:
            logger.error(
                "Failed to list pipeline runs",
                extra={"where": where, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to list pipeline runs: {e}",
                original_error=e,
            ) from e

    async def get(self, feature_id: str) -> Optional[PipelineRun]:
        return await self._fetch_one("feature_id = $1", feature_id)

    async def get_by_item(self, item_id: str) -> Optional[PipelineRun]:
        return await self._fetch_one("item_id = $1", item_id)

    async def get_by_review_object(
        self, repository: str, review_object_id: int
    ) -> Optional[PipelineRun]:
        return await self._fetch_one(
            "repository = $1 AND review_object_id = $2",
            repository,
            review_object_id,
        )

    async def list_all(self) -> List[PipelineRun]:
        return await self._fetch_many("TRUE")

    async def list_by_stage(self, stage: Stage) -> List[PipelineRun]:
        return await self._fetch_many("current_stage = $1", stage.value)

    async def update_with_version(self, run: PipelineRun) -> bool:
        """Update a run with optimistic locking.

        The update only applies if the stored version equals
        ``run.version - 1``. Transitions appended since the last update
        are inserted in the same transaction.

        Returns:
            True if update succeeded, False if version conflict.

        Raises:
            DatabaseError: If the update fails for reasons other than
                           a version conflict.
        """
        expected_version = run.version - 1

        try:
            async with self._transaction() as conn:
                result = await conn.execute(
                    """
                    UPDATE pipeline_runs
                    SET
                        current_stage = $2,
                        author = $3,
                        artifacts = $4,
                        review_object_id = $5,
                        error = $6,
                        updated_at = $7,
                        completed_at = $8,
                        version = $9
                    WHERE feature_id = $1 AND version = $10
                    """,
                    run.feature_id,
                    run.current_stage.value,
                    run.author,
                    _dump_artifacts(run),
                    run.review_object_id,
                    run.error,
                    run.updated_at,
                    run.completed_at,
                    run.version,
                    expected_version,
                )

                rows_affected = int(result.split()[-1])
                if rows_affected == 0:
                    logger.warning(
                        "Version conflict during run update",
                        extra={
                            "feature_id": run.feature_id,
                            "expected_version": expected_version,
                        },
                    )
                    return False

                existing_count = await conn.fetchval(
                    "SELECT COUNT(*) FROM run_transitions WHERE feature_id = $1",
                    run.feature_id,
                )
                new_transitions = run.state_history[existing_count:]
                await self._insert_transitions(
                    conn, run.feature_id, new_transitions
                )

                logger.info(
                    "Updated pipeline run",
                    extra={
                        "feature_id": run.feature_id,
                        "stage": run.current_stage.value,
                        "version": run.version,
                        "new_transitions": len(new_transitions),
                    },
                )
                return True

        except Exception as e:
            logger.error(
                "Failed to update pipeline run",
                extra={"feature_id": run.feature_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to update pipeline run: {e}",
                original_error=e,
            ) from e

    async def health_check(self) -> bool:
        """Check that the database answers a trivial query."""
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception as e:
            logger.warning(
                "Database health check failed",
                extra={"error": str(e)},
            )
            return False
