"""Pipeline orchestrator driving runs through research → plan → implement.

Receives parsed webhook events, classifies them with the TriggerDispatcher
and executes the resulting intent:

- NewRun: create the run and execute every stage
- RerunRequest: rewind the run and execute from the target stage
- AdHocQuery: answer a question with a read-only agent call
- ScheduledCleanup: run the artifact retention sweep

Stage execution for one feature is serialized: requests for the same
feature id queue on a per-feature lock in arrival order. All executions
share one repository working tree, so they also hold a workspace lock
while a run's branch is checked out.

Any failure stops the stage loop, leaves the run at the stage that was
about to execute, records the error on the run, posts a failure comment
on the originating thread and emits an ERROR event. Nothing is retried.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional, Tuple

from src.rpi.artifacts.locks import RunLock
from src.rpi.artifacts.manager import ArtifactLifecycleManager, DependencyViolationError
from src.rpi.cleanup.sweeper import CleanupSweeper, SweepReport
from src.rpi.commit.strategy import CommitStrategyResolver
from src.rpi.dispatcher.dispatcher import TriggerDispatcher
from src.rpi.dispatcher.models import (
    AdHocQuery,
    Intent,
    NewRun,
    RerunRequest,
    ScheduledCleanup,
)
from src.rpi.events.emitter import EventEmitter
from src.rpi.events.models import EventType, PipelineEvent
from src.rpi.feature import item_feature_id
from src.rpi.github.client import GitHubClient
from src.rpi.github.review import (
    ReviewPublisher,
    format_failure_comment,
    format_query_answer,
)
from src.rpi.runner.agent import AgentExecutor
from src.rpi.runner.models import AgentInputs, AgentTimeoutError
from src.rpi.state.machine import StageStateMachine
from src.rpi.state.models import CommitStrategy, PipelineRun, Stage, required_artifacts
from src.rpi.vcs.git import stage_commit_message
from src.rpi.webhook.models import CommentEvent, LabelEvent

logger = logging.getLogger(__name__)

ACK_REACTION = "eyes"

# (repository, issue or pull request number) where comments are posted
Thread = Tuple[str, int]


class PipelineOrchestrator:
    """Classifies inbound events and drives pipeline runs.

    Attributes:
        state_machine: Run state and transitions.
        dispatcher: Event classification.
        resolver: Commit strategy for reruns.
        artifacts: Artifact tree owner.
        agent: External reasoning agent.
        committer: Commit layer (checkout, commit, rewind).
        github_client: Comments and reactions.
        review_publisher: Opens or updates the review pull request.
        sweeper: Artifact retention sweep.
        event_emitter: Observability sink.
    """

    def __init__(
        self,
        state_machine: StageStateMachine,
        dispatcher: TriggerDispatcher,
        resolver: CommitStrategyResolver,
        artifacts: ArtifactLifecycleManager,
        agent: AgentExecutor,
        committer: Any,
        github_client: GitHubClient,
        review_publisher: ReviewPublisher,
        sweeper: CleanupSweeper,
        event_emitter: EventEmitter,
    ):
        self.state_machine = state_machine
        self.dispatcher = dispatcher
        self.resolver = resolver
        self.artifacts = artifacts
        self.agent = agent
        self.committer = committer
        self.github_client = github_client
        self.review_publisher = review_publisher
        self.sweeper = sweeper
        self.event_emitter = event_emitter
        self._feature_locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._workspace_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def handle_event(self, event: Any) -> Optional[Intent]:
        """Classify an inbound event and acknowledge reruns.

        Looks up the run the event belongs to, classifies the event and,
        for a rerun, reacts to the triggering comment before returning.
        The caller dispatches the returned intent.

        Returns:
            The classified intent, or None when the event is ignored.
        """
        existing = await self._find_run(event)
        intent = self.dispatcher.classify(event, existing)

        if intent is None:
            logger.debug(
                "Event not addressed to the pipeline",
                extra={"event_kind": getattr(event, "kind", type(event).__name__)},
            )
            return None

        logger.info(
            "Classified event",
            extra={
                "intent": intent.kind,
                "feature_id": getattr(intent, "feature_id", None),
            },
        )

        if isinstance(intent, RerunRequest):
            await self._acknowledge(intent)
        return intent

    async def process_event(self, event: Any) -> Optional[Intent]:
        """Classify an event and execute its intent to completion."""
        intent = await self.handle_event(event)
        if intent is not None:
            await self.dispatch(intent)
        return intent

    async def dispatch(self, intent: Intent) -> Any:
        """Execute a classified intent.

        Failures are reported on the originating thread by the intent
        handlers; anything unexpected is logged here and not raised, so
        the method is safe to run as a background task.
        """
        try:
            if isinstance(intent, NewRun):
                return await self.start_run(intent)
            if isinstance(intent, RerunRequest):
                return await self.rerun(intent)
            if isinstance(intent, AdHocQuery):
                return await self.answer_query(intent)
            if isinstance(intent, ScheduledCleanup):
                return await self.run_cleanup(intent)
        except Exception:
            logger.exception(
                "Unhandled error dispatching intent",
                extra={"intent": intent.kind},
            )
            return None

        logger.warning("Unknown intent type: %s", type(intent).__name__)
        return None

    async def start_run(self, intent: NewRun) -> Optional[PipelineRun]:
        """Create a run for a labeled issue and execute every stage.

        When another issue already owns the derived feature id, the run is
        created under the id qualified with this issue's number.

        Returns:
            The run after execution, or None when the issue already has a run.
        """
        thread = (intent.repository, intent.item_number)
        feature = await self._claim_feature_id(intent)

        async with self._serialized(feature):
            if await self.state_machine.get_by_item(intent.item_id) is not None:
                logger.info(
                    "Run already exists, ignoring trigger",
                    extra={"feature_id": feature, "item_id": intent.item_id},
                )
                return None

            try:
                run = await self.state_machine.create(
                    feature_id=feature,
                    item_id=intent.item_id,
                    repository=intent.repository,
                    item_number=intent.item_number,
                    title=intent.title,
                    author=intent.author,
                    body=intent.body,
                )
            except Exception as exc:
                await self._report_failure(
                    None, feature, intent.repository, Stage.RESEARCH,
                    exc, thread,
                )
                return None

            await self._emit(
                EventType.STATE_TRANSITION,
                run,
                {"from_stage": None, "to_stage": Stage.RESEARCH.value},
            )

            return await self._execute(run, CommitStrategy.APPEND, None, thread)

    async def rerun(self, intent: RerunRequest) -> Optional[PipelineRun]:
        """Rewind a run to the requested stage and execute from there.

        A rerun against a closed issue, a closed or merged review pull
        request, or a stage whose upstream artifacts are missing is rejected
        as a dependency violation and leaves the run untouched.

        Returns:
            The run after execution.
        """
        thread = (intent.repository, intent.thread_number)
        target = intent.target_stage

        async with self._serialized(intent.feature_id):
            run = await self.state_machine.get(intent.feature_id)
            if run is None:
                logger.warning(
                    "Rerun for unknown run", extra={"feature_id": intent.feature_id}
                )
                return None

            try:
                await self._require_open_review(run, intent)

                await self.committer.checkout(run.branch_name)
                self.artifacts.require_upstream(run, target)

                strategy = await self.resolver.resolve_for_run(
                    intent.requesting_actor, run
                )

                # State first: a failed rewind leaves both history and run intact
                previous_stage = run.current_stage
                run, invalidated = await self.state_machine.rewind(
                    run.feature_id,
                    target,
                    details={
                        "actor": intent.requesting_actor,
                        "strategy": strategy.value,
                        "feedback": intent.feedback,
                    },
                )
                self.artifacts.invalidate(run.feature_id, invalidated)
                if strategy == CommitStrategy.REWRITE:
                    await self.committer.rewind(run.branch_name, target)
            except Exception as exc:
                await self._fail(run, target, exc, thread)
                return await self.state_machine.get(intent.feature_id)

            await self._emit(
                EventType.RERUN,
                run,
                {
                    "from_stage": previous_stage.value,
                    "to_stage": target.value,
                    "strategy": strategy.value,
                    "actor": intent.requesting_actor,
                    "invalidated": [s.value for s in invalidated],
                },
            )

            return await self._execute(run, strategy, intent.feedback, thread)

    async def answer_query(self, intent: AdHocQuery) -> Optional[str]:
        """Answer a bot mention with a read-only agent call.

        Produces no artifact, no commit and no state change.

        Returns:
            The posted answer, or None on failure.
        """
        thread = (intent.repository, intent.thread_number)
        run = None
        if intent.feature_id:
            run = await self.state_machine.get(intent.feature_id)

        inputs = AgentInputs(
            feature_id=intent.feature_id or "",
            title=run.title if run else f"{intent.repository}#{intent.thread_number}",
            body=run.body if run else "",
            upstream={s: a.content for s, a in run.artifacts.items()} if run else {},
            question=intent.question,
        )

        try:
            output = await self.agent.run(None, inputs, read_only=True)
        except Exception as exc:
            await self._report_failure(
                None, intent.feature_id, intent.repository, None, exc, thread
            )
            return None

        answer = output.content.strip()
        await self._comment(thread, format_query_answer(intent.question, answer))
        return answer

    async def run_cleanup(self, intent: ScheduledCleanup) -> SweepReport:
        """Run the retention sweep at the tick's time."""
        async with self._workspace_lock:
            report = await self.sweeper.sweep(now=intent.time)

        await self._safe_emit(
            PipelineEvent(
                event_type=EventType.CLEANUP,
                details={
                    "removed": report.removed,
                    "skipped": report.skipped,
                    "errors": report.errors,
                },
            )
        )
        return report

    # ------------------------------------------------------------------
    # Stage execution
    # ------------------------------------------------------------------

    async def _execute(
        self,
        run: PipelineRun,
        strategy: CommitStrategy,
        feedback: Optional[str],
        thread: Thread,
    ) -> PipelineRun:
        """Execute stages from ``run.current_stage`` until completed.

        Reviewer feedback applies to the first stage executed.
        """
        started = time.monotonic()

        try:
            await self.committer.checkout(run.branch_name)
            lock = RunLock(self.artifacts.feature_dir(run.feature_id))
            lock.acquire()
        except Exception as exc:
            await self._fail(run, run.current_stage, exc, thread)
            return await self.state_machine.get(run.feature_id) or run

        try:
            while not run.is_completed:
                stage = run.current_stage
                try:
                    run = await self._run_stage(run, stage, strategy, feedback)
                except Exception as exc:
                    await self._fail(run, stage, exc, thread)
                    return await self.state_machine.get(run.feature_id) or run
                feedback = None
        finally:
            lock.release()

        await self._emit(
            EventType.COMPLETION,
            run,
            {
                "pr_number": run.review_object_id,
                "duration_seconds": time.monotonic() - started,
            },
        )
        logger.info(
            "Pipeline run completed",
            extra={"feature_id": run.feature_id, "pr_number": run.review_object_id},
        )
        return run

    async def _run_stage(
        self,
        run: PipelineRun,
        stage: Stage,
        strategy: CommitStrategy,
        feedback: Optional[str],
    ) -> PipelineRun:
        """Execute one stage and advance the run.

        Raises:
            DependencyViolationError: If upstream artifacts are missing.
            AgentExecutionError: If the agent fails or times out.
            GitCommandError: If the stage commit fails.
            GitHubAPIError: If the review pull request cannot be published.
        """
        self.artifacts.require_upstream(run, stage)

        inputs = AgentInputs(
            feature_id=run.feature_id,
            title=run.title,
            body=run.body,
            upstream={
                s: self.artifacts.read(run.feature_id, s)
                for s in required_artifacts(stage)
            },
            feedback=feedback,
        )

        logger.info(
            "Executing stage",
            extra={
                "feature_id": run.feature_id,
                "stage": stage.value,
                "strategy": strategy.value,
            },
        )
        output = await self.agent.run(stage, inputs)
        message = stage_commit_message(stage, run.title, feedback)

        if stage.produces_artifact:
            artifact = self.artifacts.write(
                run, stage, output.content, committed_as=strategy
            )
            try:
                sha = await self.committer.commit(
                    run.branch_name, stage, strategy, message, [Path(artifact.path)]
                )
            except Exception:
                self.artifacts.invalidate(run.feature_id, [stage])
                raise
            artifact = artifact.model_copy(update={"commit_sha": sha})
            updated = await self.state_machine.complete_stage(
                run.feature_id,
                stage,
                artifact=artifact,
                details={"strategy": strategy.value, "commit_sha": sha},
            )
        else:
            sha = await self.committer.commit(
                run.branch_name, stage, strategy, message, None
            )
            number, url = await self.review_publisher.open_or_update(
                run, output.content
            )
            await self.state_machine.set_review_object(run.feature_id, number)
            updated = await self.state_machine.complete_stage(
                run.feature_id,
                stage,
                details={
                    "strategy": strategy.value,
                    "commit_sha": sha,
                    "pr_number": number,
                    "pr_url": url,
                },
            )

        await self._emit(
            EventType.STATE_TRANSITION,
            updated,
            {
                "from_stage": stage.value,
                "to_stage": updated.current_stage.value,
                "strategy": strategy.value,
            },
        )
        return updated

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _serialized(self, feature_id: str) -> AsyncIterator[None]:
        """Hold the feature's lock, then the workspace lock."""
        feature_lock = self._feature_locks.setdefault(feature_id, asyncio.Lock())
        self._lock_users[feature_id] = self._lock_users.get(feature_id, 0) + 1
        try:
            async with feature_lock:
                async with self._workspace_lock:
                    yield
        finally:
            # Drop the lock once nobody holds or waits for it
            self._lock_users[feature_id] -= 1
            if not self._lock_users[feature_id]:
                del self._lock_users[feature_id]
                del self._feature_locks[feature_id]

    async def _claim_feature_id(self, intent: NewRun) -> str:
        """The feature id a new run for the intent's issue is created under."""
        owner = await self.state_machine.get(intent.feature_id)
        if owner is None or owner.item_id == intent.item_id:
            return intent.feature_id

        qualified = item_feature_id(intent.feature_id, intent.item_number)
        logger.info(
            "Feature id belongs to another issue, qualifying with issue number",
            extra={
                "feature_id": intent.feature_id,
                "owner_item_id": owner.item_id,
                "item_id": intent.item_id,
                "qualified_feature_id": qualified,
            },
        )
        return qualified

    async def _find_run(self, event: Any) -> Optional[PipelineRun]:
        """The run an inbound event's issue or pull request belongs to."""
        if isinstance(event, LabelEvent):
            return await self.state_machine.get_by_item(event.item_id)
        if isinstance(event, CommentEvent):
            if event.is_pull_request:
                return await self.state_machine.get_by_review_object(
                    event.repository, event.item_number
                )
            return await self.state_machine.get_by_item(event.item_id)
        return None

    async def _require_open_review(
        self, run: PipelineRun, intent: RerunRequest
    ) -> None:
        """Reject reruns once the issue or review pull request is closed.

        Raises:
            DependencyViolationError: If the thread or the run's pull
                request is closed or merged.
        """
        number = intent.review_object_id or run.review_object_id
        finalized = intent.review_finalized
        if not finalized and run.review_object_id is not None:
            finalized = await self.review_publisher.is_review_open(run) is False

        if finalized:
            raise DependencyViolationError(
                run.feature_id,
                intent.target_stage,
                f"Review #{number} is closed; it no longer accepts reruns"
                if number is not None
                else f"Issue #{run.item_number} is closed; it no longer accepts reruns",
            )

    async def _acknowledge(self, intent: RerunRequest) -> None:
        owner, _, repo = intent.repository.partition("/")
        try:
            await self.github_client.add_reaction(
                owner, repo, intent.comment_id, ACK_REACTION
            )
        except Exception as exc:
            logger.warning(
                "Failed to acknowledge rerun comment: %s",
                exc,
                extra={"feature_id": intent.feature_id, "comment_id": intent.comment_id},
            )

    async def _fail(
        self,
        run: PipelineRun,
        stage: Stage,
        exc: Exception,
        thread: Thread,
    ) -> None:
        """Record a failed request on the run and report it."""
        try:
            await self.state_machine.record_failure(run.feature_id, stage, str(exc))
        except Exception:
            logger.exception(
                "Failed to record stage failure",
                extra={"feature_id": run.feature_id},
            )
        await self._report_failure(
            run, run.feature_id, run.repository, stage, exc, thread
        )

    async def _report_failure(
        self,
        run: Optional[PipelineRun],
        feature_id: Optional[str],
        repository: str,
        stage: Optional[Stage],
        exc: Exception,
        thread: Thread,
    ) -> None:
        """Log, comment on the thread and emit ERROR (and TIMEOUT)."""
        logger.error(
            "Pipeline request failed: %s",
            exc,
            exc_info=not isinstance(exc, DependencyViolationError),
            extra={
                "feature_id": feature_id,
                "stage": stage.value if stage else None,
                "error_type": type(exc).__name__,
            },
        )

        await self._comment(thread, format_failure_comment(stage, str(exc), feature_id))

        details = {
            "stage": stage.value if stage else None,
            "error_message": str(exc),
            "error_type": type(exc).__name__,
        }
        await self._safe_emit(
            PipelineEvent(
                event_type=EventType.ERROR,
                feature_id=feature_id,
                repository=repository,
                details=details,
            )
        )
        if isinstance(exc, AgentTimeoutError):
            await self._safe_emit(
                PipelineEvent(
                    event_type=EventType.TIMEOUT,
                    feature_id=feature_id,
                    repository=repository,
                    details={
                        "stage": details["stage"],
                        "timeout_seconds": exc.timeout_seconds,
                    },
                )
            )

    async def _comment(self, thread: Thread, body: str) -> None:
        """Post a comment; failures are logged, never raised."""
        repository, number = thread
        owner, _, repo = repository.partition("/")
        try:
            await self.github_client.create_comment(owner, repo, number, body)
        except Exception:
            logger.exception(
                "Failed to post comment",
                extra={"repository": repository, "number": number},
            )

    async def _emit(
        self,
        event_type: EventType,
        run: PipelineRun,
        details: Dict[str, Any],
    ) -> None:
        await self._safe_emit(
            PipelineEvent(
                event_type=event_type,
                feature_id=run.feature_id,
                repository=run.repository,
                details=details,
            )
        )

    async def _safe_emit(self, event: PipelineEvent) -> None:
        """Emit an event, swallowing exceptions to avoid disrupting the pipeline."""
        try:
            await self.event_emitter.emit(event)
        except Exception:
            logger.exception(
                "Failed to emit pipeline event",
                extra={
                    "event_type": event.event_type.value,
                    "feature_id": event.feature_id,
                },
            )
