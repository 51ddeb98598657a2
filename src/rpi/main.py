"""FastAPI application entry point for the RPI pipeline.

Receives GitHub webhooks and scheduler ticks, and hands them to the
PipelineOrchestrator. Requests are acknowledged immediately; stage work
runs in background tasks.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional, Set, Union

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse

from .artifacts.manager import ArtifactLifecycleManager
from .cleanup.sweeper import CleanupSweeper
from .commit.strategy import CommitStrategyResolver
from .config import RPISettings, get_settings
from .dispatcher.dispatcher import TriggerDispatcher
from .events.emitter import EventSinkType, create_event_emitter
from .events.metrics import generate_metrics_output
from .github.client import GitHubClient
from .github.review import ReviewPublisher
from .orchestrator import PipelineOrchestrator
from .runner.agent import AgentCLIRunner
from .state.machine import StageStateMachine
from .state.memory import InMemoryRunRepository
from .state.repository import PostgresRunRepository
from .vcs.git import GitCommitter
from .webhook.handler import WebhookHandler
from .webhook.models import ScheduleTick

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Global instances, initialized during lifespan startup
settings: RPISettings
orchestrator: Optional[PipelineOrchestrator] = None
webhook_handler: Optional[WebhookHandler] = None
github_client: Optional[GitHubClient] = None
run_repository: Optional[Union[PostgresRunRepository, InMemoryRunRepository]] = None

# Strong references to in-flight background work
_background_tasks: Set[asyncio.Task] = set()


def _redact_secret(value: str, visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters."""
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(settings: RPISettings) -> None:
    """Log configuration values with secrets redacted."""
    logger.info("RPI pipeline configuration:")
    logger.info(f"  GitHub Base URL: {settings.github_base_url}")
    logger.info(f"  GitHub Token: {_redact_secret(settings.github_token)}")
    logger.info(
        f"  GitHub Webhook Secret: {_redact_secret(settings.github_webhook_secret)}"
    )
    logger.info(f"  Trigger Label: {settings.trigger_label}")
    logger.info(f"  Bot Handle: @{settings.bot_handle}")
    logger.info(f"  Repository Path: {settings.repo_path}")
    logger.info(f"  Artifact Root: {settings.artifact_root}")
    logger.info(f"  Base Branch: {settings.base_branch}")
    logger.info(f"  Artifact Retention Days: {settings.artifact_retention_days}")
    logger.info(f"  Agent CLI Path: {settings.agent_cli_path}")
    logger.info(f"  Agent Timeout Seconds: {settings.agent_timeout_seconds}")
    if settings.database_url:
        logger.info(f"  Database URL: {_redact_secret(settings.database_url)}")
    else:
        logger.info("  Database URL: (unset, runs kept in memory)")
    logger.info(f"  Host: {settings.host}")
    logger.info(f"  Port: {settings.port}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load settings, wire dependencies, and close clients on shutdown."""
    global settings, orchestrator, webhook_handler, github_client, run_repository

    logger.info("RPI pipeline starting up...")

    settings = get_settings()
    _log_configuration(settings)

    if settings.database_url:
        run_repository = PostgresRunRepository(settings.database_url)
        await run_repository.connect()
    else:
        run_repository = InMemoryRunRepository()

    webhook_handler = WebhookHandler(secret=settings.github_webhook_secret)
    github_client = GitHubClient(
        token=settings.github_token,
        base_url=settings.github_base_url,
    )
    orchestrator = _build_orchestrator(settings, github_client, run_repository)

    logger.info("RPI pipeline started successfully")

    yield

    logger.info("RPI pipeline shutting down...")

    if _background_tasks:
        await asyncio.gather(*_background_tasks, return_exceptions=True)
    if github_client is not None:
        await github_client.close()
    if isinstance(run_repository, PostgresRunRepository):
        await run_repository.disconnect()

    logger.info("RPI pipeline shutdown complete")


def _build_orchestrator(
    cfg: RPISettings,
    gh_client: GitHubClient,
    repository: Union[PostgresRunRepository, InMemoryRunRepository],
) -> PipelineOrchestrator:
    """Wire all pipeline dependencies into a PipelineOrchestrator."""
    state_machine = StageStateMachine(repository=repository)
    artifacts = ArtifactLifecycleManager(cfg.artifact_root)
    committer = GitCommitter(
        repo_path=cfg.repo_path,
        base_branch=cfg.base_branch,
        remote=cfg.git_remote or None,
    )
    review_publisher = ReviewPublisher(
        client=gh_client,
        base_branch=cfg.base_branch,
        repo_path=cfg.repo_path,
        web_url=cfg.github_web_url,
    )

    async def lookup_author(run):
        issue = await gh_client.get_issue(run.owner, run.repo, run.item_number)
        return (issue.get("user") or {}).get("login")

    return PipelineOrchestrator(
        state_machine=state_machine,
        dispatcher=TriggerDispatcher(
            trigger_label=cfg.trigger_label,
            bot_handle=cfg.bot_handle,
        ),
        resolver=CommitStrategyResolver(author_lookup=lookup_author),
        artifacts=artifacts,
        agent=AgentCLIRunner(
            cli_path=cfg.agent_cli_path,
            workspace_path=cfg.repo_path,
            timeout_seconds=cfg.agent_timeout_seconds,
        ),
        committer=committer,
        github_client=gh_client,
        review_publisher=review_publisher,
        sweeper=CleanupSweeper(
            artifacts=artifacts,
            repository=repository,
            retention_days=cfg.artifact_retention_days,
            committer=committer,
            review_status=review_publisher.is_review_open,
        ),
        event_emitter=create_event_emitter(
            [EventSinkType.LOGGING, EventSinkType.METRICS]
        ),
    )


def _spawn(coro) -> asyncio.Task:
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


app = FastAPI(
    title="RPI Pipeline",
    description="Research → Plan → Implement orchestration for GitHub issues",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health():
    """Liveness probe endpoint."""
    return {"status": "healthy"}


@app.get("/ready")
async def ready():
    """Readiness probe endpoint.

    Raises:
        HTTPException: 503 if the database is unreachable.
    """
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")

    database_status = "in_memory"
    if isinstance(run_repository, PostgresRunRepository):
        healthy = await run_repository.health_check()
        database_status = "healthy" if healthy else "unhealthy"
        if not healthy:
            raise HTTPException(status_code=503, detail="Database unavailable")

    return {"status": "ready", "dependencies": {"database": database_status}}


@app.get("/metrics", response_class=PlainTextResponse)
async def metrics():
    """Prometheus metrics endpoint."""
    return PlainTextResponse(generate_metrics_output().decode("utf-8"))


@app.post("/webhooks/github")
async def github_webhook(request: Request):
    """GitHub webhook receiver endpoint.

    Verifies the delivery signature, classifies the event and schedules
    its execution. Reruns are acknowledged with a reaction before the
    response is returned.
    """
    if webhook_handler is None or orchestrator is None:
        logger.error("Pipeline not initialized")
        raise HTTPException(status_code=503, detail="Pipeline not initialized")

    body = await request.body()
    if not webhook_handler.verify_signature(
        body, request.headers.get("X-Hub-Signature-256")
    ):
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    event = webhook_handler.parse(request.headers.get("X-GitHub-Event"), payload)
    if event is None:
        return {"status": "ignored", "message": "Unsupported or invalid event"}

    intent = await orchestrator.handle_event(event)
    if intent is None:
        return {"status": "ignored", "message": "Not addressed to the pipeline"}

    _spawn(orchestrator.dispatch(intent))
    return {
        "status": "accepted",
        "intent": intent.kind,
        "feature_id": getattr(intent, "feature_id", None),
    }


@app.post("/cleanup")
async def cleanup():
    """Scheduled cleanup tick, called by the host scheduler."""
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized")

    intent = await orchestrator.handle_event(ScheduleTick())
    _spawn(orchestrator.dispatch(intent))
    return {"status": "accepted", "intent": intent.kind}


if __name__ == "__main__":
    import uvicorn

    dev_settings = get_settings()
    uvicorn.run(
        "src.rpi.main:app",
        host=dev_settings.host,
        port=dev_settings.port,
        reload=True,
    )
