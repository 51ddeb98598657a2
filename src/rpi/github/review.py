"""Review pull request publishing and pipeline comments.

ReviewPublisher opens the pull request that reviews a run's branch, or
updates it in place when the run already has one. The module also formats
the comments the pipeline posts on issue and pull request threads.
"""

import logging
from pathlib import Path
from typing import Dict, Optional, Tuple

from src.rpi.github.client import GitHubClient
from src.rpi.state.models import ARTIFACT_STAGES, PipelineRun, Stage

logger = logging.getLogger(__name__)

FAILURE_HEADER = "### ❌ RPI pipeline failed"
QUERY_HEADER = "### 💬 RPI pipeline"


def build_pull_request_title(run: PipelineRun) -> str:
    return f"[rpi] {run.title}"


def build_pull_request_body(
    run: PipelineRun,
    summary: str,
    artifact_links: Dict[Stage, str],
) -> str:
    """Build the review pull request description.

    Args:
        run: The completed run.
        summary: The implement stage's change summary.
        artifact_links: Stage → link (or path) of each artifact.
    """
    lines = [
        "## Summary",
        "",
        summary.strip() or "_No summary provided._",
        "",
        "## Artifacts",
        "",
    ]
    for stage in ARTIFACT_STAGES:
        link = artifact_links.get(stage)
        if link is not None:
            lines.append(f"- {stage.value.capitalize()}: [{Path(link).name}]({link})")
    lines.extend([
        "",
        "Comment `replan <feedback>` or `reresearch <feedback>` to rerun a stage.",
        "",
        f"Closes #{run.item_number}",
    ])
    return "\n".join(lines) + "\n"


def format_failure_comment(
    stage: Optional[Stage],
    error: str,
    feature_id: Optional[str] = None,
) -> str:
    """Format the comment posted when a request fails.

    Example:
        >>> print(format_failure_comment(Stage.PLAN, "Agent timed out", "add-cache"))
        ### ❌ RPI pipeline failed
        <BLANKLINE>
        **Feature:** `add-cache`
        **Stage:** plan
        <BLANKLINE>
        Agent timed out
        <BLANKLINE>
        The run was left at its previous stage. Comment `replan` or `reresearch` to try again.
    """
    lines = [FAILURE_HEADER, ""]
    if feature_id:
        lines.append(f"**Feature:** `{feature_id}`")
    if stage is not None:
        lines.append(f"**Stage:** {stage.value}")
    if len(lines) > 2:
        lines.append("")
    lines.extend([
        error.strip() or "Unknown error",
        "",
        "The run was left at its previous stage. "
        "Comment `replan` or `reresearch` to try again.",
    ])
    return "\n".join(lines)


def format_query_answer(question: str, answer: str) -> str:
    quoted = "\n".join(f"> {line}" for line in question.strip().splitlines())
    return f"{QUERY_HEADER}\n\n{quoted}\n\n{answer.strip()}"


class ReviewPublisher:
    """Opens or updates the review pull request for a run.

    Attributes:
        client: GitHub API client.
        base_branch: Branch the pull request merges into.
        repo_path: Repository working tree; artifact links are made
            relative to it.
        web_url: Web host used for artifact blob links.
    """

    def __init__(
        self,
        client: GitHubClient,
        base_branch: str,
        repo_path: Path,
        web_url: str = "https://github.com",
    ):
        self.client = client
        self.base_branch = base_branch
        self.repo_path = Path(repo_path)
        self.web_url = web_url.rstrip("/")

    def artifact_links(self, run: PipelineRun) -> Dict[Stage, str]:
        """Blob links to the run's artifacts on its branch."""
        links: Dict[Stage, str] = {}
        for stage, artifact in run.artifacts.items():
            path = Path(artifact.path)
            try:
                relative = path.relative_to(self.repo_path)
            except ValueError:
                relative = path
            links[stage] = (
                f"{self.web_url}/{run.repository}/blob/"
                f"{run.branch_name}/{relative.as_posix()}"
            )
        return links

    async def open_or_update(self, run: PipelineRun, summary: str) -> Tuple[int, str]:
        """Open the review pull request, or update the existing one.

        The existing pull request is found by the run's stored number or,
        failing that, by the run's head branch.

        Returns:
            Tuple of (pull request number, pull request URL).

        Raises:
            GitHubAPIError: If the API calls fail.
        """
        title = build_pull_request_title(run)
        body = build_pull_request_body(run, summary, self.artifact_links(run))

        number = run.review_object_id
        if number is None:
            existing = await self.client.find_open_pull_request(
                run.owner, run.repo, run.branch_name
            )
            if existing is not None:
                number = existing["number"]

        if number is not None:
            result = await self.client.update_pull_request(
                run.owner, run.repo, number, title=title, body=body
            )
            logger.info(
                "Updated review pull request",
                extra={"feature_id": run.feature_id, "pr_number": number},
            )
            return number, result.get("html_url", "")

        result = await self.client.create_pull_request(
            run.owner,
            run.repo,
            title=title,
            body=body,
            head_branch=run.branch_name,
            base_branch=self.base_branch,
        )
        logger.info(
            "Opened review pull request",
            extra={"feature_id": run.feature_id, "pr_number": result["number"]},
        )
        return result["number"], result.get("html_url", "")

    async def is_review_open(self, run: PipelineRun) -> Optional[bool]:
        """Whether the run's pull request is still open.

        Returns:
            None when the run has no pull request.
        """
        if run.review_object_id is None:
            return None
        pull = await self.client.get_pull_request(
            run.owner, run.repo, run.review_object_id
        )
        return pull.get("state") == "open"
