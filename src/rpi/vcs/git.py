"""Git operations for stage commits.

GitCommitter is the commit layer the orchestrator drives. It runs git as an
async subprocess in the repository working tree:

- checkout(branch): switch to a run's branch, creating it from the base
  branch when missing
- commit(...): stage paths, commit "[stage] title", push; a rewrite push
  uses --force-with-lease
- rewind(...): reset the branch to just before the first commit of a
  stage, so a rewrite rerun replaces that stage's history
- commit_cleanup(...): commit the sweeper's deletions on the base branch
"""

import asyncio
import logging
from pathlib import Path
from typing import List, Optional, Sequence, Set

from src.rpi.artifacts.locks import LOCK_FILE_NAME
from src.rpi.state.models import CommitStrategy, Stage

logger = logging.getLogger(__name__)

# Keeps run lock files out of "add everything" commits
LOCK_FILE_PATHSPEC = f":(exclude,glob)**/{LOCK_FILE_NAME}"


class GitCommandError(Exception):
    """Raised when a git command exits non-zero.

    Attributes:
        command: The git arguments that failed.
        returncode: The exit code.
        stderr: Captured standard error.
    """

    def __init__(self, command: Sequence[str], returncode: int, stderr: str):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"git {' '.join(self.command)} failed with exit code "
            f"{returncode}: {stderr.strip()}"
        )


def stage_commit_subject(stage: Stage, title: str) -> str:
    """Subject line for a stage commit, e.g. "[plan] Add rate limiting"."""
    return f"[{stage.value}] {title}"


def stage_commit_message(stage: Stage, title: str, feedback: Optional[str] = None) -> str:
    """Full commit message; rerun feedback goes in the body."""
    subject = stage_commit_subject(stage, title)
    if feedback and feedback.strip():
        return f"{subject}\n\nRerun feedback:\n{feedback.strip()}\n"
    return subject


class GitCommitter:
    """Commit layer backed by the git CLI.

    Attributes:
        repo_path: Repository working tree.
        base_branch: Branch new run branches start from.
        remote: Remote to push to; None disables pushing.
    """

    def __init__(
        self,
        repo_path: Path,
        base_branch: str = "main",
        remote: Optional[str] = "origin",
        git_path: str = "git",
    ):
        self.repo_path = Path(repo_path)
        self.base_branch = base_branch
        self.remote = remote
        self.git_path = git_path
        self._diverged: Set[str] = set()

    async def checkout(self, branch: str) -> None:
        """Check out ``branch``, creating it from the base branch if needed."""
        if await self._branch_exists(branch):
            await self._git("checkout", branch)
        else:
            logger.info(
                "Creating branch",
                extra={"branch": branch, "base_branch": self.base_branch},
            )
            await self._git("checkout", "-b", branch, self.base_branch)

    async def commit(
        self,
        branch: str,
        stage: Stage,
        strategy: CommitStrategy,
        message: str,
        paths: Optional[List[Path]] = None,
    ) -> str:
        """Commit a stage's output on ``branch`` and push it.

        Args:
            branch: The run's branch (must be checked out).
            stage: The stage being committed.
            strategy: rewrite force-pushes; append pushes normally.
            message: Commit message.
            paths: Paths to stage; None stages the whole working tree.

        Returns:
            The new commit sha.

        Raises:
            GitCommandError: If any git command fails.
        """
        if paths is None:
            await self._git("add", "-A", "--", ".", LOCK_FILE_PATHSPEC)
        else:
            await self._git("add", "-A", "--", *[str(p) for p in paths])

        await self._git("commit", "--allow-empty", "-m", message)
        sha = (await self._git("rev-parse", "HEAD")).strip()

        logger.info(
            "Committed stage",
            extra={
                "branch": branch,
                "stage": stage.value,
                "strategy": strategy.value,
                "sha": sha,
            },
        )

        force = strategy == CommitStrategy.REWRITE or branch in self._diverged
        await self.push(branch, force=force)
        self._diverged.discard(branch)
        return sha

    async def rewind(self, branch: str, stage: Stage) -> Optional[str]:
        """Reset the checked-out ``branch`` to before ``stage``'s first commit.

        The next push of the branch is forced, even if that push belongs to a
        later append commit.

        Returns:
            The sha the branch was reset to, or None if the branch has no
            commit for the stage.
        """
        log = await self._git(
            "log", "--reverse", "--format=%H %s", f"{self.base_branch}..HEAD"
        )
        prefix = f"[{stage.value}] "
        for line in log.splitlines():
            sha, _, subject = line.partition(" ")
            if subject.startswith(prefix):
                await self._git("reset", "--hard", f"{sha}^")
                self._diverged.add(branch)
                target = (await self._git("rev-parse", "HEAD")).strip()
                logger.info(
                    "Rewound branch",
                    extra={"branch": branch, "stage": stage.value, "reset_to": target},
                )
                return target

        logger.info("No commits to rewind", extra={"stage": stage.value})
        return None

    async def commit_cleanup(self, message: str, paths: List[Path]) -> str:
        """Commit removed artifact directories on the base branch.

        Returns:
            The new commit sha.
        """
        await self._git("add", "-A", "--", *[str(p) for p in paths])
        await self._git("commit", "--allow-empty", "-m", message)
        sha = (await self._git("rev-parse", "HEAD")).strip()
        logger.info("Committed cleanup", extra={"sha": sha, "paths": len(paths)})
        await self.push(self.base_branch, force=False)
        return sha

    async def checkout_base(self) -> None:
        await self._git("checkout", self.base_branch)

    async def push(self, branch: str, force: bool = False) -> None:
        if self.remote is None:
            return
        args = ["push"]
        if force:
            args.append("--force-with-lease")
        args.extend(["-u", self.remote, branch])
        await self._git(*args)

    async def _branch_exists(self, branch: str) -> bool:
        try:
            await self._git("rev-parse", "--verify", "--quiet", f"refs/heads/{branch}")
        except GitCommandError:
            return False
        return True

    async def _git(self, *args: str) -> str:
        """Run a git command in the working tree and return stdout.

        Raises:
            GitCommandError: If git exits non-zero or cannot be started.
        """
        logger.debug("Running git %s", " ".join(args))
        try:
            process = await asyncio.create_subprocess_exec(
                self.git_path,
                *args,
                cwd=str(self.repo_path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise GitCommandError(args, -1, str(exc)) from exc

        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise GitCommandError(
                args,
                process.returncode,
                stderr.decode("utf-8", errors="replace"),
            )
        return stdout.decode("utf-8", errors="replace")
