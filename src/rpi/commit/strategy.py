"""Commit strategy resolution for reruns.

Decides whether the commits produced by a rerun replace the earlier stage
commits (rewrite) or are added on top of them (append):

- The run's author rerunning their own pipeline may rewrite its history.
- Anyone else appends, so the diff other reviewers already saw survives.
- When the author cannot be determined, the resolver appends.

GitHub logins are case-insensitive, so actors are compared casefolded.
"""

import logging
from typing import Awaitable, Callable, Optional

from src.rpi.state.models import CommitStrategy, PipelineRun

logger = logging.getLogger(__name__)

AuthorLookup = Callable[[PipelineRun], Awaitable[Optional[str]]]


def _normalize_actor(actor: Optional[str]) -> Optional[str]:
    if not isinstance(actor, str):
        return None
    actor = actor.strip()
    return actor.casefold() if actor else None


class CommitStrategyResolver:
    """Chooses rewrite or append for a rerun's stage commits.

    Attributes:
        author_lookup: Optional coroutine used when a run has no recorded
            author. Exceptions it raises are treated as "unknown author".
    """

    def __init__(self, author_lookup: Optional[AuthorLookup] = None):
        self.author_lookup = author_lookup

    def resolve(
        self,
        requesting_actor: Optional[str],
        author: Optional[str],
    ) -> CommitStrategy:
        """Resolve the strategy from the requesting actor and run author.

        Example:
            >>> CommitStrategyResolver().resolve("alice", "Alice")
            <CommitStrategy.REWRITE: 'rewrite'>
            >>> CommitStrategyResolver().resolve("bob", "alice")
            <CommitStrategy.APPEND: 'append'>
            >>> CommitStrategyResolver().resolve("bob", None)
            <CommitStrategy.APPEND: 'append'>
        """
        actor_key = _normalize_actor(requesting_actor)
        author_key = _normalize_actor(author)

        if actor_key is not None and actor_key == author_key:
            return CommitStrategy.REWRITE
        return CommitStrategy.APPEND

    async def resolve_for_run(
        self,
        requesting_actor: Optional[str],
        run: PipelineRun,
    ) -> CommitStrategy:
        """Resolve the strategy for a rerun of ``run``.

        Uses the run's recorded author, falling back to the author lookup.
        A failed lookup is logged and resolves to append.
        """
        author = run.author
        if _normalize_actor(author) is None and self.author_lookup is not None:
            try:
                author = await self.author_lookup(run)
            except Exception:
                logger.warning(
                    "Could not resolve run author, defaulting to append",
                    exc_info=True,
                    extra={"feature_id": run.feature_id},
                )
                author = None

        strategy = self.resolve(requesting_actor, author)
        logger.info(
            "Resolved commit strategy",
            extra={
                "feature_id": run.feature_id,
                "requesting_actor": requesting_actor,
                "author": author,
                "strategy": strategy.value,
            },
        )
        return strategy
