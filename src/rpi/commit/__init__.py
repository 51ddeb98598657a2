"""Commit strategy resolution for reruns."""

from src.rpi.commit.strategy import AuthorLookup, CommitStrategyResolver

__all__ = [
    "AuthorLookup",
    "CommitStrategyResolver",
]
