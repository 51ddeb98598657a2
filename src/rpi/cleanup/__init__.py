"""Scheduled artifact retention sweep."""

from src.rpi.cleanup.sweeper import CleanupSweeper, SweepReport, cleanup_commit_message

__all__ = [
    "CleanupSweeper",
    "SweepReport",
    "cleanup_commit_message",
]
