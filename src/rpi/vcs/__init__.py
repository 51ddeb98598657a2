"""Version-control commit layer."""

from src.rpi.vcs.git import (
    GitCommandError,
    GitCommitter,
    stage_commit_message,
    stage_commit_subject,
)

__all__ = [
    "GitCommandError",
    "GitCommitter",
    "stage_commit_message",
    "stage_commit_subject",
]
