"""GitHub API integration: client, review pull requests and comments."""

from src.rpi.github.client import GitHubAPIError, GitHubClient, RateLimitError
from src.rpi.github.review import (
    ReviewPublisher,
    build_pull_request_body,
    format_failure_comment,
    format_query_answer,
)

__all__ = [
    "GitHubAPIError",
    "GitHubClient",
    "RateLimitError",
    "ReviewPublisher",
    "build_pull_request_body",
    "format_failure_comment",
    "format_query_answer",
]
