"""GitHub webhook event models for the RPI pipeline.

Webhooks are reduced to three inbound events before classification:

- LabelEvent: a label was added to an issue (``issues.labeled``)
- CommentEvent: a comment was created on an issue or pull request
  (``issue_comment.created``)
- ScheduleTick: the host scheduler asked for a cleanup sweep

The models use Pydantic for validation, consistent with the pipeline's
configuration approach in config.py.
"""

from datetime import datetime, timezone
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field

BOT_LOGIN_SUFFIX = "[bot]"


class LabelEvent(BaseModel):
    """An ``issues.labeled`` webhook.

    Attributes:
        repository: Full repository path "{owner}/{repo}".
        item_number: The issue number.
        label: The label that was added.
        title: The issue title.
        body: The issue body (may be empty).
        actor: Login of the user who added the label.
    """

    kind: Literal["label"] = "label"

    repository: str = Field(
        ...,
        min_length=1,
        description='Full repository path in format "{owner}/{repo}"',
    )

    item_number: int = Field(
        ...,
        gt=0,
        description="The issue number within the repository",
    )

    label: str = Field(
        ...,
        min_length=1,
        description="The label that was added",
    )

    title: str = Field(
        ...,
        min_length=1,
        description="The issue title text (cannot be empty)",
    )

    body: str = Field(
        default="",
        description="The issue body text (may be empty)",
    )

    actor: str = Field(
        ...,
        min_length=1,
        description="Login of the user who added the label",
    )

    @property
    def item_id(self) -> str:
        """Canonical issue identifier "{owner}/{repo}#{number}"."""
        return f"{self.repository}#{self.item_number}"


class CommentEvent(BaseModel):
    """An ``issue_comment.created`` webhook.

    GitHub delivers pull request conversation comments through the same
    event; ``is_pull_request`` distinguishes them.

    Attributes:
        repository: Full repository path "{owner}/{repo}".
        item_number: Number of the issue or pull request commented on.
        is_pull_request: True when the thread is a pull request.
        state: Thread state ("open" or "closed").
        body: The comment text.
        actor: Login of the commenter.
        comment_id: Id of the comment, used for the acknowledgment reaction.
    """

    kind: Literal["comment"] = "comment"

    repository: str = Field(
        ...,
        min_length=1,
        description='Full repository path in format "{owner}/{repo}"',
    )

    item_number: int = Field(
        ...,
        gt=0,
        description="Number of the issue or pull request commented on",
    )

    is_pull_request: bool = Field(
        default=False,
        description="Whether the comment thread is a pull request",
    )

    state: str = Field(
        default="open",
        description="State of the issue or pull request",
    )

    body: str = Field(
        default="",
        description="The comment text",
    )

    actor: str = Field(
        ...,
        min_length=1,
        description="Login of the commenter",
    )

    comment_id: int = Field(
        ...,
        gt=0,
        description="Id of the comment",
    )

    @property
    def item_id(self) -> str:
        return f"{self.repository}#{self.item_number}"

    @property
    def review_object_id(self) -> Optional[int]:
        """Pull request number when the thread is a pull request."""
        return self.item_number if self.is_pull_request else None

    @property
    def is_finalized(self) -> bool:
        """Whether the thread is closed (or, for a pull request, merged)."""
        return self.state.lower() == "closed"

    @property
    def is_from_bot(self) -> bool:
        return self.actor.lower().endswith(BOT_LOGIN_SUFFIX)


class ScheduleTick(BaseModel):
    """A scheduled cleanup tick."""

    kind: Literal["schedule"] = "schedule"

    time: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the tick fired (UTC)",
    )


InboundEvent = Union[LabelEvent, CommentEvent, ScheduleTick]
