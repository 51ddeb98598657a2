"""Classified pipeline intents.

Every inbound event is classified into exactly one of these variants (or
None). Downstream code dispatches on the ``kind`` tag and never re-parses
the raw comment text.
"""

from datetime import datetime
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from src.rpi.state.models import RERUN_STAGES, Stage


class NewRun(BaseModel):
    """Start a pipeline run for a labeled issue."""

    kind: Literal["new_run"] = "new_run"

    feature_id: str = Field(..., min_length=1, description="Derived feature id")
    item_id: str = Field(..., min_length=1, description="Issue identifier")
    repository: str = Field(..., min_length=1, description="owner/repo")
    item_number: int = Field(..., gt=0, description="Issue number")
    title: str = Field(..., min_length=1, description="Issue title")
    body: str = Field(default="", description="Issue body")
    author: str = Field(..., min_length=1, description="Actor who applied the label")


class RerunRequest(BaseModel):
    """Rewind an existing run to research or plan and execute again.

    Attributes:
        feature_id: The run to rewind.
        target_stage: research (``reresearch``) or plan (``replan``).
        feedback: Free text following the command token.
        requesting_actor: Login of the commenter.
        comment_id: The triggering comment, acknowledged with a reaction.
        repository: Repository of the comment thread.
        thread_number: Issue or pull request number commented on.
        review_object_id: Pull request number when commented on the PR.
        review_finalized: Whether the commented thread is closed or merged.
    """

    kind: Literal["rerun"] = "rerun"

    feature_id: str = Field(..., min_length=1)
    target_stage: Stage = Field(..., description="Stage the run rewinds to")
    feedback: str = Field(default="", description="Reviewer feedback for the agent")
    requesting_actor: str = Field(..., min_length=1)
    comment_id: int = Field(..., gt=0)
    repository: str = Field(..., min_length=1)
    thread_number: int = Field(..., gt=0)
    review_object_id: Optional[int] = Field(default=None, gt=0)
    review_finalized: bool = Field(default=False)

    @field_validator("target_stage")
    @classmethod
    def validate_target_stage(cls, v: Stage) -> Stage:
        if v not in RERUN_STAGES:
            raise ValueError(f"{v.value} is not a rerun target")
        return v


class AdHocQuery(BaseModel):
    """A bot mention without a command: answered read-only."""

    kind: Literal["query"] = "query"

    feature_id: Optional[str] = Field(
        default=None, description="The run the thread belongs to, if any"
    )
    question: str = Field(..., min_length=1)
    actor: str = Field(..., min_length=1)
    repository: str = Field(..., min_length=1)
    thread_number: int = Field(..., gt=0)
    review_object_id: Optional[int] = Field(default=None, gt=0)


class ScheduledCleanup(BaseModel):
    """Run the artifact retention sweep."""

    kind: Literal["cleanup"] = "cleanup"

    time: datetime


Intent = Union[NewRun, RerunRequest, AdHocQuery, ScheduledCleanup]
