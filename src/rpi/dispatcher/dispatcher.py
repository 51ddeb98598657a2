"""Trigger classification.

TriggerDispatcher.classify turns one inbound event into one Intent, or None
when the event is not addressed to the pipeline. Classification is a pure
function of the event, the configured trigger label and bot handle, and the
run (if any) the event's thread belongs to. It performs no I/O; looking up
that run is the caller's job.

Comment grammar:

    [@<bot-handle>] [/]<command> [feedback...]

where <command> is ``replan`` or ``reresearch`` (case-insensitive). A
comment that mentions the bot but carries no command is an ad-hoc query.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from src.rpi.dispatcher.models import (
    AdHocQuery,
    Intent,
    NewRun,
    RerunRequest,
    ScheduledCleanup,
)
from src.rpi.feature import feature_id as derive_feature_id
from src.rpi.state.models import PipelineRun, Stage
from src.rpi.webhook.models import CommentEvent, LabelEvent, ScheduleTick

logger = logging.getLogger(__name__)

COMMAND_TOKENS: Dict[str, Stage] = {
    "replan": Stage.PLAN,
    "reresearch": Stage.RESEARCH,
}

COMMAND_PREFIX = "/"


@dataclass(frozen=True)
class ParsedComment:
    """Result of splitting a comment into mention, command and remainder."""

    mentioned: bool
    command: Optional[Stage]
    text: str


def _split_first_token(text: str) -> Tuple[str, str]:
    parts = text.split(None, 1)
    if not parts:
        return "", ""
    return parts[0], parts[1].strip() if len(parts) > 1 else ""


class TriggerDispatcher:
    """Classifies inbound events into pipeline intents.

    Attributes:
        trigger_label: Label that starts a run (compared case-insensitively).
        bot_handle: Login the bot answers to, without the leading "@".
    """

    def __init__(self, trigger_label: str = "rpi", bot_handle: str = "rpi-bot"):
        self.trigger_label = trigger_label
        self.bot_handle = bot_handle.lstrip("@")
        self._mention = re.compile(
            rf"(?<![\w@])@{re.escape(self.bot_handle)}(?![\w-])",
            re.IGNORECASE,
        )

    def classify(
        self,
        event: Any,
        existing_run: Optional[PipelineRun] = None,
    ) -> Optional[Intent]:
        """Classify an inbound event.

        Args:
            event: A LabelEvent, CommentEvent or ScheduleTick.
            existing_run: The run the event's issue or pull request belongs
                to, or None when there is none.

        Returns:
            The classified intent, or None if the event is unrecognized.
        """
        if isinstance(event, ScheduleTick):
            return self._classify_tick(event.time)
        if isinstance(event, LabelEvent):
            return self._classify_label(event, existing_run)
        if isinstance(event, CommentEvent):
            return self._classify_comment(event, existing_run)

        logger.debug("Unrecognized event type: %s", type(event).__name__)
        return None

    def parse_comment(self, body: str) -> ParsedComment:
        """Split a comment body into mention, command token and remainder.

        Example:
            >>> TriggerDispatcher().parse_comment("@rpi-bot /replan use redis")
            ParsedComment(mentioned=True, command=<Stage.PLAN: 'plan'>, text='use redis')
            >>> TriggerDispatcher().parse_comment("looks good")
            ParsedComment(mentioned=False, command=None, text='looks good')
        """
        text = (body or "").strip()
        mentioned = False

        head, rest = _split_first_token(text)
        if self._mention.fullmatch(head.rstrip(":,")):
            mentioned = True
            text = rest
            head, rest = _split_first_token(text)

        token = head.lower()
        if token.startswith(COMMAND_PREFIX):
            token = token[len(COMMAND_PREFIX):]

        if token in COMMAND_TOKENS:
            return ParsedComment(
                mentioned=mentioned,
                command=COMMAND_TOKENS[token],
                text=rest,
            )

        if not mentioned and self._mention.search(text):
            mentioned = True
            text = self._mention.sub("", text).strip()

        return ParsedComment(mentioned=mentioned, command=None, text=text)

    def _classify_tick(self, time: datetime) -> ScheduledCleanup:
        return ScheduledCleanup(time=time)

    def _classify_label(
        self,
        event: LabelEvent,
        existing_run: Optional[PipelineRun],
    ) -> Optional[NewRun]:
        if event.label.casefold() != self.trigger_label.casefold():
            logger.debug(
                "Ignoring non-trigger label",
                extra={"label": event.label, "item_id": event.item_id},
            )
            return None

        feature = derive_feature_id(event.title)
        if existing_run is not None:
            logger.info(
                "Ignoring trigger label: run already exists",
                extra={
                    "feature_id": existing_run.feature_id,
                    "item_id": event.item_id,
                    "current_stage": existing_run.current_stage.value,
                },
            )
            return None

        return NewRun(
            feature_id=feature,
            item_id=event.item_id,
            repository=event.repository,
            item_number=event.item_number,
            title=event.title,
            body=event.body,
            author=event.actor,
        )

    def _classify_comment(
        self,
        event: CommentEvent,
        existing_run: Optional[PipelineRun],
    ) -> Optional[Intent]:
        if event.is_from_bot:
            logger.debug(
                "Ignoring bot comment",
                extra={"actor": event.actor, "comment_id": event.comment_id},
            )
            return None

        parsed = self.parse_comment(event.body)

        if parsed.command is not None:
            if existing_run is None:
                logger.debug(
                    "Ignoring command on thread without a run",
                    extra={"item_id": event.item_id},
                )
                return None
            return RerunRequest(
                feature_id=existing_run.feature_id,
                target_stage=parsed.command,
                feedback=parsed.text,
                requesting_actor=event.actor,
                comment_id=event.comment_id,
                repository=event.repository,
                thread_number=event.item_number,
                review_object_id=(
                    event.review_object_id or existing_run.review_object_id
                ),
                review_finalized=event.is_finalized,
            )

        if parsed.mentioned and parsed.text:
            return AdHocQuery(
                feature_id=existing_run.feature_id if existing_run else None,
                question=parsed.text,
                actor=event.actor,
                repository=event.repository,
                thread_number=event.item_number,
                review_object_id=event.review_object_id,
            )

        return None


def create_dispatcher(trigger_label: str, bot_handle: str) -> TriggerDispatcher:
    """Factory function to create a TriggerDispatcher instance."""
    return TriggerDispatcher(trigger_label=trigger_label, bot_handle=bot_handle)
