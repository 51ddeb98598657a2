"""GitHub webhook handling for the RPI pipeline.

Parses the deliveries that can trigger pipeline work:
- issues.labeled - a label was added to an issue
- issue_comment.created - a comment on an issue or pull request
"""

from .handler import WebhookHandler, create_webhook_handler
from .models import CommentEvent, InboundEvent, LabelEvent, ScheduleTick

__all__ = [
    "CommentEvent",
    "InboundEvent",
    "LabelEvent",
    "ScheduleTick",
    "WebhookHandler",
    "create_webhook_handler",
]
