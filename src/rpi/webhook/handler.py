"""GitHub webhook handler for the RPI pipeline.

This module provides the WebhookHandler class for turning GitHub webhook
deliveries into inbound pipeline events. Two deliveries are understood:

GitHub Webhook Payload Structure (issues.labeled):
{
  "action": "labeled",
  "label": {"name": "rpi"},
  "issue": {"number": 7, "title": "...", "body": "...", "user": {...}},
  "repository": {"full_name": "acme/api"},
  "sender": {"login": "alice"}
}

GitHub Webhook Payload Structure (issue_comment.created):
{
  "action": "created",
  "comment": {"id": 991, "body": "/replan use redis", "user": {...}},
  "issue": {"number": 12, "state": "open", "pull_request": {...}},
  "repository": {"full_name": "acme/api"}
}

Every other delivery parses to None. Deliveries are authenticated with the
``X-Hub-Signature-256`` HMAC when a webhook secret is configured.
"""

import hashlib
import hmac
import logging
from typing import Any, Dict, Optional, Union

from .models import CommentEvent, LabelEvent

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


class WebhookHandler:
    """Handler for parsing GitHub webhook events.

    Attributes:
        secret: The webhook secret used to verify delivery signatures.
            An empty secret disables verification.
    """

    def __init__(self, secret: str) -> None:
        self.secret = secret

    def verify_signature(self, body: bytes, signature: Optional[str]) -> bool:
        """Check a delivery's ``X-Hub-Signature-256`` header.

        Args:
            body: The raw request body.
            signature: The header value, "sha256=<hexdigest>".

        Returns:
            True if the signature matches or no secret is configured.
        """
        if not self.secret:
            return True
        if not signature or not signature.startswith(SIGNATURE_PREFIX):
            logger.warning("Missing or malformed webhook signature")
            return False

        expected = hmac.new(
            self.secret.encode("utf-8"), body, hashlib.sha256
        ).hexdigest()
        return hmac.compare_digest(expected, signature[len(SIGNATURE_PREFIX):])

    def parse(
        self, event_name: Optional[str], payload: Any
    ) -> Optional[Union[LabelEvent, CommentEvent]]:
        """Parse a webhook delivery into an inbound event.

        Args:
            event_name: The ``X-GitHub-Event`` header value.
            payload: The decoded JSON payload.

        Returns:
            LabelEvent or CommentEvent, or None for unsupported deliveries
            and malformed payloads.
        """
        if not isinstance(payload, dict):
            logger.warning("Invalid payload: expected dict, got %s", type(payload))
            return None

        action = payload.get("action")
        try:
            if event_name == "issues" and action == "labeled":
                return self.parse_label_event(payload)
            if event_name == "issue_comment" and action == "created":
                return self.parse_comment_event(payload)
        except Exception as e:
            logger.exception("Unexpected error parsing webhook payload: %s", e)
            return None

        logger.debug("Ignoring webhook %s.%s", event_name, action)
        return None

    def parse_label_event(self, payload: Dict[str, Any]) -> Optional[LabelEvent]:
        """Parse an ``issues.labeled`` payload."""
        repository = self._extract_repository(payload.get("repository"))
        issue = payload.get("issue")
        if repository is None or not isinstance(issue, dict):
            logger.warning("Label event without repository or issue")
            return None

        label_data = payload.get("label")
        label = label_data.get("name") if isinstance(label_data, dict) else None
        if not isinstance(label, str) or not label.strip():
            logger.warning("Label event without label name")
            return None

        number = issue.get("number")
        if not isinstance(number, int) or number <= 0:
            logger.warning("Invalid issue number: %s", number)
            return None

        title = issue.get("title")
        if not isinstance(title, str) or not title.strip():
            logger.warning("Invalid or empty issue title: %s", title)
            return None

        body = issue.get("body")
        if not isinstance(body, str):
            body = ""

        # The labeler is the sender; fall back to the issue author
        actor = self._extract_user_login(payload.get("sender"), "sender")
        if actor is None:
            actor = self._extract_user_login(issue.get("user"), "issue author")
        if actor is None:
            return None

        event = LabelEvent(
            repository=repository,
            item_number=number,
            label=label.strip(),
            title=title.strip(),
            body=body,
            actor=actor,
        )
        logger.info(
            "Parsed label event: label=%s, issue=%s", event.label, event.item_id
        )
        return event

    def parse_comment_event(
        self, payload: Dict[str, Any]
    ) -> Optional[CommentEvent]:
        """Parse an ``issue_comment.created`` payload."""
        repository = self._extract_repository(payload.get("repository"))
        issue = payload.get("issue")
        comment = payload.get("comment")
        if (
            repository is None
            or not isinstance(issue, dict)
            or not isinstance(comment, dict)
        ):
            logger.warning("Comment event without repository, issue or comment")
            return None

        number = issue.get("number")
        if not isinstance(number, int) or number <= 0:
            logger.warning("Invalid issue number: %s", number)
            return None

        comment_id = comment.get("id")
        if not isinstance(comment_id, int) or comment_id <= 0:
            logger.warning("Invalid comment id: %s", comment_id)
            return None

        actor = self._extract_user_login(comment.get("user"), "commenter")
        if actor is None:
            return None

        body = comment.get("body")
        if not isinstance(body, str):
            body = ""

        state = issue.get("state")
        if not isinstance(state, str) or not state:
            state = "open"

        pull_request = issue.get("pull_request")
        is_pull_request = isinstance(pull_request, dict)
        if is_pull_request and pull_request.get("merged_at"):
            state = "closed"

        event = CommentEvent(
            repository=repository,
            item_number=number,
            is_pull_request=is_pull_request,
            state=state,
            body=body,
            actor=actor,
            comment_id=comment_id,
        )
        logger.info(
            "Parsed comment event: comment=%s, thread=%s",
            comment_id,
            event.item_id,
        )
        return event

    def _extract_repository(self, repo_data: Any) -> Optional[str]:
        """Extract "{owner}/{repo}" from the repository object."""
        if not isinstance(repo_data, dict):
            return None

        full_name = repo_data.get("full_name")
        if isinstance(full_name, str) and "/" in full_name:
            return full_name.strip()

        name = repo_data.get("name")
        owner = self._extract_user_login(repo_data.get("owner"), "repository owner")
        if not isinstance(name, str) or not name.strip() or owner is None:
            logger.warning("Invalid repository data")
            return None
        return f"{owner}/{name.strip()}"

    def _extract_user_login(self, user_data: Any, context: str) -> Optional[str]:
        """Extract the login field from a user object."""
        if not isinstance(user_data, dict):
            logger.warning(
                "Missing or invalid %s data: %s", context, type(user_data)
            )
            return None

        login = user_data.get("login")
        if not isinstance(login, str) or not login.strip():
            logger.warning("Invalid or empty %s login: %s", context, login)
            return None

        return login.strip()


def create_webhook_handler(secret: str) -> WebhookHandler:
    """Factory function to create a WebhookHandler instance."""
    return WebhookHandler(secret=secret)
