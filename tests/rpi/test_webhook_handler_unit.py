"""Unit tests for WebhookHandler.

Covers signature verification and parsing of ``issues.labeled`` and
``issue_comment.created`` deliveries into inbound events.
"""

import hashlib
import hmac

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from src.rpi.webhook import CommentEvent, LabelEvent, WebhookHandler

SECRET = "s3cret"


@pytest.fixture
def handler():
    return WebhookHandler(secret=SECRET)


def _sign(body: bytes, secret: str = SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _label_payload(**issue_overrides):
    issue = {
        "number": 7,
        "title": "Add rate limiting to API endpoints",
        "body": "Throttle per token.",
        "user": {"login": "carol"},
    }
    issue.update(issue_overrides)
    return {
        "action": "labeled",
        "label": {"name": "rpi"},
        "issue": issue,
        "repository": {"full_name": "acme/api"},
        "sender": {"login": "alice"},
    }


def _comment_payload(body="replan use redis", pull_request=None, state="open"):
    issue = {"number": 12, "state": state}
    if pull_request is not None:
        issue["pull_request"] = pull_request
    return {
        "action": "created",
        "comment": {"id": 991, "body": body, "user": {"login": "bob"}},
        "issue": issue,
        "repository": {"full_name": "acme/api"},
    }


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------


class TestSignatureVerification:

    def test_valid_signature(self, handler):
        body = b'{"action": "labeled"}'
        assert handler.verify_signature(body, _sign(body)) is True

    def test_wrong_secret(self, handler):
        body = b"{}"
        assert handler.verify_signature(body, _sign(body, "other")) is False

    @pytest.mark.parametrize("signature", [None, "", "sha1=abc", "deadbeef"])
    def test_missing_or_malformed_signature(self, handler, signature):
        assert handler.verify_signature(b"{}", signature) is False

    def test_empty_secret_disables_verification(self):
        assert WebhookHandler(secret="").verify_signature(b"{}", None) is True

    @given(body=st.binary(max_size=500))
    @settings(max_examples=100)
    def test_tampered_body_is_rejected(self, body):
        handler = WebhookHandler(secret=SECRET)
        signature = _sign(body)
        assert handler.verify_signature(body, signature)
        assert not handler.verify_signature(body + b"x", signature)


# ---------------------------------------------------------------------------
# Label events
# ---------------------------------------------------------------------------


class TestLabelEvents:

    def test_parses_labeled_issue(self, handler):
        event = handler.parse("issues", _label_payload())

        assert isinstance(event, LabelEvent)
        assert event.repository == "acme/api"
        assert event.item_number == 7
        assert event.label == "rpi"
        assert event.actor == "alice"
        assert event.item_id == "acme/api#7"

    def test_actor_falls_back_to_issue_author(self, handler):
        payload = _label_payload()
        del payload["sender"]

        assert handler.parse("issues", payload).actor == "carol"

    def test_null_body_becomes_empty(self, handler):
        assert handler.parse("issues", _label_payload(body=None)).body == ""

    def test_repository_from_owner_and_name(self, handler):
        payload = _label_payload()
        payload["repository"] = {"name": "api", "owner": {"login": "acme"}}

        assert handler.parse("issues", payload).repository == "acme/api"

    @pytest.mark.parametrize(
        "overrides",
        [{"title": ""}, {"title": None}, {"number": 0}, {"number": "7"}],
    )
    def test_invalid_issue_fields(self, handler, overrides):
        assert handler.parse("issues", _label_payload(**overrides)) is None

    def test_missing_label_name(self, handler):
        payload = _label_payload()
        payload["label"] = {}
        assert handler.parse("issues", payload) is None


# ---------------------------------------------------------------------------
# Comment events
# ---------------------------------------------------------------------------


class TestCommentEvents:

    def test_parses_issue_comment(self, handler):
        event = handler.parse("issue_comment", _comment_payload())

        assert isinstance(event, CommentEvent)
        assert event.is_pull_request is False
        assert event.review_object_id is None
        assert event.body == "replan use redis"
        assert event.actor == "bob"
        assert event.comment_id == 991

    def test_pull_request_comment(self, handler):
        event = handler.parse(
            "issue_comment", _comment_payload(pull_request={"url": "x"})
        )

        assert event.is_pull_request is True
        assert event.review_object_id == 12
        assert event.is_finalized is False

    def test_merged_pull_request_is_finalized(self, handler):
        event = handler.parse(
            "issue_comment",
            _comment_payload(pull_request={"merged_at": "2026-01-01T00:00:00Z"}),
        )
        assert event.is_finalized is True

    def test_closed_pull_request_is_finalized(self, handler):
        event = handler.parse(
            "issue_comment", _comment_payload(pull_request={}, state="closed")
        )
        assert event.is_finalized is True

    def test_bot_comment_is_flagged(self, handler):
        payload = _comment_payload()
        payload["comment"]["user"]["login"] = "rpi-bot[bot]"

        assert handler.parse("issue_comment", payload).is_from_bot is True

    def test_comment_without_id_is_rejected(self, handler):
        payload = _comment_payload()
        del payload["comment"]["id"]
        assert handler.parse("issue_comment", payload) is None


# ---------------------------------------------------------------------------
# Unsupported deliveries
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "event_name,action",
    [
        ("issues", "opened"),
        ("issues", "unlabeled"),
        ("issue_comment", "edited"),
        ("pull_request", "opened"),
        (None, None),
    ],
)
def test_unsupported_deliveries_are_ignored(handler, event_name, action):
    payload = _label_payload()
    payload["action"] = action
    assert handler.parse(event_name, payload) is None


def test_non_dict_payload_is_ignored(handler):
    assert handler.parse("issues", ["not", "a", "dict"]) is None
