"""Unit tests for TriggerDispatcher.

Tests classification of label, comment and schedule events into pipeline
intents, the comment command grammar, and the events that are ignored.
"""

from datetime import datetime, timezone

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from pydantic import ValidationError

from src.rpi.commit import CommitStrategyResolver
from src.rpi.dispatcher import (
    AdHocQuery,
    NewRun,
    RerunRequest,
    ScheduledCleanup,
    TriggerDispatcher,
)
from src.rpi.state.models import CommitStrategy, PipelineRun, Stage
from src.rpi.webhook.models import CommentEvent, LabelEvent, ScheduleTick


@pytest.fixture
def dispatcher():
    return TriggerDispatcher(trigger_label="rpi", bot_handle="rpi-bot")


def _make_run(**overrides) -> PipelineRun:
    defaults = dict(
        feature_id="add-rate-limiting-to-api-endpoints",
        item_id="acme/api#7",
        repository="acme/api",
        item_number=7,
        title="Add rate limiting to API endpoints",
        author="alice",
        current_stage=Stage.COMPLETED,
        review_object_id=12,
    )
    defaults.update(overrides)
    return PipelineRun(**defaults)


def _make_label(**overrides) -> LabelEvent:
    defaults = dict(
        repository="acme/api",
        item_number=7,
        label="rpi",
        title="Add rate limiting to API endpoints",
        body="Requests should be throttled per token.",
        actor="alice",
    )
    defaults.update(overrides)
    return LabelEvent(**defaults)


def _make_comment(body: str, **overrides) -> CommentEvent:
    defaults = dict(
        repository="acme/api",
        item_number=12,
        is_pull_request=True,
        state="open",
        body=body,
        actor="bob",
        comment_id=991,
    )
    defaults.update(overrides)
    return CommentEvent(**defaults)


# ---------------------------------------------------------------------------
# Label events
# ---------------------------------------------------------------------------


def test_trigger_label_starts_new_run(dispatcher):
    intent = dispatcher.classify(_make_label())

    assert isinstance(intent, NewRun)
    assert intent.feature_id == "add-rate-limiting-to-api-endpoints"
    assert intent.item_id == "acme/api#7"
    assert intent.author == "alice"
    assert intent.body == "Requests should be throttled per token."


def test_trigger_label_is_case_insensitive(dispatcher):
    assert isinstance(dispatcher.classify(_make_label(label="RPI")), NewRun)


def test_other_labels_are_ignored(dispatcher):
    assert dispatcher.classify(_make_label(label="bug")) is None


def test_label_on_issue_with_existing_run_is_ignored(dispatcher):
    for stage in Stage:
        run = _make_run(current_stage=stage, review_object_id=None)
        assert dispatcher.classify(_make_label(), run) is None


# ---------------------------------------------------------------------------
# Rerun commands
# ---------------------------------------------------------------------------


def test_replan_from_non_author_appends():
    """A reviewer's replan keeps the author's history."""
    dispatcher = TriggerDispatcher()
    run = _make_run()

    intent = dispatcher.classify(
        _make_comment("replan use streaming instead", actor="bob"), run
    )

    assert isinstance(intent, RerunRequest)
    assert intent.target_stage == Stage.PLAN
    assert intent.feedback == "use streaming instead"
    assert intent.requesting_actor == "bob"
    assert intent.review_object_id == 12
    assert intent.review_finalized is False
    assert (
        CommitStrategyResolver().resolve(intent.requesting_actor, run.author)
        == CommitStrategy.APPEND
    )


def test_reresearch_targets_research(dispatcher):
    intent = dispatcher.classify(_make_comment("reresearch"), _make_run())

    assert isinstance(intent, RerunRequest)
    assert intent.target_stage == Stage.RESEARCH
    assert intent.feedback == ""


@pytest.mark.parametrize(
    "body",
    [
        "/replan use redis",
        "@rpi-bot replan use redis",
        "@rpi-bot /replan use redis",
        "@RPI-Bot: REPLAN use redis",
        "  replan   use redis  ",
        "replan\nuse redis",
    ],
)
def test_command_grammar_variants(dispatcher, body):
    intent = dispatcher.classify(_make_comment(body), _make_run())

    assert isinstance(intent, RerunRequest)
    assert intent.target_stage == Stage.PLAN
    assert intent.feedback == "use redis"


def test_multiline_feedback_is_kept(dispatcher):
    intent = dispatcher.classify(
        _make_comment("replan first line\nsecond line"), _make_run()
    )
    assert intent.feedback == "first line\nsecond line"


def test_command_on_thread_without_run_is_ignored(dispatcher):
    assert dispatcher.classify(_make_comment("replan please"), None) is None


def test_command_on_issue_thread_uses_run_review_object(dispatcher):
    comment = _make_comment("replan", item_number=7, is_pull_request=False)

    intent = dispatcher.classify(comment, _make_run())

    assert intent.thread_number == 7
    assert intent.review_object_id == 12
    assert intent.review_finalized is False


def test_command_on_closed_pull_request_is_marked_finalized(dispatcher):
    intent = dispatcher.classify(_make_comment("replan", state="closed"), _make_run())

    assert isinstance(intent, RerunRequest)
    assert intent.review_finalized is True


def test_command_on_closed_issue_is_marked_finalized(dispatcher):
    comment = _make_comment(
        "replan", item_number=7, is_pull_request=False, state="closed"
    )
    assert dispatcher.classify(comment, _make_run()).review_finalized is True


def test_command_on_open_issue_is_not_finalized(dispatcher):
    comment = _make_comment("replan", item_number=7, is_pull_request=False)
    assert dispatcher.classify(comment, _make_run()).review_finalized is False


@pytest.mark.parametrize(
    "body",
    [
        "replanning is needed",
        "please replan",
        "re-plan",
        "LGTM",
        "",
        "   ",
    ],
)
def test_unrecognized_comments_are_ignored(dispatcher, body):
    assert dispatcher.classify(_make_comment(body), _make_run()) is None


def test_bot_comments_are_ignored(dispatcher):
    comment = _make_comment("replan", actor="rpi-bot[bot]")
    assert dispatcher.classify(comment, _make_run()) is None


def test_rerun_request_rejects_non_rerun_stage():
    with pytest.raises(ValidationError):
        RerunRequest(
            feature_id="f",
            target_stage=Stage.IMPLEMENT,
            requesting_actor="bob",
            comment_id=1,
            repository="acme/api",
            thread_number=1,
        )


# ---------------------------------------------------------------------------
# Ad-hoc queries
# ---------------------------------------------------------------------------


def test_mention_without_command_is_query(dispatcher):
    intent = dispatcher.classify(
        _make_comment("@rpi-bot why did you choose a token bucket?"), _make_run()
    )

    assert isinstance(intent, AdHocQuery)
    assert intent.question == "why did you choose a token bucket?"
    assert intent.feature_id == "add-rate-limiting-to-api-endpoints"
    assert intent.review_object_id == 12


def test_inline_mention_is_query(dispatcher):
    intent = dispatcher.classify(
        _make_comment("Hey @rpi-bot what does the plan cover?"), None
    )

    assert isinstance(intent, AdHocQuery)
    assert intent.feature_id is None
    assert "what does the plan cover?" in intent.question
    assert "@rpi-bot" not in intent.question


def test_bare_mention_is_ignored(dispatcher):
    assert dispatcher.classify(_make_comment("@rpi-bot"), _make_run()) is None


def test_other_handles_are_not_mentions(dispatcher):
    assert dispatcher.classify(_make_comment("@rpi-bot2 hello"), _make_run()) is None
    assert dispatcher.classify(_make_comment("mail me@rpi-bot.dev"), _make_run()) is None


# ---------------------------------------------------------------------------
# Schedule ticks and unknown events
# ---------------------------------------------------------------------------


def test_schedule_tick_is_cleanup(dispatcher):
    now = datetime(2026, 5, 1, tzinfo=timezone.utc)

    intent = dispatcher.classify(ScheduleTick(time=now))

    assert isinstance(intent, ScheduledCleanup)
    assert intent.time == now


def test_unknown_event_is_ignored(dispatcher):
    assert dispatcher.classify({"action": "opened"}) is None


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------


@given(
    feedback=st.text(
        alphabet=st.characters(blacklist_categories=("Cs",)), max_size=200
    ),
    token=st.sampled_from(["replan", "REPLAN", "/replan", "reresearch", "/ReResearch"]),
)
@settings(max_examples=100)
def test_command_feedback_is_the_stripped_remainder(feedback, token):
    dispatcher = TriggerDispatcher()

    intent = dispatcher.classify(_make_comment(f"{token} {feedback}"), _make_run())

    assert isinstance(intent, RerunRequest)
    assert intent.feedback == feedback.strip()
    expected = Stage.PLAN if "plan" in token.lower() else Stage.RESEARCH
    assert intent.target_stage == expected


@given(body=st.text(max_size=200))
@settings(max_examples=100)
def test_classification_is_deterministic(body):
    dispatcher = TriggerDispatcher()
    run = _make_run()
    comment = _make_comment(body)

    assert dispatcher.classify(comment, run) == dispatcher.classify(comment, run)
