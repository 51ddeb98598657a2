"""Unit tests for GitHubClient and ReviewPublisher.

HTTP traffic goes through an httpx.MockTransport, so requests are checked
exactly as they would be sent to the GitHub REST API.
"""

import asyncio
import json
from typing import Callable, List
from unittest.mock import AsyncMock

import httpx
import pytest

from src.rpi.github import (
    GitHubAPIError,
    GitHubClient,
    RateLimitError,
    ReviewPublisher,
    build_pull_request_body,
    format_failure_comment,
)
from src.rpi.state.models import Artifact, PipelineRun, Stage

API = "https://api.github.com"


def run_async(coro):
    return asyncio.run(coro)


def _client(handler: Callable[[httpx.Request], httpx.Response], **kwargs) -> GitHubClient:
    client = GitHubClient(token="ghp_test", base_delay=0, max_delay=0, **kwargs)
    client._client = httpx.AsyncClient(
        base_url=API,
        headers=client._default_headers(),
        transport=httpx.MockTransport(handler),
    )
    return client


def _make_run(**overrides) -> PipelineRun:
    defaults = dict(
        feature_id="add-cache",
        item_id="acme/api#7",
        repository="acme/api",
        item_number=7,
        title="Add cache",
        author="alice",
        current_stage=Stage.IMPLEMENT,
        artifacts={
            Stage.RESEARCH: Artifact(
                stage=Stage.RESEARCH, content="r", path="/repo/docs/rpi/add-cache/research.md"
            ),
            Stage.PLAN: Artifact(
                stage=Stage.PLAN, content="p", path="/repo/docs/rpi/add-cache/plan.md"
            ),
        },
    )
    defaults.update(overrides)
    return PipelineRun(**defaults)


# ---------------------------------------------------------------------------
# GitHubClient
# ---------------------------------------------------------------------------


class TestGitHubClient:

    def test_create_comment_posts_body(self):
        requests: List[httpx.Request] = []

        def handler(request):
            requests.append(request)
            return httpx.Response(201, json={"id": 55})

        async def scenario():
            async with _client(handler) as client:
                return await client.create_comment("acme", "api", 7, "hello")

        result = run_async(scenario())

        assert result == {"id": 55}
        assert requests[0].method == "POST"
        assert requests[0].url.path == "/repos/acme/api/issues/7/comments"
        assert json.loads(requests[0].content) == {"body": "hello"}
        assert requests[0].headers["Authorization"] == "Bearer ghp_test"

    def test_add_reaction(self):
        requests: List[httpx.Request] = []

        def handler(request):
            requests.append(request)
            return httpx.Response(201, json={"content": "eyes"})

        async def scenario():
            async with _client(handler) as client:
                await client.add_reaction("acme", "api", 991)

        run_async(scenario())

        assert requests[0].url.path == "/repos/acme/api/issues/comments/991/reactions"
        assert json.loads(requests[0].content) == {"content": "eyes"}

    def test_find_open_pull_request_filters_by_head(self):
        requests: List[httpx.Request] = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json=[{"number": 12}])

        async def scenario():
            async with _client(handler) as client:
                return await client.find_open_pull_request("acme", "api", "rpi/add-cache")

        assert run_async(scenario()) == {"number": 12}
        assert requests[0].url.params["head"] == "acme:rpi/add-cache"
        assert requests[0].url.params["state"] == "open"

    def test_find_open_pull_request_none(self):
        async def scenario():
            async with _client(lambda r: httpx.Response(200, json=[])) as client:
                return await client.find_open_pull_request("acme", "api", "rpi/x")

        assert run_async(scenario()) is None

    def test_server_errors_are_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) < 3:
                return httpx.Response(502)
            return httpx.Response(200, json={"number": 7})

        async def scenario():
            async with _client(handler) as client:
                return await client.get_issue("acme", "api", 7)

        assert run_async(scenario()) == {"number": 7}
        assert len(attempts) == 3

    def test_client_errors_are_not_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            return httpx.Response(404, text="Not Found")

        async def scenario():
            async with _client(handler) as client:
                await client.get_issue("acme", "api", 7)

        with pytest.raises(GitHubAPIError) as exc_info:
            run_async(scenario())

        assert exc_info.value.status_code == 404
        assert len(attempts) == 1

    def test_rate_limit_raises_immediately(self):
        def handler(request):
            return httpx.Response(
                403,
                headers={"x-ratelimit-remaining": "0", "x-ratelimit-reset": "2000000000"},
            )

        async def scenario():
            async with _client(handler) as client:
                await client.get_issue("acme", "api", 7)

        with pytest.raises(RateLimitError) as exc_info:
            run_async(scenario())

        assert exc_info.value.reset_at == 2000000000

    def test_network_errors_exhaust_retries(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        async def scenario():
            async with _client(handler, max_retries=2) as client:
                await client.get_issue("acme", "api", 7)

        with pytest.raises(GitHubAPIError, match="after 2 retries"):
            run_async(scenario())
        assert len(attempts) == 3


# ---------------------------------------------------------------------------
# ReviewPublisher
# ---------------------------------------------------------------------------


class TestReviewPublisher:

    def _publisher(self, client):
        return ReviewPublisher(client, base_branch="main", repo_path="/repo")

    def test_opens_pull_request_when_none_exists(self):
        client = AsyncMock()
        client.find_open_pull_request.return_value = None
        client.create_pull_request.return_value = {"number": 12, "html_url": "u"}

        number, url = run_async(self._publisher(client).open_or_update(_make_run(), "Done"))

        assert (number, url) == (12, "u")
        kwargs = client.create_pull_request.call_args.kwargs
        assert kwargs["head_branch"] == "rpi/add-cache"
        assert kwargs["base_branch"] == "main"
        assert kwargs["title"] == "[rpi] Add cache"
        assert "Closes #7" in kwargs["body"]

    def test_updates_stored_pull_request(self):
        client = AsyncMock()
        client.update_pull_request.return_value = {"html_url": "u"}

        number, _ = run_async(
            self._publisher(client).open_or_update(_make_run(review_object_id=12), "Done")
        )

        assert number == 12
        client.find_open_pull_request.assert_not_called()
        client.create_pull_request.assert_not_called()

    def test_adopts_open_pull_request_for_branch(self):
        client = AsyncMock()
        client.find_open_pull_request.return_value = {"number": 15}
        client.update_pull_request.return_value = {"html_url": "u"}

        number, _ = run_async(self._publisher(client).open_or_update(_make_run(), "Done"))

        assert number == 15
        client.create_pull_request.assert_not_called()

    def test_artifact_links_are_relative_to_repo(self):
        links = self._publisher(AsyncMock()).artifact_links(_make_run())

        assert links[Stage.PLAN] == (
            "https://github.com/acme/api/blob/rpi/add-cache/docs/rpi/add-cache/plan.md"
        )

    def test_review_status(self):
        client = AsyncMock()
        client.get_pull_request.return_value = {"state": "closed"}
        publisher = self._publisher(client)

        assert run_async(publisher.is_review_open(_make_run())) is None
        assert run_async(publisher.is_review_open(_make_run(review_object_id=12))) is False


def test_pull_request_body_lists_artifacts():
    body = build_pull_request_body(
        _make_run(), "Added a cache.", {Stage.RESEARCH: "link/research.md"}
    )
    assert body.startswith("## Summary\n\nAdded a cache.")
    assert "- Research: [research.md](link/research.md)" in body
    assert "Plan:" not in body


def test_failure_comment_without_stage():
    comment = format_failure_comment(None, "no answer")
    assert "**Stage:**" not in comment
    assert "no answer" in comment
