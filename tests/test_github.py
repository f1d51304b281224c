"""HTTP tests for the GitHub client and the sticky coverage comment.

Requests are intercepted with ``responses`` at the transport layer.
"""

from __future__ import annotations

import json
from typing import Any

import pytest
import responses
from responses import matchers

from tranche.ci.trigger import TriggerEvent
from tranche.publish.github import (
    GitHubAPI,
    GitHubAPIError,
    GitHubPRInfo,
    StickyComment,
    compute_comment_marker,
    pr_info_from_event,
)

_BASE = "https://api.github.com"
_COMMENTS = f"{_BASE}/repos/octocat/hello-world/issues/42/comments"

_EXPECTED_HEADERS = {
    "Authorization": "Bearer test-value",
    "Accept": "application/vnd.github+json",
    "X-GitHub-Api-Version": "2022-11-28",
}


def _comment_url(comment_id: int) -> str:
    return f"{_BASE}/repos/octocat/hello-world/issues/comments/{comment_id}"


def _req_body(call: responses.Call) -> dict[str, Any]:
    body = call.request.body
    assert body is not None
    parsed: dict[str, Any] = json.loads(body)
    return parsed


@pytest.fixture()
def api() -> GitHubAPI:
    return GitHubAPI("test-value")


@pytest.fixture()
def pr_info() -> GitHubPRInfo:
    return GitHubPRInfo(owner="octocat", repo="hello-world", pr_number=42)


# ── Helpers ──────────────────────────────────────────────────────


class TestPrInfoFromEvent:
    def test_pull_request(self) -> None:
        event = TriggerEvent("pull_request", repository="octocat/hello-world", pr_number=42)
        assert pr_info_from_event(event) == GitHubPRInfo("octocat", "hello-world", 42)

    def test_push_has_no_pr(self) -> None:
        event = TriggerEvent("push", repository="octocat/hello-world", pr_number=42)
        assert pr_info_from_event(event) is None

    def test_missing_number(self) -> None:
        event = TriggerEvent("pull_request", repository="octocat/hello-world")
        assert pr_info_from_event(event) is None

    def test_missing_repository(self) -> None:
        assert pr_info_from_event(TriggerEvent("pull_request", pr_number=1)) is None


def test_marker_is_stable_per_header() -> None:
    marker = compute_comment_marker("coverage")
    assert marker == compute_comment_marker("coverage")
    assert marker != compute_comment_marker("other")
    assert marker.startswith("<!-- tranche:coverage:")


def test_token_required() -> None:
    with pytest.raises(GitHubAPIError, match="token required"):
        GitHubAPI("")


# ── Client ───────────────────────────────────────────────────────


class TestListComments:
    @responses.activate
    def test_follows_pagination(self, api: GitHubAPI, pr_info: GitHubPRInfo) -> None:
        responses.add(
            responses.GET,
            _COMMENTS,
            json=[{"id": 1, "body": "first"}],
            headers={"Link": f'<{_COMMENTS}?page=2>; rel="next"'},
            match=[
                matchers.header_matcher(_EXPECTED_HEADERS),
                matchers.query_param_matcher({"per_page": "100"}),
            ],
        )
        responses.add(
            responses.GET, f"{_COMMENTS}?page=2", json=[{"id": 2, "body": "second"}]
        )

        comments = api.list_comments(pr_info)

        assert [c["id"] for c in comments] == [1, 2]
        assert len(responses.calls) == 2

    @responses.activate
    def test_http_error(self, api: GitHubAPI, pr_info: GitHubPRInfo) -> None:
        responses.add(responses.GET, _COMMENTS, json={"message": "Not Found"}, status=404)
        with pytest.raises(GitHubAPIError, match="GET request failed"):
            api.list_comments(pr_info)

    @responses.activate
    def test_unexpected_payload(self, api: GitHubAPI, pr_info: GitHubPRInfo) -> None:
        responses.add(responses.GET, _COMMENTS, json={"not": "a list"})
        with pytest.raises(GitHubAPIError, match="Unexpected comments payload"):
            api.list_comments(pr_info)


class TestFindAndUpsert:
    @responses.activate
    def test_find_latest_marker(self, api: GitHubAPI, pr_info: GitHubPRInfo) -> None:
        marker = "<!-- tranche:coverage:abc -->"
        responses.add(
            responses.GET,
            _COMMENTS,
            json=[
                {"id": 1, "body": f"{marker}\nold"},
                {"id": 2, "body": "unrelated"},
                {"id": 3, "body": f"{marker}\nnewer"},
                {"id": 4, "body": None},
            ],
        )
        found = api.find_comment_by_marker(pr_info, marker)
        assert found is not None
        assert found["id"] == 3

    @responses.activate
    def test_upsert_updates_existing(self, api: GitHubAPI, pr_info: GitHubPRInfo) -> None:
        marker = "<!-- m -->"
        responses.add(responses.GET, _COMMENTS, json=[{"id": 7, "body": f"{marker}\nold"}])
        responses.add(responses.PATCH, _comment_url(7), json={"id": 7})

        api.upsert_comment(pr_info, "new", marker)

        assert responses.calls[1].request.method == "PATCH"
        assert _req_body(responses.calls[1]) == {"body": f"{marker}\nnew"}

    @responses.activate
    def test_upsert_creates(self, api: GitHubAPI, pr_info: GitHubPRInfo) -> None:
        responses.add(responses.GET, _COMMENTS, json=[])
        responses.add(responses.POST, _COMMENTS, json={"id": 8}, status=201)

        result = api.upsert_comment(pr_info, "<!-- m -->\nbody", "<!-- m -->")

        assert result == {"id": 8}
        assert _req_body(responses.calls[1]) == {"body": "<!-- m -->\nbody"}

    @responses.activate
    def test_delete_no_content(self, api: GitHubAPI, pr_info: GitHubPRInfo) -> None:
        responses.add(responses.DELETE, _comment_url(5), status=204)
        api.delete_comment(pr_info, 5)
        assert responses.calls[0].request.method == "DELETE"

    @responses.activate
    def test_send_error(self, api: GitHubAPI, pr_info: GitHubPRInfo) -> None:
        responses.add(responses.POST, _COMMENTS, json={"message": "Forbidden"}, status=403)
        with pytest.raises(GitHubAPIError, match="POST request failed"):
            api.create_comment(pr_info, "x")


# ── Sticky comment ───────────────────────────────────────────────


class TestStickyComment:
    @responses.activate
    def test_recreate_deletes_then_posts(self, api: GitHubAPI, pr_info: GitHubPRInfo) -> None:
        sticky = StickyComment(api)
        responses.add(
            responses.GET, _COMMENTS, json=[{"id": 11, "body": sticky.render("old report")}]
        )
        responses.add(responses.DELETE, _comment_url(11), status=204)
        responses.add(
            responses.POST,
            _COMMENTS,
            json={"id": 12, "html_url": "https://github.com/c/12"},
            status=201,
        )

        result = sticky.publish(pr_info, "new report")

        methods = [call.request.method for call in responses.calls]
        assert methods == ["GET", "DELETE", "POST"]
        assert _req_body(responses.calls[2]) == {"body": f"{sticky.marker}\nnew report"}
        assert result["id"] == 12

    @responses.activate
    def test_recreate_without_previous(self, api: GitHubAPI, pr_info: GitHubPRInfo) -> None:
        responses.add(responses.GET, _COMMENTS, json=[{"id": 1, "body": "someone else"}])
        responses.add(responses.POST, _COMMENTS, json={"id": 2}, status=201)

        StickyComment(api).publish(pr_info, "report")

        assert [call.request.method for call in responses.calls] == ["GET", "POST"]

    @responses.activate
    def test_edit_in_place(self, api: GitHubAPI, pr_info: GitHubPRInfo) -> None:
        sticky = StickyComment(api, recreate=False)
        responses.add(responses.GET, _COMMENTS, json=[{"id": 21, "body": sticky.render("old")}])
        responses.add(responses.PATCH, _comment_url(21), json={"id": 21})

        sticky.publish(pr_info, "new")

        assert [call.request.method for call in responses.calls] == ["GET", "PATCH"]
        assert _req_body(responses.calls[1]) == {"body": f"{sticky.marker}\nnew"}

    def test_headers_use_separate_markers(self, api: GitHubAPI) -> None:
        assert StickyComment(api, "coverage").marker != StickyComment(api, "lint").marker
