"""GitHub REST API client and the sticky coverage comment.

The coverage report is posted as a single comment per pull request,
identified by an HTML marker. By default the previous comment is deleted and
a fresh one created, so the newest report is always at the bottom of the
conversation; ``recreate=False`` edits it in place instead.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import requests

if TYPE_CHECKING:
    from tranche.ci.trigger import TriggerEvent

logger = logging.getLogger(__name__)

GITHUB_API_BASE = "https://api.github.com"

_DEFAULT_TIMEOUT = 30.0
_PER_PAGE = 100
_MAX_PAGES = 20


@dataclass(frozen=True)
class GitHubPRInfo:
    """Information about a GitHub pull request."""

    owner: str
    """Repository owner (username or organization)."""

    repo: str
    """Repository name."""

    pr_number: int
    """Pull request number."""


class GitHubAPIError(Exception):
    """Exception raised when GitHub API operations fail."""


def pr_info_from_event(event: TriggerEvent) -> GitHubPRInfo | None:
    """PR coordinates of a pull-request trigger, or None for other events."""
    if not event.is_pull_request or event.pr_number is None:
        return None
    if not event.owner or not event.repo:
        return None
    return GitHubPRInfo(owner=event.owner, repo=event.repo, pr_number=event.pr_number)


def compute_comment_marker(prefix: str) -> str:
    """Generate the HTML marker that identifies a sticky comment.

    Args:
        prefix: Header of the comment (e.g. ``"coverage"``).

    Returns:
        HTML comment marker string.
    """
    hash_str = hashlib.sha256(prefix.encode()).hexdigest()[:8]
    return f"<!-- tranche:{prefix}:{hash_str} -->"


class GitHubAPI:
    """Minimal client for the issue-comment endpoints."""

    def __init__(
        self,
        token: str,
        *,
        api_url: str = GITHUB_API_BASE,
        timeout: float = _DEFAULT_TIMEOUT,
    ) -> None:
        if not token:
            raise GitHubAPIError("GitHub token required (publish.github_token or GITHUB_TOKEN)")
        self._api_url = api_url.rstrip("/")
        self._timeout = timeout
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    def _comments_url(self, pr_info: GitHubPRInfo) -> str:
        return (
            f"{self._api_url}/repos/{pr_info.owner}/{pr_info.repo}/"
            f"issues/{pr_info.pr_number}/comments"
        )

    def _comment_url(self, pr_info: GitHubPRInfo, comment_id: int) -> str:
        return f"{self._api_url}/repos/{pr_info.owner}/{pr_info.repo}/issues/comments/{comment_id}"

    def list_comments(self, pr_info: GitHubPRInfo) -> list[dict[str, Any]]:
        """Every comment on the pull request, following pagination."""
        comments: list[dict[str, Any]] = []
        url: str | None = self._comments_url(pr_info)
        params: dict[str, Any] | None = {"per_page": _PER_PAGE}
        for _ in range(_MAX_PAGES):
            if url is None:
                break
            try:
                response = requests.get(
                    url, headers=self._headers, params=params, timeout=self._timeout
                )
                response.raise_for_status()
                page = response.json()
            except (requests.RequestException, ValueError) as exc:
                raise GitHubAPIError(f"GET request failed: {exc}") from exc
            if not isinstance(page, list):
                raise GitHubAPIError(f"Unexpected comments payload from {url}")
            comments.extend(page)
            url = response.links.get("next", {}).get("url")
            params = None
        return comments

    def create_comment(self, pr_info: GitHubPRInfo, body: str) -> dict[str, Any]:
        result: dict[str, Any] = self._send("POST", self._comments_url(pr_info), {"body": body})
        return result

    def update_comment(self, pr_info: GitHubPRInfo, comment_id: int, body: str) -> dict[str, Any]:
        url = self._comment_url(pr_info, comment_id)
        result: dict[str, Any] = self._send("PATCH", url, {"body": body})
        return result

    def delete_comment(self, pr_info: GitHubPRInfo, comment_id: int) -> None:
        self._send("DELETE", self._comment_url(pr_info, comment_id))

    def find_comment_by_marker(self, pr_info: GitHubPRInfo, marker: str) -> dict[str, Any] | None:
        """Find the most recent comment containing ``marker``."""
        found: dict[str, Any] | None = None
        for comment in self.list_comments(pr_info):
            if marker in (comment.get("body") or ""):
                found = comment
        return found

    def upsert_comment(self, pr_info: GitHubPRInfo, body: str, marker: str) -> dict[str, Any]:
        """Update the comment carrying ``marker`` or create one."""
        if marker not in body:
            body = f"{marker}\n{body}"
        existing = self.find_comment_by_marker(pr_info, marker)
        if existing:
            logger.info("Updating existing comment %d", existing["id"])
            return self.update_comment(pr_info, existing["id"], body)
        logger.info("Creating new comment")
        return self.create_comment(pr_info, body)

    def _send(self, method: str, url: str, data: dict[str, Any] | None = None) -> Any:
        try:
            response = requests.request(
                method, url, json=data, headers=self._headers, timeout=self._timeout
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise GitHubAPIError(f"{method} request failed: {exc}") from exc
        if response.status_code == requests.codes.no_content or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise GitHubAPIError(f"{method} {url} returned invalid JSON") from exc


class StickyComment:
    """One marker-identified comment per pull request and header."""

    def __init__(self, api: GitHubAPI, header: str = "coverage", *, recreate: bool = True) -> None:
        self._api = api
        self.marker = compute_comment_marker(header)
        self.recreate = recreate

    def render(self, body: str) -> str:
        return f"{self.marker}\n{body}"

    def publish(self, pr_info: GitHubPRInfo, body: str) -> dict[str, Any]:
        """Post ``body`` as the sticky comment and return the API response.

        Raises:
            GitHubAPIError: If any API call fails.
        """
        full_body = self.render(body)
        if not self.recreate:
            return self._api.upsert_comment(pr_info, full_body, self.marker)

        existing = self._api.find_comment_by_marker(pr_info, self.marker)
        if existing:
            logger.info("Deleting previous comment %d", existing["id"])
            self._api.delete_comment(pr_info, existing["id"])
        result = self._api.create_comment(pr_info, full_body)
        logger.info("Posted coverage comment %s", result.get("html_url", ""))
        return result
