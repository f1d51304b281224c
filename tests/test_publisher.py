"""Tests for tranche.publish.publisher: steps are independent and best-effort."""

from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock

import pytest

from tranche.aggregator import AggregatedReport, aggregate
from tranche.ci.trigger import TriggerEvent
from tranche.config import PublishConfig
from tranche.publish.github import GitHubAPIError, GitHubPRInfo, StickyComment
from tranche.publish.publisher import Publisher, StepStatus
from tranche.publish.reporting import ReportingClient, ReportingClientError

PR_EVENT = TriggerEvent("pull_request", repository="octocat/hello-world", pr_number=42)
PUSH_EVENT = TriggerEvent("push", ref="refs/heads/main", repository="octocat/hello-world")


@pytest.fixture()
def report() -> AggregatedReport:
    return aggregate({0: b"SF:a.py\nDA:1,1\nend_of_record\n"}, count=1)


def _comment(response: dict[str, Any] | None = None, error: Exception | None = None) -> MagicMock:
    comment = MagicMock(spec=StickyComment)
    if error is not None:
        comment.publish.side_effect = error
    else:
        comment.publish.return_value = response or {"html_url": "https://github.com/c/1"}
    return comment


def _reporting(error: Exception | None = None, *, configured: bool = True) -> MagicMock:
    reporting = MagicMock(spec=ReportingClient)
    reporting.is_configured = configured
    if error is not None:
        reporting.submit.side_effect = error
    return reporting


class TestPublisher:
    def test_both_steps_published(self, report: AggregatedReport) -> None:
        comment, reporting = _comment(), _reporting()
        result = Publisher(comment, reporting).publish(report, PR_EVENT)

        assert result.comment is StepStatus.PUBLISHED
        assert result.reporting is StepStatus.PUBLISHED
        assert result.comment_url == "https://github.com/c/1"
        assert result.ok
        pr_info, body = comment.publish.call_args.args
        assert pr_info == GitHubPRInfo("octocat", "hello-world", 42)
        assert "Package | Line Rate" in body
        reporting.submit.assert_called_once_with(report, PR_EVENT)

    def test_comment_failure_does_not_stop_reporting(self, report: AggregatedReport) -> None:
        comment = _comment(error=GitHubAPIError("403 Forbidden"))
        reporting = _reporting()
        result = Publisher(comment, reporting).publish(report, PR_EVENT)

        assert result.comment is StepStatus.FAILED
        assert result.reporting is StepStatus.PUBLISHED
        assert result.errors == {"comment": "403 Forbidden"}
        assert not result.ok

    def test_reporting_failure_is_recorded(self, report: AggregatedReport) -> None:
        reporting = _reporting(error=ReportingClientError("HTTP 500"))
        result = Publisher(_comment(), reporting).publish(report, PR_EVENT)

        assert result.comment is StepStatus.PUBLISHED
        assert result.reporting is StepStatus.FAILED
        assert result.errors == {"reporting": "HTTP 500"}

    def test_push_skips_comment(self, report: AggregatedReport) -> None:
        comment = _comment()
        result = Publisher(comment, _reporting()).publish(report, PUSH_EVENT)

        assert result.comment is StepStatus.SKIPPED
        assert result.reporting is StepStatus.PUBLISHED
        comment.publish.assert_not_called()

    def test_unconfigured_steps_are_skipped(self, report: AggregatedReport) -> None:
        reporting = _reporting(configured=False)
        result = Publisher(None, reporting).publish(report, PR_EVENT)

        assert result.comment is StepStatus.SKIPPED
        assert result.reporting is StepStatus.SKIPPED
        assert result.ok
        reporting.submit.assert_not_called()

    def test_badge_flag(self, report: AggregatedReport) -> None:
        comment = _comment()
        Publisher(comment, None, badge=False).publish(report, PR_EVENT)
        _, body = comment.publish.call_args.args
        assert "img.shields.io" not in body


class TestFromConfig:
    def test_without_token_has_no_comment(self, report: AggregatedReport) -> None:
        publisher = Publisher.from_config(PublishConfig())
        result = publisher.publish(report, PR_EVENT)
        assert result.comment is StepStatus.SKIPPED
        assert result.reporting is StepStatus.SKIPPED

    def test_token_override(self) -> None:
        publisher = Publisher.from_config(PublishConfig(github_token="default"), token="elevated")
        assert publisher._comment is not None
        assert publisher._comment._api._headers["Authorization"] == "Bearer elevated"

    def test_comment_settings(self) -> None:
        config = PublishConfig(github_token="t", comment_header="cov", recreate_comment=False)
        publisher = Publisher.from_config(config)
        assert publisher._comment is not None
        assert publisher._comment.recreate is False
        assert "tranche:cov:" in publisher._comment.marker
