"""Publish the aggregated report: sticky PR comment, then external reporting.

Both steps are best-effort. A failure in one is logged and recorded in the
:class:`PublicationResult`; it never stops the other step and never changes
the run status.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from tranche.coverage.summary import render_markdown
from tranche.publish.github import (
    GitHubAPI,
    GitHubAPIError,
    StickyComment,
    pr_info_from_event,
)
from tranche.publish.reporting import ReportingClient, ReportingClientError

if TYPE_CHECKING:
    from tranche.aggregator import AggregatedReport
    from tranche.ci.trigger import TriggerEvent
    from tranche.config import PublishConfig

logger = logging.getLogger(__name__)


class StepStatus(Enum):
    PUBLISHED = "published"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class PublicationResult:
    """What happened to each publication step."""

    comment: StepStatus = StepStatus.SKIPPED
    reporting: StepStatus = StepStatus.SKIPPED
    comment_url: str = ""
    errors: dict[str, str] = field(default_factory=dict)
    """Step name -> error message for failed steps."""

    @property
    def ok(self) -> bool:
        return StepStatus.FAILED not in (self.comment, self.reporting)


class Publisher:
    """Runs the comment and reporting steps in order."""

    def __init__(
        self,
        comment: StickyComment | None = None,
        reporting: ReportingClient | None = None,
        *,
        badge: bool = True,
    ) -> None:
        self._comment = comment
        self._reporting = reporting
        self._badge = badge

    @classmethod
    def from_config(
        cls, config: PublishConfig, *, token: str | None = None, badge: bool = True
    ) -> Publisher:
        """Build a publisher; steps without credentials are left out (skipped)."""
        github_token = config.github_token if token is None else token
        comment = None
        if github_token:
            api = GitHubAPI(github_token, api_url=config.api_url, timeout=config.timeout)
            comment = StickyComment(api, config.comment_header, recreate=config.recreate_comment)
        reporting = ReportingClient(
            config.reporting_url, config.reporting_token, timeout=config.timeout
        )
        return cls(comment, reporting, badge=badge)

    def publish(self, report: AggregatedReport, event: TriggerEvent) -> PublicationResult:
        result = PublicationResult()
        self._publish_comment(report, event, result)
        self._submit_report(report, event, result)
        return result

    def _publish_comment(
        self, report: AggregatedReport, event: TriggerEvent, result: PublicationResult
    ) -> None:
        pr_info = pr_info_from_event(event)
        if pr_info is None:
            logger.debug("Not a pull request; skipping coverage comment")
            return
        if self._comment is None:
            logger.info("No GitHub token; skipping coverage comment")
            return
        try:
            response = self._comment.publish(
                pr_info, render_markdown(report.summary, badge=self._badge)
            )
        except GitHubAPIError as exc:
            logger.warning("Coverage comment failed: %s", exc)
            result.comment = StepStatus.FAILED
            result.errors["comment"] = str(exc)
            return
        result.comment = StepStatus.PUBLISHED
        result.comment_url = str(response.get("html_url", ""))

    def _submit_report(
        self, report: AggregatedReport, event: TriggerEvent, result: PublicationResult
    ) -> None:
        if self._reporting is None or not self._reporting.is_configured:
            logger.info("Reporting service not configured; skipping submission")
            return
        try:
            self._reporting.submit(report, event)
        except ReportingClientError as exc:
            logger.warning("Coverage submission failed: %s", exc)
            result.reporting = StepStatus.FAILED
            result.errors["reporting"] = str(exc)
            return
        result.reporting = StepStatus.PUBLISHED
