"""Publication of the merged coverage report."""

from tranche.publish.github import GitHubAPI, GitHubAPIError, StickyComment
from tranche.publish.publisher import PublicationResult, Publisher, StepStatus
from tranche.publish.reporting import ReportingClient, ReportingClientError

__all__ = [
    "GitHubAPI",
    "GitHubAPIError",
    "PublicationResult",
    "Publisher",
    "ReportingClient",
    "ReportingClientError",
    "StepStatus",
    "StickyComment",
]
