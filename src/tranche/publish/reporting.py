"""Best-effort submission of merged coverage to an external reporting service."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import requests

if TYPE_CHECKING:
    from tranche.aggregator import AggregatedReport
    from tranche.ci.trigger import TriggerEvent

logger = logging.getLogger(__name__)

_HTTP_SUCCESS_MIN = 200
_HTTP_SUCCESS_MAX = 300
_ERROR_BODY_CHARS = 300


class ReportingClientError(RuntimeError):
    """Raised when the reporting service rejects or cannot receive a report."""


def build_payload(report: AggregatedReport, event: TriggerEvent) -> dict[str, Any]:
    """JSON body for one submission: raw merged LCOV plus the summary."""
    summary = report.summary
    return {
        "format": "lcov",
        "repository": event.repository,
        "commit": event.sha,
        "ref": event.ref,
        "pull_request": event.pr_number,
        "report": report.lcov,
        "summary": {
            "line_rate": summary.line_rate,
            "branch_rate": summary.branch_rate,
            "lines_covered": summary.lines_covered,
            "lines_valid": summary.lines_valid,
            "branches_covered": summary.branches_covered,
            "branches_valid": summary.branches_valid,
            "health": summary.band.value,
        },
        "partial": not report.is_complete,
        "missing_tranches": {str(index): reason for index, reason in report.missing.items()},
    }


class ReportingClient:
    """Posts coverage to ``publish.reporting_url`` with the project token."""

    def __init__(self, url: str, token: str, *, timeout: float = 30.0) -> None:
        self._url = url.strip()
        self._token = token.strip()
        self._timeout = timeout

    @property
    def is_configured(self) -> bool:
        """Both an endpoint and a token are set; otherwise submission is skipped."""
        return bool(self._url and self._token)

    def submit(self, report: AggregatedReport, event: TriggerEvent) -> dict[str, Any]:
        """Upload the report.

        Raises:
            ReportingClientError: On a missing configuration, a transport
                error or a non-2xx response.
        """
        if not self.is_configured:
            raise ReportingClientError("Reporting URL and project token are required.")

        try:
            response = requests.post(
                self._url,
                headers={
                    "Authorization": f"Bearer {self._token}",
                    "Content-Type": "application/json",
                },
                json=build_payload(report, event),
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise ReportingClientError(f"Coverage upload failed: {exc}") from exc

        if response.status_code < _HTTP_SUCCESS_MIN or response.status_code >= _HTTP_SUCCESS_MAX:
            message = response.text.strip()[:_ERROR_BODY_CHARS]
            raise ReportingClientError(
                f"Coverage upload failed (HTTP {response.status_code}): {message}"
            )

        logger.info("Coverage submitted to %s", self._url)
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}
