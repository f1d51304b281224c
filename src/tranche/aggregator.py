"""Merge per-tranche coverage artifacts into one report for the run.

Aggregation runs once, after every tranche has terminated. It works with
whatever artifacts exist: tranches that failed or whose artifact was lost are
listed as missing, with a reason, rather than silently dropped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from tranche.coverage.cobertura import to_cobertura_xml
from tranche.coverage.lcov import LcovParseError, parse_lcov, render_lcov
from tranche.coverage.summary import CoverageSummary, Thresholds, render_markdown, summarize
from tranche.sharding.merger import merge_coverage_reports
from tranche.telemetry.sentry_integration import start_span

if TYPE_CHECKING:
    from collections.abc import Mapping
    from pathlib import Path

    from tranche.artifacts.store import ArtifactStore
    from tranche.coverage.base import CoverageReport
    from tranche.sharding.tranche_result import TrancheResult

logger = logging.getLogger(__name__)

REASON_FAILED = "failed"
REASON_LOST = "lost"
REASON_UNKNOWN = "unknown"


class AggregationError(Exception):
    """An artifact could not be parsed; the merged report cannot be trusted."""

    def __init__(self, message: str, index: int | None = None) -> None:
        super().__init__(message)
        self.index = index


class NoCoverageError(AggregationError):
    """No tranche contributed coverage; there is nothing to summarize."""


@dataclass(frozen=True)
class AggregatedReport:
    """The merged coverage of a run. Built once, never modified."""

    report: CoverageReport
    """Merged coverage model."""

    lcov: str
    """Merged LCOV export."""

    cobertura_xml: str
    """Cobertura XML export."""

    summary: CoverageSummary
    """Rates, health band and badge."""

    count: int
    """Number of tranches the run was planned with."""

    included: tuple[int, ...] = ()
    """Tranche indices whose artifacts were merged."""

    missing: Mapping[int, str] = field(default_factory=dict)
    """Tranche index -> reason (failed, lost, unknown)."""

    @property
    def is_complete(self) -> bool:
        return not self.missing

    @property
    def lost(self) -> list[int]:
        """Tranches that reported success but whose artifact is absent."""
        return [index for index, reason in self.missing.items() if reason == REASON_LOST]

    @property
    def markdown(self) -> str:
        return render_markdown(self.summary)

    def write(
        self,
        output_dir: Path,
        *,
        lcov_file: str = "coverage.lcov",
        cobertura_file: str = "coverage.xml",
        summary_file: str = "code-coverage-results.md",
        badge: bool = True,
    ) -> dict[str, Path]:
        """Write the LCOV, Cobertura and markdown outputs; return their paths."""
        output_dir.mkdir(parents=True, exist_ok=True)
        outputs = {
            "lcov": (output_dir / lcov_file, self.lcov),
            "cobertura": (output_dir / cobertura_file, self.cobertura_xml),
            "summary": (output_dir / summary_file, render_markdown(self.summary, badge=badge)),
        }
        for path, content in outputs.values():
            path.write_text(content, encoding="utf-8")
            logger.info("Wrote %s", path)
        return {name: path for name, (path, _) in outputs.items()}


def _missing_reason(index: int, results: Mapping[int, TrancheResult] | None) -> str:
    if results is None or index not in results:
        return REASON_UNKNOWN
    result = results[index]
    if result.succeeded or result.missing_artifact:
        return REASON_LOST
    return REASON_FAILED


def aggregate(
    artifacts: Mapping[int, bytes],
    *,
    count: int,
    results: Mapping[int, TrancheResult] | None = None,
    thresholds: Thresholds | None = None,
) -> AggregatedReport:
    """Merge the available tranche artifacts.

    Args:
        artifacts: Tranche index -> LCOV bytes.
        count: Number of tranches the run was planned with.
        results: Recorded tranche results, used to explain missing artifacts.
        thresholds: Health thresholds for the summary.

    Raises:
        AggregationError: If any artifact is not valid UTF-8 LCOV.
        NoCoverageError: If no artifact for tranches ``0..count-1`` exists.
        ValueError: If ``count`` < 1.
    """
    if count < 1:
        msg = f"tranche count must be >= 1, got {count}"
        raise ValueError(msg)

    with start_span(op="tranche.aggregate", name=f"aggregate {count} tranches") as span:
        included = tuple(sorted(index for index in artifacts if 0 <= index < count))
        ignored = sorted(set(artifacts) - set(included))
        if ignored:
            logger.warning("Ignoring artifacts outside 0..%d: %s", count - 1, ignored)
        if not included:
            span.set_status("internal_error")
            msg = f"No coverage artifact from any of the {count} tranches"
            raise NoCoverageError(msg)

        reports: list[CoverageReport] = []
        for index in included:
            try:
                text = artifacts[index].decode("utf-8")
                reports.append(parse_lcov(text))
            except (UnicodeDecodeError, LcovParseError) as exc:
                span.set_status("internal_error")
                msg = f"Malformed coverage artifact for tranche {index}: {exc}"
                raise AggregationError(msg, index) from exc

        merged = merge_coverage_reports(reports)

        missing = {
            index: _missing_reason(index, results)
            for index in range(count)
            if index not in artifacts
        }
        for index, reason in missing.items():
            logger.warning("Tranche %d missing from coverage (%s)", index, reason)

        span.set_data("included", len(included))
        span.set_data("missing", len(missing))

    return AggregatedReport(
        report=merged,
        lcov=render_lcov(merged),
        cobertura_xml=to_cobertura_xml(merged),
        summary=summarize(merged, thresholds, missing),
        count=count,
        included=included,
        missing=missing,
    )


def load_aggregated(
    lcov_text: str,
    *,
    count: int,
    results: Mapping[int, TrancheResult] | None = None,
    thresholds: Thresholds | None = None,
) -> AggregatedReport:
    """Rebuild an :class:`AggregatedReport` from an already merged LCOV file.

    Used by the publish step, which runs after aggregation wrote its outputs.
    Tranches without a successful recorded result count as missing.

    Raises:
        AggregationError: If ``lcov_text`` is not valid LCOV.
        NoCoverageError: If the recorded results show no successful tranche,
            or there are no results and the report is empty.
    """
    try:
        merged = parse_lcov(lcov_text)
    except LcovParseError as exc:
        msg = f"Malformed merged coverage report: {exc}"
        raise AggregationError(msg) from exc

    results = results or {}
    included = tuple(
        index for index in range(count) if index in results and results[index].succeeded
    )
    if not included and (results or not merged.files):
        msg = f"No successful tranche among the {count} planned; nothing to publish"
        raise NoCoverageError(msg)
    missing = {
        index: _missing_reason(index, results)
        for index in range(count)
        if index not in included
    }
    return AggregatedReport(
        report=merged,
        lcov=render_lcov(merged),
        cobertura_xml=to_cobertura_xml(merged),
        summary=summarize(merged, thresholds, missing),
        count=count,
        included=included,
        missing=missing,
    )


def aggregate_from_store(
    store: ArtifactStore,
    count: int,
    thresholds: Thresholds | None = None,
) -> AggregatedReport:
    """Fetch every ``coverage-*.lcov`` of the store's run and merge them."""
    artifacts = store.list()
    results = store.results()
    logger.info(
        "Aggregating run %s: %d artifact(s), %d result(s)",
        store.run_id,
        len(artifacts),
        len(results),
    )
    return aggregate(artifacts, count=count, results=results, thresholds=thresholds)
