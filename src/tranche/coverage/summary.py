"""Coverage health summary: rates, threshold bands, badge and markdown."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING
from urllib.parse import quote

from tranche.coverage.cobertura import group_by_package, read_cobertura

if TYPE_CHECKING:
    from collections.abc import Mapping

    from tranche.coverage.base import CoverageReport

logger = logging.getLogger(__name__)

_BADGE_BASE = "https://img.shields.io/badge"
_BADGE_LABEL = "Code Coverage"
_ROOT_PACKAGE_LABEL = "(root)"


class HealthBand(Enum):
    """Where a coverage rate falls relative to the thresholds."""

    FAIL = "fail"
    WARN = "warn"
    PASS = "pass"

    @property
    def color(self) -> str:
        return {"fail": "red", "warn": "yellow", "pass": "green"}[self.value]

    @property
    def glyph(self) -> str:
        return {"fail": "❌", "warn": "➖", "pass": "✔"}[self.value]


@dataclass(frozen=True)
class Thresholds:
    """Lower/upper line-rate thresholds in percent."""

    lower: float = 50.0
    upper: float = 75.0

    def __post_init__(self) -> None:
        if not 0.0 <= self.lower <= self.upper <= 100.0:
            msg = (
                "thresholds must satisfy 0 <= lower <= upper <= 100, "
                f"got {self.lower}/{self.upper}"
            )
            raise ValueError(msg)

    def classify(self, percent: float) -> HealthBand:
        if percent < self.lower:
            return HealthBand.FAIL
        if percent < self.upper:
            return HealthBand.WARN
        return HealthBand.PASS


@dataclass(frozen=True)
class PackageSummary:
    """One row of the summary table."""

    name: str
    line_rate: float
    """Covered/total lines, 0.0-1.0."""

    branch_rate: float
    """Taken/total branches, 0.0-1.0."""

    band: HealthBand


@dataclass(frozen=True)
class CoverageSummary:
    """Merged coverage at a glance."""

    line_rate: float
    """Covered/total lines, 0.0-1.0 (1.0 when nothing is instrumented)."""

    branch_rate: float
    """Taken/total branches, 0.0-1.0 (1.0 when there are no branches)."""

    band: HealthBand
    thresholds: Thresholds
    lines_covered: int = 0
    lines_valid: int = 0
    branches_covered: int = 0
    branches_valid: int = 0
    packages: tuple[PackageSummary, ...] = ()
    missing_tranches: Mapping[int, str] = field(default_factory=dict)
    """Tranche index -> reason, for tranches absent from the merge."""

    @property
    def line_percent(self) -> float:
        return self.line_rate * 100.0

    @property
    def branch_percent(self) -> float:
        return self.branch_rate * 100.0

    @property
    def badge_url(self) -> str:
        return badge_url(self.line_percent, self.band)

    @property
    def is_complete(self) -> bool:
        return not self.missing_tranches


def _ratio(covered: int, valid: int) -> float:
    return covered / valid if valid else 1.0


def badge_url(percent: float, band: HealthBand, label: str = _BADGE_LABEL) -> str:
    """Shields.io static badge URL for ``percent``."""
    label_part = quote(label.replace("-", "--"), safe="")
    value_part = quote(f"{percent:.0f}%", safe="")
    return f"{_BADGE_BASE}/{label_part}-{value_part}-{band.color}?style=flat"


def summarize(
    report: CoverageReport,
    thresholds: Thresholds | None = None,
    missing_tranches: Mapping[int, str] | None = None,
) -> CoverageSummary:
    """Summarize a merged :class:`CoverageReport`."""
    thresholds = thresholds or Thresholds()
    packages = []
    for name, files in group_by_package(report).items():
        line_rate = _ratio(sum(f.lines_covered for f in files), sum(f.lines_valid for f in files))
        branch_rate = _ratio(
            sum(f.branches_covered for f in files), sum(f.branches_valid for f in files)
        )
        packages.append(
            PackageSummary(
                name=name,
                line_rate=line_rate,
                branch_rate=branch_rate,
                band=thresholds.classify(line_rate * 100.0),
            )
        )

    line_rate = _ratio(report.lines_covered, report.lines_valid)
    return CoverageSummary(
        line_rate=line_rate,
        branch_rate=_ratio(report.branches_covered, report.branches_valid),
        band=thresholds.classify(line_rate * 100.0),
        thresholds=thresholds,
        lines_covered=report.lines_covered,
        lines_valid=report.lines_valid,
        branches_covered=report.branches_covered,
        branches_valid=report.branches_valid,
        packages=tuple(packages),
        missing_tranches=dict(sorted((missing_tranches or {}).items())),
    )


def summary_from_cobertura(
    content: str,
    thresholds: Thresholds | None = None,
    missing_tranches: Mapping[int, str] | None = None,
) -> CoverageSummary:
    """Summarize an existing Cobertura XML document.

    Raises:
        CoberturaParseError: If the document is not valid Cobertura.
    """
    thresholds = thresholds or Thresholds()
    document = read_cobertura(content)
    return CoverageSummary(
        line_rate=document.line_rate,
        branch_rate=document.branch_rate,
        band=thresholds.classify(document.line_rate * 100.0),
        thresholds=thresholds,
        lines_covered=document.lines_covered,
        lines_valid=document.lines_valid,
        branches_covered=document.branches_covered,
        branches_valid=document.branches_valid,
        packages=tuple(
            PackageSummary(
                name=package.name,
                line_rate=package.line_rate,
                branch_rate=package.branch_rate,
                band=thresholds.classify(package.line_rate * 100.0),
            )
            for package in document.packages
        ),
        missing_tranches=dict(sorted((missing_tranches or {}).items())),
    )


def _pct(rate: float) -> str:
    return f"{rate * 100.0:.0f}%"


def render_markdown(summary: CoverageSummary, *, badge: bool = True) -> str:
    """Render the summary as a markdown block for a PR comment or job summary."""
    out: list[str] = []
    if badge:
        out.append(f"![{_BADGE_LABEL}]({summary.badge_url})")
        out.append("")

    out.append("Package | Line Rate | Branch Rate | Health")
    out.append("-------- | --------- | ----------- | ------")
    for package in summary.packages:
        name = _ROOT_PACKAGE_LABEL if package.name == "." else package.name
        out.append(
            f"{name} | {_pct(package.line_rate)} | {_pct(package.branch_rate)} | "
            f"{package.band.glyph}"
        )
    out.append(
        f"**Summary** | **{_pct(summary.line_rate)}** "
        f"({summary.lines_covered} / {summary.lines_valid}) | "
        f"**{_pct(summary.branch_rate)}** "
        f"({summary.branches_covered} / {summary.branches_valid}) | {summary.band.glyph}"
    )
    out.append("")
    out.append(
        f"_Minimum allowed line rate is `{summary.thresholds.lower:g}%`, "
        f"healthy from `{summary.thresholds.upper:g}%`._"
    )

    if summary.missing_tranches:
        listed = ", ".join(
            f"{index} ({reason})" for index, reason in summary.missing_tranches.items()
        )
        out.append("")
        out.append(
            f"> **Missing tranches:** {listed}. "
            "Coverage above excludes their tests and is incomplete."
        )

    return "\n".join(out) + "\n"
