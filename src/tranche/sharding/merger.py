"""Merge per-tranche coverage into a combined report."""

from __future__ import annotations

from typing import TYPE_CHECKING

from tranche.coverage.base import (
    BranchCoverage,
    CoverageReport,
    FileCoverage,
    FunctionCoverage,
    LineCoverage,
)

if TYPE_CHECKING:
    from collections.abc import Iterable


def merge_coverage_reports(reports: Iterable[CoverageReport]) -> CoverageReport:
    """Merge CoverageReports at the unified model level.

    Line, function and branch hit counts are summed, so the result is the
    same whatever order the tranches are supplied in.  An empty input gives
    an empty report.
    """
    merged_files: dict[str, FileCoverage] = {}

    for report in reports:
        for file_path, file_cov in report.files.items():
            if file_path not in merged_files:
                merged_files[file_path] = _normalise(file_cov)
            else:
                merged_files[file_path] = merge_file_coverage(merged_files[file_path], file_cov)

    return CoverageReport(files={path: merged_files[path] for path in sorted(merged_files)})


def _normalise(file_cov: FileCoverage) -> FileCoverage:
    """Copy with entries sorted the way ``merge_file_coverage`` emits them."""
    return merge_file_coverage(FileCoverage(file_path=file_cov.file_path), file_cov)


def merge_file_coverage(a: FileCoverage, b: FileCoverage) -> FileCoverage:
    """Merge two FileCoverage objects for the same file."""
    return FileCoverage(
        file_path=a.file_path,
        lines=_merge_lines(a.lines, b.lines),
        functions=_merge_functions(a.functions, b.functions),
        branches=_merge_branches(a.branches, b.branches),
    )


def _merge_lines(a: list[LineCoverage], b: list[LineCoverage]) -> list[LineCoverage]:
    """Union of lines with execution counts summed."""
    by_line: dict[int, int] = {}
    for lc in (*a, *b):
        by_line[lc.line_number] = by_line.get(lc.line_number, 0) + lc.execution_count
    return [LineCoverage(line_number=ln, execution_count=ec) for ln, ec in sorted(by_line.items())]


def _merge_functions(
    a: list[FunctionCoverage], b: list[FunctionCoverage]
) -> list[FunctionCoverage]:
    """Union of functions with execution counts summed."""
    by_key: dict[tuple[int, str], int] = {}
    for fc in (*a, *b):
        key = (fc.line_number, fc.name)
        by_key[key] = by_key.get(key, 0) + fc.execution_count
    return [
        FunctionCoverage(name=name, line_number=line, execution_count=ec)
        for (line, name), ec in sorted(by_key.items())
    ]


def _merge_branches(a: list[BranchCoverage], b: list[BranchCoverage]) -> list[BranchCoverage]:
    """Union of branches with taken counts summed.

    A branch whose block never executed in any input stays ``None``.
    """
    by_key: dict[tuple[int, int, int], int | None] = {}
    for bc in (*a, *b):
        key = (bc.line_number, bc.block_id, bc.branch_id)
        if key not in by_key:
            by_key[key] = bc.taken_count
            continue
        previous = by_key[key]
        if bc.taken_count is not None:
            by_key[key] = bc.taken_count + (previous or 0)
    return [
        BranchCoverage(line_number=line, block_id=block, branch_id=branch, taken_count=taken)
        for (line, block, branch), taken in sorted(by_key.items())
    ]
