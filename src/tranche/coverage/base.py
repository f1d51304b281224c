"""Unified line/function/branch coverage model.

Every per-tranche artifact is parsed into this model before merging, and the
merged model is what gets exported (LCOV, Cobertura) and summarized.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class LineCoverage:
    """Coverage data for a single line of code."""

    line_number: int
    execution_count: int

    @property
    def is_covered(self) -> bool:
        """Return True if this line was executed at least once."""
        return self.execution_count > 0


@dataclass(frozen=True)
class FunctionCoverage:
    """Coverage data for a single function."""

    name: str
    line_number: int
    execution_count: int

    @property
    def is_covered(self) -> bool:
        """Return True if this function was executed at least once."""
        return self.execution_count > 0


@dataclass(frozen=True)
class BranchCoverage:
    """Coverage data for a single branch outcome (one LCOV ``BRDA`` entry).

    ``taken_count`` is ``None`` when the enclosing block never executed
    (LCOV writes ``-``), which is different from "executed, branch not taken".
    """

    line_number: int
    block_id: int
    branch_id: int
    taken_count: int | None

    @property
    def is_taken(self) -> bool:
        """Return True if the branch was taken at least once."""
        return bool(self.taken_count)


@dataclass
class FileCoverage:
    """Coverage data for a single source file."""

    file_path: str
    lines: list[LineCoverage] = field(default_factory=list)
    functions: list[FunctionCoverage] = field(default_factory=list)
    branches: list[BranchCoverage] = field(default_factory=list)

    @property
    def lines_valid(self) -> int:
        return len(self.lines)

    @property
    def lines_covered(self) -> int:
        return sum(1 for line in self.lines if line.is_covered)

    @property
    def branches_valid(self) -> int:
        return len(self.branches)

    @property
    def branches_covered(self) -> int:
        return sum(1 for branch in self.branches if branch.is_taken)

    @property
    def line_coverage_percentage(self) -> float:
        """Return line coverage percentage (0.0-100.0)."""
        if not self.lines:
            return 100.0
        return (self.lines_covered / self.lines_valid) * 100.0

    @property
    def branch_coverage_percentage(self) -> float:
        """Return branch coverage percentage (0.0-100.0)."""
        if not self.branches:
            return 100.0
        return (self.branches_covered / self.branches_valid) * 100.0


@dataclass
class CoverageReport:
    """Coverage for a whole project, keyed by source file path."""

    files: dict[str, FileCoverage] = field(default_factory=dict)

    @property
    def lines_valid(self) -> int:
        return sum(f.lines_valid for f in self.files.values())

    @property
    def lines_covered(self) -> int:
        return sum(f.lines_covered for f in self.files.values())

    @property
    def branches_valid(self) -> int:
        return sum(f.branches_valid for f in self.files.values())

    @property
    def branches_covered(self) -> int:
        return sum(f.branches_covered for f in self.files.values())

    @property
    def overall_line_coverage(self) -> float:
        """Return covered lines / total lines as a percentage."""
        total = self.lines_valid
        if total == 0:
            return 100.0
        return (self.lines_covered / total) * 100.0

    @property
    def overall_branch_coverage(self) -> float:
        """Return taken branches / total branches as a percentage."""
        total = self.branches_valid
        if total == 0:
            return 100.0
        return (self.branches_covered / total) * 100.0

    def get_uncovered_files(self) -> list[str]:
        """Return file paths with instrumented lines but 0% line coverage."""
        return sorted(
            path
            for path, file_cov in self.files.items()
            if file_cov.lines and file_cov.lines_covered == 0
        )
