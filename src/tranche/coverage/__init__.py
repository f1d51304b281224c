"""Unified coverage model and the LCOV/Cobertura formats built on it."""

from tranche.coverage.base import (
    BranchCoverage,
    CoverageReport,
    FileCoverage,
    FunctionCoverage,
    LineCoverage,
)

__all__ = [
    "BranchCoverage",
    "CoverageReport",
    "FileCoverage",
    "FunctionCoverage",
    "LineCoverage",
]
