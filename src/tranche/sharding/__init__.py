"""Tranche planning, execution and coverage merging."""

from tranche.sharding.merger import merge_coverage_reports, merge_file_coverage
from tranche.sharding.planner import (
    TrancheSpec,
    assign_tranche,
    discover_tests,
    partition,
    plan_tranches,
    select_tests,
)
from tranche.sharding.retry import RetryError, RetryOutcome, RetryPolicy, retry
from tranche.sharding.tranche_result import (
    TrancheResult,
    TrancheStatus,
    read_tranche_result,
    write_tranche_result,
)

__all__ = [
    "RetryError",
    "RetryOutcome",
    "RetryPolicy",
    "TrancheResult",
    "TrancheSpec",
    "TrancheStatus",
    "assign_tranche",
    "discover_tests",
    "merge_coverage_reports",
    "merge_file_coverage",
    "partition",
    "plan_tranches",
    "read_tranche_result",
    "retry",
    "select_tests",
    "write_tranche_result",
]
