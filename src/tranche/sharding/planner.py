"""Test discovery and deterministic tranche assignment."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path


@dataclass(frozen=True)
class TrancheSpec:
    """One slot of the tranche matrix."""

    index: int
    """Zero-based index of this tranche."""

    count: int
    """Total number of tranches in the run."""

    def __post_init__(self) -> None:
        _validate(self.index, self.count)

    @property
    def artifact_name(self) -> str:
        """File name of this tranche's coverage artifact."""
        return f"coverage-{self.index}.lcov"

    @property
    def job_name(self) -> str:
        """Name of this tranche's job as seen by the run gate."""
        return f"coverage-{self.index}"


def _validate(index: int, count: int) -> None:
    if count < 1:
        msg = f"tranche count must be >= 1, got {count}"
        raise ValueError(msg)
    if index < 0 or index >= count:
        msg = f"tranche index must be in [0, {count}), got {index}"
        raise ValueError(msg)


def discover_tests(project_path: Path, patterns: Iterable[str]) -> list[str]:
    """Discover test files matching the given glob patterns.

    Args:
        project_path: Root of the project.
        patterns: Glob patterns relative to ``project_path``.

    Returns:
        Sorted list of unique POSIX paths relative to ``project_path``.
        These are the test identities used for assignment.
    """
    found: set[str] = set()
    for pattern in patterns:
        for path in project_path.glob(pattern):
            if path.is_file():
                found.add(path.relative_to(project_path).as_posix())
    return sorted(found)


def assign_tranche(test_id: str, count: int) -> int:
    """Return the tranche index a test belongs to.

    Assignment hashes the test identity, so it does not depend on where the
    test sits in the list or on which machine the planner runs.
    """
    if count < 1:
        msg = f"tranche count must be >= 1, got {count}"
        raise ValueError(msg)
    digest = hashlib.sha256(test_id.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") % count


def select_tests(tests: Iterable[str], spec: TrancheSpec) -> list[str]:
    """Return the subset of ``tests`` that tranche ``spec`` runs."""
    return [t for t in tests if assign_tranche(t, spec.count) == spec.index]


def plan_tranches(count: int) -> list[TrancheSpec]:
    """Return one :class:`TrancheSpec` per matrix slot."""
    if count < 1:
        msg = f"tranche count must be >= 1, got {count}"
        raise ValueError(msg)
    return [TrancheSpec(index=i, count=count) for i in range(count)]


def partition(tests: Iterable[str], count: int) -> dict[int, list[str]]:
    """Split ``tests`` into every tranche's subset.

    Each test appears in exactly one subset; tranches that receive no tests
    are still present with an empty list.
    """
    subsets: dict[int, list[str]] = {spec.index: [] for spec in plan_tranches(count)}
    for test in tests:
        subsets[assign_tranche(test, count)].append(test)
    return subsets
