"""Tranche outcome and its JSON form for inter-job exchange.

A tranche job records its :class:`TrancheResult` next to its coverage artifact
so the aggregation and status jobs can tell a failed tranche from a lost
artifact. The artifact bytes themselves travel separately; the JSON only
records whether one was produced.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pathlib import Path


class TrancheStatus(Enum):
    """Terminal status of a tranche."""

    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class TrancheResult:
    """Outcome of running one tranche, after retries."""

    index: int
    """Zero-based tranche index."""

    count: int
    """Total tranches in the run."""

    status: TrancheStatus
    """SUCCESS or FAILED."""

    attempts: int
    """Attempts made, including the final one."""

    coverage_artifact: bytes | None = None
    """LCOV bytes; always present on SUCCESS, always absent on FAILED."""

    error: str = ""
    """Failure description of the last attempt."""

    missing_artifact: bool = False
    """True when the command succeeded but wrote no coverage file."""

    duration_ms: float = 0.0
    """Wall time across all attempts in milliseconds."""

    tests: list[str] = field(default_factory=list)
    """Test identities this tranche ran."""

    def __post_init__(self) -> None:
        if self.status is TrancheStatus.SUCCESS and self.coverage_artifact is None:
            msg = f"tranche {self.index} succeeded without a coverage artifact"
            raise ValueError(msg)
        if self.status is TrancheStatus.FAILED and self.coverage_artifact is not None:
            msg = f"tranche {self.index} failed but carries a coverage artifact"
            raise ValueError(msg)

    @property
    def succeeded(self) -> bool:
        return self.status is TrancheStatus.SUCCESS

    @property
    def job_name(self) -> str:
        return f"coverage-{self.index}"


def tranche_result_to_dict(result: TrancheResult) -> dict[str, Any]:
    """Convert a TrancheResult to a JSON-serializable dict (artifact excluded)."""
    return {
        "index": result.index,
        "count": result.count,
        "status": result.status.value,
        "attempts": result.attempts,
        "has_artifact": result.coverage_artifact is not None,
        "error": result.error,
        "missing_artifact": result.missing_artifact,
        "duration_ms": result.duration_ms,
        "tests": list(result.tests),
    }


def tranche_result_from_dict(
    data: dict[str, Any], coverage_artifact: bytes | None = None
) -> TrancheResult:
    """Rebuild a TrancheResult, attaching the separately stored artifact.

    A result recorded as successful whose artifact is unavailable is still
    returned, but as FAILED with ``missing_artifact`` set.
    """
    status = TrancheStatus(data["status"])
    error = data.get("error", "")
    missing = bool(data.get("missing_artifact", False))
    if status is TrancheStatus.SUCCESS and coverage_artifact is None:
        status = TrancheStatus.FAILED
        missing = True
        error = error or "coverage artifact not found"
    if status is TrancheStatus.FAILED:
        coverage_artifact = None

    return TrancheResult(
        index=data["index"],
        count=data["count"],
        status=status,
        attempts=data["attempts"],
        coverage_artifact=coverage_artifact,
        error=error,
        missing_artifact=missing,
        duration_ms=data.get("duration_ms", 0.0),
        tests=list(data.get("tests", [])),
    )


def dumps_tranche_result(result: TrancheResult) -> str:
    return json.dumps(tranche_result_to_dict(result), indent=2)


def loads_tranche_result(text: str, coverage_artifact: bytes | None = None) -> TrancheResult:
    return tranche_result_from_dict(json.loads(text), coverage_artifact)


def write_tranche_result(result: TrancheResult, output_path: Path) -> None:
    """Serialize and write a tranche result to a JSON file."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(dumps_tranche_result(result), encoding="utf-8")


def read_tranche_result(path: Path, coverage_artifact: bytes | None = None) -> TrancheResult:
    """Read a tranche result JSON file."""
    return loads_tranche_result(path.read_text(encoding="utf-8"), coverage_artifact)
