"""LCOV tracefile parsing and rendering.

LCOV is the interchange format every tranche emits (``cargo llvm-cov --lcov``,
``pytest --cov-report=lcov``, ``c8 --reporter=lcov`` ...). Tracefiles are
concatenable: the same ``SF`` may appear in several records, and those
records are merged on parse.

Supported record keys: ``SF``, ``FN``, ``FNDA``, ``DA``, ``BRDA`` and
``end_of_record``. Summary keys (``LF``, ``LH``, ``FNF``, ``BRF`` ...) and test
names are recomputed/ignored.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from tranche.coverage.base import (
    BranchCoverage,
    CoverageReport,
    FileCoverage,
    FunctionCoverage,
    LineCoverage,
)
from tranche.sharding.merger import merge_file_coverage

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────────

_LCOV_SF = "SF"
_LCOV_FN = "FN"
_LCOV_FNDA = "FNDA"
_LCOV_DA = "DA"
_LCOV_BRDA = "BRDA"
_LCOV_END = "end_of_record"
_IGNORED_KEYS = frozenset(
    {"TN", "VER", "FNF", "FNH", "FNL", "FNA", "LF", "LH", "BRF", "BRH", "MSF", "XXX"}
)

_DA_MIN_PARTS = 2
_BRDA_PARTS = 4
_FN_V2_PARTS = 3
_NOT_EXECUTED = "-"


class LcovParseError(ValueError):
    """Raised when a tracefile is malformed."""

    def __init__(self, message: str, line_number: int | None = None) -> None:
        if line_number is not None:
            message = f"line {line_number}: {message}"
        super().__init__(message)
        self.line_number = line_number


@dataclass
class _Record:
    path: str
    da: dict[int, int] = field(default_factory=dict)
    fns: dict[str, int] = field(default_factory=dict)
    fnda: dict[str, int] = field(default_factory=dict)
    brda: dict[tuple[int, int, int], int | None] = field(default_factory=dict)

    def build(self) -> FileCoverage:
        return FileCoverage(
            file_path=self.path,
            lines=[
                LineCoverage(line_number=ln, execution_count=cnt)
                for ln, cnt in sorted(self.da.items())
            ],
            functions=sorted(
                (
                    FunctionCoverage(
                        name=name, line_number=line, execution_count=self.fnda.get(name, 0)
                    )
                    for name, line in self.fns.items()
                ),
                key=lambda fc: (fc.line_number, fc.name),
            ),
            branches=[
                BranchCoverage(line_number=ln, block_id=blk, branch_id=br, taken_count=taken)
                for (ln, blk, br), taken in sorted(self.brda.items())
            ],
        )


# ── Parsing ──────────────────────────────────────────────────────


def parse_lcov(content: str) -> CoverageReport:
    """Parse LCOV text into a :class:`CoverageReport`.

    Raises:
        LcovParseError: On data lines outside a record, non-numeric counts,
            or truncated ``DA``/``BRDA`` entries.
    """
    files: dict[str, FileCoverage] = {}
    record: _Record | None = None

    def _flush() -> None:
        if record is None:
            return
        built = record.build()
        existing = files.get(built.file_path)
        files[built.file_path] = built if existing is None else merge_file_coverage(existing, built)

    for number, raw_line in enumerate(content.splitlines(), start=1):
        line = raw_line.strip()
        if not line:
            continue
        if line == _LCOV_END:
            if record is None:
                raise LcovParseError("end_of_record without SF", number)
            _flush()
            record = None
            continue

        key, sep, value = line.partition(":")
        if not sep:
            raise LcovParseError(f"unrecognised line {line!r}", number)
        value = value.strip()

        if key == _LCOV_SF:
            _flush()
            if not value:
                raise LcovParseError("empty SF path", number)
            record = _Record(path=value)
            continue
        if key in _IGNORED_KEYS:
            continue
        if record is None:
            raise LcovParseError(f"{key} outside of an SF record", number)
        _apply(record, key, value, number)

    # Tolerate a missing trailing end_of_record.
    _flush()
    return CoverageReport(files=files)


def _apply(record: _Record, key: str, value: str, number: int) -> None:
    if key == _LCOV_DA:
        parts = value.split(",")
        if len(parts) < _DA_MIN_PARTS:
            raise LcovParseError(f"truncated DA entry {value!r}", number)
        line_no = _to_int(parts[0], number)
        count = _to_int(parts[1], number)
        record.da[line_no] = record.da.get(line_no, 0) + count
    elif key == _LCOV_FN:
        parts = value.split(",", 2)
        if len(parts) == _FN_V2_PARTS and parts[1].strip().isdigit():
            # lcov 2.x: FN:<start>,<end>,<name>
            line_no, name = _to_int(parts[0], number), parts[2].strip()
        else:
            first, _, name = value.partition(",")
            line_no, name = _to_int(first, number), name.strip()
        if not name:
            raise LcovParseError(f"FN entry without a name {value!r}", number)
        record.fns.setdefault(name, line_no)
    elif key == _LCOV_FNDA:
        count_s, _, name = value.partition(",")
        name = name.strip()
        if not name:
            raise LcovParseError(f"FNDA entry without a name {value!r}", number)
        record.fnda[name] = record.fnda.get(name, 0) + _to_int(count_s, number)
    elif key == _LCOV_BRDA:
        parts = value.split(",")
        if len(parts) != _BRDA_PARTS:
            raise LcovParseError(f"malformed BRDA entry {value!r}", number)
        branch_key = (
            _to_int(parts[0], number),
            _to_int(parts[1], number),
            _to_int(parts[2], number),
        )
        taken_s = parts[3].strip()
        taken = None if taken_s == _NOT_EXECUTED else _to_int(taken_s, number)
        previous = record.brda.get(branch_key)
        if previous is None or taken is None:
            record.brda[branch_key] = taken if previous is None else previous
        else:
            record.brda[branch_key] = previous + taken
    else:
        logger.debug("Ignoring unknown LCOV key %s at line %d", key, number)


def _to_int(raw: str, number: int) -> int:
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise LcovParseError(f"expected an integer, got {raw.strip()!r}", number) from exc
    if value < 0:
        raise LcovParseError(f"negative count {value}", number)
    return value


def parse_lcov_file(path: Path) -> CoverageReport:
    """Read and parse an LCOV tracefile from disk."""
    return parse_lcov(path.read_text(encoding="utf-8"))


# ── Rendering ────────────────────────────────────────────────────


def render_lcov(report: CoverageReport) -> str:
    """Render a report as an LCOV tracefile with files in path order."""
    out: list[str] = []
    for path in sorted(report.files):
        file_cov = report.files[path]
        out.append("TN:")
        out.append(f"{_LCOV_SF}:{path}")
        for fc in file_cov.functions:
            out.append(f"{_LCOV_FN}:{fc.line_number},{fc.name}")
        for fc in file_cov.functions:
            out.append(f"{_LCOV_FNDA}:{fc.execution_count},{fc.name}")
        out.append(f"FNF:{len(file_cov.functions)}")
        out.append(f"FNH:{sum(1 for fc in file_cov.functions if fc.is_covered)}")
        for bc in file_cov.branches:
            taken = _NOT_EXECUTED if bc.taken_count is None else str(bc.taken_count)
            out.append(f"{_LCOV_BRDA}:{bc.line_number},{bc.block_id},{bc.branch_id},{taken}")
        out.append(f"BRF:{file_cov.branches_valid}")
        out.append(f"BRH:{file_cov.branches_covered}")
        for lc in file_cov.lines:
            out.append(f"{_LCOV_DA}:{lc.line_number},{lc.execution_count}")
        out.append(f"LF:{file_cov.lines_valid}")
        out.append(f"LH:{file_cov.lines_covered}")
        out.append(_LCOV_END)
    return "\n".join(out) + "\n" if out else ""
