"""Cobertura XML export of a merged coverage report.

Produces the ``coverage.xml`` that downstream tooling (summary generators,
IDE plugins, coverage services) consumes, laid out like ``lcov_cobertura``
output: one ``<package>`` per source directory, one ``<class>`` per file.
"""

from __future__ import annotations

import logging
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from defusedxml import DefusedXmlException
from defusedxml import ElementTree as SafeElementTree
from defusedxml.ElementTree import ParseError as DefusedParseError

if TYPE_CHECKING:
    from pathlib import Path

    from tranche.coverage.base import CoverageReport, FileCoverage

logger = logging.getLogger(__name__)

_COBERTURA_VERSION = "2.0.3"
_ROOT_PACKAGE = "."
_XML_DECLARATION = '<?xml version="1.0" ?>\n'


class CoberturaParseError(ValueError):
    """Raised when a Cobertura document cannot be read."""


def package_name(file_path: str) -> str:
    """Return the dotted package name of a file's directory (``.`` for the root)."""
    parent = PurePosixPath(file_path).parent.as_posix().strip("/")
    if parent in {"", "."}:
        return _ROOT_PACKAGE
    return parent.replace("/", ".")


def _rate(covered: int, valid: int) -> str:
    if valid == 0:
        return "1"
    return f"{covered / valid:.4g}"


def group_by_package(report: CoverageReport) -> dict[str, list[FileCoverage]]:
    packages: dict[str, list[FileCoverage]] = {}
    for path in sorted(report.files):
        packages.setdefault(package_name(path), []).append(report.files[path])
    return packages


def to_cobertura_xml(
    report: CoverageReport,
    *,
    source: str = ".",
    timestamp: int | None = None,
) -> str:
    """Render ``report`` as a Cobertura XML document string."""
    root = ET.Element("coverage")
    root.set("branch-rate", _rate(report.branches_covered, report.branches_valid))
    root.set("branches-covered", str(report.branches_covered))
    root.set("branches-valid", str(report.branches_valid))
    root.set("complexity", "0")
    root.set("line-rate", _rate(report.lines_covered, report.lines_valid))
    root.set("lines-covered", str(report.lines_covered))
    root.set("lines-valid", str(report.lines_valid))
    root.set("timestamp", str(int(time.time()) if timestamp is None else timestamp))
    root.set("version", _COBERTURA_VERSION)

    sources = ET.SubElement(root, "sources")
    ET.SubElement(sources, "source").text = source

    packages_elem = ET.SubElement(root, "packages")
    for name, files in group_by_package(report).items():
        lines_valid = sum(f.lines_valid for f in files)
        lines_covered = sum(f.lines_covered for f in files)
        branches_valid = sum(f.branches_valid for f in files)
        branches_covered = sum(f.branches_covered for f in files)

        package_elem = ET.SubElement(packages_elem, "package")
        package_elem.set("name", name)
        package_elem.set("line-rate", _rate(lines_covered, lines_valid))
        package_elem.set("branch-rate", _rate(branches_covered, branches_valid))
        package_elem.set("complexity", "0")
        classes_elem = ET.SubElement(package_elem, "classes")
        for file_cov in files:
            _build_class(classes_elem, file_cov)

    ET.indent(root, space="  ")
    return _XML_DECLARATION + ET.tostring(root, encoding="unicode")


def _build_class(parent: ET.Element, file_cov: FileCoverage) -> None:
    class_elem = ET.SubElement(parent, "class")
    class_elem.set("name", PurePosixPath(file_cov.file_path).stem)
    class_elem.set("filename", file_cov.file_path)
    class_elem.set("line-rate", _rate(file_cov.lines_covered, file_cov.lines_valid))
    class_elem.set("branch-rate", _rate(file_cov.branches_covered, file_cov.branches_valid))
    class_elem.set("complexity", "0")

    methods_elem = ET.SubElement(class_elem, "methods")
    hits_by_line = {lc.line_number: lc.execution_count for lc in file_cov.lines}
    for fc in file_cov.functions:
        method = ET.SubElement(methods_elem, "method")
        method.set("name", fc.name)
        method.set("signature", "")
        method.set("line-rate", "1" if fc.is_covered else "0")
        method.set("branch-rate", "1")
        method.set("complexity", "0")
        method_lines = ET.SubElement(method, "lines")
        method_line = ET.SubElement(method_lines, "line")
        method_line.set("number", str(fc.line_number))
        method_line.set("hits", str(hits_by_line.get(fc.line_number, fc.execution_count)))
        method_line.set("branch", "false")

    branches_by_line: dict[int, list[bool]] = {}
    for bc in file_cov.branches:
        branches_by_line.setdefault(bc.line_number, []).append(bc.is_taken)

    lines_elem = ET.SubElement(class_elem, "lines")
    for lc in file_cov.lines:
        line_elem = ET.SubElement(lines_elem, "line")
        line_elem.set("number", str(lc.line_number))
        line_elem.set("hits", str(lc.execution_count))
        outcomes = branches_by_line.get(lc.line_number)
        if outcomes:
            taken = sum(outcomes)
            pct = int(round(taken / len(outcomes) * 100))
            line_elem.set("branch", "true")
            line_elem.set("condition-coverage", f"{pct}% ({taken}/{len(outcomes)})")
        else:
            line_elem.set("branch", "false")


def write_cobertura(
    report: CoverageReport, output_path: Path, *, source: str = ".", timestamp: int | None = None
) -> Path:
    """Write ``coverage.xml`` and return its path."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    xml = to_cobertura_xml(report, source=source, timestamp=timestamp)
    output_path.write_text(xml, encoding="utf-8")
    logger.info("Cobertura report written to %s", output_path)
    return output_path


# ── Reading ──────────────────────────────────────────────────────


@dataclass
class CoberturaPackage:
    """Rates for one ``<package>`` element."""

    name: str
    line_rate: float
    branch_rate: float


@dataclass
class CoberturaDocument:
    """The summary-relevant parts of a Cobertura file."""

    line_rate: float
    branch_rate: float
    lines_covered: int = 0
    lines_valid: int = 0
    branches_covered: int = 0
    branches_valid: int = 0
    packages: list[CoberturaPackage] = field(default_factory=list)


def read_cobertura(content: str) -> CoberturaDocument:
    """Parse Cobertura XML text (untrusted input, parsed with defusedxml)."""
    try:
        root = SafeElementTree.fromstring(content)
    except (DefusedParseError, DefusedXmlException) as exc:
        raise CoberturaParseError(f"Invalid Cobertura XML: {exc}") from exc

    if root.tag != "coverage":
        raise CoberturaParseError(f"Expected <coverage> root element, got <{root.tag}>")

    try:
        document = CoberturaDocument(
            line_rate=float(root.get("line-rate", "0")),
            branch_rate=float(root.get("branch-rate", "0")),
            lines_covered=int(root.get("lines-covered", "0")),
            lines_valid=int(root.get("lines-valid", "0")),
            branches_covered=int(root.get("branches-covered", "0")),
            branches_valid=int(root.get("branches-valid", "0")),
        )
        for package in root.iter("package"):
            document.packages.append(
                CoberturaPackage(
                    name=package.get("name", ""),
                    line_rate=float(package.get("line-rate", "0")),
                    branch_rate=float(package.get("branch-rate", "0")),
                )
            )
    except ValueError as exc:
        raise CoberturaParseError(f"Non-numeric Cobertura attribute: {exc}") from exc

    return document
