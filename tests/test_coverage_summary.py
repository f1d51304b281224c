"""Tests for tranche.coverage.summary."""

from __future__ import annotations

import pytest

from tranche.coverage.cobertura import CoberturaParseError, to_cobertura_xml
from tranche.coverage.lcov import parse_lcov
from tranche.coverage.summary import (
    HealthBand,
    Thresholds,
    badge_url,
    render_markdown,
    summarize,
    summary_from_cobertura,
)

# 5/6 lines covered at the root, 1/4 in pkg/.
LCOV = """\
SF:main.py
DA:1,1
DA:2,1
DA:3,1
DA:4,1
DA:5,1
DA:6,0
end_of_record
SF:pkg/mod.py
BRDA:2,0,0,1
BRDA:2,0,1,0
DA:1,1
DA:2,0
DA:3,0
DA:4,0
end_of_record
"""


class TestThresholds:
    def test_defaults(self) -> None:
        assert Thresholds() == Thresholds(lower=50.0, upper=75.0)

    @pytest.mark.parametrize(
        ("percent", "band"),
        [
            (0.0, HealthBand.FAIL),
            (49.9, HealthBand.FAIL),
            (50.0, HealthBand.WARN),
            (74.9, HealthBand.WARN),
            (75.0, HealthBand.PASS),
            (100.0, HealthBand.PASS),
        ],
    )
    def test_classify(self, percent: float, band: HealthBand) -> None:
        assert Thresholds().classify(percent) is band

    @pytest.mark.parametrize(("lower", "upper"), [(80, 60), (-1, 50), (50, 101)])
    def test_invalid(self, lower: float, upper: float) -> None:
        with pytest.raises(ValueError, match="thresholds"):
            Thresholds(lower=lower, upper=upper)


class TestBadge:
    def test_url(self) -> None:
        assert badge_url(83.4, HealthBand.PASS) == (
            "https://img.shields.io/badge/Code%20Coverage-83%25-green?style=flat"
        )

    def test_color_follows_band(self) -> None:
        assert badge_url(10, HealthBand.FAIL).endswith("-red?style=flat")
        assert badge_url(60, HealthBand.WARN).endswith("-yellow?style=flat")


class TestSummarize:
    def test_totals(self) -> None:
        summary = summarize(parse_lcov(LCOV))
        assert summary.lines_covered == 6
        assert summary.lines_valid == 10
        assert summary.line_rate == pytest.approx(0.6)
        assert summary.line_percent == pytest.approx(60.0)
        assert summary.branch_rate == pytest.approx(0.5)
        assert summary.band is HealthBand.WARN

    def test_packages(self) -> None:
        packages = summarize(parse_lcov(LCOV)).packages
        assert [(p.name, p.band) for p in packages] == [
            (".", HealthBand.PASS),
            ("pkg", HealthBand.FAIL),
        ]
        assert packages[1].line_rate == pytest.approx(0.25)
        assert packages[0].branch_rate == 1.0

    def test_custom_thresholds(self) -> None:
        summary = summarize(parse_lcov(LCOV), Thresholds(lower=20, upper=55))
        assert summary.band is HealthBand.PASS

    def test_empty_report(self) -> None:
        summary = summarize(parse_lcov(""))
        assert summary.line_rate == 1.0
        assert summary.packages == ()
        assert summary.is_complete

    def test_missing_tranches_sorted(self) -> None:
        summary = summarize(parse_lcov(LCOV), missing_tranches={3: "failed", 1: "lost"})
        assert list(summary.missing_tranches.items()) == [(1, "lost"), (3, "failed")]
        assert not summary.is_complete


class TestSummaryFromCobertura:
    def test_matches_direct_summary(self) -> None:
        report = parse_lcov(LCOV)
        from_xml = summary_from_cobertura(to_cobertura_xml(report))
        direct = summarize(report)
        assert from_xml.band is direct.band
        assert from_xml.lines_valid == direct.lines_valid
        assert from_xml.line_rate == pytest.approx(direct.line_rate, abs=1e-3)
        assert [p.name for p in from_xml.packages] == [p.name for p in direct.packages]

    def test_invalid_document(self) -> None:
        with pytest.raises(CoberturaParseError):
            summary_from_cobertura("not xml")


class TestRenderMarkdown:
    def test_table(self) -> None:
        text = render_markdown(summarize(parse_lcov(LCOV)))
        lines = text.splitlines()
        assert lines[0].startswith("![Code Coverage](https://img.shields.io/badge/")
        assert "Package | Line Rate | Branch Rate | Health" in lines
        assert "(root) | 83% | 100% | ✔" in lines
        assert "pkg | 25% | 50% | ❌" in lines
        assert "**Summary** | **60%** (6 / 10) | **50%** (1 / 2) | ➖" in lines

    def test_thresholds_note(self) -> None:
        text = render_markdown(summarize(parse_lcov(LCOV)))
        assert "`50%`" in text
        assert "`75%`" in text

    def test_without_badge(self) -> None:
        text = render_markdown(summarize(parse_lcov(LCOV)), badge=False)
        assert "shields.io" not in text
        assert text.startswith("Package | Line Rate")

    def test_names_missing_tranches(self) -> None:
        summary = summarize(parse_lcov(LCOV), missing_tranches={3: "failed"})
        text = render_markdown(summary)
        assert "**Missing tranches:** 3 (failed)" in text

    def test_complete_run_has_no_missing_note(self) -> None:
        assert "Missing tranches" not in render_markdown(summarize(parse_lcov(LCOV)))
