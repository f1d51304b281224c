"""Tests for the tranche CLI, driven through click's CliRunner."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

import pytest
import yaml
from click.testing import CliRunner

from tranche import __version__
from tranche.artifacts.store import ArtifactStore, LocalBlobStore
from tranche.cli import cli
from tranche.coverage.cobertura import to_cobertura_xml
from tranche.coverage.lcov import parse_lcov
from tranche.sharding.tranche_result import TrancheResult, TrancheStatus

_GITHUB_ENV = (
    "GITHUB_ACTIONS",
    "CI",
    "GITHUB_EVENT_NAME",
    "GITHUB_EVENT_PATH",
    "GITHUB_REF",
    "GITHUB_REF_NAME",
    "GITHUB_REF_TYPE",
    "GITHUB_BASE_REF",
    "GITHUB_HEAD_REF",
    "GITHUB_PR_NUMBER",
    "GITHUB_SHA",
    "GITHUB_ACTOR",
    "GITHUB_REPOSITORY",
    "GITHUB_RUN_ID",
    "GITHUB_WORKFLOW",
    "GITHUB_OUTPUT",
    "GITHUB_STEP_SUMMARY",
    "GITHUB_TOKEN",
    "TRANCHE_GITHUB_TOKEN",
    "TRANCHE_ELEVATED_TOKEN",
    "TRANCHE_REPORTING_URL",
    "CODACY_PROJECT_TOKEN",
    "TEST_TRANCHE_COUNT",
    "TRANCHE_SENTRY_ENABLED",
)

# Writes one LCOV record per selected test to argv[1].
WRITE_LCOV = """\
import sys
out, tests = sys.argv[1], sys.argv[2:]
with open(out, "w") as fh:
    for t in tests:
        fh.write(f"SF:{t}\\nDA:1,1\\nDA:2,0\\nend_of_record\\n")
"""

LCOV = b"SF:src/a.py\nDA:1,1\nDA:2,0\nend_of_record\n"


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for var in _GITHUB_ENV:
        monkeypatch.delenv(var, raising=False)


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture()
def project(tmp_path: Path) -> Path:
    """A project with three test files and a runner that writes LCOV."""
    tests = tmp_path / "tests"
    tests.mkdir()
    for name in ("test_a.py", "test_b.py", "test_c.py"):
        (tests / name).write_text("", encoding="utf-8")
    _write_config(
        tmp_path,
        {
            "sharding": {"count": 2},
            "runner": {
                "command": [sys.executable, "-c", WRITE_LCOV, "{output}", "{tests}"],
                "coverage_output": "out/coverage-{index}.lcov",
            },
            "retry": {"max_attempts": 1},
        },
    )
    return tmp_path


def _write_config(root: Path, data: dict[str, Any]) -> None:
    (root / ".tranche.yml").write_text(yaml.safe_dump(data), encoding="utf-8")


def _store(root: Path, run_id: str) -> ArtifactStore:
    return ArtifactStore(LocalBlobStore(root / ".tranche" / "artifacts"), run_id)


def _result(index: int, *, ok: bool = True, count: int = 2) -> TrancheResult:
    if ok:
        return TrancheResult(
            index=index, count=count, status=TrancheStatus.SUCCESS, attempts=1,
            coverage_artifact=LCOV,
        )
    return TrancheResult(
        index=index, count=count, status=TrancheStatus.FAILED, attempts=2, error="exit 1"
    )


def _push_env(monkeypatch: pytest.MonkeyPatch, branch: str = "main") -> None:
    monkeypatch.setenv("GITHUB_EVENT_NAME", "push")
    monkeypatch.setenv("GITHUB_REF", f"refs/heads/{branch}")
    monkeypatch.setenv("GITHUB_REPOSITORY", "octocat/hello-world")


# ── Top level ─────────────────────────────────────────────────────────


def test_version(runner: CliRunner) -> None:
    result = runner.invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_help_lists_commands(runner: CliRunner) -> None:
    result = runner.invoke(cli, ["--help"])
    assert result.exit_code == 0
    for command in ("gate", "run-tranche", "aggregate", "publish", "status", "pipeline"):
        assert command in result.output


# ── config ────────────────────────────────────────────────────────────


class TestConfigCommands:
    def test_validate_ok(self, runner: CliRunner, project: Path) -> None:
        result = runner.invoke(cli, ["config", "validate", "--path", str(project)])
        assert result.exit_code == 0
        assert "Configuration is valid!" in result.output

    def test_validate_errors(self, runner: CliRunner, tmp_path: Path) -> None:
        _write_config(tmp_path, {"sharding": {"count": 0}, "retry": {"max_attempts": 0}})
        result = runner.invoke(cli, ["config", "validate", "--path", str(tmp_path)])
        assert result.exit_code != 0
        assert "2 configuration error(s)" in result.output
        assert "sharding.count must be at least 1" in result.output

    def test_show_masks_secrets(self, runner: CliRunner, tmp_path: Path) -> None:
        _write_config(tmp_path, {"publish": {"github_token": "ghp_secret"}})
        result = runner.invoke(
            cli, ["config", "show", "--path", str(tmp_path), "--json-output"]
        )
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["publish"]["github_token"] == "****"

    def test_show_unmasked_yaml(self, runner: CliRunner, tmp_path: Path) -> None:
        _write_config(tmp_path, {"publish": {"github_token": "ghp_secret"}})
        result = runner.invoke(cli, ["config", "show", "--path", str(tmp_path), "--no-mask"])
        assert result.exit_code == 0
        assert yaml.safe_load(result.output)["publish"]["github_token"] == "ghp_secret"


# ── plan / gate ───────────────────────────────────────────────────────


class TestPlan:
    def test_ci_json_partitions_every_test(self, runner: CliRunner, project: Path) -> None:
        result = runner.invoke(cli, ["--ci", "plan", "--path", str(project), "--count", "3"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert sorted(data) == ["0", "1", "2"]
        assert sorted(t for tests in data.values() for t in tests) == [
            "tests/test_a.py",
            "tests/test_b.py",
            "tests/test_c.py",
        ]

    def test_table(self, runner: CliRunner, project: Path) -> None:
        result = runner.invoke(cli, ["plan", "--path", str(project)])
        assert result.exit_code == 0
        assert "Tranche Plan (3 tests)" in result.output

    def test_index_out_of_range(self, runner: CliRunner, project: Path) -> None:
        result = runner.invoke(cli, ["plan", "--path", str(project), "--index", "5"])
        assert result.exit_code == 2

    def test_invalid_count(self, runner: CliRunner, project: Path) -> None:
        result = runner.invoke(cli, ["plan", "--path", str(project), "--count", "0"])
        assert result.exit_code == 2
        assert "--count must be at least 1" in result.output


class TestGate:
    def test_push_to_main_runs(
        self, runner: CliRunner, project: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        _push_env(monkeypatch)
        output_file = project / "gh_output"
        monkeypatch.setenv("GITHUB_OUTPUT", str(output_file))

        result = runner.invoke(cli, ["gate", "--path", str(project)])

        assert result.exit_code == 0
        assert "Run: push to main" in result.output
        lines = output_file.read_text(encoding="utf-8").splitlines()
        assert lines == ["should_run=true", "privileged=false", "full_run=false"]

    def test_feature_branch_skips(
        self, runner: CliRunner, project: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        _push_env(monkeypatch, "feature")
        result = runner.invoke(cli, ["--ci", "gate", "--path", str(project)])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["should_run"] is False
        assert "feature" in data["reason"]


# ── run-tranche / aggregate / publish ─────────────────────────────────


class TestRunTranche:
    def test_runs_and_stores(self, runner: CliRunner, project: Path) -> None:
        result = runner.invoke(
            cli,
            ["--ci", "run-tranche", "--path", str(project), "--index", "0", "--count", "1",
             "--run-id", "r1"],
        )
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data == {
            "index": 0,
            "status": "success",
            "attempts": 1,
            "missing_artifact": False,
            "error": "",
        }
        artifact = _store(project, "r1").get(0)
        assert artifact is not None
        assert b"SF:tests/test_a.py" in artifact

    def test_failure_exits_non_zero(self, runner: CliRunner, project: Path) -> None:
        _write_config(
            project,
            {"runner": {"command": [sys.executable, "-c", "import sys; sys.exit(3)"]},
             "retry": {"max_attempts": 1}},
        )
        result = runner.invoke(
            cli, ["run-tranche", "--path", str(project), "--index", "0", "--run-id", "r2"]
        )
        assert result.exit_code == 1
        assert not _store(project, "r2").results()[0].succeeded

    def test_index_out_of_range(self, runner: CliRunner, project: Path) -> None:
        result = runner.invoke(cli, ["run-tranche", "--path", str(project), "--index", "2"])
        assert result.exit_code == 2


class TestAggregate:
    def test_writes_outputs(self, runner: CliRunner, project: Path) -> None:
        store = _store(project, "r1")
        store.put_result(_result(0))
        store.put_result(_result(1, ok=False))
        out = project / "report"

        result = runner.invoke(
            cli,
            ["--ci", "aggregate", "--path", str(project), "--run-id", "r1",
             "--output-dir", str(out)],
        )

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout.strip().splitlines()[-1])
        assert data["included"] == [0]
        assert data["missing"] == {"1": "failed"}
        assert "SF:src/a.py" in (out / "coverage.lcov").read_text()
        assert (out / "coverage.xml").is_file()
        assert (out / "code-coverage-results.md").is_file()

    def test_all_failed_writes_nothing(self, runner: CliRunner, project: Path) -> None:
        store = _store(project, "r1")
        store.put_result(_result(0, ok=False))
        store.put_result(_result(1, ok=False))
        out = project / "report"

        result = runner.invoke(
            cli,
            ["aggregate", "--path", str(project), "--run-id", "r1", "--output-dir", str(out)],
        )

        assert result.exit_code == 1
        assert "Aggregation failed" in result.output
        assert not out.exists()

    def test_lost_artifact_fails(self, runner: CliRunner, project: Path) -> None:
        store = _store(project, "r1")
        store.put_result(_result(0))
        store.put_result(_result(1))
        (project / ".tranche" / "artifacts" / "r1" / "coverage-1.lcov").unlink()

        result = runner.invoke(
            cli,
            ["aggregate", "--path", str(project), "--run-id", "r1",
             "--output-dir", str(project / "report")],
        )
        assert result.exit_code == 1

    def test_malformed_artifact_fails(self, runner: CliRunner, project: Path) -> None:
        _store(project, "r1").put(0, b"garbage\n")
        result = runner.invoke(
            cli,
            ["aggregate", "--path", str(project), "--run-id", "r1",
             "--output-dir", str(project / "report")],
        )
        assert result.exit_code == 1
        assert "Aggregation failed" in result.output


class TestPublish:
    def test_nothing_to_publish(self, runner: CliRunner, project: Path) -> None:
        result = runner.invoke(cli, ["publish", "--path", str(project)])
        assert result.exit_code == 0
        assert "Nothing to publish" in result.output

    def test_all_failed_publishes_nothing(
        self, runner: CliRunner, project: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        _push_env(monkeypatch)
        (project / "coverage.lcov").write_bytes(LCOV)
        store = _store(project, "r1")
        store.put_result(_result(0, ok=False))
        store.put_result(_result(1, ok=False))

        result = runner.invoke(cli, ["publish", "--path", str(project), "--run-id", "r1"])

        assert result.exit_code == 0
        assert "Nothing to publish" in result.output
        assert "Comment skipped" not in result.output

    def test_skips_unconfigured_steps(
        self, runner: CliRunner, project: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        _push_env(monkeypatch)
        (project / "coverage.lcov").write_bytes(LCOV)
        result = runner.invoke(cli, ["publish", "--path", str(project), "--run-id", "r1"])
        assert result.exit_code == 0
        assert "Comment skipped" in result.output
        assert "Reporting skipped" in result.output


class TestSummary:
    def test_markdown(self, runner: CliRunner, tmp_path: Path) -> None:
        xml = tmp_path / "coverage.xml"
        xml.write_text(to_cobertura_xml(parse_lcov(LCOV.decode())), encoding="utf-8")

        result = runner.invoke(cli, ["summary", "--file", str(xml), "--no-badge"])

        assert result.exit_code == 0
        assert result.output.startswith("Package | Line Rate")
        assert "src | 50% |" in result.output

    def test_output_file(self, runner: CliRunner, tmp_path: Path) -> None:
        xml = tmp_path / "coverage.xml"
        xml.write_text(to_cobertura_xml(parse_lcov(LCOV.decode())), encoding="utf-8")
        out = tmp_path / "summary.md"

        result = runner.invoke(
            cli, ["summary", "--file", str(xml), "--thresholds", "40 60", "--output", str(out)]
        )

        assert result.exit_code == 0
        assert "img.shields.io" in out.read_text(encoding="utf-8")

    def test_bad_thresholds(self, runner: CliRunner, tmp_path: Path) -> None:
        xml = tmp_path / "coverage.xml"
        xml.write_text(to_cobertura_xml(parse_lcov(LCOV.decode())), encoding="utf-8")
        result = runner.invoke(cli, ["summary", "--file", str(xml), "--thresholds", "80"])
        assert result.exit_code == 2

    def test_invalid_xml(self, runner: CliRunner, tmp_path: Path) -> None:
        xml = tmp_path / "coverage.xml"
        xml.write_text("<not-coverage/>", encoding="utf-8")
        result = runner.invoke(cli, ["summary", "--file", str(xml)])
        assert result.exit_code == 1


# ── status / pipeline ─────────────────────────────────────────────────


class TestStatus:
    def test_all_green(self, runner: CliRunner, project: Path) -> None:
        store = _store(project, "r1")
        store.put_result(_result(0))
        store.put_result(_result(1))

        result = runner.invoke(
            cli,
            ["--ci", "status", "--path", str(project), "--run-id", "r1",
             "--job", "build=success", "--job", "lint=success"],
        )

        assert result.exit_code == 0
        assert json.loads(result.output) == {
            "run_id": "r1",
            "state": "succeeded",
            "failed_jobs": [],
        }

    def test_failed_tranche(self, runner: CliRunner, project: Path) -> None:
        store = _store(project, "r1")
        store.put_result(_result(0))
        store.put_result(_result(1, ok=False))

        result = runner.invoke(
            cli,
            ["--ci", "status", "--path", str(project), "--run-id", "r1",
             "--job", "build=success", "--job", "lint=success"],
        )

        assert result.exit_code == 1
        assert json.loads(result.output)["failed_jobs"] == ["coverage-1"]

    def test_explicit_job_wins(self, runner: CliRunner, project: Path) -> None:
        store = _store(project, "r1")
        store.put_result(_result(0))
        store.put_result(_result(1))

        result = runner.invoke(
            cli,
            ["status", "--path", str(project), "--run-id", "r1", "--job", "build=success",
             "--job", "lint=success", "--job", "coverage-1=cancelled"],
        )

        assert result.exit_code == 1
        assert "coverage-1" in result.output

    def test_bad_job_value(self, runner: CliRunner, project: Path) -> None:
        result = runner.invoke(cli, ["status", "--path", str(project), "--job", "build"])
        assert result.exit_code == 2

    def test_unknown_outcome(self, runner: CliRunner, project: Path) -> None:
        result = runner.invoke(
            cli, ["status", "--path", str(project), "--job", "build=exploded"]
        )
        assert result.exit_code == 2


class TestPipelineCommand:
    def test_end_to_end(
        self, runner: CliRunner, project: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        _push_env(monkeypatch)
        step_summary = project / "step_summary.md"
        monkeypatch.setenv("GITHUB_STEP_SUMMARY", str(step_summary))

        result = runner.invoke(
            cli,
            ["--ci", "pipeline", "--path", str(project), "--run-id", "p1",
             "--job", "build=success", "--job", "lint=success"],
        )

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout.strip().splitlines()[-1])
        assert data["state"] == "succeeded"
        assert data["missing_tranches"] == {}
        merged = (project / "coverage.lcov").read_text(encoding="utf-8")
        for name in ("test_a.py", "test_b.py", "test_c.py"):
            assert f"SF:tests/{name}" in merged
        assert "Package | Line Rate" in step_summary.read_text(encoding="utf-8")

    def test_gate_skip(
        self, runner: CliRunner, project: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        _push_env(monkeypatch, "feature")
        result = runner.invoke(
            cli, ["--ci", "pipeline", "--path", str(project), "--run-id", "p2"]
        )
        assert result.exit_code == 1
        assert json.loads(result.stdout.strip().splitlines()[-1])["state"] == "skipped"
