"""tranche CLI: top-level command group.

Each workflow job maps to one command: ``gate`` decides whether the run goes
ahead, ``run-tranche`` executes one matrix entry, ``aggregate`` merges the
artifacts, ``publish`` posts the result and ``status`` settles the run.
``pipeline`` runs the whole flow in a single process.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path

import click
import yaml
from rich.console import Console
from rich.logging import RichHandler

from tranche import __version__
from tranche.aggregator import AggregationError, aggregate_from_store, load_aggregated
from tranche.artifacts.store import ArtifactStore, LocalBlobStore
from tranche.ci.gate import evaluate_gate, select_token
from tranche.ci.run import JobOutcome, RunState, WorkflowRun, exit_code
from tranche.ci.trigger import detect_trigger
from tranche.config import TrancheConfig, config_to_dict, load_config, validate_config
from tranche.coverage.cobertura import CoberturaParseError
from tranche.coverage.summary import Thresholds, render_markdown, summary_from_cobertura
from tranche.pipeline import Pipeline, thresholds_from_config
from tranche.publish.publisher import Publisher
from tranche.reporters.terminal import reporter
from tranche.sharding.planner import TrancheSpec, discover_tests, partition
from tranche.sharding.runner import TrancheRunner
from tranche.telemetry.sentry_integration import init_sentry

logger = logging.getLogger(__name__)
console = Console()

_PATH_OPTION = click.option(
    "--path",
    default=".",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    help="Project root directory.",
)


def _setup_logging(*, verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


def _ci_mode() -> bool:
    ctx = click.get_current_context()
    return bool(ctx.obj.get("ci", False)) if ctx.obj else False


def _load(path: str) -> TrancheConfig:
    """Load and validate configuration, aborting with the errors on failure."""
    try:
        config = load_config(path)
    except (OSError, yaml.YAMLError, ValueError) as e:
        reporter.print_error(f"Failed to load configuration: {e}")
        raise click.Abort from e

    errors = validate_config(config)
    if errors:
        reporter.print_error(f"Found {len(errors)} configuration error(s):")
        for idx, error in enumerate(errors, start=1):
            console.print(f"  {idx}. [red]{error}[/red]")
        raise click.Abort

    init_sentry(config.sentry)
    return config


def _with_count(config: TrancheConfig, count: int | None) -> TrancheConfig:
    if count is not None:
        if count < 1:
            raise click.UsageError("--count must be at least 1.")
        config.sharding.count = count
    return config


def _store(config: TrancheConfig, run_id: str | None) -> ArtifactStore:
    blobs = LocalBlobStore(config.root_path / config.artifacts.directory)
    return ArtifactStore(blobs, run_id or config.run_id)


def _parse_jobs(values: tuple[str, ...]) -> dict[str, JobOutcome]:
    """Parse ``NAME=OUTCOME`` pairs (e.g. ``build=success``)."""
    jobs: dict[str, JobOutcome] = {}
    for value in values:
        name, sep, outcome = value.partition("=")
        if not sep or not name.strip():
            raise click.BadParameter(f"expected NAME=OUTCOME, got {value!r}", param_hint="--job")
        try:
            jobs[name.strip()] = JobOutcome(outcome.strip().lower())
        except ValueError as e:
            choices = ", ".join(o.value for o in JobOutcome)
            raise click.BadParameter(
                f"unknown outcome {outcome!r} for {name} (expected one of: {choices})",
                param_hint="--job",
            ) from e
    return jobs


_JOB_OPTION = click.option(
    "--job",
    "jobs",
    multiple=True,
    metavar="NAME=OUTCOME",
    help="Conclusion of an external job, e.g. build=success. Repeatable.",
)


@click.group()
@click.option(
    "--ci",
    is_flag=True,
    help="CI mode: machine-readable JSON output, non-interactive, exit codes for pass/fail.",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.version_option(version=__version__, prog_name="tranche")
@click.pass_context
def cli(ctx: click.Context, *, ci: bool, verbose: bool) -> None:
    """tranche: sharded test runs with merged coverage."""
    ctx.ensure_object(dict)
    ctx.obj["ci"] = ci
    _setup_logging(verbose=verbose)


# ── config ─────────────────────────────────────────────────────────────


@cli.group("config")
def config_group() -> None:
    """Inspect `.tranche.yml` configuration."""


@config_group.command("show")
@_PATH_OPTION
@click.option("--json-output", "as_json", is_flag=True, help="Output as JSON instead of YAML.")
@click.option("--no-mask", is_flag=True, help="Show secret values unmasked (use with caution).")
def config_show(path: str, *, as_json: bool, no_mask: bool) -> None:
    """Display resolved configuration with masked secrets."""
    try:
        config = load_config(path)
    except (OSError, yaml.YAMLError, ValueError) as e:
        reporter.print_error(f"Failed to load configuration: {e}")
        raise click.Abort from e

    data = config_to_dict(config, mask_secrets=not no_mask)
    if as_json:
        click.echo(json.dumps(data, indent=2, default=str))
    else:
        click.echo(yaml.safe_dump(data, sort_keys=False, default_flow_style=False))


@config_group.command("validate")
@_PATH_OPTION
def config_validate(path: str) -> None:
    """Validate `.tranche.yml`; exits non-zero when errors are found."""
    _load(path)
    reporter.print_success("Configuration is valid!")


# ── plan / gate ────────────────────────────────────────────────────────


@cli.command()
@_PATH_OPTION
@click.option("--count", type=int, default=None, help="Number of tranches (default: config).")
@click.option("--index", type=int, default=None, help="Only list the tests of this tranche.")
def plan(path: str, count: int | None, index: int | None) -> None:
    """Show which tests each tranche runs."""
    config = _with_count(_load(path), count)
    tests = discover_tests(config.root_path, config.sharding.test_patterns)
    subsets = partition(tests, config.sharding.count)

    if index is not None:
        try:
            TrancheSpec(index, config.sharding.count)
        except ValueError as e:
            raise click.UsageError(str(e)) from e
        subsets = {index: subsets[index]}

    if _ci_mode():
        click.echo(json.dumps({str(i): selected for i, selected in subsets.items()}, indent=2))
        return
    reporter.print_plan(subsets, show_tests=index is not None)


@cli.command()
@_PATH_OPTION
def gate(path: str) -> None:
    """Evaluate the current trigger and print the decision.

    Inside GitHub Actions the decision is also written to ``GITHUB_OUTPUT``
    (``should_run``, ``privileged``, ``full_run``) for later jobs to read.
    """
    config = _load(path)
    decision = evaluate_gate(detect_trigger(), config.gate)
    outputs = {
        "should_run": decision.should_run,
        "privileged": decision.privileged,
        "full_run": decision.full_run,
    }

    if _ci_mode():
        click.echo(json.dumps({**outputs, "reason": decision.reason}))
    else:
        reporter.print_gate(decision)

    output_file = os.environ.get("GITHUB_OUTPUT")
    if output_file:
        with Path(output_file).open("a", encoding="utf-8") as handle:
            for key, value in outputs.items():
                handle.write(f"{key}={str(value).lower()}\n")


# ── run-tranche ────────────────────────────────────────────────────────


@cli.command("run-tranche")
@_PATH_OPTION
@click.option("--index", type=int, required=True, help="Tranche index (0-based).")
@click.option("--count", type=int, default=None, help="Number of tranches (default: config).")
@click.option("--run-id", default=None, help="Artifact namespace (default: GITHUB_RUN_ID).")
@click.option("--full-run", is_flag=True, help="Set TEST_ALL=1 for the test command.")
def run_tranche(
    path: str, index: int, count: int | None, run_id: str | None, *, full_run: bool
) -> None:
    """Run one tranche with retry and store its coverage artifact."""
    config = _with_count(_load(path), count)
    try:
        spec = TrancheSpec(index, config.sharding.count)
    except ValueError as e:
        raise click.UsageError(str(e)) from e

    full_run = full_run or evaluate_gate(detect_trigger(), config.gate).full_run
    store = _store(config, run_id)
    result = asyncio.run(TrancheRunner(config).run(spec, full_run=full_run))
    store.put_result(result)

    if _ci_mode():
        click.echo(
            json.dumps(
                {
                    "index": result.index,
                    "status": result.status.value,
                    "attempts": result.attempts,
                    "missing_artifact": result.missing_artifact,
                    "error": result.error,
                }
            )
        )
    else:
        reporter.print_tranche_results({result.index: result})

    if not result.succeeded:
        raise SystemExit(1)


# ── aggregate / publish / summary ──────────────────────────────────────


@cli.command()
@_PATH_OPTION
@click.option("--count", type=int, default=None, help="Number of tranches (default: config).")
@click.option("--run-id", default=None, help="Artifact namespace (default: GITHUB_RUN_ID).")
@click.option(
    "--output-dir",
    type=click.Path(file_okay=False),
    default=None,
    help="Where to write coverage.lcov, coverage.xml and the markdown summary.",
)
def aggregate(path: str, count: int | None, run_id: str | None, output_dir: str | None) -> None:
    """Merge every tranche artifact of the run and write the outputs."""
    config = _with_count(_load(path), count)
    store = _store(config, run_id)
    try:
        report = aggregate_from_store(
            store, config.sharding.count, thresholds_from_config(config)
        )
    except AggregationError as e:
        reporter.print_error(f"Aggregation failed: {e}")
        raise SystemExit(1) from e

    cov = config.coverage
    target = Path(output_dir) if output_dir else config.root_path / cov.output_dir
    paths = report.write(
        target,
        lcov_file=cov.lcov_file,
        cobertura_file=cov.cobertura_file,
        summary_file=cov.summary_file,
        badge=cov.badge,
    )

    if _ci_mode():
        click.echo(
            json.dumps(
                {
                    "line_rate": report.summary.line_rate,
                    "branch_rate": report.summary.branch_rate,
                    "health": report.summary.band.value,
                    "included": list(report.included),
                    "missing": {str(i): reason for i, reason in report.missing.items()},
                    "outputs": {name: str(p) for name, p in paths.items()},
                }
            )
        )
    else:
        reporter.print_coverage_summary(report.summary)
        for written in paths.values():
            reporter.print_info(f"Wrote {written}")

    if report.lost:
        reporter.print_error(f"Coverage artifacts lost for tranches: {report.lost}")
        raise SystemExit(1)


@cli.command()
@_PATH_OPTION
@click.option("--count", type=int, default=None, help="Number of tranches (default: config).")
@click.option("--run-id", default=None, help="Artifact namespace (default: GITHUB_RUN_ID).")
@click.option(
    "--report-dir",
    type=click.Path(file_okay=False),
    default=None,
    help="Directory holding the merged coverage.lcov (default: coverage.output_dir).",
)
def publish(path: str, count: int | None, run_id: str | None, report_dir: str | None) -> None:
    """Post the sticky PR comment and forward coverage. Never fails the run."""
    config = _with_count(_load(path), count)
    cov = config.coverage
    directory = Path(report_dir) if report_dir else config.root_path / cov.output_dir
    lcov_path = directory / cov.lcov_file

    try:
        lcov_text = lcov_path.read_text(encoding="utf-8")
        report = load_aggregated(
            lcov_text,
            count=config.sharding.count,
            results=_store(config, run_id).results(),
            thresholds=thresholds_from_config(config),
        )
    except (OSError, AggregationError) as e:
        reporter.print_warning(f"Nothing to publish from {lcov_path}: {e}")
        return

    event = detect_trigger()
    decision = evaluate_gate(event, config.gate)
    token = select_token(decision, config.publish.elevated_token, config.publish.github_token)
    publication = Publisher.from_config(config.publish, token=token, badge=cov.badge).publish(
        report, event
    )
    reporter.print_publication(publication)


@cli.command()
@click.option(
    "--file",
    "cobertura_file",
    type=click.Path(exists=True, dir_okay=False),
    default="coverage.xml",
    help="Cobertura XML report.",
)
@click.option(
    "--thresholds",
    default="50 75",
    help="Lower and upper health thresholds in percent, e.g. '50 75'.",
)
@click.option("--no-badge", is_flag=True, help="Omit the shields.io badge.")
@click.option("--output", type=click.Path(dir_okay=False), default=None, help="Write to a file.")
def summary(cobertura_file: str, thresholds: str, *, no_badge: bool, output: str | None) -> None:
    """Render a markdown coverage summary from a Cobertura file."""
    parts = thresholds.split()
    try:
        lower, upper = (float(part) for part in parts)
        limits = Thresholds(lower=lower, upper=upper)
    except ValueError as e:
        raise click.BadParameter(str(e) or thresholds, param_hint="--thresholds") from e

    try:
        result = summary_from_cobertura(
            Path(cobertura_file).read_text(encoding="utf-8"), limits
        )
    except CoberturaParseError as e:
        reporter.print_error(f"Invalid Cobertura report: {e}")
        raise SystemExit(1) from e

    markdown = render_markdown(result, badge=not no_badge)
    if output:
        Path(output).write_text(markdown, encoding="utf-8")
        reporter.print_success(f"Summary written to {output}")
    else:
        click.echo(markdown, nl=False)


# ── status / pipeline ──────────────────────────────────────────────────


@cli.command()
@_PATH_OPTION
@_JOB_OPTION
@click.option("--count", type=int, default=None, help="Number of tranches (default: config).")
@click.option("--run-id", default=None, help="Artifact namespace (default: GITHUB_RUN_ID).")
def status(path: str, jobs: tuple[str, ...], count: int | None, run_id: str | None) -> None:
    """Settle the run from job outcomes and stored tranche results."""
    config = _with_count(_load(path), count)
    outcomes = _parse_jobs(jobs)
    store = _store(config, run_id)

    run = WorkflowRun(
        event=detect_trigger(),
        count=config.sharding.count,
        workflow=config.gate.workflow_name,
        run_id=store.run_id,
        required_jobs=list(config.gate.required_jobs),
    )
    for state in (RunState.TRIGGERED, RunState.GATED, RunState.RUNNING):
        run.transition(state)
    run.record_jobs(outcomes.items())
    for result in store.results().values():
        # An explicit --job coverage-N=... wins over the stored result.
        if result.job_name not in outcomes:
            run.record_job(
                result.job_name,
                JobOutcome.SUCCESS if result.succeeded else JobOutcome.FAILURE,
            )
    run.conclude()

    if _ci_mode():
        click.echo(
            json.dumps(
                {
                    "run_id": run.run_id,
                    "state": run.state.value,
                    "failed_jobs": run.failed_jobs(),
                }
            )
        )
    elif run.state is RunState.SUCCEEDED:
        reporter.print_success(f"Run {run.run_id} succeeded")
    else:
        reporter.print_error(f"Run {run.run_id} failed: {', '.join(run.failed_jobs())}")
    raise SystemExit(exit_code(run))


@cli.command()
@_PATH_OPTION
@_JOB_OPTION
@click.option("--count", type=int, default=None, help="Number of tranches (default: config).")
@click.option("--run-id", default=None, help="Artifact namespace (default: GITHUB_RUN_ID).")
def pipeline(path: str, jobs: tuple[str, ...], count: int | None, run_id: str | None) -> None:
    """Run gate, tranches, aggregation and publication in one process."""
    config = _with_count(_load(path), count)
    outcomes = _parse_jobs(jobs)

    if not _ci_mode():
        reporter.print_pipeline_header(f"tranche pipeline ({config.sharding.count} tranches)")

    result = asyncio.run(Pipeline(config, detect_trigger(), run_id=run_id).execute(outcomes))
    report = result.report

    if report is not None:
        cov = config.coverage
        report.write(
            config.root_path / cov.output_dir,
            lcov_file=cov.lcov_file,
            cobertura_file=cov.cobertura_file,
            summary_file=cov.summary_file,
            badge=cov.badge,
        )
        if os.environ.get("GITHUB_STEP_SUMMARY"):
            _append_step_summary(report.markdown)

    if _ci_mode():
        missing = report.missing if report is not None else {}
        failed = result.run.failed_jobs() if result.state is RunState.FAILED else []
        click.echo(
            json.dumps(
                {
                    "run_id": result.run.run_id,
                    "state": result.state.value,
                    "failed_jobs": failed,
                    "missing_tranches": {str(i): reason for i, reason in missing.items()},
                }
            )
        )
    else:
        reporter.print_run_result(result)

    raise SystemExit(result.exit_code)


def _append_step_summary(markdown: str) -> None:
    """Add the coverage summary to the Actions job summary page."""
    summary_path = Path(os.environ["GITHUB_STEP_SUMMARY"])
    with summary_path.open("a", encoding="utf-8") as handle:
        handle.write(markdown)
        handle.write("\n")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
