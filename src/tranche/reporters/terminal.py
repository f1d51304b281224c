"""Terminal reporter with rich output formatting."""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from collections.abc import Mapping

    from rich.status import Status

    from tranche.ci.gate import GateDecision
    from tranche.config import TrancheConfig
    from tranche.coverage.summary import CoverageSummary
    from tranche.pipeline import PipelineResult
    from tranche.publish.publisher import PublicationResult
    from tranche.sharding.tranche_result import TrancheResult

console = Console()

_SECONDS_PER_MINUTE = 60.0
_MAX_ERROR_LENGTH = 60
_ROOT_PACKAGE_LABEL = "(root)"

_STATE_STYLES = {
    "succeeded": "bold green",
    "failed": "bold red",
    "skipped": "yellow",
    "cancelled": "dim",
}


def _format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string."""
    if seconds >= _SECONDS_PER_MINUTE:
        return f"{seconds / _SECONDS_PER_MINUTE:.1f}m"
    return f"{seconds:.1f}s"


def _truncate(text: str, limit: int) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 3] + "..."


class CLIReporter:
    """Rich terminal output for plans, tranche runs and coverage."""

    def __init__(self, output: Console | None = None) -> None:
        self.console = output or console

    def print_header(self, title: str) -> None:
        self.console.print(f"\n[bold cyan]{title}[/bold cyan]\n")

    def print_success(self, message: str) -> None:
        self.console.print(f"[green]✓[/green] {message}")

    def print_error(self, message: str) -> None:
        self.console.print(f"[red]✗[/red] {message}")

    def print_warning(self, message: str) -> None:
        self.console.print(f"[yellow]⚠[/yellow] {message}")

    def print_info(self, message: str) -> None:
        self.console.print(f"[dim]{message}[/dim]")

    def print_pipeline_header(self, name: str) -> None:
        """Print a styled banner for a pipeline run."""
        self.console.print()
        self.console.print(
            Panel(f"[bold white]{name}[/bold white]", border_style="cyan", padding=(0, 2))
        )

    def create_status(self, message: str) -> Status:
        """Create a Rich Status spinner for long-running operations."""
        return self.console.status(message)

    # ── Planning and gating ────────────────────────────────────────────

    def print_plan(self, subsets: Mapping[int, list[str]], *, show_tests: bool = False) -> None:
        """Print how many tests each tranche gets (and optionally which)."""
        total = sum(len(tests) for tests in subsets.values())
        table = Table(title=f"Tranche Plan ({total} tests)", title_style="bold cyan")
        table.add_column("Tranche", justify="right", style="bold")
        table.add_column("Tests", justify="right")
        if show_tests:
            table.add_column("Files")

        for index, tests in sorted(subsets.items()):
            row = [str(index), str(len(tests))]
            if show_tests:
                row.append("\n".join(tests) if tests else "[dim]-[/dim]")
            table.add_row(*row)
        self.console.print(table)

    def print_gate(self, decision: GateDecision) -> None:
        if decision.should_run:
            extras = []
            if decision.privileged:
                extras.append("privileged")
            if decision.full_run:
                extras.append("full run")
            suffix = f" [dim]({', '.join(extras)})[/dim]" if extras else ""
            self.print_success(f"Run: {decision.reason}{suffix}")
        else:
            self.print_warning(f"Skip: {decision.reason}")

    # ── Tranche results ────────────────────────────────────────────────

    def print_tranche_results(self, results: Mapping[int, TrancheResult]) -> None:
        """Print one row per tranche with status, attempts and duration."""
        if not results:
            self.print_info("No tranches were run")
            return

        table = Table(title="Tranches", title_style="bold cyan")
        table.add_column("Job", style="bold")
        table.add_column("Status", justify="center")
        table.add_column("Attempts", justify="right")
        table.add_column("Tests", justify="right")
        table.add_column("Duration", justify="right")
        table.add_column("Error")

        for _, result in sorted(results.items()):
            if result.succeeded:
                status = "[green]success[/green]"
            elif result.missing_artifact:
                status = "[red]no artifact[/red]"
            else:
                status = "[red]failed[/red]"
            table.add_row(
                result.job_name,
                status,
                str(result.attempts),
                str(len(result.tests)),
                _format_duration(result.duration_ms / 1000),
                f"[dim]{_truncate(result.error, _MAX_ERROR_LENGTH)}[/dim]" if result.error else "",
            )
        self.console.print(table)

    # ── Coverage ───────────────────────────────────────────────────────

    def print_coverage_summary(self, summary: CoverageSummary) -> None:
        """Print the per-package coverage table, colored by health band."""
        table = Table(title="Coverage Summary", title_style="bold cyan")
        table.add_column("Package", style="bold")
        table.add_column("Line Rate", justify="right")
        table.add_column("Branch Rate", justify="right")
        table.add_column("Health", justify="center")

        for package in summary.packages:
            color = package.band.color
            table.add_row(
                _ROOT_PACKAGE_LABEL if package.name == "." else package.name,
                f"[{color}]{package.line_rate * 100:.1f}%[/{color}]",
                f"{package.branch_rate * 100:.1f}%",
                package.band.glyph,
            )

        color = summary.band.color
        table.add_section()
        table.add_row(
            "[bold]Summary[/bold]",
            f"[bold {color}]{summary.line_percent:.1f}%[/bold {color}] "
            f"[dim]({summary.lines_covered}/{summary.lines_valid})[/dim]",
            f"{summary.branch_percent:.1f}% "
            f"[dim]({summary.branches_covered}/{summary.branches_valid})[/dim]",
            summary.band.glyph,
        )
        self.console.print(table)

        if summary.missing_tranches:
            listed = ", ".join(
                f"{index} ({reason})" for index, reason in sorted(summary.missing_tranches.items())
            )
            self.print_warning(f"Coverage is incomplete; missing tranches: {listed}")

    def print_publication(self, publication: PublicationResult) -> None:
        for step in ("comment", "reporting"):
            status = getattr(publication, step).value
            label = step.capitalize()
            if status == "published":
                url = publication.comment_url if step == "comment" else ""
                self.print_success(f"{label} published {url}".rstrip())
            elif status == "failed":
                self.print_warning(f"{label} failed: {publication.errors.get(step, '')}")
            else:
                self.print_info(f"{label} skipped")

    # ── Run outcome ────────────────────────────────────────────────────

    def print_run_result(self, result: PipelineResult) -> None:
        """Print the full outcome of a pipeline run."""
        run = result.run
        self.print_gate(result.decision)
        if result.results:
            self.print_tranche_results(result.results)
        if result.report is not None:
            self.print_coverage_summary(result.report.summary)
        elif result.aggregation_error:
            self.print_error(f"Aggregation failed: {result.aggregation_error}")
        if result.publication is not None:
            self.print_publication(result.publication)

        style = _STATE_STYLES.get(run.state.value, "bold")
        self.console.print(f"\nRun [bold]{run.run_id}[/bold]: [{style}]{run.state.value}[/{style}]")
        failed = run.failed_jobs() if run.state.value == "failed" else []
        if failed:
            self.print_info(f"Unsuccessful jobs: {', '.join(failed)}")

    def print_config(self, config: TrancheConfig, data: Mapping[str, object]) -> None:
        """Print the resolved configuration, one table per section."""
        self.print_header(f"Configuration ({config.root_path})")
        for section, values in data.items():
            if not isinstance(values, dict):
                continue
            table = Table(title=section, title_style="bold", show_header=False)
            table.add_column("Key", style="cyan")
            table.add_column("Value")
            for key, value in values.items():
                table.add_row(key, str(value))
            self.console.print(table)


reporter = CLIReporter()
