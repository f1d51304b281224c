"""Human-facing output."""

from tranche.reporters.terminal import CLIReporter, reporter

__all__ = ["CLIReporter", "reporter"]
