"""Run one tranche's subset of the test suite and collect its coverage."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING

from tranche.artifacts.store import MissingArtifactError
from tranche.sharding.planner import discover_tests, select_tests
from tranche.sharding.retry import RetryError, RetryPolicy
from tranche.sharding.tranche_result import TrancheResult, TrancheStatus
from tranche.telemetry.sentry_integration import start_span
from tranche.utils.subprocess_runner import SubprocessResult, run_subprocess

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from tranche.config import TrancheConfig
    from tranche.sharding.planner import TrancheSpec

logger = logging.getLogger(__name__)

TESTS_TOKEN = "{tests}"

_ENV_INDEX = "TEST_TRANCHE"
_ENV_COUNT = "TEST_TRANCHE_COUNT"
_ENV_ALL = "TEST_ALL"
_FALLBACK_TIMEOUT_SECONDS = 24 * 60 * 60.0
_OUTPUT_TAIL_CHARS = 2000


class TrancheAttemptError(Exception):
    """A single attempt failed: non-zero exit, timeout or launch error."""

    def __init__(self, message: str, result: SubprocessResult | None = None) -> None:
        super().__init__(message)
        self.result = result


def _substitute(arg: str, spec: TrancheSpec, output: str) -> str:
    return (
        arg.replace("{index}", str(spec.index))
        .replace("{count}", str(spec.count))
        .replace("{output}", output)
    )


class TrancheRunner:
    """Executes a tranche's tests with retry and returns a :class:`TrancheResult`."""

    def __init__(
        self,
        config: TrancheConfig,
        root: Path | None = None,
        *,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._root = (root or config.root_path).resolve()
        self._policy = policy or RetryPolicy.from_config(config.retry)
        self._sleep = sleep

    @property
    def uses_test_list(self) -> bool:
        """True when the command receives the selected tests as arguments."""
        return TESTS_TOKEN in self._config.runner.command

    def output_path(self, spec: TrancheSpec) -> Path:
        """Fixed location the tranche's coverage file is written to."""
        relative = self._config.runner.coverage_output.replace("{index}", str(spec.index))
        return self._root / relative

    def build_command(self, spec: TrancheSpec, tests: Sequence[str]) -> list[str]:
        output = str(self.output_path(spec))
        command: list[str] = []
        for arg in self._config.runner.command:
            if arg == TESTS_TOKEN:
                command.extend(tests)
            else:
                command.append(_substitute(arg, spec, output))
        return command

    def build_env(self, spec: TrancheSpec, *, full_run: bool = False) -> dict[str, str]:
        output = str(self.output_path(spec))
        env = {
            key: _substitute(value, spec, output) for key, value in self._config.runner.env.items()
        }
        env[_ENV_INDEX] = str(spec.index)
        env[_ENV_COUNT] = str(spec.count)
        env[_ENV_ALL] = "1" if full_run else "0"
        return env

    async def _attempt(self, spec: TrancheSpec, tests: Sequence[str], full_run: bool) -> bytes:
        output = self.output_path(spec)
        output.unlink(missing_ok=True)
        output.parent.mkdir(parents=True, exist_ok=True)

        command = self.build_command(spec, tests)
        timeout = self._policy.timeout or _FALLBACK_TIMEOUT_SECONDS
        result = await run_subprocess(
            command,
            cwd=self._root,
            timeout=timeout,
            env=self.build_env(spec, full_run=full_run),
        )
        if result.timed_out:
            raise TrancheAttemptError(f"tranche {spec.index} timed out after {timeout}s", result)
        if not result.success:
            tail = (result.stderr or result.stdout)[-_OUTPUT_TAIL_CHARS:].strip()
            msg = f"tranche {spec.index} exited with code {result.returncode}"
            if tail:
                msg = f"{msg}: {tail}"
            raise TrancheAttemptError(msg, result)
        if not output.is_file():
            msg = f"tranche {spec.index} produced no coverage file at {output}"
            raise MissingArtifactError(msg, [spec.index])
        return output.read_bytes()

    async def run(
        self,
        spec: TrancheSpec,
        *,
        tests: Sequence[str] | None = None,
        full_run: bool = False,
    ) -> TrancheResult:
        """Run the tranche described by ``spec``.

        Args:
            spec: Tranche index and count.
            tests: The whole corpus; only this tranche's subset is executed.
                Discovered from ``sharding.test_patterns`` when omitted.
            full_run: Export ``TEST_ALL=1`` to the test command.

        Returns:
            SUCCESS with the coverage bytes, or FAILED without an artifact
            once retries are exhausted or the coverage file is missing.
        """
        if tests is None:
            tests = discover_tests(self._root, self._config.sharding.test_patterns)
        subset = select_tests(tests, spec)
        started = time.perf_counter()

        if self.uses_test_list and not subset:
            logger.info("Tranche %d/%d has no tests; nothing to run", spec.index, spec.count)
            return TrancheResult(
                index=spec.index,
                count=spec.count,
                status=TrancheStatus.SUCCESS,
                attempts=0,
                coverage_artifact=b"",
            )

        logger.info("Running tranche %d/%d (%d tests)", spec.index, spec.count, len(subset))
        attempts_made = 0

        async def _operation() -> bytes:
            nonlocal attempts_made
            attempts_made += 1
            return await self._attempt(spec, subset, full_run)

        with start_span(op="tranche.run", name=f"tranche {spec.index}/{spec.count}") as span:
            span.set_data("tests", len(subset))
            try:
                # The child process enforces the per-attempt timeout.
                policy = replace(self._policy, timeout=None)
                outcome = await policy.run(
                    _operation, give_up_on=(MissingArtifactError,), sleep=self._sleep
                )
            except MissingArtifactError as exc:
                logger.error("%s", exc)
                span.set_status("internal_error")
                return self._failed(spec, subset, attempts_made, str(exc), started, missing=True)
            except RetryError as exc:
                logger.error("Tranche %d failed after %d attempt(s)", spec.index, exc.attempts)
                span.set_status("internal_error")
                error = str(exc.last_error) or type(exc.last_error).__name__
                return self._failed(spec, subset, exc.attempts, error, started)

        return TrancheResult(
            index=spec.index,
            count=spec.count,
            status=TrancheStatus.SUCCESS,
            attempts=outcome.attempts,
            coverage_artifact=outcome.value,
            duration_ms=(time.perf_counter() - started) * 1000,
            tests=list(subset),
        )

    @staticmethod
    def _failed(
        spec: TrancheSpec,
        subset: Sequence[str],
        attempts: int,
        error: str,
        started: float,
        *,
        missing: bool = False,
    ) -> TrancheResult:
        return TrancheResult(
            index=spec.index,
            count=spec.count,
            status=TrancheStatus.FAILED,
            attempts=attempts,
            error=error,
            missing_artifact=missing,
            duration_ms=(time.perf_counter() - started) * 1000,
            tests=list(subset),
        )
