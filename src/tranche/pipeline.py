"""End-to-end run: gate, fan out tranches, aggregate, publish, conclude.

This is the in-process equivalent of the CI workflow. Every tranche runs as
its own task (and its own child process), all of them joined with
``asyncio.gather``; aggregation only starts after the join.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from tranche.aggregator import AggregatedReport, AggregationError, aggregate_from_store
from tranche.artifacts.store import ArtifactStore, LocalBlobStore
from tranche.ci.concurrency import ConcurrencyRegistry
from tranche.ci.gate import GateDecision, evaluate_gate, select_token
from tranche.ci.run import JobOutcome, RunState, WorkflowRun, exit_code
from tranche.coverage.summary import Thresholds
from tranche.publish.publisher import PublicationResult, Publisher
from tranche.sharding.planner import discover_tests, plan_tranches
from tranche.sharding.runner import TrancheRunner

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from tranche.artifacts.store import BlobStore
    from tranche.ci.trigger import TriggerEvent
    from tranche.config import TrancheConfig
    from tranche.sharding.planner import TrancheSpec
    from tranche.sharding.tranche_result import TrancheResult

logger = logging.getLogger(__name__)

AGGREGATE_JOB = "aggregate"


class SupportsRunTranche(Protocol):
    async def run(
        self, spec: TrancheSpec, *, tests: Sequence[str] | None = ..., full_run: bool = ...
    ) -> TrancheResult: ...


@dataclass
class PipelineResult:
    """Everything a finished (or skipped, or cancelled) run produced."""

    run: WorkflowRun
    decision: GateDecision
    results: dict[int, TrancheResult] = field(default_factory=dict)
    report: AggregatedReport | None = None
    publication: PublicationResult | None = None
    aggregation_error: str = ""

    @property
    def state(self) -> RunState:
        return self.run.state

    @property
    def exit_code(self) -> int:
        return exit_code(self.run)


def thresholds_from_config(config: TrancheConfig) -> Thresholds:
    return Thresholds(
        lower=config.coverage.lower_threshold,
        upper=config.coverage.upper_threshold,
    )


class Pipeline:
    """Drives one :class:`WorkflowRun` from trigger to conclusion."""

    def __init__(
        self,
        config: TrancheConfig,
        event: TriggerEvent,
        *,
        run_id: str | None = None,
        blobs: BlobStore | None = None,
        runner: SupportsRunTranche | None = None,
        publisher: Publisher | None = None,
        registry: ConcurrencyRegistry | None = None,
        tests: Sequence[str] | None = None,
    ) -> None:
        self._config = config
        self._event = event
        self._tests = list(tests) if tests is not None else None
        self._runner = runner or TrancheRunner(config)
        self._publisher = publisher
        self._registry = registry or ConcurrencyRegistry(
            cancel_in_progress=config.gate.cancel_in_progress
        )
        self.run = WorkflowRun(
            event=event,
            count=config.sharding.count,
            workflow=config.gate.workflow_name,
            run_id=run_id or event.run_id or config.run_id,
            required_jobs=[*config.gate.required_jobs, AGGREGATE_JOB],
        )
        if blobs is None:
            blobs = LocalBlobStore(config.root_path / config.artifacts.directory)
        self.store = ArtifactStore(blobs, self.run.run_id)
        self._tasks: list[asyncio.Task[TrancheResult]] = []
        self.run.on_cancel(self._on_cancelled)

    def _on_cancelled(self, run: WorkflowRun) -> None:
        for task in self._tasks:
            task.cancel()
        self.store.discard()

    async def execute(
        self, job_outcomes: Mapping[str, JobOutcome | str] | None = None
    ) -> PipelineResult:
        """Run the whole pipeline.

        Args:
            job_outcomes: Conclusions of the external jobs (``build``, ``lint``).
                Required jobs missing here count as not successful.
        """
        run = self.run
        run.transition(RunState.TRIGGERED)
        self._registry.claim(run)

        decision = evaluate_gate(self._event, self._config.gate)
        logger.info("Gate: %s (%s)", "run" if decision.should_run else "skip", decision.reason)
        if not decision.should_run:
            run.transition(RunState.SKIPPED)
            self._registry.release(run)
            return PipelineResult(run=run, decision=decision)

        run.transition(RunState.GATED)
        run.record_jobs((job_outcomes or {}).items())
        run.transition(RunState.RUNNING)
        result = PipelineResult(run=run, decision=decision)

        try:
            result.results = await self._run_tranches(decision.full_run)
        except asyncio.CancelledError:
            if run.state is RunState.CANCELLED:
                # Superseded by a newer run of the same group.
                logger.info("Run %s was superseded", run.run_id)
                return result
            run.cancel()
            raise
        if run.state is RunState.CANCELLED:
            return result

        for _, tranche in sorted(result.results.items()):
            run.record_job(
                tranche.job_name, JobOutcome.SUCCESS if tranche.succeeded else JobOutcome.FAILURE
            )

        result.report = self._aggregate(result)
        if result.report is not None and run.state is not RunState.CANCELLED:
            result.publication = await asyncio.to_thread(
                self._make_publisher(decision).publish, result.report, self._event
            )
        if run.state is RunState.CANCELLED:
            # Superseded while aggregating or publishing; the newer run concludes its group.
            logger.info("Run %s was superseded before concluding", run.run_id)
            return result

        run.conclude()
        self._registry.release(run)
        logger.info("Run %s %s", run.run_id, run.state.value)
        return result

    async def _run_tranches(self, full_run: bool) -> dict[int, TrancheResult]:
        tests = self._tests
        if tests is None:
            tests = discover_tests(self._config.root_path, self._config.sharding.test_patterns)
        specs = plan_tranches(self.run.count)
        logger.info("Running %d tests across %d tranches", len(tests), len(specs))

        self._tasks = [
            asyncio.create_task(self._run_one(spec, tests, full_run), name=spec.job_name)
            for spec in specs
        ]
        try:
            finished = await asyncio.gather(*self._tasks)
        finally:
            self._tasks = []
        return {tranche.index: tranche for tranche in finished}

    async def _run_one(
        self, spec: TrancheSpec, tests: Sequence[str], full_run: bool
    ) -> TrancheResult:
        tranche = await self._runner.run(spec, tests=tests, full_run=full_run)
        if self.run.state is not RunState.CANCELLED:
            self.store.put_result(tranche)
        return tranche

    def _aggregate(self, result: PipelineResult) -> AggregatedReport | None:
        if not any(tranche.succeeded for tranche in result.results.values()):
            logger.error("No tranche succeeded; nothing to aggregate")
            self.run.record_job(AGGREGATE_JOB, JobOutcome.SKIPPED)
            return None
        try:
            report = aggregate_from_store(
                self.store, self.run.count, thresholds_from_config(self._config)
            )
        except AggregationError as exc:
            logger.error("Aggregation failed: %s", exc)
            result.aggregation_error = str(exc)
            self.run.record_job(AGGREGATE_JOB, JobOutcome.FAILURE)
            return None

        if report.lost:
            logger.error("Artifacts lost for tranches %s", report.lost)
        self.run.record_job(
            AGGREGATE_JOB, JobOutcome.FAILURE if report.lost else JobOutcome.SUCCESS
        )
        return report

    def _make_publisher(self, decision: GateDecision) -> Publisher:
        if self._publisher is not None:
            return self._publisher
        publish = self._config.publish
        token = select_token(decision, publish.elevated_token, publish.github_token)
        return Publisher.from_config(publish, token=token, badge=self._config.coverage.badge)


async def run_pipeline(
    config: TrancheConfig,
    event: TriggerEvent,
    job_outcomes: Mapping[str, JobOutcome | str] | None = None,
    **kwargs: Any,
) -> PipelineResult:
    """Convenience wrapper: build a :class:`Pipeline` and execute it."""
    return await Pipeline(config, event, **kwargs).execute(job_outcomes)
