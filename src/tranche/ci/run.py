"""Workflow run lifecycle and final status.

A run moves ``IDLE -> TRIGGERED -> GATED -> RUNNING -> SUCCEEDED | FAILED``.
It can also end ``SKIPPED`` (the gate rejected the trigger) or ``CANCELLED``
(a newer run of the same concurrency group superseded it). Only
:meth:`WorkflowRun.conclude` turns job outcomes into a run status.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from tranche.ci.trigger import TriggerEvent

logger = logging.getLogger(__name__)


class RunState(Enum):
    IDLE = "idle"
    TRIGGERED = "triggered"
    GATED = "gated"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({RunState.SUCCEEDED, RunState.FAILED, RunState.SKIPPED, RunState.CANCELLED})

_TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.IDLE: frozenset({RunState.TRIGGERED, RunState.CANCELLED}),
    RunState.TRIGGERED: frozenset({RunState.GATED, RunState.SKIPPED, RunState.CANCELLED}),
    RunState.GATED: frozenset({RunState.RUNNING, RunState.CANCELLED}),
    RunState.RUNNING: frozenset({RunState.SUCCEEDED, RunState.FAILED, RunState.CANCELLED}),
}


class JobOutcome(Enum):
    """Conclusion of a single job, as GitHub reports it."""

    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


class InvalidTransitionError(Exception):
    """Raised on a state change the run lifecycle does not allow."""

    def __init__(self, current: RunState, target: RunState) -> None:
        super().__init__(f"Cannot move run from {current.value} to {target.value}")
        self.current = current
        self.target = target


def tranche_job_names(count: int) -> list[str]:
    return [f"coverage-{index}" for index in range(count)]


@dataclass
class WorkflowRun:
    """One execution of the workflow for a trigger."""

    event: TriggerEvent
    """What started the run."""

    count: int
    """Number of tranches."""

    workflow: str = "test"
    """Workflow name, first half of the concurrency key."""

    run_id: str = ""
    """Run identifier; also the artifact namespace."""

    required_jobs: list[str] = field(default_factory=lambda: ["build", "lint"])
    """Non-tranche jobs that must succeed."""

    state: RunState = RunState.IDLE
    jobs: dict[str, JobOutcome] = field(default_factory=dict)
    history: list[RunState] = field(default_factory=list)
    _cancel_callbacks: list[Callable[[WorkflowRun], object]] = field(
        default_factory=list, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        if not self.run_id:
            self.run_id = self.event.run_id or "local"
        if not self.history:
            self.history.append(self.state)

    @property
    def concurrency_key(self) -> str:
        """``{workflow}-{ref}``; at most one run per key is active."""
        return f"{self.workflow}-{self.event.ref}"

    @property
    def required_job_names(self) -> list[str]:
        return [*self.required_jobs, *tranche_job_names(self.count)]

    @property
    def is_active(self) -> bool:
        return not self.state.is_terminal

    def transition(self, target: RunState) -> None:
        """Move to ``target``.

        Raises:
            InvalidTransitionError: If the lifecycle does not allow the move.
        """
        if target not in _TRANSITIONS.get(self.state, frozenset()):
            raise InvalidTransitionError(self.state, target)
        logger.debug("Run %s: %s -> %s", self.run_id, self.state.value, target.value)
        self.state = target
        self.history.append(target)

    def record_job(self, name: str, outcome: JobOutcome | str) -> None:
        """Record a job's conclusion; a later record for the same job wins."""
        if self.state.is_terminal:
            msg = f"run {self.run_id} is {self.state.value}; cannot record job {name}"
            raise ValueError(msg)
        self.jobs[name] = outcome if isinstance(outcome, JobOutcome) else JobOutcome(outcome)

    def record_jobs(self, outcomes: Iterable[tuple[str, JobOutcome | str]]) -> None:
        for name, outcome in outcomes:
            self.record_job(name, outcome)

    def failed_jobs(self) -> list[str]:
        """Required jobs that did not succeed (including ones never recorded)."""
        return [
            name
            for name in self.required_job_names
            if self.jobs.get(name) is not JobOutcome.SUCCESS
        ]

    def conclude(self) -> RunState:
        """Settle the run: SUCCEEDED iff every required job succeeded."""
        failed = self.failed_jobs()
        if failed:
            logger.warning("Run %s failed; unsuccessful jobs: %s", self.run_id, ", ".join(failed))
            self.transition(RunState.FAILED)
        else:
            self.transition(RunState.SUCCEEDED)
        return self.state

    def on_cancel(self, callback: Callable[[WorkflowRun], object]) -> None:
        """Register ``callback`` to be called once if the run is cancelled."""
        self._cancel_callbacks.append(callback)

    def cancel(self) -> bool:
        """Cancel the run if it is still active. Returns True if it was."""
        if self.state.is_terminal:
            return False
        self.transition(RunState.CANCELLED)
        logger.info("Run %s cancelled", self.run_id)
        callbacks, self._cancel_callbacks = self._cancel_callbacks, []
        for callback in callbacks:
            callback(self)
        return True


def exit_code(run: WorkflowRun) -> int:
    """Process exit status for the run: 0 iff it SUCCEEDED."""
    return 0 if run.state is RunState.SUCCEEDED else 1
