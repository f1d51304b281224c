"""Decide whether a trigger runs the pipeline, and with what privileges."""

from __future__ import annotations

import fnmatch
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from tranche.ci.trigger import EventType

if TYPE_CHECKING:
    from collections.abc import Iterable

    from tranche.ci.trigger import TriggerEvent
    from tranche.config import GateConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GateDecision:
    """Outcome of gating one trigger."""

    should_run: bool
    """Whether the pipeline runs at all."""

    reason: str
    """Human-readable explanation."""

    privileged: bool = False
    """Same-repository pull request: auto-fix commits and elevated token allowed."""

    full_run: bool = False
    """Export ``TEST_ALL=1`` to the tests."""


def _matches(name: str, patterns: Iterable[str]) -> bool:
    return any(fnmatch.fnmatchcase(name, pattern) for pattern in patterns)


def evaluate_gate(event: TriggerEvent, config: GateConfig) -> GateDecision:
    """Apply the trigger filters of ``config`` to ``event``.

    * push: allowed on listed branches and on tags matching ``tag_patterns``.
    * pull_request: allowed when the target branch is listed.
    * workflow_dispatch: allowed unless manual runs are disabled.
    """
    full_run = bool(event.ref_name) and _matches(event.ref_name, config.full_run_branches)
    kind = event.event_type

    if kind is EventType.PUSH:
        if event.is_tag:
            if _matches(event.ref_name, config.tag_patterns):
                return GateDecision(True, f"push of tag {event.ref_name}", full_run=full_run)
            return GateDecision(False, f"tag {event.ref_name} is not a release tag")
        if _matches(event.ref_name, config.push_branches):
            return GateDecision(True, f"push to {event.ref_name}", full_run=full_run)
        return GateDecision(False, f"branch {event.ref_name!r} is not gated for pushes")

    if kind is EventType.PULL_REQUEST:
        if not _matches(event.base_ref, config.pull_request_branches):
            return GateDecision(False, f"pull request targets {event.base_ref!r}")
        privileged = bool(config.canonical_repository) and (
            event.head_repository == config.canonical_repository
        )
        if privileged:
            logger.info("Pull request from %s runs privileged", event.head_repository)
        return GateDecision(
            True,
            f"pull request into {event.base_ref}",
            privileged=privileged,
            full_run=full_run,
        )

    if kind is EventType.WORKFLOW_DISPATCH:
        if config.allow_manual:
            return GateDecision(True, "manual dispatch", full_run=full_run)
        return GateDecision(False, "manual dispatch is disabled")

    return GateDecision(False, f"event {event.event_name or '(none)'!r} is not handled")


def select_token(decision: GateDecision, elevated: str, default: str) -> str:
    """Pick the credential for this run: elevated only when privileged and set."""
    if decision.privileged and elevated:
        return elevated
    return default
