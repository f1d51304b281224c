"""Tests for tranche.ci.gate."""

from __future__ import annotations

import pytest

from tranche.ci.gate import GateDecision, evaluate_gate, select_token
from tranche.ci.trigger import TriggerEvent
from tranche.config import GateConfig

CONFIG = GateConfig(canonical_repository="octocat/hello-world")


def _push(ref: str) -> TriggerEvent:
    name = ref.split("/", 2)[-1]
    return TriggerEvent("push", ref=ref, ref_name=name, repository="octocat/hello-world")


def _pr(base: str = "main", head_repository: str = "octocat/hello-world") -> TriggerEvent:
    return TriggerEvent(
        "pull_request",
        ref="refs/pull/1/merge",
        base_ref=base,
        head_repository=head_repository,
        repository="octocat/hello-world",
        pr_number=1,
    )


class TestPush:
    @pytest.mark.parametrize("branch", ["main", "mise"])
    def test_gated_branches(self, branch: str) -> None:
        decision = evaluate_gate(_push(f"refs/heads/{branch}"), CONFIG)
        assert decision.should_run
        assert not decision.privileged

    def test_other_branch(self) -> None:
        decision = evaluate_gate(_push("refs/heads/feature"), CONFIG)
        assert not decision.should_run
        assert "feature" in decision.reason

    def test_release_tag(self) -> None:
        assert evaluate_gate(_push("refs/tags/v1.2.0"), CONFIG).should_run

    def test_other_tag(self) -> None:
        decision = evaluate_gate(_push("refs/tags/nightly"), CONFIG)
        assert not decision.should_run
        assert "not a release tag" in decision.reason

    def test_full_run_branch(self) -> None:
        config = GateConfig(push_branches=["release"], full_run_branches=["release"])
        decision = evaluate_gate(_push("refs/heads/release"), config)
        assert decision.should_run
        assert decision.full_run


class TestPullRequest:
    def test_same_repository_is_privileged(self) -> None:
        decision = evaluate_gate(_pr(), CONFIG)
        assert decision.should_run
        assert decision.privileged

    def test_fork_runs_unprivileged(self) -> None:
        decision = evaluate_gate(_pr(head_repository="someone/hello-world"), CONFIG)
        assert decision.should_run
        assert not decision.privileged

    def test_without_canonical_repository_nothing_is_privileged(self) -> None:
        assert not evaluate_gate(_pr(), GateConfig()).privileged

    def test_other_target_branch(self) -> None:
        decision = evaluate_gate(_pr(base="develop"), CONFIG)
        assert not decision.should_run
        assert "develop" in decision.reason


class TestOtherEvents:
    def test_manual_dispatch(self) -> None:
        event = TriggerEvent("workflow_dispatch", ref="refs/heads/main", ref_name="main")
        assert evaluate_gate(event, CONFIG).should_run
        assert not evaluate_gate(event, GateConfig(allow_manual=False)).should_run

    def test_unknown_event(self) -> None:
        decision = evaluate_gate(TriggerEvent("schedule"), CONFIG)
        assert not decision.should_run
        assert "schedule" in decision.reason


class TestSelectToken:
    def test_privileged_uses_elevated(self) -> None:
        decision = GateDecision(True, "pr", privileged=True)
        assert select_token(decision, "bot", "default") == "bot"

    def test_privileged_without_elevated_falls_back(self) -> None:
        decision = GateDecision(True, "pr", privileged=True)
        assert select_token(decision, "", "default") == "default"

    def test_unprivileged_never_gets_elevated(self) -> None:
        assert select_token(GateDecision(True, "pr"), "bot", "default") == "default"
