"""Trigger detection from the GitHub Actions environment."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger(__name__)

# Expected number of parts when splitting "owner/repo"
_OWNER_REPO_PARTS = 2

_HEADS_PREFIX = "refs/heads/"
_TAGS_PREFIX = "refs/tags/"
_PULL_PREFIX = "refs/pull/"


class EventType(Enum):
    """Workflow trigger kinds the pipeline understands."""

    PUSH = "push"
    PULL_REQUEST = "pull_request"
    WORKFLOW_DISPATCH = "workflow_dispatch"
    OTHER = "other"

    @classmethod
    def from_name(cls, name: str) -> EventType:
        try:
            return cls(name)
        except ValueError:
            return cls.OTHER


@dataclass(frozen=True)
class TriggerEvent:
    """What started the workflow run."""

    event_name: str
    """Raw event name (``push``, ``pull_request``, ``workflow_dispatch`` ...)."""

    ref: str = ""
    """Full ref, e.g. ``refs/heads/main`` or ``refs/tags/v1.2.0``."""

    ref_name: str = ""
    """Short ref name (branch or tag)."""

    ref_type: str = ""
    """``branch`` or ``tag``."""

    base_ref: str = ""
    """Target branch of a pull request."""

    head_ref: str = ""
    """Source branch of a pull request."""

    head_repository: str = ""
    """``owner/name`` the pull request comes from."""

    repository: str = ""
    """``owner/name`` the workflow runs in."""

    actor: str = ""
    """User who triggered the run."""

    workflow: str = ""
    """Workflow name."""

    run_id: str = ""
    """Unique run identifier."""

    pr_number: int | None = None
    """Pull request number, if any."""

    sha: str = ""
    """Commit SHA."""

    @property
    def event_type(self) -> EventType:
        return EventType.from_name(self.event_name)

    @property
    def is_pull_request(self) -> bool:
        return self.event_type is EventType.PULL_REQUEST

    @property
    def is_tag(self) -> bool:
        return self.ref_type == "tag" or self.ref.startswith(_TAGS_PREFIX)

    @property
    def owner(self) -> str | None:
        parts = self.repository.split("/")
        return parts[0] if len(parts) == _OWNER_REPO_PARTS else None

    @property
    def repo(self) -> str | None:
        parts = self.repository.split("/")
        return parts[1] if len(parts) == _OWNER_REPO_PARTS else None

    @property
    def is_fork(self) -> bool:
        """True for a pull request whose head lives in another repository."""
        return (
            self.is_pull_request
            and bool(self.head_repository)
            and self.head_repository != self.repository
        )


def is_ci(env: Mapping[str, str] | None = None) -> bool:
    """Return True when running under GitHub Actions or a generic CI."""
    env = os.environ if env is None else env
    return env.get("GITHUB_ACTIONS") == "true" or env.get("CI") == "true"


def _parse_int(value: Any) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _split_ref(ref: str) -> tuple[str, str]:
    """Return (short name, ref type) for a full ref."""
    if ref.startswith(_HEADS_PREFIX):
        return ref.removeprefix(_HEADS_PREFIX), "branch"
    if ref.startswith(_TAGS_PREFIX):
        return ref.removeprefix(_TAGS_PREFIX), "tag"
    return ref, ""


def _pr_number_from_ref(ref: str) -> int | None:
    # refs/pull/<n>/merge
    if not ref.startswith(_PULL_PREFIX):
        return None
    return _parse_int(ref.removeprefix(_PULL_PREFIX).split("/", 1)[0])


def load_event_payload(path: str | Path | None) -> dict[str, Any]:
    """Read the webhook payload GitHub writes to ``GITHUB_EVENT_PATH``."""
    if not path:
        return {}
    event_path = Path(path)
    if not event_path.is_file():
        logger.debug("Event payload %s not found", event_path)
        return {}
    try:
        payload = json.loads(event_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Could not read event payload %s: %s", event_path, exc)
        return {}
    return payload if isinstance(payload, dict) else {}


def detect_trigger(env: Mapping[str, str] | None = None) -> TriggerEvent:
    """Build a :class:`TriggerEvent` from GitHub Actions variables.

    Pull request details missing from the environment (number, head
    repository) are taken from the event payload file.
    """
    env = os.environ if env is None else env
    payload = load_event_payload(env.get("GITHUB_EVENT_PATH"))
    pull_request = payload.get("pull_request") if isinstance(payload, dict) else None
    pull_request = pull_request if isinstance(pull_request, dict) else {}

    event_name = env.get("GITHUB_EVENT_NAME", "")
    ref = env.get("GITHUB_REF", "")
    derived_name, derived_type = _split_ref(ref)
    ref_name = env.get("GITHUB_REF_NAME") or derived_name
    ref_type = env.get("GITHUB_REF_TYPE") or derived_type

    head = pull_request.get("head") if isinstance(pull_request.get("head"), dict) else {}
    head_repo = head.get("repo") if isinstance(head.get("repo"), dict) else {}
    head_repository = str(head_repo.get("full_name") or "")

    pr_number = (
        _parse_int(pull_request.get("number"))
        or _parse_int(env.get("GITHUB_PR_NUMBER"))
        or _pr_number_from_ref(ref)
    )

    return TriggerEvent(
        event_name=event_name,
        ref=ref,
        ref_name=ref_name,
        ref_type=ref_type,
        base_ref=env.get("GITHUB_BASE_REF", ""),
        head_ref=env.get("GITHUB_HEAD_REF", ""),
        head_repository=head_repository,
        repository=env.get("GITHUB_REPOSITORY", ""),
        actor=env.get("GITHUB_ACTOR", ""),
        workflow=env.get("GITHUB_WORKFLOW", ""),
        run_id=env.get("GITHUB_RUN_ID", ""),
        pr_number=pr_number,
        sha=env.get("GITHUB_SHA", ""),
    )
