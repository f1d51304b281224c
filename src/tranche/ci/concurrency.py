"""At most one active run per concurrency group."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

    from tranche.ci.run import WorkflowRun

logger = logging.getLogger(__name__)


class ConcurrencyRegistry:
    """Tracks the active run of each ``{workflow}-{ref}`` group.

    Claiming a group for a new run supersedes the run currently holding it:
    the old run is cancelled and ``cancel`` is called with it, so the caller
    can stop its tasks and discard its artifacts.
    """

    def __init__(self, *, cancel_in_progress: bool = True) -> None:
        self._active: dict[str, WorkflowRun] = {}
        self._lock = threading.Lock()
        self._cancel_in_progress = cancel_in_progress

    def active(self, key: str) -> WorkflowRun | None:
        with self._lock:
            return self._active.get(key)

    def claim(
        self,
        run: WorkflowRun,
        cancel: Callable[[WorkflowRun], object] | None = None,
    ) -> WorkflowRun | None:
        """Make ``run`` the active run of its group.

        Returns:
            The superseded run, or None if the group was free.
        """
        key = run.concurrency_key
        with self._lock:
            previous = self._active.get(key)
            if previous is run:
                return None
            self._active[key] = run

        if previous is None or not previous.is_active:
            return None
        if not self._cancel_in_progress:
            logger.info(
                "Run %s left running alongside %s in group %s", previous.run_id, run.run_id, key
            )
            return None

        logger.info(
            "Run %s supersedes %s in group %s; cancelling", run.run_id, previous.run_id, key
        )
        previous.cancel()
        if cancel is not None:
            cancel(previous)
        return previous

    def release(self, run: WorkflowRun) -> None:
        """Free the group if ``run`` still holds it."""
        key = run.concurrency_key
        with self._lock:
            if self._active.get(key) is run:
                del self._active[key]
