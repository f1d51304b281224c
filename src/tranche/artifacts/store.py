"""Run-scoped storage for per-tranche coverage artifacts.

Tranche jobs write ``coverage-{index}.lcov`` (and a small JSON result) under
their run's namespace; the aggregation job downloads everything matching
``coverage-*.lcov`` in one call. Keys never collide across indices, so no
locking is needed, and a run only ever reads its own namespace.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from tranche.sharding.tranche_result import (
    TrancheResult,
    dumps_tranche_result,
    loads_tranche_result,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)

ARTIFACT_PATTERN = "coverage-*.lcov"
_RESULT_SUFFIX = ".result.json"


class MissingArtifactError(Exception):
    """A coverage artifact that should exist was not produced or not found."""

    def __init__(self, message: str, indices: Iterable[int] = ()) -> None:
        super().__init__(message)
        self.indices = sorted(indices)


def artifact_name(index: int) -> str:
    return f"coverage-{index}.lcov"


def _result_name(index: int) -> str:
    return f"coverage-{index}{_RESULT_SUFFIX}"


# ── Blob backends ────────────────────────────────────────────────


class BlobStore(ABC):
    """Abstract key/value byte storage with ``/``-separated keys."""

    @abstractmethod
    def put(self, key: str, data: bytes) -> None:
        """Store ``data`` under ``key``, replacing any previous value."""

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Return the bytes stored under ``key``.

        Raises:
            KeyError: If nothing is stored under ``key``.
        """

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check if a key exists."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete a key. Returns True if it existed."""

    @abstractmethod
    def list_keys(self, prefix: str = "") -> list[str]:
        """Sorted keys starting with ``prefix``."""

    def list_matching(self, pattern: str) -> list[str]:
        """Sorted keys matching a glob ``pattern`` (``*`` does not cross ``/``)."""
        prefix = pattern.split("*", 1)[0].split("?", 1)[0].split("[", 1)[0]
        return [
            key
            for key in self.list_keys(prefix)
            if PurePosixPath(key).match(pattern) and fnmatch.fnmatchcase(key, pattern)
        ]


class MemoryBlobStore(BlobStore):
    """In-process dict-backed store."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, key: str, data: bytes) -> None:
        with self._lock:
            self._data[key] = bytes(data)

    def get(self, key: str) -> bytes:
        with self._lock:
            return self._data[key]

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self._data

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def list_keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(key for key in self._data if key.startswith(prefix))


class LocalBlobStore(BlobStore):
    """Filesystem store rooted at ``base_path``; keys map to relative paths."""

    def __init__(self, base_path: str | Path) -> None:
        self.base_path = Path(base_path).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _resolve_path(self, key: str) -> Path:
        clean = PurePosixPath(key).as_posix().lstrip("/")
        full_path = self.base_path / clean
        try:
            full_path.resolve().relative_to(self.base_path)
        except ValueError as exc:
            msg = f"Invalid key: {key} (outside base directory)"
            raise ValueError(msg) from exc
        return full_path

    def put(self, key: str, data: bytes) -> None:
        full_path = self._resolve_path(key)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        # Readers never see a partially written artifact
        fd, tmp_name = tempfile.mkstemp(dir=full_path.parent, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            Path(tmp_name).replace(full_path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug("Stored %s (%d bytes)", key, len(data))

    def get(self, key: str) -> bytes:
        full_path = self._resolve_path(key)
        if not full_path.is_file():
            raise KeyError(key)
        return full_path.read_bytes()

    def exists(self, key: str) -> bool:
        return self._resolve_path(key).is_file()

    def delete(self, key: str) -> bool:
        full_path = self._resolve_path(key)
        if not full_path.is_file():
            return False
        full_path.unlink()
        return True

    def list_keys(self, prefix: str = "") -> list[str]:
        keys = []
        for file_path in self.base_path.rglob("*"):
            if not file_path.is_file() or file_path.name.startswith(".tmp-"):
                continue
            key = file_path.relative_to(self.base_path).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)


# ── Run-scoped artifact store ────────────────────────────────────


class ArtifactStore:
    """Coverage artifacts and tranche results of a single run."""

    def __init__(self, blobs: BlobStore, run_id: str) -> None:
        if not run_id or "/" in run_id:
            msg = f"run_id must be a non-empty single path segment, got {run_id!r}"
            raise ValueError(msg)
        self._blobs = blobs
        self.run_id = run_id

    def _key(self, name: str) -> str:
        return f"{self.run_id}/{name}"

    def put(self, index: int, artifact: bytes) -> str:
        """Upload tranche ``index``'s artifact and return its key."""
        key = self._key(artifact_name(index))
        self._blobs.put(key, artifact)
        logger.info("Uploaded %s", key)
        return key

    def get(self, index: int) -> bytes | None:
        try:
            return self._blobs.get(self._key(artifact_name(index)))
        except KeyError:
            return None

    def list(self) -> dict[int, bytes]:
        """Every artifact of this run keyed by tranche index."""
        artifacts: dict[int, bytes] = {}
        for name, data in self.fetch_matching(ARTIFACT_PATTERN).items():
            index = _index_from_name(name)
            if index is not None:
                artifacts[index] = data
        return artifacts

    def fetch_matching(self, pattern: str = ARTIFACT_PATTERN) -> dict[str, bytes]:
        """Download every artifact of this run whose file name matches ``pattern``.

        Artifacts sit directly under the run namespace, so file names are unique
        and the result is one flat mapping keyed by file name.
        """
        return {
            PurePosixPath(key).name: self._blobs.get(key)
            for key in self._blobs.list_matching(self._key(pattern))
        }

    def put_result(self, result: TrancheResult) -> None:
        """Record a tranche's result, uploading its artifact when it has one."""
        if result.coverage_artifact is not None:
            self.put(result.index, result.coverage_artifact)
        self._blobs.put(
            self._key(_result_name(result.index)),
            dumps_tranche_result(result).encode("utf-8"),
        )

    def results(self) -> dict[int, TrancheResult]:
        """Every recorded tranche result, with its artifact reattached."""
        results: dict[int, TrancheResult] = {}
        for key in self._blobs.list_matching(self._key(f"coverage-*{_RESULT_SUFFIX}")):
            text = self._blobs.get(key).decode("utf-8")
            index = _index_from_name(PurePosixPath(key).name.removesuffix(_RESULT_SUFFIX))
            if index is None:
                continue
            results[index] = loads_tranche_result(text, self.get(index))
        return results

    def require(self, indices: Iterable[int]) -> dict[int, bytes]:
        """Return the artifacts of ``indices``, failing if any is absent.

        Raises:
            MissingArtifactError: Listing every index without an artifact.
        """
        wanted = sorted(set(indices))
        artifacts = self.list()
        missing = [index for index in wanted if index not in artifacts]
        if missing:
            names = ", ".join(artifact_name(i) for i in missing)
            msg = f"No files were found for: {names}"
            raise MissingArtifactError(msg, missing)
        return {index: artifacts[index] for index in wanted}

    def discard(self) -> int:
        """Delete this run's namespace; returns the number of keys removed."""
        removed = 0
        for key in self._blobs.list_keys(f"{self.run_id}/"):
            removed += int(self._blobs.delete(key))
        if removed:
            logger.info("Discarded %d artifact(s) of run %s", removed, self.run_id)
        return removed


def _index_from_name(name: str) -> int | None:
    stem = name.removeprefix("coverage-").removesuffix(".lcov")
    if stem == name or not stem.isdigit():
        return None
    return int(stem)
