"""Artifact storage shared between tranche and aggregation jobs."""

from tranche.artifacts.store import (
    ARTIFACT_PATTERN,
    ArtifactStore,
    BlobStore,
    LocalBlobStore,
    MemoryBlobStore,
    MissingArtifactError,
    artifact_name,
)

__all__ = [
    "ARTIFACT_PATTERN",
    "ArtifactStore",
    "BlobStore",
    "LocalBlobStore",
    "MemoryBlobStore",
    "MissingArtifactError",
    "artifact_name",
]
