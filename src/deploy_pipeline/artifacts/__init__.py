"""Versioned artifact storage."""

from deploy_pipeline.artifacts.archive import (
    ArchiveEntry,
    ArchiveError,
    extract_to,
    normalize_tarball,
    pack_entries,
    pack_members,
    read_entries,
    read_file,
    read_members,
)
from deploy_pipeline.artifacts.models import ArtifactRef
from deploy_pipeline.artifacts.store import (
    ArtifactNotFoundError,
    ArtifactStore,
    ArtifactStoreError,
    InMemoryArtifactStore,
    S3ArtifactStore,
)

__all__ = [
    "ArchiveEntry",
    "ArchiveError",
    "ArtifactNotFoundError",
    "ArtifactRef",
    "ArtifactStore",
    "ArtifactStoreError",
    "InMemoryArtifactStore",
    "S3ArtifactStore",
    "extract_to",
    "normalize_tarball",
    "pack_entries",
    "pack_members",
    "read_entries",
    "read_file",
    "read_members",
]
