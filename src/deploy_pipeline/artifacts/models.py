"""Artifact reference model.

Artifacts are immutable, versioned blobs. Stages never pass artifact bytes
to each other; they pass ArtifactRefs, and each consumer reads the exact
version its producer wrote.
"""

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


class ArtifactRef(BaseModel):
    """Reference to one stored artifact version.

    Attributes:
        name: Logical artifact name (e.g., "SourceOutput").
        version: Version number, monotonically increasing per name from 1.
        run_id: The run that produced this version.
        producer_stage: Name of the stage that produced it.
        location: Store-specific key of the stored blob.
        digest: SHA-256 hex digest of the content.
        size_bytes: Content length.
        created_at: When the version was stored (UTC).
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)

    version: int = Field(..., ge=1)

    run_id: int = Field(..., ge=1)

    producer_stage: str = Field(..., min_length=1)

    location: str = Field(..., min_length=1)

    digest: str = Field(..., min_length=64, max_length=64)

    size_bytes: int = Field(..., ge=0)

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )

    @property
    def label(self) -> str:
        return f"{self.name}@v{self.version}"
