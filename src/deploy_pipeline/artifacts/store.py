"""Artifact store implementations.

The artifact store is durable, versioned blob storage consumed as an opaque
capability. Two implementations satisfy the ArtifactStore protocol:

- InMemoryArtifactStore: process-local storage for development and tests
- S3ArtifactStore: S3 objects under a key prefix, one object per version

Versions are never overwritten. S3 writes use a conditional put
(If-None-Match: *) so that two writers racing on the same version number
cannot clobber each other; the loser retries with the next number.
"""

import asyncio
import hashlib
import logging
import re
from typing import Dict, List, Optional, Protocol, Tuple, runtime_checkable

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from deploy_pipeline.artifacts.models import ArtifactRef


logger = logging.getLogger(__name__)


class ArtifactNotFoundError(Exception):
    """Raised when a referenced artifact version does not exist."""

    def __init__(self, location: str):
        self.location = location
        super().__init__(f"Artifact not found: {location}")


class ArtifactStoreError(Exception):
    """Raised when the backing store fails."""


@runtime_checkable
class ArtifactStore(Protocol):
    """Protocol for versioned artifact storage."""

    async def put(
        self,
        name: str,
        data: bytes,
        run_id: int,
        producer_stage: str,
    ) -> ArtifactRef:
        """Store a new version of the named artifact."""
        ...

    async def get(self, ref: ArtifactRef) -> bytes:
        """Read the exact version a reference points at."""
        ...

    async def list_versions(self, name: str) -> List[ArtifactRef]:
        """List every stored version of the named artifact, oldest first."""
        ...


def _digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class InMemoryArtifactStore:
    """Process-local artifact store."""

    def __init__(self) -> None:
        self._blobs: Dict[str, bytes] = {}
        self._versions: Dict[str, List[ArtifactRef]] = {}
        self._lock = asyncio.Lock()

    async def put(
        self,
        name: str,
        data: bytes,
        run_id: int,
        producer_stage: str,
    ) -> ArtifactRef:
        async with self._lock:
            versions = self._versions.setdefault(name, [])
            version = len(versions) + 1
            location = f"memory://{name}/v{version}"
            ref = ArtifactRef(
                name=name,
                version=version,
                run_id=run_id,
                producer_stage=producer_stage,
                location=location,
                digest=_digest(data),
                size_bytes=len(data),
            )
            self._blobs[location] = bytes(data)
            versions.append(ref)

        logger.info(
            "Stored artifact",
            extra={"artifact": ref.label, "run_id": run_id, "size": ref.size_bytes},
        )
        return ref

    async def get(self, ref: ArtifactRef) -> bytes:
        data = self._blobs.get(ref.location)
        if data is None:
            raise ArtifactNotFoundError(ref.location)
        return data

    async def list_versions(self, name: str) -> List[ArtifactRef]:
        return list(self._versions.get(name, []))


class S3ArtifactStore:
    """Artifact store backed by S3.

    Object layout: s3://{bucket}/{prefix}/{name}/v{version:08d}.tar.gz, with
    run metadata stored as object metadata.

    Attributes:
        bucket: The artifact bucket.
        prefix: Key prefix for this pipeline's artifacts.
    """

    MAX_PUT_ATTEMPTS = 5

    _VERSION_KEY = re.compile(r"/v(\d+)\.tar\.gz$")

    def __init__(self, bucket: str, prefix: str, s3_client=None):
        """
        Args:
            bucket: The artifact bucket name.
            prefix: Key prefix for this pipeline's artifacts.
            s3_client: Optional boto3 S3 client (for testing).
        """
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self._s3 = s3_client or boto3.client("s3")

    def _key(self, name: str, version: int) -> str:
        return f"{self.prefix}/{name}/v{version:08d}.tar.gz"

    async def put(
        self,
        name: str,
        data: bytes,
        run_id: int,
        producer_stage: str,
    ) -> ArtifactRef:
        return await asyncio.to_thread(
            self._put_sync, name, data, run_id, producer_stage
        )

    def _put_sync(
        self, name: str, data: bytes, run_id: int, producer_stage: str
    ) -> ArtifactRef:
        digest = _digest(data)
        version = self._latest_version(name) + 1

        for _ in range(self.MAX_PUT_ATTEMPTS):
            key = self._key(name, version)
            try:
                self._s3.put_object(
                    Bucket=self.bucket,
                    Key=key,
                    Body=data,
                    IfNoneMatch="*",
                    Metadata={
                        "run-id": str(run_id),
                        "producer-stage": producer_stage,
                        "sha256": digest,
                    },
                )
            except ClientError as e:
                code = e.response.get("Error", {}).get("Code")
                if code in ("PreconditionFailed", "ConditionalRequestConflict"):
                    logger.debug(
                        "Artifact version taken, retrying",
                        extra={"artifact": name, "version": version},
                    )
                    version += 1
                    continue
                raise ArtifactStoreError(f"Failed to store {name}: {e}") from e
            except BotoCoreError as e:
                raise ArtifactStoreError(f"Failed to store {name}: {e}") from e

            ref = ArtifactRef(
                name=name,
                version=version,
                run_id=run_id,
                producer_stage=producer_stage,
                location=f"s3://{self.bucket}/{key}",
                digest=digest,
                size_bytes=len(data),
            )
            logger.info(
                "Stored artifact",
                extra={"artifact": ref.label, "run_id": run_id, "location": ref.location},
            )
            return ref

        raise ArtifactStoreError(
            f"Could not allocate a version for {name} after "
            f"{self.MAX_PUT_ATTEMPTS} attempts"
        )

    def _latest_version(self, name: str) -> int:
        latest = 0
        for key, _ in self._list_keys(name):
            match = self._VERSION_KEY.search(key)
            if match:
                latest = max(latest, int(match.group(1)))
        return latest

    def _list_keys(self, name: str) -> List[Tuple[str, Optional[object]]]:
        keys: List[Tuple[str, Optional[object]]] = []
        kwargs = {"Bucket": self.bucket, "Prefix": f"{self.prefix}/{name}/"}
        try:
            while True:
                response = self._s3.list_objects_v2(**kwargs)
                for item in response.get("Contents", []):
                    keys.append((item["Key"], item.get("LastModified")))
                if not response.get("IsTruncated"):
                    break
                kwargs["ContinuationToken"] = response["NextContinuationToken"]
        except (ClientError, BotoCoreError) as e:
            raise ArtifactStoreError(f"Failed to list {name}: {e}") from e
        return keys

    def _split_location(self, location: str) -> Tuple[str, str]:
        bucket, _, key = location.removeprefix("s3://").partition("/")
        return bucket, key

    async def get(self, ref: ArtifactRef) -> bytes:
        return await asyncio.to_thread(self._get_sync, ref)

    def _get_sync(self, ref: ArtifactRef) -> bytes:
        bucket, key = self._split_location(ref.location)
        try:
            response = self._s3.get_object(Bucket=bucket, Key=key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("NoSuchKey", "404"):
                raise ArtifactNotFoundError(ref.location) from e
            raise ArtifactStoreError(f"Failed to read {ref.label}: {e}") from e
        except BotoCoreError as e:
            raise ArtifactStoreError(f"Failed to read {ref.label}: {e}") from e

        data = response["Body"].read()
        if _digest(data) != ref.digest:
            raise ArtifactStoreError(f"Digest mismatch for {ref.label}")
        return data

    async def list_versions(self, name: str) -> List[ArtifactRef]:
        return await asyncio.to_thread(self._list_versions_sync, name)

    def _list_versions_sync(self, name: str) -> List[ArtifactRef]:
        refs = []
        for key, _ in self._list_keys(name):
            match = self._VERSION_KEY.search(key)
            if not match:
                continue
            head = self._s3.head_object(Bucket=self.bucket, Key=key)
            metadata = head.get("Metadata", {})
            refs.append(
                ArtifactRef(
                    name=name,
                    version=int(match.group(1)),
                    run_id=int(metadata.get("run-id", "1")),
                    producer_stage=metadata.get("producer-stage", "unknown"),
                    location=f"s3://{self.bucket}/{key}",
                    digest=metadata.get("sha256", "0" * 64),
                    size_bytes=head.get("ContentLength", 0),
                )
            )
        return sorted(refs, key=lambda ref: ref.version)
