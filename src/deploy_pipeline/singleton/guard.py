"""Singleton resource guard.

Some resources must exist at most once per execution scope. The canonical
example is the webhook registration that carries the pipeline's signing
secret: the source host accepts one per (account, region, provider) triple,
and a second registration either fails or silently splits deliveries.

SingletonResourceGuard makes that constraint explicit:

    handle = await guard.acquire("webhook-credential", "123456789012/us-east-1", factory)

Two layers serialize creation:
- a per-(kind, scope) asyncio.Lock for callers in this process
- the registry's reserve(), an idempotent create-if-absent primitive that
  serializes callers across processes (DynamoDB conditional put)

The factory runs at most once per (kind, scope). Conflicts are reported as
SingletonConflict and never retried automatically.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Optional,
    Protocol,
    Tuple,
    runtime_checkable,
)

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from deploy_pipeline.errors import SingletonConflict

logger = logging.getLogger(__name__)


class RegistrationStatus(str, Enum):
    """Lifecycle of a registry entry."""

    PENDING = "pending"
    ACTIVE = "active"


@dataclass
class Registration:
    """A registry entry for one (kind, scope) pair."""

    kind: str
    scope: str
    status: RegistrationStatus
    owner: str
    resource_id: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class SingletonHandle:
    """Reference to the single live instance of a resource.

    Attributes:
        kind: Resource kind (e.g., "webhook-credential").
        scope: Execution scope (e.g., "<account>/<region>").
        resource_id: Provider identifier, or None when managed out-of-band.
        created: True only for the caller whose factory created it.
        attributes: Provider attributes recorded at creation.
    """

    kind: str
    scope: str
    resource_id: Optional[str]
    created: bool = False
    attributes: Dict[str, Any] = field(default_factory=dict)

    @property
    def external(self) -> bool:
        return self.resource_id is None


class ResourceAlreadyExists(Exception):
    """Raised by a factory when the provider already holds the resource.

    The guard converts this into SingletonConflict: the registry and the
    external system disagree and an operator must reconcile them.
    """


ResourceFactory = Callable[[], Awaitable[Tuple[str, Dict[str, Any]]]]


class SingletonRegistryError(Exception):
    """Raised when the registry backend fails."""


@runtime_checkable
class SingletonRegistry(Protocol):
    """Durable record of singleton registrations."""

    async def get(self, kind: str, scope: str) -> Optional[Registration]:
        ...

    async def reserve(self, kind: str, scope: str, owner: str) -> bool:
        """Create a pending entry if none exists. Returns True if reserved."""
        ...

    async def complete(
        self,
        kind: str,
        scope: str,
        resource_id: str,
        attributes: Dict[str, Any],
    ) -> Registration:
        ...

    async def release(self, kind: str, scope: str) -> None:
        ...


class InMemorySingletonRegistry:
    """Registry held in process memory."""

    def __init__(self) -> None:
        self._entries: Dict[Tuple[str, str], Registration] = {}
        self._lock = asyncio.Lock()

    async def get(self, kind: str, scope: str) -> Optional[Registration]:
        return self._entries.get((kind, scope))

    async def reserve(self, kind: str, scope: str, owner: str) -> bool:
        async with self._lock:
            if (kind, scope) in self._entries:
                return False
            self._entries[(kind, scope)] = Registration(
                kind=kind,
                scope=scope,
                status=RegistrationStatus.PENDING,
                owner=owner,
            )
            return True

    async def complete(
        self,
        kind: str,
        scope: str,
        resource_id: str,
        attributes: Dict[str, Any],
    ) -> Registration:
        async with self._lock:
            entry = self._entries.get((kind, scope))
            if entry is None:
                raise SingletonRegistryError(f"No reservation for {kind}/{scope}")
            entry.status = RegistrationStatus.ACTIVE
            entry.resource_id = resource_id
            entry.attributes = dict(attributes)
            entry.updated_at = datetime.now(timezone.utc)
            return entry

    async def release(self, kind: str, scope: str) -> None:
        async with self._lock:
            entry = self._entries.get((kind, scope))
            if entry is not None and entry.status == RegistrationStatus.PENDING:
                del self._entries[(kind, scope)]


class DynamoDBSingletonRegistry:
    """Registry stored in a DynamoDB table.

    DynamoDB Schema:
        Partition Key: singleton_key (String) - format: "{kind}#{scope}"
        Attributes:
            - kind, scope, status, owner (String)
            - resource_id (String, once active)
            - attributes (String - JSON document)
            - updated_at (String - ISO timestamp)
    """

    MAX_RETRIES = 3
    INITIAL_BACKOFF = 0.1
    MAX_BACKOFF = 5.0

    def __init__(self, table_name: str, dynamodb_client=None):
        """
        Args:
            table_name: Name of the DynamoDB table.
            dynamodb_client: Optional boto3 DynamoDB client (for testing).
        """
        self.table_name = table_name
        self._dynamodb = dynamodb_client or boto3.client("dynamodb")

    @staticmethod
    def _make_key(kind: str, scope: str) -> Dict[str, Dict[str, str]]:
        return {"singleton_key": {"S": f"{kind}#{scope}"}}

    def _call(self, operation, **kwargs):
        backoff = self.INITIAL_BACKOFF
        for attempt in range(self.MAX_RETRIES):
            try:
                return operation(**kwargs)
            except ClientError as e:
                code = e.response.get("Error", {}).get("Code", "")
                if code in (
                    "ProvisionedThroughputExceededException",
                    "ThrottlingException",
                ) and attempt < self.MAX_RETRIES - 1:
                    time.sleep(min(backoff * (2**attempt), self.MAX_BACKOFF))
                    continue
                raise

    def _get_sync(self, kind: str, scope: str) -> Optional[Registration]:
        try:
            response = self._call(
                self._dynamodb.get_item,
                TableName=self.table_name,
                Key=self._make_key(kind, scope),
                ConsistentRead=True,
            )
        except (ClientError, BotoCoreError) as e:
            raise SingletonRegistryError(f"DynamoDB get failed: {e}") from e

        item = response.get("Item")
        if not item:
            return None
        return Registration(
            kind=item["kind"]["S"],
            scope=item["scope"]["S"],
            status=RegistrationStatus(item["status"]["S"]),
            owner=item.get("owner", {}).get("S", ""),
            resource_id=item.get("resource_id", {}).get("S"),
            attributes=json.loads(item.get("attributes", {}).get("S", "{}")),
            updated_at=datetime.fromisoformat(item["updated_at"]["S"]),
        )

    def _reserve_sync(self, kind: str, scope: str, owner: str) -> bool:
        item = {
            **self._make_key(kind, scope),
            "kind": {"S": kind},
            "scope": {"S": scope},
            "status": {"S": RegistrationStatus.PENDING.value},
            "owner": {"S": owner},
            "updated_at": {"S": datetime.now(timezone.utc).isoformat()},
        }
        try:
            self._call(
                self._dynamodb.put_item,
                TableName=self.table_name,
                Item=item,
                ConditionExpression="attribute_not_exists(singleton_key)",
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                return False
            raise SingletonRegistryError(f"DynamoDB reserve failed: {e}") from e
        except BotoCoreError as e:
            raise SingletonRegistryError(f"DynamoDB reserve failed: {e}") from e
        return True

    def _complete_sync(
        self, kind: str, scope: str, resource_id: str, attributes: Dict[str, Any]
    ) -> Registration:
        now = datetime.now(timezone.utc)
        try:
            self._call(
                self._dynamodb.update_item,
                TableName=self.table_name,
                Key=self._make_key(kind, scope),
                UpdateExpression=(
                    "SET #status = :active, resource_id = :rid, "
                    "attributes = :attrs, updated_at = :now"
                ),
                ConditionExpression="#status = :pending",
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues={
                    ":active": {"S": RegistrationStatus.ACTIVE.value},
                    ":pending": {"S": RegistrationStatus.PENDING.value},
                    ":rid": {"S": resource_id},
                    ":attrs": {"S": json.dumps(attributes, default=str)},
                    ":now": {"S": now.isoformat()},
                },
            )
        except (ClientError, BotoCoreError) as e:
            raise SingletonRegistryError(f"DynamoDB complete failed: {e}") from e

        return Registration(
            kind=kind,
            scope=scope,
            status=RegistrationStatus.ACTIVE,
            owner="",
            resource_id=resource_id,
            attributes=dict(attributes),
            updated_at=now,
        )

    def _release_sync(self, kind: str, scope: str) -> None:
        try:
            self._call(
                self._dynamodb.delete_item,
                TableName=self.table_name,
                Key=self._make_key(kind, scope),
                ConditionExpression="#status = :pending",
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues={
                    ":pending": {"S": RegistrationStatus.PENDING.value},
                },
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                return
            raise SingletonRegistryError(f"DynamoDB release failed: {e}") from e
        except BotoCoreError as e:
            raise SingletonRegistryError(f"DynamoDB release failed: {e}") from e

    async def get(self, kind: str, scope: str) -> Optional[Registration]:
        return await asyncio.to_thread(self._get_sync, kind, scope)

    async def reserve(self, kind: str, scope: str, owner: str) -> bool:
        return await asyncio.to_thread(self._reserve_sync, kind, scope, owner)

    async def complete(
        self,
        kind: str,
        scope: str,
        resource_id: str,
        attributes: Dict[str, Any],
    ) -> Registration:
        return await asyncio.to_thread(
            self._complete_sync, kind, scope, resource_id, attributes
        )

    async def release(self, kind: str, scope: str) -> None:
        await asyncio.to_thread(self._release_sync, kind, scope)


class SingletonResourceGuard:
    """Ensures at most one instance of a resource per (kind, scope).

    Attributes:
        registry: Durable registration store.
        enabled: When False the guard never creates; the resource is assumed
            to be managed out-of-band (e.g., registered by a prior run).
        owner: Identity recorded on reservations made by this guard.
    """

    def __init__(
        self,
        registry: SingletonRegistry,
        enabled: bool = True,
        owner: str = "deploy-pipeline",
    ):
        self.registry = registry
        self.enabled = enabled
        self.owner = owner
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}

    def _lock_for(self, kind: str, scope: str) -> asyncio.Lock:
        return self._locks.setdefault((kind, scope), asyncio.Lock())

    @staticmethod
    def _handle(entry: Registration, created: bool = False) -> SingletonHandle:
        return SingletonHandle(
            kind=entry.kind,
            scope=entry.scope,
            resource_id=entry.resource_id,
            created=created,
            attributes=dict(entry.attributes),
        )

    async def acquire(
        self,
        kind: str,
        scope: str,
        factory: ResourceFactory,
    ) -> SingletonHandle:
        """Return the single instance for (kind, scope), creating it if absent.

        Args:
            kind: Resource kind.
            scope: Execution scope.
            factory: Coroutine function that creates the resource and returns
                (resource_id, attributes). Invoked at most once per scope.

        Returns:
            SingletonHandle; `created` is True only for the creating caller.

        Raises:
            SingletonConflict: Another process holds a pending reservation,
                or the provider reports the resource already exists.
        """
        async with self._lock_for(kind, scope):
            existing = await self.registry.get(kind, scope)

            if existing is not None and existing.status == RegistrationStatus.ACTIVE:
                logger.info(
                    "Singleton already registered",
                    extra={"kind": kind, "scope": scope, "resource_id": existing.resource_id},
                )
                return self._handle(existing)

            if not self.enabled:
                logger.info(
                    "Singleton creation disabled, assuming external registration",
                    extra={"kind": kind, "scope": scope},
                )
                return SingletonHandle(kind=kind, scope=scope, resource_id=None)

            if existing is not None:
                raise SingletonConflict(
                    kind,
                    scope,
                    f"Singleton {kind} for {scope} is being created by {existing.owner}",
                )

            if not await self.registry.reserve(kind, scope, self.owner):
                raise SingletonConflict(
                    kind, scope, f"Singleton {kind} for {scope} was reserved concurrently"
                )

            try:
                resource_id, attributes = await factory()
            except ResourceAlreadyExists as e:
                await self.registry.release(kind, scope)
                logger.error(
                    "Singleton exists outside the registry",
                    extra={"kind": kind, "scope": scope, "error": str(e)},
                )
                raise SingletonConflict(kind, scope, str(e)) from e
            except BaseException:
                await self.registry.release(kind, scope)
                raise

            entry = await self.registry.complete(kind, scope, resource_id, attributes)
            logger.info(
                "Singleton created",
                extra={"kind": kind, "scope": scope, "resource_id": resource_id},
            )
            return self._handle(entry, created=True)
