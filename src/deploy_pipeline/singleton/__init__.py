"""Once-per-scope resource provisioning."""

from deploy_pipeline.singleton.guard import (
    DynamoDBSingletonRegistry,
    InMemorySingletonRegistry,
    Registration,
    RegistrationStatus,
    ResourceAlreadyExists,
    SingletonHandle,
    SingletonRegistry,
    SingletonRegistryError,
    SingletonResourceGuard,
)

WEBHOOK_CREDENTIAL = "webhook-credential"

__all__ = [
    "WEBHOOK_CREDENTIAL",
    "DynamoDBSingletonRegistry",
    "InMemorySingletonRegistry",
    "Registration",
    "RegistrationStatus",
    "ResourceAlreadyExists",
    "SingletonHandle",
    "SingletonRegistry",
    "SingletonRegistryError",
    "SingletonResourceGuard",
]
