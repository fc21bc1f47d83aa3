"""Least-privilege role derivation and provisioning."""

from deploy_pipeline.permissions.binder import ACCOUNT_WIDE_ACTIONS, RoleBinder
from deploy_pipeline.permissions.models import (
    Effect,
    PolicyStatement,
    ResourceTouchSet,
    Role,
)
from deploy_pipeline.permissions.provisioner import RoleProvisioner, RoleProvisioningError

__all__ = [
    "ACCOUNT_WIDE_ACTIONS",
    "Effect",
    "PolicyStatement",
    "ResourceTouchSet",
    "Role",
    "RoleBinder",
    "RoleProvisioner",
    "RoleProvisioningError",
]
