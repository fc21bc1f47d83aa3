"""Creates bound stage roles in IAM.

Provisioning is idempotent: an existing role gets its trust policy and
inline policy overwritten with the bound ones, so re-running startup with
an unchanged definition leaves IAM unchanged.
"""

import asyncio
import json
import logging
from typing import Dict, Mapping

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from deploy_pipeline.permissions.models import Role

logger = logging.getLogger(__name__)


class RoleProvisioningError(Exception):
    """Raised when IAM rejects a role or policy write."""

    def __init__(self, message: str, role_name: str):
        self.role_name = role_name
        super().__init__(message)


class RoleProvisioner:
    """Writes Role models to IAM through boto3.

    Args:
        iam_client: Optional boto3 IAM client (for testing).
        path: IAM path the roles are created under.
    """

    def __init__(self, iam_client=None, path: str = "/deploy-pipeline/"):
        self._iam = iam_client or boto3.client("iam")
        self.path = path

    @staticmethod
    def policy_name(role: Role) -> str:
        return f"{role.name}-policy"[:128]

    def _ensure_sync(self, role: Role) -> bool:
        trust = json.dumps(role.trust_policy())
        created = True
        try:
            self._iam.create_role(
                RoleName=role.name,
                Path=self.path,
                AssumeRolePolicyDocument=trust,
                Description=f"Execution role for pipeline stage {role.stage}",
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") != "EntityAlreadyExists":
                raise RoleProvisioningError(
                    f"CreateRole failed for {role.name}: {e}", role.name
                ) from e
            created = False
        except BotoCoreError as e:
            raise RoleProvisioningError(f"CreateRole failed for {role.name}: {e}", role.name) from e

        try:
            if not created:
                self._iam.update_assume_role_policy(
                    RoleName=role.name, PolicyDocument=trust
                )
            self._iam.put_role_policy(
                RoleName=role.name,
                PolicyName=self.policy_name(role),
                PolicyDocument=json.dumps(role.policy_document()),
            )
        except (ClientError, BotoCoreError) as e:
            raise RoleProvisioningError(
                f"Writing policies for {role.name} failed: {e}", role.name
            ) from e

        logger.info(
            "Role provisioned",
            extra={"role": role.name, "stage": role.stage, "created": created},
        )
        return created

    async def ensure_role(self, role: Role) -> bool:
        """Create the role or bring an existing one in line with the model.

        Returns:
            True if the role was created, False if it already existed.

        Raises:
            RoleProvisioningError: If IAM rejects a write.
        """
        return await asyncio.to_thread(self._ensure_sync, role)

    async def ensure_roles(self, roles: Mapping[str, Role]) -> Dict[str, bool]:
        """Provision every role, in stage-name order."""
        return {name: await self.ensure_role(roles[name]) for name in sorted(roles)}
