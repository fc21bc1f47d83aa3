"""Tests for writing bound stage roles to IAM."""

import asyncio
import json
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from deploy_pipeline.permissions import RoleBinder, RoleProvisioner, RoleProvisioningError


def run_async(coro):
    return asyncio.run(coro)


def _client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


@pytest.fixture
def roles(definition):
    return RoleBinder("123456789012", "us-east-1", "acme-artifacts", "p").bind_definition(
        definition
    )


class TestRoleProvisioner:
    def test_creates_missing_role(self, roles):
        iam = MagicMock()
        role = roles["Deploy"]

        created = run_async(RoleProvisioner(iam).ensure_role(role))

        assert created is True
        kwargs = iam.create_role.call_args.kwargs
        assert kwargs["RoleName"] == "infrastructure-pipeline-deploy-role"
        assert kwargs["Path"] == "/deploy-pipeline/"
        assert json.loads(kwargs["AssumeRolePolicyDocument"]) == role.trust_policy()
        policy = iam.put_role_policy.call_args.kwargs
        assert policy["PolicyName"] == "infrastructure-pipeline-deploy-role-policy"
        assert json.loads(policy["PolicyDocument"]) == role.policy_document()
        iam.update_assume_role_policy.assert_not_called()

    def test_existing_role_is_brought_in_line(self, roles):
        iam = MagicMock()
        iam.create_role.side_effect = _client_error("EntityAlreadyExists", "CreateRole")
        role = roles["Test"]

        created = run_async(RoleProvisioner(iam).ensure_role(role))

        assert created is False
        update = iam.update_assume_role_policy.call_args.kwargs
        assert json.loads(update["PolicyDocument"]) == role.trust_policy()
        iam.put_role_policy.assert_called_once()

    def test_ensure_roles_covers_every_stage(self, roles):
        iam = MagicMock()
        iam.create_role.side_effect = [
            None,
            _client_error("EntityAlreadyExists", "CreateRole"),
            None,
        ]

        created = run_async(RoleProvisioner(iam).ensure_roles(roles))

        assert created == {"Deploy": True, "Source": False, "Test": True}
        assert iam.put_role_policy.call_count == 3

    def test_create_denied(self, roles):
        iam = MagicMock()
        iam.create_role.side_effect = _client_error("AccessDenied", "CreateRole")

        with pytest.raises(RoleProvisioningError) as exc_info:
            run_async(RoleProvisioner(iam).ensure_role(roles["Source"]))

        assert exc_info.value.role_name == "infrastructure-pipeline-source-role"
        iam.put_role_policy.assert_not_called()

    def test_policy_write_denied(self, roles):
        iam = MagicMock()
        iam.put_role_policy.side_effect = _client_error("MalformedPolicyDocument", "PutRolePolicy")

        with pytest.raises(RoleProvisioningError, match="Writing policies"):
            run_async(RoleProvisioner(iam).ensure_role(roles["Deploy"]))
