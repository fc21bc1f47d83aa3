"""Unit tests for CloudFormation deployment.

Exercises create-or-update semantics against a mocked boto3 client, and the
deploy action's template resolution from the source artifact.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from botocore.exceptions import ClientError

from deploy_pipeline.artifacts import InMemoryArtifactStore, pack_members
from deploy_pipeline.errors import DeploymentError
from deploy_pipeline.permissions import RoleBinder
from deploy_pipeline.stages import (
    CloudFormationDeployAction,
    CloudFormationEngine,
    DeploymentResult,
    RunContext,
)
from deploy_pipeline.state.models import RunTrigger
from deploy_pipeline.triggers.models import EntryPoint

TEMPLATE = "Resources:\n  Bucket:\n    Type: AWS::S3::Bucket\n"


def run_async(coro):
    return asyncio.run(coro)


def _missing_stack() -> ClientError:
    return ClientError(
        {"Error": {"Code": "ValidationError", "Message": "Stack with id infra-prod does not exist"}},
        "DescribeStacks",
    )


def _stack(status: str) -> dict:
    return {
        "Stacks": [
            {
                "StackName": "infra-prod",
                "StackId": "arn:aws:cloudformation:us-east-1:123456789012:stack/infra-prod/1",
                "StackStatus": status,
                "Outputs": [{"OutputKey": "BucketName", "OutputValue": "acme-bucket"}],
            }
        ]
    }


def _engine(cfn) -> CloudFormationEngine:
    return CloudFormationEngine(cloudformation_client=cfn, poll_delay=0)


class TestCloudFormationEngine:
    def test_creates_missing_stack(self):
        cfn = MagicMock()
        cfn.describe_stacks.side_effect = [_missing_stack(), _stack("CREATE_COMPLETE")]

        result = run_async(
            _engine(cfn).apply(
                "infra-prod",
                TEMPLATE,
                role_arn="arn:aws:iam::123456789012:role/deploy",
                capabilities=["CAPABILITY_IAM"],
            )
        )

        assert result.status == "CREATE_COMPLETE"
        assert result.outputs == {"BucketName": "acme-bucket"}
        assert not result.no_op
        kwargs = cfn.create_stack.call_args.kwargs
        assert kwargs["RoleARN"] == "arn:aws:iam::123456789012:role/deploy"
        assert kwargs["Capabilities"] == ["CAPABILITY_IAM"]
        cfn.update_stack.assert_not_called()

    def test_updates_existing_stack(self):
        cfn = MagicMock()
        cfn.describe_stacks.side_effect = [
            _stack("UPDATE_COMPLETE"),
            _stack("UPDATE_IN_PROGRESS"),
            _stack("UPDATE_COMPLETE_CLEANUP_IN_PROGRESS"),
            _stack("UPDATE_COMPLETE"),
        ]

        result = run_async(_engine(cfn).apply("infra-prod", TEMPLATE))

        assert result.status == "UPDATE_COMPLETE"
        assert "RoleARN" not in cfn.update_stack.call_args.kwargs
        cfn.create_stack.assert_not_called()
        assert cfn.describe_stacks.call_count == 4

    def test_converged_template_is_no_op(self):
        cfn = MagicMock()
        cfn.describe_stacks.return_value = _stack("UPDATE_COMPLETE")
        cfn.update_stack.side_effect = ClientError(
            {"Error": {"Code": "ValidationError", "Message": "No updates are to be performed."}},
            "UpdateStack",
        )

        result = run_async(_engine(cfn).apply("infra-prod", TEMPLATE))

        assert result.no_op
        assert result.status == "UPDATE_COMPLETE"
        assert cfn.describe_stacks.call_count == 2

    @pytest.mark.parametrize("status", ["UPDATE_IN_PROGRESS", "CREATE_IN_PROGRESS"])
    def test_busy_stack_fails_without_retry(self, status):
        cfn = MagicMock()
        cfn.describe_stacks.return_value = _stack(status)

        with pytest.raises(DeploymentError) as exc_info:
            run_async(_engine(cfn).apply("infra-prod", TEMPLATE))

        assert exc_info.value.detail["stack_status"] == status
        assert exc_info.value.stack_name == "infra-prod"
        cfn.update_stack.assert_not_called()

    def test_rollback_complete_requires_operator(self):
        cfn = MagicMock()
        cfn.describe_stacks.return_value = _stack("ROLLBACK_COMPLETE")

        with pytest.raises(DeploymentError, match="must be deleted"):
            run_async(_engine(cfn).apply("infra-prod", TEMPLATE))

    def test_invalid_template(self):
        cfn = MagicMock()
        cfn.validate_template.side_effect = ClientError(
            {"Error": {"Code": "ValidationError", "Message": "Template format error"}},
            "ValidateTemplate",
        )

        with pytest.raises(DeploymentError) as exc_info:
            run_async(_engine(cfn).apply("infra-prod", "not: [valid"))

        assert exc_info.value.detail["code"] == "ValidationError"
        assert exc_info.value.detail["provider_message"] == "Template format error"
        assert exc_info.value.provider == "cloudformation"

    def test_failed_update_reports_resource_reasons(self):
        cfn = MagicMock()
        cfn.describe_stacks.side_effect = [
            _stack("UPDATE_COMPLETE"),
            _stack("UPDATE_ROLLBACK_IN_PROGRESS"),
            _stack("UPDATE_ROLLBACK_COMPLETE"),
        ]
        cfn.describe_stack_events.return_value = {
            "StackEvents": [
                {
                    "LogicalResourceId": "Bucket",
                    "ResourceStatus": "UPDATE_FAILED",
                    "ResourceStatusReason": "Bucket name already taken",
                },
                {"LogicalResourceId": "Queue", "ResourceStatus": "UPDATE_COMPLETE"},
            ]
        }

        with pytest.raises(DeploymentError) as exc_info:
            run_async(_engine(cfn).apply("infra-prod", TEMPLATE))

        assert exc_info.value.detail["reasons"] == ["Bucket: Bucket name already taken"]
        assert exc_info.value.detail["stack_status"] == "UPDATE_ROLLBACK_COMPLETE"

    def test_failed_create_ends_in_rollback(self):
        cfn = MagicMock()
        cfn.describe_stacks.side_effect = [
            _missing_stack(),
            _stack("CREATE_IN_PROGRESS"),
            _stack("ROLLBACK_COMPLETE"),
        ]
        cfn.describe_stack_events.return_value = {"StackEvents": []}

        with pytest.raises(DeploymentError, match="create failed") as exc_info:
            run_async(_engine(cfn).apply("infra-prod", TEMPLATE))

        assert exc_info.value.detail["stack_status"] == "ROLLBACK_COMPLETE"

    def test_stack_deleted_during_create(self):
        cfn = MagicMock()
        cfn.describe_stacks.side_effect = [_missing_stack(), _missing_stack()]
        cfn.describe_stack_events.return_value = {"StackEvents": []}

        with pytest.raises(DeploymentError) as exc_info:
            run_async(_engine(cfn).apply("infra-prod", TEMPLATE))

        assert exc_info.value.detail["stack_status"] == "DELETE_COMPLETE"

    def test_slow_stack_has_no_poll_limit(self):
        cfn = MagicMock()
        cfn.describe_stacks.side_effect = (
            [_stack("UPDATE_COMPLETE")]
            + [_stack("UPDATE_IN_PROGRESS")] * 500
            + [_stack("UPDATE_COMPLETE")]
        )

        result = run_async(_engine(cfn).apply("infra-prod", TEMPLATE))

        assert result.status == "UPDATE_COMPLETE"
        assert cfn.describe_stacks.call_count == 502

    def test_stage_timeout_stops_polling(self):
        cfn = MagicMock()
        cfn.describe_stacks.side_effect = lambda **kwargs: (
            _stack("UPDATE_IN_PROGRESS") if cfn.update_stack.called else _stack("UPDATE_COMPLETE")
        )
        engine = CloudFormationEngine(cloudformation_client=cfn, poll_delay=0.01)

        async def scenario():
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(engine.apply("infra-prod", TEMPLATE), timeout=0.2)
            polls = cfn.describe_stacks.call_count
            await asyncio.sleep(0.1)
            return polls

        polls = run_async(scenario())

        assert polls > 2
        assert cfn.describe_stacks.call_count <= polls + 1


class TestCloudFormationDeployAction:
    def _context(self) -> RunContext:
        return RunContext(
            run_id=3,
            pipeline_name="infrastructure-pipeline",
            entry_point=EntryPoint.SOURCE,
            trigger=RunTrigger(event_type="push", ref="refs/heads/master"),
            repository_owner="acme",
            repository_name="infra",
        )

    def _deploy_role(self, definition):
        binder = RoleBinder("123456789012", "us-east-1", "acme-artifacts", "p")
        return binder.bind_definition(definition)["Deploy"]

    def test_applies_template_from_source_artifact(self, definition):
        store = InMemoryArtifactStore()
        source = run_async(
            store.put("SourceOutput", pack_members({"template.yaml": TEMPLATE.encode()}), 3, "Source")
        )
        engine = MagicMock()
        engine.apply = AsyncMock(
            return_value=DeploymentResult(
                stack_name="infra-prod", status="UPDATE_COMPLETE", outputs={"BucketName": "b"}
            )
        )
        role = self._deploy_role(definition)
        action = definition.deploy_stage.ordered_actions[0]

        outcome = run_async(
            CloudFormationDeployAction(engine, store).run(
                action, "Deploy", {"SourceOutput": source}, role, self._context()
            )
        )

        engine.apply.assert_awaited_once_with(
            "infra-prod",
            TEMPLATE,
            role_arn=None,
            capabilities=["CAPABILITY_IAM", "CAPABILITY_NAMED_IAM"],
        )
        assert outcome.details == {"stack_status": "UPDATE_COMPLETE", "BucketName": "b"}
        assert outcome.outputs == []

    def test_configured_service_role_is_passed_as_role_arn(self, definition):
        store = InMemoryArtifactStore()
        source = run_async(
            store.put("SourceOutput", pack_members({"template.yaml": TEMPLATE.encode()}), 3, "Source")
        )
        engine = MagicMock()
        engine.apply = AsyncMock(
            return_value=DeploymentResult(stack_name="infra-prod", status="CREATE_COMPLETE")
        )
        service_role = "arn:aws:iam::123456789012:role/cfn-exec"
        action = definition.deploy_stage.ordered_actions[0]

        run_async(
            CloudFormationDeployAction(engine, store, service_role_arn=service_role).run(
                action,
                "Deploy",
                {"SourceOutput": source},
                self._deploy_role(definition),
                self._context(),
            )
        )

        assert engine.apply.call_args.kwargs["role_arn"] == service_role
        assert engine.apply.call_args.kwargs["role_arn"] != self._deploy_role(definition).arn

    def test_missing_template(self, definition):
        store = InMemoryArtifactStore()
        source = run_async(
            store.put("SourceOutput", pack_members({"README.md": b"hi"}), 3, "Source")
        )
        engine = MagicMock()
        engine.apply = AsyncMock()
        action = definition.deploy_stage.ordered_actions[0]

        with pytest.raises(DeploymentError, match="template.yaml"):
            run_async(
                CloudFormationDeployAction(engine, store).run(
                    action,
                    "Deploy",
                    {"SourceOutput": source},
                    self._deploy_role(definition),
                    self._context(),
                )
            )

        engine.apply.assert_not_awaited()
