"""Deploy stage: apply the template from the source artifact to a stack.

The deployment engine is an external collaborator: it reconciles real
infrastructure with the template. CloudFormationEngine drives CloudFormation
through boto3 with create-or-update semantics. Re-applying a template that
is already converged is a successful no-op.

A stack that is mid-update (for example from a concurrent run) is reported
as a DeploymentError; there is no automatic retry.

The engine polls the stack until it reaches a terminal status and sets no
deadline of its own. The Deploy stage's timeout_seconds is the only bound;
when it fires the polling task is cancelled.

The stage runs under the bound Deploy role, which calls CloudFormation. The
template's resources are created by CloudFormation with the caller's
credentials, or with a configured service role passed as RoleARN.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence, runtime_checkable

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from deploy_pipeline.artifacts.archive import ArchiveError, read_file
from deploy_pipeline.artifacts.models import ArtifactRef
from deploy_pipeline.artifacts.store import ArtifactStore
from deploy_pipeline.definition.models import ActionDefinition, split_template_path
from deploy_pipeline.errors import DeploymentError
from deploy_pipeline.permissions.models import Role
from deploy_pipeline.stages.models import ActionOutcome, RunContext

logger = logging.getLogger(__name__)

NO_UPDATES_MESSAGE = "No updates are to be performed"


SUCCESS_STATUSES = {
    "create": "CREATE_COMPLETE",
    "update": "UPDATE_COMPLETE",
}


@dataclass
class DeploymentResult:
    """Outcome of a template apply.

    Attributes:
        stack_name: The target stack.
        status: Final stack status (e.g., CREATE_COMPLETE).
        stack_id: The stack ARN.
        outputs: Stack outputs keyed by OutputKey.
        no_op: True when the template was already converged.
    """

    stack_name: str
    status: str
    stack_id: Optional[str] = None
    outputs: Dict[str, str] = field(default_factory=dict)
    no_op: bool = False


@runtime_checkable
class DeploymentEngine(Protocol):
    """Applies a declarative template to a named stack."""

    async def apply(
        self,
        stack_name: str,
        template_body: str,
        role_arn: Optional[str] = None,
        capabilities: Sequence[str] = (),
    ) -> DeploymentResult:
        """Create or update the stack.

        Args:
            stack_name: Target stack.
            template_body: Template text.
            role_arn: Service role the engine provisions resources with;
                None uses the caller's credentials.
            capabilities: Acknowledged template capabilities.

        Raises:
            DeploymentError: With the engine's diagnostic detail.
        """
        ...


class CloudFormationEngine:
    """DeploymentEngine backed by AWS CloudFormation.

    Attributes:
        poll_delay: Seconds between stack status polls.
    """

    def __init__(self, cloudformation_client=None, poll_delay: float = 15):
        """
        Args:
            cloudformation_client: Optional boto3 CloudFormation client
                (for testing).
            poll_delay: Seconds between stack status polls.
        """
        self._cfn = cloudformation_client or boto3.client("cloudformation")
        self.poll_delay = poll_delay

    async def apply(
        self,
        stack_name: str,
        template_body: str,
        role_arn: Optional[str] = None,
        capabilities: Sequence[str] = (),
    ) -> DeploymentResult:
        operation = await asyncio.to_thread(
            self._submit, stack_name, template_body, role_arn, list(capabilities)
        )
        if operation is None:
            stack = await asyncio.to_thread(self._describe, stack_name)
            return self._result(stack_name, stack, no_op=True)
        return await self._wait_for_stack(stack_name, operation)

    def _error(
        self, stack_name: str, message: str, error: Optional[Exception] = None, **detail
    ) -> DeploymentError:
        if isinstance(error, ClientError):
            err = error.response.get("Error", {})
            detail.setdefault("code", err.get("Code"))
            detail.setdefault("provider_message", err.get("Message"))
        elif error is not None:
            detail.setdefault("provider_message", str(error))
        return DeploymentError(
            message, stack_name=stack_name, provider="cloudformation", detail=detail
        )

    def _describe(self, stack_name: str) -> Optional[dict]:
        try:
            response = self._cfn.describe_stacks(StackName=stack_name)
        except ClientError as e:
            if "does not exist" in e.response.get("Error", {}).get("Message", ""):
                return None
            raise self._error(stack_name, f"Failed to describe {stack_name}", e) from e
        except BotoCoreError as e:
            raise self._error(stack_name, f"Failed to describe {stack_name}", e) from e
        stacks = response.get("Stacks", [])
        return stacks[0] if stacks else None

    def _failure_reasons(self, stack_name: str) -> List[str]:
        try:
            events = self._cfn.describe_stack_events(StackName=stack_name)
        except (ClientError, BotoCoreError):
            return []
        return [
            f"{e.get('LogicalResourceId')}: {e.get('ResourceStatusReason')}"
            for e in events.get("StackEvents", [])[:20]
            if e.get("ResourceStatus", "").endswith("FAILED")
        ]

    @staticmethod
    def _result(
        stack_name: str, stack: Optional[dict], no_op: bool = False
    ) -> DeploymentResult:
        stack = stack or {}
        return DeploymentResult(
            stack_name=stack_name,
            status=stack.get("StackStatus", "UNKNOWN"),
            stack_id=stack.get("StackId"),
            outputs={
                o["OutputKey"]: o.get("OutputValue", "")
                for o in stack.get("Outputs", [])
            },
            no_op=no_op,
        )

    def _submit(
        self,
        stack_name: str,
        template_body: str,
        role_arn: Optional[str],
        capabilities: List[str],
    ) -> Optional[str]:
        """Validate the template and start a create or update.

        Returns:
            "create" or "update" for the started operation, None when the
            stack already matches the template.
        """
        try:
            self._cfn.validate_template(TemplateBody=template_body)
        except (ClientError, BotoCoreError) as e:
            raise self._error(stack_name, "Template failed validation", e) from e

        kwargs = {
            "StackName": stack_name,
            "TemplateBody": template_body,
            "Capabilities": capabilities,
        }
        if role_arn:
            kwargs["RoleARN"] = role_arn

        existing = self._describe(stack_name)
        if existing is not None:
            status = existing.get("StackStatus", "")
            if status.endswith("_IN_PROGRESS"):
                raise self._error(
                    stack_name,
                    f"Stack {stack_name} is busy ({status})",
                    stack_status=status,
                )
            if status == "ROLLBACK_COMPLETE":
                raise self._error(
                    stack_name,
                    f"Stack {stack_name} failed creation and must be deleted",
                    stack_status=status,
                )

        if existing is None:
            logger.info("Creating stack", extra={"stack_name": stack_name})
            try:
                self._cfn.create_stack(**kwargs)
            except (ClientError, BotoCoreError) as e:
                raise self._error(stack_name, f"CreateStack failed for {stack_name}", e) from e
            return "create"

        logger.info("Updating stack", extra={"stack_name": stack_name})
        try:
            self._cfn.update_stack(**kwargs)
        except ClientError as e:
            if NO_UPDATES_MESSAGE in e.response.get("Error", {}).get("Message", ""):
                logger.info(
                    "Stack already converged",
                    extra={"stack_name": stack_name},
                )
                return None
            raise self._error(stack_name, f"UpdateStack failed for {stack_name}", e) from e
        except BotoCoreError as e:
            raise self._error(stack_name, f"UpdateStack failed for {stack_name}", e) from e
        return "update"

    async def _wait_for_stack(self, stack_name: str, operation: str) -> DeploymentResult:
        """Poll until the stack leaves every *_IN_PROGRESS status.

        Raises:
            DeploymentError: If the operation ends in any status other than
                its success status, or the stack disappears.
        """
        target = SUCCESS_STATUSES[operation]
        last_status = None

        while True:
            stack = await asyncio.to_thread(self._describe, stack_name)
            status = stack.get("StackStatus", "") if stack else "DELETE_COMPLETE"
            if status != last_status:
                logger.info(
                    "Stack status",
                    extra={"stack_name": stack_name, "status": status},
                )
                last_status = status

            if status == target:
                return self._result(stack_name, stack)
            if not status.endswith("_IN_PROGRESS"):
                reasons = await asyncio.to_thread(self._failure_reasons, stack_name)
                raise self._error(
                    stack_name,
                    f"Stack {stack_name} {operation} failed ({status})",
                    stack_status=status,
                    reasons=reasons,
                )
            await asyncio.sleep(self.poll_delay)


class CloudFormationDeployAction:
    """Reads TemplatePath from the input artifact and applies it.

    Args:
        engine: Deployment engine.
        artifact_store: Store holding the source artifact.
        service_role_arn: CloudFormation service role passed to the engine;
            None deploys with the caller's credentials.
    """

    def __init__(
        self,
        engine: DeploymentEngine,
        artifact_store: ArtifactStore,
        service_role_arn: Optional[str] = None,
    ):
        self.engine = engine
        self.artifact_store = artifact_store
        self.service_role_arn = service_role_arn

    async def run(
        self,
        action: ActionDefinition,
        stage_name: str,
        inputs: Dict[str, ArtifactRef],
        role: Role,
        context: RunContext,
    ) -> ActionOutcome:
        stack_name = action.configuration["StackName"]
        artifact_name, template_path = split_template_path(
            action.configuration["TemplatePath"]
        )
        source = inputs[artifact_name]

        data = await self.artifact_store.get(source)
        try:
            template_body = read_file(data, template_path).decode("utf-8")
        except (ArchiveError, UnicodeDecodeError) as e:
            raise DeploymentError(
                f"Template {template_path} not readable from {source.label}: {e}",
                stack_name=stack_name,
            ) from e

        capabilities = [
            c.strip()
            for c in action.configuration.get("Capabilities", "").split(",")
            if c.strip()
        ]

        logger.info(
            "Applying template",
            extra={
                "run_id": context.run_id,
                "stack_name": stack_name,
                "role": role.name,
                "service_role_arn": self.service_role_arn,
            },
        )
        result = await self.engine.apply(
            stack_name,
            template_body,
            role_arn=self.service_role_arn,
            capabilities=capabilities,
        )

        logger.info(
            "Stack deployed",
            extra={
                "run_id": context.run_id,
                "stack_name": stack_name,
                "status": result.status,
                "no_op": result.no_op,
            },
        )
        return ActionOutcome(
            logs=f"Stack {stack_name}: {result.status}"
            + (" (no changes)" if result.no_op else ""),
            details={"stack_status": result.status, **result.outputs},
        )
