"""Credential/Role binder.

Derives each stage's execution role from the resources the stage touches,
instead of hand-writing per-resource policy blocks. Adding a stage therefore
cannot silently omit a permission it needs, and cannot over-grant one: every
statement is scoped to concrete ARNs (the artifact prefix, the stack name,
the build project's log group). The only wildcard resources permitted are
for actions the provider offers no narrower grain for.

The Deploy role is the identity that calls CloudFormation: stack lifecycle
actions on the target stacks, plus iam:PassRole on the CloudFormation
service role when one is configured. Permissions for the template's own
resources belong to that service role, not to the Deploy role.

Roles are derived once per PipelineDefinition and reused across runs.
"""

import logging
from typing import Dict, List, Optional

from deploy_pipeline.definition.models import (
    ActionCategory,
    PipelineDefinition,
    StageDefinition,
)
from deploy_pipeline.permissions.models import (
    PolicyStatement,
    ResourceTouchSet,
    Role,
)

logger = logging.getLogger(__name__)

# Actions with no resource-level grain; "*" is the narrowest possible scope
ACCOUNT_WIDE_ACTIONS = frozenset({"cloudformation:ValidateTemplate"})

ARTIFACT_READ_ACTIONS = ["s3:GetObject", "s3:GetObjectVersion"]
ARTIFACT_WRITE_ACTIONS = ["s3:PutObject"]
LOG_ACTIONS = ["logs:CreateLogStream", "logs:PutLogEvents"]
PASS_ROLE_ACTIONS = ["iam:PassRole"]
STACK_ACTIONS = [
    "cloudformation:CreateStack",
    "cloudformation:UpdateStack",
    "cloudformation:DescribeStacks",
    "cloudformation:DescribeStackEvents",
    "cloudformation:GetTemplate",
]

STAGE_PRINCIPALS: Dict[ActionCategory, str] = {
    ActionCategory.SOURCE: "codepipeline.amazonaws.com",
    ActionCategory.TEST: "codebuild.amazonaws.com",
    ActionCategory.DEPLOY: "codepipeline.amazonaws.com",
}


class RoleBinder:
    """Builds least-privilege roles for pipeline stages.

    Attributes:
        account_id: AWS account that owns the pipeline resources.
        region: Region of the stacks and log groups.
        artifact_bucket: Bucket holding pipeline artifacts.
        artifact_prefix: Key prefix of this pipeline's artifacts.
        partition: AWS partition ("aws", "aws-cn", ...).
        cloudformation_role_arn: Service role the Deploy stage passes to
            CloudFormation, or None to deploy with the caller's credentials.
    """

    def __init__(
        self,
        account_id: str,
        region: str,
        artifact_bucket: str,
        artifact_prefix: str,
        partition: str = "aws",
        cloudformation_role_arn: Optional[str] = None,
    ):
        self.account_id = account_id
        self.region = region
        self.artifact_bucket = artifact_bucket
        self.artifact_prefix = artifact_prefix.strip("/")
        self.partition = partition
        self.cloudformation_role_arn = cloudformation_role_arn

    @property
    def artifact_arn(self) -> str:
        return f"arn:{self.partition}:s3:::{self.artifact_bucket}/{self.artifact_prefix}/*"

    def stack_arn(self, stack_name: str) -> str:
        return (
            f"arn:{self.partition}:cloudformation:{self.region}:"
            f"{self.account_id}:stack/{stack_name}/*"
        )

    def log_group_arn(self, project_name: str) -> str:
        return (
            f"arn:{self.partition}:logs:{self.region}:{self.account_id}:"
            f"log-group:/aws/codebuild/{project_name}:*"
        )

    def role_arn(self, role_name: str) -> str:
        return f"arn:{self.partition}:iam::{self.account_id}:role/{role_name}"

    def touch_set(
        self, stage: StageDefinition, pipeline_name: Optional[str] = None
    ) -> ResourceTouchSet:
        """Compute the resources a stage touches from its actions' configuration."""
        if stage.category == ActionCategory.SOURCE:
            return ResourceTouchSet(
                artifact_read=[self.artifact_arn],
                artifact_write=[self.artifact_arn],
            )

        if stage.category == ActionCategory.TEST:
            projects = [
                action.configuration.get(
                    "ProjectName", f"{pipeline_name or 'pipeline'}-{action.name}"
                )
                for action in stage.ordered_actions
            ]
            return ResourceTouchSet(
                artifact_read=[self.artifact_arn],
                log_groups=[self.log_group_arn(p) for p in projects],
                validates_templates=True,
            )

        return ResourceTouchSet(
            artifact_read=[self.artifact_arn],
            stacks=[
                self.stack_arn(action.configuration["StackName"])
                for action in stage.ordered_actions
            ],
            passed_roles=(
                [self.cloudformation_role_arn] if self.cloudformation_role_arn else []
            ),
            validates_templates=True,
        )

    def bind(
        self,
        stage: StageDefinition,
        touch_set: ResourceTouchSet,
        pipeline_name: str = "pipeline",
    ) -> Role:
        """Build the role for a stage from its touch-set.

        Args:
            stage: The stage the role executes.
            touch_set: Concrete resources the stage touches.
            pipeline_name: Used to name the role.

        Returns:
            Role with the minimum union of statements for the stage.

        Raises:
            ValueError: If a statement would carry a wildcard resource for an
                action outside ACCOUNT_WIDE_ACTIONS.
        """
        statements: List[PolicyStatement] = []

        if touch_set.artifact_read:
            statements.append(
                PolicyStatement(
                    sid="ArtifactRead",
                    actions=ARTIFACT_READ_ACTIONS,
                    resources=touch_set.artifact_read,
                )
            )
        if touch_set.artifact_write:
            statements.append(
                PolicyStatement(
                    sid="ArtifactWrite",
                    actions=ARTIFACT_WRITE_ACTIONS,
                    resources=touch_set.artifact_write,
                )
            )
        if touch_set.log_groups:
            statements.append(
                PolicyStatement(
                    sid="BuildLogs",
                    actions=LOG_ACTIONS,
                    resources=touch_set.log_groups,
                )
            )
        if touch_set.stacks:
            statements.append(
                PolicyStatement(
                    sid="StackLifecycle",
                    actions=STACK_ACTIONS,
                    resources=touch_set.stacks,
                )
            )
        if touch_set.passed_roles:
            statements.append(
                PolicyStatement(
                    sid="PassServiceRole",
                    actions=PASS_ROLE_ACTIONS,
                    resources=touch_set.passed_roles,
                    conditions={
                        "StringEquals": {"iam:PassedToService": "cloudformation.amazonaws.com"}
                    },
                )
            )
        if touch_set.validates_templates:
            statements.append(
                PolicyStatement(
                    sid="TemplateValidation",
                    actions=sorted(ACCOUNT_WIDE_ACTIONS),
                    resources=["*"],
                )
            )

        if not statements:
            raise ValueError(f"Stage {stage.name} touches no resources")

        for statement in statements:
            if statement.is_wildcard:
                broad = set(statement.actions) - ACCOUNT_WIDE_ACTIONS
                if broad:
                    raise ValueError(
                        f"Wildcard resource for scoped actions: {sorted(broad)}"
                    )

        name = f"{pipeline_name}-{stage.name}-role".lower()[:64]
        role = Role(
            name=name,
            stage=stage.name,
            principal=STAGE_PRINCIPALS[stage.category],
            statements=statements,
            arn=self.role_arn(name),
        )
        logger.debug(
            "Bound stage role",
            extra={"stage": stage.name, "role": role.name, "actions": role.actions},
        )
        return role

    def bind_definition(self, definition: PipelineDefinition) -> Dict[str, Role]:
        """Bind a role for every stage of a definition, keyed by stage name."""
        roles = {
            stage.name: self.bind(
                stage, self.touch_set(stage, definition.name), definition.name
            )
            for stage in definition.stages
        }
        logger.info(
            "Bound pipeline roles",
            extra={"pipeline": definition.name, "roles": sorted(roles)},
        )
        return roles
