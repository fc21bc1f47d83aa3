"""Stage execution: provider handlers and the stage executor."""

from deploy_pipeline.stages.audit import audit_action, redact_configuration
from deploy_pipeline.stages.deploy import (
    CloudFormationDeployAction,
    CloudFormationEngine,
    DeploymentEngine,
    DeploymentResult,
)
from deploy_pipeline.stages.executor import (
    ActionHandler,
    StageExecutor,
    build_stage_executor,
)
from deploy_pipeline.stages.models import ActionOutcome, RunContext, StageResult
from deploy_pipeline.stages.source import GitHubSourceAction
from deploy_pipeline.stages.validation import (
    ShellTestAction,
    ValidationResult,
    ValidationRunner,
)

__all__ = [
    "ActionHandler",
    "ActionOutcome",
    "CloudFormationDeployAction",
    "CloudFormationEngine",
    "DeploymentEngine",
    "DeploymentResult",
    "GitHubSourceAction",
    "RunContext",
    "ShellTestAction",
    "StageExecutor",
    "StageResult",
    "ValidationResult",
    "ValidationRunner",
    "audit_action",
    "build_stage_executor",
    "redact_configuration",
]
