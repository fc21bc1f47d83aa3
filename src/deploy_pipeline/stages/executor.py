"""Stage executor.

Runs a single stage: its actions in run order, each dispatched to the
handler for its provider, given the stage's input artifacts and bound role.
The first failing action fails the stage. A stage never raises a pipeline
error to its caller; failures come back as a FAILED StageResult carrying the
error with its stage, action and provider filled in.

Cancellation is the exception: asyncio.CancelledError propagates so the
controller can record the run as cancelled. Handlers stop their work
(e.g., kill the validation subprocess) before it propagates.
"""

import asyncio
import logging
import time
from typing import Dict, List, Mapping, Optional, Protocol

from deploy_pipeline.artifacts.models import ArtifactRef
from deploy_pipeline.artifacts.store import (
    ArtifactNotFoundError,
    ArtifactStore,
    ArtifactStoreError,
)
from deploy_pipeline.definition.models import (
    ActionDefinition,
    ActionProvider,
    StageDefinition,
)
from deploy_pipeline.errors import (
    PipelineError,
    StageTimeoutError,
    ValidationFailed,
)
from deploy_pipeline.github.client import GitHubAPIError, GitHubClient
from deploy_pipeline.permissions.models import Role
from deploy_pipeline.stages.audit import audit_action
from deploy_pipeline.stages.deploy import CloudFormationDeployAction, DeploymentEngine
from deploy_pipeline.stages.models import ActionOutcome, RunContext, StageResult
from deploy_pipeline.stages.source import GitHubSourceAction
from deploy_pipeline.stages.validation import ShellTestAction, ValidationRunner
from deploy_pipeline.state.models import StageStatus

logger = logging.getLogger(__name__)


class ActionHandler(Protocol):
    """Provider-specific implementation of one action."""

    async def run(
        self,
        action: ActionDefinition,
        stage_name: str,
        inputs: Dict[str, ArtifactRef],
        role: Role,
        context: RunContext,
    ) -> ActionOutcome:
        ...


class StageExecutor:
    """Executes stages by dispatching actions to provider handlers.

    Attributes:
        handlers: Handler per provider.
    """

    def __init__(self, handlers: Mapping[ActionProvider, ActionHandler]):
        self.handlers = dict(handlers)

    async def execute(
        self,
        stage: StageDefinition,
        input_artifacts: Mapping[str, ArtifactRef],
        role: Role,
        context: RunContext,
    ) -> StageResult:
        """Run every action of a stage.

        Args:
            stage: The stage to run.
            input_artifacts: Resolved references for the stage's inputs.
            role: The role bound to this stage.
            context: The run the stage belongs to.

        Returns:
            StageResult with SUCCEEDED and the produced artifacts, or FAILED
            with the error.

        Raises:
            asyncio.CancelledError: If the run is cancelled mid-stage.
        """
        start = time.monotonic()
        logs: List[str] = []
        outputs: List[ArtifactRef] = []

        logger.info(
            "Executing stage",
            extra={
                "run_id": context.run_id,
                "stage": stage.name,
                "category": stage.category.value,
                "timeout": stage.timeout_seconds,
            },
        )

        try:
            await asyncio.wait_for(
                self._run_actions(stage, input_artifacts, role, context, logs, outputs),
                timeout=stage.timeout_seconds,
            )
        except asyncio.TimeoutError:
            error = StageTimeoutError(stage.name, stage.timeout_seconds)
            return self._failed(stage, error, logs, start)
        except PipelineError as error:
            if isinstance(error, ValidationFailed) and error.logs:
                logs.append(error.logs)
            return self._failed(stage, error, logs, start)

        duration = time.monotonic() - start
        logger.info(
            "Stage succeeded",
            extra={
                "run_id": context.run_id,
                "stage": stage.name,
                "artifacts": [ref.label for ref in outputs],
                "duration": duration,
            },
        )
        return StageResult(
            stage=stage.name,
            status=StageStatus.SUCCEEDED,
            outputs=outputs,
            logs="\n".join(logs),
            duration_seconds=duration,
        )

    async def _run_actions(
        self,
        stage: StageDefinition,
        input_artifacts: Mapping[str, ArtifactRef],
        role: Role,
        context: RunContext,
        logs: List[str],
        outputs: List[ArtifactRef],
    ) -> None:
        missing = [name for name in stage.input_artifacts if name not in input_artifacts]
        if missing:
            raise PipelineError(
                f"Stage {stage.name} is missing input artifacts: {', '.join(missing)}",
                stage=stage.name,
            )
        inputs = {name: input_artifacts[name] for name in stage.input_artifacts}

        for action in stage.ordered_actions:
            handler = self.handlers.get(action.provider)
            if handler is None:
                raise PipelineError(
                    f"No handler registered for provider {action.provider.value}",
                    stage=stage.name,
                    action=action.name,
                    provider=action.provider.value,
                )

            audit_action(action, stage.name, role, context)
            try:
                outcome = await handler.run(action, stage.name, inputs, role, context)
            except PipelineError as error:
                raise error.with_context(
                    stage=stage.name,
                    action=action.name,
                    provider=action.provider.value,
                )
            except (ArtifactNotFoundError, ArtifactStoreError, GitHubAPIError) as error:
                raise PipelineError(
                    str(error),
                    stage=stage.name,
                    action=action.name,
                    provider=action.provider.value,
                ) from error

            if outcome.logs:
                logs.append(outcome.logs)
            outputs.extend(outcome.outputs)

    def _failed(
        self,
        stage: StageDefinition,
        error: PipelineError,
        logs: List[str],
        start: float,
    ) -> StageResult:
        error.with_context(stage=stage.name)
        logger.error(
            "Stage failed",
            extra={
                "stage": stage.name,
                "action": error.action,
                "error_type": error.error_type,
                "error": error.message,
            },
        )
        return StageResult(
            stage=stage.name,
            status=StageStatus.FAILED,
            logs="\n".join(logs),
            error=error,
            duration_seconds=time.monotonic() - start,
        )


def build_stage_executor(
    artifact_store: ArtifactStore,
    github_client: GitHubClient,
    deployment_engine: DeploymentEngine,
    validation_runner: Optional[ValidationRunner] = None,
    cloudformation_role_arn: Optional[str] = None,
) -> StageExecutor:
    """Wire the standard provider handlers."""
    return StageExecutor(
        {
            ActionProvider.GITHUB: GitHubSourceAction(github_client, artifact_store),
            ActionProvider.SHELL: ShellTestAction(
                validation_runner or ValidationRunner(),
                artifact_store,
                github_client,
            ),
            ActionProvider.CLOUDFORMATION: CloudFormationDeployAction(
                deployment_engine, artifact_store, cloudformation_role_arn
            ),
        }
    )
