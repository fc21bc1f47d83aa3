"""Pipeline definition loading.

Definitions come from one of two places:
- A YAML document (PIPELINE_DEFINITION_PATH)
- The standard Source → Test → Deploy pipeline built from PipelineSettings

Either way the result is a fully validated, immutable PipelineDefinition.
Unknown providers and malformed stages fail here, at load time, never
during a run.

YAML layout:

    name: infrastructure-pipeline
    stages:
      - name: Source
        category: source
        output_artifacts: [SourceOutput]
        actions:
          - name: GitHubSource
            provider: github
            configuration: {Owner: acme, Repo: infra, Branch: master}

Actions inherit their stage's category and artifacts unless they set them.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Union

import yaml
from pydantic import ValidationError

from deploy_pipeline.config import PipelineSettings
from deploy_pipeline.definition.models import (
    ActionCategory,
    ActionDefinition,
    ActionProvider,
    PipelineDefinition,
    StageDefinition,
)
from deploy_pipeline.errors import DefinitionError


logger = logging.getLogger(__name__)

SOURCE_ARTIFACT = "SourceOutput"

_KNOWN_PROVIDERS = {provider.value for provider in ActionProvider}


def load_definition(path: Union[str, Path]) -> PipelineDefinition:
    """Load and validate a pipeline definition from a YAML file.

    Args:
        path: Path to the YAML definition.

    Returns:
        The validated PipelineDefinition.

    Raises:
        DefinitionError: If the file is missing, unparsable or invalid.
    """
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise DefinitionError(f"Pipeline definition not found: {path}") from e
    except yaml.YAMLError as e:
        raise DefinitionError(f"Failed to parse pipeline definition: {e}") from e

    if not data:
        raise DefinitionError(f"Pipeline definition is empty: {path}")

    definition = parse_definition(data)
    logger.info(
        "Loaded pipeline definition",
        extra={"pipeline": definition.name, "path": str(path)},
    )
    return definition


def parse_definition(data: Dict[str, Any]) -> PipelineDefinition:
    """Build a PipelineDefinition from a plain mapping.

    Raises:
        DefinitionError: On unknown providers or any validation failure.
    """
    if not isinstance(data, dict):
        raise DefinitionError("Pipeline definition must be a mapping")

    stages = data.get("stages")
    if not isinstance(stages, list):
        raise DefinitionError("Pipeline definition requires a 'stages' list")

    normalized: List[Dict[str, Any]] = []
    for stage in stages:
        if not isinstance(stage, dict):
            raise DefinitionError("Each stage must be a mapping")
        normalized.append(_normalize_stage(stage))

    try:
        return PipelineDefinition(name=data.get("name", ""), stages=normalized)
    except ValidationError as e:
        raise DefinitionError(f"Invalid pipeline definition: {e}") from e


def _normalize_stage(stage: Dict[str, Any]) -> Dict[str, Any]:
    """Apply stage defaults to each action and reject unknown providers."""
    actions = stage.get("actions") or []
    if not isinstance(actions, list):
        raise DefinitionError(f"Stage {stage.get('name')} actions must be a list")

    normalized_actions = []
    for action in actions:
        if not isinstance(action, dict):
            raise DefinitionError(f"Stage {stage.get('name')} has a malformed action")

        provider = action.get("provider")
        if provider not in _KNOWN_PROVIDERS:
            raise DefinitionError(
                f"Unknown provider {provider!r} in action {action.get('name')}; "
                f"expected one of {sorted(_KNOWN_PROVIDERS)}"
            )

        merged = dict(action)
        merged.setdefault("category", stage.get("category"))
        merged.setdefault("input_artifacts", stage.get("input_artifacts", []))
        merged.setdefault("output_artifacts", stage.get("output_artifacts", []))
        merged["configuration"] = {
            str(key): str(value)
            for key, value in (action.get("configuration") or {}).items()
        }
        normalized_actions.append(merged)

    return {**stage, "actions": normalized_actions}


def build_default_definition(settings: PipelineSettings) -> PipelineDefinition:
    """Build the standard three-stage pipeline from settings.

    Args:
        settings: Pipeline settings.

    Returns:
        A PipelineDefinition with GitHub source, shell validation and
        CloudFormation deployment.

    Raises:
        DefinitionError: If the settings produce an invalid definition.
    """
    try:
        return PipelineDefinition(
            name=settings.pipeline_name, stages=_standard_stages(settings)
        )
    except ValidationError as e:
        raise DefinitionError(f"Invalid pipeline definition: {e}") from e


def _standard_stages(settings: PipelineSettings) -> List[StageDefinition]:
    source = StageDefinition(
        name="Source",
        category=ActionCategory.SOURCE,
        output_artifacts=[SOURCE_ARTIFACT],
        timeout_seconds=settings.source_timeout_seconds,
        actions=[
            ActionDefinition(
                name="GitHubSource",
                category=ActionCategory.SOURCE,
                provider=ActionProvider.GITHUB,
                configuration={
                    "Owner": settings.repository_owner,
                    "Repo": settings.repository_name,
                    "Branch": settings.integration_branch,
                    "OAuthToken": settings.github_token,
                },
                output_artifacts=[SOURCE_ARTIFACT],
            )
        ],
    )

    test = StageDefinition(
        name="Test",
        category=ActionCategory.TEST,
        input_artifacts=[SOURCE_ARTIFACT],
        timeout_seconds=settings.test_timeout_seconds,
        actions=[
            ActionDefinition(
                name="ValidateTemplate",
                category=ActionCategory.TEST,
                provider=ActionProvider.SHELL,
                configuration={
                    "Command": settings.validation_command,
                    "ProjectName": f"{settings.pipeline_name}-test",
                },
                input_artifacts=[SOURCE_ARTIFACT],
            )
        ],
    )

    deploy = StageDefinition(
        name="Deploy",
        category=ActionCategory.DEPLOY,
        input_artifacts=[SOURCE_ARTIFACT],
        timeout_seconds=settings.deploy_timeout_seconds,
        actions=[
            ActionDefinition(
                name="DeployStack",
                category=ActionCategory.DEPLOY,
                provider=ActionProvider.CLOUDFORMATION,
                configuration={
                    "ActionMode": "CREATE_UPDATE",
                    "StackName": settings.stack_name,
                    "TemplatePath": f"{SOURCE_ARTIFACT}::{settings.template_path}",
                    "Capabilities": "CAPABILITY_IAM,CAPABILITY_NAMED_IAM",
                },
                input_artifacts=[SOURCE_ARTIFACT],
            )
        ],
    )

    return [source, test, deploy]
