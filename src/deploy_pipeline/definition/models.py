"""Pipeline definition models.

A PipelineDefinition is the static, declarative description of the pipeline:
an ordered list of stages, each holding run-ordered actions bound to a
provider. The set of providers is closed and known up front, so definitions
are validated completely at load time; a definition that loads is a
definition the controller can run.

Validation rules:
- Stages are exactly Source, Test, Deploy, in that order
- Every provider is known and belongs to its action's category
- Each provider's required configuration keys are present
- RunOrder is unique within a stage (ties forbidden)
- All actions in a stage share the stage's input/output artifacts
- Every stage input is produced by an earlier stage
"""

from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ActionCategory(str, Enum):
    """Category of work an action performs."""

    SOURCE = "source"
    TEST = "test"
    DEPLOY = "deploy"


class ActionProvider(str, Enum):
    """Closed set of supported action providers.

    Attributes:
        GITHUB: Fetches a ref from a GitHub repository (Source).
        SHELL: Runs a validation command in an isolated working tree (Test).
        CLOUDFORMATION: Applies a template to a named stack (Deploy).
    """

    GITHUB = "github"
    SHELL = "shell"
    CLOUDFORMATION = "cloudformation"


PROVIDER_CATEGORIES: Dict[ActionProvider, ActionCategory] = {
    ActionProvider.GITHUB: ActionCategory.SOURCE,
    ActionProvider.SHELL: ActionCategory.TEST,
    ActionProvider.CLOUDFORMATION: ActionCategory.DEPLOY,
}

# Configuration keys each provider requires
REQUIRED_CONFIGURATION: Dict[ActionProvider, Tuple[str, ...]] = {
    ActionProvider.GITHUB: ("Owner", "Repo", "Branch"),
    ActionProvider.SHELL: ("Command",),
    ActionProvider.CLOUDFORMATION: ("ActionMode", "StackName", "TemplatePath"),
}

SUPPORTED_ACTION_MODES = ("CREATE_UPDATE",)

STAGE_ORDER: Tuple[ActionCategory, ...] = (
    ActionCategory.SOURCE,
    ActionCategory.TEST,
    ActionCategory.DEPLOY,
)


def split_template_path(template_path: str) -> Tuple[str, str]:
    """Split "ArtifactName::path/in/artifact" into its two parts.

    Raises:
        ValueError: If the value is not in artifact-qualified form.
    """
    artifact, sep, path = template_path.partition("::")
    if not sep or not artifact or not path:
        raise ValueError(
            f"TemplatePath must look like 'ArtifactName::path', got {template_path!r}"
        )
    return artifact, path


class ActionDefinition(BaseModel):
    """A single unit of work within a stage, bound to one provider.

    Attributes:
        name: Action name, unique within its stage.
        category: Source, Test or Deploy.
        provider: The provider that interprets the configuration.
        run_order: Position of the action within its stage.
        configuration: Opaque key/value pairs read only by the provider.
        input_artifacts: Names of artifacts the action consumes.
        output_artifacts: Names of artifacts the action produces.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)

    category: ActionCategory

    provider: ActionProvider

    run_order: int = Field(default=1, ge=1)

    configuration: Dict[str, str] = Field(default_factory=dict)

    input_artifacts: List[str] = Field(default_factory=list)

    output_artifacts: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_provider(self) -> "ActionDefinition":
        expected = PROVIDER_CATEGORIES[self.provider]
        if expected != self.category:
            raise ValueError(
                f"Provider {self.provider.value} is a {expected.value} provider, "
                f"not {self.category.value}"
            )

        missing = [
            key
            for key in REQUIRED_CONFIGURATION[self.provider]
            if not self.configuration.get(key)
        ]
        if missing:
            raise ValueError(
                f"Action {self.name} is missing configuration: {', '.join(missing)}"
            )

        if self.provider == ActionProvider.CLOUDFORMATION:
            mode = self.configuration["ActionMode"]
            if mode not in SUPPORTED_ACTION_MODES:
                raise ValueError(f"Unsupported ActionMode: {mode}")
            artifact, _ = split_template_path(self.configuration["TemplatePath"])
            if artifact not in self.input_artifacts:
                raise ValueError(
                    f"TemplatePath artifact {artifact} is not an input of {self.name}"
                )
        return self


class StageDefinition(BaseModel):
    """An ordered phase of the pipeline.

    Attributes:
        name: Stage name, unique within the pipeline.
        category: The category shared by every action in the stage.
        actions: Actions, executed in run_order.
        input_artifacts: Artifacts consumed by every action of the stage.
        output_artifacts: Artifacts produced by the stage.
        timeout_seconds: Explicit stage timeout; None means no timeout.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)

    category: ActionCategory

    actions: List[ActionDefinition] = Field(..., min_length=1)

    input_artifacts: List[str] = Field(default_factory=list)

    output_artifacts: List[str] = Field(default_factory=list)

    timeout_seconds: Optional[float] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def validate_actions(self) -> "StageDefinition":
        orders = [action.run_order for action in self.actions]
        if len(orders) != len(set(orders)):
            raise ValueError(f"Stage {self.name} has duplicate run_order values")

        names = [action.name for action in self.actions]
        if len(names) != len(set(names)):
            raise ValueError(f"Stage {self.name} has duplicate action names")

        for action in self.actions:
            if action.category != self.category:
                raise ValueError(
                    f"Action {action.name} is {action.category.value} "
                    f"in {self.category.value} stage {self.name}"
                )
            if set(action.input_artifacts) != set(self.input_artifacts):
                raise ValueError(
                    f"Action {action.name} inputs differ from stage {self.name}"
                )
            if set(action.output_artifacts) != set(self.output_artifacts):
                raise ValueError(
                    f"Action {action.name} outputs differ from stage {self.name}"
                )
        return self

    @property
    def ordered_actions(self) -> List[ActionDefinition]:
        return sorted(self.actions, key=lambda action: action.run_order)


class PipelineDefinition(BaseModel):
    """The full, immutable pipeline description.

    Attributes:
        name: Pipeline name; also used to derive role and log group names.
        stages: Source, Test and Deploy stages in order.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)

    stages: List[StageDefinition] = Field(..., min_length=1)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("pipeline name cannot be blank")
        return v.strip()

    @model_validator(mode="after")
    def validate_stages(self) -> "PipelineDefinition":
        categories = tuple(stage.category for stage in self.stages)
        if categories != STAGE_ORDER:
            raise ValueError(
                "Pipeline stages must be source, test, deploy in order; got "
                + ", ".join(category.value for category in categories)
            )

        names = [stage.name for stage in self.stages]
        if len(names) != len(set(names)):
            raise ValueError("Stage names must be unique")

        produced: Dict[str, str] = {}
        for stage in self.stages:
            for artifact in stage.input_artifacts:
                if artifact not in produced:
                    raise ValueError(
                        f"Stage {stage.name} consumes {artifact}, "
                        "which no earlier stage produces"
                    )
            for artifact in stage.output_artifacts:
                if artifact in produced:
                    raise ValueError(
                        f"Artifact {artifact} is produced by both "
                        f"{produced[artifact]} and {stage.name}"
                    )
                produced[artifact] = stage.name
        return self

    def stage(self, category: ActionCategory) -> StageDefinition:
        """Return the stage of the given category."""
        for stage in self.stages:
            if stage.category == category:
                return stage
        raise KeyError(category.value)

    @property
    def source_stage(self) -> StageDefinition:
        return self.stage(ActionCategory.SOURCE)

    @property
    def test_stage(self) -> StageDefinition:
        return self.stage(ActionCategory.TEST)

    @property
    def deploy_stage(self) -> StageDefinition:
        return self.stage(ActionCategory.DEPLOY)

    @property
    def integration_ref(self) -> str:
        """Full ref of the branch the source action tracks."""
        branch = self.source_stage.ordered_actions[0].configuration["Branch"]
        return f"refs/heads/{branch}"

    @property
    def stack_names(self) -> List[str]:
        return [
            action.configuration["StackName"]
            for action in self.deploy_stage.ordered_actions
        ]
