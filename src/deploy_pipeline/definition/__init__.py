"""Static pipeline definitions.

The pipeline is described once, validated at load time, and never changed
while runs execute:
- ActionCategory / ActionProvider: the closed set of supported actions
- ActionDefinition / StageDefinition / PipelineDefinition: the definition
- load_definition / build_default_definition: loading from YAML or settings
"""

from deploy_pipeline.definition.loader import (
    SOURCE_ARTIFACT,
    build_default_definition,
    load_definition,
    parse_definition,
)
from deploy_pipeline.definition.models import (
    PROVIDER_CATEGORIES,
    ActionCategory,
    ActionDefinition,
    ActionProvider,
    PipelineDefinition,
    StageDefinition,
    split_template_path,
)

__all__ = [
    "PROVIDER_CATEGORIES",
    "SOURCE_ARTIFACT",
    "ActionCategory",
    "ActionDefinition",
    "ActionProvider",
    "PipelineDefinition",
    "StageDefinition",
    "build_default_definition",
    "load_definition",
    "parse_definition",
    "split_template_path",
]
