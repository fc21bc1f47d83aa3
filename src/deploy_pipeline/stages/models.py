"""Stage execution models."""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from deploy_pipeline.artifacts.models import ArtifactRef
from deploy_pipeline.errors import PipelineError
from deploy_pipeline.state.models import RunTrigger, StageStatus
from deploy_pipeline.triggers.models import EntryPoint

# Longest log tail kept on a stage record
LOG_EXCERPT_CHARS = 4000


@dataclass
class RunContext:
    """What an action needs to know about the run it executes in.

    Attributes:
        run_id: The run identifier.
        pipeline_name: Name of the pipeline definition.
        entry_point: Where the run entered the pipeline.
        trigger: The triggering event.
        repository_owner: Owner of the source repository.
        repository_name: Name of the source repository.
    """

    run_id: int
    pipeline_name: str
    entry_point: EntryPoint
    trigger: RunTrigger
    repository_owner: str
    repository_name: str

    @property
    def reports_commit_status(self) -> bool:
        return (
            self.entry_point == EntryPoint.PULL_REQUEST_VALIDATION
            and bool(self.trigger.commit_sha)
        )


@dataclass
class ActionOutcome:
    """What a successful action hands back to the executor."""

    outputs: List[ArtifactRef] = field(default_factory=list)
    logs: str = ""
    details: Dict[str, str] = field(default_factory=dict)


@dataclass
class StageResult:
    """Terminal result of executing one stage.

    Attributes:
        stage: The stage name.
        status: SUCCEEDED or FAILED.
        outputs: Artifact references produced by the stage.
        logs: Captured logs of every action, in run order.
        error: The failure, when status is FAILED.
        duration_seconds: Wall-clock execution time.
    """

    stage: str
    status: StageStatus
    outputs: List[ArtifactRef] = field(default_factory=list)
    logs: str = ""
    error: Optional[PipelineError] = None
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == StageStatus.SUCCEEDED

    @property
    def log_excerpt(self) -> Optional[str]:
        if not self.logs:
            return None
        return self.logs[-LOG_EXCERPT_CHARS:]
