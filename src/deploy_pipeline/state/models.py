"""Run state machine models.

This module defines the data models for a pipeline run:
- RunState: Enum of controller states
- StageStatus: Per-stage status
- StateTransition: Record of a state transition with timestamp and details
- StageRecord, FailureDetail, RunTrigger: Parts of the persisted run
- RunRecord: Complete persisted state of one run
- VALID_TRANSITIONS: Map defining allowed state transitions

The models use Pydantic for validation, consistent with the definition and
webhook models.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from deploy_pipeline.artifacts.models import ArtifactRef
from deploy_pipeline.definition.models import ActionCategory
from deploy_pipeline.errors import PipelineError
from deploy_pipeline.triggers.models import EntryPoint
from deploy_pipeline.webhook.models import WebhookEvent


class RunState(str, Enum):
    """Controller states a run progresses through.

    State Flow:
        pending → source_running → source_done → test_running → test_done
        → deploy_running → succeeded

    Any *_running state can transition to 'failed'. Any non-terminal state
    can transition to 'cancelled'. Pull-request validation runs finish at
    test_done → succeeded.

    Attributes:
        PENDING: Run created, no stage started.
        SOURCE_RUNNING: Fetching the source ref.
        SOURCE_DONE: Source artifact stored.
        TEST_RUNNING: Validation command executing.
        TEST_DONE: Validation passed.
        DEPLOY_RUNNING: Template being applied.
        SUCCEEDED: Run finished successfully.
        FAILED: A stage failed; no further stages run.
        CANCELLED: Operator aborted the run.
    """

    PENDING = "pending"
    SOURCE_RUNNING = "source_running"
    SOURCE_DONE = "source_done"
    TEST_RUNNING = "test_running"
    TEST_DONE = "test_done"
    DEPLOY_RUNNING = "deploy_running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StageStatus(str, Enum):
    """Status of one stage within a run."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Running and done states for each stage category
STAGE_STATES: Dict[ActionCategory, tuple] = {
    ActionCategory.SOURCE: (RunState.SOURCE_RUNNING, RunState.SOURCE_DONE),
    ActionCategory.TEST: (RunState.TEST_RUNNING, RunState.TEST_DONE),
    ActionCategory.DEPLOY: (RunState.DEPLOY_RUNNING, RunState.SUCCEEDED),
}


class StateTransition(BaseModel):
    """Record of a state transition in a run.

    Attributes:
        from_state: The state before the transition.
        to_state: The state after the transition.
        timestamp: When the transition occurred (UTC).
        details: Optional metadata (stage name, artifact labels, error).
    """

    from_state: RunState = Field(
        ...,
        description="The run state before this transition",
    )

    to_state: RunState = Field(
        ...,
        description="The run state after this transition",
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the transition occurred (UTC timezone)",
    )

    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Optional metadata about the transition",
    )


class FailureDetail(BaseModel):
    """Diagnostic detail for a failed or cancelled run."""

    error_type: str

    message: str

    stage: Optional[str] = None

    action: Optional[str] = None

    provider: Optional[str] = None

    detail: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_error(cls, error: PipelineError) -> "FailureDetail":
        return cls(
            error_type=error.error_type,
            message=error.message,
            stage=error.stage,
            action=error.action,
            provider=error.provider,
            detail=dict(error.detail),
        )


class StageRecord(BaseModel):
    """Persisted status of one stage of a run."""

    name: str = Field(..., min_length=1)

    category: ActionCategory

    status: StageStatus = StageStatus.PENDING

    started_at: Optional[datetime] = None

    ended_at: Optional[datetime] = None

    output_artifacts: List[ArtifactRef] = Field(default_factory=list)

    log_excerpt: Optional[str] = Field(
        default=None,
        description="Tail of captured stage logs",
    )


class RunTrigger(BaseModel):
    """The event that started a run."""

    event_type: str

    ref: Optional[str] = None

    base_ref: Optional[str] = None

    commit_sha: Optional[str] = None

    pull_request_number: Optional[int] = None

    delivery_id: Optional[str] = None

    @classmethod
    def from_event(cls, event: WebhookEvent) -> "RunTrigger":
        return cls(
            event_type=event.event_type.value,
            ref=event.ref,
            base_ref=event.base_ref,
            commit_sha=event.commit_sha,
            pull_request_number=event.pull_request_number,
            delivery_id=event.delivery_id,
        )

    @property
    def fetch_ref(self) -> Optional[str]:
        """The ref the source stage should fetch: the commit when known."""
        return self.commit_sha or self.ref


class RunRecord(BaseModel):
    """Complete persisted state of one pipeline run.

    The record is persisted on every transition and uses optimistic locking
    via the version field. A crashed run is left in its last persisted state.

    Attributes:
        run_id: Monotonically increasing run identifier.
        pipeline_name: Name of the pipeline definition.
        entry_point: Where the triggering event entered the pipeline.
        trigger: The triggering event.
        current_state: Current controller state.
        stages: Per-stage records keyed by stage name.
        artifacts: Latest artifact reference per artifact name.
        state_history: Ordered list of transitions.
        failure: Failure detail when the run failed or was cancelled.
        started_at: When the run was created (UTC).
        ended_at: When the run reached a terminal state (UTC).
        updated_at: Last persisted update (UTC).
        version: Optimistic locking version.
    """

    run_id: int = Field(..., ge=1)

    pipeline_name: str = Field(..., min_length=1)

    entry_point: EntryPoint

    trigger: RunTrigger

    current_state: RunState = RunState.PENDING

    stages: Dict[str, StageRecord] = Field(default_factory=dict)

    artifacts: Dict[str, ArtifactRef] = Field(default_factory=dict)

    state_history: List[StateTransition] = Field(default_factory=list)

    failure: Optional[FailureDetail] = None

    started_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )

    ended_at: Optional[datetime] = None

    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )

    version: int = Field(default=1, ge=1)

    @property
    def is_terminal(self) -> bool:
        return is_terminal_state(self.current_state)


# Valid state transitions map
#
# - Any *_running state can fail
# - Any non-terminal state can be cancelled
# - test_done may finish directly (pull-request validation runs)
# - succeeded, failed and cancelled have no outgoing transitions
VALID_TRANSITIONS: Dict[RunState, List[RunState]] = {
    RunState.PENDING: [
        RunState.SOURCE_RUNNING,
        RunState.CANCELLED,
    ],
    RunState.SOURCE_RUNNING: [
        RunState.SOURCE_DONE,
        RunState.FAILED,
        RunState.CANCELLED,
    ],
    RunState.SOURCE_DONE: [
        RunState.TEST_RUNNING,
        RunState.CANCELLED,
    ],
    RunState.TEST_RUNNING: [
        RunState.TEST_DONE,
        RunState.FAILED,
        RunState.CANCELLED,
    ],
    RunState.TEST_DONE: [
        RunState.DEPLOY_RUNNING,
        RunState.SUCCEEDED,
        RunState.CANCELLED,
    ],
    RunState.DEPLOY_RUNNING: [
        RunState.SUCCEEDED,
        RunState.FAILED,
        RunState.CANCELLED,
    ],
    RunState.SUCCEEDED: [],
    RunState.FAILED: [],
    RunState.CANCELLED: [],
}

RUNNING_STATES = frozenset(
    {RunState.SOURCE_RUNNING, RunState.TEST_RUNNING, RunState.DEPLOY_RUNNING}
)


def is_valid_transition(from_state: RunState, to_state: RunState) -> bool:
    """Check if a state transition is valid.

    Example:
        >>> is_valid_transition(RunState.PENDING, RunState.SOURCE_RUNNING)
        True
        >>> is_valid_transition(RunState.FAILED, RunState.PENDING)
        False
    """
    return to_state in VALID_TRANSITIONS.get(from_state, [])


def is_terminal_state(state: RunState) -> bool:
    """Check if a state has no outgoing transitions."""
    return len(VALID_TRANSITIONS.get(state, [])) == 0
