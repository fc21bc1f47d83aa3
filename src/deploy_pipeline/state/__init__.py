"""Run state machine and persistence."""

from deploy_pipeline.state.machine import (
    InvalidTransitionError,
    RunNotFoundError,
    RunRepository,
    RunStateMachine,
    VersionConflictError,
)
from deploy_pipeline.state.models import (
    RUNNING_STATES,
    STAGE_STATES,
    VALID_TRANSITIONS,
    FailureDetail,
    RunRecord,
    RunState,
    RunTrigger,
    StageRecord,
    StageStatus,
    StateTransition,
    is_terminal_state,
    is_valid_transition,
)
from deploy_pipeline.state.repository import (
    DatabaseError,
    InMemoryRunRepository,
    PostgresRunRepository,
)

__all__ = [
    "RUNNING_STATES",
    "STAGE_STATES",
    "VALID_TRANSITIONS",
    "DatabaseError",
    "FailureDetail",
    "InMemoryRunRepository",
    "InvalidTransitionError",
    "PostgresRunRepository",
    "RunNotFoundError",
    "RunRecord",
    "RunRepository",
    "RunState",
    "RunStateMachine",
    "RunTrigger",
    "StageRecord",
    "StageStatus",
    "StateTransition",
    "VersionConflictError",
    "is_terminal_state",
    "is_valid_transition",
]
